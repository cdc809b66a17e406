"""
IMAP Session Module
One live mailbox session: login, initial sync, then polling for new messages

PATTERN RECOGNITION: This follows the Adapter pattern - it wraps Python's
imaplib (run in worker threads) and reports what happens as typed signals
instead of return codes. The session never retries on its own; deciding
when to reconnect belongs to the ConnectionSupervisor.

SECURITY STORY: IMAP sessions are security-critical because:
- Credentials are transmitted (we enforce TLS 1.2+)
- We download untrusted data (we check sizes before downloading)
- Messages are fetched with BODY.PEEK so indexing never marks mail as read
"""

import asyncio
import imaplib
import logging
import re
from datetime import date, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..utils.config import MailAccount
from ..utils.sanitization import redact_email, sanitize_for_logging
from ..utils.security_validators import MAX_EMAIL_SIZE, create_secure_ssl_context
from .document_builder import DocumentBuilder
from .models import Document, SessionSignal, SignalKind


SignalSink = Callable[[SessionSignal], None]

UID_PATTERN = re.compile(rb"UID (\d+)")
SIZE_PATTERN = re.compile(rb"RFC822\.SIZE (\d+)")

# UIDs fetched per round trip
FETCH_CHUNK_SIZE = 10


class ImapSession:
    """
    Manages one account's IMAP connection and new-message detection

    Signals emitted, all tagged with the generation passed to open():
    READY once logged in, DOCUMENT per new message, END when the server
    closes the session, TIMEOUT when a poll stalls, ERROR otherwise.
    """

    def __init__(
        self,
        account: MailAccount,
        sink: SignalSink,
        poll_interval: float = 30.0,
        idle_timeout: float = 120.0,
        connect_timeout: float = 30.0,
        initial_sync_days: int = 30,
        max_email_size: int = MAX_EMAIL_SIZE,
    ):
        """
        Args:
            account: Mailbox to connect to
            sink: Receives every signal, on the event loop thread
            poll_interval: Seconds between polls for new mail
            idle_timeout: Seconds a single poll may take before it counts as stalled
            connect_timeout: Socket timeout for imaplib (seconds)
            initial_sync_days: Days of existing mail indexed on first connect (0 = none)
            max_email_size: Messages larger than this are skipped
        """
        self.account = account
        self.sink = sink
        self.poll_interval = poll_interval
        self.idle_timeout = idle_timeout
        self.connect_timeout = connect_timeout
        self.initial_sync_days = initial_sync_days
        self.max_email_size = max_email_size
        self.builder = DocumentBuilder(account)
        self.connection: Optional[imaplib.IMAP4] = None
        self.logger = logging.getLogger(f"ImapSession.{account.account_id}")

        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        # Highest UID already emitted, per folder; survives reconnects
        self._last_uids: Dict[str, int] = {}

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and self._task is not None and not self._task.done()

    def open(self, generation: int) -> None:
        """(Re)start the session; any previous incarnation is closed first"""
        self.close()
        self._generation = generation
        self._task = asyncio.get_running_loop().create_task(self._run(generation))

    def close(self) -> None:
        """Force-close the session without waiting for a clean logout"""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._drop_connection()

    def _emit(self, generation: int, kind: SignalKind, payload=None) -> None:
        self.sink(SessionSignal(kind, self.account.account_id, generation, payload))

    async def _run(self, generation: int) -> None:
        try:
            connection = await asyncio.to_thread(self._connect_sync)
            if generation != self._generation:
                self._shutdown_quietly(connection)
                return
            self.connection = connection
            self._emit(generation, SignalKind.READY)

            while True:
                try:
                    documents, high_uids = await asyncio.wait_for(
                        asyncio.to_thread(self._poll_sync), timeout=self.idle_timeout
                    )
                except asyncio.TimeoutError:
                    self.logger.warning(f"Poll stalled for more than {self.idle_timeout}s")
                    self._emit(generation, SignalKind.TIMEOUT)
                    return

                for document in documents:
                    self._emit(generation, SignalKind.DOCUMENT, document)

                # Only mark UIDs seen once their documents are handed on
                if generation == self._generation:
                    self._last_uids.update(high_uids)

                await asyncio.sleep(self.poll_interval)

        except asyncio.CancelledError:
            raise
        except imaplib.IMAP4.abort as exc:
            if self._is_graceful_close(exc):
                self.logger.info(f"Server closed the session: {exc}")
                self._emit(generation, SignalKind.END)
            else:
                self.logger.error(f"IMAP session aborted: {exc}")
                self._emit(generation, SignalKind.ERROR, exc)
        except Exception as exc:
            self.logger.error(f"IMAP session error: {exc}")
            self._emit(generation, SignalKind.ERROR, exc)

    def _is_graceful_close(self, exc: Exception) -> bool:
        """A BYE from the server or a clean EOF counts as a graceful end"""
        connection = self.connection
        if connection is not None and connection.untagged_responses.get("BYE"):
            return True
        return "eof" in str(exc).lower()

    # ------------------------------------------------------------------
    # Blocking helpers (run in worker threads)
    # ------------------------------------------------------------------

    def _connect_sync(self) -> imaplib.IMAP4:
        """
        Establish connection to IMAP server with secure TLS

        Raises:
            imaplib.IMAP4.error, OSError, ssl.SSLError on failure
        """
        self.logger.info(
            f"Connecting to {self.account.imap_server}:{self.account.imap_port} "
            f"(SSL={self.account.use_ssl})"
        )
        context = create_secure_ssl_context(self.account.verify_ssl)

        if self.account.use_ssl:
            connection = imaplib.IMAP4_SSL(
                self.account.imap_server,
                self.account.imap_port,
                ssl_context=context,
                timeout=self.connect_timeout,
            )
        else:
            connection = imaplib.IMAP4(
                self.account.imap_server,
                self.account.imap_port,
                timeout=self.connect_timeout,
            )
            connection.starttls(ssl_context=context)

        try:
            connection.login(self.account.login_name, self.account.app_password)
        except imaplib.IMAP4.error as exc:
            tip = self._get_auth_tip(str(exc))
            if tip:
                self.logger.warning(f"💡 {tip}")
            self._shutdown_quietly(connection)
            raise

        self.logger.info(f"Successfully connected to {redact_email(self.account.email)}")
        return connection

    def _poll_sync(self) -> Tuple[List[Document], Dict[str, int]]:
        """
        Fetch new mail from every folder

        Returns the documents plus the highest UID reached per folder. The
        UIDs are not recorded here; the caller commits them after the
        documents have been emitted, so a poll that fails or is abandoned
        halfway is simply repeated after reconnecting.
        """
        connection = self.connection
        if connection is None:
            raise imaplib.IMAP4.abort("session closed")

        connection.noop()
        documents: List[Document] = []
        high_uids: Dict[str, int] = {}
        for folder in self.account.folders:
            folder_documents, high_uid = self._fetch_new(connection, folder)
            documents.extend(folder_documents)
            if high_uid is not None:
                high_uids[folder] = high_uid
        return documents, high_uids

    def _fetch_new(
        self, connection: imaplib.IMAP4, folder: str
    ) -> Tuple[List[Document], Optional[int]]:
        """Fetch messages that arrived in folder since the last poll"""
        status, _ = connection.select(self._quote_folder(folder), readonly=True)
        if status != "OK":
            raise imaplib.IMAP4.error(f"Could not select folder {sanitize_for_logging(folder)}")

        last_uid = self._last_uids.get(folder)
        if last_uid is None:
            baseline = max(self._search(connection, "ALL"), default=0)
            if self.initial_sync_days <= 0:
                return [], baseline
            since = (date.today() - timedelta(days=self.initial_sync_days)).strftime("%d-%b-%Y")
            uids = self._search(connection, "SINCE", since)
            high_uid = max(uids + [baseline])
            self.logger.info(
                f"Initial sync of {len(uids)} messages in {sanitize_for_logging(folder)}"
            )
        else:
            # "n:*" always matches the newest message, even below n
            uids = [uid for uid in self._search(connection, "UID", f"{last_uid + 1}:*")
                    if uid > last_uid]
            if not uids:
                return [], None
            high_uid = max(uids)
            self.logger.info(f"Found {len(uids)} new messages in {sanitize_for_logging(folder)}")

        documents = []
        for i in range(0, len(uids), FETCH_CHUNK_SIZE):
            chunk = uids[i:i + FETCH_CHUNK_SIZE]
            for uid, flags, raw in self._fetch_chunk(connection, chunk):
                document = self.builder.build(raw, folder, str(uid), flags)
                if document is not None:
                    documents.append(document)
        return documents, high_uid

    @staticmethod
    def _search(connection: imaplib.IMAP4, *criteria: str) -> List[int]:
        status, data = connection.uid("SEARCH", None, *criteria)
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID SEARCH {' '.join(criteria)} failed: {status}")
        if not data or not data[0]:
            return []
        return [int(uid) for uid in data[0].split()]

    def _fetch_chunk(
        self, connection: imaplib.IMAP4, uids: Sequence[int]
    ) -> List[Tuple[int, List[str], bytes]]:
        """
        Fetch a chunk of messages with size pre-checking

        Two steps keep oversized mail off the wire: sizes and flags first,
        then bodies (BODY.PEEK[] leaves \\Seen untouched) for the rest.
        """
        ids = ",".join(str(uid) for uid in uids)
        status, data = connection.uid("FETCH", ids, "(UID RFC822.SIZE FLAGS)")
        if status != "OK":
            raise imaplib.IMAP4.error(f"Size check failed for {ids}: {status}")

        flags_by_uid: Dict[int, List[str]] = {}
        for item in data or []:
            info = item[0] if isinstance(item, tuple) else item
            if not isinstance(info, bytes):
                continue
            uid_match = UID_PATTERN.search(info)
            size_match = SIZE_PATTERN.search(info)
            if not uid_match:
                continue
            uid = int(uid_match.group(1))
            size = int(size_match.group(1)) if size_match else 0
            if size > self.max_email_size:
                self.logger.warning(
                    f"Skipping oversized email {uid} ({size} bytes > {self.max_email_size})"
                )
                continue
            flags_by_uid[uid] = [flag.decode("ascii", "replace") for flag in imaplib.ParseFlags(info)]

        if not flags_by_uid:
            return []

        safe_ids = ",".join(str(uid) for uid in flags_by_uid)
        status, data = connection.uid("FETCH", safe_ids, "(UID BODY.PEEK[])")
        if status != "OK":
            raise imaplib.IMAP4.error(f"Fetch failed for {safe_ids}: {status}")

        messages = []
        for item in data or []:
            if not isinstance(item, tuple) or not isinstance(item[1], bytes):
                continue
            uid_match = UID_PATTERN.search(item[0])
            if not uid_match:
                self.logger.warning(f"Fetch response without UID: {item[0][:80]!r}")
                continue
            uid = int(uid_match.group(1))
            messages.append((uid, flags_by_uid.get(uid, []), item[1]))
        return messages

    @staticmethod
    def _quote_folder(folder: str) -> str:
        if " " in folder and not folder.startswith('"'):
            return f'"{folder}"'
        return folder

    def _drop_connection(self) -> None:
        connection, self.connection = self.connection, None
        if connection is not None:
            self._shutdown_quietly(connection)

    def _shutdown_quietly(self, connection: imaplib.IMAP4) -> None:
        try:
            connection.shutdown()
            self.logger.debug("IMAP socket closed")
        except Exception:
            # Connection may already be closed
            self.logger.debug("Connection was already closed")

    def _get_auth_tip(self, error_msg: str) -> Optional[str]:
        """
        Get actionable tip based on error and provider

        INDUSTRY CONTEXT: Major email providers now require app-specific
        passwords for IMAP access.
        """
        msg_lower = error_msg.lower()
        server_lower = self.account.imap_server.lower()

        auth_keywords = [
            "authentication failed", "login failed", "invalid credentials",
            "logon failure", "authenticate"
        ]
        if not any(k in msg_lower for k in auth_keywords):
            return None

        if "outlook" in server_lower or "office365" in server_lower:
            return (
                "Personal Outlook/Hotmail accounts NO LONGER support passwords. "
                "You must use an App Password or OAuth (Enterprise)."
            )

        if "gmail" in server_lower:
            return (
                "Gmail requires 2-Step Verification enabled and an App Password "
                "to use IMAP."
            )

        return (
            "Check your email and password. If using 2FA, you likely need "
            "an App Password."
        )
