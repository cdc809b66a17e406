"""
Unit tests for ImapSession

PATTERN RECOGNITION: All network I/O (imaplib, ssl) is mocked so the tests
run without real credentials or network access. The blocking helpers are
tested directly; the async lifecycle is tested with those helpers patched.
"""

import asyncio
import imaplib
import time
import unittest
from unittest.mock import MagicMock, patch

from inbox_indexer.modules.imap_session import ImapSession
from inbox_indexer.modules.models import SignalKind
from inbox_indexer.utils.config import MailAccount


IMAP4_ERROR = imaplib.IMAP4.error
IMAP4_ABORT = imaplib.IMAP4.abort


def _make_account(**overrides) -> MailAccount:
    defaults = dict(
        account_id="account-1",
        email="test@example.com",
        imap_server="imap.example.com",
        imap_port=993,
        app_password="secret",
        folders=["INBOX"],
    )
    defaults.update(overrides)
    return MailAccount(**defaults)


def _raw_message(n: int) -> bytes:
    return (
        f"From: sender{n}@example.com\r\n"
        f"Subject: Message {n}\r\n"
        f"Message-ID: <{n}@example.com>\r\n"
        f"\r\n"
        f"Body {n}\r\n"
    ).encode()


def _mock_mailbox(all_uids=b"1 2 3", since_uids=b"2 3", new_uids=b"", sizes=None):
    """Connection whose UID commands answer like a small mailbox"""
    sizes = sizes or {}
    connection = MagicMock()
    connection.select.return_value = ("OK", [b"3"])

    def uid(command, *args):
        if command == "SEARCH":
            criteria = args[1:]
            if criteria == ("ALL",):
                return "OK", [all_uids]
            if criteria[0] == "SINCE":
                return "OK", [since_uids]
            return "OK", [new_uids]

        ids, query = args
        wanted = [int(i) for i in ids.split(",")]
        if "RFC822.SIZE" in query:
            return "OK", [
                f"{i} (UID {i} RFC822.SIZE {sizes.get(i, 100)} FLAGS (\\Seen))".encode()
                for i in wanted
            ]
        data = []
        for i in wanted:
            data.append((f"{i} (UID {i} BODY[] {{100}}".encode(), _raw_message(i)))
            data.append(b")")
        return "OK", data

    connection.uid.side_effect = uid
    return connection


class TestConnect(unittest.TestCase):

    def setUp(self):
        self.session = ImapSession(_make_account(), sink=MagicMock())

    @patch("inbox_indexer.modules.imap_session.create_secure_ssl_context")
    @patch("inbox_indexer.modules.imap_session.imaplib.IMAP4_SSL")
    def test_connect_ssl(self, mock_imap4_ssl, mock_ssl_ctx):
        mock_imap = MagicMock()
        mock_imap4_ssl.return_value = mock_imap

        connection = self.session._connect_sync()

        self.assertIs(connection, mock_imap)
        mock_imap4_ssl.assert_called_once_with(
            "imap.example.com", 993, ssl_context=mock_ssl_ctx.return_value, timeout=30.0
        )
        mock_imap.login.assert_called_once_with("test@example.com", "secret")

    @patch("inbox_indexer.modules.imap_session.create_secure_ssl_context")
    @patch("inbox_indexer.modules.imap_session.imaplib.IMAP4")
    def test_connect_starttls_with_username(self, mock_imap4, mock_ssl_ctx):
        session = ImapSession(
            _make_account(use_ssl=False, imap_port=143, username="login-name"), sink=MagicMock()
        )
        mock_imap = MagicMock()
        mock_imap4.return_value = mock_imap

        session._connect_sync()

        mock_imap.starttls.assert_called_once_with(ssl_context=mock_ssl_ctx.return_value)
        mock_imap.login.assert_called_once_with("login-name", "secret")

    @patch("inbox_indexer.modules.imap_session.create_secure_ssl_context")
    @patch("inbox_indexer.modules.imap_session.imaplib.IMAP4_SSL")
    def test_auth_failure_closes_socket_and_raises(self, mock_imap4_ssl, mock_ssl_ctx):
        mock_imap = MagicMock()
        mock_imap.login.side_effect = IMAP4_ERROR("[AUTHENTICATIONFAILED] Invalid credentials")
        mock_imap4_ssl.return_value = mock_imap

        with self.assertRaises(IMAP4_ERROR):
            self.session._connect_sync()

        mock_imap.shutdown.assert_called_once()

    def test_auth_tips(self):
        gmail = ImapSession(_make_account(imap_server="imap.gmail.com"), sink=MagicMock())
        outlook = ImapSession(_make_account(imap_server="outlook.office365.com"), sink=MagicMock())

        self.assertIn("Gmail", gmail._get_auth_tip("Invalid credentials"))
        self.assertIn("Outlook", outlook._get_auth_tip("LOGIN failed"))
        self.assertIn("App Password", self.session._get_auth_tip("authentication failed"))
        self.assertIsNone(self.session._get_auth_tip("connection reset"))


class TestFetchNew(unittest.TestCase):

    def test_first_poll_sets_baseline_and_syncs_recent_mail(self):
        session = ImapSession(_make_account(), sink=MagicMock(), initial_sync_days=7)
        connection = _mock_mailbox()

        documents, high_uid = session._fetch_new(connection, "INBOX")

        self.assertEqual([d.subject for d in documents], ["Message 2", "Message 3"])
        self.assertEqual(documents[0].flags, ["\\Seen"])
        self.assertEqual(high_uid, 3)
        self.assertEqual(session._last_uids, {})
        connection.select.assert_called_once_with("INBOX", readonly=True)

    def test_initial_sync_disabled(self):
        session = ImapSession(_make_account(), sink=MagicMock(), initial_sync_days=0)
        connection = _mock_mailbox()

        self.assertEqual(session._fetch_new(connection, "INBOX"), ([], 3))

    def test_later_polls_fetch_only_new_uids(self):
        session = ImapSession(_make_account(), sink=MagicMock())
        session._last_uids["INBOX"] = 3
        connection = _mock_mailbox(new_uids=b"4 5")

        documents, high_uid = session._fetch_new(connection, "INBOX")

        self.assertEqual([d.subject for d in documents], ["Message 4", "Message 5"])
        self.assertEqual(high_uid, 5)
        self.assertEqual(session._last_uids["INBOX"], 3)

    def test_newest_message_echo_is_ignored(self):
        session = ImapSession(_make_account(), sink=MagicMock())
        session._last_uids["INBOX"] = 3
        # "4:*" matches UID 3 when nothing newer exists
        connection = _mock_mailbox(new_uids=b"3")

        self.assertEqual(session._fetch_new(connection, "INBOX"), ([], None))

    def test_oversized_messages_are_skipped(self):
        session = ImapSession(_make_account(), sink=MagicMock(), max_email_size=1000)
        session._last_uids["INBOX"] = 3
        connection = _mock_mailbox(new_uids=b"4 5", sizes={4: 5000})

        documents, high_uid = session._fetch_new(connection, "INBOX")

        self.assertEqual([d.subject for d in documents], ["Message 5"])
        self.assertEqual(high_uid, 5)

    def test_select_failure_raises(self):
        session = ImapSession(_make_account(), sink=MagicMock())
        connection = MagicMock()
        connection.select.return_value = ("NO", [b"no such folder"])

        with self.assertRaises(IMAP4_ERROR):
            session._fetch_new(connection, "Missing")

    def test_folders_with_spaces_are_quoted(self):
        self.assertEqual(ImapSession._quote_folder("Sent Items"), '"Sent Items"')
        self.assertEqual(ImapSession._quote_folder("INBOX"), "INBOX")


class TestSessionLifecycle(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.signals = []
        self.session = ImapSession(
            _make_account(), sink=self.signals.append, poll_interval=0, idle_timeout=1
        )
        self.connection = MagicMock()
        self.connection.untagged_responses = {}

    async def asyncTearDown(self):
        self.session.close()

    async def wait_for_signals(self, count, timeout=2.0):
        deadline = time.monotonic() + timeout
        while len(self.signals) < count:
            if time.monotonic() > deadline:
                self.fail(f"Expected {count} signals, got {self.signals}")
            await asyncio.sleep(0.01)

    async def test_ready_documents_then_graceful_end(self):
        document = MagicMock()
        polls = [([document], {"INBOX": 7}), IMAP4_ABORT("command: NOOP => socket error: EOF")]

        def poll():
            result = polls.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        with patch.object(self.session, "_connect_sync", return_value=self.connection), \
             patch.object(self.session, "_poll_sync", side_effect=poll):
            self.session.open(3)
            await self.wait_for_signals(3)

        kinds = [s.kind for s in self.signals]
        self.assertEqual(kinds, [SignalKind.READY, SignalKind.DOCUMENT, SignalKind.END])
        self.assertTrue(all(s.generation == 3 for s in self.signals))
        self.assertIs(self.signals[1].payload, document)
        self.assertEqual(self.session._last_uids, {"INBOX": 7})

    async def test_connect_failure_reports_error(self):
        cause = OSError("connection refused")
        with patch.object(self.session, "_connect_sync", side_effect=cause):
            self.session.open(1)
            await self.wait_for_signals(1)

        self.assertEqual(self.signals[0].kind, SignalKind.ERROR)
        self.assertIs(self.signals[0].payload, cause)
        self.assertFalse(self.session.is_connected)

    async def test_abort_without_eof_is_an_error(self):
        with patch.object(self.session, "_connect_sync", return_value=self.connection), \
             patch.object(self.session, "_poll_sync", side_effect=IMAP4_ABORT("bad tag")):
            self.session.open(1)
            await self.wait_for_signals(2)

        self.assertEqual(self.signals[1].kind, SignalKind.ERROR)

    async def test_stalled_poll_reports_timeout(self):
        self.session.idle_timeout = 0.05

        def slow_poll():
            time.sleep(0.3)
            return [MagicMock()], {"INBOX": 9}

        with patch.object(self.session, "_connect_sync", return_value=self.connection), \
             patch.object(self.session, "_poll_sync", side_effect=slow_poll):
            self.session.open(1)
            await self.wait_for_signals(2)

        self.assertEqual(self.signals[1].kind, SignalKind.TIMEOUT)
        # The abandoned poll finishes in its thread; its UIDs must stay unseen
        await asyncio.sleep(0.4)
        self.assertEqual(self.session._last_uids, {})
        self.assertEqual(len(self.signals), 2)

    async def test_failed_body_fetch_is_retried_after_reconnect(self):
        self.session._last_uids["INBOX"] = 1
        broken = _mock_mailbox(new_uids=b"2")
        answer = broken.uid.side_effect

        def uid(command, *args):
            if command == "FETCH" and "BODY.PEEK" in args[-1]:
                raise IMAP4_ABORT("socket error")
            return answer(command, *args)

        broken.uid.side_effect = uid
        broken.untagged_responses = {}

        with patch.object(self.session, "_connect_sync", return_value=broken):
            self.session.open(1)
            await self.wait_for_signals(2)

        self.assertEqual(self.signals[1].kind, SignalKind.ERROR)
        self.assertEqual(self.session._last_uids, {"INBOX": 1})

        healthy = _mock_mailbox(new_uids=b"2")
        healthy.untagged_responses = {}
        with patch.object(self.session, "_connect_sync", return_value=healthy):
            self.session.open(2)
            await self.wait_for_signals(4)

        self.assertEqual(
            [s.kind for s in self.signals[2:4]], [SignalKind.READY, SignalKind.DOCUMENT]
        )
        self.assertEqual(self.signals[3].payload.subject, "Message 2")
        self.assertEqual(self.session._last_uids, {"INBOX": 2})

    async def test_close_cancels_session_and_drops_connection(self):
        with patch.object(self.session, "_connect_sync", return_value=self.connection), \
             patch.object(self.session, "_poll_sync", return_value=([], {})):
            self.session.poll_interval = 60
            self.session.open(1)
            await self.wait_for_signals(1)
            self.assertTrue(self.session.is_connected)

            self.session.close()

        self.assertFalse(self.session.is_connected)
        self.connection.shutdown.assert_called_once()


if __name__ == "__main__":
    unittest.main()
