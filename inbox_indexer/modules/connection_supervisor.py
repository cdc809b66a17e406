"""
Connection Supervisor Module
Keeps one live session per mailbox account and repairs it after failures

State machine per account:

    disconnected -> connecting -> ready
    ready -> reconnecting                    (graceful end / stall)
    connecting | ready -> error -> reconnecting -> connecting
    any -> permanently_failed                (retry budget exhausted)

Two failure policies:
- error: exponential backoff, base_delay * 2 ** failures (5s/10s/20s/40s/80s),
  counting toward max_attempts
- end / timeout: fixed base_delay, failure counter untouched

Sessions report signals into one inbox drained by a single dispatcher task,
so every transition for an account runs in the order its signals arrived.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..utils.config import MailAccount
from ..utils.metrics import PipelineMetrics
from ..utils.sanitization import redact_email
from .imap_session import ImapSession, SignalSink
from .models import (
    AccountFailed,
    AccountReady,
    ConnectionStatus,
    DocumentReady,
    SessionSignal,
    SignalKind,
)


logger = logging.getLogger(__name__)

SessionFactory = Callable[[MailAccount, SignalSink], Any]


@dataclass
class ConnectionState:
    """Runtime record for one account, mutated only by the supervisor"""
    account: MailAccount
    session: Any
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    failure_count: int = 0
    retry_handle: Optional[asyncio.TimerHandle] = None
    next_retry_delay: Optional[float] = None
    generation: int = 0

    def cancel_retry(self) -> None:
        if self.retry_handle is not None:
            self.retry_handle.cancel()
            self.retry_handle = None
        self.next_retry_delay = None


class ConnectionSupervisor:
    """
    Owns the per-account connection state machines.

    Outbound events (AccountReady, AccountFailed, DocumentReady) are put on
    the `events` queue; consumers read the queue rather than registering
    callbacks.
    """

    def __init__(
        self,
        session_factory: SessionFactory = ImapSession,
        base_delay: float = 5.0,
        max_attempts: int = 5,
        metrics: Optional[PipelineMetrics] = None,
    ):
        """
        Args:
            session_factory: Builds a session for (account, signal sink)
            base_delay: Reconnect base delay in seconds
            max_attempts: Consecutive error retries before giving up
            metrics: Optional metrics collector
        """
        self.session_factory = session_factory
        self.base_delay = base_delay
        self.max_attempts = max_attempts
        self.metrics = metrics or PipelineMetrics()

        self.events: asyncio.Queue = asyncio.Queue()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._states: Dict[str, ConnectionState] = {}
        self._dispatcher: Optional[asyncio.Task] = None
        # Shared across registrations so a removed account's late signals
        # can never match a newer incarnation
        self._generations = itertools.count(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start draining session signals"""
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        while True:
            signal = await self._inbox.get()
            try:
                self.handle_signal(signal)
            except Exception:
                logger.exception(f"Error handling {signal.kind.value} for {signal.account_id}")

    async def initialize_accounts(self, accounts: List[MailAccount]) -> None:
        """Register every enabled account"""
        enabled = [account for account in accounts if account.enabled]
        logger.info(f"Initializing {len(enabled)} email account(s)...")
        for account in enabled:
            self.register(account)

    async def shutdown(self) -> None:
        """Cancel every timer, close every session and stop the dispatcher"""
        logger.info("Shutting down Connection Supervisor...")

        for account_id, state in list(self._states.items()):
            state.cancel_retry()
            try:
                state.session.close()
                logger.info(f"Disconnected: {account_id}")
            except Exception as exc:
                logger.error(f"Error disconnecting {account_id}: {exc}")
        self._forward_pending_documents()
        self._states.clear()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        logger.info("Connection Supervisor shutdown complete")

    def _forward_pending_documents(self) -> None:
        """Hand on documents sessions reported but the dispatcher never reached"""
        forwarded = 0
        while not self._inbox.empty():
            signal = self._inbox.get_nowait()
            if signal.kind != SignalKind.DOCUMENT:
                continue
            state = self._states.get(signal.account_id)
            if state is None or signal.generation != state.generation:
                continue
            self.events.put_nowait(DocumentReady(signal.payload))
            forwarded += 1
        if forwarded:
            logger.info(f"Forwarded {forwarded} pending document(s) before shutdown")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def register(self, account: MailAccount) -> None:
        """Add an account and start connecting; no-op if already registered"""
        if account.account_id in self._states:
            logger.warning(
                f"Connection already exists for account: {redact_email(account.email)}"
            )
            return

        session = self.session_factory(account, self._inbox.put_nowait)
        self._states[account.account_id] = ConnectionState(account=account, session=session)
        logger.info(f"Added account {account.account_id} ({redact_email(account.email)})")
        self.connect(account.account_id)

    def connect(self, account_id: str) -> None:
        """Move an account to connecting and open a fresh session"""
        state = self._states.get(account_id)
        if state is None:
            logger.error(f"Cannot connect: no connection found for {account_id}")
            return

        if state.status == ConnectionStatus.PERMANENTLY_FAILED:
            logger.warning(
                f"Not connecting {account_id}: permanently failed, re-register to retry"
            )
            return

        state.cancel_retry()
        state.generation = next(self._generations)
        self._transition(state, ConnectionStatus.CONNECTING)
        state.session.open(state.generation)

    def reconnect(self, account_id: str) -> None:
        """
        Force an immediate attempt, skipping any scheduled delay.

        The failure counter is left alone: a forced attempt is a hint, only a
        ready signal proves recovery.
        """
        state = self._states.get(account_id)
        if state is None:
            logger.error(f"Cannot reconnect: no connection found for {account_id}")
            return
        if state.status == ConnectionStatus.PERMANENTLY_FAILED:
            return

        logger.info(f"Reconnecting account: {account_id}")
        self.metrics.record_reconnect("forced")
        self.connect(account_id)

    def reconnect_all(self) -> None:
        """Force reconnect every account that is not permanently failed"""
        logger.info("Force reconnecting all accounts...")
        for account_id in list(self._states):
            self.reconnect(account_id)

    def remove(self, account_id: str) -> None:
        """Close the session, cancel timers and forget the account"""
        state = self._states.pop(account_id, None)
        if state is None:
            return

        state.cancel_retry()
        state.session.close()
        logger.info(f"Removed account connection: {account_id}")

    def status_of(self, account_id: str) -> ConnectionStatus:
        state = self._states.get(account_id)
        if state is None:
            return ConnectionStatus.NOT_FOUND
        return state.status

    def all_statuses(self) -> Dict[str, ConnectionStatus]:
        return {account_id: state.status for account_id, state in self._states.items()}

    def failure_count(self, account_id: str) -> int:
        state = self._states.get(account_id)
        return state.failure_count if state else 0

    def next_retry_delay(self, account_id: str) -> Optional[float]:
        """Delay of the currently scheduled retry, if one is pending"""
        state = self._states.get(account_id)
        return state.next_retry_delay if state else None

    def account_ids(self) -> List[str]:
        return list(self._states)

    def get_active_connection_count(self) -> int:
        return sum(
            1 for state in self._states.values() if state.status == ConnectionStatus.READY
        )

    def get_statistics(self) -> Dict[str, Any]:
        total = len(self._states)
        active = self.get_active_connection_count()
        return {
            "total_accounts": total,
            "active_connections": active,
            "failed_connections": total - active,
            "reconnect_attempts": {
                account_id: state.failure_count for account_id, state in self._states.items()
            },
        }

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def handle_signal(self, signal: SessionSignal) -> None:
        """Apply one session signal to its account's state machine"""
        state = self._states.get(signal.account_id)
        if state is None:
            logger.debug(f"Dropping {signal.kind.value} for unknown account {signal.account_id}")
            return

        if signal.generation != state.generation:
            logger.debug(
                f"Dropping stale {signal.kind.value} for {signal.account_id} "
                f"(generation {signal.generation} != {state.generation})"
            )
            return

        if signal.kind == SignalKind.DOCUMENT:
            self.events.put_nowait(DocumentReady(signal.payload))
        elif signal.kind == SignalKind.READY:
            self._handle_ready(state)
        elif signal.kind == SignalKind.ERROR:
            self._handle_error(state, signal.payload)
        elif signal.kind == SignalKind.END:
            self._handle_end(state)
        elif signal.kind == SignalKind.TIMEOUT:
            self._handle_timeout(state)

    def _handle_ready(self, state: ConnectionState) -> None:
        if state.status == ConnectionStatus.PERMANENTLY_FAILED:
            return
        state.failure_count = 0
        self._transition(state, ConnectionStatus.READY)
        logger.info(f"Connection ready: {state.account.account_id}")
        self.events.put_nowait(AccountReady(state.account.account_id))

    def _handle_error(self, state: ConnectionState, cause: Optional[BaseException]) -> None:
        if state.status not in (ConnectionStatus.CONNECTING, ConnectionStatus.READY):
            logger.debug(
                f"Ignoring error for {state.account.account_id} in state {state.status.value}"
            )
            return

        account_id = state.account.account_id
        logger.error(f"Connection error for {account_id}: {cause}")
        self._transition(state, ConnectionStatus.ERROR)

        if state.failure_count >= self.max_attempts:
            logger.error(
                f"Max reconnection attempts reached for {account_id}; "
                f"account permanently failed"
            )
            state.cancel_retry()
            state.session.close()
            self._transition(state, ConnectionStatus.PERMANENTLY_FAILED)
            self.metrics.record_permanent_failure()
            self.events.put_nowait(AccountFailed(account_id, cause))
            return

        delay = self.base_delay * (2 ** state.failure_count)
        state.failure_count += 1
        logger.info(
            f"Scheduling reconnection attempt {state.failure_count}/{self.max_attempts} "
            f"for {account_id} in {delay:.1f}s"
        )
        self.metrics.record_reconnect("error")
        self._schedule_reconnect(state, delay)

    def _handle_end(self, state: ConnectionState) -> None:
        if state.status in (ConnectionStatus.PERMANENTLY_FAILED, ConnectionStatus.RECONNECTING):
            return
        logger.warning(f"Connection ended for {state.account.account_id}")
        self.metrics.record_reconnect("end")
        self._schedule_reconnect(state, self.base_delay)

    def _handle_timeout(self, state: ConnectionState) -> None:
        if state.status in (ConnectionStatus.PERMANENTLY_FAILED, ConnectionStatus.RECONNECTING):
            return
        logger.warning(f"Connection timed out for {state.account.account_id}; reconnecting")
        state.session.close()
        self.metrics.record_reconnect("timeout")
        self._schedule_reconnect(state, self.base_delay)

    def _schedule_reconnect(self, state: ConnectionState, delay: float) -> None:
        state.cancel_retry()
        account_id = state.account.account_id
        loop = asyncio.get_running_loop()
        state.retry_handle = loop.call_later(delay, self._on_retry_timer, account_id)
        state.next_retry_delay = delay
        self._transition(state, ConnectionStatus.RECONNECTING)

    def _on_retry_timer(self, account_id: str) -> None:
        state = self._states.get(account_id)
        if state is None:
            return
        state.retry_handle = None
        state.next_retry_delay = None
        self.connect(account_id)

    def _transition(self, state: ConnectionState, status: ConnectionStatus) -> None:
        if state.status != status:
            logger.debug(
                f"{state.account.account_id}: {state.status.value} -> {status.value}"
            )
        state.status = status
