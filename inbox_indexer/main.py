#!/usr/bin/env python3
"""
Mailbox Indexing Pipeline
Main orchestrator: keeps every mailbox connected and streams new mail into
the search index
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from .modules.batch_indexer import BatchIndexer
from .modules.connection_supervisor import ConnectionSupervisor
from .modules.elasticsearch_store import ElasticsearchStore
from .modules.errors import FlushError
from .modules.health_monitor import HealthMonitor
from .modules.imap_session import ImapSession
from .modules.models import AccountFailed, AccountReady, DocumentReady
from .utils.colors import Colors
from .utils.config import Config
from .utils.logging_setup import configure_logging
from .utils.metrics import PipelineMetrics
from .utils.retry import RetryPolicy


class MailIndexingPipeline:
    """Main pipeline orchestrator"""

    def __init__(self, config_file: str = ".env", config: Optional[Config] = None,
                 store=None, session_factory=None):
        """
        Initialize pipeline

        Args:
            config_file: Path to configuration file
            config: Pre-loaded configuration (skips reading config_file)
            store: Document store (defaults to ElasticsearchStore)
            session_factory: Builds per-account sessions (defaults to ImapSession)
        """
        self.config = config or Config(config_file)

        configure_logging(
            self.config.system.log_level,
            self.config.system.log_file,
            self.config.system.log_format,
        )
        self.logger = logging.getLogger("MailIndexingPipeline")
        self.logger.info("Initializing Mailbox Indexing Pipeline")

        self.metrics = PipelineMetrics()
        self.store = store or ElasticsearchStore(self.config.store)
        self.indexer = BatchIndexer(
            self.store,
            batch_size=self.config.indexer.batch_size,
            flush_delay=self.config.indexer.flush_delay,
            retry_policy=RetryPolicy(
                max_attempts=self.config.indexer.retry_attempts,
                base_delay=self.config.indexer.retry_base_delay,
            ),
            metrics=self.metrics,
        )
        self.supervisor = ConnectionSupervisor(
            session_factory=session_factory or self._build_session,
            base_delay=self.config.connection.reconnect_base_delay,
            max_attempts=self.config.connection.max_reconnect_attempts,
            metrics=self.metrics,
        )
        self.health_monitor = HealthMonitor(
            self.supervisor,
            interval=self.config.connection.health_check_interval,
            metrics=self.metrics,
        )

        self._stop_event: Optional[asyncio.Event] = None

    def _build_session(self, account, sink) -> ImapSession:
        connection = self.config.connection
        return ImapSession(
            account,
            sink,
            poll_interval=connection.poll_interval,
            idle_timeout=connection.idle_timeout,
            connect_timeout=connection.connect_timeout,
            initial_sync_days=connection.initial_sync_days,
        )

    async def run(self) -> None:
        """Connect every account and index mail until stop() is called"""
        self.config.validate()
        self._stop_event = asyncio.Event()
        self._install_signal_handlers()

        self.logger.info("Starting Mailbox Indexing Pipeline")
        await self.store.ensure_index()

        self.supervisor.start()
        await self.supervisor.initialize_accounts(self.config.email_accounts)
        self.health_monitor.start()

        try:
            await self._consume_events()
        finally:
            await self.shutdown()

    def stop(self) -> None:
        """Ask run() to finish; safe to call from a signal handler"""
        if self._stop_event is not None:
            self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform or off the main thread
                self.logger.debug(f"Signal handler for {sig.name} not installed")

    def _on_signal(self, sig: signal.Signals) -> None:
        self.logger.info(f"Received {sig.name}, shutting down gracefully...")
        self.stop()

    async def _consume_events(self) -> None:
        """Route supervisor events until the stop event is set"""
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        try:
            while not self._stop_event.is_set():
                get_event = asyncio.ensure_future(self.supervisor.events.get())
                done, _ = await asyncio.wait(
                    {get_event, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if get_event not in done:
                    get_event.cancel()
                    break
                await self._handle_event(get_event.result())
        finally:
            stop_waiter.cancel()

    async def _drain_events(self) -> None:
        """Route events still queued at shutdown so the final flush sees them"""
        events = self.supervisor.events
        while not events.empty():
            await self._handle_event(events.get_nowait())

    async def _handle_event(self, event) -> None:
        if isinstance(event, DocumentReady):
            try:
                await self.indexer.index_email(event.document)
            except Exception as e:
                self.logger.error(f"Error queueing email {event.document.id}: {e}", exc_info=True)
        elif isinstance(event, AccountReady):
            self.logger.info(f"Account ready: {event.account_id}")
        elif isinstance(event, AccountFailed):
            self.logger.error(
                f"Account {event.account_id} permanently failed: {event.cause}. "
                f"Check its credentials and restart to retry."
            )

    async def shutdown(self) -> None:
        """Stop health checks, close every session, then flush the indexer"""
        self.logger.info("Stopping Mailbox Indexing Pipeline")
        await self.health_monitor.stop()
        self.print_status_report()
        await self.supervisor.shutdown()
        await self._drain_events()

        try:
            await self.indexer.shutdown()
        except FlushError as e:
            self.logger.error(
                f"{e}: {[document.id for document in e.documents]}"
            )
        finally:
            await self.store.close()

        self.logger.info(f"Final metrics: {self.metrics.get_summary()}")
        self.logger.info("Pipeline stopped")

    def print_status_report(self) -> None:
        """Print per-account connection status to stdout"""
        statuses = self.supervisor.all_statuses()
        if not statuses:
            return
        print(Colors.colorize("Account status:", Colors.BOLD))
        for account_id, status in statuses.items():
            color = Colors.get_status_color(status.value)
            print(f"  {account_id}: {Colors.colorize(status.value, color)}")


def main():
    """Main entry point"""
    from .app_runner import AppRunner

    AppRunner(sys.argv).run()


if __name__ == "__main__":
    main()
