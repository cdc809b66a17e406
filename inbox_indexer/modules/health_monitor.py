"""
Health Monitor Module
Periodic sweep that repairs connections stuck outside the ready state
"""

import asyncio
import logging
from typing import List, Optional

from ..utils.metrics import PipelineMetrics
from .models import ConnectionStatus


logger = logging.getLogger(__name__)

# Statuses a sweep leaves alone
SKIPPED_STATUSES = (ConnectionStatus.READY, ConnectionStatus.PERMANENTLY_FAILED)


class HealthMonitor:
    """
    Every `interval` seconds, force a reconnect for each account that is
    neither ready nor permanently failed.

    A sweep is only a hint to the supervisor: failure counters are never
    touched, so a flapping account still runs out of retries.
    """

    def __init__(self, supervisor, interval: float = 300.0,
                 metrics: Optional[PipelineMetrics] = None):
        self.supervisor = supervisor
        self.interval = interval
        self.metrics = metrics
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        logger.info(f"Health check every {self.interval:.0f}s")
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.check_once()
            except Exception:
                logger.exception("Health check failed")

    def check_once(self) -> List[str]:
        """
        Run one sweep.

        Returns:
            Ids of the accounts a reconnect was forced for
        """
        repaired = []
        for account_id, status in self.supervisor.all_statuses().items():
            if status in SKIPPED_STATUSES:
                continue
            logger.info(f"Health check: {account_id} is {status.value}, forcing reconnect")
            self.supervisor.reconnect(account_id)
            repaired.append(account_id)

        stats = self.supervisor.get_statistics()
        logger.info(
            f"Health check: {stats['active_connections']}/{stats['total_accounts']} "
            f"connections ready, {len(repaired)} repaired"
        )
        if self.metrics is not None:
            logger.debug(f"Pipeline metrics: {self.metrics.get_summary()}")
        return repaired
