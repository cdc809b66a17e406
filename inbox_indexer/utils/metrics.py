"""
Metrics Collection Module
Tracks ingestion, indexing and connection health statistics
"""

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Deque


@dataclass
class PipelineMetrics:
    """
    Collects operational metrics for monitoring system health.

    INDUSTRY CONTEXT: Teams usually export a summary like this to Prometheus
    or CloudWatch on a timer. The health monitor logs it once per sweep.
    """

    # Documents handed to the indexer since startup
    documents_queued: int = 0

    # Documents the store accepted in bulk or immediate writes
    documents_indexed: int = 0

    # Items rejected inside otherwise successful bulk calls
    item_failures: int = 0

    # Completed flushes (successful bulk calls, even with item failures)
    flushes: int = 0

    # Flushes whose bulk call failed entirely, by error type
    flush_failures: Counter = field(default_factory=Counter)

    # Duration of each flush in milliseconds
    # SECURITY STORY: bounded so a long-running process cannot grow it forever
    flush_time_ms: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    # Reconnects scheduled, keyed by trigger ("error", "end", "timeout", "forced")
    reconnects: Counter = field(default_factory=Counter)

    # Accounts that exhausted their retry budget
    permanent_failures: int = 0

    start_time: datetime = field(default_factory=datetime.now)

    def record_queued(self, count: int = 1):
        self.documents_queued += count

    def record_flush(self, indexed: int, failed: int, time_ms: float):
        """
        Record a bulk call that returned per-item results.

        Args:
            indexed: Items the store accepted
            failed: Items the store rejected
            time_ms: Wall time of the flush in milliseconds
        """
        self.flushes += 1
        self.documents_indexed += indexed
        self.item_failures += failed
        self.flush_time_ms.append(time_ms)

    def record_flush_failure(self, error_type: str):
        self.flush_failures[error_type] += 1

    def record_indexed(self, count: int = 1):
        """Record documents written outside of batching"""
        self.documents_indexed += count

    def record_reconnect(self, trigger: str):
        self.reconnects[trigger] += 1

    def record_permanent_failure(self):
        self.permanent_failures += 1

    def get_summary(self) -> Dict:
        """
        Get a summary of all metrics.

        Returns:
            Dictionary suitable for logging or export
        """
        stats = {}
        if self.flush_time_ms:
            sorted_times = sorted(self.flush_time_ms)
            n = len(sorted_times)
            stats = {
                "avg_ms": sum(sorted_times) / n,
                "min_ms": sorted_times[0],
                "max_ms": sorted_times[-1],
                "p50_ms": sorted_times[n // 2],
                "p95_ms": sorted_times[int(n * 0.95)] if n > 1 else sorted_times[0],
                "p99_ms": sorted_times[int(n * 0.99)] if n > 1 else sorted_times[0],
            }

        return {
            "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
            "documents_queued": self.documents_queued,
            "documents_indexed": self.documents_indexed,
            "item_failures": self.item_failures,
            "flushes": self.flushes,
            "flush_failures": dict(self.flush_failures),
            "flush_time_stats": stats,
            "reconnects": dict(self.reconnects),
            "permanent_failures": self.permanent_failures,
        }

    def reset(self):
        """
        Reset all metrics to initial state.

        Only reset when starting a new export window; cumulative totals since
        startup are lost.
        """
        self.documents_queued = 0
        self.documents_indexed = 0
        self.item_failures = 0
        self.flushes = 0
        self.flush_failures.clear()
        self.flush_time_ms.clear()
        self.reconnects.clear()
        self.permanent_failures = 0
        self.start_time = datetime.now()
