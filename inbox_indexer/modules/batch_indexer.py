"""
Batch Indexer Module
Buffers incoming documents and commits them to the store in bulk

PATTERN RECOGNITION: This is write-behind batching, the same trade Kafka
producers and log shippers make: a small latency window (flush_delay) in
exchange for far fewer round trips to the store.

Concurrency model: everything runs on one asyncio event loop. The pending
batch is swapped out with no await between reading and clearing it, so an
arrival during a bulk write always lands in the next batch.
"""

import asyncio
import logging
import math
import time
from typing import Any, Dict, List, Optional, Set

from ..utils.metrics import PipelineMetrics
from ..utils.retry import RetryPolicy
from .elasticsearch_store import BulkStore
from .errors import BulkRequestError, FlushError
from .models import (
    EMAIL_CATEGORIES,
    BulkItemError,
    BulkResult,
    Document,
    IndexStats,
    SearchQuery,
    SearchResult,
)


logger = logging.getLogger(__name__)


def format_bytes(size: int) -> str:
    """
    Format a byte count as a human-readable string

    Example:
        >>> format_bytes(1536)
        '1.5 KB'
    """
    if size <= 0:
        return "0 Bytes"

    units = ["Bytes", "KB", "MB", "GB", "TB"]
    exponent = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    value = round(size / (1024 ** exponent), 2)
    return f"{value:g} {units[exponent]}"


class BatchIndexer:
    """
    Absorbs a bursty stream of Documents and writes them in bounded bulk calls.

    A flush happens when the pending batch reaches batch_size, or flush_delay
    seconds after the most recent arrival. The timer is re-armed on every
    arrival, so a steady trickle of documents below batch_size keeps
    postponing the timed flush; the size trigger still bounds the batch.
    """

    def __init__(
        self,
        store: BulkStore,
        batch_size: int = 50,
        flush_delay: float = 5.0,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[PipelineMetrics] = None,
    ):
        """
        Args:
            store: Document store handle (owned by the caller)
            batch_size: Pending count that triggers an immediate flush
            flush_delay: Quiet period after the last arrival before a timed flush (seconds)
            retry_policy: Retry policy for every store call
            metrics: Optional metrics collector
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.store = store
        self.batch_size = batch_size
        self.flush_delay = flush_delay
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics or PipelineMetrics()

        self._pending: List[Document] = []
        self._flush_timer: Optional[asyncio.TimerHandle] = None
        self._in_flight: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Batched path
    # ------------------------------------------------------------------

    async def index_email(self, document: Document) -> None:
        """
        Queue a document for the next bulk write.

        Reaching batch_size starts the flush before this call yields, so no
        other producer can observe a full batch without a flush under way.
        """
        self._pending.append(document)
        self.metrics.record_queued()

        if len(self._pending) >= self.batch_size:
            await self._flush_batch()
        else:
            self._schedule_flush()

    def get_batch_queue_size(self) -> int:
        """Number of documents waiting for the next flush"""
        return len(self._pending)

    def _schedule_flush(self) -> None:
        """Replace any armed flush timer with a fresh one"""
        self._cancel_flush_timer()
        loop = asyncio.get_running_loop()
        self._flush_timer = loop.call_later(self.flush_delay, self._on_flush_timer)

    def _cancel_flush_timer(self) -> None:
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None

    def _on_flush_timer(self) -> None:
        self._flush_timer = None
        self._start_flush()

    def _start_flush(self) -> Optional["asyncio.Task[bool]"]:
        """
        Swap out the pending batch and start writing it.

        Returns:
            The write task, or None when nothing was pending
        """
        if not self._pending:
            return None

        self._cancel_flush_timer()
        batch = self._pending
        self._pending = []

        task = asyncio.get_running_loop().create_task(self._write_batch(batch))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _flush_batch(self) -> bool:
        """
        Flush the pending batch and wait for the write.

        The write runs in its own task under asyncio.shield: cancelling the
        caller never cancels a bulk write that is already under way.

        Returns:
            False if the bulk call failed and the batch was requeued
        """
        task = self._start_flush()
        if task is None:
            return True
        return await asyncio.shield(task)

    async def _write_batch(self, batch: List[Document]) -> bool:
        logger.info(f"Flushing batch of {len(batch)} emails...")
        started = time.monotonic()

        try:
            result = await self.bulk_index_emails(batch)
        except Exception as exc:
            logger.error(f"Failed to flush batch of {len(batch)} emails: {exc}")
            self.metrics.record_flush_failure(type(exc).__name__)
            # Requeued documents wait for the next index_email() or shutdown();
            # the flush timer is intentionally not re-armed here.
            self._pending.extend(batch)
            return False

        elapsed_ms = (time.monotonic() - started) * 1000
        self.metrics.record_flush(result.success, result.failed, elapsed_ms)

        if result.failed:
            logger.warning(
                f"Batch indexing completed with {result.failed} failures: "
                f"{[error.document_id for error in result.errors]}"
            )
        return True

    async def shutdown(self) -> None:
        """
        Cancel the flush timer and write everything still pending.

        Waits for in-flight flushes first, since a failed one requeues its
        batch, then performs one final flush.

        Raises:
            FlushError: If documents are still unwritten after the final flush
        """
        logger.info("Shutting down BatchIndexer...")
        self._cancel_flush_timer()

        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

        await self._flush_batch()

        if self._pending:
            remaining = list(self._pending)
            raise FlushError(
                f"{len(remaining)} emails could not be indexed before shutdown",
                documents=remaining,
            )

        logger.info("BatchIndexer shutdown complete")

    # ------------------------------------------------------------------
    # Bulk and direct writes
    # ------------------------------------------------------------------

    async def bulk_index_emails(self, documents: List[Document]) -> BulkResult:
        """
        Upsert documents in one bulk call, in the given order.

        Item failures are reported, never raised: each rejected position is
        mapped back to the document at the same index.

        Raises:
            BulkRequestError: The call as a whole failed (after retries) and
                may be resubmitted in full
        """
        if not documents:
            return BulkResult()

        items = [(document.id, document.to_source()) for document in documents]

        try:
            outcomes = await self.retry_policy.run(
                lambda: self.store.bulk_upsert(items, wait_for_visible=True),
                f"Bulk index of {len(documents)} emails",
            )
        except Exception as exc:
            raise BulkRequestError(
                f"Bulk index of {len(documents)} emails failed: {exc}",
                document_ids=[document.id for document in documents],
            ) from exc

        if len(outcomes) != len(documents):
            raise BulkRequestError(
                f"Bulk response has {len(outcomes)} results for {len(documents)} emails",
                document_ids=[document.id for document in documents],
            )

        result = BulkResult()
        for position, error in enumerate(outcomes):
            if error is None:
                result.success += 1
            else:
                result.failed += 1
                result.errors.append(BulkItemError(documents[position].id, error))

        logger.info(f"Bulk indexed {result.success} emails, {result.failed} failed")
        return result

    async def index_email_immediate(self, document: Document) -> None:
        """Write one document now and wait until it is searchable"""
        try:
            await self.retry_policy.run(
                lambda: self.store.upsert(
                    document.id, document.to_source(), wait_for_visible=True
                ),
                f"Index email {document.id}",
            )
        except Exception as exc:
            logger.error(f"Failed to index email {document.id}: {exc}")
            raise

        self.metrics.record_indexed()
        logger.info(f"Email indexed immediately: {document.id}")

    async def update_email_category(self, email_id: str, category: str) -> None:
        if category not in EMAIL_CATEGORIES:
            raise ValueError(f"Unknown category {category!r}")

        try:
            await self.retry_policy.run(
                lambda: self.store.update(
                    email_id, {"category": category}, wait_for_visible=True
                ),
                f"Update category of {email_id}",
            )
        except Exception as exc:
            logger.error(f"Failed to update category for {email_id}: {exc}")
            raise

        logger.info(f"Email category updated: {email_id} -> {category}")

    async def update_email(self, email_id: str, fields: Dict[str, Any]) -> None:
        """Update selected fields of a stored email"""
        try:
            await self.retry_policy.run(
                lambda: self.store.update(email_id, fields, wait_for_visible=True),
                f"Update email {email_id}",
            )
        except Exception as exc:
            logger.error(f"Failed to update email {email_id}: {exc}")
            raise

        logger.info(f"Email updated: {email_id}")

    async def delete_email(self, email_id: str) -> None:
        try:
            await self.retry_policy.run(
                lambda: self.store.delete(email_id, wait_for_visible=True),
                f"Delete email {email_id}",
            )
        except Exception as exc:
            logger.error(f"Failed to delete email {email_id}: {exc}")
            raise

        logger.info(f"Email deleted: {email_id}")

    async def bulk_delete_emails(self, email_ids: List[str]) -> None:
        if not email_ids:
            return

        try:
            outcomes = await self.retry_policy.run(
                lambda: self.store.bulk_delete(email_ids, wait_for_visible=True),
                f"Bulk delete of {len(email_ids)} emails",
            )
        except Exception as exc:
            logger.error(f"Bulk delete failed: {exc}")
            raise

        failed = [
            email_id for email_id, error in zip(email_ids, outcomes) if error is not None
        ]
        if failed:
            logger.warning(f"Bulk delete rejected {len(failed)} emails: {failed}")
        logger.info(f"Deleted {len(email_ids) - len(failed)} emails")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def email_exists(self, email_id: str) -> bool:
        try:
            return await self.store.exists(email_id)
        except Exception as exc:
            logger.error(f"Error checking email existence {email_id}: {exc}")
            return False

    async def get_email_by_id(self, email_id: str) -> Optional[Document]:
        source = await self.store.get(email_id)
        return Document.from_source(source) if source else None

    async def search_emails(self, query: SearchQuery) -> SearchResult:
        total, sources = await self.store.search(query)
        return SearchResult(total=total, emails=[Document.from_source(s) for s in sources])

    async def get_index_stats(self) -> IndexStats:
        """Total count, store size and per-category counts. Read-only."""
        try:
            total, size, categories = await asyncio.gather(
                self.store.count(),
                self.store.size_in_bytes(),
                self.store.category_counts(),
            )
        except Exception as exc:
            logger.error(f"Error getting index stats: {exc}")
            raise

        return IndexStats(
            total_emails=total,
            index_size=format_bytes(size),
            category_counts=dict(categories),
        )
