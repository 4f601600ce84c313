"""Completion watcher: decides when a document is ready to aggregate.

Two sources of candidates:
- push: status change feed entries carrying before/after images
- poll: periodic scan_ready_for_aggregation on the status store

A candidate is a STATUS record whose after image has
processed_pages == total_pages > 0 and overall_status == processing.
Both sources can report the same document; duplicate triggers are
resolved by the Aggregator's compare-and-swap.
"""

import asyncio
import os
import socket
from functools import lru_cache

import structlog
from pydantic import ValidationError as PydanticValidationError

from orchestrator.core.config import get_settings
from orchestrator.models.document import DocumentStatusRecord
from orchestrator.models.events import RecordKind, StatusChange
from orchestrator.services.aggregator import AggregationResult, Aggregator, get_aggregator
from orchestrator.services.change_feed import ChangeFeed, get_change_feed
from orchestrator.services.status_store import StatusStore, get_status_store

logger = structlog.get_logger(__name__)


def ready_record(change: StatusChange) -> DocumentStatusRecord | None:
    """Return the after image if this change makes a document ready to aggregate."""
    if change.record_kind != RecordKind.STATUS or change.after is None:
        return None

    try:
        record = DocumentStatusRecord.model_validate(change.after)
    except PydanticValidationError as e:
        logger.warning(
            "status_change_image_invalid",
            document_id=change.document_id,
            error=str(e),
        )
        return None

    return record if record.is_ready_for_aggregation else None


def _default_consumer_name() -> str:
    return f"watcher-{socket.gethostname()}-{os.getpid()}"


class CompletionWatcher:
    """Trigger aggregation from the change feed and the periodic ready scan.

    Example:
        >>> watcher = get_completion_watcher()
        >>> await watcher.start()
        >>> # ... documents complete ...
        >>> await watcher.stop()
    """

    def __init__(
        self,
        store: StatusStore | None = None,
        aggregator: Aggregator | None = None,
        change_feed: ChangeFeed | None = None,
        consumer_name: str | None = None,
        poll_interval: float | None = None,
        poll_enabled: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._aggregator = aggregator
        self._change_feed = change_feed
        self.consumer_name = consumer_name or _default_consumer_name()
        self.poll_interval = poll_interval or settings.aggregation_poll_interval
        self.poll_enabled = (
            settings.aggregation_poll_enabled if poll_enabled is None else poll_enabled
        )
        self.batch_size = settings.change_feed_batch_size
        self.block_ms = settings.change_feed_block_ms
        self.error_backoff = settings.consumer_error_backoff
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def store(self) -> StatusStore:
        if self._store is None:
            self._store = get_status_store()
        return self._store

    @property
    def aggregator(self) -> Aggregator:
        if self._aggregator is None:
            self._aggregator = get_aggregator()
        return self._aggregator

    @property
    def change_feed(self) -> ChangeFeed:
        if self._change_feed is None:
            self._change_feed = get_change_feed()
        return self._change_feed

    # =========================================================================
    # Single steps
    # =========================================================================

    async def handle_change(self, change: StatusChange) -> AggregationResult | None:
        """Trigger aggregation if the change made a document ready.

        Returns:
            The aggregation result, or None if nothing was triggered.
        """
        record = ready_record(change)
        if record is None:
            return None

        logger.info(
            "aggregation_triggered",
            document_id=record.document_id,
            source="change_feed",
            total_pages=record.total_pages,
        )
        return await self._trigger(record)

    async def poll_once(self) -> dict[str, int]:
        """Run one ready scan and trigger aggregation for every hit.

        Returns:
            Summary counts: checked, triggered, completed, deferred,
            skipped and errors.
        """
        records = await self.store.scan_ready_for_aggregation()
        summary = {
            "checked": len(records),
            "triggered": 0,
            "completed": 0,
            "deferred": 0,
            "skipped": 0,
            "errors": 0,
        }

        for record in records:
            logger.info(
                "aggregation_triggered",
                document_id=record.document_id,
                source="poll",
                total_pages=record.total_pages,
            )
            summary["triggered"] += 1
            result = await self._trigger(record)
            if result is None:
                summary["errors"] += 1
            else:
                summary[result.outcome] += 1

        if records:
            logger.info("aggregation_poll_complete", **summary)
        return summary

    async def consume_feed_once(self) -> int:
        """Read one batch from the change feed, handle and acknowledge it.

        Returns:
            Number of entries handled.
        """
        entries = await self.change_feed.read(
            self.consumer_name,
            count=self.batch_size,
            block_ms=self.block_ms,
        )
        for entry_id, change in entries:
            await self.handle_change(change)
            await self.change_feed.ack([entry_id])
        return len(entries)

    async def _trigger(self, record: DocumentStatusRecord) -> AggregationResult | None:
        try:
            return await self.aggregator.aggregate_results(
                record.document_id,
                record.tenant_id,
                record.total_pages,
            )
        except Exception as e:
            logger.error(
                "aggregation_trigger_failed",
                document_id=record.document_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the feed loop and, if enabled, the poll loop."""
        if self.is_running:
            logger.debug("completion_watcher_already_running")
            return

        self._stop_event = asyncio.Event()
        self._tasks = [asyncio.create_task(self._feed_loop(self._stop_event))]
        if self.poll_enabled:
            self._tasks.append(asyncio.create_task(self._poll_loop(self._stop_event)))

        logger.info(
            "completion_watcher_started",
            consumer=self.consumer_name,
            poll_enabled=self.poll_enabled,
            poll_interval=self.poll_interval,
        )

    async def stop(self) -> None:
        """Signal the loops to exit and wait for their current iteration."""
        if not self.is_running:
            return

        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("completion_watcher_stopped")

    @property
    def is_running(self) -> bool:
        """Check if the watcher loops are running."""
        return any(not task.done() for task in self._tasks)

    async def _feed_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.consume_feed_once()
            except Exception as e:
                logger.error("change_feed_consume_failed", error=str(e))
                await _wait(stop_event, self.error_backoff)

    async def _poll_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("aggregation_poll_failed", error=str(e))
            await _wait(stop_event, self.poll_interval)


async def _wait(stop_event: asyncio.Event, timeout: float) -> None:
    """Sleep up to ``timeout`` seconds, returning early when stopped."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except TimeoutError:
        pass


@lru_cache(maxsize=1)
def get_completion_watcher() -> CompletionWatcher:
    """Get or create the CompletionWatcher singleton."""
    return CompletionWatcher()
