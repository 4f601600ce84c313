"""Consumer for ``document.submitted`` events on the partitioned event log.

Each shard is read with its own cursor. Events on a shard are handled
one at a time, in log order. A cursor that falls behind trimmed history
is reacquired at the oldest retained entry; events seen twice are
skipped by the chunk worker's pending -> processing compare-and-swap.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from orchestrator.core.config import get_settings
from orchestrator.models.events import DOCUMENT_SUBMITTED, DocumentSubmittedEvent, LogRecord
from orchestrator.services.chunk_worker import get_chunk_worker
from orchestrator.services.event_log import EventLog, LogCursor, get_event_log
from orchestrator.services.exceptions import CatastrophicIngestError, CursorExpiredError

logger = structlog.get_logger(__name__)

EventHandler = Callable[[DocumentSubmittedEvent], Awaitable[Any]]


async def process_submitted_document(event: DocumentSubmittedEvent) -> Any:
    """Default handler: run the chunk worker for the event's document."""
    return await get_chunk_worker().process_document(
        event.document_id,
        event.tenant_id,
        event.blob_key,
    )


class DocumentEventConsumer:
    """Pull document events from every shard and hand them to a handler.

    Example:
        >>> consumer = DocumentEventConsumer()
        >>> await consumer.start()
        >>> # ... events are processed ...
        >>> await consumer.stop()
    """

    def __init__(
        self,
        event_log: EventLog | None = None,
        handler: EventHandler | None = None,
        from_start: bool = False,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        error_backoff: float | None = None,
    ) -> None:
        settings = get_settings()
        self._event_log = event_log
        self.handler = handler or process_submitted_document
        self.from_start = from_start
        self.batch_size = batch_size or settings.consumer_batch_size
        self.poll_interval = (
            settings.consumer_poll_interval if poll_interval is None else poll_interval
        )
        self.error_backoff = (
            settings.consumer_error_backoff if error_backoff is None else error_backoff
        )
        self._cursors: dict[int, LogCursor] = {}
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def event_log(self) -> EventLog:
        if self._event_log is None:
            self._event_log = get_event_log()
        return self._event_log

    async def _cursor(self, shard: int) -> LogCursor:
        cursor = self._cursors.get(shard)
        if cursor is None:
            cursor = await self.event_log.get_cursor(shard, from_start=self.from_start)
            self._cursors[shard] = cursor
            logger.info(
                "document_consumer_cursor_acquired",
                shard=shard,
                position=cursor.position,
            )
        return cursor

    async def poll_once(self, shard: int) -> int:
        """Read and handle one batch from a shard.

        Returns:
            Number of records read.
        """
        cursor = await self._cursor(shard)
        try:
            records, next_cursor = await self.event_log.get_records(cursor, self.batch_size)
        except CursorExpiredError as e:
            logger.warning(
                "document_consumer_cursor_expired",
                shard=shard,
                position=e.position,
            )
            cursor = await self.event_log.get_cursor(shard, from_start=True)
            records, next_cursor = await self.event_log.get_records(cursor, self.batch_size)

        for record in records:
            await self._handle_record(record)
            # Cursor tracks the last handled event
            self._cursors[shard] = cursor.model_copy(update={"position": record.position})
        self._cursors[shard] = next_cursor
        return len(records)

    async def _handle_record(self, record: LogRecord) -> None:
        envelope = record.envelope
        if envelope.event_type != DOCUMENT_SUBMITTED:
            logger.debug(
                "document_event_skipped",
                event_type=envelope.event_type,
                position=record.position,
            )
            return

        try:
            event = DocumentSubmittedEvent.model_validate(envelope.data)
        except PydanticValidationError as e:
            logger.warning(
                "document_event_invalid",
                shard=record.shard,
                position=record.position,
                error=str(e),
            )
            return

        logger.info(
            "document_event_received",
            document_id=event.document_id,
            tenant_id=event.tenant_id,
            shard=record.shard,
            position=record.position,
        )
        try:
            await self.handler(event)
        except CatastrophicIngestError as e:
            # Already recorded as failed on the status record
            logger.error(
                "document_ingest_failed",
                document_id=e.document_id,
                reason=e.reason,
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start one polling loop per shard."""
        if self.is_running:
            logger.debug("document_consumer_already_running")
            return

        self._stop_event = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._shard_loop(shard, self._stop_event))
            for shard in self.event_log.shards
        ]
        logger.info(
            "document_consumer_started",
            shards=len(self._tasks),
            from_start=self.from_start,
        )

    async def stop(self) -> None:
        """Signal the loops to exit and wait for the event in hand to finish."""
        if not self.is_running:
            return

        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("document_consumer_stopped")

    @property
    def is_running(self) -> bool:
        """Check if any shard loop is running."""
        return any(not task.done() for task in self._tasks)

    async def _shard_loop(self, shard: int, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                count = await self.poll_once(shard)
            except Exception as e:
                logger.error("document_consumer_poll_failed", shard=shard, error=str(e))
                await _wait(stop_event, self.error_backoff)
                continue

            if count == 0:
                await _wait(stop_event, self.poll_interval)


async def _wait(stop_event: asyncio.Event, timeout: float) -> None:
    """Sleep up to ``timeout`` seconds, returning early when stopped."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except TimeoutError:
        pass
