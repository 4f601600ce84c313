"""Tests for the document event consumer."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from orchestrator.models.events import DocumentSubmittedEvent, LogEnvelope
from orchestrator.services.document_consumer import (
    DocumentEventConsumer,
    process_submitted_document,
)
from orchestrator.services.event_log import InMemoryEventLog, LogCursor
from orchestrator.services.exceptions import CatastrophicIngestError


def _event(document_id: str) -> DocumentSubmittedEvent:
    return DocumentSubmittedEvent(
        document_id=document_id,
        tenant_id="tenant-1",
        blob_key=f"tenant-1/{document_id}/report.pdf",
        size=100,
    )


async def _publish(event_log: InMemoryEventLog, *document_ids: str) -> None:
    for document_id in document_ids:
        await event_log.publish_document_submitted(_event(document_id))


def _handled(handler: AsyncMock) -> list[str]:
    return [call.args[0].document_id for call in handler.await_args_list]


@pytest.fixture
def handler() -> AsyncMock:
    """Event handler double."""
    return AsyncMock()


@pytest.fixture
def consumer(event_log: InMemoryEventLog, handler: AsyncMock) -> DocumentEventConsumer:
    """Consumer reading from the oldest retained entry."""
    return DocumentEventConsumer(
        event_log=event_log,
        handler=handler,
        from_start=True,
        batch_size=10,
        poll_interval=0.01,
        error_backoff=0.01,
    )


class TestPollOnce:
    """Tests for DocumentEventConsumer.poll_once."""

    @pytest.mark.asyncio
    async def test_handles_events_in_order(
        self,
        consumer: DocumentEventConsumer,
        event_log: InMemoryEventLog,
        handler: AsyncMock,
    ) -> None:
        """Events on a shard are handled in log order, once."""
        await _publish(event_log, "doc-1", "doc-2")

        assert await consumer.poll_once(0) == 2
        assert await consumer.poll_once(0) == 0
        assert _handled(handler) == ["doc-1", "doc-2"]

    @pytest.mark.asyncio
    async def test_latest_cursor_skips_earlier_events(
        self, event_log: InMemoryEventLog, handler: AsyncMock
    ) -> None:
        """Without from_start only events after startup are handled."""
        await _publish(event_log, "doc-old")
        consumer = DocumentEventConsumer(event_log=event_log, handler=handler)

        await consumer.poll_once(0)
        await _publish(event_log, "doc-new")
        await consumer.poll_once(0)

        assert _handled(handler) == ["doc-new"]

    @pytest.mark.asyncio
    async def test_other_event_types_skipped(
        self,
        consumer: DocumentEventConsumer,
        event_log: InMemoryEventLog,
        handler: AsyncMock,
    ) -> None:
        """Envelopes that are not document.submitted are ignored."""
        await event_log.publish(
            LogEnvelope(event_type="document.deleted", data={"documentId": "doc-1"}),
            partition_key="tenant-1",
        )

        assert await consumer.poll_once(0) == 1
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_event_data_skipped(
        self,
        consumer: DocumentEventConsumer,
        event_log: InMemoryEventLog,
        handler: AsyncMock,
    ) -> None:
        """A submitted event missing fields is logged and passed over."""
        await event_log.publish(
            LogEnvelope(event_type="document.submitted", data={"documentId": "doc-1"}),
            partition_key="tenant-1",
        )
        await _publish(event_log, "doc-2")

        await consumer.poll_once(0)

        assert _handled(handler) == ["doc-2"]

    @pytest.mark.asyncio
    async def test_ingest_failure_does_not_stop_shard(
        self,
        consumer: DocumentEventConsumer,
        event_log: InMemoryEventLog,
        handler: AsyncMock,
    ) -> None:
        """A document that failed to ingest does not block the next one."""
        handler.side_effect = [CatastrophicIngestError("doc-1", "Invalid PDF"), None]
        await _publish(event_log, "doc-1", "doc-2")

        await consumer.poll_once(0)

        assert _handled(handler) == ["doc-1", "doc-2"]

    @pytest.mark.asyncio
    async def test_unexpected_error_redelivers_from_failed_event(
        self,
        consumer: DocumentEventConsumer,
        event_log: InMemoryEventLog,
        handler: AsyncMock,
    ) -> None:
        """The cursor stays on the last handled event when the handler raises."""
        handler.side_effect = [None, RuntimeError("store down"), None]
        await _publish(event_log, "doc-1", "doc-2")

        with pytest.raises(RuntimeError):
            await consumer.poll_once(0)
        await consumer.poll_once(0)

        assert _handled(handler) == ["doc-1", "doc-2", "doc-2"]

    @pytest.mark.asyncio
    async def test_expired_cursor_reacquired_from_start(
        self,
        consumer: DocumentEventConsumer,
        event_log: InMemoryEventLog,
        handler: AsyncMock,
    ) -> None:
        """A cursor behind trimmed history restarts at the oldest retained entry."""
        await _publish(event_log, "doc-1", "doc-2", "doc-3")
        consumer._cursors[0] = LogCursor(shard=0, position="1-0")
        event_log.trim(0, keep_last=1)

        await consumer.poll_once(0)

        assert _handled(handler) == ["doc-3"]


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_handles_events_until_stopped(
        self,
        consumer: DocumentEventConsumer,
        event_log: InMemoryEventLog,
        handler: AsyncMock,
    ) -> None:
        """Running shard loops pick up newly published events."""
        await consumer.start()
        assert consumer.is_running

        await _publish(event_log, "doc-1")
        for _ in range(100):
            if handler.await_count:
                break
            await asyncio.sleep(0.01)
        await consumer.stop()

        assert _handled(handler) == ["doc-1"]
        assert not consumer.is_running

    @pytest.mark.asyncio
    async def test_one_loop_per_shard(self, handler: AsyncMock) -> None:
        """Each shard gets its own loop."""
        consumer = DocumentEventConsumer(
            event_log=InMemoryEventLog(shard_count=3),
            handler=handler,
            poll_interval=0.01,
        )

        await consumer.start()
        task_count = len(consumer._tasks)
        await consumer.stop()

        assert task_count == 3


class TestDefaultHandler:
    """Tests for process_submitted_document."""

    @pytest.mark.asyncio
    async def test_runs_chunk_worker(self) -> None:
        """The default handler processes the event's document."""
        worker = MagicMock()
        worker.process_document = AsyncMock()

        with patch(
            "orchestrator.services.document_consumer.get_chunk_worker",
            return_value=worker,
        ):
            await process_submitted_document(_event("doc-1"))

        worker.process_document.assert_awaited_once_with(
            "doc-1", "tenant-1", "tenant-1/doc-1/report.pdf"
        )
