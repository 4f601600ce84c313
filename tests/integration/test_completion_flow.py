"""End-to-end tests for page counting, completion detection and aggregation.

All components run together over the in-memory backends: submission
publishes to the event log, the consumer hands events to the chunk
worker, the worker's counter updates reach the change feed and the
completion watcher triggers the aggregator.
"""

import asyncio
import json

import pytest

from conftest import make_analysis, make_extractor, make_pages, make_payload
from orchestrator.models.document import FileStatus, OverallStatus
from orchestrator.models.events import DocumentSubmittedEvent
from orchestrator.models.page import PageSuccess
from orchestrator.services.aggregator import Aggregator
from orchestrator.services.chunk_worker import ChunkWorker
from orchestrator.services.completion_watcher import CompletionWatcher
from orchestrator.services.document_consumer import DocumentEventConsumer
from orchestrator.services.event_log import InMemoryEventLog
from orchestrator.services.exceptions import (
    AnalysisRateLimitError,
    CatastrophicIngestError,
    StoreUnavailableError,
)
from orchestrator.services.status_store import InMemoryStatusStore
from orchestrator.services.storage_service import InMemoryBlobStore, manifest_key
from orchestrator.services.submission_service import SubmissionService

PDF_BYTES = b"%PDF-1.4 " + b"x" * 100


@pytest.fixture
def aggregator(store: InMemoryStatusStore, results_bucket: InMemoryBlobStore) -> Aggregator:
    """Aggregator over the in-memory backends."""
    return Aggregator(store=store, blob_store=results_bucket)


@pytest.fixture
def watcher(store, aggregator, change_feed) -> CompletionWatcher:
    """Watcher that never blocks on an empty feed."""
    watcher = CompletionWatcher(
        store=store,
        aggregator=aggregator,
        change_feed=change_feed,
        consumer_name="watcher-test",
        poll_enabled=False,
    )
    watcher.block_ms = 0
    watcher.batch_size = 100
    return watcher


def _worker(store, documents_bucket, pages=None, analysis=None, **kwargs) -> ChunkWorker:
    return ChunkWorker(
        store=store,
        blob_store=documents_bucket,
        extractor=make_extractor(make_pages(3) if pages is None else pages),
        analysis_service=analysis or make_analysis(),
        page_delay=0,
        **kwargs,
    )


async def _drain(watcher: CompletionWatcher) -> int:
    handled = 0
    while True:
        count = await watcher.consume_feed_once()
        if count == 0:
            return handled
        handled += count


async def _submit(store, documents_bucket, document_id: str = "doc-1") -> str:
    blob_key = f"tenant-1/{document_id}/report.pdf"
    documents_bucket.put(blob_key, PDF_BYTES, "application/pdf")
    await store.create_status(document_id, "tenant-1")
    return blob_key


def _manifest(results_bucket: InMemoryBlobStore, document_id: str = "doc-1") -> dict:
    return json.loads(results_bucket.get(manifest_key("tenant-1", document_id)))


# =============================================================================
# Counting and completion
# =============================================================================


class TestCompletionDetection:
    """Tests for completion detected from counter changes."""

    @pytest.mark.asyncio
    async def test_partial_failure_still_completes(
        self,
        store: InMemoryStatusStore,
        documents_bucket: InMemoryBlobStore,
        results_bucket: InMemoryBlobStore,
        watcher: CompletionWatcher,
    ) -> None:
        """A rate-limited page is a failed entry, and the document still completes."""
        blob_key = await _submit(store, documents_bucket)
        analysis = make_analysis({"Text of page 2": AnalysisRateLimitError("429")})

        await _worker(store, documents_bucket, analysis=analysis).process_document(
            "doc-1", "tenant-1", blob_key
        )
        await _drain(watcher)

        record = await store.get_document("doc-1")
        assert record.overall_status == OverallStatus.COMPLETED
        assert record.processed_pages == 3
        assert record.failed_pages == 1
        manifest = _manifest(results_bucket)
        assert manifest["successCount"] == 2
        assert manifest["failedCount"] == 1
        assert [c["status"] for c in manifest["chunks"]] == ["success", "failed", "success"]

    @pytest.mark.asyncio
    async def test_concurrent_pages_counted_exactly_once(
        self,
        store: InMemoryStatusStore,
        documents_bucket: InMemoryBlobStore,
        results_bucket: InMemoryBlobStore,
        watcher: CompletionWatcher,
    ) -> None:
        """Many concurrent page completions reach exactly the page total."""
        blob_key = await _submit(store, documents_bucket)
        worker = _worker(store, documents_bucket, pages=make_pages(25), page_concurrency=8)

        await worker.process_document("doc-1", "tenant-1", blob_key)
        await _drain(watcher)

        record = await store.get_document("doc-1")
        assert record.processed_pages == 25
        assert record.overall_status == OverallStatus.COMPLETED
        numbers = [c["pageNumber"] for c in _manifest(results_bucket)["chunks"]]
        assert numbers == list(range(1, 26))

    @pytest.mark.asyncio
    async def test_no_trigger_before_total_known(
        self,
        store: InMemoryStatusStore,
        watcher: CompletionWatcher,
    ) -> None:
        """A processing document with an unknown total is never aggregated."""
        await store.create_status("doc-1", "tenant-1")
        await store.transition_status("doc-1", OverallStatus.PENDING, OverallStatus.PROCESSING)

        await _drain(watcher)
        summary = await watcher.poll_once()

        assert summary["triggered"] == 0
        assert (await store.get_document("doc-1")).overall_status == OverallStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_download_failure_never_aggregates(
        self,
        store: InMemoryStatusStore,
        documents_bucket: InMemoryBlobStore,
        results_bucket: InMemoryBlobStore,
        watcher: CompletionWatcher,
    ) -> None:
        """A missing source goes pending, processing, failed with nothing counted."""
        await store.create_status("doc-1", "tenant-1")

        with pytest.raises(CatastrophicIngestError):
            await _worker(store, documents_bucket).process_document(
                "doc-1", "tenant-1", "tenant-1/doc-1/missing.pdf"
            )
        await _drain(watcher)

        record = await store.get_document("doc-1")
        assert record.overall_status == OverallStatus.FAILED
        assert record.total_pages == 0
        assert await store.get_pages("doc-1") == []
        assert not results_bucket.exists(manifest_key("tenant-1", "doc-1"))


# =============================================================================
# Duplicate and early triggers
# =============================================================================


class TestAggregationTriggers:
    """Tests for racing and premature aggregation triggers."""

    @pytest.mark.asyncio
    async def test_duplicate_triggers_aggregate_once(
        self,
        store: InMemoryStatusStore,
        documents_bucket: InMemoryBlobStore,
        aggregator: Aggregator,
    ) -> None:
        """Two simultaneous triggers produce one completion and one skip."""
        blob_key = await _submit(store, documents_bucket)
        await _worker(store, documents_bucket).process_document("doc-1", "tenant-1", blob_key)

        results = await asyncio.gather(
            aggregator.aggregate_results("doc-1", "tenant-1", 3),
            aggregator.aggregate_results("doc-1", "tenant-1", 3),
        )

        assert sorted(r.outcome for r in results) == ["completed", "skipped"]
        assert (await store.get_document("doc-1")).overall_status == OverallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_feed_and_poll_race(
        self,
        store: InMemoryStatusStore,
        documents_bucket: InMemoryBlobStore,
        watcher: CompletionWatcher,
    ) -> None:
        """The poll after a feed-triggered completion finds nothing ready."""
        blob_key = await _submit(store, documents_bucket)
        await _worker(store, documents_bucket).process_document("doc-1", "tenant-1", blob_key)

        await _drain(watcher)
        summary = await watcher.poll_once()

        assert summary["checked"] == 0
        assert (await store.get_document("doc-1")).overall_status == OverallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_missing_page_defers_then_completes(
        self,
        store: InMemoryStatusStore,
        results_bucket: InMemoryBlobStore,
        watcher: CompletionWatcher,
    ) -> None:
        """An early trigger goes back to processing and the poll finishes the job."""
        await store.create_status("doc-1", "tenant-1")
        await store.transition_status("doc-1", OverallStatus.PENDING, OverallStatus.PROCESSING)
        await store.set_total_pages("doc-1", 2)
        await store.record_page(
            "doc-1", "tenant-1", 1, PageSuccess(analysis=make_payload("Page 1"))
        )
        await store.increment_processed("doc-1")
        await store.increment_processed("doc-1")

        first = await watcher.poll_once()
        assert first["deferred"] == 1
        assert (await store.get_document("doc-1")).overall_status == OverallStatus.PROCESSING

        await store.record_page(
            "doc-1", "tenant-1", 2, PageSuccess(analysis=make_payload("Page 2"))
        )
        second = await watcher.poll_once()

        assert second["completed"] == 1
        assert [c["pageNumber"] for c in _manifest(results_bucket)["chunks"]] == [1, 2]


# =============================================================================
# Full pipeline
# =============================================================================


class TestSubmissionToCompletion:
    """Tests running submission through to the stored manifest."""

    @pytest.mark.asyncio
    async def test_async_submission_completes(
        self,
        store: InMemoryStatusStore,
        documents_bucket: InMemoryBlobStore,
        results_bucket: InMemoryBlobStore,
        event_log: InMemoryEventLog,
        watcher: CompletionWatcher,
    ) -> None:
        """An upload above the threshold is consumed, processed and aggregated."""
        worker = _worker(store, documents_bucket)

        async def _handle(event: DocumentSubmittedEvent):
            return await worker.process_document(
                event.document_id, event.tenant_id, event.blob_key
            )

        submission = SubmissionService(
            store=store,
            blob_store=documents_bucket,
            event_log=event_log,
            sync_threshold_bytes=10,
        )
        consumer = DocumentEventConsumer(event_log=event_log, handler=_handle, from_start=True)

        result = await submission.submit_document("tenant-1", "report.pdf", PDF_BYTES)
        assert await consumer.poll_once(result.shard) == 1
        await _drain(watcher)

        record = await store.get_document(result.document_id)
        assert record.overall_status == OverallStatus.COMPLETED
        assert record.completed_at is not None
        assert (await store.get_file(result.document_id)).status == FileStatus.COMPLETED
        manifest = _manifest(results_bucket, result.document_id)
        assert manifest["documentId"] == result.document_id
        assert manifest["totalPages"] == 3


# =============================================================================
# Ingest failure racing the aggregation trigger
# =============================================================================


class RacingStatusStore(InMemoryStatusStore):
    """Store whose last page write fails and whose full counter starts aggregation.

    The aggregation holds the aggregating status and waits in ``get_pages``
    until the worker has tried to mark the document failed.
    """

    def __init__(self, change_feed, failing_page: int) -> None:
        super().__init__(change_feed=change_feed)
        self.failing_page = failing_page
        self.aggregator: Aggregator | None = None
        self.aggregation: asyncio.Task | None = None
        self.fail_attempted = asyncio.Event()

    async def record_page(self, document_id, tenant_id, page_number, outcome):
        if page_number == self.failing_page:
            raise StoreUnavailableError("write failed")
        return await super().record_page(document_id, tenant_id, page_number, outcome)

    async def increment_processed(self, document_id: str) -> int:
        count = await super().increment_processed(document_id)
        record = await self.get_document(document_id)
        if record.is_ready_for_aggregation and self.aggregation is None:
            self.aggregation = asyncio.create_task(
                self.aggregator.aggregate_results(
                    document_id, record.tenant_id, record.total_pages
                )
            )
            await asyncio.sleep(0)
        return count

    async def transition_status(self, document_id, expected, new_status, extra_fields=None):
        result = await super().transition_status(
            document_id, expected, new_status, extra_fields
        )
        if new_status == OverallStatus.FAILED:
            self.fail_attempted.set()
        return result

    async def get_pages(self, document_id: str):
        if self.aggregation is not None and not self.fail_attempted.is_set():
            await self.fail_attempted.wait()
        return await super().get_pages(document_id)


class TestIngestFailureDuringAggregation:
    """Tests for a failed page write whose counter update triggered aggregation."""

    @pytest.mark.asyncio
    async def test_document_ends_failed(
        self,
        change_feed,
        documents_bucket: InMemoryBlobStore,
        results_bucket: InMemoryBlobStore,
    ) -> None:
        """The worker fails the document even when the aggregator took it first."""
        store = RacingStatusStore(change_feed, failing_page=3)
        store.aggregator = Aggregator(store=store, blob_store=results_bucket)
        watcher = CompletionWatcher(
            store=store,
            aggregator=store.aggregator,
            change_feed=change_feed,
            consumer_name="watcher-test",
            poll_enabled=False,
        )
        blob_key = await _submit(store, documents_bucket)

        with pytest.raises(CatastrophicIngestError):
            await _worker(store, documents_bucket).process_document(
                "doc-1", "tenant-1", blob_key
            )
        aggregation = await store.aggregation

        assert aggregation.outcome == "deferred"
        record = await store.get_document("doc-1")
        assert record.overall_status == OverallStatus.FAILED
        assert record.processed_pages == 3
        assert record.error_message.startswith("Page processing failed")
        assert (await watcher.poll_once())["checked"] == 0
        assert not results_bucket.exists(manifest_key("tenant-1", "doc-1"))
