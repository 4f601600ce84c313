"""Tests for the job status read side."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_file_record, make_payload
from orchestrator.models.document import FileStatus, OverallStatus
from orchestrator.models.page import PageFailure, PageSuccess
from orchestrator.services.aggregator import Aggregator
from orchestrator.services.exceptions import (
    BlobUnavailableError,
    ResultNotFoundError,
    StoreUnavailableError,
)
from orchestrator.services.job_status_service import JobStatusService
from orchestrator.services.status_store import InMemoryStatusStore
from orchestrator.services.storage_service import InMemoryBlobStore


async def _completed_document(
    store: InMemoryStatusStore, results_bucket: InMemoryBlobStore
) -> None:
    await store.save_file(make_file_record())
    await store.create_status("doc-1", "tenant-1")
    await store.transition_status("doc-1", OverallStatus.PENDING, OverallStatus.PROCESSING)
    await store.set_total_pages("doc-1", 2)
    await store.record_page("doc-1", "tenant-1", 1, PageSuccess(analysis=make_payload()))
    await store.record_page("doc-1", "tenant-1", 2, PageFailure(reason="boom"))
    await store.increment_processed("doc-1")
    await store.increment_processed("doc-1")
    await store.increment_failed("doc-1")
    await Aggregator(store=store, blob_store=results_bucket).aggregate_results(
        "doc-1", "tenant-1", 2
    )


@pytest.fixture
def service(store: InMemoryStatusStore, results_bucket: InMemoryBlobStore) -> JobStatusService:
    """JobStatusService over the in-memory backends."""
    return JobStatusService(store=store, results_store=results_bucket, url_expires_in=600)


class TestGetJobStatus:
    """Tests for get_job_status."""

    @pytest.mark.asyncio
    async def test_unknown_document_is_not_found(self, service: JobStatusService) -> None:
        """A missing record answers not_found."""
        status = await service.get_job_status("missing")

        assert status.status == "not_found"

    @pytest.mark.asyncio
    async def test_store_error_is_unknown(self, results_bucket: InMemoryBlobStore) -> None:
        """An unreachable store answers unknown instead of raising."""
        store = MagicMock()
        store.get_document = AsyncMock(side_effect=StoreUnavailableError())
        service = JobStatusService(store=store, results_store=results_bucket)

        status = await service.get_job_status("doc-1")

        assert status.status == "unknown"

    @pytest.mark.asyncio
    async def test_processing_progress(
        self, service: JobStatusService, store: InMemoryStatusStore
    ) -> None:
        """Progress reflects the counters of an in-flight document."""
        await store.save_file(make_file_record())
        await store.create_status("doc-1", "tenant-1")
        await store.transition_status(
            "doc-1",
            OverallStatus.PENDING,
            OverallStatus.PROCESSING,
            {"started_at": datetime.now(UTC)},
        )
        await store.set_total_pages("doc-1", 5)
        await store.increment_processed("doc-1")

        status = await service.get_job_status("doc-1")

        assert status.status == "processing"
        assert status.file_name == "report.pdf"
        assert (status.progress.processed, status.progress.total) == (1, 5)
        assert status.timestamps.started is not None
        assert status.download_url is None

    @pytest.mark.asyncio
    async def test_completed_has_download_url(
        self,
        service: JobStatusService,
        store: InMemoryStatusStore,
        results_bucket: InMemoryBlobStore,
    ) -> None:
        """A completed document carries its result key and a signed URL."""
        await _completed_document(store, results_bucket)

        status = await service.get_job_status("doc-1")

        assert status.status == "completed"
        assert status.result_key == "tenant-1/doc-1/results.json"
        assert status.download_url == "memory://results/tenant-1/doc-1/results.json?expires_in=600"
        assert status.progress.failed == 1
        assert status.timestamps.completed is not None

    @pytest.mark.asyncio
    async def test_signing_failure_still_returns_status(
        self, store: InMemoryStatusStore, results_bucket: InMemoryBlobStore
    ) -> None:
        """A signing error drops the URL but keeps the status."""
        await _completed_document(store, results_bucket)
        broken = MagicMock()
        broken.create_signed_url.side_effect = BlobUnavailableError("sign failed")
        service = JobStatusService(store=store, results_store=broken)

        status = await service.get_job_status("doc-1")

        assert status.status == "completed"
        assert status.download_url is None


class TestResults:
    """Tests for get_job_result and get_download_url."""

    @pytest.mark.asyncio
    async def test_result_before_completion(
        self, service: JobStatusService, store: InMemoryStatusStore
    ) -> None:
        """Results are unavailable until the document completes."""
        await store.create_status("doc-1", "tenant-1")

        with pytest.raises(ResultNotFoundError):
            await service.get_job_result("doc-1")

    @pytest.mark.asyncio
    async def test_result_after_completion(
        self,
        service: JobStatusService,
        store: InMemoryStatusStore,
        results_bucket: InMemoryBlobStore,
    ) -> None:
        """The stored manifest is parsed back."""
        await _completed_document(store, results_bucket)

        manifest = await service.get_job_result("doc-1")

        assert manifest.document_id == "doc-1"
        assert (manifest.success_count, manifest.failed_count) == (1, 1)
        assert [entry.status for entry in manifest.chunks] == ["success", "failed"]

    @pytest.mark.asyncio
    async def test_missing_manifest_blob(
        self,
        service: JobStatusService,
        store: InMemoryStatusStore,
        results_bucket: InMemoryBlobStore,
    ) -> None:
        """A completed record whose manifest is gone raises ResultNotFoundError."""
        await _completed_document(store, results_bucket)
        results_bucket.delete("tenant-1/doc-1/results.json")

        with pytest.raises(ResultNotFoundError):
            await service.get_job_result("doc-1")

    @pytest.mark.asyncio
    async def test_download_link(
        self,
        service: JobStatusService,
        store: InMemoryStatusStore,
        results_bucket: InMemoryBlobStore,
    ) -> None:
        """Download links expire after the configured interval."""
        await _completed_document(store, results_bucket)
        before = datetime.now(UTC)

        link = await service.get_download_url("doc-1")

        assert link.download_url.startswith("memory://results/")
        assert (link.expires_at - before).total_seconds() >= 600


class TestListTenantJobs:
    """Tests for list_tenant_jobs."""

    @pytest.mark.asyncio
    async def test_lists_tenant_uploads(
        self, service: JobStatusService, store: InMemoryStatusStore
    ) -> None:
        """Only the tenant's uploads are listed."""
        await store.save_file(make_file_record("doc-1"))
        await store.save_file(make_file_record("doc-2", tenant_id="tenant-2"))
        await store.update_file_status("doc-1", FileStatus.PROCESSING)

        jobs = await service.list_tenant_jobs("tenant-1")

        assert [job.document_id for job in jobs] == ["doc-1"]
        assert jobs[0].status == FileStatus.PROCESSING
