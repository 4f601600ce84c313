"""Read side: job status, results and tenant listings.

Status queries never raise for a missing or unreachable document; they
answer with ``not_found`` or ``unknown``. Result retrieval raises
ResultNotFoundError until the document is completed.
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta
from functools import lru_cache

import structlog

from orchestrator.core.config import get_settings
from orchestrator.models.document import OverallStatus
from orchestrator.models.job import (
    DownloadLink,
    JobProgress,
    JobStatus,
    JobTimestamps,
    TenantJob,
)
from orchestrator.models.manifest import Manifest
from orchestrator.services.exceptions import (
    BlobNotFoundError,
    ResultNotFoundError,
    ServiceError,
)
from orchestrator.services.status_store import StatusStore, get_status_store
from orchestrator.services.status_store.base import DEFAULT_TENANT_LIST_LIMIT
from orchestrator.services.storage_service import (
    DEFAULT_SIGNED_URL_EXPIRES,
    BlobStore,
    get_blob_store,
)

logger = structlog.get_logger(__name__)


class JobStatusService:
    """Answer status and result queries for submitted documents."""

    def __init__(
        self,
        store: StatusStore | None = None,
        results_store: BlobStore | None = None,
        url_expires_in: int = DEFAULT_SIGNED_URL_EXPIRES,
    ) -> None:
        self._store = store
        self._results_store = results_store
        self.url_expires_in = url_expires_in

    @property
    def store(self) -> StatusStore:
        if self._store is None:
            self._store = get_status_store()
        return self._store

    @property
    def results_store(self) -> BlobStore:
        if self._results_store is None:
            self._results_store = get_blob_store(get_settings().results_bucket)
        return self._results_store

    async def get_job_status(self, document_id: str) -> JobStatus:
        """Get the status of a document.

        Returns:
            JobStatus; ``status`` is ``not_found`` for an unknown document
            and ``unknown`` when the store cannot be read.
        """
        try:
            record = await self.store.get_document(document_id)
            file_record = await self.store.get_file(document_id)
        except ServiceError as e:
            logger.warning(
                "job_status_unavailable",
                document_id=document_id,
                error=e.message,
            )
            return JobStatus(document_id=document_id, status="unknown")

        if record is None:
            return JobStatus(document_id=document_id, status="not_found")

        status = JobStatus(
            document_id=document_id,
            status=record.overall_status.value,
            file_name=file_record.file_name if file_record else None,
            progress=JobProgress(
                processed=record.processed_pages,
                total=record.total_pages,
                failed=record.failed_pages,
            ),
            timestamps=JobTimestamps(
                uploaded=file_record.uploaded_at if file_record else None,
                started=record.started_at,
                completed=record.completed_at,
            ),
            result_key=record.result_key,
            error_message=record.error_message,
        )

        if record.overall_status == OverallStatus.COMPLETED and record.result_key:
            try:
                status.download_url = await asyncio.to_thread(
                    self.results_store.create_signed_url,
                    record.result_key,
                    self.url_expires_in,
                )
            except ServiceError as e:
                logger.warning(
                    "job_download_url_failed",
                    document_id=document_id,
                    error=e.message,
                )

        return status

    async def get_job_result(self, document_id: str) -> Manifest:
        """Get the aggregated manifest of a completed document.

        Raises:
            ResultNotFoundError: If the document is missing, not completed,
                or its manifest is absent.
        """
        result_key = await self._completed_result_key(document_id)
        try:
            data = await asyncio.to_thread(self.results_store.get, result_key)
        except BlobNotFoundError:
            raise ResultNotFoundError(document_id) from None

        return Manifest.model_validate(json.loads(data))

    async def get_download_url(self, document_id: str) -> DownloadLink:
        """Get a time-limited download link for a completed manifest.

        Raises:
            ResultNotFoundError: If the document is not completed.
        """
        result_key = await self._completed_result_key(document_id)
        url = await asyncio.to_thread(
            self.results_store.create_signed_url,
            result_key,
            self.url_expires_in,
        )
        return DownloadLink(
            document_id=document_id,
            download_url=url,
            expires_at=datetime.now(UTC) + timedelta(seconds=self.url_expires_in),
        )

    async def list_tenant_jobs(
        self,
        tenant_id: str,
        limit: int = DEFAULT_TENANT_LIST_LIMIT,
    ) -> list[TenantJob]:
        """List a tenant's uploads, most recent first."""
        files = await self.store.list_files_by_tenant(tenant_id, limit=limit)
        return [
            TenantJob(
                document_id=f.document_id,
                file_name=f.file_name,
                status=f.status,
                uploaded_at=f.uploaded_at,
            )
            for f in files
        ]

    async def _completed_result_key(self, document_id: str) -> str:
        record = await self.store.get_document(document_id)
        if (
            record is None
            or record.overall_status != OverallStatus.COMPLETED
            or not record.result_key
        ):
            raise ResultNotFoundError(document_id)
        return record.result_key


@lru_cache(maxsize=1)
def get_job_status_service() -> JobStatusService:
    """Get or create the JobStatusService singleton."""
    return JobStatusService()
