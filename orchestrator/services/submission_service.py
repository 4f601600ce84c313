"""Document submission: the producer side of the pipeline.

Submitting a document:
1. upload the PDF to {tenant}/{document}/{file_name} in the documents bucket
2. save the FileRecord (uploaded)
3. create the pending status record
4. hand off by size:
   - at or above sync_size_threshold_mb: publish document.submitted (async)
   - below: dispatch the process_document Celery task directly (sync)
"""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import PurePosixPath

import structlog

from orchestrator.core.config import get_settings
from orchestrator.models.document import (
    FileRecord,
    FileStatus,
    OverallStatus,
    ProcessingMode,
)
from orchestrator.models.events import DocumentSubmittedEvent
from orchestrator.services.event_log import EventLog, get_event_log
from orchestrator.services.exceptions import ValidationError
from orchestrator.services.status_store import StatusStore, get_status_store
from orchestrator.services.storage_service import BlobStore, document_blob_key, get_blob_store

logger = structlog.get_logger(__name__)

# (document_id, tenant_id, blob_key) -> task id
TaskDispatcher = Callable[[str, str, str], str | None]


def dispatch_process_document(document_id: str, tenant_id: str, blob_key: str) -> str | None:
    """Queue the process_document Celery task."""
    from orchestrator.workers.tasks.document_tasks import process_document

    result = process_document.delay(document_id, tenant_id, blob_key)
    return result.id


@dataclass
class SubmissionResult:
    """Where a submitted document went."""

    document_id: str
    tenant_id: str
    blob_key: str
    processing_mode: ProcessingMode
    status: FileStatus = FileStatus.UPLOADED
    shard: int | None = None
    position: str | None = None
    task_id: str | None = None


class SubmissionService:
    """Accept uploads and hand them to the chunk workers."""

    def __init__(
        self,
        store: StatusStore | None = None,
        blob_store: BlobStore | None = None,
        event_log: EventLog | None = None,
        dispatcher: TaskDispatcher | None = None,
        sync_threshold_bytes: int | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._blob_store = blob_store
        self._event_log = event_log
        self.dispatcher = dispatcher or dispatch_process_document
        self.sync_threshold_bytes = (
            int(settings.sync_size_threshold_mb * 1024 * 1024)
            if sync_threshold_bytes is None
            else sync_threshold_bytes
        )

    @property
    def store(self) -> StatusStore:
        if self._store is None:
            self._store = get_status_store()
        return self._store

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = get_blob_store(get_settings().documents_bucket)
        return self._blob_store

    @property
    def event_log(self) -> EventLog:
        if self._event_log is None:
            self._event_log = get_event_log()
        return self._event_log

    def processing_mode_for(self, size: int) -> ProcessingMode:
        """Large uploads go through the event log; small ones straight to a worker."""
        if size >= self.sync_threshold_bytes:
            return ProcessingMode.ASYNC
        return ProcessingMode.SYNC

    async def submit_document(
        self,
        tenant_id: str,
        file_name: str,
        content: bytes,
        mime_type: str = "application/pdf",
        document_id: str | None = None,
    ) -> SubmissionResult:
        """Store an upload and start processing it.

        Args:
            tenant_id: Owning tenant.
            file_name: Original file name (directory parts are dropped).
            content: PDF bytes.
            mime_type: Content type recorded on the blob and file record.
            document_id: Optional identifier; a UUID is generated if omitted.

        Returns:
            SubmissionResult describing the hand-off.

        Raises:
            ValidationError: If the tenant, file name or content is missing.
            StreamUnavailableError: If the event could not be published. The
                document is marked failed first.
        """
        if not tenant_id or not tenant_id.strip():
            raise ValidationError("Tenant ID is required")
        if not content:
            raise ValidationError("No file uploaded")

        safe_name = PurePosixPath(file_name.replace("\\", "/")).name if file_name else ""
        if safe_name in ("", ".", ".."):
            raise ValidationError("File name is required")

        document_id = document_id or str(uuid.uuid4())
        blob_key = document_blob_key(tenant_id, document_id, safe_name)
        mode = self.processing_mode_for(len(content))

        with structlog.contextvars.bound_contextvars(
            document_id=document_id,
            tenant_id=tenant_id,
        ):
            await asyncio.to_thread(self.blob_store.put, blob_key, content, mime_type)

            now = datetime.now(UTC)
            await self.store.save_file(
                FileRecord(
                    document_id=document_id,
                    tenant_id=tenant_id,
                    file_name=safe_name,
                    file_size=len(content),
                    mime_type=mime_type,
                    storage_bucket=self.blob_store.bucket,
                    storage_key=blob_key,
                    processing_mode=mode,
                    status=FileStatus.UPLOADED,
                    uploaded_at=now,
                    updated_at=now,
                )
            )
            await self.store.create_status(document_id, tenant_id)

            result = SubmissionResult(
                document_id=document_id,
                tenant_id=tenant_id,
                blob_key=blob_key,
                processing_mode=mode,
            )
            try:
                if mode == ProcessingMode.ASYNC:
                    result.shard, result.position = (
                        await self.event_log.publish_document_submitted(
                            DocumentSubmittedEvent(
                                document_id=document_id,
                                tenant_id=tenant_id,
                                blob_key=blob_key,
                                size=len(content),
                                file_name=safe_name,
                            )
                        )
                    )
                else:
                    result.task_id = await asyncio.to_thread(
                        self.dispatcher, document_id, tenant_id, blob_key
                    )
            except Exception as e:
                await self._fail_handoff(document_id, str(e))
                raise

            logger.info(
                "document_submitted",
                processing_mode=mode.value,
                file_size=len(content),
                blob_key=blob_key,
            )
            return result

    async def _fail_handoff(self, document_id: str, reason: str) -> None:
        logger.error("document_handoff_failed", error=reason)
        message = f"Hand-off failed: {reason}"
        try:
            marked = await self.store.transition_status(
                document_id,
                OverallStatus.PENDING,
                OverallStatus.FAILED,
                {"error_message": message, "completed_at": datetime.now(UTC)},
            )
            if not marked:
                # A task enqueued before the error was raised has already started
                logger.warning("document_handoff_already_started")
                return
            await self.store.update_file_status(document_id, FileStatus.FAILED, message)
        except Exception as e:
            logger.error("document_handoff_fail_mark_failed", error=str(e))


@lru_cache(maxsize=1)
def get_submission_service() -> SubmissionService:
    """Get or create the SubmissionService singleton."""
    return SubmissionService()
