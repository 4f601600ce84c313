"""Document-level models: uploaded file records and progress status records.

The DocumentStatusRecord is the single coordination point for completion:
aggregation is triggered only by comparing its processed-page counter to
its total-page count.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class FileStatus(str, Enum):
    """Lifecycle status of an uploaded file."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingMode(str, Enum):
    """How the upload was handed to a chunk worker.

    - sync: dispatched straight to the task queue
    - async: published to the document event log
    """

    SYNC = "sync"
    ASYNC = "async"


class OverallStatus(str, Enum):
    """Document processing status.

    States:
    - pending: Status record created, no worker has started
    - processing: Pages are being analyzed and counted
    - aggregating: One aggregator holds the document and is building the manifest
    - completed: Manifest written (terminal)
    - failed: Document-level failure (terminal)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[OverallStatus] = frozenset(
    {OverallStatus.COMPLETED, OverallStatus.FAILED}
)

# Valid status transitions for state machine validation
VALID_STATUS_TRANSITIONS: dict[OverallStatus, set[OverallStatus]] = {
    OverallStatus.PENDING: {
        OverallStatus.PROCESSING,
        OverallStatus.FAILED,  # Hand-off to the worker failed
    },
    OverallStatus.PROCESSING: {OverallStatus.AGGREGATING, OverallStatus.FAILED},
    OverallStatus.AGGREGATING: {
        OverallStatus.COMPLETED,
        OverallStatus.FAILED,
        OverallStatus.PROCESSING,  # Backslide when page writes are not yet visible
    },
    OverallStatus.COMPLETED: set(),  # Terminal state
    OverallStatus.FAILED: set(),  # Terminal state, no automatic retry
}


def is_valid_transition(current: OverallStatus, target: OverallStatus) -> bool:
    """Check whether ``current -> target`` is allowed by the state machine."""
    return target in VALID_STATUS_TRANSITIONS.get(current, set())


class FileRecord(BaseModel):
    """Uploaded file metadata. One per document."""

    document_id: str = Field(..., alias="documentId")
    tenant_id: str = Field(..., alias="tenantId")
    file_name: str = Field(..., alias="fileName")
    file_size: int = Field(..., ge=0, alias="fileSize")
    mime_type: str = Field("application/pdf", alias="mimeType")
    storage_bucket: str = Field(..., alias="storageBucket")
    storage_key: str = Field(..., alias="storageKey")
    processing_mode: ProcessingMode = Field(ProcessingMode.ASYNC, alias="processingMode")
    status: FileStatus = FileStatus.UPLOADED
    error_message: str | None = Field(None, alias="errorMessage")
    uploaded_at: datetime = Field(..., alias="uploadedAt")
    updated_at: datetime = Field(..., alias="updatedAt")
    expires_at: datetime | None = Field(None, alias="expiresAt")

    model_config = {"populate_by_name": True}


class DocumentStatusRecord(BaseModel):
    """Per-document progress record.

    ``total_pages`` stays 0 until extraction finishes; a zero total never
    satisfies the completion check regardless of the counter.
    """

    document_id: str = Field(..., alias="documentId")
    tenant_id: str = Field(..., alias="tenantId")
    total_pages: int = Field(0, ge=0, alias="totalPages")
    processed_pages: int = Field(0, ge=0, alias="processedPages")
    failed_pages: int = Field(0, ge=0, alias="failedPages")
    overall_status: OverallStatus = Field(OverallStatus.PENDING, alias="overallStatus")
    result_key: str | None = Field(None, alias="resultKey")
    error_message: str | None = Field(None, alias="errorMessage")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")
    started_at: datetime | None = Field(None, alias="startedAt")
    completed_at: datetime | None = Field(None, alias="completedAt")
    expires_at: datetime | None = Field(None, alias="expiresAt")

    model_config = {"populate_by_name": True}

    @property
    def is_terminal(self) -> bool:
        """Check if the document reached completed or failed."""
        return self.overall_status in TERMINAL_STATUSES

    @property
    def is_ready_for_aggregation(self) -> bool:
        """Check if every page has been counted and nobody is aggregating yet."""
        return (
            self.total_pages > 0
            and self.processed_pages == self.total_pages
            and self.overall_status == OverallStatus.PROCESSING
        )
