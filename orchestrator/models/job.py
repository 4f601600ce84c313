"""Read-side models returned to job status callers."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from orchestrator.models.document import FileStatus

# Overall status values plus the two read-side outcomes
JobState = Literal[
    "pending",
    "processing",
    "aggregating",
    "completed",
    "failed",
    "not_found",
    "unknown",
]


class JobProgress(BaseModel):
    """Page counters of a document."""

    processed: int = 0
    total: int = 0
    failed: int = 0


class JobTimestamps(BaseModel):
    """Lifecycle timestamps of a document."""

    uploaded: datetime | None = None
    started: datetime | None = None
    completed: datetime | None = None


class JobStatus(BaseModel):
    """Status of one submitted document, always drawn from JobState."""

    document_id: str = Field(..., alias="documentId")
    status: JobState
    file_name: str | None = Field(None, alias="fileName")
    progress: JobProgress = Field(default_factory=JobProgress)
    timestamps: JobTimestamps = Field(default_factory=JobTimestamps)
    result_key: str | None = Field(None, alias="resultKey")
    download_url: str | None = Field(None, alias="downloadUrl")
    error_message: str | None = Field(None, alias="errorMessage")

    model_config = {"populate_by_name": True}


class DownloadLink(BaseModel):
    """Time-limited link to a completed manifest."""

    document_id: str = Field(..., alias="documentId")
    download_url: str = Field(..., alias="downloadUrl")
    expires_at: datetime = Field(..., alias="expiresAt")

    model_config = {"populate_by_name": True}


class TenantJob(BaseModel):
    """One row of a tenant's job listing."""

    document_id: str = Field(..., alias="documentId")
    file_name: str = Field(..., alias="fileName")
    status: FileStatus
    uploaded_at: datetime = Field(..., alias="uploadedAt")

    model_config = {"populate_by_name": True}
