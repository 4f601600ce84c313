"""Pydantic models module."""

from orchestrator.models.document import (
    TERMINAL_STATUSES,
    VALID_STATUS_TRANSITIONS,
    DocumentStatusRecord,
    FileRecord,
    FileStatus,
    OverallStatus,
    ProcessingMode,
    is_valid_transition,
)
from orchestrator.models.events import (
    DOCUMENT_SUBMITTED,
    ChangeType,
    DocumentSubmittedEvent,
    LogEnvelope,
    LogRecord,
    RecordKind,
    StatusChange,
)
from orchestrator.models.job import (
    DownloadLink,
    JobProgress,
    JobState,
    JobStatus,
    JobTimestamps,
    TenantJob,
)
from orchestrator.models.manifest import Manifest, ManifestEntry
from orchestrator.models.page import (
    AnalysisPayload,
    PageFailure,
    PageOutcome,
    PageRecord,
    PageSuccess,
)

__all__ = [
    # Document models
    "TERMINAL_STATUSES",
    "VALID_STATUS_TRANSITIONS",
    "DocumentStatusRecord",
    "FileRecord",
    "FileStatus",
    "OverallStatus",
    "ProcessingMode",
    "is_valid_transition",
    # Page models
    "AnalysisPayload",
    "PageFailure",
    "PageOutcome",
    "PageRecord",
    "PageSuccess",
    # Manifest models
    "Manifest",
    "ManifestEntry",
    # Job models
    "DownloadLink",
    "JobProgress",
    "JobState",
    "JobStatus",
    "JobTimestamps",
    "TenantJob",
    # Event models
    "DOCUMENT_SUBMITTED",
    "ChangeType",
    "DocumentSubmittedEvent",
    "LogEnvelope",
    "LogRecord",
    "RecordKind",
    "StatusChange",
]
