"""Service-layer exceptions for the document orchestrator.

Every error raised by a service carries a machine-readable ``code`` and an
``is_retryable`` hint so workers can decide between recording a failure and
letting the task runner retry.
"""

from typing import Any


class ServiceError(Exception):
    """Base class for all service-layer exceptions.

    Attributes:
        code: Machine-readable error code (e.g., "DOCUMENT_NOT_FOUND").
        message: Human-readable error message.
        details: Optional additional context.
        is_retryable: Whether the operation can be retried.
    """

    code: str = "SERVICE_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        is_retryable: bool | None = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        if is_retryable is not None:
            self.is_retryable = is_retryable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "is_retryable": self.is_retryable,
        }


# =============================================================================
# Store errors
# =============================================================================


class StoreUnavailableError(ServiceError):
    """Status store could not be reached or rejected the operation."""

    code = "STORE_UNAVAILABLE"
    is_retryable = True

    def __init__(
        self,
        message: str = "Status store unavailable",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)


class StoreNotConfiguredError(ServiceError):
    """Status store backend is missing credentials."""

    code = "STORE_NOT_CONFIGURED"

    def __init__(self, message: str = "Supabase not configured") -> None:
        super().__init__(message)


class AlreadyExistsError(ServiceError):
    """Record already exists for the given key."""

    code = "ALREADY_EXISTS"

    def __init__(self, record_kind: str, record_id: str) -> None:
        super().__init__(
            f"{record_kind} {record_id} already exists",
            {"record_kind": record_kind, "record_id": record_id},
        )
        self.record_kind = record_kind
        self.record_id = record_id


class NotFoundError(ServiceError):
    """Resource not found."""

    code = "NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        message = f"{resource} with ID {resource_id} not found"
        super().__init__(message, details)
        self.resource = resource
        self.resource_id = resource_id


class DocumentNotFoundError(NotFoundError):
    """Document status record not found."""

    code = "DOCUMENT_NOT_FOUND"

    def __init__(self, document_id: str) -> None:
        super().__init__("Document", document_id)


class FileRecordNotFoundError(NotFoundError):
    """File record not found."""

    code = "FILE_NOT_FOUND"

    def __init__(self, document_id: str) -> None:
        super().__init__("File", document_id)


class ResultNotFoundError(NotFoundError):
    """Aggregated result not available (document not completed)."""

    code = "RESULT_NOT_FOUND"

    def __init__(self, document_id: str) -> None:
        super().__init__("Result", document_id)


class InvalidStatusTransitionError(ServiceError):
    """Raised when an invalid status transition is attempted."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Invalid status transition from {current} to {target}",
            {"current": current, "target": target},
        )


class ValidationError(ServiceError):
    """Input validation failed."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str = "Validation failed") -> None:
        super().__init__(message)


# =============================================================================
# Blob errors
# =============================================================================


class BlobUnavailableError(ServiceError):
    """Blob store could not be reached or the operation failed."""

    code = "BLOB_UNAVAILABLE"
    is_retryable = True

    def __init__(
        self,
        message: str = "Blob store unavailable",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)


class BlobNotFoundError(NotFoundError):
    """Blob key does not exist."""

    code = "BLOB_NOT_FOUND"

    def __init__(self, key: str) -> None:
        super().__init__("Blob", key)
        self.key = key


# =============================================================================
# Processing errors
# =============================================================================


class AnalysisError(ServiceError):
    """Analysis service failed for a page (not retried)."""

    code = "ANALYSIS_FAILED"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details)


class AnalysisRateLimitError(AnalysisError):
    """Analysis service signalled a rate limit (retried with backoff)."""

    code = "ANALYSIS_RATE_LIMITED"
    is_retryable = True


class AnalysisConfigurationError(AnalysisError):
    """Analysis service is missing its API key."""

    code = "ANALYSIS_NOT_CONFIGURED"


class PageExtractionError(ServiceError):
    """The document could not be split into pages."""

    code = "PAGE_EXTRACTION_FAILED"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class CatastrophicIngestError(ServiceError):
    """Document-level failure before or while enumerating pages."""

    code = "INGEST_FAILED"

    def __init__(self, document_id: str, reason: str) -> None:
        super().__init__(
            f"Ingest failed for document {document_id}: {reason}",
            {"document_id": document_id},
        )
        self.document_id = document_id
        self.reason = reason


class AggregationError(ServiceError):
    """Aggregation step could not persist its output."""

    code = "AGGREGATION_FAILED"

    def __init__(self, document_id: str, reason: str) -> None:
        super().__init__(
            f"Aggregation failed for document {document_id}: {reason}",
            {"document_id": document_id},
        )
        self.document_id = document_id


class ManifestValidationError(ServiceError):
    """Manifest counts or ordering are inconsistent."""

    code = "MANIFEST_INVALID"

    def __init__(self, message: str) -> None:
        super().__init__(message)


# =============================================================================
# Stream errors
# =============================================================================


class StreamUnavailableError(ServiceError):
    """Redis stream operation failed."""

    code = "STREAM_UNAVAILABLE"
    is_retryable = True

    def __init__(self, message: str = "Stream unavailable") -> None:
        super().__init__(message)


class CursorExpiredError(ServiceError):
    """Log cursor points into trimmed history and must be reacquired."""

    code = "CURSOR_EXPIRED"
    is_retryable = True

    def __init__(self, shard: int, position: str) -> None:
        super().__init__(
            f"Cursor at {position} on shard {shard} has expired",
            {"shard": shard, "position": position},
        )
        self.shard = shard
        self.position = position
