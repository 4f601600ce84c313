"""Event models for the document event log and the status change feed."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

DOCUMENT_SUBMITTED = "document.submitted"
EVENT_SOURCE = "document-orchestrator"


class DocumentSubmittedEvent(BaseModel):
    """Published once per upload; consumed by chunk workers."""

    document_id: str = Field(..., alias="documentId")
    tenant_id: str = Field(..., alias="tenantId")
    blob_key: str = Field(..., alias="blobKey")
    size: int = Field(0, ge=0)
    file_name: str | None = Field(None, alias="fileName")

    model_config = {"populate_by_name": True}


class LogEnvelope(BaseModel):
    """Wrapper written to the event log for every event."""

    event_type: str = Field(..., alias="eventType")
    data: dict[str, Any]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=lambda: {"source": EVENT_SOURCE})

    model_config = {"populate_by_name": True}


class LogRecord(BaseModel):
    """Envelope read back from a shard, with its position."""

    shard: int
    position: str
    partition_key: str = Field(..., alias="partitionKey")
    envelope: LogEnvelope

    model_config = {"populate_by_name": True}


class ChangeType(str, Enum):
    """Kind of store mutation carried on the change feed."""

    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


class RecordKind(str, Enum):
    """Which record a change refers to."""

    STATUS = "STATUS"
    PAGE = "PAGE"


class StatusChange(BaseModel):
    """Before/after images of one status store mutation.

    Images are raw row dictionaries; consumers parse them according to
    ``record_kind``.
    """

    event_name: ChangeType = Field(..., alias="eventName")
    record_kind: RecordKind = Field(..., alias="recordKind")
    document_id: str = Field(..., alias="documentId")
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    emitted_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="emittedAt"
    )

    model_config = {"populate_by_name": True}
