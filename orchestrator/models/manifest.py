"""Aggregated result (manifest) models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from orchestrator.models.page import AnalysisPayload


class ManifestEntry(BaseModel):
    """One page in the manifest, in page-number order."""

    page_number: int = Field(..., ge=1, alias="pageNumber")
    status: Literal["success", "failed"]
    analysis: AnalysisPayload | None = None
    error: str | None = None
    failed_at: datetime | None = Field(None, alias="failedAt")

    model_config = {"populate_by_name": True}


class Manifest(BaseModel):
    """Final aggregated JSON result for a document."""

    document_id: str = Field(..., alias="documentId")
    tenant_id: str = Field(..., alias="tenantId")
    processed_at: datetime = Field(..., alias="processedAt")
    total_pages: int = Field(..., ge=1, alias="totalPages")
    success_count: int = Field(..., ge=0, alias="successCount")
    failed_count: int = Field(..., ge=0, alias="failedCount")
    chunks: list[ManifestEntry] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    def to_json_bytes(self) -> bytes:
        """Serialize with camelCase keys, two-space indented."""
        return self.model_dump_json(
            by_alias=True, exclude_none=True, indent=2
        ).encode("utf-8")
