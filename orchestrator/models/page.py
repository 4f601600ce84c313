"""Page-level models.

Each page ends in exactly one PageOutcome, decided when the page is
written: a PageSuccess carrying the analysis, or a PageFailure carrying
the reason and time of failure.
"""

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class AnalysisPayload(BaseModel):
    """Structured analysis returned for one page of text."""

    summary: str = ""
    entities: list[Any] = Field(default_factory=list)
    key_points: list[str] = Field(default_factory=list, alias="keyPoints")
    sentiment: str = ""

    model_config = {"populate_by_name": True, "extra": "allow"}


class PageSuccess(BaseModel):
    """Page analyzed successfully."""

    status: Literal["success"] = "success"
    analysis: AnalysisPayload


class PageFailure(BaseModel):
    """Page could not be analyzed; recorded instead of being dropped."""

    status: Literal["failed"] = "failed"
    reason: str
    failed_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC), alias="failedAt"
    )

    model_config = {"populate_by_name": True}


PageOutcome = Annotated[PageSuccess | PageFailure, Field(discriminator="status")]


class PageRecord(BaseModel):
    """Stored outcome for one (document, page number)."""

    document_id: str = Field(..., alias="documentId")
    tenant_id: str = Field(..., alias="tenantId")
    page_number: int = Field(..., ge=1, alias="pageNumber")
    outcome: PageOutcome
    created_at: datetime | None = Field(None, alias="createdAt")
    updated_at: datetime | None = Field(None, alias="updatedAt")

    model_config = {"populate_by_name": True}

    @property
    def is_success(self) -> bool:
        """Check if the page outcome is a success."""
        return isinstance(self.outcome, PageSuccess)
