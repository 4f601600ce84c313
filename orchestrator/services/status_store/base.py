"""StatusStore contract shared by the Supabase and in-memory backends.

The store owns file records, document status records and page records.
Two operations carry the correctness of the whole pipeline:

- ``increment_processed`` is a single store-side add. Concurrent page
  completions each contribute exactly +1.
- ``transition_status`` is a compare-and-swap on the current status.
  Exactly one caller wins ``processing -> aggregating``.

Every status or page mutation is published to the attached change feed
with before/after images. A failed publish is logged, never raised: the
periodic ready scan picks up anything the feed missed.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from orchestrator.models.document import (
    DocumentStatusRecord,
    FileRecord,
    FileStatus,
    OverallStatus,
    is_valid_transition,
)
from orchestrator.models.events import ChangeType, RecordKind, StatusChange
from orchestrator.models.page import PageOutcome, PageRecord
from orchestrator.services.change_feed import ChangeFeed
from orchestrator.services.exceptions import InvalidStatusTransitionError

logger = structlog.get_logger(__name__)

DEFAULT_TENANT_LIST_LIMIT = 50


def utcnow() -> datetime:
    return datetime.now(UTC)


class StatusStore(ABC):
    """Durable store for document and page progress."""

    def __init__(
        self,
        change_feed: ChangeFeed | None = None,
        retention_days: int = 90,
    ) -> None:
        self.change_feed = change_feed
        self.retention_days = retention_days

    # =========================================================================
    # File records
    # =========================================================================

    @abstractmethod
    async def save_file(self, record: FileRecord) -> FileRecord:
        """Insert a file record.

        Raises:
            AlreadyExistsError: If a record exists for the document id.
        """

    @abstractmethod
    async def get_file(self, document_id: str) -> FileRecord | None:
        """Get a file record by document id."""

    @abstractmethod
    async def update_file_status(
        self,
        document_id: str,
        status: FileStatus,
        error_message: str | None = None,
    ) -> bool:
        """Set the file lifecycle status. Returns False if no record exists."""

    @abstractmethod
    async def list_files_by_tenant(
        self,
        tenant_id: str,
        limit: int = DEFAULT_TENANT_LIST_LIMIT,
    ) -> list[FileRecord]:
        """List a tenant's files, most recent upload first."""

    # =========================================================================
    # Document status records
    # =========================================================================

    @abstractmethod
    async def create_status(self, document_id: str, tenant_id: str) -> DocumentStatusRecord:
        """Insert a pending status record with zeroed counters.

        Raises:
            AlreadyExistsError: If called twice for the same document.
        """

    @abstractmethod
    async def set_total_pages(self, document_id: str, total_pages: int) -> DocumentStatusRecord:
        """Set (not add) the page total. Repeating the call is harmless."""

    @abstractmethod
    async def increment_processed(self, document_id: str) -> int:
        """Atomically add one to the processed counter. Returns the new value."""

    @abstractmethod
    async def increment_failed(self, document_id: str) -> int:
        """Atomically add one to the failed counter. Returns the new value."""

    @abstractmethod
    async def update_overall_status(
        self,
        document_id: str,
        status: OverallStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> DocumentStatusRecord:
        """Unconditionally set the overall status."""

    @abstractmethod
    async def transition_status(
        self,
        document_id: str,
        expected: OverallStatus,
        new_status: OverallStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> bool:
        """Set ``new_status`` only if the current status equals ``expected``.

        Returns:
            True if this call performed the transition.

        Raises:
            InvalidStatusTransitionError: If ``expected -> new_status`` is not
                an edge of the state machine.
        """

    @abstractmethod
    async def get_document(self, document_id: str) -> DocumentStatusRecord | None:
        """Get a status record by document id."""

    @abstractmethod
    async def list_documents_by_tenant(
        self,
        tenant_id: str,
        limit: int = DEFAULT_TENANT_LIST_LIMIT,
    ) -> list[DocumentStatusRecord]:
        """List a tenant's status records, most recent first."""

    @abstractmethod
    async def scan_ready_for_aggregation(self) -> list[DocumentStatusRecord]:
        """Records with processed == total, total > 0 and status processing."""

    @abstractmethod
    async def scan_stale(
        self,
        statuses: list[OverallStatus],
        updated_before: datetime,
    ) -> list[DocumentStatusRecord]:
        """Records in one of ``statuses`` not updated since ``updated_before``."""

    # =========================================================================
    # Page records
    # =========================================================================

    @abstractmethod
    async def record_page(
        self,
        document_id: str,
        tenant_id: str,
        page_number: int,
        outcome: PageOutcome,
    ) -> PageRecord:
        """Upsert the outcome for one page (last write wins)."""

    @abstractmethod
    async def get_pages(self, document_id: str) -> list[PageRecord]:
        """All page records of a document, ordered by page number."""

    # =========================================================================
    # Helpers
    # =========================================================================

    def _expires_at(self, start: datetime) -> datetime:
        return start + timedelta(days=self.retention_days)

    def _validate_status_transition(
        self,
        current: OverallStatus,
        target: OverallStatus,
    ) -> None:
        """Validate that a status transition is allowed.

        Raises:
            InvalidStatusTransitionError: If transition is not allowed.
        """
        if not is_valid_transition(current, target):
            raise InvalidStatusTransitionError(current.value, target.value)

    async def _emit(
        self,
        record_kind: RecordKind,
        document_id: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        """Publish a mutation to the change feed, if one is attached."""
        if self.change_feed is None:
            return

        if before is None:
            event_name = ChangeType.INSERT
        elif after is None:
            event_name = ChangeType.REMOVE
        else:
            event_name = ChangeType.MODIFY

        change = StatusChange(
            event_name=event_name,
            record_kind=record_kind,
            document_id=document_id,
            before=before,
            after=after,
        )
        try:
            await self.change_feed.publish(change)
        except Exception as e:
            logger.warning(
                "status_change_publish_failed",
                document_id=document_id,
                record_kind=record_kind.value,
                error=str(e),
            )
