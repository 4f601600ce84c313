"""In-process StatusStore for local runs and tests.

Every operation runs under one lock, so a counter increment is a single
indivisible add exactly as the Postgres function is.
"""

import threading
from datetime import datetime
from typing import Any

import structlog

from orchestrator.models.document import (
    DocumentStatusRecord,
    FileRecord,
    FileStatus,
    OverallStatus,
)
from orchestrator.models.events import RecordKind
from orchestrator.models.page import PageOutcome, PageRecord
from orchestrator.services.change_feed import ChangeFeed
from orchestrator.services.exceptions import AlreadyExistsError, DocumentNotFoundError
from orchestrator.services.status_store.base import (
    DEFAULT_TENANT_LIST_LIMIT,
    StatusStore,
    utcnow,
)

logger = structlog.get_logger(__name__)


def _image(record: DocumentStatusRecord | PageRecord | None) -> dict[str, Any] | None:
    return record.model_dump(mode="json") if record is not None else None


class InMemoryStatusStore(StatusStore):
    """Dictionary-backed StatusStore guarded by a single lock."""

    def __init__(
        self,
        change_feed: ChangeFeed | None = None,
        retention_days: int = 90,
    ) -> None:
        super().__init__(change_feed=change_feed, retention_days=retention_days)
        self._lock = threading.Lock()
        self._files: dict[str, FileRecord] = {}
        self._statuses: dict[str, DocumentStatusRecord] = {}
        self._pages: dict[str, dict[int, PageRecord]] = {}

    # =========================================================================
    # File records
    # =========================================================================

    async def save_file(self, record: FileRecord) -> FileRecord:
        with self._lock:
            if record.document_id in self._files:
                raise AlreadyExistsError("File", record.document_id)
            if record.expires_at is None:
                record = record.model_copy(
                    update={"expires_at": self._expires_at(record.uploaded_at)}
                )
            self._files[record.document_id] = record
        logger.info(
            "file_record_saved",
            document_id=record.document_id,
            tenant_id=record.tenant_id,
        )
        return record

    async def get_file(self, document_id: str) -> FileRecord | None:
        with self._lock:
            return self._files.get(document_id)

    async def update_file_status(
        self,
        document_id: str,
        status: FileStatus,
        error_message: str | None = None,
    ) -> bool:
        with self._lock:
            record = self._files.get(document_id)
            if record is None:
                return False
            update: dict[str, Any] = {"status": status, "updated_at": utcnow()}
            if error_message is not None:
                update["error_message"] = error_message
            self._files[document_id] = record.model_copy(update=update)
        return True

    async def list_files_by_tenant(
        self,
        tenant_id: str,
        limit: int = DEFAULT_TENANT_LIST_LIMIT,
    ) -> list[FileRecord]:
        with self._lock:
            records = [r for r in self._files.values() if r.tenant_id == tenant_id]
        records.sort(key=lambda r: r.uploaded_at, reverse=True)
        return records[:limit]

    # =========================================================================
    # Document status records
    # =========================================================================

    async def create_status(self, document_id: str, tenant_id: str) -> DocumentStatusRecord:
        now = utcnow()
        with self._lock:
            if document_id in self._statuses:
                raise AlreadyExistsError("Document status", document_id)
            record = DocumentStatusRecord(
                document_id=document_id,
                tenant_id=tenant_id,
                created_at=now,
                updated_at=now,
                expires_at=self._expires_at(now),
            )
            self._statuses[document_id] = record
        await self._emit(RecordKind.STATUS, document_id, None, _image(record))
        return record

    def _replace_status(
        self,
        document_id: str,
        update: dict[str, Any],
    ) -> tuple[DocumentStatusRecord, DocumentStatusRecord]:
        # Caller holds the lock
        before = self._statuses.get(document_id)
        if before is None:
            raise DocumentNotFoundError(document_id)
        after = before.model_copy(update={**update, "updated_at": utcnow()})
        self._statuses[document_id] = after
        return before, after

    async def set_total_pages(self, document_id: str, total_pages: int) -> DocumentStatusRecord:
        with self._lock:
            before, after = self._replace_status(document_id, {"total_pages": total_pages})
        await self._emit(RecordKind.STATUS, document_id, _image(before), _image(after))
        return after

    async def increment_processed(self, document_id: str) -> int:
        with self._lock:
            current = self._statuses.get(document_id)
            if current is None:
                raise DocumentNotFoundError(document_id)
            before, after = self._replace_status(
                document_id, {"processed_pages": current.processed_pages + 1}
            )
        await self._emit(RecordKind.STATUS, document_id, _image(before), _image(after))
        return after.processed_pages

    async def increment_failed(self, document_id: str) -> int:
        with self._lock:
            current = self._statuses.get(document_id)
            if current is None:
                raise DocumentNotFoundError(document_id)
            before, after = self._replace_status(
                document_id, {"failed_pages": current.failed_pages + 1}
            )
        await self._emit(RecordKind.STATUS, document_id, _image(before), _image(after))
        return after.failed_pages

    async def update_overall_status(
        self,
        document_id: str,
        status: OverallStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> DocumentStatusRecord:
        update = {**(extra_fields or {}), "overall_status": status}
        with self._lock:
            before, after = self._replace_status(document_id, update)
        await self._emit(RecordKind.STATUS, document_id, _image(before), _image(after))
        logger.info(
            "document_status_updated",
            document_id=document_id,
            old_status=before.overall_status.value,
            new_status=status.value,
        )
        return after

    async def transition_status(
        self,
        document_id: str,
        expected: OverallStatus,
        new_status: OverallStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> bool:
        self._validate_status_transition(expected, new_status)
        update = {**(extra_fields or {}), "overall_status": new_status}
        with self._lock:
            current = self._statuses.get(document_id)
            if current is None:
                raise DocumentNotFoundError(document_id)
            if current.overall_status != expected:
                return False
            before, after = self._replace_status(document_id, update)
        await self._emit(RecordKind.STATUS, document_id, _image(before), _image(after))
        logger.info(
            "document_status_transitioned",
            document_id=document_id,
            old_status=expected.value,
            new_status=new_status.value,
        )
        return True

    async def get_document(self, document_id: str) -> DocumentStatusRecord | None:
        with self._lock:
            return self._statuses.get(document_id)

    async def list_documents_by_tenant(
        self,
        tenant_id: str,
        limit: int = DEFAULT_TENANT_LIST_LIMIT,
    ) -> list[DocumentStatusRecord]:
        with self._lock:
            records = [r for r in self._statuses.values() if r.tenant_id == tenant_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def scan_ready_for_aggregation(self) -> list[DocumentStatusRecord]:
        with self._lock:
            return [r for r in self._statuses.values() if r.is_ready_for_aggregation]

    async def scan_stale(
        self,
        statuses: list[OverallStatus],
        updated_before: datetime,
    ) -> list[DocumentStatusRecord]:
        with self._lock:
            return [
                r
                for r in self._statuses.values()
                if r.overall_status in statuses and r.updated_at < updated_before
            ]

    # =========================================================================
    # Page records
    # =========================================================================

    async def record_page(
        self,
        document_id: str,
        tenant_id: str,
        page_number: int,
        outcome: PageOutcome,
    ) -> PageRecord:
        now = utcnow()
        with self._lock:
            pages = self._pages.setdefault(document_id, {})
            before = pages.get(page_number)
            after = PageRecord(
                document_id=document_id,
                tenant_id=tenant_id,
                page_number=page_number,
                outcome=outcome,
                created_at=before.created_at if before else now,
                updated_at=now,
            )
            pages[page_number] = after
        await self._emit(RecordKind.PAGE, document_id, _image(before), _image(after))
        return after

    async def get_pages(self, document_id: str) -> list[PageRecord]:
        with self._lock:
            pages = list(self._pages.get(document_id, {}).values())
        return sorted(pages, key=lambda p: p.page_number)

