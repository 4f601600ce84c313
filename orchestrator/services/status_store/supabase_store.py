"""Supabase-backed StatusStore.

Tables: ``file_records``, ``document_status``, ``document_pages``.

Counter increments, conditional transitions and page upserts run inside
Postgres functions (see supabase/migrations) so each is one atomic
statement on the server. The functions return the row before and after
the change, which is forwarded to the change feed.

NOTE: Uses asyncio.to_thread() to run synchronous Supabase client calls
without blocking the event loop.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from orchestrator.models.document import (
    DocumentStatusRecord,
    FileRecord,
    FileStatus,
    OverallStatus,
    ProcessingMode,
)
from orchestrator.models.events import RecordKind
from orchestrator.models.page import PageOutcome, PageRecord
from orchestrator.services.change_feed import ChangeFeed
from orchestrator.services.exceptions import (
    AlreadyExistsError,
    DocumentNotFoundError,
    ServiceError,
    StoreNotConfiguredError,
    StoreUnavailableError,
)
from orchestrator.services.status_store.base import (
    DEFAULT_TENANT_LIST_LIMIT,
    StatusStore,
    utcnow,
)
from orchestrator.services.supabase.client import get_supabase_client

logger = structlog.get_logger(__name__)

FILES_TABLE = "file_records"
STATUS_TABLE = "document_status"
PAGES_TABLE = "document_pages"
READY_VIEW = "document_status_ready"


def _serialize_fields(fields: dict[str, Any] | None) -> dict[str, Any]:
    """Convert datetimes and enums to JSON-safe values for RPC params."""
    serialized: dict[str, Any] = {}
    for key, value in (fields or {}).items():
        if isinstance(value, datetime):
            serialized[key] = value.isoformat()
        elif isinstance(value, Enum):
            serialized[key] = value.value
        else:
            serialized[key] = value
    return serialized


class SupabaseStatusStore(StatusStore):
    """StatusStore over Supabase tables and Postgres functions.

    Example:
        >>> store = SupabaseStatusStore(change_feed=get_change_feed())
        >>> await store.create_status("doc-123", "tenant-1")
        >>> await store.increment_processed("doc-123")
        1
    """

    def __init__(
        self,
        client: object | None = None,
        change_feed: ChangeFeed | None = None,
        retention_days: int = 90,
    ) -> None:
        super().__init__(change_feed=change_feed, retention_days=retention_days)
        self._client = client

    @property
    def client(self) -> object:
        """Get Supabase client.

        Raises:
            StoreNotConfiguredError: If Supabase is not configured.
        """
        if self._client is None:
            self._client = get_supabase_client()
            if self._client is None:
                raise StoreNotConfiguredError()
        return self._client

    # =========================================================================
    # File records
    # =========================================================================

    async def save_file(self, record: FileRecord) -> FileRecord:
        expires_at = record.expires_at or self._expires_at(record.uploaded_at)
        row = {
            "document_id": record.document_id,
            "tenant_id": record.tenant_id,
            "file_name": record.file_name,
            "file_size": record.file_size,
            "mime_type": record.mime_type,
            "storage_bucket": record.storage_bucket,
            "storage_key": record.storage_key,
            "processing_mode": record.processing_mode.value,
            "status": record.status.value,
            "uploaded_at": record.uploaded_at.isoformat(),
            "updated_at": record.updated_at.isoformat(),
            "expires_at": expires_at.isoformat(),
        }

        def _insert():
            return self.client.table(FILES_TABLE).insert(row).execute()

        response = await self._execute(
            "save_file", _insert, record.document_id, record_kind="File"
        )
        if not response.data:
            raise StoreUnavailableError(f"Failed to save file {record.document_id}")

        logger.info(
            "file_record_saved",
            document_id=record.document_id,
            tenant_id=record.tenant_id,
        )
        return self._db_row_to_file(response.data[0])

    async def get_file(self, document_id: str) -> FileRecord | None:
        def _query():
            return (
                self.client.table(FILES_TABLE)
                .select("*")
                .eq("document_id", document_id)
                .limit(1)
                .execute()
            )

        response = await self._execute("get_file", _query, document_id)
        if response.data:
            return self._db_row_to_file(response.data[0])
        return None

    async def update_file_status(
        self,
        document_id: str,
        status: FileStatus,
        error_message: str | None = None,
    ) -> bool:
        update_data: dict[str, Any] = {
            "status": status.value,
            "updated_at": utcnow().isoformat(),
        }
        if error_message is not None:
            update_data["error_message"] = error_message

        def _update():
            return (
                self.client.table(FILES_TABLE)
                .update(update_data)
                .eq("document_id", document_id)
                .execute()
            )

        response = await self._execute("update_file_status", _update, document_id)
        return bool(response.data)

    async def list_files_by_tenant(
        self,
        tenant_id: str,
        limit: int = DEFAULT_TENANT_LIST_LIMIT,
    ) -> list[FileRecord]:
        def _query():
            return (
                self.client.table(FILES_TABLE)
                .select("*")
                .eq("tenant_id", tenant_id)
                .order("uploaded_at", desc=True)
                .limit(limit)
                .execute()
            )

        response = await self._execute("list_files_by_tenant", _query)
        return [self._db_row_to_file(row) for row in response.data or []]

    # =========================================================================
    # Document status records
    # =========================================================================

    async def create_status(self, document_id: str, tenant_id: str) -> DocumentStatusRecord:
        now = utcnow()
        row = {
            "document_id": document_id,
            "tenant_id": tenant_id,
            "total_pages": 0,
            "processed_pages": 0,
            "failed_pages": 0,
            "overall_status": OverallStatus.PENDING.value,
            "expires_at": self._expires_at(now).isoformat(),
        }

        def _insert():
            return self.client.table(STATUS_TABLE).insert(row).execute()

        response = await self._execute(
            "create_status", _insert, document_id, record_kind="Document status"
        )
        if not response.data:
            raise StoreUnavailableError(f"Failed to create status for {document_id}")

        created = response.data[0]
        await self._emit(RecordKind.STATUS, document_id, None, created)
        logger.info("document_status_created", document_id=document_id, tenant_id=tenant_id)
        return self._db_row_to_status(created)

    async def set_total_pages(self, document_id: str, total_pages: int) -> DocumentStatusRecord:
        change = await self._rpc(
            "set_document_total_pages",
            {"p_document_id": document_id, "p_total_pages": total_pages},
            document_id,
        )
        if change is None:
            raise DocumentNotFoundError(document_id)
        return self._db_row_to_status(change["after"])

    async def increment_processed(self, document_id: str) -> int:
        return await self._increment(document_id, "processed_pages")

    async def increment_failed(self, document_id: str) -> int:
        return await self._increment(document_id, "failed_pages")

    async def _increment(self, document_id: str, counter: str) -> int:
        change = await self._rpc(
            "increment_document_counter",
            {"p_document_id": document_id, "p_counter": counter},
            document_id,
        )
        if change is None:
            raise DocumentNotFoundError(document_id)
        return change["after"][counter]

    async def update_overall_status(
        self,
        document_id: str,
        status: OverallStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> DocumentStatusRecord:
        change = await self._rpc(
            "set_document_status",
            {
                "p_document_id": document_id,
                "p_status": status.value,
                "p_fields": _serialize_fields(extra_fields),
            },
            document_id,
        )
        if change is None:
            raise DocumentNotFoundError(document_id)

        logger.info(
            "document_status_updated",
            document_id=document_id,
            old_status=change["before"]["overall_status"],
            new_status=status.value,
        )
        return self._db_row_to_status(change["after"])

    async def transition_status(
        self,
        document_id: str,
        expected: OverallStatus,
        new_status: OverallStatus,
        extra_fields: dict[str, Any] | None = None,
    ) -> bool:
        self._validate_status_transition(expected, new_status)

        change = await self._rpc(
            "transition_document_status",
            {
                "p_document_id": document_id,
                "p_expected": expected.value,
                "p_status": new_status.value,
                "p_fields": _serialize_fields(extra_fields),
            },
            document_id,
        )
        if change is None:
            logger.debug(
                "document_status_transition_lost",
                document_id=document_id,
                expected=expected.value,
                new_status=new_status.value,
            )
            return False

        logger.info(
            "document_status_transitioned",
            document_id=document_id,
            old_status=expected.value,
            new_status=new_status.value,
        )
        return True

    async def get_document(self, document_id: str) -> DocumentStatusRecord | None:
        def _query():
            return (
                self.client.table(STATUS_TABLE)
                .select("*")
                .eq("document_id", document_id)
                .limit(1)
                .execute()
            )

        response = await self._execute("get_document", _query, document_id)
        if response.data:
            return self._db_row_to_status(response.data[0])
        return None

    async def list_documents_by_tenant(
        self,
        tenant_id: str,
        limit: int = DEFAULT_TENANT_LIST_LIMIT,
    ) -> list[DocumentStatusRecord]:
        def _query():
            return (
                self.client.table(STATUS_TABLE)
                .select("*")
                .eq("tenant_id", tenant_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )

        response = await self._execute("list_documents_by_tenant", _query)
        return [self._db_row_to_status(row) for row in response.data or []]

    async def scan_ready_for_aggregation(self) -> list[DocumentStatusRecord]:
        def _query():
            return self.client.table(READY_VIEW).select("*").execute()

        response = await self._execute("scan_ready_for_aggregation", _query)
        return [self._db_row_to_status(row) for row in response.data or []]

    async def scan_stale(
        self,
        statuses: list[OverallStatus],
        updated_before: datetime,
    ) -> list[DocumentStatusRecord]:
        def _query():
            return (
                self.client.table(STATUS_TABLE)
                .select("*")
                .in_("overall_status", [status.value for status in statuses])
                .lt("updated_at", updated_before.isoformat())
                .order("updated_at")
                .execute()
            )

        response = await self._execute("scan_stale", _query)
        return [self._db_row_to_status(row) for row in response.data or []]

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
        change = await self._rpc(
            "upsert_document_page",
            {
                "p_document_id": document_id,
                "p_tenant_id": tenant_id,
                "p_page_number": page_number,
                "p_outcome": outcome.model_dump(mode="json", by_alias=True),
            },
            document_id,
            record_kind=RecordKind.PAGE,
        )
        if change is None:
            raise StoreUnavailableError(
                f"Failed to record page {page_number} for {document_id}"
            )
        return self._db_row_to_page(change["after"])

    async def get_pages(self, document_id: str) -> list[PageRecord]:
        def _query():
            return (
                self.client.table(PAGES_TABLE)
                .select("*")
                .eq("document_id", document_id)
                .order("page_number")
                .execute()
            )

        response = await self._execute("get_pages", _query, document_id)
        return [self._db_row_to_page(row) for row in response.data or []]

    # =========================================================================
    # Helper Methods
    # =========================================================================

    async def _rpc(
        self,
        function: str,
        params: dict[str, Any],
        document_id: str,
        record_kind: RecordKind = RecordKind.STATUS,
    ) -> dict[str, Any] | None:
        """Call a Postgres function returning (before, after) images.

        Returns:
            The single change row, or None if the function changed nothing.
        """
        def _call():
            return self.client.rpc(function, params).execute()

        response = await self._execute(function, _call, document_id)
        if not response.data:
            return None

        change = response.data[0]
        await self._emit(record_kind, document_id, change.get("before"), change.get("after"))
        return change

    async def _execute(
        self,
        operation: str,
        fn: Callable[[], Any],
        document_id: str | None = None,
        record_kind: str | None = None,
    ) -> Any:
        """Run a Supabase call in a thread and translate its errors."""
        try:
            return await asyncio.to_thread(fn)
        except ServiceError:
            raise
        except Exception as e:
            error_str = str(e).lower()

            if record_kind and (
                "unique" in error_str or "duplicate" in error_str or "23505" in error_str
            ):
                logger.warning(
                    "status_store_duplicate",
                    operation=operation,
                    document_id=document_id,
                )
                raise AlreadyExistsError(record_kind, document_id or "") from None

            if document_id and "p0002" in error_str:
                raise DocumentNotFoundError(document_id) from None

            logger.error(
                "status_store_operation_failed",
                operation=operation,
                document_id=document_id,
                error=str(e),
            )
            raise StoreUnavailableError(f"{operation} failed: {e}") from e

    def _db_row_to_file(self, row: dict) -> FileRecord:
        """Convert database row to FileRecord model."""
        return FileRecord(
            document_id=row["document_id"],
            tenant_id=row["tenant_id"],
            file_name=row["file_name"],
            file_size=row["file_size"],
            mime_type=row.get("mime_type") or "application/pdf",
            storage_bucket=row["storage_bucket"],
            storage_key=row["storage_key"],
            processing_mode=ProcessingMode(row["processing_mode"]),
            status=FileStatus(row["status"]),
            error_message=row.get("error_message"),
            uploaded_at=row["uploaded_at"],
            updated_at=row["updated_at"],
            expires_at=row.get("expires_at"),
        )

    def _db_row_to_status(self, row: dict) -> DocumentStatusRecord:
        """Convert database row to DocumentStatusRecord model."""
        return DocumentStatusRecord(
            document_id=row["document_id"],
            tenant_id=row["tenant_id"],
            total_pages=row.get("total_pages") or 0,
            processed_pages=row.get("processed_pages") or 0,
            failed_pages=row.get("failed_pages") or 0,
            overall_status=OverallStatus(row["overall_status"]),
            result_key=row.get("result_key"),
            error_message=row.get("error_message"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            expires_at=row.get("expires_at"),
        )

    def _db_row_to_page(self, row: dict) -> PageRecord:
        """Convert database row to PageRecord model."""
        return PageRecord(
            document_id=row["document_id"],
            tenant_id=row["tenant_id"],
            page_number=row["page_number"],
            outcome=row["outcome"],
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )
