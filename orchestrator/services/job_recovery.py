"""Recovery for documents stuck in a non-terminal status.

A worker that dies mid-document leaves its status record in PROCESSING.
The redelivered event is skipped by the pending -> processing guard, so
nothing else would ever move the record again. An aggregator that dies
leaves the record in AGGREGATING, which the ready scan never selects.

The sweep runs on the beat schedule:
- PROCESSING with no counter or status update within the timeout is
  marked FAILED (failed is absorbing, there is no automatic retry).
- AGGREGATING past the timeout is released back to PROCESSING, so the
  next ready scan triggers aggregation again.

Configuration:
- JOB_STALE_TIMEOUT_MINUTES: Minutes without an update (default: 120)
- JOB_RECOVERY_ENABLED: Master switch for the sweep (default: True)
"""

from datetime import UTC, datetime, timedelta
from functools import lru_cache

import structlog

from orchestrator.core.config import get_settings
from orchestrator.models.document import DocumentStatusRecord, FileStatus, OverallStatus
from orchestrator.services.status_store import StatusStore, get_status_store

logger = structlog.get_logger(__name__)


class JobRecoveryService:
    """Detect and resolve stale processing and aggregating documents."""

    def __init__(
        self,
        store: StatusStore | None = None,
        timeout_minutes: int | None = None,
    ) -> None:
        self._store = store
        self.timeout_minutes = timeout_minutes or get_settings().job_stale_timeout_minutes

    @property
    def store(self) -> StatusStore:
        if self._store is None:
            self._store = get_status_store()
        return self._store

    async def find_stale_documents(
        self,
        now: datetime | None = None,
    ) -> list[DocumentStatusRecord]:
        """Documents in processing or aggregating past the stale timeout."""
        cutoff = (now or datetime.now(UTC)) - timedelta(minutes=self.timeout_minutes)
        return await self.store.scan_stale(
            [OverallStatus.PROCESSING, OverallStatus.AGGREGATING],
            cutoff,
        )

    async def recover_stale_documents(self, now: datetime | None = None) -> dict[str, int]:
        """Fail stale processing documents and release stale aggregations.

        Returns:
            Summary counts: checked, failed, released and skipped. A record
            that changed status since the scan is skipped.
        """
        records = await self.find_stale_documents(now)
        summary = {"checked": len(records), "failed": 0, "released": 0, "skipped": 0}

        for record in records:
            with structlog.contextvars.bound_contextvars(
                document_id=record.document_id,
                tenant_id=record.tenant_id,
            ):
                if record.overall_status == OverallStatus.PROCESSING:
                    outcome = "failed" if await self._fail(record) else "skipped"
                else:
                    outcome = "released" if await self._release(record) else "skipped"
            summary[outcome] += 1

        if records:
            logger.warning("stale_documents_recovered", **summary)
        return summary

    async def _fail(self, record: DocumentStatusRecord) -> bool:
        reason = (
            f"Processing stalled: no progress for {self.timeout_minutes} minutes "
            f"({record.processed_pages}/{record.total_pages} pages counted)"
        )
        marked = await self.store.transition_status(
            record.document_id,
            OverallStatus.PROCESSING,
            OverallStatus.FAILED,
            {"error_message": reason, "completed_at": datetime.now(UTC)},
        )
        if not marked:
            logger.info("stale_document_moved_on", status="processing")
            return False

        logger.error(
            "stale_document_failed",
            total_pages=record.total_pages,
            processed_pages=record.processed_pages,
            last_update=record.updated_at.isoformat(),
        )
        await self.store.update_file_status(record.document_id, FileStatus.FAILED, reason)
        return True

    async def _release(self, record: DocumentStatusRecord) -> bool:
        released = await self.store.transition_status(
            record.document_id,
            OverallStatus.AGGREGATING,
            OverallStatus.PROCESSING,
        )
        if not released:
            logger.info("stale_document_moved_on", status="aggregating")
            return False

        logger.warning("stale_aggregation_released", last_update=record.updated_at.isoformat())
        return True


@lru_cache(maxsize=1)
def get_job_recovery_service() -> JobRecoveryService:
    """Get or create the JobRecoveryService singleton."""
    return JobRecoveryService()
