"""Aggregator: turns a fully counted document into its manifest.

Flow:
1. processing -> aggregating (compare-and-swap; losers return "skipped")
2. fetch page records
3. fewer visible pages than total_pages -> back to processing ("deferred")
4. build the manifest and write it to {tenant}/{document}/results.json
5. aggregating -> completed with result_key and completed_at

Any exception in steps 2-5 marks the document failed and is re-raised.
"""

import asyncio
from dataclasses import dataclass
from functools import lru_cache

import structlog

from orchestrator.core.config import get_settings
from orchestrator.models.document import FileStatus, OverallStatus
from orchestrator.services.exceptions import AggregationError
from orchestrator.services.manifest_builder import ManifestBuilder
from orchestrator.services.status_store import StatusStore, get_status_store
from orchestrator.services.storage_service import BlobStore, get_blob_store, manifest_key

logger = structlog.get_logger(__name__)

MANIFEST_CONTENT_TYPE = "application/json"


@dataclass
class AggregationResult:
    """Outcome of one aggregate_results call.

    outcome is one of:
    - completed: manifest written, document completed
    - deferred: page writes not yet visible, document back to processing
    - skipped: another trigger holds (or finished) the aggregation
    """

    document_id: str
    outcome: str
    result_key: str | None = None
    page_count: int = 0
    success_count: int = 0
    failed_count: int = 0


class Aggregator:
    """Build and persist the manifest for documents whose pages are all counted."""

    def __init__(
        self,
        store: StatusStore | None = None,
        blob_store: BlobStore | None = None,
        builder: ManifestBuilder | None = None,
    ) -> None:
        self._store = store
        self._blob_store = blob_store
        self.builder = builder or ManifestBuilder()

    @property
    def store(self) -> StatusStore:
        if self._store is None:
            self._store = get_status_store()
        return self._store

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = get_blob_store(get_settings().results_bucket)
        return self._blob_store

    async def aggregate_results(
        self,
        document_id: str,
        tenant_id: str,
        total_pages: int,
    ) -> AggregationResult:
        """Aggregate a document believed complete.

        Safe to call repeatedly and concurrently for the same document:
        exactly one caller holds the aggregating status at a time.

        Args:
            document_id: Document identifier.
            tenant_id: Owning tenant.
            total_pages: Page total from the triggering status record.

        Returns:
            AggregationResult describing what happened.

        Raises:
            Exception: Whatever failed while building or persisting the
                manifest. The document is marked failed first.
        """
        with structlog.contextvars.bound_contextvars(
            document_id=document_id,
            tenant_id=tenant_id,
        ):
            acquired = await self.store.transition_status(
                document_id,
                OverallStatus.PROCESSING,
                OverallStatus.AGGREGATING,
            )
            if not acquired:
                logger.info("aggregation_skipped")
                return AggregationResult(document_id=document_id, outcome="skipped")

            try:
                return await self._aggregate(document_id, tenant_id, total_pages)
            except Exception as e:
                await self._fail(document_id, str(e))
                raise

    async def _aggregate(
        self,
        document_id: str,
        tenant_id: str,
        total_pages: int,
    ) -> AggregationResult:
        pages = await self.store.get_pages(document_id)
        in_range = [page for page in pages if 1 <= page.page_number <= total_pages]
        if len(in_range) != len(pages):
            logger.warning(
                "aggregation_pages_out_of_range",
                ignored=[
                    p.page_number for p in pages if not 1 <= p.page_number <= total_pages
                ],
                total_pages=total_pages,
            )

        if len(in_range) < total_pages:
            await self.store.transition_status(
                document_id,
                OverallStatus.AGGREGATING,
                OverallStatus.PROCESSING,
            )
            logger.info(
                "aggregation_deferred",
                visible_pages=len(in_range),
                total_pages=total_pages,
            )
            return AggregationResult(
                document_id=document_id,
                outcome="deferred",
                page_count=len(in_range),
            )

        manifest = self.builder.build(document_id, tenant_id, total_pages, in_range)
        key = manifest_key(tenant_id, document_id)
        await asyncio.to_thread(
            self.blob_store.put,
            key,
            manifest.to_json_bytes(),
            MANIFEST_CONTENT_TYPE,
        )

        completed = await self.store.transition_status(
            document_id,
            OverallStatus.AGGREGATING,
            OverallStatus.COMPLETED,
            {"result_key": key, "completed_at": manifest.processed_at},
        )
        if not completed:
            raise AggregationError(document_id, "status changed while aggregating")

        await self.store.update_file_status(document_id, FileStatus.COMPLETED)

        logger.info(
            "aggregation_completed",
            result_key=key,
            total_pages=total_pages,
            success_count=manifest.success_count,
            failed_count=manifest.failed_count,
        )
        return AggregationResult(
            document_id=document_id,
            outcome="completed",
            result_key=key,
            page_count=total_pages,
            success_count=manifest.success_count,
            failed_count=manifest.failed_count,
        )

    async def _fail(self, document_id: str, reason: str) -> None:
        logger.error("aggregation_failed", error=reason)

        try:
            await self.store.transition_status(
                document_id,
                OverallStatus.AGGREGATING,
                OverallStatus.FAILED,
                {"error_message": f"Aggregation failed: {reason}"},
            )
        except Exception as e:
            logger.error("aggregation_fail_mark_failed", error=str(e))

        try:
            await self.store.update_file_status(
                document_id, FileStatus.FAILED, f"Aggregation failed: {reason}"
            )
        except Exception as e:
            logger.error("file_fail_mark_failed", error=str(e))


@lru_cache(maxsize=1)
def get_aggregator() -> Aggregator:
    """Get or create the Aggregator singleton."""
    return Aggregator()
