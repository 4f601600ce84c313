"""Chunk worker: turns a submitted document into counted page records.

Per document:
1. pending -> processing (compare-and-swap; a redelivered event is skipped)
2. download the source blob and split it into pages
3. set total_pages
4. per page: analyze, write a PageRecord (success or failure marker),
   then increment the processed counter in a ``finally`` block

A download or extraction failure marks the document failed before any
page is enumerated, so the counter is never touched and aggregation can
never be triggered for it. Per-page failures are recorded and counted;
they never abort the document.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache

import structlog

from orchestrator.core.config import get_settings
from orchestrator.models.document import FileStatus, OverallStatus
from orchestrator.models.page import PageFailure, PageOutcome, PageSuccess
from orchestrator.services.analysis_service import AnalysisService, get_analysis_service
from orchestrator.services.exceptions import (
    AlreadyExistsError,
    AnalysisRateLimitError,
    BlobNotFoundError,
    BlobUnavailableError,
    CatastrophicIngestError,
    PageExtractionError,
)
from orchestrator.services.page_extractor import (
    ExtractedPage,
    PageExtractor,
    get_page_extractor,
)
from orchestrator.services.status_store import StatusStore, get_status_store
from orchestrator.services.storage_service import BlobStore, get_blob_store

logger = structlog.get_logger(__name__)


@dataclass
class DocumentProcessingResult:
    """Outcome of one process_document call."""

    document_id: str
    status: str  # "processed" or "skipped"
    total_pages: int = 0
    succeeded: int = 0
    failed: int = 0


class ChunkWorker:
    """Process submitted documents page by page.

    Example:
        >>> worker = get_chunk_worker()
        >>> result = await worker.process_document("doc-123", "tenant-1", "tenant-1/doc-123/a.pdf")
        >>> result.total_pages, result.failed
        (3, 1)
    """

    def __init__(
        self,
        store: StatusStore | None = None,
        blob_store: BlobStore | None = None,
        extractor: PageExtractor | None = None,
        analysis_service: AnalysisService | None = None,
        page_delay: float | None = None,
        page_concurrency: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._blob_store = blob_store
        self._extractor = extractor
        self._analysis_service = analysis_service
        self.page_delay = settings.page_delay_seconds if page_delay is None else page_delay
        self.page_concurrency = page_concurrency or settings.page_concurrency
        self._sleep = sleep

    @property
    def store(self) -> StatusStore:
        if self._store is None:
            self._store = get_status_store()
        return self._store

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = get_blob_store(get_settings().documents_bucket)
        return self._blob_store

    @property
    def extractor(self) -> PageExtractor:
        if self._extractor is None:
            self._extractor = get_page_extractor()
        return self._extractor

    @property
    def analysis_service(self) -> AnalysisService:
        if self._analysis_service is None:
            self._analysis_service = get_analysis_service()
        return self._analysis_service

    async def process_document(
        self,
        document_id: str,
        tenant_id: str,
        blob_key: str,
    ) -> DocumentProcessingResult:
        """Analyze and count every page of a submitted document.

        Args:
            document_id: Document identifier.
            tenant_id: Owning tenant.
            blob_key: Storage key of the source PDF.

        Returns:
            DocumentProcessingResult with page counts.

        Raises:
            CatastrophicIngestError: If the document could not be downloaded,
                split into pages or recorded. The status record is already
                marked failed when this is raised.
        """
        with structlog.contextvars.bound_contextvars(
            document_id=document_id,
            tenant_id=tenant_id,
        ):
            return await self._process_document(document_id, tenant_id, blob_key)

    async def _process_document(
        self,
        document_id: str,
        tenant_id: str,
        blob_key: str,
    ) -> DocumentProcessingResult:
        if not await self._start_processing(document_id, tenant_id):
            return DocumentProcessingResult(document_id=document_id, status="skipped")

        try:
            await self.store.update_file_status(document_id, FileStatus.PROCESSING)
            content = await asyncio.to_thread(self.blob_store.get, blob_key)
            pages = await asyncio.to_thread(self.extractor.extract_pages, content)
            if not pages:
                raise PageExtractionError("Document has no pages")
        except (BlobNotFoundError, BlobUnavailableError, PageExtractionError) as e:
            await self._fail_document(document_id, e.message)
            raise CatastrophicIngestError(document_id, e.message) from e
        except Exception as e:
            await self._fail_document(document_id, f"Ingest failed: {e}")
            raise CatastrophicIngestError(document_id, str(e)) from e

        try:
            await self.store.set_total_pages(document_id, len(pages))
            logger.info("document_pages_enumerated", total_pages=len(pages))
            outcomes = await self._process_pages(document_id, tenant_id, pages)
        except Exception as e:
            await self._fail_document(document_id, f"Page processing failed: {e}")
            raise CatastrophicIngestError(document_id, str(e)) from e

        succeeded = sum(1 for outcome in outcomes if isinstance(outcome, PageSuccess))
        result = DocumentProcessingResult(
            document_id=document_id,
            status="processed",
            total_pages=len(pages),
            succeeded=succeeded,
            failed=len(pages) - succeeded,
        )
        logger.info(
            "document_pages_processed",
            total_pages=result.total_pages,
            succeeded=result.succeeded,
            failed=result.failed,
        )
        return result

    async def _start_processing(self, document_id: str, tenant_id: str) -> bool:
        """Move the document from pending to processing.

        Returns:
            False if the document was already started (duplicate delivery).
        """
        if await self.store.get_document(document_id) is None:
            try:
                await self.store.create_status(document_id, tenant_id)
            except AlreadyExistsError:
                pass

        started = await self.store.transition_status(
            document_id,
            OverallStatus.PENDING,
            OverallStatus.PROCESSING,
            {"started_at": datetime.now(UTC)},
        )
        if not started:
            logger.warning("document_already_started")
        return started

    async def _process_pages(
        self,
        document_id: str,
        tenant_id: str,
        pages: list[ExtractedPage],
    ) -> list[PageOutcome]:
        if self.page_concurrency <= 1:
            outcomes: list[PageOutcome] = []
            for index, page in enumerate(pages):
                if index and self.page_delay > 0:
                    await self._sleep(self.page_delay)
                outcomes.append(await self._process_page(document_id, tenant_id, page))
            return outcomes

        semaphore = asyncio.Semaphore(self.page_concurrency)

        async def _bounded(page: ExtractedPage) -> PageOutcome:
            async with semaphore:
                return await self._process_page(document_id, tenant_id, page)

        results = await asyncio.gather(
            *(_bounded(page) for page in pages),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    async def _process_page(
        self,
        document_id: str,
        tenant_id: str,
        page: ExtractedPage,
    ) -> PageOutcome:
        """Analyze, record and count one page.

        The processed counter is incremented even when analysis or the
        page write fails. A success that cannot be written is replaced by a
        failure marker so the counter never covers a missing page record.
        """
        try:
            outcome = await self._analyze(page)
            outcome = await self._record(document_id, tenant_id, page.page_number, outcome)
            if isinstance(outcome, PageFailure):
                await self.store.increment_failed(document_id)
        finally:
            processed = await self.store.increment_processed(document_id)

        logger.info(
            "page_recorded",
            page_number=page.page_number,
            page_status=outcome.status,
            processed_pages=processed,
        )
        return outcome

    async def _record(
        self,
        document_id: str,
        tenant_id: str,
        page_number: int,
        outcome: PageOutcome,
    ) -> PageOutcome:
        try:
            await self.store.record_page(document_id, tenant_id, page_number, outcome)
            return outcome
        except Exception as e:
            if isinstance(outcome, PageFailure):
                raise
            logger.warning("page_write_failed", page_number=page_number, error=str(e))
            marker = PageFailure(reason=f"Page write failed: {e}")

        await self.store.record_page(document_id, tenant_id, page_number, marker)
        return marker

    async def _analyze(self, page: ExtractedPage) -> PageOutcome:
        if not page.ok:
            return PageFailure(reason=page.error or "Text extraction failed")

        try:
            analysis = await self.analysis_service.analyze_page(page.text)
        except AnalysisRateLimitError as e:
            logger.warning(
                "page_rate_limit_exhausted",
                page_number=page.page_number,
                error=e.message,
            )
            return PageFailure(reason=f"Rate limit retries exhausted: {e.message}")
        except Exception as e:
            logger.warning(
                "page_analysis_failed",
                page_number=page.page_number,
                error=str(e),
            )
            return PageFailure(reason=f"Analysis failed: {e}")

        return PageSuccess(analysis=analysis)

    async def _fail_document(self, document_id: str, reason: str) -> None:
        """Mark the document and its file record failed, logging secondary errors."""
        logger.error("document_ingest_failed", reason=reason)

        try:
            marked = await self.store.transition_status(
                document_id,
                OverallStatus.PROCESSING,
                OverallStatus.FAILED,
                {"error_message": reason, "completed_at": datetime.now(UTC)},
            )
            if not marked:
                # The watcher may already hold the aggregation for a full counter
                marked = await self.store.transition_status(
                    document_id,
                    OverallStatus.AGGREGATING,
                    OverallStatus.FAILED,
                    {"error_message": reason, "completed_at": datetime.now(UTC)},
                )
            if not marked:
                logger.warning("document_fail_transition_lost")
        except Exception as e:
            logger.error("document_fail_mark_failed", error=str(e))

        try:
            await self.store.update_file_status(document_id, FileStatus.FAILED, reason)
        except Exception as e:
            logger.error("file_fail_mark_failed", error=str(e))


@lru_cache(maxsize=1)
def get_chunk_worker() -> ChunkWorker:
    """Get or create the ChunkWorker singleton."""
    return ChunkWorker()
