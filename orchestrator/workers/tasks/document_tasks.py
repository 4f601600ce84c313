"""Celery tasks for document processing."""

import asyncio

import structlog

from orchestrator.services.chunk_worker import ChunkWorker, get_chunk_worker
from orchestrator.services.exceptions import CatastrophicIngestError, StoreUnavailableError
from orchestrator.workers.celery import celery_app

logger = structlog.get_logger(__name__)

MAX_RETRIES = 3


@celery_app.task(
    name="orchestrator.workers.tasks.document_tasks.process_document",
    bind=True,
    autoretry_for=(StoreUnavailableError,),
    retry_backoff=True,
    retry_backoff_max=120,
    max_retries=MAX_RETRIES,
    retry_jitter=True,
)  # type: ignore[misc]
def process_document(
    self,  # type: ignore[no-untyped-def]
    document_id: str,
    tenant_id: str,
    blob_key: str,
    chunk_worker: ChunkWorker | None = None,
) -> dict[str, str | int | None]:
    """Split, analyze and count every page of a document.

    A retried task that finds the document already past ``pending`` is
    skipped by the worker, so retries never double-count pages.

    Args:
        document_id: Document identifier.
        tenant_id: Owning tenant.
        blob_key: Storage key of the source PDF.
        chunk_worker: Optional ChunkWorker instance (for testing).

    Returns:
        Task result with status and page counts.

    Raises:
        StoreUnavailableError: If the status store could not be reached
            before processing started (will trigger retry).
    """
    worker = chunk_worker or get_chunk_worker()

    logger.info(
        "document_processing_task_started",
        document_id=document_id,
        tenant_id=tenant_id,
        retry_count=self.request.retries,
    )

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        result = loop.run_until_complete(
            worker.process_document(document_id, tenant_id, blob_key)
        )
    except CatastrophicIngestError as e:
        # Failure is already recorded on the status record; retrying cannot help
        logger.error(
            "document_processing_task_failed",
            document_id=document_id,
            reason=e.reason,
        )
        return {
            "document_id": document_id,
            "status": "failed",
            "error_code": e.code,
            "error_message": e.reason,
        }
    finally:
        loop.close()

    logger.info(
        "document_processing_task_completed",
        document_id=document_id,
        status=result.status,
        total_pages=result.total_pages,
        failed_pages=result.failed,
    )
    return {
        "document_id": document_id,
        "status": result.status,
        "total_pages": result.total_pages,
        "succeeded_pages": result.succeeded,
        "failed_pages": result.failed,
    }
