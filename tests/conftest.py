"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from orchestrator.core.config import get_settings
from orchestrator.models.document import FileRecord
from orchestrator.models.page import AnalysisPayload
from orchestrator.services.aggregator import get_aggregator
from orchestrator.services.analysis_service import get_analysis_service
from orchestrator.services.change_feed import InMemoryChangeFeed, get_change_feed
from orchestrator.services.chunk_worker import get_chunk_worker
from orchestrator.services.completion_watcher import get_completion_watcher
from orchestrator.services.event_log import InMemoryEventLog, get_event_log
from orchestrator.services.job_recovery import get_job_recovery_service
from orchestrator.services.job_status_service import get_job_status_service
from orchestrator.services.page_extractor import ExtractedPage, get_page_extractor
from orchestrator.services.status_store import InMemoryStatusStore, get_status_store
from orchestrator.services.storage_service import InMemoryBlobStore, get_blob_store
from orchestrator.services.submission_service import get_submission_service
from orchestrator.services.supabase.client import get_supabase_client

_CACHED_FACTORIES = [
    get_settings,
    get_supabase_client,
    get_change_feed,
    get_event_log,
    get_status_store,
    get_blob_store,
    get_analysis_service,
    get_page_extractor,
    get_chunk_worker,
    get_aggregator,
    get_completion_watcher,
    get_submission_service,
    get_job_status_service,
    get_job_recovery_service,
]


def _clear_factory_caches() -> None:
    for factory in _CACHED_FACTORIES:
        factory.cache_clear()


@pytest.fixture(autouse=True)
def memory_backends(monkeypatch: pytest.MonkeyPatch):
    """Point every factory at the in-memory backends with no delays."""
    monkeypatch.setenv("STATUS_STORE_BACKEND", "memory")
    monkeypatch.setenv("BLOB_STORE_BACKEND", "memory")
    monkeypatch.setenv("STREAM_BACKEND", "memory")
    monkeypatch.setenv("PAGE_DELAY_SECONDS", "0")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_KEY", "")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "")
    monkeypatch.setenv("GEMINI_API_KEY", "")
    _clear_factory_caches()
    yield
    _clear_factory_caches()


@pytest.fixture
def change_feed() -> InMemoryChangeFeed:
    """In-memory change feed."""
    return InMemoryChangeFeed()


@pytest.fixture
def store(change_feed: InMemoryChangeFeed) -> InMemoryStatusStore:
    """In-memory status store publishing to ``change_feed``."""
    return InMemoryStatusStore(change_feed=change_feed)


@pytest.fixture
def documents_bucket() -> InMemoryBlobStore:
    """In-memory bucket for uploaded documents."""
    return InMemoryBlobStore("documents")


@pytest.fixture
def results_bucket() -> InMemoryBlobStore:
    """In-memory bucket for manifests."""
    return InMemoryBlobStore("results")


@pytest.fixture
def event_log() -> InMemoryEventLog:
    """Single-shard in-memory event log."""
    return InMemoryEventLog(shard_count=1)


def make_payload(summary: str = "Page summary") -> AnalysisPayload:
    """Build a small analysis payload."""
    return AnalysisPayload(
        summary=summary,
        entities=["Acme Corp"],
        key_points=["Revenue grew"],
        sentiment="positive",
    )


def make_file_record(
    document_id: str = "doc-1",
    tenant_id: str = "tenant-1",
    file_name: str = "report.pdf",
    uploaded_at: datetime | None = None,
) -> FileRecord:
    """Build an uploaded file record."""
    uploaded_at = uploaded_at or datetime.now(UTC)
    return FileRecord(
        document_id=document_id,
        tenant_id=tenant_id,
        file_name=file_name,
        file_size=100,
        storage_bucket="documents",
        storage_key=f"{tenant_id}/{document_id}/{file_name}",
        uploaded_at=uploaded_at,
        updated_at=uploaded_at,
    )


def make_pages(count: int) -> list[ExtractedPage]:
    """Build ``count`` extracted pages with distinct text."""
    return [ExtractedPage(number, f"Text of page {number}") for number in range(1, count + 1)]


def make_extractor(pages: list[ExtractedPage]) -> MagicMock:
    """Extractor double returning ``pages`` for any content."""
    extractor = MagicMock()
    extractor.extract_pages.return_value = pages
    return extractor


def make_analysis(failing_texts: dict[str, Exception] | None = None) -> AsyncMock:
    """Analysis double that succeeds unless the text is in ``failing_texts``."""
    failing_texts = failing_texts or {}
    analysis = AsyncMock()

    async def _analyze(text: str) -> AnalysisPayload:
        if text in failing_texts:
            raise failing_texts[text]
        return make_payload(summary=f"Summary of {text}")

    analysis.analyze_page.side_effect = _analyze
    return analysis


FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
