"""Status store backends and factory."""

from functools import lru_cache

from orchestrator.core.config import get_settings
from orchestrator.services.change_feed import get_change_feed
from orchestrator.services.status_store.base import StatusStore
from orchestrator.services.status_store.memory_store import InMemoryStatusStore
from orchestrator.services.status_store.supabase_store import SupabaseStatusStore


@lru_cache(maxsize=1)
def get_status_store() -> StatusStore:
    """Get or create the configured StatusStore singleton.

    The store publishes its mutations to the configured change feed.
    """
    settings = get_settings()
    if settings.status_store_backend == "memory":
        return InMemoryStatusStore(
            change_feed=get_change_feed(),
            retention_days=settings.record_retention_days,
        )
    return SupabaseStatusStore(
        change_feed=get_change_feed(),
        retention_days=settings.record_retention_days,
    )


__all__ = [
    "InMemoryStatusStore",
    "StatusStore",
    "SupabaseStatusStore",
    "get_status_store",
]
