"""Service-role Supabase client shared by the status store and blob store.

Workers run without a user session, so the client authenticates with the
service role key when one is configured. The underlying httpx client speaks
HTTP/1.1 only: multiplexed HTTP/2 connections through Cloudflare get reset
under sustained worker load (``ConnectionTerminated``).
"""

from functools import lru_cache

import httpx
import structlog
from supabase import Client, create_client
from supabase.lib.client_options import SyncClientOptions

from orchestrator.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def build_http_client(settings: Settings) -> httpx.Client:
    """Build the transport used for every PostgREST and Storage call.

    Args:
        settings: Timeouts, retry count and pool limits come from here.

    Returns:
        httpx.Client retrying failed connections at the transport level.
    """
    return httpx.Client(
        transport=httpx.HTTPTransport(
            retries=settings.supabase_transport_retries,
            http2=False,
        ),
        timeout=httpx.Timeout(
            settings.supabase_timeout_seconds,
            connect=settings.supabase_connect_timeout_seconds,
        ),
        limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        http2=False,
    )


@lru_cache(maxsize=1)
def get_supabase_client() -> Client | None:
    """Get the cached Supabase client.

    Returns:
        Client, or None when the URL or both keys are missing. Callers turn
        None into StoreNotConfiguredError / BlobUnavailableError.
    """
    settings = get_settings()
    key = settings.supabase_service_key or settings.supabase_key
    if not (settings.supabase_url and key):
        logger.warning(
            "supabase_not_configured",
            has_url=bool(settings.supabase_url),
            has_service_key=bool(settings.supabase_service_key),
        )
        return None

    try:
        client = create_client(
            supabase_url=settings.supabase_url,
            supabase_key=key,
            options=SyncClientOptions(httpx_client=build_http_client(settings)),
        )
    except Exception as e:
        logger.error("supabase_client_creation_failed", error=str(e))
        return None

    logger.info(
        "supabase_client_created",
        role="service" if settings.supabase_service_key else "anon",
        transport_retries=settings.supabase_transport_retries,
    )
    return client
