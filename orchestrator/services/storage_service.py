"""Blob storage for source documents and aggregated results.

Storage key structure (per bucket):
- {tenant_id}/{document_id}/{file_name}   - Uploaded source document
- {tenant_id}/{document_id}/results.json  - Aggregated manifest
"""

import threading
from abc import ABC, abstractmethod
from functools import lru_cache

import structlog
from supabase import Client

from orchestrator.core.config import get_settings
from orchestrator.services.exceptions import BlobNotFoundError, BlobUnavailableError
from orchestrator.services.supabase.client import get_supabase_client

logger = structlog.get_logger(__name__)

MANIFEST_FILE_NAME = "results.json"

# Default signed URL expiration (1 hour)
DEFAULT_SIGNED_URL_EXPIRES = 3600


def document_blob_key(tenant_id: str, document_id: str, file_name: str) -> str:
    """Key of an uploaded source document."""
    return f"{tenant_id}/{document_id}/{file_name}"


def manifest_key(tenant_id: str, document_id: str) -> str:
    """Deterministic key of a document's aggregated manifest."""
    return f"{tenant_id}/{document_id}/{MANIFEST_FILE_NAME}"


class BlobStore(ABC):
    """Key/value blob storage scoped to one bucket."""

    bucket: str

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Write ``data`` at ``key``, replacing any existing object."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read the object at ``key``.

        Raises:
            BlobNotFoundError: If nothing is stored at ``key``.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check whether an object is stored at ``key``."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the object at ``key``. Missing keys are ignored."""

    @abstractmethod
    def create_signed_url(self, key: str, expires_in: int = DEFAULT_SIGNED_URL_EXPIRES) -> str:
        """Time-limited download URL for ``key``."""


class StorageService(BlobStore):
    """Supabase Storage bucket.

    Uses the service client; callers already scope keys by tenant.
    """

    def __init__(self, bucket: str, client: Client | None = None):
        """Initialize storage service.

        Args:
            bucket: Storage bucket name.
            client: Optional Supabase client. Uses the shared client if not provided.
        """
        self.client = client or get_supabase_client()
        self.bucket = bucket

    def _bucket(self):
        if self.client is None:
            raise BlobUnavailableError(
                "Storage client not configured",
                {"code": "STORAGE_NOT_CONFIGURED"},
            )
        return self.client.storage.from_(self.bucket)

    def put(self, key: str, data: bytes, content_type: str) -> None:
        bucket = self._bucket()

        logger.info(
            "storage_upload_starting",
            bucket=self.bucket,
            key=key,
            size=len(data),
        )

        try:
            bucket.upload(
                path=key,
                file=data,
                file_options={"content-type": content_type, "upsert": "true"},
            )
        except Exception as e:
            logger.error("storage_upload_failed", bucket=self.bucket, key=key, error=str(e))
            raise BlobUnavailableError(f"Failed to upload {key}: {e}") from e

        logger.info("storage_upload_complete", bucket=self.bucket, key=key)

    def get(self, key: str) -> bytes:
        bucket = self._bucket()

        try:
            return bucket.download(key)
        except Exception as e:
            error_str = str(e).lower()
            if "not found" in error_str or "404" in error_str:
                raise BlobNotFoundError(key) from None
            logger.error("storage_download_failed", bucket=self.bucket, key=key, error=str(e))
            raise BlobUnavailableError(f"Failed to download {key}: {e}") from e

    def exists(self, key: str) -> bool:
        bucket = self._bucket()
        folder, _, name = key.rpartition("/")

        try:
            entries = bucket.list(folder, {"search": name})
        except Exception as e:
            raise BlobUnavailableError(f"Failed to list {folder}: {e}") from e

        return any(entry.get("name") == name for entry in entries or [])

    def delete(self, key: str) -> None:
        bucket = self._bucket()

        try:
            bucket.remove([key])
        except Exception as e:
            logger.error("storage_delete_failed", bucket=self.bucket, key=key, error=str(e))
            raise BlobUnavailableError(f"Failed to delete {key}: {e}") from e

        logger.info("storage_file_deleted", bucket=self.bucket, key=key)

    def create_signed_url(self, key: str, expires_in: int = DEFAULT_SIGNED_URL_EXPIRES) -> str:
        bucket = self._bucket()

        try:
            response = bucket.create_signed_url(path=key, expires_in=expires_in)
        except Exception as e:
            raise BlobUnavailableError(f"Failed to sign {key}: {e}") from e

        return response.get("signedURL", "")


class InMemoryBlobStore(BlobStore):
    """Process-local bucket for tests and single-process runs."""

    def __init__(self, bucket: str) -> None:
        self.bucket = bucket
        self._lock = threading.Lock()
        self._objects: dict[str, tuple[bytes, str]] = {}

    def put(self, key: str, data: bytes, content_type: str) -> None:
        with self._lock:
            self._objects[key] = (bytes(data), content_type)

    def get(self, key: str) -> bytes:
        with self._lock:
            if key not in self._objects:
                raise BlobNotFoundError(key)
            return self._objects[key][0]

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def create_signed_url(self, key: str, expires_in: int = DEFAULT_SIGNED_URL_EXPIRES) -> str:
        return f"memory://{self.bucket}/{key}?expires_in={expires_in}"

    def content_type(self, key: str) -> str:
        """Content type recorded for ``key``."""
        with self._lock:
            if key not in self._objects:
                raise BlobNotFoundError(key)
            return self._objects[key][1]


@lru_cache(maxsize=8)
def get_blob_store(bucket: str) -> BlobStore:
    """Get or create the configured BlobStore for ``bucket``."""
    if get_settings().blob_store_backend == "memory":
        return InMemoryBlobStore(bucket)
    return StorageService(bucket)
