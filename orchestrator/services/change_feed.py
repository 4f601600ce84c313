"""Status change feed.

Delivers before/after images of status store mutations to the completion
watcher. Delivery is at-least-once: an entry read but not acknowledged is
delivered again, so consumers must tolerate duplicates.

Redis backend: one stream, one consumer group. Each consumer drains its
own pending (delivered, unacknowledged) entries before reading new ones.
"""

import asyncio
import threading
from abc import ABC, abstractmethod
from functools import lru_cache

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError, ResponseError

from orchestrator.core.config import get_settings
from orchestrator.models.events import StatusChange
from orchestrator.services.exceptions import StreamUnavailableError
from orchestrator.services.redis_client import create_async_redis_client, current_loop_id

logger = structlog.get_logger(__name__)

# Stream entry field holding the serialized change
CHANGE_FIELD = "change"


class ChangeFeed(ABC):
    """Push channel for status store mutations."""

    @abstractmethod
    async def publish(self, change: StatusChange) -> str:
        """Append a change and return its entry id."""

    @abstractmethod
    async def read(
        self,
        consumer: str,
        count: int = 10,
        block_ms: int | None = None,
    ) -> list[tuple[str, StatusChange]]:
        """Read up to ``count`` entries for ``consumer``."""

    @abstractmethod
    async def ack(self, entry_ids: list[str]) -> int:
        """Acknowledge handled entries. Returns the number acknowledged."""


class RedisChangeFeed(ChangeFeed):
    """Change feed on a Redis stream with a consumer group.

    Example:
        >>> feed = RedisChangeFeed()
        >>> await feed.publish(change)
        >>> for entry_id, change in await feed.read("watcher-1"):
        ...     handle(change)
        ...     await feed.ack([entry_id])
    """

    def __init__(
        self,
        client: aioredis.Redis | None = None,
        stream: str | None = None,
        group: str | None = None,
        maxlen: int | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._owns_client = client is None
        self._loop_id: int | None = None
        self.stream = stream or settings.change_feed_stream
        self.group = group or settings.change_feed_group
        self.maxlen = maxlen or settings.change_feed_maxlen
        self._group_ready = False
        self._pending_drained: set[str] = set()

    @property
    def client(self) -> aioredis.Redis:
        """Get the async Redis client.

        A client created here is recreated when the running event loop
        changes (each Celery task runs its own loop).
        """
        loop_id = current_loop_id()
        if self._owns_client and self._client is not None and self._loop_id != loop_id:
            logger.debug("change_feed_loop_changed", stream=self.stream)
            self._client = None
            self._group_ready = False

        if self._client is None:
            self._client = create_async_redis_client()
            self._loop_id = loop_id
        return self._client

    async def _ensure_group(self) -> None:
        if self._group_ready:
            return
        try:
            await self.client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("change_feed_group_created", stream=self.stream, group=self.group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise StreamUnavailableError(f"Failed to create consumer group: {e}") from e
        except RedisError as e:
            raise StreamUnavailableError(f"Failed to create consumer group: {e}") from e
        self._group_ready = True

    async def publish(self, change: StatusChange) -> str:
        try:
            entry_id = await self.client.xadd(
                self.stream,
                {CHANGE_FIELD: change.model_dump_json(by_alias=True)},
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as e:
            raise StreamUnavailableError(f"Failed to publish change: {e}") from e
        return entry_id

    async def read(
        self,
        consumer: str,
        count: int = 10,
        block_ms: int | None = None,
    ) -> list[tuple[str, StatusChange]]:
        await self._ensure_group()

        if consumer not in self._pending_drained:
            entries = await self._read_group(consumer, "0", count, None)
            if entries:
                logger.info(
                    "change_feed_pending_redelivered",
                    consumer=consumer,
                    count=len(entries),
                )
                return entries
            self._pending_drained.add(consumer)

        return await self._read_group(consumer, ">", count, block_ms)

    async def _read_group(
        self,
        consumer: str,
        start_id: str,
        count: int,
        block_ms: int | None,
    ) -> list[tuple[str, StatusChange]]:
        try:
            response = await self.client.xreadgroup(
                self.group,
                consumer,
                {self.stream: start_id},
                count=count,
                block=block_ms,
            )
        except RedisError as e:
            raise StreamUnavailableError(f"Failed to read change feed: {e}") from e

        entries: list[tuple[str, StatusChange]] = []
        unreadable: list[str] = []
        for _stream, stream_entries in response or []:
            for entry_id, fields in stream_entries:
                change = self._parse_entry(entry_id, fields)
                if change is None:
                    unreadable.append(entry_id)
                else:
                    entries.append((entry_id, change))

        if unreadable:
            # Trimmed or malformed entries would otherwise be redelivered forever
            await self.ack(unreadable)
        return entries

    def _parse_entry(self, entry_id: str, fields: dict | None) -> StatusChange | None:
        if not fields or CHANGE_FIELD not in fields:
            logger.warning("change_feed_entry_empty", entry_id=entry_id)
            return None
        try:
            return StatusChange.model_validate_json(fields[CHANGE_FIELD])
        except PydanticValidationError as e:
            logger.warning("change_feed_entry_invalid", entry_id=entry_id, error=str(e))
            return None

    async def ack(self, entry_ids: list[str]) -> int:
        if not entry_ids:
            return 0
        try:
            return await self.client.xack(self.stream, self.group, *entry_ids)
        except RedisError as e:
            raise StreamUnavailableError(f"Failed to acknowledge entries: {e}") from e

    async def close(self) -> None:
        """Close a client created by this feed."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


class InMemoryChangeFeed(ChangeFeed):
    """Process-local change feed for tests and single-process runs.

    Mirrors consumer-group semantics: entries are handed out once across
    consumers and stay pending until acknowledged.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[tuple[str, StatusChange]] = []
        self._next_index = 0
        self._sequence = 0
        self._pending: dict[str, StatusChange] = {}

    async def publish(self, change: StatusChange) -> str:
        with self._lock:
            self._sequence += 1
            entry_id = f"{self._sequence}-0"
            self._entries.append((entry_id, change))
        return entry_id

    async def read(
        self,
        consumer: str,
        count: int = 10,
        block_ms: int | None = None,
    ) -> list[tuple[str, StatusChange]]:
        batch = self._take(count)
        if not batch and block_ms:
            await asyncio.sleep(block_ms / 1000)
            batch = self._take(count)
        return batch

    def _take(self, count: int) -> list[tuple[str, StatusChange]]:
        with self._lock:
            batch = self._entries[self._next_index:self._next_index + count]
            self._next_index += len(batch)
            for entry_id, change in batch:
                self._pending[entry_id] = change
        return batch

    async def ack(self, entry_ids: list[str]) -> int:
        with self._lock:
            return sum(1 for entry_id in entry_ids if self._pending.pop(entry_id, None))

    @property
    def published(self) -> list[StatusChange]:
        """All changes published so far, oldest first."""
        with self._lock:
            return [change for _, change in self._entries]

    @property
    def pending_count(self) -> int:
        """Number of delivered but unacknowledged entries."""
        with self._lock:
            return len(self._pending)


@lru_cache(maxsize=1)
def get_change_feed() -> ChangeFeed:
    """Get or create the configured change feed singleton."""
    if get_settings().stream_backend == "memory":
        return InMemoryChangeFeed()
    return RedisChangeFeed()
