"""Partitioned document event log.

Producers append ``document.submitted`` envelopes; the shard is picked by
a stable hash of the partition key (the tenant id), so one tenant's events
stay ordered. Consumers pull batches with an explicit cursor per shard.

A cursor whose position lies before history that has since been trimmed
is expired: reading from it would silently skip events. ``get_records``
raises CursorExpiredError and the consumer reacquires a cursor.
"""

import threading
import zlib
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from functools import lru_cache

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field
from redis.exceptions import RedisError, ResponseError

from orchestrator.core.config import get_settings
from orchestrator.models.events import (
    DOCUMENT_SUBMITTED,
    DocumentSubmittedEvent,
    LogEnvelope,
    LogRecord,
)
from orchestrator.services.exceptions import CursorExpiredError, StreamUnavailableError
from orchestrator.services.redis_client import create_async_redis_client, current_loop_id

logger = structlog.get_logger(__name__)

# Position before the first entry of any stream
START_POSITION = "0-0"


class LogCursor(BaseModel):
    """Read position on one shard. ``position`` is the last entry consumed."""

    shard: int
    position: str = START_POSITION
    acquired_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def parse_entry_id(entry_id: str) -> tuple[int, int]:
    """Split a ``<ms>-<seq>`` stream id into comparable integers."""
    ms, _, seq = entry_id.partition("-")
    return int(ms), int(seq or 0)


def _is_expired(position: str, max_deleted_id: str | None) -> bool:
    if position == START_POSITION or not max_deleted_id:
        return False
    if max_deleted_id == START_POSITION:
        return False
    return parse_entry_id(position) < parse_entry_id(max_deleted_id)


class EventLog(ABC):
    """Sharded append-only log of document events."""

    def __init__(self, shard_count: int) -> None:
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self.shard_count = shard_count

    def shard_for(self, partition_key: str) -> int:
        """Stable shard index for a partition key."""
        return zlib.crc32(partition_key.encode("utf-8")) % self.shard_count

    @property
    def shards(self) -> list[int]:
        return list(range(self.shard_count))

    async def publish_document_submitted(self, event: DocumentSubmittedEvent) -> tuple[int, str]:
        """Publish a ``document.submitted`` event keyed by tenant.

        Returns:
            Tuple of (shard, position).
        """
        envelope = LogEnvelope(
            event_type=DOCUMENT_SUBMITTED,
            data=event.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
        shard, position = await self.publish(envelope, partition_key=event.tenant_id)
        logger.info(
            "document_event_published",
            document_id=event.document_id,
            tenant_id=event.tenant_id,
            shard=shard,
            position=position,
        )
        return shard, position

    @abstractmethod
    async def publish(self, envelope: LogEnvelope, partition_key: str) -> tuple[int, str]:
        """Append an envelope to the shard owning ``partition_key``."""

    @abstractmethod
    async def get_cursor(self, shard: int, from_start: bool = False) -> LogCursor:
        """Acquire a cursor at the oldest retained entry or after the newest."""

    @abstractmethod
    async def get_records(
        self,
        cursor: LogCursor,
        limit: int = 10,
    ) -> tuple[list[LogRecord], LogCursor]:
        """Read up to ``limit`` records after the cursor.

        Returns:
            Tuple of (records, advanced cursor).

        Raises:
            CursorExpiredError: If history after the cursor was trimmed.
        """


class RedisEventLog(EventLog):
    """Event log on Redis streams, one stream per shard (``{stream}:{shard}``)."""

    def __init__(
        self,
        client: aioredis.Redis | None = None,
        stream: str | None = None,
        shard_count: int | None = None,
        maxlen: int | None = None,
    ) -> None:
        settings = get_settings()
        super().__init__(shard_count or settings.event_stream_shards)
        self._client = client
        self._owns_client = client is None
        self._loop_id: int | None = None
        self.stream = stream or settings.event_stream
        self.maxlen = maxlen or settings.event_stream_maxlen

    @property
    def client(self) -> aioredis.Redis:
        """Get the async Redis client, recreated when the event loop changes."""
        loop_id = current_loop_id()
        if self._owns_client and self._client is not None and self._loop_id != loop_id:
            self._client = None

        if self._client is None:
            self._client = create_async_redis_client()
            self._loop_id = loop_id
        return self._client

    def stream_name(self, shard: int) -> str:
        return f"{self.stream}:{shard}"

    async def publish(self, envelope: LogEnvelope, partition_key: str) -> tuple[int, str]:
        shard = self.shard_for(partition_key)
        try:
            position = await self.client.xadd(
                self.stream_name(shard),
                {
                    "partitionKey": partition_key,
                    "envelope": envelope.model_dump_json(by_alias=True),
                },
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as e:
            raise StreamUnavailableError(f"Failed to publish event: {e}") from e
        return shard, position

    async def _stream_info(self, shard: int) -> dict | None:
        try:
            return await self.client.xinfo_stream(self.stream_name(shard))
        except ResponseError as e:
            if "no such key" in str(e).lower():
                return None
            raise StreamUnavailableError(f"Failed to inspect shard {shard}: {e}") from e
        except RedisError as e:
            raise StreamUnavailableError(f"Failed to inspect shard {shard}: {e}") from e

    async def get_cursor(self, shard: int, from_start: bool = False) -> LogCursor:
        if from_start:
            return LogCursor(shard=shard)

        info = await self._stream_info(shard)
        position = (info or {}).get("last-generated-id") or START_POSITION
        return LogCursor(shard=shard, position=position)

    async def get_records(
        self,
        cursor: LogCursor,
        limit: int = 10,
    ) -> tuple[list[LogRecord], LogCursor]:
        info = await self._stream_info(cursor.shard)
        if info is None:
            return [], cursor

        # Redis >= 7 reports the highest id ever removed from the stream
        if _is_expired(cursor.position, info.get("max-deleted-entry-id")):
            raise CursorExpiredError(cursor.shard, cursor.position)

        minimum = "-" if cursor.position == START_POSITION else f"({cursor.position}"
        try:
            entries = await self.client.xrange(
                self.stream_name(cursor.shard),
                min=minimum,
                max="+",
                count=limit,
            )
        except RedisError as e:
            raise StreamUnavailableError(f"Failed to read shard {cursor.shard}: {e}") from e

        records: list[LogRecord] = []
        for entry_id, fields in entries:
            try:
                envelope = LogEnvelope.model_validate_json(fields["envelope"])
            except (KeyError, ValueError) as e:
                logger.warning(
                    "document_event_unreadable",
                    shard=cursor.shard,
                    position=entry_id,
                    error=str(e),
                )
                continue
            records.append(
                LogRecord(
                    shard=cursor.shard,
                    position=entry_id,
                    partition_key=fields.get("partitionKey", ""),
                    envelope=envelope,
                )
            )

        if not entries:
            return records, cursor
        return records, cursor.model_copy(update={"position": entries[-1][0]})


class InMemoryEventLog(EventLog):
    """Process-local event log for tests and single-process runs."""

    def __init__(self, shard_count: int = 1) -> None:
        super().__init__(shard_count)
        self._lock = threading.Lock()
        self._shards: dict[int, list[LogRecord]] = {shard: [] for shard in self.shards}
        self._max_deleted: dict[int, str] = {}
        self._sequence = 0

    async def publish(self, envelope: LogEnvelope, partition_key: str) -> tuple[int, str]:
        shard = self.shard_for(partition_key)
        with self._lock:
            self._sequence += 1
            position = f"{self._sequence}-0"
            self._shards[shard].append(
                LogRecord(
                    shard=shard,
                    position=position,
                    partition_key=partition_key,
                    envelope=envelope,
                )
            )
        return shard, position

    async def get_cursor(self, shard: int, from_start: bool = False) -> LogCursor:
        if from_start:
            return LogCursor(shard=shard)
        with self._lock:
            entries = self._shards[shard]
            position = entries[-1].position if entries else self._max_deleted.get(
                shard, START_POSITION
            )
        return LogCursor(shard=shard, position=position)

    async def get_records(
        self,
        cursor: LogCursor,
        limit: int = 10,
    ) -> tuple[list[LogRecord], LogCursor]:
        with self._lock:
            if _is_expired(cursor.position, self._max_deleted.get(cursor.shard)):
                raise CursorExpiredError(cursor.shard, cursor.position)
            after = parse_entry_id(cursor.position)
            batch = [
                record
                for record in self._shards[cursor.shard]
                if parse_entry_id(record.position) > after
            ][:limit]

        if not batch:
            return [], cursor
        return batch, cursor.model_copy(update={"position": batch[-1].position})

    def trim(self, shard: int, keep_last: int = 0) -> int:
        """Drop all but the newest ``keep_last`` entries of a shard.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            entries = self._shards[shard]
            cut = max(len(entries) - keep_last, 0)
            removed, self._shards[shard] = entries[:cut], entries[cut:]
            if removed:
                self._max_deleted[shard] = removed[-1].position
        return len(removed)


@lru_cache(maxsize=1)
def get_event_log() -> EventLog:
    """Get or create the configured event log singleton."""
    settings = get_settings()
    if settings.stream_backend == "memory":
        return InMemoryEventLog(shard_count=settings.event_stream_shards)
    return RedisEventLog()
