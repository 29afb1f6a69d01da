"""Redis adapter for stream projections.

Key layout (prefix defaults to `stream`):

- `{prefix}:meta:{id}`          hash: status, started_at, ended_at
- `{prefix}:participants:{id}`  set of participant identities
- `updates:{id}`                pub/sub channel carrying `StreamChange` messages

Each call touches its own keys only; no cross-key transactions. Redis errors
propagate to the caller unchanged.
"""

from __future__ import annotations

import asyncio
from datetime import datetime

import orjson
from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from livestate.schemas.stream_state import StreamChange, StreamState, StreamStatus

CHANGE_CHANNEL_PREFIX = "updates"


class StreamStore:
    def __init__(self, redis: Redis, key_prefix: str = "stream") -> None:
        self.redis = redis
        self.key_prefix = key_prefix

    def meta_key(self, stream_id: str) -> str:
        return f"{self.key_prefix}:meta:{stream_id}"

    def participants_key(self, stream_id: str) -> str:
        return f"{self.key_prefix}:participants:{stream_id}"

    @staticmethod
    def change_channel(stream_id: str) -> str:
        return f"{CHANGE_CHANNEL_PREFIX}:{stream_id}"

    async def read_projection(self, stream_id: str) -> StreamState | None:
        """Merge the meta hash and participant set. None when no status is stored."""
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.hgetall(self.meta_key(stream_id))
            pipe.smembers(self.participants_key(stream_id))
            meta, members = await pipe.execute()

        if not meta or not meta.get("status"):
            return None

        return StreamState(
            stream_id=stream_id,
            status=StreamStatus(meta["status"]),
            participants=set(members or ()),
            started_at=meta.get("started_at") or meta.get("ended_at"),
            ended_at=meta.get("ended_at") or None,
        )

    async def read_status(self, stream_id: str) -> StreamStatus | None:
        status = await self.redis.hget(self.meta_key(stream_id), "status")
        return StreamStatus(status) if status else None

    async def write_meta(
        self,
        stream_id: str,
        status: StreamStatus,
        *,
        started_at: datetime | None = None,
        ended_at: datetime | None = None,
    ) -> None:
        """Upsert scalar fields. `started_at` is only written when absent."""
        key = self.meta_key(stream_id)
        mapping = {"status": status.value}
        if ended_at is not None:
            mapping["ended_at"] = ended_at.isoformat()

        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.hset(key, mapping=mapping)
            if started_at is not None:
                pipe.hsetnx(key, "started_at", started_at.isoformat())
            await pipe.execute()

    async def add_participant(self, stream_id: str, identity: str) -> int:
        return int(await self.redis.sadd(self.participants_key(stream_id), identity))

    async def remove_participant(self, stream_id: str, identity: str) -> int:
        return int(await self.redis.srem(self.participants_key(stream_id), identity))

    async def count_participants(self, stream_id: str) -> int:
        return int(await self.redis.scard(self.participants_key(stream_id)))

    async def arm_expiry(self, stream_id: str, seconds: int) -> None:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.expire(self.meta_key(stream_id), seconds)
            pipe.expire(self.participants_key(stream_id), seconds)
            await pipe.execute()

    async def clear_expiry(self, stream_id: str) -> None:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.persist(self.meta_key(stream_id))
            pipe.persist(self.participants_key(stream_id))
            await pipe.execute()

    async def get_expiry(self, stream_id: str) -> int:
        """Remaining TTL of the meta key: -1 without expiry, -2 when missing."""
        return int(await self.redis.ttl(self.meta_key(stream_id)))

    async def list_tracked_ids(self) -> list[str]:
        prefix = f"{self.key_prefix}:meta:"
        ids = []
        async for key in self.redis.scan_iter(match=f"{prefix}*", count=500):
            ids.append(key[len(prefix) :])
        return ids

    async def purge(self, stream_id: str) -> None:
        await self.redis.delete(self.meta_key(stream_id), self.participants_key(stream_id))

    async def publish_change(self, stream_id: str, state: StreamState | None) -> int:
        change = StreamChange(stream_id=stream_id, state=state)
        payload = orjson.dumps(change.model_dump(mode="json", by_alias=True))
        return int(await self.redis.publish(self.change_channel(stream_id), payload))

    def subscribe_to_changes(self, maxsize: int = 1000) -> ChangeFeed:
        return ChangeFeed(self.redis, f"{CHANGE_CHANNEL_PREFIX}:*", maxsize=maxsize)


class ChangeFeed:
    """Pattern subscription on the change channels drained into a bounded queue.

    On overflow the oldest queued change is dropped; every change carries a full
    snapshot so later ones supersede it. The subscription is re-established
    after connection errors.
    """

    def __init__(
        self,
        redis: Redis,
        pattern: str,
        *,
        maxsize: int = 1000,
        poll_timeout: float = 1.0,
        retry_delay: float = 1.0,
    ) -> None:
        self._redis = redis
        self._pattern = pattern
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self.queue: asyncio.Queue[StreamChange] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self._ready = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="stream-change-feed")

    async def wait_ready(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._ready.wait(), timeout)

    async def stop(self) -> None:
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._ready.clear()

    async def _run(self) -> None:
        while True:
            pubsub = self._redis.pubsub()
            try:
                await pubsub.psubscribe(self._pattern)
                logger.info("Subscribed to change channels: {}", self._pattern)
                self._ready.set()

                while True:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self._poll_timeout
                    )
                    if message is None or message.get("type") != "pmessage":
                        continue
                    self._offer(message["data"])
            except RedisError as e:
                self._ready.clear()
                logger.warning(
                    "Change feed connection lost: {}, retry in {}s", e, self._retry_delay
                )
                await asyncio.sleep(self._retry_delay)
            finally:
                await pubsub.aclose()

    def _offer(self, data: str | bytes) -> None:
        try:
            change = StreamChange.model_validate(orjson.loads(data))
        except ValueError as e:
            logger.warning("Dropping malformed change message: {}", e)
            return

        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning("Change queue full, dropped oldest change (total {})", self.dropped)

        self.queue.put_nowait(change)
