"""Fan-out of stream changes to connected observers.

Every process subscribes to the same change channels, so an observer connected
to any instance sees changes made by every instance. The registry of open
connections is process-local and owned by the runtime.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Literal
from uuid import uuid4

import orjson
from loguru import logger

from livestate.domain.live.stream.store import ChangeFeed, StreamStore
from livestate.schemas.stream_state import StreamChange, StreamState


class ObserverClosed(Exception):
    pass


class Observer:
    """One open connection watching a single stream.

    Writes never block: a full or closed observer rejects the write and is
    pruned by the broadcaster.
    """

    def __init__(self, stream_id: str, maxsize: int = 100) -> None:
        self.stream_id = stream_id
        self.observer_id = uuid4().hex[:8]
        self.queue: asyncio.Queue[StreamState | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, state: StreamState | None) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(state)
        except asyncio.QueueFull:
            logger.warning("Observer {} on {} is too slow, closing", self.observer_id, self.stream_id)
            self.close()
            return False
        return True

    def close(self) -> None:
        self._closed.set()

    async def next(self, timeout: float | None = None) -> StreamState | None:
        """Next queued change.

        Raises `TimeoutError` when nothing arrives in time and `ObserverClosed`
        once the observer is closed and drained.
        """
        if not self.queue.empty():
            return self.queue.get_nowait()
        if self.closed:
            raise ObserverClosed(self.observer_id)

        getter = asyncio.ensure_future(self.queue.get())
        closer = asyncio.ensure_future(self._closed.wait())
        done, pending = await asyncio.wait(
            {getter, closer}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()

        if getter in done:
            return getter.result()
        if closer in done:
            raise ObserverClosed(self.observer_id)
        raise TimeoutError


class ConnectionRegistry:
    def __init__(self) -> None:
        self._observers: dict[str, set[Observer]] = {}

    def register(self, observer: Observer) -> None:
        self._observers.setdefault(observer.stream_id, set()).add(observer)
        logger.debug("Observer {} registered on {}", observer.observer_id, observer.stream_id)

    def unregister(self, observer: Observer) -> None:
        observers = self._observers.get(observer.stream_id)
        if observers is None:
            return

        observers.discard(observer)
        if not observers:
            del self._observers[observer.stream_id]
        logger.debug("Observer {} unregistered from {}", observer.observer_id, observer.stream_id)

    def observers(self, stream_id: str) -> list[Observer]:
        return list(self._observers.get(stream_id, ()))

    def count(self, stream_id: str | None = None) -> int:
        if stream_id is not None:
            return len(self._observers.get(stream_id, ()))
        return sum(len(x) for x in self._observers.values())

    def close_all(self) -> None:
        for observers in list(self._observers.values()):
            for observer in list(observers):
                observer.close()
                self.unregister(observer)


class Broadcaster:
    """Drains the change feed in a single task so per-stream order is kept."""

    def __init__(self, registry: ConnectionRegistry, feed: ChangeFeed) -> None:
        self.registry = registry
        self.feed = feed
        self._task: asyncio.Task | None = None

    def dispatch(self, change: StreamChange) -> int:
        delivered = 0
        for observer in self.registry.observers(change.stream_id):
            if observer.offer(change.state):
                delivered += 1
            else:
                self.registry.unregister(observer)
        return delivered

    async def run(self) -> None:
        while True:
            change = await self.feed.queue.get()
            self.dispatch(change)

    def start(self) -> None:
        self.feed.start()
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="stream-broadcaster")
        logger.info("Broadcaster started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.feed.stop()
        self.registry.close_all()
        logger.info("Broadcaster stopped")


@dataclass(frozen=True, slots=True)
class StreamEvent:
    kind: Literal["snapshot", "gone", "keepalive"]
    stream_id: str
    state: StreamState | None = None

    def to_sse(self) -> str:
        if self.kind == "keepalive":
            return ": keepalive\n\n"

        if self.kind == "gone":
            data = orjson.dumps({"streamId": self.stream_id})
        else:
            data = orjson.dumps(self.state.to_public())
        return f"event: {self.kind}\ndata: {data.decode()}\n\n"


async def observe_stream(
    store: StreamStore,
    registry: ConnectionRegistry,
    stream_id: str,
    *,
    queue_size: int = 100,
    keepalive_seconds: float = 15.0,
) -> AsyncIterator[StreamEvent] | None:
    """Open an observation of one stream.

    The observer is registered before the snapshot is read so no change made
    after the read can be missed. Returns None, with nothing left registered,
    when the stream does not exist.
    """
    observer = Observer(stream_id, maxsize=queue_size)
    registry.register(observer)
    try:
        snapshot = await store.read_projection(stream_id)
    except BaseException:
        registry.unregister(observer)
        raise

    if snapshot is None:
        registry.unregister(observer)
        return None

    return _observe(registry, observer, snapshot, keepalive_seconds)


async def _observe(
    registry: ConnectionRegistry,
    observer: Observer,
    snapshot: StreamState,
    keepalive_seconds: float,
) -> AsyncIterator[StreamEvent]:
    stream_id = observer.stream_id
    try:
        yield StreamEvent("snapshot", stream_id, snapshot)

        while True:
            try:
                state = await observer.next(keepalive_seconds)
            except TimeoutError:
                yield StreamEvent("keepalive", stream_id)
                continue
            except ObserverClosed:
                return

            if state is None:
                yield StreamEvent("gone", stream_id)
                return
            yield StreamEvent("snapshot", stream_id, state)
    finally:
        observer.close()
        registry.unregister(observer)
