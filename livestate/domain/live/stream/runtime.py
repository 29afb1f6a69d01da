"""Lifecycle-scoped container for the stream coordinator components."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from livestate.app_config import AppEnvironConfig, get_app_environ_config
from livestate.domain.live.stream.broadcaster import Broadcaster, ConnectionRegistry
from livestate.domain.live.stream.lifecycle import LifecycleProcessor
from livestate.domain.live.stream.metrics import MetricsAggregator
from livestate.domain.live.stream.reconciler import ReconciliationLoop, Reconciler
from livestate.domain.live.stream.store import StreamStore
from livestate.domain.live.stream.stream_domain import StreamService
from livestate.schemas.stream_state import utc_now
from livestate.shared.lock import LockManager


@dataclass
class StreamRuntime:
    settings: AppEnvironConfig
    store: StreamStore
    room_service: Any
    metrics: MetricsAggregator
    processor: LifecycleProcessor
    registry: ConnectionRegistry
    broadcaster: Broadcaster
    reconciler: Reconciler
    reconcile_loop: ReconciliationLoop
    streams: StreamService

    async def start(self) -> None:
        self.broadcaster.start()

        if self.settings.RECONCILE_MODE == "inprocess":
            self.reconcile_loop.start()
        else:
            logger.info("In-process reconciliation disabled (mode={})", self.settings.RECONCILE_MODE)

        try:
            await self.metrics.refresh()
        except RedisError as e:
            logger.warning("Initial metrics refresh failed: {}", e)

    async def stop(self) -> None:
        await self.reconcile_loop.stop()
        await self.broadcaster.stop()


def build_runtime(
    redis: Redis,
    room_service: Any,
    settings: AppEnvironConfig | None = None,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> StreamRuntime:
    settings = settings or get_app_environ_config()

    store = StreamStore(redis, key_prefix=settings.KEY_PREFIX)
    metrics = MetricsAggregator(store)
    processor = LifecycleProcessor(
        store,
        metrics,
        idle_ttl_seconds=settings.IDLE_TTL_SECONDS,
        stream_ttl_seconds=settings.STREAM_TTL_SECONDS,
        clock=clock,
    )
    registry = ConnectionRegistry()
    broadcaster = Broadcaster(registry, store.subscribe_to_changes(settings.CHANGE_QUEUE_SIZE))
    reconciler = Reconciler(
        store,
        room_service,
        processor,
        metrics,
        stream_ttl_seconds=settings.STREAM_TTL_SECONDS,
        stale_seconds=settings.RECONCILE_STALE_SECONDS,
        purge_tolerance_seconds=settings.RECONCILE_PURGE_TOLERANCE_SECONDS,
        clock=clock,
    )
    lock_manager = (
        LockManager(redis, lock_prefix=f"{settings.KEY_PREFIX}:lock")
        if settings.RECONCILE_LOCK
        else None
    )
    reconcile_loop = ReconciliationLoop(
        reconciler,
        interval_seconds=settings.RECONCILE_INTERVAL_SECONDS,
        lock_manager=lock_manager,
    )
    streams = StreamService(
        store,
        processor,
        room_service,
        empty_timeout=settings.ROOM_EMPTY_TIMEOUT_SECONDS,
        max_participants=settings.MAX_PARTICIPANTS_LIMIT,
    )

    return StreamRuntime(
        settings=settings,
        store=store,
        room_service=room_service,
        metrics=metrics,
        processor=processor,
        registry=registry,
        broadcaster=broadcaster,
        reconciler=reconciler,
        reconcile_loop=reconcile_loop,
        streams=streams,
    )
