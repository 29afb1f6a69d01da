"""Periodic repair of the projection against the room service.

Store expiry is only advisory garbage collection; a reconciliation cycle is what
guarantees that finished, drifted and stale streams eventually disappear.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from loguru import logger

from livestate.domain.live.stream.lifecycle import LifecycleProcessor, StreamDeleted
from livestate.domain.live.stream.metrics import MetricsAggregator
from livestate.domain.live.stream.store import StreamStore
from livestate.schemas.stream_state import StreamState, StreamStatus, utc_now
from livestate.shared.lock import LockManager


@dataclass(slots=True)
class ReconcileReport:
    tracked: int = 0
    purged_finished: int = 0
    rearmed_finished: int = 0
    purged_drift: int = 0
    expired_stale: int = 0
    skipped: int = 0
    aborted: bool = False
    stopped: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class Reconciler:
    def __init__(
        self,
        store: StreamStore,
        room_service: Any,
        processor: LifecycleProcessor,
        metrics: MetricsAggregator,
        *,
        stream_ttl_seconds: int = 300,
        stale_seconds: int = 600,
        purge_tolerance_seconds: int = 30,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.room_service = room_service
        self.processor = processor
        self.metrics = metrics
        self.stream_ttl_seconds = stream_ttl_seconds
        self.stale_seconds = stale_seconds
        self.purge_tolerance_seconds = purge_tolerance_seconds
        self.clock = clock

    async def run_cycle(self, should_stop: Callable[[], bool] = lambda: False) -> ReconcileReport:
        """Run one reconciliation pass.

        A room service failure aborts the pass before anything is deleted.
        `should_stop` is checked between streams.
        """
        report = ReconcileReport()

        stream_ids = await self.store.list_tracked_ids()
        report.tracked = len(stream_ids)
        if not stream_ids:
            await self.metrics.refresh()
            return report

        # records started after this point are newer than the room listing
        listed_at = self.clock()
        try:
            existing = await self.room_service.list_existing_rooms(stream_ids)
        except Exception as e:
            logger.warning("Room service query failed, reconciliation aborted: {}", e)
            report.aborted = True
            return report

        for index, stream_id in enumerate(stream_ids):
            if should_stop():
                logger.info("Reconciliation stopped after {} of {} streams", index, report.tracked)
                report.stopped = True
                break

            state = await self.store.read_projection(stream_id)
            if state is None:
                # expired or purged since the listing
                continue

            if state.status == StreamStatus.FINISHED:
                await self._check_finished(state, report)
            elif stream_id not in existing and state.started_at >= listed_at:
                report.skipped += 1
                logger.info("Stream {} started after the room listing, kept", stream_id)
            elif stream_id not in existing:
                await self._purge(stream_id)
                report.purged_drift += 1
                logger.info("Stream {} has no room, purged", stream_id)
            elif state.is_idle and self._age(state) > self.stale_seconds:
                await self._expire_stale(stream_id, report)

        await self.metrics.refresh()
        return report

    def _age(self, state: StreamState) -> float:
        return (self.clock() - state.started_at).total_seconds()

    async def _check_finished(self, state: StreamState, report: ReconcileReport) -> None:
        stream_id = state.stream_id
        now = self.clock()
        ttl = await self.store.get_expiry(stream_id)

        if state.ended_at is None:
            overdue = ttl == -1
        else:
            deadline = state.ended_at + timedelta(
                seconds=self.stream_ttl_seconds + self.purge_tolerance_seconds
            )
            overdue = deadline < now

        if overdue:
            await self._purge(stream_id)
            report.purged_finished += 1
            logger.info("Finished stream {} past its purge time, purged", stream_id)
        elif ttl == -1:
            remaining = state.ended_at + timedelta(seconds=self.stream_ttl_seconds) - now
            seconds = max(1, int(remaining.total_seconds()))
            await self.store.arm_expiry(stream_id, seconds)
            report.rearmed_finished += 1
            logger.info("Finished stream {} had no expiry, re-armed {}s", stream_id, seconds)

    async def _expire_stale(self, stream_id: str, report: ReconcileReport) -> None:
        try:
            await self.room_service.delete_room(stream_id)
        except Exception as e:
            logger.warning("Failed to delete stale room {}, skipped: {}", stream_id, e)
            report.skipped += 1
            return

        await self.processor.apply(StreamDeleted(stream_id))
        report.expired_stale += 1
        logger.info("Stale idle stream {} expired", stream_id)

    async def _purge(self, stream_id: str) -> None:
        await self.store.purge(stream_id)
        await self.store.publish_change(stream_id, None)


class ReconciliationLoop:
    """Runs reconciliation cycles at a fixed interval in a supervised task.

    At most one cycle runs per process; overlapping requests are skipped. With a
    lock manager at most one cycle runs across all instances sharing the store.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        interval_seconds: float = 30,
        lock_manager: LockManager | None = None,
        grace_seconds: float = 5.0,
    ) -> None:
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.lock_manager = lock_manager
        self.grace_seconds = grace_seconds
        self.last_report: ReconcileReport | None = None
        self._guard = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> ReconcileReport | None:
        """Run a single cycle now. Returns None when the cycle was skipped."""
        if self._guard.locked():
            logger.info("Reconciliation cycle already running, skipped")
            return None

        async with self._guard:
            if self.lock_manager is not None:
                lease = max(1, int(self.interval_seconds * 2))
                if not await self.lock_manager.acquire("reconcile", ttl=lease):
                    logger.debug("Reconciliation running on another instance, skipped")
                    return None

            try:
                report = await self.reconciler.run_cycle(self._stopping.is_set)
            finally:
                if self.lock_manager is not None:
                    await self.lock_manager.release()

        self.last_report = report
        logger.info("Reconciliation cycle done: {}", report.as_dict())
        return report

    async def _run(self) -> None:
        while not self._stopping.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), self.interval_seconds)
            if self._stopping.is_set():
                break

            try:
                await self.run_once()
            except Exception:
                logger.exception("Reconciliation cycle failed")

    def start(self) -> None:
        if self.running:
            return

        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="stream-reconciler")
        logger.info("Reconciliation loop started, interval={}s", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return

        self._stopping.set()
        done, _ = await asyncio.wait({self._task}, timeout=self.grace_seconds)
        if not done:
            logger.warning("Reconciliation cycle did not stop within {}s, cancelling", self.grace_seconds)
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

        self._task = None
        logger.info("Reconciliation loop stopped")
