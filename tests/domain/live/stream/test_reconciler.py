"""Tests for reconciliation against the room service."""

import asyncio

import pytest

from livestate.domain.live.stream.lifecycle import (
    ParticipantJoined,
    ParticipantLeft,
    RoomFinished,
    StreamCreated,
)
from livestate.domain.live.stream.reconciler import ReconciliationLoop
from livestate.domain.live.stream.runtime import StreamRuntime
from livestate.schemas.stream_state import StreamStatus
from livestate.shared.lock import LockManager


async def _create(rt: StreamRuntime, stream_id: str, *participants: str) -> None:
    rt.room_service.rooms.add(stream_id)
    await rt.processor.apply(StreamCreated(stream_id))
    for identity in participants:
        await rt.processor.apply(ParticipantJoined(stream_id, identity))


class TestRunCycle:
    async def test_nothing_tracked(self, runtime):
        report = await runtime.reconciler.run_cycle()

        assert report.tracked == 0
        assert not report.aborted
        assert runtime.room_service.list_calls == []

    async def test_room_service_failure_aborts_without_changes(self, runtime, clock):
        await _create(runtime, "s1")
        runtime.room_service.rooms.clear()
        runtime.room_service.fail_list = True

        report = await runtime.reconciler.run_cycle()

        assert report.aborted
        assert report.purged_drift == 0
        assert (await runtime.store.read_projection("s1")).status == StreamStatus.ACTIVE

    async def test_rooms_are_queried_in_one_batch(self, runtime):
        for stream_id in ("a", "b", "c"):
            await _create(runtime, stream_id, "alice")

        await runtime.reconciler.run_cycle()

        assert len(runtime.room_service.list_calls) == 1
        assert sorted(runtime.room_service.list_calls[0]) == ["a", "b", "c"]

    async def test_drift_is_purged(self, runtime, clock):
        await _create(runtime, "kept", "alice")
        await _create(runtime, "drifted", "bob")
        runtime.room_service.rooms.discard("drifted")
        clock.advance(1)

        feed = runtime.broadcaster.feed
        feed.start()
        await feed.wait_ready(timeout=2)

        report = await runtime.reconciler.run_cycle()

        assert report.purged_drift == 1
        assert await runtime.store.read_projection("drifted") is None
        assert (await runtime.store.read_projection("kept")).participants == {"alice"}
        change = await asyncio.wait_for(feed.queue.get(), 2)
        assert change.stream_id == "drifted"
        assert change.state is None

    async def test_stream_recreated_after_room_listing_is_kept(self, runtime, clock, monkeypatch):
        await _create(runtime, "s1")
        await runtime.processor.apply(RoomFinished("s1"))
        runtime.room_service.rooms.discard("s1")
        clock.advance(1)

        list_rooms = runtime.room_service.list_existing_rooms
        recreated = []

        async def list_then_recreate(room_names):
            existing = await list_rooms(room_names)
            if not recreated:
                recreated.append("s1")
                await runtime.streams.create_stream("s1")
            return existing

        monkeypatch.setattr(runtime.room_service, "list_existing_rooms", list_then_recreate)

        report = await runtime.reconciler.run_cycle()

        assert report.purged_drift == 0
        assert report.skipped == 1
        assert (await runtime.store.read_projection("s1")).status == StreamStatus.ACTIVE
        assert "s1" in runtime.room_service.rooms

    async def test_overdue_finished_stream_is_purged(self, runtime, clock, settings):
        await _create(runtime, "s1")
        await runtime.processor.apply(RoomFinished("s1"))
        clock.advance(settings.STREAM_TTL_SECONDS + settings.RECONCILE_PURGE_TOLERANCE_SECONDS + 1)

        report = await runtime.reconciler.run_cycle()

        assert report.purged_finished == 1
        assert await runtime.store.read_projection("s1") is None

    async def test_recent_finished_stream_is_kept(self, runtime, clock, settings):
        await _create(runtime, "s1")
        await runtime.processor.apply(RoomFinished("s1"))
        clock.advance(settings.STREAM_TTL_SECONDS)

        report = await runtime.reconciler.run_cycle()

        assert report.purged_finished == 0
        assert report.rearmed_finished == 0
        assert (await runtime.store.read_projection("s1")).status == StreamStatus.FINISHED

    async def test_finished_stream_without_expiry_is_rearmed(self, runtime, clock, settings):
        await _create(runtime, "s1")
        await runtime.processor.apply(RoomFinished("s1"))
        await runtime.store.clear_expiry("s1")
        clock.advance(100)

        report = await runtime.reconciler.run_cycle()

        assert report.rearmed_finished == 1
        ttl = await runtime.store.get_expiry("s1")
        assert 0 < ttl <= settings.STREAM_TTL_SECONDS - 100

    async def test_finished_stream_without_end_or_expiry_is_purged(self, runtime, redis_client):
        await _create(runtime, "s1")
        await redis_client.hset("stream:meta:s1", "status", "finished")

        report = await runtime.reconciler.run_cycle()

        assert report.purged_finished == 1
        assert await runtime.store.read_projection("s1") is None

    async def test_stale_idle_stream_is_expired(self, runtime, clock, settings):
        await _create(runtime, "s1", "alice")
        await runtime.processor.apply(ParticipantLeft("s1", "alice"))
        clock.advance(settings.RECONCILE_STALE_SECONDS + 1)

        report = await runtime.reconciler.run_cycle()

        assert report.expired_stale == 1
        assert runtime.room_service.deleted == ["s1"]
        state = await runtime.store.read_projection("s1")
        assert state.status == StreamStatus.FINISHED
        assert 0 < await runtime.store.get_expiry("s1") <= settings.STREAM_TTL_SECONDS

    async def test_stale_stream_kept_when_room_delete_fails(self, runtime, clock, settings):
        await _create(runtime, "s1")
        runtime.room_service.fail_delete.add("s1")
        clock.advance(settings.RECONCILE_STALE_SECONDS + 1)

        report = await runtime.reconciler.run_cycle()

        assert report.expired_stale == 0
        assert report.skipped == 1
        assert (await runtime.store.read_projection("s1")).status == StreamStatus.ACTIVE

    async def test_old_stream_with_participants_is_kept(self, runtime, clock, settings):
        await _create(runtime, "s1", "alice")
        clock.advance(settings.RECONCILE_STALE_SECONDS * 10)

        report = await runtime.reconciler.run_cycle()

        assert report.expired_stale == 0
        assert runtime.room_service.deleted == []

    async def test_stop_request_ends_cycle_between_streams(self, runtime):
        for stream_id in ("a", "b"):
            await _create(runtime, stream_id)
        runtime.room_service.rooms.clear()

        report = await runtime.reconciler.run_cycle(should_stop=lambda: True)

        assert report.stopped
        assert report.purged_drift == 0

    async def test_cycle_refreshes_metrics(self, runtime, clock):
        await _create(runtime, "a", "alice", "bob")
        await _create(runtime, "b", "carol")
        runtime.room_service.rooms.discard("b")
        clock.advance(1)

        await runtime.reconciler.run_cycle()

        assert runtime.metrics.last_snapshot.active_streams == 1
        assert runtime.metrics.last_snapshot.total_participants == 2


class SlowRoomService:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    async def list_existing_rooms(self, room_names):
        await asyncio.sleep(self.delay)
        return set(room_names)


class TestReconciliationLoop:
    async def test_overlapping_cycle_is_skipped(self, runtime):
        loop = runtime.reconcile_loop

        async with loop._guard:
            assert await loop.run_once() is None

        assert await loop.run_once() is not None

    async def test_cycle_held_by_another_instance_is_skipped(self, runtime, redis_client):
        other = LockManager(redis_client, lock_prefix="stream:lock", owner="other-instance")
        assert await other.acquire("reconcile")

        assert await runtime.reconcile_loop.run_once() is None

        await other.release()
        assert await runtime.reconcile_loop.run_once() is not None

    async def test_lock_is_released_after_cycle(self, runtime, redis_client):
        await runtime.reconcile_loop.run_once()

        assert await redis_client.get("stream:lock:reconcile") is None

    async def test_loop_runs_on_interval(self, runtime):
        loop = ReconciliationLoop(runtime.reconciler, interval_seconds=0.05)

        loop.start()
        await asyncio.sleep(0.3)
        await loop.stop()

        assert loop.last_report is not None
        assert not loop.running

    async def test_failing_cycle_does_not_stop_loop(self, runtime, monkeypatch):
        calls = []

        async def broken(should_stop):
            calls.append(1)
            raise RuntimeError("boom")

        monkeypatch.setattr(runtime.reconciler, "run_cycle", broken)
        loop = ReconciliationLoop(runtime.reconciler, interval_seconds=0.05)

        loop.start()
        await asyncio.sleep(0.3)
        assert loop.running
        await loop.stop()

        assert len(calls) >= 2

    async def test_stop_cancels_after_grace(self, runtime):
        runtime.reconciler.room_service = SlowRoomService(delay=30)
        await _create(runtime, "s1")
        loop = ReconciliationLoop(runtime.reconciler, interval_seconds=0.01, grace_seconds=0.1)

        loop.start()
        await asyncio.sleep(0.1)
        await asyncio.wait_for(loop.stop(), 2)

        assert not loop.running
        assert loop.last_report is None

    @pytest.mark.parametrize("mode", ["worker", "off"])
    async def test_runtime_skips_loop_outside_inprocess_mode(self, runtime, mode):
        runtime.settings = runtime.settings.model_copy(update={"RECONCILE_MODE": mode})

        await runtime.start()

        assert not runtime.reconcile_loop.running

    async def test_runtime_starts_loop_inprocess(self, runtime):
        runtime.settings = runtime.settings.model_copy(update={"RECONCILE_MODE": "inprocess"})

        await runtime.start()
        assert runtime.reconcile_loop.running

        await runtime.stop()
        assert not runtime.reconcile_loop.running
