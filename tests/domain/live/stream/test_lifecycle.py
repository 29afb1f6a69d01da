"""Tests for lifecycle event processing."""

import asyncio

import pytest

from livestate.domain.live.stream.lifecycle import (
    LifecycleEventKind,
    LifecycleProcessor,
    ParticipantJoined,
    ParticipantLeft,
    RoomFinished,
    StreamCreated,
    StreamDeleted,
)
from livestate.domain.live.stream.runtime import StreamRuntime
from livestate.schemas.stream_state import StreamStatus


@pytest.fixture
def processor(runtime: StreamRuntime) -> LifecycleProcessor:
    return runtime.processor


async def _state(runtime: StreamRuntime, stream_id: str):
    return await runtime.store.read_projection(stream_id)


class TestCreate:
    async def test_create_absent_stream(self, runtime, processor, clock):
        result = await processor.apply(StreamCreated("s1"))

        assert result.applied
        assert result.kind == LifecycleEventKind.STREAM_CREATED
        state = await _state(runtime, "s1")
        assert state.status == StreamStatus.ACTIVE
        assert state.participants == set()
        assert state.started_at == clock.now
        assert await runtime.store.get_expiry("s1") == -1

    async def test_create_is_idempotent(self, runtime, processor, clock):
        await processor.apply(StreamCreated("s1"))
        first = await _state(runtime, "s1")
        clock.advance(30)

        result = await processor.apply(StreamCreated("s1"))

        assert not result.applied
        assert await _state(runtime, "s1") == first

    async def test_recreate_after_finish_starts_fresh(self, runtime, processor, clock):
        await processor.apply(StreamCreated("s1"))
        await processor.apply(ParticipantJoined("s1", "alice"))
        await processor.apply(RoomFinished("s1"))
        clock.advance(120)

        result = await processor.apply(StreamCreated("s1"))

        assert result.applied
        state = await _state(runtime, "s1")
        assert state.status == StreamStatus.ACTIVE
        assert state.participants == set()
        assert state.started_at == clock.now
        assert state.ended_at is None
        assert await runtime.store.get_expiry("s1") == -1


class TestParticipants:
    async def test_join_and_duplicate_join(self, runtime, processor):
        await processor.apply(StreamCreated("s1"))

        first = await processor.apply(ParticipantJoined("s1", "alice"))
        second = await processor.apply(ParticipantJoined("s1", "alice"))

        assert first.applied
        assert not second.applied
        assert (await _state(runtime, "s1")).participants == {"alice"}

    async def test_join_before_creation_creates_implicitly(self, runtime, processor, clock):
        joined_at = clock.now

        result = await processor.apply(ParticipantJoined("s1", "alice"))
        clock.advance(5)
        await processor.apply(StreamCreated("s1"))

        assert result.applied
        state = await _state(runtime, "s1")
        assert state.status == StreamStatus.ACTIVE
        assert state.participants == {"alice"}
        assert state.started_at == joined_at

    async def test_last_leave_arms_idle_expiry(self, runtime, processor, settings):
        await processor.apply(StreamCreated("s1"))
        await processor.apply(ParticipantJoined("s1", "alice"))
        await processor.apply(ParticipantJoined("s1", "bob"))

        await processor.apply(ParticipantLeft("s1", "alice"))
        assert await runtime.store.get_expiry("s1") == -1

        await processor.apply(ParticipantLeft("s1", "bob"))
        state = await _state(runtime, "s1")
        assert state.is_idle
        assert 0 < await runtime.store.get_expiry("s1") <= settings.IDLE_TTL_SECONDS

    async def test_join_on_idle_stream_clears_expiry(self, runtime, processor):
        await processor.apply(StreamCreated("s1"))
        await processor.apply(ParticipantJoined("s1", "alice"))
        await processor.apply(ParticipantLeft("s1", "alice"))
        assert await runtime.store.get_expiry("s1") > 0

        await processor.apply(ParticipantJoined("s1", "bob"))

        assert await runtime.store.get_expiry("s1") == -1
        assert (await _state(runtime, "s1")).participants == {"bob"}

    async def test_join_racing_idle_expiry_recreates_stream(
        self, runtime, processor, clock, monkeypatch, redis_client
    ):
        await processor.apply(StreamCreated("s1"))
        await processor.apply(ParticipantJoined("s1", "alice"))
        await processor.apply(ParticipantLeft("s1", "alice"))
        clock.advance(30)

        read_status = runtime.store.read_status
        expired = []

        async def read_then_expire(stream_id):
            status = await read_status(stream_id)
            if not expired:
                expired.append(stream_id)
                await redis_client.delete("stream:meta:s1", "stream:participants:s1")
            return status

        monkeypatch.setattr(runtime.store, "read_status", read_then_expire)

        result = await processor.apply(ParticipantJoined("s1", "bob"))

        assert result.applied
        state = await _state(runtime, "s1")
        assert state.status == StreamStatus.ACTIVE
        assert state.participants == {"bob"}
        assert state.started_at == clock.now
        assert await runtime.store.get_expiry("s1") == -1
        assert await redis_client.ttl("stream:participants:s1") == -1

    async def test_leave_of_absent_identity_is_noop(self, runtime, processor):
        await processor.apply(StreamCreated("s1"))

        result = await processor.apply(ParticipantLeft("s1", "ghost"))

        assert not result.applied
        assert await runtime.store.get_expiry("s1") == -1

    async def test_idle_stream_expires(self, runtime, clock):
        processor = LifecycleProcessor(runtime.store, idle_ttl_seconds=1, clock=clock)
        await processor.apply(ParticipantJoined("s1", "alice"))
        await processor.apply(ParticipantLeft("s1", "alice"))

        await asyncio.sleep(1.2)

        assert await _state(runtime, "s1") is None


class TestTermination:
    @pytest.mark.parametrize("event", [RoomFinished("s1"), StreamDeleted("s1")])
    async def test_finish_active_stream(self, runtime, processor, clock, settings, event):
        await processor.apply(StreamCreated("s1"))
        await processor.apply(ParticipantJoined("s1", "alice"))
        clock.advance(60)

        result = await processor.apply(event)

        assert result.applied
        state = await _state(runtime, "s1")
        assert state.status == StreamStatus.FINISHED
        assert state.ended_at == clock.now
        assert 0 < await runtime.store.get_expiry("s1") <= settings.STREAM_TTL_SECONDS

    async def test_finished_stream_ignores_everything_but_create(self, runtime, processor):
        await processor.apply(StreamCreated("s1"))
        await processor.apply(RoomFinished("s1"))
        finished = await _state(runtime, "s1")

        for event in (
            ParticipantJoined("s1", "alice"),
            ParticipantLeft("s1", "alice"),
            RoomFinished("s1"),
            StreamDeleted("s1"),
        ):
            result = await processor.apply(event)
            assert not result.applied
            assert result.reason == "stream already finished"

        assert await _state(runtime, "s1") == finished

    @pytest.mark.parametrize(
        "event",
        [ParticipantLeft("nope", "alice"), RoomFinished("nope"), StreamDeleted("nope")],
    )
    async def test_events_for_absent_stream_are_noops(self, runtime, processor, event):
        result = await processor.apply(event)

        assert not result.applied
        assert result.reason == "stream not found"
        assert await runtime.store.list_tracked_ids() == []


class TestPublishing:
    async def test_only_applied_transitions_publish(self, runtime, processor):
        feed = runtime.broadcaster.feed
        feed.start()
        await feed.wait_ready(timeout=2)
        queue = feed.queue

        await processor.apply(StreamCreated("s1"))
        await processor.apply(ParticipantJoined("s1", "alice"))
        await processor.apply(ParticipantJoined("s1", "alice"))
        await processor.apply(ParticipantLeft("s1", "ghost"))
        await processor.apply(RoomFinished("s1"))

        changes = [await asyncio.wait_for(queue.get(), 2) for _ in range(3)]
        await asyncio.sleep(0.2)

        assert queue.empty()
        assert [x.state.status for x in changes] == [
            StreamStatus.ACTIVE,
            StreamStatus.ACTIVE,
            StreamStatus.FINISHED,
        ]
        assert changes[1].state.participants == {"alice"}

    async def test_transitions_refresh_metrics(self, runtime, processor):
        await processor.apply(StreamCreated("s1"))
        await processor.apply(ParticipantJoined("s1", "alice"))
        await processor.apply(ParticipantJoined("s2", "bob"))

        snapshot = runtime.metrics.last_snapshot
        assert snapshot.active_streams == 2
        assert snapshot.total_participants == 2

        await processor.apply(RoomFinished("s2"))
        assert runtime.metrics.last_snapshot.active_streams == 1
