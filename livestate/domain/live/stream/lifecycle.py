"""Lifecycle events and the state machine that applies them to the projection.

Transitions (current status -> event -> result):

    absent   + StreamCreated        -> active (startedAt set once)
    absent   + ParticipantJoined    -> active, implicitly created, then joined
    absent   + Left/Finished/Deleted-> no-op
    active   + ParticipantJoined    -> participant added, idle expiry cleared
    active   + ParticipantLeft      -> participant removed, idle expiry armed at zero
    active   + Finished/Deleted     -> finished, purge expiry armed
    finished + StreamCreated        -> old record purged, active again
    finished + anything else        -> no-op

Every applied transition publishes the resulting snapshot and refreshes the
metrics. Transitions that change nothing publish nothing.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, ClassVar

from loguru import logger

from livestate.domain.live.stream.store import StreamStore
from livestate.schemas.stream_state import StreamState, StreamStatus, utc_now

if TYPE_CHECKING:
    from livestate.domain.live.stream.metrics import MetricsAggregator


class LifecycleEventKind(str, Enum):
    STREAM_CREATED = "stream_created"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    ROOM_FINISHED = "room_finished"
    STREAM_DELETED = "stream_deleted"


@dataclass(frozen=True, slots=True)
class StreamCreated:
    kind: ClassVar[LifecycleEventKind] = LifecycleEventKind.STREAM_CREATED
    stream_id: str


@dataclass(frozen=True, slots=True)
class ParticipantJoined:
    kind: ClassVar[LifecycleEventKind] = LifecycleEventKind.PARTICIPANT_JOINED
    stream_id: str
    identity: str


@dataclass(frozen=True, slots=True)
class ParticipantLeft:
    kind: ClassVar[LifecycleEventKind] = LifecycleEventKind.PARTICIPANT_LEFT
    stream_id: str
    identity: str


@dataclass(frozen=True, slots=True)
class RoomFinished:
    kind: ClassVar[LifecycleEventKind] = LifecycleEventKind.ROOM_FINISHED
    stream_id: str


@dataclass(frozen=True, slots=True)
class StreamDeleted:
    kind: ClassVar[LifecycleEventKind] = LifecycleEventKind.STREAM_DELETED
    stream_id: str


LifecycleEvent = StreamCreated | ParticipantJoined | ParticipantLeft | RoomFinished | StreamDeleted


@dataclass(frozen=True, slots=True)
class TransitionResult:
    stream_id: str
    kind: LifecycleEventKind
    applied: bool
    state: StreamState | None = None
    reason: str | None = None

    def as_dict(self) -> dict:
        return {
            "streamId": self.stream_id,
            "kind": self.kind.value,
            "applied": self.applied,
            "reason": self.reason,
        }


class LifecycleProcessor:
    def __init__(
        self,
        store: StreamStore,
        metrics: MetricsAggregator | None = None,
        *,
        idle_ttl_seconds: int = 60,
        stream_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.idle_ttl_seconds = idle_ttl_seconds
        self.stream_ttl_seconds = stream_ttl_seconds
        self.clock = clock

    async def apply(self, event: LifecycleEvent) -> TransitionResult:
        stream_id = event.stream_id
        status = await self.store.read_status(stream_id)

        if isinstance(event, StreamCreated):
            return await self._create(stream_id, status)

        if status == StreamStatus.FINISHED:
            return self._skip(event, "stream already finished")

        if isinstance(event, ParticipantJoined):
            return await self._join(event, status)
        elif isinstance(event, ParticipantLeft):
            if status is None:
                return self._skip(event, "stream not found")
            return await self._leave(event)
        elif isinstance(event, (RoomFinished, StreamDeleted)):
            if status is None:
                return self._skip(event, "stream not found")
            return await self._finish(event)

        logger.warning("Unhandled lifecycle event: {!r}", event)
        return TransitionResult(stream_id, event.kind, False, reason="unhandled event")

    async def _create(self, stream_id: str, status: StreamStatus | None) -> TransitionResult:
        kind = LifecycleEventKind.STREAM_CREATED
        if status == StreamStatus.ACTIVE:
            logger.debug("Stream {} already active, create is a no-op", stream_id)
            return TransitionResult(stream_id, kind, False, reason="stream already active")

        if status == StreamStatus.FINISHED:
            logger.info("Stream {} re-created, purging finished record", stream_id)
            await self.store.purge(stream_id)

        await self.store.write_meta(stream_id, StreamStatus.ACTIVE, started_at=self.clock())
        await self.store.clear_expiry(stream_id)
        logger.info("Stream {} created", stream_id)
        return await self._commit(stream_id, kind)

    async def _join(self, event: ParticipantJoined, status: StreamStatus | None) -> TransitionResult:
        stream_id = event.stream_id
        implicit = status is None
        if implicit:
            # notification arrived before creation was recorded
            logger.info("Stream {} implicitly created by join of {}", stream_id, event.identity)
            await self.store.write_meta(stream_id, StreamStatus.ACTIVE, started_at=self.clock())

        added = await self.store.add_participant(stream_id, event.identity)
        await self.store.clear_expiry(stream_id)

        if not implicit and await self.store.read_status(stream_id) is None:
            # idle expiry fired between the status read and the add
            logger.info("Stream {} expired during join of {}, re-created", stream_id, event.identity)
            await self.store.write_meta(stream_id, StreamStatus.ACTIVE, started_at=self.clock())
            await self.store.clear_expiry(stream_id)
            implicit = True

        if not added and not implicit:
            logger.debug("Duplicate join of {} in {}", event.identity, stream_id)
            return self._skip(event, "participant already present")

        logger.info("Participant {} joined {}", event.identity, stream_id)
        return await self._commit(stream_id, event.kind)

    async def _leave(self, event: ParticipantLeft) -> TransitionResult:
        stream_id = event.stream_id
        removed = await self.store.remove_participant(stream_id, event.identity)
        if not removed:
            return self._skip(event, "participant not present")

        remaining = await self.store.count_participants(stream_id)
        if remaining == 0:
            await self.store.arm_expiry(stream_id, self.idle_ttl_seconds)
            logger.info(
                "Participant {} left {}, stream idle (expires in {}s)",
                event.identity,
                stream_id,
                self.idle_ttl_seconds,
            )
        else:
            logger.info("Participant {} left {}, {} remaining", event.identity, stream_id, remaining)

        return await self._commit(stream_id, event.kind)

    async def _finish(self, event: RoomFinished | StreamDeleted) -> TransitionResult:
        stream_id = event.stream_id
        await self.store.write_meta(stream_id, StreamStatus.FINISHED, ended_at=self.clock())
        await self.store.arm_expiry(stream_id, self.stream_ttl_seconds)
        logger.info("Stream {} finished ({})", stream_id, event.kind.value)
        return await self._commit(stream_id, event.kind)

    async def _commit(self, stream_id: str, kind: LifecycleEventKind) -> TransitionResult:
        state = await self.store.read_projection(stream_id)
        await self.store.publish_change(stream_id, state)
        if self.metrics is not None:
            await self.metrics.refresh()
        return TransitionResult(stream_id, kind, True, state=state)

    def _skip(self, event: LifecycleEvent, reason: str) -> TransitionResult:
        logger.info("Ignored {} for {}: {}", event.kind.value, event.stream_id, reason)
        return TransitionResult(event.stream_id, event.kind, False, reason=reason)
