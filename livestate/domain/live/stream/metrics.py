"""Aggregate gauges over all tracked stream projections."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest

from livestate.domain.live.stream.store import StreamStore
from livestate.schemas.stream_state import StreamStatus

METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    active_streams: int
    total_participants: int


class MetricsAggregator:
    """Recomputes the gauges from the store.

    A refresh reads every tracked projection, so its cost grows linearly with
    the number of tracked streams.
    """

    def __init__(self, store: StreamStore, registry: CollectorRegistry | None = None) -> None:
        self.store = store
        self.registry = registry or CollectorRegistry()
        self.active_streams = Gauge(
            "active_streams", "Number of streams in active status", registry=self.registry
        )
        self.total_participants = Gauge(
            "total_participants",
            "Participants across all active streams",
            registry=self.registry,
        )
        self.last_snapshot = MetricsSnapshot(0, 0)

    async def refresh(self) -> MetricsSnapshot:
        active = 0
        participants = 0
        for stream_id in await self.store.list_tracked_ids():
            state = await self.store.read_projection(stream_id)
            if state is None or state.status != StreamStatus.ACTIVE:
                continue
            active += 1
            participants += len(state.participants)

        self.active_streams.set(active)
        self.total_participants.set(participants)
        self.last_snapshot = MetricsSnapshot(active, participants)

        logger.debug("Metrics refreshed: active={} participants={}", active, participants)
        return self.last_snapshot

    def render(self) -> bytes:
        return generate_latest(self.registry)
