"""Projection of a live stream room as held in the shared store."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class StreamStatus(str, Enum):
    ACTIVE = "active"
    FINISHED = "finished"


def utc_now() -> datetime:
    return datetime.now(UTC)


class StreamState(BaseModel):
    """Derived state of one stream.

    `participants` reflects the last observed lifecycle notification, not the
    live membership of the room service.
    """

    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(..., alias="streamId")
    status: StreamStatus
    participants: set[str] = Field(default_factory=set)
    started_at: datetime = Field(..., alias="startedAt")
    ended_at: datetime | None = Field(None, alias="endedAt")

    @field_serializer("participants")
    def _serialize_participants(self, participants: set[str]) -> list[str]:
        return sorted(participants)

    @property
    def is_idle(self) -> bool:
        return self.status == StreamStatus.ACTIVE and not self.participants

    def to_public(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class StreamSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(..., alias="streamId")
    participant_count: int = Field(..., alias="participantCount")
    started_at: datetime = Field(..., alias="startedAt")

    @classmethod
    def from_state(cls, state: StreamState) -> StreamSummary:
        return cls(
            stream_id=state.stream_id,
            participant_count=len(state.participants),
            started_at=state.started_at,
        )


class StreamChange(BaseModel):
    """Message carried on the change channel. `state=None` means the stream is gone."""

    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(..., alias="streamId")
    state: StreamState | None = None
