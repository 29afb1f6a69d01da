"""LiveKit webhook event schemas.

Pydantic models for the LiveKit webhook events that drive stream lifecycle.

References:
- https://docs.livekit.io/home/server/webhooks/
- livekit.protocol.webhook.WebhookEvent
- livekit.protocol.models (Room, ParticipantInfo)
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class ParticipantState(str, Enum):
    """Participant connection state."""

    JOINING = "JOINING"
    JOINED = "JOINED"
    ACTIVE = "ACTIVE"
    DISCONNECTED = "DISCONNECTED"


class ParticipantKind(str, Enum):
    """Participant kind/role."""

    STANDARD = "STANDARD"
    INGRESS = "INGRESS"
    EGRESS = "EGRESS"
    SIP = "SIP"
    AGENT = "AGENT"


class ParticipantInfo(BaseModel):
    """Participant information."""

    sid: str | None = Field(None, description="Participant server ID")
    identity: str = Field(..., min_length=1, description="Participant identity (unique ID)")
    state: ParticipantState | None = Field(None, description="Participant state")
    name: str | None = Field(None, description="Participant display name")
    joined_at: int | None = Field(None, alias="joinedAt", description="Join timestamp (seconds)")
    kind: ParticipantKind | None = Field(None, description="Participant kind")


class Room(BaseModel):
    """Room information."""

    sid: str | None = Field(None, description="Room server ID")
    name: str = Field(..., min_length=1, description="Room name, equals the stream id")
    empty_timeout: int | None = Field(
        None, alias="emptyTimeout", description="Empty room timeout (seconds)"
    )
    max_participants: int | None = Field(
        None, alias="maxParticipants", description="Maximum participants"
    )
    creation_time: int | None = Field(
        None, alias="creationTime", description="Creation timestamp (seconds)"
    )
    num_participants: int | None = Field(
        None, alias="numParticipants", description="Current participant count"
    )


class RoomFinishedEvent(BaseModel):
    """Room finished event - all participants left and timeout expired."""

    event: Literal["room_finished"] = "room_finished"
    id: str | None = Field(None, description="Event UUID")
    created_at: int | None = Field(None, alias="createdAt", description="Event timestamp (seconds)")
    room: Room = Field(..., description="Room information")


class ParticipantJoinedEvent(BaseModel):
    """Participant joined event."""

    event: Literal["participant_joined"] = "participant_joined"
    id: str | None = Field(None, description="Event UUID")
    created_at: int | None = Field(None, alias="createdAt", description="Event timestamp (seconds)")
    room: Room = Field(..., description="Room information")
    participant: ParticipantInfo = Field(..., description="Participant information")


class ParticipantLeftEvent(BaseModel):
    """Participant left event."""

    event: Literal["participant_left"] = "participant_left"
    id: str | None = Field(None, description="Event UUID")
    created_at: int | None = Field(None, alias="createdAt", description="Event timestamp (seconds)")
    room: Room = Field(..., description="Room information")
    participant: ParticipantInfo = Field(..., description="Participant information")
