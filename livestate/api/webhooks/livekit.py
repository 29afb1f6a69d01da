"""LiveKit webhook endpoint.

Receives room and participant notifications from LiveKit, verifies the JWT
signature and body checksum, and feeds the lifecycle processor.

Handled event types:
- room_finished: room ended, stream becomes finished
- participant_joined: participant added to the stream
- participant_left: participant removed from the stream

Every other event type is acknowledged and ignored.

References:
- https://docs.livekit.io/home/server/webhooks/
- Pydantic schemas: livestate.api.webhooks.schemas.livekit
"""

from __future__ import annotations

from typing import Any

import orjson
from fastapi import APIRouter, Header, Request
from google.protobuf.json_format import ParseError
from loguru import logger
from pydantic import ValidationError

from livestate.api.dependency import Runtime
from livestate.api.webhooks.schemas.livekit import (
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    RoomFinishedEvent,
)
from livestate.domain.live.stream.lifecycle import (
    LifecycleEvent,
    ParticipantJoined,
    ParticipantLeft,
    RoomFinished,
)
from livestate.shared.api.utils import ApiFailure, ApiSuccess, api_failure, make_response
from livestate.utils.app_errors import AppError, AppErrorCode, HttpStatusCode

router = APIRouter(tags=["Webhooks"])


class LiveKitWebhookSuccess(ApiSuccess):
    """Success response for webhook."""

    results: dict[str, Any]  # type: ignore[assignment]


def to_lifecycle_event(event_type: str, event_data: dict[str, Any]) -> LifecycleEvent | None:
    """Parse a webhook payload into a lifecycle event. None for unhandled types.

    Raises:
        ValidationError: if the payload does not match the event schema
    """
    if event_type == "room_finished":
        event = RoomFinishedEvent.model_validate(event_data)
        return RoomFinished(event.room.name)
    elif event_type == "participant_joined":
        event = ParticipantJoinedEvent.model_validate(event_data)
        return ParticipantJoined(event.room.name, event.participant.identity)
    elif event_type == "participant_left":
        event = ParticipantLeftEvent.model_validate(event_data)
        return ParticipantLeft(event.room.name, event.participant.identity)
    return None


def _failure(errcode: AppErrorCode, errmesg: str, status_code: int):
    return make_response(api_failure(errcode=errcode, errmesg=errmesg), status_code=status_code)


@router.post("/webhook", response_model=LiveKitWebhookSuccess | ApiFailure)
async def livekit_webhook(
    request: Request,
    runtime: Runtime,
    authorization: str | None = Header(None),
):
    """Receive and apply a LiveKit webhook event."""
    body = (await request.body()).decode("utf-8", errors="replace")

    try:
        runtime.room_service.verify_webhook(body, authorization)
    except AppError as exc:
        # no credentials to verify against, nothing can be authenticated
        logger.error(f"Rejected LiveKit webhook, credentials not configured: {exc.errmesg}")
        return _failure(
            AppErrorCode.E_WEBHOOK_UNAUTHORIZED,
            "Webhook signature verification failed",
            HttpStatusCode.UNAUTHORIZED,
        )
    except ParseError as exc:
        logger.error(f"Invalid JSON in webhook body: {exc}")
        return _failure(
            AppErrorCode.E_WEBHOOK_INVALID_JSON, f"Invalid JSON: {exc!s}", HttpStatusCode.BAD_REQUEST
        )
    except Exception as exc:
        logger.warning(f"Rejected LiveKit webhook, verification failed: {exc!r}")
        return _failure(
            AppErrorCode.E_WEBHOOK_UNAUTHORIZED,
            "Webhook signature verification failed",
            HttpStatusCode.UNAUTHORIZED,
        )

    try:
        event_data = orjson.loads(body)
    except orjson.JSONDecodeError as exc:
        logger.error(f"Invalid JSON in webhook body: {exc}")
        return _failure(
            AppErrorCode.E_WEBHOOK_INVALID_JSON, f"Invalid JSON: {exc!s}", HttpStatusCode.BAD_REQUEST
        )

    event_type = event_data.get("event") if isinstance(event_data, dict) else None
    if not event_type:
        logger.error("Missing 'event' field in webhook payload")
        return _failure(
            AppErrorCode.E_WEBHOOK_MISSING_EVENT_TYPE,
            "Missing 'event' field",
            HttpStatusCode.BAD_REQUEST,
        )

    logger.info(f"LiveKit Webhook: {event_type}")

    try:
        lifecycle_event = to_lifecycle_event(event_type, event_data)
    except ValidationError as exc:
        logger.error(f"Failed to parse {event_type} event: {exc}")
        return _failure(
            AppErrorCode.E_WEBHOOK_VALIDATION_ERROR,
            f"Failed to parse event: {exc!s}",
            HttpStatusCode.BAD_REQUEST,
        )

    if lifecycle_event is None:
        logger.info(f"Ignored LiveKit webhook event: {event_type}")
        return LiveKitWebhookSuccess(results={"ignored": True, "event": event_type})

    result = await runtime.processor.apply(lifecycle_event)
    return LiveKitWebhookSuccess(results={"event": event_type, **result.as_dict()})
