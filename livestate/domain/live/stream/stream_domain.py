"""Stream operations behind the HTTP API."""

from __future__ import annotations

from typing import Any

from livekit.api.twirp_client import TwirpError, TwirpErrorCode
from loguru import logger

from livestate.domain.live.stream.lifecycle import LifecycleProcessor, StreamCreated, StreamDeleted
from livestate.domain.live.stream.store import StreamStore
from livestate.schemas.stream_state import StreamState, StreamStatus, StreamSummary
from livestate.utils.app_errors import AppError, AppErrorCode, HttpStatusCode


def _room_service_error(action: str, stream_id: str, exc: Exception) -> AppError:
    logger.warning("Room service failed to {} {}: {!r}", action, stream_id, exc)
    return AppError(
        errcode=AppErrorCode.E_ROOM_SERVICE_ERROR,
        errmesg=f"Room service failed to {action} room '{stream_id}'",
        status_code=HttpStatusCode.BAD_GATEWAY,
    )


class StreamService:
    def __init__(
        self,
        store: StreamStore,
        processor: LifecycleProcessor,
        room_service: Any,
        *,
        empty_timeout: int = 300,
        max_participants: int = 20,
    ) -> None:
        self.store = store
        self.processor = processor
        self.room_service = room_service
        self.empty_timeout = empty_timeout
        self.max_participants = max_participants

    async def create_stream(self, name: str) -> tuple[str, bool]:
        """Create the room and its projection.

        Returns `(stream_id, created)`. When the room already exists nothing is
        created, but a missing projection is recorded so the stream is queryable.
        """
        try:
            exists = await self.room_service.room_exists(name)
        except AppError:
            raise
        except Exception as e:
            raise _room_service_error("look up", name, e) from e

        if exists:
            logger.info("Room {} already exists", name)
            if await self.store.read_status(name) is None:
                await self.processor.apply(StreamCreated(name))
            return name, False

        try:
            await self.room_service.create_room(
                name, empty_timeout=self.empty_timeout, max_participants=self.max_participants
            )
        except AppError:
            raise
        except TwirpError as e:
            if e.code != TwirpErrorCode.ALREADY_EXISTS:
                raise _room_service_error("create", name, e) from e
            logger.info("Room {} created concurrently", name)
        except Exception as e:
            raise _room_service_error("create", name, e) from e

        await self.processor.apply(StreamCreated(name))
        return name, True

    async def delete_stream(self, stream_id: str) -> None:
        """Delete the room and finish the projection. Deleting a missing stream is a no-op."""
        try:
            await self.room_service.delete_room(stream_id)
        except AppError:
            raise
        except Exception as e:
            raise _room_service_error("delete", stream_id, e) from e

        await self.processor.apply(StreamDeleted(stream_id))

    def issue_join_token(self, stream_id: str, user_id: str) -> str:
        return self.room_service.create_access_token(identity=user_id, room=stream_id)

    async def get_state(self, stream_id: str) -> StreamState:
        state = await self.store.read_projection(stream_id)
        if state is None:
            raise AppError(
                errcode=AppErrorCode.E_STREAM_NOT_FOUND,
                errmesg=f"Stream '{stream_id}' not found",
                status_code=HttpStatusCode.NOT_FOUND,
            )
        return state

    async def list_active(self) -> list[StreamSummary]:
        summaries = []
        for stream_id in await self.store.list_tracked_ids():
            state = await self.store.read_projection(stream_id)
            if state is not None and state.status == StreamStatus.ACTIVE:
                summaries.append(StreamSummary.from_state(state))
        summaries.sort(key=lambda x: (x.started_at, x.stream_id))
        return summaries
