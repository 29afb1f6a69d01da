"""LiveKit helper service.

Thin wrapper around the `livekit-api` package covering what the stream
coordinator needs from the room service: room lookup, creation and deletion,
participant access tokens and webhook verification.

Usage:
    from livestate.services.integrations.livekit_service import livekit_service

    token = livekit_service.create_access_token(identity="user-123", room="my-room")
    existing = await livekit_service.list_existing_rooms(["room-a", "room-b"])
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from livekit import api
from livekit.api.twirp_client import TwirpError, TwirpErrorCode
from loguru import logger

from livestate.app_config import AppEnvironConfig, get_app_environ_config
from livestate.utils.app_errors import AppError, AppErrorCode, HttpStatusCode


class LivekitService:
    """Service wrapper for LiveKit server SDK (livekit-api package)."""

    def __init__(self, cfg: AppEnvironConfig | None = None) -> None:
        self._cfg = cfg or get_app_environ_config()
        logger.info("LivekitService initialized")

    def _get_credentials(self) -> tuple[str, str]:
        api_key = self._cfg.LIVEKIT_API_KEY
        api_secret = self._cfg.LIVEKIT_API_SECRET

        if not api_key or not api_secret:
            logger.error("LIVEKIT_API_KEY or LIVEKIT_API_SECRET not configured")
            raise AppError(
                errcode=AppErrorCode.E_INVALID_REQUEST,
                errmesg="RTC provider credentials must be configured. Set them in env.local or environment variables.",
                status_code=HttpStatusCode.BAD_REQUEST,
            )

        return api_key, api_secret

    @asynccontextmanager
    async def _get_api_client(self) -> AsyncIterator[api.LiveKitAPI]:
        """Internal method to get LiveKit API client.

        Raises:
            AppError: If LIVEKIT_URL or credentials are not configured
        """
        url = self._cfg.LIVEKIT_URL
        if not url:
            logger.error("LIVEKIT_URL not configured")
            raise AppError(
                errcode=AppErrorCode.E_INVALID_REQUEST,
                errmesg="RTC provider URL must be configured. Set it in env.local or environment variables.",
                status_code=HttpStatusCode.BAD_REQUEST,
            )

        api_key, api_secret = self._get_credentials()
        logger.debug(f"Creating LiveKit API client for URL={url}")
        async with api.LiveKitAPI(url, api_key, api_secret) as lkapi:
            yield lkapi

    async def list_existing_rooms(self, room_names: Iterable[str]) -> set[str]:
        """Names among `room_names` that currently exist in LiveKit.

        One ListRooms call for the whole batch; an empty batch makes no call.
        """
        names = list(room_names)
        if not names:
            return set()

        async with self._get_api_client() as lkapi:
            response = await lkapi.room.list_rooms(api.ListRoomsRequest(names=names))
            return {room.name for room in response.rooms}

    async def room_exists(self, room_name: str) -> bool:
        return room_name in await self.list_existing_rooms([room_name])

    async def create_room(
        self,
        room_name: str,
        empty_timeout: int = 300,
        max_participants: int = 20,
    ) -> Any:
        """Create a LiveKit room.

        Args:
            room_name: Unique name for the room, used as the stream id
            empty_timeout: Timeout in seconds before room closes when empty (default: 300)
            max_participants: Maximum number of participants allowed (default: 20)

        Returns:
            Room object with .name, .sid, .empty_timeout, .max_participants attributes
        """
        logger.info(
            f"Creating LiveKit room: room_name={room_name}, empty_timeout={empty_timeout}, max_participants={max_participants}"
        )
        async with self._get_api_client() as lkapi:
            room = await lkapi.room.create_room(
                api.CreateRoomRequest(
                    name=room_name,
                    empty_timeout=empty_timeout,
                    max_participants=max_participants,
                )
            )
            logger.debug(f"Successfully created LiveKit room: name={room.name}, sid={room.sid}")
            return room

    async def delete_room(self, room_name: str) -> None:
        """Delete a LiveKit room. A room that does not exist counts as deleted."""
        logger.info(f"Deleting LiveKit room: room_name={room_name}")
        async with self._get_api_client() as lkapi:
            try:
                await lkapi.room.delete_room(api.DeleteRoomRequest(room=room_name))
                logger.debug(f"Successfully deleted LiveKit room: name={room_name}")
            except TwirpError as e:
                if e.code == TwirpErrorCode.NOT_FOUND:
                    logger.info(f"LiveKit room already deleted or not found: name={room_name}")
                else:
                    raise

    def create_access_token(self, identity: str, room: str) -> str:
        """Create a LiveKit JWT that lets `identity` join `room`."""
        api_key, api_secret = self._get_credentials()

        logger.info(f"Creating LiveKit access token for identity={identity}, room={room}")
        token = (
            api.AccessToken(api_key, api_secret)
            .with_identity(identity)
            .with_grants(api.VideoGrants(room_join=True, room=room))
        )
        return token.to_jwt()

    def verify_webhook(self, body: str, authorization: str | None) -> Any:
        """Check the webhook signature and body checksum.

        Returns the parsed `WebhookEvent` message. Raises whatever the LiveKit
        token verifier raises when the JWT or the body hash does not match.
        """
        api_key, api_secret = self._get_credentials()

        auth_token = (authorization or "").strip()
        if auth_token.lower().startswith("bearer "):
            auth_token = auth_token[7:].strip()
        if not auth_token:
            raise ValueError("missing authorization header")

        receiver = api.WebhookReceiver(api.TokenVerifier(api_key, api_secret))
        return receiver.receive(body, auth_token)


livekit_service = LivekitService()
