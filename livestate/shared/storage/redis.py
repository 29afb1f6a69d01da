"""
Redis client manager for the projection store.

One shared `redis.asyncio` client per process, created lazily from `REDIS_URL`
with decoded responses and the configured socket timeout.
"""

import threading
from urllib.parse import urlsplit, urlunsplit

from loguru import logger
from redis.asyncio import Redis

from ..config import config


def hide_password(url: str) -> str:
    """Mask the password of a Redis URL for logging."""
    parts = urlsplit(url)
    if not parts.password:
        return url

    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


class RedisManager:
    """Thread-safe singleton owning the process Redis client."""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if hasattr(self, "_initialized"):
            return

        self._client: Redis | None = None
        self._client_lock = threading.Lock()
        self.connection_string = config.get_redis_url()
        self.socket_timeout = float((config.get("REDIS_SOCKET_TIMEOUT") or "").strip() or 5.0)
        logger.info("Using Redis at {}", hide_password(self.connection_string))

        self._initialized = True

    def get_cache_client(self) -> Redis:
        with self._client_lock:
            if self._client is None:
                logger.info("Open Redis client (socket_timeout={}s)", self.socket_timeout)
                self._client = Redis.from_url(
                    self.connection_string,
                    decode_responses=True,
                    socket_timeout=self.socket_timeout,
                    socket_connect_timeout=self.socket_timeout,
                )
            return self._client

    async def close_all(self):
        with self._client_lock:
            client, self._client = self._client, None

        if client is None:
            return

        try:
            await client.aclose()
            logger.info("Closed Redis client")
        except Exception as e:
            logger.error("Error closing Redis client: {}", e)


def get_redis_manager() -> RedisManager:
    """Get global RedisManager instance."""
    return RedisManager()


def get_cache_client() -> Redis:
    return get_redis_manager().get_cache_client()


def get_connection_string() -> str:
    """Raw Redis URL, for components that open their own connections (streaq)."""
    return get_redis_manager().connection_string
