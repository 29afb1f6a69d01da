from typing import Literal

from pydantic import BaseModel

from livestate.shared.config import config


def _int(key: str, default: int) -> int:
    return int((config.get(key) or "").strip() or default)


def _float(key: str, default: float) -> float:
    return float((config.get(key) or "").strip() or default)


class AppEnvironConfig(BaseModel):
    DEBUG: bool = config.get_bool("DEBUG")

    # HTTP server
    API_HOST: str = config.get("API_HOST", "0.0.0.0").strip()
    API_PORT: int = _int("API_PORT", 8000)
    API_WORKERS: int = _int("API_WORKERS", 1)
    API_CORS_ORIGINS: list[str] = [
        x.strip() for x in config.get("API_CORS_ORIGINS", "*").split(",") if x.strip()
    ]

    # LiveKit configuration
    LIVEKIT_URL: str | None = (config.get("LIVEKIT_URL") or "").strip() or None
    LIVEKIT_API_KEY: str | None = (config.get("LIVEKIT_API_KEY") or "").strip() or None
    LIVEKIT_API_SECRET: str | None = (config.get("LIVEKIT_API_SECRET") or "").strip() or None

    # Room configuration
    ROOM_EMPTY_TIMEOUT_SECONDS: int = _int("ROOM_EMPTY_TIMEOUT_SECONDS", 300)
    MAX_PARTICIPANTS_LIMIT: int = _int("MAX_PARTICIPANTS_LIMIT", 20)

    # Projection store
    KEY_PREFIX: str = config.get("KEY_PREFIX", "stream").strip()
    REDIS_SOCKET_TIMEOUT: float = _float("REDIS_SOCKET_TIMEOUT", 5.0)
    # Idle streams (active, no participants) expire after this many seconds
    IDLE_TTL_SECONDS: int = _int("IDLE_TTL_SECONDS", 60)
    # Finished streams are purged after this grace period
    STREAM_TTL_SECONDS: int = _int("STREAM_TTL_SECONDS", 5 * 60)

    # Reconciliation
    RECONCILE_MODE: Literal["inprocess", "worker", "off"] = (
        config.get("RECONCILE_MODE", "inprocess").strip().lower()  # type: ignore[assignment]
    )
    RECONCILE_INTERVAL_SECONDS: int = _int("RECONCILE_INTERVAL_SECONDS", 30)
    RECONCILE_STALE_SECONDS: int = _int("RECONCILE_STALE_SECONDS", 600)
    RECONCILE_PURGE_TOLERANCE_SECONDS: int = _int("RECONCILE_PURGE_TOLERANCE_SECONDS", 30)
    RECONCILE_LOCK: bool = config.get_bool("RECONCILE_LOCK", True)

    # Fan-out
    CHANGE_QUEUE_SIZE: int = _int("CHANGE_QUEUE_SIZE", 1000)
    OBSERVER_QUEUE_SIZE: int = _int("OBSERVER_QUEUE_SIZE", 100)
    SSE_KEEPALIVE_SECONDS: float = _float("SSE_KEEPALIVE_SECONDS", 15.0)

    # Observability
    LOGFIRE_ENABLE: bool = config.get_bool("LOGFIRE_ENABLE")
    LOGFIRE_TOKEN: str | None = (config.get("LOGFIRE_TOKEN") or "").strip() or None


_app_environ_config = AppEnvironConfig()


def get_app_environ_config() -> AppEnvironConfig:
    return _app_environ_config
