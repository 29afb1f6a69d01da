"""
Environment configuration for livestate.

Sources, later ones override earlier ones:
1) `env.example` (committed, safe placeholders)
2) `env.local` (optional, MUST NOT be committed)
3) System environment variables (highest priority)
"""

import os
from pathlib import Path

from dotenv import dotenv_values
from loguru import logger


class EnvironConfig:
    """Process-wide view of the merged environment, read once at import."""

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self._values: dict[str, str | None] = {}
            self._load()
            EnvironConfig._initialized = True

    def _load(self):
        root = Path(__file__).parent.parent.parent

        for name in ("env.example", "env.local"):
            path = root / name
            if path.exists():
                self._values.update(dotenv_values(path))
                logger.info("Loaded environment variables from {}", path)

        self._values.update(os.environ)

    def get(self, key: str, default: str | None = None) -> str | None:
        value = self._values.get(key)
        return default if value is None else value

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = (self.get(key) or "").strip().lower()
        if not raw:
            return default
        return raw in {"true", "1", "yes", "on"}

    def get_redis_url(self) -> str:
        """Connection URL of the projection store."""
        return (self.get("REDIS_URL") or "").strip() or "redis://localhost:6379"


config = EnvironConfig()
