import os
import socket
import uuid

from loguru import logger
from redis.asyncio import Redis


def default_owner_id() -> str:
    """host:pid:uuid8"""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


# Delete only while we still own the key
_RELEASE_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


class LockManager:
    """Lease on a single Redis key (SET NX EX), shared by every instance of the service.

    Acquisition is a single attempt: a held lock means another instance is
    doing the work. The TTL bounds how long a crashed owner blocks the others.
    """

    def __init__(
        self,
        redis_client: Redis,
        lock_prefix: str = "lock",
        default_ttl: int = 300,
        owner: str | None = None,
    ):
        self.redis_client = redis_client
        self.lock_prefix = lock_prefix
        self.default_ttl = int(default_ttl)
        self.owner = owner or default_owner_id()

        self.lock_key: str | None = None
        self.acquired = False

    def key_for(self, *parts) -> str:
        return ":".join([self.lock_prefix, *(str(x) for x in parts)])

    async def acquire(self, *key_parts, ttl: int | None = None) -> bool:
        self.lock_key = self.key_for(*key_parts)
        ttl = int(ttl or self.default_ttl)

        self.acquired = bool(
            await self.redis_client.set(self.lock_key, self.owner, nx=True, ex=ttl)
        )
        if self.acquired:
            logger.debug("Acquired lock {} owner={} ttl={}", self.lock_key, self.owner, ttl)
        else:
            logger.debug("Lock {} held elsewhere", self.lock_key)
        return self.acquired

    async def release(self) -> bool:
        if not self.lock_key or not self.acquired:
            return False

        self.acquired = False
        try:
            deleted = await self.redis_client.eval(_RELEASE_LUA, 1, self.lock_key, self.owner)
        except Exception as e:
            logger.error("Error releasing lock {} owner={}: {}", self.lock_key, self.owner, e)
            return False

        if deleted != 1:
            logger.warning("Lock {} expired before release, owner={}", self.lock_key, self.owner)
            return False

        logger.debug("Released lock {} owner={}", self.lock_key, self.owner)
        return True
