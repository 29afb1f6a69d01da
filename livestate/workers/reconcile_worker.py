"""Streaq worker running stream reconciliation on a cron schedule.

Used with RECONCILE_MODE=worker, where API processes do not reconcile
themselves. Run with:

    streaq livestate.workers.reconcile_worker:worker
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from loguru import logger
from streaq import Worker

from livestate.app_config import get_app_environ_config
from livestate.domain.live.stream.runtime import StreamRuntime, build_runtime
from livestate.services.integrations.livekit_service import livekit_service
from livestate.shared.api.utils import init_logger
from livestate.shared.storage.redis import get_cache_client, get_connection_string, get_redis_manager

_settings = get_app_environ_config()

QUEUE_KEY_RECONCILE = f"{_settings.KEY_PREFIX}:reconcile"


def cron_for_interval(seconds: int) -> str:
    """Seven-field cron (seconds first) firing every `seconds`.

    Cron steps restart at each minute and hour, so only intervals that divide
    a minute, or whole minutes that divide an hour, fire at even spacing.
    Anything else raises ValueError.
    """
    seconds = int(seconds)
    if seconds < 1:
        raise ValueError(f"Reconcile interval must be positive, got {seconds}")
    if seconds < 60 and 60 % seconds == 0:
        return f"*/{seconds} * * * * * *"
    if seconds == 3600:
        return "0 0 */1 * * * *"
    if seconds % 60 == 0 and 60 % (seconds // 60) == 0:
        return f"0 */{seconds // 60} * * * * *"
    raise ValueError(
        f"Reconcile interval {seconds}s does not divide a minute or an hour evenly"
    )


@asynccontextmanager
async def reconcile_lifespan() -> AsyncIterator[StreamRuntime]:
    """Lifespan context manager for the reconcile worker."""
    init_logger()
    logger.info("Starting reconcile worker")

    runtime = build_runtime(get_cache_client(), livekit_service, _settings)
    logger.info("Reconcile worker initialized (mode={})", _settings.RECONCILE_MODE)

    try:
        yield runtime
    finally:
        await runtime.stop()
        await get_redis_manager().close_all()
        logger.info("Reconcile worker stopped")


worker: Worker[StreamRuntime] = Worker(
    redis_url=get_connection_string(),
    lifespan=reconcile_lifespan,  # type: ignore[arg-type]
    queue_name=QUEUE_KEY_RECONCILE,
)


async def run_reconcile(runtime: StreamRuntime) -> dict[str, Any]:
    if runtime.settings.RECONCILE_MODE != "worker":
        logger.debug("Reconcile worker idle, RECONCILE_MODE={}", runtime.settings.RECONCILE_MODE)
        return {"skipped": True, "reason": "mode"}

    report = await runtime.reconcile_loop.run_once()
    if report is None:
        return {"skipped": True, "reason": "busy"}
    return report.as_dict()


@worker.cron(cron_for_interval(_settings.RECONCILE_INTERVAL_SECONDS))
async def reconcile_streams() -> dict[str, Any]:
    """Run one reconciliation cycle."""
    return await run_reconcile(worker.context)
