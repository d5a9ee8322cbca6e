from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings

from pushrelay.core.config import get_settings


logger = logging.getLogger(__name__)

DISPATCH_JOB_NAME = "dispatch_notification"

_dispatch_queue_pool = None
_dispatch_queue_pool_loop = None
_dispatch_queue_lock = asyncio.Lock()


async def get_dispatch_queue_pool():
    # Cache the ARQ Redis pool per event loop to avoid reconnect churn in API and worker code paths.
    global _dispatch_queue_pool, _dispatch_queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _dispatch_queue_pool is not None and _dispatch_queue_pool_loop == current_loop:
        return _dispatch_queue_pool
    if _dispatch_queue_pool is not None and _dispatch_queue_pool_loop != current_loop:
        _dispatch_queue_pool = None
    async with _dispatch_queue_lock:
        if _dispatch_queue_pool is None:
            settings = get_settings()
            _dispatch_queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.dispatch_queue_name,
            )
            _dispatch_queue_pool_loop = current_loop
    return _dispatch_queue_pool


async def enqueue_notification_dispatch(*, notification_id: str) -> bool:
    # Best effort: scheduled notifications still go out through the due sweep if Redis is down.
    settings = get_settings()
    try:
        redis = await get_dispatch_queue_pool()
        await redis.enqueue_job(
            DISPATCH_JOB_NAME,
            notification_id,
            _queue_name=settings.dispatch_queue_name,
            # One queued job per notification; the claim makes extra jobs harmless anyway.
            _job_id=f"dispatch:{notification_id}",
        )
        return True
    except Exception:  # noqa: BLE001 - keep enqueue best-effort and rely on the due sweep fallback.
        logger.warning("notification_enqueue_failed notification_id=%s", notification_id, exc_info=True)
        return False
