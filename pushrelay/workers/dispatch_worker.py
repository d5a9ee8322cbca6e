from __future__ import annotations

import logging

from arq.connections import RedisSettings

from pushrelay.core.clock import utc_now
from pushrelay.core.config import get_settings
from pushrelay.core.logging import configure_logging
from pushrelay.persistence.db import SessionLocal
from pushrelay.services.delivery.dispatch import PushDispatchEngine
from pushrelay.services.delivery.scheduler import NotificationScheduler, dispatch_notification_now
from pushrelay.services.push.transport import WebPushTransport
from pushrelay.services.push.vapid import VapidKeyProvider

logger = logging.getLogger(__name__)


def build_dispatch_engine() -> PushDispatchEngine:
    settings = get_settings()
    return PushDispatchEngine(
        transport=WebPushTransport(settings),
        vapid_provider=VapidKeyProvider(settings),
        clock=utc_now,
        settings=settings,
    )


async def dispatch_notification(ctx, notification_id: str) -> str:
    # Immediate sends race the due sweep safely; whichever claims first dispatches.
    result = await dispatch_notification_now(
        session_factory=ctx["session_factory"],
        engine=ctx["dispatch_engine"],
        notification_id=notification_id,
        now=utc_now(),
    )
    return "sent" if result is not None else "skipped_or_failed"


async def _startup(ctx) -> None:
    # Run the periodic sweeps inside the worker so scheduled sends need no API traffic.
    configure_logging()
    settings = get_settings()
    ctx["session_factory"] = SessionLocal
    ctx["dispatch_engine"] = build_dispatch_engine()
    if settings.scheduler_enabled:
        scheduler = NotificationScheduler(
            session_factory=SessionLocal,
            engine=build_dispatch_engine(),
            clock=utc_now,
            settings=settings,
        )
        scheduler.start()
        ctx["scheduler"] = scheduler


async def _shutdown(ctx) -> None:
    # Drain in-flight sweep ticks before the process exits.
    scheduler = ctx.get("scheduler")
    if scheduler is not None:
        await scheduler.stop()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.dispatch_queue_name
    # A retried job would find the notification already claimed, so one try is enough.
    max_tries = 1
    job_timeout = max(60, int(settings.sweep_timeout_s))
    functions = [dispatch_notification]
    on_startup = _startup
    on_shutdown = _shutdown
