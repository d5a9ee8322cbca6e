from __future__ import annotations

import asyncio
import signal

from pushrelay.core.clock import utc_now
from pushrelay.core.config import get_settings
from pushrelay.core.logging import configure_logging
from pushrelay.persistence.db import SessionLocal
from pushrelay.services.delivery.scheduler import NotificationScheduler
from pushrelay.workers.dispatch_worker import build_dispatch_engine


async def _main() -> None:
    # Run the sweeps without the arq worker, for deployments that skip immediate sends.
    configure_logging()
    scheduler = NotificationScheduler(
        session_factory=SessionLocal,
        engine=build_dispatch_engine(),
        clock=utc_now,
        settings=get_settings(),
    )
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)
    scheduler.start()
    await stop_requested.wait()
    await scheduler.stop()


if __name__ == "__main__":
    asyncio.run(_main())
