from __future__ import annotations

import argparse
import asyncio
import json
import sys

from pushrelay.core.clock import utc_now
from pushrelay.core.config import get_settings
from pushrelay.core.logging import configure_logging
from pushrelay.persistence.db import SessionLocal
from pushrelay.services.delivery.scheduler import SWEEP_NAMES, NotificationScheduler
from pushrelay.workers.dispatch_worker import build_dispatch_engine


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one delivery sweep tick and print its summary")
    parser.add_argument("sweep", choices=SWEEP_NAMES)
    return parser


async def _run(name: str) -> int:
    scheduler = NotificationScheduler(
        session_factory=SessionLocal,
        engine=build_dispatch_engine(),
        clock=utc_now,
        settings=get_settings(),
    )
    summary = await scheduler.run_once(name)
    print(json.dumps({"sweep": name, **summary}, sort_keys=True))
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_run(args.sweep))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"run_sweep failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
