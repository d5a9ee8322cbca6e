from __future__ import annotations

import logging
import sys

from pushrelay.core.config import get_settings


_NOISY_LOGGERS = ("sqlalchemy.engine", "urllib3", "arq.jobs")


def configure_logging(level: int | str | None = None) -> None:
    # Configure root logging once per process so workers and the API share one format.
    settings = get_settings()
    resolved = level if level is not None else settings.log_level.upper()
    logging.basicConfig(
        level=resolved,
        format=settings.log_format,
        stream=sys.stdout,
        force=True,
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "pushrelay"):
        logging.getLogger(name).setLevel(resolved)
    # Keep per-statement and per-request chatter out of sweep logs.
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
