from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    # Keep scheduling and ledger bookkeeping in UTC for deterministic comparisons.
    return datetime.now(timezone.utc)
