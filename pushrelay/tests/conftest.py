from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from pushrelay.core.config import Settings, get_settings
from pushrelay.domain.models import Base
from pushrelay.services.delivery.dispatch import PushDispatchEngine
from pushrelay.services.push.vapid import VapidKeyProvider
from pushrelay.tests.utils.fakes import FakeTransport


class FixedClock:
    """Deterministic clock; tests move it explicitly."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are lru_cached; clear around each test so monkeypatched env never leaks.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    # File-backed sqlite so concurrent sessions really contend for the same rows.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pushrelay.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        push_dispatch_concurrency=2,
        due_sweep_batch_size=100,
        stuck_after_s=600,
        retention_days=90,
        failed_notification_warn_threshold=100,
        vapid_default_subject="mailto:ops@pushrelay.test",
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def dispatch_engine(transport, clock, settings) -> PushDispatchEngine:
    return PushDispatchEngine(
        transport=transport,
        vapid_provider=VapidKeyProvider(settings),
        clock=clock,
        settings=settings,
    )
