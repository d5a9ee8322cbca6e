from __future__ import annotations

from pushrelay.core.config import Settings, get_settings
from pushrelay.persistence.db import engine_kwargs


def test_defaults_match_operational_cadence() -> None:
    settings = Settings()

    assert settings.due_sweep_interval_s == 60
    assert settings.due_sweep_batch_size == 100
    assert settings.stuck_sweep_interval_s == 300
    assert settings.stuck_after_s == 600
    assert settings.retention_days == 90
    assert settings.failed_notification_warn_threshold == 100


def test_environment_overrides_are_picked_up(monkeypatch) -> None:
    monkeypatch.setenv("DUE_SWEEP_INTERVAL_S", "15")
    monkeypatch.setenv("PUSH_DISPATCH_CONCURRENCY", "25")
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.due_sweep_interval_s == 15
    assert settings.push_dispatch_concurrency == 25


def test_engine_kwargs_bound_the_postgres_pool() -> None:
    kwargs = engine_kwargs(
        Settings(
            database_url="postgresql+asyncpg://u:p@db/pushrelay",
            db_pool_size=0,
            db_max_overflow=-1,
            db_statement_timeout_ms=5000,
        )
    )

    assert kwargs["pool_size"] == 1
    assert kwargs["max_overflow"] == 0
    assert kwargs["pool_pre_ping"] is True
    assert kwargs["connect_args"] == {"server_settings": {"statement_timeout": "5000"}}


def test_engine_kwargs_skip_pool_options_for_sqlite() -> None:
    kwargs = engine_kwargs(Settings(database_url="sqlite+aiosqlite:///./local.db"))

    assert kwargs == {"pool_pre_ping": True}
