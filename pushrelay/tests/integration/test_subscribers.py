from __future__ import annotations

import pytest
from sqlalchemy import func, select

from pushrelay.core.errors import SubscriptionConflictError
from pushrelay.domain.models import AnalyticsEvent
from pushrelay.services import analytics as analytics_module
from pushrelay.services.subscribers import PushSubscriptionInfo, register_subscription
from pushrelay.tests.utils.seed import load_subscriber, seed_subscriber, seed_tenant


def _subscription(endpoint: str = "https://push.test/shared") -> PushSubscriptionInfo:
    return PushSubscriptionInfo(endpoint=endpoint, p256dh_key="BPnew-key", auth_key="new-auth")


async def _event_count(session_factory) -> int:
    async with session_factory() as session:
        return int(await session.scalar(select(func.count()).select_from(AnalyticsEvent)) or 0)


@pytest.mark.asyncio
async def test_rejected_analytics_row_does_not_roll_back_the_subscription(
    session_factory, clock, monkeypatch, caplog
) -> None:
    tenant_id, domain_id = await seed_tenant(session_factory, now=clock())
    # A payload the JSON column cannot serialize makes the analytics insert fail at flush time.
    monkeypatch.setattr(analytics_module, "sanitize_event_data", lambda value: {"bad": object()})

    with caplog.at_level("WARNING"):
        async with session_factory() as session:
            subscriber_id = await register_subscription(
                session=session,
                tenant_id=tenant_id,
                domain_id=domain_id,
                subscription=_subscription(),
                user_agent="Firefox/130",
                now=clock(),
            )

    subscriber = await load_subscriber(session_factory, subscriber_id)
    assert subscriber is not None
    assert subscriber.is_active is True
    assert await _event_count(session_factory) == 0
    assert any("analytics_event_write_failed" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_resubscribe_by_owner_refreshes_keys_in_place(session_factory, clock) -> None:
    tenant_id, domain_id = await seed_tenant(session_factory, now=clock())
    existing = await seed_subscriber(
        session_factory,
        tenant_id=tenant_id,
        domain_id=domain_id,
        endpoint="https://push.test/shared",
        now=clock(),
        is_active=False,
    )

    async with session_factory() as session:
        subscriber_id = await register_subscription(
            session=session,
            tenant_id=tenant_id,
            domain_id=domain_id,
            subscription=_subscription(),
            user_agent=None,
            now=clock(),
        )

    assert subscriber_id == existing
    subscriber = await load_subscriber(session_factory, existing)
    assert subscriber.is_active is True
    assert subscriber.p256dh_key == "BPnew-key"


@pytest.mark.asyncio
async def test_endpoint_owned_by_another_tenant_is_never_moved(session_factory, clock) -> None:
    owner_id, owner_domain = await seed_tenant(session_factory, now=clock())
    other_id, other_domain = await seed_tenant(session_factory, now=clock())
    existing = await seed_subscriber(
        session_factory,
        tenant_id=owner_id,
        domain_id=owner_domain,
        endpoint="https://push.test/shared",
        now=clock(),
    )

    async with session_factory() as session:
        with pytest.raises(SubscriptionConflictError):
            await register_subscription(
                session=session,
                tenant_id=other_id,
                domain_id=other_domain,
                subscription=_subscription(),
                user_agent=None,
                now=clock(),
            )

    subscriber = await load_subscriber(session_factory, existing)
    assert subscriber.client_id == owner_id
    assert subscriber.domain_id == owner_domain
    assert subscriber.p256dh_key == "BPp256dh-test-key"
    assert await _event_count(session_factory) == 0
