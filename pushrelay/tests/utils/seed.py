from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import select

from pushrelay.domain.models import (
    Client,
    ClientDomain,
    NotificationDelivery,
    PushNotification,
    PushSubscriber,
    VapidKey,
)


async def seed_tenant(
    session_factory,
    *,
    now: datetime,
    with_vapid: bool = True,
    domain_verified: bool = True,
    domain_active: bool = True,
) -> tuple[str, str]:
    # Returns (tenant_id, domain_id).
    tenant_id = uuid4().hex
    domain_id = uuid4().hex
    async with session_factory() as session:
        session.add(
            Client(
                id=tenant_id,
                email=f"{tenant_id}@example.test",
                name="Acme",
                is_active=True,
                created_at=now,
                updated_at=now,
            )
        )
        await session.flush()
        session.add(
            ClientDomain(
                id=domain_id,
                client_id=tenant_id,
                domain=f"{tenant_id[:8]}.example.test",
                is_verified=domain_verified,
                is_active=domain_active,
                created_at=now,
                updated_at=now,
            )
        )
        if with_vapid:
            session.add(
                VapidKey(
                    id=uuid4().hex,
                    client_id=tenant_id,
                    public_key=f"pub-{tenant_id[:8]}",
                    private_key=f"priv-{tenant_id[:8]}",
                    subject="",
                    is_active=True,
                    created_at=now,
                )
            )
        await session.commit()
    return tenant_id, domain_id


async def seed_domain(session_factory, *, tenant_id: str, now: datetime, is_active: bool = True) -> str:
    domain_id = uuid4().hex
    async with session_factory() as session:
        session.add(
            ClientDomain(
                id=domain_id,
                client_id=tenant_id,
                domain=f"{domain_id[:8]}.example.test",
                is_verified=True,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
        )
        await session.commit()
    return domain_id


async def seed_subscriber(
    session_factory,
    *,
    tenant_id: str,
    domain_id: str,
    endpoint: str,
    now: datetime,
    is_active: bool = True,
) -> str:
    subscriber_id = uuid4().hex
    async with session_factory() as session:
        session.add(
            PushSubscriber(
                id=subscriber_id,
                client_id=tenant_id,
                domain_id=domain_id,
                endpoint=endpoint,
                p256dh_key="BPp256dh-test-key",
                auth_key="auth-test-key",
                is_active=is_active,
                subscribed_at=now,
                last_seen_at=now,
            )
        )
        await session.commit()
    return subscriber_id


async def seed_notification(
    session_factory,
    *,
    tenant_id: str,
    now: datetime,
    status: str = "scheduled",
    scheduled_at: datetime | None = None,
    created_at: datetime | None = None,
    updated_at: datetime | None = None,
    domain_ids: list[str] | None = None,
    title: str = "Spring sale",
) -> str:
    notification_id = uuid4().hex
    async with session_factory() as session:
        session.add(
            PushNotification(
                id=notification_id,
                client_id=tenant_id,
                title=title,
                body="Everything is 20% off today",
                icon_url="https://cdn.example.test/icon.png",
                target_url="https://shop.example.test/sale",
                domain_ids=domain_ids,
                scheduled_at=scheduled_at if scheduled_at is not None else now,
                status=status,
                created_at=created_at or now,
                updated_at=updated_at or now,
            )
        )
        await session.commit()
    return notification_id


async def load_notification(session_factory, notification_id: str) -> PushNotification | None:
    async with session_factory() as session:
        return await session.get(PushNotification, notification_id)


async def load_subscriber(session_factory, subscriber_id: str) -> PushSubscriber | None:
    async with session_factory() as session:
        return await session.get(PushSubscriber, subscriber_id)


async def load_deliveries(session_factory, notification_id: str) -> dict[str, NotificationDelivery]:
    # Keyed by subscriber id.
    async with session_factory() as session:
        rows = (
            await session.execute(
                select(NotificationDelivery).where(NotificationDelivery.notification_id == notification_id)
            )
        ).scalars().all()
    return {row.subscriber_id: row for row in rows}
