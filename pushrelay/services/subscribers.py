from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.errors import InvalidSubscriptionError, SubscriptionConflictError, SubscriptionTargetError
from pushrelay.domain.models import Client, ClientDomain, PushNotification, PushSubscriber
from pushrelay.services.analytics import (
    EVENT_NOTIFICATION_CLICKED,
    EVENT_SUBSCRIBE,
    EVENT_UNSUBSCRIBE,
    record_event,
)
from pushrelay.services.delivery.ledger import mark_delivery_clicked


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushSubscriptionInfo:
    endpoint: str
    p256dh_key: str
    auth_key: str


def validate_subscription(payload: Any) -> PushSubscriptionInfo:
    # Accept the browser's PushSubscription.toJSON() shape and nothing looser.
    if not isinstance(payload, dict):
        raise InvalidSubscriptionError("subscription must be an object")
    endpoint = str(payload.get("endpoint") or "").strip()
    if not endpoint.startswith("https://"):
        raise InvalidSubscriptionError("subscription.endpoint must be an https URL")
    keys = payload.get("keys")
    if not isinstance(keys, dict):
        raise InvalidSubscriptionError("subscription.keys is required")
    p256dh_key = str(keys.get("p256dh") or "").strip()
    auth_key = str(keys.get("auth") or "").strip()
    if not p256dh_key or not auth_key:
        raise InvalidSubscriptionError("subscription.keys.p256dh and subscription.keys.auth are required")
    return PushSubscriptionInfo(endpoint=endpoint, p256dh_key=p256dh_key, auth_key=auth_key)


async def _require_subscribable_domain(*, session: AsyncSession, tenant_id: str, domain_id: str) -> None:
    # Only active tenants on active, verified domains may collect subscribers.
    row = (
        await session.execute(
            select(ClientDomain.id)
            .join(Client, Client.id == ClientDomain.client_id)
            .where(
                Client.id == tenant_id,
                ClientDomain.id == domain_id,
                Client.is_active.is_(True),
                ClientDomain.is_active.is_(True),
                ClientDomain.is_verified.is_(True),
            )
        )
    ).scalar_one_or_none()
    if row is None:
        raise SubscriptionTargetError("Invalid client or domain")


async def register_subscription(
    *,
    session: AsyncSession,
    tenant_id: str,
    domain_id: str,
    subscription: PushSubscriptionInfo,
    user_agent: str | None,
    now: datetime,
) -> str:
    await _require_subscribable_domain(session=session, tenant_id=tenant_id, domain_id=domain_id)
    insert = sqlite.insert if session.get_bind().dialect.name == "sqlite" else postgresql.insert
    stmt = insert(PushSubscriber).values(
        id=uuid4().hex,
        client_id=tenant_id,
        domain_id=domain_id,
        endpoint=subscription.endpoint,
        p256dh_key=subscription.p256dh_key,
        auth_key=subscription.auth_key,
        user_agent=user_agent,
        is_active=True,
        subscribed_at=now,
        last_seen_at=now,
    )
    # The endpoint is the identity: a re-subscribe refreshes keys and reactivates the same row,
    # but only for the tenant that owns it. Ownership never moves through this path.
    stmt = stmt.on_conflict_do_update(
        index_elements=["endpoint"],
        set_={
            "domain_id": stmt.excluded.domain_id,
            "p256dh_key": stmt.excluded.p256dh_key,
            "auth_key": stmt.excluded.auth_key,
            "user_agent": stmt.excluded.user_agent,
            "is_active": True,
            "unsubscribed_at": None,
            "last_seen_at": now,
        },
        where=PushSubscriber.client_id == tenant_id,
    ).returning(PushSubscriber.id)
    subscriber_id = (await session.execute(stmt)).scalar_one_or_none()
    if subscriber_id is None:
        await session.rollback()
        logger.warning("push_subscription_conflict tenant_id=%s domain_id=%s", tenant_id, domain_id)
        raise SubscriptionConflictError("Push endpoint is already registered to another client")
    subscriber_id = str(subscriber_id)
    await record_event(
        session=session,
        event_type=EVENT_SUBSCRIBE,
        occurred_at=now,
        tenant_id=tenant_id,
        subscriber_id=subscriber_id,
        user_agent=user_agent,
        data={"domain_id": domain_id},
    )
    await session.commit()
    logger.info("push_subscription_registered tenant_id=%s domain_id=%s subscriber_id=%s", tenant_id, domain_id, subscriber_id)
    return subscriber_id


async def unsubscribe(*, session: AsyncSession, tenant_id: str, endpoint: str, now: datetime) -> bool:
    # Deactivate rather than delete so delivery history stays attributable.
    subscriber_id = (
        await session.execute(
            select(PushSubscriber.id).where(
                PushSubscriber.client_id == tenant_id,
                PushSubscriber.endpoint == endpoint,
            )
        )
    ).scalar_one_or_none()
    if subscriber_id is None:
        return False
    await session.execute(
        update(PushSubscriber)
        .where(PushSubscriber.id == subscriber_id)
        .values(is_active=False, unsubscribed_at=now)
        .execution_options(synchronize_session=False)
    )
    await record_event(
        session=session,
        event_type=EVENT_UNSUBSCRIBE,
        occurred_at=now,
        tenant_id=tenant_id,
        subscriber_id=str(subscriber_id),
    )
    await session.commit()
    return True


async def track_click(
    *,
    session: AsyncSession,
    notification_id: str,
    subscriber_id: str | None,
    now: datetime,
    user_agent: str | None = None,
) -> bool:
    tenant_id = (
        await session.execute(select(PushNotification.client_id).where(PushNotification.id == notification_id))
    ).scalar_one_or_none()
    if tenant_id is None:
        return False
    await session.execute(
        update(PushNotification)
        .where(PushNotification.id == notification_id)
        .values(click_count=PushNotification.click_count + 1)
        .execution_options(synchronize_session=False)
    )
    clicked = False
    if subscriber_id:
        clicked = await mark_delivery_clicked(
            session=session,
            notification_id=notification_id,
            subscriber_id=subscriber_id,
            now=now,
        )
    await record_event(
        session=session,
        event_type=EVENT_NOTIFICATION_CLICKED,
        occurred_at=now,
        tenant_id=str(tenant_id),
        notification_id=notification_id,
        # Attribute the click only to a subscriber the ledger knows received this notification.
        subscriber_id=subscriber_id if clicked else None,
        user_agent=user_agent,
    )
    await session.commit()
    return True
