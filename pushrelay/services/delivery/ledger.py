from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.config import ERROR_MESSAGE_MAX_LEN
from pushrelay.domain.models import (
    DELIVERY_STATUS_CLICKED,
    DELIVERY_STATUS_FAILED,
    DELIVERY_STATUS_PENDING,
    DELIVERY_STATUS_SENT,
    DELIVERY_STATUSES,
    NOTIFICATION_STATUSES,
    NotificationDelivery,
    PushNotification,
)


def truncate_error(message: str | None) -> str | None:
    # Bound persisted error text so provider responses cannot bloat ledger rows.
    if message is None:
        return None
    return message[:ERROR_MESSAGE_MAX_LEN]


def _insert_for(session: AsyncSession):
    # Pick the dialect insert that supports ON CONFLICT for the bound database.
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


async def insert_pending_delivery(
    *,
    session: AsyncSession,
    notification_id: str,
    subscriber_id: str,
    now: datetime,
) -> str | None:
    # Rely on the (notification, subscriber) unique key so concurrent fan-outs collapse to one row.
    insert = _insert_for(session)
    stmt = (
        insert(NotificationDelivery)
        .values(
            id=uuid4().hex,
            notification_id=notification_id,
            subscriber_id=subscriber_id,
            status=DELIVERY_STATUS_PENDING,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["notification_id", "subscriber_id"])
        .returning(NotificationDelivery.id)
    )
    # None means the pair already had a ledger row and must not be sent again.
    inserted = (await session.execute(stmt)).scalar_one_or_none()
    return str(inserted) if inserted is not None else None


async def mark_delivery_sent(*, session: AsyncSession, delivery_id: str, now: datetime) -> bool:
    result = await session.execute(
        update(NotificationDelivery)
        .where(
            NotificationDelivery.id == delivery_id,
            NotificationDelivery.status == DELIVERY_STATUS_PENDING,
        )
        .values(status=DELIVERY_STATUS_SENT, sent_at=now, error_message=None)
    )
    return (result.rowcount or 0) == 1


async def mark_delivery_failed(*, session: AsyncSession, delivery_id: str, reason: str) -> bool:
    # Only pending rows transition so a replayed outcome never overwrites a terminal status.
    result = await session.execute(
        update(NotificationDelivery)
        .where(
            NotificationDelivery.id == delivery_id,
            NotificationDelivery.status == DELIVERY_STATUS_PENDING,
        )
        .values(status=DELIVERY_STATUS_FAILED, error_message=truncate_error(reason))
    )
    return (result.rowcount or 0) == 1


async def mark_delivery_clicked(
    *,
    session: AsyncSession,
    notification_id: str,
    subscriber_id: str,
    now: datetime,
) -> bool:
    # A click is only meaningful for a delivery the push service accepted.
    result = await session.execute(
        update(NotificationDelivery)
        .where(
            NotificationDelivery.notification_id == notification_id,
            NotificationDelivery.subscriber_id == subscriber_id,
            NotificationDelivery.status.in_((DELIVERY_STATUS_SENT, DELIVERY_STATUS_CLICKED)),
        )
        .values(status=DELIVERY_STATUS_CLICKED, clicked_at=now)
    )
    return (result.rowcount or 0) == 1


async def count_deliveries_by_status(*, session: AsyncSession, notification_id: str) -> dict[str, int]:
    # Report every known status, including zeros, so callers can sum without key checks.
    counts = {status: 0 for status in DELIVERY_STATUSES}
    rows = (
        await session.execute(
            select(NotificationDelivery.status, func.count())
            .where(NotificationDelivery.notification_id == notification_id)
            .group_by(NotificationDelivery.status)
        )
    ).all()
    for status, count in rows:
        counts[str(status)] = int(count or 0)
    return counts


async def list_notification_deliveries(
    *,
    session: AsyncSession,
    tenant_id: str,
    notification_id: str,
    status_filter: str | None = None,
    limit: int = 100,
) -> list[NotificationDelivery]:
    # Join through the notification so one tenant can never read another tenant's ledger.
    query = (
        select(NotificationDelivery)
        .join(PushNotification, PushNotification.id == NotificationDelivery.notification_id)
        .where(
            PushNotification.client_id == tenant_id,
            NotificationDelivery.notification_id == notification_id,
        )
    )
    if status_filter:
        query = query.where(NotificationDelivery.status == status_filter)
    rows = (
        await session.execute(
            query.order_by(NotificationDelivery.created_at.desc(), NotificationDelivery.id.desc()).limit(
                max(1, min(limit, 500))
            )
        )
    ).scalars().all()
    return list(rows)


async def notification_delivery_summary(
    *,
    session: AsyncSession,
    tenant_id: str,
    now: datetime,
) -> dict[str, Any]:
    # Expose compact reporting counters without returning subscriber endpoints or payloads.
    notifications = {status: 0 for status in NOTIFICATION_STATUSES}
    rows = (
        await session.execute(
            select(PushNotification.status, func.count())
            .where(PushNotification.client_id == tenant_id)
            .group_by(PushNotification.status)
        )
    ).all()
    for status, count in rows:
        notifications[str(status)] = int(count or 0)

    window_start = now - timedelta(hours=24)
    delivery_rows = (
        await session.execute(
            select(NotificationDelivery.status, func.count())
            .join(PushNotification, PushNotification.id == NotificationDelivery.notification_id)
            .where(
                PushNotification.client_id == tenant_id,
                NotificationDelivery.created_at >= window_start,
            )
            .group_by(NotificationDelivery.status)
        )
    ).all()
    by_status = {str(status): int(count or 0) for status, count in delivery_rows}
    # Clicked deliveries were accepted by the push service first, so they count as sent.
    sent_24h = by_status.get(DELIVERY_STATUS_SENT, 0) + by_status.get(DELIVERY_STATUS_CLICKED, 0)
    failed_24h = by_status.get(DELIVERY_STATUS_FAILED, 0)
    attempted = sent_24h + failed_24h
    return {
        "notifications": notifications,
        "deliveries_sent_24h": sent_24h,
        "deliveries_failed_24h": failed_24h,
        "deliveries_pending_24h": by_status.get(DELIVERY_STATUS_PENDING, 0),
        "success_rate_24h": round(sent_24h / attempted, 4) if attempted else None,
    }
