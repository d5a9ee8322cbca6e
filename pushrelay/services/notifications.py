from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.errors import InvalidNotificationError
from pushrelay.domain.models import (
    NOTIFICATION_STATUS_SCHEDULED,
    NOTIFICATION_STATUSES,
    ClientDomain,
    PushNotification,
)


logger = logging.getLogger(__name__)

TITLE_MAX_LEN = 100
BODY_MAX_LEN = 300
LIST_LIMIT_MAX = 50


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps from callers are taken to be UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


async def _require_tenant_domains(*, session: AsyncSession, tenant_id: str, domain_ids: list[str]) -> None:
    known = set(
        (
            await session.execute(
                select(ClientDomain.id).where(
                    ClientDomain.client_id == tenant_id,
                    ClientDomain.id.in_(domain_ids),
                    ClientDomain.is_active.is_(True),
                )
            )
        ).scalars().all()
    )
    unknown = sorted(set(domain_ids) - {str(item) for item in known})
    if unknown:
        raise InvalidNotificationError(f"Unknown or inactive domain ids: {', '.join(unknown)}")


async def create_notification(
    *,
    session: AsyncSession,
    tenant_id: str,
    title: str,
    body: str,
    now: datetime,
    icon_url: str | None = None,
    badge_url: str | None = None,
    image_url: str | None = None,
    target_url: str | None = None,
    domain_ids: list[str] | None = None,
    scheduled_at: datetime | None = None,
) -> PushNotification:
    """Create a campaign that the due sweep (or an immediate dispatch job) will pick up.

    Every new notification starts ``scheduled``. An immediate send is simply one
    scheduled for ``now``, so a lost queue message is still delivered by the
    next due sweep.
    """
    title = title.strip()
    body = body.strip()
    if not 1 <= len(title) <= TITLE_MAX_LEN:
        raise InvalidNotificationError(f"title must be 1-{TITLE_MAX_LEN} characters")
    if not 1 <= len(body) <= BODY_MAX_LEN:
        raise InvalidNotificationError(f"body must be 1-{BODY_MAX_LEN} characters")
    scope = sorted({str(item) for item in (domain_ids or []) if item})
    if scope:
        await _require_tenant_domains(session=session, tenant_id=tenant_id, domain_ids=scope)
    due_at = max(_as_utc(scheduled_at), now) if scheduled_at is not None else now

    notification = PushNotification(
        id=uuid4().hex,
        client_id=tenant_id,
        title=title,
        body=body,
        icon_url=icon_url,
        badge_url=badge_url,
        image_url=image_url,
        target_url=target_url,
        domain_ids=scope or None,
        scheduled_at=due_at,
        status=NOTIFICATION_STATUS_SCHEDULED,
        created_at=now,
        updated_at=now,
    )
    session.add(notification)
    await session.commit()
    logger.info(
        "notification_created notification_id=%s tenant_id=%s scheduled_at=%s domains=%s",
        notification.id,
        tenant_id,
        due_at.isoformat(),
        len(scope),
    )
    return notification


async def list_notifications(
    *,
    session: AsyncSession,
    tenant_id: str,
    status_filter: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[list[PushNotification], int]:
    # Newest first; returns (page, total matching rows).
    if status_filter and status_filter not in NOTIFICATION_STATUSES:
        raise InvalidNotificationError(f"status must be one of {', '.join(NOTIFICATION_STATUSES)}")
    conditions = [PushNotification.client_id == tenant_id]
    if status_filter:
        conditions.append(PushNotification.status == status_filter)
    total = int(await session.scalar(select(func.count()).select_from(PushNotification).where(*conditions)) or 0)
    rows = (
        await session.execute(
            select(PushNotification)
            .where(*conditions)
            .order_by(PushNotification.created_at.desc(), PushNotification.id.desc())
            .limit(max(1, min(limit, LIST_LIMIT_MAX)))
            .offset(max(0, offset))
        )
    ).scalars().all()
    return list(rows), total


async def get_notification(*, session: AsyncSession, tenant_id: str, notification_id: str) -> PushNotification | None:
    return (
        await session.execute(
            select(PushNotification).where(
                PushNotification.id == notification_id,
                PushNotification.client_id == tenant_id,
            )
        )
    ).scalar_one_or_none()
