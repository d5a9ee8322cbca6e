from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.apps.api.deps import get_clock, get_db, get_tenant_id
from pushrelay.apps.api.errors import raise_not_found
from pushrelay.apps.api.response import PageInfo, SuccessEnvelope, envelope
from pushrelay.core.clock import Clock
from pushrelay.domain.models import NotificationDelivery, PushNotification
from pushrelay.services.delivery import queue
from pushrelay.services.delivery.ledger import (
    count_deliveries_by_status,
    list_notification_deliveries,
    notification_delivery_summary,
)
from pushrelay.services.notifications import (
    LIST_LIMIT_MAX,
    create_notification,
    get_notification,
    list_notifications,
)

router = APIRouter(prefix="/notifications", tags=["notifications"])


class CreateNotificationRequest(BaseModel):
    title: str
    body: str
    icon: str | None = None
    badge: str | None = None
    image: str | None = None
    target_url: str | None = Field(default=None, alias="targetUrl")
    domain_ids: list[str] | None = Field(default=None, alias="domainIds")
    scheduled_at: datetime | None = Field(default=None, alias="scheduledAt")

    model_config = {"populate_by_name": True}


class NotificationCreatedResponse(BaseModel):
    id: str
    status: str
    scheduled_at: datetime | None
    queued: bool


class NotificationView(BaseModel):
    id: str
    title: str
    body: str
    icon_url: str | None
    target_url: str | None
    domain_ids: list[str] | None
    status: str
    total_subscribers: int
    successful_sends: int
    failed_sends: int
    click_count: int
    error_message: str | None
    scheduled_at: datetime | None
    sent_at: datetime | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class NotificationDetailResponse(BaseModel):
    notification: NotificationView
    deliveries_by_status: dict[str, int]


class DeliveryView(BaseModel):
    id: str
    subscriber_id: str
    status: str
    error_message: str | None
    created_at: datetime | None
    sent_at: datetime | None
    clicked_at: datetime | None

    model_config = {"from_attributes": True}


def _view(row: PushNotification) -> NotificationView:
    return NotificationView.model_validate(row)


@router.post("", status_code=201, response_model=SuccessEnvelope[NotificationCreatedResponse])
async def create(
    payload: CreateNotificationRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    now = clock()
    notification = await create_notification(
        session=db,
        tenant_id=tenant_id,
        title=payload.title,
        body=payload.body,
        icon_url=payload.icon,
        badge_url=payload.badge,
        image_url=payload.image,
        target_url=payload.target_url,
        domain_ids=payload.domain_ids,
        scheduled_at=payload.scheduled_at,
        now=now,
    )
    # Due-now notifications go to the dispatch queue; a failed enqueue leaves them to the due sweep.
    queued = False
    if notification.scheduled_at is not None and notification.scheduled_at <= now:
        queued = await queue.enqueue_notification_dispatch(notification_id=notification.id)
    data = NotificationCreatedResponse(
        id=notification.id,
        status=notification.status,
        scheduled_at=notification.scheduled_at,
        queued=queued,
    )
    return envelope(request, data)


@router.get("", response_model=SuccessEnvelope[list[NotificationView]])
async def list_(
    request: Request,
    status: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=LIST_LIMIT_MAX),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    rows, total = await list_notifications(
        session=db,
        tenant_id=tenant_id,
        status_filter=status,
        limit=limit,
        offset=offset,
    )
    page = PageInfo.for_slice(limit=limit, offset=offset, total=total)
    return envelope(request, [_view(row) for row in rows], page=page)


@router.get("/summary", response_model=SuccessEnvelope[dict[str, Any]])
async def summary(
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    data = await notification_delivery_summary(session=db, tenant_id=tenant_id, now=clock())
    return envelope(request, data)


@router.get("/{notification_id}", response_model=SuccessEnvelope[NotificationDetailResponse])
async def detail(
    notification_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    row = await get_notification(session=db, tenant_id=tenant_id, notification_id=notification_id)
    if row is None:
        raise_not_found("Notification not found")
    counts = await count_deliveries_by_status(session=db, notification_id=notification_id)
    return envelope(request, NotificationDetailResponse(notification=_view(row), deliveries_by_status=counts))


@router.get("/{notification_id}/deliveries", response_model=SuccessEnvelope[list[DeliveryView]])
async def deliveries(
    notification_id: str,
    request: Request,
    status: str | None = Query(default=None, pattern="^(pending|sent|failed|clicked)$"),
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    tenant_id: str = Depends(get_tenant_id),
) -> dict:
    if await get_notification(session=db, tenant_id=tenant_id, notification_id=notification_id) is None:
        raise_not_found("Notification not found")
    rows: list[NotificationDelivery] = await list_notification_deliveries(
        session=db,
        tenant_id=tenant_id,
        notification_id=notification_id,
        status_filter=status,
        limit=limit,
    )
    return envelope(request, [DeliveryView.model_validate(row) for row in rows])
