from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.apps.api.deps import get_clock, get_db
from pushrelay.apps.api.errors import raise_not_found
from pushrelay.apps.api.response import SuccessEnvelope, envelope
from pushrelay.core.clock import Clock
from pushrelay.core.errors import VapidKeyNotFoundError
from pushrelay.services.push.vapid import get_active_public_key
from pushrelay.services.subscribers import (
    register_subscription,
    track_click,
    unsubscribe,
    validate_subscription,
)

router = APIRouter(prefix="/push", tags=["push"])


class SubscribeRequest(BaseModel):
    subscription: dict[str, Any]
    client_id: str = Field(alias="clientId")
    domain_id: str = Field(alias="domainId")
    user_agent: str | None = Field(default=None, alias="userAgent")

    model_config = {"populate_by_name": True}


class UnsubscribeRequest(BaseModel):
    endpoint: str
    client_id: str = Field(alias="clientId")

    model_config = {"populate_by_name": True}


class TrackClickRequest(BaseModel):
    notification_id: str = Field(alias="notificationId")
    subscriber_id: str | None = Field(default=None, alias="subscriberId")

    model_config = {"populate_by_name": True}


class VapidPublicKeyResponse(BaseModel):
    public_key: str


class SubscribeResponse(BaseModel):
    subscriber_id: str


class AckResponse(BaseModel):
    ok: bool = True


@router.get("/vapid-public-key/{tenant_id}", response_model=SuccessEnvelope[VapidPublicKeyResponse])
async def vapid_public_key(
    tenant_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Browsers need the tenant's application server key before calling pushManager.subscribe.
    public_key = await get_active_public_key(session=db, tenant_id=tenant_id)
    if public_key is None:
        raise VapidKeyNotFoundError(tenant_id)
    return envelope(request, VapidPublicKeyResponse(public_key=public_key))


@router.post("/subscribe", response_model=SuccessEnvelope[SubscribeResponse])
async def subscribe(
    payload: SubscribeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user_agent_header: str | None = Header(default=None, alias="User-Agent"),
) -> dict:
    subscription = validate_subscription(payload.subscription)
    subscriber_id = await register_subscription(
        session=db,
        tenant_id=payload.client_id,
        domain_id=payload.domain_id,
        subscription=subscription,
        user_agent=payload.user_agent or user_agent_header,
        now=clock(),
    )
    return envelope(request, SubscribeResponse(subscriber_id=subscriber_id))


@router.post("/unsubscribe", response_model=SuccessEnvelope[AckResponse])
async def unsubscribe_endpoint(
    payload: UnsubscribeRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> dict:
    removed = await unsubscribe(session=db, tenant_id=payload.client_id, endpoint=payload.endpoint, now=clock())
    if not removed:
        raise_not_found("Subscription not found")
    return envelope(request, AckResponse())


@router.post("/track-click", response_model=SuccessEnvelope[AckResponse])
async def track_click_endpoint(
    payload: TrackClickRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    user_agent_header: str | None = Header(default=None, alias="User-Agent"),
) -> dict:
    tracked = await track_click(
        session=db,
        notification_id=payload.notification_id,
        subscriber_id=payload.subscriber_id,
        now=clock(),
        user_agent=user_agent_header,
    )
    if not tracked:
        raise_not_found("Notification not found")
    return envelope(request, AckResponse())
