from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.clock import Clock, utc_now
from pushrelay.domain.models import Client
from pushrelay.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_clock() -> Clock:
    # Overridden in tests to pin request timestamps.
    return utc_now


async def get_tenant_id(
    client_id: str | None = Header(default=None, alias="X-Client-Id"),
    db: AsyncSession = Depends(get_db),
) -> str:
    """Resolve the calling tenant for tenant-scoped routes.

    Authentication happens at the gateway in front of this service, which
    forwards the authenticated client id in ``X-Client-Id``. Here we only
    check that it names an active client.
    """
    if not client_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "X-Client-Id header is required"},
        )
    is_active = await db.scalar(select(Client.is_active).where(Client.id == client_id))
    if not is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Unknown or inactive client"},
        )
    return client_id
