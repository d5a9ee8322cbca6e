from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.config import Settings, get_settings
from pushrelay.core.errors import VapidKeyNotFoundError
from pushrelay.domain.models import VapidKey


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VapidKeySet:
    public_key: str
    private_key: str
    subject: str


def _b64url(raw: bytes) -> str:
    # Web push tooling expects unpadded base64url key material.
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_vapid_key_pair() -> tuple[str, str]:
    """Return a fresh ``(public_key, private_key)`` P-256 pair encoded as base64url.

    The public key is the uncompressed curve point browsers pass to
    ``pushManager.subscribe``; the private key is the raw 32-byte scalar.
    """
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_raw = private_key.private_numbers().private_value.to_bytes(32, "big")
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint,
    )
    return _b64url(public_raw), _b64url(private_raw)


async def _load_active_row(*, session: AsyncSession, tenant_id: str) -> VapidKey | None:
    return (
        await session.execute(
            select(VapidKey)
            .where(VapidKey.client_id == tenant_id, VapidKey.is_active.is_(True))
            .order_by(VapidKey.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


class VapidKeyProvider:
    """Resolve the active signing key per tenant, cached for the duration of one dispatch batch."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._cache: dict[str, VapidKeySet] = {}

    def begin_batch(self) -> None:
        # Drop cached keys so a rotation is picked up by the next sweep without a restart.
        self._cache.clear()

    async def active_key_for(self, *, session: AsyncSession, tenant_id: str) -> VapidKeySet:
        cached = self._cache.get(tenant_id)
        if cached is not None:
            return cached
        row = await _load_active_row(session=session, tenant_id=tenant_id)
        if row is None:
            raise VapidKeyNotFoundError(tenant_id)
        key_set = VapidKeySet(
            public_key=row.public_key,
            private_key=row.private_key,
            subject=(row.subject or "").strip() or self._settings.vapid_default_subject,
        )
        self._cache[tenant_id] = key_set
        return key_set


async def get_active_public_key(*, session: AsyncSession, tenant_id: str) -> str | None:
    # Only the public half is ever exposed to browsers.
    row = await _load_active_row(session=session, tenant_id=tenant_id)
    return row.public_key if row is not None else None


async def rotate_vapid_key(
    *,
    session: AsyncSession,
    tenant_id: str,
    public_key: str,
    private_key: str,
    subject: str,
    now: datetime,
) -> tuple[VapidKey, str | None]:
    # Deactivate before inserting so the one-active-key index holds at every statement.
    previous_id = (
        await session.execute(
            select(VapidKey.id).where(VapidKey.client_id == tenant_id, VapidKey.is_active.is_(True))
        )
    ).scalar_one_or_none()
    if previous_id is not None:
        await session.execute(
            update(VapidKey)
            .where(VapidKey.id == previous_id)
            .values(is_active=False, deactivated_at=now)
        )
    row = VapidKey(
        id=uuid4().hex,
        client_id=tenant_id,
        public_key=public_key,
        private_key=private_key,
        subject=subject,
        is_active=True,
        created_at=now,
    )
    session.add(row)
    await session.commit()
    logger.info(
        "vapid_key_rotated tenant_id=%s key_id=%s previous_key_id=%s",
        tenant_id,
        row.id,
        previous_id,
    )
    return row, previous_id
