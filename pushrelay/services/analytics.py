from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.domain.models import AnalyticsEvent


logger = logging.getLogger(__name__)

EVENT_SUBSCRIBE = "subscribe"
EVENT_UNSUBSCRIBE = "unsubscribe"
EVENT_NOTIFICATION_SENT = "notification_sent"
EVENT_NOTIFICATION_CLICKED = "notification_clicked"

_SENSITIVE_KEY_PATTERNS = ["endpoint", "p256dh", "auth", "private_key", "secret"]
_REDACTED_VALUE = "[REDACTED]"


def sanitize_event_data(value: Any) -> Any:
    # Keep subscription key material out of analytics rows.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if any(pattern in key.lower() for pattern in _SENSITIVE_KEY_PATTERNS):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_event_data(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_event_data(item) for item in value]
    return value


async def record_event(
    *,
    session: AsyncSession,
    event_type: str,
    occurred_at: datetime,
    tenant_id: str | None,
    notification_id: str | None = None,
    subscriber_id: str | None = None,
    user_agent: str | None = None,
    data: dict[str, Any] | None = None,
    commit: bool = False,
) -> None:
    """Write one analytics row without ever failing the caller.

    The insert runs in a savepoint, so a rejected row rolls back alone and the
    caller's pending work (a subscription upsert, a click) still commits.
    With ``commit=True`` the surrounding transaction is committed here too.
    """
    event = AnalyticsEvent(
        id=uuid4().hex,
        client_id=tenant_id,
        notification_id=notification_id,
        subscriber_id=subscriber_id,
        event_type=event_type,
        event_data=sanitize_event_data(data or {}),
        user_agent=user_agent,
        created_at=occurred_at,
    )
    try:
        async with session.begin_nested():
            session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        logger.warning(
            "analytics_event_write_failed event_type=%s notification_id=%s",
            event_type,
            notification_id,
            exc_info=exc,
        )
