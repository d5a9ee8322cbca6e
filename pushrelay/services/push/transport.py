from __future__ import annotations

import asyncio
import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import requests
from pywebpush import WebPushException, webpush

from pushrelay.core.config import Settings, get_settings
from pushrelay.domain.models import PushNotification
from pushrelay.services.push.vapid import VapidKeySet


logger = logging.getLogger(__name__)

# Push services answer 404/410 once a browser subscription is expired or revoked.
_GONE_STATUS_CODES = {404, 410}
_RATE_LIMITED_STATUS = 429


class PushOutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class PushOutcome:
    """Result of one push attempt; callers branch on ``kind``, never on ``reason``."""

    kind: PushOutcomeKind
    reason: str | None = None

    @classmethod
    def success(cls) -> "PushOutcome":
        return cls(PushOutcomeKind.SUCCESS)

    @classmethod
    def permanent(cls, reason: str) -> "PushOutcome":
        return cls(PushOutcomeKind.PERMANENT_FAILURE, reason)

    @classmethod
    def transient(cls, reason: str) -> "PushOutcome":
        return cls(PushOutcomeKind.TRANSIENT_FAILURE, reason)


@dataclass(frozen=True)
class PushTarget:
    subscriber_id: str
    endpoint: str
    p256dh_key: str
    auth_key: str

    def subscription_info(self) -> dict[str, Any]:
        # Shape expected by pywebpush.
        return {
            "endpoint": self.endpoint,
            "keys": {"p256dh": self.p256dh_key, "auth": self.auth_key},
        }


class PushTransport(Protocol):
    async def send(self, *, subscription: PushTarget, payload: bytes, vapid: VapidKeySet) -> PushOutcome:
        ...


def build_push_payload(notification: PushNotification) -> bytes:
    # Serialize deterministically so every subscriber of one notification receives identical bytes.
    payload = {
        "title": notification.title,
        "body": notification.body,
        "icon": notification.icon_url,
        "badge": notification.badge_url,
        "image": notification.image_url,
        "url": notification.target_url,
        "notificationId": notification.id,
        "tag": f"notification-{notification.id}",
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def classify_status_code(status_code: int) -> PushOutcome:
    # Classification happens here once; the dispatch engine only sees the outcome kind.
    if status_code in _GONE_STATUS_CODES:
        return PushOutcome.permanent("endpoint_gone")
    if status_code == _RATE_LIMITED_STATUS:
        return PushOutcome.transient("rate_limited")
    return PushOutcome.transient(f"http_{int(status_code)}")


class WebPushTransport:
    """Deliver payloads through pywebpush, which owns message encryption and VAPID signing."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _send_blocking(self, *, subscription: PushTarget, payload: bytes, vapid: VapidKeySet) -> None:
        timeout_s = max(0.2, self._settings.push_timeout_ms / 1000.0)
        webpush(
            subscription_info=subscription.subscription_info(),
            data=payload,
            vapid_private_key=vapid.private_key,
            # pywebpush adds aud/exp to the claims dict, so each call gets its own copy.
            vapid_claims={"sub": vapid.subject},
            ttl=int(self._settings.push_ttl_s),
            timeout=timeout_s,
        )

    async def send(self, *, subscription: PushTarget, payload: bytes, vapid: VapidKeySet) -> PushOutcome:
        # Run the blocking HTTP call off the event loop and bound it by the configured timeout.
        timeout_s = max(0.2, self._settings.push_timeout_ms / 1000.0)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    self._send_blocking,
                    subscription=subscription,
                    payload=payload,
                    vapid=vapid,
                ),
                # Leave headroom for pywebpush's own request timeout to fire first.
                timeout=timeout_s + 1.0,
            )
        except WebPushException as exc:
            response = getattr(exc, "response", None)
            if response is not None and getattr(response, "status_code", None) is not None:
                return classify_status_code(int(response.status_code))
            logger.warning("push_transport_error subscriber_id=%s error=%s", subscription.subscriber_id, exc)
            return PushOutcome.transient(str(exc) or "webpush_error")
        except (asyncio.TimeoutError, requests.exceptions.Timeout):
            return PushOutcome.transient("timeout")
        except requests.exceptions.RequestException as exc:
            return PushOutcome.transient(f"connection_error: {exc}")
        return PushOutcome.success()
