from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
import requests
from pywebpush import WebPushException

from pushrelay.core.config import Settings
from pushrelay.domain.models import PushNotification
from pushrelay.services.push import transport as transport_module
from pushrelay.services.push.transport import (
    PushOutcome,
    PushOutcomeKind,
    PushTarget,
    WebPushTransport,
    build_push_payload,
    classify_status_code,
)
from pushrelay.services.push.vapid import VapidKeySet


_TARGET = PushTarget(
    subscriber_id="sub-1",
    endpoint="https://push.example.test/abc",
    p256dh_key="p256dh",
    auth_key="auth",
)
_VAPID = VapidKeySet(public_key="pub", private_key="priv", subject="mailto:ops@pushrelay.test")


def _raise_with_status(status_code: int):
    def _fake_webpush(**kwargs):  # noqa: ANN003
        raise WebPushException("push rejected", response=SimpleNamespace(status_code=status_code, text=""))

    return _fake_webpush


@pytest.mark.parametrize(
    ("status_code", "kind", "reason"),
    [
        (404, PushOutcomeKind.PERMANENT_FAILURE, "endpoint_gone"),
        (410, PushOutcomeKind.PERMANENT_FAILURE, "endpoint_gone"),
        (429, PushOutcomeKind.TRANSIENT_FAILURE, "rate_limited"),
        (500, PushOutcomeKind.TRANSIENT_FAILURE, "http_500"),
        (413, PushOutcomeKind.TRANSIENT_FAILURE, "http_413"),
    ],
)
def test_classify_status_code(status_code: int, kind: PushOutcomeKind, reason: str) -> None:
    outcome = classify_status_code(status_code)
    assert outcome.kind is kind
    assert outcome.reason == reason


@pytest.mark.asyncio
async def test_webpush_transport_success_passes_subscription_and_vapid(monkeypatch) -> None:
    captured: list[dict] = []

    def _fake_webpush(**kwargs):  # noqa: ANN003
        captured.append(kwargs)

    monkeypatch.setattr(transport_module, "webpush", _fake_webpush)
    transport = WebPushTransport(Settings(push_ttl_s=3600, push_timeout_ms=2000))

    outcome = await transport.send(subscription=_TARGET, payload=b"{}", vapid=_VAPID)

    assert outcome == PushOutcome.success()
    assert captured[0]["subscription_info"] == {
        "endpoint": "https://push.example.test/abc",
        "keys": {"p256dh": "p256dh", "auth": "auth"},
    }
    assert captured[0]["vapid_private_key"] == "priv"
    assert captured[0]["vapid_claims"] == {"sub": "mailto:ops@pushrelay.test"}
    assert captured[0]["ttl"] == 3600
    assert captured[0]["timeout"] == 2.0


@pytest.mark.asyncio
async def test_webpush_transport_gives_each_call_fresh_claims(monkeypatch) -> None:
    seen: list[dict] = []

    def _fake_webpush(**kwargs):  # noqa: ANN003
        claims = kwargs["vapid_claims"]
        assert "aud" not in claims
        # pywebpush mutates the claims it is handed.
        claims["aud"] = "https://push.example.test"
        seen.append(claims)

    monkeypatch.setattr(transport_module, "webpush", _fake_webpush)
    transport = WebPushTransport(Settings())

    await transport.send(subscription=_TARGET, payload=b"{}", vapid=_VAPID)
    await transport.send(subscription=_TARGET, payload=b"{}", vapid=_VAPID)

    assert len(seen) == 2
    assert seen[0] is not seen[1]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "kind"),
    [
        (410, PushOutcomeKind.PERMANENT_FAILURE),
        (404, PushOutcomeKind.PERMANENT_FAILURE),
        (429, PushOutcomeKind.TRANSIENT_FAILURE),
        (503, PushOutcomeKind.TRANSIENT_FAILURE),
    ],
)
async def test_webpush_transport_classifies_push_service_errors(monkeypatch, status_code, kind) -> None:
    monkeypatch.setattr(transport_module, "webpush", _raise_with_status(status_code))
    transport = WebPushTransport(Settings())

    outcome = await transport.send(subscription=_TARGET, payload=b"{}", vapid=_VAPID)

    assert outcome.kind is kind


@pytest.mark.asyncio
async def test_webpush_transport_timeouts_are_transient(monkeypatch) -> None:
    def _timeout(**kwargs):  # noqa: ANN003
        raise requests.exceptions.ReadTimeout("read timed out")

    monkeypatch.setattr(transport_module, "webpush", _timeout)
    outcome = await WebPushTransport(Settings()).send(subscription=_TARGET, payload=b"{}", vapid=_VAPID)

    assert outcome.kind is PushOutcomeKind.TRANSIENT_FAILURE
    assert outcome.reason == "timeout"


@pytest.mark.asyncio
async def test_webpush_transport_connection_errors_are_transient(monkeypatch) -> None:
    def _refused(**kwargs):  # noqa: ANN003
        raise requests.exceptions.ConnectionError("connection refused")

    monkeypatch.setattr(transport_module, "webpush", _refused)
    outcome = await WebPushTransport(Settings()).send(subscription=_TARGET, payload=b"{}", vapid=_VAPID)

    assert outcome.kind is PushOutcomeKind.TRANSIENT_FAILURE
    assert outcome.reason.startswith("connection_error")


@pytest.mark.asyncio
async def test_webpush_exception_without_response_is_transient(monkeypatch) -> None:
    def _no_response(**kwargs):  # noqa: ANN003
        raise WebPushException("encryption failed")

    monkeypatch.setattr(transport_module, "webpush", _no_response)
    outcome = await WebPushTransport(Settings()).send(subscription=_TARGET, payload=b"{}", vapid=_VAPID)

    assert outcome.kind is PushOutcomeKind.TRANSIENT_FAILURE


def test_build_push_payload_shape_and_determinism() -> None:
    notification = PushNotification(
        id="n-1",
        client_id="t-1",
        title="Hello",
        body="World",
        icon_url="https://cdn.example.test/i.png",
        badge_url=None,
        image_url=None,
        target_url="https://example.test/landing",
    )

    first = build_push_payload(notification)
    second = build_push_payload(notification)

    assert first == second
    decoded = json.loads(first)
    assert decoded == {
        "title": "Hello",
        "body": "World",
        "icon": "https://cdn.example.test/i.png",
        "badge": None,
        "image": None,
        "url": "https://example.test/landing",
        "notificationId": "n-1",
        "tag": "notification-n-1",
    }
