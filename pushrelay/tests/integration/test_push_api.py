from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from pushrelay.apps.api.routes import push as push_routes
from pushrelay.domain.models import AnalyticsEvent, PushSubscriber
from pushrelay.services.delivery.scheduler import run_due_notification_sweep
from pushrelay.tests.utils.seed import (
    load_deliveries,
    load_notification,
    load_subscriber,
    seed_notification,
    seed_subscriber,
    seed_tenant,
)


def _subscription(endpoint: str = "https://push.example.test/sub-1") -> dict:
    return {"endpoint": endpoint, "keys": {"p256dh": "BPp256dh", "auth": "authsecret"}}


@pytest.mark.asyncio
async def test_health_is_unversioned_and_versioned(client) -> None:
    bare = await client.get("/health")
    wrapped = await client.get("/v1/health")

    assert bare.status_code == 200
    assert bare.json()["status"] == "ok"
    assert wrapped.status_code == 200
    assert wrapped.json()["data"]["status"] == "ok"
    assert wrapped.json()["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_vapid_public_key_lookup(client, session_factory, clock) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=clock())
    keyless_id, _ = await seed_tenant(session_factory, now=clock(), with_vapid=False)

    found = await client.get(f"/v1/push/vapid-public-key/{tenant_id}")
    missing = await client.get(f"/v1/push/vapid-public-key/{keyless_id}")

    assert found.status_code == 200
    assert found.json()["data"]["public_key"] == f"pub-{tenant_id[:8]}"
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "VAPID_KEY_NOT_FOUND"


@pytest.mark.asyncio
async def test_subscribe_upserts_by_endpoint_and_reactivates(client, session_factory, clock) -> None:
    tenant_id, domain_id = await seed_tenant(session_factory, now=clock())
    body = {"subscription": _subscription(), "clientId": tenant_id, "domainId": domain_id}

    first = await client.post("/v1/push/subscribe", json=body, headers={"User-Agent": "Firefox/130"})
    assert first.status_code == 200
    subscriber_id = first.json()["data"]["subscriber_id"]

    gone = await client.post(
        "/v1/push/unsubscribe", json={"endpoint": _subscription()["endpoint"], "clientId": tenant_id}
    )
    assert gone.status_code == 200
    assert (await load_subscriber(session_factory, subscriber_id)).is_active is False

    refreshed = dict(body, subscription={**_subscription(), "keys": {"p256dh": "BPnew", "auth": "newauth"}})
    again = await client.post("/v1/push/subscribe", json=refreshed)
    assert again.status_code == 200
    assert again.json()["data"]["subscriber_id"] == subscriber_id

    row = await load_subscriber(session_factory, subscriber_id)
    assert row.is_active is True
    assert row.unsubscribed_at is None
    assert row.p256dh_key == "BPnew"
    async with session_factory() as session:
        rows = (await session.execute(select(PushSubscriber))).scalars().all()
        event_types = sorted(
            (await session.execute(select(AnalyticsEvent.event_type))).scalars().all()
        )
    assert len(rows) == 1
    assert event_types == ["subscribe", "subscribe", "unsubscribe"]


@pytest.mark.asyncio
async def test_subscribe_rejects_malformed_subscription(client, session_factory, clock) -> None:
    tenant_id, domain_id = await seed_tenant(session_factory, now=clock())

    response = await client.post(
        "/v1/push/subscribe",
        json={
            "subscription": {"endpoint": "https://push.example.test/x", "keys": {"p256dh": "only"}},
            "clientId": tenant_id,
            "domainId": domain_id,
        },
    )

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "INVALID_SUBSCRIPTION"


@pytest.mark.asyncio
async def test_subscribe_requires_verified_domain(client, session_factory, clock) -> None:
    tenant_id, domain_id = await seed_tenant(session_factory, now=clock(), domain_verified=False)

    response = await client.post(
        "/v1/push/subscribe",
        json={"subscription": _subscription(), "clientId": tenant_id, "domainId": domain_id},
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INVALID_CLIENT_OR_DOMAIN"


@pytest.mark.asyncio
async def test_unsubscribe_unknown_endpoint_is_not_found(client, session_factory, clock) -> None:
    tenant_id, _ = await seed_tenant(session_factory, now=clock())

    response = await client.post(
        "/v1/push/unsubscribe", json={"endpoint": "https://push.example.test/nope", "clientId": tenant_id}
    )

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_track_click_counts_and_marks_delivery(client, session_factory, dispatch_engine, clock) -> None:
    tenant_id, domain_id = await seed_tenant(session_factory, now=clock())
    subscriber_id = await seed_subscriber(
        session_factory, tenant_id=tenant_id, domain_id=domain_id, endpoint="https://push.test/click", now=clock()
    )
    notification_id = await seed_notification(session_factory, tenant_id=tenant_id, now=clock())
    await run_due_notification_sweep(session_factory=session_factory, engine=dispatch_engine, now=clock())

    anonymous = await client.post("/v1/push/track-click", json={"notificationId": notification_id})
    attributed = await client.post(
        "/v1/push/track-click", json={"notificationId": notification_id, "subscriberId": subscriber_id}
    )
    unknown = await client.post("/v1/push/track-click", json={"notificationId": "does-not-exist"})

    assert anonymous.status_code == 200
    assert attributed.status_code == 200
    assert unknown.status_code == 404
    notification = await load_notification(session_factory, notification_id)
    assert notification.click_count == 2
    # Clicked deliveries still count as successful sends.
    assert notification.successful_sends == 1
    deliveries = await load_deliveries(session_factory, notification_id)
    assert deliveries[subscriber_id].status == "clicked"
    assert deliveries[subscriber_id].clicked_at is not None


@pytest.mark.asyncio
async def test_request_validation_errors_use_envelope(client) -> None:
    response = await client.post("/v1/push/track-click", json={})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_subscribe_cannot_claim_another_clients_endpoint(client, session_factory, clock) -> None:
    owner_id, owner_domain = await seed_tenant(session_factory, now=clock())
    other_id, other_domain = await seed_tenant(session_factory, now=clock())
    subscriber_id = await seed_subscriber(
        session_factory,
        tenant_id=owner_id,
        domain_id=owner_domain,
        endpoint=_subscription()["endpoint"],
        now=clock(),
    )

    response = await client.post(
        "/v1/push/subscribe",
        json={"subscription": _subscription(), "clientId": other_id, "domainId": other_domain},
    )

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "SUBSCRIPTION_CONFLICT"
    row = await load_subscriber(session_factory, subscriber_id)
    assert row.client_id == owner_id
    assert row.p256dh_key == "BPp256dh-test-key"


@pytest.mark.asyncio
async def test_storage_errors_map_to_service_unavailable(client, monkeypatch) -> None:
    async def _unavailable(**_: object) -> str:
        raise OperationalError("SELECT vapid_keys", {}, ConnectionError("connection refused"))

    monkeypatch.setattr(push_routes, "get_active_public_key", _unavailable)

    response = await client.get("/v1/push/vapid-public-key/any-tenant")

    assert response.status_code == 503
    body = response.json()
    assert body["error"]["code"] == "DATABASE_UNAVAILABLE"
    assert "connection refused" not in body["error"]["message"]
    assert body["meta"]["request_id"]
