from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import NoReturn

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pushrelay.core.clock import Clock, utc_now
from pushrelay.core.config import Settings, get_settings
from pushrelay.core.errors import (
    NoActiveSubscribersError,
    NotificationClaimLostError,
    NotificationNotClaimedError,
)
from pushrelay.domain.models import (
    DELIVERY_STATUS_CLICKED,
    DELIVERY_STATUS_FAILED,
    DELIVERY_STATUS_SENT,
    NOTIFICATION_STATUS_SENDING,
    NOTIFICATION_STATUS_SENT,
    ClientDomain,
    PushNotification,
    PushSubscriber,
)
from pushrelay.services.analytics import EVENT_NOTIFICATION_SENT, record_event
from pushrelay.services.delivery.ledger import (
    count_deliveries_by_status,
    insert_pending_delivery,
    mark_delivery_failed,
    mark_delivery_sent,
)
from pushrelay.services.push.transport import (
    PushOutcome,
    PushOutcomeKind,
    PushTarget,
    PushTransport,
    build_push_payload,
)
from pushrelay.services.push.vapid import VapidKeyProvider, VapidKeySet


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchResult:
    notification_id: str
    total: int
    successful: int
    failed: int
    deactivated: int


async def resolve_subscribers(*, session: AsyncSession, notification: PushNotification) -> list[PushTarget]:
    # Active subscribers on active tenant domains, optionally narrowed to the notification's domain scope.
    query = (
        select(
            PushSubscriber.id,
            PushSubscriber.endpoint,
            PushSubscriber.p256dh_key,
            PushSubscriber.auth_key,
        )
        .join(ClientDomain, ClientDomain.id == PushSubscriber.domain_id)
        .where(
            PushSubscriber.client_id == notification.client_id,
            PushSubscriber.is_active.is_(True),
            ClientDomain.client_id == notification.client_id,
            ClientDomain.is_active.is_(True),
        )
    )
    domain_ids = [str(item) for item in (notification.domain_ids or []) if item]
    if domain_ids:
        query = query.where(ClientDomain.id.in_(domain_ids))
    rows = (await session.execute(query.order_by(PushSubscriber.id.asc()))).all()
    return [
        PushTarget(
            subscriber_id=str(subscriber_id),
            endpoint=endpoint,
            p256dh_key=p256dh_key,
            auth_key=auth_key,
        )
        for subscriber_id, endpoint, p256dh_key, auth_key in rows
    ]


class PushDispatchEngine:
    """Fan one claimed notification out to its subscribers and record every outcome in the ledger.

    The caller owns the notification's terminal failure path: any exception
    raised from :meth:`dispatch` (missing VAPID key, no subscribers, storage
    errors) means the notification should be marked failed.
    """

    def __init__(
        self,
        *,
        transport: PushTransport,
        vapid_provider: VapidKeyProvider,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self.transport = transport
        self.vapid_provider = vapid_provider
        self._clock = clock
        self._settings = settings or get_settings()

    @property
    def clock(self) -> Clock:
        return self._clock

    def begin_batch(self) -> None:
        self.vapid_provider.begin_batch()

    async def _claim_held(self, *, session: AsyncSession, notification_id: str) -> bool:
        status = await session.scalar(select(PushNotification.status).where(PushNotification.id == notification_id))
        return status == NOTIFICATION_STATUS_SENDING

    async def _send_one(self, *, target: PushTarget, payload: bytes, vapid: VapidKeySet) -> PushOutcome:
        # A transport bug for one subscriber must not abort the rest of the fan-out.
        try:
            return await self.transport.send(subscription=target, payload=payload, vapid=vapid)
        except Exception as exc:  # noqa: BLE001 - record unexpected transport errors as transient outcomes.
            logger.exception("push_transport_unexpected_error subscriber_id=%s", target.subscriber_id)
            return PushOutcome.transient(f"transport_error: {exc}")

    async def _apply_outcome(
        self,
        *,
        session: AsyncSession,
        notification_id: str,
        delivery_id: str,
        target: PushTarget,
        outcome: PushOutcome,
    ) -> bool:
        # Returns True when the subscriber was deactivated.
        now = self._clock()
        if outcome.kind is PushOutcomeKind.SUCCESS:
            if await mark_delivery_sent(session=session, delivery_id=delivery_id, now=now):
                await session.execute(
                    update(PushNotification)
                    .where(PushNotification.id == notification_id)
                    .values(successful_sends=PushNotification.successful_sends + 1, updated_at=now)
                )
            return False

        reason = outcome.reason or outcome.kind.value
        if await mark_delivery_failed(session=session, delivery_id=delivery_id, reason=reason):
            await session.execute(
                update(PushNotification)
                .where(PushNotification.id == notification_id)
                .values(failed_sends=PushNotification.failed_sends + 1, updated_at=now)
            )
        if outcome.kind is not PushOutcomeKind.PERMANENT_FAILURE:
            return False
        # Gone endpoints are retired, never deleted, so delivery history keeps its reference.
        result = await session.execute(
            update(PushSubscriber)
            .where(PushSubscriber.id == target.subscriber_id, PushSubscriber.is_active.is_(True))
            .values(is_active=False, unsubscribed_at=now)
        )
        return (result.rowcount or 0) == 1

    async def _finalize(self, *, session: AsyncSession, notification_id: str, total: int) -> tuple[int, int]:
        # Recompute counters from the ledger so the final totals never drift from per-row truth.
        counts = await count_deliveries_by_status(session=session, notification_id=notification_id)
        successful = counts[DELIVERY_STATUS_SENT] + counts[DELIVERY_STATUS_CLICKED]
        failed = counts[DELIVERY_STATUS_FAILED]
        now = self._clock()
        result = await session.execute(
            update(PushNotification)
            .where(
                PushNotification.id == notification_id,
                PushNotification.status == NOTIFICATION_STATUS_SENDING,
            )
            .values(
                status=NOTIFICATION_STATUS_SENT,
                total_subscribers=total,
                successful_sends=successful,
                failed_sends=failed,
                error_message=None,
                sent_at=now,
                updated_at=now,
            )
        )
        if (result.rowcount or 0) != 1:
            await self._abandon_lost_claim(session=session, notification_id=notification_id, total=total)
        await session.commit()
        return successful, failed

    async def _abandon_lost_claim(self, *, session: AsyncSession, notification_id: str, total: int) -> NoReturn:
        # The stuck sweep already failed it; keep that status but leave the counters matching the ledger.
        counts = await count_deliveries_by_status(session=session, notification_id=notification_id)
        await session.execute(
            update(PushNotification)
            .where(PushNotification.id == notification_id)
            .values(
                total_subscribers=total,
                successful_sends=counts[DELIVERY_STATUS_SENT] + counts[DELIVERY_STATUS_CLICKED],
                failed_sends=counts[DELIVERY_STATUS_FAILED],
            )
        )
        await session.commit()
        raise NotificationClaimLostError(notification_id)

    async def dispatch(self, *, session: AsyncSession, notification_id: str) -> DispatchResult:
        notification = await session.get(PushNotification, notification_id)
        if notification is None or notification.status != NOTIFICATION_STATUS_SENDING:
            raise NotificationNotClaimedError(f"Notification {notification_id} is not in the sending state")
        tenant_id = notification.client_id
        # Resolve everything that can fail before the first ledger row is written.
        vapid = await self.vapid_provider.active_key_for(session=session, tenant_id=tenant_id)
        targets = await resolve_subscribers(session=session, notification=notification)
        if not targets:
            raise NoActiveSubscribersError()
        payload = build_push_payload(notification)

        chunk_size = max(1, int(self._settings.push_dispatch_concurrency))
        deactivated = 0
        for start in range(0, len(targets), chunk_size):
            chunk = targets[start : start + chunk_size]
            if not await self._claim_held(session=session, notification_id=notification_id):
                # Stop fanning out once the notification has been failed underneath us.
                await self._abandon_lost_claim(session=session, notification_id=notification_id, total=len(targets))
            # Persist pending rows before any network call so a crash leaves a visible ledger.
            now = self._clock()
            claimed: list[tuple[str, PushTarget]] = []
            for target in chunk:
                delivery_id = await insert_pending_delivery(
                    session=session,
                    notification_id=notification_id,
                    subscriber_id=target.subscriber_id,
                    now=now,
                )
                if delivery_id is not None:
                    claimed.append((delivery_id, target))
            await session.commit()
            if not claimed:
                continue

            outcomes = await asyncio.gather(
                *(self._send_one(target=target, payload=payload, vapid=vapid) for _, target in claimed)
            )
            for (delivery_id, target), outcome in zip(claimed, outcomes):
                if await self._apply_outcome(
                    session=session,
                    notification_id=notification_id,
                    delivery_id=delivery_id,
                    target=target,
                    outcome=outcome,
                ):
                    deactivated += 1
            await session.commit()

        successful, failed = await self._finalize(
            session=session,
            notification_id=notification_id,
            total=len(targets),
        )
        await record_event(
            session=session,
            event_type=EVENT_NOTIFICATION_SENT,
            occurred_at=self._clock(),
            tenant_id=tenant_id,
            notification_id=notification_id,
            data={
                "total": len(targets),
                "successful": successful,
                "failed": failed,
                "deactivated": deactivated,
            },
            commit=True,
        )
        logger.info(
            "notification_dispatched notification_id=%s tenant_id=%s total=%s successful=%s failed=%s deactivated=%s",
            notification_id,
            tenant_id,
            len(targets),
            successful,
            failed,
            deactivated,
        )
        return DispatchResult(
            notification_id=notification_id,
            total=len(targets),
            successful=successful,
            failed=failed,
            deactivated=deactivated,
        )
