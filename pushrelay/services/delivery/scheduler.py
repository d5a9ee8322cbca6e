from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.core.clock import Clock, utc_now
from pushrelay.core.config import Settings, get_settings
from pushrelay.core.errors import NotificationClaimLostError, VapidKeyNotFoundError
from pushrelay.domain.models import (
    NOTIFICATION_STATUS_DRAFT,
    NOTIFICATION_STATUS_FAILED,
    NOTIFICATION_STATUS_SCHEDULED,
    NOTIFICATION_STATUS_SENDING,
    NOTIFICATION_TERMINAL_STATUSES,
    AnalyticsEvent,
    NotificationDelivery,
    PushNotification,
)
from pushrelay.services.delivery.dispatch import DispatchResult, PushDispatchEngine
from pushrelay.services.delivery.ledger import truncate_error


logger = logging.getLogger(__name__)

STUCK_ERROR_MESSAGE = "Notification stuck in sending state"

SWEEP_DUE = "due"
SWEEP_STUCK = "stuck"
SWEEP_RETENTION = "retention"
SWEEP_NAMES = (SWEEP_DUE, SWEEP_STUCK, SWEEP_RETENTION)


async def claim_notification(
    *,
    session: AsyncSession,
    notification_id: str,
    now: datetime,
    from_statuses: tuple[str, ...] = (NOTIFICATION_STATUS_SCHEDULED,),
) -> bool:
    # A single conditional update is the claim; exactly one concurrent caller sees rowcount == 1.
    result = await session.execute(
        update(PushNotification)
        .where(
            PushNotification.id == notification_id,
            PushNotification.status.in_(from_statuses),
        )
        .values(status=NOTIFICATION_STATUS_SENDING, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) == 1


async def fail_notification(
    *,
    session: AsyncSession,
    notification_id: str,
    reason: str,
    now: datetime,
) -> bool:
    # Only an in-flight notification can fail; terminal rows are never rewritten.
    result = await session.execute(
        update(PushNotification)
        .where(
            PushNotification.id == notification_id,
            PushNotification.status == NOTIFICATION_STATUS_SENDING,
        )
        .values(
            status=NOTIFICATION_STATUS_FAILED,
            error_message=truncate_error(reason),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (result.rowcount or 0) == 1


async def dispatch_claimed_notification(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    engine: PushDispatchEngine,
    notification_id: str,
) -> DispatchResult | None:
    """Dispatch a notification this process already claimed; mark it failed on any error.

    Returns ``None`` when the notification ended up failed. The failure is
    stamped with the engine clock at the time it is recorded, not when the
    batch started.
    """
    try:
        async with session_factory() as session:
            return await engine.dispatch(session=session, notification_id=notification_id)
    except VapidKeyNotFoundError as exc:
        # Configuration problem for the tenant, not a transient fault.
        logger.error(
            "notification_dispatch_failed notification_id=%s tenant_id=%s error=%s",
            notification_id,
            exc.tenant_id,
            exc,
        )
        reason = str(exc)
    except NotificationClaimLostError as exc:
        # Someone else already moved it to a terminal status; there is nothing left to fail.
        logger.warning("notification_claim_lost notification_id=%s error=%s", notification_id, exc)
        return None
    except Exception as exc:  # noqa: BLE001 - one bad notification must not abort the batch.
        logger.exception("notification_dispatch_failed notification_id=%s", notification_id)
        reason = str(exc) or exc.__class__.__name__
    async with session_factory() as session:
        await fail_notification(
            session=session,
            notification_id=notification_id,
            reason=reason,
            now=engine.clock(),
        )
    return None


async def run_due_notification_sweep(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    engine: PushDispatchEngine,
    now: datetime,
    batch_size: int = 100,
) -> dict[str, int]:
    # Oldest-due first so a backlog drains in scheduling order.
    engine.begin_batch()
    async with session_factory() as session:
        notification_ids = (
            await session.execute(
                select(PushNotification.id)
                .where(
                    PushNotification.status == NOTIFICATION_STATUS_SCHEDULED,
                    PushNotification.scheduled_at <= now,
                )
                .order_by(PushNotification.scheduled_at.asc(), PushNotification.id.asc())
                .limit(max(1, int(batch_size)))
            )
        ).scalars().all()

    summary = {"selected": len(notification_ids), "claimed": 0, "sent": 0, "failed": 0}
    for notification_id in notification_ids:
        async with session_factory() as session:
            # Stamp the claim when it happens; earlier dispatches in this batch may have taken minutes.
            claimed = await claim_notification(
                session=session,
                notification_id=str(notification_id),
                now=engine.clock(),
            )
        if not claimed:
            # Another sweep or the immediate-send path owns it.
            continue
        summary["claimed"] += 1
        result = await dispatch_claimed_notification(
            session_factory=session_factory,
            engine=engine,
            notification_id=str(notification_id),
        )
        if result is None:
            summary["failed"] += 1
        else:
            summary["sent"] += 1
    return summary


async def run_stuck_reconciliation_sweep(
    *,
    session: AsyncSession,
    now: datetime,
    stuck_after_s: int,
    failed_warn_threshold: int | None = None,
) -> dict[str, int]:
    # Fail notifications whose dispatcher died mid-flight; their ledger rows are left as written.
    cutoff = now - timedelta(seconds=max(1, int(stuck_after_s)))
    result = await session.execute(
        update(PushNotification)
        .where(
            PushNotification.status == NOTIFICATION_STATUS_SENDING,
            PushNotification.updated_at < cutoff,
        )
        .values(
            status=NOTIFICATION_STATUS_FAILED,
            error_message=STUCK_ERROR_MESSAGE,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    reconciled = int(result.rowcount or 0)
    if reconciled:
        logger.warning("stuck_notifications_reconciled count=%s cutoff=%s", reconciled, cutoff.isoformat())

    failed_last_hour = int(
        await session.scalar(
            select(func.count())
            .select_from(PushNotification)
            .where(
                PushNotification.status == NOTIFICATION_STATUS_FAILED,
                PushNotification.updated_at >= now - timedelta(hours=1),
            )
        )
        or 0
    )
    threshold = (
        failed_warn_threshold
        if failed_warn_threshold is not None
        else get_settings().failed_notification_warn_threshold
    )
    if failed_last_hour > threshold:
        logger.warning("high_notification_failure_rate failed_last_hour=%s threshold=%s", failed_last_hour, threshold)
    return {"reconciled": reconciled, "failed_last_hour": failed_last_hour}


async def run_retention_sweep(*, session: AsyncSession, now: datetime, retention_days: int) -> dict[str, int]:
    # Only terminal notifications age out; draft, scheduled and sending rows are never touched.
    cutoff = now - timedelta(days=max(1, int(retention_days)))
    expired_ids = select(PushNotification.id).where(
        PushNotification.status.in_(NOTIFICATION_TERMINAL_STATUSES),
        PushNotification.created_at < cutoff,
    )
    # Children first so the sweep is correct even where FK cascades are not enforced.
    events = await session.execute(
        delete(AnalyticsEvent)
        .where(AnalyticsEvent.notification_id.in_(expired_ids))
        .execution_options(synchronize_session=False)
    )
    deliveries = await session.execute(
        delete(NotificationDelivery)
        .where(NotificationDelivery.notification_id.in_(expired_ids))
        .execution_options(synchronize_session=False)
    )
    notifications = await session.execute(
        delete(PushNotification)
        .where(
            PushNotification.status.in_(NOTIFICATION_TERMINAL_STATUSES),
            PushNotification.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return {
        "notifications_deleted": int(notifications.rowcount or 0),
        "deliveries_deleted": int(deliveries.rowcount or 0),
        "events_deleted": int(events.rowcount or 0),
    }


async def dispatch_notification_now(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    engine: PushDispatchEngine,
    notification_id: str,
    now: datetime,
) -> DispatchResult | None:
    # Immediate sends claim from draft as well; the same compare-and-swap keeps the scheduler out.
    async with session_factory() as session:
        claimed = await claim_notification(
            session=session,
            notification_id=notification_id,
            now=now,
            from_statuses=(NOTIFICATION_STATUS_DRAFT, NOTIFICATION_STATUS_SCHEDULED),
        )
    if not claimed:
        logger.info("notification_dispatch_skipped notification_id=%s reason=not_claimable", notification_id)
        return None
    engine.begin_batch()
    return await dispatch_claimed_notification(
        session_factory=session_factory,
        engine=engine,
        notification_id=notification_id,
    )


class NotificationScheduler:
    """Own the periodic delivery sweeps for one process.

    Each sweep runs in its own supervised task: a tick is awaited to
    completion (bounded by ``sweep_timeout_s``) before the loop sleeps, so one
    sweep never overlaps itself inside a process. Cross-process overlap is
    handled by the claim and by the ledger's unique key.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        engine: PushDispatchEngine,
        clock: Clock = utc_now,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self._clock = clock
        self._settings = settings or get_settings()
        self._stop = asyncio.Event()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._sweeps: dict[str, Callable[[], Awaitable[dict[str, Any]]]] = {
            SWEEP_DUE: self._run_due,
            SWEEP_STUCK: self._run_stuck,
            SWEEP_RETENTION: self._run_retention,
        }

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def _interval_for(self, name: str) -> float:
        intervals = {
            SWEEP_DUE: self._settings.due_sweep_interval_s,
            SWEEP_STUCK: self._settings.stuck_sweep_interval_s,
            SWEEP_RETENTION: self._settings.retention_sweep_interval_s,
        }
        return max(0.01, float(intervals[name]))

    async def _run_due(self) -> dict[str, Any]:
        return await run_due_notification_sweep(
            session_factory=self._session_factory,
            engine=self._engine,
            now=self._clock(),
            batch_size=self._settings.due_sweep_batch_size,
        )

    async def _run_stuck(self) -> dict[str, Any]:
        async with self._session_factory() as session:
            return await run_stuck_reconciliation_sweep(
                session=session,
                now=self._clock(),
                stuck_after_s=self._settings.stuck_after_s,
                failed_warn_threshold=self._settings.failed_notification_warn_threshold,
            )

    async def _run_retention(self) -> dict[str, Any]:
        async with self._session_factory() as session:
            return await run_retention_sweep(
                session=session,
                now=self._clock(),
                retention_days=self._settings.retention_days,
            )

    async def run_once(self, name: str) -> dict[str, Any]:
        """Run one tick of the named sweep and return its summary; errors propagate."""
        if name not in self._sweeps:
            raise ValueError(f"unknown sweep '{name}', expected one of {', '.join(SWEEP_NAMES)}")
        return await self._sweeps[name]()

    async def _tick(self, name: str) -> dict[str, Any] | None:
        # Log one line per tick; no exception escapes to the loop.
        started = time.monotonic()
        try:
            summary = await asyncio.wait_for(
                self.run_once(name),
                timeout=max(1.0, float(self._settings.sweep_timeout_s)),
            )
        except asyncio.TimeoutError:
            logger.error("sweep_tick_timeout sweep=%s timeout_s=%s", name, self._settings.sweep_timeout_s)
            return None
        except SQLAlchemyError:
            # Storage outages and pool acquire timeouts are retried on the next tick.
            logger.warning("sweep_tick_storage_error sweep=%s", name, exc_info=True)
            return None
        except Exception:  # noqa: BLE001 - keep the sweep loop alive while surfacing failures in logs.
            logger.exception("sweep_tick_failed sweep=%s", name)
            return None
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("sweep_tick sweep=%s duration_ms=%s summary=%s", name, duration_ms, summary)
        return summary

    async def _loop(self, name: str) -> None:
        interval_s = self._interval_for(name)
        while not self._stop.is_set():
            await self._tick(name)
            # Sleep on the stop event so shutdown wakes idle loops immediately.
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval_s)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._tasks = {
            name: asyncio.create_task(self._loop(name), name=f"pushrelay-sweep-{name}") for name in SWEEP_NAMES
        }
        logger.info("notification_scheduler_started sweeps=%s", ",".join(SWEEP_NAMES))

    async def stop(self, *, drain_timeout_s: float | None = None) -> None:
        """Stop scheduling new ticks and wait for in-flight ticks to finish."""
        if not self._tasks:
            return
        self._stop.set()
        tasks = list(self._tasks.values())
        timeout = drain_timeout_s if drain_timeout_s is not None else float(self._settings.sweep_timeout_s)
        done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("notification_scheduler_drain_timeout cancelled=%s", len(pending))
        self._tasks = {}
        logger.info("notification_scheduler_stopped drained=%s", len(done))
