"""
Reconciliation Worker
=====================

Runs at fixed UTC hours (default 08:00, 14:00, 20:00) and on demand via
``GET /api/v1/cron/run-daily-job``.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one sweep runs at a time across
  the timer, the cron endpoint and several API processes.
* Every write is a conditional ``UPDATE … WHERE status IN (…)``, so a
  payment confirmed or a reservation cancelled while the sweep runs is
  never overwritten.

Algorithm per sweep
-------------------
1. Cancel ``pending`` reservations whose dropoff day has passed and drop
   their holds.
2. Complete ``paid`` / ``confirmed`` reservations whose dropoff day has
   passed; free their plate and drop their holds.
3. Mark the plate ``rented`` for settled reservations running today
   (plates in maintenance are left alone).
4. Reject prolongation requests whose new dropoff day has passed and
   tell the renter.

Step 2 runs before step 3 so a plate handed back yesterday and picked up
again today ends the sweep as ``rented``.  Each row gets its own session;
a failing row is logged, counted and skipped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rentacar.config import settings
from rentacar.domain.entities import utc_today
from rentacar.domain.enums import (
    SETTLED_STATUSES,
    ProlongationStatus,
    ReservationStatus,
)
from rentacar.infrastructure.database import async_session_factory
from rentacar.infrastructure.locks import DistributedLock, LockNotAcquired
from rentacar.infrastructure.mailer import Notifier, build_notifier
from rentacar.infrastructure.models import RenterModel
from rentacar.infrastructure.redis_client import get_redis
from rentacar.infrastructure.repositories import (
    ProlongationRepository,
    ReservationRepository,
)
from rentacar.services.availability import AvailabilityIndex

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


@dataclass
class SweepReport:
    cancelled: int = 0
    completed: int = 0
    rented: int = 0
    prolongations_rejected: int = 0
    errors: int = 0
    skipped: bool = False

    def as_dict(self) -> dict:
        return asdict(self)


# ── Public API ────────────────────────────────────────────────────────


async def start_reconciliation_loop(notifier: Optional[Notifier] = None) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(notifier or build_notifier(settings)))
    logger.info(
        "Reconciliation worker started (hours=%s UTC)", settings.reconciliation_hours
    )


async def stop_reconciliation_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Reconciliation worker stopped")


async def run_reconciliation_cycle(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    notifier: Optional[Notifier] = None,
) -> SweepReport:
    """Run one sweep under the distributed lock; skipped if the lock is held."""
    session_factory = session_factory or async_session_factory
    redis = await get_redis()
    lock = DistributedLock(
        redis, "reconciliation", ttl_seconds=settings.reconciliation_lock_ttl_seconds
    )
    try:
        async with lock:
            return await sweep(session_factory, notifier or build_notifier(settings))
    except LockNotAcquired:
        logger.info("Sweep lock held by another worker, skipping")
        return SweepReport(skipped=True)


async def sweep(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: Notifier,
    today: Optional[date] = None,
) -> SweepReport:
    today = today or utc_today()
    report = SweepReport()

    async with session_factory() as session:
        reservations = ReservationRepository(session)
        expired = await reservations.find_expired_pending(today)
        finished = await reservations.find_finished(today)
        in_progress = sorted(
            {r.matriculation_id for r in await reservations.find_in_progress(today)}
        )
        stale = await ProlongationRepository(session).find_expired(today)
        await session.commit()

    for reservation_id in expired:
        if await _apply(session_factory, _cancel_expired, reservation_id, report):
            report.cancelled += 1
    for reservation_id in finished:
        if await _apply(session_factory, _complete, reservation_id, report, today):
            report.completed += 1
    for matriculation_id in in_progress:
        if await _apply(session_factory, _mark_rented, matriculation_id, report):
            report.rented += 1
    for prolongation_id in stale:
        email = await _apply(
            session_factory, _reject_prolongation, prolongation_id, report
        )
        if email:
            report.prolongations_rejected += 1
            await _notify_rejected(notifier, email, prolongation_id)

    logger.info("Sweep for %s: %s", today, report.as_dict())
    return report


def seconds_until_next_run(now: datetime, hours: Iterable[int]) -> float:
    """Seconds from *now* (aware) to the next configured UTC hour."""
    hours = sorted(set(hours))
    if not hours:
        raise ValueError("No reconciliation hours configured")
    now = now.astimezone(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    for day in (0, 1):
        for hour in hours:
            candidate = midnight + timedelta(days=day, hours=hour)
            if candidate > now:
                return (candidate - now).total_seconds()
    raise ValueError(f"Invalid reconciliation hours: {hours}")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(notifier: Notifier) -> None:
    """Sleep until the next slot, sweep, repeat."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        delay = seconds_until_next_run(
            datetime.now(timezone.utc), settings.reconciliation_hours
        )
        try:
            await asyncio.wait_for(_stop_event.wait(), timeout=delay)
            break
        except asyncio.TimeoutError:
            pass  # slot reached
        try:
            await run_reconciliation_cycle(notifier=notifier)
        except Exception:
            logger.exception("Unhandled error in reconciliation cycle")


async def _apply(
    session_factory: async_sessionmaker[AsyncSession],
    action: Callable[..., Awaitable],
    row_id: int,
    report: SweepReport,
    *args,
):
    try:
        async with session_factory() as session:
            result = await action(session, row_id, *args)
            await session.commit()
            return result
    except Exception:
        logger.exception("Sweep step %s failed for row %d", action.__name__, row_id)
        report.errors += 1
        return None


async def _cancel_expired(session: AsyncSession, reservation_id: int) -> bool:
    repo = ReservationRepository(session)
    reservation = await repo.get_by_id(reservation_id)
    if reservation is None or not await repo.transition(
        reservation_id, [ReservationStatus.PENDING], ReservationStatus.CANCELLED
    ):
        return False
    await AvailabilityIndex(session).release(
        reservation_id, reservation.matriculation_id, settled=False
    )
    logger.info("Reservation %d cancelled: unpaid past its dropoff", reservation_id)
    return True


async def _complete(session: AsyncSession, reservation_id: int, today: date) -> bool:
    repo = ReservationRepository(session)
    reservation = await repo.get_by_id(reservation_id)
    if reservation is None or not await repo.transition(
        reservation_id, SETTLED_STATUSES, ReservationStatus.COMPLETED
    ):
        return False
    await AvailabilityIndex(session).release(
        reservation_id, reservation.matriculation_id, settled=True, today=today
    )
    logger.info("Reservation %d completed", reservation_id)
    return True


async def _mark_rented(session: AsyncSession, matriculation_id: int) -> bool:
    return await AvailabilityIndex(session).rent_out(matriculation_id)


async def _reject_prolongation(
    session: AsyncSession, prolongation_id: int
) -> Optional[str]:
    """Returns the renter's e-mail when the request was rejected."""
    repo = ProlongationRepository(session)
    prolongation = await repo.get_by_id(prolongation_id)
    if prolongation is None or not await repo.transition(
        prolongation_id,
        [ProlongationStatus.PENDING, ProlongationStatus.WAITING_FOR_PAYMENT],
        ProlongationStatus.REJECTED,
    ):
        return None
    reservation = await ReservationRepository(session).get_by_id(
        prolongation.reservation_id
    )
    renter = await session.get(RenterModel, reservation.renter_id)
    logger.info("Prolongation %d rejected: requested date passed", prolongation_id)
    return renter.email


async def _notify_rejected(notifier: Notifier, email: str, prolongation_id: int) -> None:
    try:
        await notifier.prolongation_rejected(email)
    except Exception as exc:
        logger.error(
            "Rejection mail for prolongation %d failed: %s", prolongation_id, exc
        )
