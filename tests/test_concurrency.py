"""
Concurrency safety tests.

Demonstrates:
1. Distributed lock prevents simultaneous acquire.
2. Racing confirmations of one payment apply it once.
3. A sweep after payment treats the reservation as paid, never as stale.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from rentacar.domain.enums import ReservationStatus
from rentacar.infrastructure.locks import DistributedLock, LockNotAcquired
from rentacar.infrastructure.models import ReservationModel
from rentacar.services.reservations import ReservationService
from rentacar.workers.reconciler import sweep
from tests.conftest import make_request


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "reconciliation", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_called_once_with(
            "rentacar:lock:reconciliation", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "reconciliation", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_calls_eval(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(mock_redis, "reconciliation", ttl_seconds=10)
        await lock.acquire()
        await lock.release()

        mock_redis.eval.assert_called_once()

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "reconciliation", ttl_seconds=10)
        with pytest.raises(LockNotAcquired, match="Could not acquire lock"):
            async with lock:
                pass


async def _pending(session_factory, gateway, notifier, settings, documents, catalog):
    async with session_factory() as session:
        service = ReservationService(session, gateway, notifier, settings)
        async with documents.stage({}) as staged:
            created = await service.create(make_request(catalog), staged)
    gateway.complete(created.reservation.payment_ref)
    return created.reservation


async def _confirm(session_factory, gateway, notifier, settings, reservation):
    async with session_factory() as session:
        service = ReservationService(session, gateway, notifier, settings)
        return await service.confirm(
            reservation.payment_ref, reservation.order_id, reservation.id
        )


class TestPaymentRaces:
    @pytest.mark.asyncio
    async def test_parallel_confirmations_apply_once(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        reservation = await _pending(
            session_factory, gateway, notifier, settings, documents, catalog
        )

        results = await asyncio.gather(
            *(
                _confirm(session_factory, gateway, notifier, settings, reservation)
                for _ in range(3)
            )
        )

        assert all(r.reservation.status == ReservationStatus.PAID for r in results)
        assert sum(not r.already_confirmed for r in results) == 1
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_sweep_completes_rather_than_cancels_a_paid_reservation(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        reservation = await _pending(
            session_factory, gateway, notifier, settings, documents, catalog
        )
        after_dropoff = reservation.dropoff_date + timedelta(days=1)
        await _confirm(session_factory, gateway, notifier, settings, reservation)

        report = await sweep(session_factory, notifier, today=after_dropoff)

        async with session_factory() as session:
            stored = await session.get(ReservationModel, reservation.id)
        assert report.cancelled == 0
        assert stored.status == ReservationStatus.COMPLETED
        assert stored.amount_paid == 142.5
