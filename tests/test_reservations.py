"""Service-level tests for reservation creation, confirmation and admin changes."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from rentacar.domain.entities import RenterDetails
from rentacar.domain.enums import MatriculationStatus, ReservationStatus
from rentacar.domain.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PaymentMismatchError,
    PaymentNotCompletedError,
    ValidationError,
)
from rentacar.infrastructure.models import (
    MatriculationModel,
    RenterModel,
    ReservationModel,
    UnavailablePeriodModel,
)
from rentacar.infrastructure.repositories import RenterRepository
from rentacar.services.reservations import ReservationService
from tests.conftest import (
    RecordingNotifier,
    days_from_today,
    make_request,
    new_renter,
    uploads,
)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar()


async def _create(session_factory, gateway, notifier, settings, documents, request, files=None):
    async with session_factory() as session:
        service = ReservationService(session, gateway, notifier, settings)
        async with documents.stage(files or {}) as staged:
            return await service.create(request, staged)


async def _confirm(session_factory, gateway, notifier, settings, created):
    async with session_factory() as session:
        service = ReservationService(session, gateway, notifier, settings)
        return await service.confirm(
            created.reservation.payment_ref,
            created.reservation.order_id,
            created.reservation.id,
        )


async def _direct(session_factory, gateway, notifier, settings, documents, request, status, **kwargs):
    async with session_factory() as session:
        service = ReservationService(session, gateway, notifier, settings)
        async with documents.stage({}) as staged:
            return await service.create_direct(request, staged, status, **kwargs)


async def _plate_status(session_factory, matriculation_id):
    async with session_factory() as session:
        return (await session.get(MatriculationModel, matriculation_id)).status


def _running_request(catalog, **overrides):
    """On the road since yesterday, back in three days."""
    return make_request(
        catalog,
        pickup_date=days_from_today(-1),
        dropoff_date=days_from_today(3),
        **overrides,
    )


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_pending_reservation_with_hold(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )

        reservation = created.reservation
        assert reservation.status == ReservationStatus.PENDING
        assert reservation.total_price == 475.0
        assert reservation.amount_paid == 0.0
        assert reservation.payment_ref == "ref-1"
        assert created.pay_url == "https://pay.test/ref-1"

        call = gateway.initiated[0]
        assert call["amount"] == 142500
        assert call["order_id"] == reservation.order_id
        assert f"reservation_id={reservation.id}" in call["success_url"]

        async with session_factory() as session:
            hold = (await session.execute(select(UnavailablePeriodModel))).scalar_one()
        assert hold.reservation_id == reservation.id
        assert hold.start_date.isoformat() == days_from_today(10)
        assert hold.end_date.isoformat() == days_from_today(15)

    @pytest.mark.asyncio
    async def test_new_renter_registered_with_documents(
        self, session_factory, catalog, gateway, notifier, settings, documents, tmp_path
    ):
        request = make_request(catalog, renter=new_renter(), payment_percentage=100)
        created = await _create(
            session_factory, gateway, notifier, settings, documents, request, uploads()
        )

        async with session_factory() as session:
            renter = await session.get(RenterModel, created.reservation.renter_id)
        assert renter.email == "amira@example.com"
        assert renter.identity_doc_url == f"/users/{renter.id}/identity.png"
        assert renter.license_url == f"/users/{renter.id}/license.pdf"
        assert (tmp_path / "docs" / "users" / str(renter.id) / "license.pdf").exists()
        assert gateway.initiated[0]["amount"] == 475000

    @pytest.mark.asyncio
    async def test_known_license_reuses_renter(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        request = make_request(
            catalog, renter=new_renter(license_id_number="TN-LIC-100234")
        )
        created = await _create(
            session_factory, gateway, notifier, settings, documents, request, uploads()
        )

        assert created.reservation.renter_id == catalog.renter_id
        assert await _count(session_factory, RenterModel) == 1

    @pytest.mark.asyncio
    async def test_new_renter_without_documents_rejected(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        request = make_request(catalog, renter=new_renter())
        with pytest.raises(ValidationError, match="documents are required"):
            await _create(session_factory, gateway, notifier, settings, documents, request)
        assert gateway.initiated == []

    @pytest.mark.asyncio
    async def test_unknown_existing_renter(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        request = make_request(catalog, renter=RenterDetails(renter_id=999))
        with pytest.raises(NotFoundError, match="User not found"):
            await _create(session_factory, gateway, notifier, settings, documents, request)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"payment_percentage": 50}, "30 or 100"),
            ({"dropoff_date": days_from_today(12)}, "at least 3 days"),
            ({"dropoff_date": days_from_today(9)}, "after pickup"),
            ({"currency": "EUR"}, "Unsupported currency"),
        ],
    )
    async def test_invalid_input_rejected_before_any_write(
        self, session_factory, catalog, gateway, notifier, settings, documents, overrides, message
    ):
        request = make_request(catalog, **overrides)
        with pytest.raises(ValidationError, match=message):
            await _create(session_factory, gateway, notifier, settings, documents, request)
        assert await _count(session_factory, ReservationModel) == 0

    @pytest.mark.asyncio
    async def test_unknown_plate(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        request = make_request(catalog, matriculation="999 TU 9999")
        with pytest.raises(NotFoundError, match="matriculation does not exist"):
            await _create(session_factory, gateway, notifier, settings, documents, request)

    @pytest.mark.asyncio
    async def test_unknown_vehicle(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        request = make_request(catalog, vehicle_id=999)
        with pytest.raises(NotFoundError, match="Car not found"):
            await _create(session_factory, gateway, notifier, settings, documents, request)

    @pytest.mark.asyncio
    async def test_plate_in_maintenance(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        request = make_request(catalog, matriculation=catalog.workshop_plate)
        with pytest.raises(ConflictError, match="maintenance"):
            await _create(session_factory, gateway, notifier, settings, documents, request)

    @pytest.mark.asyncio
    async def test_overlapping_dates_conflict(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        # shares the first booking's dropoff day
        overlapping = make_request(
            catalog,
            pickup_date=days_from_today(15),
            dropoff_date=days_from_today(20),
        )
        with pytest.raises(ConflictError, match="not available"):
            await _create(
                session_factory, gateway, notifier, settings, documents, overlapping
            )
        assert await _count(session_factory, ReservationModel) == 1

    @pytest.mark.asyncio
    async def test_other_plate_of_same_vehicle_still_bookable(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        created = await _create(
            session_factory,
            gateway,
            notifier,
            settings,
            documents,
            make_request(catalog, matriculation=catalog.spare_plate),
        )
        assert created.reservation.matriculation == catalog.spare_plate

    @pytest.mark.asyncio
    async def test_payment_failure_leaves_nothing_behind(
        self, session_factory, catalog, gateway, notifier, settings, documents, tmp_path
    ):
        gateway.fail_initiate = GatewayError("Payment gateway unreachable")
        request = make_request(catalog, renter=new_renter())

        with pytest.raises(GatewayError):
            await _create(
                session_factory, gateway, notifier, settings, documents, request, uploads()
            )

        assert await _count(session_factory, ReservationModel) == 0
        assert await _count(session_factory, UnavailablePeriodModel) == 0
        assert await _count(session_factory, RenterModel) == 1  # the seeded one
        users_dir = tmp_path / "docs" / "users"
        assert not users_dir.exists() or list(users_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_four_day_deposit_then_overlap_is_refused(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        request = make_request(
            catalog,
            pickup_date=days_from_today(10),
            dropoff_date=days_from_today(14),
        )
        created = await _create(
            session_factory, gateway, notifier, settings, documents, request
        )

        # 4 days at 100/day with the 5 % tier, 30 % due now in millimes
        assert created.reservation.total_price == 380.0
        assert gateway.initiated[0]["amount"] == 114000

        overlapping = make_request(
            catalog,
            pickup_date=days_from_today(12),
            dropoff_date=days_from_today(16),
        )
        with pytest.raises(ConflictError, match="not available"):
            await _create(
                session_factory, gateway, notifier, settings, documents, overlapping
            )
        assert len(gateway.initiated) == 1
        assert await _count(session_factory, UnavailablePeriodModel) == 1

    @pytest.mark.asyncio
    async def test_duplicate_renter_email_reported_as_renter_conflict(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        # a concurrent registration slipped past the e-mail lookup
        request = make_request(
            catalog,
            renter=new_renter(email="yassine@example.com", license_id_number="TN-LIC-555"),
        )
        with patch.object(RenterRepository, "get_by_email", AsyncMock(return_value=None)):
            with pytest.raises(ConflictError, match="renter with this e-mail") as info:
                await _create(
                    session_factory, gateway, notifier, settings, documents, request, uploads()
                )

        assert "Matriculation" not in str(info.value)
        assert await _count(session_factory, ReservationModel) == 0
        assert await _count(session_factory, RenterModel) == 1


class TestConcurrentCreate:
    @pytest.mark.asyncio
    async def test_only_one_of_two_racing_requests_wins(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        request = make_request(catalog)
        results = await asyncio.gather(
            _create(session_factory, gateway, notifier, settings, documents, request),
            _create(session_factory, gateway, notifier, settings, documents, request),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], ConflictError)
        assert await _count(session_factory, UnavailablePeriodModel) == 1


class TestConfirm:
    @pytest.mark.asyncio
    async def test_marks_paid_and_notifies(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        gateway.complete("ref-1")

        result = await _confirm(session_factory, gateway, notifier, settings, created)

        assert result.already_confirmed is False
        assert result.warning is None
        assert result.reservation.status == ReservationStatus.PAID
        assert result.reservation.amount_paid == 142.5
        to, subject, body = notifier.sent[0]
        assert to == "yassine@example.com"
        assert "CONFIRMATION" in subject
        assert "332.500" in body  # remaining balance

    @pytest.mark.asyncio
    async def test_second_confirm_is_idempotent(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        gateway.complete("ref-1")
        await _confirm(session_factory, gateway, notifier, settings, created)

        again = await _confirm(session_factory, gateway, notifier, settings, created)

        assert again.already_confirmed is True
        assert again.reservation.amount_paid == 142.5
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_amount_mismatch_keeps_pending(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        gateway.complete("ref-1", amount=1000)

        with pytest.raises(PaymentMismatchError, match="amount"):
            await _confirm(session_factory, gateway, notifier, settings, created)

        async with session_factory() as session:
            reservation = await session.get(ReservationModel, created.reservation.id)
        assert reservation.status == ReservationStatus.PENDING
        assert reservation.amount_paid == 0.0

    @pytest.mark.asyncio
    async def test_order_mismatch(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        gateway.complete("ref-1", order_id="someone-else")

        with pytest.raises(PaymentMismatchError, match="order"):
            await _confirm(session_factory, gateway, notifier, settings, created)

    @pytest.mark.asyncio
    async def test_payment_not_completed(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        with pytest.raises(PaymentNotCompletedError):
            await _confirm(session_factory, gateway, notifier, settings, created)

    @pytest.mark.asyncio
    async def test_unknown_identifiers(
        self, session_factory, catalog, gateway, notifier, settings
    ):
        async with session_factory() as session:
            service = ReservationService(session, gateway, notifier, settings)
            with pytest.raises(NotFoundError):
                await service.confirm("ref-x", "order-x", 1)

    @pytest.mark.asyncio
    async def test_mail_failure_is_a_warning(
        self, session_factory, catalog, gateway, settings, documents
    ):
        broken = RecordingNotifier(fail=True)
        created = await _create(
            session_factory, gateway, broken, settings, documents, make_request(catalog)
        )
        gateway.complete("ref-1")

        result = await _confirm(session_factory, gateway, broken, settings, created)

        assert result.reservation.status == ReservationStatus.PAID
        assert "e-mail" in result.warning


class TestChangeStatus:
    @pytest.mark.asyncio
    async def test_cancel_running_paid_reservation_frees_plate(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        running = await _direct(
            session_factory, gateway, notifier, settings, documents,
            _running_request(catalog),
            ReservationStatus.PAID,
        )
        assert await _plate_status(session_factory, running.matriculation_id) == (
            MatriculationStatus.RENTED
        )

        async with session_factory() as session:
            service = ReservationService(session, gateway, notifier, settings)
            reservation = await service.change_status(running.id, ReservationStatus.CANCELLED)

        assert reservation.status == ReservationStatus.CANCELLED
        assert await _count(session_factory, UnavailablePeriodModel) == 0
        assert await _plate_status(session_factory, running.matriculation_id) == (
            MatriculationStatus.AVAILABLE
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "future_status", [ReservationStatus.PENDING, ReservationStatus.PAID]
    )
    async def test_cancel_future_booking_keeps_running_plate_rented(
        self, session_factory, catalog, gateway, notifier, settings, documents, future_status
    ):
        running = await _direct(
            session_factory, gateway, notifier, settings, documents,
            _running_request(catalog),
            ReservationStatus.PAID,
        )
        future = await _direct(
            session_factory, gateway, notifier, settings, documents,
            make_request(
                catalog,
                payment_percentage=30 if future_status == ReservationStatus.PAID else None,
            ),
            future_status,
        )

        async with session_factory() as session:
            service = ReservationService(session, gateway, notifier, settings)
            await service.change_status(future.id, ReservationStatus.CANCELLED)

        assert await _plate_status(session_factory, running.matriculation_id) == (
            MatriculationStatus.RENTED
        )
        async with session_factory() as session:
            holds = (
                await session.execute(select(UnavailablePeriodModel.reservation_id))
            ).scalars().all()
        assert holds == [running.id]

    @pytest.mark.asyncio
    async def test_cancel_pending_reservation_leaves_plate_status_alone(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        async with session_factory() as session:
            plate = await session.get(
                MatriculationModel, created.reservation.matriculation_id
            )
            plate.status = MatriculationStatus.RENTED
            await session.commit()

        async with session_factory() as session:
            service = ReservationService(session, gateway, notifier, settings)
            await service.change_status(created.reservation.id, ReservationStatus.CANCELLED)

        assert await _count(session_factory, UnavailablePeriodModel) == 0
        assert await _plate_status(session_factory, created.reservation.matriculation_id) == (
            MatriculationStatus.RENTED
        )

    @pytest.mark.asyncio
    async def test_cannot_reject_paid_reservation(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        gateway.complete("ref-1")
        await _confirm(session_factory, gateway, notifier, settings, created)

        async with session_factory() as session:
            service = ReservationService(session, gateway, notifier, settings)
            with pytest.raises(ConflictError):
                await service.change_status(
                    created.reservation.id, ReservationStatus.REJECTED
                )

    @pytest.mark.asyncio
    async def test_only_cancel_or_reject_allowed(
        self, session_factory, catalog, gateway, notifier, settings, documents
    ):
        created = await _create(
            session_factory, gateway, notifier, settings, documents, make_request(catalog)
        )
        async with session_factory() as session:
            service = ReservationService(session, gateway, notifier, settings)
            with pytest.raises(ValidationError):
                await service.change_status(
                    created.reservation.id, ReservationStatus.PAID
                )
