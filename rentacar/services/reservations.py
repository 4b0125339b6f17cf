"""
Reservation Service
===================

Owns the reservation lifecycle:

    create        -> pending   (renter + hold + payment link, one transaction)
    confirm       -> paid      (gateway-verified, idempotent)
    create_direct -> pending / paid / confirmed (back office, no gateway)
    admin         -> cancelled / rejected, edit, delete (hold released)

The sweep in ``rentacar.workers.reconciler`` handles the date-driven
transitions (cancel stale pending, rent out, complete).

Transaction handling
--------------------
Every write path runs inside ``_unit_of_work``, which commits on success.
Any failure after the first write rolls the session back, so the renter
row, the reservation and its hold vanish together; the caller's
``DocumentStore.stage`` scope removes promoted documents when the
exception leaves it.  Loaded rows are expired by that rollback, so error
messages are built from plain values captured beforehand.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rentacar.config import Settings
from rentacar.domain.entities import (
    BookingRequest,
    DateRange,
    check_transition,
    rental_period,
    utc_today,
)
from rentacar.domain.enums import (
    HOLDING_STATUSES,
    SETTLED_STATUSES,
    MatriculationStatus,
    ReservationStatus,
)
from rentacar.domain.errors import (
    ConflictError,
    NotFoundError,
    PaymentMismatchError,
    PaymentNotCompletedError,
    TransactionError,
    ValidationError,
)
from rentacar.domain.pricing import (
    RentalPricingEngine,
    payment_amount,
    to_smallest_unit,
)
from rentacar.infrastructure.documents import StagedDocuments
from rentacar.infrastructure.mailer import Notifier, ReservationConfirmation
from rentacar.infrastructure.models import (
    MatriculationModel,
    RenterModel,
    ReservationModel,
    VehicleModel,
)
from rentacar.infrastructure.payment_gateway import KonnectGateway, Payer
from rentacar.infrastructure.repositories import (
    RenterRepository,
    ReservationRepository,
    VehicleRepository,
)
from rentacar.services.availability import AvailabilityIndex
from rentacar.services.renters import RenterRegistry

logger = logging.getLogger(__name__)

ALLOWED_PERCENTAGES = (30, 100)
ADMIN_STATUSES = (ReservationStatus.CANCELLED, ReservationStatus.REJECTED)
DIRECT_STATUSES = (
    ReservationStatus.PENDING,
    ReservationStatus.PAID,
    ReservationStatus.CONFIRMED,
)
# admin bookings only need the dropoff after the pickup
DIRECT_MINIMUM_DAYS = 1


@dataclass
class ReservationCreated:
    reservation: ReservationModel
    pay_url: str


@dataclass
class Confirmation:
    reservation: ReservationModel
    already_confirmed: bool = False
    warning: Optional[str] = None


@dataclass
class ReservationListing:
    items: list[ReservationModel]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit)


def _constraint_message(exc: IntegrityError, plate: str) -> str:
    """Conflict message for whichever unique constraint fired."""
    detail = str(exc.orig).lower()
    if "renters" in detail or "license_id_number" in detail or "email" in detail:
        return "A renter with this e-mail or license number already exists"
    return f"Matriculation {plate} is not available for the chosen dates"


class ReservationService:
    def __init__(
        self,
        session: AsyncSession,
        gateway: KonnectGateway,
        notifier: Notifier,
        settings: Settings,
        pricing: Optional[RentalPricingEngine] = None,
    ):
        self.session = session
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings
        self.pricing = pricing or RentalPricingEngine()
        self.reservations = ReservationRepository(session)
        self.vehicles = VehicleRepository(session)
        self.availability = AvailabilityIndex(session)

    @asynccontextmanager
    async def _unit_of_work(self, plate: str):
        """Commit on success; roll back and translate storage errors."""
        try:
            yield
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            logger.warning("Reservation write rejected by constraint: %s", exc.orig)
            raise ConflictError(_constraint_message(exc, plate)) from exc
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error("Reservation transaction failed: %s", exc)
            raise TransactionError("Reservation could not be saved") from exc
        except Exception:
            await self.session.rollback()
            raise

    def _currency(self, requested: Optional[str]) -> str:
        currency = (requested or self.settings.default_currency).upper()
        if currency not in self.settings.currency_smallest_units:
            raise ValidationError(f"Unsupported currency: {currency}")
        return currency

    async def _claim(
        self,
        vehicle_id: int,
        plate: str,
        period: DateRange,
        ignore_reservation_id: Optional[int] = None,
    ) -> MatriculationModel:
        """Lock the plate and make sure *period* is free on it."""
        matriculation = await self.availability.lock(vehicle_id, plate)
        if matriculation.status == MatriculationStatus.MAINTENANCE:
            raise ConflictError(
                f"Matriculation {matriculation.plate_number} is under maintenance"
            )
        if not await self.availability.is_available(
            matriculation, period, ignore_reservation_id
        ):
            raise ConflictError(
                f"Matriculation {matriculation.plate_number} is not available "
                f"for the chosen dates"
            )
        return matriculation

    @staticmethod
    def _build(
        request: BookingRequest,
        renter: RenterModel,
        vehicle: VehicleModel,
        matriculation: MatriculationModel,
        period: DateRange,
        **values,
    ) -> ReservationModel:
        return ReservationModel(
            renter_id=renter.id,
            vehicle_id=vehicle.id,
            matriculation_id=matriculation.id,
            matriculation=matriculation.plate_number,
            pickup_location=request.pickup_location,
            dropoff_location=request.dropoff_location,
            pickup_date=period.start,
            dropoff_date=period.end,
            pickup_time=request.pickup_time,
            dropoff_time=request.dropoff_time,
            flight_number=request.flight_number,
            order_id=uuid.uuid4().hex,
            **values,
        )

    # ── Create ────────────────────────────────────────────────────────

    async def create(
        self, request: BookingRequest, documents: StagedDocuments
    ) -> ReservationCreated:
        period = rental_period(
            request.pickup_date,
            request.dropoff_date,
            self.settings.minimum_rental_days,
        )
        if request.payment_percentage not in ALLOWED_PERCENTAGES:
            raise ValidationError("Payment percentage must be 30 or 100")
        currency = self._currency(request.currency)
        RenterRegistry.validate(request.renter, documents)

        async with self._unit_of_work(request.matriculation):
            renter = await RenterRegistry(self.session).resolve(
                request.renter, documents
            )
            matriculation = await self._claim(
                request.vehicle_id, request.matriculation, period
            )
            vehicle = await self.vehicles.get_by_id(request.vehicle_id)
            total = self.pricing.total_price(period.days, vehicle.price_per_day)
            reservation = await self.reservations.create(
                self._build(
                    request,
                    renter,
                    vehicle,
                    matriculation,
                    period,
                    status=ReservationStatus.PENDING,
                    total_price=total,
                    payment_percentage=request.payment_percentage,
                    amount_paid=0.0,
                    currency=currency,
                )
            )
            await self.availability.add_hold(matriculation, period, reservation.id)

            due = payment_amount(total, request.payment_percentage)
            payment = await self.gateway.initiate(
                order_id=reservation.order_id,
                amount=to_smallest_unit(
                    due, currency, self.settings.currency_smallest_units
                ),
                currency=currency,
                payer=Payer(renter.full_name, renter.email, renter.phone),
                success_url=(
                    f"{self.settings.success_url}?orderId={reservation.order_id}"
                    f"&reservation_id={reservation.id}"
                ),
                error_url=self.settings.error_url,
                description=(
                    f"Reservation for {vehicle.brand} {vehicle.model}, "
                    f"{request.payment_percentage}% payment, renter {renter.id}"
                ),
            )
            reservation.payment_ref = payment.payment_ref

        await self.session.refresh(reservation)
        logger.info(
            "Reservation %d created for %s (%s..%s), order %s",
            reservation.id,
            reservation.matriculation,
            period.start,
            period.end,
            reservation.order_id,
        )
        return ReservationCreated(reservation=reservation, pay_url=payment.pay_url)

    async def create_direct(
        self,
        request: BookingRequest,
        documents: StagedDocuments,
        status: ReservationStatus,
        total_price: Optional[float] = None,
        amount_paid: Optional[float] = None,
    ) -> ReservationModel:
        """Book on behalf of a renter at the counter; no payment link is made.

        Paid and confirmed bookings need a payment percentage and default
        their amount paid to that share of the total; pending ones take no
        percentage.  A settled booking running today rents the plate out.
        """
        if status not in DIRECT_STATUSES:
            raise ValidationError("Status must be pending, paid or confirmed")
        settled = status in SETTLED_STATUSES
        if settled and request.payment_percentage not in ALLOWED_PERCENTAGES:
            raise ValidationError(
                "Payment percentage must be 30 or 100 for paid reservations"
            )
        if not settled and request.payment_percentage:
            raise ValidationError(
                "Payment percentage is only accepted for paid reservations"
            )
        period = rental_period(
            request.pickup_date, request.dropoff_date, DIRECT_MINIMUM_DAYS
        )
        currency = self._currency(request.currency)
        RenterRegistry.validate(request.renter, documents)

        async with self._unit_of_work(request.matriculation):
            renter = await RenterRegistry(self.session).resolve(
                request.renter, documents
            )
            matriculation = await self._claim(
                request.vehicle_id, request.matriculation, period
            )
            vehicle = await self.vehicles.get_by_id(request.vehicle_id)
            total = (
                total_price
                if total_price is not None
                else self.pricing.total_price(period.days, vehicle.price_per_day)
            )
            percentage = request.payment_percentage if settled else 0
            if amount_paid is None:
                amount_paid = float(payment_amount(total, percentage))
            if amount_paid > total:
                raise ValidationError("Amount paid cannot exceed the total price")

            reservation = await self.reservations.create(
                self._build(
                    request,
                    renter,
                    vehicle,
                    matriculation,
                    period,
                    status=status,
                    total_price=total,
                    payment_percentage=percentage,
                    amount_paid=amount_paid,
                    currency=currency,
                )
            )
            await self.availability.add_hold(matriculation, period, reservation.id)
            if settled and period.contains(utc_today()):
                await self.availability.rent_out(matriculation.id)

        await self.session.refresh(reservation)
        logger.info(
            "Reservation %d booked at the counter as %s on %s (%s..%s)",
            reservation.id,
            status.value,
            reservation.matriculation,
            period.start,
            period.end,
        )
        return reservation

    # ── Confirm ───────────────────────────────────────────────────────

    async def confirm(
        self, payment_ref: str, order_id: str, reservation_id: int
    ) -> Confirmation:
        reservation = await self.reservations.get_for_payment(
            reservation_id, order_id, payment_ref
        )
        if reservation is None:
            raise NotFoundError("Reservation not found")

        status = ReservationStatus(reservation.status)
        if status in SETTLED_STATUSES or status == ReservationStatus.COMPLETED:
            return Confirmation(reservation, already_confirmed=True)
        if status != ReservationStatus.PENDING:
            raise ConflictError(f"Reservation is {status.value}")

        payment = await self.gateway.get_status(payment_ref)
        if not payment.completed:
            raise PaymentNotCompletedError("Payment not completed")
        if payment.order_id != order_id:
            raise PaymentMismatchError("Payment order ID does not match")

        due = payment_amount(reservation.total_price, reservation.payment_percentage)
        expected = to_smallest_unit(
            due, reservation.currency, self.settings.currency_smallest_units
        )
        if payment.amount != expected:
            logger.warning(
                "Amount mismatch on reservation %d: paid %d, expected %d",
                reservation.id,
                payment.amount,
                expected,
            )
            raise PaymentMismatchError("Payment amount does not match")

        moved = await self.reservations.transition(
            reservation.id,
            [ReservationStatus.PENDING],
            ReservationStatus.PAID,
            amount_paid=float(due),
        )
        await self.session.commit()
        await self.session.refresh(reservation)

        if not moved:
            # a concurrent confirm or the sweep got there first
            if reservation.status in SETTLED_STATUSES:
                return Confirmation(reservation, already_confirmed=True)
            raise ConflictError(
                f"Reservation is {ReservationStatus(reservation.status).value}"
            )

        logger.info("Reservation %d paid (%s)", reservation.id, payment_ref)
        warning = await self._send_confirmation(reservation)
        return Confirmation(reservation, warning=warning)

    async def _send_confirmation(self, reservation: ReservationModel) -> Optional[str]:
        try:
            renter = await self.session.get(RenterModel, reservation.renter_id)
            vehicle = await self.vehicles.get_by_id(reservation.vehicle_id)
            await self.notifier.reservation_confirmed(
                ReservationConfirmation(
                    email=renter.email,
                    renter_name=renter.full_name,
                    vehicle=f"{vehicle.brand} {vehicle.model}",
                    pickup_date=reservation.pickup_date,
                    dropoff_date=reservation.dropoff_date,
                    total_price=reservation.total_price,
                    amount_paid=reservation.amount_paid,
                    currency=reservation.currency,
                )
            )
        except Exception as exc:
            logger.error(
                "Confirmation mail for reservation %d failed: %s", reservation.id, exc
            )
            return "Payment confirmed, but the confirmation e-mail could not be sent"
        return None

    # ── Read ──────────────────────────────────────────────────────────

    async def get(self, reservation_id: int) -> ReservationModel:
        reservation = await self.reservations.get_by_id(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        return reservation

    async def search(
        self,
        *,
        status: Optional[ReservationStatus] = None,
        payment_percentage: Optional[int] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> ReservationListing:
        """Newest first, filtered by status, deposit share and renter / car text."""
        if page < 1 or limit < 1:
            raise ValidationError("Page and limit must be positive")
        items, total = await self.reservations.search(
            status=status,
            payment_percentage=payment_percentage,
            search=search,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return ReservationListing(items=items, total=total, page=page, limit=limit)

    async def active_for_license(self, license_id_number: str) -> list[ReservationModel]:
        renter = await RenterRepository(self.session).get_by_license(
            license_id_number.strip()
        )
        if renter is None:
            raise NotFoundError("User not found")
        return await self.reservations.list_for_renter(renter.id, SETTLED_STATUSES)

    # ── Admin ─────────────────────────────────────────────────────────

    async def change_status(
        self, reservation_id: int, status: ReservationStatus
    ) -> ReservationModel:
        """Cancel or reject a reservation and release its hold."""
        if status not in ADMIN_STATUSES:
            raise ValidationError("Only cancellation or rejection can be requested")

        reservation = await self.get(reservation_id)
        current = ReservationStatus(reservation.status)
        check_transition(current, status)

        if not await self.reservations.transition(reservation.id, [current], status):
            await self.session.rollback()
            raise ConflictError("Reservation status changed concurrently, retry")
        await self.availability.release(
            reservation.id,
            reservation.matriculation_id,
            settled=current in SETTLED_STATUSES,
        )
        await self.session.commit()
        await self.session.refresh(reservation)
        logger.info(
            "Reservation %d moved %s -> %s", reservation.id, current.value, status.value
        )
        return reservation

    async def update(self, reservation_id: int, **changes) -> ReservationModel:
        """Edit a live reservation; new dates or plate move its hold.

        ``None`` values are ignored.  When the dates change and no
        ``total_price`` is given, the total is priced again.
        """
        changes = {key: value for key, value in changes.items() if value is not None}
        reservation = await self.get(reservation_id)
        status = ReservationStatus(reservation.status)
        if status not in HOLDING_STATUSES:
            raise ConflictError(f"A {status.value} reservation can no longer be edited")

        vehicle_id = reservation.vehicle_id
        old_matriculation_id = reservation.matriculation_id
        old_period = DateRange(reservation.pickup_date, reservation.dropoff_date)
        plate = changes.pop("matriculation", reservation.matriculation)
        period = rental_period(
            changes.pop("pickup_date", old_period.start),
            changes.pop("dropoff_date", old_period.end),
            DIRECT_MINIMUM_DAYS,
        )
        moved = plate != reservation.matriculation or period != old_period

        async with self._unit_of_work(plate):
            if moved:
                matriculation = await self._claim(
                    vehicle_id, plate, period, ignore_reservation_id=reservation_id
                )
                settled = status in SETTLED_STATUSES
                await self.availability.release(
                    reservation_id, old_matriculation_id, settled=settled
                )
                await self.availability.add_hold(matriculation, period, reservation_id)
                if settled and period.contains(utc_today()):
                    await self.availability.rent_out(matriculation.id)
                changes.update(
                    matriculation_id=matriculation.id,
                    matriculation=matriculation.plate_number,
                    pickup_date=period.start,
                    dropoff_date=period.end,
                )
                if period != old_period and "total_price" not in changes:
                    vehicle = await self.vehicles.get_by_id(vehicle_id)
                    changes["total_price"] = self.pricing.total_price(
                        period.days, vehicle.price_per_day
                    )
            if changes:
                await self.reservations.update_fields(reservation_id, **changes)

        await self.session.refresh(reservation)
        logger.info(
            "Reservation %d edited (%s)", reservation_id, ", ".join(sorted(changes))
        )
        return reservation

    async def delete(self, reservation_id: int) -> None:
        """Remove a reservation with its hold and prolongation requests."""
        reservation = await self.get(reservation_id)
        status = ReservationStatus(reservation.status)
        matriculation_id = reservation.matriculation_id

        async with self._unit_of_work(reservation.matriculation):
            await self.availability.release(
                reservation_id, matriculation_id, settled=status in SETTLED_STATUSES
            )
            await self.reservations.delete(reservation_id)
        logger.info("Reservation %d deleted (%s)", reservation_id, status.value)
