"""
Prolongation requests: a renter asks to push back the dropoff date of a
paid reservation, an agent accepts or rejects it.

Acceptance paid in agency extends the hold and the reservation straight
away.  Acceptance paid by card opens a gateway payment for the extra cost;
the extension is applied when ``confirm`` verifies that payment.  In both
cases availability is re-checked on the matriculation row lock, ignoring
the reservation's own hold.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from rentacar.config import Settings
from rentacar.domain.entities import (
    DateRange,
    check_prolongation_transition,
    parse_day,
)
from rentacar.domain.enums import (
    SETTLED_STATUSES,
    PaymentMethod,
    PaymentState,
    ProlongationStatus,
)
from rentacar.domain.errors import (
    ConflictError,
    NotFoundError,
    PaymentMismatchError,
    PaymentNotCompletedError,
    ValidationError,
)
from rentacar.domain.pricing import RentalPricingEngine, to_smallest_unit
from rentacar.infrastructure.mailer import Notifier
from rentacar.infrastructure.models import (
    ProlongationRequestModel,
    RenterModel,
    ReservationModel,
)
from rentacar.infrastructure.payment_gateway import KonnectGateway, Payer
from rentacar.infrastructure.repositories import (
    ProlongationRepository,
    ReservationRepository,
    VehicleRepository,
)
from rentacar.services.availability import AvailabilityIndex

logger = logging.getLogger(__name__)


@dataclass
class Decision:
    prolongation: ProlongationRequestModel
    reservation: Optional[ReservationModel] = None
    pay_url: Optional[str] = None
    warning: Optional[str] = None


class ProlongationService:
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
        self.prolongations = ProlongationRepository(session)
        self.reservations = ReservationRepository(session)
        self.vehicles = VehicleRepository(session)
        self.availability = AvailabilityIndex(session)

    async def create(
        self, reservation_id: int, new_dropoff_date: str | date
    ) -> ProlongationRequestModel:
        new_dropoff = parse_day(new_dropoff_date)
        reservation = await self._reservation(reservation_id)
        if reservation.status not in SETTLED_STATUSES:
            raise ConflictError("Only paid reservations can be prolonged")
        days, cost = await self._price(reservation, new_dropoff)

        prolongation = await self.prolongations.create(
            ProlongationRequestModel(
                reservation_id=reservation.id,
                new_dropoff_date=new_dropoff,
                additional_days=days,
                additional_cost=cost,
                status=ProlongationStatus.PENDING,
                payment_status=PaymentState.UNPAID,
            )
        )
        await self.session.commit()
        await self.session.refresh(prolongation)
        logger.info(
            "Prolongation %d requested for reservation %d until %s (+%d days)",
            prolongation.id,
            reservation.id,
            new_dropoff,
            days,
        )
        return prolongation

    async def decide(
        self,
        prolongation_id: int,
        status: ProlongationStatus,
        payment_method: Optional[PaymentMethod] = None,
        new_dropoff_date: Optional[str | date] = None,
    ) -> Decision:
        prolongation = await self._prolongation(prolongation_id)
        current = ProlongationStatus(prolongation.status)
        if status not in (ProlongationStatus.ACCEPTED, ProlongationStatus.REJECTED):
            raise ValidationError("A decision must be accepted or rejected")
        check_prolongation_transition(current, status)
        reservation = await self._reservation(prolongation.reservation_id)

        if status == ProlongationStatus.REJECTED:
            await self._transition(prolongation, [current], ProlongationStatus.REJECTED)
            await self.session.commit()
            await self.session.refresh(prolongation)
            warning = await self._notify_rejected(reservation)
            return Decision(prolongation, reservation, warning=warning)

        if payment_method is None:
            raise ValidationError("Payment method is required to accept a prolongation")
        if current != ProlongationStatus.PENDING:
            raise ConflictError("Prolongation is already waiting for payment")
        if reservation.status not in SETTLED_STATUSES:
            raise ConflictError("Only paid reservations can be prolonged")

        new_dropoff = parse_day(new_dropoff_date or prolongation.new_dropoff_date)
        days, cost = await self._price(reservation, new_dropoff)
        await self._check_available(reservation, new_dropoff)

        if payment_method == PaymentMethod.IN_AGENCY:
            await self._transition(
                prolongation,
                [current],
                ProlongationStatus.ACCEPTED,
                new_dropoff_date=new_dropoff,
                additional_days=days,
                additional_cost=cost,
                payment_status=PaymentState.PAID,
            )
            await self._extend(reservation, new_dropoff, cost)
            await self.session.commit()
            await self.session.refresh(prolongation)
            await self.session.refresh(reservation)
            logger.info(
                "Prolongation %d accepted in agency, reservation %d now ends %s",
                prolongation.id,
                reservation.id,
                new_dropoff,
            )
            return Decision(prolongation, reservation)

        order_id = uuid.uuid4().hex
        renter = await self.session.get(RenterModel, reservation.renter_id)
        vehicle = await self.vehicles.get_by_id(reservation.vehicle_id)
        try:
            payment = await self.gateway.initiate(
                order_id=order_id,
                amount=to_smallest_unit(
                    cost, reservation.currency, self.settings.currency_smallest_units
                ),
                currency=reservation.currency,
                payer=Payer(renter.full_name, renter.email, renter.phone),
                success_url=(
                    f"{self.settings.prolongation_success_url}?orderId={order_id}"
                    f"&prolongation_id={prolongation.id}"
                ),
                error_url=self.settings.error_url,
                description=(
                    f"Prolongation of reservation {reservation.id} "
                    f"({vehicle.brand} {vehicle.model}), +{days} days"
                ),
                lifespan_minutes=self.settings.prolongation_payment_lifespan_minutes,
            )
        except Exception:
            await self.session.rollback()
            raise
        await self._transition(
            prolongation,
            [current],
            ProlongationStatus.WAITING_FOR_PAYMENT,
            new_dropoff_date=new_dropoff,
            additional_days=days,
            additional_cost=cost,
            order_id=order_id,
            payment_ref=payment.payment_ref,
        )
        await self.session.commit()
        await self.session.refresh(prolongation)

        warning = None
        try:
            await self.notifier.prolongation_payment_link(
                renter.email,
                payment.pay_url,
                f"{vehicle.brand} {vehicle.model}",
                new_dropoff,
                days,
                cost,
                reservation.currency,
            )
        except Exception as exc:
            logger.error(
                "Payment link mail for prolongation %d failed: %s", prolongation.id, exc
            )
            warning = "Payment link created, but the e-mail could not be sent"
        return Decision(prolongation, reservation, pay_url=payment.pay_url, warning=warning)

    async def confirm(
        self, payment_ref: str, order_id: str, prolongation_id: int
    ) -> tuple[ProlongationRequestModel, bool]:
        """Apply a card-paid prolongation; returns (request, already_confirmed)."""
        prolongation = await self.prolongations.get_for_payment(
            prolongation_id, order_id, payment_ref
        )
        if prolongation is None:
            raise NotFoundError("Prolongation request not found")
        if prolongation.status == ProlongationStatus.ACCEPTED:
            return prolongation, True
        if prolongation.status != ProlongationStatus.WAITING_FOR_PAYMENT:
            raise ConflictError(
                f"Prolongation is {ProlongationStatus(prolongation.status).value}"
            )

        payment = await self.gateway.get_status(payment_ref)
        if not payment.completed:
            raise PaymentNotCompletedError("Payment not completed")
        if payment.order_id != order_id:
            raise PaymentMismatchError("Payment order ID does not match")
        reservation = await self._reservation(prolongation.reservation_id)
        expected = to_smallest_unit(
            prolongation.additional_cost,
            reservation.currency,
            self.settings.currency_smallest_units,
        )
        if payment.amount != expected:
            raise PaymentMismatchError("Payment amount does not match")

        await self._check_available(reservation, prolongation.new_dropoff_date)
        if not await self.prolongations.transition(
            prolongation.id,
            [ProlongationStatus.WAITING_FOR_PAYMENT],
            ProlongationStatus.ACCEPTED,
            payment_status=PaymentState.PAID,
        ):
            await self.session.rollback()
            await self.session.refresh(prolongation)
            if prolongation.status == ProlongationStatus.ACCEPTED:
                return prolongation, True
            raise ConflictError(
                f"Prolongation is {ProlongationStatus(prolongation.status).value}"
            )
        await self._extend(
            reservation, prolongation.new_dropoff_date, prolongation.additional_cost
        )
        await self.session.commit()
        await self.session.refresh(prolongation)
        logger.info(
            "Prolongation %d paid, reservation %d now ends %s",
            prolongation.id,
            reservation.id,
            prolongation.new_dropoff_date,
        )
        return prolongation, False

    # ── Helpers ───────────────────────────────────────────────────────

    async def _reservation(self, reservation_id: int) -> ReservationModel:
        reservation = await self.reservations.get_by_id(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        return reservation

    async def _prolongation(self, prolongation_id: int) -> ProlongationRequestModel:
        prolongation = await self.prolongations.get_by_id(prolongation_id)
        if prolongation is None:
            raise NotFoundError("Prolongation request not found")
        return prolongation

    async def _price(
        self, reservation: ReservationModel, new_dropoff: date
    ) -> tuple[int, float]:
        if new_dropoff <= reservation.dropoff_date:
            raise ValidationError(
                "New dropoff date must be after the current dropoff date"
            )
        days = (new_dropoff - reservation.dropoff_date).days
        vehicle = await self.vehicles.get_by_id(reservation.vehicle_id)
        return days, self.pricing.total_price(days, vehicle.price_per_day)

    async def _check_available(
        self, reservation: ReservationModel, new_dropoff: date
    ) -> None:
        plate = reservation.matriculation
        matriculation = await self.availability.lock(reservation.vehicle_id, plate)
        period = DateRange(reservation.pickup_date, new_dropoff)
        if not await self.availability.is_available(
            matriculation, period, ignore_reservation_id=reservation.id
        ):
            # rollback expires loaded rows; nothing below may read them
            await self.session.rollback()
            raise ConflictError(
                f"Matriculation {plate} is not available until {new_dropoff}"
            )

    async def _transition(
        self,
        prolongation: ProlongationRequestModel,
        from_statuses: list[ProlongationStatus],
        to_status: ProlongationStatus,
        **values,
    ) -> None:
        if not await self.prolongations.transition(
            prolongation.id, from_statuses, to_status, **values
        ):
            await self.session.rollback()
            raise ConflictError("Prolongation status changed concurrently, retry")

    async def _extend(
        self, reservation: ReservationModel, new_dropoff: date, cost: float
    ) -> None:
        await self.availability.extend_hold(reservation.id, new_dropoff)
        await self.reservations.update_fields(
            reservation.id,
            dropoff_date=new_dropoff,
            total_price=round(reservation.total_price + cost, 2),
            amount_paid=round(reservation.amount_paid + cost, 3),
        )

    async def _notify_rejected(self, reservation: ReservationModel) -> Optional[str]:
        try:
            renter = await self.session.get(RenterModel, reservation.renter_id)
            await self.notifier.prolongation_rejected(renter.email)
        except Exception as exc:
            logger.error(
                "Rejection mail for reservation %d failed: %s", reservation.id, exc
            )
            return "Prolongation rejected, but the e-mail could not be sent"
        return None
