"""
Availability Index
==================

Answers "is matriculation M free for [start, end]?" and maintains the
holds (``unavailable_periods``) that make the answer stick.

Concurrency
-----------
``lock`` loads the matriculation row with ``SELECT … FOR UPDATE``.  Two
requests racing for the same plate therefore serialise: the second one
blocks until the first commits or rolls back, then re-reads the holds and
sees the winner's period.  ``add_hold`` must only be called after
``is_available`` returned True inside that same locked transaction.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from rentacar.domain.entities import DateRange, utc_today
from rentacar.domain.enums import MatriculationStatus
from rentacar.domain.errors import NotFoundError
from rentacar.infrastructure.models import MatriculationModel
from rentacar.infrastructure.repositories import (
    HoldRepository,
    MatriculationRepository,
    ReservationRepository,
    VehicleRepository,
)

logger = logging.getLogger(__name__)


class AvailabilityIndex:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.matriculations = MatriculationRepository(session)
        self.holds = HoldRepository(session)
        self.reservations = ReservationRepository(session)
        self.vehicles = VehicleRepository(session)

    async def lock(self, vehicle_id: int, plate_number: str) -> MatriculationModel:
        matriculation = await self.matriculations.get_for_update(
            vehicle_id, plate_number
        )
        if matriculation is None:
            if await self.vehicles.get_by_id(vehicle_id) is None:
                raise NotFoundError("Car not found")
            raise NotFoundError("Selected matriculation does not exist for this car")
        return matriculation

    async def is_available(
        self,
        matriculation: MatriculationModel,
        period: DateRange,
        ignore_reservation_id: Optional[int] = None,
    ) -> bool:
        state = await self.holds.state_of(matriculation)
        return state.is_available(period, ignore_reservation_id)

    async def add_hold(
        self, matriculation: MatriculationModel, period: DateRange, reservation_id: int
    ) -> None:
        await self.holds.add(matriculation.id, period.start, period.end, reservation_id)
        logger.info(
            "Hold %s..%s placed on %s for reservation %d",
            period.start,
            period.end,
            matriculation.plate_number,
            reservation_id,
        )

    async def remove_hold(self, reservation_id: int) -> bool:
        """Idempotent: returns False when the reservation held nothing."""
        return await self.holds.remove_for_reservation(reservation_id) > 0

    async def extend_hold(self, reservation_id: int, new_end: date) -> None:
        if not await self.holds.set_end(reservation_id, new_end):
            raise NotFoundError(f"No hold found for reservation {reservation_id}")

    async def release(
        self,
        reservation_id: int,
        matriculation_id: int,
        *,
        settled: bool,
        today: Optional[date] = None,
    ) -> None:
        """Drop the reservation's hold; a settled one also hands the plate back.

        The plate stays rented while another settled reservation has it
        out today.
        """
        await self.remove_hold(reservation_id)
        if not settled:
            return
        today = today or utc_today()
        if await self.reservations.running_on(
            matriculation_id, today, exclude_id=reservation_id
        ):
            logger.info(
                "Matriculation %d stays rented, another reservation runs on %s",
                matriculation_id,
                today,
            )
            return
        await self.matriculations.set_status(
            matriculation_id,
            MatriculationStatus.AVAILABLE,
            only_from=[MatriculationStatus.RENTED],
        )

    async def rent_out(self, matriculation_id: int) -> bool:
        """Mark an available plate rented; maintenance and rented are left alone."""
        changed = await self.matriculations.set_status(
            matriculation_id,
            MatriculationStatus.RENTED,
            only_from=[MatriculationStatus.AVAILABLE],
        )
        return changed > 0

    async def available_plates(self, vehicle_id: int, period: DateRange) -> list[str]:
        if await self.vehicles.get_by_id(vehicle_id) is None:
            raise NotFoundError("Car not found")
        plates = []
        for matriculation in await self.matriculations.list_for_vehicle(vehicle_id):
            if await self.is_available(matriculation, period):
                plates.append(matriculation.plate_number)
        return plates
