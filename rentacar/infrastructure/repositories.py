"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Status writes that may race with the
reconciliation sweep or a second payment callback are expressed as
conditional ``UPDATE … WHERE status IN (…)`` statements; callers inspect
the returned row count instead of trusting a stale read.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    MatriculationModel,
    ProlongationRequestModel,
    RenterModel,
    ReservationModel,
    UnavailablePeriodModel,
    VehicleModel,
)
from rentacar.domain.entities import DateRange, Hold, MatriculationState
from rentacar.domain.enums import (
    SETTLED_STATUSES,
    MatriculationStatus,
    ProlongationStatus,
    ReservationStatus,
)


class RenterRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, renter: RenterModel) -> RenterModel:
        self.session.add(renter)
        await self.session.flush()
        return renter

    async def get_by_id(self, renter_id: int) -> Optional[RenterModel]:
        return await self.session.get(RenterModel, renter_id)

    async def get_by_license(self, license_id_number: str) -> Optional[RenterModel]:
        result = await self.session.execute(
            select(RenterModel).where(
                RenterModel.license_id_number == license_id_number
            )
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[RenterModel]:
        result = await self.session.execute(
            select(RenterModel).where(RenterModel.email == email)
        )
        return result.scalar_one_or_none()


class VehicleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, vehicle_id: int) -> Optional[VehicleModel]:
        return await self.session.get(VehicleModel, vehicle_id)


class MatriculationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, matriculation_id: int) -> Optional[MatriculationModel]:
        return await self.session.get(MatriculationModel, matriculation_id)

    async def get_for_update(
        self, vehicle_id: int, plate_number: str
    ) -> Optional[MatriculationModel]:
        """SELECT ... FOR UPDATE so availability check + hold insert serialise."""
        result = await self.session.execute(
            select(MatriculationModel)
            .where(
                MatriculationModel.vehicle_id == vehicle_id,
                MatriculationModel.plate_number == plate_number,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def list_for_vehicle(self, vehicle_id: int) -> list[MatriculationModel]:
        result = await self.session.execute(
            select(MatriculationModel)
            .where(MatriculationModel.vehicle_id == vehicle_id)
            .order_by(MatriculationModel.plate_number)
        )
        return list(result.scalars().all())

    async def set_status(
        self,
        matriculation_id: int,
        status: MatriculationStatus,
        *,
        only_from: Optional[Iterable[MatriculationStatus]] = None,
    ) -> int:
        """Set *status*; with *only_from*, touch the row only in those states."""
        query = update(MatriculationModel).where(
            MatriculationModel.id == matriculation_id,
            MatriculationModel.status != status,
        )
        if only_from is not None:
            query = query.where(MatriculationModel.status.in_(list(only_from)))
        result = await self.session.execute(
            query.values(status=status).execution_options(synchronize_session=False)
        )
        return result.rowcount


class HoldRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_for(self, matriculation_id: int) -> list[UnavailablePeriodModel]:
        result = await self.session.execute(
            select(UnavailablePeriodModel)
            .where(UnavailablePeriodModel.matriculation_id == matriculation_id)
            .order_by(UnavailablePeriodModel.start_date)
        )
        return list(result.scalars().all())

    async def get_for_reservation(
        self, reservation_id: int
    ) -> Optional[UnavailablePeriodModel]:
        result = await self.session.execute(
            select(UnavailablePeriodModel).where(
                UnavailablePeriodModel.reservation_id == reservation_id
            )
        )
        return result.scalar_one_or_none()

    async def state_of(self, matriculation: MatriculationModel) -> MatriculationState:
        """Snapshot a matriculation and its holds as a domain entity."""
        periods = await self.list_for(matriculation.id)
        return MatriculationState(
            plate_number=matriculation.plate_number,
            status=MatriculationStatus(matriculation.status),
            holds=[
                Hold(DateRange(p.start_date, p.end_date), p.reservation_id)
                for p in periods
            ],
        )

    async def add(
        self,
        matriculation_id: int,
        start: date,
        end: date,
        reservation_id: int,
    ) -> UnavailablePeriodModel:
        period = UnavailablePeriodModel(
            matriculation_id=matriculation_id,
            start_date=start,
            end_date=end,
            reservation_id=reservation_id,
        )
        self.session.add(period)
        await self.session.flush()
        return period

    async def remove_for_reservation(self, reservation_id: int) -> int:
        result = await self.session.execute(
            delete(UnavailablePeriodModel)
            .where(UnavailablePeriodModel.reservation_id == reservation_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def set_end(self, reservation_id: int, new_end: date) -> int:
        result = await self.session.execute(
            update(UnavailablePeriodModel)
            .where(UnavailablePeriodModel.reservation_id == reservation_id)
            .values(end_date=new_end)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class ReservationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, reservation: ReservationModel) -> ReservationModel:
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def get_by_id(self, reservation_id: int) -> Optional[ReservationModel]:
        return await self.session.get(ReservationModel, reservation_id)

    async def get_for_payment(
        self, reservation_id: int, order_id: str, payment_ref: str
    ) -> Optional[ReservationModel]:
        result = await self.session.execute(
            select(ReservationModel).where(
                ReservationModel.id == reservation_id,
                ReservationModel.order_id == order_id,
                ReservationModel.payment_ref == payment_ref,
            )
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        reservation_id: int,
        from_statuses: Iterable[ReservationStatus],
        to_status: ReservationStatus,
        **values,
    ) -> bool:
        """Conditional status change; False if the row moved on meanwhile."""
        result = await self.session.execute(
            update(ReservationModel)
            .where(
                ReservationModel.id == reservation_id,
                ReservationModel.status.in_(list(from_statuses)),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_fields(self, reservation_id: int, **values) -> None:
        await self.session.execute(
            update(ReservationModel)
            .where(ReservationModel.id == reservation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def delete(self, reservation_id: int) -> int:
        """Delete the reservation and its prolongation requests."""
        await self.session.execute(
            delete(ProlongationRequestModel)
            .where(ProlongationRequestModel.reservation_id == reservation_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(
            delete(ReservationModel)
            .where(ReservationModel.id == reservation_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def running_on(
        self, matriculation_id: int, day: date, exclude_id: Optional[int] = None
    ) -> bool:
        """True if a settled reservation has the plate out on *day*."""
        query = select(ReservationModel.id).where(
            ReservationModel.matriculation_id == matriculation_id,
            ReservationModel.status.in_(list(SETTLED_STATUSES)),
            ReservationModel.pickup_date <= day,
            ReservationModel.dropoff_date >= day,
        )
        if exclude_id is not None:
            query = query.where(ReservationModel.id != exclude_id)
        result = await self.session.execute(query.limit(1))
        return result.first() is not None

    # ── Back office ───────────────────────────────────────────────────

    def _filtered(self, status, payment_percentage, search):
        query = select(ReservationModel)
        if status is not None:
            query = query.where(ReservationModel.status == status)
        if payment_percentage is not None:
            query = query.where(ReservationModel.payment_percentage == payment_percentage)
        if search:
            pattern = f"%{search.strip()}%"
            renters = select(RenterModel.id).where(
                or_(RenterModel.full_name.ilike(pattern), RenterModel.email.ilike(pattern))
            )
            vehicles = select(VehicleModel.id).where(
                or_(VehicleModel.brand.ilike(pattern), VehicleModel.model.ilike(pattern))
            )
            query = query.where(
                or_(
                    ReservationModel.renter_id.in_(renters),
                    ReservationModel.vehicle_id.in_(vehicles),
                    ReservationModel.matriculation.ilike(pattern),
                )
            )
        return query

    async def search(
        self,
        *,
        status: Optional[ReservationStatus] = None,
        payment_percentage: Optional[int] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[ReservationModel], int]:
        """Newest first; returns one page and the total match count."""
        query = self._filtered(status, payment_percentage, search)
        total = (
            await self.session.execute(
                select(func.count()).select_from(query.subquery())
            )
        ).scalar_one()
        result = await self.session.execute(
            query.order_by(ReservationModel.created_at.desc(), ReservationModel.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_for_renter(
        self, renter_id: int, statuses: Iterable[ReservationStatus]
    ) -> list[ReservationModel]:
        result = await self.session.execute(
            select(ReservationModel)
            .where(
                ReservationModel.renter_id == renter_id,
                ReservationModel.status.in_(list(statuses)),
            )
            .order_by(ReservationModel.pickup_date)
        )
        return list(result.scalars().all())

    # ── Reconciliation queries ────────────────────────────────────────

    async def find_expired_pending(self, today: date) -> list[int]:
        result = await self.session.execute(
            select(ReservationModel.id).where(
                ReservationModel.status == ReservationStatus.PENDING,
                ReservationModel.dropoff_date < today,
            )
        )
        return list(result.scalars().all())

    async def find_in_progress(self, today: date) -> list[ReservationModel]:
        result = await self.session.execute(
            select(ReservationModel).where(
                ReservationModel.status.in_(list(SETTLED_STATUSES)),
                ReservationModel.pickup_date <= today,
                ReservationModel.dropoff_date >= today,
            )
        )
        return list(result.scalars().all())

    async def find_finished(self, today: date) -> list[int]:
        result = await self.session.execute(
            select(ReservationModel.id).where(
                ReservationModel.status.in_(list(SETTLED_STATUSES)),
                ReservationModel.dropoff_date < today,
            )
        )
        return list(result.scalars().all())


class ProlongationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self, request: ProlongationRequestModel
    ) -> ProlongationRequestModel:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_by_id(
        self, prolongation_id: int
    ) -> Optional[ProlongationRequestModel]:
        return await self.session.get(ProlongationRequestModel, prolongation_id)

    async def get_for_payment(
        self, prolongation_id: int, order_id: str, payment_ref: str
    ) -> Optional[ProlongationRequestModel]:
        result = await self.session.execute(
            select(ProlongationRequestModel).where(
                ProlongationRequestModel.id == prolongation_id,
                ProlongationRequestModel.order_id == order_id,
                ProlongationRequestModel.payment_ref == payment_ref,
            )
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        prolongation_id: int,
        from_statuses: Iterable[ProlongationStatus],
        to_status: ProlongationStatus,
        **values,
    ) -> bool:
        result = await self.session.execute(
            update(ProlongationRequestModel)
            .where(
                ProlongationRequestModel.id == prolongation_id,
                ProlongationRequestModel.status.in_(list(from_statuses)),
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def find_expired(self, today: date) -> list[int]:
        result = await self.session.execute(
            select(ProlongationRequestModel.id).where(
                ProlongationRequestModel.status.in_(
                    [ProlongationStatus.PENDING, ProlongationStatus.WAITING_FOR_PAYMENT]
                ),
                ProlongationRequestModel.new_dropoff_date < today,
            )
        )
        return list(result.scalars().all())
