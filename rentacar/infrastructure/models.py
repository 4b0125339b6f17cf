"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``renters``               -- identity + license holders, one per license ID
* ``vehicles``              -- rentable car listings
* ``matriculations``        -- physical units (plates) of a vehicle
* ``unavailable_periods``   -- date-range holds blocking a matriculation
* ``reservations``          -- rental bookings and their payment state
* ``prolongation_requests`` -- requests to extend a paid reservation

Indexes
-------
* **B-Tree** on ``status`` and date columns used by the reconciliation
  sweep, on ``order_id`` / ``payment_ref`` used by payment confirmation,
  and on ``matriculation_id`` for hold look-ups.
* PostgreSQL additionally gets a GiST exclusion constraint on
  ``unavailable_periods`` (see migration 001) so two holds for the same
  plate can never overlap even if application checks were bypassed.
"""

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)

from .database import Base
from rentacar.domain.enums import (
    FuelType,
    MatriculationStatus,
    PaymentState,
    ProlongationStatus,
    ReservationStatus,
    Transmission,
    VehicleCategory,
)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class RenterModel(Base):
    __tablename__ = "renters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(160), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    phone = Column(String(32), nullable=False)
    license_id_number = Column(String(64), unique=True, nullable=False)
    identity_doc_url = Column(String(255), nullable=True)
    license_url = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class VehicleModel(Base):
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    brand = Column(String(80), nullable=False)
    model = Column(String(80), nullable=False)
    category = Column(
        Enum(VehicleCategory, values_callable=_values), nullable=False
    )
    price_per_day = Column(Float, nullable=False)
    fuel = Column(Enum(FuelType, values_callable=_values), nullable=False)
    seats = Column(Integer, nullable=False)
    transmission = Column(
        Enum(Transmission, values_callable=_values), nullable=False
    )
    year = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class MatriculationModel(Base):
    __tablename__ = "matriculations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicle_id = Column(
        Integer, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False
    )
    plate_number = Column(String(32), nullable=False)
    status = Column(
        Enum(MatriculationStatus, values_callable=_values),
        default=MatriculationStatus.AVAILABLE,
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("vehicle_id", "plate_number", name="uq_matriculation_plate"),
        Index("idx_matriculations_vehicle", "vehicle_id"),
    )


class UnavailablePeriodModel(Base):
    __tablename__ = "unavailable_periods"

    id = Column(Integer, primary_key=True, autoincrement=True)
    matriculation_id = Column(
        Integer, ForeignKey("matriculations.id", ondelete="CASCADE"), nullable=False
    )
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    reservation_id = Column(
        Integer, ForeignKey("reservations.id", ondelete="CASCADE"), unique=True
    )

    __table_args__ = (
        Index("idx_periods_matriculation", "matriculation_id"),
    )


class ReservationModel(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    renter_id = Column(Integer, ForeignKey("renters.id"), nullable=False)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    matriculation_id = Column(
        Integer, ForeignKey("matriculations.id"), nullable=False
    )
    matriculation = Column(String(32), nullable=False)  # plate, denormalised

    pickup_location = Column(String(160), nullable=False)
    dropoff_location = Column(String(160), nullable=False)
    pickup_date = Column(Date, nullable=False)
    dropoff_date = Column(Date, nullable=False)
    pickup_time = Column(String(5), nullable=False)
    dropoff_time = Column(String(5), nullable=False)
    flight_number = Column(String(16), nullable=True)

    status = Column(
        Enum(ReservationStatus, values_callable=_values),
        default=ReservationStatus.PENDING,
        nullable=False,
    )
    order_id = Column(String(64), unique=True, nullable=False)
    payment_ref = Column(String(64), nullable=True)
    total_price = Column(Float, nullable=False)  # major currency unit
    payment_percentage = Column(Integer, nullable=False)
    amount_paid = Column(Float, default=0.0, nullable=False)
    currency = Column(String(3), default="TND", nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_reservations_status", "status"),
        Index("idx_reservations_renter", "renter_id"),
        Index("idx_reservations_dates", "pickup_date", "dropoff_date"),
        Index("idx_reservations_payment_ref", "payment_ref"),
    )


class ProlongationRequestModel(Base):
    __tablename__ = "prolongation_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_id = Column(
        Integer, ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False
    )
    new_dropoff_date = Column(Date, nullable=False)
    additional_days = Column(Integer, default=0, nullable=False)
    additional_cost = Column(Float, default=0.0, nullable=False)
    status = Column(
        Enum(ProlongationStatus, values_callable=_values),
        default=ProlongationStatus.PENDING,
        nullable=False,
    )
    payment_status = Column(
        Enum(PaymentState, values_callable=_values),
        default=PaymentState.UNPAID,
        nullable=False,
    )
    order_id = Column(String(64), unique=True, nullable=True)
    payment_ref = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_prolongations_status", "status"),
        Index("idx_prolongations_reservation", "reservation_id"),
    )
