"""
Domain entities with business logic.

Patterns used
-------------
- **Value Object** ``DateRange``: inclusive calendar-day range, parsed from
  ``YYYY-MM-DD`` and compared as UTC dates so timezones never shift a day.
- **State Pattern** via ``check_transition``: enforces the reservation
  lifecycle table in ``enums.RESERVATION_TRANSITIONS``.
- ``MatriculationState.is_available`` encapsulates the no-double-booking
  invariant (maintenance fails closed, inclusive overlap test).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional

from .enums import (
    PROLONGATION_TRANSITIONS,
    RESERVATION_TRANSITIONS,
    MatriculationStatus,
    ProlongationStatus,
    ReservationStatus,
)
from .errors import ConflictError, ValidationError


class InvalidStateTransition(ConflictError):
    """Raised when a status change violates the state machine."""


# ── Value Objects ─────────────────────────────────────────────────────


def parse_day(value: str | date) -> date:
    """Parse ``YYYY-MM-DD`` (or pass a date through) as a UTC calendar day."""
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip())
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid date format: {value!r} (expected YYYY-MM-DD)")


def utc_today(now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).date()


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def __post_init__(self):
        if self.end < self.start:
            raise ValidationError("Range end must not precede its start")

    @classmethod
    def parse(cls, start: str | date, end: str | date) -> "DateRange":
        return cls(parse_day(start), parse_day(end))

    @property
    def days(self) -> int:
        return (self.end - self.start).days

    def overlaps(self, other: "DateRange") -> bool:
        """Inclusive overlap: sharing a single boundary day counts."""
        return self.start <= other.end and self.end >= other.start

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


def rental_period(
    pickup: str | date, dropoff: str | date, minimum_days: int = 3
) -> DateRange:
    """Validate a pickup/dropoff pair and return it as a range."""
    start, end = parse_day(pickup), parse_day(dropoff)
    if end <= start:
        raise ValidationError("Dropoff date must be after pickup date")
    period = DateRange(start, end)
    if period.days < minimum_days:
        raise ValidationError(f"Reservation must be at least {minimum_days} days")
    return period


# ── Booking input ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class RenterDetails:
    """Who is booking: an existing renter by id, or a new client's details."""

    renter_id: Optional[int] = None
    is_new_client: bool = False
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    license_id_number: Optional[str] = None


@dataclass(frozen=True)
class BookingRequest:
    renter: RenterDetails
    vehicle_id: int
    matriculation: str
    pickup_location: str
    dropoff_location: str
    pickup_date: str | date
    dropoff_date: str | date
    pickup_time: str
    dropoff_time: str
    payment_percentage: Optional[int] = None
    flight_number: Optional[str] = None
    currency: Optional[str] = None


# ── Entities ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Hold:
    period: DateRange
    reservation_id: Optional[int] = None


@dataclass
class MatriculationState:
    plate_number: str
    status: MatriculationStatus = MatriculationStatus.AVAILABLE
    holds: list[Hold] = field(default_factory=list)

    def is_available(
        self, period: DateRange, ignore_reservation_id: Optional[int] = None
    ) -> bool:
        if self.status == MatriculationStatus.MAINTENANCE:
            return False
        return not any(
            hold.period.overlaps(period)
            for hold in self.holds
            if ignore_reservation_id is None
            or hold.reservation_id != ignore_reservation_id
        )


def check_transition(current: ReservationStatus, new: ReservationStatus) -> None:
    """Raise unless *current* -> *new* is a legal reservation transition."""
    allowed = RESERVATION_TRANSITIONS.get(ReservationStatus(current), set())
    if new not in allowed:
        raise InvalidStateTransition(
            f"Cannot transition reservation from {ReservationStatus(current).value} "
            f"to {new.value}"
        )


def check_prolongation_transition(
    current: ProlongationStatus, new: ProlongationStatus
) -> None:
    allowed = PROLONGATION_TRANSITIONS.get(ProlongationStatus(current), set())
    if new not in allowed:
        raise InvalidStateTransition(
            f"Cannot transition prolongation from {ProlongationStatus(current).value} "
            f"to {new.value}"
        )
