"""Domain enumerations and state-transition rules."""

import enum


class ReservationStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REJECTED = "rejected"


# State machine: maps current status -> set of valid next statuses.
# CONFIRMED is only set by back-office bookings, never by a transition.
RESERVATION_TRANSITIONS: dict[ReservationStatus, set[ReservationStatus]] = {
    ReservationStatus.PENDING: {
        ReservationStatus.PAID,
        ReservationStatus.CANCELLED,
        ReservationStatus.REJECTED,
    },
    ReservationStatus.PAID: {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED},
    ReservationStatus.CONFIRMED: {
        ReservationStatus.COMPLETED,
        ReservationStatus.CANCELLED,
    },
    ReservationStatus.COMPLETED: set(),
    ReservationStatus.CANCELLED: set(),
    ReservationStatus.REJECTED: set(),
}

# Statuses that own a hold on their matriculation
HOLDING_STATUSES = frozenset(
    {ReservationStatus.PENDING, ReservationStatus.PAID, ReservationStatus.CONFIRMED}
)

# Paid-for statuses the sweep moves through rented -> completed
SETTLED_STATUSES = frozenset({ReservationStatus.PAID, ReservationStatus.CONFIRMED})


class MatriculationStatus(str, enum.Enum):
    AVAILABLE = "available"
    RENTED = "rented"
    MAINTENANCE = "maintenance"


class ProlongationStatus(str, enum.Enum):
    PENDING = "pending"
    WAITING_FOR_PAYMENT = "waiting_for_payment"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


PROLONGATION_TRANSITIONS: dict[ProlongationStatus, set[ProlongationStatus]] = {
    ProlongationStatus.PENDING: {
        ProlongationStatus.WAITING_FOR_PAYMENT,
        ProlongationStatus.ACCEPTED,
        ProlongationStatus.REJECTED,
    },
    ProlongationStatus.WAITING_FOR_PAYMENT: {
        ProlongationStatus.ACCEPTED,
        ProlongationStatus.REJECTED,
    },
    ProlongationStatus.ACCEPTED: set(),
    ProlongationStatus.REJECTED: set(),
}


class PaymentState(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class PaymentMethod(str, enum.Enum):
    IN_AGENCY = "in_agency"
    BY_CARD = "by_card"


class VehicleCategory(str, enum.Enum):
    ECONOMY = "economique"
    SUV = "SUV"
    LUXURY = "luxe"


class FuelType(str, enum.Enum):
    PETROL = "essence"
    DIESEL = "diesel"
    ELECTRIC = "electrique"
    HYBRID = "hybride"


class Transmission(str, enum.Enum):
    AUTOMATIC = "auto"
    MANUAL = "manuelle"
