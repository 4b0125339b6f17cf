"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from rentacar.domain.entities import BookingRequest, RenterDetails
from rentacar.domain.enums import (
    PaymentMethod,
    PaymentState,
    ProlongationStatus,
    ReservationStatus,
)


# ── Requests ──────────────────────────────────────────────────────────


class RenterInput(BaseModel):
    renter_id: Optional[int] = Field(
        None, description="Internal id of an existing renter."
    )
    is_new_client: bool = False
    full_name: Optional[str] = Field(None, max_length=160)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=32)
    license_id_number: Optional[str] = Field(None, max_length=64)

    def to_details(self) -> RenterDetails:
        return RenterDetails(**self.model_dump())


class ReservationCreateRequest(BaseModel):
    renter: RenterInput
    vehicle_id: int
    matriculation: str = Field(..., min_length=1, max_length=32)
    pickup_location: str = Field(..., min_length=1, max_length=160)
    dropoff_location: str = Field(..., min_length=1, max_length=160)
    pickup_date: str = Field(..., description="YYYY-MM-DD")
    dropoff_date: str = Field(..., description="YYYY-MM-DD")
    pickup_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    dropoff_time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    flight_number: Optional[str] = Field(None, max_length=16)
    payment_percentage: Optional[int] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)

    def to_booking(self) -> BookingRequest:
        return BookingRequest(
            renter=self.renter.to_details(),
            **self.model_dump(exclude={"renter"}),
        )


class ReservationStatusUpdate(BaseModel):
    status: ReservationStatus


class ReservationUpdateRequest(BaseModel):
    """Back-office edit; omitted fields keep their current value."""

    matriculation: Optional[str] = Field(None, min_length=1, max_length=32)
    pickup_date: Optional[str] = Field(None, description="YYYY-MM-DD")
    dropoff_date: Optional[str] = Field(None, description="YYYY-MM-DD")
    pickup_location: Optional[str] = Field(None, min_length=1, max_length=160)
    dropoff_location: Optional[str] = Field(None, min_length=1, max_length=160)
    pickup_time: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    dropoff_time: Optional[str] = Field(None, pattern=r"^\d{2}:\d{2}$")
    flight_number: Optional[str] = Field(None, max_length=16)
    total_price: Optional[float] = Field(None, ge=0)
    amount_paid: Optional[float] = Field(None, ge=0)


class ProlongationCreateRequest(BaseModel):
    reservation_id: int
    new_dropoff_date: str = Field(..., description="YYYY-MM-DD")


class ProlongationDecisionRequest(BaseModel):
    status: ProlongationStatus
    payment_method: Optional[PaymentMethod] = None
    new_dropoff_date: Optional[str] = Field(
        None, description="Override the requested dropoff date (YYYY-MM-DD)."
    )


# ── Responses ─────────────────────────────────────────────────────────


class ReservationResponse(BaseModel):
    id: int
    renter_id: int
    vehicle_id: int
    matriculation: str
    pickup_location: str
    dropoff_location: str
    pickup_date: date
    dropoff_date: date
    pickup_time: str
    dropoff_time: str
    flight_number: Optional[str] = None
    status: ReservationStatus
    order_id: str
    payment_ref: Optional[str] = None
    total_price: float
    payment_percentage: int
    amount_paid: float
    currency: str
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReservationPage(BaseModel):
    items: list[ReservationResponse]
    total: int
    page: int
    total_pages: int


class ReservationCreatedResponse(BaseModel):
    reservation: ReservationResponse
    pay_url: str


class ConfirmationResponse(BaseModel):
    message: str
    reservation_id: int
    status: ReservationStatus
    already_confirmed: bool = False
    warning: Optional[str] = None


class ProlongationResponse(BaseModel):
    id: int
    reservation_id: int
    new_dropoff_date: date
    additional_days: int
    additional_cost: float
    status: ProlongationStatus
    payment_status: PaymentState
    order_id: Optional[str] = None
    payment_ref: Optional[str] = None

    model_config = {"from_attributes": True}


class ProlongationDecisionResponse(BaseModel):
    prolongation: ProlongationResponse
    reservation: Optional[ReservationResponse] = None
    pay_url: Optional[str] = None
    warning: Optional[str] = None


class ProlongationConfirmationResponse(BaseModel):
    message: str
    prolongation_id: int
    reservation_id: int
    already_confirmed: bool = False


class AvailabilityResponse(BaseModel):
    vehicle_id: int
    start: date
    end: date
    available: list[str]


class SweepReportResponse(BaseModel):
    cancelled: int = 0
    completed: int = 0
    rented: int = 0
    prolongations_rejected: int = 0
    errors: int = 0
    skipped: bool = False


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
