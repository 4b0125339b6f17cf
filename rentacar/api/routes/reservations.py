"""
Reservation endpoints
=====================

POST   /api/v1/reservations               -- book a plate, returns the pay URL
GET    /api/v1/reservations/confirm       -- payment success callback
GET    /api/v1/reservations/active        -- settled bookings of a license holder
GET    /api/v1/reservations/{id}          -- read a reservation

Back office (``X-Admin-Key``):

GET    /api/v1/reservations               -- paged list with filters
POST   /api/v1/reservations/manual        -- book at the counter, no payment link
PATCH  /api/v1/reservations/{id}          -- edit dates, plate or details
PATCH  /api/v1/reservations/{id}/status   -- cancel / reject
DELETE /api/v1/reservations/{id}          -- delete with its hold
"""

from __future__ import annotations

from typing import Optional

import pydantic
from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile

from rentacar.api.dependencies import (
    get_document_store,
    get_reservation_service,
    require_admin,
)
from rentacar.api.middleware import limiter
from rentacar.api.schemas import (
    ConfirmationResponse,
    RenterInput,
    ReservationCreatedResponse,
    ReservationCreateRequest,
    ReservationPage,
    ReservationResponse,
    ReservationStatusUpdate,
    ReservationUpdateRequest,
)
from rentacar.domain.enums import ReservationStatus
from rentacar.domain.errors import ValidationError
from rentacar.infrastructure.documents import DocumentStore, UploadedDocument
from rentacar.services.reservations import ReservationService

router = APIRouter(prefix="/reservations", tags=["reservations"])

UNRESOLVED_PLACEHOLDER = "${paymentRef}"


def _first_error(exc: pydantic.ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {error['msg']}"


async def _read_upload(
    field: str, upload: Optional[UploadFile], max_bytes: int
) -> Optional[UploadedDocument]:
    if upload is None or not upload.filename:
        return None
    # one byte over the limit is enough to reject
    data = await upload.read(max_bytes + 1)
    return UploadedDocument(
        field=field,
        filename=upload.filename,
        content_type=upload.content_type or "",
        data=data,
    )


def booking_form(
    vehicle_id: int = Form(...),
    matriculation: str = Form(...),
    pickup_location: str = Form(...),
    dropoff_location: str = Form(...),
    pickup_date: str = Form(...),
    dropoff_date: str = Form(...),
    pickup_time: str = Form(...),
    dropoff_time: str = Form(...),
    payment_percentage: Optional[int] = Form(None),
    flight_number: Optional[str] = Form(None),
    currency: Optional[str] = Form(None),
    is_new_client: bool = Form(False),
    renter_id: Optional[int] = Form(None),
    full_name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    license_id_number: Optional[str] = Form(None),
) -> ReservationCreateRequest:
    """Multipart booking fields, validated into a request body."""
    try:
        return ReservationCreateRequest(
            renter=RenterInput(
                renter_id=renter_id,
                is_new_client=is_new_client,
                full_name=full_name,
                email=email or None,
                phone=phone,
                license_id_number=license_id_number,
            ),
            vehicle_id=vehicle_id,
            matriculation=matriculation,
            pickup_location=pickup_location,
            dropoff_location=dropoff_location,
            pickup_date=pickup_date,
            dropoff_date=dropoff_date,
            pickup_time=pickup_time,
            dropoff_time=dropoff_time,
            flight_number=flight_number or None,
            payment_percentage=payment_percentage,
            currency=currency or None,
        )
    except pydantic.ValidationError as exc:
        raise ValidationError(_first_error(exc)) from exc


async def booking_uploads(
    identity: Optional[UploadFile] = File(None),
    license: Optional[UploadFile] = File(None),
    documents: DocumentStore = Depends(get_document_store),
) -> dict[str, UploadedDocument]:
    uploads = {}
    for field, upload in (("identity", identity), ("license", license)):
        document = await _read_upload(field, upload, documents.max_bytes)
        if document is not None:
            uploads[field] = document
    return uploads


@router.post(
    "",
    status_code=201,
    response_model=ReservationCreatedResponse,
    summary="Create a reservation and its payment link",
)
@limiter.limit("100/minute")
async def create_reservation(
    request: Request,
    body: ReservationCreateRequest = Depends(booking_form),
    uploads: dict[str, UploadedDocument] = Depends(booking_uploads),
    service: ReservationService = Depends(get_reservation_service),
    documents: DocumentStore = Depends(get_document_store),
):
    async with documents.stage(uploads) as staged:
        created = await service.create(body.to_booking(), staged)

    return ReservationCreatedResponse(
        reservation=ReservationResponse.model_validate(created.reservation),
        pay_url=created.pay_url,
    )


@router.post(
    "/manual",
    status_code=201,
    response_model=ReservationResponse,
    summary="Book at the counter without a payment link",
    dependencies=[Depends(require_admin)],
)
async def create_manual_reservation(
    status: ReservationStatus = Form(...),
    total_price: Optional[float] = Form(None, ge=0),
    amount_paid: Optional[float] = Form(None, ge=0),
    body: ReservationCreateRequest = Depends(booking_form),
    uploads: dict[str, UploadedDocument] = Depends(booking_uploads),
    service: ReservationService = Depends(get_reservation_service),
    documents: DocumentStore = Depends(get_document_store),
):
    async with documents.stage(uploads) as staged:
        return await service.create_direct(
            body.to_booking(),
            staged,
            status,
            total_price=total_price,
            amount_paid=amount_paid,
        )


@router.get(
    "",
    response_model=ReservationPage,
    summary="List reservations",
    dependencies=[Depends(require_admin)],
)
async def list_reservations(
    status: Optional[ReservationStatus] = Query(None),
    payment_percentage: Optional[int] = Query(None),
    search: Optional[str] = Query(
        None, description="Renter name or e-mail, car brand or model, or plate"
    ),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: ReservationService = Depends(get_reservation_service),
):
    listing = await service.search(
        status=status,
        payment_percentage=payment_percentage,
        search=search,
        page=page,
        limit=limit,
    )
    return ReservationPage(
        items=[ReservationResponse.model_validate(r) for r in listing.items],
        total=listing.total,
        page=listing.page,
        total_pages=listing.total_pages,
    )


@router.get(
    "/confirm",
    response_model=ConfirmationResponse,
    summary="Confirm a reservation payment",
    description=(
        "Called after the gateway redirects the renter back.  The payment is "
        "verified against the gateway before the reservation becomes paid; "
        "repeated calls are harmless."
    ),
)
@limiter.limit("100/minute")
async def confirm_reservation(
    request: Request,
    payment_ref: str = Query(...),
    order_id: str = Query(..., alias="orderId"),
    reservation_id: int = Query(...),
    service: ReservationService = Depends(get_reservation_service),
):
    if not payment_ref.strip() or payment_ref == UNRESOLVED_PLACEHOLDER:
        raise ValidationError("Invalid payment reference")

    result = await service.confirm(payment_ref, order_id, reservation_id)
    return ConfirmationResponse(
        message=(
            "Reservation already confirmed"
            if result.already_confirmed
            else "Payment verified, reservation confirmed"
        ),
        reservation_id=result.reservation.id,
        status=result.reservation.status,
        already_confirmed=result.already_confirmed,
        warning=result.warning,
    )


@router.get(
    "/active",
    response_model=list[ReservationResponse],
    summary="Paid reservations of a license holder",
)
@limiter.limit("100/minute")
async def get_active_reservations(
    request: Request,
    license_id_number: str = Query(..., min_length=1),
    service: ReservationService = Depends(get_reservation_service),
):
    return await service.active_for_license(license_id_number)


@router.get(
    "/{reservation_id}",
    response_model=ReservationResponse,
    summary="Get a reservation",
)
@limiter.limit("100/minute")
async def get_reservation(
    request: Request,
    reservation_id: int,
    service: ReservationService = Depends(get_reservation_service),
):
    return await service.get(reservation_id)


@router.patch(
    "/{reservation_id}/status",
    response_model=ReservationResponse,
    summary="Cancel or reject a reservation",
    dependencies=[Depends(require_admin)],
)
async def update_reservation_status(
    reservation_id: int,
    body: ReservationStatusUpdate,
    service: ReservationService = Depends(get_reservation_service),
):
    return await service.change_status(reservation_id, body.status)


@router.patch(
    "/{reservation_id}",
    response_model=ReservationResponse,
    summary="Edit a reservation",
    dependencies=[Depends(require_admin)],
)
async def update_reservation(
    reservation_id: int,
    body: ReservationUpdateRequest,
    service: ReservationService = Depends(get_reservation_service),
):
    return await service.update(reservation_id, **body.model_dump(exclude_none=True))


@router.delete(
    "/{reservation_id}",
    status_code=204,
    summary="Delete a reservation",
    dependencies=[Depends(require_admin)],
)
async def delete_reservation(
    reservation_id: int,
    service: ReservationService = Depends(get_reservation_service),
):
    await service.delete(reservation_id)
    return Response(status_code=204)
