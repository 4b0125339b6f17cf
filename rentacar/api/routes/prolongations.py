"""
Prolongation endpoints
======================

POST  /api/v1/prolongations          -- request a later dropoff date
PATCH /api/v1/prolongations/{id}     -- admin accept / reject
GET   /api/v1/prolongations/confirm  -- card payment success callback
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from rentacar.api.dependencies import get_prolongation_service, require_admin
from rentacar.api.middleware import limiter
from rentacar.api.schemas import (
    ProlongationConfirmationResponse,
    ProlongationCreateRequest,
    ProlongationDecisionRequest,
    ProlongationDecisionResponse,
    ProlongationResponse,
    ReservationResponse,
)
from rentacar.domain.errors import ValidationError
from rentacar.services.prolongations import ProlongationService

router = APIRouter(prefix="/prolongations", tags=["prolongations"])


@router.post(
    "",
    status_code=201,
    response_model=ProlongationResponse,
    summary="Request a prolongation",
)
@limiter.limit("100/minute")
async def create_prolongation(
    request: Request,
    body: ProlongationCreateRequest,
    service: ProlongationService = Depends(get_prolongation_service),
):
    return await service.create(body.reservation_id, body.new_dropoff_date)


@router.get(
    "/confirm",
    response_model=ProlongationConfirmationResponse,
    summary="Confirm a prolongation payment",
)
@limiter.limit("100/minute")
async def confirm_prolongation(
    request: Request,
    payment_ref: str = Query(...),
    order_id: str = Query(..., alias="orderId"),
    prolongation_id: int = Query(...),
    service: ProlongationService = Depends(get_prolongation_service),
):
    if not payment_ref.strip() or payment_ref == "${paymentRef}":
        raise ValidationError("Invalid payment reference")

    prolongation, already = await service.confirm(
        payment_ref, order_id, prolongation_id
    )
    return ProlongationConfirmationResponse(
        message=(
            "Prolongation already confirmed"
            if already
            else "Payment verified, reservation extended"
        ),
        prolongation_id=prolongation.id,
        reservation_id=prolongation.reservation_id,
        already_confirmed=already,
    )


@router.patch(
    "/{prolongation_id}",
    response_model=ProlongationDecisionResponse,
    summary="Accept or reject a prolongation",
    description=(
        "Accepting with ``in_agency`` extends the reservation immediately.  "
        "Accepting with ``by_card`` e-mails a payment link; the extension is "
        "applied once the payment is confirmed."
    ),
    dependencies=[Depends(require_admin)],
)
async def decide_prolongation(
    prolongation_id: int,
    body: ProlongationDecisionRequest,
    service: ProlongationService = Depends(get_prolongation_service),
):
    decision = await service.decide(
        prolongation_id, body.status, body.payment_method, body.new_dropoff_date
    )
    return ProlongationDecisionResponse(
        prolongation=ProlongationResponse.model_validate(decision.prolongation),
        reservation=(
            ReservationResponse.model_validate(decision.reservation)
            if decision.reservation is not None
            else None
        ),
        pay_url=decision.pay_url,
        warning=decision.warning,
    )
