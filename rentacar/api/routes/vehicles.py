"""
Vehicle endpoints
=================

GET /api/v1/vehicles/{vehicle_id}/availability?start&end -- free plates
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rentacar.api.dependencies import get_db
from rentacar.api.middleware import limiter
from rentacar.api.schemas import AvailabilityResponse
from rentacar.domain.entities import DateRange
from rentacar.services.availability import AvailabilityIndex

router = APIRouter(prefix="/vehicles", tags=["vehicles"])


@router.get(
    "/{vehicle_id}/availability",
    response_model=AvailabilityResponse,
    summary="List the plates of a vehicle free for a date range",
)
@limiter.limit("100/minute")
async def get_availability(
    request: Request,
    vehicle_id: int,
    start: str = Query(..., description="YYYY-MM-DD"),
    end: str = Query(..., description="YYYY-MM-DD"),
    db: AsyncSession = Depends(get_db),
):
    period = DateRange.parse(start, end)
    plates = await AvailabilityIndex(db).available_plates(vehicle_id, period)
    return AvailabilityResponse(
        vehicle_id=vehicle_id, start=period.start, end=period.end, available=plates
    )
