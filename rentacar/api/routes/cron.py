"""
Scheduler endpoint
==================

GET /api/v1/cron/run-daily-job -- run one reconciliation sweep now
"""

from fastapi import APIRouter, Depends

from rentacar.api.dependencies import get_notifier
from rentacar.api.schemas import SweepReportResponse
from rentacar.infrastructure.mailer import Notifier
from rentacar.workers import reconciler

router = APIRouter(prefix="/cron", tags=["cron"])


@router.get(
    "/run-daily-job",
    response_model=SweepReportResponse,
    summary="Run the reconciliation sweep",
    description=(
        "Cancels stale unpaid reservations, completes finished ones and "
        "marks plates rented.  Returns ``skipped`` when another sweep holds "
        "the lock."
    ),
)
async def run_daily_job(notifier: Notifier = Depends(get_notifier)):
    report = await reconciler.run_reconciliation_cycle(notifier=notifier)
    return SweepReportResponse(**report.as_dict())
