"""
FastAPI application factory.

* Registers routes for reservations, vehicles, prolongations, cron and admin.
* Starts / stops the reconciliation worker via lifespan events.
* Renders domain errors as ``{"detail": message}`` with their HTTP status.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from rentacar.api.middleware import limiter
from rentacar.api.routes import admin, cron, prolongations, reservations, vehicles
from rentacar.config import settings
from rentacar.domain.errors import RentalError
from rentacar.infrastructure.documents import DocumentStore
from rentacar.infrastructure.mailer import Notifier, build_notifier
from rentacar.infrastructure.payment_gateway import KonnectGateway
from rentacar.workers import reconciler as _reconciler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the reconciliation worker on startup; stop it on shutdown."""
    if settings.reconciliation_enabled:
        await _reconciler.start_reconciliation_loop(app.state.notifier)
    yield
    if settings.reconciliation_enabled:
        await _reconciler.stop_reconciliation_loop()
    client = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()


async def _rental_error_handler(request: Request, exc: RentalError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(
    gateway: Optional[KonnectGateway] = None,
    notifier: Optional[Notifier] = None,
    documents: Optional[DocumentStore] = None,
) -> FastAPI:
    app = FastAPI(
        title="Car Rental Reservation API",
        description=(
            "Books rental cars by plate, collects payments through Konnect, "
            "and keeps reservation and vehicle statuses in step with the "
            "calendar.  Double bookings are prevented under concurrency."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Collaborators (tests pass their own)
    if gateway is None:
        app.state.http_client = httpx.AsyncClient(
            timeout=settings.gateway_timeout_seconds
        )
        gateway = KonnectGateway(
            app.state.http_client,
            settings.konnect_api_url,
            settings.konnect_api_key,
            settings.konnect_wallet_id,
            settings.payment_lifespan_minutes,
        )
    app.state.gateway = gateway
    app.state.notifier = notifier or build_notifier(settings)
    app.state.documents = documents or DocumentStore(
        settings.documents_root, settings.upload_max_bytes
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RentalError, _rental_error_handler)

    # Routers
    app.include_router(reservations.router, prefix="/api/v1")
    app.include_router(vehicles.router, prefix="/api/v1")
    app.include_router(prolongations.router, prefix="/api/v1")
    app.include_router(cron.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
