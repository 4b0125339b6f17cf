"""FastAPI dependency injection helpers."""

import hmac
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rentacar.config import Settings, settings
from rentacar.domain.errors import RentalError
from rentacar.infrastructure.database import async_session_factory
from rentacar.infrastructure.documents import DocumentStore
from rentacar.infrastructure.mailer import Notifier
from rentacar.infrastructure.payment_gateway import KonnectGateway
from rentacar.services.prolongations import ProlongationService
from rentacar.services.reservations import ReservationService


class AdminAuthError(RentalError):
    status_code = 401


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_settings() -> Settings:
    return settings


def get_gateway(request: Request) -> KonnectGateway:
    return request.app.state.gateway


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_document_store(request: Request) -> DocumentStore:
    return request.app.state.documents


def get_reservation_service(
    db: AsyncSession = Depends(get_db),
    gateway: KonnectGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    config: Settings = Depends(get_settings),
) -> ReservationService:
    return ReservationService(db, gateway, notifier, config)


def get_prolongation_service(
    db: AsyncSession = Depends(get_db),
    gateway: KonnectGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    config: Settings = Depends(get_settings),
) -> ProlongationService:
    return ProlongationService(db, gateway, notifier, config)


async def require_admin(
    x_admin_key: Optional[str] = Header(None),
    config: Settings = Depends(get_settings),
) -> None:
    if not x_admin_key or not hmac.compare_digest(x_admin_key, config.admin_api_key):
        raise AdminAuthError("Admin credentials required")
