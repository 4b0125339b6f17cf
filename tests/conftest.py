"""
Shared test fixtures.

Uses a per-test SQLite file database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  Every transaction opens with
``BEGIN IMMEDIATE``: concurrent writers queue on the database lock the way
they queue on the matriculation row lock in PostgreSQL, which keeps the
double-booking tests meaningful.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from rentacar.config import Settings
from rentacar.domain.entities import BookingRequest, RenterDetails, utc_today
from rentacar.domain.enums import (
    FuelType,
    MatriculationStatus,
    Transmission,
    VehicleCategory,
)
from rentacar.domain.errors import GatewayNotFound
from rentacar.infrastructure.database import Base
from rentacar.infrastructure.documents import DocumentStore, UploadedDocument
from rentacar.infrastructure.mailer import Notifier
from rentacar.infrastructure.models import (
    MatriculationModel,
    RenterModel,
    VehicleModel,
)
from rentacar.infrastructure.payment_gateway import PaymentInit, PaymentStatus

PDF_BYTES = b"%PDF-1.4 test document"
PNG_BYTES = b"\x89PNG\r\n\x1a\n test image"


# ── Test doubles ──────────────────────────────────────────────────────


class FakeGateway:
    """In-memory stand-in for ``KonnectGateway``."""

    def __init__(self):
        self.initiated: list[dict] = []
        self.payments: dict[str, PaymentStatus] = {}
        self.fail_initiate: Optional[Exception] = None

    async def initiate(
        self,
        *,
        order_id,
        amount,
        currency,
        payer,
        success_url,
        error_url,
        description,
        lifespan_minutes=None,
    ) -> PaymentInit:
        if self.fail_initiate is not None:
            raise self.fail_initiate
        ref = f"ref-{len(self.initiated) + 1}"
        self.initiated.append(
            {
                "payment_ref": ref,
                "order_id": order_id,
                "amount": amount,
                "currency": currency,
                "payer": payer,
                "success_url": success_url,
                "description": description,
                "lifespan_minutes": lifespan_minutes,
            }
        )
        self.payments[ref] = PaymentStatus("pending", amount, order_id)
        return PaymentInit(payment_ref=ref, pay_url=f"https://pay.test/{ref}")

    def complete(self, ref: str, **overrides) -> None:
        """Mark a payment completed, optionally tampering with its fields."""
        self.payments[ref] = replace(self.payments[ref], status="completed", **overrides)

    async def get_status(self, payment_ref: str) -> PaymentStatus:
        if payment_ref not in self.payments:
            raise GatewayNotFound("Invalid ID: Payment not found")
        return self.payments[payment_ref]


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = fail

    async def send(self, to: str, subject: str, body: str) -> None:
        if self.fail:
            raise ConnectionRefusedError("SMTP down")
        self.sent.append((to, subject, body))


@dataclass
class Catalog:
    vehicle_id: int
    renter_id: int
    plate: str = "111 TU 1111"
    spare_plate: str = "111 TU 2222"
    workshop_plate: str = "111 TU 3333"
    price_per_day: float = 100.0


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh schema in a throw-away SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def catalog(session_factory) -> Catalog:
    """One vehicle with two free plates and one in the workshop, one renter."""
    async with session_factory() as session:
        vehicle = VehicleModel(
            brand="Renault",
            model="Clio",
            category=VehicleCategory.ECONOMY,
            price_per_day=100.0,
            fuel=FuelType.PETROL,
            seats=5,
            transmission=Transmission.MANUAL,
            year=2023,
        )
        session.add(vehicle)
        await session.flush()
        session.add_all(
            [
                MatriculationModel(vehicle_id=vehicle.id, plate_number="111 TU 1111"),
                MatriculationModel(vehicle_id=vehicle.id, plate_number="111 TU 2222"),
                MatriculationModel(
                    vehicle_id=vehicle.id,
                    plate_number="111 TU 3333",
                    status=MatriculationStatus.MAINTENANCE,
                ),
            ]
        )
        renter = RenterModel(
            full_name="Yassine Ben Ali",
            email="yassine@example.com",
            phone="+21620111222",
            license_id_number="TN-LIC-100234",
        )
        session.add(renter)
        await session.commit()
        return Catalog(vehicle_id=vehicle.id, renter_id=renter.id)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        documents_root=str(tmp_path / "docs"),
        reconciliation_enabled=False,
        admin_api_key="test-admin-key",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def documents(settings) -> DocumentStore:
    return DocumentStore(settings.documents_root, settings.upload_max_bytes)


# ── Builders ──────────────────────────────────────────────────────────


def days_from_today(days: int) -> str:
    return (utc_today() + timedelta(days=days)).isoformat()


def make_request(catalog: Catalog, **overrides) -> BookingRequest:
    """A valid 5-day, 30 % reservation by the seeded renter."""
    renter = overrides.pop("renter", None) or RenterDetails(renter_id=catalog.renter_id)
    fields = {
        "renter": renter,
        "vehicle_id": catalog.vehicle_id,
        "matriculation": catalog.plate,
        "pickup_location": "Aéroport Tunis-Carthage",
        "dropoff_location": "Aéroport Tunis-Carthage",
        "pickup_date": days_from_today(10),
        "dropoff_date": days_from_today(15),
        "pickup_time": "10:00",
        "dropoff_time": "10:00",
        "payment_percentage": 30,
    }
    fields.update(overrides)
    return BookingRequest(**fields)


def new_renter(**overrides) -> RenterDetails:
    fields = {
        "is_new_client": True,
        "full_name": "Amira Trabelsi",
        "email": "amira@example.com",
        "phone": "+21655333444",
        "license_id_number": "TN-LIC-200871",
    }
    fields.update(overrides)
    return RenterDetails(**fields)


def uploads() -> dict[str, UploadedDocument]:
    return {
        "identity": UploadedDocument("identity", "cin.png", "image/png", PNG_BYTES),
        "license": UploadedDocument("license", "permis.pdf", "application/pdf", PDF_BYTES),
    }
