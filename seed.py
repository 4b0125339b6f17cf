"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 6 vehicle listings with 2-3 plates each (one plate in maintenance)
  - 3 renters (documents are not seeded)
  - 4 reservations (pending, paid and completed) with their holds
"""

import asyncio
import uuid
from datetime import date, timedelta

from sqlalchemy import text

from rentacar.domain.enums import (
    FuelType,
    MatriculationStatus,
    ReservationStatus,
    Transmission,
    VehicleCategory,
)
from rentacar.domain.pricing import RentalPricingEngine
from rentacar.infrastructure.database import async_session_factory, engine
from rentacar.infrastructure.models import (
    MatriculationModel,
    RenterModel,
    ReservationModel,
    UnavailablePeriodModel,
    VehicleModel,
)


VEHICLES = [
    {"brand": "Renault", "model": "Clio", "category": VehicleCategory.ECONOMY, "price": 90.0,
     "fuel": FuelType.PETROL, "seats": 5, "transmission": Transmission.MANUAL, "year": 2022,
     "plates": ["210 TU 4521", "210 TU 4522", "211 TU 1080"]},
    {"brand": "Peugeot", "model": "208", "category": VehicleCategory.ECONOMY, "price": 95.0,
     "fuel": FuelType.DIESEL, "seats": 5, "transmission": Transmission.MANUAL, "year": 2023,
     "plates": ["215 TU 3300", "215 TU 3301"]},
    {"brand": "Kia", "model": "Sportage", "category": VehicleCategory.SUV, "price": 180.0,
     "fuel": FuelType.DIESEL, "seats": 5, "transmission": Transmission.AUTOMATIC, "year": 2023,
     "plates": ["220 TU 7001", "220 TU 7002"]},
    {"brand": "Hyundai", "model": "Tucson", "category": VehicleCategory.SUV, "price": 170.0,
     "fuel": FuelType.HYBRID, "seats": 5, "transmission": Transmission.AUTOMATIC, "year": 2024,
     "plates": ["224 TU 9110", "224 TU 9111"]},
    {"brand": "Mercedes", "model": "Classe C", "category": VehicleCategory.LUXURY, "price": 350.0,
     "fuel": FuelType.PETROL, "seats": 5, "transmission": Transmission.AUTOMATIC, "year": 2024,
     "plates": ["226 TU 0042", "226 TU 0043"]},
    {"brand": "Tesla", "model": "Model 3", "category": VehicleCategory.LUXURY, "price": 320.0,
     "fuel": FuelType.ELECTRIC, "seats": 5, "transmission": Transmission.AUTOMATIC, "year": 2024,
     "plates": ["227 TU 5500", "227 TU 5501"]},
]

# Put one unit in the workshop so maintenance shows up in availability
MAINTENANCE_PLATES = {"211 TU 1080"}

RENTERS = [
    {"full_name": "Yassine Ben Ali", "email": "yassine@example.com",
     "phone": "+21620111222", "license_id_number": "TN-LIC-100234"},
    {"full_name": "Amira Trabelsi", "email": "amira@example.com",
     "phone": "+21655333444", "license_id_number": "TN-LIC-100871"},
    {"full_name": "Karim Jaziri", "email": "karim@example.com",
     "phone": "+21698555666", "license_id_number": "TN-LIC-101502"},
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM vehicles"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Vehicles + plates ─────────────────────────────────────────
        plates: dict[str, MatriculationModel] = {}
        vehicles: dict[str, VehicleModel] = {}
        for v in VEHICLES:
            vehicle = VehicleModel(
                brand=v["brand"],
                model=v["model"],
                category=v["category"],
                price_per_day=v["price"],
                fuel=v["fuel"],
                seats=v["seats"],
                transmission=v["transmission"],
                year=v["year"],
            )
            session.add(vehicle)
            await session.flush()
            vehicles[v["model"]] = vehicle
            for plate in v["plates"]:
                m = MatriculationModel(
                    vehicle_id=vehicle.id,
                    plate_number=plate,
                    status=(
                        MatriculationStatus.MAINTENANCE
                        if plate in MAINTENANCE_PLATES
                        else MatriculationStatus.AVAILABLE
                    ),
                )
                session.add(m)
                plates[plate] = m
        await session.flush()
        print(f"  Created {len(vehicles)} vehicles with {len(plates)} plates")

        # ── Renters ───────────────────────────────────────────────────
        renters = []
        for r in RENTERS:
            renter = RenterModel(**r)
            session.add(renter)
            renters.append(renter)
        await session.flush()
        print(f"  Created {len(renters)} renters")

        # ── Reservations (with holds) ─────────────────────────────────
        today = date.today()
        pricing = RentalPricingEngine()
        reservations_data = [
            ("Clio", "210 TU 4521", renters[0], today + timedelta(days=5), 4, ReservationStatus.PENDING, 30),
            ("Sportage", "220 TU 7001", renters[1], today - timedelta(days=1), 6, ReservationStatus.PAID, 100),
            ("Classe C", "226 TU 0042", renters[2], today + timedelta(days=14), 12, ReservationStatus.PAID, 30),
            ("208", "215 TU 3300", renters[0], today - timedelta(days=20), 5, ReservationStatus.COMPLETED, 100),
        ]
        for model, plate, renter, pickup, days, status, pct in reservations_data:
            vehicle = vehicles[model]
            total = pricing.total_price(days, vehicle.price_per_day)
            paid = 0.0 if status == ReservationStatus.PENDING else round(total * pct / 100, 3)
            reservation = ReservationModel(
                renter_id=renter.id,
                vehicle_id=vehicle.id,
                matriculation_id=plates[plate].id,
                matriculation=plate,
                pickup_location="Aéroport Tunis-Carthage",
                dropoff_location="Aéroport Tunis-Carthage",
                pickup_date=pickup,
                dropoff_date=pickup + timedelta(days=days),
                pickup_time="10:00",
                dropoff_time="10:00",
                status=status,
                order_id=uuid.uuid4().hex,
                total_price=total,
                payment_percentage=pct,
                amount_paid=paid,
                currency="TND",
            )
            session.add(reservation)
            await session.flush()
            if status != ReservationStatus.COMPLETED:
                session.add(
                    UnavailablePeriodModel(
                        matriculation_id=plates[plate].id,
                        start_date=reservation.pickup_date,
                        end_date=reservation.dropoff_date,
                        reservation_id=reservation.id,
                    )
                )
        await session.flush()
        print(f"  Created {len(reservations_data)} reservations")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
