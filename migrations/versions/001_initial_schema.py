"""Initial schema with btree_gist extension and all core tables.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Needed to mix "=" and "&&" in one GiST exclusion constraint
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    # ── renters ───────────────────────────────────────────────────────
    op.create_table(
        "renters",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("full_name", sa.String(160), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("license_id_number", sa.String(64), unique=True, nullable=False),
        sa.Column("identity_doc_url", sa.String(255), nullable=True),
        sa.Column("license_url", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── vehicles ──────────────────────────────────────────────────────
    op.create_table(
        "vehicles",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("brand", sa.String(80), nullable=False),
        sa.Column("model", sa.String(80), nullable=False),
        sa.Column(
            "category",
            sa.Enum("economique", "SUV", "luxe", name="vehiclecategory"),
            nullable=False,
        ),
        sa.Column("price_per_day", sa.Float, nullable=False),
        sa.Column(
            "fuel",
            sa.Enum("essence", "diesel", "electrique", "hybride", name="fueltype"),
            nullable=False,
        ),
        sa.Column("seats", sa.Integer, nullable=False),
        sa.Column(
            "transmission",
            sa.Enum("auto", "manuelle", name="transmission"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── matriculations ────────────────────────────────────────────────
    op.create_table(
        "matriculations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "vehicle_id",
            sa.Integer,
            sa.ForeignKey("vehicles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("plate_number", sa.String(32), nullable=False),
        sa.Column(
            "status",
            sa.Enum("available", "rented", "maintenance", name="matriculationstatus"),
            nullable=False,
            server_default="available",
        ),
        sa.UniqueConstraint(
            "vehicle_id", "plate_number", name="uq_matriculation_plate"
        ),
    )
    op.create_index("idx_matriculations_vehicle", "matriculations", ["vehicle_id"])

    # ── reservations ──────────────────────────────────────────────────
    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "renter_id", sa.Integer, sa.ForeignKey("renters.id"), nullable=False
        ),
        sa.Column(
            "vehicle_id", sa.Integer, sa.ForeignKey("vehicles.id"), nullable=False
        ),
        sa.Column(
            "matriculation_id",
            sa.Integer,
            sa.ForeignKey("matriculations.id"),
            nullable=False,
        ),
        sa.Column("matriculation", sa.String(32), nullable=False),
        sa.Column("pickup_location", sa.String(160), nullable=False),
        sa.Column("dropoff_location", sa.String(160), nullable=False),
        sa.Column("pickup_date", sa.Date, nullable=False),
        sa.Column("dropoff_date", sa.Date, nullable=False),
        sa.Column("pickup_time", sa.String(5), nullable=False),
        sa.Column("dropoff_time", sa.String(5), nullable=False),
        sa.Column("flight_number", sa.String(16), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "paid",
                "confirmed",
                "cancelled",
                "completed",
                "rejected",
                name="reservationstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("order_id", sa.String(64), unique=True, nullable=False),
        sa.Column("payment_ref", sa.String(64), nullable=True),
        sa.Column("total_price", sa.Float, nullable=False),
        sa.Column("payment_percentage", sa.Integer, nullable=False),
        sa.Column("amount_paid", sa.Float, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="TND"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "dropoff_date > pickup_date", name="ck_reservations_dates"
        ),
    )
    op.create_index("idx_reservations_status", "reservations", ["status"])
    op.create_index("idx_reservations_renter", "reservations", ["renter_id"])
    op.create_index(
        "idx_reservations_dates", "reservations", ["pickup_date", "dropoff_date"]
    )
    op.create_index("idx_reservations_payment_ref", "reservations", ["payment_ref"])

    # ── unavailable_periods ───────────────────────────────────────────
    op.create_table(
        "unavailable_periods",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "matriculation_id",
            sa.Integer,
            sa.ForeignKey("matriculations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date, nullable=False),
        sa.Column("end_date", sa.Date, nullable=False),
        sa.Column(
            "reservation_id",
            sa.Integer,
            sa.ForeignKey("reservations.id", ondelete="CASCADE"),
            unique=True,
        ),
        sa.CheckConstraint("end_date >= start_date", name="ck_periods_range"),
    )
    op.create_index(
        "idx_periods_matriculation", "unavailable_periods", ["matriculation_id"]
    )
    # Inclusive day ranges of one plate may never overlap
    op.execute(
        """
        ALTER TABLE unavailable_periods
        ADD CONSTRAINT ex_periods_no_overlap
        EXCLUDE USING gist (
            matriculation_id WITH =,
            daterange(start_date, end_date, '[]') WITH &&
        )
        """
    )

    # ── prolongation_requests ─────────────────────────────────────────
    op.create_table(
        "prolongation_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "reservation_id",
            sa.Integer,
            sa.ForeignKey("reservations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("new_dropoff_date", sa.Date, nullable=False),
        sa.Column("additional_days", sa.Integer, nullable=False, server_default="0"),
        sa.Column("additional_cost", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "waiting_for_payment",
                "accepted",
                "rejected",
                name="prolongationstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column(
            "payment_status",
            sa.Enum("unpaid", "paid", name="paymentstate"),
            nullable=False,
            server_default="unpaid",
        ),
        sa.Column("order_id", sa.String(64), unique=True, nullable=True),
        sa.Column("payment_ref", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_prolongations_status", "prolongation_requests", ["status"]
    )
    op.create_index(
        "idx_prolongations_reservation", "prolongation_requests", ["reservation_id"]
    )


def downgrade() -> None:
    op.drop_table("prolongation_requests")
    op.drop_table("unavailable_periods")
    op.drop_table("reservations")
    op.drop_table("matriculations")
    op.drop_table("vehicles")
    op.drop_table("renters")
    for enum_name in (
        "paymentstate",
        "prolongationstatus",
        "reservationstatus",
        "matriculationstatus",
        "transmission",
        "fueltype",
        "vehiclecategory",
    ):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
