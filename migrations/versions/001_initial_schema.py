"""Initial schema with PostGIS extension, users, rides, notifications and
the effect outbox.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from geoalchemy2 import Geometry


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

ENUM_TYPES = (
    "actorrole",
    "ridestatus",
    "vehicleclass",
    "paymentmethod",
    "paymentstatus",
    "notificationtype",
)


def upgrade() -> None:
    # Enable PostGIS extension
    op.execute("CREATE EXTENSION IF NOT EXISTS postgis")

    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column(
            "role",
            sa.Enum("rider", "driver", "admin", name="actorrole"),
            nullable=False,
            server_default="rider",
        ),
        sa.Column("device_token", sa.String(255), nullable=True),
        sa.Column(
            "is_available", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_users_role_available", "users", ["role", "is_available"]
    )

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "rider_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column(
            "driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True
        ),
        sa.Column(
            "pickup_point", Geometry("POINT", srid=4326), nullable=False
        ),
        sa.Column(
            "dropoff_point", Geometry("POINT", srid=4326), nullable=False
        ),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "accepted",
                "started",
                "completed",
                "cancelled",
                name="ridestatus",
            ),
            server_default="pending",
            nullable=False,
        ),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column(
            "vehicle_class",
            sa.Enum(
                "standard",
                "suv",
                "luxury",
                "van",
                "sedan",
                "electric",
                name="vehicleclass",
            ),
            nullable=False,
        ),
        sa.Column(
            "payment_method",
            sa.Enum("card", "cash", "wallet", name="paymentmethod"),
            nullable=False,
        ),
        sa.Column(
            "payment_status",
            sa.Enum(
                "pending",
                "completed",
                "failed",
                "refunded",
                "voided",
                name="paymentstatus",
            ),
            server_default="pending",
            nullable=False,
        ),
        sa.Column("distance_km", sa.Float, nullable=False),
        sa.Column("duration_min", sa.Float, nullable=False),
        sa.Column("base_fare", sa.Numeric(10, 2), nullable=False),
        sa.Column("surge_multiplier", sa.Float, nullable=False),
        sa.Column("final_fare", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("fare_breakdown", sa.JSON, nullable=False),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_rides_pickup", "rides", ["pickup_point"], postgresql_using="gist"
    )
    op.create_index(
        "idx_rides_dropoff", "rides", ["dropoff_point"], postgresql_using="gist"
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_rider", "rides", ["rider_id"])
    op.create_index("idx_rides_driver", "rides", ["driver_id"])
    op.create_index("idx_rides_idempotency", "rides", ["idempotency_key"])

    # ── notifications ─────────────────────────────────────────────────
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column(
            "ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=True
        ),
        sa.Column(
            "type",
            sa.Enum(
                "ride_requested",
                "ride_accepted",
                "ride_started",
                "ride_completed",
                "ride_cancelled",
                name="notificationtype",
            ),
            nullable=False,
        ),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column(
            "status", sa.String(20), nullable=False, server_default="pending"
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_notifications_user", "notifications", ["user_id"])
    op.create_index("idx_notifications_ride", "notifications", ["ride_id"])

    # ── effect_outbox ─────────────────────────────────────────────────
    op.create_table(
        "effect_outbox",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=True
        ),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("effect", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_effect_outbox_created", "effect_outbox", ["created_at"])


def downgrade() -> None:
    op.drop_table("effect_outbox")
    op.drop_table("notifications")
    op.drop_table("rides")
    op.drop_table("users")
    for name in ENUM_TYPES:
        op.execute(f"DROP TYPE IF EXISTS {name}")
