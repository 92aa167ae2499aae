"""Initial schema: riders, captains, coupons, rides, ride events, tracking"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_STATUS_SQL = "status IN ('searching', 'accepted', 'arriving', 'arrived', 'started')"


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(10, 2), nullable=nullable, server_default=None if nullable else "0")


def upgrade() -> None:
    op.create_table(
        "riders",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("rating_average", sa.Float, nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "captains",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), unique=True, nullable=False),
        sa.Column("vehicle_class", sa.String(20), nullable=False, server_default="bike"),
        sa.Column("approval_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("is_online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("is_on_ride", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rating_average", sa.Float, nullable=False, server_default="0"),
        sa.Column("rating_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_rides", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_earnings", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_captains_class_flags", "captains", ["vehicle_class", "is_online", "is_on_ride"])

    op.create_table(
        "coupons",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("code", sa.String(40), unique=True, nullable=False),
        sa.Column("discount_type", sa.String(20), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        _money("max_discount", nullable=True),
        _money("min_order_value", nullable=True),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("usage_limit", sa.Integer, nullable=True),
        sa.Column("used_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("per_user_limit", sa.Integer, nullable=False, server_default="1"),
        sa.Column("applicable_classes", sa.JSON, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "rides",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("code", sa.String(32), unique=True, nullable=False),
        sa.Column("rider_id", sa.String, sa.ForeignKey("riders.id"), nullable=False),
        sa.Column("captain_id", sa.String, sa.ForeignKey("captains.id"), nullable=True),
        sa.Column("vehicle_class", sa.String(20), nullable=False),
        sa.Column("pickup_address", sa.String(500), nullable=False, server_default=""),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dest_address", sa.String(500), nullable=False, server_default=""),
        sa.Column("dest_lat", sa.Float, nullable=False),
        sa.Column("dest_lng", sa.Float, nullable=False),
        sa.Column("route_distance_km", sa.Float, nullable=False, server_default="0"),
        sa.Column("route_duration_min", sa.Float, nullable=False, server_default="0"),
        sa.Column("route_polyline", sa.Text, nullable=True),
        _money("base_fare"),
        _money("distance_fare"),
        _money("time_fare"),
        _money("surge_fare"),
        _money("discount"),
        _money("toll_charges"),
        _money("waiting_charges"),
        _money("total_fare"),
        _money("platform_fee"),
        _money("captain_earnings"),
        _money("tip_total"),
        sa.Column("surge_multiplier", sa.Numeric(4, 2), nullable=False, server_default="1.0"),
        sa.Column("coupon_id", sa.String, sa.ForeignKey("coupons.id"), nullable=True),
        sa.Column("payment_method", sa.String(20), nullable=False),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("otp_code", sa.String(8), nullable=False),
        sa.Column("otp_verified", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="searching"),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("match_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arriving_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancel_reason", sa.String(500), nullable=True),
        _money("cancellation_fee"),
        sa.Column("rider_rating", sa.Integer, nullable=True),
        sa.Column("rider_comment", sa.String(1000), nullable=True),
        sa.Column("captain_rating", sa.Integer, nullable=True),
        sa.Column("captain_comment", sa.String(1000), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_rides_rider_id", "rides", ["rider_id"])
    op.create_index("ix_rides_captain_id", "rides", ["captain_id"])
    op.create_index("ix_rides_status", "rides", ["status"])
    op.create_index("idx_rides_status_deadline", "rides", ["status", "match_deadline"])
    op.create_index("idx_rides_status_scheduled", "rides", ["status", "scheduled_at"])
    op.create_index("idx_rides_class_status", "rides", ["vehicle_class", "status"])
    # At most one active ride per rider and per captain
    op.create_index(
        "uq_rides_active_rider", "rides", ["rider_id"], unique=True,
        postgresql_where=sa.text(ACTIVE_STATUS_SQL),
    )
    op.create_index(
        "uq_rides_active_captain", "rides", ["captain_id"], unique=True,
        postgresql_where=sa.text(ACTIVE_STATUS_SQL + " AND captain_id IS NOT NULL"),
    )

    op.create_table(
        "ride_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("from_status", sa.String(20), nullable=True),
        sa.Column("to_status", sa.String(20), nullable=False),
        sa.Column("actor_kind", sa.String(20), nullable=False),
        sa.Column("actor_id", sa.String, nullable=True),
        sa.Column("captain_id", sa.String, nullable=True),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ride_events_ride_id", "ride_events", ["ride_id"])
    op.create_index("idx_ride_events_captain_kind", "ride_events", ["captain_id", "kind", "at"])

    op.create_table(
        "ride_tracking",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("lat", sa.Float, nullable=False),
        sa.Column("lng", sa.Float, nullable=False),
        sa.Column("heading", sa.Float, nullable=True),
        sa.Column("speed", sa.Float, nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_ride_tracking_ride_id", "ride_tracking", ["ride_id"])

    op.create_table(
        "coupon_redemptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("coupon_id", sa.String, sa.ForeignKey("coupons.id"), nullable=False),
        sa.Column("rider_id", sa.String, nullable=False),
        sa.Column("ride_id", sa.String, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("redeemed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_coupon_redemptions_coupon_id", "coupon_redemptions", ["coupon_id"])
    op.create_index("ix_coupon_redemptions_rider_id", "coupon_redemptions", ["rider_id"])


def downgrade() -> None:
    op.drop_table("coupon_redemptions")
    op.drop_table("ride_tracking")
    op.drop_table("ride_events")
    op.drop_table("rides")
    op.drop_table("coupons")
    op.drop_table("captains")
    op.drop_table("riders")
