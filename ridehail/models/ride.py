import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, Numeric, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from ridehail.database import Base, UTCDateTime

ACTIVE_STATUS_SQL = "status IN ('searching', 'accepted', 'arriving', 'arrived', 'started')"


class Ride(Base):
    __tablename__ = "rides"
    __table_args__ = (
        # At most one active ride per rider and per captain.
        Index(
            "uq_rides_active_rider",
            "rider_id",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_SQL),
            sqlite_where=text(ACTIVE_STATUS_SQL),
        ),
        Index(
            "uq_rides_active_captain",
            "captain_id",
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_SQL + " AND captain_id IS NOT NULL"),
            sqlite_where=text(ACTIVE_STATUS_SQL + " AND captain_id IS NOT NULL"),
        ),
        Index("idx_rides_status_deadline", "status", "match_deadline"),
        Index("idx_rides_status_scheduled", "status", "scheduled_at"),
        Index("idx_rides_class_status", "vehicle_class", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    rider_id: Mapped[str] = mapped_column(String, ForeignKey("riders.id"), nullable=False, index=True)
    captain_id: Mapped[str | None] = mapped_column(String, ForeignKey("captains.id"), nullable=True, index=True)
    vehicle_class: Mapped[str] = mapped_column(String(20), nullable=False)

    pickup_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dest_address: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    dest_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dest_lng: Mapped[float] = mapped_column(Float, nullable=False)

    route_distance_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    route_duration_min: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    route_polyline: Mapped[str | None] = mapped_column(Text, nullable=True)

    base_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    distance_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    time_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    surge_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    toll_charges: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    waiting_charges: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    total_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    captain_earnings: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    tip_total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    surge_multiplier: Mapped[Decimal] = mapped_column(Numeric(4, 2), nullable=False, default=Decimal("1.0"))
    coupon_id: Mapped[str | None] = mapped_column(String, ForeignKey("coupons.id"), nullable=True)

    # cash | wallet | card | upi
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    # pending | completed | failed | refunded
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    otp_code: Mapped[str] = mapped_column(String(8), nullable=False)
    otp_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # searching | accepted | arriving | arrived | started | completed | cancelled
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="searching", index=True)

    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    match_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    arriving_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Set when the ride is first offered; null while a scheduled ride waits.
    dispatched_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # rider | captain | system | admin
    cancelled_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    cancellation_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))

    # Rating given by the rider to the captain, and by the captain to the rider.
    rider_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rider_comment: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    captain_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    captain_comment: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now(), onupdate=func.now())


class RideEvent(Base):
    """Append-only history of status changes."""

    __tablename__ = "ride_events"
    __table_args__ = (Index("idx_ride_events_captain_kind", "captain_id", "kind", "at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ride_id: Mapped[str] = mapped_column(String, ForeignKey("rides.id"), nullable=False, index=True)
    # book | accept | arriving | arrived | start | complete | cancel | requeue | expire
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    captain_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


class TrackingSample(Base):
    __tablename__ = "ride_tracking"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ride_id: Mapped[str] = mapped_column(String, ForeignKey("rides.id"), nullable=False, index=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
