import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Float, Index, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from ridehail.database import Base, UTCDateTime


class Captain(Base):
    __tablename__ = "captains"
    __table_args__ = (Index("idx_captains_class_flags", "vehicle_class", "is_online", "is_on_ride"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    vehicle_class: Mapped[str] = mapped_column(String(20), nullable=False, default="bike")
    # pending | approved | rejected | suspended
    approval_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_on_ride: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    rating_average: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_rides: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earnings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now(), onupdate=func.now())
