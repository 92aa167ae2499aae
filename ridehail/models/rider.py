from datetime import datetime

from sqlalchemy import Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from ridehail.database import Base, UTCDateTime


class Rider(Base):
    """Rider-side rating state; identity itself lives with the auth service."""

    __tablename__ = "riders"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    rating_average: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
