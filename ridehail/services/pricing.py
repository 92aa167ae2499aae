"""
Surge pricing and fare calculation service.
"""
import logging
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ridehail.config import Settings, get_settings
from ridehail.errors import ValidationFailed
from ridehail.models.captain import Captain
from ridehail.models.ride import Ride
from ridehail.redis_client import captains_geo_key, geo_nearby, rides_geo_key

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Fare calculation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FareBreakdown:
    base: Decimal
    distance_fare: Decimal
    time_fare: Decimal
    surge_fare: Decimal
    discount: Decimal
    total: Decimal
    platform_fee: Decimal
    captain_earnings: Decimal
    toll_charges: Decimal = Decimal("0.00")
    waiting_charges: Decimal = Decimal("0.00")

    def as_dict(self) -> dict[str, float]:
        return {key: float(value) for key, value in asdict(self).items()}


def calculate_fare(
    vehicle_class: str,
    distance_km: float,
    duration_min: float,
    surge_multiplier: float = 1.0,
    coupon_discount: float | Decimal = 0,
    settings: Settings | None = None,
) -> FareBreakdown:
    """
    Pure fare model.

    total = max(base + distance + time + surge - discount, minimum_fare)
    surge applies to the variable (distance + time) components only.
    """
    settings = settings or get_settings()
    rate = settings.fare_rates.get(vehicle_class)
    if rate is None:
        raise ValidationFailed(f"Unknown vehicle class '{vehicle_class}'")
    if distance_km < 0 or duration_min < 0 or surge_multiplier < 1.0 or coupon_discount < 0:
        raise ValidationFailed("Fare inputs must be non-negative and surge at least 1.0")

    base = to_money(rate.base_fare)
    distance_fare = to_money(rate.per_km * distance_km)
    time_fare = to_money(rate.per_minute * duration_min)
    surge_fare = to_money((distance_fare + time_fare) * Decimal(str(surge_multiplier - 1.0)))
    discount = to_money(coupon_discount)

    subtotal = base + distance_fare + time_fare + surge_fare - discount
    total = max(subtotal, to_money(rate.minimum_fare))
    return _split(
        FareBreakdown(
            base=base,
            distance_fare=distance_fare,
            time_fare=time_fare,
            surge_fare=surge_fare,
            discount=discount,
            total=total,
            platform_fee=Decimal("0.00"),
            captain_earnings=Decimal("0.00"),
        ),
        settings.commission_rate,
    )


def apply_adjustments(
    fare: FareBreakdown,
    toll_charges: float | Decimal = 0,
    waiting_charges: float | Decimal = 0,
    settings: Settings | None = None,
) -> FareBreakdown:
    """Add end-of-trip toll / waiting charges and re-split fee and earnings."""
    settings = settings or get_settings()
    toll = to_money(toll_charges)
    waiting = to_money(waiting_charges)
    adjusted = replace(
        fare,
        toll_charges=fare.toll_charges + toll,
        waiting_charges=fare.waiting_charges + waiting,
        total=fare.total + toll + waiting,
    )
    return _split(adjusted, settings.commission_rate)


def _split(fare: FareBreakdown, commission_rate: float) -> FareBreakdown:
    platform_fee = to_money(fare.total * Decimal(str(commission_rate)))
    return replace(fare, platform_fee=platform_fee, captain_earnings=fare.total - platform_fee)


def estimate_fare_range(fare: FareBreakdown, currency: str = "INR") -> dict:
    """Used in the estimate response (min/max window ±10%)."""
    total_f = float(fare.total)
    return {
        "min": round(total_f * 0.9, 2),
        "max": round(total_f * 1.1, 2),
        "currency": currency,
    }


# ---------------------------------------------------------------------------
# Surge computation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SurgeReading:
    demand: int
    supply: int
    multiplier: float


def surge_for_supply(supply: int, settings: Settings | None = None) -> float:
    """Step function of nearby supply, clamped to the configured bounds."""
    settings = settings or get_settings()
    if supply < 3:
        multiplier = 2.0
    elif supply < 5:
        multiplier = 1.5
    elif supply < 10:
        multiplier = 1.2
    else:
        multiplier = 1.0
    return min(max(multiplier, settings.min_surge_multiplier), settings.max_surge_multiplier)


async def compute_surge(
    redis: aioredis.Redis,
    db: AsyncSession,
    lat: float,
    lng: float,
    vehicle_class: str,
    now: datetime,
    settings: Settings | None = None,
) -> SurgeReading:
    """
    Samples demand and supply around the pickup point.

    Keys used:
      rides:geo:{class}     - pickup points of searching rides
      captains:geo:{class}  - positions of online captains
    The relational rows are ground truth for status / flags.
    Never cached: supply moves continuously.
    """
    settings = settings or get_settings()
    try:
        ride_hits = await geo_nearby(redis, rides_geo_key(vehicle_class), lat, lng, settings.surge_radius_km)
        captain_hits = await geo_nearby(redis, captains_geo_key(vehicle_class), lat, lng, settings.surge_radius_km)

        demand = 0
        if ride_hits:
            window_start = now - timedelta(minutes=settings.surge_window_minutes)
            demand = await db.scalar(
                select(func.count(Ride.id)).where(
                    Ride.id.in_([ride_id for ride_id, _ in ride_hits]),
                    Ride.status == "searching",
                    Ride.vehicle_class == vehicle_class,
                    Ride.requested_at >= window_start,
                )
            ) or 0

        supply = 0
        if captain_hits:
            supply = await db.scalar(
                select(func.count(Captain.id)).where(
                    Captain.id.in_([captain_id for captain_id, _ in captain_hits]),
                    Captain.is_online.is_(True),
                    Captain.is_on_ride.is_(False),
                    Captain.approval_status == "approved",
                    Captain.vehicle_class == vehicle_class,
                )
            ) or 0
    except (RedisError, SQLAlchemyError) as exc:
        logger.error("Surge sampling failed class=%s: %s", vehicle_class, exc)
        return SurgeReading(demand=0, supply=0, multiplier=settings.min_surge_multiplier)

    multiplier = surge_for_supply(supply, settings)
    logger.debug("Surge class=%s demand=%d supply=%d -> %.2fx", vehicle_class, demand, supply, multiplier)
    return SurgeReading(demand=demand, supply=supply, multiplier=multiplier)
