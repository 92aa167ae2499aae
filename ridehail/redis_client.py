from datetime import datetime

import redis.asyncio as aioredis

from ridehail.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# GEO helpers
# ---------------------------------------------------------------------------

def captains_geo_key(vehicle_class: str) -> str:
    return f"captains:geo:{vehicle_class}"


def rides_geo_key(vehicle_class: str) -> str:
    return f"rides:geo:{vehicle_class}"


async def geo_add_captain(
    redis: aioredis.Redis,
    vehicle_class: str,
    captain_id: str,
    lat: float,
    lng: float,
    recorded_at: datetime | None = None,
) -> None:
    """Add / update captain position in the geospatial index."""
    await redis.geoadd(captains_geo_key(vehicle_class), [lng, lat, captain_id])
    # Last known position and when the captain sent it, read by ride tracking
    stamp = recorded_at.isoformat() if recorded_at else ""
    await redis.setex(f"captain:{captain_id}:loc", 300, f"{lat},{lng},{stamp}")


async def geo_remove_captain(redis: aioredis.Redis, vehicle_class: str, captain_id: str) -> None:
    await redis.zrem(captains_geo_key(vehicle_class), captain_id)


async def geo_add_ride(redis: aioredis.Redis, vehicle_class: str, ride_id: str, lat: float, lng: float) -> None:
    """Index a searching ride's pickup point (surge demand sampling)."""
    await redis.geoadd(rides_geo_key(vehicle_class), [lng, lat, ride_id])


async def geo_remove_ride(redis: aioredis.Redis, vehicle_class: str, ride_id: str) -> None:
    await redis.zrem(rides_geo_key(vehicle_class), ride_id)


async def geo_nearby(
    redis: aioredis.Redis,
    key: str,
    lat: float,
    lng: float,
    radius_km: float,
    count: int | None = None,
) -> list[tuple[str, float]]:
    """Return ``(member, distance_km)`` pairs nearest-first within the radius."""
    results = await redis.geosearch(
        key,
        longitude=lng,
        latitude=lat,
        radius=radius_km,
        unit="km",
        sort="ASC",
        count=count,
        withdist=True,
    )
    return [(member, float(dist)) for member, dist in results]


async def captain_last_location(
    redis: aioredis.Redis, captain_id: str
) -> tuple[float, float, datetime | None] | None:
    raw = await redis.get(f"captain:{captain_id}:loc")
    if not raw:
        return None
    lat, lng, *rest = raw.split(",")
    recorded_at = datetime.fromisoformat(rest[0]) if rest and rest[0] else None
    return float(lat), float(lng), recorded_at


# ---------------------------------------------------------------------------
# Offer pools
# ---------------------------------------------------------------------------

def offer_pool_key(ride_id: str) -> str:
    return f"ride:{ride_id}:offered"


async def offer_pool_add(redis: aioredis.Redis, ride_id: str, captain_ids: list[str], ttl: int) -> None:
    if not captain_ids:
        return
    key = offer_pool_key(ride_id)
    await redis.sadd(key, *captain_ids)
    await redis.expire(key, ttl)


async def offer_pool_members(redis: aioredis.Redis, ride_id: str) -> set[str]:
    return set(await redis.smembers(offer_pool_key(ride_id)))


async def offer_pool_remove(redis: aioredis.Redis, ride_id: str, captain_id: str) -> None:
    await redis.srem(offer_pool_key(ride_id), captain_id)


async def offer_pool_clear(redis: aioredis.Redis, ride_id: str) -> None:
    await redis.delete(offer_pool_key(ride_id))

