"""
Captain locator.

Flow:
  1. GEOSEARCH Redis for captains of the ride's class around the pickup
  2. Keep only rows that are online, free and approved (Postgres is ground truth)
  3. Rank: nearest first, then higher rating, then lower recent cancellation rate
  4. Nothing found -> widen the radius step by step up to the cap
"""
import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable

import redis.asyncio as aioredis
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ridehail.config import Settings, get_settings
from ridehail.geo import haversine_km, heuristic_eta_minutes
from ridehail.models.captain import Captain
from ridehail.models.ride import Ride, RideEvent
from ridehail.redis_client import captains_geo_key, geo_nearby, rides_geo_key
from ridehail.services.directions import DirectionsClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    captain_id: str
    distance_km: float
    eta_minutes: int
    rating: float
    cancellation_rate: float


def rank_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
    return sorted(candidates, key=lambda c: (c.distance_km, -c.rating, c.cancellation_rate))


class CaptainLocator:
    def __init__(
        self,
        redis: aioredis.Redis,
        directions: DirectionsClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.redis = redis
        self.directions = directions
        self.settings = settings or get_settings()

    async def find_candidates(
        self,
        db: AsyncSession,
        lat: float,
        lng: float,
        vehicle_class: str,
        now: datetime,
        radius_km: float | None = None,
        exclude: Iterable[str] = (),
        escalate: bool = True,
    ) -> list[Candidate]:
        """Ranked, eligible captains around the pickup; at most ``matching_max_candidates``."""
        radius = radius_km or self.settings.matching_radius_km
        excluded = set(exclude)
        while True:
            found = await self._search(db, lat, lng, vehicle_class, now, radius, excluded)
            if found or not escalate or radius >= self.settings.matching_max_radius_km:
                logger.info(
                    "Locator class=%s radius=%.1fkm -> %d candidates", vehicle_class, radius, len(found)
                )
                return found
            radius = min(radius + self.settings.matching_radius_step_km, self.settings.matching_max_radius_km)

    async def _search(
        self,
        db: AsyncSession,
        lat: float,
        lng: float,
        vehicle_class: str,
        now: datetime,
        radius_km: float,
        excluded: set[str],
    ) -> list[Candidate]:
        hits = await geo_nearby(self.redis, captains_geo_key(vehicle_class), lat, lng, radius_km)
        distances = {captain_id: dist for captain_id, dist in hits if captain_id not in excluded}
        if not distances:
            return []

        result = await db.execute(
            select(Captain).where(
                Captain.id.in_(list(distances)),
                Captain.is_online.is_(True),
                Captain.is_on_ride.is_(False),
                Captain.approval_status == "approved",
                Captain.vehicle_class == vehicle_class,
            )
        )
        captains = result.scalars().all()
        if not captains:
            return []

        rates = await self.cancellation_rates(db, [c.id for c in captains], now)
        speed = self.settings.average_speed_kmph
        ranked = rank_candidates(
            Candidate(
                captain_id=c.id,
                distance_km=distances[c.id],
                eta_minutes=heuristic_eta_minutes(distances[c.id], speed),
                rating=c.rating_average,
                cancellation_rate=rates.get(c.id, 0.0),
            )
            for c in captains
        )[: self.settings.matching_max_candidates]

        if self.directions is not None and self.settings.refine_eta_with_directions:
            ranked = await self._refine_etas(ranked, captains, (lat, lng))
        return ranked

    async def _refine_etas(
        self, ranked: list[Candidate], captains: list[Captain], pickup: tuple[float, float]
    ) -> list[Candidate]:
        positions = {c.id: (c.lat, c.lng) for c in captains if c.lat is not None and c.lng is not None}

        async def refine(candidate: Candidate) -> Candidate:
            origin = positions.get(candidate.captain_id)
            if origin is None:
                return candidate
            # DirectionsClient already degrades to the heuristic on upstream failure
            eta = await self.directions.eta_minutes(origin, pickup)
            return replace(candidate, eta_minutes=eta)

        return list(await asyncio.gather(*(refine(c) for c in ranked)))

    async def cancellation_rates(self, db: AsyncSession, captain_ids: list[str], now: datetime) -> dict[str, float]:
        """Captain requeues / accepts over the trailing window."""
        since = now - timedelta(days=self.settings.cancellation_rate_window_days)
        rows = await db.execute(
            select(RideEvent.captain_id, RideEvent.kind, func.count(RideEvent.id))
            .where(
                RideEvent.captain_id.in_(captain_ids),
                RideEvent.kind.in_(["accept", "requeue"]),
                RideEvent.at >= since,
            )
            .group_by(RideEvent.captain_id, RideEvent.kind)
        )
        counts: dict[str, dict[str, int]] = {}
        for captain_id, kind, n in rows.all():
            counts.setdefault(captain_id, {})[kind] = n
        rates = {}
        for captain_id, by_kind in counts.items():
            accepts = by_kind.get("accept", 0)
            requeues = by_kind.get("requeue", 0)
            rates[captain_id] = min(1.0, requeues / accepts) if accepts else (1.0 if requeues else 0.0)
        return rates

    async def nearby_requests(
        self, db: AsyncSession, captain: Captain, limit: int = 10
    ) -> list[tuple[Ride, float, int]]:
        """Searching rides of the captain's class around the captain, nearest first."""
        if captain.lat is None or captain.lng is None:
            return []
        hits = await geo_nearby(
            self.redis,
            rides_geo_key(captain.vehicle_class),
            captain.lat,
            captain.lng,
            self.settings.matching_radius_km,
        )
        if not hits:
            return []
        result = await db.execute(
            select(Ride).where(
                Ride.id.in_([ride_id for ride_id, _ in hits]),
                Ride.status == "searching",
                Ride.vehicle_class == captain.vehicle_class,
            )
        )
        rides = result.scalars().all()
        out = []
        for ride in rides:
            distance = haversine_km(captain.lat, captain.lng, ride.pickup_lat, ride.pickup_lng)
            out.append((ride, round(distance, 3), heuristic_eta_minutes(distance, self.settings.average_speed_kmph)))
        out.sort(key=lambda item: item[1])
        return out[:limit]
