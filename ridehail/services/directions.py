"""
Directions / ETA adapter.

Talks to the Google Directions JSON API when a key is configured, with
bounded retries. Any upstream failure degrades to the straight-line
heuristic so booking never fails because maps are down.
"""
import asyncio
import logging
from dataclasses import dataclass

import httpx

from ridehail.config import Settings, get_settings
from ridehail.errors import UpstreamFailure
from ridehail.geo import haversine_km, heuristic_eta_minutes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Route:
    distance_km: float
    duration_min: float
    polyline: str | None = None
    source: str = "heuristic"


class DirectionsClient:
    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self.base_url = self.settings.directions_base_url.rstrip("/")
        self.api_key = self.settings.directions_api_key.strip()
        self._client = client
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def heuristic_route(self, origin: tuple[float, float], destination: tuple[float, float]) -> Route:
        distance = haversine_km(origin[0], origin[1], destination[0], destination[1])
        minutes = heuristic_eta_minutes(distance, self.settings.average_speed_kmph)
        return Route(distance_km=round(distance, 3), duration_min=float(minutes))

    async def route(self, origin: tuple[float, float], destination: tuple[float, float]) -> Route:
        if not self.enabled:
            return self.heuristic_route(origin, destination)
        try:
            return await self._fetch_with_retries(origin, destination)
        except UpstreamFailure as exc:
            logger.warning("Directions unavailable, using heuristic route: %s", exc)
            return self.heuristic_route(origin, destination)

    async def eta_minutes(self, origin: tuple[float, float], destination: tuple[float, float]) -> int:
        route = await self.route(origin, destination)
        return max(1, round(route.duration_min))

    async def _fetch_with_retries(self, origin: tuple[float, float], destination: tuple[float, float]) -> Route:
        attempts = max(0, self.settings.directions_max_retries) + 1
        last_error: Exception | None = None
        for attempt in range(attempts):
            try:
                return await self._fetch(origin, destination)
            except (httpx.HTTPError, UpstreamFailure, ValueError) as exc:
                last_error = exc
                if attempt < attempts - 1:
                    await asyncio.sleep(self.settings.directions_backoff_seconds * (2 ** attempt))
        raise UpstreamFailure(f"directions failed after {attempts} attempts: {last_error}")

    async def _fetch(self, origin: tuple[float, float], destination: tuple[float, float]) -> Route:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.directions_timeout_seconds)
        resp = await self._client.get(
            f"{self.base_url}/maps/api/directions/json",
            params={
                "key": self.api_key,
                "origin": f"{origin[0]:.6f},{origin[1]:.6f}",
                "destination": f"{destination[0]:.6f},{destination[1]:.6f}",
                "mode": "driving",
                "departure_time": "now",
            },
        )
        if resp.status_code >= 400:
            raise UpstreamFailure(f"directions bad status {resp.status_code}")
        body = resp.json() or {}
        if (body.get("status") or "").upper() != "OK":
            raise UpstreamFailure(f"directions status {body.get('status')}")
        routes = body.get("routes") or []
        if not routes:
            raise UpstreamFailure("directions returned no routes")

        first = routes[0]
        dist_m = 0
        dur_s = 0
        for leg in first.get("legs") or []:
            dist_m += int((leg.get("distance") or {}).get("value") or 0)
            # Prefer duration_in_traffic when available
            dur = (leg.get("duration_in_traffic") or {}).get("value")
            if dur is None:
                dur = (leg.get("duration") or {}).get("value") or 0
            dur_s += int(dur)
        return Route(
            distance_km=round(dist_m / 1000.0, 3),
            duration_min=round(max(60, dur_s) / 60.0, 1),
            polyline=(first.get("overview_polyline") or {}).get("points"),
            source="directions",
        )
