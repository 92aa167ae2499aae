"""
Shared fixtures: temporary SQLite store, in-memory GEO redis double,
recording sockets and a controllable clock.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from ridehail.config import Settings
from ridehail.database import Base, create_engine, create_session_factory
from ridehail.geo import haversine_km
from ridehail.models.captain import Captain
from ridehail.realtime import ConnectionRegistry, captain_room, rider_room
from ridehail.redis_client import geo_add_captain
from ridehail.services.directions import DirectionsClient
from ridehail.services.dispatch import DispatchOrchestrator
from ridehail.services.wallet import WalletLedger

# Bengaluru, MG Road -> Koramangala
PICKUP = {"address": "MG Road", "lat": 12.9716, "lng": 77.5946}
DESTINATION = {"address": "Koramangala", "lat": 12.9352, "lng": 77.6245}


class Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSocket:
    """Stands in for a WebSocket; keeps every JSON frame sent to it."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False

    async def accept(self) -> None:
        pass

    async def send_json(self, payload: dict) -> None:
        self.sent.append(payload)

    async def close(self) -> None:
        self.closed = True

    def events(self, name: str | None = None) -> list[dict]:
        return [m for m in self.sent if name is None or m["event"] == name]


def make_redis() -> AsyncMock:
    """AsyncMock redis whose GEO, string and set commands share in-memory state."""
    geo: dict[str, dict[str, tuple[float, float]]] = {}
    kv: dict[str, str] = {}
    sets: dict[str, set[str]] = {}

    async def geoadd(key, values):
        lng, lat, member = values
        geo.setdefault(key, {})[member] = (lat, lng)
        return 1

    async def geosearch(key, longitude, latitude, radius, unit="km", sort="ASC", count=None, withdist=False):
        hits = []
        for member, (lat, lng) in geo.get(key, {}).items():
            dist = haversine_km(latitude, longitude, lat, lng)
            if dist <= radius:
                hits.append([member, dist])
        hits.sort(key=lambda h: h[1])
        return hits[:count] if count else hits

    async def zrem(key, member):
        return 1 if geo.get(key, {}).pop(member, None) else 0

    async def setex(key, ttl, value):
        kv[key] = value
        return True

    async def get(key):
        return kv.get(key)

    async def sadd(key, *members):
        sets.setdefault(key, set()).update(members)
        return len(members)

    async def smembers(key):
        return set(sets.get(key, set()))

    async def srem(key, member):
        sets.get(key, set()).discard(member)
        return 1

    async def delete(key):
        kv.pop(key, None)
        sets.pop(key, None)
        return 1

    redis = AsyncMock()
    redis.geoadd.side_effect = geoadd
    redis.geosearch.side_effect = geosearch
    redis.zrem.side_effect = zrem
    redis.setex.side_effect = setex
    redis.get.side_effect = get
    redis.sadd.side_effect = sadd
    redis.smembers.side_effect = smembers
    redis.srem.side_effect = srem
    redis.delete.side_effect = delete
    redis.expire.return_value = True
    redis.geo = geo
    redis.kv = kv
    redis.sets = sets
    return redis


@pytest.fixture
def settings():
    return Settings(
        directions_api_key="",
        ledger_base_url="",
        secret_key="test-secret",
        deadline_poll_interval_seconds=0.05,
    )


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def redis():
    return make_redis()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def registry():
    registry = ConnectionRegistry()
    yield registry
    await registry.close()


@pytest_asyncio.fixture
async def orchestrator(session_factory, redis, registry, settings, clock):
    orchestrator = DispatchOrchestrator(
        session_factory,
        redis,
        registry,
        directions=DirectionsClient(settings),
        ledger=WalletLedger(settings),
        settings=settings,
        clock=clock,
    )
    yield orchestrator
    await orchestrator.deadlines.stop()


@pytest.fixture
def add_captain(session_factory, redis):
    """Create an approved, online captain positioned ``offset`` degrees north of the pickup."""
    counter = {"n": 0}

    async def _add(
        vehicle_class: str = "bike",
        offset: float = 0.005,
        rating: float = 4.5,
        approval_status: str = "approved",
        online: bool = True,
    ) -> Captain:
        counter["n"] += 1
        lat, lng = PICKUP["lat"] + offset, PICKUP["lng"]
        captain = Captain(
            name=f"Captain {counter['n']}",
            phone=f"90000000{counter['n']:02d}",
            vehicle_class=vehicle_class,
            approval_status=approval_status,
            is_online=online,
            is_on_ride=False,
            lat=lat,
            lng=lng,
            rating_average=rating,
        )
        async with session_factory() as db:
            db.add(captain)
            await db.commit()
            await db.refresh(captain)
        if online:
            await geo_add_captain(redis, vehicle_class, captain.id, lat, lng)
        return captain

    return _add


@pytest.fixture
def listen(registry):
    """Attach a recording socket to a rider or captain room."""

    async def _listen(kind: str, actor_id: str) -> RecordingSocket:
        socket = RecordingSocket()
        room = rider_room(actor_id) if kind == "rider" else captain_room(actor_id)
        await registry.connect(room, socket)
        return socket

    return _listen
