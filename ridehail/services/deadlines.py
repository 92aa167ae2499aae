"""
Durable matching-deadline supervision.

Each searching ride carries a persisted ``match_deadline``. The supervisor
scans for overdue rides on start (recovering anything orphaned by a
restart), then sleeps until the earliest pending deadline or the poll
interval, whichever comes first. ``arm()`` wakes it early when a nearer
deadline is created. Expiry itself is a conditional write in the
orchestrator, so a deadline takes effect at most once.

Held scheduled rides are released into matching by the same loop once their
``scheduled_at`` arrives, before any expiry is considered.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridehail.config import Settings, get_settings
from ridehail.models.ride import Ride

logger = logging.getLogger(__name__)

RideCallback = Callable[[str], Awaitable[bool]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeadlineSupervisor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        expire: RideCallback,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        dispatch: RideCallback | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._expire = expire
        self._dispatch = dispatch
        self.settings = settings or get_settings()
        self._clock = clock
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        recovered = await self.scan_once()
        if recovered:
            logger.warning("Deadline recovery expired %d overdue rides", len(recovered))
        self._task = asyncio.create_task(self._run(), name="deadline-supervisor")
        logger.info("Deadline supervisor started")

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Deadline supervisor stopped")

    def arm(self, ride_id: str, deadline: datetime) -> None:
        logger.debug("Armed deadline ride=%s at %s", ride_id, deadline.isoformat())
        self._wake.set()

    async def scan_once(self) -> list[str]:
        """Release due scheduled rides, then expire every searching ride past its deadline; returns the ids expired."""
        if self._dispatch is not None:
            await self.release_due()

        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                select(Ride.id)
                .where(
                    Ride.status == "searching",
                    Ride.dispatched_at.is_not(None),
                    Ride.match_deadline <= now,
                )
                .order_by(Ride.match_deadline)
            )
            overdue = list(result.scalars().all())

        expired = []
        for ride_id in overdue:
            try:
                if await self._expire(ride_id):
                    expired.append(ride_id)
            except Exception as exc:
                logger.error("Failed to expire ride=%s: %s", ride_id, exc, exc_info=True)
        return expired

    async def release_due(self) -> list[str]:
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                select(Ride.id)
                .where(Ride.status == "searching", Ride.dispatched_at.is_(None), Ride.scheduled_at <= now)
                .order_by(Ride.scheduled_at)
            )
            due = list(result.scalars().all())

        released = []
        for ride_id in due:
            try:
                if await self._dispatch(ride_id):
                    released.append(ride_id)
            except Exception as exc:
                logger.error("Failed to release scheduled ride=%s: %s", ride_id, exc, exc_info=True)
        return released

    async def next_deadline(self) -> datetime | None:
        async with self._session_factory() as db:
            deadline = await db.scalar(
                select(func.min(Ride.match_deadline)).where(
                    Ride.status == "searching", Ride.dispatched_at.is_not(None)
                )
            )
            release = await db.scalar(
                select(func.min(Ride.scheduled_at)).where(
                    Ride.status == "searching", Ride.dispatched_at.is_(None)
                )
            )
        upcoming = [t for t in (deadline, release) if t is not None]
        return min(upcoming) if upcoming else None

    async def _run(self) -> None:
        poll = self.settings.deadline_poll_interval_seconds
        while not self._stopping:
            self._wake.clear()
            try:
                await self.scan_once()
                upcoming = await self.next_deadline()
            except Exception as exc:
                logger.error("Deadline scan failed: %s", exc, exc_info=True)
                upcoming = None

            timeout = poll
            if upcoming is not None:
                if upcoming.tzinfo is None:
                    upcoming = upcoming.replace(tzinfo=timezone.utc)
                timeout = max(0.5, min(poll, (upcoming - self._clock()).total_seconds()))
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
