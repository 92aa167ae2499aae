"""
Dispatch orchestrator.

Drives every ride transition. Each mutation is a conditional UPDATE on the
ride's expected status (compare-and-swap) checked by row count; nothing is
locked across awaits and notifications are sent only after the write has
committed. Acceptance flips the ride and the captain's busy flag in the same
transaction, so a lost race (another captain, the deadline, a cancel)
leaves no trace.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Iterable

import redis.asyncio as aioredis
from fastapi import Request
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ridehail.actors import Actor, AdminActor, CaptainActor, RiderActor
from ridehail.config import Settings, get_settings
from ridehail.errors import Conflict, InvalidState, NotFound, Unauthorized, Unavailable, ValidationFailed
from ridehail.geo import validate_coordinates
from ridehail.models.captain import Captain
from ridehail.models.ride import Ride, RideEvent, TrackingSample
from ridehail.models.rider import Rider
from ridehail.realtime import ConnectionRegistry, captain_room, rider_room
from ridehail.redis_client import (
    captain_last_location,
    geo_add_captain,
    geo_add_ride,
    geo_remove_captain,
    geo_remove_ride,
    offer_pool_add,
    offer_pool_clear,
    offer_pool_members,
    offer_pool_remove,
)
from ridehail.schemas.schemas import PaymentMethodEnum, Place
from ridehail.services import lifecycle
from ridehail.services.coupons import quote_coupon, redeem_coupon, release_coupon
from ridehail.services.deadlines import DeadlineSupervisor, utcnow
from ridehail.services.directions import DirectionsClient
from ridehail.services.lifecycle import S
from ridehail.services.matching import Candidate, CaptainLocator
from ridehail.services.pricing import (
    FareBreakdown,
    SurgeReading,
    apply_adjustments,
    calculate_fare,
    compute_surge,
    estimate_fare_range,
    to_money,
)
from ridehail.services.wallet import WalletLedger

logger = logging.getLogger(__name__)

NO_CAPTAIN_REASON = "No captain available"


@dataclass(frozen=True)
class CancelOutcome:
    ride: Ride
    fee: Decimal
    requeued: bool


@dataclass(frozen=True)
class Tracking:
    ride: Ride
    samples: list[TrackingSample]
    captain_location: dict | None


class DispatchOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: aioredis.Redis,
        registry: ConnectionRegistry,
        directions: DirectionsClient | None = None,
        ledger: WalletLedger | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.redis = redis
        self.registry = registry
        self.directions = directions or DirectionsClient(self.settings)
        self.ledger = ledger or WalletLedger(self.settings)
        self._clock = clock
        self.locator = CaptainLocator(redis, self.directions, self.settings)
        self.deadlines = DeadlineSupervisor(
            session_factory, self.auto_expire, self.settings, clock, dispatch=self.dispatch_scheduled
        )

    # ------------------------------------------------------------------
    # Estimates & booking
    # ------------------------------------------------------------------

    async def estimate(self, pickup: Place, destination: Place, vehicle_class: str) -> dict[str, Any]:
        self._validate_trip(pickup, destination, vehicle_class)
        now = self._now()
        route = await self.directions.route((pickup.lat, pickup.lng), (destination.lat, destination.lng))

        async with self._session_factory() as db:
            surge = await compute_surge(self.redis, db, pickup.lat, pickup.lng, vehicle_class, now, self.settings)
            try:
                nearby = await self.locator.find_candidates(
                    db, pickup.lat, pickup.lng, vehicle_class, now, escalate=False
                )
            except RedisError as exc:
                logger.error("Nearby lookup failed during estimate: %s", exc)
                nearby = []

        fare = calculate_fare(vehicle_class, route.distance_km, route.duration_min, surge.multiplier, settings=self.settings)
        return {
            "fare": fare.as_dict(),
            "fare_range": estimate_fare_range(fare, self.settings.currency),
            "route": {"distance_km": route.distance_km, "duration_min": route.duration_min, "polyline": route.polyline},
            "surge_multiplier": surge.multiplier,
            "nearby_count": len(nearby),
            "estimated_pickup_minutes": nearby[0].eta_minutes if nearby else None,
        }

    async def book(
        self,
        actor: Actor,
        pickup: Place,
        destination: Place,
        vehicle_class: str,
        payment_method: str,
        coupon_code: str | None = None,
        scheduled_at: datetime | None = None,
    ) -> Ride:
        if not isinstance(actor, RiderActor):
            raise Unauthorized("Only riders can book rides")
        self._validate_trip(pickup, destination, vehicle_class)
        if payment_method not in {m.value for m in PaymentMethodEnum}:
            raise ValidationFailed(f"Unsupported payment method '{payment_method}'")

        now = self._now()
        if scheduled_at is not None:
            scheduled_at = self._check_schedule(scheduled_at, now)
        route = await self.directions.route((pickup.lat, pickup.lng), (destination.lat, destination.lng))

        async with self._session_factory() as db:
            if await self._active_ride_id(db, Ride.rider_id == actor.id) is not None:
                raise Conflict("You already have an active ride")
            if await db.get(Rider, actor.id) is None:
                db.add(Rider(id=actor.id))

            if scheduled_at is None:
                surge = await compute_surge(self.redis, db, pickup.lat, pickup.lng, vehicle_class, now, self.settings)
            else:
                # no surge on scheduled rides
                surge = SurgeReading(demand=0, supply=0, multiplier=self.settings.min_surge_multiplier)
            fare = calculate_fare(vehicle_class, route.distance_km, route.duration_min, surge.multiplier, settings=self.settings)
            coupon = None
            if coupon_code:
                quote = await quote_coupon(db, coupon_code, actor.id, vehicle_class, fare.total, now)
                fare = calculate_fare(
                    vehicle_class, route.distance_km, route.duration_min, surge.multiplier,
                    coupon_discount=quote.discount, settings=self.settings,
                )
                coupon = quote.coupon

            ride = Ride(
                id=str(uuid.uuid4()),
                code=lifecycle.generate_ride_code(now),
                rider_id=actor.id,
                vehicle_class=vehicle_class,
                pickup_address=pickup.address,
                pickup_lat=pickup.lat,
                pickup_lng=pickup.lng,
                dest_address=destination.address,
                dest_lat=destination.lat,
                dest_lng=destination.lng,
                route_distance_km=route.distance_km,
                route_duration_min=route.duration_min,
                route_polyline=route.polyline,
                surge_multiplier=Decimal(str(surge.multiplier)),
                payment_method=payment_method,
                payment_status="pending",
                otp_code=lifecycle.generate_otp(self.settings.otp_length),
                otp_verified=False,
                status=S.searching.value,
                requested_at=now,
                match_deadline=(scheduled_at or now) + timedelta(seconds=self.settings.matching_timeout_seconds),
                scheduled_at=scheduled_at,
                dispatched_at=None if scheduled_at else now,
                coupon_id=coupon.id if coupon else None,
                tip_total=Decimal("0"),
                cancellation_fee=Decimal("0"),
                **_fare_columns(fare),
            )
            try:
                db.add(ride)
                db.add(self._event(ride.id, "book", None, S.searching, actor, now))
                if coupon is not None:
                    await redeem_coupon(db, coupon, actor.id, ride.id, now)
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise Conflict("You already have an active ride")
            await db.refresh(ride)

        logger.info(
            "Booked ride=%s code=%s rider=%s class=%s surge=%.2f total=%s",
            ride.id, ride.code, actor.id, vehicle_class, surge.multiplier, ride.total_fare,
        )
        if scheduled_at is not None:
            logger.info("Ride %s held until %s", ride.id, scheduled_at.isoformat())
            self.deadlines.arm(ride.id, scheduled_at)
            return ride
        await self._best_effort(
            geo_add_ride(self.redis, vehicle_class, ride.id, pickup.lat, pickup.lng), "index ride pickup"
        )
        self.deadlines.arm(ride.id, ride.match_deadline)
        await self.offer(ride.id)
        return ride

    async def dispatch_scheduled(self, ride_id: str) -> bool:
        """Release a held scheduled ride into matching. Returns False when it was already released or cancelled."""
        now = self._now()
        deadline = now + timedelta(seconds=self.settings.matching_timeout_seconds)
        async with self._session_factory() as db:
            released = await self._guarded_update(
                db, ride_id,
                Ride.status == S.searching.value,
                Ride.dispatched_at.is_(None),
                Ride.scheduled_at <= now,
                dispatched_at=now,
                match_deadline=deadline,
            )
            if not released:
                await db.rollback()
                return False
            db.add(
                RideEvent(
                    ride_id=ride_id, kind="dispatch", from_status=S.searching.value, to_status=S.searching.value,
                    actor_kind="system", at=now,
                )
            )
            await db.commit()
            ride = await self._load_ride(db, ride_id, fresh=True)

        logger.info("Scheduled ride %s released for matching", ride_id)
        await self._best_effort(
            geo_add_ride(self.redis, ride.vehicle_class, ride.id, ride.pickup_lat, ride.pickup_lng), "index ride pickup"
        )
        self.deadlines.arm(ride.id, deadline)
        await self.offer(ride.id)
        return True

    async def offer(self, ride_id: str, exclude: Iterable[str] = ()) -> list[Candidate]:
        """Broadcast the ride to every ranked candidate at once."""
        now = self._now()
        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            if ride.status != S.searching.value:
                return []
            try:
                candidates = await self.locator.find_candidates(
                    db, ride.pickup_lat, ride.pickup_lng, ride.vehicle_class, now, exclude=exclude
                )
            except RedisError as exc:
                logger.error("Candidate search failed ride=%s: %s", ride_id, exc)
                candidates = []

        if not candidates:
            logger.warning("No captains found for ride=%s; waiting for deadline", ride_id)
            return []

        await self._best_effort(
            offer_pool_add(
                self.redis, ride.id, [c.captain_id for c in candidates], self.settings.offer_pool_ttl_seconds
            ),
            "record offer pool",
        )
        payload = lifecycle.event_payload(ride)
        await asyncio.gather(
            *(
                self.registry.emit(
                    captain_room(c.captain_id),
                    "ride:new-request",
                    {"ride": payload, "distance_km": round(c.distance_km, 3), "eta_minutes": c.eta_minutes},
                )
                for c in candidates
            )
        )
        logger.info("Offered ride=%s to %d captains", ride.id, len(candidates))
        return candidates

    # ------------------------------------------------------------------
    # Captain-driven transitions
    # ------------------------------------------------------------------

    async def accept(self, actor: Actor, ride_id: str) -> Ride:
        captain_id = self._captain_id(actor)
        async with self._session_factory() as db:
            captain = await db.get(Captain, captain_id)
            if captain is None:
                raise NotFound("Captain not found")
            if captain.approval_status != "approved":
                raise Unauthorized("Your account is not approved")
            if not captain.is_online:
                raise InvalidState("You must be online to accept rides")
            if captain.is_on_ride:
                raise Conflict("You already have an active ride")
            ride = await self._load_ride(db, ride_id)
            if ride.vehicle_class != captain.vehicle_class:
                raise ValidationFailed("Ride requires a different vehicle class")
            if ride.status == S.searching.value and ride.dispatched_at is None:
                raise InvalidState("Ride is scheduled for later")
            if captain_id in await self._requeued_by(db, ride_id):
                raise Conflict("You already cancelled this ride")

            now = self._stamp(ride)
            won = await self._cas(
                db, ride_id, [S.searching], S.accepted,
                Ride.vehicle_class == captain.vehicle_class,
                Ride.dispatched_at.is_not(None),
                captain_id=captain_id,
                accepted_at=now,
            )
            if not won:
                await db.rollback()
                logger.info("Accept lost race ride=%s captain=%s", ride_id, captain_id)
                raise Conflict("Ride no longer available")

            claimed = await db.execute(
                update(Captain)
                .where(
                    Captain.id == captain_id,
                    Captain.is_online.is_(True),
                    Captain.is_on_ride.is_(False),
                    Captain.approval_status == "approved",
                )
                .values(is_on_ride=True)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                raise Conflict("Captain is no longer available")

            db.add(self._event(ride_id, "accept", S.searching, S.accepted, actor, now, captain_id=captain_id))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise Conflict("You already have an active ride")
            await db.refresh(ride)
            await db.refresh(captain)

        logger.info("Ride %s accepted by captain %s", ride_id, captain_id)
        await self._best_effort(geo_remove_ride(self.redis, ride.vehicle_class, ride.id), "unindex ride")
        await self.registry.emit(
            rider_room(ride.rider_id),
            "ride:accepted",
            {"ride": lifecycle.event_payload(ride), "captain": _captain_brief(captain)},
        )
        await self._revoke_offers(ride.id, keep=captain_id)
        return ride

    async def reject(self, actor: Actor, ride_id: str, reason: str = "") -> None:
        captain_id = self._captain_id(actor)
        async with self._session_factory() as db:
            await self._load_ride(db, ride_id)
        logger.info("Ride %s rejected by captain %s: %s", ride_id, captain_id, reason)
        await self._best_effort(offer_pool_remove(self.redis, ride_id, captain_id), "drop from offer pool")

    async def set_arriving(self, actor: Actor, ride_id: str, eta_minutes: int | None = None) -> Ride:
        captain_id = self._captain_id(actor)
        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            self._require_assigned(ride, captain_id)
            if ride.status != S.accepted.value:
                raise InvalidState(f"Cannot mark arriving while ride is {ride.status}")
            now = self._stamp(ride)
            if not await self._cas(db, ride_id, [S.accepted], S.arriving, Ride.captain_id == captain_id, arriving_at=now):
                await db.rollback()
                raise await self._stale(db, ride_id)
            db.add(self._event(ride_id, "arriving", S.accepted, S.arriving, actor, now, captain_id=captain_id))
            await db.commit()
            await db.refresh(ride)
            captain = await db.get(Captain, captain_id)

        if eta_minutes is None:
            eta_minutes = await self._eta_to_pickup(captain, ride)
        await self.registry.emit(
            rider_room(ride.rider_id),
            "ride:captain-arriving",
            {"ride_id": ride.id, "eta_minutes": eta_minutes},
        )
        return ride

    async def captain_arrived(self, actor: Actor, ride_id: str) -> Ride:
        captain_id = self._captain_id(actor)
        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            self._require_assigned(ride, captain_id)
            previous = ride.status
            if previous not in lifecycle.values([S.accepted, S.arriving]):
                raise InvalidState(f"Cannot mark arrived while ride is {previous}")
            now = self._stamp(ride)
            if not await self._cas(db, ride_id, [S(previous)], S.arrived, Ride.captain_id == captain_id, arrived_at=now):
                await db.rollback()
                raise await self._stale(db, ride_id)
            db.add(self._event(ride_id, "arrived", S(previous), S.arrived, actor, now, captain_id=captain_id))
            await db.commit()
            await db.refresh(ride)

        await self.registry.emit(
            rider_room(ride.rider_id),
            "ride:captain-arrived",
            {
                "ride_id": ride.id,
                "code": ride.otp_code,
                "message": "Your captain has arrived. Share the code to start your ride.",
            },
        )
        return ride

    async def start(self, actor: Actor, ride_id: str, code: str) -> Ride:
        captain_id = self._captain_id(actor)
        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            self._require_assigned(ride, captain_id)
            if ride.status != S.arrived.value:
                raise InvalidState(f"Cannot start while ride is {ride.status}")
            now = self._stamp(ride)
            started = await self._cas(
                db, ride_id, [S.arrived], S.started,
                Ride.captain_id == captain_id,
                Ride.otp_code == (code or "").strip(),
                otp_verified=True,
                started_at=now,
            )
            if not started:
                await db.rollback()
                fresh = await self._load_ride(db, ride_id, fresh=True)
                if fresh.status == S.arrived.value:
                    logger.info("Invalid start code for ride=%s captain=%s", ride_id, captain_id)
                    raise ValidationFailed("Invalid code")
                raise InvalidState(f"Cannot start while ride is {fresh.status}")
            db.add(self._event(ride_id, "start", S.arrived, S.started, actor, now, captain_id=captain_id))
            await db.commit()
            await db.refresh(ride)

        await self.registry.emit(
            rider_room(ride.rider_id),
            "ride:started",
            {"ride_id": ride.id, "message": "Your ride has started. Enjoy!"},
        )
        return ride

    async def complete(
        self,
        actor: Actor,
        ride_id: str,
        toll_charges: Decimal | float = 0,
        waiting_charges: Decimal | float = 0,
    ) -> Ride:
        captain_id = self._captain_id(actor)
        toll = self._amount(toll_charges, "toll_charges", allow_zero=True, ceiling=self.settings.max_adjustment_amount)
        waiting = self._amount(
            waiting_charges, "waiting_charges", allow_zero=True, ceiling=self.settings.max_adjustment_amount
        )

        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            self._require_assigned(ride, captain_id)
            if ride.status == S.completed.value:
                raise Conflict("Ride already completed")
            if ride.status != S.started.value:
                raise InvalidState(f"Cannot complete while ride is {ride.status}")

            fare = apply_adjustments(_fare_from_ride(ride), toll, waiting, self.settings)
            now = self._stamp(ride)
            done = await self._cas(
                db, ride_id, [S.started], S.completed,
                Ride.captain_id == captain_id,
                completed_at=now,
                archived_at=now,
                payment_status="completed",
                **_fare_columns(fare),
            )
            if not done:
                await db.rollback()
                raise await self._stale(db, ride_id, repeat=S.completed)
            await db.execute(
                update(Captain)
                .where(Captain.id == captain_id)
                .values(
                    is_on_ride=False,
                    total_rides=Captain.total_rides + 1,
                    total_earnings=Captain.total_earnings + fare.captain_earnings,
                )
                .execution_options(synchronize_session=False)
            )
            db.add(self._event(ride_id, "complete", S.started, S.completed, actor, now, captain_id=captain_id))
            await db.commit()
            await db.refresh(ride)

        logger.info("Ride %s completed total=%s earnings=%s", ride.id, ride.total_fare, ride.captain_earnings)
        credit = await self.ledger.credit(captain_id, "captain", ride.captain_earnings, "ride_earnings", ride.code)
        if credit.status != "SUCCESS":
            logger.error("Earnings credit pending manual reconciliation ride=%s captain=%s", ride.id, captain_id)
        await self.registry.emit(
            rider_room(ride.rider_id),
            "ride:completed",
            {"ride": lifecycle.event_payload(ride), "message": "Your ride is complete. Please rate your experience."},
        )
        return ride

    # ------------------------------------------------------------------
    # Cancellation, requeue & expiry
    # ------------------------------------------------------------------

    async def cancel(self, actor: Actor, ride_id: str, reason: str = "") -> CancelOutcome:
        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            if isinstance(actor, CaptainActor):
                if ride.captain_id != actor.id:
                    raise Unauthorized("Not your ride")
                if ride.status in lifecycle.values(lifecycle.REQUEUEABLE_STATUSES):
                    return await self._requeue(db, actor, ride, reason)
            elif isinstance(actor, RiderActor):
                if ride.rider_id != actor.id:
                    raise Unauthorized("Not your ride")

            previous = ride.status
            if previous == S.cancelled.value:
                raise Conflict("Ride already cancelled")
            if previous not in lifecycle.values(lifecycle.CANCELLABLE_STATUSES):
                raise InvalidState(f"Ride can no longer be cancelled ({previous})")

            now = self._stamp(ride)
            fee = lifecycle.cancellation_fee(previous, actor.kind, ride.accepted_at, now, self.settings)
            assigned = ride.captain_id
            cancelled = await self._cas(
                db, ride_id, [S(previous)], S.cancelled,
                _same_captain(assigned),
                captain_id=None,
                cancelled_at=now,
                archived_at=now,
                cancelled_by=actor.kind,
                cancel_reason=reason or None,
                cancellation_fee=fee,
            )
            if not cancelled:
                await db.rollback()
                raise await self._stale(db, ride_id, repeat=S.cancelled)
            if assigned is not None:
                await self._release_captain(db, assigned)
            db.add(self._event(ride_id, "cancel", S(previous), S.cancelled, actor, now, captain_id=assigned, reason=reason))
            await db.commit()
            await db.refresh(ride)

        logger.info("Ride %s cancelled by %s (%s) fee=%s", ride.id, actor.kind, reason, fee)
        await self._best_effort(geo_remove_ride(self.redis, ride.vehicle_class, ride.id), "unindex ride")
        if fee > 0:
            charge = await self.ledger.charge(ride.rider_id, "rider", fee, "cancellation_fee", ride.code)
            if charge.status != "SUCCESS":
                logger.error("Cancellation fee not collected ride=%s fee=%s", ride.id, fee)

        payload = {"ride_id": ride.id, "cancelled_by": actor.kind, "reason": reason, "fee": float(fee), "requeued": False}
        rooms = [rider_room(ride.rider_id)]
        if assigned is not None:
            rooms.append(captain_room(assigned))
        await self.registry.emit_many(rooms, "ride:cancelled", payload)
        if previous == S.searching.value:
            await self._revoke_offers(ride.id, event="ride:cancelled")
        return CancelOutcome(ride=ride, fee=fee, requeued=False)

    async def _requeue(self, db: AsyncSession, actor: CaptainActor, ride: Ride, reason: str) -> CancelOutcome:
        """Captain backs out before the trip starts: free them and put the same ride back in the pool."""
        previous = ride.status
        now = self._stamp(ride)
        deadline = now + timedelta(seconds=self.settings.matching_timeout_seconds)
        requeued = await self._cas(
            db, ride.id, [S(previous)], S.searching,
            Ride.captain_id == actor.id,
            captain_id=None,
            accepted_at=None,
            arriving_at=None,
            arrived_at=None,
            requested_at=now,
            match_deadline=deadline,
        )
        if not requeued:
            await db.rollback()
            raise await self._stale(db, ride.id)
        await self._release_captain(db, actor.id)
        db.add(self._event(ride.id, "requeue", S(previous), S.searching, actor, now, captain_id=actor.id, reason=reason))
        await db.commit()
        await db.refresh(ride)
        excluded = await self._requeued_by(db, ride.id)

        logger.info("Ride %s requeued after captain %s cancelled (%s)", ride.id, actor.id, reason)
        await self._best_effort(
            geo_add_ride(self.redis, ride.vehicle_class, ride.id, ride.pickup_lat, ride.pickup_lng), "index ride pickup"
        )
        await self._best_effort(offer_pool_clear(self.redis, ride.id), "clear offer pool")
        await self.registry.emit(
            rider_room(ride.rider_id),
            "ride:cancelled",
            {
                "ride_id": ride.id,
                "cancelled_by": "captain",
                "reason": reason,
                "fee": 0.0,
                "requeued": True,
                "message": "Your ride was cancelled by the captain. Searching for another captain...",
            },
        )
        self.deadlines.arm(ride.id, deadline)
        await self.offer(ride.id, exclude=excluded)
        return CancelOutcome(ride=ride, fee=Decimal("0.00"), requeued=True)

    async def auto_expire(self, ride_id: str) -> bool:
        """Cancel a ride still searching past its deadline. Returns False when something else won."""
        now = self._now()
        async with self._session_factory() as db:
            expired = await self._cas(
                db, ride_id, [S.searching], S.cancelled,
                Ride.match_deadline <= now,
                Ride.dispatched_at.is_not(None),
                cancelled_at=now,
                archived_at=now,
                cancelled_by="system",
                cancel_reason=NO_CAPTAIN_REASON,
                cancellation_fee=Decimal("0"),
            )
            if not expired:
                await db.rollback()
                return False
            db.add(
                RideEvent(
                    ride_id=ride_id, kind="expire", from_status=S.searching.value, to_status=S.cancelled.value,
                    actor_kind="system", reason=NO_CAPTAIN_REASON, at=now,
                )
            )
            await db.commit()
            ride = await self._load_ride(db, ride_id, fresh=True)

        logger.warning("Ride %s cancelled (no captain found before deadline)", ride_id)
        await self._best_effort(geo_remove_ride(self.redis, ride.vehicle_class, ride.id), "unindex ride")
        await self.registry.emit(
            rider_room(ride.rider_id),
            "ride:cancelled",
            {
                "ride_id": ride.id,
                "cancelled_by": "system",
                "reason": NO_CAPTAIN_REASON,
                "fee": 0.0,
                "requeued": False,
                "message": "No captain available at the moment. Please try again.",
            },
        )
        await self._revoke_offers(ride.id, event="ride:cancelled")
        return True

    # ------------------------------------------------------------------
    # Post-completion
    # ------------------------------------------------------------------

    async def rate(self, actor: Actor, ride_id: str, rating: int, comment: str = "") -> Ride:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationFailed("Rating must be between 1 and 5")

        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            if isinstance(actor, RiderActor) and ride.rider_id == actor.id:
                rated_column, comment_column = Ride.rider_rating, "rider_comment"
            elif isinstance(actor, CaptainActor) and ride.captain_id == actor.id:
                rated_column, comment_column = Ride.captain_rating, "captain_comment"
            else:
                raise Unauthorized("Not your ride")
            if ride.status != S.completed.value:
                raise InvalidState("Ride is not completed")

            stored = await self._guarded_update(
                db, ride_id,
                Ride.status == S.completed.value,
                rated_column.is_(None),
                **{rated_column.key: rating, comment_column: comment or None},
            )
            if not stored:
                await db.rollback()
                raise Conflict("You have already rated this ride")

            if isinstance(actor, RiderActor):
                history = await db.scalars(
                    select(Ride.rider_rating).where(Ride.captain_id == ride.captain_id, Ride.rider_rating.is_not(None))
                )
                average, count = lifecycle.running_mean(history.all())
                await db.execute(
                    update(Captain)
                    .where(Captain.id == ride.captain_id)
                    .values(rating_average=average, rating_count=count)
                    .execution_options(synchronize_session=False)
                )
            else:
                if await db.get(Rider, ride.rider_id) is None:
                    db.add(Rider(id=ride.rider_id))
                    await db.flush()
                history = await db.scalars(
                    select(Ride.captain_rating).where(Ride.rider_id == ride.rider_id, Ride.captain_rating.is_not(None))
                )
                average, count = lifecycle.running_mean(history.all())
                await db.execute(
                    update(Rider)
                    .where(Rider.id == ride.rider_id)
                    .values(rating_average=average, rating_count=count)
                    .execution_options(synchronize_session=False)
                )
            await db.commit()
            await db.refresh(ride)

        logger.info("Ride %s rated %d by %s %s", ride_id, rating, actor.kind, actor.id)
        return ride

    async def tip(self, actor: Actor, ride_id: str, amount: Decimal | float) -> Ride:
        if not isinstance(actor, RiderActor):
            raise Unauthorized("Only the rider can tip")
        value = self._amount(amount, "tip", allow_zero=False, ceiling=self.settings.max_tip_amount)

        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            if ride.rider_id != actor.id:
                raise Unauthorized("Not your ride")
            if ride.status != S.completed.value:
                raise InvalidState("Tips are only possible after completion")
            if not await self._guarded_update(
                db, ride_id, Ride.status == S.completed.value, tip_total=Ride.tip_total + value
            ):
                await db.rollback()
                raise await self._stale(db, ride_id)
            await db.commit()
            await db.refresh(ride)

        reference = f"{ride.code}:tip:{uuid.uuid4().hex[:8]}"
        credit = await self.ledger.credit(ride.captain_id, "captain", value, "tip", reference)
        if credit.status != "SUCCESS":
            logger.error("Tip credit failed ride=%s amount=%s", ride.id, value)
        await self.registry.emit(
            captain_room(ride.captain_id),
            "ride:tip-received",
            {"ride_id": ride.id, "amount": float(value), "message": f"You received a tip of {value}!"},
        )
        return ride

    # ------------------------------------------------------------------
    # Coupons on a searching ride
    # ------------------------------------------------------------------

    async def apply_coupon(self, actor: Actor, ride_id: str, code: str) -> Ride:
        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            self._require_rider(actor, ride)
            if ride.status != S.searching.value:
                raise InvalidState("Coupons can only be changed while searching")
            if ride.coupon_id is not None:
                raise Conflict("A coupon is already applied to this ride")

            now = self._now()
            undiscounted = self._ride_fare(ride)
            quote = await quote_coupon(db, code, ride.rider_id, ride.vehicle_class, undiscounted.total, now)
            fare = self._ride_fare(ride, discount=quote.discount)
            applied = await self._guarded_update(
                db, ride_id,
                Ride.status == S.searching.value,
                Ride.coupon_id.is_(None),
                coupon_id=quote.coupon.id,
                **_fare_columns(fare),
            )
            if not applied:
                await db.rollback()
                raise Conflict("A coupon is already applied to this ride")
            await redeem_coupon(db, quote.coupon, ride.rider_id, ride.id, now)
            await db.commit()
            await db.refresh(ride)
        return ride

    async def remove_coupon(self, actor: Actor, ride_id: str) -> Ride:
        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
            self._require_rider(actor, ride)
            if ride.status != S.searching.value:
                raise InvalidState("Coupons can only be changed while searching")
            if ride.coupon_id is None:
                raise ValidationFailed("No coupon applied to this ride")

            coupon_id = ride.coupon_id
            fare = self._ride_fare(ride)
            removed = await self._guarded_update(
                db, ride_id,
                Ride.status == S.searching.value,
                Ride.coupon_id == coupon_id,
                coupon_id=None,
                **_fare_columns(fare),
            )
            if not removed:
                await db.rollback()
                raise await self._stale(db, ride_id)
            await release_coupon(db, coupon_id, ride_id)
            await db.commit()
            await db.refresh(ride)
        return ride

    # ------------------------------------------------------------------
    # Captain session: availability & location
    # ------------------------------------------------------------------

    async def register_captain(self, name: str, phone: str, vehicle_class: str) -> Captain:
        """Onboard a captain; they stay offline and pending until an admin approves them."""
        if vehicle_class not in self.settings.fare_rates:
            raise ValidationFailed(f"Unknown vehicle class '{vehicle_class}'")
        async with self._session_factory() as db:
            captain = Captain(name=name, phone=phone, vehicle_class=vehicle_class, approval_status="pending")
            db.add(captain)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise Conflict("A captain with this phone number already exists")
            await db.refresh(captain)
        logger.info("Captain %s registered class=%s", captain.id, vehicle_class)
        return captain

    async def review_captain(self, actor: Actor, captain_id: str, approval_status: str) -> Captain:
        if not isinstance(actor, AdminActor):
            raise Unauthorized("Admin access required")
        values: dict[str, Any] = {"approval_status": approval_status}
        if approval_status != "approved":
            values["is_online"] = False
        async with self._session_factory() as db:
            captain = await db.get(Captain, captain_id)
            if captain is None:
                raise NotFound("Captain not found")
            await db.execute(
                update(Captain).where(Captain.id == captain_id).values(**values).execution_options(synchronize_session=False)
            )
            await db.commit()
            await db.refresh(captain)

        if approval_status != "approved":
            await self._best_effort(geo_remove_captain(self.redis, captain.vehicle_class, captain.id), "unindex captain")
        logger.info("Captain %s approval set to %s by admin %s", captain_id, approval_status, actor.id)
        return captain

    async def set_availability(
        self, actor: Actor, online: bool, lat: float | None = None, lng: float | None = None
    ) -> Captain:
        captain_id = self._captain_id(actor)
        now = self._now()
        async with self._session_factory() as db:
            captain = await db.get(Captain, captain_id)
            if captain is None:
                raise NotFound("Captain not found")
            if online and captain.approval_status != "approved":
                raise Unauthorized("Your account is not approved")

            values: dict[str, Any] = {"is_online": online}
            conditions = [Captain.id == captain_id]
            if not online:
                conditions.append(Captain.is_on_ride.is_(False))
            if lat is not None and lng is not None:
                validate_coordinates(lat, lng)
                values.update(lat=lat, lng=lng, location_updated_at=now)

            result = await db.execute(
                update(Captain).where(*conditions).values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise InvalidState("Cannot go offline during a ride")

            # online implies present in the GEO index
            position = (lat, lng) if lat is not None and lng is not None else (captain.lat, captain.lng)
            if online and position[0] is not None and position[1] is not None:
                try:
                    await geo_add_captain(
                        self.redis, captain.vehicle_class, captain.id, position[0], position[1], now
                    )
                except RedisError as exc:
                    await db.rollback()
                    logger.error("Could not index captain %s going online: %s", captain_id, exc)
                    raise Unavailable("Location service unavailable, please try again")
            await db.commit()
            await db.refresh(captain)

        if not online:
            await self._best_effort(geo_remove_captain(self.redis, captain.vehicle_class, captain.id), "unindex captain")
        logger.info("Captain %s is now %s", captain.id, "online" if online else "offline")
        return captain

    async def update_location(
        self,
        actor: Actor,
        lat: float,
        lng: float,
        heading: float | None = None,
        speed: float | None = None,
    ) -> Ride | None:
        captain_id = self._captain_id(actor)
        validate_coordinates(lat, lng)
        now = self._now()
        async with self._session_factory() as db:
            captain = await db.get(Captain, captain_id)
            if captain is None:
                raise NotFound("Captain not found")
            await db.execute(
                update(Captain)
                .where(Captain.id == captain_id)
                .values(lat=lat, lng=lng, location_updated_at=now)
                .execution_options(synchronize_session=False)
            )
            ride = await db.scalar(
                select(Ride).where(
                    Ride.captain_id == captain_id,
                    Ride.status.in_(lifecycle.values(lifecycle.TRACKABLE_STATUSES)),
                )
            )
            if ride is not None:
                db.add(TrackingSample(ride_id=ride.id, lat=lat, lng=lng, heading=heading, speed=speed, recorded_at=now))
            await db.commit()

        if captain.is_online:
            await self._best_effort(
                geo_add_captain(self.redis, captain.vehicle_class, captain_id, lat, lng, now), "index captain"
            )
        if ride is not None:
            await self.registry.emit(
                rider_room(ride.rider_id),
                "captain:location",
                {
                    "ride_id": ride.id,
                    "location": {"lat": lat, "lng": lng, "heading": heading, "speed": speed},
                    "updated_at": now.isoformat(),
                },
            )
        return ride

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_ride(self, actor: Actor, ride_id: str) -> Ride:
        async with self._session_factory() as db:
            ride = await self._load_ride(db, ride_id)
        if isinstance(actor, RiderActor) and ride.rider_id == actor.id:
            return ride
        if isinstance(actor, CaptainActor) and (ride.captain_id == actor.id or ride.status == S.searching.value):
            return ride
        if isinstance(actor, AdminActor):
            return ride
        raise Unauthorized("Not your ride")

    async def active_ride(self, actor: Actor) -> Ride | None:
        if isinstance(actor, RiderActor):
            condition = Ride.rider_id == actor.id
        elif isinstance(actor, CaptainActor):
            condition = Ride.captain_id == actor.id
        else:
            return None
        async with self._session_factory() as db:
            return await db.scalar(
                select(Ride).where(condition, Ride.status.in_(lifecycle.values(lifecycle.ACTIVE_STATUSES)))
            )

    async def tracking(self, actor: Actor, ride_id: str) -> Tracking:
        ride = await self.get_ride(actor, ride_id)
        async with self._session_factory() as db:
            samples = await db.scalars(
                select(TrackingSample).where(TrackingSample.ride_id == ride_id).order_by(TrackingSample.recorded_at)
            )
            samples = list(samples.all())
        location = None
        if ride.captain_id:
            try:
                last = await captain_last_location(self.redis, ride.captain_id)
            except RedisError as exc:
                logger.error("Captain location lookup failed: %s", exc)
                last = None
            if last is not None:
                location = {"lat": last[0], "lng": last[1], "recorded_at": last[2]}
            elif samples:
                s = samples[-1]
                location = {"lat": s.lat, "lng": s.lng, "heading": s.heading, "speed": s.speed, "recorded_at": s.recorded_at}
        return Tracking(ride=ride, samples=samples, captain_location=location)

    async def nearby_requests(self, actor: Actor) -> list[tuple[Ride, float, int]]:
        captain_id = self._captain_id(actor)
        async with self._session_factory() as db:
            captain = await db.get(Captain, captain_id)
            if captain is None:
                raise NotFound("Captain not found")
            if not captain.is_online:
                raise InvalidState("You must be online to receive ride requests")
            if captain.is_on_ride:
                raise Conflict("You already have an active ride")
            return await self.locator.nearby_requests(db, captain)

    async def ride_history(self, ride_id: str) -> list[RideEvent]:
        async with self._session_factory() as db:
            events = await db.scalars(select(RideEvent).where(RideEvent.ride_id == ride_id).order_by(RideEvent.id))
            return list(events.all())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        now = self._clock()
        return now if now.tzinfo else now.replace(tzinfo=timezone.utc)

    def _stamp(self, ride: Ride) -> datetime:
        """Current time, never earlier than the ride's latest transition stamp."""
        stamps = [
            t for t in (ride.requested_at, ride.accepted_at, ride.arriving_at, ride.arrived_at, ride.started_at) if t
        ]
        now = self._now()
        return max([now, *stamps])

    def _validate_trip(self, pickup: Place, destination: Place, vehicle_class: str) -> None:
        validate_coordinates(pickup.lat, pickup.lng)
        validate_coordinates(destination.lat, destination.lng)
        if vehicle_class not in self.settings.fare_rates:
            raise ValidationFailed(f"Unknown vehicle class '{vehicle_class}'")

    def _check_schedule(self, scheduled_at: datetime, now: datetime) -> datetime:
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        earliest = now + timedelta(minutes=self.settings.schedule_min_lead_minutes)
        latest = now + timedelta(days=self.settings.schedule_max_lead_days)
        if not earliest <= scheduled_at <= latest:
            raise ValidationFailed(
                f"Rides can be scheduled between {self.settings.schedule_min_lead_minutes} minutes "
                f"and {self.settings.schedule_max_lead_days} days ahead"
            )
        return scheduled_at

    @staticmethod
    def _amount(value, name: str, allow_zero: bool, ceiling: float) -> Decimal:
        try:
            amount = to_money(value)
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationFailed(f"Invalid {name} amount")
        if amount < 0 or (amount == 0 and not allow_zero) or amount > Decimal(str(ceiling)):
            raise ValidationFailed(f"Invalid {name} amount")
        return amount

    @staticmethod
    def _captain_id(actor: Actor) -> str:
        if not isinstance(actor, CaptainActor):
            raise Unauthorized("Captain access required")
        return actor.id

    @staticmethod
    def _require_assigned(ride: Ride, captain_id: str) -> None:
        if ride.captain_id != captain_id:
            raise Unauthorized("Not your ride")

    @staticmethod
    def _require_rider(actor: Actor, ride: Ride) -> None:
        if not isinstance(actor, RiderActor) or ride.rider_id != actor.id:
            raise Unauthorized("Not your ride")

    def _ride_fare(self, ride: Ride, discount: Decimal | float = 0) -> FareBreakdown:
        return calculate_fare(
            ride.vehicle_class,
            ride.route_distance_km,
            ride.route_duration_min,
            float(ride.surge_multiplier),
            coupon_discount=discount,
            settings=self.settings,
        )

    @staticmethod
    async def _load_ride(db: AsyncSession, ride_id: str, fresh: bool = False) -> Ride:
        ride = await db.get(Ride, ride_id, populate_existing=fresh)
        if ride is None:
            raise NotFound("Ride not found")
        return ride

    @staticmethod
    async def _requeued_by(db: AsyncSession, ride_id: str) -> set[str]:
        """Captains who backed out of this ride; it is never offered to them again."""
        result = await db.scalars(
            select(RideEvent.captain_id).where(RideEvent.ride_id == ride_id, RideEvent.kind == "requeue")
        )
        return set(result.all())

    @staticmethod
    async def _active_ride_id(db: AsyncSession, condition) -> str | None:
        return await db.scalar(
            select(Ride.id).where(condition, Ride.status.in_(lifecycle.values(lifecycle.ACTIVE_STATUSES)))
        )

    @staticmethod
    async def _guarded_update(db: AsyncSession, ride_id: str, *conditions, **values) -> bool:
        result = await db.execute(
            update(Ride)
            .where(Ride.id == ride_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _cas(self, db: AsyncSession, ride_id: str, expected: Iterable[S], to_status: S, *conditions, **values) -> bool:
        """Move the ride to ``to_status`` only if it is still in one of ``expected``."""
        for status in expected:
            if not lifecycle.is_valid_transition(status.value, to_status.value):
                raise InvalidState(f"Illegal transition {status.value} -> {to_status.value}")
        return await self._guarded_update(
            db, ride_id, Ride.status.in_(lifecycle.values(expected)), *conditions, status=to_status.value, **values
        )

    async def _stale(self, db: AsyncSession, ride_id: str, repeat: S | None = None) -> Exception:
        """Explain a lost conditional write from the ride's current state."""
        fresh = await self._load_ride(db, ride_id, fresh=True)
        if repeat is not None and fresh.status == repeat.value:
            return Conflict(f"Ride already {repeat.value}")
        return InvalidState(f"Ride is now {fresh.status}")

    @staticmethod
    async def _release_captain(db: AsyncSession, captain_id: str) -> None:
        await db.execute(
            update(Captain)
            .where(Captain.id == captain_id)
            .values(is_on_ride=False)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def _event(
        ride_id: str,
        kind: str,
        from_status: S | None,
        to_status: S,
        actor: Actor,
        at: datetime,
        captain_id: str | None = None,
        reason: str | None = None,
    ) -> RideEvent:
        return RideEvent(
            ride_id=ride_id,
            kind=kind,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            actor_kind=actor.kind,
            actor_id=actor.id,
            captain_id=captain_id,
            reason=reason or None,
            at=at,
        )

    async def _revoke_offers(self, ride_id: str, keep: str | None = None, event: str = "ride:taken") -> None:
        """Best-effort notice to the remaining offer pool; correctness never depends on it."""
        try:
            pool = await offer_pool_members(self.redis, ride_id)
            await offer_pool_clear(self.redis, ride_id)
        except RedisError as exc:
            logger.error("Could not read offer pool ride=%s: %s", ride_id, exc)
            return
        pool.discard(keep)
        if pool:
            await self.registry.emit_many((captain_room(c) for c in pool), event, {"ride_id": ride_id})

    async def _eta_to_pickup(self, captain: Captain | None, ride: Ride) -> int | None:
        if captain is None or captain.lat is None or captain.lng is None:
            return None
        return await self.directions.eta_minutes((captain.lat, captain.lng), (ride.pickup_lat, ride.pickup_lng))

    @staticmethod
    async def _best_effort(aw: Awaitable, what: str) -> None:
        try:
            await aw
        except RedisError as exc:
            logger.error("Redis follow-up failed (%s): %s", what, exc)


def _same_captain(captain_id: str | None):
    return Ride.captain_id == captain_id if captain_id is not None else Ride.captain_id.is_(None)


def _fare_columns(fare: FareBreakdown) -> dict[str, Decimal]:
    return {
        "base_fare": fare.base,
        "distance_fare": fare.distance_fare,
        "time_fare": fare.time_fare,
        "surge_fare": fare.surge_fare,
        "discount": fare.discount,
        "toll_charges": fare.toll_charges,
        "waiting_charges": fare.waiting_charges,
        "total_fare": fare.total,
        "platform_fee": fare.platform_fee,
        "captain_earnings": fare.captain_earnings,
    }


def _fare_from_ride(ride: Ride) -> FareBreakdown:
    return FareBreakdown(
        base=ride.base_fare,
        distance_fare=ride.distance_fare,
        time_fare=ride.time_fare,
        surge_fare=ride.surge_fare,
        discount=ride.discount,
        total=ride.total_fare,
        platform_fee=ride.platform_fee,
        captain_earnings=ride.captain_earnings,
        toll_charges=ride.toll_charges,
        waiting_charges=ride.waiting_charges,
    )


def _captain_brief(captain: Captain) -> dict:
    return {
        "id": captain.id,
        "name": captain.name,
        "phone": captain.phone,
        "vehicle_class": captain.vehicle_class,
        "rating": captain.rating_average,
        "location": {"lat": captain.lat, "lng": captain.lng} if captain.lat is not None else None,
    }


def get_orchestrator(request: Request) -> DispatchOrchestrator:
    """FastAPI dependency returning the orchestrator owned by the app lifespan."""
    return request.app.state.orchestrator
