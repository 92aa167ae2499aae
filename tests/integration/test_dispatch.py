"""
Integration tests for the dispatch orchestrator on a temporary SQLite store.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ridehail.actors import AdminActor, CaptainActor, RiderActor
from ridehail.errors import Conflict, InvalidState, NotFound, Unauthorized, Unavailable, ValidationFailed
from ridehail.models.captain import Captain
from ridehail.models.coupon import Coupon
from ridehail.models.ride import Ride
from ridehail.models.rider import Rider
from ridehail.redis_client import offer_pool_members
from ridehail.schemas.schemas import Place
from ridehail.services.lifecycle import is_valid_walk

from tests.conftest import DESTINATION, PICKUP

RIDER = RiderActor("rider-001")


async def load(session_factory, model, key):
    async with session_factory() as db:
        return await db.get(model, key)


async def book(orchestrator, rider=RIDER, **kwargs):
    return await orchestrator.book(
        rider, Place(**PICKUP), Place(**DESTINATION), kwargs.pop("vehicle_class", "bike"), "cash", **kwargs
    )


async def drive(orchestrator, clock, captain_id, ride, upto):
    """Walk an already searching ride forward to ``upto``."""
    actor = CaptainActor(captain_id)
    steps = ["accepted", "arriving", "arrived", "started", "completed"]
    for step in steps[: steps.index(upto) + 1]:
        clock.advance(30)
        if step == "accepted":
            ride = await orchestrator.accept(actor, ride.id)
        elif step == "arriving":
            ride = await orchestrator.set_arriving(actor, ride.id, eta_minutes=4)
        elif step == "arrived":
            ride = await orchestrator.captain_arrived(actor, ride.id)
        elif step == "started":
            ride = await orchestrator.start(actor, ride.id, ride.otp_code)
        else:
            ride = await orchestrator.complete(actor, ride.id)
    return ride


@pytest.mark.asyncio
class TestHappyPath:
    async def test_full_lifecycle(self, orchestrator, session_factory, clock, add_captain, listen):
        captain = await add_captain()
        captain_socket = await listen("captain", captain.id)
        rider_socket = await listen("rider", RIDER.id)

        ride = await book(orchestrator)
        assert ride.status == "searching"
        assert ride.match_deadline == ride.requested_at + timedelta(seconds=60)
        offers = captain_socket.events("ride:new-request")
        assert len(offers) == 1
        assert offers[0]["data"]["ride"]["id"] == ride.id

        ride = await drive(orchestrator, clock, captain.id, ride, "started")
        assert ride.status == "started"
        assert ride.otp_verified is True

        ride = await orchestrator.complete(CaptainActor(captain.id), ride.id, toll_charges=Decimal("20"))
        assert ride.status == "completed"
        assert ride.payment_status == "completed"
        assert ride.toll_charges == Decimal("20.00")
        assert ride.platform_fee + ride.captain_earnings == ride.total_fare

        names = [m["event"] for m in rider_socket.sent]
        assert names == [
            "ride:accepted", "ride:captain-arriving", "ride:captain-arrived", "ride:started", "ride:completed",
        ]
        arrived = rider_socket.events("ride:captain-arrived")[0]
        assert arrived["data"]["code"] == ride.otp_code

        stored = await load(session_factory, Captain, captain.id)
        assert stored.is_on_ride is False
        assert stored.total_rides == 1
        assert stored.total_earnings == ride.captain_earnings

        history = await orchestrator.ride_history(ride.id)
        assert [e.kind for e in history] == ["book", "accept", "arriving", "arrived", "start", "complete"]
        assert is_valid_walk([e.to_status for e in history])
        stamps = [ride.requested_at, ride.accepted_at, ride.arriving_at, ride.arrived_at, ride.started_at, ride.completed_at]
        assert stamps == sorted(stamps)

    async def test_estimate_has_no_side_effects(self, orchestrator, session_factory, add_captain):
        await add_captain(offset=0.01)
        estimate = await orchestrator.estimate(Place(**PICKUP), Place(**DESTINATION), "bike")
        assert estimate["nearby_count"] == 1
        assert estimate["estimated_pickup_minutes"] == 3
        # a single free captain nearby -> 2.0x
        assert estimate["surge_multiplier"] == 2.0
        assert estimate["fare_range"]["min"] < estimate["fare"]["total"] < estimate["fare_range"]["max"]
        assert await orchestrator.active_ride(RIDER) is None

    async def test_one_active_ride_per_rider(self, orchestrator):
        await book(orchestrator)
        with pytest.raises(Conflict):
            await book(orchestrator)

    async def test_unknown_class_rejected(self, orchestrator):
        with pytest.raises(ValidationFailed):
            await book(orchestrator, vehicle_class="rickshaw")

    async def test_only_riders_book(self, orchestrator):
        with pytest.raises(Unauthorized):
            await orchestrator.book(CaptainActor("c"), Place(**PICKUP), Place(**DESTINATION), "bike", "cash")


@pytest.mark.asyncio
class TestAcceptRace:
    async def test_exactly_one_captain_wins(self, orchestrator, session_factory, add_captain, listen):
        first = await add_captain(offset=0.01)
        second = await add_captain(offset=0.02)
        second_socket = await listen("captain", second.id)
        first_socket = await listen("captain", first.id)
        ride = await book(orchestrator)

        results = await asyncio.gather(
            orchestrator.accept(CaptainActor(first.id), ride.id),
            orchestrator.accept(CaptainActor(second.id), ride.id),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, Ride)]
        losers = [r for r in results if isinstance(r, Conflict)]
        assert len(winners) == 1 and len(losers) == 1
        assert str(losers[0]) == "Ride no longer available"

        winner_id = winners[0].captain_id
        loser_id = second.id if winner_id == first.id else first.id
        assert (await load(session_factory, Captain, winner_id)).is_on_ride is True
        assert (await load(session_factory, Captain, loser_id)).is_on_ride is False
        stored = await load(session_factory, Ride, ride.id)
        assert stored.status == "accepted" and stored.captain_id == winner_id

        loser_socket = second_socket if loser_id == second.id else first_socket
        assert len(loser_socket.events("ride:taken")) == 1

    async def test_captain_with_active_ride_cannot_accept(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await book(orchestrator)
        await drive(orchestrator, clock, captain.id, ride, "accepted")
        other = await book(orchestrator, rider=RiderActor("rider-002"))
        with pytest.raises(Conflict):
            await orchestrator.accept(CaptainActor(captain.id), other.id)

    async def test_offline_or_unapproved_captain_rejected(self, orchestrator, add_captain):
        offline = await add_captain(online=False)
        pending = await add_captain(approval_status="pending")
        ride = await book(orchestrator)
        with pytest.raises(InvalidState):
            await orchestrator.accept(CaptainActor(offline.id), ride.id)
        with pytest.raises(Unauthorized):
            await orchestrator.accept(CaptainActor(pending.id), ride.id)

    async def test_wrong_vehicle_class(self, orchestrator, add_captain):
        cab = await add_captain(vehicle_class="cab")
        ride = await book(orchestrator)
        with pytest.raises(ValidationFailed):
            await orchestrator.accept(CaptainActor(cab.id), ride.id)

    async def test_reject_leaves_offer_pool_only(self, orchestrator, session_factory, add_captain):
        captain = await add_captain()
        ride = await book(orchestrator)
        assert captain.id in await offer_pool_members(orchestrator.redis, ride.id)

        await orchestrator.reject(CaptainActor(captain.id), ride.id, "too far")
        assert captain.id not in await offer_pool_members(orchestrator.redis, ride.id)
        assert (await load(session_factory, Ride, ride.id)).status == "searching"


@pytest.mark.asyncio
class TestStartCode:
    async def test_wrong_code_leaves_ride_arrived(self, orchestrator, session_factory, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "arrived")
        wrong = "0000" if ride.otp_code != "0000" else "1111"
        with pytest.raises(ValidationFailed, match="Invalid code"):
            await orchestrator.start(CaptainActor(captain.id), ride.id, wrong)
        assert (await load(session_factory, Ride, ride.id)).status == "arrived"

    async def test_cannot_start_before_arrival(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "accepted")
        with pytest.raises(InvalidState):
            await orchestrator.start(CaptainActor(captain.id), ride.id, ride.otp_code)

    async def test_other_captain_cannot_drive_ride(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        stranger = await add_captain(offset=0.03)
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "accepted")
        with pytest.raises(Unauthorized):
            await orchestrator.captain_arrived(CaptainActor(stranger.id), ride.id)

    async def test_complete_twice_conflicts(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "completed")
        with pytest.raises(Conflict):
            await orchestrator.complete(CaptainActor(captain.id), ride.id)


@pytest.mark.asyncio
class TestMatchingDeadline:
    async def test_expires_after_sixty_seconds(self, orchestrator, session_factory, clock, add_captain, listen):
        rider_socket = await listen("rider", RIDER.id)
        ride = await book(orchestrator)

        clock.advance(30)
        assert await orchestrator.deadlines.scan_once() == []

        clock.advance(31)
        assert await orchestrator.deadlines.scan_once() == [ride.id]
        stored = await load(session_factory, Ride, ride.id)
        assert stored.status == "cancelled"
        assert stored.cancelled_by == "system"
        assert stored.cancel_reason == "No captain available"
        assert stored.cancellation_fee == Decimal("0.00")
        assert rider_socket.events("ride:cancelled")[0]["data"]["reason"] == "No captain available"

        captain = await add_captain()
        with pytest.raises(Conflict, match="Ride no longer available"):
            await orchestrator.accept(CaptainActor(captain.id), ride.id)

    async def test_accepted_ride_is_not_expired(self, orchestrator, session_factory, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "accepted")
        clock.advance(120)
        assert await orchestrator.deadlines.scan_once() == []
        assert await orchestrator.auto_expire(ride.id) is False
        assert (await load(session_factory, Ride, ride.id)).status == "accepted"

    async def test_recovery_scan_on_start(self, orchestrator, session_factory, clock):
        ride = await book(orchestrator)
        clock.advance(90)
        await orchestrator.deadlines.start()
        assert orchestrator.deadlines.running
        await orchestrator.deadlines.stop()
        assert (await load(session_factory, Ride, ride.id)).status == "cancelled"


@pytest.mark.asyncio
class TestScheduledRides:
    async def test_held_until_scheduled_time(self, orchestrator, session_factory, clock, add_captain, listen):
        captain = await add_captain()
        captain_socket = await listen("captain", captain.id)
        pickup_at = clock.now + timedelta(days=1)

        ride = await book(orchestrator, scheduled_at=pickup_at)
        assert ride.status == "searching"
        assert ride.dispatched_at is None
        # a lone captain nearby would be 2.0x for an immediate booking
        assert ride.surge_multiplier == Decimal("1")
        assert captain_socket.events("ride:new-request") == []

        clock.advance(61)
        assert await orchestrator.deadlines.scan_once() == []
        assert (await load(session_factory, Ride, ride.id)).status == "searching"
        with pytest.raises(InvalidState, match="scheduled for later"):
            await orchestrator.accept(CaptainActor(captain.id), ride.id)

        clock.now = pickup_at
        assert await orchestrator.deadlines.scan_once() == []
        stored = await load(session_factory, Ride, ride.id)
        assert stored.dispatched_at == pickup_at
        assert stored.match_deadline == pickup_at + timedelta(seconds=60)
        assert len(captain_socket.events("ride:new-request")) == 1

        ride = await orchestrator.accept(CaptainActor(captain.id), ride.id)
        assert ride.status == "accepted"
        kinds = [e.kind for e in await orchestrator.ride_history(ride.id)]
        assert kinds == ["book", "dispatch", "accept"]

    async def test_released_ride_still_expires(self, orchestrator, session_factory, clock):
        pickup_at = clock.now + timedelta(hours=2)
        ride = await book(orchestrator, scheduled_at=pickup_at)

        clock.now = pickup_at + timedelta(seconds=5)
        assert await orchestrator.deadlines.scan_once() == []
        clock.advance(61)
        assert await orchestrator.deadlines.scan_once() == [ride.id]
        assert (await load(session_factory, Ride, ride.id)).cancel_reason == "No captain available"

    @pytest.mark.parametrize(
        "lead",
        [timedelta(days=-3), timedelta(minutes=10), timedelta(days=8)],
        ids=["past", "too-soon", "too-far"],
    )
    async def test_schedule_window(self, orchestrator, clock, lead):
        with pytest.raises(ValidationFailed, match="scheduled between 30 minutes and 7 days"):
            await book(orchestrator, scheduled_at=clock.now + lead)
        assert await orchestrator.active_ride(RIDER) is None

    async def test_rider_cancels_held_ride_for_free(self, orchestrator, session_factory, clock):
        ride = await book(orchestrator, scheduled_at=clock.now + timedelta(hours=1))
        outcome = await orchestrator.cancel(RIDER, ride.id, "plans changed")
        assert outcome.fee == Decimal("0.00")

        clock.advance(3600)
        assert await orchestrator.deadlines.release_due() == []
        assert (await load(session_factory, Ride, ride.id)).status == "cancelled"


@pytest.mark.asyncio
class TestCancellation:
    async def test_free_while_searching(self, orchestrator):
        ride = await book(orchestrator)
        outcome = await orchestrator.cancel(RIDER, ride.id, "changed plans")
        assert outcome.fee == Decimal("0.00")
        assert outcome.ride.status == "cancelled"
        assert outcome.ride.cancelled_by == "rider"

    async def test_free_inside_grace_window(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "accepted")
        clock.advance(60)
        outcome = await orchestrator.cancel(RIDER, ride.id)
        assert outcome.fee == Decimal("0.00")

    async def test_fee_after_arrival(self, orchestrator, session_factory, clock, add_captain, listen):
        captain = await add_captain()
        captain_socket = await listen("captain", captain.id)
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "arrived")
        clock.advance(300)
        outcome = await orchestrator.cancel(RIDER, ride.id, "too slow")
        assert outcome.fee == Decimal("50.00")
        assert outcome.ride.captain_id is None
        assert (await load(session_factory, Captain, captain.id)).is_on_ride is False
        assert captain_socket.events("ride:cancelled")[0]["data"]["fee"] == 50.0

    async def test_fee_after_grace_while_accepted(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "accepted")
        clock.advance(180)
        outcome = await orchestrator.cancel(RIDER, ride.id)
        assert outcome.fee == Decimal("25.00")

    async def test_admin_cancel_is_free(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "arrived")
        clock.advance(600)
        outcome = await orchestrator.cancel(AdminActor("ops-1"), ride.id, "fraud check")
        assert outcome.fee == Decimal("0.00")
        assert outcome.ride.cancelled_by == "admin"

    async def test_cancel_twice_conflicts(self, orchestrator):
        ride = await book(orchestrator)
        await orchestrator.cancel(RIDER, ride.id)
        with pytest.raises(Conflict):
            await orchestrator.cancel(RIDER, ride.id)

    async def test_started_ride_cannot_be_cancelled(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "started")
        with pytest.raises(InvalidState):
            await orchestrator.cancel(RIDER, ride.id)

    async def test_other_rider_cannot_cancel(self, orchestrator):
        ride = await book(orchestrator)
        with pytest.raises(Unauthorized):
            await orchestrator.cancel(RiderActor("someone-else"), ride.id)

    async def test_rider_can_book_again_after_cancel(self, orchestrator):
        ride = await book(orchestrator)
        await orchestrator.cancel(RIDER, ride.id)
        again = await book(orchestrator)
        assert again.id != ride.id


@pytest.mark.asyncio
class TestCaptainRequeue:
    async def test_captain_cancel_requeues_same_ride(self, orchestrator, session_factory, clock, add_captain, listen):
        first = await add_captain(offset=0.01)
        second = await add_captain(offset=0.02)
        first_socket = await listen("captain", first.id)
        second_socket = await listen("captain", second.id)
        rider_socket = await listen("rider", RIDER.id)
        ride = await book(orchestrator)

        await orchestrator.accept(CaptainActor(first.id), ride.id)
        clock.advance(10)
        outcome = await orchestrator.cancel(CaptainActor(first.id), ride.id, "vehicle issue")

        assert outcome.requeued is True
        assert outcome.fee == Decimal("0.00")
        assert outcome.ride.id == ride.id
        assert outcome.ride.status == "searching"
        assert outcome.ride.captain_id is None
        assert outcome.ride.match_deadline == clock() + timedelta(seconds=60)
        assert (await load(session_factory, Captain, first.id)).is_on_ride is False

        cancelled = rider_socket.events("ride:cancelled")[0]["data"]
        assert cancelled["requeued"] is True
        # re-offered to everyone except the captain who backed out
        assert len(first_socket.events("ride:new-request")) == 1
        assert len(second_socket.events("ride:new-request")) == 2

        ride = await orchestrator.accept(CaptainActor(second.id), ride.id)
        assert ride.captain_id == second.id
        kinds = [e.kind for e in await orchestrator.ride_history(ride.id)]
        assert kinds == ["book", "accept", "requeue", "accept"]

    async def test_requeue_counts_against_cancellation_rate(self, orchestrator, session_factory, clock, add_captain):
        captain = await add_captain()
        ride = await book(orchestrator)
        await orchestrator.accept(CaptainActor(captain.id), ride.id)
        await orchestrator.cancel(CaptainActor(captain.id), ride.id)
        async with session_factory() as db:
            rates = await orchestrator.locator.cancellation_rates(db, [captain.id], clock())
        assert rates[captain.id] == 1.0

    async def test_captain_who_backed_out_cannot_reaccept(self, orchestrator, session_factory, clock, add_captain):
        captain = await add_captain()
        ride = await book(orchestrator)
        await orchestrator.accept(CaptainActor(captain.id), ride.id)
        clock.advance(10)
        await orchestrator.cancel(CaptainActor(captain.id), ride.id, "wrong turn")

        with pytest.raises(Conflict, match="already cancelled this ride"):
            await orchestrator.accept(CaptainActor(captain.id), ride.id)
        stored = await load(session_factory, Ride, ride.id)
        assert stored.status == "searching" and stored.captain_id is None


@pytest.mark.asyncio
class TestRatingsAndTips:
    async def test_rider_rates_captain_once(self, orchestrator, session_factory, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "completed")

        rated = await orchestrator.rate(RIDER, ride.id, 5, "great")
        assert rated.rider_rating == 5
        stored = await load(session_factory, Captain, captain.id)
        assert stored.rating_average == 5.0 and stored.rating_count == 1

        with pytest.raises(Conflict):
            await orchestrator.rate(RIDER, ride.id, 4)

    async def test_captain_rates_rider(self, orchestrator, session_factory, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "completed")
        await orchestrator.rate(CaptainActor(captain.id), ride.id, 4)
        rider = await load(session_factory, Rider, RIDER.id)
        assert rider.rating_average == 4.0 and rider.rating_count == 1

    async def test_rating_bounds(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "completed")
        for bad in (0, 6, True):
            with pytest.raises(ValidationFailed):
                await orchestrator.rate(RIDER, ride.id, bad)

    async def test_rating_requires_completion(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "started")
        with pytest.raises(InvalidState):
            await orchestrator.rate(RIDER, ride.id, 5)

    async def test_tip_after_completion(self, orchestrator, clock, add_captain, listen):
        captain = await add_captain()
        captain_socket = await listen("captain", captain.id)
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "completed")

        tipped = await orchestrator.tip(RIDER, ride.id, Decimal("30"))
        tipped = await orchestrator.tip(RIDER, ride.id, Decimal("20"))
        assert tipped.tip_total == Decimal("50.00")
        assert len(captain_socket.events("ride:tip-received")) == 2

        with pytest.raises(ValidationFailed):
            await orchestrator.tip(RIDER, ride.id, Decimal("0"))

    async def test_tip_before_completion_rejected(self, orchestrator):
        ride = await book(orchestrator)
        with pytest.raises(InvalidState):
            await orchestrator.tip(RIDER, ride.id, Decimal("10"))


@pytest.mark.asyncio
class TestCoupons:
    async def _coupon(self, session_factory, clock, **overrides):
        values = dict(
            code="FLAT20",
            discount_type="flat",
            discount_value=Decimal("20"),
            valid_from=clock() - timedelta(days=1),
            valid_until=clock() + timedelta(days=1),
            usage_limit=100,
            per_user_limit=1,
            applicable_classes=[],
        )
        values.update(overrides)
        coupon = Coupon(**values)
        async with session_factory() as db:
            db.add(coupon)
            await db.commit()
            await db.refresh(coupon)
        return coupon

    async def test_book_with_coupon(self, orchestrator, session_factory, clock):
        coupon = await self._coupon(session_factory, clock)
        ride = await book(orchestrator, coupon_code="flat20")
        assert ride.discount == Decimal("20.00")
        assert ride.coupon_id == coupon.id
        assert (await load(session_factory, Coupon, coupon.id)).used_count == 1

        await orchestrator.cancel(RIDER, ride.id)
        with pytest.raises(Conflict):
            await book(orchestrator, coupon_code="FLAT20")

    async def test_apply_and_remove(self, orchestrator, session_factory, clock):
        coupon = await self._coupon(session_factory, clock, code="HALF", discount_type="percentage",
                                    discount_value=Decimal("50"), max_discount=Decimal("15"))
        ride = await book(orchestrator)
        undiscounted = ride.total_fare

        applied = await orchestrator.apply_coupon(RIDER, ride.id, "HALF")
        assert applied.discount == Decimal("15.00")
        assert applied.total_fare == undiscounted - Decimal("15.00")

        removed = await orchestrator.remove_coupon(RIDER, ride.id)
        assert removed.coupon_id is None
        assert removed.total_fare == undiscounted
        assert (await load(session_factory, Coupon, coupon.id)).used_count == 0

    async def test_expired_coupon(self, orchestrator, session_factory, clock):
        await self._coupon(session_factory, clock, code="OLD", valid_until=clock() - timedelta(hours=1))
        with pytest.raises(ValidationFailed):
            await book(orchestrator, coupon_code="OLD")

    async def test_unknown_coupon(self, orchestrator):
        with pytest.raises(NotFound):
            await book(orchestrator, coupon_code="NOPE")


@pytest.mark.asyncio
class TestCaptainSession:
    async def test_cannot_go_offline_during_ride(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        await drive(orchestrator, clock, captain.id, await book(orchestrator), "accepted")
        with pytest.raises(InvalidState):
            await orchestrator.set_availability(CaptainActor(captain.id), False)

    async def test_going_offline_leaves_geo_index(self, orchestrator, redis, add_captain):
        captain = await add_captain()
        await orchestrator.set_availability(CaptainActor(captain.id), False)
        assert captain.id not in redis.geo.get("captains:geo:bike", {})

    async def test_location_tracked_during_ride(self, orchestrator, clock, add_captain, listen):
        captain = await add_captain()
        rider_socket = await listen("rider", RIDER.id)
        ride = await drive(orchestrator, clock, captain.id, await book(orchestrator), "accepted")

        clock.advance(5)
        await orchestrator.update_location(CaptainActor(captain.id), 12.9740, 77.5946, heading=180.0, speed=22.5)
        clock.advance(5)
        await orchestrator.update_location(CaptainActor(captain.id), 12.9730, 77.5946)
        sent_at = clock.now

        clock.advance(20)
        tracking = await orchestrator.tracking(RIDER, ride.id)
        assert [s.lat for s in tracking.samples] == [12.9740, 12.9730]
        assert tracking.captain_location["lat"] == 12.9730
        # when the captain sent it, not when the rider asked
        assert tracking.captain_location["recorded_at"] == sent_at
        assert len(rider_socket.events("captain:location")) == 2

    async def test_going_online_fails_when_location_index_is_down(self, orchestrator, session_factory, redis, add_captain):
        captain = await add_captain(online=False)
        redis.geoadd.side_effect = RedisConnectionError("down")
        with pytest.raises(Unavailable):
            await orchestrator.set_availability(CaptainActor(captain.id), True, 12.98, 77.59)
        assert (await load(session_factory, Captain, captain.id)).is_online is False

    async def test_location_outside_ride_not_tracked(self, orchestrator, add_captain):
        captain = await add_captain()
        assert await orchestrator.update_location(CaptainActor(captain.id), 12.98, 77.59) is None

    async def test_nearby_requests(self, orchestrator, add_captain):
        captain = await add_captain(offset=0.01)
        ride = await book(orchestrator)
        found = await orchestrator.nearby_requests(CaptainActor(captain.id))
        assert [(r.id, eta) for r, _, eta in found] == [(ride.id, 3)]

    async def test_admin_suspension_takes_captain_offline(self, orchestrator, redis, add_captain):
        captain = await add_captain()
        reviewed = await orchestrator.review_captain(AdminActor("ops-1"), captain.id, "suspended")
        assert reviewed.approval_status == "suspended"
        assert reviewed.is_online is False
        assert captain.id not in redis.geo.get("captains:geo:bike", {})

    async def test_register_captain_duplicate_phone(self, orchestrator):
        await orchestrator.register_captain("Ravi Kumar", "9812345678", "auto")
        with pytest.raises(Conflict):
            await orchestrator.register_captain("Ravi K", "9812345678", "auto")


@pytest.mark.asyncio
class TestReads:
    async def test_visibility(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        stranger = await add_captain(offset=0.03)
        ride = await book(orchestrator)

        # any captain may look at a searching ride
        assert (await orchestrator.get_ride(CaptainActor(stranger.id), ride.id)).id == ride.id
        await drive(orchestrator, clock, captain.id, ride, "accepted")
        with pytest.raises(Unauthorized):
            await orchestrator.get_ride(CaptainActor(stranger.id), ride.id)
        with pytest.raises(Unauthorized):
            await orchestrator.get_ride(RiderActor("someone-else"), ride.id)
        assert (await orchestrator.get_ride(AdminActor("ops"), ride.id)).id == ride.id

    async def test_active_ride(self, orchestrator, clock, add_captain):
        captain = await add_captain()
        ride = await book(orchestrator)
        await drive(orchestrator, clock, captain.id, ride, "accepted")
        assert (await orchestrator.active_ride(RIDER)).id == ride.id
        assert (await orchestrator.active_ride(CaptainActor(captain.id))).id == ride.id

    async def test_missing_ride(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.get_ride(RIDER, "does-not-exist")
