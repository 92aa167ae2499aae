"""
Rides router (rider side).

  POST   /v1/rides/estimate          fare + surge + pickup ETA, no side effects
  POST   /v1/rides                   book (Idempotency-Key aware)
  GET    /v1/rides/active
  GET    /v1/rides/{id}
  GET    /v1/rides/{id}/tracking
  POST   /v1/rides/{id}/cancel | rate | tip
  POST   /v1/rides/{id}/coupon, DELETE /v1/rides/{id}/coupon
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status

from ridehail.actors import Actor, RiderActor
from ridehail.middleware.auth import get_current_actor, get_current_rider
from ridehail.middleware.idempotency import check_idempotency, store_idempotency_result
from ridehail.models.ride import Ride
from ridehail.schemas.schemas import (
    CancelRequest,
    CancelResponse,
    CouponRequest,
    EstimateRequest,
    EstimateResponse,
    RateRequest,
    RideCreateRequest,
    RideResponse,
    TipRequest,
    TrackingPoint,
    TrackingResponse,
)
from ridehail.services.dispatch import DispatchOrchestrator, get_orchestrator
from ridehail.services.lifecycle import S, serialize_ride

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Rides"])

# The rider needs the start code only once a captain is assigned and not yet driving
_CODE_VISIBLE = {S.accepted.value, S.arriving.value, S.arrived.value}


def ride_out(ride: Ride, actor: Actor) -> RideResponse:
    reveal = isinstance(actor, RiderActor) and ride.rider_id == actor.id and ride.status in _CODE_VISIBLE
    return RideResponse(**serialize_ride(ride, reveal_code=reveal))


@router.post("/estimate", response_model=EstimateResponse)
async def estimate_ride(
    payload: EstimateRequest,
    actor: RiderActor = Depends(get_current_rider),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.estimate(payload.pickup, payload.destination, payload.vehicle_class.value)
    return EstimateResponse(**result)


@router.post("", status_code=status.HTTP_201_CREATED, response_model=RideResponse)
async def book_ride(
    payload: RideCreateRequest,
    request: Request,
    actor: RiderActor = Depends(get_current_rider),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
):
    # 1. Replay a previous booking made with the same key
    if idempotency_key:
        cached = await check_idempotency(request, orchestrator.redis, actor.id)
        if cached:
            return cached

    # 2. Price, persist and broadcast to nearby captains
    ride = await orchestrator.book(
        actor,
        payload.pickup,
        payload.destination,
        payload.vehicle_class.value,
        payload.payment_method.value,
        coupon_code=payload.coupon_code,
        scheduled_at=payload.scheduled_at,
    )
    response = ride_out(ride, actor)

    # 3. Remember the result for retries
    if idempotency_key:
        await store_idempotency_result(
            orchestrator.redis, actor.id, idempotency_key, status.HTTP_201_CREATED, response.model_dump(mode="json")
        )
    return response


@router.get("/active", response_model=Optional[RideResponse])
async def get_active_ride(
    actor: RiderActor = Depends(get_current_rider),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.active_ride(actor)
    return ride_out(ride, actor) if ride else None


@router.get("/{ride_id}", response_model=RideResponse)
async def get_ride(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.get_ride(actor, ride_id)
    return ride_out(ride, actor)


@router.get("/{ride_id}/tracking", response_model=TrackingResponse)
async def get_tracking(
    ride_id: str,
    actor: Actor = Depends(get_current_actor),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    tracking = await orchestrator.tracking(actor, ride_id)
    return TrackingResponse(
        ride_id=tracking.ride.id,
        status=tracking.ride.status,
        captain_location=TrackingPoint(**tracking.captain_location) if tracking.captain_location else None,
        samples=[
            TrackingPoint(lat=s.lat, lng=s.lng, heading=s.heading, speed=s.speed, recorded_at=s.recorded_at)
            for s in tracking.samples
        ],
    )


@router.post("/{ride_id}/cancel", response_model=CancelResponse)
async def cancel_ride(
    ride_id: str,
    payload: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.cancel(actor, ride_id, payload.reason)
    return CancelResponse(
        ride=ride_out(outcome.ride, actor), cancellation_fee=float(outcome.fee), requeued=outcome.requeued
    )


@router.post("/{ride_id}/rate", response_model=RideResponse)
async def rate_captain(
    ride_id: str,
    payload: RateRequest,
    actor: RiderActor = Depends(get_current_rider),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.rate(actor, ride_id, payload.rating, payload.comment)
    return ride_out(ride, actor)


@router.post("/{ride_id}/tip", response_model=RideResponse)
async def tip_captain(
    ride_id: str,
    payload: TipRequest,
    actor: RiderActor = Depends(get_current_rider),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.tip(actor, ride_id, payload.amount)
    return ride_out(ride, actor)


@router.post("/{ride_id}/coupon", response_model=RideResponse)
async def apply_coupon(
    ride_id: str,
    payload: CouponRequest,
    actor: RiderActor = Depends(get_current_rider),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.apply_coupon(actor, ride_id, payload.code)
    return ride_out(ride, actor)


@router.delete("/{ride_id}/coupon", response_model=RideResponse)
async def remove_coupon(
    ride_id: str,
    actor: RiderActor = Depends(get_current_rider),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.remove_coupon(actor, ride_id)
    return ride_out(ride, actor)
