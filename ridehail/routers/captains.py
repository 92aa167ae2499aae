"""
Captains router.

  POST  /v1/captains                          onboarding (no auth)
  PATCH /v1/captains/{id}/approval            admin review
  PUT   /v1/captains/me/availability          go online / offline
  POST  /v1/captains/me/location              high-frequency position updates
  GET   /v1/captains/me/nearby-requests
  GET   /v1/captains/me/active-ride
  POST  /v1/captains/rides/{id}/accept | reject | arriving | arrived
                                 | start | complete | cancel | rate
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, status

from ridehail.actors import AdminActor, CaptainActor
from ridehail.middleware.auth import get_current_admin, get_current_captain
from ridehail.routers.rides import ride_out
from ridehail.schemas.schemas import (
    ApprovalRequest,
    ArrivingRequest,
    AvailabilityRequest,
    CancelRequest,
    CancelResponse,
    CaptainCreateRequest,
    CaptainResponse,
    CompleteRideRequest,
    LocationUpdateRequest,
    NearbyRequestOut,
    RateRequest,
    RejectRequest,
    RideResponse,
    StartRideRequest,
)
from ridehail.services.dispatch import DispatchOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/captains", tags=["Captains"])


# ---------------------------------------------------------------------------
# Onboarding & session
# ---------------------------------------------------------------------------

@router.post("", status_code=status.HTTP_201_CREATED, response_model=CaptainResponse)
async def create_captain(
    payload: CaptainCreateRequest,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Register a new captain. No auth required for onboarding."""
    captain = await orchestrator.register_captain(payload.name, payload.phone, payload.vehicle_class.value)
    return CaptainResponse.model_validate(captain)


@router.patch("/{captain_id}/approval", response_model=CaptainResponse)
async def review_captain(
    captain_id: str,
    payload: ApprovalRequest,
    admin: AdminActor = Depends(get_current_admin),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    captain = await orchestrator.review_captain(admin, captain_id, payload.approval_status.value)
    return CaptainResponse.model_validate(captain)


@router.put("/me/availability", response_model=CaptainResponse)
async def set_availability(
    payload: AvailabilityRequest,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    row = await orchestrator.set_availability(captain, payload.online, payload.lat, payload.lng)
    return CaptainResponse.model_validate(row)


@router.post("/me/location", status_code=status.HTTP_204_NO_CONTENT)
async def update_location(
    payload: LocationUpdateRequest,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """
    High-frequency endpoint.
    Refreshes the GEO index, and while a ride is in progress also appends a
    tracking sample and forwards the position to the rider.
    """
    await orchestrator.update_location(captain, payload.lat, payload.lng, payload.heading, payload.speed)


@router.get("/me/nearby-requests", response_model=list[NearbyRequestOut])
async def nearby_requests(
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    found = await orchestrator.nearby_requests(captain)
    return [
        NearbyRequestOut(ride=ride_out(ride, captain), distance_to_pickup_km=distance, eta_to_pickup_minutes=eta)
        for ride, distance, eta in found
    ]


@router.get("/me/active-ride", response_model=Optional[RideResponse])
async def active_ride(
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.active_ride(captain)
    return ride_out(ride, captain) if ride else None


# ---------------------------------------------------------------------------
# Ride actions
# ---------------------------------------------------------------------------

@router.post("/rides/{ride_id}/accept", response_model=RideResponse)
async def accept_ride(
    ride_id: str,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """
    Captain accepts a broadcast offer.
    First writer wins; everyone else gets 409 "Ride no longer available".
    """
    ride = await orchestrator.accept(captain, ride_id)
    return ride_out(ride, captain)


@router.post("/rides/{ride_id}/reject", status_code=status.HTTP_204_NO_CONTENT)
async def reject_ride(
    ride_id: str,
    payload: Optional[RejectRequest] = None,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.reject(captain, ride_id, payload.reason if payload else "")


@router.post("/rides/{ride_id}/arriving", response_model=RideResponse)
async def mark_arriving(
    ride_id: str,
    payload: Optional[ArrivingRequest] = None,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.set_arriving(captain, ride_id, payload.eta_minutes if payload else None)
    return ride_out(ride, captain)


@router.post("/rides/{ride_id}/arrived", response_model=RideResponse)
async def mark_arrived(
    ride_id: str,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.captain_arrived(captain, ride_id)
    return ride_out(ride, captain)


@router.post("/rides/{ride_id}/start", response_model=RideResponse)
async def start_ride(
    ride_id: str,
    payload: StartRideRequest,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.start(captain, ride_id, payload.code)
    return ride_out(ride, captain)


@router.post("/rides/{ride_id}/complete", response_model=RideResponse)
async def complete_ride(
    ride_id: str,
    payload: Optional[CompleteRideRequest] = None,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    payload = payload or CompleteRideRequest()
    ride = await orchestrator.complete(captain, ride_id, payload.toll_charges, payload.waiting_charges)
    return ride_out(ride, captain)


@router.post("/rides/{ride_id}/cancel", response_model=CancelResponse)
async def cancel_ride(
    ride_id: str,
    payload: Optional[CancelRequest] = None,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    outcome = await orchestrator.cancel(captain, ride_id, payload.reason if payload else "")
    return CancelResponse(
        ride=ride_out(outcome.ride, captain), cancellation_fee=float(outcome.fee), requeued=outcome.requeued
    )


@router.post("/rides/{ride_id}/rate", response_model=RideResponse)
async def rate_rider(
    ride_id: str,
    payload: RateRequest,
    captain: CaptainActor = Depends(get_current_captain),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    ride = await orchestrator.rate(captain, ride_id, payload.rating, payload.comment)
    return ride_out(ride, captain)
