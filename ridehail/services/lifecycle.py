"""
Ride lifecycle rules.

    searching -> accepted -> arriving -> arrived -> started -> completed
    cancelled  <- searching | accepted | arriving | arrived
    searching  <- accepted | arriving | arrived   (captain-initiated requeue only)

Everything here is pure; the orchestrator applies these rules through
conditional writes.
"""
import secrets
import string
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from ridehail.config import Settings, get_settings
from ridehail.schemas.schemas import RideStatusEnum as S

ACTIVE_STATUSES = (S.searching, S.accepted, S.arriving, S.arrived, S.started)
CANCELLABLE_STATUSES = (S.searching, S.accepted, S.arriving, S.arrived)
REQUEUEABLE_STATUSES = (S.accepted, S.arriving, S.arrived)
TRACKABLE_STATUSES = (S.accepted, S.arriving, S.arrived, S.started)

VALID_TRANSITIONS: dict[S, frozenset[S]] = {
    S.searching: frozenset({S.accepted, S.cancelled}),
    S.accepted: frozenset({S.arriving, S.arrived, S.cancelled, S.searching}),
    S.arriving: frozenset({S.arrived, S.cancelled, S.searching}),
    S.arrived: frozenset({S.started, S.cancelled, S.searching}),
    S.started: frozenset({S.completed}),
    S.completed: frozenset(),
    S.cancelled: frozenset(),
}


def values(statuses: Iterable[S]) -> list[str]:
    return [s.value for s in statuses]


def is_valid_transition(current: str, next_state: str) -> bool:
    try:
        return S(next_state) in VALID_TRANSITIONS[S(current)]
    except ValueError:
        return False


def is_valid_walk(statuses: list[str]) -> bool:
    """True when every consecutive pair is an edge of the transition table."""
    if not statuses or statuses[0] != S.searching.value:
        return False
    return all(is_valid_transition(a, b) for a, b in zip(statuses, statuses[1:]))


def cancellation_fee(
    status: str,
    actor_kind: str,
    accepted_at: datetime | None,
    now: datetime,
    settings: Settings | None = None,
) -> Decimal:
    """
    Fee owed when a ride is cancelled in ``status`` at ``now``.

    Free while searching, free for system/admin, free inside the grace window
    measured from acceptance; otherwise tiered with arrived above accepted.
    """
    settings = settings or get_settings()
    if status == S.searching.value or actor_kind in ("system", "admin"):
        return Decimal("0.00")
    if accepted_at is not None and now - accepted_at <= timedelta(seconds=settings.free_cancellation_seconds):
        return Decimal("0.00")
    if status == S.arrived.value:
        return Decimal(str(settings.cancellation_fee_arrived)).quantize(Decimal("0.01"))
    return Decimal(str(settings.cancellation_fee_accepted)).quantize(Decimal("0.01"))


def running_mean(ratings: Iterable[int]) -> tuple[float, int]:
    """Mean over the full rating history rounded half-up to one decimal, plus the count."""
    ratings = list(ratings)
    if not ratings:
        return 0.0, 0
    mean = Decimal(sum(ratings)) / Decimal(len(ratings))
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)), len(ratings)


_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_ride_code(now: datetime) -> str:
    """Public ride code, e.g. ``RD-20240101-7K2QXA``."""
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(6))
    return f"RD-{now:%Y%m%d}-{suffix}"


def generate_otp(length: int) -> str:
    return "".join(secrets.choice(string.digits) for _ in range(length))


def serialize_ride(ride, reveal_code: bool = False) -> dict:
    """Plain-dict view of a ride row, shared by responses and event payloads."""
    cancellation = None
    if ride.status == S.cancelled.value:
        cancellation = {
            "by": ride.cancelled_by,
            "reason": ride.cancel_reason,
            "fee": float(ride.cancellation_fee or 0),
        }
    return {
        "id": ride.id,
        "code": ride.code,
        "status": ride.status,
        "rider_id": ride.rider_id,
        "captain_id": ride.captain_id,
        "vehicle_class": ride.vehicle_class,
        "pickup": {"address": ride.pickup_address, "lat": ride.pickup_lat, "lng": ride.pickup_lng},
        "destination": {"address": ride.dest_address, "lat": ride.dest_lat, "lng": ride.dest_lng},
        "route": {
            "distance_km": ride.route_distance_km,
            "duration_min": ride.route_duration_min,
            "polyline": ride.route_polyline,
        },
        "fare": {
            "base": float(ride.base_fare),
            "distance_fare": float(ride.distance_fare),
            "time_fare": float(ride.time_fare),
            "surge_fare": float(ride.surge_fare),
            "discount": float(ride.discount),
            "toll_charges": float(ride.toll_charges),
            "waiting_charges": float(ride.waiting_charges),
            "total": float(ride.total_fare),
            "platform_fee": float(ride.platform_fee),
            "captain_earnings": float(ride.captain_earnings),
        },
        "tip_total": float(ride.tip_total or 0),
        "surge_multiplier": float(ride.surge_multiplier),
        "payment_method": ride.payment_method,
        "payment_status": ride.payment_status,
        "otp_verified": ride.otp_verified,
        "otp_code": ride.otp_code if reveal_code else None,
        "coupon_id": ride.coupon_id,
        "cancellation": cancellation,
        "requested_at": ride.requested_at,
        "accepted_at": ride.accepted_at,
        "arriving_at": ride.arriving_at,
        "arrived_at": ride.arrived_at,
        "started_at": ride.started_at,
        "completed_at": ride.completed_at,
        "cancelled_at": ride.cancelled_at,
        "scheduled_at": ride.scheduled_at,
        "dispatched_at": ride.dispatched_at,
    }


def event_payload(ride) -> dict:
    """JSON-safe ride snapshot for real-time events."""
    data = serialize_ride(ride)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data
