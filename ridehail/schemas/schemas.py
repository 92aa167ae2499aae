from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class VehicleClassEnum(str, Enum):
    bike = "bike"
    auto = "auto"
    cab = "cab"


class PaymentMethodEnum(str, Enum):
    cash = "cash"
    wallet = "wallet"
    card = "card"
    upi = "upi"


class RideStatusEnum(str, Enum):
    searching = "searching"
    accepted = "accepted"
    arriving = "arriving"
    arrived = "arrived"
    started = "started"
    completed = "completed"
    cancelled = "cancelled"


class ApprovalStatusEnum(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    suspended = "suspended"


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------

class Place(BaseModel):
    address: str = Field(default="", max_length=500)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class FareOut(BaseModel):
    base: float
    distance_fare: float
    time_fare: float
    surge_fare: float
    discount: float
    toll_charges: float = 0.0
    waiting_charges: float = 0.0
    total: float
    platform_fee: float
    captain_earnings: float


class RouteOut(BaseModel):
    distance_km: float
    duration_min: float
    polyline: Optional[str] = None


# ---------------------------------------------------------------------------
# Ride schemas
# ---------------------------------------------------------------------------

class EstimateRequest(BaseModel):
    pickup: Place
    destination: Place
    vehicle_class: VehicleClassEnum = VehicleClassEnum.bike


class EstimatedFare(BaseModel):
    min: float
    max: float
    currency: str = "INR"


class EstimateResponse(BaseModel):
    fare: FareOut
    fare_range: EstimatedFare
    route: RouteOut
    surge_multiplier: float
    nearby_count: int
    estimated_pickup_minutes: Optional[int] = None


class RideCreateRequest(BaseModel):
    pickup: Place
    destination: Place
    vehicle_class: VehicleClassEnum = VehicleClassEnum.bike
    payment_method: PaymentMethodEnum = PaymentMethodEnum.cash
    coupon_code: Optional[str] = Field(default=None, max_length=40)
    scheduled_at: Optional[datetime] = None


class CancellationOut(BaseModel):
    by: Optional[str] = None
    reason: Optional[str] = None
    fee: float = 0.0


class RideResponse(BaseModel):
    id: str
    code: str
    status: RideStatusEnum
    rider_id: str
    captain_id: Optional[str] = None
    vehicle_class: str
    pickup: Place
    destination: Place
    route: RouteOut
    fare: FareOut
    tip_total: float
    surge_multiplier: float
    payment_method: str
    payment_status: str
    otp_verified: bool
    otp_code: Optional[str] = None
    coupon_id: Optional[str] = None
    cancellation: Optional[CancellationOut] = None
    requested_at: datetime
    accepted_at: Optional[datetime] = None
    arriving_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None


class CancelRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class CancelResponse(BaseModel):
    ride: RideResponse
    cancellation_fee: float
    requeued: bool


class RateRequest(BaseModel):
    rating: int
    comment: str = Field(default="", max_length=1000)


class TipRequest(BaseModel):
    amount: Decimal


class CouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=40)


class TrackingPoint(BaseModel):
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    recorded_at: Optional[datetime] = None


class TrackingResponse(BaseModel):
    ride_id: str
    status: RideStatusEnum
    captain_location: Optional[TrackingPoint] = None
    samples: list[TrackingPoint]


# ---------------------------------------------------------------------------
# Captain schemas
# ---------------------------------------------------------------------------

class CaptainCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    phone: str = Field(..., min_length=10, max_length=20)
    vehicle_class: VehicleClassEnum = VehicleClassEnum.bike


class CaptainResponse(BaseModel):
    id: str
    name: str
    phone: str
    vehicle_class: str
    approval_status: str
    is_online: bool
    is_on_ride: bool
    rating_average: float
    rating_count: int
    created_at: datetime

    model_config = {"from_attributes": True}


class ApprovalRequest(BaseModel):
    approval_status: ApprovalStatusEnum


class AvailabilityRequest(BaseModel):
    online: bool
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    heading: Optional[float] = None
    speed: Optional[float] = None


class ArrivingRequest(BaseModel):
    eta_minutes: Optional[int] = Field(default=None, ge=0)


class StartRideRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=8)


class CompleteRideRequest(BaseModel):
    toll_charges: Decimal = Field(default=Decimal("0"), ge=0)
    waiting_charges: Decimal = Field(default=Decimal("0"), ge=0)


class RejectRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class NearbyRequestOut(BaseModel):
    ride: RideResponse
    distance_to_pickup_km: float
    eta_to_pickup_minutes: int
