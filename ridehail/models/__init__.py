from ridehail.models.captain import Captain
from ridehail.models.coupon import Coupon, CouponRedemption
from ridehail.models.ride import Ride, RideEvent, TrackingSample
from ridehail.models.rider import Rider

__all__ = ["Captain", "Coupon", "CouponRedemption", "Ride", "RideEvent", "Rider", "TrackingSample"]
