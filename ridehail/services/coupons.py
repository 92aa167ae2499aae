"""
Coupon validation and redemption against the (externally managed) catalog.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ridehail.errors import Conflict, NotFound, ValidationFailed
from ridehail.models.coupon import Coupon, CouponRedemption
from ridehail.services.pricing import to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CouponQuote:
    coupon: Coupon
    discount: Decimal


async def quote_coupon(
    db: AsyncSession,
    code: str,
    rider_id: str,
    vehicle_class: str,
    fare_amount: Decimal,
    now: datetime,
) -> CouponQuote:
    """Validate ``code`` for this rider/class/fare and compute the discount."""
    coupon = await db.scalar(select(Coupon).where(Coupon.code == code.strip().upper(), Coupon.is_active.is_(True)))
    if coupon is None:
        raise NotFound("Invalid coupon code")
    if coupon.valid_from > now:
        raise ValidationFailed("Coupon is not yet active")
    if coupon.valid_until < now:
        raise ValidationFailed("Coupon has expired")
    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise Conflict("Coupon usage limit reached")

    used_by_rider = await db.scalar(
        select(func.count(CouponRedemption.id)).where(
            CouponRedemption.coupon_id == coupon.id,
            CouponRedemption.rider_id == rider_id,
        )
    )
    if used_by_rider >= coupon.per_user_limit:
        raise Conflict("You have already used this coupon")
    if coupon.applicable_classes and vehicle_class not in coupon.applicable_classes:
        raise ValidationFailed("Coupon not applicable for this vehicle class")
    if coupon.min_order_value is not None and fare_amount < coupon.min_order_value:
        raise ValidationFailed(f"Minimum order value of {coupon.min_order_value} required")

    if coupon.discount_type == "percentage":
        discount = fare_amount * coupon.discount_value / Decimal(100)
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
    else:
        discount = min(coupon.discount_value, fare_amount)
    return CouponQuote(coupon=coupon, discount=to_money(discount))


async def redeem_coupon(db: AsyncSession, coupon: Coupon, rider_id: str, ride_id: str, now: datetime) -> None:
    """Consume one use of the coupon; caller commits."""
    conditions = [Coupon.id == coupon.id]
    if coupon.usage_limit is not None:
        conditions.append(Coupon.used_count < coupon.usage_limit)
    result = await db.execute(
        update(Coupon)
        .where(*conditions)
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise Conflict("Coupon usage limit reached")
    db.add(CouponRedemption(coupon_id=coupon.id, rider_id=rider_id, ride_id=ride_id, redeemed_at=now))
    logger.info("Coupon %s redeemed by rider=%s ride=%s", coupon.code, rider_id, ride_id)


async def release_coupon(db: AsyncSession, coupon_id: str, ride_id: str) -> None:
    """Undo a redemption when the coupon is removed from a searching ride; caller commits."""
    redemption = await db.scalar(
        select(CouponRedemption).where(CouponRedemption.coupon_id == coupon_id, CouponRedemption.ride_id == ride_id)
    )
    if redemption is None:
        return
    await db.delete(redemption)
    await db.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.used_count > 0)
        .values(used_count=Coupon.used_count - 1)
        .execution_options(synchronize_session=False)
    )
