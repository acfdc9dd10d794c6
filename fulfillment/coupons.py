from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from observability import get_logger, log_event

from .models import Coupon, CouponUsage, Order, utc_now
from .repository import ZERO, FulfillmentRepository, as_utc_aware

_LOGGER = get_logger("fulfillment.coupons")

CENT = Decimal("0.01")


class CouponError(ValueError):
    pass


def to_money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_discount(
    price: Decimal,
    *,
    discount_percentage: Optional[Decimal] = None,
    discount_amount: Optional[Decimal] = None,
) -> Decimal:
    """Discount for `price`; a fixed amount never exceeds the price itself."""
    amount = to_money(price)
    if discount_percentage is not None:
        return to_money(amount * Decimal(str(discount_percentage)) / Decimal(100))
    if discount_amount is not None:
        return min(to_money(discount_amount), amount)
    return ZERO


def apply_coupon_price(price: Decimal, coupon: Optional[Coupon]) -> tuple[Decimal, Decimal]:
    base = to_money(price)
    if coupon is None:
        return base, ZERO
    discount = calculate_discount(
        base,
        discount_percentage=coupon.discount_percentage,
        discount_amount=coupon.discount_amount,
    )
    return max(ZERO, base - discount), discount


def validate_coupon(coupon: Optional[Coupon], *, price: Decimal, now: Optional[datetime] = None) -> Coupon:
    if coupon is None:
        raise CouponError("coupon not found")
    if not coupon.active:
        raise CouponError(f"coupon {coupon.code} is inactive")
    current = now or utc_now()
    if coupon.expires_at is not None and as_utc_aware(coupon.expires_at) <= current:
        raise CouponError(f"coupon {coupon.code} has expired")
    if coupon.max_uses is not None and int(coupon.times_used or 0) >= int(coupon.max_uses):
        raise CouponError(f"coupon {coupon.code} reached its usage limit")
    if coupon.min_order_amount is not None and to_money(price) < to_money(coupon.min_order_amount):
        raise CouponError(f"coupon {coupon.code} requires a minimum order of {coupon.min_order_amount}")
    return coupon


def _order_month(order: Order) -> tuple[int, int]:
    created = as_utc_aware(order.created_at)
    return created.month, created.year


def confirm_coupon_usage(repo: FulfillmentRepository, order: Order, *, now: Optional[datetime] = None) -> bool:
    """Count a speculative usage once its order completes. Returns False when there is nothing to do."""
    usage: Optional[CouponUsage] = order.coupon_usage
    if usage is None or usage.confirmed_at is not None:
        return False
    coupon = usage.coupon
    price = to_money(order.price)
    coupon.times_used = int(coupon.times_used or 0) + 1
    coupon.total_sales_amount = to_money(coupon.total_sales_amount or ZERO) + price
    if coupon.influencer_id:
        month, year = _order_month(order)
        totals = repo.get_or_create_influencer_month(coupon.influencer_id, month=month, year=year)
        totals.total_sales = to_money(totals.total_sales or ZERO) + price
    usage.confirmed_at = now or utc_now()
    usage.reverted_at = None
    log_event(_LOGGER, logging.INFO, "fulfillment.coupon.confirmed", order_id=order.id, coupon_id=coupon.id, amount=price)
    return True


def revert_coupon_usage(repo: FulfillmentRepository, order: Order, *, now: Optional[datetime] = None) -> bool:
    """Undo a confirmed usage after a refund or chargeback. Unconfirmed usages are left untouched."""
    usage: Optional[CouponUsage] = order.coupon_usage
    if usage is None or usage.confirmed_at is None or usage.reverted_at is not None:
        return False
    coupon = usage.coupon
    price = to_money(order.price)
    coupon.times_used = max(0, int(coupon.times_used or 0) - 1)
    coupon.total_sales_amount = max(ZERO, to_money(coupon.total_sales_amount or ZERO) - price)
    if coupon.influencer_id:
        month, year = _order_month(order)
        totals = repo.get_or_create_influencer_month(coupon.influencer_id, month=month, year=year)
        totals.total_sales = max(ZERO, to_money(totals.total_sales or ZERO) - price)
    usage.reverted_at = now or utc_now()
    log_event(_LOGGER, logging.INFO, "fulfillment.coupon.reverted", order_id=order.id, coupon_id=coupon.id, amount=price)
    return True
