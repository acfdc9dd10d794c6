from __future__ import annotations

import hashlib
import logging
import secrets
import string
from datetime import datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Optional

from config import ORDER_PAYMENT_TIMEOUT_SECONDS, PAYMENT_PROVIDER, RECHARGE_CURRENCY
from observability import get_logger, log_event

from .coupons import CouponError, apply_coupon_price, validate_coupon
from .metrics import apply_order_delta
from .models import (
    CouponUsage,
    Order,
    OrderItem,
    OrderStatus,
    PackageSnapshot,
    Payment,
    PaymentStatus,
    Recharge,
    RechargeStatus,
    utc_now,
)
from .repository import FulfillmentRepository, FulfillmentStateError

_LOGGER = get_logger("fulfillment.orders")

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_order_number(store_id: str, *, now: Optional[datetime] = None) -> str:
    """
    Twelve characters: six from the millisecond clock in base36, four from the
    store id hash, two random.
    """
    moment = now or utc_now()
    clock = _to_base36(int(moment.timestamp() * 1000))[-6:].rjust(6, "0")
    store_hash = hashlib.md5(str(store_id).encode("utf-8")).hexdigest()[:4].upper()
    suffix = "".join(secrets.choice(_BASE36) for _ in range(2))
    return f"{clock}{store_hash}{suffix}"


def _unique_order_number(repo: FulfillmentRepository, store_id: str, now: datetime) -> str:
    for _ in range(8):
        candidate = generate_order_number(store_id, now=now)
        if not repo.order_number_exists(candidate):
            return candidate
    raise FulfillmentStateError("could not allocate a unique order number")


def create_order(
    repo: FulfillmentRepository,
    *,
    store_id: str,
    user_id: str,
    product_id: str,
    package_name: str,
    credit_amount: int,
    base_price: Decimal,
    target_account_id: str,
    package_id: Optional[str] = None,
    coupon_code: Optional[str] = None,
    external_payment_id: Optional[str] = None,
    payment_method: str = "PIX",
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> Order:
    """
    Create the full order graph in CREATED / PENDING state.

    A coupon only produces a speculative usage here; it is counted when the
    order completes.
    """
    current = now or utc_now()
    if repo.get_store(store_id) is None:
        raise FulfillmentStateError(f"store not found: {store_id}")
    product = repo.get_product(product_id)
    if product is None:
        raise FulfillmentStateError(f"product not found: {product_id}")
    if int(credit_amount) <= 0:
        raise FulfillmentStateError("credit_amount must be positive")
    account = str(target_account_id or "").strip()
    if not account:
        raise FulfillmentStateError("target_account_id is required")

    coupon = None
    if coupon_code:
        coupon = validate_coupon(repo.get_coupon_by_code(store_id, coupon_code), price=base_price, now=current)
    price, discount = apply_coupon_price(base_price, coupon)
    if price <= 0:
        raise CouponError("coupon discount leaves nothing to charge")

    snapshot = PackageSnapshot(
        package_id=package_id,
        name=str(package_name).strip(),
        credit_amount=int(credit_amount),
        base_price=base_price,
        created_at=current,
    )
    recharge = Recharge(
        target_account_id=account,
        credit_amount=int(credit_amount),
        status=RechargeStatus.PENDING,
        attempts=0,
        status_updated_at=current,
        created_at=current,
    )
    item = OrderItem(product_id=product.id, product_name=product.name, package_snapshot=snapshot, recharge=recharge)
    payment = Payment(
        status=PaymentStatus.PENDING,
        provider=PAYMENT_PROVIDER,
        external_id=(str(external_payment_id).strip() or None) if external_payment_id else None,
        method=str(payment_method or "PIX").upper(),
        amount=price,
        currency=RECHARGE_CURRENCY,
        status_updated_at=current,
        created_at=current,
    )
    order = Order(
        order_number=_unique_order_number(repo, store_id, current),
        price=price,
        base_price=base_price,
        status=OrderStatus.CREATED,
        store_id=store_id,
        user_id=str(user_id),
        payment=payment,
        order_item=item,
        created_at=current,
        updated_at=current,
    )
    if coupon is not None:
        order.coupon_usage = CouponUsage(coupon=coupon, discount_applied=discount, created_at=current)
    repo.add(order)
    apply_order_delta(repo, order, None, tz=tz)
    log_event(
        _LOGGER,
        logging.INFO,
        "fulfillment.order.created",
        order_id=order.id,
        order_number=order.order_number,
        store_id=store_id,
        price=price,
        coupon=coupon.code if coupon is not None else None,
    )
    return order


def expire_stale_orders(
    repo: FulfillmentRepository,
    store_id: str,
    *,
    now: Optional[datetime] = None,
    timeout_seconds: int = ORDER_PAYMENT_TIMEOUT_SECONDS,
    tz: Optional[tzinfo] = None,
) -> list[str]:
    """Expire CREATED orders whose payment window has passed. Returns the expired order ids."""
    current = now or utc_now()
    cutoff = current - timedelta(seconds=int(timeout_seconds))
    expired: list[str] = []
    for order in repo.list_stale_created_orders(store_id, cutoff):
        previous = order.status
        order.status = OrderStatus.EXPIRED
        order.updated_at = current
        if order.payment.status == PaymentStatus.PENDING:
            order.payment.status = PaymentStatus.REJECTED
            order.payment.status_updated_at = current
        if order.recharge.status == RechargeStatus.PENDING:
            order.recharge.status = RechargeStatus.REJECTED
            order.recharge.status_updated_at = current
        apply_order_delta(repo, order, previous, tz=tz)
        expired.append(order.id)
    if expired:
        log_event(_LOGGER, logging.INFO, "fulfillment.order.expired", store_id=store_id, count=len(expired))
    return expired
