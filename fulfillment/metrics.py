"""
Sales aggregates derived from the order ledger.

Two ways to write an aggregate row:

- `apply_order_delta`: adjust the rows an order touches at the moment it
  changes status, so dashboards stay fresh between cron runs.
- `recompute_*`: rebuild a row from every order in scope and overwrite it.

Recompute is the source of truth; running it corrects any drift left by the
delta path, and running it twice yields the same values.
"""

from __future__ import annotations

import calendar
import logging
from collections import defaultdict
from dataclasses import dataclass, fields
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from decimal import Decimal
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from config import METRICS_TIMEZONE
from observability import get_logger, log_event

from .models import (
    Order,
    OrderStatus,
    StoreDailySales,
    StoreMonthlySales,
    StoreMonthlySalesByProduct,
)
from .repository import ZERO, FulfillmentRepository, as_utc_aware

_LOGGER = get_logger("fulfillment.metrics")


def metrics_zone(name: Optional[str] = None) -> tzinfo:
    zone_name = str(name or METRICS_TIMEZONE or "UTC").strip()
    if zone_name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(zone_name)


def local_date(moment: datetime, tz: Optional[tzinfo] = None) -> date:
    return as_utc_aware(moment).astimezone(tz or metrics_zone()).date()


def day_bounds(day: date, tz: Optional[tzinfo] = None) -> tuple[datetime, datetime]:
    zone = tz or metrics_zone()
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def month_bounds(year: int, month: int, tz: Optional[tzinfo] = None) -> tuple[datetime, datetime]:
    first = date(year, month, 1)
    last = date(year, month, calendar.monthrange(year, month)[1])
    start, _ = day_bounds(first, tz)
    _, end = day_bounds(last, tz)
    return start, end


@dataclass(frozen=True)
class OrderContribution:
    """What one order (or a set of orders) adds to an aggregate row."""

    sales: Decimal = ZERO
    orders: int = 0
    completed: int = 0
    expired: int = 0
    refunded: int = 0
    with_coupon: int = 0
    without_coupon: int = 0

    def __add__(self, other: "OrderContribution") -> "OrderContribution":
        return OrderContribution(**{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)})

    def __sub__(self, other: "OrderContribution") -> "OrderContribution":
        return OrderContribution(**{f.name: getattr(self, f.name) - getattr(other, f.name) for f in fields(self)})

    @property
    def is_zero(self) -> bool:
        return all(not getattr(self, f.name) for f in fields(self))


def contribution(status: Optional[OrderStatus], price: Decimal, *, has_coupon: bool = False) -> OrderContribution:
    if status is None:
        return OrderContribution()
    amount = Decimal(str(price)) if status == OrderStatus.COMPLETED else ZERO
    return OrderContribution(
        sales=amount,
        orders=1,
        completed=int(status == OrderStatus.COMPLETED),
        expired=int(status == OrderStatus.EXPIRED),
        refunded=int(status == OrderStatus.REFUNDED),
        with_coupon=int(has_coupon),
        without_coupon=int(not has_coupon),
    )


def order_contribution(order: Order) -> OrderContribution:
    return contribution(order.status, order.price, has_coupon=order.coupon_usage is not None)


def summarize(orders: Iterable[Order]) -> OrderContribution:
    total = OrderContribution()
    for order in orders:
        total = total + order_contribution(order)
    return total


def _store_totals(row: StoreDailySales | StoreMonthlySales, totals: OrderContribution) -> None:
    row.total_sales = max(ZERO, totals.sales)
    row.total_orders = max(0, totals.orders)
    row.total_completed_orders = max(0, totals.completed)
    row.total_expired_orders = max(0, totals.expired)
    row.total_refunded_orders = max(0, totals.refunded)
    if isinstance(row, StoreMonthlySales):
        row.orders_with_coupon = max(0, totals.with_coupon)
        row.orders_without_coupon = max(0, totals.without_coupon)


def _row_totals(row: StoreDailySales | StoreMonthlySales) -> OrderContribution:
    return OrderContribution(
        sales=Decimal(str(row.total_sales or ZERO)),
        orders=int(row.total_orders or 0),
        completed=int(row.total_completed_orders or 0),
        expired=int(row.total_expired_orders or 0),
        refunded=int(row.total_refunded_orders or 0),
        with_coupon=int(getattr(row, "orders_with_coupon", 0) or 0),
        without_coupon=int(getattr(row, "orders_without_coupon", 0) or 0),
    )


def apply_order_delta(
    repo: FulfillmentRepository,
    order: Order,
    previous_status: Optional[OrderStatus],
    *,
    tz: Optional[tzinfo] = None,
) -> OrderContribution:
    """
    Move the aggregates from `previous_status`'s contribution to the order's
    current one. `previous_status=None` means the order is new.
    """
    before = contribution(previous_status, order.price, has_coupon=order.coupon_usage is not None)
    delta = order_contribution(order) - before
    if delta.is_zero:
        return delta

    day = local_date(order.created_at, tz)
    daily = repo.get_or_create_daily_sales(order.store_id, day)
    _store_totals(daily, _row_totals(daily) + delta)

    monthly = repo.get_or_create_monthly_sales(order.store_id, month=day.month, year=day.year)
    _store_totals(monthly, _row_totals(monthly) + delta)

    product_row = repo.get_or_create_product_sales(
        order.store_id, order.order_item.product_id, month=day.month, year=day.year
    )
    product_row.total_sales = max(ZERO, Decimal(str(product_row.total_sales or ZERO)) + delta.sales)
    product_row.total_orders = max(0, int(product_row.total_orders or 0) + delta.orders)

    log_event(
        _LOGGER,
        logging.INFO,
        "fulfillment.metrics.delta_applied",
        order_id=order.id,
        store_id=order.store_id,
        day=day,
        previous_status=previous_status,
        status=order.status,
        sales_delta=delta.sales,
    )
    return delta


def recompute_daily(
    repo: FulfillmentRepository, store_id: str, day: date, *, tz: Optional[tzinfo] = None
) -> StoreDailySales:
    start, end = day_bounds(day, tz)
    totals = summarize(repo.list_orders_created_between(store_id, start, end))
    row = repo.get_or_create_daily_sales(store_id, day)
    _store_totals(row, totals)
    return row


def recompute_monthly(
    repo: FulfillmentRepository, store_id: str, *, month: int, year: int, tz: Optional[tzinfo] = None
) -> StoreMonthlySales:
    start, end = month_bounds(year, month, tz)
    totals = summarize(repo.list_orders_created_between(store_id, start, end))
    row = repo.get_or_create_monthly_sales(store_id, month=month, year=year)
    _store_totals(row, totals)
    return row


def recompute_monthly_by_product(
    repo: FulfillmentRepository, store_id: str, *, month: int, year: int, tz: Optional[tzinfo] = None
) -> list[StoreMonthlySalesByProduct]:
    start, end = month_bounds(year, month, tz)
    grouped: dict[str, OrderContribution] = defaultdict(OrderContribution)
    for order in repo.list_orders_created_between(store_id, start, end):
        grouped[order.order_item.product_id] = grouped[order.order_item.product_id] + order_contribution(order)

    # Rows for products that no longer have orders in scope are zeroed, not left stale.
    for row in repo.list_product_sales(store_id, month=month, year=year):
        grouped.setdefault(row.product_id, OrderContribution())

    rows: list[StoreMonthlySalesByProduct] = []
    for product_id, totals in grouped.items():
        row = repo.get_or_create_product_sales(store_id, product_id, month=month, year=year)
        row.total_sales = max(ZERO, totals.sales)
        row.total_orders = max(0, totals.orders)
        rows.append(row)
    return rows


def recompute_store_day(
    repo: FulfillmentRepository, store_id: str, day: date, *, tz: Optional[tzinfo] = None
) -> dict[str, Any]:
    daily = recompute_daily(repo, store_id, day, tz=tz)
    monthly = recompute_monthly(repo, store_id, month=day.month, year=day.year, tz=tz)
    products = recompute_monthly_by_product(repo, store_id, month=day.month, year=day.year, tz=tz)
    return {
        "store_id": store_id,
        "date": day.isoformat(),
        "daily_total_sales": str(daily.total_sales),
        "daily_total_orders": int(daily.total_orders),
        "monthly_total_sales": str(monthly.total_sales),
        "products": len(products),
    }


def _percentage(part: Decimal, whole: Decimal) -> float:
    if whole <= ZERO:
        return 0.0
    return round(float(part / whole * 100), 2)


def get_dashboard(
    repo: FulfillmentRepository,
    store_id: str,
    *,
    year: int,
    month: int,
    tz: Optional[tzinfo] = None,
) -> dict[str, Any]:
    monthly = repo.get_monthly_sales(store_id, month=month, year=year)
    totals = _row_totals(monthly) if monthly is not None else OrderContribution()
    average_ticket = (totals.sales / totals.completed).quantize(Decimal("0.01")) if totals.completed else ZERO

    first = date(year, month, 1)
    last = date(year, month, calendar.monthrange(year, month)[1])
    daily_rows = repo.list_daily_sales(store_id, first, last)

    product_rows = repo.list_product_sales(store_id, month=month, year=year)
    products: list[dict[str, Any]] = []
    for row in product_rows:
        product = repo.get_product(row.product_id)
        sales = Decimal(str(row.total_sales or ZERO))
        products.append(
            {
                "product_id": row.product_id,
                "product_name": product.name if product is not None else None,
                "total_sales": str(sales),
                "total_orders": int(row.total_orders or 0),
                "percentage": _percentage(sales, totals.sales),
            }
        )

    return {
        "store_id": store_id,
        "period": f"{year:04d}-{month:02d}",
        "summary": {
            "total_sales": str(totals.sales),
            "total_orders": totals.orders,
            "total_completed_orders": totals.completed,
            "total_expired_orders": totals.expired,
            "total_refunded_orders": totals.refunded,
            "orders_with_coupon": totals.with_coupon,
            "orders_without_coupon": totals.without_coupon,
            "average_ticket": str(average_ticket),
        },
        "daily_trend": [
            {
                "date": row.date.isoformat(),
                "total_sales": str(row.total_sales),
                "total_orders": int(row.total_orders or 0),
                "total_completed_orders": int(row.total_completed_orders or 0),
            }
            for row in daily_rows
        ],
        "sales_by_product": products,
    }
