from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session, selectinload

from .models import (
    Coupon,
    CouponUsage,
    CronExecutionStatus,
    Influencer,
    InfluencerMonthlySales,
    MetricsCronExecution,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    Product,
    Recharge,
    RechargeStatus,
    Store,
    StoreDailySales,
    StoreMonthlySales,
    StoreMonthlySalesByProduct,
    WebhookAuditLog,
)

ZERO = Decimal("0.00")


def as_utc_aware(value: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite hands back naive datetimes even for DateTime(timezone=True) columns;
    naive values are treated as UTC so they compare against an aware "now".
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class FulfillmentStateError(RuntimeError):
    pass


class FulfillmentRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    # -- reference data -------------------------------------------------

    def create_store(self, *, name: str, store_id: Optional[str] = None) -> Store:
        normalized = str(name or "").strip()
        if not normalized:
            raise FulfillmentStateError("store name is required")
        store = Store(name=normalized)
        if store_id:
            store.id = store_id
        self.session.add(store)
        self.session.flush()
        return store

    def list_store_ids(self) -> list[str]:
        return list(self.session.scalars(select(Store.id).order_by(Store.created_at, Store.id)))

    def get_store(self, store_id: str) -> Optional[Store]:
        return self.session.get(Store, str(store_id or "").strip())

    def create_product(self, *, name: str, store_id: Optional[str] = None) -> Product:
        product = Product(name=str(name).strip(), store_id=store_id)
        self.session.add(product)
        self.session.flush()
        return product

    def get_product(self, product_id: str) -> Optional[Product]:
        return self.session.get(Product, product_id)

    def create_influencer(self, *, name: str, store_id: Optional[str] = None) -> Influencer:
        influencer = Influencer(name=str(name).strip(), store_id=store_id)
        self.session.add(influencer)
        self.session.flush()
        return influencer

    def create_coupon(
        self,
        *,
        store_id: str,
        code: str,
        discount_percentage: Decimal | None = None,
        discount_amount: Decimal | None = None,
        influencer_id: Optional[str] = None,
        max_uses: Optional[int] = None,
        min_order_amount: Decimal | None = None,
        expires_at: Optional[datetime] = None,
    ) -> Coupon:
        normalized_code = str(code or "").strip().upper()
        if not normalized_code:
            raise FulfillmentStateError("coupon code is required")
        if (discount_percentage is None) == (discount_amount is None):
            raise FulfillmentStateError("coupon needs exactly one of discount_percentage / discount_amount")
        coupon = Coupon(
            store_id=store_id,
            code=normalized_code,
            discount_percentage=discount_percentage,
            discount_amount=discount_amount,
            influencer_id=influencer_id,
            max_uses=max_uses,
            min_order_amount=min_order_amount,
            expires_at=expires_at,
            times_used=0,
            total_sales_amount=ZERO,
        )
        self.session.add(coupon)
        self.session.flush()
        return coupon

    def get_coupon_by_code(self, store_id: str, code: str) -> Optional[Coupon]:
        normalized = str(code or "").strip().upper()
        if not normalized:
            return None
        return self.session.scalar(select(Coupon).where(Coupon.store_id == store_id, Coupon.code == normalized))

    def get_coupon(self, coupon_id: str) -> Optional[Coupon]:
        return self.session.get(Coupon, coupon_id)

    # -- order graph ----------------------------------------------------

    def _order_query(self) -> Select[tuple[Order]]:
        return select(Order).options(
            selectinload(Order.payment),
            selectinload(Order.order_item).selectinload(OrderItem.recharge),
            selectinload(Order.order_item).selectinload(OrderItem.package_snapshot),
            selectinload(Order.coupon_usage).selectinload(CouponUsage.coupon),
        )

    def get_order(self, order_id: str) -> Optional[Order]:
        key = str(order_id or "").strip()
        if not key:
            return None
        return self.session.scalar(self._order_query().where(Order.id == key))

    def get_order_by_number(self, order_number: str) -> Optional[Order]:
        return self.session.scalar(self._order_query().where(Order.order_number == str(order_number).strip()))

    def order_number_exists(self, order_number: str) -> bool:
        found = self.session.scalar(select(func.count()).select_from(Order).where(Order.order_number == order_number))
        return bool(found)

    def get_payment_by_external_id(self, external_id: str) -> Optional[Payment]:
        key = str(external_id or "").strip()
        if not key:
            return None
        return self.session.scalar(
            select(Payment)
            .options(selectinload(Payment.order).selectinload(Order.order_item).selectinload(OrderItem.recharge))
            .where(Payment.external_id == key)
        )

    def get_recharge(self, recharge_id: str) -> Optional[Recharge]:
        return self.session.get(Recharge, str(recharge_id or "").strip())

    def get_order_for_recharge(self, recharge_id: str) -> Optional[Order]:
        return self.session.scalar(
            self._order_query().join(Order.order_item).where(OrderItem.recharge_id == recharge_id)
        )

    def list_orders_created_between(
        self,
        store_id: str,
        start: datetime,
        end: datetime,
        *,
        product_id: Optional[str] = None,
    ) -> list[Order]:
        query = self._order_query().where(
            Order.store_id == store_id,
            Order.created_at >= start,
            Order.created_at < end,
        )
        if product_id:
            query = query.join(Order.order_item).where(OrderItem.product_id == product_id)
        return list(self.session.scalars(query.order_by(Order.created_at)))

    def list_stale_created_orders(self, store_id: str, cutoff: datetime) -> list[Order]:
        query = self._order_query().where(
            Order.store_id == store_id,
            Order.status == OrderStatus.CREATED,
            Order.created_at <= cutoff,
        )
        return list(self.session.scalars(query.order_by(Order.created_at)))

    # -- recharge retry state ------------------------------------------

    def list_recharges_due(self, cutoff: datetime, *, limit: int = 500) -> list[Recharge]:
        query = (
            select(Recharge)
            .where(Recharge.status == RechargeStatus.RETRY_PENDING, Recharge.next_retry_at < cutoff)
            .order_by(Recharge.next_retry_at)
            .limit(max(1, int(limit)))
        )
        return list(self.session.scalars(query))

    def list_interrupted_recharges(self, cutoff: datetime, *, limit: int = 500) -> list[Recharge]:
        """REQUESTED records whose call started before `cutoff` and never recorded an outcome."""
        query = (
            select(Recharge)
            .where(Recharge.status == RechargeStatus.REQUESTED, Recharge.status_updated_at < cutoff)
            .order_by(Recharge.status_updated_at)
            .limit(max(1, int(limit)))
        )
        return list(self.session.scalars(query))

    def count_recharges_by_status(self) -> dict[str, int]:
        rows = self.session.execute(select(Recharge.status, func.count()).group_by(Recharge.status)).all()
        return {getattr(status, "value", str(status)): int(count) for status, count in rows}

    def count_retry_pending(self, *, due_before: Optional[datetime] = None) -> int:
        query = select(func.count()).select_from(Recharge).where(Recharge.status == RechargeStatus.RETRY_PENDING)
        if due_before is not None:
            query = query.where(Recharge.next_retry_at <= due_before)
        return int(self.session.scalar(query) or 0)

    def count_retry_pending_by_error_code(self) -> dict[int, int]:
        rows = self.session.execute(
            select(Recharge.last_error_code, func.count())
            .where(Recharge.status == RechargeStatus.RETRY_PENDING, Recharge.last_error_code.is_not(None))
            .group_by(Recharge.last_error_code)
        ).all()
        return {int(code): int(count) for code, count in rows}

    # -- influencer totals ---------------------------------------------

    def get_or_create_influencer_month(self, influencer_id: str, *, month: int, year: int) -> InfluencerMonthlySales:
        row = self.session.scalar(
            select(InfluencerMonthlySales).where(
                InfluencerMonthlySales.influencer_id == influencer_id,
                InfluencerMonthlySales.month == month,
                InfluencerMonthlySales.year == year,
            )
        )
        if row is None:
            row = InfluencerMonthlySales(influencer_id=influencer_id, month=month, year=year, total_sales=ZERO)
            self.session.add(row)
            self.session.flush()
        return row

    # -- aggregates ----------------------------------------------------

    def get_daily_sales(self, store_id: str, day: date) -> Optional[StoreDailySales]:
        return self.session.scalar(
            select(StoreDailySales).where(StoreDailySales.store_id == store_id, StoreDailySales.date == day)
        )

    def get_or_create_daily_sales(self, store_id: str, day: date) -> StoreDailySales:
        row = self.get_daily_sales(store_id, day)
        if row is None:
            row = StoreDailySales(
                store_id=store_id,
                date=day,
                total_sales=ZERO,
                total_orders=0,
                total_completed_orders=0,
                total_expired_orders=0,
                total_refunded_orders=0,
            )
            self.session.add(row)
            self.session.flush()
        return row

    def list_daily_sales(self, store_id: str, start: date, end: date) -> list[StoreDailySales]:
        return list(
            self.session.scalars(
                select(StoreDailySales)
                .where(StoreDailySales.store_id == store_id, StoreDailySales.date >= start, StoreDailySales.date <= end)
                .order_by(StoreDailySales.date)
            )
        )

    def get_monthly_sales(self, store_id: str, *, month: int, year: int) -> Optional[StoreMonthlySales]:
        return self.session.scalar(
            select(StoreMonthlySales).where(
                StoreMonthlySales.store_id == store_id,
                StoreMonthlySales.month == month,
                StoreMonthlySales.year == year,
            )
        )

    def get_or_create_monthly_sales(self, store_id: str, *, month: int, year: int) -> StoreMonthlySales:
        row = self.get_monthly_sales(store_id, month=month, year=year)
        if row is None:
            row = StoreMonthlySales(
                store_id=store_id,
                month=month,
                year=year,
                total_sales=ZERO,
                total_orders=0,
                total_completed_orders=0,
                total_expired_orders=0,
                total_refunded_orders=0,
                orders_with_coupon=0,
                orders_without_coupon=0,
            )
            self.session.add(row)
            self.session.flush()
        return row

    def list_product_sales(self, store_id: str, *, month: int, year: int) -> list[StoreMonthlySalesByProduct]:
        return list(
            self.session.scalars(
                select(StoreMonthlySalesByProduct)
                .where(
                    StoreMonthlySalesByProduct.store_id == store_id,
                    StoreMonthlySalesByProduct.month == month,
                    StoreMonthlySalesByProduct.year == year,
                )
                .order_by(StoreMonthlySalesByProduct.total_sales.desc())
            )
        )

    def get_or_create_product_sales(
        self, store_id: str, product_id: str, *, month: int, year: int
    ) -> StoreMonthlySalesByProduct:
        row = self.session.scalar(
            select(StoreMonthlySalesByProduct).where(
                StoreMonthlySalesByProduct.store_id == store_id,
                StoreMonthlySalesByProduct.product_id == product_id,
                StoreMonthlySalesByProduct.month == month,
                StoreMonthlySalesByProduct.year == year,
            )
        )
        if row is None:
            row = StoreMonthlySalesByProduct(
                store_id=store_id,
                product_id=product_id,
                month=month,
                year=year,
                total_sales=ZERO,
                total_orders=0,
            )
            self.session.add(row)
            self.session.flush()
        return row

    # -- cron execution records ----------------------------------------

    def get_execution(self, execution_date: date) -> Optional[MetricsCronExecution]:
        return self.session.scalar(
            select(MetricsCronExecution).where(MetricsCronExecution.execution_date == execution_date)
        )

    def get_or_create_execution(self, execution_date: date, *, now: datetime) -> MetricsCronExecution:
        record = self.get_execution(execution_date)
        if record is None:
            record = MetricsCronExecution(
                execution_date=execution_date,
                status=CronExecutionStatus.PROCESSING,
                started_at=now,
                stores_processed=0,
                stores_total=0,
                stores_failed=0,
                retry_count=0,
            )
            self.session.add(record)
            self.session.flush()
        return record

    def list_executions_between(
        self,
        start: date,
        end: date,
        *,
        statuses: Optional[set[CronExecutionStatus]] = None,
    ) -> list[MetricsCronExecution]:
        query = select(MetricsCronExecution).where(
            MetricsCronExecution.execution_date >= start,
            MetricsCronExecution.execution_date <= end,
        )
        if statuses:
            query = query.where(MetricsCronExecution.status.in_(sorted(statuses, key=lambda item: item.value)))
        return list(self.session.scalars(query.order_by(MetricsCronExecution.execution_date)))

    # -- audit ---------------------------------------------------------

    def record_audit_log(
        self,
        *,
        provider: str,
        event_status: str,
        raw_payload: str,
        outcome: str,
        external_payment_id: Optional[str] = None,
        signature: Optional[str] = None,
        signature_valid: bool = False,
        detail: Optional[str] = None,
    ) -> WebhookAuditLog:
        row = WebhookAuditLog(
            provider=str(provider or "unknown").strip()[:32] or "unknown",
            event_status=str(event_status or "unknown").strip()[:32] or "unknown",
            external_payment_id=(str(external_payment_id).strip()[:128] or None) if external_payment_id else None,
            signature=(str(signature).strip()[:512] or None) if signature else None,
            signature_valid=bool(signature_valid),
            raw_payload=str(raw_payload or ""),
            outcome=str(outcome or "unknown").strip()[:32] or "unknown",
            detail=detail,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def list_audit_logs(self, *, external_payment_id: Optional[str] = None, limit: int = 50) -> list[WebhookAuditLog]:
        query = select(WebhookAuditLog)
        if external_payment_id:
            query = query.where(WebhookAuditLog.external_payment_id == external_payment_id)
        query = query.order_by(WebhookAuditLog.occurred_at.desc()).limit(max(1, int(limit)))
        return list(self.session.scalars(query))

    def add(self, *instances: Any) -> None:
        self.session.add_all(instances)
        self.session.flush()
