from __future__ import annotations

import datetime as dt
import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


Money = Numeric(12, 2)


class Base(DeclarativeBase):
    pass


class OrderStatus(str, enum.Enum):
    CREATED = "CREATED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RechargeStatus(str, enum.Enum):
    PENDING = "PENDING"
    # A provider call is in flight.
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RETRY_PENDING = "RETRY_PENDING"
    FAILED = "FAILED"


class CronExecutionStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    FAILED_PERMANENT = "FAILED_PERMANENT"


class Store(Base):
    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    orders: Mapped[list["Order"]] = relationship(back_populates="store")


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    store_id: Mapped[Optional[str]] = mapped_column(ForeignKey("stores.id"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Influencer(Base):
    __tablename__ = "influencers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(120))
    store_id: Mapped[Optional[str]] = mapped_column(ForeignKey("stores.id"), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    coupons: Mapped[list["Coupon"]] = relationship(back_populates="influencer")


class InfluencerMonthlySales(Base):
    __tablename__ = "influencer_monthly_sales"
    __table_args__ = (UniqueConstraint("influencer_id", "month", "year", name="uq_influencer_monthly_sales_scope"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    influencer_id: Mapped[str] = mapped_column(ForeignKey("influencers.id"), index=True)
    month: Mapped[int] = mapped_column(Integer)
    year: Mapped[int] = mapped_column(Integer)
    total_sales: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (UniqueConstraint("store_id", "code", name="uq_coupons_store_code"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), index=True)
    code: Mapped[str] = mapped_column(String(64))
    influencer_id: Mapped[Optional[str]] = mapped_column(ForeignKey("influencers.id"), nullable=True, index=True)
    discount_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    discount_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    times_used: Mapped[int] = mapped_column(Integer, default=0)
    total_sales_amount: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    min_order_amount: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    influencer: Mapped[Optional[Influencer]] = relationship(back_populates="coupons")
    usages: Mapped[list["CouponUsage"]] = relationship(back_populates="coupon")


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    price: Mapped[Decimal] = mapped_column(Money)
    base_price: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus, native_enum=False), default=OrderStatus.CREATED)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    payment_id: Mapped[str] = mapped_column(ForeignKey("payments.id"), unique=True)
    order_item_id: Mapped[str] = mapped_column(ForeignKey("order_items.id"), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    store: Mapped[Store] = relationship(back_populates="orders")
    payment: Mapped["Payment"] = relationship(back_populates="order")
    order_item: Mapped["OrderItem"] = relationship(back_populates="order")
    coupon_usage: Mapped[Optional["CouponUsage"]] = relationship(back_populates="order", uselist=False)

    @property
    def recharge(self) -> "Recharge":
        return self.order_item.recharge


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, native_enum=False), default=PaymentStatus.PENDING
    )
    provider: Mapped[str] = mapped_column(String(32), default="bravive")
    external_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True, index=True)
    method: Mapped[str] = mapped_column(String(32), default="PIX")
    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(8), default="BRL")
    status_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    disputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    order: Mapped[Order] = relationship(back_populates="payment")


class PackageSnapshot(Base):
    """Frozen copy of the purchased package; later catalogue edits never touch it."""

    __tablename__ = "package_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    package_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    name: Mapped[str] = mapped_column(String(120))
    credit_amount: Mapped[int] = mapped_column(Integer)
    base_price: Mapped[Decimal] = mapped_column(Money)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Recharge(Base):
    __tablename__ = "recharges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    target_account_id: Mapped[str] = mapped_column(String(128))
    credit_amount: Mapped[int] = mapped_column(Integer)
    status: Mapped[RechargeStatus] = mapped_column(
        Enum(RechargeStatus, native_enum=False), default=RechargeStatus.PENDING, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    last_error_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    request_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    response_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    status_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    order_item: Mapped["OrderItem"] = relationship(back_populates="recharge")


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), index=True)
    product_name: Mapped[str] = mapped_column(String(120))
    package_snapshot_id: Mapped[str] = mapped_column(ForeignKey("package_snapshots.id"), unique=True)
    recharge_id: Mapped[str] = mapped_column(ForeignKey("recharges.id"), unique=True)

    order: Mapped[Order] = relationship(back_populates="order_item")
    package_snapshot: Mapped[PackageSnapshot] = relationship()
    recharge: Mapped[Recharge] = relationship(back_populates="order_item")


class CouponUsage(Base):
    __tablename__ = "coupon_usages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    coupon_id: Mapped[str] = mapped_column(ForeignKey("coupons.id"), index=True)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id"), unique=True)
    discount_applied: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reverted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    coupon: Mapped[Coupon] = relationship(back_populates="usages")
    order: Mapped[Order] = relationship(back_populates="coupon_usage")


class StoreDailySales(Base):
    __tablename__ = "store_daily_sales"
    __table_args__ = (UniqueConstraint("store_id", "date", name="uq_store_daily_sales_scope"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), index=True)
    date: Mapped[dt.date] = mapped_column(Date)
    total_sales: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_completed_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_expired_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_refunded_orders: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class StoreMonthlySales(Base):
    __tablename__ = "store_monthly_sales"
    __table_args__ = (UniqueConstraint("store_id", "month", "year", name="uq_store_monthly_sales_scope"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), index=True)
    month: Mapped[int] = mapped_column(Integer)
    year: Mapped[int] = mapped_column(Integer)
    total_sales: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_completed_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_expired_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_refunded_orders: Mapped[int] = mapped_column(Integer, default=0)
    orders_with_coupon: Mapped[int] = mapped_column(Integer, default=0)
    orders_without_coupon: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class StoreMonthlySalesByProduct(Base):
    __tablename__ = "store_monthly_sales_by_product"
    __table_args__ = (
        UniqueConstraint("store_id", "product_id", "month", "year", name="uq_store_monthly_product_scope"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id"), index=True)
    product_id: Mapped[str] = mapped_column(ForeignKey("products.id"), index=True)
    month: Mapped[int] = mapped_column(Integer)
    year: Mapped[int] = mapped_column(Integer)
    total_sales: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"))
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class MetricsCronExecution(Base):
    __tablename__ = "metrics_cron_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    execution_date: Mapped[date] = mapped_column(Date, unique=True, index=True)
    status: Mapped[CronExecutionStatus] = mapped_column(
        Enum(CronExecutionStatus, native_enum=False), default=CronExecutionStatus.PROCESSING, index=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    stores_processed: Mapped[int] = mapped_column(Integer, default=0)
    stores_total: Mapped[int] = mapped_column(Integer, default=0)
    stores_failed: Mapped[int] = mapped_column(Integer, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class WebhookAuditLog(Base):
    """
    Append-only record of every payment webhook delivery.

    Rows are written for rejected signatures and malformed payloads too, with
    the raw body kept for dispute resolution.
    """

    __tablename__ = "webhook_audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    provider: Mapped[str] = mapped_column(String(32), index=True)
    event_status: Mapped[str] = mapped_column(String(32), index=True)
    external_payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    signature: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    raw_payload: Mapped[str] = mapped_column(Text)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


Index("ix_orders_store_created", Order.store_id, Order.created_at)
Index("ix_recharges_status_next_retry", Recharge.status, Recharge.next_retry_at)
