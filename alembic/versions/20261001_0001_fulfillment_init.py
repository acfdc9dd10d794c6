"""Initialize fulfillment schema.

Revision ID: 20261001_0001
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind: sa.engine.Connection, table_name: str) -> bool:
    inspector = sa.inspect(bind)
    return table_name in set(inspector.get_table_names())


def _has_index(bind: sa.engine.Connection, table_name: str, index_name: str) -> bool:
    inspector = sa.inspect(bind)
    if table_name not in set(inspector.get_table_names()):
        return False
    return any(item.get("name") == index_name for item in inspector.get_indexes(table_name))


def _money(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable)


def _ts(name: str, *, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


INDEXES: list[tuple[str, str, list[str], bool]] = [
    ("products", "ix_products_store_id", ["store_id"], False),
    ("influencers", "ix_influencers_store_id", ["store_id"], False),
    ("influencer_monthly_sales", "ix_influencer_monthly_sales_influencer_id", ["influencer_id"], False),
    ("coupons", "ix_coupons_store_id", ["store_id"], False),
    ("coupons", "ix_coupons_influencer_id", ["influencer_id"], False),
    ("payments", "ix_payments_external_id", ["external_id"], True),
    ("recharges", "ix_recharges_status", ["status"], False),
    ("recharges", "ix_recharges_next_retry_at", ["next_retry_at"], False),
    ("recharges", "ix_recharges_status_next_retry", ["status", "next_retry_at"], False),
    ("order_items", "ix_order_items_product_id", ["product_id"], False),
    ("orders", "ix_orders_order_number", ["order_number"], True),
    ("orders", "ix_orders_store_id", ["store_id"], False),
    ("orders", "ix_orders_user_id", ["user_id"], False),
    ("orders", "ix_orders_created_at", ["created_at"], False),
    ("orders", "ix_orders_store_created", ["store_id", "created_at"], False),
    ("coupon_usages", "ix_coupon_usages_coupon_id", ["coupon_id"], False),
    ("store_daily_sales", "ix_store_daily_sales_store_id", ["store_id"], False),
    ("store_monthly_sales", "ix_store_monthly_sales_store_id", ["store_id"], False),
    ("store_monthly_sales_by_product", "ix_store_monthly_sales_by_product_store_id", ["store_id"], False),
    ("store_monthly_sales_by_product", "ix_store_monthly_sales_by_product_product_id", ["product_id"], False),
    ("metrics_cron_executions", "ix_metrics_cron_executions_execution_date", ["execution_date"], True),
    ("metrics_cron_executions", "ix_metrics_cron_executions_status", ["status"], False),
    ("webhook_audit_logs", "ix_webhook_audit_logs_occurred_at", ["occurred_at"], False),
    ("webhook_audit_logs", "ix_webhook_audit_logs_provider", ["provider"], False),
    ("webhook_audit_logs", "ix_webhook_audit_logs_event_status", ["event_status"], False),
    ("webhook_audit_logs", "ix_webhook_audit_logs_external_payment_id", ["external_payment_id"], False),
    ("webhook_audit_logs", "ix_webhook_audit_logs_outcome", ["outcome"], False),
]


def upgrade() -> None:
    bind = op.get_bind()

    if not _table_exists(bind, "stores"):
        op.create_table(
            "stores",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("store_id", sa.String(length=36), nullable=True),
            sa.Column("name", sa.String(length=120), nullable=False),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "influencers"):
        op.create_table(
            "influencers",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("store_id", sa.String(length=36), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "influencer_monthly_sales"):
        op.create_table(
            "influencer_monthly_sales",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("influencer_id", sa.String(length=36), nullable=False),
            sa.Column("month", sa.Integer(), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            _money("total_sales"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["influencer_id"], ["influencers.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("influencer_id", "month", "year", name="uq_influencer_monthly_sales_scope"),
        )

    if not _table_exists(bind, "coupons"):
        op.create_table(
            "coupons",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("store_id", sa.String(length=36), nullable=False),
            sa.Column("code", sa.String(length=64), nullable=False),
            sa.Column("influencer_id", sa.String(length=36), nullable=True),
            sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=True),
            _money("discount_amount", nullable=True),
            sa.Column("times_used", sa.Integer(), nullable=False),
            _money("total_sales_amount"),
            sa.Column("max_uses", sa.Integer(), nullable=True),
            _money("min_order_amount", nullable=True),
            _ts("expires_at", nullable=True),
            sa.Column("active", sa.Boolean(), nullable=False),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
            sa.ForeignKeyConstraint(["influencer_id"], ["influencers.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("store_id", "code", name="uq_coupons_store_code"),
        )

    if not _table_exists(bind, "payments"):
        op.create_table(
            "payments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=8), nullable=False),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("external_id", sa.String(length=128), nullable=True),
            sa.Column("method", sa.String(length=32), nullable=False),
            _money("amount"),
            sa.Column("currency", sa.String(length=8), nullable=False),
            _ts("status_updated_at"),
            _ts("disputed_at", nullable=True),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "package_snapshots"):
        op.create_table(
            "package_snapshots",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("package_id", sa.String(length=36), nullable=True),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("credit_amount", sa.Integer(), nullable=False),
            _money("base_price"),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "recharges"):
        op.create_table(
            "recharges",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("target_account_id", sa.String(length=128), nullable=False),
            sa.Column("credit_amount", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=13), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=False),
            _ts("next_retry_at", nullable=True),
            sa.Column("last_error_code", sa.Integer(), nullable=True),
            sa.Column("last_error_message", sa.Text(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("request_payload", sa.JSON(), nullable=True),
            sa.Column("response_payload", sa.JSON(), nullable=True),
            _ts("status_updated_at"),
            _ts("created_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("request_id"),
        )

    if not _table_exists(bind, "order_items"):
        op.create_table(
            "order_items",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("product_name", sa.String(length=120), nullable=False),
            sa.Column("package_snapshot_id", sa.String(length=36), nullable=False),
            sa.Column("recharge_id", sa.String(length=36), nullable=False),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["package_snapshot_id"], ["package_snapshots.id"]),
            sa.ForeignKeyConstraint(["recharge_id"], ["recharges.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("package_snapshot_id"),
            sa.UniqueConstraint("recharge_id"),
        )

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("order_number", sa.String(length=32), nullable=False),
            _money("price"),
            _money("base_price"),
            sa.Column("status", sa.String(length=10), nullable=False),
            sa.Column("store_id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("payment_id", sa.String(length=36), nullable=False),
            sa.Column("order_item_id", sa.String(length=36), nullable=False),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
            sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
            sa.ForeignKeyConstraint(["order_item_id"], ["order_items.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("payment_id"),
            sa.UniqueConstraint("order_item_id"),
        )

    if not _table_exists(bind, "coupon_usages"):
        op.create_table(
            "coupon_usages",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("coupon_id", sa.String(length=36), nullable=False),
            sa.Column("order_id", sa.String(length=36), nullable=False),
            _money("discount_applied"),
            _ts("confirmed_at", nullable=True),
            _ts("reverted_at", nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["coupon_id"], ["coupons.id"]),
            sa.ForeignKeyConstraint(["order_id"], ["orders.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("order_id"),
        )

    aggregate_counts = [
        "total_orders",
        "total_completed_orders",
        "total_expired_orders",
        "total_refunded_orders",
    ]
    if not _table_exists(bind, "store_daily_sales"):
        op.create_table(
            "store_daily_sales",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("store_id", sa.String(length=36), nullable=False),
            sa.Column("date", sa.Date(), nullable=False),
            _money("total_sales"),
            *[sa.Column(name, sa.Integer(), nullable=False) for name in aggregate_counts],
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("store_id", "date", name="uq_store_daily_sales_scope"),
        )

    if not _table_exists(bind, "store_monthly_sales"):
        op.create_table(
            "store_monthly_sales",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("store_id", sa.String(length=36), nullable=False),
            sa.Column("month", sa.Integer(), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            _money("total_sales"),
            *[sa.Column(name, sa.Integer(), nullable=False) for name in aggregate_counts],
            sa.Column("orders_with_coupon", sa.Integer(), nullable=False),
            sa.Column("orders_without_coupon", sa.Integer(), nullable=False),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("store_id", "month", "year", name="uq_store_monthly_sales_scope"),
        )

    if not _table_exists(bind, "store_monthly_sales_by_product"):
        op.create_table(
            "store_monthly_sales_by_product",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("store_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("month", sa.Integer(), nullable=False),
            sa.Column("year", sa.Integer(), nullable=False),
            _money("total_sales"),
            sa.Column("total_orders", sa.Integer(), nullable=False),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["store_id"], ["stores.id"]),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("store_id", "product_id", "month", "year", name="uq_store_monthly_product_scope"),
        )

    if not _table_exists(bind, "metrics_cron_executions"):
        op.create_table(
            "metrics_cron_executions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("execution_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False),
            _ts("started_at"),
            _ts("completed_at", nullable=True),
            sa.Column("stores_processed", sa.Integer(), nullable=False),
            sa.Column("stores_total", sa.Integer(), nullable=False),
            sa.Column("stores_failed", sa.Integer(), nullable=False),
            sa.Column("retry_count", sa.Integer(), nullable=False),
            sa.Column("execution_time_ms", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(bind, "webhook_audit_logs"):
        op.create_table(
            "webhook_audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            _ts("occurred_at"),
            sa.Column("provider", sa.String(length=32), nullable=False),
            sa.Column("event_status", sa.String(length=32), nullable=False),
            sa.Column("external_payment_id", sa.String(length=128), nullable=True),
            sa.Column("signature", sa.String(length=512), nullable=True),
            sa.Column("signature_valid", sa.Boolean(), nullable=False),
            sa.Column("raw_payload", sa.Text(), nullable=False),
            sa.Column("outcome", sa.String(length=32), nullable=False),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )

    for table_name, index_name, columns, unique in INDEXES:
        if not _has_index(bind, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=unique)


def downgrade() -> None:
    bind = op.get_bind()

    for table_name, index_name, _columns, _unique in reversed(INDEXES):
        if _has_index(bind, table_name, index_name):
            op.drop_index(index_name, table_name=table_name)

    for table_name in [
        "webhook_audit_logs",
        "metrics_cron_executions",
        "store_monthly_sales_by_product",
        "store_monthly_sales",
        "store_daily_sales",
        "coupon_usages",
        "orders",
        "order_items",
        "recharges",
        "package_snapshots",
        "payments",
        "coupons",
        "influencer_monthly_sales",
        "influencers",
        "products",
        "stores",
    ]:
        if _table_exists(bind, table_name):
            op.drop_table(table_name)
