from .coupons import (
    CouponError,
    apply_coupon_price,
    calculate_discount,
    confirm_coupon_usage,
    revert_coupon_usage,
    validate_coupon,
)
from .db import (
    ENGINE,
    SessionLocal,
    build_session_factory,
    init_fulfillment_db,
    session_scope,
)
from .metrics import (
    apply_order_delta,
    get_dashboard,
    recompute_daily,
    recompute_monthly,
    recompute_monthly_by_product,
)
from .metrics_cron import MetricsCron, recalculate_store_metrics
from .models import (
    Base,
    CronExecutionStatus,
    MetricsCronExecution,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    Recharge,
    RechargeStatus,
)
from .orders import create_order, expire_stale_orders
from .recharge_client import (
    RechargeClient,
    RechargeConfigError,
    RechargeError,
    RechargeRequest,
    RechargeResult,
)
from .repository import FulfillmentRepository, FulfillmentStateError
from .retry import FailureKind, RetryOrchestrator, classify_failure, retry_delay
from .scheduler import FulfillmentScheduler
from .service import (
    WEBHOOK_ACK,
    FulfillmentService,
    PaymentWebhookError,
    verify_webhook_signature,
)

__all__ = [
    "Base",
    "ENGINE",
    "SessionLocal",
    "Order",
    "Payment",
    "Recharge",
    "MetricsCronExecution",
    "OrderStatus",
    "PaymentStatus",
    "RechargeStatus",
    "CronExecutionStatus",
    "CouponError",
    "apply_coupon_price",
    "calculate_discount",
    "confirm_coupon_usage",
    "revert_coupon_usage",
    "validate_coupon",
    "apply_order_delta",
    "get_dashboard",
    "recompute_daily",
    "recompute_monthly",
    "recompute_monthly_by_product",
    "MetricsCron",
    "recalculate_store_metrics",
    "create_order",
    "expire_stale_orders",
    "RechargeClient",
    "RechargeConfigError",
    "RechargeError",
    "RechargeRequest",
    "RechargeResult",
    "FulfillmentRepository",
    "FulfillmentStateError",
    "FailureKind",
    "RetryOrchestrator",
    "classify_failure",
    "retry_delay",
    "FulfillmentScheduler",
    "WEBHOOK_ACK",
    "FulfillmentService",
    "PaymentWebhookError",
    "verify_webhook_signature",
    "build_session_factory",
    "init_fulfillment_db",
    "session_scope",
]
