from __future__ import annotations

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Final, Mapping, Optional

from observability import get_logger, log_event, log_exception
from runtime_metrics import record_counter_metric

from .coupons import confirm_coupon_usage, revert_coupon_usage
from .db import SessionFactory, session_scope
from .metrics import apply_order_delta
from .models import OrderStatus, Payment, PaymentStatus, RechargeStatus, utc_now
from .recharge_client import RechargeRequest, RechargeResult, quote_total_cost
from .repository import FulfillmentRepository
from .retry import RechargeCaller, RetryOrchestrator, call_recharge


class PaymentWebhookError(RuntimeError):
    pass


WEBHOOK_ACK: Final[dict[str, str]] = {"message": "Webhook received"}

STATUS_APPROVED: Final[str] = "APPROVED"
REJECTION_STATUSES: Final[frozenset[str]] = frozenset({"REJECTED", "CANCELED", "CANCELLED"})
REVERSAL_STATUSES: Final[frozenset[str]] = frozenset({"REFUNDED", "CHARGEBACK"})
STATUS_IN_DISPUTE: Final[str] = "IN_DISPUTE"

_LOGGER = get_logger("fulfillment.service")


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Check a provider webhook signature.

    - Algorithm: HMAC-SHA256 over the raw body, hex encoded.
    - Accepts either the bare digest or "sha256=<hex>".
    """

    secret_key = str(secret or "").encode("utf-8")
    if not secret_key:
        return False
    provided = str(signature or "").strip()
    if provided.lower().startswith("sha256="):
        provided = provided.split("=", 1)[1].strip()
    if not provided:
        return False
    expected = hmac.new(secret_key, payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


@dataclass(frozen=True)
class WebhookEvent:
    external_id: str
    status: str
    event_type: str = ""
    amount: Optional[Decimal] = None
    currency: str = ""
    payer: dict[str, Any] = field(default_factory=dict)
    payment_method: dict[str, Any] = field(default_factory=dict)


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise PaymentWebhookError("amount must be numeric") from exc


def parse_webhook_event(event: Any) -> WebhookEvent:
    if not isinstance(event, Mapping):
        raise PaymentWebhookError("webhook payload must be a JSON object")
    payer = event.get("payer")
    method = event.get("payment_method")
    return WebhookEvent(
        external_id=str(event.get("id") or "").strip(),
        status=str(event.get("status") or "").strip().upper(),
        event_type=str(event.get("type") or "").strip(),
        amount=_parse_amount(event.get("amount")),
        currency=str(event.get("currency") or "").strip().upper(),
        payer=dict(payer) if isinstance(payer, Mapping) else {},
        payment_method=dict(method) if isinstance(method, Mapping) else {},
    )


class FulfillmentService:
    """
    Payment-webhook driven state machine for Order / Payment / Recharge.

    Each transition group runs in one `session_scope`. Current statuses are
    re-read inside that transaction before anything is mutated, which makes
    re-delivered webhooks no-ops. Status preconditions also decide what happens
    when events arrive out of order: once an order is REFUNDED, a late
    APPROVED for it is ignored and nothing is delivered.
    """

    def __init__(
        self,
        client: RechargeCaller,
        orchestrator: Optional[RetryOrchestrator] = None,
        *,
        session_factory: Optional[SessionFactory] = None,
        clock: Callable[[], datetime] = utc_now,
        tz: Optional[tzinfo] = None,
    ) -> None:
        self.client = client
        self.session_factory = session_factory
        self.clock = clock
        self.tz = tz
        self.orchestrator = orchestrator or RetryOrchestrator(client, session_factory=session_factory, clock=clock)
        self.orchestrator.bind_delivery_handler(self.complete_recharge, on_failed=self.fail_recharge)

    async def process_payment_webhook(self, event: Mapping[str, Any]) -> dict[str, Any]:
        parsed = parse_webhook_event(event)
        log_event(
            _LOGGER,
            logging.INFO,
            "fulfillment.webhook.received",
            payment_id=parsed.external_id or None,
            status=parsed.status or None,
            event_type=parsed.event_type or None,
        )
        record_counter_metric(name=f"webhook.received.{(parsed.status or 'unknown').lower()}")
        if not parsed.external_id or not parsed.status:
            log_event(_LOGGER, logging.WARNING, "fulfillment.webhook.incomplete", payment_id=parsed.external_id or None)
            return {"status": "ignored", "reason": "missing payment id or status"}

        if parsed.status == STATUS_APPROVED:
            return await self._handle_approved(parsed)
        if parsed.status in REJECTION_STATUSES:
            return self._handle_rejected(parsed)
        if parsed.status in REVERSAL_STATUSES:
            return self._handle_reversal(parsed)
        if parsed.status == STATUS_IN_DISPUTE:
            return self._handle_dispute(parsed)
        log_event(_LOGGER, logging.INFO, "fulfillment.webhook.unsupported_status", payment_id=parsed.external_id, status=parsed.status)
        return {"status": "ignored", "reason": f"unsupported status={parsed.status}", "payment_id": parsed.external_id}

    # -- helpers --------------------------------------------------------

    def _unknown_payment(self, parsed: WebhookEvent) -> dict[str, Any]:
        log_event(_LOGGER, logging.WARNING, "fulfillment.webhook.unknown_payment", payment_id=parsed.external_id, status=parsed.status)
        return {"status": "ignored", "reason": "payment not found", "payment_id": parsed.external_id}

    def _check_amount(self, parsed: WebhookEvent, payment: Payment) -> None:
        if parsed.amount is None:
            return
        if parsed.amount != Decimal(str(payment.amount)).quantize(Decimal("0.01")):
            log_event(
                _LOGGER,
                logging.WARNING,
                "fulfillment.webhook.amount_mismatch",
                payment_id=parsed.external_id,
                webhook_amount=parsed.amount,
                order_amount=payment.amount,
            )

    @staticmethod
    def _ignored(reason: str, parsed: WebhookEvent, order_id: str) -> dict[str, Any]:
        log_event(
            _LOGGER,
            logging.INFO,
            "fulfillment.webhook.ignored",
            payment_id=parsed.external_id,
            status=parsed.status,
            order_id=order_id,
            reason=reason,
        )
        return {"status": "ignored", "reason": reason, "order_id": order_id, "payment_id": parsed.external_id}

    # -- APPROVED -------------------------------------------------------

    async def _handle_approved(self, parsed: WebhookEvent) -> dict[str, Any]:
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            payment = repo.get_payment_by_external_id(parsed.external_id)
            if payment is None:
                return self._unknown_payment(parsed)
            order = payment.order
            self._check_amount(parsed, payment)
            if payment.status == PaymentStatus.APPROVED:
                log_event(_LOGGER, logging.INFO, "fulfillment.webhook.duplicate", payment_id=parsed.external_id, order_id=order.id)
                return {
                    "status": "duplicate",
                    "order_id": order.id,
                    "order_status": order.status.value,
                    "payment_id": parsed.external_id,
                }
            if order.status not in {OrderStatus.CREATED, OrderStatus.EXPIRED}:
                return self._ignored(f"order is {order.status.value}", parsed, order.id)

            previous = order.status
            payment.status = PaymentStatus.APPROVED
            payment.status_updated_at = now
            order.status = OrderStatus.PROCESSING
            order.updated_at = now

            recharge = order.recharge
            request = RechargeRequest(
                target_account_id=recharge.target_account_id,
                request_id=uuid.uuid4().hex,
                order_reference=order.order_number,
                credit_amount=int(recharge.credit_amount),
                total_cost=quote_total_cost(recharge.credit_amount),
            )
            recharge.status = RechargeStatus.REQUESTED
            recharge.request_id = request.request_id
            recharge.request_payload = request.to_payload()
            recharge.status_updated_at = now
            # EXPIRED -> PROCESSING drops the expired count; CREATED -> PROCESSING is a no-op.
            apply_order_delta(repo, order, previous, tz=self.tz)
            order_id, recharge_id = order.id, recharge.id

        log_event(
            _LOGGER,
            logging.INFO,
            "fulfillment.payment.approved",
            payment_id=parsed.external_id,
            order_id=order_id,
            recharge_id=recharge_id,
            request_id=request.request_id,
        )
        # Payment is captured from here on: delivery problems are logged, never raised.
        try:
            delivery = await self._deliver(recharge_id, request)
        except Exception as exc:  # noqa: BLE001
            log_exception(_LOGGER, "fulfillment.delivery.error", exc, order_id=order_id, recharge_id=recharge_id)
            delivery = {"status": "error", "reason": str(exc)}
        return {"status": "approved", "order_id": order_id, "payment_id": parsed.external_id, "delivery": delivery}

    async def _deliver(self, recharge_id: str, request: RechargeRequest) -> dict[str, Any]:
        result = await call_recharge(self.client, request)
        if result.ok:
            return await self.complete_recharge(recharge_id, result)
        log_event(
            _LOGGER,
            logging.WARNING,
            "fulfillment.recharge.failed",
            recharge_id=recharge_id,
            code=result.code,
            error_message=result.message,
        )
        return await self.orchestrator.handle_failure(recharge_id, result.code, result.message)

    async def complete_recharge(self, recharge_id: str, result: RechargeResult) -> dict[str, Any]:
        """Finish an order whose credits were delivered, on the first call or on a retry."""
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            order = repo.get_order_for_recharge(recharge_id)
            if order is None:
                log_event(_LOGGER, logging.WARNING, "fulfillment.recharge.orphan", recharge_id=recharge_id)
                return {"status": "ignored", "reason": "order not found"}
            recharge = order.recharge
            if recharge.status == RechargeStatus.APPROVED and order.status == OrderStatus.COMPLETED:
                return {"status": "duplicate", "order_id": order.id}
            if recharge.status not in {RechargeStatus.REQUESTED, RechargeStatus.APPROVED}:
                # e.g. refunded while the call was in flight; the credits went out anyway.
                recharge.response_payload = result.payload
                log_event(
                    _LOGGER,
                    logging.ERROR,
                    "fulfillment.recharge.delivered_after_reversal",
                    recharge_id=recharge_id,
                    order_id=order.id,
                    recharge_status=recharge.status,
                    order_status=order.status,
                )
                return {"status": "ignored", "reason": f"recharge is {recharge.status.value}", "order_id": order.id}

            recharge.status = RechargeStatus.APPROVED
            recharge.next_retry_at = None
            recharge.response_payload = result.payload
            recharge.status_updated_at = now
            if order.status != OrderStatus.PROCESSING or order.payment.status != PaymentStatus.APPROVED:
                log_event(
                    _LOGGER,
                    logging.ERROR,
                    "fulfillment.recharge.order_not_processing",
                    recharge_id=recharge_id,
                    order_id=order.id,
                    order_status=order.status,
                    payment_status=order.payment.status,
                )
                return {"status": "ignored", "reason": f"order is {order.status.value}", "order_id": order.id}

            previous = order.status
            order.status = OrderStatus.COMPLETED
            order.updated_at = now
            confirm_coupon_usage(repo, order, now=now)
            apply_order_delta(repo, order, previous, tz=self.tz)
            order_id = order.id

        record_counter_metric(name="fulfillment.order.completed")
        log_event(_LOGGER, logging.INFO, "fulfillment.order.completed", order_id=order_id, recharge_id=recharge_id)
        return {"status": "completed", "order_id": order_id}

    async def fail_recharge(self, recharge_id: str, message: str) -> dict[str, Any]:
        """
        The orchestrator gave up on this recharge. The order stays PROCESSING
        (payment captured, credits undelivered) for an operator to resolve.
        """
        with session_scope(self.session_factory) as session:
            order = FulfillmentRepository(session).get_order_for_recharge(recharge_id)
            if order is None:
                log_event(_LOGGER, logging.WARNING, "fulfillment.recharge.orphan", recharge_id=recharge_id)
                return {"status": "ignored", "reason": "order not found"}
            order_id, order_status = order.id, order.status

        record_counter_metric(name="fulfillment.order.needs_attention")
        log_event(
            _LOGGER,
            logging.ERROR,
            "fulfillment.order.needs_attention",
            order_id=order_id,
            order_status=order_status,
            recharge_id=recharge_id,
            error_message=message,
        )
        return {"status": "needs_attention", "order_id": order_id, "order_status": order_status.value}

    # -- REJECTED / CANCELED --------------------------------------------

    def _handle_rejected(self, parsed: WebhookEvent) -> dict[str, Any]:
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            payment = repo.get_payment_by_external_id(parsed.external_id)
            if payment is None:
                return self._unknown_payment(parsed)
            order = payment.order
            if payment.status != PaymentStatus.PENDING:
                return self._ignored(f"payment is {payment.status.value}", parsed, order.id)
            if order.status != OrderStatus.CREATED:
                return self._ignored(f"order is {order.status.value}", parsed, order.id)

            previous = order.status
            payment.status = PaymentStatus.REJECTED
            payment.status_updated_at = now
            order.status = OrderStatus.EXPIRED
            order.updated_at = now
            order.recharge.status = RechargeStatus.REJECTED
            order.recharge.status_updated_at = now
            apply_order_delta(repo, order, previous, tz=self.tz)
            order_id = order.id

        log_event(_LOGGER, logging.INFO, "fulfillment.payment.rejected", payment_id=parsed.external_id, order_id=order_id, status=parsed.status)
        return {"status": "expired", "order_id": order_id, "payment_id": parsed.external_id}

    # -- REFUNDED / CHARGEBACK ------------------------------------------

    def _handle_reversal(self, parsed: WebhookEvent) -> dict[str, Any]:
        now = self.clock()
        chargeback = parsed.status == "CHARGEBACK"
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            payment = repo.get_payment_by_external_id(parsed.external_id)
            if payment is None:
                return self._unknown_payment(parsed)
            order = payment.order
            if order.status == OrderStatus.REFUNDED:
                return self._ignored("order already refunded", parsed, order.id)

            previous = order.status
            if chargeback:
                payment.status = PaymentStatus.REJECTED
            payment.status_updated_at = now
            order.status = OrderStatus.REFUNDED
            order.updated_at = now
            recharge = order.recharge
            if recharge.status != RechargeStatus.REJECTED:
                recharge.status = RechargeStatus.REJECTED
                recharge.next_retry_at = None
                recharge.status_updated_at = now
            coupon_reverted = revert_coupon_usage(repo, order, now=now)
            apply_order_delta(repo, order, previous, tz=self.tz)
            order_id, recharge_id = order.id, recharge.id

        timer_cancelled = self.orchestrator.cancel(recharge_id)
        log_event(
            _LOGGER,
            logging.INFO,
            "fulfillment.payment.reversed",
            payment_id=parsed.external_id,
            order_id=order_id,
            status=parsed.status,
            previous_order_status=previous,
            coupon_reverted=coupon_reverted,
            retry_timer_cancelled=timer_cancelled,
        )
        return {
            "status": "chargeback" if chargeback else "refunded",
            "order_id": order_id,
            "payment_id": parsed.external_id,
            "previous_order_status": previous.value,
        }

    # -- IN_DISPUTE -----------------------------------------------------

    def _handle_dispute(self, parsed: WebhookEvent) -> dict[str, Any]:
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            payment = repo.get_payment_by_external_id(parsed.external_id)
            if payment is None:
                return self._unknown_payment(parsed)
            payment.disputed_at = now
            if payment.status == PaymentStatus.APPROVED:
                payment.status_updated_at = now
            order_id = payment.order.id

        log_event(_LOGGER, logging.WARNING, "fulfillment.payment.disputed", payment_id=parsed.external_id, order_id=order_id)
        return {"status": "dispute_recorded", "order_id": order_id, "payment_id": parsed.external_id}
