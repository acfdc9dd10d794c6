from __future__ import annotations

import json
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text

from config import (
    APP_ENV,
    APP_VERSION,
    CORS_ORIGINS,
    LOG_LEVEL,
    PAYMENT_PROVIDER,
    PAYMENT_WEBHOOK_SECRET,
    SCHEDULER_ENABLED,
    STARTUP_BOOTSTRAP_ENABLED,
)
from fulfillment import (
    WEBHOOK_ACK,
    FulfillmentRepository,
    FulfillmentScheduler,
    FulfillmentService,
    MetricsCron,
    PaymentWebhookError,
    RechargeClient,
    RechargeStatus,
    RetryOrchestrator,
    get_dashboard,
    init_fulfillment_db,
    recalculate_store_metrics,
    session_scope,
    verify_webhook_signature,
)
from fulfillment.db import SessionFactory
from fulfillment.metrics import local_date
from fulfillment.models import utc_now
from observability import configure_json_logging, get_logger, log_event
from runtime_metrics import get_runtime_metrics_snapshot, record_request_metric

configure_json_logging(level=LOG_LEVEL)
APP_LOGGER = get_logger("fulfillment.api")

# Wiring; tests replace these module attributes.
SESSION_FACTORY: Optional[SessionFactory] = None
recharge_client = RechargeClient()
retry_orchestrator = RetryOrchestrator(recharge_client)
fulfillment_service = FulfillmentService(recharge_client, retry_orchestrator)
metrics_cron = MetricsCron()
scheduler = FulfillmentScheduler(metrics_cron, retry_orchestrator)

_PERIOD_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")

CUSTOMER_RECHARGE_STATUS: dict[RechargeStatus, str] = {
    RechargeStatus.PENDING: "PENDING",
    RechargeStatus.REQUESTED: "PROCESSING",
    RechargeStatus.RETRY_PENDING: "PROCESSING",
    RechargeStatus.APPROVED: "DELIVERED",
    RechargeStatus.REJECTED: "CANCELED",
    RechargeStatus.FAILED: "FAILED",
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    if STARTUP_BOOTSTRAP_ENABLED:
        init_fulfillment_db()
    if SCHEDULER_ENABLED:
        scheduler.start()
    log_event(APP_LOGGER, logging.INFO, "app.started", env=APP_ENV, version=APP_VERSION, scheduler=SCHEDULER_ENABLED)
    try:
        yield
    finally:
        await scheduler.stop()
        await retry_orchestrator.shutdown()


app = FastAPI(title="Recharge Fulfillment", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Signature", "X-Webhook-Signature", "X-Trace-Id"],
    expose_headers=["X-Trace-Id"],
)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class WebhookAckResponse(BaseModel):
    message: str


class OrderStatusResponse(BaseModel):
    order_id: str
    order_number: str
    status: str
    payment_status: str
    recharge_status: str
    price: str
    credit_amount: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CronHealthResponse(BaseModel):
    status: str
    period: str
    executions: int
    counts: Dict[str, int]
    failed_dates: List[str] = Field(default_factory=list)
    permanently_failed_dates: List[str] = Field(default_factory=list)


class RetryStatsResponse(BaseModel):
    queue_depth: int
    due_now: int
    active_timers: int
    by_status: Dict[str, int]
    retryable_by_error_code: Dict[str, int]
    max_retries: int
    retry_delays: Dict[str, List[int]]
    retryable_codes: Dict[str, str]
    cron_health: CronHealthResponse


class RecoveryDateResult(BaseModel):
    date: str
    status: str
    stores_failed: int


class RecoveryResponse(BaseModel):
    period: str
    recovered: int
    dates: List[RecoveryDateResult]


class RecalculateResponse(BaseModel):
    store_id: str
    date: str
    daily_total_sales: str
    daily_total_orders: int
    monthly_total_sales: str
    products: int
    expired_orders: int


class DashboardResponse(BaseModel):
    store_id: str
    period: str
    summary: Dict[str, Any]
    daily_trend: List[Dict[str, Any]]
    sales_by_product: List[Dict[str, Any]]
    cron_health: CronHealthResponse


# ---------------------------------------------------------------------------
# Middleware and error handling
# ---------------------------------------------------------------------------


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - started) * 1000)
    log_event(
        APP_LOGGER,
        logging.INFO,
        "request.completed",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=duration_ms,
    )
    record_request_metric(path=request.url.path, status_code=response.status_code, duration_ms=duration_ms)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    trace_id = _request_trace_id(request)
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        trace_id=trace_id,
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "message": "internal server error",
            "trace_id": trace_id,
        },
        headers={"X-Trace-Id": trace_id},
    )


def _parse_period(period: Optional[str]) -> tuple[int, int]:
    if not period:
        today = local_date(utc_now())
        return today.year, today.month
    match = _PERIOD_PATTERN.match(period.strip())
    if not match or not 1 <= int(match.group(2)) <= 12:
        raise HTTPException(status_code=400, detail="period must be YYYY-MM")
    return int(match.group(1)), int(match.group(2))


def _resolve_month(year: Optional[int], month: Optional[int]) -> tuple[int, int]:
    today = local_date(utc_now())
    resolved_year = int(year) if year is not None else today.year
    resolved_month = int(month) if month is not None else today.month
    if not 1 <= resolved_month <= 12:
        raise HTTPException(status_code=400, detail="month must be between 1 and 12")
    return resolved_year, resolved_month


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/health")
async def health() -> dict:
    report: Dict[str, Any] = {
        "status": "ok",
        "version": APP_VERSION,
        "env": APP_ENV,
        "db": "ok",
        "scheduler": "running" if scheduler.running else "stopped",
        "details": {},
    }
    if not PAYMENT_WEBHOOK_SECRET:
        report["details"]["PAYMENT_WEBHOOK_SECRET"] = False
    if not recharge_client.base_url:
        report["details"]["RECHARGE_API_BASE_URL"] = False
    try:
        with session_scope(SESSION_FACTORY) as session:
            session.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        report["db"] = "error"
        report["status"] = "error"
        report["details"]["db"] = str(exc)
    return report


@app.get("/metrics/runtime")
async def runtime_metrics() -> dict:
    return get_runtime_metrics_snapshot()


# ---------------------------------------------------------------------------
# Payment webhook
# ---------------------------------------------------------------------------


def _record_webhook_audit(**fields: Any) -> None:
    try:
        with session_scope(SESSION_FACTORY) as session:
            FulfillmentRepository(session).record_audit_log(provider=PAYMENT_PROVIDER, **fields)
    except Exception as exc:  # noqa: BLE001
        log_event(APP_LOGGER, logging.WARNING, "webhook.audit_failed", outcome=fields.get("outcome"), error=str(exc))


@app.post("/payments/webhook", response_model=WebhookAckResponse)
async def payment_webhook(request: Request) -> WebhookAckResponse:
    if not PAYMENT_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="PAYMENT_WEBHOOK_SECRET is missing")
    signature = request.headers.get("X-Signature") or request.headers.get("X-Webhook-Signature") or ""
    raw = await request.body()
    raw_text = raw.decode("utf-8", errors="replace")
    if not verify_webhook_signature(raw, signature, PAYMENT_WEBHOOK_SECRET):
        _record_webhook_audit(
            event_status="unknown",
            raw_payload=raw_text,
            signature=signature,
            signature_valid=False,
            outcome="rejected_signature",
            detail="invalid webhook signature",
        )
        raise HTTPException(status_code=403, detail="invalid webhook signature")

    try:
        event = json.loads(raw.decode("utf-8"))
    except ValueError as exc:
        _record_webhook_audit(
            event_status="unknown",
            raw_payload=raw_text,
            signature=signature,
            signature_valid=True,
            outcome="rejected_payload",
            detail=str(exc),
        )
        raise HTTPException(status_code=400, detail=f"invalid webhook payload: {exc}") from exc

    event_dict = event if isinstance(event, dict) else {}
    audit_fields: Dict[str, Any] = {
        "event_status": str(event_dict.get("status") or "unknown"),
        "external_payment_id": str(event_dict.get("id") or "").strip() or None,
        "raw_payload": raw_text,
        "signature": signature,
        "signature_valid": True,
    }
    try:
        result = await fulfillment_service.process_payment_webhook(event)
    except PaymentWebhookError as exc:
        _record_webhook_audit(outcome="rejected_payload", detail=str(exc), **audit_fields)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        _record_webhook_audit(outcome="error", detail=f"{type(exc).__name__}: {exc}", **audit_fields)
        raise

    _record_webhook_audit(
        outcome=str(result.get("status") or "processed"),
        detail=json.dumps(result, ensure_ascii=False, default=str),
        **audit_fields,
    )
    return WebhookAckResponse(**WEBHOOK_ACK)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@app.get("/orders/{order_id}", response_model=OrderStatusResponse)
async def get_order_status(order_id: str) -> OrderStatusResponse:
    with session_scope(SESSION_FACTORY) as session:
        repo = FulfillmentRepository(session)
        order = repo.get_order(order_id) or repo.get_order_by_number(order_id.strip().upper())
        if order is None:
            raise HTTPException(status_code=404, detail="order not found")
        recharge = order.recharge
        return OrderStatusResponse(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            payment_status=order.payment.status.value,
            recharge_status=CUSTOMER_RECHARGE_STATUS.get(recharge.status, recharge.status.value),
            price=str(order.price),
            credit_amount=int(recharge.credit_amount),
            created_at=order.created_at.isoformat() if order.created_at else None,
            updated_at=order.updated_at.isoformat() if order.updated_at else None,
        )


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@app.get("/metrics/retry-stats", response_model=RetryStatsResponse)
async def retry_stats(
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None),
) -> RetryStatsResponse:
    resolved_year, resolved_month = _resolve_month(year, month)
    stats = retry_orchestrator.get_retry_stats()
    health = metrics_cron.get_cron_health_status(resolved_year, resolved_month)
    return RetryStatsResponse(**stats, cron_health=CronHealthResponse(**health))


@app.get("/metrics/dashboard", response_model=DashboardResponse)
async def metrics_dashboard(
    store_id: str = Query(..., min_length=1),
    period: Optional[str] = Query(default=None),
) -> DashboardResponse:
    year, month = _parse_period(period)
    with session_scope(SESSION_FACTORY) as session:
        repo = FulfillmentRepository(session)
        if repo.get_store(store_id) is None:
            raise HTTPException(status_code=404, detail="store not found")
        dashboard = get_dashboard(repo, store_id, year=year, month=month, tz=metrics_cron.tz)
    health = metrics_cron.get_cron_health_status(year, month)
    return DashboardResponse(**dashboard, cron_health=CronHealthResponse(**health))


@app.post("/metrics/recover", response_model=RecoveryResponse)
def recover_failed_dates(
    year: Optional[int] = Query(default=None),
    month: Optional[int] = Query(default=None),
) -> RecoveryResponse:
    resolved_year, resolved_month = _resolve_month(year, month)
    result = metrics_cron.reprocess_failed_dates(resolved_year, resolved_month)
    return RecoveryResponse(**result)


@app.post("/metrics/recalculate", response_model=RecalculateResponse)
def recalculate_metrics(
    store_id: str = Query(..., min_length=1),
    date_value: Optional[date] = Query(default=None, alias="date"),
) -> RecalculateResponse:
    day = date_value or local_date(utc_now(), metrics_cron.tz)
    with session_scope(SESSION_FACTORY) as session:
        repo = FulfillmentRepository(session)
        if repo.get_store(store_id) is None:
            raise HTTPException(status_code=404, detail="store not found")
        summary = recalculate_store_metrics(
            repo,
            store_id,
            day,
            now=utc_now(),
            timeout_seconds=metrics_cron.order_timeout_seconds,
            tz=metrics_cron.tz,
        )
    log_event(APP_LOGGER, logging.INFO, "metrics.recalculated", store_id=store_id, date=day)
    return RecalculateResponse(**summary)
