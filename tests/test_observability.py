from __future__ import annotations

import json
import logging
from datetime import date
from decimal import Decimal

from fulfillment import OrderStatus
from observability import JsonLogFormatter, log_event, log_exception
from runtime_metrics import get_runtime_metrics_snapshot, record_counter_metric, record_timing_metric, timed


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(JsonLogFormatter())
        self.lines: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(self.format(record))


def _capture(name: str) -> tuple[logging.Logger, _ListHandler]:
    logger = logging.getLogger(name)
    handler = _ListHandler()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, handler


def test_log_event_emits_flat_json() -> None:
    logger, handler = _capture("tests.observability.event")
    log_event(
        logger,
        logging.INFO,
        "fulfillment.order.completed",
        order_id="o-1",
        status=OrderStatus.COMPLETED,
        price=Decimal("50.00"),
        day=date(2026, 10, 17),
        codes={7212012, 500001},
    )

    (line,) = handler.lines
    payload = json.loads(line)
    assert payload["event"] == "fulfillment.order.completed"
    assert payload["level"] == "info"
    assert payload["logger"] == "tests.observability.event"
    assert payload["order_id"] == "o-1"
    assert payload["status"] == "COMPLETED"
    assert payload["price"] == "50.00"
    assert payload["day"] == "2026-10-17"
    assert sorted(payload["codes"]) == [500001, 7212012]
    assert "timestamp" in payload


def test_log_exception_includes_traceback() -> None:
    logger, handler = _capture("tests.observability.exception")
    try:
        raise ValueError("broken store")
    except ValueError as exc:
        log_exception(logger, "fulfillment.metrics_cron.store_error", exc, store_id="s-1")

    payload = json.loads(handler.lines[0])
    assert payload["level"] == "error"
    assert payload["exception_type"] == "ValueError"
    assert payload["exception_message"] == "broken store"
    assert payload["store_id"] == "s-1"
    assert "Traceback" in payload["exception"]


def test_runtime_metrics_counters_and_timers() -> None:
    record_counter_metric(name="Webhook.Received.Approved", value=2)
    record_timing_metric(name="recharge.call.latency_ms", duration_ms=45)
    with timed("metrics.cron.date_ms"):
        pass

    snapshot = get_runtime_metrics_snapshot()
    assert snapshot["custom_counters"]["webhook.received.approved"] >= 2
    assert snapshot["custom_timers"]["recharge.call.latency_ms"]["count"] >= 1
    assert snapshot["custom_timers"]["metrics.cron.date_ms"]["count"] >= 1
