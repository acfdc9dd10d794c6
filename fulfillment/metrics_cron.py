"""
Daily metrics cron with gap detection and bounded per-date retries.

Every processed date owns one `MetricsCronExecution` row. Stores are
recomputed one transaction at a time so a single broken store only downgrades
the run to PARTIAL. A date that has failed `METRICS_MAX_RETRIES` times is
parked as FAILED_PERMANENT and only comes back through
`reprocess_failed_dates`.
"""

from __future__ import annotations

import calendar
import logging
import time
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Callable, Optional

from config import METRICS_GAP_WINDOW_DAYS, METRICS_MAX_RETRIES, ORDER_PAYMENT_TIMEOUT_SECONDS
from observability import get_logger, log_event, log_exception
from runtime_metrics import record_counter_metric, record_timing_metric

from .db import SessionFactory, session_scope
from .metrics import local_date, metrics_zone, recompute_store_day
from .models import CronExecutionStatus, utc_now
from .orders import expire_stale_orders
from .repository import FulfillmentRepository

_LOGGER = get_logger("fulfillment.metrics_cron")

DONE_STATUSES = frozenset({CronExecutionStatus.SUCCESS, CronExecutionStatus.FAILED_PERMANENT})
RECOVERABLE_STATUSES = frozenset(
    {CronExecutionStatus.FAILED, CronExecutionStatus.PARTIAL, CronExecutionStatus.FAILED_PERMANENT}
)


def recalculate_store_metrics(
    repo: FulfillmentRepository,
    store_id: str,
    day: date,
    *,
    now: Optional[datetime] = None,
    timeout_seconds: int = ORDER_PAYMENT_TIMEOUT_SECONDS,
    tz: Optional[tzinfo] = None,
) -> dict[str, Any]:
    """Expire stale CREATED orders for the store, then rebuild its daily, monthly and product rows."""
    expired = expire_stale_orders(repo, store_id, now=now, timeout_seconds=timeout_seconds, tz=tz)
    summary = recompute_store_day(repo, store_id, day, tz=tz)
    summary["expired_orders"] = len(expired)
    return summary


def _month_range(year: int, month: int) -> tuple[date, date]:
    if not 1 <= int(month) <= 12:
        raise ValueError("month must be between 1 and 12")
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


class MetricsCron:
    def __init__(
        self,
        *,
        session_factory: Optional[SessionFactory] = None,
        clock: Callable[[], datetime] = utc_now,
        tz: Optional[tzinfo] = None,
        gap_window_days: int = METRICS_GAP_WINDOW_DAYS,
        max_retries: int = METRICS_MAX_RETRIES,
        order_timeout_seconds: int = ORDER_PAYMENT_TIMEOUT_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock
        self.tz = tz or metrics_zone()
        self.gap_window_days = max(2, int(gap_window_days))
        self.max_retries = max(1, int(max_retries))
        self.order_timeout_seconds = int(order_timeout_seconds)

    # -- scheduled entry point -----------------------------------------

    def process_daily_metrics(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Fill gaps in the window oldest-first, then process yesterday."""
        current = now or self.clock()
        today = local_date(current, self.tz)
        yesterday = today - timedelta(days=1)
        gaps = self.find_gap_dates(today)
        log_event(
            _LOGGER,
            logging.INFO,
            "fulfillment.metrics_cron.started",
            today=today,
            gaps=[day.isoformat() for day in gaps],
        )

        results: list[dict[str, Any]] = []
        for day in [*gaps, yesterday]:
            try:
                results.append(self.process_metrics_for_date(day))
            except Exception as exc:  # noqa: BLE001
                log_exception(_LOGGER, "fulfillment.metrics_cron.date_error", exc, date=day)
                results.append({"date": day.isoformat(), "status": "error", "error": str(exc)})

        record_counter_metric(name="metrics.cron.run")
        log_event(_LOGGER, logging.INFO, "fulfillment.metrics_cron.finished", today=today, dates=len(results))
        return {
            "today": today.isoformat(),
            "gaps": [day.isoformat() for day in gaps],
            "results": results,
        }

    def find_gap_dates(self, today: date) -> list[date]:
        """Dates from today-N to today-2 without a finished execution record, oldest first."""
        start = today - timedelta(days=self.gap_window_days)
        end = today - timedelta(days=2)
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            finished = {
                record.execution_date
                for record in repo.list_executions_between(start, end, statuses=set(DONE_STATUSES))
            }
        gaps: list[date] = []
        day = start
        while day <= end:
            if day not in finished:
                gaps.append(day)
            day += timedelta(days=1)
        return gaps

    def process_metrics_for_date(self, day: date) -> dict[str, Any]:
        started = time.perf_counter()
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            record = repo.get_or_create_execution(day, now=now)
            if record.status in DONE_STATUSES:
                return {"date": day.isoformat(), "status": "skipped", "execution_status": record.status.value}
            if record.retry_count >= self.max_retries:
                record.status = CronExecutionStatus.FAILED_PERMANENT
                record.completed_at = now
                record_counter_metric(name="metrics.cron.failed_permanent")
                log_event(
                    _LOGGER,
                    logging.ERROR,
                    "fulfillment.metrics_cron.failed_permanent",
                    date=day,
                    retry_count=record.retry_count,
                    last_error=record.last_error,
                )
                return {"date": day.isoformat(), "status": CronExecutionStatus.FAILED_PERMANENT.value}
            record.status = CronExecutionStatus.PROCESSING
            record.started_at = now
            record.completed_at = None

        try:
            with session_scope(self.session_factory) as session:
                store_ids = FulfillmentRepository(session).list_store_ids()
            processed, failed, last_error = self._recalculate_stores(day, store_ids)
        except Exception as exc:  # noqa: BLE001
            log_exception(_LOGGER, "fulfillment.metrics_cron.run_error", exc, date=day)
            return self._finish(day, CronExecutionStatus.FAILED, started, error=str(exc))

        if failed == 0:
            status = CronExecutionStatus.SUCCESS
        elif processed > 0:
            status = CronExecutionStatus.PARTIAL
        else:
            status = CronExecutionStatus.FAILED
        return self._finish(
            day,
            status,
            started,
            error=last_error,
            stores_total=len(store_ids),
            stores_processed=processed,
            stores_failed=failed,
        )

    def _recalculate_stores(self, day: date, store_ids: list[str]) -> tuple[int, int, Optional[str]]:
        processed = 0
        failed = 0
        last_error: Optional[str] = None
        for store_id in store_ids:
            try:
                with session_scope(self.session_factory) as session:
                    recalculate_store_metrics(
                        FulfillmentRepository(session),
                        store_id,
                        day,
                        now=self.clock(),
                        timeout_seconds=self.order_timeout_seconds,
                        tz=self.tz,
                    )
            except Exception as exc:  # noqa: BLE001
                failed += 1
                last_error = f"store {store_id}: {exc}"
                log_exception(_LOGGER, "fulfillment.metrics_cron.store_error", exc, date=day, store_id=store_id)
                continue
            processed += 1
        return processed, failed, last_error

    def _finish(
        self,
        day: date,
        status: CronExecutionStatus,
        started: float,
        *,
        error: Optional[str] = None,
        stores_total: Optional[int] = None,
        stores_processed: int = 0,
        stores_failed: int = 0,
    ) -> dict[str, Any]:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        with session_scope(self.session_factory) as session:
            record = FulfillmentRepository(session).get_or_create_execution(day, now=self.clock())
            record.status = status
            record.completed_at = self.clock()
            record.execution_time_ms = elapsed_ms
            record.stores_processed = stores_processed
            record.stores_failed = stores_failed
            if stores_total is not None:
                record.stores_total = stores_total
            record.last_error = error
            if status in {CronExecutionStatus.PARTIAL, CronExecutionStatus.FAILED}:
                record.retry_count = int(record.retry_count or 0) + 1
            retry_count = record.retry_count

        record_timing_metric(name="metrics.cron.date_ms", duration_ms=float(elapsed_ms))
        record_counter_metric(name=f"metrics.cron.{status.value.lower()}")
        log_event(
            _LOGGER,
            logging.INFO if status == CronExecutionStatus.SUCCESS else logging.WARNING,
            "fulfillment.metrics_cron.date_finished",
            date=day,
            status=status,
            stores_processed=stores_processed,
            stores_failed=stores_failed,
            retry_count=retry_count,
            execution_time_ms=elapsed_ms,
        )
        return {
            "date": day.isoformat(),
            "status": status.value,
            "stores_processed": stores_processed,
            "stores_failed": stores_failed,
            "retry_count": retry_count,
            "execution_time_ms": elapsed_ms,
        }

    # -- health and recovery -------------------------------------------

    def get_cron_health_status(self, year: int, month: int) -> dict[str, Any]:
        start, end = _month_range(year, month)
        with session_scope(self.session_factory) as session:
            records = FulfillmentRepository(session).list_executions_between(start, end)
            counts = {status.value: 0 for status in CronExecutionStatus}
            failed_dates: list[str] = []
            permanent: list[str] = []
            for record in records:
                counts[record.status.value] += 1
                if record.status == CronExecutionStatus.FAILED_PERMANENT:
                    permanent.append(record.execution_date.isoformat())
                elif record.status in {CronExecutionStatus.FAILED, CronExecutionStatus.PARTIAL}:
                    failed_dates.append(record.execution_date.isoformat())

        if permanent:
            health = "ERROR"
        elif failed_dates:
            health = "WARNING"
        else:
            health = "OK"
        return {
            "status": health,
            "period": f"{year:04d}-{month:02d}",
            "executions": len(records),
            "counts": counts,
            "failed_dates": failed_dates,
            "permanently_failed_dates": permanent,
        }

    def reprocess_failed_dates(self, year: int, month: int) -> dict[str, Any]:
        """
        Recompute every FAILED / PARTIAL / FAILED_PERMANENT date of the month for
        all stores, ignoring the retry cap. Fully successful dates become SUCCESS.
        """
        start, end = _month_range(year, month)
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            dates = [
                record.execution_date
                for record in repo.list_executions_between(start, end, statuses=set(RECOVERABLE_STATUSES))
            ]
            store_ids = repo.list_store_ids()

        results: list[dict[str, Any]] = []
        recovered = 0
        for day in dates:
            started = time.perf_counter()
            processed, failed, last_error = self._recalculate_stores(day, store_ids)
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            with session_scope(self.session_factory) as session:
                record = FulfillmentRepository(session).get_or_create_execution(day, now=self.clock())
                record.stores_total = len(store_ids)
                record.stores_processed = processed
                record.stores_failed = failed
                record.execution_time_ms = elapsed_ms
                record.completed_at = self.clock()
                if failed == 0:
                    record.status = CronExecutionStatus.SUCCESS
                    record.last_error = None
                    recovered += 1
                else:
                    record.last_error = last_error
                status = record.status.value
            results.append({"date": day.isoformat(), "status": status, "stores_failed": failed})

        record_counter_metric(name="metrics.cron.recovery")
        log_event(
            _LOGGER,
            logging.INFO,
            "fulfillment.metrics_cron.recovery_finished",
            period=f"{year:04d}-{month:02d}",
            dates=len(dates),
            recovered=recovered,
        )
        return {"period": f"{year:04d}-{month:02d}", "dates": results, "recovered": recovered}
