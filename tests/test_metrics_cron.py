from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from conftest import FrozenClock
from fulfillment import (
    CronExecutionStatus,
    FulfillmentRepository,
    MetricsCron,
    OrderStatus,
    session_scope,
)
from fulfillment import metrics_cron as metrics_cron_module

UTC = timezone.utc


@pytest.fixture
def cron_clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 10, 18, 11, 0, tzinfo=UTC))


@pytest.fixture
def cron(session_factory, cron_clock) -> MetricsCron:
    return MetricsCron(session_factory=session_factory, clock=cron_clock, tz=UTC, gap_window_days=5, max_retries=3)


def _seed_execution(session_factory, day: date, status: CronExecutionStatus, *, retry_count: int = 0) -> None:
    with session_scope(session_factory) as session:
        record = FulfillmentRepository(session).get_or_create_execution(day, now=datetime(2026, 10, 1, tzinfo=UTC))
        record.status = status
        record.retry_count = retry_count


def _execution(session_factory, day: date):
    with session_scope(session_factory) as session:
        return FulfillmentRepository(session).get_execution(day)


def _fail_for(store_ids: set[str]):
    real = metrics_cron_module.recalculate_store_metrics

    def _recalculate(repo, store_id, day, **kwargs):
        if store_id in store_ids:
            raise RuntimeError("aggregate table locked")
        return real(repo, store_id, day, **kwargs)

    return _recalculate


# ---------------------------------------------------------------------------
# Gap detection and the daily run
# ---------------------------------------------------------------------------


def test_find_gap_dates_skips_finished_dates(session_factory, cron) -> None:
    _seed_execution(session_factory, date(2026, 10, 13), CronExecutionStatus.SUCCESS)
    _seed_execution(session_factory, date(2026, 10, 15), CronExecutionStatus.SUCCESS)
    _seed_execution(session_factory, date(2026, 10, 16), CronExecutionStatus.PARTIAL)
    _seed_execution(session_factory, date(2026, 10, 14), CronExecutionStatus.FAILED_PERMANENT)

    assert cron.find_gap_dates(date(2026, 10, 18)) == [date(2026, 10, 16)]


def test_daily_run_fills_gaps_oldest_first_then_yesterday(session_factory, cron, catalog) -> None:
    _seed_execution(session_factory, date(2026, 10, 13), CronExecutionStatus.SUCCESS)
    _seed_execution(session_factory, date(2026, 10, 15), CronExecutionStatus.SUCCESS)

    outcome = cron.process_daily_metrics()

    assert outcome["today"] == "2026-10-18"
    assert outcome["gaps"] == ["2026-10-14", "2026-10-16"]
    assert [result["date"] for result in outcome["results"]] == ["2026-10-14", "2026-10-16", "2026-10-17"]
    assert all(result["status"] == "SUCCESS" for result in outcome["results"])
    for day in (date(2026, 10, 14), date(2026, 10, 16), date(2026, 10, 17)):
        record = _execution(session_factory, day)
        assert record.status == CronExecutionStatus.SUCCESS
        assert record.stores_total == 1
        assert record.stores_processed == 1
        assert record.completed_at is not None

    # A second run the same day has nothing left to do.
    again = cron.process_daily_metrics()
    assert again["gaps"] == []
    assert again["results"][0]["status"] == "skipped"


def test_daily_run_expires_stale_orders_and_rebuilds_rows(session_factory, cron, catalog, place_order) -> None:
    placed = place_order("35.00", created_at=datetime(2026, 10, 17, 15, 0, tzinfo=UTC))

    cron.process_metrics_for_date(date(2026, 10, 17))

    with session_scope(session_factory) as session:
        repo = FulfillmentRepository(session)
        assert repo.get_order(placed["order_id"]).status == OrderStatus.EXPIRED
        daily = repo.get_daily_sales(catalog["store_id"], date(2026, 10, 17))
        assert daily.total_orders == 1
        assert daily.total_expired_orders == 1


def test_errors_on_one_date_do_not_stop_the_run(session_factory, cron, catalog, monkeypatch) -> None:
    real = cron.process_metrics_for_date

    def _process(day: date):
        if day == date(2026, 10, 14):
            raise RuntimeError("boom")
        return real(day)

    monkeypatch.setattr(cron, "process_metrics_for_date", _process)
    outcome = cron.process_daily_metrics()

    statuses = {result["date"]: result["status"] for result in outcome["results"]}
    assert statuses["2026-10-14"] == "error"
    assert statuses["2026-10-17"] == "SUCCESS"


# ---------------------------------------------------------------------------
# Partial failures and the retry cap
# ---------------------------------------------------------------------------


def test_store_failure_marks_partial_and_counts_retry(session_factory, cron, catalog, monkeypatch) -> None:
    with session_scope(session_factory) as session:
        broken_store = FulfillmentRepository(session).create_store(name="Broken Store").id
    monkeypatch.setattr(metrics_cron_module, "recalculate_store_metrics", _fail_for({broken_store}))

    result = cron.process_metrics_for_date(date(2026, 10, 17))

    assert result["status"] == "PARTIAL"
    assert result["stores_processed"] == 1
    assert result["stores_failed"] == 1
    assert result["retry_count"] == 1
    record = _execution(session_factory, date(2026, 10, 17))
    assert record.stores_total == 2
    assert "aggregate table locked" in record.last_error


def test_all_stores_failing_marks_failed(session_factory, cron, catalog, monkeypatch) -> None:
    monkeypatch.setattr(metrics_cron_module, "recalculate_store_metrics", _fail_for({catalog["store_id"]}))
    result = cron.process_metrics_for_date(date(2026, 10, 17))
    assert result["status"] == "FAILED"
    assert result["retry_count"] == 1


def test_date_is_parked_after_max_retries(session_factory, cron, catalog, monkeypatch) -> None:
    monkeypatch.setattr(metrics_cron_module, "recalculate_store_metrics", _fail_for({catalog["store_id"]}))
    day = date(2026, 10, 16)

    statuses = [cron.process_metrics_for_date(day)["status"] for _ in range(4)]

    assert statuses == ["FAILED", "FAILED", "FAILED", "FAILED_PERMANENT"]
    record = _execution(session_factory, day)
    assert record.status == CronExecutionStatus.FAILED_PERMANENT
    assert record.retry_count == 3
    # Parked dates are neither gaps nor reprocessed by the daily run.
    assert day not in cron.find_gap_dates(date(2026, 10, 18))
    assert cron.process_metrics_for_date(day)["status"] == "skipped"


def test_seeded_retry_cap_goes_straight_to_permanent(session_factory, cron, catalog) -> None:
    _seed_execution(session_factory, date(2026, 10, 16), CronExecutionStatus.FAILED, retry_count=3)
    assert cron.process_metrics_for_date(date(2026, 10, 16))["status"] == "FAILED_PERMANENT"


# ---------------------------------------------------------------------------
# Health and recovery
# ---------------------------------------------------------------------------


def test_cron_health_levels(session_factory, cron) -> None:
    empty = cron.get_cron_health_status(2026, 10)
    assert empty["status"] == "OK"
    assert empty["executions"] == 0

    _seed_execution(session_factory, date(2026, 10, 13), CronExecutionStatus.SUCCESS)
    assert cron.get_cron_health_status(2026, 10)["status"] == "OK"

    _seed_execution(session_factory, date(2026, 10, 14), CronExecutionStatus.PARTIAL)
    warning = cron.get_cron_health_status(2026, 10)
    assert warning["status"] == "WARNING"
    assert warning["failed_dates"] == ["2026-10-14"]

    _seed_execution(session_factory, date(2026, 10, 15), CronExecutionStatus.FAILED_PERMANENT)
    error = cron.get_cron_health_status(2026, 10)
    assert error["status"] == "ERROR"
    assert error["permanently_failed_dates"] == ["2026-10-15"]
    assert error["counts"]["SUCCESS"] == 1
    assert error["executions"] == 3

    # Other months are not affected.
    assert cron.get_cron_health_status(2026, 9)["status"] == "OK"


def test_cron_health_rejects_invalid_month(cron) -> None:
    with pytest.raises(ValueError):
        cron.get_cron_health_status(2026, 13)


def test_reprocess_failed_dates_recovers_month(session_factory, cron, catalog, place_order) -> None:
    _seed_execution(session_factory, date(2026, 10, 13), CronExecutionStatus.SUCCESS)
    _seed_execution(session_factory, date(2026, 10, 14), CronExecutionStatus.PARTIAL, retry_count=1)
    _seed_execution(session_factory, date(2026, 10, 15), CronExecutionStatus.FAILED_PERMANENT, retry_count=3)
    _seed_execution(session_factory, date(2026, 9, 30), CronExecutionStatus.FAILED, retry_count=1)

    outcome = cron.reprocess_failed_dates(2026, 10)

    assert outcome["period"] == "2026-10"
    assert outcome["recovered"] == 2
    assert [entry["date"] for entry in outcome["dates"]] == ["2026-10-14", "2026-10-15"]
    assert all(entry["status"] == "SUCCESS" for entry in outcome["dates"])
    assert _execution(session_factory, date(2026, 10, 15)).status == CronExecutionStatus.SUCCESS
    assert _execution(session_factory, date(2026, 9, 30)).status == CronExecutionStatus.FAILED
    assert cron.get_cron_health_status(2026, 10)["status"] == "OK"


def test_reprocess_keeps_status_when_stores_still_fail(session_factory, cron, catalog, monkeypatch) -> None:
    _seed_execution(session_factory, date(2026, 10, 15), CronExecutionStatus.FAILED_PERMANENT, retry_count=3)
    monkeypatch.setattr(metrics_cron_module, "recalculate_store_metrics", _fail_for({catalog["store_id"]}))

    outcome = cron.reprocess_failed_dates(2026, 10)

    assert outcome["recovered"] == 0
    assert outcome["dates"] == [{"date": "2026-10-15", "status": "FAILED_PERMANENT", "stores_failed": 1}]
    assert "aggregate table locked" in _execution(session_factory, date(2026, 10, 15)).last_error
