from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

from conftest import ScriptedRechargeClient
from fulfillment import FulfillmentScheduler, MetricsCron, RetryOrchestrator
from fulfillment import metrics_cron as metrics_cron_module
from fulfillment.scheduler import seconds_until_hour

UTC = timezone.utc


def test_seconds_until_hour() -> None:
    assert seconds_until_hour(datetime(2026, 10, 18, 10, 30, tzinfo=UTC), 11) == 1800
    assert seconds_until_hour(datetime(2026, 10, 18, 11, 0, tzinfo=UTC), 11) == 86400
    assert seconds_until_hour(datetime(2026, 10, 18, 23, 0, tzinfo=UTC), 11) == 12 * 3600


def _scheduler(session_factory, clock) -> FulfillmentScheduler:
    cron = MetricsCron(session_factory=session_factory, clock=clock, tz=UTC)
    orchestrator = RetryOrchestrator(ScriptedRechargeClient(), session_factory=session_factory, clock=clock)
    return FulfillmentScheduler(cron, orchestrator, cron_hour_utc=11, sweep_interval_seconds=3600, clock=clock)


def test_start_and_stop(session_factory, clock) -> None:
    scheduler = _scheduler(session_factory, clock)

    async def scenario() -> tuple[bool, bool]:
        scheduler.start()
        scheduler.start()
        await asyncio.sleep(0)
        started = scheduler.running
        await scheduler.stop()
        return started, scheduler.running

    started, stopped = asyncio.run(scenario())
    assert started is True
    assert stopped is False


def test_run_once_helpers_swallow_failures(session_factory, clock, monkeypatch) -> None:
    scheduler = _scheduler(session_factory, clock)

    def _explode(*_args, **_kwargs):
        raise RuntimeError("database unavailable")

    async def _explode_async(*_args, **_kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(scheduler.cron, "process_daily_metrics", _explode)
    monkeypatch.setattr(scheduler.orchestrator, "sweep_stale_retries", _explode_async)

    assert asyncio.run(scheduler.run_cron_once()) is None
    assert asyncio.run(scheduler.run_sweep_once()) == 0


def test_run_cron_once_processes_yesterday(session_factory, clock, catalog) -> None:
    scheduler = _scheduler(session_factory, clock)
    outcome = asyncio.run(scheduler.run_cron_once())
    assert outcome["today"] == "2026-10-17"
    assert outcome["results"][-1]["date"] == "2026-10-16"
    assert outcome["results"][-1]["status"] == "SUCCESS"


def test_cron_runs_off_the_event_loop(session_factory, clock, catalog, monkeypatch) -> None:
    scheduler = _scheduler(session_factory, clock)
    real = metrics_cron_module.recalculate_store_metrics

    def _slow_recalculate(*args, **kwargs):
        time.sleep(0.05)
        return real(*args, **kwargs)

    monkeypatch.setattr(metrics_cron_module, "recalculate_store_metrics", _slow_recalculate)

    async def scenario() -> tuple[dict, int]:
        ticks = 0
        cron_task = asyncio.create_task(scheduler.run_cron_once())
        while not cron_task.done():
            await asyncio.sleep(0.01)
            ticks += 1
        return await cron_task, ticks

    outcome, ticks = asyncio.run(scenario())
    assert outcome["results"][-1]["status"] == "SUCCESS"
    assert ticks > 1
