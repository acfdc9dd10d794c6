from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from config import METRICS_CRON_HOUR_UTC, RETRY_SWEEP_INTERVAL_SECONDS
from observability import get_logger, log_event, log_exception

from .metrics_cron import MetricsCron
from .models import utc_now
from .retry import RetryOrchestrator

_LOGGER = get_logger("fulfillment.scheduler")


def seconds_until_hour(now: datetime, hour_utc: int) -> float:
    """Seconds from `now` to the next occurrence of `hour_utc`:00 UTC (a full day if it is exactly now)."""
    current = now.astimezone(timezone.utc)
    target = current.replace(hour=int(hour_utc) % 24, minute=0, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return (target - current).total_seconds()


class FulfillmentScheduler:
    """
    In-process background loops: the daily metrics cron and the hourly
    retry-reconciliation sweep. The sweep runs once right after start.
    """

    def __init__(
        self,
        cron: MetricsCron,
        orchestrator: RetryOrchestrator,
        *,
        cron_hour_utc: int = METRICS_CRON_HOUR_UTC,
        sweep_interval_seconds: int = RETRY_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.cron = cron
        self.orchestrator = orchestrator
        self.cron_hour_utc = int(cron_hour_utc)
        self.sweep_interval_seconds = float(sweep_interval_seconds)
        self.clock = clock
        self._tasks: list[asyncio.Task[Any]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._cron_loop(), name="fulfillment-metrics-cron"),
            loop.create_task(self._sweep_loop(), name="fulfillment-retry-sweep"),
        ]
        log_event(
            _LOGGER,
            logging.INFO,
            "fulfillment.scheduler.started",
            cron_hour_utc=self.cron_hour_utc,
            sweep_interval_seconds=self.sweep_interval_seconds,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log_event(_LOGGER, logging.INFO, "fulfillment.scheduler.stopped")

    async def run_cron_once(self) -> Optional[dict[str, Any]]:
        try:
            return await asyncio.to_thread(self.cron.process_daily_metrics, self.clock())
        except Exception as exc:  # noqa: BLE001
            log_exception(_LOGGER, "fulfillment.scheduler.cron_failed", exc)
            return None

    async def run_sweep_once(self) -> int:
        try:
            return await self.orchestrator.sweep_stale_retries()
        except Exception as exc:  # noqa: BLE001
            log_exception(_LOGGER, "fulfillment.scheduler.sweep_failed", exc)
            return 0

    async def _cron_loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until_hour(self.clock(), self.cron_hour_utc))
            await self.run_cron_once()

    async def _sweep_loop(self) -> None:
        while True:
            await self.run_sweep_once()
            await asyncio.sleep(self.sweep_interval_seconds)
