"""
Bounded retries for recharge calls.

A failed call is classified once, by result code:

- RATE_LIMIT: linear backoff, 30s per attempt, capped at 120s.
- INTERNAL: fixed schedule of 3, 13 and 28 minutes, then 30 minutes.
- FATAL: every code not listed; the recharge fails immediately.

Retry state lives on the Recharge row (`attempts`, `next_retry_at`, last
error). One asyncio task per record holds the in-process timer. After a
restart the timers are gone; `sweep_stale_retries` finds RETRY_PENDING rows
whose due time is well past and re-arms them.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

from config import (
    RETRY_INTERNAL_FALLBACK_MINUTES,
    RETRY_INTERNAL_SCHEDULE_MINUTES,
    RETRY_MAX_ATTEMPTS,
    RETRY_RATE_LIMIT_CAP_SECONDS,
    RETRY_RATE_LIMIT_STEP_SECONDS,
    RETRY_SWEEP_INTERVAL_SECONDS,
    RETRY_SWEEP_REARM_DELAY_SECONDS,
)
from errors import recharge_error_message
from observability import get_logger, log_event, log_exception
from runtime_metrics import record_counter_metric

from .db import SessionFactory, session_scope
from .models import RechargeStatus, utc_now
from .recharge_client import (
    INTERNAL_ERROR_CODE,
    RechargeError,
    RechargeRequest,
    RechargeResult,
)
from .repository import FulfillmentRepository

_LOGGER = get_logger("fulfillment.retry")

RATE_LIMIT_CODE = 7212012


class FailureKind(str, enum.Enum):
    RATE_LIMIT = "rate_limit"
    INTERNAL = "internal"
    FATAL = "fatal"


RETRYABLE_CODES: dict[int, FailureKind] = {
    RATE_LIMIT_CODE: FailureKind.RATE_LIMIT,
    INTERNAL_ERROR_CODE: FailureKind.INTERNAL,
}


@dataclass(frozen=True)
class FailureClassification:
    kind: FailureKind
    code: Optional[int]
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind is not FailureKind.FATAL


def classify_failure(code: Optional[int], message: Optional[str] = None) -> FailureClassification:
    kind = RETRYABLE_CODES.get(int(code), FailureKind.FATAL) if code is not None else FailureKind.FATAL
    return FailureClassification(kind=kind, code=code, message=recharge_error_message(code, message))


def retry_delay(kind: FailureKind, attempt: int) -> timedelta:
    """Delay before the next call after the `attempt`-th failure (1-based)."""
    attempt = max(1, int(attempt))
    if kind is FailureKind.RATE_LIMIT:
        return timedelta(seconds=min(RETRY_RATE_LIMIT_STEP_SECONDS * attempt, RETRY_RATE_LIMIT_CAP_SECONDS))
    if kind is FailureKind.INTERNAL:
        schedule = RETRY_INTERNAL_SCHEDULE_MINUTES
        minutes = schedule[attempt - 1] if attempt <= len(schedule) else RETRY_INTERNAL_FALLBACK_MINUTES
        return timedelta(minutes=minutes)
    raise ValueError(f"{kind.value} failures are not retried")


class RechargeCaller(Protocol):
    async def recharge(self, request: RechargeRequest) -> RechargeResult: ...


DeliveryHandler = Callable[[str, RechargeResult], Awaitable[Any]]
FailureHandler = Callable[[str, str], Awaitable[Any]]


async def call_recharge(client: RechargeCaller, request: RechargeRequest) -> RechargeResult:
    """Run one provider call and fold client-side errors into a result code."""
    try:
        return await client.recharge(request)
    except RechargeError as exc:
        return RechargeResult(code=exc.code if exc.code is not None else -1, message=exc.message)


class RetryOrchestrator:
    def __init__(
        self,
        client: RechargeCaller,
        *,
        session_factory: Optional[SessionFactory] = None,
        max_attempts: int = RETRY_MAX_ATTEMPTS,
        sweep_interval_seconds: int = RETRY_SWEEP_INTERVAL_SECONDS,
        rearm_delay_seconds: float = RETRY_SWEEP_REARM_DELAY_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.session_factory = session_factory
        self.max_attempts = int(max_attempts)
        self.sweep_interval = timedelta(seconds=int(sweep_interval_seconds))
        self.rearm_delay_seconds = float(rearm_delay_seconds)
        self.clock = clock
        self._timers: dict[str, asyncio.Task[Any]] = {}
        self._inflight: set[asyncio.Task[Any]] = set()
        self._on_delivered: Optional[DeliveryHandler] = None
        self._on_failed: Optional[FailureHandler] = None

    def bind_delivery_handler(self, handler: DeliveryHandler, on_failed: Optional[FailureHandler] = None) -> None:
        self._on_delivered = handler
        self._on_failed = on_failed

    @property
    def active_timers(self) -> int:
        return sum(1 for task in self._timers.values() if not task.done())

    def is_armed(self, recharge_id: str) -> bool:
        task = self._timers.get(recharge_id)
        return task is not None and not task.done()

    # -- timers ---------------------------------------------------------

    def arm(self, recharge_id: str, delay_seconds: float) -> None:
        """Schedule one retry for the record, replacing any timer it already had."""
        self.cancel(recharge_id)
        task = asyncio.get_running_loop().create_task(
            self._fire_after(recharge_id, max(0.0, float(delay_seconds))),
            name=f"recharge-retry:{recharge_id}",
        )
        self._timers[recharge_id] = task
        task.add_done_callback(lambda done, key=recharge_id: self._forget(key, done))

    def _forget(self, recharge_id: str, task: asyncio.Task[Any]) -> None:
        if self._timers.get(recharge_id) is task:
            self._timers.pop(recharge_id, None)

    def cancel(self, recharge_id: str) -> bool:
        task = self._timers.pop(recharge_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def _fire_after(self, recharge_id: str, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        # Once fired the task is an in-flight call, which re-arming and shutdown never cancel.
        task = asyncio.current_task()
        if task is not None:
            if self._timers.get(recharge_id) is task:
                self._timers.pop(recharge_id)
            self._inflight.add(task)
        try:
            await self.retry_now(recharge_id)
        except Exception as exc:  # noqa: BLE001
            log_exception(_LOGGER, "fulfillment.retry.fire_failed", exc, recharge_id=recharge_id)
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def shutdown(self) -> None:
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log_event(_LOGGER, logging.INFO, "fulfillment.retry.shutdown", cancelled=len(tasks))

    async def drain(self) -> None:
        """Wait for every armed timer (and any retries they trigger) to finish."""
        while self._timers or self._inflight:
            await asyncio.gather(*self._timers.values(), *self._inflight, return_exceptions=True)

    # -- retry flow -----------------------------------------------------

    async def handle_failure(self, recharge_id: str, code: Optional[int], message: Optional[str] = None) -> dict[str, Any]:
        """Record a failed call, then arm the next retry or fail the recharge for good."""
        classification = classify_failure(code, message)
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            recharge = repo.get_recharge(recharge_id)
            if recharge is None:
                log_event(_LOGGER, logging.WARNING, "fulfillment.retry.unknown_recharge", recharge_id=recharge_id)
                return {"status": "ignored", "reason": "recharge not found"}
            if recharge.status not in {RechargeStatus.PENDING, RechargeStatus.REQUESTED, RechargeStatus.RETRY_PENDING}:
                log_event(
                    _LOGGER,
                    logging.INFO,
                    "fulfillment.retry.already_resolved",
                    recharge_id=recharge_id,
                    status=recharge.status,
                )
                return {"status": "ignored", "reason": f"recharge is {recharge.status.value}"}

            attempts = int(recharge.attempts or 0) + 1
            recharge.attempts = attempts
            recharge.last_error_code = classification.code
            recharge.status_updated_at = now
            if not classification.retryable:
                terminal = f"Error {classification.code} is not retryable: {classification.message}"
            elif attempts >= self.max_attempts:
                terminal = f"Max retries ({self.max_attempts}) exceeded for error {classification.code}: {classification.message}"
            else:
                terminal = None

            if terminal is not None:
                recharge.status = RechargeStatus.FAILED
                recharge.next_retry_at = None
                recharge.last_error_message = terminal
                delay = None
            else:
                delay = retry_delay(classification.kind, attempts)
                recharge.status = RechargeStatus.RETRY_PENDING
                recharge.next_retry_at = now + delay
                recharge.last_error_message = classification.message

        if delay is None:
            self.cancel(recharge_id)
            record_counter_metric(name="recharge.retry.failed")
            log_event(
                _LOGGER,
                logging.ERROR,
                "fulfillment.retry.failed_permanently",
                recharge_id=recharge_id,
                attempts=attempts,
                code=classification.code,
                kind=classification.kind,
                error_message=terminal,
            )
            if self._on_failed is not None:
                await self._on_failed(recharge_id, terminal)
            return {"status": "failed", "attempts": attempts, "code": classification.code, "message": terminal}

        self.arm(recharge_id, delay.total_seconds())
        record_counter_metric(name="recharge.retry.scheduled")
        log_event(
            _LOGGER,
            logging.WARNING,
            "fulfillment.retry.scheduled",
            recharge_id=recharge_id,
            attempts=attempts,
            code=classification.code,
            kind=classification.kind,
            delay_seconds=int(delay.total_seconds()),
        )
        return {
            "status": "retry_pending",
            "attempts": attempts,
            "code": classification.code,
            "next_retry_at": (now + delay).isoformat(),
        }

    async def retry_now(self, recharge_id: str) -> dict[str, Any]:
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            recharge = repo.get_recharge(recharge_id)
            if recharge is None or recharge.status != RechargeStatus.RETRY_PENDING:
                status = recharge.status.value if recharge is not None else "missing"
                log_event(_LOGGER, logging.INFO, "fulfillment.retry.skipped", recharge_id=recharge_id, status=status)
                return {"status": "skipped", "recharge_status": status}
            broken_payload: Optional[RechargeError] = None
            try:
                request = RechargeRequest.from_payload(recharge.request_payload or {})
            except RechargeError as exc:
                broken_payload = exc
            else:
                recharge.status = RechargeStatus.REQUESTED
                recharge.status_updated_at = self.clock()

        if broken_payload is not None:
            return await self.handle_failure(recharge_id, broken_payload.code, broken_payload.message)

        record_counter_metric(name="recharge.retry.attempted")
        result = await call_recharge(self.client, request)
        if not result.ok:
            return await self.handle_failure(recharge_id, result.code, result.message)

        log_event(_LOGGER, logging.INFO, "fulfillment.retry.delivered", recharge_id=recharge_id)
        if self._on_delivered is not None:
            outcome = await self._on_delivered(recharge_id, result)
            return {"status": "delivered", "outcome": outcome}
        with session_scope(self.session_factory) as session:
            recharge = FulfillmentRepository(session).get_recharge(recharge_id)
            if recharge is not None and recharge.status == RechargeStatus.REQUESTED:
                recharge.status = RechargeStatus.APPROVED
                recharge.next_retry_at = None
                recharge.response_payload = result.payload
                recharge.status_updated_at = self.clock()
        return {"status": "delivered"}

    async def sweep_stale_retries(self) -> int:
        """
        Re-arm records whose timer or in-flight call was evidently lost.

        RETRY_PENDING records overdue by more than one sweep interval lost
        their timer. REQUESTED records older than one sweep interval lost
        their call: they go back to RETRY_PENDING with the stored payload and
        request id, so the provider sees the same seqid again.
        """
        now = self.clock()
        cutoff = now - self.sweep_interval
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            stale_ids = [row.id for row in repo.list_recharges_due(cutoff)]
            interrupted_ids: list[str] = []
            for recharge in repo.list_interrupted_recharges(cutoff):
                recharge.status = RechargeStatus.RETRY_PENDING
                recharge.next_retry_at = now
                recharge.last_error_message = "recharge call interrupted before a result was recorded"
                recharge.status_updated_at = now
                interrupted_ids.append(recharge.id)
        for recharge_id in interrupted_ids:
            log_event(
                _LOGGER,
                logging.WARNING,
                "fulfillment.retry.interrupted_call_requeued",
                recharge_id=recharge_id,
            )
        rearmed = 0
        for recharge_id in stale_ids + interrupted_ids:
            if self.is_armed(recharge_id):
                continue
            self.arm(recharge_id, self.rearm_delay_seconds)
            rearmed += 1
        if rearmed:
            record_counter_metric(name="recharge.retry.rearmed", value=rearmed)
        log_event(
            _LOGGER,
            logging.INFO,
            "fulfillment.retry.sweep",
            found=len(stale_ids),
            interrupted=len(interrupted_ids),
            rearmed=rearmed,
        )
        return rearmed

    def get_retry_stats(self) -> dict[str, Any]:
        now = self.clock()
        with session_scope(self.session_factory) as session:
            repo = FulfillmentRepository(session)
            by_status = repo.count_recharges_by_status()
            queue_depth = repo.count_retry_pending()
            due_now = repo.count_retry_pending(due_before=now)
            by_code = repo.count_retry_pending_by_error_code()
        return {
            "queue_depth": queue_depth,
            "due_now": due_now,
            "active_timers": self.active_timers,
            "by_status": by_status,
            "retryable_by_error_code": {str(code): count for code, count in sorted(by_code.items())},
            "max_retries": self.max_attempts,
            "retry_delays": {
                "rate_limit_seconds": [
                    int(retry_delay(FailureKind.RATE_LIMIT, attempt).total_seconds()) for attempt in range(1, 5)
                ],
                "internal_minutes": [
                    int(retry_delay(FailureKind.INTERNAL, attempt).total_seconds() // 60) for attempt in range(1, 5)
                ],
            },
            "retryable_codes": {str(code): kind.value for code, kind in RETRYABLE_CODES.items()},
        }
