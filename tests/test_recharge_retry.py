from __future__ import annotations

import asyncio
from datetime import timedelta, timezone

import pytest

from conftest import ScriptedRechargeClient, failed_result
from fulfillment import (
    FailureKind,
    FulfillmentRepository,
    FulfillmentService,
    OrderStatus,
    PaymentStatus,
    RechargeStatus,
    RetryOrchestrator,
    classify_failure,
    retry_delay,
    session_scope,
)
from fulfillment.repository import as_utc_aware
from fulfillment.retry import RATE_LIMIT_CODE

UTC = timezone.utc
INTERNAL_CODE = 500001


def _wire(session_factory, clock, client, **kwargs):
    orchestrator = RetryOrchestrator(client, session_factory=session_factory, clock=clock, **kwargs)
    service = FulfillmentService(client, orchestrator, session_factory=session_factory, clock=clock, tz=UTC)
    return orchestrator, service


def _recharge(session_factory, recharge_id: str):
    with session_scope(session_factory) as session:
        recharge = FulfillmentRepository(session).get_recharge(recharge_id)
        order = recharge.order_item.order
        return recharge, order.status


# ---------------------------------------------------------------------------
# Classification and delays
# ---------------------------------------------------------------------------


def test_classify_failure_by_result_code() -> None:
    assert classify_failure(RATE_LIMIT_CODE).kind is FailureKind.RATE_LIMIT
    assert classify_failure(INTERNAL_CODE).kind is FailureKind.INTERNAL
    fatal = classify_failure(7212004)
    assert fatal.kind is FailureKind.FATAL
    assert not fatal.retryable
    assert fatal.message == "Recharge account does not exist"
    assert classify_failure(None).kind is FailureKind.FATAL
    assert classify_failure(999, "custom").message == "custom"


def test_rate_limit_delay_is_linear_and_capped() -> None:
    delays = [retry_delay(FailureKind.RATE_LIMIT, attempt) for attempt in range(1, 6)]
    assert delays == [
        timedelta(seconds=30),
        timedelta(seconds=60),
        timedelta(seconds=90),
        timedelta(seconds=120),
        timedelta(seconds=120),
    ]


def test_internal_delay_follows_schedule_then_falls_back() -> None:
    delays = [retry_delay(FailureKind.INTERNAL, attempt) for attempt in range(1, 6)]
    assert delays == [
        timedelta(minutes=3),
        timedelta(minutes=13),
        timedelta(minutes=28),
        timedelta(minutes=30),
        timedelta(minutes=30),
    ]


def test_fatal_failures_have_no_delay() -> None:
    with pytest.raises(ValueError):
        retry_delay(FailureKind.FATAL, 1)


# ---------------------------------------------------------------------------
# Retry flow
# ---------------------------------------------------------------------------


def test_rate_limited_recharge_fails_after_max_attempts(session_factory, clock, place_order) -> None:
    placed = place_order("50.00")
    client = ScriptedRechargeClient(*(failed_result(RATE_LIMIT_CODE) for _ in range(3)))
    orchestrator, service = _wire(session_factory, clock, client, max_attempts=3)
    recharge_id = placed["recharge_id"]

    async def scenario() -> list[dict]:
        outcomes = [await service.process_payment_webhook({"id": placed["payment_id"], "status": "APPROVED"})]
        recharge, _ = _recharge(session_factory, recharge_id)
        assert recharge.status == RechargeStatus.RETRY_PENDING
        assert recharge.attempts == 1
        assert as_utc_aware(recharge.next_retry_at) == clock() + timedelta(seconds=30)
        assert recharge.last_error_code == RATE_LIMIT_CODE
        assert orchestrator.is_armed(recharge_id)

        clock.advance(seconds=30)
        outcomes.append(await orchestrator.retry_now(recharge_id))
        recharge, _ = _recharge(session_factory, recharge_id)
        assert recharge.attempts == 2
        assert as_utc_aware(recharge.next_retry_at) == clock() + timedelta(seconds=60)

        clock.advance(seconds=60)
        outcomes.append(await orchestrator.retry_now(recharge_id))
        await orchestrator.shutdown()
        return outcomes

    first, second, third = asyncio.run(scenario())

    assert first["delivery"]["status"] == "retry_pending"
    assert second["status"] == "retry_pending"
    assert third["status"] == "failed"
    assert third["attempts"] == 3
    assert "Max retries (3) exceeded" in third["message"]
    assert len(client.calls) == 3
    # Every attempt reuses the request id stored with the first call.
    assert len({call.request_id for call in client.calls}) == 1

    recharge, order_status = _recharge(session_factory, recharge_id)
    assert recharge.status == RechargeStatus.FAILED
    assert recharge.next_retry_at is None
    assert order_status == OrderStatus.PROCESSING
    assert orchestrator.active_timers == 0


def test_retry_success_completes_order(session_factory, clock, place_order) -> None:
    placed = place_order("50.00")
    client = ScriptedRechargeClient(failed_result(INTERNAL_CODE))
    orchestrator, service = _wire(session_factory, clock, client)

    async def scenario() -> dict:
        await service.process_payment_webhook({"id": placed["payment_id"], "status": "APPROVED"})
        clock.advance(minutes=3)
        outcome = await orchestrator.retry_now(placed["recharge_id"])
        await orchestrator.shutdown()
        return outcome

    outcome = asyncio.run(scenario())

    assert outcome["status"] == "delivered"
    assert outcome["outcome"]["status"] == "completed"
    recharge, order_status = _recharge(session_factory, placed["recharge_id"])
    assert recharge.status == RechargeStatus.APPROVED
    assert recharge.next_retry_at is None
    assert order_status == OrderStatus.COMPLETED


def test_retry_now_skips_records_not_pending(session_factory, clock, place_order) -> None:
    placed = place_order("50.00")
    orchestrator, _ = _wire(session_factory, clock, ScriptedRechargeClient())
    outcome = asyncio.run(orchestrator.retry_now(placed["recharge_id"]))
    assert outcome == {"status": "skipped", "recharge_status": "PENDING"}
    assert asyncio.run(orchestrator.retry_now("missing"))["recharge_status"] == "missing"


def test_refund_cancels_armed_retry(session_factory, clock, place_order) -> None:
    placed = place_order("50.00")
    client = ScriptedRechargeClient(failed_result(RATE_LIMIT_CODE))
    orchestrator, service = _wire(session_factory, clock, client)

    async def scenario() -> tuple[bool, bool, dict]:
        await service.process_payment_webhook({"id": placed["payment_id"], "status": "APPROVED"})
        armed_before = orchestrator.is_armed(placed["recharge_id"])
        await service.process_payment_webhook({"id": placed["payment_id"], "status": "REFUNDED"})
        armed_after = orchestrator.is_armed(placed["recharge_id"])
        late = await orchestrator.handle_failure(placed["recharge_id"], RATE_LIMIT_CODE)
        await orchestrator.shutdown()
        return armed_before, armed_after, late

    armed_before, armed_after, late = asyncio.run(scenario())

    assert armed_before
    assert not armed_after
    assert late["status"] == "ignored"
    recharge, order_status = _recharge(session_factory, placed["recharge_id"])
    assert recharge.status == RechargeStatus.REJECTED
    assert recharge.next_retry_at is None
    assert order_status == OrderStatus.REFUNDED


def test_armed_timer_fires_retry(session_factory, clock, place_order) -> None:
    placed = place_order("50.00")
    orchestrator, service = _wire(session_factory, clock, ScriptedRechargeClient())

    async def scenario() -> None:
        with session_scope(session_factory) as session:
            recharge = FulfillmentRepository(session).get_recharge(placed["recharge_id"])
            recharge.status = RechargeStatus.RETRY_PENDING
            recharge.request_payload = {
                "recharge_bigoid": "target-account-42",
                "seqid": "seq-1",
                "bu_orderid": "ORDER1",
                "value": 500,
                "total_cost": 44.0,
            }
            order = recharge.order_item.order
            order.status = OrderStatus.PROCESSING
            order.payment.status = PaymentStatus.APPROVED
        orchestrator.arm(placed["recharge_id"], 0)
        await orchestrator.drain()

    asyncio.run(scenario())

    recharge, order_status = _recharge(session_factory, placed["recharge_id"])
    assert recharge.status == RechargeStatus.APPROVED
    assert order_status == OrderStatus.COMPLETED
    assert orchestrator.active_timers == 0


# ---------------------------------------------------------------------------
# Sweep, shutdown and stats
# ---------------------------------------------------------------------------


def test_sweep_rearms_lost_timers(session_factory, clock, place_order) -> None:
    placed = place_order("50.00")
    client = ScriptedRechargeClient(failed_result(RATE_LIMIT_CODE))

    async def first_process() -> None:
        _, service = _wire(session_factory, clock, client)
        await service.process_payment_webhook({"id": placed["payment_id"], "status": "APPROVED"})
        # Process restart: the armed timer is lost.
        await service.orchestrator.shutdown()

    asyncio.run(first_process())

    async def second_process() -> tuple[int, int]:
        orchestrator, _ = _wire(session_factory, clock, client, rearm_delay_seconds=0)
        assert await orchestrator.sweep_stale_retries() == 0
        clock.advance(hours=2)
        rearmed = await orchestrator.sweep_stale_retries()
        armed = orchestrator.active_timers
        await orchestrator.drain()
        return rearmed, armed

    rearmed, armed = asyncio.run(second_process())

    assert rearmed == 1
    assert armed == 1
    assert len(client.calls) == 2
    recharge, order_status = _recharge(session_factory, placed["recharge_id"])
    assert recharge.status == RechargeStatus.APPROVED
    assert order_status == OrderStatus.COMPLETED


class _HangingRechargeClient(ScriptedRechargeClient):
    """Never answers; the process dies while the call is in flight."""

    async def recharge(self, request):
        self.calls.append(request)
        await asyncio.Event().wait()


def test_sweep_recovers_call_interrupted_by_restart(session_factory, clock, place_order) -> None:
    placed = place_order("50.00")
    hanging = _HangingRechargeClient()

    async def first_process() -> None:
        _, service = _wire(session_factory, clock, hanging)
        webhook = asyncio.create_task(
            service.process_payment_webhook({"id": placed["payment_id"], "status": "APPROVED"})
        )
        while not hanging.calls:
            await asyncio.sleep(0)
        webhook.cancel()
        with pytest.raises(asyncio.CancelledError):
            await webhook

    asyncio.run(first_process())
    recharge, order_status = _recharge(session_factory, placed["recharge_id"])
    assert recharge.status == RechargeStatus.REQUESTED
    assert order_status == OrderStatus.PROCESSING
    original_request_id = recharge.request_id

    client = ScriptedRechargeClient()

    async def second_process() -> tuple[int, int]:
        orchestrator, _ = _wire(session_factory, clock, client, rearm_delay_seconds=0)
        # A call younger than one sweep interval may still be running.
        fresh = await orchestrator.sweep_stale_retries()
        clock.advance(hours=2)
        rearmed = await orchestrator.sweep_stale_retries()
        await orchestrator.drain()
        return fresh, rearmed

    fresh, rearmed = asyncio.run(second_process())

    assert fresh == 0
    assert rearmed == 1
    assert [request.request_id for request in client.calls] == [original_request_id]
    assert client.calls[0] == hanging.calls[0]
    recharge, order_status = _recharge(session_factory, placed["recharge_id"])
    assert recharge.status == RechargeStatus.APPROVED
    assert recharge.attempts == 0
    assert order_status == OrderStatus.COMPLETED


def test_shutdown_cancels_pending_timers(session_factory, clock) -> None:
    orchestrator = RetryOrchestrator(ScriptedRechargeClient(), session_factory=session_factory, clock=clock)

    async def scenario() -> tuple[int, int, bool]:
        orchestrator.arm("r-1", 600)
        orchestrator.arm("r-2", 600)
        orchestrator.arm("r-1", 900)
        before = orchestrator.active_timers
        await orchestrator.shutdown()
        return before, orchestrator.active_timers, orchestrator.cancel("r-1")

    before, after, cancelled = asyncio.run(scenario())
    assert before == 2
    assert after == 0
    assert cancelled is False


def test_retry_stats_report_queue(session_factory, clock, place_order) -> None:
    first = place_order("50.00")
    second = place_order("20.00")
    client = ScriptedRechargeClient(failed_result(RATE_LIMIT_CODE), failed_result(INTERNAL_CODE))
    orchestrator, service = _wire(session_factory, clock, client)

    async def scenario() -> dict:
        await service.process_payment_webhook({"id": first["payment_id"], "status": "APPROVED"})
        await service.process_payment_webhook({"id": second["payment_id"], "status": "APPROVED"})
        clock.advance(seconds=45)
        stats = orchestrator.get_retry_stats()
        await orchestrator.shutdown()
        return stats

    stats = asyncio.run(scenario())

    assert stats["queue_depth"] == 2
    assert stats["due_now"] == 1
    assert stats["active_timers"] == 2
    assert stats["by_status"]["RETRY_PENDING"] == 2
    assert stats["retryable_by_error_code"] == {str(INTERNAL_CODE): 1, str(RATE_LIMIT_CODE): 1}
    assert stats["max_retries"] == 3
    assert stats["retry_delays"]["rate_limit_seconds"] == [30, 60, 90, 120]
    assert stats["retry_delays"]["internal_minutes"] == [3, 13, 28, 30]
