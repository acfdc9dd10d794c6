from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional

import pytest

from fulfillment import (
    FulfillmentRepository,
    RechargeRequest,
    RechargeResult,
    build_session_factory,
    create_order,
    init_fulfillment_db,
    session_scope,
)

UTC = timezone.utc


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class ScriptedRechargeClient:
    """Returns queued results in order; succeeds once the queue is empty."""

    def __init__(self, *results: RechargeResult) -> None:
        self.results = list(results)
        self.calls: list[RechargeRequest] = []

    def queue(self, *results: RechargeResult) -> None:
        self.results.extend(results)

    async def recharge(self, request: RechargeRequest) -> RechargeResult:
        self.calls.append(request)
        if self.results:
            return self.results.pop(0)
        return RechargeResult(code=0, message="ok", payload={"rescode": 0, "seqid": request.request_id})


def ok_result() -> RechargeResult:
    return RechargeResult(code=0, message="ok", payload={"rescode": 0})


def failed_result(code: int, message: str = "") -> RechargeResult:
    return RechargeResult(code=code, message=message or f"provider code {code}", payload={"rescode": code})


@pytest.fixture
def session_factory() -> Iterator[Callable[[], Any]]:
    engine, factory = build_session_factory("sqlite+pysqlite:///:memory:")
    init_fulfillment_db(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 10, 17, 15, 0, tzinfo=UTC))


@pytest.fixture
def catalog(session_factory) -> dict[str, str]:
    with session_scope(session_factory) as session:
        repo = FulfillmentRepository(session)
        store = repo.create_store(name="Main Store")
        product = repo.create_product(name="Diamonds", store_id=store.id)
        return {"store_id": store.id, "product_id": product.id}


@pytest.fixture
def place_order(session_factory, clock, catalog) -> Callable[..., dict[str, str]]:
    counter = {"value": 0}

    def _place(
        price: str = "50.00",
        *,
        coupon_code: Optional[str] = None,
        store_id: Optional[str] = None,
        product_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> dict[str, str]:
        counter["value"] += 1
        external_id = f"pay_{counter['value']:04d}"
        with session_scope(session_factory) as session:
            repo = FulfillmentRepository(session)
            order = create_order(
                repo,
                store_id=store_id or catalog["store_id"],
                user_id="user-1",
                product_id=product_id or catalog["product_id"],
                package_name="500 diamonds",
                credit_amount=500,
                base_price=Decimal(price),
                target_account_id="target-account-42",
                coupon_code=coupon_code,
                external_payment_id=external_id,
                now=created_at or clock(),
                tz=UTC,
            )
            return {
                "order_id": order.id,
                "payment_id": external_id,
                "recharge_id": order.recharge.id,
                "store_id": order.store_id,
            }

    return _place
