#!/usr/bin/env python3
"""Operator commands: python -m fulfillment.cli <command>."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import date
from typing import Any, Optional, Sequence

from config import LOG_LEVEL
from observability import configure_json_logging

from .db import init_fulfillment_db
from .metrics import local_date
from .metrics_cron import MetricsCron
from .models import utc_now
from .recharge_client import RechargeClient
from .retry import RetryOrchestrator
from .service import FulfillmentService


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date (expected YYYY-MM-DD): {value}") from exc


def _add_period(parser: argparse.ArgumentParser) -> None:
    today = local_date(utc_now())
    parser.add_argument("--year", type=int, default=today.year)
    parser.add_argument("--month", type=int, default=today.month)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fulfillment", description="Recharge fulfillment maintenance commands")
    parser.add_argument("--skip-migrations", action="store_true", help="do not run alembic upgrade first")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run-daily-metrics", help="run the daily metrics cron (gap fill + yesterday)")

    process_date = commands.add_parser("process-date", help="process one execution date")
    process_date.add_argument("date", type=_parse_date)

    recover = commands.add_parser("recover", help="reprocess failed dates of a month")
    _add_period(recover)

    health = commands.add_parser("cron-health", help="cron health for a month")
    _add_period(health)

    sweep = commands.add_parser("sweep-retries", help="re-arm stale RETRY_PENDING recharges and wait for them")
    sweep.add_argument("--rearm-delay", type=float, default=0.0)

    commands.add_parser("retry-stats", help="retry queue statistics")
    return parser


async def _sweep_retries(rearm_delay: float) -> dict[str, Any]:
    orchestrator = RetryOrchestrator(RechargeClient(), rearm_delay_seconds=rearm_delay)
    FulfillmentService(orchestrator.client, orchestrator)
    rearmed = await orchestrator.sweep_stale_retries()
    await orchestrator.drain()
    return {"rearmed": rearmed, "stats": orchestrator.get_retry_stats()}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_json_logging(level=LOG_LEVEL)
    if not args.skip_migrations:
        init_fulfillment_db()

    cron = MetricsCron()
    if args.command == "run-daily-metrics":
        _print(cron.process_daily_metrics())
    elif args.command == "process-date":
        _print(cron.process_metrics_for_date(args.date))
    elif args.command == "recover":
        _print(cron.reprocess_failed_dates(args.year, args.month))
    elif args.command == "cron-health":
        _print(cron.get_cron_health_status(args.year, args.month))
    elif args.command == "sweep-retries":
        _print(asyncio.run(_sweep_retries(args.rearm_delay)))
    elif args.command == "retry-stats":
        _print(RetryOrchestrator(RechargeClient()).get_retry_stats())
    return 0


if __name__ == "__main__":
    sys.exit(main())
