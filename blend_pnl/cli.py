"""Command-line interface for the Blend P&L engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Any

from .config import AppConfig, load_config
from .errors import PnlError
from .indexer import IndexerClient, IndexerRepository
from .logging_setup import configure_logging
from .models import Flag, Side
from .params import parse_active_filter, parse_live_inputs, split_addresses
from .serialize import to_jsonable
from .services import DailyRatesRefresher, LocalRefreshCoordinator, MultiWalletAggregator
from .services.compositor import PERIODS
from .services.loader import dedupe

logger = logging.getLogger(__name__)


def _add_wallet_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "addresses",
        nargs="?",
        default=None,
        help="Comma-separated wallet addresses (default: wallets in config)",
    )
    parser.add_argument(
        "--live",
        default=None,
        metavar="FILE",
        help="JSON file with live prices and balances",
    )


def _add_active_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--active",
        default=None,
        metavar="FILE",
        help="JSON file mapping pool-asset keys to the wallets holding them",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="blend-pnl",
        description="Historical P&L for Blend lending and backstop positions",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--timezone",
        default=None,
        help="IANA timezone for day boundaries (overrides config)",
    )

    sub = parser.add_subparsers(dest="command")

    history = sub.add_parser("history", help="Daily value, cost basis and P&L")
    _add_wallet_args(history)
    _add_active_arg(history)

    chart = sub.add_parser("chart", help="P&L bars per period")
    _add_wallet_args(chart)
    _add_active_arg(chart)
    chart.add_argument(
        "--period",
        default="1W",
        choices=list(PERIODS),
        help="Chart period (default: 1W)",
    )
    chart.add_argument(
        "--start",
        type=date.fromisoformat,
        default=None,
        help="Custom range start (YYYY-MM-DD)",
    )
    chart.add_argument(
        "--end",
        type=date.fromisoformat,
        default=None,
        help="Custom range end (YYYY-MM-DD)",
    )

    realized = sub.add_parser("realized", help="Claimed emissions in USD")
    _add_wallet_args(realized)

    cost_basis = sub.add_parser("cost-basis", help="Average-cost basis per position")
    _add_wallet_args(cost_basis)
    _add_active_arg(cost_basis)
    cost_basis.add_argument(
        "--side",
        default=Side.SUPPLY.value,
        choices=[s.value for s in Side],
        help="Lending supply or borrow positions (default: supply)",
    )

    return parser


def _read_json(path: str | None) -> Any:
    if path is None:
        return None
    with open(Path(path)) as f:
        return json.load(f)


def build_aggregator(
    config: AppConfig, client: IndexerClient | None = None
) -> MultiWalletAggregator:
    """Wire the indexer repository, rates refresher and aggregator from config."""
    repository = IndexerRepository(client or IndexerClient(config.indexer), config)
    refresher = None
    if config.rates_refresh.enabled:
        refresher = DailyRatesRefresher(
            repository, LocalRefreshCoordinator(config.rates_refresh.interval_minutes)
        )
    return MultiWalletAggregator(repository, config, refresher)


async def _run(args: argparse.Namespace) -> Any:
    """Execute the selected command and return the report."""
    config = load_config(args.config)
    async with IndexerClient(config.indexer) as client:
        return await _report(build_aggregator(config, client), config, args)


async def _report(
    aggregator: MultiWalletAggregator, config: AppConfig, args: argparse.Namespace
) -> Any:
    addresses = split_addresses(args.addresses) or [w.address for w in config.wallets]
    live, flags = parse_live_inputs(_read_json(args.live) or {})
    active = None
    if getattr(args, "active", None):
        active, active_flags = parse_active_filter(_read_json(args.active))
        flags.extend(active_flags)

    if args.command == "history":
        report = await aggregator.performance_history(
            addresses, live, active, timezone=args.timezone
        )
    elif args.command == "chart":
        report = await aggregator.pnl_chart(
            addresses,
            args.period,
            live,
            active,
            timezone=args.timezone,
            start=args.start,
            end=args.end,
        )
    elif args.command == "realized":
        report = await aggregator.realized_yield(addresses, live, timezone=args.timezone)
    elif args.command == "cost-basis":
        report = await aggregator.cost_basis(
            addresses, Side(args.side), live, active, timezone=args.timezone
        )
    else:
        raise ValueError(f"Unknown command '{args.command}'")

    return with_flags(report, flags)


def with_flags(report: Any, flags: list[Flag]) -> Any:
    """Prepend parameter-decoding flags to a report's own flags."""
    if not flags:
        return report
    return replace(report, flags=dedupe([*flags, *report.flags]))


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    configure_logging(args.log_level)
    try:
        report = asyncio.run(_run(args))
    except (PnlError, ValueError, FileNotFoundError) as e:
        logger.error("%s", e)
        sys.exit(1)

    json.dump(to_jsonable(report), sys.stdout, indent=2)
    sys.stdout.write("\n")
