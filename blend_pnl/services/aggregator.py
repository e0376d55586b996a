"""Fan out per-wallet computations and sum their USD results."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import fields, replace
from datetime import date, datetime, timezone as dt_timezone
from typing import TypeVar

from ..accounting import RealizedYieldAggregator
from ..config import AppConfig
from ..dates import today_in
from ..errors import MissingParameterError, RepositoryUnavailableError
from ..interfaces import EventRepository
from ..models import (
    ActiveFilter,
    ClaimEvent,
    CostBasisReport,
    DailyPnlPoint,
    Flag,
    LiveInputs,
    PerformanceHistory,
    PeriodBar,
    PnlChart,
    PositionFlows,
    PositionKey,
    RealizedYieldSummary,
    Side,
)
from .compositor import PnlChartCompositor, WalletChart, period_boundaries
from .cost_basis import CostBasisService, combined_current_balances
from .loader import WalletDataLoader, dedupe, excluded, gather_settled, rebucket_claims
from .performance import PerformanceHistoryBuilder
from .rates_refresh import DailyRatesRefresher

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POINT_SUMS = [f.name for f in fields(DailyPnlPoint) if f.name != "on"]
_BAR_SUMS = [
    "supply_yield",
    "reward_yield_supply",
    "backstop_yield",
    "reward_yield_backstop",
    "borrow_interest_cost",
    "reward_yield_borrow",
    "price_change",
    "total",
]


def normalize_addresses(addresses: Iterable[str]) -> list[str]:
    """Strip blanks and duplicates, keeping order."""
    cleaned = [a.strip() for a in addresses if a and a.strip()]
    if not cleaned:
        raise MissingParameterError("At least one wallet address is required")
    return list(dict.fromkeys(cleaned))


def sum_points(day: date, points: Sequence[DailyPnlPoint]) -> DailyPnlPoint:
    totals = {name: sum(getattr(p, name) for p in points) for name in _POINT_SUMS}
    return DailyPnlPoint(on=day, **totals)


def sum_bars(bars: Sequence[PeriodBar]) -> PeriodBar:
    first = bars[0]
    totals = {name: sum(getattr(b, name) for b in bars) for name in _BAR_SUMS}
    return PeriodBar(
        period_start=first.period_start,
        period_end=first.period_end,
        label=first.label,
        is_live=first.is_live,
        **totals,
    )


class MultiWalletAggregator:
    """Combined reports across wallets.

    Wallets are computed concurrently. A wallet whose computation fails is
    excluded and flagged; if every wallet fails the error is raised.
    """

    def __init__(
        self,
        repository: EventRepository,
        config: AppConfig,
        refresher: DailyRatesRefresher | None = None,
    ) -> None:
        self.repository = repository
        self.config = config
        self.refresher = refresher
        self.loader = WalletDataLoader(repository, config.engine, config.tokens)
        self.history_builder = PerformanceHistoryBuilder(self.loader)
        self.compositor = PnlChartCompositor(
            self.loader,
            max_daily_interest_ratio=config.engine.max_daily_interest_ratio,
            min_period_days=config.engine.min_period_days,
        )
        self.cost_basis_service = CostBasisService(repository, config.engine.action_limit)

    def _clock(self, timezone: str | None, now: datetime | None) -> tuple[str, datetime, date]:
        tz = timezone or self.config.engine.timezone
        now = now or datetime.now(dt_timezone.utc)
        return tz, now, today_in(tz, now)

    async def _fan_out(
        self,
        addresses: Sequence[str],
        make: Callable[[str], Awaitable[T]],
    ) -> tuple[dict[str, T], list[Flag]]:
        ok, failed = await gather_settled([(address, make(address)) for address in addresses])
        if failed and not ok:
            first = next(iter(failed.values()))
            if isinstance(first, RepositoryUnavailableError):
                raise first
            raise RepositoryUnavailableError(f"All wallets failed: {first}") from first
        flags = [excluded(f"wallet {address}", error) for address, error in failed.items()]
        return ok, flags

    async def _refresh_rates(self) -> None:
        if self.refresher is not None:
            await self.refresher.ensure_fresh()

    # -- reports ------------------------------------------------------------

    async def performance_history(
        self,
        addresses: Iterable[str],
        live: LiveInputs | None = None,
        active: ActiveFilter | None = None,
        timezone: str | None = None,
        now: datetime | None = None,
    ) -> PerformanceHistory:
        wallets = normalize_addresses(addresses)
        live = live or LiveInputs()
        tz, now, today = self._clock(timezone, now)
        await self._refresh_rates()

        results, flags = await self._fan_out(
            wallets, lambda a: self.history_builder.build(a, live, today, tz, active)
        )

        by_date: dict[date, list[DailyPnlPoint]] = {}
        firsts: list[date] = []
        for address in wallets:
            history = results.get(address)
            if history is None:
                continue
            flags.extend(history.flags)
            if history.first_activity_date is not None:
                firsts.append(history.first_activity_date)
            for point in history.history:
                by_date.setdefault(point.on, []).append(point)

        combined = tuple(sum_points(day, by_date[day]) for day in sorted(by_date))
        logger.info("Built %d daily points for %d wallet(s)", len(combined), len(results))
        return PerformanceHistory(
            addresses=tuple(wallets),
            history=combined,
            first_activity_date=min(firsts) if firsts else None,
            flags=dedupe(flags),
        )

    async def pnl_chart(
        self,
        addresses: Iterable[str],
        period: str = "1W",
        live: LiveInputs | None = None,
        active: ActiveFilter | None = None,
        timezone: str | None = None,
        now: datetime | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> PnlChart:
        wallets = normalize_addresses(addresses)
        live = live or LiveInputs()
        tz, now, today = self._clock(timezone, now)
        boundaries, granularity = period_boundaries(period, today, start, end)
        await self._refresh_rates()

        results, flags = await self._fan_out(
            wallets,
            lambda a: self.compositor.compose(a, boundaries, live, today, now, tz, active),
        )

        charts: list[WalletChart] = [results[a] for a in wallets if a in results]
        for chart in charts:
            flags.extend(chart.flags)
        bars = tuple(
            sum_bars([chart.bars[i] for chart in charts]) for i in range(len(boundaries))
        )
        label = "custom" if start is not None else period
        return PnlChart(period=label, granularity=granularity, bars=bars, flags=dedupe(flags))

    async def realized_yield(
        self,
        addresses: Iterable[str],
        live: LiveInputs | None = None,
        timezone: str | None = None,
        now: datetime | None = None,
    ) -> RealizedYieldSummary:
        wallets = normalize_addresses(addresses)
        live = live or LiveInputs()
        tz, _, today = self._clock(timezone, now)

        results, flags = await self._fan_out(
            wallets, lambda a: self.repository.get_realized_yield_data(a, live.prices)
        )
        claims: list[ClaimEvent] = rebucket_claims(
            (c for a in wallets if a in results for c in results[a].claims), tz, today
        )
        unpriced = {c.token_address for c in claims if c.price_usd is None}
        start = min((c.claim_date for c in claims), default=today)
        resolver = await self.loader.price_resolver(
            unpriced, start, today, self.loader.live_prices(live), flags
        )

        summary = RealizedYieldAggregator(resolver).aggregate(claims)
        return replace(summary, flags=dedupe([*flags, *summary.flags]))

    async def cost_basis(
        self,
        addresses: Iterable[str],
        side: Side = Side.SUPPLY,
        live: LiveInputs | None = None,
        active: ActiveFilter | None = None,
        timezone: str | None = None,
        now: datetime | None = None,
    ) -> CostBasisReport:
        wallets = normalize_addresses(addresses)
        live = live or LiveInputs()
        tz, _, today = self._clock(timezone, now)

        results, flags = await self._fan_out(
            wallets, lambda a: self.cost_basis_service.fetch_flows(a, side, live, tz, active)
        )
        flows: list[dict[PositionKey, PositionFlows]] = [
            results[a] for a in wallets if a in results
        ]
        report = self.cost_basis_service.build_report(
            flows,
            side,
            live,
            today,
            combined_current_balances(live, [a for a in wallets if a in results], side, active),
        )
        return replace(report, flags=dedupe([*flags, *report.flags]))
