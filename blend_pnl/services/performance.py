"""Daily P&L time series for one wallet."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date

from ..accounting import (
    BackstopShareReconciler,
    CostBasisAccumulator,
    RealizedYieldAggregator,
    build_daily_series,
)
from ..dates import dates_between
from ..models import (
    BACKSTOP_ACTIONS,
    LENDING_ACTIONS,
    ActionType,
    ActiveFilter,
    BackstopEvent,
    CostBasis,
    DailyPnlPoint,
    Flag,
    FlagKind,
    LiveInputs,
    PerformanceHistory,
    PositionFlows,
    PositionKey,
    PricedFlow,
    RealizedYieldData,
    Side,
)
from ..pricing import PriceResolver
from .loader import (
    WalletDataLoader,
    dedupe,
    excluded,
    missing_price_flags,
    rebucket_claims,
    rebucket_flows,
)

logger = logging.getLogger(__name__)


@dataclass
class _DayTotals:
    value: float = 0.0
    cost_basis: float = 0.0
    unrealized: float = 0.0


def backstop_flows(events: Iterable[BackstopEvent]) -> list[PricedFlow]:
    """Backstop deposits/withdrawals as LP-token flows for cost basis."""
    flows: list[PricedFlow] = []
    for event in events:
        if event.kind not in (ActionType.BACKSTOP_DEPOSIT, ActionType.BACKSTOP_WITHDRAW):
            continue
        flows.append(
            PricedFlow(
                action_type=event.kind,
                timestamp=event.timestamp,
                ledger_sequence=event.ledger_sequence,
                event_date=event.event_date,
                tokens=event.lp_tokens,
                price_usd=event.price_usd,
            )
        )
    return flows


class PerformanceHistoryBuilder:
    """Value, cost basis, unrealized and realized P&L for every day since first activity."""

    def __init__(self, loader: WalletDataLoader) -> None:
        self.loader = loader
        self.repository = loader.repository
        self.tokens = loader.tokens

    async def build(
        self,
        address: str,
        live: LiveInputs,
        today: date,
        timezone: str,
        active: ActiveFilter | None = None,
    ) -> PerformanceHistory:
        flags: list[Flag] = []
        actions = await self.loader.actions(address, active)

        supply_keys = sorted(
            {a.position_key for a in actions if a.action_type in LENDING_ACTIONS and a.position_key}
        )
        backstop_pools = sorted({a.pool_id for a in actions if a.action_type in BACKSTOP_ACTIONS})

        snapshots = await self.loader.lending_snapshots(address, supply_keys, timezone, flags)
        backstop_snaps = await self.loader.backstop_snapshots(
            address, backstop_pools, timezone, flags
        )
        backstop_events = (
            await self.loader.backstop_events(address, live.lp_price, timezone, flags)
            if backstop_pools
            else []
        )

        candidates = [s.snapshot_date for snaps in snapshots.values() for s in snaps]
        candidates += [s.snapshot_date for s in backstop_snaps]
        candidates += [e.event_date for e in backstop_events]
        if not candidates:
            logger.info("No balance history for %s", address)
            return PerformanceHistory(addresses=(address,), flags=dedupe(flags))

        first_date = min(candidates)
        dates = dates_between(first_date, today)

        lending_flows: dict[PositionKey, PositionFlows] = {}
        if snapshots:
            try:
                flows_by_key = await self.repository.get_deposit_events_with_prices_batch(
                    address, sorted(snapshots), live.prices
                )
                lending_flows = rebucket_flows(flows_by_key, timezone)
            except Exception as e:
                flags.append(excluded("lending cost basis", e))

        try:
            realized_data = await self.repository.get_realized_yield_data(address, live.prices)
        except Exception as e:
            flags.append(excluded("realized yield", e))
            realized_data = RealizedYieldData()

        price_tokens = {k.asset_address for k in snapshots}
        if backstop_pools:
            price_tokens.add(self.tokens.lp_token)
        claims = rebucket_claims(realized_data.claims, timezone, today)
        price_tokens |= {c.token_address for c in claims if c.price_usd is None}
        live_prices = self.loader.live_prices(live)
        claim_start = min([c.claim_date for c in claims] + [first_date])
        resolver = await self.loader.price_resolver(
            price_tokens, claim_start, today, live_prices, flags
        )

        lending = [_DayTotals() for _ in dates]
        for key, snaps in sorted(snapshots.items()):
            balances = build_daily_series(snaps, dates, Side.SUPPLY)
            accumulator = CostBasisAccumulator(today, live_prices.get(key.asset_address, 0.0))
            flows = lending_flows.get(key, PositionFlows(key))
            running = accumulator.running(flows.flows, dates)
            self._accumulate(
                lending, dates, balances, running, resolver, key.asset_address, str(key), flags
            )

        backstop = [_DayTotals() for _ in dates]
        if backstop_pools:
            positions = BackstopShareReconciler().reconcile(backstop_events, backstop_snaps, dates)
            balances = {day: pos.lp_value for day, pos in positions.items()}
            accumulator = CostBasisAccumulator(today, live.lp_price)
            running = accumulator.running(backstop_flows(backstop_events), dates)
            self._accumulate(
                backstop, dates, balances, running, resolver, self.tokens.lp_token, "backstop", flags
            )

        realized = RealizedYieldAggregator(resolver).aggregate(claims)
        flags.extend(realized.flags)
        flags.extend(missing_price_flags(resolver))

        history: list[DailyPnlPoint] = []
        for i, day in enumerate(dates):
            lend, back = lending[i], backstop[i]
            realized_pnl = realized.cumulative_by_date.get(day, 0.0)
            unrealized = lend.unrealized + back.unrealized
            history.append(
                DailyPnlPoint(
                    on=day,
                    portfolio_value=lend.value + back.value,
                    cost_basis=lend.cost_basis + back.cost_basis,
                    unrealized_pnl=unrealized,
                    realized_pnl=realized_pnl,
                    total_pnl=unrealized + realized_pnl,
                    lending_value=lend.value,
                    backstop_value=back.value,
                    lending_cost_basis=lend.cost_basis,
                    backstop_cost_basis=back.cost_basis,
                    lending_unrealized_pnl=lend.unrealized,
                    backstop_unrealized_pnl=back.unrealized,
                )
            )

        return PerformanceHistory(
            addresses=(address,),
            history=tuple(history),
            first_activity_date=first_date,
            flags=dedupe(flags),
        )

    @staticmethod
    def _accumulate(
        totals: list[_DayTotals],
        dates: list[date],
        balances: Mapping[date, float],
        running: Mapping[date, CostBasis],
        resolver: PriceResolver,
        token: str,
        subject: str,
        flags: list[Flag],
    ) -> None:
        """Add one position's value, cost basis and unrealized P&L to ``totals``."""
        unverifiable = False
        for i, day in enumerate(dates):
            balance = balances.get(day, 0.0)
            basis = running[day]
            if balance <= 0 and basis.net_tokens <= 0:
                continue
            point = resolver.resolve(token, day)
            if not point.reliable:
                continue
            value = balance * point.price
            totals[i].value += value
            if not basis.verifiable:
                unverifiable = True
                continue
            totals[i].cost_basis += basis.cost_basis
            totals[i].unrealized += value - basis.cost_basis
        if unverifiable:
            flags.append(
                Flag(
                    FlagKind.UNVERIFIABLE_COST_BASIS,
                    subject,
                    "more withdrawn than deposited; unrealized P&L omitted",
                )
            )
