"""Lending and borrow cost-basis reports merged across wallets."""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import replace
from datetime import date

from ..accounting import CostBasisAccumulator
from ..interfaces import EventRepository
from ..models import (
    ActiveFilter,
    CostBasisReport,
    Flag,
    FlagKind,
    LiveInputs,
    PositionCostBasis,
    PositionFlows,
    PositionKey,
    PricedFlow,
    Side,
)
from .loader import dedupe, rebucket_flows

logger = logging.getLogger(__name__)


class CostBasisService:
    """Average-cost basis per position, optionally split against live balances.

    With a current balance the report also carries protocol yield (tokens
    earned beyond net deposits, or interest accrued on debt) and the price
    change on principal.
    """

    def __init__(self, repository: EventRepository, action_limit: int = 1000) -> None:
        self.repository = repository
        self.action_limit = action_limit

    async def fetch_flows(
        self,
        address: str,
        side: Side,
        live: LiveInputs,
        timezone: str,
        active: ActiveFilter | None = None,
    ) -> dict[PositionKey, PositionFlows]:
        actions = await self.repository.get_user_actions(
            address,
            action_types=sorted(side.actions, key=lambda a: a.value),
            limit=self.action_limit,
        )
        keys = sorted(
            {
                a.position_key
                for a in actions
                if a.position_key is not None
                and (active is None or active.allows(a.position_key, address))
            }
        )
        if not keys:
            return {}

        if side is Side.SUPPLY:
            flows = await self.repository.get_deposit_events_with_prices_batch(
                address, keys, live.prices
            )
        else:
            flows = await self.repository.get_borrow_events_with_prices_batch(
                address, keys, live.prices
            )
        kept = {
            key: value
            for key, value in flows.items()
            if active is None or active.allows(key, address)
        }
        return rebucket_flows(kept, timezone)

    def build_report(
        self,
        flows_by_wallet: Sequence[Mapping[PositionKey, PositionFlows]],
        side: Side,
        live: LiveInputs,
        today: date,
        current_balances: Mapping[PositionKey, float] | None = None,
    ) -> CostBasisReport:
        merged: dict[PositionKey, list[PricedFlow]] = defaultdict(list)
        symbols: dict[PositionKey, str] = {}
        for wallet_flows in flows_by_wallet:
            for key, position in wallet_flows.items():
                merged[key].extend(position.flows)
                if position.asset_symbol:
                    symbols[key] = position.asset_symbol

        flags: list[Flag] = []
        positions: list[PositionCostBasis] = []
        total = 0.0
        for key in sorted(merged):
            live_price = live.price(key.asset_address)
            basis = CostBasisAccumulator(today, live_price).accumulate(merged[key])
            ledger = basis.ledger
            if not basis.verifiable:
                logger.warning("Net tokens negative for %s; cost basis unverifiable", key)
                flags.append(
                    Flag(
                        FlagKind.UNVERIFIABLE_COST_BASIS,
                        str(key),
                        f"withdrawn {ledger.withdrawn_tokens} exceeds deposited {ledger.deposited_tokens}",
                    )
                )
            else:
                total += basis.cost_basis

            entry = PositionCostBasis(
                key=key,
                side=side,
                asset_symbol=symbols.get(key, ""),
                deposited_tokens=ledger.deposited_tokens,
                withdrawn_tokens=ledger.withdrawn_tokens,
                deposited_usd=ledger.deposited_usd,
                weighted_avg_price=basis.weighted_avg_price,
                cost_basis=basis.cost_basis,
                net_tokens=ledger.net_tokens,
                verifiable=basis.verifiable,
            )

            current = (current_balances or {}).get(key)
            if current is not None:
                if live_price <= 0:
                    flags.append(
                        Flag(FlagKind.MISSING_PRICE, str(key), "no live price; breakdown omitted")
                    )
                else:
                    yield_tokens = current - ledger.net_tokens
                    entry = replace(
                        entry,
                        current_tokens=current,
                        current_value=current * live_price,
                        yield_tokens=yield_tokens,
                        yield_usd=yield_tokens * live_price,
                        price_change_usd=(
                            ledger.net_tokens * live_price - basis.cost_basis
                            if basis.verifiable
                            else None
                        ),
                    )
            positions.append(entry)

        return CostBasisReport(
            side=side, positions=tuple(positions), total_cost_basis=total, flags=dedupe(flags)
        )


def combined_current_balances(
    live: LiveInputs,
    addresses: Sequence[str],
    side: Side,
    active: ActiveFilter | None = None,
) -> dict[PositionKey, float] | None:
    """Sum each wallet's live balances; None when the caller supplied none."""
    totals: dict[PositionKey, float] = defaultdict(float)
    seen = False
    for address in addresses:
        state = live.for_wallet(address)
        balances = state.current_balances if side is Side.SUPPLY else state.current_borrow_balances
        for key, amount in balances.items():
            if active is not None and not active.allows(key, address):
                continue
            totals[key] += amount
            seen = True
    return dict(totals) if seen else None
