"""Average-cost accounting for lending and borrow positions (no I/O)."""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date

from ..models import CostBasis, PricedFlow, TokenLedger

# Net token balances this close to zero are rounding noise, not data gaps.
_NET_TOKEN_TOLERANCE = 1e-9


class CostBasisAccumulator:
    """Accumulate priced flows into an average-cost basis.

    Inflows dated ``today`` are valued at ``live_price`` even when a
    historical row exists for that date; intraday moves would otherwise
    show up as P&L.
    """

    def __init__(self, today: date, live_price: float = 0.0) -> None:
        self.today = today
        self.live_price = live_price

    def inflow_price(self, flow: PricedFlow) -> float:
        if flow.event_date == self.today and self.live_price > 0:
            return self.live_price
        return flow.price_usd

    def ledger(self, flows: Iterable[PricedFlow], as_of: date | None = None) -> TokenLedger:
        deposited = withdrawn = deposited_usd = 0.0
        for flow in sorted(flows, key=lambda f: f.sort_key):
            if as_of is not None and flow.event_date > as_of:
                break
            if flow.is_inflow:
                deposited += flow.tokens
                deposited_usd += flow.tokens * self.inflow_price(flow)
            else:
                withdrawn += flow.tokens
        return TokenLedger(deposited, withdrawn, deposited_usd)

    def from_ledger(self, ledger: TokenLedger) -> CostBasis:
        if ledger.deposited_tokens > 0:
            avg = ledger.deposited_usd / ledger.deposited_tokens
        else:
            avg = self.live_price

        cost_removed = ledger.withdrawn_tokens * avg
        if ledger.net_tokens < -_NET_TOKEN_TOLERANCE:
            return CostBasis(ledger, avg, cost_removed, 0.0, verifiable=False)
        return CostBasis(ledger, avg, cost_removed, ledger.deposited_usd - cost_removed)

    def accumulate(self, flows: Iterable[PricedFlow], as_of: date | None = None) -> CostBasis:
        """Cost basis of ``flows`` up to and including ``as_of``."""
        return self.from_ledger(self.ledger(flows, as_of))

    def running(
        self, flows: Iterable[PricedFlow], dates: Sequence[date]
    ) -> dict[date, CostBasis]:
        """Cost basis as of each date, in one pass over the sorted flows.

        Flows dated before the first date are folded into the first value.
        """
        ordered = sorted(flows, key=lambda f: (f.event_date, f.timestamp, f.ledger_sequence))
        deposited = withdrawn = deposited_usd = 0.0
        cursor = 0
        result: dict[date, CostBasis] = {}
        for day in sorted(dates):
            while cursor < len(ordered) and ordered[cursor].event_date <= day:
                flow = ordered[cursor]
                if flow.is_inflow:
                    deposited += flow.tokens
                    deposited_usd += flow.tokens * self.inflow_price(flow)
                else:
                    withdrawn += flow.tokens
                cursor += 1
            result[day] = self.from_ledger(TokenLedger(deposited, withdrawn, deposited_usd))
        return result


def bounded_interest(
    interest_tokens: float,
    balance_start: float,
    balance_end: float,
    period_days: float,
    max_daily_ratio: float,
) -> tuple[float, bool]:
    """Zero out interest larger than ``max_daily_ratio`` of the average balance per day.

    Returns ``(interest, flagged)``.
    """
    average = (balance_start + balance_end) / 2
    ceiling = average * max_daily_ratio * max(period_days, 1.0)
    if average > 0 and abs(interest_tokens) > ceiling:
        return 0.0, True
    return interest_tokens, False
