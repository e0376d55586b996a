"""Share-based backstop accounting (no I/O).

Backstop value is ``shares * share_rate`` and the share rate drifts up as
the backstop earns. Shares are the conserved quantity across deposits and
withdrawals; LP-token amounts are only used to derive rates.
"""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date

from ..models import BackstopEvent, BackstopSnapshot
from .balances import carry_forward


@dataclass(frozen=True)
class BackstopPosition:
    lp_value: float = 0.0
    cumulative_shares: float = 0.0
    share_rate: float | None = None


class BackstopShareReconciler:
    """Rebuild per-date backstop positions from share events and snapshots."""

    def reconcile_pool(
        self,
        events: Iterable[BackstopEvent],
        snapshots: Iterable[BackstopSnapshot],
        dates: Sequence[date],
    ) -> dict[date, BackstopPosition]:
        ordered = sorted(events, key=lambda e: (e.timestamp, e.ledger_sequence))
        carried = carry_forward(snapshots, dates, date_of=lambda s: s.snapshot_date)

        result: dict[date, BackstopPosition] = {}
        cursor = 0
        shares = 0.0
        event_rate: float | None = None
        event_date: date | None = None
        for day in sorted(dates):
            while cursor < len(ordered) and ordered[cursor].event_date <= day:
                event = ordered[cursor]
                shares += event.share_delta
                if event.share_rate is not None:
                    event_rate = event.share_rate
                    event_date = event.event_date
                cursor += 1

            snap = carried[day]
            if not ordered:
                if snap is None:
                    result[day] = BackstopPosition()
                else:
                    result[day] = BackstopPosition(
                        snap.lp_tokens_value, snap.cumulative_shares, snap.share_rate
                    )
                continue

            rate = event_rate
            if snap is not None and snap.share_rate is not None:
                if event_date is None or snap.snapshot_date >= event_date:
                    rate = snap.share_rate

            held = max(shares, 0.0)
            lp_value = held * rate if rate is not None else 0.0
            result[day] = BackstopPosition(lp_value, held, rate)
        return result

    def reconcile_by_pool(
        self,
        events: Iterable[BackstopEvent],
        snapshots: Iterable[BackstopSnapshot],
        dates: Sequence[date],
    ) -> dict[str, dict[date, BackstopPosition]]:
        events_by_pool: dict[str, list[BackstopEvent]] = defaultdict(list)
        snaps_by_pool: dict[str, list[BackstopSnapshot]] = defaultdict(list)
        for event in events:
            events_by_pool[event.pool_address].append(event)
        for snap in snapshots:
            snaps_by_pool[snap.pool_address].append(snap)

        pools = sorted(set(events_by_pool) | set(snaps_by_pool))
        return {
            pool: self.reconcile_pool(events_by_pool[pool], snaps_by_pool[pool], dates)
            for pool in pools
        }

    def reconcile(
        self,
        events: Iterable[BackstopEvent],
        snapshots: Iterable[BackstopSnapshot],
        dates: Sequence[date],
    ) -> dict[date, BackstopPosition]:
        """Per-date LP value and shares summed across all backstop pools."""
        totals = {day: BackstopPosition() for day in dates}
        for positions in self.reconcile_by_pool(events, snapshots, dates).values():
            for day, pos in positions.items():
                acc = totals[day]
                totals[day] = BackstopPosition(
                    acc.lp_value + pos.lp_value,
                    acc.cumulative_shares + pos.cumulative_shares,
                )
        return totals


def period_share_yield(
    shares_start: float,
    rate_start: float,
    rate_end: float | None,
    period_events: Iterable[BackstopEvent],
) -> float:
    """LP-token yield for a period, isolated from principal movement.

    ``shares_start * (rate_end - rate_start)`` plus each deposit's shares
    times ``rate_end - rate_at_deposit``, minus each withdrawal's shares
    times ``rate_end - rate_at_withdrawal``. ``rate_end`` only multiplies
    the shares held at the end, so it may be unknown when none are held.
    """
    deltas = [(e.share_delta, e.share_rate) for e in period_events if e.share_delta]
    shares_end = shares_start + sum(delta for delta, _ in deltas)
    if rate_end is None:
        if shares_end > 1e-9:
            raise ValueError("rate_end is required while shares are still held")
        rate_end = 0.0

    lp_yield = shares_start * (rate_end - rate_start)
    for delta, rate in deltas:
        if rate is None:
            continue
        lp_yield += delta * (rate_end - rate)
    return lp_yield
