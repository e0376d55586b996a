"""Dense daily balance series from sparse snapshots (no I/O)."""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from datetime import date
from typing import TypeVar

from ..models import BalanceSnapshot, PositionKey, Side

T = TypeVar("T")


def carry_forward(
    records: Iterable[T],
    dates: Sequence[date],
    date_of: Callable[[T], date],
    order_of: Callable[[T], object] | None = None,
) -> dict[date, T | None]:
    """Map each date to the last record dated on or before it.

    Records are sorted once by ``(date_of, order_of)`` and ``dates`` are
    swept in ascending order with a single cursor, so a later record on the
    same date wins. Dates before the first record map to ``None``.
    """
    if order_of is None:
        ordered = sorted(records, key=date_of)
    else:
        ordered = sorted(records, key=lambda r: (date_of(r), order_of(r)))

    result: dict[date, T | None] = {}
    cursor = 0
    current: T | None = None
    for day in sorted(dates):
        while cursor < len(ordered) and date_of(ordered[cursor]) <= day:
            current = ordered[cursor]
            cursor += 1
        result[day] = current
    return result


def carry_snapshots(
    snapshots: Iterable[BalanceSnapshot], dates: Sequence[date]
) -> dict[date, BalanceSnapshot | None]:
    return carry_forward(
        snapshots,
        dates,
        date_of=lambda s: s.snapshot_date,
        order_of=lambda s: s.ledger_sequence,
    )


def build_daily_series(
    snapshots: Iterable[BalanceSnapshot],
    dates: Sequence[date],
    side: Side = Side.SUPPLY,
) -> dict[date, float]:
    """Underlying balance per date for one position.

    Supply series use ``(supply + collateral) * b_rate``; borrow series use
    ``debt * d_rate``. Dates before the first snapshot are ``0``.
    """
    carried = carry_snapshots(snapshots, dates)
    series: dict[date, float] = {}
    for day, snap in carried.items():
        if snap is None:
            series[day] = 0.0
        elif side is Side.SUPPLY:
            series[day] = snap.supply_underlying
        else:
            series[day] = snap.debt_underlying
    return series


def group_by_position(
    snapshots: Iterable[BalanceSnapshot],
) -> dict[PositionKey, list[BalanceSnapshot]]:
    grouped: dict[PositionKey, list[BalanceSnapshot]] = defaultdict(list)
    for snap in snapshots:
        grouped[snap.key].append(snap)
    return dict(grouped)
