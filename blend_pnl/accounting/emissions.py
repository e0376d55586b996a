"""Reward-token emission APY lookup with forward-fill (no I/O)."""
from __future__ import annotations

import bisect
from collections import defaultdict
from datetime import date

from ..models import EmissionApyHistory, EmissionKind

_Key = tuple[EmissionKind, str, str | None]


class EmissionSchedule:
    """APY (percent) per lending pool-asset or backstop pool, by date."""

    def __init__(self, history: EmissionApyHistory) -> None:
        rows: dict[_Key, dict[date, float]] = defaultdict(dict)
        for point in history.points:
            asset = None if point.kind is EmissionKind.BACKSTOP else point.asset_address
            rows[(point.kind, point.pool_id, asset)][point.on] = point.apy
        self._rows = dict(rows)
        self._dates = {key: sorted(values) for key, values in self._rows.items()}

    def apy(
        self,
        kind: EmissionKind,
        on: date,
        pool_id: str,
        asset_address: str | None = None,
    ) -> float:
        """APY on ``on``, forward-filled from the latest earlier date; 0 if none."""
        key = (kind, pool_id, None if kind is EmissionKind.BACKSTOP else asset_address)
        dates = self._dates.get(key)
        if not dates:
            return 0.0
        idx = bisect.bisect_right(dates, on) - 1
        if idx < 0:
            return 0.0
        return self._rows[key][dates[idx]]

    def daily_rate(
        self,
        kind: EmissionKind,
        on: date,
        pool_id: str,
        asset_address: str | None = None,
    ) -> float:
        return self.apy(kind, on, pool_id, asset_address) / 100 / 365
