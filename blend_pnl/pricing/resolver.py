"""Historical price resolution with forward-fill and live fallback."""
from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable, Mapping
from datetime import date

from ..models import PricePoint, PriceSource

logger = logging.getLogger(__name__)

_STORED_SOURCES = (PriceSource.HISTORICAL, PriceSource.FORWARD_FILL)


class PriceResolver:
    """Resolve one USD price per (token, date) relative to a fixed ``today``.

    Lookup order for past dates: exact row, nearest earlier row, live
    fallback, missing. For ``today`` only the exact row or the live
    fallback may be used.
    """

    def __init__(
        self,
        history: Mapping[str, Mapping[date, float]],
        today: date,
        live_prices: Mapping[str, float] | None = None,
    ) -> None:
        self.today = today
        self._live = dict(live_prices or {})
        self._points: dict[str, dict[date, PricePoint]] = {}
        for token, rows in history.items():
            self._points[token] = {
                d: PricePoint(token, d, float(p), PriceSource.HISTORICAL)
                for d, p in rows.items()
                if p and p > 0
            }
        self._dates = {token: sorted(rows) for token, rows in self._points.items()}
        self._missing: set[tuple[str, date]] = set()

    @classmethod
    def from_points(
        cls,
        points: Mapping[str, Mapping[date, PricePoint]],
        today: date,
        live_prices: Mapping[str, float] | None = None,
    ) -> PriceResolver:
        """Build from points already resolved by a repository.

        Live-fallback and missing points are dropped so that this resolver
        applies its own ``live_prices``.
        """
        resolver = cls({}, today, live_prices)
        for token, rows in points.items():
            kept = {
                d: p for d, p in rows.items() if p.source in _STORED_SOURCES and p.price > 0
            }
            resolver._points[token] = kept
            resolver._dates[token] = sorted(kept)
        return resolver

    def live_price(self, token: str) -> float:
        return self._live.get(token, 0.0)

    def resolve(
        self, token: str, on: date, live_fallback: float | None = None
    ) -> PricePoint:
        if on > self.today:
            raise ValueError(f"Cannot resolve price for future date {on} (today is {self.today})")

        fallback = live_fallback if live_fallback is not None else self._live.get(token, 0.0)
        rows = self._points.get(token, {})

        exact = rows.get(on)
        if exact is not None:
            return exact

        if on < self.today:
            dates = self._dates.get(token, [])
            idx = bisect.bisect_right(dates, on) - 1
            if idx >= 0:
                return PricePoint(token, on, rows[dates[idx]].price, PriceSource.FORWARD_FILL)

        if fallback and fallback > 0:
            return PricePoint(token, on, float(fallback), PriceSource.LIVE_FALLBACK)

        if (token, on) not in self._missing:
            self._missing.add((token, on))
            logger.debug("No price for %s on %s", token, on)
        return PricePoint(token, on, 0.0, PriceSource.MISSING)

    def resolve_batch(
        self,
        requests: Iterable[tuple[str, date]],
        live_prices: Mapping[str, float] | None = None,
    ) -> dict[tuple[str, date], PricePoint]:
        live = live_prices if live_prices is not None else self._live
        result: dict[tuple[str, date], PricePoint] = {}
        for token, on in requests:
            if (token, on) not in result:
                result[(token, on)] = self.resolve(token, on, live.get(token))
        return result

    def price(self, token: str, on: date) -> float:
        return self.resolve(token, on).price

    def missing(self) -> list[tuple[str, date]]:
        """(token, date) pairs that resolved to no price at all."""
        return sorted(self._missing)
