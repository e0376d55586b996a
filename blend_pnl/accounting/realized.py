"""Realized yield from reward claims (no I/O)."""
from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import date

from ..dates import dates_between
from ..models import ClaimEvent, ClaimSource, Flag, FlagKind, RealizedYieldSummary
from ..pricing import PriceResolver

logger = logging.getLogger(__name__)


def _cumulate(buckets: dict[date, float], dates: list[date]) -> dict[date, float]:
    running = 0.0
    series: dict[date, float] = {}
    for day in dates:
        running += buckets.get(day, 0.0)
        series[day] = running
    return series


class RealizedYieldAggregator:
    """Sum claim values into cumulative realized P&L.

    Claims are fully realized profit: each one adds
    ``amount * price_at_claim_date`` to its date bucket.
    """

    def __init__(self, resolver: PriceResolver) -> None:
        self.resolver = resolver

    def claim_value(self, claim: ClaimEvent) -> float | None:
        if claim.price_usd is not None and claim.price_usd > 0:
            return claim.amount * claim.price_usd
        point = self.resolver.resolve(claim.token_address, claim.claim_date)
        if not point.reliable:
            return None
        return claim.amount * point.price

    def aggregate(self, claims: Iterable[ClaimEvent]) -> RealizedYieldSummary:
        by_date: dict[date, float] = defaultdict(float)
        by_pool: dict[str, dict[date, float]] = defaultdict(lambda: defaultdict(float))
        by_source: dict[ClaimSource, dict[date, float]] = defaultdict(lambda: defaultdict(float))
        flags: list[Flag] = []

        for claim in sorted(claims, key=lambda c: c.timestamp):
            value = self.claim_value(claim)
            if value is None:
                logger.warning(
                    "Skipping claim of %s on %s: no price", claim.token_address, claim.claim_date
                )
                flags.append(
                    Flag(
                        FlagKind.MISSING_PRICE,
                        f"{claim.token_address}@{claim.claim_date.isoformat()}",
                        f"{claim.source.value} claim of {claim.amount} excluded",
                    )
                )
                continue
            by_date[claim.claim_date] += value
            by_pool[claim.pool_id][claim.claim_date] += value
            by_source[claim.source][claim.claim_date] += value

        if not by_date:
            return RealizedYieldSummary(flags=tuple(flags))

        dates = dates_between(min(by_date), max(max(by_date), self.resolver.today))
        cumulative = _cumulate(by_date, dates)
        return RealizedYieldSummary(
            cumulative_by_date=cumulative,
            totals_by_pool={pool: sum(b.values()) for pool, b in by_pool.items()},
            totals_by_source={src: sum(b.values()) for src, b in by_source.items()},
            cumulative_by_pool={pool: _cumulate(b, dates) for pool, b in by_pool.items()},
            cumulative_by_source={src: _cumulate(b, dates) for src, b in by_source.items()},
            total_usd=cumulative[dates[-1]],
            flags=tuple(flags),
        )
