"""Concurrent repository reads shared by the report builders."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import date
from typing import TypeVar

from ..accounting import EmissionSchedule
from ..config import EngineConfig, TokensConfig
from ..dates import local_date
from ..errors import RepositoryUnavailableError
from ..interfaces import EventRepository
from ..models import (
    ActiveFilter,
    BackstopEvent,
    BackstopSnapshot,
    BalanceSnapshot,
    ClaimEvent,
    EmissionApyHistory,
    Flag,
    FlagKind,
    LiveInputs,
    PositionFlows,
    PositionKey,
    PricePoint,
    UserAction,
)
from ..pricing import PriceResolver

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def gather_settled(
    labelled: Sequence[tuple[str, Awaitable[T]]],
) -> tuple[dict[str, T], dict[str, Exception]]:
    """Await every branch; split results from failures by label.

    Cancellation is never treated as a branch failure.
    """
    results = await asyncio.gather(*(aw for _, aw in labelled), return_exceptions=True)
    ok: dict[str, T] = {}
    failed: dict[str, Exception] = {}
    for (label, _), result in zip(labelled, results):
        if isinstance(result, Exception):
            failed[label] = result
        elif isinstance(result, BaseException):
            raise result
        else:
            ok[label] = result
    return ok, failed


def excluded(subject: str, error: Exception) -> Flag:
    logger.warning("Excluding %s: %s", subject, error)
    return Flag(FlagKind.EXCLUDED, subject, str(error) or type(error).__name__)


class WalletDataLoader:
    """Fetch one wallet's events, snapshots and prices from the repository.

    A failed per-asset or per-token sub-query excludes that contributor and
    records a flag; failing to read the wallet's events at all is fatal.
    """

    def __init__(
        self,
        repository: EventRepository,
        engine: EngineConfig,
        tokens: TokensConfig,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.tokens = tokens

    def live_prices(self, live: LiveInputs) -> dict[str, float]:
        """Caller's live prices, with the LP and reward tokens keyed by address."""
        prices = dict(live.prices)
        if self.tokens.lp_token and live.lp_price > 0:
            prices[self.tokens.lp_token] = live.lp_price
        if self.tokens.reward_token and live.reward_token_price > 0:
            prices[self.tokens.reward_token] = live.reward_token_price
        return prices

    async def actions(
        self, address: str, active: ActiveFilter | None = None
    ) -> list[UserAction]:
        try:
            actions = await self.repository.get_user_actions(
                address, limit=self.engine.action_limit
            )
        except RepositoryUnavailableError:
            raise
        except Exception as e:
            raise RepositoryUnavailableError(
                f"Failed to load events for {address}: {e}"
            ) from e

        if active is None:
            return actions
        return [
            a
            for a in actions
            if a.position_key is None or active.allows(a.position_key, address)
        ]

    async def lending_snapshots(
        self,
        address: str,
        keys: Iterable[PositionKey],
        timezone: str,
        flags: list[Flag],
    ) -> dict[PositionKey, list[BalanceSnapshot]]:
        wanted = set(keys)
        assets = sorted({k.asset_address for k in wanted})
        ok, failed = await gather_settled(
            [
                (
                    asset,
                    self.repository.get_balance_history_from_events(
                        address, asset, self.engine.history_days, timezone
                    ),
                )
                for asset in assets
            ]
        )
        for asset, error in failed.items():
            flags.append(excluded(f"balance history {asset}", error))

        by_key: dict[PositionKey, list[BalanceSnapshot]] = defaultdict(list)
        for history in ok.values():
            for snap in history.history:
                if snap.key in wanted:
                    by_key[snap.key].append(snap)
        return dict(by_key)

    async def backstop_snapshots(
        self,
        address: str,
        pools: Sequence[str],
        timezone: str,
        flags: list[Flag],
    ) -> list[BackstopSnapshot]:
        if not pools:
            return []
        try:
            return await self.repository.get_backstop_user_balance_history_multiple_pools(
                address, list(pools), self.engine.history_days, timezone
            )
        except Exception as e:
            flags.append(excluded("backstop balance history", e))
            return []

    async def backstop_events(
        self, address: str, lp_price: float, timezone: str, flags: list[Flag]
    ) -> list[BackstopEvent]:
        try:
            events = await self.repository.get_backstop_events_with_prices(
                address, None, lp_price
            )
        except Exception as e:
            flags.append(excluded("backstop events", e))
            return []
        return rebucket_events(events, timezone)

    async def price_resolver(
        self,
        tokens: Iterable[str],
        start: date,
        today: date,
        live_prices: dict[str, float],
        flags: list[Flag],
    ) -> PriceResolver:
        wanted = sorted({t for t in tokens if t})
        ok, failed = await gather_settled(
            [
                (
                    token,
                    self.repository.get_historical_prices_for_date_range(
                        token, start, today, live_prices.get(token, 0.0)
                    ),
                )
                for token in wanted
            ]
        )
        for token, error in failed.items():
            flags.append(excluded(f"price history {token}", error))
        points: dict[str, dict[date, PricePoint]] = dict(ok)
        return PriceResolver.from_points(points, today, live_prices)

    async def emission_schedule(
        self,
        start: date,
        end: date,
        pools: Sequence[str],
        assets: Sequence[str],
        flags: list[Flag],
    ) -> EmissionSchedule:
        if not pools:
            return EmissionSchedule(EmissionApyHistory())
        try:
            history = await self.repository.get_emission_apy_history(
                start, end, list(pools), list(assets)
            )
        except Exception as e:
            flags.append(excluded("emission APY history", e))
            history = EmissionApyHistory()
        return EmissionSchedule(history)


def missing_price_flags(resolver: PriceResolver) -> list[Flag]:
    return [
        Flag(FlagKind.MISSING_PRICE, f"{token}@{on.isoformat()}", "no historical or live price")
        for token, on in resolver.missing()
    ]


def dedupe(flags: Iterable[Flag]) -> tuple[Flag, ...]:
    return tuple(dict.fromkeys(flags))


# Repository dates are bucketed in the indexer's timezone; reports bucket in the caller's.


def rebucket_events(events: Iterable[BackstopEvent], timezone: str) -> list[BackstopEvent]:
    return [replace(e, event_date=local_date(e.timestamp, timezone)) for e in events]


def rebucket_flows(
    positions: Mapping[PositionKey, PositionFlows], timezone: str
) -> dict[PositionKey, PositionFlows]:
    return {
        key: replace(
            position,
            flows=tuple(
                replace(f, event_date=local_date(f.timestamp, timezone)) for f in position.flows
            ),
        )
        for key, position in positions.items()
    }


def rebucket_claims(
    claims: Iterable[ClaimEvent], timezone: str, today: date
) -> list[ClaimEvent]:
    """Claims re-dated to the caller's timezone; any dated after ``today`` are dropped."""
    rebucketed = [replace(c, claim_date=local_date(c.timestamp, timezone)) for c in claims]
    return [c for c in rebucketed if c.claim_date <= today]
