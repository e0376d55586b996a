"""EventRepository backed by the indexer's JSON-RPC API."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import date, timedelta
from typing import Any

from ..config import AppConfig
from ..dates import dates_between, start_of_local_day, today_in
from ..models import (
    ActionType,
    BackstopEvent,
    BackstopSnapshot,
    BalanceHistory,
    EmissionApyHistory,
    PositionFlows,
    PositionKey,
    PricePoint,
    RealizedYieldData,
    StartOfDayRates,
    UserAction,
)
from ..pricing import PriceResolver
from .client import IndexerClient
from .decode import (
    decode_actions,
    decode_backstop_event,
    decode_backstop_snapshot,
    decode_balance_history,
    decode_claim,
    decode_emission_point,
    decode_position_flows,
    decode_price_rows,
    decode_start_of_day_rates,
    to_optional_float,
)

logger = logging.getLogger(__name__)


class IndexerRepository:
    """Read events, snapshots, rates and daily prices from the indexer.

    Prices are resolved locally with the same forward-fill and live-fallback
    rules as the report builders; each price range query reaches back
    ``price_lookback_days`` so the first requested day can be forward-filled.
    """

    def __init__(self, client: IndexerClient, config: AppConfig) -> None:
        self.client = client
        self.engine = config.engine
        self.tokens = config.tokens
        self.lookback_days = config.indexer.price_lookback_days

    def _today(self) -> date:
        return today_in(self.engine.timezone)

    async def _rows(self, method: str, params: list[Any]) -> list[dict[str, Any]]:
        result = await self.client.rpc_call(method, params)
        return list(result or [])

    # -- events -------------------------------------------------------------

    async def get_user_actions(
        self,
        address: str,
        *,
        action_types: Iterable[ActionType] | None = None,
        pool_id: str | None = None,
        asset_address: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 1000,
    ) -> list[UserAction]:
        query: dict[str, Any] = {"limit": limit}
        if action_types is not None:
            query["action_types"] = [a.value for a in action_types]
        if pool_id:
            query["pool_id"] = pool_id
        if asset_address:
            query["asset_address"] = asset_address
        if start_date:
            query["start_date"] = start_date.isoformat()
        if end_date:
            query["end_date"] = end_date.isoformat()

        rows = await self._rows("blend_getUserActions", [address, query])
        actions = decode_actions(rows)
        logger.debug("Loaded %d actions for %s", len(actions), address)
        return actions

    async def get_backstop_events_with_prices(
        self, address: str, pool_address: str | None, live_lp_price: float
    ) -> list[BackstopEvent]:
        rows = await self._rows("blend_getBackstopEvents", [address, pool_address])
        tz = self.engine.timezone
        events = sorted(
            (decode_backstop_event(r, tz) for r in rows),
            key=lambda e: (e.timestamp, e.ledger_sequence),
        )

        unpriced = [(self.tokens.lp_token, e.event_date) for e in events if e.price_usd <= 0]
        if not unpriced or not self.tokens.lp_token:
            return events
        prices = await self.get_historical_prices_batch(
            unpriced, {self.tokens.lp_token: live_lp_price}, self._today()
        )
        return [
            replace(e, price_usd=prices[(self.tokens.lp_token, e.event_date)].price)
            if e.price_usd <= 0
            else e
            for e in events
        ]

    async def get_realized_yield_data(
        self, address: str, live_prices: Mapping[str, float]
    ) -> RealizedYieldData:
        rows = await self._rows("blend_getClaims", [address])
        today = self._today()
        claims = []
        for row in rows:
            claim = decode_claim(row, self.engine.timezone)
            # Claims made today have no daily price row yet
            if claim.price_usd is None and claim.claim_date == today:
                live = live_prices.get(claim.token_address, 0.0)
                if live > 0:
                    claim = replace(claim, price_usd=live)
            claims.append(claim)
        claims.sort(key=lambda c: c.timestamp)
        return RealizedYieldData(claims=tuple(claims))

    # -- position flows -----------------------------------------------------

    async def _position_flows(
        self,
        method: str,
        address: str,
        position_keys: Sequence[PositionKey],
        live_prices: Mapping[str, float],
    ) -> dict[PositionKey, PositionFlows]:
        if not position_keys:
            return {}
        rows = await self._rows(method, [address, [str(k) for k in position_keys]])
        wanted = set(position_keys)
        tz = self.engine.timezone
        decoded = [decode_position_flows(r, tz) for r in rows]

        unpriced = [
            (p.key.asset_address, f.event_date)
            for p in decoded
            for f in p.flows
            if f.price_usd <= 0
        ]
        prices: dict[tuple[str, date], PricePoint] = {}
        if unpriced:
            prices = await self.get_historical_prices_batch(unpriced, live_prices, self._today())

        result: dict[PositionKey, PositionFlows] = {}
        for position in decoded:
            if position.key not in wanted:
                continue
            flows = tuple(
                replace(f, price_usd=prices[(position.key.asset_address, f.event_date)].price)
                if f.price_usd <= 0
                else f
                for f in position.flows
            )
            result[position.key] = replace(position, flows=flows)
        return result

    async def get_deposit_events_with_prices_batch(
        self,
        address: str,
        position_keys: Sequence[PositionKey],
        live_prices: Mapping[str, float],
    ) -> dict[PositionKey, PositionFlows]:
        return await self._position_flows(
            "blend_getDepositEvents", address, position_keys, live_prices
        )

    async def get_borrow_events_with_prices_batch(
        self,
        address: str,
        position_keys: Sequence[PositionKey],
        live_prices: Mapping[str, float],
    ) -> dict[PositionKey, PositionFlows]:
        return await self._position_flows(
            "blend_getBorrowEvents", address, position_keys, live_prices
        )

    # -- snapshots ----------------------------------------------------------

    async def get_balance_history_from_events(
        self, address: str, asset_address: str, days: int, timezone: str
    ) -> BalanceHistory:
        result = await self.client.rpc_call(
            "blend_getBalanceHistory", [address, asset_address, days, timezone]
        )
        return decode_balance_history(result)

    async def get_backstop_user_balance_history_multiple_pools(
        self, address: str, pool_addresses: Sequence[str], days: int, timezone: str
    ) -> list[BackstopSnapshot]:
        if not pool_addresses:
            return []
        rows = await self._rows(
            "blend_getBackstopBalanceHistory", [address, list(pool_addresses), days, timezone]
        )
        return sorted(
            (decode_backstop_snapshot(r) for r in rows),
            key=lambda s: (s.pool_address, s.snapshot_date),
        )

    async def get_rate_at_start_of_day(
        self, pool_id: str, asset_address: str, day: date, timezone: str
    ) -> StartOfDayRates:
        at = start_of_local_day(day, timezone)
        row = await self.client.rpc_call(
            "blend_getRateAtTime", [pool_id, asset_address, at.isoformat()]
        )
        return decode_start_of_day_rates(row)

    async def get_backstop_share_rate_at_start_of_day(
        self, pool_address: str, day: date, timezone: str
    ) -> float | None:
        at = start_of_local_day(day, timezone)
        result = await self.client.rpc_call(
            "blend_getBackstopShareRateAtTime", [pool_address, at.isoformat()]
        )
        rate = to_optional_float(result)
        return rate if rate and rate > 0 else None

    async def get_emission_apy_history(
        self,
        start_date: date,
        end_date: date,
        pool_addresses: Sequence[str],
        asset_addresses: Sequence[str],
    ) -> EmissionApyHistory:
        rows = await self._rows(
            "blend_getEmissionApyHistory",
            [
                start_date.isoformat(),
                end_date.isoformat(),
                list(pool_addresses),
                list(asset_addresses),
            ],
        )
        points = sorted((decode_emission_point(r) for r in rows), key=lambda p: p.on)
        return EmissionApyHistory(points=tuple(points))

    async def refresh_daily_rates(self) -> None:
        await self.client.rpc_call("blend_refreshDailyRates", [])

    # -- prices -------------------------------------------------------------

    async def _daily_prices(self, token: str, start: date, end: date) -> dict[date, float]:
        rows = await self._rows(
            "blend_getDailyPrices",
            [token, (start - timedelta(days=self.lookback_days)).isoformat(), end.isoformat()],
        )
        return decode_price_rows(rows)

    async def get_historical_prices_for_date_range(
        self, token: str, start_date: date, end_date: date, live_fallback: float
    ) -> dict[date, PricePoint]:
        """One point per day in the range; ``end_date`` is treated as today."""
        history = await self._daily_prices(token, start_date, end_date)
        resolver = PriceResolver({token: history}, end_date, {token: live_fallback})
        return {d: resolver.resolve(token, d) for d in dates_between(start_date, end_date)}

    async def get_historical_prices_batch(
        self,
        requests: Iterable[tuple[str, date]],
        live_prices: Mapping[str, float],
        today: date,
    ) -> dict[tuple[str, date], PricePoint]:
        wanted = list(dict.fromkeys(requests))
        earliest: dict[str, date] = {}
        for token, on in wanted:
            earliest[token] = min(on, earliest.get(token, on))

        tokens = sorted(earliest)
        rows = await asyncio.gather(
            *(self._daily_prices(token, earliest[token], today) for token in tokens)
        )
        history: dict[str, dict[date, float]] = dict(zip(tokens, rows))

        resolver = PriceResolver(history, today, live_prices)
        return resolver.resolve_batch(wanted, live_prices)
