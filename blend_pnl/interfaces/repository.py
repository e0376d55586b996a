"""Event repository protocol — read access to the indexed event/price store."""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from typing import Protocol

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


class EventRepository(Protocol):
    """Abstract interface for the persisted event, snapshot and price store."""

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
    ) -> list[UserAction]: ...

    async def get_balance_history_from_events(
        self, address: str, asset_address: str, days: int, timezone: str
    ) -> BalanceHistory: ...

    async def get_backstop_user_balance_history_multiple_pools(
        self, address: str, pool_addresses: Sequence[str], days: int, timezone: str
    ) -> list[BackstopSnapshot]: ...

    async def get_historical_prices_for_date_range(
        self, token: str, start_date: date, end_date: date, live_fallback: float
    ) -> dict[date, PricePoint]: ...

    async def get_historical_prices_batch(
        self,
        requests: Iterable[tuple[str, date]],
        live_prices: Mapping[str, float],
        today: date,
    ) -> dict[tuple[str, date], PricePoint]: ...

    async def get_deposit_events_with_prices_batch(
        self,
        address: str,
        position_keys: Sequence[PositionKey],
        live_prices: Mapping[str, float],
    ) -> dict[PositionKey, PositionFlows]: ...

    async def get_borrow_events_with_prices_batch(
        self,
        address: str,
        position_keys: Sequence[PositionKey],
        live_prices: Mapping[str, float],
    ) -> dict[PositionKey, PositionFlows]: ...

    async def get_backstop_events_with_prices(
        self, address: str, pool_address: str | None, live_lp_price: float
    ) -> list[BackstopEvent]: ...

    async def get_realized_yield_data(
        self, address: str, live_prices: Mapping[str, float]
    ) -> RealizedYieldData: ...

    async def get_rate_at_start_of_day(
        self, pool_id: str, asset_address: str, day: date, timezone: str
    ) -> StartOfDayRates: ...

    async def get_backstop_share_rate_at_start_of_day(
        self, pool_address: str, day: date, timezone: str
    ) -> float | None: ...

    async def get_emission_apy_history(
        self,
        start_date: date,
        end_date: date,
        pool_addresses: Sequence[str],
        asset_addresses: Sequence[str],
    ) -> EmissionApyHistory: ...

    async def refresh_daily_rates(self) -> None: ...
