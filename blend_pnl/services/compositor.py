"""Period P&L bars: protocol yield, reward yield and price change per period."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from ..accounting import (
    BackstopPosition,
    BackstopShareReconciler,
    EmissionSchedule,
    bounded_interest,
    carry_snapshots,
    period_share_yield,
)
from ..dates import (
    dates_between,
    day_before,
    days_between,
    local_date,
    month_end,
    month_start,
    start_of_local_day,
)
from ..models import (
    BACKSTOP_ACTIONS,
    BORROW_ACTIONS,
    BORROW_INFLOWS,
    LENDING_ACTIONS,
    SUPPLY_INFLOWS,
    ActiveFilter,
    BackstopEvent,
    BalanceSnapshot,
    EmissionKind,
    Flag,
    FlagKind,
    LiveInputs,
    PeriodBar,
    PeriodBoundary,
    PeriodState,
    PositionKey,
    StartOfDayRates,
    UserAction,
    WalletLiveState,
)
from ..pricing import PriceResolver
from .loader import WalletDataLoader, dedupe, missing_price_flags

logger = logging.getLogger(__name__)

PERIODS = ("1W", "1M", "6M", "1Y", "LIVE")
_DAILY_BARS = {"1W": 7, "1M": 30, "LIVE": 1}
_MONTHLY_BARS = {"6M": 6, "1Y": 12}
_MAX_DAILY_CUSTOM_DAYS = 31

# ---------------------------------------------------------------------------
# Period boundaries
# ---------------------------------------------------------------------------


def _day_label(day: date) -> str:
    return f"{day:%b} {day.day}"


def _month_label(day: date) -> str:
    return f"{day:%b %Y}"


def _daily(start: date, end: date) -> list[PeriodBoundary]:
    return [PeriodBoundary(d, d, _day_label(d)) for d in dates_between(start, end)]


def _monthly(start: date, end: date) -> list[PeriodBoundary]:
    boundaries: list[PeriodBoundary] = []
    first = month_start(start)
    while first <= end:
        last = min(month_end(first), end)
        boundaries.append(PeriodBoundary(max(first, start), last, _month_label(first)))
        first = month_start(first, -1)
    return boundaries


def period_boundaries(
    period: str,
    today: date,
    start: date | None = None,
    end: date | None = None,
) -> tuple[list[PeriodBoundary], str]:
    """Bars for a named period (or a custom range) ending today.

    Returns ``(boundaries, granularity)`` where granularity is ``daily`` or
    ``monthly``. Monthly bars end on the last day of the month, except the
    current month which ends today.
    """
    if start is not None or end is not None:
        if start is None or end is None:
            raise ValueError("A custom range needs both start and end dates")
        if start > end:
            raise ValueError(f"Range start {start} is after end {end}")
        if end > today:
            raise ValueError(f"Range end {end} is in the future (today is {today})")
        if (end - start).days + 1 <= _MAX_DAILY_CUSTOM_DAYS:
            return _daily(start, end), "daily"
        return _monthly(start, end), "monthly"

    if period in _DAILY_BARS:
        days = _DAILY_BARS[period]
        return _daily(today - timedelta(days=days - 1), today), "daily"
    if period in _MONTHLY_BARS:
        first = month_start(today, _MONTHLY_BARS[period] - 1)
        return _monthly(first, today), "monthly"
    raise ValueError(f"Unknown period '{period}', expected one of {', '.join(PERIODS)}")


def classify(boundary: PeriodBoundary, today: date) -> PeriodState:
    """A bar is LIVE iff it ends on the caller's today."""
    return PeriodState.LIVE if boundary.end == today else PeriodState.HISTORICAL


# ---------------------------------------------------------------------------
# Per-bar accumulation
# ---------------------------------------------------------------------------


@dataclass
class _BarTotals:
    supply_yield: float = 0.0
    reward_yield_supply: float = 0.0
    backstop_yield: float = 0.0
    reward_yield_backstop: float = 0.0
    borrow_interest_cost: float = 0.0
    reward_yield_borrow: float = 0.0
    price_change: float = 0.0

    def to_bar(self, boundary: PeriodBoundary, is_live: bool) -> PeriodBar:
        total = (
            self.supply_yield
            + self.reward_yield_supply
            + self.backstop_yield
            + self.reward_yield_backstop
            + self.borrow_interest_cost
            + self.reward_yield_borrow
            + self.price_change
        )
        return PeriodBar(
            period_start=boundary.start,
            period_end=boundary.end,
            label=boundary.label,
            supply_yield=self.supply_yield,
            reward_yield_supply=self.reward_yield_supply,
            backstop_yield=self.backstop_yield,
            reward_yield_backstop=self.reward_yield_backstop,
            borrow_interest_cost=self.borrow_interest_cost,
            reward_yield_borrow=self.reward_yield_borrow,
            price_change=self.price_change,
            total=total,
            is_live=is_live,
        )


@dataclass
class _Window:
    """Timing of one bar in the caller's timezone."""

    boundary: PeriodBoundary
    timezone: str
    is_live: bool
    start_at: datetime
    end_at: datetime
    days: float

    @property
    def prev(self) -> date:
        return day_before(self.boundary.start)

    def contains(self, day: date) -> bool:
        return self.boundary.start <= day <= self.boundary.end

    def remaining_days(self, at: datetime) -> float:
        return max(0.0, days_between(at, self.end_at))


@dataclass
class _WalletInputs:
    """Everything fetched for one wallet, ready for per-bar computation."""

    actions: list[UserAction]
    supply_keys: list[PositionKey]
    borrow_keys: list[PositionKey]
    carried: dict[PositionKey, dict[date, BalanceSnapshot | None]]
    backstop_positions: dict[str, dict[date, BackstopPosition]]
    backstop_events: list[BackstopEvent]
    resolver: PriceResolver
    emissions: EmissionSchedule
    start_rates: dict[PositionKey, StartOfDayRates] = field(default_factory=dict)
    start_share_rates: dict[str, float | None] = field(default_factory=dict)


@dataclass(frozen=True)
class WalletChart:
    bars: tuple[PeriodBar, ...]
    flags: tuple[Flag, ...] = ()


class PnlChartCompositor:
    """Compose period bars for one wallet.

    HISTORICAL bars use recorded snapshots and historical prices only. The
    LIVE bar starts from raw tokens held the day before times the rate at
    the caller's local midnight, and ends at the caller's live balance and
    price.
    """

    def __init__(
        self,
        loader: WalletDataLoader,
        max_daily_interest_ratio: float = 0.01,
        min_period_days: float = 0.01,
    ) -> None:
        self.loader = loader
        self.repository = loader.repository
        self.tokens = loader.tokens
        self.default_decimals = loader.engine.default_decimals
        self.max_daily_interest_ratio = max_daily_interest_ratio
        self.min_period_days = min_period_days

    # -- loading ------------------------------------------------------------

    async def _load(
        self,
        address: str,
        boundaries: Sequence[PeriodBoundary],
        live: LiveInputs,
        wallet_live: WalletLiveState,
        today: date,
        timezone: str,
        active: ActiveFilter | None,
        flags: list[Flag],
    ) -> _WalletInputs:
        actions = await self.loader.actions(address, active)
        supply_keys = sorted(
            {a.position_key for a in actions if a.action_type in LENDING_ACTIONS and a.position_key}
        )
        borrow_keys = sorted(
            {a.position_key for a in actions if a.action_type in BORROW_ACTIONS and a.position_key}
        )
        pools = {a.pool_id for a in actions if a.action_type in BACKSTOP_ACTIONS}
        pools |= set(wallet_live.backstop_positions)
        backstop_pools = sorted(pools)

        first_start = boundaries[0].start
        last_end = boundaries[-1].end
        needed = sorted({d for b in boundaries for d in (day_before(b.start), b.end)})

        snapshots = await self.loader.lending_snapshots(
            address, set(supply_keys) | set(borrow_keys), timezone, flags
        )
        carried = {key: carry_snapshots(snaps, needed) for key, snaps in snapshots.items()}

        backstop_positions: dict[str, dict[date, BackstopPosition]] = {}
        backstop_events: list[BackstopEvent] = []
        if backstop_pools:
            backstop_snaps = await self.loader.backstop_snapshots(
                address, backstop_pools, timezone, flags
            )
            backstop_events = await self.loader.backstop_events(
                address, live.lp_price, timezone, flags
            )
            backstop_positions = BackstopShareReconciler().reconcile_by_pool(
                backstop_events, backstop_snaps, needed
            )

        assets = sorted({k.asset_address for k in supply_keys + borrow_keys})
        live_prices = self.loader.live_prices(live)
        resolver = await self.loader.price_resolver(
            [*assets, self.tokens.lp_token, self.tokens.reward_token],
            day_before(first_start),
            today,
            live_prices,
            flags,
        )

        emission_pools = sorted({k.pool_id for k in supply_keys + borrow_keys} | pools)
        emissions = await self.loader.emission_schedule(
            first_start, last_end, emission_pools, assets, flags
        )

        inputs = _WalletInputs(
            actions=actions,
            supply_keys=supply_keys,
            borrow_keys=borrow_keys,
            carried=carried,
            backstop_positions=backstop_positions,
            backstop_events=backstop_events,
            resolver=resolver,
            emissions=emissions,
        )
        live_bars = [b for b in boundaries if classify(b, today) is PeriodState.LIVE]
        if live_bars:
            await self._load_start_of_day_rates(
                inputs, backstop_pools, live_bars[0].start, timezone
            )
        return inputs

    async def _load_start_of_day_rates(
        self,
        inputs: _WalletInputs,
        backstop_pools: Sequence[str],
        day: date,
        timezone: str,
    ) -> None:
        """Rates at local midnight starting the live bar."""
        keys = sorted(set(inputs.supply_keys) | set(inputs.borrow_keys))
        rate_results = await asyncio.gather(
            *(
                self.repository.get_rate_at_start_of_day(
                    k.pool_id, k.asset_address, day, timezone
                )
                for k in keys
            ),
            return_exceptions=True,
        )
        for key, result in zip(keys, rate_results):
            if isinstance(result, Exception):
                logger.warning("Start-of-day rate for %s unavailable: %s", key, result)
            elif isinstance(result, BaseException):
                raise result
            else:
                inputs.start_rates[key] = result

        share_results = await asyncio.gather(
            *(
                self.repository.get_backstop_share_rate_at_start_of_day(pool, day, timezone)
                for pool in backstop_pools
            ),
            return_exceptions=True,
        )
        for pool, result in zip(backstop_pools, share_results):
            if isinstance(result, Exception):
                logger.warning("Start-of-day share rate for %s unavailable: %s", pool, result)
                inputs.start_share_rates[pool] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                inputs.start_share_rates[pool] = result

    # -- public API ---------------------------------------------------------

    async def compose(
        self,
        address: str,
        boundaries: Sequence[PeriodBoundary],
        live: LiveInputs,
        today: date,
        now: datetime,
        timezone: str,
        active: ActiveFilter | None = None,
    ) -> WalletChart:
        if not boundaries:
            return WalletChart(bars=())

        flags: list[Flag] = []
        wallet_live = live.for_wallet(address)
        inputs = await self._load(
            address, boundaries, live, wallet_live, today, timezone, active, flags
        )

        bars: list[PeriodBar] = []
        for boundary in boundaries:
            window = self._window(boundary, today, now, timezone)
            totals = _BarTotals()
            for key in inputs.supply_keys:
                self._supply(totals, key, window, inputs, live, wallet_live, flags)
            for pool in sorted(inputs.backstop_positions):
                self._backstop(totals, pool, window, inputs, live, wallet_live, flags)
            for key in inputs.borrow_keys:
                self._borrow(totals, key, window, inputs, live, wallet_live, flags)
            bars.append(totals.to_bar(boundary, window.is_live))

        flags.extend(missing_price_flags(inputs.resolver))
        return WalletChart(bars=tuple(bars), flags=dedupe(flags))

    # -- helpers ------------------------------------------------------------

    def _window(
        self, boundary: PeriodBoundary, today: date, now: datetime, timezone: str
    ) -> _Window:
        is_live = classify(boundary, today) is PeriodState.LIVE
        start_at = start_of_local_day(boundary.start, timezone)
        if is_live:
            end_at = now
        else:
            end_at = start_of_local_day(boundary.end + timedelta(days=1), timezone)
        days = max(self.min_period_days, days_between(start_at, end_at))
        return _Window(boundary, timezone, is_live, start_at, end_at, days)

    def _period_actions(
        self, inputs: _WalletInputs, key: PositionKey, window: _Window
    ) -> list[tuple[UserAction, float, date]]:
        """``(action, tokens, local_date)`` for the key's events inside the bar."""
        found: list[tuple[UserAction, float, date]] = []
        for action in sorted(inputs.actions, key=lambda a: a.sort_key):
            if action.position_key != key:
                continue
            tokens = action.tokens(self.default_decimals)
            if tokens is None:
                continue
            day = local_date(action.timestamp, window.timezone)
            if window.contains(day):
                found.append((action, tokens, day))
        return found

    def _prices(
        self,
        token: str,
        window: _Window,
        live_price: float,
        subject: str,
        resolver: PriceResolver,
        flags: list[Flag],
    ) -> tuple[float, float] | None:
        """``(price_start, price_end)`` for a bar, or None when the end price is unknown."""
        start_day = window.boundary.start if window.is_live else window.prev
        start_point = resolver.resolve(token, start_day)
        if window.is_live:
            price_end = live_price if live_price > 0 else start_point.price
        else:
            price_end = resolver.resolve(token, window.boundary.end).price
        if price_end <= 0:
            flags.append(
                Flag(
                    FlagKind.MISSING_PRICE,
                    subject,
                    f"no end price for {window.boundary.label}; contribution excluded",
                )
            )
            return None
        price_start = start_point.price if start_point.reliable else price_end
        return price_start, price_end

    @staticmethod
    def _action_price(
        token: str, day: date, price_start: float, resolver: PriceResolver
    ) -> float:
        """Price of an in-bar event; an unknown price adds no price change."""
        point = resolver.resolve(token, day)
        return point.price if point.reliable else price_start

    def _reward_price(self, window: _Window, live: LiveInputs, resolver: PriceResolver) -> float:
        if not self.tokens.reward_token:
            return live.reward_token_price
        if window.is_live and live.reward_token_price > 0:
            return live.reward_token_price
        return resolver.resolve(self.tokens.reward_token, window.boundary.end).price

    def _lending_start(
        self,
        key: PositionKey,
        window: _Window,
        inputs: _WalletInputs,
        borrow: bool,
    ) -> float:
        snap = inputs.carried.get(key, {}).get(window.prev)
        if snap is None:
            return 0.0
        if window.is_live:
            rates = inputs.start_rates.get(key)
            if borrow and rates is not None and rates.d_rate:
                return snap.debt_raw * rates.d_rate
            if not borrow and rates is not None and rates.b_rate:
                return (snap.supply_raw + snap.collateral_raw) * rates.b_rate
        return snap.debt_underlying if borrow else snap.supply_underlying

    def _lending_end(
        self,
        key: PositionKey,
        window: _Window,
        inputs: _WalletInputs,
        current: Mapping[PositionKey, float],
        borrow: bool,
    ) -> float:
        if window.is_live and key in current:
            return current[key]
        snap = inputs.carried.get(key, {}).get(window.boundary.end)
        if snap is None:
            return 0.0
        return snap.debt_underlying if borrow else snap.supply_underlying

    def _supply(
        self,
        totals: _BarTotals,
        key: PositionKey,
        window: _Window,
        inputs: _WalletInputs,
        live: LiveInputs,
        wallet_live: WalletLiveState,
        flags: list[Flag],
    ) -> None:
        tokens_start = self._lending_start(key, window, inputs, borrow=False)
        tokens_end = self._lending_end(
            key, window, inputs, wallet_live.current_balances, borrow=False
        )
        period = [
            entry
            for entry in self._period_actions(inputs, key, window)
            if entry[0].action_type in LENDING_ACTIONS
        ]
        if tokens_start <= 0 and tokens_end <= 0 and not period:
            return

        resolver = inputs.resolver
        prices = self._prices(
            key.asset_address, window, live.price(key.asset_address), str(key), resolver, flags
        )
        if prices is None:
            return
        price_start, price_end = prices

        net_deposited = sum(
            t if a.action_type in SUPPLY_INFLOWS else -t for a, t, _ in period
        )
        interest = tokens_end - tokens_start - net_deposited
        totals.supply_yield += interest * price_end

        rate = inputs.emissions.daily_rate(
            EmissionKind.LENDING_SUPPLY, window.boundary.start, key.pool_id, key.asset_address
        )
        reward = tokens_start * price_start * rate * window.days
        price_change = tokens_start * (price_end - price_start)
        for action, tokens, day in period:
            price_at = self._action_price(key.asset_address, day, price_start, resolver)
            sign = 1.0 if action.action_type in SUPPLY_INFLOWS else -1.0
            reward += sign * tokens * price_at * rate * window.remaining_days(action.timestamp)
            price_change += sign * tokens * (price_end - price_at)

        if self._reward_price(window, live, resolver) > 0:
            totals.reward_yield_supply += max(0.0, reward)
        totals.price_change += price_change

    def _borrow(
        self,
        totals: _BarTotals,
        key: PositionKey,
        window: _Window,
        inputs: _WalletInputs,
        live: LiveInputs,
        wallet_live: WalletLiveState,
        flags: list[Flag],
    ) -> None:
        debt_start = self._lending_start(key, window, inputs, borrow=True)
        debt_end = self._lending_end(
            key, window, inputs, wallet_live.current_borrow_balances, borrow=True
        )
        period = [
            entry
            for entry in self._period_actions(inputs, key, window)
            if entry[0].action_type in BORROW_ACTIONS
        ]
        if debt_start <= 0 and debt_end <= 0 and not period:
            return

        resolver = inputs.resolver
        prices = self._prices(
            key.asset_address,
            window,
            live.price(key.asset_address),
            f"borrow {key}",
            resolver,
            flags,
        )
        if prices is None:
            return
        price_start, price_end = prices

        net_borrowed = sum(
            t if a.action_type in BORROW_INFLOWS else -t for a, t, _ in period
        )

        # Debt with no recorded start and no activity in the bar predates the data.
        interest = 0.0
        if debt_start > 0 or net_borrowed != 0:
            interest, implausible = bounded_interest(
                debt_end - debt_start - net_borrowed,
                debt_start,
                debt_end,
                window.days,
                self.max_daily_interest_ratio,
            )
            if implausible:
                logger.warning(
                    "Implausible borrow interest for %s in %s; zeroed", key, window.boundary.label
                )
                flags.append(
                    Flag(
                        FlagKind.IMPLAUSIBLE_INTEREST,
                        f"borrow {key}",
                        f"interest above {self.max_daily_interest_ratio:.2%}/day "
                        f"in {window.boundary.label}; zeroed",
                    )
                )
        totals.borrow_interest_cost -= max(interest, 0.0) * price_end

        rate = inputs.emissions.daily_rate(
            EmissionKind.LENDING_BORROW, window.boundary.start, key.pool_id, key.asset_address
        )
        reward = debt_start * price_start * rate * window.days
        for action, tokens, day in period:
            price_at = self._action_price(key.asset_address, day, price_start, resolver)
            sign = 1.0 if action.action_type in BORROW_INFLOWS else -1.0
            reward += sign * tokens * price_at * rate * window.remaining_days(action.timestamp)

        if self._reward_price(window, live, resolver) > 0:
            totals.reward_yield_borrow += max(0.0, reward)

    def _backstop(
        self,
        totals: _BarTotals,
        pool: str,
        window: _Window,
        inputs: _WalletInputs,
        live: LiveInputs,
        wallet_live: WalletLiveState,
        flags: list[Flag],
    ) -> None:
        positions = inputs.backstop_positions.get(pool, {})
        start_pos = positions.get(window.prev, BackstopPosition())
        shares_start = start_pos.cumulative_shares
        rate_start = start_pos.share_rate
        if window.is_live and inputs.start_share_rates.get(pool) is not None:
            rate_start = inputs.start_share_rates[pool]

        live_pos = wallet_live.backstop_positions.get(pool)
        if window.is_live and live_pos is not None:
            shares_end = live_pos.shares
            rate_end = live_pos.lp_tokens / live_pos.shares if live_pos.shares > 0 else None
        else:
            end_pos = positions.get(window.boundary.end, BackstopPosition())
            shares_end = end_pos.cumulative_shares
            rate_end = end_pos.share_rate

        period = [
            e
            for e in inputs.backstop_events
            if e.pool_address == pool and window.contains(e.event_date) and e.share_delta
        ]
        if shares_start <= 0 and shares_end <= 0 and not period:
            return

        lp_token = self.tokens.lp_token
        prices = self._prices(
            lp_token, window, live.lp_price, f"backstop {pool}", inputs.resolver, flags
        )
        if prices is None:
            return
        price_start, price_end = prices

        if rate_start is None:
            rate_start = rate_end or 0.0
        if rate_end is None:
            rate_end = rate_start
        lp_start = shares_start * rate_start

        lp_yield = period_share_yield(shares_start, rate_start, rate_end, period)
        totals.backstop_yield += lp_yield * price_end

        rate = inputs.emissions.daily_rate(EmissionKind.BACKSTOP, window.boundary.start, pool)
        reward = lp_start * price_start * rate * window.days
        price_change = lp_start * (price_end - price_start)
        for event in period:
            price_at = event.price_usd
            if price_at <= 0:
                price_at = self._action_price(
                    lp_token, event.event_date, price_start, inputs.resolver
                )
            sign = 1.0 if event.share_delta > 0 else -1.0
            reward += sign * event.lp_tokens * price_at * rate * window.remaining_days(event.timestamp)
            price_change += sign * event.lp_tokens * (price_end - price_at)

        if self._reward_price(window, live, inputs.resolver) > 0:
            totals.reward_yield_backstop += max(0.0, reward)
        totals.price_change += price_change
