"""Data models — all frozen (immutable)."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


class ActionType(str, Enum):
    SUPPLY = "supply"
    SUPPLY_COLLATERAL = "supply_collateral"
    WITHDRAW = "withdraw"
    WITHDRAW_COLLATERAL = "withdraw_collateral"
    BORROW = "borrow"
    REPAY = "repay"
    CLAIM = "claim"
    BACKSTOP_DEPOSIT = "backstop_deposit"
    BACKSTOP_WITHDRAW = "backstop_withdraw"
    BACKSTOP_QUEUE_WITHDRAWAL = "backstop_queue_withdrawal"
    BACKSTOP_DEQUEUE_WITHDRAWAL = "backstop_dequeue_withdrawal"
    BACKSTOP_CLAIM = "backstop_claim"


SUPPLY_INFLOWS = frozenset({ActionType.SUPPLY, ActionType.SUPPLY_COLLATERAL})
SUPPLY_OUTFLOWS = frozenset({ActionType.WITHDRAW, ActionType.WITHDRAW_COLLATERAL})
BORROW_INFLOWS = frozenset({ActionType.BORROW})
BORROW_OUTFLOWS = frozenset({ActionType.REPAY})
LENDING_ACTIONS = SUPPLY_INFLOWS | SUPPLY_OUTFLOWS
BORROW_ACTIONS = BORROW_INFLOWS | BORROW_OUTFLOWS
INFLOW_ACTIONS = SUPPLY_INFLOWS | BORROW_INFLOWS | {ActionType.BACKSTOP_DEPOSIT}
BACKSTOP_ACTIONS = frozenset(
    {
        ActionType.BACKSTOP_DEPOSIT,
        ActionType.BACKSTOP_WITHDRAW,
        ActionType.BACKSTOP_QUEUE_WITHDRAWAL,
        ActionType.BACKSTOP_DEQUEUE_WITHDRAWAL,
        ActionType.BACKSTOP_CLAIM,
    }
)


class Side(str, Enum):
    """Which half of a lending position a computation looks at."""

    SUPPLY = "supply"
    BORROW = "borrow"

    @property
    def actions(self) -> frozenset[ActionType]:
        return LENDING_ACTIONS if self is Side.SUPPLY else BORROW_ACTIONS


@dataclass(frozen=True, order=True)
class PositionKey:
    """Lending position identity: one asset in one pool."""

    pool_id: str
    asset_address: str

    def __str__(self) -> str:
        return f"{self.pool_id}-{self.asset_address}"

    @classmethod
    def parse(cls, composite: str) -> PositionKey:
        """Parse the ``pool-asset`` form used by external JSON payloads."""
        pool_id, sep, asset_address = composite.partition("-")
        if not sep or not pool_id or not asset_address:
            raise ValueError(f"Invalid position key: {composite!r}")
        return cls(pool_id=pool_id, asset_address=asset_address)


@dataclass(frozen=True)
class UserAction:
    """One on-chain protocol event for a wallet."""

    pool_id: str
    action_type: ActionType
    timestamp: datetime
    ledger_sequence: int
    asset_address: str | None = None
    amount_raw: int | None = None
    claim_amount: float | None = None
    lp_tokens: float | None = None
    asset_decimals: int | None = None
    asset_symbol: str = ""

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.ledger_sequence)

    @property
    def position_key(self) -> PositionKey | None:
        if not self.asset_address:
            return None
        return PositionKey(self.pool_id, self.asset_address)

    def tokens(self, default_decimals: int = 7) -> float | None:
        """Underlying token amount, scaled by the asset's decimals."""
        if self.amount_raw is None:
            return None
        decimals = self.asset_decimals or default_decimals
        return self.amount_raw / 10**decimals


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceSnapshot:
    """Lending position state recorded when it changed."""

    pool_id: str
    asset_address: str
    snapshot_date: date
    supply_raw: float = 0.0
    collateral_raw: float = 0.0
    debt_raw: float = 0.0
    b_rate: float = 1.0
    d_rate: float = 1.0
    ledger_sequence: int = 0

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.pool_id, self.asset_address)

    @property
    def supply_underlying(self) -> float:
        return (self.supply_raw + self.collateral_raw) * self.b_rate

    @property
    def debt_underlying(self) -> float:
        return self.debt_raw * self.d_rate


@dataclass(frozen=True)
class BalanceHistory:
    history: tuple[BalanceSnapshot, ...] = ()
    first_event_date: date | None = None


@dataclass(frozen=True)
class BackstopSnapshot:
    """Backstop position state for one pool on one date."""

    pool_address: str
    snapshot_date: date
    lp_tokens_value: float
    cumulative_shares: float

    @property
    def share_rate(self) -> float | None:
        if self.cumulative_shares <= 0:
            return None
        return self.lp_tokens_value / self.cumulative_shares


@dataclass(frozen=True)
class BackstopEvent:
    """Backstop deposit/withdraw joined with its LP-token price."""

    pool_address: str
    kind: ActionType
    timestamp: datetime
    event_date: date
    lp_tokens: float
    shares: float
    price_usd: float = 0.0
    ledger_sequence: int = 0

    @property
    def share_rate(self) -> float | None:
        if self.shares <= 0:
            return None
        return self.lp_tokens / self.shares

    @property
    def share_delta(self) -> float:
        if self.kind is ActionType.BACKSTOP_DEPOSIT:
            return self.shares
        if self.kind is ActionType.BACKSTOP_WITHDRAW:
            return -self.shares
        return 0.0


@dataclass(frozen=True)
class StartOfDayRates:
    b_rate: float | None = None
    d_rate: float | None = None


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------


class PriceSource(str, Enum):
    HISTORICAL = "historical"
    FORWARD_FILL = "forward_fill"
    LIVE_FALLBACK = "live_fallback"
    MISSING = "missing"


@dataclass(frozen=True)
class PricePoint:
    token: str
    on: date
    price: float
    source: PriceSource

    @property
    def reliable(self) -> bool:
        return self.source is not PriceSource.MISSING and self.price > 0


# ---------------------------------------------------------------------------
# Cost-basis inputs and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PricedFlow:
    """A deposit/withdraw (or borrow/repay) joined with its event-date price."""

    action_type: ActionType
    timestamp: datetime
    ledger_sequence: int
    event_date: date
    tokens: float
    price_usd: float

    @property
    def is_inflow(self) -> bool:
        return self.action_type in INFLOW_ACTIONS

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.timestamp, self.ledger_sequence)


@dataclass(frozen=True)
class PositionFlows:
    key: PositionKey
    flows: tuple[PricedFlow, ...] = ()
    asset_symbol: str = ""


@dataclass(frozen=True)
class TokenLedger:
    """Cumulative token movement for one position."""

    deposited_tokens: float = 0.0
    withdrawn_tokens: float = 0.0
    deposited_usd: float = 0.0

    @property
    def net_tokens(self) -> float:
        return self.deposited_tokens - self.withdrawn_tokens


@dataclass(frozen=True)
class CostBasis:
    ledger: TokenLedger
    weighted_avg_price: float
    cost_removed: float
    cost_basis: float
    verifiable: bool = True

    @property
    def net_tokens(self) -> float:
        return self.ledger.net_tokens


# ---------------------------------------------------------------------------
# Claims and emissions
# ---------------------------------------------------------------------------


class ClaimSource(str, Enum):
    POOL = "pool"
    BACKSTOP = "backstop"


@dataclass(frozen=True)
class ClaimEvent:
    claim_date: date
    timestamp: datetime
    source: ClaimSource
    pool_id: str
    token_address: str
    amount: float
    price_usd: float | None = None


@dataclass(frozen=True)
class RealizedYieldData:
    claims: tuple[ClaimEvent, ...] = ()


class EmissionKind(str, Enum):
    LENDING_SUPPLY = "lending_supply"
    LENDING_BORROW = "lending_borrow"
    BACKSTOP = "backstop"


@dataclass(frozen=True)
class EmissionApyPoint:
    """Emission APY (percent) for a pool asset, or a backstop pool, on a date."""

    on: date
    kind: EmissionKind
    pool_id: str
    apy: float
    asset_address: str | None = None


@dataclass(frozen=True)
class EmissionApyHistory:
    points: tuple[EmissionApyPoint, ...] = ()


# ---------------------------------------------------------------------------
# Flags
# ---------------------------------------------------------------------------


class FlagKind(str, Enum):
    MISSING_PRICE = "missing_price"
    IMPLAUSIBLE_INTEREST = "implausible_interest"
    UNVERIFIABLE_COST_BASIS = "unverifiable_cost_basis"
    EXCLUDED = "excluded"
    INVALID_PARAMETER = "invalid_parameter"


@dataclass(frozen=True)
class Flag:
    """A contribution that was omitted or zeroed while building a report."""

    kind: FlagKind
    subject: str
    detail: str = ""


# ---------------------------------------------------------------------------
# Caller-supplied live state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackstopLivePosition:
    lp_tokens: float
    shares: float


@dataclass(frozen=True)
class WalletLiveState:
    current_balances: dict[PositionKey, float] = field(default_factory=dict)
    current_borrow_balances: dict[PositionKey, float] = field(default_factory=dict)
    backstop_positions: dict[str, BackstopLivePosition] = field(default_factory=dict)


@dataclass(frozen=True)
class LiveInputs:
    """Current prices and balances read from the chain by the caller."""

    prices: dict[str, float] = field(default_factory=dict)
    lp_price: float = 0.0
    reward_token_price: float = 0.0
    wallets: dict[str, WalletLiveState] = field(default_factory=dict)

    def for_wallet(self, address: str) -> WalletLiveState:
        return self.wallets.get(address, WalletLiveState())

    def price(self, token: str) -> float:
        return self.prices.get(token, 0.0)


@dataclass(frozen=True)
class ActiveFilter:
    """Which wallets currently hold each position.

    Keys absent from ``entries`` are not filtered.
    """

    entries: dict[PositionKey, frozenset[str]] = field(default_factory=dict)

    def allows(self, key: PositionKey, address: str) -> bool:
        holders = self.entries.get(key)
        return holders is None or address in holders


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DailyPnlPoint:
    on: date
    portfolio_value: float = 0.0
    cost_basis: float = 0.0
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    total_pnl: float = 0.0
    lending_value: float = 0.0
    backstop_value: float = 0.0
    lending_cost_basis: float = 0.0
    backstop_cost_basis: float = 0.0
    lending_unrealized_pnl: float = 0.0
    backstop_unrealized_pnl: float = 0.0


@dataclass(frozen=True)
class PerformanceHistory:
    addresses: tuple[str, ...]
    history: tuple[DailyPnlPoint, ...] = ()
    first_activity_date: date | None = None
    flags: tuple[Flag, ...] = ()

    @property
    def current(self) -> DailyPnlPoint | None:
        return self.history[-1] if self.history else None


class PeriodState(str, Enum):
    HISTORICAL = "historical"
    LIVE = "live"


@dataclass(frozen=True)
class PeriodBoundary:
    start: date
    end: date
    label: str


@dataclass(frozen=True)
class PeriodBar:
    period_start: date
    period_end: date
    label: str
    supply_yield: float = 0.0
    reward_yield_supply: float = 0.0
    backstop_yield: float = 0.0
    reward_yield_backstop: float = 0.0
    borrow_interest_cost: float = 0.0
    reward_yield_borrow: float = 0.0
    price_change: float = 0.0
    total: float = 0.0
    is_live: bool = False


@dataclass(frozen=True)
class PnlChart:
    period: str
    granularity: str
    bars: tuple[PeriodBar, ...] = ()
    flags: tuple[Flag, ...] = ()


@dataclass(frozen=True)
class RealizedYieldSummary:
    cumulative_by_date: dict[date, float] = field(default_factory=dict)
    totals_by_pool: dict[str, float] = field(default_factory=dict)
    totals_by_source: dict[ClaimSource, float] = field(default_factory=dict)
    cumulative_by_pool: dict[str, dict[date, float]] = field(default_factory=dict)
    cumulative_by_source: dict[ClaimSource, dict[date, float]] = field(default_factory=dict)
    total_usd: float = 0.0
    flags: tuple[Flag, ...] = ()


@dataclass(frozen=True)
class PositionCostBasis:
    key: PositionKey
    side: Side
    asset_symbol: str
    deposited_tokens: float
    withdrawn_tokens: float
    deposited_usd: float
    weighted_avg_price: float
    cost_basis: float
    net_tokens: float
    verifiable: bool = True
    current_tokens: float | None = None
    current_value: float | None = None
    yield_tokens: float | None = None
    yield_usd: float | None = None
    price_change_usd: float | None = None


@dataclass(frozen=True)
class CostBasisReport:
    side: Side
    positions: tuple[PositionCostBasis, ...] = ()
    total_cost_basis: float = 0.0
    flags: tuple[Flag, ...] = ()
