"""Pure decoding of indexer rows into domain models — no I/O."""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

from ..dates import local_date
from ..models import (
    ActionType,
    BackstopEvent,
    BackstopSnapshot,
    BalanceHistory,
    BalanceSnapshot,
    ClaimEvent,
    ClaimSource,
    EmissionApyPoint,
    EmissionKind,
    PositionFlows,
    PositionKey,
    PricedFlow,
    StartOfDayRates,
    UserAction,
)


def to_float(value: Any, default: float = 0.0) -> float:
    """Numeric columns arrive as numbers or decimal strings; blanks become ``default``."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return to_float(value)


def parse_date(value: Any) -> date:
    """Parse ``YYYY-MM-DD`` (a longer ISO timestamp is truncated to its date)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or epoch seconds into an aware UTC datetime."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def decode_action(row: dict[str, Any]) -> UserAction:
    amount = row.get("amount_underlying")
    decimals = row.get("asset_decimals")
    return UserAction(
        pool_id=row["pool_id"],
        action_type=ActionType(row["action_type"]),
        timestamp=parse_timestamp(row["ledger_closed_at"]),
        ledger_sequence=int(row.get("ledger_sequence") or 0),
        asset_address=row.get("asset_address") or None,
        amount_raw=int(amount) if amount not in (None, "") else None,
        claim_amount=to_optional_float(row.get("claim_amount")),
        lp_tokens=to_optional_float(row.get("lp_tokens")),
        asset_decimals=int(decimals) if decimals not in (None, "") else None,
        asset_symbol=row.get("asset_symbol") or "",
    )


def decode_actions(rows: list[dict[str, Any]]) -> list[UserAction]:
    """Decode and order by (timestamp, ledger sequence)."""
    return sorted((decode_action(r) for r in rows), key=lambda a: a.sort_key)


def decode_backstop_event(row: dict[str, Any], tz: str = "UTC") -> BackstopEvent:
    ts = parse_timestamp(row["ledger_closed_at"])
    event_date = parse_date(row["event_date"]) if row.get("event_date") else local_date(ts, tz)
    return BackstopEvent(
        pool_address=row["pool_address"],
        kind=ActionType(row["action_type"]),
        timestamp=ts,
        event_date=event_date,
        lp_tokens=to_float(row.get("lp_tokens")),
        shares=to_float(row.get("shares")),
        price_usd=to_float(row.get("price_usd")),
        ledger_sequence=int(row.get("ledger_sequence") or 0),
    )


def decode_flow(row: dict[str, Any], tz: str = "UTC") -> PricedFlow:
    """A deposit/withdraw (or borrow/repay) row; ``price_usd`` is 0 when unpriced."""
    ts = parse_timestamp(row["ledger_closed_at"])
    event_date = parse_date(row["event_date"]) if row.get("event_date") else local_date(ts, tz)
    return PricedFlow(
        action_type=ActionType(row["action_type"]),
        timestamp=ts,
        ledger_sequence=int(row.get("ledger_sequence") or 0),
        event_date=event_date,
        tokens=to_float(row.get("tokens")),
        price_usd=to_float(row.get("price_usd")),
    )


def decode_position_flows(row: dict[str, Any], tz: str = "UTC") -> PositionFlows:
    key = PositionKey(row["pool_id"], row["asset_address"])
    flows = sorted((decode_flow(f, tz) for f in row.get("flows", [])), key=lambda f: f.sort_key)
    return PositionFlows(key=key, flows=tuple(flows), asset_symbol=row.get("asset_symbol") or "")


def decode_claim(row: dict[str, Any], tz: str = "UTC") -> ClaimEvent:
    ts = parse_timestamp(row["ledger_closed_at"])
    claim_date = parse_date(row["claim_date"]) if row.get("claim_date") else local_date(ts, tz)
    price = to_optional_float(row.get("price_usd"))
    return ClaimEvent(
        claim_date=claim_date,
        timestamp=ts,
        source=ClaimSource(row.get("source", ClaimSource.POOL.value)),
        pool_id=row["pool_id"],
        token_address=row["token_address"],
        amount=to_float(row.get("amount")),
        price_usd=price if price and price > 0 else None,
    )


# ---------------------------------------------------------------------------
# Snapshots and rates
# ---------------------------------------------------------------------------


def decode_balance_snapshot(row: dict[str, Any]) -> BalanceSnapshot:
    # Rates fall back to 1.0 before the first rate row for the asset
    return BalanceSnapshot(
        pool_id=row["pool_id"],
        asset_address=row["asset_address"],
        snapshot_date=parse_date(row["snapshot_date"]),
        supply_raw=to_float(row.get("supply_btokens")),
        collateral_raw=to_float(row.get("collateral_btokens")),
        debt_raw=to_float(row.get("liabilities_dtokens")),
        b_rate=to_float(row.get("b_rate"), 1.0) or 1.0,
        d_rate=to_float(row.get("d_rate"), 1.0) or 1.0,
        ledger_sequence=int(row.get("ledger_sequence") or 0),
    )


def decode_balance_history(result: dict[str, Any] | None) -> BalanceHistory:
    result = result or {}
    first = result.get("first_event_date")
    snapshots = sorted(
        (decode_balance_snapshot(r) for r in result.get("history", [])),
        key=lambda s: (s.snapshot_date, s.ledger_sequence),
    )
    return BalanceHistory(
        history=tuple(snapshots),
        first_event_date=parse_date(first) if first else None,
    )


def decode_backstop_snapshot(row: dict[str, Any]) -> BackstopSnapshot:
    return BackstopSnapshot(
        pool_address=row["pool_address"],
        snapshot_date=parse_date(row["snapshot_date"]),
        lp_tokens_value=to_float(row.get("lp_tokens_value")),
        cumulative_shares=to_float(row.get("cumulative_shares")),
    )


def decode_start_of_day_rates(row: dict[str, Any] | None) -> StartOfDayRates:
    row = row or {}
    return StartOfDayRates(
        b_rate=to_optional_float(row.get("b_rate")),
        d_rate=to_optional_float(row.get("d_rate")),
    )


def decode_price_rows(rows: list[dict[str, Any]]) -> dict[date, float]:
    """``[{"price_date", "usd_price"}]`` to a date-keyed map; non-positive prices are dropped."""
    prices: dict[date, float] = {}
    for row in rows:
        price = to_float(row.get("usd_price"))
        if price > 0:
            prices[parse_date(row["price_date"])] = price
    return prices


def decode_emission_point(row: dict[str, Any]) -> EmissionApyPoint:
    return EmissionApyPoint(
        on=parse_date(row["rate_date"]),
        kind=EmissionKind(row["kind"]),
        pool_id=row["pool_id"],
        apy=to_float(row.get("apy")),
        asset_address=row.get("asset_address") or None,
    )
