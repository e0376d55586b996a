"""Decode caller-supplied JSON parameters into typed inputs.

Malformed entries are skipped and reported as ``INVALID_PARAMETER`` flags
instead of failing the whole request.
"""
from __future__ import annotations

import logging
import math
from typing import Any

from .models import (
    ActiveFilter,
    BackstopLivePosition,
    Flag,
    FlagKind,
    LiveInputs,
    PositionKey,
    WalletLiveState,
)

logger = logging.getLogger(__name__)


def _invalid(subject: str, detail: str, flags: list[Flag]) -> None:
    logger.warning("Ignoring invalid parameter %s: %s", subject, detail)
    flags.append(Flag(FlagKind.INVALID_PARAMETER, subject, detail))


def _number(value: Any, subject: str, flags: list[Flag]) -> float | None:
    if isinstance(value, bool):
        _invalid(subject, f"expected a number, got {value!r}", flags)
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        _invalid(subject, f"expected a number, got {value!r}", flags)
        return None
    if not math.isfinite(number):
        _invalid(subject, f"expected a finite number, got {value!r}", flags)
        return None
    return number


def _object(raw: Any, subject: str, flags: list[Flag]) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        _invalid(subject, "expected an object", flags)
        return {}
    return raw


def _prices(raw: Any, subject: str, flags: list[Flag]) -> dict[str, float]:
    prices: dict[str, float] = {}
    for token, value in _object(raw, subject, flags).items():
        price = _number(value, f"{subject}.{token}", flags)
        if price is not None and price > 0:
            prices[token] = price
    return prices


def _balances(raw: Any, subject: str, flags: list[Flag]) -> dict[PositionKey, float]:
    balances: dict[PositionKey, float] = {}
    for composite, value in _object(raw, subject, flags).items():
        try:
            key = PositionKey.parse(composite)
        except ValueError as e:
            _invalid(f"{subject}.{composite}", str(e), flags)
            continue
        amount = _number(value, f"{subject}.{composite}", flags)
        if amount is not None:
            balances[key] = amount
    return balances


def _backstop_positions(
    raw: Any, subject: str, flags: list[Flag]
) -> dict[str, BackstopLivePosition]:
    positions: dict[str, BackstopLivePosition] = {}
    for pool, entry in _object(raw, subject, flags).items():
        entry = _object(entry, f"{subject}.{pool}", flags)
        if not entry:
            continue
        lp_tokens = _number(entry.get("lp_tokens"), f"{subject}.{pool}.lp_tokens", flags)
        shares = _number(entry.get("shares"), f"{subject}.{pool}.shares", flags)
        if lp_tokens is None or shares is None:
            continue
        positions[pool] = BackstopLivePosition(lp_tokens=lp_tokens, shares=shares)
    return positions


def parse_live_inputs(raw: Any) -> tuple[LiveInputs, list[Flag]]:
    """Decode ``{"prices", "lp_price", "reward_token_price", "wallets"}``.

    ``wallets`` maps an address to its ``current_balances``,
    ``current_borrow_balances`` (both keyed ``pool-asset``) and
    ``backstop_positions`` (keyed by pool, ``{"lp_tokens", "shares"}``).
    """
    flags: list[Flag] = []
    data = _object(raw, "live", flags)

    lp_price = 0.0
    if data.get("lp_price") is not None:
        lp_price = _number(data["lp_price"], "live.lp_price", flags) or 0.0
    reward_price = 0.0
    if data.get("reward_token_price") is not None:
        reward_price = _number(data["reward_token_price"], "live.reward_token_price", flags) or 0.0

    wallets: dict[str, WalletLiveState] = {}
    for address, entry in _object(data.get("wallets"), "live.wallets", flags).items():
        subject = f"live.wallets.{address}"
        entry = _object(entry, subject, flags)
        wallets[address] = WalletLiveState(
            current_balances=_balances(
                entry.get("current_balances"), f"{subject}.current_balances", flags
            ),
            current_borrow_balances=_balances(
                entry.get("current_borrow_balances"), f"{subject}.current_borrow_balances", flags
            ),
            backstop_positions=_backstop_positions(
                entry.get("backstop_positions"), f"{subject}.backstop_positions", flags
            ),
        )

    live = LiveInputs(
        prices=_prices(data.get("prices"), "live.prices", flags),
        lp_price=max(lp_price, 0.0),
        reward_token_price=max(reward_price, 0.0),
        wallets=wallets,
    )
    return live, flags


def parse_active_filter(raw: Any) -> tuple[ActiveFilter | None, list[Flag]]:
    """Decode ``{"pool-asset": ["address", ...]}``; ``None`` input means no filter."""
    flags: list[Flag] = []
    if raw is None:
        return None, flags

    entries: dict[PositionKey, frozenset[str]] = {}
    for composite, holders in _object(raw, "active", flags).items():
        subject = f"active.{composite}"
        try:
            key = PositionKey.parse(composite)
        except ValueError as e:
            _invalid(subject, str(e), flags)
            continue
        if not isinstance(holders, list) or not all(isinstance(h, str) for h in holders):
            _invalid(subject, "expected a list of addresses", flags)
            continue
        entries[key] = frozenset(holders)
    return ActiveFilter(entries), flags


def split_addresses(value: str | None) -> list[str]:
    """Comma-separated wallet addresses, blanks dropped."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]
