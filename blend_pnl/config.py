"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    timezone: str = "UTC"
    history_days: int = 365
    action_limit: int = 1000
    default_decimals: int = 7
    max_daily_interest_ratio: float = 0.01
    min_period_days: float = 0.01


@dataclass(frozen=True)
class TokensConfig:
    lp_token: str = ""
    reward_token: str = ""


@dataclass(frozen=True)
class IndexerConfig:
    endpoints: tuple[str, ...] = ()
    timeout: int = 30
    price_lookback_days: int = 30


@dataclass(frozen=True)
class RatesRefreshConfig:
    enabled: bool = True
    interval_minutes: int = 15


@dataclass(frozen=True)
class WalletConfig:
    label: str = ""
    address: str = ""


@dataclass(frozen=True)
class AppConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    tokens: TokensConfig = field(default_factory=TokensConfig)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    rates_refresh: RatesRefreshConfig = field(default_factory=RatesRefreshConfig)
    wallets: tuple[WalletConfig, ...] = ()


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_engine(raw: dict[str, Any]) -> EngineConfig:
    return EngineConfig(
        timezone=raw.get("timezone", "UTC") or "UTC",
        history_days=int(raw.get("history_days", 365)),
        action_limit=int(raw.get("action_limit", 1000)),
        default_decimals=int(raw.get("default_decimals", 7)),
        max_daily_interest_ratio=float(raw.get("max_daily_interest_ratio", 0.01)),
        min_period_days=float(raw.get("min_period_days", 0.01)),
    )


def _build_tokens(raw: dict[str, Any]) -> TokensConfig:
    return TokensConfig(
        lp_token=raw.get("lp_token", ""),
        reward_token=raw.get("reward_token", ""),
    )


def _build_indexer(raw: dict[str, Any]) -> IndexerConfig:
    return IndexerConfig(
        endpoints=tuple(e for e in raw.get("endpoints", []) if e),
        timeout=int(raw.get("timeout", 30)),
        price_lookback_days=int(raw.get("price_lookback_days", 30)),
    )


def _build_rates_refresh(raw: dict[str, Any]) -> RatesRefreshConfig:
    return RatesRefreshConfig(
        enabled=bool(raw.get("enabled", True)),
        interval_minutes=int(raw.get("interval_minutes", 15)),
    )


def _build_wallets(raw: list[dict[str, Any]]) -> tuple[WalletConfig, ...]:
    wallets: list[WalletConfig] = []
    for w in raw:
        wallets.append(
            WalletConfig(
                label=w.get("label", ""),
                address=w.get("address", ""),
            )
        )
    return tuple(wallets)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (two levels up from this file).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        engine=_build_engine(raw.get("engine", {})),
        tokens=_build_tokens(raw.get("tokens", {})),
        indexer=_build_indexer(raw.get("indexer", {})),
        rates_refresh=_build_rates_refresh(raw.get("rates_refresh", {})),
        wallets=_build_wallets(raw.get("wallets", [])),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.indexer.endpoints:
        raise ValueError("At least one indexer endpoint must be configured")

    try:
        ZoneInfo(cfg.engine.timezone)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone '{cfg.engine.timezone}'") from e

    if cfg.engine.history_days <= 0:
        raise ValueError("history_days must be positive")

    if cfg.engine.max_daily_interest_ratio <= 0:
        raise ValueError("max_daily_interest_ratio must be positive")

    if cfg.rates_refresh.interval_minutes <= 0:
        raise ValueError("rates_refresh.interval_minutes must be positive")

    for wallet in cfg.wallets:
        if not wallet.address:
            raise ValueError(f"Wallet '{wallet.label}' has no address")
