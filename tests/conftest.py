"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from collections.abc import Callable
from datetime import date
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from blend_pnl.config import (
    AppConfig,
    EngineConfig,
    IndexerConfig,
    RatesRefreshConfig,
    TokensConfig,
    WalletConfig,
)
from blend_pnl.dates import dates_between
from blend_pnl.models import (
    BalanceHistory,
    EmissionApyHistory,
    PricePoint,
    PriceSource,
    RealizedYieldData,
    StartOfDayRates,
)

LP_TOKEN = "CLPTOKEN"
BLND = "CBLND"
WALLET_A = "GWALLETA"


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_engine_config() -> EngineConfig:
    return EngineConfig(timezone="UTC", history_days=365, max_daily_interest_ratio=0.01)


@pytest.fixture()
def sample_tokens_config() -> TokensConfig:
    return TokensConfig(lp_token=LP_TOKEN, reward_token=BLND)


@pytest.fixture()
def sample_app_config(
    sample_engine_config: EngineConfig, sample_tokens_config: TokensConfig
) -> AppConfig:
    return AppConfig(
        engine=sample_engine_config,
        tokens=sample_tokens_config,
        indexer=IndexerConfig(
            endpoints=("https://indexer1.example.com", "https://indexer2.example.com"),
            timeout=5,
        ),
        rates_refresh=RatesRefreshConfig(enabled=True, interval_minutes=15),
        wallets=(WalletConfig(label="main", address=WALLET_A),),
    )


# ---------------------------------------------------------------------------
# Repository fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def repository() -> AsyncMock:
    """Repository returning empty data for every query unless a test overrides it."""
    repo = AsyncMock()
    repo.get_user_actions.return_value = []
    repo.get_balance_history_from_events.return_value = BalanceHistory()
    repo.get_backstop_user_balance_history_multiple_pools.return_value = []
    repo.get_historical_prices_for_date_range.return_value = {}
    repo.get_historical_prices_batch.return_value = {}
    repo.get_deposit_events_with_prices_batch.return_value = {}
    repo.get_borrow_events_with_prices_batch.return_value = {}
    repo.get_backstop_events_with_prices.return_value = []
    repo.get_realized_yield_data.return_value = RealizedYieldData()
    repo.get_rate_at_start_of_day.return_value = StartOfDayRates()
    repo.get_backstop_share_rate_at_start_of_day.return_value = None
    repo.get_emission_apy_history.return_value = EmissionApyHistory()
    repo.refresh_daily_rates.return_value = None
    return repo


@pytest.fixture()
def constant_prices() -> Callable[[dict[str, float]], Callable[..., Any]]:
    """Side effect for ``get_historical_prices_for_date_range`` with flat prices per token."""

    def build(prices: dict[str, float]) -> Callable[..., Any]:
        async def side_effect(
            token: str, start_date: date, end_date: date, live_fallback: float
        ) -> dict[date, PricePoint]:
            if token not in prices:
                return {}
            return {
                d: PricePoint(token, d, prices[token], PriceSource.HISTORICAL)
                for d in dates_between(start_date, end_date)
            }

        return side_effect

    return build


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    engine:
      timezone: Europe/Berlin
      history_days: 180
      max_daily_interest_ratio: 0.02
    tokens:
      lp_token: "CLPTOKEN"
      reward_token: "CBLND"
    indexer:
      endpoints:
        - "https://indexer1.example.com"
        - "https://indexer2.example.com"
      timeout: 10
    rates_refresh:
      interval_minutes: 5
    wallets:
      - label: main
        address: "GWALLETA"
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
