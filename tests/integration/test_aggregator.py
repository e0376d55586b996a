"""Integration tests for multi-wallet reports over a mocked repository."""
from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest

from blend_pnl.config import AppConfig
from blend_pnl.errors import MissingParameterError, RepositoryUnavailableError
from blend_pnl.models import (
    ActionType,
    ActiveFilter,
    BalanceHistory,
    BalanceSnapshot,
    ClaimEvent,
    ClaimSource,
    FlagKind,
    LiveInputs,
    PositionFlows,
    PositionKey,
    PricedFlow,
    RealizedYieldData,
    Side,
    UserAction,
    WalletLiveState,
)
from blend_pnl.services import MultiWalletAggregator

NOW = datetime(2025, 1, 4, 12, 0, tzinfo=timezone.utc)
KEY = PositionKey("CPOOL", "CUSDC")


def _ts(day: int) -> datetime:
    return datetime(2025, 1, day, 10, 0, tzinfo=timezone.utc)


def _supply_action() -> UserAction:
    return UserAction(
        pool_id="CPOOL",
        action_type=ActionType.SUPPLY,
        timestamp=_ts(1),
        ledger_sequence=1,
        asset_address="CUSDC",
        amount_raw=1_000_000_000,
        asset_symbol="USDC",
    )


def _deposit(tokens: float, price: float, day: int = 1) -> PositionFlows:
    flow = PricedFlow(ActionType.SUPPLY, _ts(day), day, date(2025, 1, day), tokens, price)
    return PositionFlows(KEY, (flow,), "USDC")


def _lending_wallet(repository: AsyncMock, prices: Callable[..., Any] | None = None) -> None:
    """100 USDC supplied Jan 1 at $1, 5% interest by Jan 3, one priced claim Jan 2."""
    repository.get_user_actions.return_value = [_supply_action()]
    repository.get_balance_history_from_events.return_value = BalanceHistory(
        history=(
            BalanceSnapshot("CPOOL", "CUSDC", date(2025, 1, 1), supply_raw=100.0),
            BalanceSnapshot("CPOOL", "CUSDC", date(2025, 1, 3), supply_raw=100.0, b_rate=1.05),
        ),
        first_event_date=date(2025, 1, 1),
    )
    repository.get_deposit_events_with_prices_batch.return_value = {KEY: _deposit(100.0, 1.0)}
    repository.get_realized_yield_data.return_value = RealizedYieldData(
        claims=(
            ClaimEvent(date(2025, 1, 2), _ts(2), ClaimSource.POOL, "CPOOL", "CBLND", 10.0, 0.5),
        )
    )
    if prices is not None:
        repository.get_historical_prices_for_date_range.side_effect = prices


class TestPerformanceHistory:
    @pytest.mark.asyncio
    async def test_no_activity_is_empty(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        aggregator = MultiWalletAggregator(repository, sample_app_config)
        history = await aggregator.performance_history(["GA"], now=NOW)

        assert history.history == ()
        assert history.first_activity_date is None
        assert history.addresses == ("GA",)

    @pytest.mark.asyncio
    async def test_single_lending_wallet(
        self,
        repository: AsyncMock,
        sample_app_config: AppConfig,
        constant_prices: Callable[..., Any],
    ) -> None:
        _lending_wallet(repository, constant_prices({"CUSDC": 1.0}))
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        history = await aggregator.performance_history(["GA"], now=NOW)

        assert history.first_activity_date == date(2025, 1, 1)
        assert [p.on for p in history.history] == [date(2025, 1, d) for d in range(1, 5)]
        assert [p.portfolio_value for p in history.history] == pytest.approx([100, 100, 105, 105])
        assert [p.cost_basis for p in history.history] == pytest.approx([100, 100, 100, 100])
        assert [p.unrealized_pnl for p in history.history] == pytest.approx([0, 0, 5, 5])
        assert [p.realized_pnl for p in history.history] == pytest.approx([0, 5, 5, 5])
        assert history.current is not None
        assert history.current.total_pnl == pytest.approx(10.0)
        assert history.flags == ()

    @pytest.mark.asyncio
    async def test_total_is_unrealized_plus_realized(
        self,
        repository: AsyncMock,
        sample_app_config: AppConfig,
        constant_prices: Callable[..., Any],
    ) -> None:
        _lending_wallet(repository, constant_prices({"CUSDC": 1.0}))
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        history = await aggregator.performance_history(["GA"], now=NOW)

        previous = 0.0
        for point in history.history:
            assert point.total_pnl == pytest.approx(point.unrealized_pnl + point.realized_pnl)
            assert point.portfolio_value == pytest.approx(point.lending_value + point.backstop_value)
            assert point.realized_pnl >= previous
            previous = point.realized_pnl

    @pytest.mark.asyncio
    async def test_wallets_are_summed(
        self,
        repository: AsyncMock,
        sample_app_config: AppConfig,
        constant_prices: Callable[..., Any],
    ) -> None:
        _lending_wallet(repository, constant_prices({"CUSDC": 1.0}))
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        single = await aggregator.performance_history(["GA"], now=NOW)
        combined = await aggregator.performance_history(["GA", "GB", "GA"], now=NOW)

        assert combined.addresses == ("GA", "GB")
        assert [p.portfolio_value for p in combined.history] == pytest.approx(
            [2 * p.portfolio_value for p in single.history]
        )

    @pytest.mark.asyncio
    async def test_repeat_calls_identical(
        self,
        repository: AsyncMock,
        sample_app_config: AppConfig,
        constant_prices: Callable[..., Any],
    ) -> None:
        _lending_wallet(repository, constant_prices({"CUSDC": 1.0}))
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        first = await aggregator.performance_history(["GA"], now=NOW)
        second = await aggregator.performance_history(["GA"], now=NOW)

        assert first == second

    @pytest.mark.asyncio
    async def test_missing_price_flagged(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        _lending_wallet(repository)
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        history = await aggregator.performance_history(["GA"], now=NOW)

        assert all(p.lending_value == 0 for p in history.history)
        assert FlagKind.MISSING_PRICE in {f.kind for f in history.flags}

    @pytest.mark.asyncio
    async def test_refresher_called(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        refresher = AsyncMock()
        aggregator = MultiWalletAggregator(repository, sample_app_config, refresher)

        await aggregator.performance_history(["GA"], now=NOW)

        refresher.ensure_fresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_claim_dated_ahead_of_caller_today(
        self,
        repository: AsyncMock,
        sample_app_config: AppConfig,
        constant_prices: Callable[..., Any],
    ) -> None:
        _lending_wallet(repository, constant_prices({"CUSDC": 1.0, "CBLND": 0.5}))
        # Indexer dated the claim in Tokyo, where it is already Jan 5
        repository.get_realized_yield_data.return_value = RealizedYieldData(
            claims=(
                ClaimEvent(
                    date(2025, 1, 5),
                    datetime(2025, 1, 4, 20, 0, tzinfo=timezone.utc),
                    ClaimSource.POOL,
                    "CPOOL",
                    "CBLND",
                    10.0,
                ),
            )
        )
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        history = await aggregator.performance_history(
            ["GA"], now=datetime(2025, 1, 4, 23, 0, tzinfo=timezone.utc)
        )

        assert [p.realized_pnl for p in history.history] == pytest.approx([0, 0, 0, 5])
        assert history.flags == ()

    @pytest.mark.asyncio
    async def test_inactive_wallet_filtered(
        self,
        repository: AsyncMock,
        sample_app_config: AppConfig,
        constant_prices: Callable[..., Any],
    ) -> None:
        _lending_wallet(repository, constant_prices({"CUSDC": 1.0}))
        active = ActiveFilter({KEY: frozenset({"GA"})})
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        history = await aggregator.performance_history(["GA", "GB"], active=active, now=NOW)

        assert [p.portfolio_value for p in history.history] == pytest.approx([100, 100, 105, 105])
        assert repository.get_balance_history_from_events.await_count == 1


class TestWalletFailures:
    @pytest.mark.asyncio
    async def test_failed_wallet_excluded(
        self,
        repository: AsyncMock,
        sample_app_config: AppConfig,
        constant_prices: Callable[..., Any],
    ) -> None:
        _lending_wallet(repository, constant_prices({"CUSDC": 1.0}))
        actions = [_supply_action()]

        async def get_user_actions(address: str, **kwargs: Any) -> list[UserAction]:
            if address == "GBAD":
                raise RuntimeError("boom")
            return actions

        repository.get_user_actions.side_effect = get_user_actions
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        history = await aggregator.performance_history(["GA", "GBAD"], now=NOW)

        assert len(history.history) == 4
        excluded = [f for f in history.flags if f.kind is FlagKind.EXCLUDED]
        assert [f.subject for f in excluded] == ["wallet GBAD"]
        assert "boom" in excluded[0].detail

    @pytest.mark.asyncio
    async def test_all_wallets_failed_raises(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        repository.get_user_actions.side_effect = RuntimeError("indexer down")
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        with pytest.raises(RepositoryUnavailableError, match="indexer down"):
            await aggregator.performance_history(["GA", "GB"], now=NOW)

    @pytest.mark.asyncio
    async def test_no_addresses_rejected(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        with pytest.raises(MissingParameterError):
            await aggregator.performance_history([" ", ""], now=NOW)


class TestRealizedYield:
    @pytest.mark.asyncio
    async def test_unpriced_claims_resolved(
        self,
        repository: AsyncMock,
        sample_app_config: AppConfig,
        constant_prices: Callable[..., Any],
    ) -> None:
        repository.get_realized_yield_data.return_value = RealizedYieldData(
            claims=(
                ClaimEvent(date(2025, 1, 2), _ts(2), ClaimSource.BACKSTOP, "CPOOL", "CBLND", 10.0),
                ClaimEvent(date(2025, 1, 3), _ts(3), ClaimSource.POOL, "CPOOL", "CUNKNOWN", 1.0),
            )
        )
        repository.get_historical_prices_for_date_range.side_effect = constant_prices({"CBLND": 0.5})
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        summary = await aggregator.realized_yield(["GA"], now=NOW)

        assert summary.total_usd == pytest.approx(5.0)
        assert summary.totals_by_source == {ClaimSource.BACKSTOP: pytest.approx(5.0)}
        assert list(summary.cumulative_by_date) == [date(2025, 1, d) for d in range(2, 5)]
        assert [f.subject for f in summary.flags if f.kind is FlagKind.MISSING_PRICE] == [
            "CUNKNOWN@2025-01-03"
        ]

    @pytest.mark.asyncio
    async def test_claims_bucketed_in_caller_timezone(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        # 03:00 UTC on Jan 3 is still Jan 2 in Los Angeles
        at = datetime(2025, 1, 3, 3, 0, tzinfo=timezone.utc)
        repository.get_realized_yield_data.return_value = RealizedYieldData(
            claims=(ClaimEvent(date(2025, 1, 3), at, ClaimSource.POOL, "CPOOL", "CBLND", 10.0, 0.5),)
        )
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        summary = await aggregator.realized_yield(
            ["GA"], timezone="America/Los_Angeles", now=NOW
        )

        assert list(summary.cumulative_by_date) == [date(2025, 1, d) for d in range(2, 5)]
        assert summary.cumulative_by_date[date(2025, 1, 2)] == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_no_claims(self, repository: AsyncMock, sample_app_config: AppConfig) -> None:
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        summary = await aggregator.realized_yield(["GA"], now=NOW)

        assert summary.total_usd == 0.0
        assert summary.cumulative_by_date == {}


class TestCostBasis:
    @pytest.mark.asyncio
    async def test_flows_merged_across_wallets(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        repository.get_user_actions.return_value = [_supply_action()]

        async def deposits(address: str, keys: Any, live_prices: Any) -> dict:
            return {KEY: _deposit(100.0, 1.0 if address == "GA" else 3.0)}

        repository.get_deposit_events_with_prices_batch.side_effect = deposits
        live = LiveInputs(
            prices={"CUSDC": 2.5},
            wallets={
                "GA": WalletLiveState(current_balances={KEY: 105.0}),
                "GB": WalletLiveState(current_balances={KEY: 100.0}),
            },
        )
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        report = await aggregator.cost_basis(["GA", "GB"], Side.SUPPLY, live, now=NOW)

        assert report.total_cost_basis == pytest.approx(400.0)
        (position,) = report.positions
        assert position.weighted_avg_price == pytest.approx(2.0)
        assert position.current_tokens == pytest.approx(205.0)
        assert position.yield_tokens == pytest.approx(5.0)
        assert position.yield_usd == pytest.approx(12.5)
        assert position.price_change_usd == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_inactive_wallet_filtered(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        repository.get_user_actions.return_value = [_supply_action()]
        repository.get_deposit_events_with_prices_batch.return_value = {KEY: _deposit(100.0, 1.0)}
        active = ActiveFilter({KEY: frozenset({"GA"})})
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        report = await aggregator.cost_basis(["GA", "GB"], Side.SUPPLY, active=active, now=NOW)

        assert report.total_cost_basis == pytest.approx(100.0)
        assert repository.get_deposit_events_with_prices_batch.await_count == 1

    @pytest.mark.asyncio
    async def test_borrow_side_uses_borrow_flows(
        self, repository: AsyncMock, sample_app_config: AppConfig
    ) -> None:
        borrow = UserAction("CPOOL", ActionType.BORROW, _ts(1), 1, "CUSDC", 500_000_000)
        repository.get_user_actions.return_value = [borrow]
        flow = PricedFlow(ActionType.BORROW, _ts(1), 1, date(2025, 1, 1), 50.0, 1.0)
        repository.get_borrow_events_with_prices_batch.return_value = {
            KEY: PositionFlows(KEY, (flow,))
        }
        aggregator = MultiWalletAggregator(repository, sample_app_config)

        report = await aggregator.cost_basis(["GA"], Side.BORROW, now=NOW)

        assert report.side is Side.BORROW
        assert report.total_cost_basis == pytest.approx(50.0)
        repository.get_deposit_events_with_prices_batch.assert_not_awaited()
