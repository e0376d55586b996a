"""Unit tests for average-cost accounting."""
from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from blend_pnl.accounting import CostBasisAccumulator, bounded_interest
from blend_pnl.dates import dates_between
from blend_pnl.models import ActionType, PricedFlow

TODAY = date(2025, 1, 15)


def _flow(kind: ActionType, day: date, tokens: float, price: float, ledger: int = 1) -> PricedFlow:
    ts = datetime(day.year, day.month, day.day, 12, tzinfo=timezone.utc)
    return PricedFlow(kind, ts, ledger, day, tokens, price)


class TestAccumulate:
    def test_average_cost_after_partial_withdrawal(self) -> None:
        flows = [
            _flow(ActionType.SUPPLY, date(2025, 1, 1), 100.0, 1.0),
            _flow(ActionType.SUPPLY, date(2025, 1, 2), 100.0, 3.0),
            _flow(ActionType.WITHDRAW, date(2025, 1, 3), 100.0, 5.0),
        ]
        basis = CostBasisAccumulator(TODAY).accumulate(flows)
        assert basis.weighted_avg_price == pytest.approx(2.0)
        assert basis.cost_basis == pytest.approx(200.0)
        assert basis.net_tokens == pytest.approx(100.0)
        assert basis.cost_removed == pytest.approx(200.0)
        assert basis.verifiable

    def test_withdrawal_price_does_not_matter(self) -> None:
        deposit = _flow(ActionType.SUPPLY, date(2025, 1, 1), 10.0, 2.0)
        cheap = CostBasisAccumulator(TODAY).accumulate(
            [deposit, _flow(ActionType.WITHDRAW, date(2025, 1, 2), 5.0, 0.1)]
        )
        dear = CostBasisAccumulator(TODAY).accumulate(
            [deposit, _flow(ActionType.WITHDRAW, date(2025, 1, 2), 5.0, 99.0)]
        )
        assert cheap.cost_basis == dear.cost_basis == pytest.approx(10.0)

    def test_same_day_inflow_uses_live_price(self) -> None:
        flows = [_flow(ActionType.SUPPLY, TODAY, 10.0, 1.0)]
        basis = CostBasisAccumulator(TODAY, live_price=1.2).accumulate(flows)
        assert basis.cost_basis == pytest.approx(12.0)

    def test_same_day_without_live_price_uses_row(self) -> None:
        flows = [_flow(ActionType.SUPPLY, TODAY, 10.0, 1.0)]
        assert CostBasisAccumulator(TODAY).accumulate(flows).cost_basis == pytest.approx(10.0)

    def test_collateral_counts_as_inflow(self) -> None:
        flows = [
            _flow(ActionType.SUPPLY_COLLATERAL, date(2025, 1, 1), 10.0, 1.0),
            _flow(ActionType.WITHDRAW_COLLATERAL, date(2025, 1, 2), 4.0, 1.0),
        ]
        assert CostBasisAccumulator(TODAY).accumulate(flows).net_tokens == pytest.approx(6.0)

    def test_net_negative_is_unverifiable(self) -> None:
        flows = [
            _flow(ActionType.SUPPLY, date(2025, 1, 1), 10.0, 1.0),
            _flow(ActionType.WITHDRAW, date(2025, 1, 2), 15.0, 1.0),
        ]
        basis = CostBasisAccumulator(TODAY).accumulate(flows)
        assert not basis.verifiable
        assert basis.cost_basis == 0.0

    def test_rounding_noise_is_not_unverifiable(self) -> None:
        flows = [
            _flow(ActionType.SUPPLY, date(2025, 1, 1), 10.0, 1.0),
            _flow(ActionType.WITHDRAW, date(2025, 1, 2), 10.0 + 1e-12, 1.0),
        ]
        assert CostBasisAccumulator(TODAY).accumulate(flows).verifiable

    def test_as_of_excludes_later_flows(self) -> None:
        flows = [
            _flow(ActionType.SUPPLY, date(2025, 1, 1), 10.0, 1.0),
            _flow(ActionType.SUPPLY, date(2025, 1, 5), 10.0, 3.0),
        ]
        basis = CostBasisAccumulator(TODAY).accumulate(flows, as_of=date(2025, 1, 4))
        assert basis.cost_basis == pytest.approx(10.0)

    def test_borrow_flows(self) -> None:
        flows = [
            _flow(ActionType.BORROW, date(2025, 1, 1), 50.0, 2.0),
            _flow(ActionType.REPAY, date(2025, 1, 2), 20.0, 4.0),
        ]
        basis = CostBasisAccumulator(TODAY).accumulate(flows)
        assert basis.cost_basis == pytest.approx(60.0)

    def test_order_independent_of_input_order(self) -> None:
        flows = [
            _flow(ActionType.WITHDRAW, date(2025, 1, 3), 100.0, 5.0),
            _flow(ActionType.SUPPLY, date(2025, 1, 2), 100.0, 3.0),
            _flow(ActionType.SUPPLY, date(2025, 1, 1), 100.0, 1.0),
        ]
        acc = CostBasisAccumulator(TODAY)
        assert acc.accumulate(flows) == acc.accumulate(list(reversed(flows)))


class TestRunning:
    def test_matches_point_in_time_accumulation(self) -> None:
        flows = [
            _flow(ActionType.SUPPLY, date(2024, 12, 30), 100.0, 1.0),
            _flow(ActionType.SUPPLY, date(2025, 1, 3), 100.0, 3.0),
            _flow(ActionType.WITHDRAW, date(2025, 1, 6), 50.0, 2.0),
        ]
        acc = CostBasisAccumulator(TODAY)
        dates = dates_between(date(2025, 1, 1), date(2025, 1, 8))
        running = acc.running(flows, dates)
        for day in dates:
            assert running[day] == acc.accumulate(flows, as_of=day)

    def test_flows_before_range_fold_into_first_date(self) -> None:
        flows = [_flow(ActionType.SUPPLY, date(2024, 12, 1), 10.0, 2.0)]
        running = CostBasisAccumulator(TODAY).running(flows, [date(2025, 1, 1)])
        assert running[date(2025, 1, 1)].cost_basis == pytest.approx(20.0)


class TestBoundedInterest:
    def test_plausible_interest_kept(self) -> None:
        assert bounded_interest(0.5, 100.0, 100.5, 1.0, 0.01) == (0.5, False)

    def test_implausible_interest_zeroed(self) -> None:
        assert bounded_interest(5.0, 100.0, 105.0, 1.0, 0.01) == (0.0, True)

    def test_ceiling_scales_with_period(self) -> None:
        assert bounded_interest(5.0, 100.0, 105.0, 30.0, 0.01) == (5.0, False)

    def test_short_periods_use_one_day(self) -> None:
        assert bounded_interest(0.8, 100.0, 100.8, 0.1, 0.01) == (0.8, False)

    def test_no_balance_is_not_flagged(self) -> None:
        assert bounded_interest(0.0, 0.0, 0.0, 1.0, 0.01) == (0.0, False)
