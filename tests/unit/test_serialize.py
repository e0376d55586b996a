"""Unit tests for JSON conversion of reports."""
from __future__ import annotations

import json
from datetime import date

from blend_pnl.models import (
    ClaimSource,
    Flag,
    FlagKind,
    PositionCostBasis,
    PositionKey,
    RealizedYieldSummary,
    Side,
)
from blend_pnl.serialize import to_jsonable


class TestToJsonable:
    def test_realized_summary(self) -> None:
        summary = RealizedYieldSummary(
            cumulative_by_date={date(2025, 1, 1): 1.5},
            totals_by_source={ClaimSource.BACKSTOP: 1.5},
            total_usd=1.5,
            flags=(Flag(FlagKind.MISSING_PRICE, "CBLND@2025-01-02"),),
        )
        result = to_jsonable(summary)
        assert result["cumulative_by_date"] == {"2025-01-01": 1.5}
        assert result["totals_by_source"] == {"backstop": 1.5}
        assert result["flags"] == [
            {"kind": "missing_price", "subject": "CBLND@2025-01-02", "detail": ""}
        ]
        json.dumps(result)

    def test_position_key_as_string(self) -> None:
        entry = PositionCostBasis(
            key=PositionKey("CPOOL", "CUSDC"),
            side=Side.SUPPLY,
            asset_symbol="USDC",
            deposited_tokens=1.0,
            withdrawn_tokens=0.0,
            deposited_usd=1.0,
            weighted_avg_price=1.0,
            cost_basis=1.0,
            net_tokens=1.0,
        )
        result = to_jsonable(entry)
        assert result["key"] == "CPOOL-CUSDC"
        assert result["side"] == "supply"
        assert result["current_value"] is None

    def test_position_key_dict_keys(self) -> None:
        assert to_jsonable({PositionKey("CPOOL", "CUSDC"): 2.0}) == {"CPOOL-CUSDC": 2.0}

    def test_non_finite_float_becomes_null(self) -> None:
        assert to_jsonable([float("nan"), float("inf"), 1.0]) == [None, None, 1.0]

    def test_sets_sorted(self) -> None:
        assert to_jsonable(frozenset({"GB", "GA"})) == ["GA", "GB"]
