from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from portfolio_lab.backtest.config import BacktestConfig
from portfolio_lab.backtest.money import currency_map, to_currency, to_ratio, to_shares
from portfolio_lab.backtest.prices import InMemoryPriceProvider
from portfolio_lab.backtest.runner import run_backtest


def test_rounding_is_half_up_at_fixed_places() -> None:
    assert to_currency(2.675) == Decimal("2.68")
    assert to_currency(0.125) == Decimal("0.13")
    assert to_shares(1 / 3) == Decimal("0.333333")
    assert to_ratio(-0.0000004) == Decimal("0.000000")
    assert str(to_currency(-0.001)) == "0.00"
    assert currency_map({"b": 1.005, "a": 2}) == {"a": Decimal("2.00"), "b": Decimal("1.01")}


def test_non_finite_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        to_currency(float("nan"))
    with pytest.raises(ValueError):
        to_ratio(float("inf"))


def test_response_quantizes_every_field(make_history) -> None:
    cfg = BacktestConfig.from_dict(
        {
            "start_date": "2020-01-01",
            "end_date": "2020-04-01",
            "allocation": [{"asset_id": "A", "target_weight": 0.7}, {"asset_id": "B", "target_weight": 0.3}],
            "monthly_contribution": 333.33,
            "rebalance_frequency": "monthly",
        }
    )
    provider = InMemoryPriceProvider(
        {"A": make_history("A", [10.0, 10.3, 10.7, 11.1]), "B": make_history("B", [7.0, 7.1, 6.9, 7.3])}
    )
    result = run_backtest(cfg, provider=provider, run_id="RUNTEST-wire")

    response = result.to_response()

    assert response.run_id == "RUNTEST-wire"
    assert len(response.snapshots) == 4
    for snap in response.snapshots:
        assert snap.total_value.as_tuple().exponent == -2
        assert all(v.as_tuple().exponent == -2 for v in snap.per_asset_value.values())
        assert all(v.as_tuple().exponent == -6 for v in snap.positions.values())
    assert response.metrics.sharpe_ratio.as_tuple().exponent == -6
    assert response.metrics.total_invested == Decimal("1333.32")
    assert list(response.per_asset_attribution) == ["A", "B"]
    assert response.coverage.actual_investment == Decimal("1333.32")
    assert response.coverage.missed_contributions == 0
    assert response.per_asset_attribution["A"].dividends_paid == Decimal("0.00")

    payload = result.to_dict()
    assert payload["snapshots"][0]["date"] == "2020-01-01"
    assert payload["snapshots"][0]["contribution"] == "333.33"
    assert {t["kind"] for t in payload["transactions"]} <= {
        "CONTRIBUTION_BUY",
        "DIVIDEND_REINVEST",
        "REBALANCE_BUY",
        "REBALANCE_SELL",
        "DIVIDEND",
    }
    assert date.fromisoformat(payload["snapshots"][-1]["date"]) == date(2020, 4, 1)
