from __future__ import annotations

import math
from datetime import date

import pytest

from portfolio_lab.backtest.config import AllocationTarget
from portfolio_lab.backtest.engine import BacktestEngine, simulate
from portfolio_lab.backtest.errors import AllocationSumError, ConfigurationError, NoPriceDataError
from portfolio_lab.backtest.models import Checkpoint, PriceObservation
from portfolio_lab.backtest.periods import resolve_checkpoints
from portfolio_lab.backtest.prices import InMemoryPriceProvider, PriceBook

TARGETS = (AllocationTarget("A", 0.6), AllocationTarget("B", 0.4))


def _histories(make_history):
    return {
        "A": make_history("A", [100, 104, 98, 110, 115, 108, 120, 125, 119, 130, 128, 135]),
        "B": make_history("B", [50, 50.5, 51, 50.8, 51.2, 51.5, 51.1, 51.9, 52.3, 52.0, 52.6, 53.0]),
    }


def _run(make_history, frequency="monthly", contribution=1000.0, **kwargs):
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 12, 1), frequency)
    return simulate(TARGETS, checkpoints, contribution, _histories(make_history), **kwargs)


def test_snapshot_value_is_cash_plus_positions(make_history) -> None:
    out = _run(make_history, "quarterly")
    for snap in out.snapshots:
        assert snap.total_value == pytest.approx(snap.cash_balance + math.fsum(snap.per_asset_value.values()))
        assert snap.cash_balance >= 0.0


def test_cash_ledger_balances(make_history) -> None:
    out = _run(make_history, "quarterly")
    final = out.snapshots[-1]
    deployed = math.fsum(t.amount for t in out.transactions if t.kind != "DIVIDEND")
    expected_cash = final.cumulative_contributions + final.cumulative_dividends - deployed
    assert final.cash_balance == pytest.approx(expected_cash, abs=1e-6)


def test_cumulative_contributions_are_monotonic(make_history) -> None:
    out = _run(make_history, "annual")
    totals = [s.cumulative_contributions for s in out.snapshots]
    assert totals == sorted(totals)
    assert totals[-1] == pytest.approx(12_000.0)


def test_rebalance_checkpoints_hit_targets(make_history) -> None:
    out = _run(make_history, "quarterly")
    rebalanced = [s for s in out.snapshots if s.rebalanced]
    assert len(rebalanced) == 4
    for snap in rebalanced:
        assert snap.weight("A") == pytest.approx(0.6, abs=0.01)
        assert snap.weight("B") == pytest.approx(0.4, abs=0.01)


def test_runs_are_deterministic(make_history) -> None:
    first = _run(make_history, "monthly", initial_capital=5000.0)
    second = _run(make_history, "monthly", initial_capital=5000.0)
    assert first == second


def test_contribution_precedes_rebalance_on_shared_checkpoint(make_history) -> None:
    out = _run(make_history, "monthly")
    kinds_on_second = [t.kind for t in out.transactions if t.date == date(2020, 2, 1)]
    assert kinds_on_second[0] == "CONTRIBUTION_BUY"
    assert set(kinds_on_second[2:]) <= {"REBALANCE_BUY", "REBALANCE_SELL"}


def test_initial_capital_lands_on_first_checkpoint(make_history) -> None:
    out = _run(make_history, "monthly", initial_capital=10_000.0)
    assert out.snapshots[0].contribution == pytest.approx(11_000.0)
    assert out.snapshots[1].contribution == pytest.approx(1_000.0)
    assert out.snapshots[0].total_value == pytest.approx(11_000.0)


def test_asset_without_history_is_warned_and_excluded() -> None:
    histories = {"A": [PriceObservation("A", date(2020, m, 1), 10.0) for m in range(1, 7)]}
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 6, 1), "monthly")

    out = simulate(TARGETS, checkpoints, 100.0, histories)

    assert [w.kind for w in out.warnings] == ["no_price_history"]
    assert out.warnings[0].asset_id == "B"
    final = out.snapshots[-1]
    assert final.per_asset_value["A"] == pytest.approx(600.0)
    assert final.per_asset_value["B"] == 0.0


def test_asset_listed_late_gets_missing_price_warning() -> None:
    histories = {
        "A": [PriceObservation("A", date(2020, m, 1), 10.0) for m in range(1, 7)],
        "B": [PriceObservation("B", date(2020, m, 1), 20.0) for m in range(4, 7)],
    }
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 6, 1), "monthly")

    out = simulate(TARGETS, checkpoints, 100.0, histories)

    assert len(out.warnings) == 1
    warning = out.warnings[0]
    assert (warning.asset_id, warning.kind) == ("B", "missing_price")
    assert (warning.start_date, warning.end_date) == (date(2020, 1, 1), date(2020, 3, 1))
    assert warning.checkpoints == 3
    assert out.snapshots[-1].weight("B") == pytest.approx(0.4, abs=0.01)


def test_no_price_data_anywhere_is_fatal() -> None:
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 6, 1), "monthly")
    with pytest.raises(NoPriceDataError) as excinfo:
        simulate(TARGETS, checkpoints, 100.0, InMemoryPriceProvider({}))
    assert excinfo.value.asset_ids == ("A", "B")


def test_allocation_checked_once_at_construction() -> None:
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 3, 1), "monthly")
    with pytest.raises(AllocationSumError):
        BacktestEngine(
            targets=[AllocationTarget("A", 0.5)],
            checkpoints=checkpoints,
            contribution_amount=100.0,
            prices=PriceBook({}),
        )


def test_checkpoints_must_ascend() -> None:
    checkpoints = [Checkpoint(date(2020, 2, 1), 0, True, True), Checkpoint(date(2020, 1, 1), 1, True, True)]
    with pytest.raises(ConfigurationError):
        BacktestEngine(
            targets=[AllocationTarget("A", 1.0)],
            checkpoints=checkpoints,
            contribution_amount=100.0,
            prices=PriceBook({}),
        )


def test_dividends_are_credited_and_reinvested() -> None:
    history = [
        PriceObservation("A", date(2020, 1, 1), 100.0),
        PriceObservation("A", date(2020, 2, 1), 100.0),
        PriceObservation("A", date(2020, 2, 15), 100.0, dividend=1.0),
        PriceObservation("A", date(2020, 3, 1), 100.0),
    ]
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 3, 1), "monthly")

    out = simulate([AllocationTarget("A", 1.0)], checkpoints, 1000.0, {"A": history})

    dividends = [t for t in out.transactions if t.kind == "DIVIDEND"]
    assert len(dividends) == 1
    assert dividends[0].date == date(2020, 3, 1)
    assert dividends[0].shares == pytest.approx(20.0)
    assert dividends[0].amount == pytest.approx(20.0)

    reinvested = [t for t in out.transactions if t.kind == "DIVIDEND_REINVEST"]
    assert sum(t.amount for t in reinvested) == pytest.approx(20.0)

    final = out.snapshots[-1]
    assert final.cumulative_dividends == pytest.approx(20.0)
    assert final.positions["A"] == pytest.approx(30.2)
    assert final.total_value == pytest.approx(3020.0)
    assert final.cash_balance == pytest.approx(0.0, abs=1e-9)


def test_provider_is_prefetched_with_lookback() -> None:
    # Only observation predates the first checkpoint by 20 days.
    provider = InMemoryPriceProvider({"A": [PriceObservation("A", date(2019, 12, 12), 10.0)]})
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 2, 1), "monthly")

    out = simulate([AllocationTarget("A", 1.0)], checkpoints, 100.0, provider)

    assert out.snapshots[0].positions["A"] == pytest.approx(10.0)
    assert [w.kind for w in out.warnings] == ["stale_price"]
    assert out.warnings[0].start_date == date(2020, 2, 1)


def test_contributions_before_first_listing_are_missed_then_deployed() -> None:
    histories = {"A": [PriceObservation("A", date(2020, m, 1), 10.0) for m in range(3, 7)]}
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 6, 1), "monthly")

    out = simulate([AllocationTarget("A", 1.0)], checkpoints, 1000.0, histories)

    coverage = out.coverage
    assert coverage.effective_start_date == date(2020, 3, 1)
    assert coverage.effective_end_date == date(2020, 6, 1)
    assert coverage.missed_contributions == 2
    assert coverage.missed_dates == (date(2020, 1, 1), date(2020, 2, 1))
    assert coverage.missed_amount == pytest.approx(2000.0)
    assert coverage.planned_investment == pytest.approx(6000.0)
    assert coverage.actual_investment == pytest.approx(4000.0)

    # Idle cash goes to work at the first priced contribution.
    assert out.snapshots[1].cash_balance == pytest.approx(2000.0)
    assert out.snapshots[2].positions["A"] == pytest.approx(300.0)
    assert out.snapshots[2].cash_balance == pytest.approx(0.0, abs=1e-9)


def test_partial_listing_keeps_every_contribution_on_schedule() -> None:
    histories = {
        "A": [PriceObservation("A", date(2020, m, 1), 10.0) for m in range(1, 7)],
        "B": [PriceObservation("B", date(2020, m, 1), 20.0) for m in range(4, 7)],
    }
    checkpoints = resolve_checkpoints(date(2020, 1, 1), date(2020, 6, 1), "monthly")

    out = simulate(TARGETS, checkpoints, 100.0, histories, initial_capital=500.0)

    assert out.coverage.effective_start_date == date(2020, 1, 1)
    assert out.coverage.missed_contributions == 0
    assert out.coverage.missed_dates == ()
    assert out.coverage.planned_investment == pytest.approx(1100.0)
    assert out.coverage.actual_investment == pytest.approx(1100.0)
