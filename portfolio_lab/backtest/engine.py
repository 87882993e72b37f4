from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from portfolio_lab.backtest.broker import SimulatedBroker, tradable_weights
from portfolio_lab.backtest.config import AllocationTarget, validate_allocation
from portfolio_lab.backtest.errors import ConfigurationError, InvalidContributionError, NoPriceDataError
from portfolio_lab.backtest.models import (
    Checkpoint,
    ContributionCoverage,
    PortfolioSnapshot,
    PriceObservation,
    SimulationOutput,
    SparsityWarning,
    Transaction,
    WarningKind,
)
from portfolio_lab.backtest.portfolio import Portfolio
from portfolio_lab.backtest.prices import PriceBook, PriceSeriesProvider, prefetch_price_histories

logger = logging.getLogger(__name__)

PriceInput = Union[PriceBook, Mapping[str, Sequence[PriceObservation]], PriceSeriesProvider]


@dataclass(frozen=True)
class _SparsityEvent:
    asset_id: str
    kind: WarningKind
    index: int
    as_of: date
    last_observation_date: Optional[date] = None


def merge_sparsity_events(events: Sequence[_SparsityEvent]) -> List[SparsityWarning]:
    """Collapses per-checkpoint events into one warning per consecutive run of checkpoints."""
    warnings: List[SparsityWarning] = []
    ordered = sorted(events, key=lambda e: (e.asset_id, e.kind, e.index))
    current: Optional[List[_SparsityEvent]] = None

    def _flush(run: List[_SparsityEvent]) -> None:
        warnings.append(
            SparsityWarning(
                asset_id=run[0].asset_id,
                kind=run[0].kind,
                start_date=run[0].as_of,
                end_date=run[-1].as_of,
                last_observation_date=run[0].last_observation_date,
                checkpoints=len(run),
            )
        )

    for event in ordered:
        if (
            current
            and current[-1].asset_id == event.asset_id
            and current[-1].kind == event.kind
            and current[-1].index == event.index - 1
            and current[-1].last_observation_date == event.last_observation_date
        ):
            current.append(event)
            continue
        if current:
            _flush(current)
        current = [event]
    if current:
        _flush(current)

    return sorted(warnings, key=lambda w: (w.start_date, w.asset_id, w.kind))


def _as_price_book(prices: PriceInput, checkpoints: Sequence[Checkpoint], asset_ids: Sequence[str], *, lookback_days: int) -> PriceBook:
    if isinstance(prices, PriceBook):
        return prices
    if isinstance(prices, Mapping):
        return PriceBook(prices)
    start = checkpoints[0].date - timedelta(days=lookback_days)
    histories = prefetch_price_histories(prices, asset_ids, start, checkpoints[-1].date)
    return PriceBook(histories)


@dataclass
class BacktestEngine:
    """
    Replays one allocation strategy over the checkpoint calendar.

    Each checkpoint runs strictly after the previous one: resolve prices (carry-forward),
    accrue dividends since the last checkpoint, invest the contribution at target weights,
    rebalance when flagged, then append a snapshot.
    """

    targets: Sequence[AllocationTarget]
    checkpoints: Sequence[Checkpoint]
    contribution_amount: float
    prices: PriceBook
    initial_capital: float = 0.0
    max_staleness_days: int = 31
    _weights: Dict[str, float] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self._weights = {t.asset_id: float(t.target_weight) for t in validate_allocation(self.targets)}
        if self.contribution_amount < 0 or math.isnan(self.contribution_amount):
            raise InvalidContributionError(f"contribution_amount must be >= 0 (got {self.contribution_amount}).")
        if self.initial_capital < 0:
            raise InvalidContributionError(f"initial_capital must be >= 0 (got {self.initial_capital}).")
        if not self.checkpoints:
            raise ConfigurationError("At least one checkpoint is required.")
        for prev, curr in zip(self.checkpoints, self.checkpoints[1:]):
            if curr.date <= prev.date:
                raise ConfigurationError(
                    f"Checkpoints must be strictly ascending ({prev.date.isoformat()} then {curr.date.isoformat()})."
                )

    @property
    def weights(self) -> Dict[str, float]:
        return dict(self._weights)

    def _check_any_price_data(self) -> None:
        final_date = self.checkpoints[-1].date
        if not any(self.prices.price_on_or_before(a, final_date) is not None for a in self._weights):
            raise NoPriceDataError(sorted(self._weights), self.checkpoints[0].date, final_date)

    def _resolve_prices(
        self, checkpoint: Checkpoint, asset_ids: Sequence[str], events: List[_SparsityEvent]
    ) -> Dict[str, float]:
        resolved: Dict[str, float] = {}
        for asset_id in asset_ids:
            if not self.prices.has_history(asset_id):
                # Reported once for the whole run.
                continue
            quote = self.prices.price_on_or_before(asset_id, checkpoint.date)
            if quote is None:
                events.append(_SparsityEvent(asset_id, "missing_price", checkpoint.index, checkpoint.date))
                continue
            resolved[asset_id] = quote.price
            if (checkpoint.date - quote.observed_on).days > self.max_staleness_days:
                events.append(
                    _SparsityEvent(asset_id, "stale_price", checkpoint.index, checkpoint.date, quote.observed_on)
                )
        return resolved

    def _accrue_dividends(
        self, portfolio: Portfolio, checkpoint: Checkpoint, previous: Optional[date]
    ) -> List[Transaction]:
        if previous is None:
            return []
        payments: List[Transaction] = []
        for asset_id in sorted(portfolio.asset_ids()):
            shares = portfolio.shares(asset_id)
            per_share = self.prices.dividends_between(asset_id, previous, checkpoint.date)
            if shares <= 0 or per_share <= 0:
                continue
            amount = shares * per_share
            portfolio.credit_dividend(amount)
            payments.append(
                Transaction(
                    date=checkpoint.date,
                    asset_id=asset_id,
                    kind="DIVIDEND",
                    shares=shares,
                    price=per_share,
                    amount=amount,
                )
            )
        return payments

    def run(self) -> SimulationOutput:
        self._check_any_price_data()

        portfolio = Portfolio()
        broker = SimulatedBroker(portfolio=portfolio)
        snapshots: List[PortfolioSnapshot] = []
        transactions: List[Transaction] = []
        events: List[_SparsityEvent] = []
        warnings: List[SparsityWarning] = []

        first, last = self.checkpoints[0], self.checkpoints[-1]
        for asset_id in sorted(self._weights):
            if not self.prices.has_history(asset_id):
                warnings.append(
                    SparsityWarning(
                        asset_id=asset_id,
                        kind="no_price_history",
                        start_date=first.date,
                        end_date=last.date,
                        checkpoints=len(self.checkpoints),
                    )
                )

        previous_date: Optional[date] = None
        priced_dates: List[date] = []
        missed: List[Tuple[date, float]] = []
        planned = 0.0
        # Dividend cash credited but not yet put back to work.
        idle_dividends = 0.0
        for checkpoint in self.checkpoints:
            universe = sorted(set(self._weights) | set(portfolio.asset_ids()))
            prices = self._resolve_prices(checkpoint, universe, events)
            tradable = bool(tradable_weights(self._weights, prices))
            if tradable:
                priced_dates.append(checkpoint.date)

            payments = self._accrue_dividends(portfolio, checkpoint, previous_date)
            transactions.extend(payments)
            idle_dividends += math.fsum(p.amount for p in payments)

            inflow = 0.0
            if checkpoint.contribution:
                inflow += float(self.contribution_amount)
            if checkpoint.index == first.index:
                inflow += float(self.initial_capital)
            if inflow > 0:
                planned += inflow
                if not tradable:
                    missed.append((checkpoint.date, inflow))

            if checkpoint.contribution or inflow > 0:
                portfolio.deposit(inflow)
                reinvest = min(idle_dividends, max(0.0, float(portfolio.cash)))
                fills = broker.invest_cash(
                    checkpoint.date,
                    weights=self._weights,
                    prices=prices,
                    budget=max(0.0, float(portfolio.cash)) - reinvest,
                )
                if reinvest > 0:
                    dividend_fills = broker.invest_cash(
                        checkpoint.date,
                        weights=self._weights,
                        prices=prices,
                        budget=reinvest,
                        kind="DIVIDEND_REINVEST",
                    )
                    if dividend_fills:
                        idle_dividends = 0.0
                    fills.extend(dividend_fills)
                transactions.extend(fills)

            if checkpoint.rebalance:
                transactions.extend(broker.rebalance(checkpoint.date, weights=self._weights, prices=prices))
                idle_dividends = min(idle_dividends, max(0.0, float(portfolio.cash)))

            snapshot = self._snapshot(checkpoint, portfolio, prices, inflow=inflow)
            snapshots.append(snapshot)
            logger.debug(
                "Checkpoint %s %s: value=%.2f cash=%.2f",
                checkpoint.date.isoformat(),
                "+".join(checkpoint.kinds),
                snapshot.total_value,
                snapshot.cash_balance,
            )
            previous_date = checkpoint.date

        warnings.extend(merge_sparsity_events(events))
        for warning in warnings:
            logger.warning(warning.message)

        missed_amount = math.fsum(amount for _, amount in missed)
        coverage = ContributionCoverage(
            effective_start_date=priced_dates[0] if priced_dates else None,
            effective_end_date=priced_dates[-1] if priced_dates else None,
            planned_investment=planned,
            actual_investment=planned - missed_amount,
            missed_contributions=len(missed),
            missed_amount=missed_amount,
            missed_dates=tuple(d for d, _ in missed),
        )
        if missed:
            logger.warning(
                "%d contribution(s) totalling %.2f had no priced asset on schedule; cash carried forward.",
                len(missed),
                missed_amount,
            )

        return SimulationOutput(snapshots=snapshots, transactions=transactions, warnings=warnings, coverage=coverage)

    def _snapshot(
        self, checkpoint: Checkpoint, portfolio: Portfolio, prices: Dict[str, float], *, inflow: float
    ) -> PortfolioSnapshot:
        assets = sorted(set(self._weights) | set(portfolio.asset_ids()))
        holdings = portfolio.position_values(prices)
        per_asset_value = {asset_id: float(holdings.get(asset_id, 0.0)) for asset_id in assets}
        total_value = float(portfolio.cash) + math.fsum(per_asset_value.values())
        return PortfolioSnapshot(
            date=checkpoint.date,
            total_value=total_value,
            cash_balance=float(portfolio.cash),
            per_asset_value=per_asset_value,
            positions={asset_id: portfolio.shares(asset_id) for asset_id in assets},
            contribution=inflow,
            cumulative_contributions=float(portfolio.cumulative_contributions),
            cumulative_dividends=float(portfolio.cumulative_dividends),
            rebalanced=checkpoint.rebalance,
        )


def simulate(
    allocation_targets: Sequence[AllocationTarget],
    checkpoints: Sequence[Checkpoint],
    contribution_amount: float,
    prices: PriceInput,
    *,
    initial_capital: float = 0.0,
    max_staleness_days: int = 31,
) -> SimulationOutput:
    """
    Runs the simulation and returns snapshots, the transaction ledger and sparsity warnings.

    `prices` may be a PriceBook, a mapping of already-fetched histories, or a provider
    (prefetched here, with a lookback of max_staleness_days before the first checkpoint).
    """
    targets: Tuple[AllocationTarget, ...] = validate_allocation(allocation_targets)
    if not checkpoints:
        raise ConfigurationError("At least one checkpoint is required.")
    book = _as_price_book(
        prices, checkpoints, [t.asset_id for t in targets], lookback_days=max_staleness_days
    )
    engine = BacktestEngine(
        targets=targets,
        checkpoints=checkpoints,
        contribution_amount=contribution_amount,
        prices=book,
        initial_capital=initial_capital,
        max_staleness_days=max_staleness_days,
    )
    return engine.run()
