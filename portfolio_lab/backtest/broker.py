from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

from portfolio_lab.backtest.models import Transaction, TransactionKind
from portfolio_lab.backtest.portfolio import Portfolio

_EPS = 1e-12
# Trades smaller than this (in currency) are treated as rounding noise.
_MIN_TRADE_VALUE = 1e-9


def tradable_weights(weights: Dict[str, float], prices: Dict[str, float]) -> Dict[str, float]:
    """Target weights restricted to assets with a usable price, renormalized to sum to 1."""
    priced = {
        asset_id: float(w)
        for asset_id, w in weights.items()
        if w > 0 and prices.get(asset_id) is not None and prices[asset_id] > 0
    }
    total = math.fsum(priced.values())
    if total <= _EPS:
        return {}
    return {asset_id: w / total for asset_id, w in priced.items()}


@dataclass
class SimulatedBroker:
    """
    Fills orders at the checkpoint close with fractional shares and no costs.

    Every fill is returned as a Transaction so callers can keep the ledger.
    """

    portfolio: Portfolio

    def _settle_cash(self) -> None:
        # Absorb float residue so an exhausted balance reads as exactly zero.
        if abs(self.portfolio.cash) < _MIN_TRADE_VALUE:
            self.portfolio.cash = 0.0

    def _fill(self, as_of: date, asset_id: str, *, amount: float, price: float, kind: TransactionKind) -> Transaction:
        shares = amount / price
        self.portfolio.cash -= amount
        self.portfolio.set_shares(asset_id, self.portfolio.shares(asset_id) + shares)
        return Transaction(date=as_of, asset_id=asset_id, kind=kind, shares=shares, price=price, amount=amount)

    def invest_cash(
        self,
        as_of: date,
        *,
        weights: Dict[str, float],
        prices: Dict[str, float],
        budget: Optional[float] = None,
        kind: TransactionKind = "CONTRIBUTION_BUY",
    ) -> List[Transaction]:
        """
        Spends `budget` (the whole cash balance by default) across priced assets in
        proportion to target weights.

        Current holdings are ignored; drift is left for the rebalance step.
        """
        available = max(0.0, float(self.portfolio.cash))
        budget = available if budget is None else min(float(budget), available)
        targets = tradable_weights(weights, prices)
        if budget <= _MIN_TRADE_VALUE or not targets:
            return []

        fills: List[Transaction] = []
        for asset_id in sorted(targets):
            amount = budget * targets[asset_id]
            if amount <= _MIN_TRADE_VALUE:
                continue
            fills.append(
                self._fill(as_of, asset_id, amount=amount, price=prices[asset_id], kind=kind)
            )
        self._settle_cash()
        return fills

    def rebalance(self, as_of: date, *, weights: Dict[str, float], prices: Dict[str, float]) -> List[Transaction]:
        """
        Trades holdings back to target weights of the current total value.

        Sells run first so their proceeds fund the buys. If buys still exceed the
        available cash they are all scaled by the same factor, so cash never goes negative.
        """
        targets = tradable_weights(weights, prices)
        if not targets:
            return []

        priced_holdings = {
            asset_id: self.portfolio.shares(asset_id) * prices[asset_id]
            for asset_id in self.portfolio.asset_ids()
            if prices.get(asset_id) is not None and prices[asset_id] > 0
        }
        total_value = float(self.portfolio.cash) + math.fsum(priced_holdings.values())
        if total_value <= _MIN_TRADE_VALUE:
            return []

        deltas: Dict[str, float] = {}
        for asset_id in sorted(set(priced_holdings) | set(targets)):
            target_value = total_value * targets.get(asset_id, 0.0)
            delta = target_value - priced_holdings.get(asset_id, 0.0)
            if abs(delta) > _MIN_TRADE_VALUE:
                deltas[asset_id] = delta

        fills: List[Transaction] = []
        for asset_id, delta in deltas.items():
            if delta < 0:
                # Never sell more than is held.
                amount = max(delta, -priced_holdings.get(asset_id, 0.0))
                fills.append(
                    self._fill(as_of, asset_id, amount=amount, price=prices[asset_id], kind="REBALANCE_SELL")
                )

        buys = {asset_id: delta for asset_id, delta in deltas.items() if delta > 0}
        requested = math.fsum(buys.values())
        available = max(0.0, float(self.portfolio.cash))
        scale = 1.0 if requested <= available else available / requested
        for asset_id, delta in buys.items():
            amount = delta * scale
            if amount <= _MIN_TRADE_VALUE:
                continue
            fills.append(self._fill(as_of, asset_id, amount=amount, price=prices[asset_id], kind="REBALANCE_BUY"))

        self._settle_cash()
        return fills
