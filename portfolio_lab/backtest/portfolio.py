from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable

_EPS = 1e-12


@dataclass
class Portfolio:
    cash: float = 0.0
    positions: Dict[str, float] = field(default_factory=dict)  # asset_id -> shares
    cumulative_contributions: float = 0.0
    cumulative_dividends: float = 0.0

    def shares(self, asset_id: str) -> float:
        return float(self.positions.get(asset_id, 0.0))

    def set_shares(self, asset_id: str, shares: float) -> None:
        if abs(shares) < _EPS:
            self.positions.pop(asset_id, None)
        else:
            self.positions[asset_id] = float(shares)

    def asset_ids(self) -> Iterable[str]:
        return self.positions.keys()

    def deposit(self, amount: float) -> None:
        self.cash += float(amount)
        self.cumulative_contributions += float(amount)

    def credit_dividend(self, amount: float) -> None:
        self.cash += float(amount)
        self.cumulative_dividends += float(amount)

    def position_values(self, prices: Dict[str, float]) -> Dict[str, float]:
        values: Dict[str, float] = {}
        for asset_id, shares in self.positions.items():
            price = prices.get(asset_id)
            values[asset_id] = 0.0 if price is None else float(shares) * float(price)
        return values

    def equity(self, prices: Dict[str, float]) -> float:
        return float(self.cash) + sum(self.position_values(prices).values())
