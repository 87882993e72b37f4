from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Tuple

from portfolio_lab.backtest.money import Number

if TYPE_CHECKING:
    from portfolio_lab.backtest.config import BacktestConfig
    from portfolio_lab.backtest.schemas import BacktestResultResponse


CheckpointKind = Literal["CONTRIBUTION", "REBALANCE", "VALUATION"]
TransactionKind = Literal["CONTRIBUTION_BUY", "DIVIDEND_REINVEST", "REBALANCE_BUY", "REBALANCE_SELL", "DIVIDEND"]
WarningKind = Literal["no_price_history", "missing_price", "stale_price"]
DataQuality = Literal["excellent", "good", "fair", "poor"]


@dataclass(frozen=True)
class PriceObservation:
    asset_id: str
    date: date
    close: float
    dividend: float = 0.0


@dataclass(frozen=True)
class Checkpoint:
    date: date
    index: int
    contribution: bool = False
    rebalance: bool = False

    @property
    def kinds(self) -> Tuple[CheckpointKind, ...]:
        kinds: List[CheckpointKind] = []
        if self.contribution:
            kinds.append("CONTRIBUTION")
        if self.rebalance:
            kinds.append("REBALANCE")
        return tuple(kinds) or ("VALUATION",)


@dataclass(frozen=True)
class PortfolioSnapshot:
    date: date
    total_value: Number
    cash_balance: Number
    per_asset_value: Dict[str, Number]
    positions: Dict[str, Number] = field(default_factory=dict)  # asset_id -> shares
    contribution: Number = 0.0  # external cash added at this checkpoint
    cumulative_contributions: Number = 0.0
    cumulative_dividends: Number = 0.0
    rebalanced: bool = False

    def weight(self, asset_id: str) -> float:
        if self.total_value <= 0:
            return 0.0
        return float(self.per_asset_value.get(asset_id, 0.0)) / float(self.total_value)


@dataclass(frozen=True)
class Transaction:
    date: date
    asset_id: str
    kind: TransactionKind
    shares: float
    price: float
    amount: float  # cash into the asset; negative for sells, dividend cash for DIVIDEND


@dataclass(frozen=True)
class SparsityWarning:
    asset_id: str
    kind: WarningKind
    start_date: date
    end_date: date
    last_observation_date: Optional[date] = None
    checkpoints: int = 1

    @property
    def message(self) -> str:
        span = (
            self.start_date.isoformat()
            if self.start_date == self.end_date
            else f"{self.start_date.isoformat()} to {self.end_date.isoformat()}"
        )
        if self.kind == "no_price_history":
            return f"{self.asset_id}: no price history in the requested range; excluded from allocation."
        if self.kind == "missing_price":
            return f"{self.asset_id}: no price available yet ({span}); excluded from allocation at those checkpoints."
        last = self.last_observation_date.isoformat() if self.last_observation_date else "n/a"
        return f"{self.asset_id}: price gap {span}; carried forward last close from {last}."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "kind": self.kind,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "last_observation_date": self.last_observation_date.isoformat() if self.last_observation_date else None,
            "checkpoints": self.checkpoints,
            "message": self.message,
        }


@dataclass(frozen=True)
class DataAvailability:
    asset_id: str
    available_from: Optional[date]
    available_to: Optional[date]
    observations: int
    observed_months: int
    expected_months: int
    missing_months: int
    invalid_rows: int
    quality: DataQuality
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "available_from": self.available_from.isoformat() if self.available_from else None,
            "available_to": self.available_to.isoformat() if self.available_to else None,
            "observations": self.observations,
            "observed_months": self.observed_months,
            "expected_months": self.expected_months,
            "missing_months": self.missing_months,
            "invalid_rows": self.invalid_rows,
            "quality": self.quality,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class PerformanceMetrics:
    sharpe_ratio: float
    max_drawdown: float
    volatility: float
    consistency: float
    total_invested: float = 0.0
    final_value: float = 0.0
    total_return: float = 0.0
    annualized_return: float = 0.0
    positive_periods: int = 0
    negative_periods: int = 0
    total_dividends: float = 0.0
    periods: int = 0


@dataclass(frozen=True)
class AssetAttribution:
    asset_id: str
    direct_contribution: float
    dividends: float
    rebalance_flow: float
    price_appreciation: float
    final_value: float
    final_shares: float
    dividends_paid: float = 0.0  # income generated by this asset's shares

    @property
    def invested(self) -> float:
        """Cost basis: every cash flow that bought into the asset."""
        return self.direct_contribution + self.dividends + self.rebalance_flow

    @property
    def total_return(self) -> float:
        if self.invested <= 0:
            return 0.0
        return (self.final_value + self.dividends_paid) / self.invested - 1.0


@dataclass(frozen=True)
class ContributionCoverage:
    """
    How much of the scheduled cash went to work on its own checkpoint.

    A contribution is missed when no target asset had a price at its checkpoint;
    the cash stays in the balance and is invested at the next priced contribution.
    """

    effective_start_date: Optional[date]
    effective_end_date: Optional[date]
    planned_investment: float
    actual_investment: float
    missed_contributions: int = 0
    missed_amount: float = 0.0
    missed_dates: Tuple[date, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effective_start_date": self.effective_start_date.isoformat() if self.effective_start_date else None,
            "effective_end_date": self.effective_end_date.isoformat() if self.effective_end_date else None,
            "planned_investment": self.planned_investment,
            "actual_investment": self.actual_investment,
            "missed_contributions": self.missed_contributions,
            "missed_amount": self.missed_amount,
            "missed_dates": [d.isoformat() for d in self.missed_dates],
        }


@dataclass(frozen=True)
class SimulationOutput:
    snapshots: List[PortfolioSnapshot]
    transactions: List[Transaction]
    warnings: List[SparsityWarning]
    coverage: Optional[ContributionCoverage] = None


@dataclass(frozen=True)
class BacktestResult:
    snapshots: Tuple[PortfolioSnapshot, ...]
    metrics: PerformanceMetrics
    attribution: Dict[str, AssetAttribution]
    transactions: Tuple[Transaction, ...] = ()
    warnings: Tuple[SparsityWarning, ...] = ()
    data_quality: Tuple[DataAvailability, ...] = ()
    coverage: Optional[ContributionCoverage] = None
    config: Optional["BacktestConfig"] = None
    run_id: Optional[str] = None

    @property
    def final_snapshot(self) -> PortfolioSnapshot:
        return self.snapshots[-1]

    def to_response(self) -> "BacktestResultResponse":
        from portfolio_lab.backtest.schemas import BacktestResultResponse

        return BacktestResultResponse.from_result(self)

    def to_dict(self) -> Dict[str, Any]:
        return self.to_response().model_dump(mode="json")
