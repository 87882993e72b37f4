from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from portfolio_lab.backtest.config import normalize_frequency
from portfolio_lab.backtest.money import (
    currency_map,
    shares_map,
    to_currency,
    to_price,
    to_ratio,
    to_shares,
)

if TYPE_CHECKING:
    from portfolio_lab.backtest.models import BacktestResult


class AllocationTargetRequest(BaseModel):
    asset_id: str = Field(min_length=1)
    target_weight: Decimal = Field(ge=0, le=1)


class BacktestRequest(BaseModel):
    allocation_targets: List[AllocationTargetRequest] = Field(min_length=1)
    start_date: date
    end_date: date
    monthly_contribution: Decimal = Field(ge=0)
    rebalance_frequency: str = "monthly"
    initial_capital: Decimal = Field(default=Decimal("0"), ge=0)
    risk_free_rate: Decimal = Decimal("0")

    @field_validator("rebalance_frequency")
    @classmethod
    def _normalize_frequency(cls, value: str) -> str:
        return normalize_frequency(value)

    @model_validator(mode="after")
    def _validate_period(self) -> "BacktestRequest":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date.")
        return self


class SnapshotResponse(BaseModel):
    date: date
    total_value: Decimal
    cash_balance: Decimal
    per_asset_value: Dict[str, Decimal]
    positions: Dict[str, Decimal]
    contribution: Decimal
    cumulative_contributions: Decimal
    cumulative_dividends: Decimal
    rebalanced: bool


class MetricsResponse(BaseModel):
    sharpe_ratio: Decimal
    max_drawdown: Decimal
    volatility: Decimal
    consistency: Decimal
    total_invested: Decimal
    final_value: Decimal
    total_return: Decimal
    annualized_return: Decimal
    positive_periods: int
    negative_periods: int
    total_dividends: Decimal
    periods: int


class AttributionResponse(BaseModel):
    asset_id: str
    direct_contribution: Decimal
    dividends: Decimal
    rebalance_flow: Decimal
    price_appreciation: Decimal
    final_value: Decimal
    final_shares: Decimal
    dividends_paid: Decimal
    total_return: Decimal


class TransactionResponse(BaseModel):
    date: date
    asset_id: str
    kind: str
    shares: Decimal
    price: Decimal
    amount: Decimal


class WarningResponse(BaseModel):
    asset_id: str
    kind: str
    start_date: date
    end_date: date
    last_observation_date: Optional[date] = None
    checkpoints: int
    message: str


class DataAvailabilityResponse(BaseModel):
    asset_id: str
    available_from: Optional[date] = None
    available_to: Optional[date] = None
    observations: int
    observed_months: int
    expected_months: int
    missing_months: int
    invalid_rows: int
    quality: str
    warnings: List[str] = Field(default_factory=list)


class CoverageResponse(BaseModel):
    effective_start_date: Optional[date] = None
    effective_end_date: Optional[date] = None
    planned_investment: Decimal
    actual_investment: Decimal
    missed_contributions: int
    missed_amount: Decimal
    missed_dates: List[date] = Field(default_factory=list)


class BacktestResultResponse(BaseModel):
    run_id: Optional[str] = None
    snapshots: List[SnapshotResponse]
    metrics: MetricsResponse
    per_asset_attribution: Dict[str, AttributionResponse]
    transactions: List[TransactionResponse] = Field(default_factory=list)
    warnings: List[WarningResponse] = Field(default_factory=list)
    data_quality: List[DataAvailabilityResponse] = Field(default_factory=list)
    coverage: Optional[CoverageResponse] = None

    @classmethod
    def from_result(cls, result: "BacktestResult") -> "BacktestResultResponse":
        m = result.metrics
        c = result.coverage
        coverage = None
        if c is not None:
            coverage = CoverageResponse(
                effective_start_date=c.effective_start_date,
                effective_end_date=c.effective_end_date,
                planned_investment=to_currency(c.planned_investment),
                actual_investment=to_currency(c.actual_investment),
                missed_contributions=c.missed_contributions,
                missed_amount=to_currency(c.missed_amount),
                missed_dates=list(c.missed_dates),
            )
        return cls(
            run_id=result.run_id,
            snapshots=[
                SnapshotResponse(
                    date=s.date,
                    total_value=to_currency(s.total_value),
                    cash_balance=to_currency(s.cash_balance),
                    per_asset_value=currency_map(s.per_asset_value),
                    positions=shares_map(s.positions),
                    contribution=to_currency(s.contribution),
                    cumulative_contributions=to_currency(s.cumulative_contributions),
                    cumulative_dividends=to_currency(s.cumulative_dividends),
                    rebalanced=s.rebalanced,
                )
                for s in result.snapshots
            ],
            metrics=MetricsResponse(
                sharpe_ratio=to_ratio(m.sharpe_ratio),
                max_drawdown=to_ratio(m.max_drawdown),
                volatility=to_ratio(m.volatility),
                consistency=to_ratio(m.consistency),
                total_invested=to_currency(m.total_invested),
                final_value=to_currency(m.final_value),
                total_return=to_ratio(m.total_return),
                annualized_return=to_ratio(m.annualized_return),
                positive_periods=m.positive_periods,
                negative_periods=m.negative_periods,
                total_dividends=to_currency(m.total_dividends),
                periods=m.periods,
            ),
            per_asset_attribution={
                asset_id: AttributionResponse(
                    asset_id=asset_id,
                    direct_contribution=to_currency(a.direct_contribution),
                    dividends=to_currency(a.dividends),
                    rebalance_flow=to_currency(a.rebalance_flow),
                    price_appreciation=to_currency(a.price_appreciation),
                    final_value=to_currency(a.final_value),
                    final_shares=to_shares(a.final_shares),
                    dividends_paid=to_currency(a.dividends_paid),
                    total_return=to_ratio(a.total_return),
                )
                for asset_id, a in sorted(result.attribution.items())
            },
            transactions=[
                TransactionResponse(
                    date=t.date,
                    asset_id=t.asset_id,
                    kind=t.kind,
                    shares=to_shares(t.shares),
                    price=to_price(t.price),
                    amount=to_currency(t.amount),
                )
                for t in result.transactions
            ],
            warnings=[WarningResponse(**w.to_dict()) for w in result.warnings],
            data_quality=[DataAvailabilityResponse(**d.to_dict()) for d in result.data_quality],
            coverage=coverage,
        )
