from __future__ import annotations

import json
import math
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Literal, Optional, Tuple

import yaml

from portfolio_lab.backtest.errors import (
    AllocationSumError,
    ConfigurationError,
    InvalidContributionError,
    InvalidFrequencyError,
    InvalidPeriodError,
)

if TYPE_CHECKING:
    from portfolio_lab.backtest.schemas import BacktestRequest


RebalanceFrequency = Literal["monthly", "quarterly", "annual"]

REBALANCE_FREQUENCIES: Tuple[str, ...] = ("monthly", "quarterly", "annual")

MONTHS_PER_REBALANCE: Dict[str, int] = {"monthly": 1, "quarterly": 3, "annual": 12}

_FREQUENCY_ALIASES = {
    "month": "monthly",
    "quarter": "quarterly",
    "year": "annual",
    "yearly": "annual",
    "annually": "annual",
}

ALLOCATION_TOLERANCE = 0.01


def generate_run_id(*, now: Optional[datetime] = None, suffix_len: int = 6) -> str:
    timestamp = now or datetime.now(timezone.utc)
    date_part = timestamp.strftime("%Y%m%d")
    suffix = secrets.token_hex(max(1, suffix_len // 2))[:suffix_len]
    return f"RUN{date_part}-{suffix}"


def normalize_frequency(value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidFrequencyError(value, allowed=REBALANCE_FREQUENCIES)
    text = value.strip().lower()
    text = _FREQUENCY_ALIASES.get(text, text)
    if text not in REBALANCE_FREQUENCIES:
        raise InvalidFrequencyError(value, allowed=REBALANCE_FREQUENCIES)
    return text


def _parse_date(value: Any, *, field_name: str) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise ConfigurationError(f"{field_name} must be YYYY-MM-DD (got {value!r}).") from exc
    raise ConfigurationError(f"{field_name} must be a date or YYYY-MM-DD string (got {type(value)!r}).")


def _parse_float(value: Any, *, field_name: str, default: float) -> float:
    if value is None:
        return float(default)
    try:
        out = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{field_name} must be a number (got {value!r}).") from exc
    if math.isnan(out) or math.isinf(out):
        raise ConfigurationError(f"{field_name} must be finite (got {value!r}).")
    return out


_STRICT_ALLOWED_TOP_LEVEL_KEYS = {
    "run_name",
    "start_date",
    "end_date",
    "allocation",
    "monthly_contribution",
    "initial_capital",
    "rebalance_frequency",
    "risk_free_rate",
    "max_staleness_days",
    "data",
    "output",
}

_STRICT_ALLOWED_SECTIONS: Dict[str, set[str]] = {
    "data": {"price_path", "price_format"},
    "output": {"local_dir", "save_parquet", "save_transactions"},
}


def validate_config_dict_strict(data: Dict[str, Any]) -> None:
    """
    Best-effort strict validation to catch YAML typos early.

    Only validates known keys; full semantic validation still occurs in BacktestConfig.validate().
    """
    if not isinstance(data, dict):
        raise ConfigurationError("BacktestConfig must be an object.")

    unknown_top = set(data.keys()) - _STRICT_ALLOWED_TOP_LEVEL_KEYS
    if unknown_top:
        raise ConfigurationError(f"Unknown top-level config field(s): {sorted(unknown_top)}")

    for section, allowed in _STRICT_ALLOWED_SECTIONS.items():
        if section not in data or data[section] is None:
            continue
        payload = data[section]
        if not isinstance(payload, dict):
            raise ConfigurationError(f"{section} must be an object.")
        unknown = set(payload.keys()) - allowed
        if unknown:
            raise ConfigurationError(f"Unknown {section} field(s): {sorted(unknown)}")

    for i, item in enumerate(data.get("allocation") or []):
        if isinstance(item, dict):
            unknown = set(item.keys()) - {"asset_id", "target_weight"}
            if unknown:
                raise ConfigurationError(f"Unknown allocation[{i}] field(s): {sorted(unknown)}")


@dataclass(frozen=True)
class AllocationTarget:
    asset_id: str
    target_weight: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AllocationTarget":
        if not isinstance(data, dict):
            raise ConfigurationError("allocation entries must be objects with asset_id and target_weight.")
        asset_id = data.get("asset_id")
        if not isinstance(asset_id, str) or not asset_id.strip():
            raise ConfigurationError("allocation.asset_id must be a non-empty string.")
        weight = _parse_float(data.get("target_weight"), field_name=f"allocation[{asset_id}].target_weight", default=math.nan)
        return AllocationTarget(asset_id=asset_id.strip(), target_weight=weight)

    def to_dict(self) -> Dict[str, Any]:
        return {"asset_id": self.asset_id, "target_weight": self.target_weight}


def validate_allocation(
    targets: Iterable[AllocationTarget], *, tolerance: float = ALLOCATION_TOLERANCE
) -> Tuple[AllocationTarget, ...]:
    """
    Checks the allocation once, before a run starts.

    Zero-weight targets are dropped. Returns the effective, immutable target tuple.
    """
    seen: set[str] = set()
    effective: List[AllocationTarget] = []
    for target in targets:
        if target.asset_id in seen:
            raise ConfigurationError(f"Duplicate allocation entry for {target.asset_id!r}.")
        seen.add(target.asset_id)
        weight = float(target.target_weight)
        if math.isnan(weight) or weight < 0 or weight > 1.0:
            raise ConfigurationError(
                f"allocation[{target.asset_id}].target_weight must be in (0, 1] (got {target.target_weight!r})."
            )
        if weight == 0:
            continue
        effective.append(target)

    weights = {t.asset_id: float(t.target_weight) for t in effective}
    total = math.fsum(weights.values())
    if not effective or abs(total - 1.0) > tolerance:
        raise AllocationSumError(total, tolerance=tolerance, weights=weights)
    return tuple(effective)


@dataclass(frozen=True)
class DataConfig:
    price_path: Optional[str] = None
    price_format: Literal["auto", "csv", "parquet"] = "auto"

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "DataConfig":
        price_format = str(data.get("price_format") or "auto").lower()
        if price_format not in {"auto", "csv", "parquet"}:
            raise ConfigurationError("data.price_format must be 'auto', 'csv' or 'parquet'.")
        price_path = data.get("price_path")
        return DataConfig(
            price_path=str(price_path) if price_path else None,
            price_format=price_format,  # type: ignore[arg-type]
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"price_path": self.price_path, "price_format": self.price_format}


@dataclass(frozen=True)
class OutputConfig:
    local_dir: str = "./backtest_results"
    save_parquet: bool = True
    save_transactions: bool = True

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "OutputConfig":
        return OutputConfig(
            local_dir=str(data.get("local_dir") or "./backtest_results"),
            save_parquet=bool(data.get("save_parquet", True)),
            save_transactions=bool(data.get("save_transactions", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_dir": self.local_dir,
            "save_parquet": self.save_parquet,
            "save_transactions": self.save_transactions,
        }


@dataclass(frozen=True)
class BacktestConfig:
    start_date: date
    end_date: date
    allocation: Tuple[AllocationTarget, ...]
    monthly_contribution: float = 0.0
    rebalance_frequency: str = "monthly"
    initial_capital: float = 0.0
    risk_free_rate: float = 0.0
    max_staleness_days: int = 31
    output: OutputConfig = field(default_factory=OutputConfig)
    data: Optional[DataConfig] = None
    run_name: Optional[str] = None

    @property
    def asset_ids(self) -> List[str]:
        return [t.asset_id for t in self.allocation]

    @property
    def weights(self) -> Dict[str, float]:
        return {t.asset_id: float(t.target_weight) for t in self.allocation}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BacktestConfig":
        if not isinstance(data, dict):
            raise ConfigurationError("BacktestConfig must be an object.")

        raw_allocation = data.get("allocation")
        if not isinstance(raw_allocation, list) or not raw_allocation:
            raise ConfigurationError("allocation must be a non-empty list of {asset_id, target_weight}.")

        data_cfg = data.get("data")
        run_name = data.get("run_name")
        try:
            max_staleness_days = int(data.get("max_staleness_days", 31))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("max_staleness_days must be an integer.") from exc

        cfg = BacktestConfig(
            run_name=str(run_name) if run_name else None,
            start_date=_parse_date(data.get("start_date"), field_name="start_date"),
            end_date=_parse_date(data.get("end_date"), field_name="end_date"),
            allocation=tuple(AllocationTarget.from_dict(item) for item in raw_allocation),
            monthly_contribution=_parse_float(
                data.get("monthly_contribution"), field_name="monthly_contribution", default=0.0
            ),
            rebalance_frequency=normalize_frequency(data.get("rebalance_frequency", "monthly")),
            initial_capital=_parse_float(data.get("initial_capital"), field_name="initial_capital", default=0.0),
            risk_free_rate=_parse_float(data.get("risk_free_rate"), field_name="risk_free_rate", default=0.0),
            max_staleness_days=max_staleness_days,
            output=OutputConfig.from_dict(data.get("output") or {}),
            data=DataConfig.from_dict(data_cfg) if isinstance(data_cfg, dict) else None,
        )
        cfg.validate()
        return cfg

    @staticmethod
    def from_yaml(path: str | Path, *, strict: bool = False) -> "BacktestConfig":
        raw = Path(path).read_text(encoding="utf-8")
        data = yaml.safe_load(raw) or {}
        if strict:
            validate_config_dict_strict(data)
        return BacktestConfig.from_dict(data)

    @staticmethod
    def from_request(request: "BacktestRequest", *, run_name: Optional[str] = None) -> "BacktestConfig":
        payload = request.model_dump(mode="python")
        return BacktestConfig.from_dict(
            {
                "run_name": run_name,
                "start_date": payload["start_date"],
                "end_date": payload["end_date"],
                "allocation": [
                    {"asset_id": t["asset_id"], "target_weight": float(t["target_weight"])}
                    for t in payload["allocation_targets"]
                ],
                "monthly_contribution": float(payload["monthly_contribution"]),
                "initial_capital": float(payload.get("initial_capital") or 0),
                "rebalance_frequency": payload["rebalance_frequency"],
                "risk_free_rate": float(payload.get("risk_free_rate") or 0),
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "run_name": self.run_name,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "allocation": [t.to_dict() for t in self.allocation],
            "monthly_contribution": self.monthly_contribution,
            "initial_capital": self.initial_capital,
            "rebalance_frequency": self.rebalance_frequency,
            "risk_free_rate": self.risk_free_rate,
            "max_staleness_days": self.max_staleness_days,
            "output": self.output.to_dict(),
        }
        if self.data:
            out["data"] = self.data.to_dict()
        return out

    def to_yaml(self, path: str | Path) -> None:
        Path(path).write_text(yaml.safe_dump(self.to_dict(), sort_keys=False), encoding="utf-8")

    def canonical_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def validate(self) -> None:
        if self.start_date >= self.end_date:
            raise InvalidPeriodError(self.start_date, self.end_date)
        normalize_frequency(self.rebalance_frequency)
        if self.monthly_contribution < 0:
            raise InvalidContributionError(
                f"monthly_contribution must be >= 0 (got {self.monthly_contribution})."
            )
        if self.initial_capital < 0:
            raise InvalidContributionError(f"initial_capital must be >= 0 (got {self.initial_capital}).")
        if self.monthly_contribution == 0 and self.initial_capital == 0:
            raise InvalidContributionError(
                "Nothing to invest: monthly_contribution and initial_capital are both zero."
            )
        if self.risk_free_rate <= -1.0:
            raise ConfigurationError("risk_free_rate must be > -1.")
        if self.max_staleness_days < 0:
            raise ConfigurationError("max_staleness_days must be >= 0.")
        validate_allocation(self.allocation)
