from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from filelock import FileLock

from portfolio_lab.backtest.config import BacktestConfig
from portfolio_lab.backtest.models import BacktestResult
from portfolio_lab.backtest.money import to_currency, to_price, to_ratio, to_shares

logger = logging.getLogger(__name__)


def _snapshot_rows(result: BacktestResult) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for snap in result.snapshots:
        row: Dict[str, Any] = {
            "date": snap.date.isoformat(),
            "total_value": float(to_currency(snap.total_value)),
            "cash_balance": float(to_currency(snap.cash_balance)),
            "contribution": float(to_currency(snap.contribution)),
            "cumulative_contributions": float(to_currency(snap.cumulative_contributions)),
            "cumulative_dividends": float(to_currency(snap.cumulative_dividends)),
            "rebalanced": bool(snap.rebalanced),
        }
        for asset_id in sorted(snap.per_asset_value):
            row[f"value_{asset_id}"] = float(to_currency(snap.per_asset_value[asset_id]))
            row[f"shares_{asset_id}"] = float(to_shares(snap.positions.get(asset_id, 0.0)))
        rows.append(row)
    return rows


def _transaction_rows(result: BacktestResult) -> List[Dict[str, Any]]:
    return [
        {
            "date": txn.date.isoformat(),
            "asset_id": txn.asset_id,
            "kind": txn.kind,
            "shares": float(to_shares(txn.shares)),
            "price": float(to_price(txn.price)),
            "amount": float(to_currency(txn.amount)),
        }
        for txn in result.transactions
    ]


def _attribution_rows(result: BacktestResult) -> List[Dict[str, Any]]:
    return [
        {
            "asset_id": asset_id,
            "direct_contribution": float(to_currency(a.direct_contribution)),
            "dividends": float(to_currency(a.dividends)),
            "rebalance_flow": float(to_currency(a.rebalance_flow)),
            "price_appreciation": float(to_currency(a.price_appreciation)),
            "final_value": float(to_currency(a.final_value)),
            "final_shares": float(to_shares(a.final_shares)),
            "dividends_paid": float(to_currency(a.dividends_paid)),
            "total_return": float(to_ratio(a.total_return)),
        }
        for asset_id, a in sorted(result.attribution.items())
    ]


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str), encoding="utf-8")


@dataclass
class Reporter:
    config: BacktestConfig
    run_id: str
    output_dir: Path
    write_run_index: bool = True
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @staticmethod
    def create(
        config: BacktestConfig,
        *,
        run_id: str,
        output_dir: Optional[Path] = None,
        write_run_index: bool = True,
    ) -> "Reporter":
        base = Path(output_dir) if output_dir else Path(config.output.local_dir)
        run_dir = base / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        return Reporter(config=config, run_id=run_id, output_dir=run_dir, write_run_index=write_run_index)

    def write_artifacts(self, result: BacktestResult) -> Dict[str, Any]:
        """Writes every artifact for one finished run and returns the metrics payload."""
        if not result.snapshots:
            raise ValueError("No snapshots were recorded; cannot report.")

        self.config.to_yaml(self.output_dir / "config.yaml")

        snapshots_df = pd.DataFrame(_snapshot_rows(result))
        snapshots_df.to_csv(self.output_dir / "snapshots.csv", index=False)
        if self.config.output.save_parquet:
            snapshots_df.to_parquet(self.output_dir / "snapshots.parquet", index=False)

        if self.config.output.save_transactions:
            transactions_df = pd.DataFrame(
                _transaction_rows(result),
                columns=["date", "asset_id", "kind", "shares", "price", "amount"],
            )
            transactions_df.to_csv(self.output_dir / "transactions.csv", index=False)

        pd.DataFrame(_attribution_rows(result)).to_csv(self.output_dir / "attribution.csv", index=False)

        response = result.to_dict()
        metrics = dict(response["metrics"])
        if response.get("coverage"):
            metrics.update(response["coverage"])
        metrics.update(
            {
                "run_id": self.run_id,
                "run_name": self.config.run_name,
                "start_date": self.config.start_date.isoformat(),
                "end_date": self.config.end_date.isoformat(),
                "submitted_at": self.submitted_at.isoformat(),
            }
        )
        _write_json(self.output_dir / "metrics.json", metrics)
        _write_json(self.output_dir / "warnings.json", response["warnings"])
        _write_json(self.output_dir / "data_quality.json", response["data_quality"])
        _write_json(self.output_dir / "result.json", response)

        if self.write_run_index:
            self._update_run_index(result)

        logger.info("Wrote backtest artifacts: run_id=%s dir=%s", self.run_id, self.output_dir)
        return metrics

    def _update_run_index(self, result: BacktestResult) -> None:
        index_path = self.output_dir.parent / "run_index.csv"
        lock = FileLock(str(index_path) + ".lock")
        m = result.metrics
        row = {
            "run_id": self.run_id,
            "run_name": self.config.run_name or "",
            "submitted_at": self.submitted_at.isoformat(),
            "start_date": self.config.start_date.isoformat(),
            "end_date": self.config.end_date.isoformat(),
            "rebalance_frequency": self.config.rebalance_frequency,
            "total_invested": float(to_currency(m.total_invested)),
            "final_value": float(to_currency(m.final_value)),
            "total_return": float(to_ratio(m.total_return)),
            "sharpe_ratio": float(to_ratio(m.sharpe_ratio)),
            "max_drawdown": float(to_ratio(m.max_drawdown)),
            "warnings": len(result.warnings),
        }

        with lock:
            if index_path.exists():
                df = pd.read_csv(index_path)
                df = pd.concat([df, pd.DataFrame([row])], ignore_index=True)
            else:
                df = pd.DataFrame([row])
            df.to_csv(index_path, index=False)
