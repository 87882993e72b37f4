from __future__ import annotations

from collections import defaultdict
from typing import Dict, Sequence

from portfolio_lab.backtest.models import AssetAttribution, PortfolioSnapshot, Transaction


def compute_attribution(
    snapshots: Sequence[PortfolioSnapshot], transactions: Sequence[Transaction]
) -> Dict[str, AssetAttribution]:
    """
    Splits each asset's final value into the cash-flow sources that built it.

    direct_contribution: contribution purchases into the asset.
    dividends: dividend cash reinvested into the asset (DIVIDEND_REINVEST buys),
        whichever asset paid it.
    rebalance_flow: rebalance buys minus rebalance sells (negative for trimmed winners).
    price_appreciation: the residual, final value minus the three flows above.

    The income an asset paid out on its own shares is reported separately as
    dividends_paid and is not a component. The four components sum to the asset's
    value in the last snapshot, and with flat prices the residual is zero.
    """
    if not snapshots:
        return {}

    final = snapshots[-1]
    direct: Dict[str, float] = defaultdict(float)
    reinvested: Dict[str, float] = defaultdict(float)
    paid: Dict[str, float] = defaultdict(float)
    rebalance: Dict[str, float] = defaultdict(float)

    for txn in transactions:
        if txn.kind == "CONTRIBUTION_BUY":
            direct[txn.asset_id] += txn.amount
        elif txn.kind == "DIVIDEND_REINVEST":
            reinvested[txn.asset_id] += txn.amount
        elif txn.kind == "DIVIDEND":
            paid[txn.asset_id] += txn.amount
        elif txn.kind in ("REBALANCE_BUY", "REBALANCE_SELL"):
            rebalance[txn.asset_id] += txn.amount

    asset_ids = set(final.per_asset_value) | set(direct) | set(reinvested) | set(paid) | set(rebalance)
    out: Dict[str, AssetAttribution] = {}
    for asset_id in sorted(asset_ids):
        final_value = float(final.per_asset_value.get(asset_id, 0.0))
        appreciation = final_value - direct[asset_id] - reinvested[asset_id] - rebalance[asset_id]
        out[asset_id] = AssetAttribution(
            asset_id=asset_id,
            direct_contribution=direct[asset_id],
            dividends=reinvested[asset_id],
            rebalance_flow=rebalance[asset_id],
            price_appreciation=appreciation,
            final_value=final_value,
            final_shares=float(final.positions.get(asset_id, 0.0)),
            dividends_paid=paid[asset_id],
        )
    return out
