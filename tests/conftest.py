import os
import sys
from datetime import date
from typing import List, Sequence

import pytest

# Add project root to sys.path if not picked up by pythonpath
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from portfolio_lab.backtest.models import PriceObservation


def monthly_history(asset_id: str, closes: Sequence[float], *, year: int = 2020, month: int = 1, day: int = 1) -> List[PriceObservation]:
    """One observation per month starting at (year, month, day)."""
    out = []
    for i, close in enumerate(closes):
        total = year * 12 + (month - 1) + i
        out.append(PriceObservation(asset_id=asset_id, date=date(total // 12, total % 12 + 1, day), close=float(close)))
    return out


@pytest.fixture
def make_history():
    return monthly_history
