"""
Decimal value rules for everything that leaves the engine.

`Number` is the value type of every amount in the data model. The simulation
fills it with floats; amounts are converted exactly once, at the output
boundary, through the helpers below so every artifact and wire payload shares
the same precision and rounding mode.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Union

Number = Union[int, float, Decimal]

CURRENCY_QUANTUM = Decimal("0.01")
SHARES_QUANTUM = Decimal("0.000001")
RATIO_QUANTUM = Decimal("0.000001")
PRICE_QUANTUM = Decimal("0.000001")


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"Cannot convert non-finite value {value!r} to Decimal.")
        # repr() keeps the shortest round-tripping form (0.1 -> "0.1").
        return Decimal(repr(value))
    return Decimal(value)


def quantize(value: Number, quantum: Decimal) -> Decimal:
    out = _to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP)
    # Normalize negative zero so "-0.00" never reaches a report.
    if out == 0:
        return abs(out)
    return out


def to_currency(value: Number) -> Decimal:
    return quantize(value, CURRENCY_QUANTUM)


def to_shares(value: Number) -> Decimal:
    return quantize(value, SHARES_QUANTUM)


def to_price(value: Number) -> Decimal:
    return quantize(value, PRICE_QUANTUM)


def to_ratio(value: Number) -> Decimal:
    return quantize(value, RATIO_QUANTUM)


def currency_map(values: Dict[str, Number]) -> Dict[str, Decimal]:
    return {str(k): to_currency(v) for k, v in sorted(values.items())}


def shares_map(values: Dict[str, Number]) -> Dict[str, Decimal]:
    return {str(k): to_shares(v) for k, v in sorted(values.items())}
