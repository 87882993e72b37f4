from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _parse_bool(value: str) -> bool:
    text = value.strip().lower()
    if text in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "f", "no", "n", "off"}:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _get_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return _parse_bool(raw)


def _get_int(name: str, default: int, *, min_value: int = 1, max_value: int = 256) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid int for {name}={raw!r}") from exc
    if parsed < min_value or parsed > max_value:
        raise ValueError(f"{name} must be in [{min_value}, {max_value}] (got {parsed}).")
    return parsed


def _get_optional_int(name: str, *, min_value: int, max_value: int) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return _get_int(name, 0, min_value=min_value, max_value=max_value)


def _resolve_dir(raw: str) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        return (Path.cwd() / path).resolve(strict=False)
    return path.resolve(strict=False)


@dataclass(frozen=True)
class BacktestSettings:
    output_base_dir: Optional[Path] = None
    prefetch_workers: int = 4
    periods_per_year: int = 12
    # Overrides config.max_staleness_days when set.
    max_staleness_days: Optional[int] = None
    write_run_index: bool = True

    @staticmethod
    def from_env() -> "BacktestSettings":
        output_raw = os.environ.get("BACKTEST_OUTPUT_DIR", "").strip()
        return BacktestSettings(
            output_base_dir=_resolve_dir(output_raw) if output_raw else None,
            prefetch_workers=_get_int("BACKTEST_PREFETCH_WORKERS", 4, min_value=1, max_value=64),
            periods_per_year=_get_int("BACKTEST_PERIODS_PER_YEAR", 12, min_value=1, max_value=366),
            max_staleness_days=_get_optional_int("BACKTEST_MAX_STALENESS_DAYS", min_value=0, max_value=3660),
            write_run_index=_get_bool("BACKTEST_WRITE_RUN_INDEX", True),
        )
