"""Candle normalization and the provider contract the orchestrator depends on."""

from __future__ import annotations

from typing import Protocol

import pandas as pd  # type: ignore[import-untyped]

CANDLE_COLUMNS = ["open_time", "open", "high", "low", "close", "volume"]
_NUMERIC_COLUMNS = ["open", "high", "low", "close", "volume"]


class CandleProvider(Protocol):
    """Anything that can return an OHLCV frame for a symbol and timeframe."""

    def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> pd.DataFrame: ...


def normalize_candles(df: pd.DataFrame) -> pd.DataFrame:
    """Validate an OHLCV frame and return it sorted ascending by open time.

    Raises:
        ValueError: when required columns are missing or no valid rows remain.
    """
    missing = [col for col in CANDLE_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"missing_candle_columns: {','.join(missing)}")

    out = df.copy()
    for col in _NUMERIC_COLUMNS:
        out[col] = pd.to_numeric(out[col], errors="coerce")
    if not pd.api.types.is_datetime64_any_dtype(out["open_time"]):
        out["open_time"] = pd.to_datetime(out["open_time"], unit="ms", utc=True)
    out = out.dropna(subset=_NUMERIC_COLUMNS)
    if out.empty:
        raise ValueError("empty_candles")

    out = out.sort_values("open_time", kind="stable")
    out = out.drop_duplicates(subset="open_time", keep="last")
    return out.reset_index(drop=True)
