"""Oscillator, impulse and structure analytics over OHLCV frames.

All functions take an ascending pandas frame with ``open_time, open, high,
low, close, volume`` columns. Row positions are used as indices throughout,
so an oscillator series is indexed by the candle row it belongs to.
"""

from __future__ import annotations

import math
from typing import Protocol

import numpy as np
import pandas as pd  # type: ignore[import-untyped]

from impulse_trader.types import (
    Direction,
    Divergence,
    DivergenceStrength,
    Impulse,
    ImpulseDirection,
    OscillatorTrend,
    SwingPoint,
    TrendSignal,
    ops_for,
)

FIB_RATIOS = (0.236, 0.382, 0.5, 0.618, 0.65, 0.786)


class Analytics(Protocol):
    """The analytics the setup detector depends on."""

    def oscillator(self, candles: pd.DataFrame, period: int) -> pd.Series: ...

    def impulse(
        self,
        candles: pd.DataFrame,
        min_percent: float,
        min_dominance: float,
        lookback: int,
    ) -> Impulse | None: ...

    def trend(self, candles: pd.DataFrame) -> TrendSignal: ...

    def divergence(
        self,
        candles: pd.DataFrame,
        oscillator: pd.Series,
        lookback: int,
        swing_lookback: int,
    ) -> Divergence | None: ...


class DefaultAnalytics:
    """Analytics backed by the functions in this module."""

    def oscillator(self, candles: pd.DataFrame, period: int) -> pd.Series:
        return compute_oscillator(candles, period)

    def impulse(
        self,
        candles: pd.DataFrame,
        min_percent: float,
        min_dominance: float,
        lookback: int,
    ) -> Impulse | None:
        return detect_impulse(candles, min_percent, min_dominance, lookback)

    def trend(self, candles: pd.DataFrame) -> TrendSignal:
        return detect_trend(candles)

    def divergence(
        self,
        candles: pd.DataFrame,
        oscillator: pd.Series,
        lookback: int,
        swing_lookback: int,
    ) -> Divergence | None:
        return detect_divergence(candles, oscillator, lookback, swing_lookback)


def compute_oscillator(candles: pd.DataFrame, period: int = 14) -> pd.Series:
    """Wilder RSI.

    Seeded with the simple average of the first ``period`` changes, so the
    first value belongs to row ``period``. A zero average loss reads 100.
    Returns an empty series when there are fewer than ``period + 1`` candles.
    """
    closes = candles["close"].to_numpy(dtype=float)
    if len(closes) < period + 1:
        return pd.Series(dtype=float)

    deltas = np.diff(closes)
    gains = np.where(deltas > 0, deltas, 0.0)
    losses = np.where(deltas < 0, -deltas, 0.0)

    avg_gain = float(gains[:period].mean())
    avg_loss = float(losses[:period].mean())
    values = [_rsi_value(avg_gain, avg_loss)]
    for i in range(period, len(deltas)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period
        values.append(_rsi_value(avg_gain, avg_loss))

    return pd.Series(values, index=range(period, len(closes)), dtype=float)


def _rsi_value(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def detect_impulse(
    candles: pd.DataFrame,
    min_percent: float,
    min_dominance: float = 0.0,
    lookback: int = 50,
) -> Impulse | None:
    """Find the dominant swing in the last ``lookback`` candles.

    The highest high and lowest low of the window bound the impulse: low
    before high is an ``up`` impulse, high before low a ``down`` one. The
    move is measured from the start price. Dominance is the share of closes
    from the start row to the end row that moved in the impulse direction
    against the previous close. Indices refer to rows of ``candles``.
    """
    n = len(candles)
    if n < lookback:
        return None

    offset = n - lookback
    highs = candles["high"].to_numpy(dtype=float)[offset:]
    lows = candles["low"].to_numpy(dtype=float)[offset:]
    high_idx = int(np.argmax(highs)) + offset
    low_idx = int(np.argmin(lows)) + offset
    high_price = float(highs[high_idx - offset])
    low_price = float(lows[low_idx - offset])

    if high_idx > low_idx:
        direction: ImpulseDirection = "up"
        start_idx, end_idx, start_price, end_price = low_idx, high_idx, low_price, high_price
    elif low_idx > high_idx:
        direction = "down"
        start_idx, end_idx, start_price, end_price = high_idx, low_idx, high_price, low_price
    else:
        return None

    if start_price <= 0:
        return None
    percent_move = abs(end_price - start_price) / start_price * 100.0
    if percent_move < min_percent:
        return None

    dominance = impulse_dominance(candles, start_idx, end_idx, direction)
    if dominance < min_dominance:
        return None

    times = candles["open_time"]
    return Impulse(
        start_idx=start_idx,
        end_idx=end_idx,
        start_price=start_price,
        end_price=end_price,
        percent_move=percent_move,
        dominance=dominance,
        direction=direction,
        start_time=_time_str(times.iloc[start_idx]),
        end_time=_time_str(times.iloc[end_idx]),
    )


def impulse_dominance(
    candles: pd.DataFrame, start_idx: int, end_idx: int, direction: ImpulseDirection
) -> float:
    """Share of closes in ``(start_idx, end_idx]`` moving with the impulse."""
    if end_idx <= start_idx:
        return 0.0
    closes = candles["close"].to_numpy(dtype=float)[start_idx : end_idx + 1]
    moves = np.diff(closes)
    with_impulse = moves > 0 if direction == "up" else moves < 0
    return float(with_impulse.sum()) / float(len(moves))


def find_swing_lows(
    candles: pd.DataFrame, lookback: int = 3, max_swings: int = 3
) -> list[SwingPoint]:
    """Most recent swing lows: lows strictly below ``lookback`` neighbours on both sides."""
    lows = candles["low"].to_numpy(dtype=float)
    rows = _swing_rows(lows, lookback, lower=True)
    return [_swing_point(candles, lows, i) for i in rows[-max_swings:]]


def find_swing_highs(
    candles: pd.DataFrame, lookback: int = 3, max_swings: int = 3
) -> list[SwingPoint]:
    """Most recent swing highs: highs strictly above ``lookback`` neighbours on both sides."""
    highs = candles["high"].to_numpy(dtype=float)
    rows = _swing_rows(highs, lookback, lower=False)
    return [_swing_point(candles, highs, i) for i in rows[-max_swings:]]


def _swing_rows(values: np.ndarray, lookback: int, *, lower: bool) -> list[int]:
    rows = []
    for i in range(lookback, len(values) - lookback):
        current = values[i]
        neighbours = np.concatenate((values[i - lookback : i], values[i + 1 : i + lookback + 1]))
        if lower and bool((neighbours > current).all()):
            rows.append(i)
        elif not lower and bool((neighbours < current).all()):
            rows.append(i)
    return rows


def _swing_point(candles: pd.DataFrame, values: np.ndarray, row: int) -> SwingPoint:
    return SwingPoint(
        price=float(values[row]),
        time=_time_str(candles["open_time"].iloc[row]),
        index=row,
    )


def find_pullback_extreme(
    candles: pd.DataFrame, impulse_end_idx: int, direction: Direction | str
) -> SwingPoint | None:
    """Lowest low (long) or highest high (short) after the impulse end."""
    if impulse_end_idx >= len(candles) - 1:
        return None

    start = impulse_end_idx + 1
    if ops_for(direction).sign > 0:
        values = candles["low"].to_numpy(dtype=float)
        row = start + int(np.argmin(values[start:]))
    else:
        values = candles["high"].to_numpy(dtype=float)
        row = start + int(np.argmax(values[start:]))
    return _swing_point(candles, values, row)


def structure_stop(
    direction: Direction | str, level: float | None, buffer_percent: float = 0.5
) -> float | None:
    """Stop just beyond a structural level, ``buffer_percent`` against the trade."""
    if level is None:
        return None
    return ops_for(direction).offset(level, -buffer_percent / 100.0)


def oscillator_trend(oscillator: pd.Series, lookback: int = 3) -> OscillatorTrend:
    """Direction of the last ``lookback`` readings, ignoring steps within one point."""
    values = oscillator.dropna().to_numpy(dtype=float)
    if len(values) < lookback + 1:
        return "flat"

    steps = np.diff(values[-lookback:])
    falling = int((steps < -1).sum())
    rising = int((steps > 1).sum())
    if falling > rising and falling >= lookback - 1:
        return "falling"
    if rising > falling and rising >= lookback - 1:
        return "rising"
    return "flat"


def detect_cross(
    previous: float, current: float, threshold: float, direction: Direction | str
) -> bool:
    """True when the oscillator just crossed ``threshold`` into the extreme zone."""
    ops = ops_for(direction)
    return not ops.oscillator_beyond(previous, threshold) and ops.oscillator_beyond(
        current, threshold
    )


def count_extremes_since(
    oscillator: pd.Series, since_row: int, threshold: float, direction: Direction | str
) -> int:
    """Count readings beyond ``threshold`` from candle row ``since_row`` onwards.

    Rows without a reading (oscillator warm-up) are skipped.
    """
    ops = ops_for(direction)
    window = oscillator[oscillator.index >= since_row].dropna()
    return sum(1 for value in window if ops.oscillator_beyond(float(value), threshold))


def average_volume(candles: pd.DataFrame) -> float:
    if candles.empty:
        return 0.0
    return float(candles["volume"].astype(float).mean())


def is_volume_contracting(
    impulse_candles: pd.DataFrame, counter_candles: pd.DataFrame, ratio: float = 0.8
) -> bool:
    """True when counter-move volume averages below ``ratio`` of the impulse volume."""
    if impulse_candles.empty or counter_candles.empty:
        return False
    return average_volume(counter_candles) < average_volume(impulse_candles) * ratio


def detect_divergence(
    candles: pd.DataFrame,
    oscillator: pd.Series,
    lookback: int = 50,
    swing_lookback: int = 3,
) -> Divergence | None:
    """Most relevant price/oscillator divergence over the last ``lookback`` rows.

    Regular divergences are checked before hidden ones, bearish before
    bullish within each kind.
    """
    if len(candles) < lookback:
        return None
    rows = range(len(candles) - lookback, len(candles))
    osc = oscillator.reindex(rows)
    if osc.isna().any():
        return None

    recent = candles.iloc[-lookback:]
    highs = recent["high"].to_numpy(dtype=float)
    lows = recent["low"].to_numpy(dtype=float)
    osc_values = osc.to_numpy(dtype=float)

    price_highs = [highs[i] for i in _swing_rows(highs, swing_lookback, lower=False)]
    price_lows = [lows[i] for i in _swing_rows(lows, swing_lookback, lower=True)]
    osc_highs = [osc_values[i] for i in _swing_rows(osc_values, swing_lookback, lower=False)]
    osc_lows = [osc_values[i] for i in _swing_rows(osc_values, swing_lookback, lower=True)]

    have_highs = len(price_highs) >= 2 and len(osc_highs) >= 2
    have_lows = len(price_lows) >= 2 and len(osc_lows) >= 2

    if have_highs:
        prev_p, curr_p = price_highs[-2:]
        prev_o, curr_o = osc_highs[-2:]
        if curr_p > prev_p and curr_o < prev_o:
            price_diff = (curr_p - prev_p) / prev_p * 100.0
            osc_diff = prev_o - curr_o
            return Divergence(
                type="bearish",
                strength=_regular_strength(osc_diff, price_diff),
                description=(
                    f"Bearish divergence: price higher high (+{price_diff:.1f}%), "
                    f"oscillator lower high (-{osc_diff:.1f})"
                ),
            )

    if have_lows:
        prev_p, curr_p = price_lows[-2:]
        prev_o, curr_o = osc_lows[-2:]
        if curr_p < prev_p and curr_o > prev_o:
            price_diff = (prev_p - curr_p) / prev_p * 100.0
            osc_diff = curr_o - prev_o
            return Divergence(
                type="bullish",
                strength=_regular_strength(osc_diff, price_diff),
                description=(
                    f"Bullish divergence: price lower low (-{price_diff:.1f}%), "
                    f"oscillator higher low (+{osc_diff:.1f})"
                ),
            )

    if have_highs:
        prev_p, curr_p = price_highs[-2:]
        prev_o, curr_o = osc_highs[-2:]
        if curr_p < prev_p and curr_o > prev_o:
            price_diff = (prev_p - curr_p) / prev_p * 100.0
            osc_diff = curr_o - prev_o
            return Divergence(
                type="hidden_bearish",
                strength=_hidden_strength(osc_diff, price_diff),
                description=(
                    f"Hidden bearish: price lower high (-{price_diff:.1f}%), "
                    f"oscillator higher high (+{osc_diff:.1f})"
                ),
            )

    if have_lows:
        prev_p, curr_p = price_lows[-2:]
        prev_o, curr_o = osc_lows[-2:]
        if curr_p > prev_p and curr_o < prev_o:
            price_diff = (curr_p - prev_p) / prev_p * 100.0
            osc_diff = prev_o - curr_o
            return Divergence(
                type="hidden_bullish",
                strength=_hidden_strength(osc_diff, price_diff),
                description=(
                    f"Hidden bullish: price higher low (+{price_diff:.1f}%), "
                    f"oscillator lower low (-{osc_diff:.1f})"
                ),
            )

    return None


def _regular_strength(osc_diff: float, price_diff: float) -> DivergenceStrength:
    if osc_diff > 10 and price_diff > 2:
        return "strong"
    if osc_diff > 5 or price_diff > 1:
        return "moderate"
    return "weak"


def _hidden_strength(osc_diff: float, price_diff: float) -> DivergenceStrength:
    if osc_diff > 8 and price_diff > 1.5:
        return "strong"
    if osc_diff > 4 or price_diff > 0.75:
        return "moderate"
    return "weak"


def detect_trend(candles: pd.DataFrame, lookback: int = 20) -> TrendSignal:
    """Trend from swing structure, falling back to price versus its SMA."""
    if len(candles) < lookback:
        return TrendSignal(trend="neutral", confidence=0.0)

    recent = candles.iloc[-lookback:]
    swing_highs = find_swing_highs(recent, lookback=2, max_swings=4)
    swing_lows = find_swing_lows(recent, lookback=2, max_swings=4)

    if len(swing_highs) < 2 or len(swing_lows) < 2:
        closes = candles["close"].astype(float)
        window = min(20, len(closes) - 1)
        if window < 1:
            return TrendSignal(trend="neutral", confidence=0.0)
        sma = float(closes.iloc[-window:].mean())
        vs_sma = (float(closes.iloc[-1]) - sma) / sma * 100.0
        if vs_sma > 2:
            return TrendSignal(trend="bullish", confidence=0.5)
        if vs_sma < -2:
            return TrendSignal(trend="bearish", confidence=0.5)
        return TrendSignal(trend="neutral", confidence=0.3)

    prev_high, last_high = swing_highs[-2].price, swing_highs[-1].price
    prev_low, last_low = swing_lows[-2].price, swing_lows[-1].price
    higher_highs = last_high > prev_high
    higher_lows = last_low > prev_low
    lower_highs = last_high < prev_high
    lower_lows = last_low < prev_low

    if higher_highs and higher_lows:
        return TrendSignal(trend="bullish", confidence=0.85)
    if lower_highs and lower_lows:
        return TrendSignal(trend="bearish", confidence=0.85)
    if higher_lows:
        return TrendSignal(trend="bullish", confidence=0.6)
    if lower_highs:
        return TrendSignal(trend="bearish", confidence=0.6)
    return TrendSignal(trend="neutral", confidence=0.4)


def fibonacci_levels(high: float, low: float, direction: ImpulseDirection) -> dict[str, float]:
    """Retracement prices of an impulse, keyed by ratio.

    For an up impulse retracements run down from the high, for a down
    impulse up from the low.
    """
    span = high - low
    if direction == "up":
        return {f"{ratio:.3f}": high - span * ratio for ratio in FIB_RATIOS}
    return {f"{ratio:.3f}": low + span * ratio for ratio in FIB_RATIOS}


def _time_str(value: object) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return ""
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return str(value)
