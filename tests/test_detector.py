from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pandas as pd
import pytest

from impulse_trader.config import DetectorConfig
from impulse_trader.events import EngineEvent
from impulse_trader.features.indicators import DefaultAnalytics
from impulse_trader.strategy.detector import SetupDetector
from impulse_trader.strategy.setups import SetupState
from impulse_trader.types import Direction, Divergence, Impulse, TrendSignal

_ROWS = 60
_UP_IMPULSE = Impulse(
    start_idx=10,
    end_idx=50,
    start_price=100.0,
    end_price=107.0,
    percent_move=7.0,
    dominance=0.6,
    direction="up",
)
_DOWN_IMPULSE = Impulse(
    start_idx=10,
    end_idx=50,
    start_price=100.0,
    end_price=93.0,
    percent_move=7.0,
    dominance=0.6,
    direction="down",
)


def _build_ohlcv(closes: list[float]) -> pd.DataFrame:
    start = datetime(2024, 1, 1, tzinfo=UTC)
    times = [start + timedelta(hours=i) for i in range(len(closes))]
    return pd.DataFrame(
        {
            "open_time": times,
            "open": closes,
            "high": [c + 0.2 for c in closes],
            "low": [c - 0.2 for c in closes],
            "close": closes,
            "volume": [1000.0 for _ in closes],
        }
    )


def _impulse_candles(impulse: Impulse, last_close: float, rows: int = _ROWS) -> pd.DataFrame:
    """Flat base, a straight impulse leg, a short plateau, then ``last_close``."""
    span = impulse.end_price - impulse.start_price
    legs = impulse.end_idx - impulse.start_idx
    closes = [impulse.start_price] * (impulse.start_idx + 1)
    closes += [impulse.start_price + span * (i + 1) / legs for i in range(legs)]
    plateau = impulse.end_price - span * 2 / 7
    closes += [plateau] * (rows - len(closes) - 1)
    closes.append(last_close)
    return _build_ohlcv(closes)


def _oscillator(overrides: dict[int, float], base: float = 45.0, rows: int = _ROWS) -> pd.Series:
    values = [overrides.get(row, base) for row in range(14, rows)]
    return pd.Series(values, index=range(14, rows), dtype=float)


class _ScriptedAnalytics(DefaultAnalytics):
    """Real analytics with the oscillator, impulse and trend pinned by the test."""

    def __init__(
        self,
        oscillator: pd.Series,
        impulse: Impulse | None,
        trend: TrendSignal | None = None,
        divergence: Divergence | None = None,
    ) -> None:
        self.series = oscillator
        self.pinned_impulse = impulse
        self.pinned_trend = trend or TrendSignal(trend="neutral", confidence=0.0)
        self.pinned_divergence = divergence

    def oscillator(self, candles: pd.DataFrame, period: int) -> pd.Series:
        return self.series

    def impulse(
        self, candles: pd.DataFrame, min_percent: float, min_dominance: float, lookback: int
    ) -> Impulse | None:
        return self.pinned_impulse

    def trend(self, candles: pd.DataFrame) -> TrendSignal:
        return self.pinned_trend

    def divergence(
        self, candles: pd.DataFrame, oscillator: pd.Series, lookback: int, swing_lookback: int
    ) -> Divergence | None:
        return self.pinned_divergence


def _fixed_clock() -> datetime:
    return datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _detector(analytics: _ScriptedAnalytics, events: list[EngineEvent] | None = None) -> SetupDetector:
    return SetupDetector(
        DetectorConfig(),
        analytics=analytics,
        clock=_fixed_clock,
        on_event=events.append if events is not None else None,
    )


def test_long_setup_on_first_oversold_reading() -> None:
    events: list[EngineEvent] = []
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics, events)

    results = detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0))

    assert len(results) == 1
    setup = results[0]
    assert setup.direction is Direction.LONG
    assert setup.state is SetupState.TRIGGERED
    assert setup.is_actionable
    assert setup.crossed_threshold
    assert setup.oscillator_at_trigger == 28.0
    assert setup.previous_oscillator == 34.0
    assert setup.position_tier == 1
    assert setup.classification == "pattern"
    assert setup.htf_confirmed is None
    assert setup.pullback_extreme == pytest.approx(102.8)
    assert setup.structure_stop_price == pytest.approx(102.8 * 0.995)
    assert setup.extension is not None
    assert setup.extension.levels["0.618"] == pytest.approx(107.0 - 7.0 * 0.618)
    assert setup.detected_at == _fixed_clock()
    assert detector.get_setup("BTCUSDT", "1h", "long") is setup
    assert detector.get_setup("BTCUSDT", "1h", "short") is None
    assert [e.kind for e in events] == ["setup_new"]
    assert events[0].key == "BTCUSDT_1h_long"


def test_deep_reading_creates_tier_two_setup() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 18.0}), _UP_IMPULSE)
    detector = _detector(analytics)

    (setup,) = detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0))
    assert setup.state is SetupState.DEEP_EXTREME
    assert setup.position_tier == 2


def test_deep_pullback_is_tagged_as_exhaustion() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)

    (setup,) = detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 102.5))
    assert setup.classification == "momentum_exhaustion"
    assert setup.state is SetupState.TRIGGERED


def test_short_setup_mirrors_long() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 66.0, 59: 72.0}), _DOWN_IMPULSE)
    detector = _detector(analytics)

    results = detector.analyze("ETHUSDT", "15m", _impulse_candles(_DOWN_IMPULSE, 97.0))

    assert len(results) == 1
    setup = results[0]
    assert setup.direction is Direction.SHORT
    assert setup.state is SetupState.TRIGGERED
    assert setup.pullback_extreme == pytest.approx(97.2)
    assert setup.structure_stop_price == pytest.approx(97.2 * 1.005)
    assert setup.position_key == "ETHUSDT-15m-short-futures"


def test_second_excursion_since_impulse_is_not_a_setup() -> None:
    analytics = _ScriptedAnalytics(_oscillator({53: 28.0, 58: 34.0, 59: 27.0}), _UP_IMPULSE)
    detector = _detector(analytics)

    assert detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0)) == []
    assert len(detector) == 0


def test_readings_before_impulse_end_do_not_count() -> None:
    analytics = _ScriptedAnalytics(_oscillator({30: 25.0, 58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)

    assert len(detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0))) == 1


def test_price_outside_impulse_range_is_ignored() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)

    assert detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 99.5)) == []


def test_no_impulse_no_setup() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), None)
    detector = _detector(analytics)

    assert detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0)) == []


def test_insufficient_data_is_a_no_op() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)
    candles = _impulse_candles(_UP_IMPULSE, 103.0)

    assert detector.analyze("BTCUSDT", "1h", candles.iloc[-30:]) == []

    analytics.series = _oscillator({58: 34.0, 59: float("nan")})
    assert detector.analyze("BTCUSDT", "1h", candles) == []

    analytics.series = pd.Series(dtype=float)
    assert detector.analyze("BTCUSDT", "1h", candles) == []
    assert len(detector) == 0


def test_no_op_leaves_tracked_setup_untouched() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)
    candles = _impulse_candles(_UP_IMPULSE, 103.0)
    (setup,) = detector.analyze("BTCUSDT", "1h", candles)

    analytics.series = _oscillator({58: 34.0, 59: float("nan")})
    assert detector.analyze("BTCUSDT", "1h", candles) == []
    assert detector.get_setup("BTCUSDT", "1h", "long") is setup
    assert setup.state is SetupState.TRIGGERED
    assert setup.current_oscillator == 28.0


def test_htf_alignment() -> None:
    candles = _impulse_candles(_UP_IMPULSE, 103.0)
    osc = _oscillator({58: 34.0, 59: 28.0})

    misaligned = _detector(_ScriptedAnalytics(osc, _UP_IMPULSE))
    bearish = TrendSignal(trend="bearish", confidence=0.85)
    assert misaligned.analyze("BTCUSDT", "1h", candles, htf_trend=bearish) == []

    weak = _detector(_ScriptedAnalytics(osc, _UP_IMPULSE))
    low_confidence = TrendSignal(trend="bearish", confidence=0.4)
    (setup,) = weak.analyze("BTCUSDT", "1h", candles, htf_trend=low_confidence)
    assert setup.htf_confirmed is None

    aligned = _detector(_ScriptedAnalytics(osc, _UP_IMPULSE))
    bullish = TrendSignal(trend="bullish", confidence=0.6)
    (setup,) = aligned.analyze("BTCUSDT", "1h", candles, htf_trend=bullish)
    assert setup.htf_confirmed is True


def test_only_supporting_divergence_is_attached() -> None:
    candles = _impulse_candles(_UP_IMPULSE, 103.0)
    osc = _oscillator({58: 34.0, 59: 28.0})
    bullish = Divergence(type="bullish", strength="strong", description="bullish")
    bearish = Divergence(type="bearish", strength="strong", description="bearish")

    (setup,) = _detector(_ScriptedAnalytics(osc, _UP_IMPULSE, divergence=bullish)).analyze(
        "BTCUSDT", "1h", candles
    )
    assert setup.divergence == bullish

    (setup,) = _detector(_ScriptedAnalytics(osc, _UP_IMPULSE, divergence=bearish)).analyze(
        "BTCUSDT", "1h", candles
    )
    assert setup.divergence is None


def test_structure_break_plays_out_and_removes_in_same_call() -> None:
    events: list[EngineEvent] = []
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics, events)
    detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0))

    broken = _impulse_candles(_UP_IMPULSE, 99.0)
    (setup,) = detector.analyze("BTCUSDT", "1h", broken)
    assert setup.state is SetupState.PLAYED_OUT
    assert setup.played_out_at is not None
    assert len(detector) == 0
    assert [e.kind for e in events] == ["setup_new", "setup_removed"]

    # reported once; below the impulse start nothing new is created either
    assert detector.analyze("BTCUSDT", "1h", broken) == []


def test_target_reached_plays_out() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)
    detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0))

    (setup,) = detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 106.5))
    assert setup.state is SetupState.PLAYED_OUT
    assert detector.get_setup("BTCUSDT", "1h", "long") is None


def test_strong_recovery_plays_out_directly() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)
    candles = _impulse_candles(_UP_IMPULSE, 103.0)
    detector.analyze("BTCUSDT", "1h", candles)

    analytics.series = _oscillator({57: 34.0, 58: 28.0, 59: 45.0})
    (setup,) = detector.analyze("BTCUSDT", "1h", candles)
    assert setup.state is SetupState.PLAYED_OUT
    assert len(detector) == 0


def test_reversing_then_recovery_plays_out() -> None:
    events: list[EngineEvent] = []
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics, events)
    candles = _impulse_candles(_UP_IMPULSE, 103.0)
    detector.analyze("BTCUSDT", "1h", candles)

    analytics.series = _oscillator({57: 34.0, 58: 28.0, 59: 38.0})
    (setup,) = detector.analyze("BTCUSDT", "1h", candles)
    assert setup.state is SetupState.REVERSING
    assert not setup.is_actionable
    assert not setup.can_add_position
    assert detector.setups_by_state("reversing") == [setup]

    analytics.series = _oscillator({56: 34.0, 57: 28.0, 58: 38.0, 59: 51.0})
    (setup,) = detector.analyze("BTCUSDT", "1h", candles)
    assert setup.state is SetupState.PLAYED_OUT
    assert len(detector) == 0
    assert [e.kind for e in events] == ["setup_new", "setup_updated", "setup_removed"]


def test_second_extreme_invalidates_and_is_never_recreated() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)
    candles = _impulse_candles(_UP_IMPULSE, 103.0)
    detector.analyze("BTCUSDT", "1h", candles)

    analytics.series = _oscillator({58: 28.0, 59: 35.0})
    (setup,) = detector.analyze("BTCUSDT", "1h", candles)
    assert setup.state is SetupState.REVERSING

    analytics.series = _oscillator({57: 28.0, 58: 35.0, 59: 27.0})
    (setup,) = detector.analyze("BTCUSDT", "1h", candles)
    assert setup.state is SetupState.PLAYED_OUT

    analytics.series = _oscillator({55: 28.0, 57: 35.0, 59: 25.0})
    assert detector.analyze("BTCUSDT", "1h", candles) == []
    assert len(detector) == 0


def test_deepening_while_tracked_promotes_tier() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)
    candles = _impulse_candles(_UP_IMPULSE, 103.0)
    detector.analyze("BTCUSDT", "1h", candles)

    analytics.series = _oscillator({56: 40.0, 57: 34.0, 58: 28.0, 59: 17.0})
    (setup,) = detector.analyze("BTCUSDT", "1h", candles)
    assert setup.state is SetupState.DEEP_EXTREME
    assert setup.position_tier == 2
    assert setup.oscillator_trend == "falling"
    assert setup.can_add_position


def test_queries_and_removal() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)
    detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0))
    detector.analyze("ETHUSDT", "5m", _impulse_candles(_UP_IMPULSE, 103.0))

    assert len(detector.active_setups()) == 2
    assert [s.symbol for s in detector.setups_by_timeframe("5m")] == ["ETHUSDT"]
    assert len(detector.setups_by_state(SetupState.TRIGGERED)) == 2

    assert detector.remove_setup("ETHUSDT", "5m", Direction.LONG)
    assert not detector.remove_setup("ETHUSDT", "5m", Direction.LONG)
    detector.clear()
    assert len(detector) == 0


def test_snapshot_is_json_friendly() -> None:
    analytics = _ScriptedAnalytics(_oscillator({58: 34.0, 59: 28.0}), _UP_IMPULSE)
    detector = _detector(analytics)
    (setup,) = detector.analyze("BTCUSDT", "1h", _impulse_candles(_UP_IMPULSE, 103.0))

    snapshot = setup.snapshot()
    assert snapshot["key"] == "BTCUSDT_1h_long"
    assert snapshot["direction"] == "long"
    assert snapshot["state"] == "triggered"
    assert snapshot["impulse_high"] == 107.0
    assert snapshot["detected_at"] == _fixed_clock().isoformat()
