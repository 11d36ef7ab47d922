"""Setup detection engine.

Tracks at most one setup per (symbol, timeframe, direction). A setup is
created on the first oscillator extreme after a qualifying impulse and then
advanced every evaluation until it plays out.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Callable

import pandas as pd  # type: ignore[import-untyped]

from impulse_trader.config import DetectorConfig
from impulse_trader.events import EngineEvent, EventCallback, EventKind
from impulse_trader.features.indicators import (
    Analytics,
    DefaultAnalytics,
    average_volume,
    count_extremes_since,
    detect_cross,
    find_pullback_extreme,
    find_swing_highs,
    find_swing_lows,
    is_volume_contracting,
    oscillator_trend,
    structure_stop,
)
from impulse_trader.strategy.setups import (
    ACTIONABLE_STATES,
    FibonacciExtension,
    Setup,
    SetupState,
    setup_key,
)
from impulse_trader.types import (
    Direction,
    DirectionOps,
    Impulse,
    MarketType,
    TrendSignal,
    ops_for,
)
from impulse_trader.utils.logging import get_logger, log_setup_event

_MIN_OSCILLATOR_VALUES = 5


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SetupDetector:
    """Owns the tracked setups and evaluates them against fresh candles."""

    def __init__(
        self,
        config: DetectorConfig,
        *,
        analytics: Analytics | None = None,
        clock: Callable[[], datetime] | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self._config = config
        self._analytics = analytics or DefaultAnalytics()
        self._clock = clock or _utc_now
        self._on_event = on_event
        self._setups: dict[str, Setup] = {}
        self._logger = get_logger("impulse_trader.strategy.detector")

    def analyze(
        self,
        symbol: str,
        timeframe: str,
        candles: pd.DataFrame,
        *,
        htf_trend: TrendSignal | None = None,
        market_type: MarketType = "futures",
    ) -> list[Setup]:
        """Evaluate one symbol/timeframe for both directions.

        Returns every setup created, updated or removed by this call. Removed
        setups are reported once, in ``played_out`` state.
        """
        cfg = self._config
        if len(candles) < cfg.min_candles:
            self._logger.debug(
                "analysis_skipped", symbol=symbol, timeframe=timeframe, reason="insufficient_candles"
            )
            return []

        candles = candles.reset_index(drop=True)
        oscillator = self._analytics.oscillator(candles, cfg.oscillator_period)
        if oscillator.empty or _is_nan(oscillator.iloc[-1]):
            self._logger.debug(
                "analysis_skipped", symbol=symbol, timeframe=timeframe, reason="oscillator_undefined"
            )
            return []
        readings = oscillator.dropna()
        if len(readings) < _MIN_OSCILLATOR_VALUES:
            self._logger.debug(
                "analysis_skipped", symbol=symbol, timeframe=timeframe, reason="oscillator_too_short"
            )
            return []

        current = float(readings.iloc[-1])
        previous = float(readings.iloc[-2])
        price = float(candles["close"].iloc[-1])

        results: list[Setup] = []
        impulse: Impulse | None = None
        impulse_checked = False
        for direction in Direction:
            existing = self._setups.get(setup_key(symbol, timeframe, direction))
            if existing is not None:
                results.append(self._update(existing, oscillator, current, price, htf_trend))
                continue

            if not impulse_checked:
                impulse = self._analytics.impulse(
                    candles,
                    cfg.min_impulse_percent,
                    cfg.min_impulse_dominance,
                    cfg.impulse_lookback,
                )
                impulse_checked = True
            if impulse is None:
                continue

            created = self._create(
                symbol,
                timeframe,
                direction,
                candles,
                oscillator,
                impulse,
                current=current,
                previous=previous,
                price=price,
                htf_trend=htf_trend,
                market_type=market_type,
            )
            if created is not None:
                results.append(created)
        return results

    def trend_for(self, candles: pd.DataFrame) -> TrendSignal:
        """Trend reading for higher-timeframe confirmation."""
        return self._analytics.trend(candles)

    # ==================== Queries ====================

    def get_setup(self, symbol: str, timeframe: str, direction: Direction | str) -> Setup | None:
        return self._setups.get(setup_key(symbol, timeframe, direction))

    def active_setups(self) -> list[Setup]:
        return list(self._setups.values())

    def setups_by_state(self, state: SetupState | str) -> list[Setup]:
        wanted = SetupState(state)
        return [s for s in self._setups.values() if s.state is wanted]

    def setups_by_timeframe(self, timeframe: str) -> list[Setup]:
        return [s for s in self._setups.values() if s.timeframe == timeframe]

    def remove_setup(self, symbol: str, timeframe: str, direction: Direction | str) -> bool:
        return self._setups.pop(setup_key(symbol, timeframe, direction), None) is not None

    def clear(self) -> None:
        self._setups.clear()

    def __len__(self) -> int:
        return len(self._setups)

    # ==================== Creation ====================

    def _create(
        self,
        symbol: str,
        timeframe: str,
        direction: Direction,
        candles: pd.DataFrame,
        oscillator: pd.Series,
        impulse: Impulse,
        *,
        current: float,
        previous: float,
        price: float,
        htf_trend: TrendSignal | None,
        market_type: MarketType,
    ) -> Setup | None:
        cfg = self._config
        ops = ops_for(direction)

        if impulse.dominance < cfg.min_impulse_dominance:
            return None
        if impulse.direction != ops.impulse_direction:
            return None

        htf_confirmed: bool | None = None
        if htf_trend is not None and htf_trend.confidence > cfg.htf_min_confidence:
            if not ops.trend_aligned(htf_trend.trend):
                self._logger.debug(
                    "setup_rejected",
                    symbol=symbol,
                    timeframe=timeframe,
                    direction=direction.value,
                    reason="htf_misaligned",
                    htf_trend=htf_trend.trend,
                )
                return None
            htf_confirmed = True

        # price must still be inside the impulse range
        if not (ops.favorable(price, impulse.start_price) and ops.favorable(impulse.end_price, price)):
            return None

        entry_level, deep_level = self._thresholds(ops)
        crossed = detect_cross(previous, current, entry_level, direction)
        if not ops.oscillator_beyond(current, entry_level):
            return None
        excursions = count_extremes_since(oscillator, impulse.end_idx + 1, entry_level, direction)
        if excursions > 1:
            self._logger.debug(
                "setup_rejected",
                symbol=symbol,
                timeframe=timeframe,
                direction=direction.value,
                reason="not_first_extreme",
                excursions=excursions,
            )
            return None

        pullback = find_pullback_extreme(candles, impulse.end_idx, direction)
        pullback_price = pullback.price if pullback is not None else None
        stop = structure_stop(direction, pullback_price, cfg.structure_buffer_percent)

        trend = oscillator_trend(oscillator, 3)
        deep = ops.oscillator_beyond(current, deep_level)

        extension = FibonacciExtension.from_impulse(impulse)
        retrace_level = extension.retracement(cfg.exhaustion_retracement)
        exhausted = ops.favorable(retrace_level, price) or not ops.favorable(
            price, impulse.start_price
        )

        impulse_candles = candles.iloc[impulse.start_idx : impulse.end_idx + 1]
        counter_candles = candles.iloc[impulse.end_idx + 1 :]

        divergence = self._analytics.divergence(
            candles, oscillator, cfg.divergence_lookback, cfg.swing_lookback
        )
        if divergence is not None and divergence.type not in ops.supporting_divergences:
            divergence = None

        now = self._clock()
        setup = Setup(
            symbol=symbol,
            timeframe=timeframe,
            direction=direction,
            impulse=impulse,
            state=SetupState.DEEP_EXTREME if deep else SetupState.TRIGGERED,
            current_price=price,
            current_oscillator=current,
            oscillator_at_trigger=current,
            previous_oscillator=previous,
            oscillator_trend=trend,
            detected_at=now,
            last_updated_at=now,
            triggered_at=now,
            market_type=market_type,
            crossed_threshold=crossed,
            cross_time=str(candles["open_time"].iloc[-1]) if crossed else None,
            entry_price=price,
            impulse_avg_volume=average_volume(impulse_candles),
            counter_avg_volume=average_volume(counter_candles),
            volume_contracting=is_volume_contracting(
                impulse_candles, counter_candles, cfg.volume_contraction_ratio
            ),
            htf_confirmed=htf_confirmed,
            divergence=divergence,
            classification="momentum_exhaustion" if exhausted else "pattern",
            pullback_extreme=pullback_price,
            structure_stop_price=stop,
            position_tier=2 if deep else 1,
            can_add_position=ops.oscillator_deepening(trend),
            recent_swing_lows=find_swing_lows(candles, cfg.swing_lookback, 3),
            recent_swing_highs=find_swing_highs(candles, cfg.swing_lookback, 3),
            extension=extension,
        )
        self._setups[setup.key] = setup
        log_setup_event(
            self._logger,
            "setup_created",
            symbol=symbol,
            timeframe=timeframe,
            direction=direction.value,
            state=setup.state.value,
            oscillator=round(current, 2),
            price=price,
            impulse_percent=round(impulse.percent_move, 2),
            classification=setup.classification,
        )
        self._emit("setup_new", setup)
        return setup

    # ==================== Update ====================

    def _update(
        self,
        setup: Setup,
        oscillator: pd.Series,
        current: float,
        price: float,
        htf_trend: TrendSignal | None,
    ) -> Setup:
        cfg = self._config
        ops = ops_for(setup.direction)
        now = self._clock()
        previous_state = setup.state

        setup.previous_oscillator = setup.current_oscillator
        setup.current_oscillator = current
        setup.current_price = price
        setup.last_updated_at = now
        setup.oscillator_trend = oscillator_trend(oscillator, 3)
        if htf_trend is not None and htf_trend.confidence > cfg.htf_min_confidence:
            setup.htf_confirmed = ops.trend_aligned(htf_trend.trend)

        invalidation = self._invalidation(setup, ops, price, current)
        if invalidation is not None:
            next_state = SetupState.PLAYED_OUT
        else:
            next_state = self._next_state(setup, ops, current)

        setup.state = next_state
        if next_state is SetupState.PLAYED_OUT:
            setup.played_out_at = now
            del self._setups[setup.key]
            log_setup_event(
                self._logger,
                "setup_removed",
                symbol=setup.symbol,
                timeframe=setup.timeframe,
                direction=setup.direction.value,
                state=next_state.value,
                previous_state=previous_state.value,
                reason=invalidation or "recovered",
                oscillator=round(current, 2),
                price=price,
            )
            self._emit("setup_removed", setup)
            return setup

        if next_state is SetupState.DEEP_EXTREME:
            setup.position_tier = 2
        if next_state in ACTIONABLE_STATES:
            if setup.triggered_at is None:
                setup.triggered_at = now
            setup.can_add_position = ops.oscillator_deepening(setup.oscillator_trend)
        else:
            setup.can_add_position = False

        if next_state is not previous_state:
            log_setup_event(
                self._logger,
                "setup_state_changed",
                symbol=setup.symbol,
                timeframe=setup.timeframe,
                direction=setup.direction.value,
                state=next_state.value,
                previous_state=previous_state.value,
                oscillator=round(current, 2),
            )
        self._emit("setup_updated", setup)
        return setup

    def _invalidation(
        self, setup: Setup, ops: DirectionOps, price: float, current: float
    ) -> str | None:
        """Reason the setup no longer holds, or None."""
        impulse = setup.impulse
        entry_level, _ = self._thresholds(ops)

        if ops.favorable(impulse.start_price, price):
            return "structure_broken"
        target = ops.offset(impulse.end_price, -self._config.target_proximity_percent / 100.0)
        if setup.is_actionable and ops.at_or_beyond(price, target):
            return "target_reached"
        if setup.state is SetupState.REVERSING and ops.oscillator_beyond(current, entry_level):
            return "second_extreme"
        return None

    def _next_state(self, setup: Setup, ops: DirectionOps, current: float) -> SetupState:
        cfg = self._config
        entry_level, deep_level = self._thresholds(ops)

        if ops.oscillator_beyond(current, deep_level):
            return SetupState.DEEP_EXTREME
        if ops.oscillator_beyond(current, entry_level):
            return SetupState.TRIGGERED
        if setup.is_actionable:
            fast_exit = entry_level + ops.sign * cfg.reversal_band
            if _recovered(ops, current, fast_exit):
                return SetupState.PLAYED_OUT
            return SetupState.REVERSING
        if setup.state is SetupState.REVERSING:
            if _recovered(ops, current, cfg.recovery_threshold):
                return SetupState.PLAYED_OUT
            return SetupState.REVERSING
        return setup.state

    def _thresholds(self, ops: DirectionOps) -> tuple[float, float]:
        cfg = self._config
        if ops.direction is Direction.LONG:
            return cfg.oversold_threshold, cfg.deep_oversold_threshold
        return cfg.overbought_threshold, cfg.deep_overbought_threshold

    def _emit(self, kind: EventKind, setup: Setup) -> None:
        if self._on_event is None:
            return
        self._on_event(
            EngineEvent(kind=kind, key=setup.key, snapshot=setup.snapshot(), at=self._clock())
        )


def _recovered(ops: DirectionOps, value: float, level: float) -> bool:
    """True once the oscillator is back past ``level`` on the recovery side."""
    return (value - level) * ops.sign > 0


def _is_nan(value: object) -> bool:
    try:
        return math.isnan(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return True
