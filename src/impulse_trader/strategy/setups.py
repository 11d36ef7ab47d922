"""Setup entity tracked by the detection engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from impulse_trader.features.indicators import fibonacci_levels
from impulse_trader.types import (
    Direction,
    Divergence,
    Impulse,
    ImpulseDirection,
    MarketType,
    OscillatorTrend,
    SwingPoint,
)

Classification = Literal["pattern", "momentum_exhaustion"]


class SetupState(str, Enum):
    WATCHING = "watching"
    TRIGGERED = "triggered"
    DEEP_EXTREME = "deep_extreme"
    REVERSING = "reversing"
    PLAYED_OUT = "played_out"


ACTIONABLE_STATES = frozenset({SetupState.TRIGGERED, SetupState.DEEP_EXTREME})


@dataclass(frozen=True, slots=True)
class FibonacciExtension:
    """Retracement map of the impulse attached to a setup."""

    high: float
    low: float
    direction: ImpulseDirection
    levels: dict[str, float]
    kind: Literal["fibonacci"] = "fibonacci"

    @classmethod
    def from_impulse(cls, impulse: Impulse) -> "FibonacciExtension":
        return cls(
            high=impulse.high,
            low=impulse.low,
            direction=impulse.direction,
            levels=fibonacci_levels(impulse.high, impulse.low, impulse.direction),
        )

    def retracement(self, ratio: float) -> float:
        """Price at ``ratio`` of the range back from the impulse end."""
        key = f"{ratio:.3f}"
        if key in self.levels:
            return self.levels[key]
        span = self.high - self.low
        return self.high - span * ratio if self.direction == "up" else self.low + span * ratio


@dataclass(slots=True)
class Setup:
    """A tracked first-extreme pullback after an impulse."""

    symbol: str
    timeframe: str
    direction: Direction
    impulse: Impulse
    state: SetupState
    current_price: float
    current_oscillator: float
    oscillator_at_trigger: float
    previous_oscillator: float
    oscillator_trend: OscillatorTrend
    detected_at: datetime
    last_updated_at: datetime
    market_type: MarketType = "futures"
    crossed_threshold: bool = False
    cross_time: str | None = None
    entry_price: float | None = None
    triggered_at: datetime | None = None
    played_out_at: datetime | None = None
    impulse_avg_volume: float = 0.0
    counter_avg_volume: float = 0.0
    volume_contracting: bool = False
    htf_confirmed: bool | None = None
    divergence: Divergence | None = None
    classification: Classification = "pattern"
    pullback_extreme: float | None = None
    structure_stop_price: float | None = None
    position_tier: int = 1
    can_add_position: bool = False
    recent_swing_lows: list[SwingPoint] = field(default_factory=list)
    recent_swing_highs: list[SwingPoint] = field(default_factory=list)
    extension: FibonacciExtension | None = None

    @property
    def key(self) -> str:
        return setup_key(self.symbol, self.timeframe, self.direction)

    @property
    def impulse_high(self) -> float:
        return self.impulse.high

    @property
    def impulse_low(self) -> float:
        return self.impulse.low

    @property
    def is_actionable(self) -> bool:
        return self.state in ACTIONABLE_STATES

    @property
    def position_key(self) -> str:
        """Default key a lifecycle engine files a position from this setup under."""
        return f"{self.symbol}-{self.timeframe}-{self.direction.value}-{self.market_type}"

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly copy of the setup."""
        data = asdict(self)
        data["direction"] = self.direction.value
        data["state"] = self.state.value
        for name in ("detected_at", "last_updated_at", "triggered_at", "played_out_at"):
            value = data[name]
            data[name] = value.isoformat() if value is not None else None
        data["key"] = self.key
        data["impulse_high"] = self.impulse_high
        data["impulse_low"] = self.impulse_low
        return data


def setup_key(symbol: str, timeframe: str, direction: Direction | str) -> str:
    return f"{symbol}_{timeframe}_{Direction(direction).value}"
