"""Shared domain types for the setup detection and position lifecycle engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, Literal, TypeVar

MarketType = Literal["spot", "futures"]
ImpulseDirection = Literal["up", "down"]
TrendLabel = Literal["bullish", "bearish", "neutral"]
OscillatorTrend = Literal["rising", "falling", "flat"]
DivergenceType = Literal["bullish", "bearish", "hidden_bullish", "hidden_bearish"]
DivergenceStrength = Literal["strong", "moderate", "weak"]


class Direction(str, Enum):
    """Trade direction."""

    LONG = "long"
    SHORT = "short"


@dataclass(frozen=True, slots=True)
class DirectionOps:
    """Direction-dependent comparators shared by both engines.

    Everything that differs between a long and a short goes through one of
    these records, so engine code is written once for both directions.
    """

    direction: Direction
    sign: int
    impulse_direction: ImpulseDirection
    supporting_divergences: frozenset[str]

    def favorable(self, a: float, b: float) -> bool:
        """True when price ``a`` is strictly better than ``b`` for this trade."""
        return (a - b) * self.sign > 0

    def at_or_beyond(self, price: float, level: float) -> bool:
        """True when ``price`` has reached ``level`` in the trade's favour."""
        return (price - level) * self.sign >= 0

    def stop_hit(self, price: float, stop: float) -> bool:
        return (price - stop) * self.sign <= 0

    def oscillator_beyond(self, value: float, threshold: float) -> bool:
        """Oversold for longs (below), overbought for shorts (above)."""
        return (threshold - value) * self.sign > 0

    def oscillator_deepening(self, trend: OscillatorTrend) -> bool:
        return trend == ("falling" if self.sign > 0 else "rising")

    def offset(self, price: float, fraction: float) -> float:
        """Move ``price`` by ``fraction`` in the trade's favour."""
        return price * (1.0 + self.sign * fraction)

    def price_change(self, entry: float, price: float) -> float:
        """Signed fractional return of a move from ``entry`` to ``price``."""
        return self.sign * (price - entry) / entry

    def trend_aligned(self, trend: TrendLabel) -> bool:
        return trend == ("bullish" if self.sign > 0 else "bearish")


_LONG_OPS = DirectionOps(
    direction=Direction.LONG,
    sign=1,
    impulse_direction="up",
    supporting_divergences=frozenset({"bullish", "hidden_bullish"}),
)
_SHORT_OPS = DirectionOps(
    direction=Direction.SHORT,
    sign=-1,
    impulse_direction="down",
    supporting_divergences=frozenset({"bearish", "hidden_bearish"}),
)


def ops_for(direction: Direction | str) -> DirectionOps:
    """Return the comparator record for a direction."""
    return _LONG_OPS if Direction(direction) is Direction.LONG else _SHORT_OPS


@dataclass(frozen=True, slots=True)
class Impulse:
    """A qualifying directional swing inside the lookback window."""

    start_idx: int
    end_idx: int
    start_price: float
    end_price: float
    percent_move: float
    dominance: float
    direction: ImpulseDirection
    start_time: str = ""
    end_time: str = ""

    @property
    def high(self) -> float:
        return max(self.start_price, self.end_price)

    @property
    def low(self) -> float:
        return min(self.start_price, self.end_price)


@dataclass(frozen=True, slots=True)
class TrendSignal:
    """Higher-timeframe trend reading."""

    trend: TrendLabel
    confidence: float


@dataclass(frozen=True, slots=True)
class Divergence:
    """Oscillator/price divergence annotation."""

    type: DivergenceType
    strength: DivergenceStrength
    description: str


@dataclass(frozen=True, slots=True)
class SwingPoint:
    price: float
    time: str
    index: int


class RejectReason:
    """Reasons attached to business-rule rejections."""

    DUPLICATE_POSITION = "duplicate_position"
    MAX_POSITIONS_REACHED = "max_positions_reached"
    INSUFFICIENT_MARGIN = "insufficient_margin"
    INVALID_TRANSITION = "invalid_transition"
    POSITION_NOT_FOUND = "position_not_found"
    SETUP_NOT_ACTIONABLE = "setup_not_actionable"
    INVALID_PRICE = "invalid_price"
    INVALID_FRACTION = "invalid_fraction"


T = TypeVar("T")


@dataclass(slots=True)
class OperationResult(Generic[T]):
    """Outcome of an engine operation.

    Rejections carry a reason and guarantee nothing was mutated.
    """

    performed: bool
    value: T | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, value: T) -> "OperationResult[T]":
        return cls(performed=True, value=value)

    @classmethod
    def rejected(cls, reason: str) -> "OperationResult[T]":
        return cls(performed=False, reason=reason)

    def __bool__(self) -> bool:
        return self.performed


@dataclass(slots=True)
class CycleResult:
    """Outcome of one orchestration cycle."""

    status: str
    setups: list[dict[str, object]] = field(default_factory=list)
    opened: list[dict[str, object]] = field(default_factory=list)
    closed: list[dict[str, object]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

