"""Position entity and its state machine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from impulse_trader.types import Direction, MarketType


class PositionState(str, Enum):
    QUEUED = "queued"
    EXECUTING = "executing"
    OPEN = "open"
    TRAILING = "trailing"
    PARTIALLY_CLOSED = "partially_closed"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class ExitReason(str, Enum):
    STOP_LOSS = "closed_sl"
    BREAKEVEN = "closed_breakeven"
    TRAILING = "closed_trailing"
    TAKE_PROFIT = "closed_tp"
    SIGNAL = "closed_signal"
    PLAYED_OUT = "closed_played_out"
    MANUAL = "closed_manual"
    FAILED = "failed"


# The only legal moves. Anything else is rejected before mutation.
POSITION_TRANSITIONS: dict[PositionState, frozenset[PositionState]] = {
    PositionState.QUEUED: frozenset({PositionState.EXECUTING, PositionState.FAILED}),
    PositionState.EXECUTING: frozenset({PositionState.OPEN, PositionState.FAILED}),
    PositionState.OPEN: frozenset(
        {PositionState.TRAILING, PositionState.PARTIALLY_CLOSED, PositionState.CLOSING}
    ),
    PositionState.TRAILING: frozenset({PositionState.PARTIALLY_CLOSED, PositionState.CLOSING}),
    PositionState.PARTIALLY_CLOSED: frozenset({PositionState.CLOSING}),
    PositionState.CLOSING: frozenset({PositionState.CLOSED}),
    PositionState.CLOSED: frozenset(),
    PositionState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({PositionState.CLOSED, PositionState.FAILED})
LIVE_STATES = frozenset(
    {PositionState.OPEN, PositionState.TRAILING, PositionState.PARTIALLY_CLOSED}
)


def can_transition(current: PositionState, target: PositionState) -> bool:
    return target in POSITION_TRANSITIONS[current]


@dataclass(slots=True)
class CostBreakdown:
    entry_fees: float = 0.0
    exit_fees: float = 0.0
    entry_slippage: float = 0.0
    exit_slippage: float = 0.0

    @property
    def total_fees(self) -> float:
        return self.entry_fees + self.exit_fees


@dataclass(frozen=True, slots=True)
class PartialFill:
    """One partial exit of a position."""

    fraction: float
    price: float
    notional: float
    margin: float
    realized_pnl: float
    fees: float
    at: datetime


@dataclass(slots=True)
class EntryRequest:
    """Directional entry signal handed to a lifecycle engine."""

    key: str
    symbol: str
    direction: Direction
    price: float
    timeframe: str = "1h"
    market_type: MarketType = "futures"
    stop_price: float | None = None
    take_profit: float | None = None
    margin: float | None = None
    oscillator: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Position:
    id: str
    key: str
    bot_id: str
    symbol: str
    timeframe: str
    direction: Direction
    market_type: MarketType
    state: PositionState
    requested_price: float
    entry_price: float
    entry_time: datetime
    margin: float
    notional: float
    leverage: float
    initial_stop: float
    current_stop: float
    take_profit: float | None = None
    trail_activated: bool = False
    trail_level: int = 0
    high_water_mark: float = 0.0
    breakeven_locked: bool = False
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    original_notional: float = 0.0
    original_margin: float = 0.0
    costs: CostBreakdown = field(default_factory=CostBreakdown)
    partial_fills: list[PartialFill] = field(default_factory=list)
    exit_price: float | None = None
    exit_time: datetime | None = None
    realized_pnl: float | None = None
    realized_pnl_percent: float | None = None
    exit_reason: ExitReason | None = None
    failure_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def total_realized_partials(self) -> float:
        return sum(fill.realized_pnl for fill in self.partial_fills)

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly copy of the position."""
        data = asdict(self)
        data["direction"] = self.direction.value
        data["state"] = self.state.value
        data["exit_reason"] = self.exit_reason.value if self.exit_reason else None
        data["entry_time"] = self.entry_time.isoformat()
        data["exit_time"] = self.exit_time.isoformat() if self.exit_time else None
        data["partial_fills"] = [
            {**asdict(fill), "at": fill.at.isoformat()} for fill in self.partial_fills
        ]
        return data
