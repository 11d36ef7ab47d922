"""Position lifecycle engine: sizing, protective stops and exits for one bot.

Every mutating operation returns an ``OperationResult``. Business-rule
rejections come back as ``rejected(reason)`` and leave the engine untouched.
"""

from __future__ import annotations

import math
import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Callable

from impulse_trader.config import LifecycleConfig
from impulse_trader.events import EngineEvent, EventCallback, EventKind
from impulse_trader.risk.costs import CostModel, ExecutionCostModel, ZeroCostModel, volatility_bucket
from impulse_trader.risk.positions import (
    ExitReason,
    EntryRequest,
    PartialFill,
    Position,
    PositionState,
    can_transition,
)
from impulse_trader.strategy.setups import Setup, SetupState
from impulse_trader.types import Direction, OperationResult, RejectReason, ops_for
from impulse_trader.utils.logging import get_logger, log_position_event, log_rejection


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PositionLifecycleEngine:
    """Owns the positions and the balance of one bot instance."""

    def __init__(
        self,
        config: LifecycleConfig,
        *,
        bot_id: str = "default",
        cost_model: CostModel | None = None,
        clock: Callable[[], datetime] | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self._config = config
        self._bot_id = bot_id
        if cost_model is None:
            cost_model = ExecutionCostModel() if config.enable_friction else ZeroCostModel()
        self._costs = cost_model
        self._clock = clock or _utc_now
        self._on_event = on_event
        self._lock = threading.RLock()
        self._positions: dict[str, Position] = {}
        self._closed: list[Position] = []
        self._balance = config.initial_balance
        self._peak_balance = config.initial_balance
        self._logger = get_logger("impulse_trader.risk.lifecycle").bind(bot_id=bot_id)

    # ==================== Balance ====================

    @property
    def bot_id(self) -> str:
        return self._bot_id

    @property
    def available_balance(self) -> float:
        """Cash not reserved as margin."""
        return self._balance

    @property
    def balance(self) -> float:
        """Cash including margin reserved by live positions."""
        return self._balance + sum(p.margin for p in self._positions.values())

    @property
    def peak_balance(self) -> float:
        return self._peak_balance

    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl for p in self._positions.values() if p.is_live)

    # ==================== Entry ====================

    def open_position(self, request: EntryRequest) -> OperationResult[Position]:
        """Queue, execute and fill an entry in one step at the requested price."""
        with self._lock:
            queued = self.queue_position(request)
            if not queued:
                return queued
            self.mark_executing(request.key)
            return self.confirm_fill(request.key)

    def queue_position(self, request: EntryRequest) -> OperationResult[Position]:
        """Validate an entry, reserve its margin and hold it in ``queued`` state."""
        with self._lock:
            margin = self._resolve_margin(request)
            reason = self._entry_rejection(request, margin)
            if reason is not None:
                log_rejection(
                    self._logger,
                    operation="open",
                    reason=reason,
                    key=request.key,
                    symbol=request.symbol,
                    price=request.price,
                )
                return OperationResult.rejected(reason)

            ops = ops_for(request.direction)
            initial_stop, take_profit = self._stop_prices(
                ops.direction, request.price, request.stop_price, request.take_profit
            )
            notional = margin * self._config.leverage
            now = self._clock()
            position = Position(
                id=f"{request.key}-{uuid.uuid4().hex[:8]}",
                key=request.key,
                bot_id=self._bot_id,
                symbol=request.symbol,
                timeframe=request.timeframe,
                direction=ops.direction,
                market_type=request.market_type,
                state=PositionState.QUEUED,
                requested_price=request.price,
                entry_price=request.price,
                entry_time=now,
                margin=margin,
                notional=notional,
                leverage=self._config.leverage,
                initial_stop=initial_stop,
                current_stop=initial_stop,
                take_profit=take_profit,
                current_price=request.price,
                original_notional=notional,
                original_margin=margin,
                metadata={
                    **request.metadata,
                    "oscillator": request.oscillator,
                    "requested_stop": request.stop_price,
                    "requested_take_profit": request.take_profit,
                },
            )
            self._balance -= margin
            self._positions[request.key] = position
            log_position_event(
                self._logger,
                "position_queued",
                key=request.key,
                state=position.state.value,
                price=request.price,
                margin=round(margin, 4),
            )
            return OperationResult.ok(position)

    def mark_executing(self, key: str) -> OperationResult[Position]:
        with self._lock:
            position = self._positions.get(key)
            if position is None:
                return self._not_found("mark_executing", key)
            return self._transition(position, PositionState.EXECUTING)

    def confirm_fill(self, key: str, fill_price: float | None = None) -> OperationResult[Position]:
        """Record the entry fill and move the position to ``open``."""
        with self._lock:
            position = self._positions.get(key)
            if position is None:
                return self._not_found("confirm_fill", key)
            price = position.requested_price if fill_price is None else fill_price
            if not _valid_price(price):
                log_rejection(
                    self._logger, operation="confirm_fill", reason=RejectReason.INVALID_PRICE, key=key
                )
                return OperationResult.rejected(RejectReason.INVALID_PRICE)
            if not can_transition(position.state, PositionState.OPEN):
                return self._transition(position, PositionState.OPEN)

            fill = self._costs.entry(
                price,
                position.notional,
                position.direction,
                volatility_bucket(position.metadata.get("oscillator")),
            )
            request_stop = position.metadata.get("requested_stop")
            request_tp = position.metadata.get("requested_take_profit")
            initial_stop, take_profit = self._stop_prices(
                position.direction, fill.effective_price, request_stop, request_tp
            )
            position.entry_price = fill.effective_price
            position.entry_time = self._clock()
            position.current_price = price
            position.initial_stop = initial_stop
            position.current_stop = initial_stop
            position.take_profit = take_profit
            position.costs.entry_fees = fill.fees
            position.costs.entry_slippage = fill.slippage_cost
            self._transition(position, PositionState.OPEN)

            log_position_event(
                self._logger,
                "position_opened",
                key=key,
                state=position.state.value,
                price=position.entry_price,
                direction=position.direction.value,
                margin=round(position.margin, 4),
                notional=round(position.notional, 4),
                stop=position.current_stop,
                take_profit=position.take_profit,
            )
            self._emit("position_opened", position)
            return OperationResult.ok(position)

    def fail_position(self, key: str, reason: str) -> OperationResult[Position]:
        """Abandon a queued or executing entry and refund its margin."""
        with self._lock:
            position = self._positions.get(key)
            if position is None:
                return self._not_found("fail_position", key)
            result = self._transition(position, PositionState.FAILED)
            if not result:
                return result

            self._balance += position.margin
            position.exit_reason = ExitReason.FAILED
            position.exit_time = self._clock()
            position.realized_pnl = 0.0
            position.realized_pnl_percent = 0.0
            position.failure_reason = reason
            del self._positions[key]
            self._closed.append(position)
            self._logger.warning("position_failed", key=key, reason=reason)
            self._emit("position_failed", position)
            return OperationResult.ok(position)

    def open_from_setup(self, setup: Setup, *, key: str | None = None) -> OperationResult[Position]:
        """Open a position from an actionable setup at its current price.

        The setup's structure stop is used as the initial stop when it sits
        within the configured distance band from entry.
        """
        if not setup.is_actionable:
            log_rejection(
                self._logger,
                operation="open_from_setup",
                reason=RejectReason.SETUP_NOT_ACTIONABLE,
                setup=setup.key,
                state=setup.state.value,
            )
            return OperationResult.rejected(RejectReason.SETUP_NOT_ACTIONABLE)

        ops = ops_for(setup.direction)
        price = setup.current_price
        stop = setup.structure_stop_price
        if stop is not None and price > 0:
            distance = abs(price - stop) / price * 100.0
            in_band = (
                self._config.structure_stop_min_percent
                <= distance
                <= self._config.structure_stop_max_percent
            )
            if not (ops.favorable(price, stop) and in_band):
                stop = None

        request = EntryRequest(
            key=key or setup.position_key,
            symbol=setup.symbol,
            direction=setup.direction,
            price=price,
            timeframe=setup.timeframe,
            market_type=setup.market_type,
            stop_price=stop,
            oscillator=setup.current_oscillator,
            metadata={
                "setup_key": setup.key,
                "position_tier": setup.position_tier,
                "classification": setup.classification,
            },
        )
        return self.open_position(request)

    # ==================== Updates ====================

    def update_position(
        self, key: str, price: float, *, exit_signal: str | None = None
    ) -> OperationResult[Position]:
        """Apply a price tick: breakeven, then trailing, then exit checks.

        ``exit_signal`` is a caller-supplied exit condition; when set and no
        stop or target fired, the position closes as ``closed_signal``.
        """
        with self._lock:
            position = self._positions.get(key)
            if position is None:
                return self._not_found("update", key)
            if not position.is_live:
                log_rejection(
                    self._logger,
                    operation="update",
                    reason=RejectReason.INVALID_TRANSITION,
                    key=key,
                    state=position.state.value,
                )
                return OperationResult.rejected(RejectReason.INVALID_TRANSITION)
            if not _valid_price(price):
                log_rejection(
                    self._logger, operation="update", reason=RejectReason.INVALID_PRICE, key=key
                )
                return OperationResult.rejected(RejectReason.INVALID_PRICE)

            roi = self._mark_to_market(position, price)
            self._check_breakeven(position, roi)
            self._update_trailing(position, roi)

            exit_reason = self._exit_reason(position, price, exit_signal)
            if exit_reason is not None:
                if exit_signal and exit_reason is ExitReason.SIGNAL:
                    position.metadata["exit_signal"] = exit_signal
                return self._close(position, price, exit_reason)
            return OperationResult.ok(position)

    def update_from_setup(self, setup: Setup, *, key: str | None = None) -> OperationResult[Position]:
        """Update the position opened from ``setup``; close it once the setup played out."""
        with self._lock:
            key = key or setup.position_key
            result = self.update_position(key, setup.current_price)
            if not result or result.value is None or result.value.is_terminal:
                return result
            if setup.state is SetupState.PLAYED_OUT:
                return self.close_position(key, setup.current_price, ExitReason.PLAYED_OUT)
            return result

    def close_position(
        self, key: str, price: float, reason: ExitReason = ExitReason.MANUAL
    ) -> OperationResult[Position]:
        with self._lock:
            position = self._positions.get(key)
            if position is None:
                return self._not_found("close", key)
            if not _valid_price(price):
                log_rejection(
                    self._logger, operation="close", reason=RejectReason.INVALID_PRICE, key=key
                )
                return OperationResult.rejected(RejectReason.INVALID_PRICE)
            if position.is_live:
                self._mark_to_market(position, price)
            return self._close(position, price, reason)

    def partial_close(self, key: str, price: float, fraction: float) -> OperationResult[Position]:
        """Close ``fraction`` of the remaining size and keep the rest running."""
        with self._lock:
            position = self._positions.get(key)
            if position is None:
                return self._not_found("partial_close", key)
            if not _valid_price(price):
                log_rejection(
                    self._logger, operation="partial_close", reason=RejectReason.INVALID_PRICE, key=key
                )
                return OperationResult.rejected(RejectReason.INVALID_PRICE)
            if not 0.0 < fraction < 1.0:
                log_rejection(
                    self._logger,
                    operation="partial_close",
                    reason=RejectReason.INVALID_FRACTION,
                    key=key,
                    fraction=fraction,
                )
                return OperationResult.rejected(RejectReason.INVALID_FRACTION)
            if position.state is not PositionState.PARTIALLY_CLOSED:
                result = self._transition(position, PositionState.PARTIALLY_CLOSED)
                if not result:
                    return result

            ops = ops_for(position.direction)
            self._mark_to_market(position, price)
            closed_notional = position.notional * fraction
            closed_margin = position.margin * fraction
            fill = self._costs.exit(
                price,
                closed_notional,
                position.direction,
                volatility_bucket(position.metadata.get("oscillator")),
            )
            raw_pnl = closed_notional * ops.price_change(position.entry_price, fill.effective_price)
            entry_share = position.costs.entry_fees * closed_notional / position.original_notional
            net_pnl = raw_pnl - entry_share - fill.fees

            position.notional -= closed_notional
            position.margin -= closed_margin
            position.costs.exit_fees += fill.fees
            position.costs.exit_slippage += fill.slippage_cost
            position.partial_fills.append(
                PartialFill(
                    fraction=fraction,
                    price=fill.effective_price,
                    notional=closed_notional,
                    margin=closed_margin,
                    realized_pnl=net_pnl,
                    fees=entry_share + fill.fees,
                    at=self._clock(),
                )
            )
            self._mark_to_market(position, price)
            self._balance += closed_margin + net_pnl
            self._update_peak()

            log_position_event(
                self._logger,
                "position_partially_closed",
                key=key,
                state=position.state.value,
                price=fill.effective_price,
                fraction=fraction,
                pnl=round(net_pnl, 4),
                remaining_notional=round(position.notional, 4),
            )
            self._emit("position_partially_closed", position)
            return OperationResult.ok(position)

    # ==================== Queries ====================

    def get_position(self, key: str) -> Position | None:
        return self._positions.get(key)

    def open_positions(self) -> list[Position]:
        return list(self._positions.values())

    def closed_positions(self, limit: int = 50) -> list[Position]:
        """Terminal positions, most recent first."""
        if limit <= 0:
            return []
        return list(reversed(self._closed[-limit:]))

    def stats(self) -> dict[str, Any]:
        trades = [p for p in self._closed if p.state is PositionState.CLOSED]
        pnls = [p.realized_pnl or 0.0 for p in trades]
        wins = [pnl for pnl in pnls if pnl > 0]
        losses = [pnl for pnl in pnls if pnl <= 0]
        total_wins = sum(wins)
        total_losses = abs(sum(losses))
        realized = sum(pnls)

        if total_losses > 0:
            profit_factor = total_wins / total_losses
        else:
            profit_factor = math.inf if total_wins > 0 else 0.0

        effective_balance = self.balance
        drawdown = self._peak_balance - effective_balance
        return {
            "bot_id": self._bot_id,
            "total_trades": len(trades),
            "winning_trades": len(wins),
            "losing_trades": len(losses),
            "win_rate": len(wins) / len(trades) * 100.0 if trades else 0.0,
            "total_pnl": realized,
            "total_pnl_percent": realized / self._config.initial_balance * 100.0,
            "largest_win": max(wins) if wins else 0.0,
            "largest_loss": min(losses) if losses else 0.0,
            "average_win": total_wins / len(wins) if wins else 0.0,
            "average_loss": total_losses / len(losses) if losses else 0.0,
            "profit_factor": profit_factor,
            "balance": effective_balance,
            "available_balance": self._balance,
            "peak_balance": self._peak_balance,
            "drawdown": drawdown,
            "drawdown_percent": drawdown / self._peak_balance * 100.0
            if self._peak_balance > 0
            else 0.0,
            "open_positions": len(self._positions),
        }

    def reset(self) -> None:
        with self._lock:
            self._positions.clear()
            self._closed.clear()
            self._balance = self._config.initial_balance
            self._peak_balance = self._config.initial_balance
            self._logger.info("engine_reset", balance=self._balance)

    # ==================== Internals ====================

    def _transition(self, position: Position, target: PositionState) -> OperationResult[Position]:
        """Move ``position`` to ``target`` if the transition table allows it.

        Only the lifecycle operations call this; they own the balance and
        map bookkeeping that goes with each state change.
        """
        if not can_transition(position.state, target):
            self._logger.warning(
                "transition_rejected",
                key=position.key,
                from_state=position.state.value,
                to_state=target.value,
            )
            return OperationResult.rejected(RejectReason.INVALID_TRANSITION)
        position.state = target
        return OperationResult.ok(position)

    def _resolve_margin(self, request: EntryRequest) -> float:
        if request.margin is not None:
            return request.margin
        return self._balance * self._config.position_size_percent / 100.0

    def _entry_rejection(self, request: EntryRequest, margin: float) -> str | None:
        if not _valid_price(request.price):
            return RejectReason.INVALID_PRICE
        ops = ops_for(request.direction)
        if request.stop_price is not None and not ops.favorable(request.price, request.stop_price):
            return RejectReason.INVALID_PRICE
        if request.take_profit is not None and not ops.favorable(request.take_profit, request.price):
            return RejectReason.INVALID_PRICE
        if request.key in self._positions:
            return RejectReason.DUPLICATE_POSITION
        if len(self._positions) >= self._config.max_open_positions:
            return RejectReason.MAX_POSITIONS_REACHED
        if not margin > 0 or margin > self._balance:
            return RejectReason.INSUFFICIENT_MARGIN
        return None

    def _stop_prices(
        self,
        direction: Direction,
        entry: float,
        request_stop: float | None,
        request_tp: float | None,
    ) -> tuple[float, float | None]:
        ops = ops_for(direction)
        leverage = self._config.leverage
        stop = request_stop
        if stop is None:
            stop = ops.offset(entry, -self._config.initial_stop_roi_percent / leverage / 100.0)
        take_profit = request_tp
        if take_profit is None and self._config.take_profit_roi_percent is not None:
            take_profit = ops.offset(entry, self._config.take_profit_roi_percent / leverage / 100.0)
        return stop, take_profit

    def _mark_to_market(self, position: Position, price: float) -> float:
        """Refresh live P&L fields and return the current ROI on margin."""
        ops = ops_for(position.direction)
        pnl = position.notional * ops.price_change(position.entry_price, price)
        roi = pnl / position.margin * 100.0 if position.margin > 0 else 0.0
        position.current_price = price
        position.unrealized_pnl = pnl
        position.unrealized_pnl_percent = roi
        if roi > position.high_water_mark:
            position.high_water_mark = roi
        return roi

    def _check_breakeven(self, position: Position, roi: float) -> None:
        trigger = self._config.breakeven_trigger_percent
        if trigger is None or position.breakeven_locked or roi < trigger:
            return

        ops = ops_for(position.direction)
        position.breakeven_locked = True
        lock_price = ops.offset(position.entry_price, self._config.breakeven_buffer_percent / 100.0)
        if ops.favorable(lock_price, position.current_stop):
            position.current_stop = lock_price
        log_position_event(
            self._logger,
            "breakeven_locked",
            key=position.key,
            state=position.state.value,
            price=position.current_price,
            stop=position.current_stop,
            roi=round(roi, 2),
        )
        self._emit("breakeven_locked", position)

    def _update_trailing(self, position: Position, roi: float) -> None:
        cfg = self._config
        if cfg.trail_trigger_percent is None or cfg.trail_step_percent is None:
            return
        trigger = cfg.trail_trigger_percent
        step = cfg.trail_step_percent

        if not position.trail_activated:
            if roi < trigger:
                return
            position.trail_activated = True
            # a partially closed remainder keeps its status while trailing
            if position.state is PositionState.OPEN:
                self._transition(position, PositionState.TRAILING)
            log_position_event(
                self._logger,
                "trailing_activated",
                key=position.key,
                state=position.state.value,
                price=position.current_price,
                roi=round(roi, 2),
            )
            self._emit("trailing_activated", position)

        level = math.floor((roi - trigger) / step) + 1
        if level <= position.trail_level:
            return
        position.trail_level = level

        ops = ops_for(position.direction)
        locked_roi = cfg.level1_lock_percent + (level - 1) * step
        new_stop = ops.offset(position.entry_price, locked_roi / 100.0 / position.leverage)
        if not ops.favorable(new_stop, position.current_stop):
            return
        position.current_stop = new_stop
        log_position_event(
            self._logger,
            "trail_adjusted",
            key=position.key,
            state=position.state.value,
            price=position.current_price,
            trail_level=level,
            locked_roi=locked_roi,
            stop=new_stop,
        )
        self._emit("trailing_moved", position)

    def _exit_reason(
        self, position: Position, price: float, exit_signal: str | None
    ) -> ExitReason | None:
        ops = ops_for(position.direction)
        if ops.stop_hit(price, position.current_stop):
            if position.trail_activated:
                return ExitReason.TRAILING
            if position.breakeven_locked:
                return ExitReason.BREAKEVEN
            return ExitReason.STOP_LOSS
        if position.take_profit is not None and ops.at_or_beyond(price, position.take_profit):
            return ExitReason.TAKE_PROFIT
        if exit_signal:
            return ExitReason.SIGNAL
        return None

    def _close(self, position: Position, price: float, reason: ExitReason) -> OperationResult[Position]:
        if not can_transition(position.state, PositionState.CLOSING):
            return self._transition(position, PositionState.CLOSING)
        self._transition(position, PositionState.CLOSING)

        ops = ops_for(position.direction)
        fill = self._costs.exit(
            price,
            position.notional,
            position.direction,
            volatility_bucket(position.metadata.get("oscillator")),
        )
        raw_pnl = position.notional * ops.price_change(position.entry_price, fill.effective_price)
        entry_share = position.costs.entry_fees * position.notional / position.original_notional
        net_pnl = raw_pnl - entry_share - fill.fees

        position.costs.exit_fees += fill.fees
        position.costs.exit_slippage += fill.slippage_cost
        position.current_price = price
        position.exit_price = fill.effective_price
        position.exit_time = self._clock()
        position.exit_reason = reason
        position.realized_pnl = net_pnl + position.total_realized_partials
        position.realized_pnl_percent = position.realized_pnl / position.original_margin * 100.0
        position.unrealized_pnl = 0.0
        position.unrealized_pnl_percent = 0.0
        self._transition(position, PositionState.CLOSED)

        del self._positions[position.key]
        self._balance += position.margin + net_pnl
        self._update_peak()
        self._closed.append(position)

        log_position_event(
            self._logger,
            "position_closed",
            key=position.key,
            state=position.state.value,
            price=position.exit_price,
            exit_reason=reason.value,
            pnl=round(position.realized_pnl, 4),
            roi=round(position.realized_pnl_percent, 2),
        )
        self._emit("position_closed", position)
        return OperationResult.ok(position)

    def _update_peak(self) -> None:
        effective = self.balance
        if effective > self._peak_balance:
            self._peak_balance = effective

    def _not_found(self, operation: str, key: str) -> OperationResult[Position]:
        log_rejection(
            self._logger, operation=operation, reason=RejectReason.POSITION_NOT_FOUND, key=key
        )
        return OperationResult.rejected(RejectReason.POSITION_NOT_FOUND)

    def _emit(self, kind: EventKind, position: Position) -> None:
        if self._on_event is None:
            return
        self._on_event(
            EngineEvent(kind=kind, key=position.key, snapshot=position.snapshot(), at=self._clock())
        )


def _valid_price(price: float) -> bool:
    return isinstance(price, (int, float)) and math.isfinite(price) and price > 0
