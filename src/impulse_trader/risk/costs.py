"""Execution cost models: taker fees and volatility-scaled slippage."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol

from pydantic import BaseModel, Field

from impulse_trader.types import Direction, ops_for

VolatilityBucket = Literal["low", "normal", "high", "extreme"]


@dataclass(frozen=True, slots=True)
class Fill:
    """Price actually obtained and what it cost.

    Slippage is already inside ``effective_price``; ``fees`` are the
    exchange fees on top. ``slippage_cost`` is reported for bookkeeping only.
    """

    effective_price: float
    fees: float
    slippage_cost: float = 0.0


class CostModel(Protocol):
    def entry(
        self, price: float, notional: float, direction: Direction, volatility: VolatilityBucket
    ) -> Fill: ...

    def exit(
        self, price: float, notional: float, direction: Direction, volatility: VolatilityBucket
    ) -> Fill: ...


class ZeroCostModel:
    """Frictionless fills at the requested price."""

    def entry(
        self, price: float, notional: float, direction: Direction, volatility: VolatilityBucket
    ) -> Fill:
        return Fill(effective_price=price, fees=0.0)

    def exit(
        self, price: float, notional: float, direction: Direction, volatility: VolatilityBucket
    ) -> Fill:
        return Fill(effective_price=price, fees=0.0)


class CostConfig(BaseModel):
    taker_fee: float = Field(default=0.0004, ge=0.0, description="Fee rate for market orders")
    base_slippage_bps: float = Field(default=2.0, ge=0.0)
    volatility_multiplier: float = Field(default=1.5, ge=1.0)
    size_impact_bps_per_10k: float = Field(default=0.5, ge=0.0)
    min_slippage_bps: float = Field(default=1.0, ge=0.0)
    max_slippage_bps: float = Field(default=20.0, gt=0.0)

    def volatility_scale(self) -> dict[str, float]:
        """Slippage multiplier per volatility bucket."""
        return {
            "low": 0.5,
            "normal": 1.0,
            "high": self.volatility_multiplier,
            "extreme": self.volatility_multiplier * 1.5,
        }


class ExecutionCostModel:
    """Taker fee plus slippage that always works against the trader."""

    def __init__(self, config: CostConfig | None = None) -> None:
        self._config = config or CostConfig()
        self._scale = self._config.volatility_scale()

    def slippage_bps(self, notional: float, volatility: VolatilityBucket = "normal") -> float:
        cfg = self._config
        size_impact = notional / 10_000 * cfg.size_impact_bps_per_10k
        bps = cfg.base_slippage_bps * self._scale[volatility] + size_impact
        return min(cfg.max_slippage_bps, max(cfg.min_slippage_bps, bps))

    def fee(self, notional: float) -> float:
        return notional * self._config.taker_fee

    def entry(
        self, price: float, notional: float, direction: Direction, volatility: VolatilityBucket
    ) -> Fill:
        rate = self.slippage_bps(notional, volatility) / 10_000
        # buying higher for longs, selling lower for shorts
        effective = ops_for(direction).offset(price, rate)
        return Fill(
            effective_price=effective,
            fees=self.fee(notional),
            slippage_cost=notional * rate,
        )

    def exit(
        self, price: float, notional: float, direction: Direction, volatility: VolatilityBucket
    ) -> Fill:
        rate = self.slippage_bps(notional, volatility) / 10_000
        effective = ops_for(direction).offset(price, -rate)
        return Fill(
            effective_price=effective,
            fees=self.fee(notional),
            slippage_cost=notional * rate,
        )


def volatility_bucket(oscillator: float | None) -> VolatilityBucket:
    """Rough volatility regime from how stretched the oscillator is."""
    if oscillator is None:
        return "normal"
    if oscillator < 15 or oscillator > 85:
        return "extreme"
    if oscillator < 25 or oscillator > 75:
        return "high"
    if 40 <= oscillator <= 60:
        return "low"
    return "normal"
