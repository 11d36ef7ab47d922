from __future__ import annotations

import pytest

from impulse_trader.risk.costs import CostConfig, ExecutionCostModel, ZeroCostModel, volatility_bucket
from impulse_trader.types import Direction


def test_slippage_scales_with_volatility_and_size() -> None:
    model = ExecutionCostModel()
    assert model.slippage_bps(0.0, "normal") == pytest.approx(2.0)
    assert model.slippage_bps(0.0, "low") == pytest.approx(1.0)
    assert model.slippage_bps(0.0, "high") == pytest.approx(3.0)
    assert model.slippage_bps(0.0, "extreme") == pytest.approx(4.5)
    assert model.slippage_bps(100_000.0, "normal") == pytest.approx(7.0)


def test_every_bucket_comes_from_one_scale_table() -> None:
    config = CostConfig(volatility_multiplier=2.0)
    assert config.volatility_scale() == {"low": 0.5, "normal": 1.0, "high": 2.0, "extreme": 3.0}
    model = ExecutionCostModel(config)
    assert model.slippage_bps(0.0, "high") == pytest.approx(4.0)
    assert model.slippage_bps(0.0, "extreme") == pytest.approx(6.0)


def test_slippage_is_clamped() -> None:
    model = ExecutionCostModel(CostConfig(base_slippage_bps=0.1))
    assert model.slippage_bps(0.0, "normal") == pytest.approx(1.0)
    assert ExecutionCostModel().slippage_bps(10_000_000.0, "extreme") == pytest.approx(20.0)


def test_fills_always_work_against_the_trader() -> None:
    model = ExecutionCostModel()
    long_entry = model.entry(100.0, 1_000.0, Direction.LONG, "normal")
    long_exit = model.exit(100.0, 1_000.0, Direction.LONG, "normal")
    short_entry = model.entry(100.0, 1_000.0, Direction.SHORT, "normal")
    short_exit = model.exit(100.0, 1_000.0, Direction.SHORT, "normal")

    assert long_entry.effective_price > 100.0
    assert long_exit.effective_price < 100.0
    assert short_entry.effective_price < 100.0
    assert short_exit.effective_price > 100.0
    assert long_entry.fees == pytest.approx(0.4)
    assert long_entry.slippage_cost == pytest.approx(1_000.0 * 2.05 / 10_000)


def test_zero_cost_model_is_frictionless() -> None:
    fill = ZeroCostModel().entry(100.0, 1_000.0, Direction.LONG, "extreme")
    assert fill.effective_price == 100.0
    assert fill.fees == 0.0
    assert fill.slippage_cost == 0.0


def test_volatility_bucket() -> None:
    assert volatility_bucket(None) == "normal"
    assert volatility_bucket(10.0) == "extreme"
    assert volatility_bucket(22.0) == "high"
    assert volatility_bucket(78.0) == "high"
    assert volatility_bucket(50.0) == "low"
    assert volatility_bucket(32.0) == "normal"
