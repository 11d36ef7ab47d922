"""Scan cycle: fetch candles, run the detector, drive the lifecycle engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter

import pandas as pd  # type: ignore[import-untyped]

from impulse_trader.config import Settings
from impulse_trader.data.binance import BinanceDataClient
from impulse_trader.data.candles import CandleProvider
from impulse_trader.journal.store import JournalStore
from impulse_trader.risk.lifecycle import PositionLifecycleEngine
from impulse_trader.strategy.detector import SetupDetector
from impulse_trader.strategy.setups import Setup
from impulse_trader.types import CycleResult, TrendSignal
from impulse_trader.utils.logging import get_logger


@dataclass(slots=True)
class ScanRuntime:
    """Long-lived collaborators shared by consecutive cycles."""

    provider: CandleProvider
    detector: SetupDetector
    engines: list[PositionLifecycleEngine]
    journal: JournalStore
    cycles: int = 0
    last_status: str = field(default="idle")


def build_runtime(settings: Settings, provider: CandleProvider | None = None) -> ScanRuntime:
    """Wire a detector and one paper engine to the journal."""
    journal = JournalStore(settings.journal_dir)
    detector = SetupDetector(settings.detector, on_event=journal.record_event)
    engine = PositionLifecycleEngine(
        settings.lifecycle,
        bot_id="paper",
        on_event=journal.record_event,
    )
    return ScanRuntime(
        provider=provider or BinanceDataClient(settings),
        detector=detector,
        engines=[engine],
        journal=journal,
    )


def run_scan_cycle(
    settings: Settings,
    runtime: ScanRuntime,
    *,
    symbols: list[str] | None = None,
    timeframes: list[str] | None = None,
) -> CycleResult:
    """Run one pass over every symbol and timeframe.

    A failing symbol is logged, journaled and skipped; the rest of the cycle
    still runs.
    """
    logger = get_logger("impulse_trader.pipeline")
    started = perf_counter()
    symbols = symbols or settings.symbols
    timeframes = timeframes or settings.timeframes
    journal = runtime.journal
    result = CycleResult(status="unknown")
    runtime.cycles += 1

    journal.append(
        "cycle_start",
        {
            "cycle": runtime.cycles,
            "symbols": symbols,
            "timeframes": timeframes,
            "started_at": datetime.now(timezone.utc).isoformat(),
        },
    )

    try:
        htf_cache: dict[tuple[str, str], TrendSignal] = {}
        scanned = 0
        for symbol in symbols:
            for timeframe in timeframes:
                try:
                    candles = runtime.provider.fetch_candles(
                        symbol, timeframe, settings.candles_to_fetch
                    )
                    journal.append(
                        "market_data",
                        {
                            "symbol": symbol,
                            "timeframe": timeframe,
                            "rows": len(candles),
                            "last_close": _last_close(candles),
                        },
                    )
                    htf_trend = _htf_trend(settings, runtime, symbol, timeframe, htf_cache)
                    setups = runtime.detector.analyze(
                        symbol, timeframe, candles, htf_trend=htf_trend
                    )
                except Exception as exc:  # noqa: BLE001 - one bad symbol must not stop the cycle.
                    logger.exception(
                        "symbol_scan_failed", symbol=symbol, timeframe=timeframe, error=str(exc)
                    )
                    journal.append(
                        "error", {"symbol": symbol, "timeframe": timeframe, "error": str(exc)}
                    )
                    result.warnings.append(f"{symbol}:{timeframe}:{exc}")
                    continue

                scanned += 1
                for setup in setups:
                    result.setups.append(setup.snapshot())
                    _drive_engines(runtime, setup, result)

        if scanned == 0 and result.warnings:
            status = "failed"
        elif result.warnings:
            status = "completed_with_errors"
        else:
            status = "completed"
        return _finish_cycle(result, runtime, started, status=status)

    except Exception as exc:  # noqa: BLE001 - top-level guard for loop resilience.
        logger.exception("pipeline_failed", error=str(exc))
        journal.append("error", {"error": str(exc)})
        return _finish_cycle(result, runtime, started, status="failed")


def _drive_engines(runtime: ScanRuntime, setup: Setup, result: CycleResult) -> None:
    for engine in runtime.engines:
        if engine.get_position(setup.position_key) is not None:
            outcome = engine.update_from_setup(setup)
            if outcome and outcome.value is not None and outcome.value.is_terminal:
                result.closed.append(outcome.value.snapshot())
            continue

        if not setup.is_actionable:
            continue
        outcome = engine.open_from_setup(setup)
        if outcome and outcome.value is not None:
            result.opened.append(outcome.value.snapshot())
        else:
            runtime.journal.append(
                "rejection",
                {"bot_id": engine.bot_id, "setup": setup.key, "reason": outcome.reason},
            )


def _htf_trend(
    settings: Settings,
    runtime: ScanRuntime,
    symbol: str,
    timeframe: str,
    cache: dict[tuple[str, str], TrendSignal],
) -> TrendSignal | None:
    htf = settings.htf_map.get(timeframe)
    if htf is None:
        return None
    key = (symbol, htf)
    if key not in cache:
        htf_candles = runtime.provider.fetch_candles(symbol, htf, settings.candles_to_fetch)
        cache[key] = runtime.detector.trend_for(htf_candles)
    return cache[key]


def _last_close(candles: pd.DataFrame) -> float | None:
    if candles.empty:
        return None
    return float(candles["close"].iloc[-1])


def _finish_cycle(
    result: CycleResult,
    runtime: ScanRuntime,
    started: float,
    *,
    status: str,
) -> CycleResult:
    elapsed_ms = (perf_counter() - started) * 1000
    result.status = status
    result.elapsed_ms = elapsed_ms
    runtime.last_status = status
    runtime.journal.append(
        "cycle_end",
        {
            "status": status,
            "elapsed_ms": elapsed_ms,
            "setups": len(result.setups),
            "opened": len(result.opened),
            "closed": len(result.closed),
            "warnings": len(result.warnings),
        },
    )
    return result
