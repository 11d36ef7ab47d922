"""CLI entry point for impulse-trader."""

import sys
import time
from datetime import datetime
from typing import NoReturn

import click

from impulse_trader import __version__
from impulse_trader.config import get_settings
from impulse_trader.pipeline import build_runtime, run_scan_cycle
from impulse_trader.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="Show the version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """impulse-trader - first-extreme pullback scanner with paper position tracking."""
    if version:
        click.echo(f"impulse-trader version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _split(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


@cli.command()
@click.option("--symbols", "-s", default=None, help="Comma separated symbols (default from settings)")
@click.option("--timeframes", "-t", default=None, help="Comma separated timeframes")
def scan(symbols: str | None, timeframes: str | None) -> None:
    """Run a single scan cycle.

    Fetch candles -> detect setups -> open/update paper positions -> journal
    """
    setup_logging()
    logger = get_logger("impulse_trader.main")
    settings = get_settings()
    settings.ensure_directories()

    logger.info("starting_single_scan", timestamp=datetime.now().isoformat())

    try:
        runtime = build_runtime(settings)
        result = run_scan_cycle(
            settings, runtime, symbols=_split(symbols), timeframes=_split(timeframes)
        )
        logger.info(
            "scan_completed",
            status=result.status,
            elapsed_ms=round(result.elapsed_ms, 2),
            setups=len(result.setups),
            opened=len(result.opened),
            closed=len(result.closed),
            warnings=result.warnings,
        )
    except KeyboardInterrupt:
        logger.info("scan_interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("scan_failed", error=str(e))
        sys.exit(1)

    if result.status == "failed":
        sys.exit(1)


@cli.command()
@click.option(
    "--interval-sec",
    "-i",
    type=int,
    default=None,
    help="Seconds between cycles (default from settings)",
)
def loop(interval_sec: int | None) -> NoReturn:
    """Run scan cycles until interrupted.

    Setups and positions persist across cycles. Stop with Ctrl+C.
    """
    setup_logging()
    logger = get_logger("impulse_trader.main")
    settings = get_settings()
    settings.ensure_directories()
    interval = interval_sec or settings.scan_interval_sec

    logger.info("starting_loop", interval_sec=interval)

    runtime = build_runtime(settings)
    iteration = 0
    try:
        while True:
            iteration += 1
            try:
                result = run_scan_cycle(settings, runtime)
                stats = runtime.engines[0].stats()
                logger.info(
                    "loop_iteration_completed",
                    iteration=iteration,
                    status=result.status,
                    elapsed_ms=round(result.elapsed_ms, 2),
                    active_setups=len(runtime.detector),
                    open_positions=stats["open_positions"],
                    balance=round(stats["balance"], 2),
                )
            except Exception as e:
                logger.exception("loop_iteration_failed", iteration=iteration, error=str(e))

            time.sleep(interval)

    except KeyboardInterrupt:
        logger.info("loop_stopped", total_iterations=iteration)
        sys.exit(0)


@cli.command()
def status() -> None:
    """Show the configuration summary."""
    setup_logging()
    settings = get_settings()
    det = settings.detector
    life = settings.lifecycle

    click.echo("=" * 50)
    click.echo("impulse-trader - Status")
    click.echo("=" * 50)
    click.echo()

    click.echo("[Market data]")
    click.echo(f"   Binance API: {'[OK] Configured' if settings.binance_api_key else '[--] Not configured'}")
    click.echo(f"   Binance Testnet: {'Yes' if settings.binance_testnet else 'No'}")
    click.echo()

    click.echo("[Scanning]")
    click.echo(f"   Symbols: {', '.join(settings.symbols)}")
    click.echo(f"   Timeframes: {', '.join(settings.timeframes)}")
    click.echo(f"   Interval: {settings.scan_interval_sec}s")
    click.echo()

    click.echo("[Detector]")
    click.echo(f"   Oscillator period: {det.oscillator_period}")
    click.echo(f"   Long entry/deep: {det.oversold_threshold}/{det.deep_oversold_threshold}")
    click.echo(f"   Short entry/deep: {det.overbought_threshold}/{det.deep_overbought_threshold}")
    click.echo(f"   Min impulse: {det.min_impulse_percent}%")
    click.echo()

    click.echo("[Positions]")
    click.echo(f"   Balance: {life.initial_balance}")
    click.echo(f"   Size: {life.position_size_percent}% x{life.leverage}")
    click.echo(f"   Initial stop: {life.initial_stop_roi_percent}% ROI")
    trail = (
        f"{life.trail_trigger_percent}% / step {life.trail_step_percent}%"
        if life.trailing_enabled
        else "disabled"
    )
    click.echo(f"   Trailing: {trail}")
    click.echo(f"   Breakeven: {life.breakeven_trigger_percent or 'disabled'}")
    click.echo()

    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()
    click.echo("=" * 50)


if __name__ == "__main__":
    cli()
