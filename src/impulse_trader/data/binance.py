"""Binance futures kline client."""

from __future__ import annotations

import pandas as pd  # type: ignore[import-untyped]
from binance.client import Client  # type: ignore[import-untyped]
from binance.exceptions import BinanceAPIException, BinanceRequestException  # type: ignore[import-untyped]
from requests.exceptions import RequestException
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from impulse_trader.config import Settings
from impulse_trader.data.candles import normalize_candles
from impulse_trader.utils.logging import get_logger

_KLINE_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base_asset_volume",
    "taker_buy_quote_asset_volume",
    "ignore",
]


class BinanceDataClient:
    """Read-only OHLCV source backed by python-binance."""

    _INTERVAL_MAP = {
        "1m": Client.KLINE_INTERVAL_1MINUTE,
        "5m": Client.KLINE_INTERVAL_5MINUTE,
        "15m": Client.KLINE_INTERVAL_15MINUTE,
        "1h": Client.KLINE_INTERVAL_1HOUR,
        "4h": Client.KLINE_INTERVAL_4HOUR,
        "1d": Client.KLINE_INTERVAL_1DAY,
    }

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger("impulse_trader.data.binance")
        self._client = Client(
            api_key=settings.binance_api_key or None,
            api_secret=settings.binance_api_secret or None,
            testnet=settings.binance_testnet,
        )

    def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> pd.DataFrame:
        """Fetch futures klines and return a normalized ascending frame.

        Transport and API errors are retried with exponential backoff; the
        last error is re-raised once attempts run out.
        """
        interval = self._INTERVAL_MAP.get(timeframe.lower())
        if interval is None:
            raise ValueError(f"unsupported_interval: {timeframe}")

        retrying = Retrying(
            retry=retry_if_exception_type(
                (BinanceAPIException, BinanceRequestException, RequestException)
            ),
            wait=wait_exponential(multiplier=1, min=1, max=8),
            stop=stop_after_attempt(self._settings.request_retries),
            before_sleep=self._log_retry,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                rows = self._client.futures_klines(symbol=symbol, interval=interval, limit=limit)

        df = pd.DataFrame(rows, columns=_KLINE_COLUMNS)
        if df.empty:
            raise RuntimeError("empty_ohlcv_response")

        df["close_time"] = pd.to_datetime(df["close_time"], unit="ms", utc=True)
        df = normalize_candles(df)
        return df[["open_time", "open", "high", "low", "close", "volume", "close_time"]]

    def _log_retry(self, retry_state) -> None:  # type: ignore[no-untyped-def]
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._logger.warning(
            "candle_fetch_retry",
            attempt=retry_state.attempt_number,
            error=str(exc),
        )
