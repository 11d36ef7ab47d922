"""Configuration loading from environment variables and the .env file."""

from enum import Enum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class LogFormat(str, Enum):
    """Log output format."""

    JSON = "json"
    CONSOLE = "console"


class DetectorConfig(BaseModel):
    """Thresholds for the setup detection engine."""

    oscillator_period: int = Field(default=14, ge=2, le=100, description="RSI period")
    oversold_threshold: float = Field(default=30.0, gt=0, lt=50, description="Long entry level")
    deep_oversold_threshold: float = Field(default=20.0, gt=0, lt=50, description="Long tier-2 level")
    overbought_threshold: float = Field(default=70.0, gt=50, lt=100, description="Short entry level")
    deep_overbought_threshold: float = Field(
        default=80.0, gt=50, lt=100, description="Short tier-2 level"
    )
    recovery_threshold: float = Field(
        default=50.0,
        gt=0,
        lt=100,
        description="Oscillator level that ends a reversing setup",
    )
    reversal_band: float = Field(
        default=10.0,
        ge=0.0,
        lt=50,
        description="Points past the entry threshold that end an actionable setup outright",
    )
    min_impulse_percent: float = Field(default=5.0, gt=0, description="Minimum impulse size (%)")
    min_impulse_dominance: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Minimum share of candles moving with the impulse"
    )
    impulse_lookback: int = Field(default=50, ge=10, le=500, description="Impulse scan window")
    min_candles: int = Field(default=50, ge=20, description="Candles required per evaluation")
    htf_min_confidence: float = Field(
        default=0.5, ge=0.0, le=1.0, description="HTF confidence above which alignment is enforced"
    )
    structure_buffer_percent: float = Field(
        default=0.5, ge=0.0, le=5.0, description="Buffer beyond the pullback extreme (%)"
    )
    exhaustion_retracement: float = Field(
        default=0.618, gt=0.0, lt=1.0, description="Retracement that flags momentum exhaustion"
    )
    target_proximity_percent: float = Field(
        default=1.0, ge=0.0, le=10.0, description="Distance to the impulse end that counts as target"
    )
    volume_contraction_ratio: float = Field(default=0.8, gt=0.0, le=1.0)
    divergence_lookback: int = Field(default=50, ge=10)
    swing_lookback: int = Field(default=3, ge=1, le=10)

    @model_validator(mode="after")
    def _check_threshold_order(self) -> "DetectorConfig":
        if self.deep_oversold_threshold >= self.oversold_threshold:
            raise ValueError("deep_oversold_threshold must be below oversold_threshold")
        if self.deep_overbought_threshold <= self.overbought_threshold:
            raise ValueError("deep_overbought_threshold must be above overbought_threshold")
        if not self.oversold_threshold < self.recovery_threshold < self.overbought_threshold:
            raise ValueError("recovery_threshold must sit between the entry thresholds")
        return self


class LifecycleConfig(BaseModel):
    """Sizing and protective-stop parameters for one lifecycle engine (bot)."""

    initial_balance: float = Field(default=2000.0, gt=0)
    position_size_percent: float = Field(default=1.0, gt=0, le=100, description="Margin per trade (%)")
    leverage: float = Field(default=10.0, ge=1.0, le=200.0)
    max_open_positions: int = Field(default=10, ge=1)
    initial_stop_roi_percent: float = Field(
        default=20.0, gt=0, description="Initial stop as ROI on margin (%)"
    )
    take_profit_roi_percent: float | None = Field(default=None, gt=0)
    breakeven_trigger_percent: float | None = Field(default=None, gt=0)
    breakeven_buffer_percent: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Price buffer past entry when locking breakeven (%)"
    )
    trail_trigger_percent: float | None = Field(default=10.0, gt=0)
    trail_step_percent: float | None = Field(default=10.0, gt=0)
    level1_lock_percent: float = Field(default=0.0, ge=0.0, description="ROI locked at trail level 1")
    structure_stop_min_percent: float = Field(default=0.5, ge=0.0)
    structure_stop_max_percent: float = Field(default=10.0, gt=0.0)
    enable_friction: bool = Field(default=False, description="Apply the execution cost model")

    @property
    def trailing_enabled(self) -> bool:
        return self.trail_trigger_percent is not None and self.trail_step_percent is not None


class Settings(BaseSettings):
    """Application settings.

    Loaded from environment variables and the .env file. Nested engine
    parameters use a double underscore, e.g. ``DETECTOR__OVERSOLD_THRESHOLD``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="Use the Binance testnet")
    request_retries: int = Field(default=3, ge=1, le=10, description="Candle fetch attempts")

    # ==================== Scanning ====================
    symbols: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["BTCUSDT", "ETHUSDT"])
    timeframes: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["5m", "15m", "1h"])
    htf_map: dict[str, str] = Field(
        default_factory=lambda: {"5m": "1h", "15m": "4h", "1h": "4h"},
        description="Higher timeframe used for trend confirmation",
    )
    candles_to_fetch: int = Field(default=100, ge=50, le=1500)
    scan_interval_sec: int = Field(default=60, ge=5)

    # ==================== Engines ====================
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)

    # ==================== Logging ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="Log output format",
    )

    # ==================== Storage ====================
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="Event journal directory",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """Convert strings to Path objects."""
        return Path(v) if isinstance(v, str) else v

    @field_validator("symbols", "timeframes", mode="before")
    @classmethod
    def parse_csv_list(cls, v: str | list[str]) -> list[str]:
        """Accept comma separated strings from the environment."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    def ensure_directories(self) -> None:
        """Create the directories the pipeline writes to."""
        self.journal_dir.mkdir(parents=True, exist_ok=True)


# Module-level instance, created lazily
_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the shared settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from the environment."""
    global _settings
    _settings = Settings()
    return _settings
