"""
Configuration settings for the backtesting and factor-scoring engine.

**Conceptual**: This module provides a strongly-typed settings object loaded
from environment variables (optionally via a `.env` file at the project
root). Settings are validated when they are built, so a bad value fails at
startup with a message naming the variable, not halfway through a run.

**Injection, not ambient reads**: Engine components (runner, simulator,
screener, service) receive an EngineSettings instance explicitly. Only this
module touches `os.environ`. Tests construct EngineSettings(...) directly with
whatever values they need.

**Environment variables** (all optional):
  - FACTORLAB_MAX_CONCURRENT_RUNS: worker threads for independent runs (4).
  - FACTORLAB_MAX_BARS_PER_RUN: bar-count ceiling per run (20000).
  - FACTORLAB_RUN_TIMEOUT_SECONDS: wall-clock ceiling per run (300).
  - FACTORLAB_COMMISSION_RATE: commission as a fraction of notional (0.001).
  - FACTORLAB_MINIMUM_COMMISSION: per-trade commission floor in dollars (0).
  - FACTORLAB_MAXIMUM_COMMISSION: per-trade commission ceiling in dollars (unset: none).
  - FACTORLAB_SLIPPAGE_BPS: symmetric slippage in basis points (0).
  - FACTORLAB_FILL_TIMING: "next_open" or "close" (next_open).
  - FACTORLAB_HISTORY_LOOKBACK_DAYS: calendar days of warm-up history (400).
  - FACTORLAB_SCREEN_WORKERS: worker threads for per-symbol screening (8).
  - FACTORLAB_DATA_DIR: root of the CSV data tree (<project>/data).
  - FACTORLAB_LOG_LEVEL: logging level for scripts (INFO).
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from factorlab.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

FILL_TIMINGS = ("next_open", "close")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _read_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}")


def _read_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got: {raw!r}")


def _read_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    return _read_float(name, 0.0)


@dataclass(frozen=True)
class EngineSettings:
    """
    Runtime settings for backtests, screening, and the run pool.

    **Why frozen?**
      - Settings are shared by concurrently running backtests; an immutable
        object can be shared across threads without locking.
      - A run records the settings it started with; nothing can change them
        underneath it.

    Attributes:
        max_concurrent_runs: Upper bound on backtests executing at once.
        max_bars_per_run: A run processing more bars than this fails with
                          a timeout.
        run_timeout_seconds: Wall-clock ceiling for a single run.
        commission_rate: Commission as a fraction of trade notional
                         (0.001 = 10 bps).
        minimum_commission: Floor applied per trade, in dollars.
        maximum_commission: Optional ceiling per trade, in dollars; None
                            leaves commission uncapped.
        slippage_bps: Symmetric slippage applied to fill prices.
        fill_timing: "next_open" fills decisions at the next bar's open,
                     "close" fills at the decision bar's close.
        history_lookback_days: Calendar days of history loaded before a
                               run's start date for factor warm-up.
        screen_workers: Thread count for per-symbol factor work in a screen.
        data_dir: Root of the CSV data tree (raw/ and fundamentals.csv).
        log_level: Level used by scripts when configuring logging.
    """
    max_concurrent_runs: int = 4
    max_bars_per_run: int = 20000
    run_timeout_seconds: float = 300.0
    commission_rate: float = 0.001
    minimum_commission: float = 0.0
    maximum_commission: Optional[float] = None
    slippage_bps: float = 0.0
    fill_timing: str = "next_open"
    history_lookback_days: int = 400
    screen_workers: int = 8
    data_dir: Path = PROJECT_ROOT / "data"
    log_level: str = "INFO"

    def __post_init__(self):
        """Validate settings after initialization."""
        if self.max_concurrent_runs < 1:
            raise ConfigurationError(
                f"max_concurrent_runs must be at least 1, got: {self.max_concurrent_runs}"
            )
        if self.max_bars_per_run < 1:
            raise ConfigurationError(
                f"max_bars_per_run must be at least 1, got: {self.max_bars_per_run}"
            )
        if self.run_timeout_seconds <= 0:
            raise ConfigurationError(
                f"run_timeout_seconds must be positive, got: {self.run_timeout_seconds}"
            )
        if self.commission_rate < 0 or self.minimum_commission < 0:
            raise ConfigurationError(
                "commission_rate and minimum_commission must be non-negative, got: "
                f"{self.commission_rate}, {self.minimum_commission}"
            )
        if self.maximum_commission is not None and self.maximum_commission < self.minimum_commission:
            raise ConfigurationError(
                f"maximum_commission must be >= minimum_commission, got: "
                f"{self.maximum_commission} < {self.minimum_commission}"
            )
        if self.slippage_bps < 0:
            raise ConfigurationError(
                f"slippage_bps must be non-negative, got: {self.slippage_bps}"
            )
        if self.fill_timing not in FILL_TIMINGS:
            raise ConfigurationError(
                f"fill_timing must be one of {FILL_TIMINGS}, got: {self.fill_timing!r}"
            )
        if self.history_lookback_days < 0:
            raise ConfigurationError(
                f"history_lookback_days must be non-negative, got: {self.history_lookback_days}"
            )
        if self.screen_workers < 1:
            raise ConfigurationError(
                f"screen_workers must be at least 1, got: {self.screen_workers}"
            )
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigurationError(
                f"log_level must be one of {LOG_LEVELS}, got: {self.log_level!r}"
            )

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """
        Load engine settings from environment variables.

        Unset variables fall back to the dataclass defaults.

        Returns:
            Validated EngineSettings.

        Raises:
            ConfigurationError: If a variable is set to a malformed value.

        Usage example:
            >>> # In .env file:
            >>> # FACTORLAB_COMMISSION_RATE=0.0005
            >>> # FACTORLAB_FILL_TIMING=close
            >>>
            >>> settings = EngineSettings.from_env()
            >>> settings.fill_timing
            'close'
        """
        data_dir_raw = os.getenv("FACTORLAB_DATA_DIR")
        return cls(
            max_concurrent_runs=_read_int("FACTORLAB_MAX_CONCURRENT_RUNS", 4),
            max_bars_per_run=_read_int("FACTORLAB_MAX_BARS_PER_RUN", 20000),
            run_timeout_seconds=_read_float("FACTORLAB_RUN_TIMEOUT_SECONDS", 300.0),
            commission_rate=_read_float("FACTORLAB_COMMISSION_RATE", 0.001),
            minimum_commission=_read_float("FACTORLAB_MINIMUM_COMMISSION", 0.0),
            maximum_commission=_read_optional_float("FACTORLAB_MAXIMUM_COMMISSION"),
            slippage_bps=_read_float("FACTORLAB_SLIPPAGE_BPS", 0.0),
            fill_timing=os.getenv("FACTORLAB_FILL_TIMING", "next_open").strip().lower(),
            history_lookback_days=_read_int("FACTORLAB_HISTORY_LOOKBACK_DAYS", 400),
            screen_workers=_read_int("FACTORLAB_SCREEN_WORKERS", 8),
            data_dir=Path(data_dir_raw) if data_dir_raw else PROJECT_ROOT / "data",
            log_level=os.getenv("FACTORLAB_LOG_LEVEL", "INFO").strip().upper(),
        )


_default_settings: Optional[EngineSettings] = None


def get_settings() -> EngineSettings:
    """
    Get the process-wide settings, loading them on first call.

    The project-root `.env` file (if any) is loaded before the first read.
    Variables already present in the environment take precedence over it.

    Returns:
        Cached EngineSettings instance.
    """
    global _default_settings

    if _default_settings is None:
        load_dotenv(dotenv_path=PROJECT_ROOT / ".env", override=False)
        _default_settings = EngineSettings.from_env()
        logger.debug("Loaded engine settings: %s", _default_settings)

    return _default_settings


def reset_settings() -> None:
    """Clear the cached settings so the next get_settings() reloads them."""
    global _default_settings
    _default_settings = None
