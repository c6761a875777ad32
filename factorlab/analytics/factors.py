"""
Point-in-time factor engine.

**Conceptual**: A factor is a single number describing one aspect of a
symbol at one moment: how far it has run (momentum), how overbought it is
(RSI), how bumpy the ride has been (volatility), how cheap it is (P/E). The
FactorEngine computes a named set of such numbers for one symbol as of one
timestamp, and the strategy evaluator and screener rank symbols by them.

**The central invariant: no look-ahead.** `compute(symbol, window, as_of)`
first discards every bar stamped after `as_of`, then reads only a bounded
trailing window of what is left. A factor value at t therefore depends only
on bars with timestamp <= t, no matter how much future data the caller
happened to pass in.

**Unavailable values**: A factor whose minimum window is not met, whose
input is missing (no fundamentals), or whose result is not a finite number
is reported as None ("unavailable"). It is never reported as 0, because 0 is
a meaningful value for most factors.

**Catalogue**: FACTOR_DEFINITIONS lists every factor with its category,
whether a higher value is better when ranking, and its minimum bar count.
The evaluator and screener use the catalogue to validate criteria and orient
percentile scores.
"""

import logging
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional

import numpy as np
import pandas as pd

from factorlab.utils.errors import ValidationError
from factorlab.utils.math import (
    compute_annualized_volatility,
    compute_downside_deviation,
    compute_ema_series,
    compute_percent_change,
    compute_return_array,
    compute_trend_slope,
    compute_wilder_rsi,
    compute_window_max_drawdown,
)

logger = logging.getLogger(__name__)

FACTOR_CATEGORIES = (
    "momentum",
    "technical",
    "volatility",
    "value",
    "quality",
    "size",
)

# Fundamental fields passed through unchanged from the supplied snapshot
FUNDAMENTAL_FIELDS = (
    "pe_ratio",
    "pb_ratio",
    "ps_ratio",
    "ev_ebitda",
    "dividend_yield",
    "roe",
    "roa",
    "profit_margin",
    "debt_to_equity",
    "current_ratio",
    "market_cap",
)


@dataclass(frozen=True)
class FactorDefinition:
    """
    Catalogue entry for one factor.

    Attributes:
        name: Factor name (snake_case, unique).
        category: One of FACTOR_CATEGORIES.
        higher_is_better: Ranking orientation used when a criterion doesn't
                          override it.
        min_bars: Bars needed for a value (0 for fundamentals).
        description: One-line human description.
    """
    name: str
    category: str
    higher_is_better: bool
    min_bars: int
    description: str


def _definitions(entries: Iterable[FactorDefinition]) -> Mapping[str, FactorDefinition]:
    return MappingProxyType({entry.name: entry for entry in entries})


FACTOR_DEFINITIONS: Mapping[str, FactorDefinition] = _definitions([
    # Momentum
    FactorDefinition("momentum_20d", "momentum", True, 21, "Percent change of close over 20 bars"),
    FactorDefinition("momentum_60d", "momentum", True, 61, "Percent change of close over 60 bars"),
    FactorDefinition("momentum_252d", "momentum", True, 253, "Percent change of close over 252 bars"),
    FactorDefinition("momentum_accel_20d", "momentum", True, 41,
                     "20-bar momentum minus the 20-bar momentum ending 20 bars earlier"),
    FactorDefinition("volume_momentum_20d", "momentum", True, 40,
                     "Average volume of the last 20 bars versus the prior 20, in percent"),
    FactorDefinition("trend_slope_20d", "momentum", True, 20,
                     "Annualized regression slope of log close over 20 bars, in percent"),
    # Technical
    FactorDefinition("rsi_14", "technical", False, 15, "Wilder RSI over 14 bars"),
    FactorDefinition("macd", "technical", True, 26, "EMA(12) minus EMA(26) of close"),
    FactorDefinition("macd_signal", "technical", True, 34, "EMA(9) of the MACD line"),
    FactorDefinition("macd_histogram", "technical", True, 34, "MACD minus its signal line"),
    FactorDefinition("price_to_sma_50", "technical", True, 50,
                     "Percent distance of close above its 50-bar simple average"),
    # Volatility / risk
    FactorDefinition("volatility_20d", "volatility", False, 21,
                     "Annualized stdev of daily returns over 20 bars, in percent"),
    FactorDefinition("volatility_60d", "volatility", False, 61,
                     "Annualized stdev of daily returns over 60 bars, in percent"),
    FactorDefinition("downside_deviation_60d", "volatility", False, 61,
                     "Annualized downside deviation over 60 bars, in percent"),
    FactorDefinition("max_drawdown_60d", "volatility", False, 60,
                     "Largest peak-to-trough close decline over 60 bars, in percent"),
    FactorDefinition("return_mean_60d", "volatility", True, 61,
                     "Mean daily simple return over 60 bars (decimal)"),
    FactorDefinition("return_variance_60d", "volatility", False, 61,
                     "Sample variance of daily simple returns over 60 bars (decimal)"),
    # Value
    FactorDefinition("pe_ratio", "value", False, 0, "Price to earnings"),
    FactorDefinition("pb_ratio", "value", False, 0, "Price to book"),
    FactorDefinition("ps_ratio", "value", False, 0, "Price to sales"),
    FactorDefinition("ev_ebitda", "value", False, 0, "Enterprise value to EBITDA"),
    FactorDefinition("dividend_yield", "value", True, 0, "Dividend yield, percent"),
    FactorDefinition("earnings_yield", "value", True, 0, "100 / P/E when P/E is positive"),
    FactorDefinition("book_yield", "value", True, 0, "100 / P/B when P/B is positive"),
    # Quality
    FactorDefinition("roe", "quality", True, 0, "Return on equity, percent"),
    FactorDefinition("roa", "quality", True, 0, "Return on assets, percent"),
    FactorDefinition("profit_margin", "quality", True, 0, "Net profit margin, percent"),
    FactorDefinition("debt_to_equity", "quality", False, 0, "Total debt to equity"),
    FactorDefinition("current_ratio", "quality", True, 0, "Current assets to current liabilities"),
    # Size
    FactorDefinition("market_cap", "size", True, 0, "Market capitalization"),
])


def get_factor_definition(name: str) -> FactorDefinition:
    """
    Look up a factor in the catalogue.

    Raises:
        ValidationError: If the factor name is unknown.
    """
    try:
        return FACTOR_DEFINITIONS[name]
    except KeyError:
        raise ValidationError(
            f"Unknown factor '{name}'. Known factors: {sorted(FACTOR_DEFINITIONS)}"
        )


def validate_categories(categories: Optional[Iterable[str]]) -> Optional[List[str]]:
    """
    Check requested categories against FACTOR_CATEGORIES.

    Returns:
        The categories as a list (None means "all").

    Raises:
        ValidationError: If any category is unknown.
    """
    if categories is None:
        return None
    requested = list(categories)
    unknown = sorted(set(requested) - set(FACTOR_CATEGORIES))
    if unknown:
        raise ValidationError(
            f"Unknown factor categories {unknown}. Known categories: {list(FACTOR_CATEGORIES)}"
        )
    return requested


@dataclass
class FactorSnapshot:
    """
    Factor values for one symbol as of one timestamp.

    Attributes:
        symbol: Instrument symbol.
        timestamp: The "as of" timestamp: the newest bar the values could
                   see (or the requested as_of when there were no bars).
        values: Mapping factor name -> finite float, or None when unavailable.
    """
    symbol: str
    timestamp: pd.Timestamp
    values: Dict[str, Optional[float]] = field(default_factory=dict)

    def get(self, name: str) -> Optional[float]:
        """Value of `name`, or None if unavailable or not computed."""
        return self.values.get(name)

    def is_available(self, name: str) -> bool:
        return self.values.get(name) is not None

    def has_all(self, names: Iterable[str]) -> bool:
        """True when every named factor has a value."""
        return all(self.values.get(name) is not None for name in names)

    def available_factors(self) -> Dict[str, float]:
        """Only the factors that have values."""
        return {name: value for name, value in self.values.items() if value is not None}

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "timestamp": self.timestamp.isoformat(),
            "factors": dict(sorted(self.values.items())),
        }


def _finite_or_none(value) -> Optional[float]:
    """Map NaN, +/-inf, None and non-numeric values to None; everything else to float."""
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return value


class FactorEngine:
    """
    Stateless calculator of factor snapshots.

    **Functionally**: The engine holds no per-symbol state. The same
    instance can be shared by every run and every screening thread.

    **Bounded window**: After the as_of cut, only the trailing
    `max_window_bars` bars are used. Every factor is a function of that
    window alone, so the value at t is identical however much older history
    the caller supplied.

    Args:
        max_window_bars: Trailing bars retained for computation (must cover
                         the longest factor, 253 bars for momentum_252d).
    """

    def __init__(self, max_window_bars: int = 260):
        longest = max(definition.min_bars for definition in FACTOR_DEFINITIONS.values())
        if max_window_bars < longest:
            raise ValueError(
                f"max_window_bars must be at least {longest} to cover every factor, "
                f"got {max_window_bars}"
            )
        self.max_window_bars = max_window_bars

    def compute(
        self,
        symbol: str,
        price_window: pd.DataFrame,
        as_of: pd.Timestamp,
        fundamentals: Optional[Mapping[str, float]] = None,
        categories: Optional[Iterable[str]] = None,
    ) -> FactorSnapshot:
        """
        Compute a factor snapshot for `symbol` as of `as_of`.

        **Step by step**:
          1. Drop bars with timestamp > as_of (no look-ahead).
          2. Keep the trailing max_window_bars bars.
          3. Evaluate every price factor in the requested categories.
          4. Copy fundamentals (and derive yields) in the requested categories.
          5. Map non-finite results to None.

        Args:
            symbol: Instrument symbol (used for labelling only).
            price_window: Price frame in canonical schema, oldest first.
                          May contain bars after as_of; they are ignored.
            as_of: Decision timestamp.
            fundamentals: Optional fundamentals snapshot {field: value}.
            categories: Optional subset of FACTOR_CATEGORIES to compute.

        Returns:
            FactorSnapshot whose `values` has one entry per factor in the
            requested categories.

        Raises:
            ValidationError: If a requested category is unknown.
        """
        wanted = validate_categories(categories)
        wanted_set = set(wanted) if wanted is not None else set(FACTOR_CATEGORIES)

        cut = int(price_window['timestamp'].searchsorted(as_of, side='right'))
        window = price_window.iloc[max(0, cut - self.max_window_bars):cut]

        closes = window['closing_price'].to_numpy(dtype=float)
        volumes = window['volume'].to_numpy(dtype=float)
        snapshot_time = window['timestamp'].iloc[-1] if len(window) else as_of

        values: Dict[str, Optional[float]] = {}
        price_factors = self._price_factor_functions()
        for name, definition in FACTOR_DEFINITIONS.items():
            if definition.category not in wanted_set or name not in price_factors:
                continue
            if len(closes) < definition.min_bars:
                values[name] = None
                continue
            values[name] = _finite_or_none(price_factors[name](closes, volumes))

        values.update(self._fundamental_values(fundamentals, wanted_set))

        logger.debug(
            "Computed %d factors for %s as of %s (%d bars, %d available)",
            len(values), symbol, snapshot_time, len(closes),
            sum(1 for v in values.values() if v is not None),
        )
        return FactorSnapshot(symbol=symbol, timestamp=snapshot_time, values=values)

    # ========================================================================
    # Internal helper methods
    # ========================================================================

    @staticmethod
    def _price_factor_functions() -> Dict[str, Callable[[np.ndarray, np.ndarray], float]]:
        return {
            "momentum_20d": lambda c, v: compute_percent_change(c, 20),
            "momentum_60d": lambda c, v: compute_percent_change(c, 60),
            "momentum_252d": lambda c, v: compute_percent_change(c, 252),
            "momentum_accel_20d": lambda c, v: _momentum_acceleration(c, 20),
            "volume_momentum_20d": lambda c, v: _volume_momentum(v, 20),
            "trend_slope_20d": lambda c, v: compute_trend_slope(c, 20),
            "rsi_14": lambda c, v: compute_wilder_rsi(c, 14),
            "macd": lambda c, v: _macd_components(c)[0],
            "macd_signal": lambda c, v: _macd_components(c)[1],
            "macd_histogram": lambda c, v: _macd_components(c)[2],
            "price_to_sma_50": lambda c, v: (c[-1] / c[-50:].mean() - 1.0) * 100.0,
            "volatility_20d": lambda c, v: compute_annualized_volatility(
                compute_return_array(c[-21:])) * 100.0,
            "volatility_60d": lambda c, v: compute_annualized_volatility(
                compute_return_array(c[-61:])) * 100.0,
            "downside_deviation_60d": lambda c, v: compute_downside_deviation(
                compute_return_array(c[-61:])) * 100.0,
            "max_drawdown_60d": lambda c, v: compute_window_max_drawdown(c[-60:]),
            "return_mean_60d": lambda c, v: compute_return_array(c[-61:]).mean(),
            "return_variance_60d": lambda c, v: np.var(compute_return_array(c[-61:]), ddof=1),
        }

    @staticmethod
    def _fundamental_values(
        fundamentals: Optional[Mapping[str, float]],
        wanted_set: set,
    ) -> Dict[str, Optional[float]]:
        source = fundamentals or {}
        values: Dict[str, Optional[float]] = {}
        for name in FUNDAMENTAL_FIELDS:
            if FACTOR_DEFINITIONS[name].category in wanted_set:
                values[name] = _finite_or_none(source.get(name))

        if "value" in wanted_set:
            pe = _finite_or_none(source.get("pe_ratio"))
            pb = _finite_or_none(source.get("pb_ratio"))
            values["earnings_yield"] = 100.0 / pe if pe is not None and pe > 0 else None
            values["book_yield"] = 100.0 / pb if pb is not None and pb > 0 else None
        return values


def _momentum_acceleration(closes: np.ndarray, periods: int) -> float:
    """Recent N-bar momentum minus the N-bar momentum ending N bars earlier."""
    recent = compute_percent_change(closes, periods)
    older = compute_percent_change(closes[:-periods], periods)
    return recent - older


def _volume_momentum(volumes: np.ndarray, periods: int) -> float:
    """Percent change of average volume, last N bars versus the N before."""
    recent = volumes[-periods:].mean()
    prior = volumes[-2 * periods:-periods].mean()
    if prior <= 0:
        return float("nan")
    return (recent / prior - 1.0) * 100.0


def _macd_components(closes: np.ndarray) -> tuple:
    """
    MACD line, signal line and histogram as of the last close.

    **Mathematical**:
        MACD = EMA12(close) - EMA26(close)
        signal = EMA9(MACD line)
        histogram = MACD - signal

    The MACD line exists from bar 26 on; the signal needs 9 MACD values,
    i.e. 34 bars. Missing pieces come back as NaN.
    """
    ema_fast = compute_ema_series(closes, 12)
    ema_slow = compute_ema_series(closes, 26)
    if len(ema_slow) == 0:
        return float("nan"), float("nan"), float("nan")

    # Align both EMA series on the bars where the slow one exists
    macd_line = ema_fast[-len(ema_slow):] - ema_slow
    signal_series = compute_ema_series(macd_line, 9)
    if len(signal_series) == 0:
        return float(macd_line[-1]), float("nan"), float("nan")

    macd = float(macd_line[-1])
    signal = float(signal_series[-1])
    return macd, signal, macd - signal

