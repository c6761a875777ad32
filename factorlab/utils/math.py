"""
Mathematical and statistical utilities for factor computation.

This module holds the numerical building blocks the factor engine is made of:
returns, exponential averages, Wilder's RSI, annualized volatility, downside
deviation, and a regression-based trend slope.

**Conventions**:
  - Price inputs are 1-D numpy arrays (or Series) in chronological order,
    oldest first, newest last. The last element is the "as of" observation.
  - Scalar helpers return `float('nan')` when the window is too short or the
    result is undefined. The factor engine turns NaN into "unavailable", so
    nothing here needs to know about that concept.
"""

import math

import numpy as np
import pandas as pd
from scipy import stats

TRADING_DAYS_PER_YEAR = 252


def compute_simple_returns(prices: pd.Series) -> pd.Series:
    """
    Convert a price (or equity) series into simple returns.

    **Mathematical**: r_t = (P_t / P_{t-1}) - 1. The first value is NaN
    because there is no prior observation.

    Args:
        prices: Chronologically ordered series of prices or equity values.

    Returns:
        Series of simple returns with the same index as the input.
    """
    return prices.pct_change()


def compute_return_array(closes: np.ndarray) -> np.ndarray:
    """
    Simple returns of a chronological price array, without the leading NaN.

    Length is `len(closes) - 1`; an input with fewer than 2 prices gives an
    empty array.
    """
    closes = np.asarray(closes, dtype=float)
    if len(closes) < 2:
        return np.array([], dtype=float)
    return closes[1:] / closes[:-1] - 1.0


def compute_percent_change(closes: np.ndarray, periods: int) -> float:
    """
    Percent change of the last price versus the price `periods` bars earlier.

    **Mathematical**:
        momentum = (P_t / P_{t-N} - 1) * 100

    Needs N+1 prices. Returns NaN when history is too short or the
    reference price is not positive.
    """
    if periods <= 0:
        raise ValueError(f"periods must be positive, got {periods}")
    if len(closes) < periods + 1:
        return float("nan")
    past = float(closes[-(periods + 1)])
    current = float(closes[-1])
    if past <= 0:
        return float("nan")
    return (current / past - 1.0) * 100.0


def compute_ema_series(values: np.ndarray, period: int) -> np.ndarray:
    """
    Exponential moving average seeded with a simple average.

    **Conceptual**: The first EMA value is the plain mean of the first
    `period` observations; every later value blends the new observation with
    the previous EMA. Seeding this way makes the result depend only on the
    data passed in, which keeps factor values reproducible.

    **Mathematical**:
        k = 2 / (period + 1)
        EMA_0 = mean(x_0 .. x_{period-1})
        EMA_i = x_{period-1+i} * k + EMA_{i-1} * (1 - k)

    Args:
        values: Chronological observations.
        period: EMA period (positive).

    Returns:
        Array of length `len(values) - period + 1`, aligned so that the last
        element is the EMA as of the last observation. Empty if there are
        fewer than `period` observations.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    values = np.asarray(values, dtype=float)
    if len(values) < period:
        return np.array([], dtype=float)

    k = 2.0 / (period + 1)
    ema = np.empty(len(values) - period + 1, dtype=float)
    ema[0] = values[:period].mean()
    for i in range(1, len(ema)):
        ema[i] = values[period - 1 + i] * k + ema[i - 1] * (1.0 - k)
    return ema


def compute_wilder_rsi(closes: np.ndarray, period: int = 14) -> float:
    """
    Relative Strength Index with Wilder smoothing.

    **Conceptual**: RSI compares the size of recent gains to recent losses on
    a 0-100 scale. Readings above 70 are conventionally "overbought", below
    30 "oversold".

    **Mathematical**:
        avg_gain_0 = mean(gains over first N changes)
        avg_loss_0 = mean(losses over first N changes)
        avg_i = (avg_{i-1} * (N - 1) + x_i) / N     for each later change
        RS = avg_gain / avg_loss
        RSI = 100 - 100 / (1 + RS)

    **Edge cases**:
      - Fewer than N+1 prices: NaN.
      - No losses and some gains: 100.
      - No movement at all: 50 (neutral).
    """
    closes = np.asarray(closes, dtype=float)
    if len(closes) < period + 1:
        return float("nan")

    changes = np.diff(closes)
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    for i in range(period, len(changes)):
        avg_gain = (avg_gain * (period - 1) + gains[i]) / period
        avg_loss = (avg_loss * (period - 1) + losses[i]) / period

    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def compute_annualized_volatility(
    returns: np.ndarray,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> float:
    """
    Annualized sample standard deviation of periodic returns.

    **Mathematical**:
        σ_annual = stdev(returns, ddof=1) * sqrt(periods_per_year)

    Returns NaN for fewer than 2 returns. The result is a decimal
    (0.20 = 20%); callers that report percent multiply by 100.
    """
    returns = np.asarray(returns, dtype=float)
    if len(returns) < 2:
        return float("nan")
    return float(np.std(returns, ddof=1) * math.sqrt(periods_per_year))


def compute_downside_deviation(
    returns: np.ndarray,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> float:
    """
    Annualized root-mean-square of negative returns (target return 0).

    Returns 0.0 when no return is negative and NaN for an empty input.
    """
    returns = np.asarray(returns, dtype=float)
    if len(returns) == 0:
        return float("nan")
    negatives = np.minimum(returns, 0.0)
    return float(np.sqrt(np.mean(negatives ** 2)) * math.sqrt(periods_per_year))


def compute_window_max_drawdown(closes: np.ndarray) -> float:
    """
    Largest peak-to-trough decline within a price window, in percent (>= 0).
    """
    closes = np.asarray(closes, dtype=float)
    if len(closes) == 0:
        return float("nan")
    running_peak = np.maximum.accumulate(closes)
    drawdowns = (running_peak - closes) / running_peak
    return float(drawdowns.max() * 100.0)


def compute_trend_slope(closes: np.ndarray, window: int) -> float:
    """
    Annualized least-squares slope of log prices over the last `window` bars.

    **Conceptual**: Where momentum only compares two points, the regression
    slope uses every bar in the window, so a single spike moves it less.
    Positive slope means an upward trend.

    **Mathematical**: Fit log(P) = α + β * t over t = 0 .. window-1 with
    scipy.stats.linregress. β is the per-bar log growth rate, reported as
        slope = β * 252 * 100    (percent per year)

    Returns NaN with fewer than `window` prices or non-positive prices.
    """
    if window < 2:
        raise ValueError(f"window must be at least 2, got {window}")
    closes = np.asarray(closes, dtype=float)
    if len(closes) < window:
        return float("nan")
    window_prices = closes[-window:]
    if np.any(window_prices <= 0):
        return float("nan")

    # Flat windows make linregress warn about zero variance in y; slope is 0
    if np.all(window_prices == window_prices[0]):
        return 0.0

    x = np.arange(window)
    result = stats.linregress(x, np.log(window_prices))
    return float(result.slope * TRADING_DAYS_PER_YEAR * 100.0)
