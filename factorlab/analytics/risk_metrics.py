"""
Performance and risk metrics for backtest results.

This module reduces an equity curve and a trade log into summary statistics.
Metrics are grouped into:
  - Core performance: total return, CAGR, annualized volatility.
  - Risk-adjusted: Sharpe, Sortino, Calmar.
  - Drawdown/pain: drawdown series, max drawdown, max drawdown duration.
  - Trade-level: win rate, profit factor, average/largest win and loss,
    holding periods.
  - Calendar: monthly returns.
  - Relative: benchmark comparison (beta, alpha, correlation, tracking
    error) when a benchmark price series is supplied.

**Units**: Returns, drawdowns and volatility are reported in PERCENT
(12.5 means 12.5%). Ratios (Sharpe, Sortino, Calmar, profit factor) are
plain numbers. Drawdowns are positive magnitudes in [0, 100].

**Never divide by zero**: a ratio whose denominator is zero or whose sample
is too small is reported as 0.0, and its name is added to
`PerformanceMetrics.unavailable` so consumers can tell "zero" from "could
not be computed".

**Risk-free rate**: 0 throughout; Sharpe is mean/stdev of daily returns
annualized by √252.
"""

import math
from dataclasses import dataclass, field
from typing import List, Sequence

import numpy as np
import pandas as pd

from factorlab.execution.paper_broker import OrderSide, Trade
from factorlab.utils.math import TRADING_DAYS_PER_YEAR, compute_simple_returns

# Standard deviations below this are treated as zero
_ZERO_TOLERANCE = 1e-12


def compute_total_return(equity_curve: pd.Series, initial_capital: float) -> float:
    """
    Total return over the run, in percent.

    **Mathematical**:
        total_return = (final_equity - initial_capital) / initial_capital * 100

    An empty curve means nothing happened: 0.0.
    """
    if initial_capital <= 0:
        raise ValueError(f"initial_capital must be positive, got {initial_capital}")
    if equity_curve.empty:
        return 0.0
    return (float(equity_curve.iloc[-1]) - initial_capital) / initial_capital * 100.0


def compute_cagr(
    equity_curve: pd.Series,
    initial_capital: float,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> float:
    """
    Compound annual growth rate, in percent.

    **Mathematical**: With n bars in the curve,
        CAGR = (final / initial) ^ (periods_per_year / n) - 1

    Returns NaN for fewer than 2 bars or a non-positive final equity.
    """
    n = len(equity_curve)
    if n < 2:
        return float("nan")
    final = float(equity_curve.iloc[-1])
    if final <= 0:
        return float("nan")
    return ((final / initial_capital) ** (periods_per_year / n) - 1.0) * 100.0


def compute_annualized_volatility(
    returns: pd.Series,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> float:
    """Annualized sample stdev of periodic returns, in percent (NaN if < 2)."""
    clean = returns.dropna()
    if len(clean) < 2:
        return float("nan")
    return float(clean.std(ddof=1) * math.sqrt(periods_per_year) * 100.0)


def compute_sharpe_ratio(
    returns: pd.Series,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> float:
    """
    Annualized Sharpe ratio with a zero risk-free rate.

    **Mathematical**:
        Sharpe = mean(r) / stdev(r) * sqrt(periods_per_year)

    **Edge cases**: fewer than 2 returns, or zero deviation, return NaN
    (the caller reports it as unavailable).
    """
    clean = returns.dropna()
    if len(clean) < 2:
        return float("nan")
    deviation = float(clean.std(ddof=1))
    if not math.isfinite(deviation) or deviation < _ZERO_TOLERANCE:
        return float("nan")
    return float(clean.mean()) / deviation * math.sqrt(periods_per_year)


def compute_sortino_ratio(
    returns: pd.Series,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> float:
    """
    Annualized Sortino ratio: mean return over downside deviation.

    **Mathematical**:
        downside = sqrt(mean(min(r, 0)^2))
        Sortino = mean(r) / downside * sqrt(periods_per_year)

    NaN when there are fewer than 2 returns or no downside at all.
    """
    clean = returns.dropna()
    if len(clean) < 2:
        return float("nan")
    downside = float(np.sqrt(np.mean(np.minimum(clean.to_numpy(), 0.0) ** 2)))
    if downside < _ZERO_TOLERANCE:
        return float("nan")
    return float(clean.mean()) / downside * math.sqrt(periods_per_year)


def compute_drawdown_series(equity_curve: pd.Series) -> pd.Series:
    """
    Percent drop from the running peak at every point (values >= 0).

    **Mathematical**:
        peak_t = max(equity_0, ..., equity_t)      (only ever increases)
        drawdown_t = (peak_t - equity_t) / peak_t * 100
    """
    running_peak = equity_curve.cummax()
    return (running_peak - equity_curve) / running_peak * 100.0


def compute_max_drawdown(equity_curve: pd.Series) -> float:
    """
    Worst peak-to-trough decline, in percent, within [0, 100].

    An empty curve has no drawdown: 0.0.
    """
    if equity_curve.empty:
        return 0.0
    worst = float(compute_drawdown_series(equity_curve).max())
    return min(max(worst, 0.0), 100.0)


def compute_max_drawdown_duration(equity_curve: pd.Series) -> int:
    """Longest stretch of consecutive bars spent below the running peak."""
    if equity_curve.empty:
        return 0
    underwater = (equity_curve < equity_curve.cummax()).to_numpy()
    longest = current = 0
    for below in underwater:
        current = current + 1 if below else 0
        longest = max(longest, current)
    return longest


def compute_monthly_returns(equity_curve: pd.Series) -> pd.Series:
    """
    Calendar-month returns, in percent, indexed by month (Period).

    The first month is measured from the first equity point; later months
    from the previous month's last equity point.
    """
    if equity_curve.empty:
        return pd.Series(dtype=float)
    index = pd.DatetimeIndex(equity_curve.index)
    month_end = equity_curve.groupby(index.to_period('M')).last()
    monthly = month_end.pct_change()
    monthly.iloc[0] = month_end.iloc[0] / equity_curve.iloc[0] - 1.0
    return monthly * 100.0


@dataclass
class PerformanceMetrics:
    """
    Summary statistics of one backtest.

    Attributes:
        total_return: Percent return on initial capital.
        sharpe_ratio: Annualized Sharpe (0.0 if unavailable).
        max_drawdown: Worst drawdown, percent in [0, 100].
        win_rate: Percent of closed (sell) trades with positive realized P&L.
        total_trades: Count of all fills (buys + sells).
        cagr: Compound annual growth, percent.
        volatility: Annualized volatility of daily returns, percent.
        sortino_ratio: Annualized Sortino.
        calmar_ratio: CAGR / max drawdown.
        max_drawdown_duration: Longest underwater stretch, in bars.
        winning_trades / losing_trades: Closed trades with P&L > 0 / < 0.
        profit_factor: Gross profit / gross loss of closed trades.
        average_win / average_loss: Mean P&L of winners / losers (loss <= 0).
        largest_win / largest_loss: Extremes of closed-trade P&L.
        average_holding_period_days: Mean holding period of closed trades.
        final_equity: Last equity point (initial capital if none).
        trading_days: Number of equity points.
        unavailable: Names of metrics that could not be computed.
    """
    total_return: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    cagr: float = 0.0
    volatility: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown_duration: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    average_holding_period_days: float = 0.0
    final_equity: float = 0.0
    trading_days: int = 0
    unavailable: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "totalReturn": self.total_return,
            "sharpeRatio": self.sharpe_ratio,
            "maxDrawdown": self.max_drawdown,
            "winRate": self.win_rate,
            "totalTrades": self.total_trades,
            "cagr": self.cagr,
            "volatility": self.volatility,
            "sortinoRatio": self.sortino_ratio,
            "calmarRatio": self.calmar_ratio,
            "maxDrawdownDuration": self.max_drawdown_duration,
            "winningTrades": self.winning_trades,
            "losingTrades": self.losing_trades,
            "profitFactor": self.profit_factor,
            "averageWin": self.average_win,
            "averageLoss": self.average_loss,
            "largestWin": self.largest_win,
            "largestLoss": self.largest_loss,
            "averageHoldingPeriodDays": self.average_holding_period_days,
            "finalEquity": self.final_equity,
            "tradingDays": self.trading_days,
            "unavailable": list(self.unavailable),
        }


def calculate_metrics(
    equity_curve: pd.Series,
    trades: Sequence[Trade],
    initial_capital: float,
) -> PerformanceMetrics:
    """
    Reduce an equity curve and trade log into PerformanceMetrics.

    **Step by step**:
      1. Daily simple returns from the equity curve.
      2. Return/risk statistics (total return, CAGR, volatility, Sharpe,
         Sortino, drawdowns, Calmar).
      3. Closed-trade statistics from sells carrying realized P&L.
      4. Every undefined statistic becomes 0.0 and is listed in `unavailable`.

    Args:
        equity_curve: Equity values indexed by timestamp, oldest first.
        trades: Every fill of the run, in order.
        initial_capital: Starting cash (> 0).

    Returns:
        PerformanceMetrics.
    """
    metrics = PerformanceMetrics()
    unavailable: List[str] = []

    def available(name: str, value: float) -> float:
        if value is None or not math.isfinite(value):
            unavailable.append(name)
            return 0.0
        return float(value)

    returns = compute_simple_returns(equity_curve).dropna()

    metrics.total_return = compute_total_return(equity_curve, initial_capital)
    metrics.sharpe_ratio = available("sharpe_ratio", compute_sharpe_ratio(returns))
    metrics.max_drawdown = compute_max_drawdown(equity_curve)
    metrics.max_drawdown_duration = compute_max_drawdown_duration(equity_curve)
    metrics.cagr = available("cagr", compute_cagr(equity_curve, initial_capital))
    metrics.volatility = available("volatility", compute_annualized_volatility(returns))
    metrics.sortino_ratio = available("sortino_ratio", compute_sortino_ratio(returns))
    if metrics.max_drawdown > 0 and "cagr" not in unavailable:
        metrics.calmar_ratio = metrics.cagr / metrics.max_drawdown
    else:
        unavailable.append("calmar_ratio")

    metrics.total_trades = len(trades)
    closed = [t.realized_pnl for t in trades if t.side == OrderSide.SELL and t.realized_pnl is not None]
    wins = [pnl for pnl in closed if pnl > 0]
    losses = [pnl for pnl in closed if pnl < 0]
    metrics.winning_trades = len(wins)
    metrics.losing_trades = len(losses)
    metrics.win_rate = len(wins) / len(closed) * 100.0 if closed else 0.0
    metrics.average_win = float(np.mean(wins)) if wins else 0.0
    metrics.average_loss = float(np.mean(losses)) if losses else 0.0
    metrics.largest_win = max(wins) if wins else 0.0
    metrics.largest_loss = min(losses) if losses else 0.0
    if losses:
        metrics.profit_factor = sum(wins) / abs(sum(losses))
    else:
        unavailable.append("profit_factor")

    holding = [
        t.holding_period_days for t in trades
        if t.side == OrderSide.SELL and t.holding_period_days is not None
    ]
    metrics.average_holding_period_days = float(np.mean(holding)) if holding else 0.0

    metrics.final_equity = float(equity_curve.iloc[-1]) if not equity_curve.empty else float(initial_capital)
    metrics.trading_days = len(equity_curve)
    metrics.unavailable = unavailable
    return metrics


@dataclass
class BenchmarkComparison:
    """
    A strategy's equity curve measured against a benchmark's closes.

    Attributes:
        benchmark_return: Benchmark total return over the aligned dates, percent.
        benchmark_volatility: Annualized benchmark volatility, percent.
        benchmark_sharpe: Annualized benchmark Sharpe (risk-free 0).
        benchmark_max_drawdown: Benchmark's worst drawdown, percent.
        excess_return: Strategy total return minus benchmark return, percent.
        correlation: Pearson correlation of daily returns.
        beta: cov(strategy, benchmark) / var(benchmark) of daily returns.
        alpha: Jensen's alpha, annualized, percent.
        tracking_error: Annualized stdev of daily return differences, percent.
        information_ratio: Annualized mean return difference / tracking error.
        aligned_days: Dates present in both series.
        unavailable: Names of statistics that could not be computed.
    """
    benchmark_return: float = 0.0
    benchmark_volatility: float = 0.0
    benchmark_sharpe: float = 0.0
    benchmark_max_drawdown: float = 0.0
    excess_return: float = 0.0
    correlation: float = 0.0
    beta: float = 0.0
    alpha: float = 0.0
    tracking_error: float = 0.0
    information_ratio: float = 0.0
    aligned_days: int = 0
    unavailable: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "benchmarkReturn": self.benchmark_return,
            "benchmarkVolatility": self.benchmark_volatility,
            "benchmarkSharpe": self.benchmark_sharpe,
            "benchmarkMaxDrawdown": self.benchmark_max_drawdown,
            "excessReturn": self.excess_return,
            "correlation": self.correlation,
            "beta": self.beta,
            "alpha": self.alpha,
            "trackingError": self.tracking_error,
            "informationRatio": self.information_ratio,
            "alignedDays": self.aligned_days,
            "unavailable": list(self.unavailable),
        }


_BENCHMARK_STATISTICS = (
    "benchmark_return", "benchmark_volatility", "benchmark_sharpe",
    "benchmark_max_drawdown", "excess_return", "correlation", "beta",
    "alpha", "tracking_error", "information_ratio",
)


def compute_benchmark_comparison(
    equity_curve: pd.Series,
    benchmark_closes: pd.Series,
    periods_per_year: int = TRADING_DAYS_PER_YEAR,
) -> BenchmarkComparison:
    """
    Compare an equity curve with a benchmark price series.

    **Conceptual**: Both series are aligned on the dates they share, turned
    into daily simple returns, and compared. A beta near 1 and a correlation
    near 1 mean the strategy mostly tracks the benchmark; alpha is what is
    left after that exposure.

    **Mathematical** (s, b = daily strategy and benchmark returns):
        beta            = cov(s, b) / var(b)
        alpha           = (mean(s) - beta * mean(b)) * periods_per_year * 100
        tracking_error  = stdev(s - b) * sqrt(periods_per_year) * 100
        information     = mean(s - b) * periods_per_year * 100 / tracking_error

    Args:
        equity_curve: Strategy equity indexed by timestamp.
        benchmark_closes: Benchmark closing prices indexed by timestamp.
        periods_per_year: Annualization factor.

    Returns:
        BenchmarkComparison. Statistics that are undefined (fewer than two
        shared dates, a flat benchmark) are 0.0 and listed in `unavailable`.
    """
    aligned = pd.concat(
        [equity_curve.astype(float), benchmark_closes.astype(float)],
        axis=1, join='inner', keys=['strategy', 'benchmark'],
    ).dropna()
    aligned = aligned[aligned['benchmark'] > 0]
    comparison = BenchmarkComparison(aligned_days=len(aligned))
    if len(aligned) < 2:
        comparison.unavailable = list(_BENCHMARK_STATISTICS)
        return comparison

    unavailable: List[str] = []

    def available(name: str, value: float) -> float:
        if value is None or not math.isfinite(value):
            unavailable.append(name)
            return 0.0
        return float(value)

    strategy = aligned['strategy']
    benchmark = aligned['benchmark']
    returns = aligned.pct_change().dropna()
    s, b = returns['strategy'], returns['benchmark']
    difference = s - b

    comparison.benchmark_return = (float(benchmark.iloc[-1]) / float(benchmark.iloc[0]) - 1.0) * 100.0
    comparison.benchmark_volatility = available(
        "benchmark_volatility", compute_annualized_volatility(b, periods_per_year)
    )
    comparison.benchmark_sharpe = available(
        "benchmark_sharpe", compute_sharpe_ratio(b, periods_per_year)
    )
    comparison.benchmark_max_drawdown = compute_max_drawdown(benchmark)
    comparison.excess_return = available(
        "excess_return",
        (float(strategy.iloc[-1]) / float(strategy.iloc[0]) - 1.0) * 100.0 - comparison.benchmark_return,
    )

    benchmark_variance = float(b.var(ddof=1)) if len(b) >= 2 else float("nan")
    if math.isfinite(benchmark_variance) and benchmark_variance > _ZERO_TOLERANCE ** 2:
        beta = float(s.cov(b)) / benchmark_variance
        alpha = (float(s.mean()) - beta * float(b.mean())) * periods_per_year * 100.0
    else:
        beta = alpha = float("nan")
    comparison.beta = available("beta", beta)
    comparison.alpha = available("alpha", alpha)
    comparison.correlation = available(
        "correlation", float(s.corr(b)) if len(s) >= 2 else float("nan")
    )

    tracking = compute_annualized_volatility(difference, periods_per_year)
    comparison.tracking_error = available("tracking_error", tracking)
    if math.isfinite(tracking) and tracking > _ZERO_TOLERANCE:
        information = float(difference.mean()) * periods_per_year * 100.0 / tracking
    else:
        information = float("nan")
    comparison.information_ratio = available("information_ratio", information)

    comparison.unavailable = unavailable
    return comparison
