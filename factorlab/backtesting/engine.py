"""
Daily-bar backtest runner for factor strategies.

**Conceptual**: The runner is the orchestrator that brings together the
factor engine, a registered strategy and the portfolio simulator. It walks
the requested date range bar by bar, asks the strategy for a target
allocation on every rebalance boundary, has the simulator trade toward it,
and records one mark-to-market equity point per bar. The output is a
BacktestResult: equity curve, trade log and performance metrics.

**State machine**:
    PENDING -> RUNNING -> COMPLETED
                       -> FAILED    (bad input, configuration error,
                                     timeout, cancellation, invariant
                                     violation, unexpected fault)
A failed result keeps the equity curve and trades recorded up to the fault.

**No look-ahead**:
  - The factor engine is handed the full history but cuts it at the
    decision timestamp itself.
  - With "next_open" fills (the default) a decision taken on the close of
    bar t trades at the open of bar t+1. With "close" fills it trades at the
    close of bar t.
  - History before start_date is loaded for factor warm-up only; it is never
    traded and never appears in the equity curve.

**Determinism**: A run is sequential and single-threaded. The run owns its
portfolio, simulator and trade counter; nothing is shared with other runs.
Identical inputs produce byte-identical `to_json()` output, and the result id
is a SHA-256 digest of the inputs.

**Resource ceilings**: A run that would process more than
`max_bars_per_run` bars, or that runs longer than `run_timeout_seconds`,
fails with reason "timeout". `cancel()` fails it with "cancelled".
"""

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import pandas as pd

from factorlab.analytics.factors import FactorEngine, FactorSnapshot
from factorlab.analytics.risk_metrics import (
    BenchmarkComparison,
    PerformanceMetrics,
    calculate_metrics,
    compute_benchmark_comparison,
)
from factorlab.backtesting.schedule import rebalance_flags
from factorlab.config.settings import EngineSettings, get_settings
from factorlab.execution.paper_broker import Portfolio, PortfolioSimulator, Trade
from factorlab.strategies.base import StrategyConfig, StrategyDefinition, TargetAllocation
from factorlab.strategies.registry import StrategyRegistry
from factorlab.utils.errors import (
    DataUnavailableError,
    EngineError,
    RunCancelledError,
    RunTimeoutError,
    ValidationError,
)
from factorlab.utils.time import to_engine_timestamp
from factorlab.venues.base import DataProvider

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "internal_error"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class EquityPoint:
    """One mark-to-market sample: total equity and cash at a bar's close."""
    timestamp: pd.Timestamp
    equity: float
    cash: float

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "equity": self.equity,
            "cash": self.cash,
        }


@dataclass(frozen=True)
class BacktestParams:
    """
    Inputs of one backtest run.

    **Conceptual**: BacktestParams encapsulates everything that determines a
    run's outcome apart from the price data itself: strategy, universe, date
    range, capital, strategy configuration and execution costs. Keeping them
    in one immutable object makes runs easy to repeat, compare and hash.

    Attributes:
        strategy_id: Registry id of the strategy to run.
        symbols: Symbol universe (order is irrelevant to the outcome).
        start_date: First bar that can trade (inclusive).
        end_date: Last bar of the run (inclusive).
        initial_capital: Starting cash (> 0).
        config: Strategy configuration. Defaults to StrategyConfig(strategy_id).
        commission_rate: Commission as a fraction of notional.
        minimum_commission: Per-trade commission floor.
        slippage_bps: Symmetric slippage in basis points.
        fill_timing: "next_open" or "close".
        maximum_commission: Optional per-trade commission ceiling.
        benchmark_symbol: Optional symbol whose closes the equity curve is
            compared against; it is never traded.
    """
    strategy_id: str
    symbols: Tuple[str, ...]
    start_date: pd.Timestamp
    end_date: pd.Timestamp
    initial_capital: float = 100000.0
    config: Optional[StrategyConfig] = None
    commission_rate: float = 0.001
    minimum_commission: float = 0.0
    slippage_bps: float = 0.0
    fill_timing: str = "next_open"
    maximum_commission: Optional[float] = None
    benchmark_symbol: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "symbols", tuple(self.symbols))
        object.__setattr__(self, "start_date", to_engine_timestamp(self.start_date))
        object.__setattr__(self, "end_date", to_engine_timestamp(self.end_date))
        if self.config is None:
            object.__setattr__(self, "config", StrategyConfig(strategy_id=self.strategy_id))

    @classmethod
    def from_settings(cls, settings: EngineSettings, **kwargs) -> "BacktestParams":
        """Build params whose execution costs and fill timing come from `settings`."""
        kwargs.setdefault("commission_rate", settings.commission_rate)
        kwargs.setdefault("minimum_commission", settings.minimum_commission)
        kwargs.setdefault("slippage_bps", settings.slippage_bps)
        kwargs.setdefault("fill_timing", settings.fill_timing)
        kwargs.setdefault("maximum_commission", settings.maximum_commission)
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return {
            "strategyId": self.strategy_id,
            "symbols": list(self.symbols),
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "initialCapital": self.initial_capital,
            "config": self.config.to_dict(),
            "commissionRate": self.commission_rate,
            "minimumCommission": self.minimum_commission,
            "slippageBps": self.slippage_bps,
            "fillTiming": self.fill_timing,
            "maximumCommission": self.maximum_commission,
            "benchmarkSymbol": self.benchmark_symbol,
        }

    def run_id(self) -> str:
        """SHA-256 digest of the inputs; identical params give identical ids."""
        payload = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class BacktestResult:
    """
    Output of one backtest run.

    Attributes:
        id: Deterministic run id (see BacktestParams.run_id).
        strategy_id: Strategy that was run.
        status: Terminal status, COMPLETED or FAILED.
        failure_reason: Machine-readable reason code when FAILED
                        ("validation_error", "configuration_error",
                        "data_unavailable", "timeout", "cancelled",
                        "internal_invariant", "internal_error").
        failure_message: Human-readable description when FAILED.
        metrics: Summary statistics (computed on the partial curve if FAILED).
        equity_curve: One EquityPoint per processed bar, strictly increasing.
        trades: Every fill, in execution order.
        params: The inputs that produced this result.
        rebalance_count: Rebalance decisions taken.
        skipped_rebalances: Scheduled rebalances skipped for missing data.
        benchmark: Comparison with params.benchmark_symbol, when one was
                   requested and its bars were available.
    """
    id: str
    strategy_id: str
    status: RunStatus = RunStatus.PENDING
    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None
    metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    trades: List[Trade] = field(default_factory=list)
    params: Optional[BacktestParams] = None
    rebalance_count: int = 0
    skipped_rebalances: int = 0
    benchmark: Optional[BenchmarkComparison] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def equity_series(self) -> pd.Series:
        """Equity curve as a pandas Series indexed by timestamp."""
        return pd.Series(
            data=[point.equity for point in self.equity_curve],
            index=pd.DatetimeIndex([point.timestamp for point in self.equity_curve]),
            name='equity',
            dtype=float,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "strategyId": self.strategy_id,
            "status": self.status.value,
            "failureReason": self.failure_reason,
            "failureMessage": self.failure_message,
            "metrics": self.metrics.to_dict(),
            "equityCurve": [point.to_dict() for point in self.equity_curve],
            "trades": [trade.to_dict() for trade in self.trades],
            "params": self.params.to_dict() if self.params is not None else None,
            "rebalanceCount": self.rebalance_count,
            "skippedRebalances": self.skipped_rebalances,
            "benchmark": self.benchmark.to_dict() if self.benchmark is not None else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2)


class BacktestRunner:
    """
    Runs one backtest.

    A runner owns the state of a single run. Create a new runner for every
    run; `cancel()` may be called from another thread at any time.

    Args:
        provider: DataProvider supplying bars and fundamentals.
        registry: StrategyRegistry used to resolve the strategy id.
        settings: EngineSettings (ceilings and history lookback).
                  Defaults to get_settings().
        factor_engine: FactorEngine to use (a default one if omitted).
    """

    def __init__(
        self,
        provider: DataProvider,
        registry: Optional[StrategyRegistry] = None,
        settings: Optional[EngineSettings] = None,
        factor_engine: Optional[FactorEngine] = None,
    ):
        self.provider = provider
        self.registry = registry if registry is not None else StrategyRegistry()
        self.settings = settings if settings is not None else get_settings()
        self.factor_engine = factor_engine if factor_engine is not None else FactorEngine()
        self._cancelled = threading.Event()
        self._started_at: Optional[float] = None

    def cancel(self) -> None:
        """Ask the run to stop; it fails with reason "cancelled" at the next bar."""
        self._cancelled.set()

    def run(self, params: BacktestParams) -> BacktestResult:
        """
        Run a backtest and return its result.

        Errors never escape: every fault is reported as a FAILED result with
        a reason code, keeping whatever equity curve and trades were recorded.

        Args:
            params: Run inputs.

        Returns:
            BacktestResult with status COMPLETED or FAILED.
        """
        result = BacktestResult(id=params.run_id(), strategy_id=params.strategy_id, params=params)
        self._started_at = time.monotonic()
        result.status = RunStatus.RUNNING
        logger.info(
            "Backtest %s started: strategy=%s symbols=%s %s..%s",
            result.id[:12], params.strategy_id, list(params.symbols),
            params.start_date.date(), params.end_date.date(),
        )

        try:
            self._validate(params)
            definition = self.registry.get(params.strategy_id)
            frames = self._load_frames(params)
            self._simulate(params, definition, frames, result)
            result.status = RunStatus.COMPLETED
        except EngineError as e:
            self._fail(result, e.code, e.message)
        except Exception as e:
            logger.exception("Backtest %s failed with an unexpected error", result.id[:12])
            self._fail(result, INTERNAL_ERROR, f"{type(e).__name__}: {e}")

        if params.initial_capital > 0:
            result.metrics = calculate_metrics(
                result.equity_series(), result.trades, params.initial_capital,
            )
        if result.succeeded and params.benchmark_symbol:
            result.benchmark = self._compare_with_benchmark(params, result)
        logger.info(
            "Backtest %s %s: %d bars, %d trades, total return %.4f%%",
            result.id[:12], result.status.value, len(result.equity_curve),
            len(result.trades), result.metrics.total_return,
        )
        return result

    # ========================================================================
    # Internal helper methods
    # ========================================================================

    @staticmethod
    def _fail(result: BacktestResult, reason: str, message: str) -> None:
        result.status = RunStatus.FAILED
        result.failure_reason = reason
        result.failure_message = message
        logger.error("Backtest %s failed (%s): %s", result.id[:12], reason, message)

    @staticmethod
    def _validate(params: BacktestParams) -> None:
        if not params.symbols:
            raise ValidationError("Symbol universe is empty")
        if params.end_date < params.start_date:
            raise ValidationError(
                f"end_date {params.end_date.date()} is before start_date {params.start_date.date()}"
            )
        if params.initial_capital <= 0:
            raise ValidationError(f"initial_capital must be positive, got {params.initial_capital}")
        if params.fill_timing not in ("next_open", "close"):
            raise ValidationError(
                f"fill_timing must be 'next_open' or 'close', got {params.fill_timing!r}"
            )

    def _load_frames(self, params: BacktestParams) -> Dict[str, pd.DataFrame]:
        """
        Fetch bars from start_date - lookback through end_date for every symbol.

        Symbols without data are dropped with a warning. If none remain the
        run cannot proceed.
        """
        history_start = params.start_date - pd.Timedelta(days=self.settings.history_lookback_days)
        frames: Dict[str, pd.DataFrame] = {}
        for symbol in sorted(set(params.symbols)):
            try:
                df = self.provider.fetch_daily_bars(symbol, history_start, params.end_date)
            except DataUnavailableError as e:
                logger.warning("Dropping %s from the universe: %s", symbol, e.message)
                continue
            if df.empty:
                logger.warning("Dropping %s from the universe: no bars in range", symbol)
                continue
            frames[symbol] = df.reset_index(drop=True)

        if not frames:
            raise DataUnavailableError(
                f"No price data for any of {list(params.symbols)} "
                f"between {history_start.date()} and {params.end_date.date()}"
            )
        return frames

    def _compare_with_benchmark(
        self, params: BacktestParams, result: BacktestResult,
    ) -> Optional[BenchmarkComparison]:
        """Benchmark closes over the run's dates against the equity curve; None without data."""
        symbol = params.benchmark_symbol
        try:
            bars = self.provider.fetch_daily_bars(symbol, params.start_date, params.end_date)
        except EngineError as e:
            logger.warning("No benchmark comparison against %s: %s", symbol, e.message)
            return None
        if bars.empty:
            logger.warning("No benchmark comparison against %s: no bars in range", symbol)
            return None
        closes = pd.Series(
            bars['closing_price'].astype(float).to_numpy(),
            index=pd.DatetimeIndex(bars['timestamp']),
        )
        return compute_benchmark_comparison(result.equity_series(), closes)

    def _simulate(
        self,
        params: BacktestParams,
        definition: StrategyDefinition,
        frames: Dict[str, pd.DataFrame],
        result: BacktestResult,
    ) -> None:
        """
        The bar loop.

        **Per bar** (timestamps are the union of all symbols' bars in range):
          1. Check ceilings and cancellation.
          2. If a decision is pending (next_open fills), trade it at this
             bar's opens. When a targeted or held symbol has no open here
             the whole fill waits for the next bar; a target still waiting
             when a newer decision arrives or the run ends counts as a
             skipped rebalance.
          3. Mark positions at this bar's closes.
          4. On a rebalance boundary: factor snapshots -> evaluator ->
             (close fills: trade now; next_open: hold as pending).
             If a held symbol has no bar here the rebalance is skipped
             and the current allocation is kept.
          5. Record an EquityPoint.
        """
        config = params.config
        criteria = definition.resolve_criteria(config)
        simulator = PortfolioSimulator(
            commission_rate=params.commission_rate,
            minimum_commission=params.minimum_commission,
            slippage_bps=params.slippage_bps,
            maximum_commission=params.maximum_commission,
        )
        portfolio = Portfolio.create(params.initial_capital)

        opens: Dict[str, Dict[pd.Timestamp, float]] = {}
        closes: Dict[str, Dict[pd.Timestamp, float]] = {}
        for symbol, df in frames.items():
            opens[symbol] = dict(zip(df['timestamp'], df['open_price'].astype(float)))
            closes[symbol] = dict(zip(df['timestamp'], df['closing_price'].astype(float)))

        timeline = self._timeline(frames.values(), params.start_date, params.end_date)
        if not timeline:
            raise DataUnavailableError(
                f"No bars between {params.start_date.date()} and {params.end_date.date()}"
            )
        flags = rebalance_flags(timeline, config.rebalance_frequency)

        pending: Optional[TargetAllocation] = None
        for index, timestamp in enumerate(timeline):
            self._check_ceilings(index)

            if pending is not None:
                open_prices = self._prices_at(opens, timestamp)
                needed = {s for s, w in pending.weights.items() if w > 0} | set(portfolio.positions)
                unpriced = sorted(needed - set(open_prices))
                if unpriced:
                    # Fill the whole target or nothing; try again at the next open
                    logger.warning("Deferring fill at %s: no open for %s", timestamp, unpriced)
                else:
                    outcome = simulator.rebalance(portfolio, pending, open_prices, timestamp)
                    result.trades.extend(outcome.trades)
                    pending = None

            close_prices = self._prices_at(closes, timestamp)
            simulator.mark_to_market(portfolio, close_prices)

            if flags[index]:
                unpriced = sorted(s for s in portfolio.positions if s not in close_prices)
                if not close_prices or unpriced:
                    result.skipped_rebalances += 1
                    logger.warning(
                        "Skipping rebalance at %s: no bar for held symbols %s", timestamp, unpriced,
                    )
                else:
                    target = self._decide(
                        definition, config, criteria, frames, close_prices, timestamp,
                        portfolio.total_value,
                    )
                    result.rebalance_count += 1
                    if params.fill_timing == "close":
                        outcome = simulator.rebalance(portfolio, target, close_prices, timestamp)
                        result.trades.extend(outcome.trades)
                    elif index + 1 < len(timeline):
                        if pending is not None:
                            result.skipped_rebalances += 1
                            logger.warning(
                                "Decision at %s replaces a target that never found a full set of opens",
                                timestamp,
                            )
                        pending = target
                    else:
                        logger.info(
                            "Decision at %s is on the final bar; no later open to fill it",
                            timestamp,
                        )

            result.equity_curve.append(
                EquityPoint(timestamp=timestamp, equity=portfolio.total_value, cash=portfolio.cash)
            )

        if pending is not None:
            result.skipped_rebalances += 1
            logger.warning("Run ended before a full set of opens was available for the pending target")

    def _decide(
        self,
        definition: StrategyDefinition,
        config: StrategyConfig,
        criteria,
        frames: Dict[str, pd.DataFrame],
        close_prices: Dict[str, float],
        timestamp: pd.Timestamp,
        total_equity: float,
    ) -> TargetAllocation:
        """Factor snapshots for the symbols trading at `timestamp`, then evaluate."""
        snapshots: Dict[str, FactorSnapshot] = {}
        for symbol in sorted(close_prices):
            fundamentals = self._fundamentals(symbol, timestamp)
            snapshots[symbol] = self.factor_engine.compute(
                symbol, frames[symbol], timestamp, fundamentals=fundamentals,
            )
        target = definition.evaluator.evaluate(snapshots, config, total_equity, criteria)
        logger.debug("Rebalance at %s: target %s", timestamp, target.weights)
        return target

    def _fundamentals(self, symbol: str, timestamp: pd.Timestamp) -> Optional[dict]:
        try:
            return self.provider.fetch_fundamentals(symbol, timestamp)
        except DataUnavailableError as e:
            logger.debug("No fundamentals for %s at %s: %s", symbol, timestamp, e.message)
            return None

    def _check_ceilings(self, bars_processed: int) -> None:
        if self._cancelled.is_set():
            raise RunCancelledError(f"Run cancelled after {bars_processed} bars")
        if bars_processed >= self.settings.max_bars_per_run:
            raise RunTimeoutError(
                f"Run exceeded max_bars_per_run={self.settings.max_bars_per_run}"
            )
        elapsed = time.monotonic() - self._started_at
        if elapsed > self.settings.run_timeout_seconds:
            raise RunTimeoutError(
                f"Run exceeded run_timeout_seconds={self.settings.run_timeout_seconds} "
                f"after {bars_processed} bars ({elapsed:.1f}s)"
            )

    @staticmethod
    def _timeline(
        frames: Sequence[pd.DataFrame],
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> List[pd.Timestamp]:
        stamps = set()
        for df in frames:
            in_range = df['timestamp'][(df['timestamp'] >= start) & (df['timestamp'] <= end)]
            stamps.update(in_range.tolist())
        return sorted(stamps)

    @staticmethod
    def _prices_at(
        prices: Dict[str, Dict[pd.Timestamp, float]],
        timestamp: pd.Timestamp,
    ) -> Dict[str, float]:
        return {
            symbol: by_time[timestamp]
            for symbol, by_time in prices.items()
            if timestamp in by_time
        }
