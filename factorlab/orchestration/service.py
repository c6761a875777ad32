"""
Engine service: the boundary the API layer talks to.

**Conceptual**: EngineService validates caller input, resolves strategies,
and runs backtests and screens. It is the only place that knows about
thread pools; the runner, simulator, factor engine and evaluator are all
single-threaded and unaware of concurrency.

**Operations**:
  - run_backtest(...):    validate, run synchronously, return BacktestResult.
  - submit_backtest(...): validate now, run on the pool, return a Future.
  - run_many(requests):   submit several backtests, collect results in order.
  - screen(criteria, symbols=None, limit=20): ranked ScreenResult list.
  - compute_factors(symbol, categories=None): one FactorSnapshot as of now.
  - strategies():         registered strategies with their criteria.

**Validation at the boundary**: Malformed input raises ValidationError,
unknown strategies or bad configuration raise ConfigurationError, both
before any simulation starts. Problems found during a run (timeouts,
missing data everywhere, invariant violations) come back as a FAILED
BacktestResult instead.

**Concurrency**: Backtests run on a ThreadPoolExecutor bounded by
`max_concurrent_runs`. Every run gets its own BacktestRunner, and with it
its own portfolio and simulator, so runs share only read-only objects
(provider, registry, factor engine, settings).
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable, List, Mapping, Optional, Sequence, Set, Union

import pandas as pd

from factorlab.analytics.factors import FactorEngine, FactorSnapshot, validate_categories
from factorlab.backtesting.engine import BacktestParams, BacktestResult, BacktestRunner
from factorlab.config.settings import EngineSettings, get_settings
from factorlab.data.schemas import bars_to_frame
from factorlab.screening.screener import ScreenerEngine, ScreenResult
from factorlab.strategies.base import FactorCriterion, StrategyConfig
from factorlab.strategies.registry import StrategyRegistry
from factorlab.utils.errors import ConfigurationError, DataUnavailableError, ValidationError
from factorlab.utils.time import Clock, RealClock, clock_timestamp, to_engine_timestamp
from factorlab.venues.base import DataProvider

logger = logging.getLogger(__name__)

MAX_SYMBOL_LENGTH = 10

CriterionInput = Union[FactorCriterion, Mapping]
ConfigInput = Union[StrategyConfig, Mapping, None]


def normalize_symbol(symbol: str) -> str:
    """
    Strip and uppercase a symbol, enforcing 1..10 characters.

    Raises:
        ValidationError: If the symbol is not a string or has the wrong length.
    """
    if not isinstance(symbol, str):
        raise ValidationError(f"Symbol must be a string, got {symbol!r}")
    cleaned = symbol.strip().upper()
    if not 1 <= len(cleaned) <= MAX_SYMBOL_LENGTH:
        raise ValidationError(
            f"Symbol must be 1-{MAX_SYMBOL_LENGTH} characters, got {symbol!r}"
        )
    return cleaned


def normalize_symbols(symbols: Sequence[str]) -> List[str]:
    """Normalize every symbol and drop duplicates, keeping first-seen order."""
    if isinstance(symbols, str):
        raise ValidationError("symbols must be a list of strings, not a single string")
    seen = []
    for symbol in symbols:
        cleaned = normalize_symbol(symbol)
        if cleaned not in seen:
            seen.append(cleaned)
    return seen


def build_criteria(criteria: Iterable[CriterionInput]) -> List[FactorCriterion]:
    """Accept FactorCriterion objects or API-style mappings."""
    built = []
    for item in criteria:
        if isinstance(item, FactorCriterion):
            built.append(item)
        elif isinstance(item, Mapping):
            built.append(FactorCriterion.from_dict(item))
        else:
            raise ValidationError(f"Criterion must be a mapping or FactorCriterion, got {item!r}")
    return built


class EngineService:
    """
    Validating facade over the backtest runner and the screener.

    Args:
        provider: DataProvider for bars and fundamentals.
        settings: EngineSettings (defaults to get_settings()).
        clock: Source of "now" for screening and factor requests.
        registry: StrategyRegistry (a fresh one with built-ins if omitted).

    Usage:
        with EngineService(CsvDataProvider("data")) as service:
            result = service.run_backtest("momentum", ["AAPL", "MSFT"],
                                          "2023-01-01", "2023-12-31")
            print(result.metrics.sharpe_ratio)
    """

    def __init__(
        self,
        provider: DataProvider,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Clock] = None,
        registry: Optional[StrategyRegistry] = None,
    ):
        self.provider = provider
        self.settings = settings if settings is not None else get_settings()
        self.clock = clock if clock is not None else RealClock()
        self.registry = registry if registry is not None else StrategyRegistry()
        self.factor_engine = FactorEngine()
        self.screener = ScreenerEngine(
            provider, factor_engine=self.factor_engine, clock=self.clock, settings=self.settings,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_runs,
            thread_name_prefix="factorlab-run",
        )
        self._lock = threading.Lock()
        self._active_runners: Set[BacktestRunner] = set()

    # ------------------------------------------------------------------
    # Backtests
    # ------------------------------------------------------------------

    def prepare_backtest(
        self,
        strategy_id: str,
        symbols: Sequence[str],
        start_date,
        end_date,
        initial_capital: float = 100000.0,
        config: ConfigInput = None,
        benchmark_symbol: Optional[str] = None,
    ) -> BacktestParams:
        """
        Validate backtest input and build BacktestParams.

        Raises:
            ValidationError: Empty/malformed symbols, bad dates,
                             end before start, non-positive capital.
            ConfigurationError: Unknown strategy id or invalid config.
        """
        cleaned = normalize_symbols(symbols)
        if not cleaned:
            raise ValidationError("symbols must not be empty")
        try:
            start = to_engine_timestamp(start_date)
            end = to_engine_timestamp(end_date)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if end < start:
            raise ValidationError(f"end_date {end.date()} is before start_date {start.date()}")
        try:
            capital = float(initial_capital)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"initial_capital must be a number, got {initial_capital!r}") from e
        if not capital > 0:
            raise ValidationError(f"initial_capital must be positive, got {initial_capital}")

        self.registry.get(strategy_id)
        strategy_config = self._resolve_config(strategy_id, config)
        benchmark = normalize_symbol(benchmark_symbol) if benchmark_symbol is not None else None

        return BacktestParams.from_settings(
            self.settings,
            strategy_id=strategy_id,
            symbols=tuple(cleaned),
            start_date=start,
            end_date=end,
            initial_capital=capital,
            config=strategy_config,
            benchmark_symbol=benchmark,
        )

    def run_backtest(
        self,
        strategy_id: str,
        symbols: Sequence[str],
        start_date,
        end_date,
        initial_capital: float = 100000.0,
        config: ConfigInput = None,
        benchmark_symbol: Optional[str] = None,
    ) -> BacktestResult:
        """Validate and run one backtest in the calling thread."""
        params = self.prepare_backtest(
            strategy_id, symbols, start_date, end_date, initial_capital, config,
            benchmark_symbol=benchmark_symbol,
        )
        return self._execute(params)

    def submit_backtest(
        self,
        strategy_id: str,
        symbols: Sequence[str],
        start_date,
        end_date,
        initial_capital: float = 100000.0,
        config: ConfigInput = None,
        benchmark_symbol: Optional[str] = None,
    ) -> "Future[BacktestResult]":
        """
        Validate now, run on the pool later.

        Validation and configuration errors raise here, not from the Future.
        """
        params = self.prepare_backtest(
            strategy_id, symbols, start_date, end_date, initial_capital, config,
            benchmark_symbol=benchmark_symbol,
        )
        return self._executor.submit(self._execute, params)

    def run_many(self, requests: Iterable[Mapping]) -> List[BacktestResult]:
        """
        Run several backtests concurrently.

        Args:
            requests: Mappings of run_backtest keyword arguments.

        Returns:
            Results in request order.
        """
        futures = [self.submit_backtest(**request) for request in requests]
        return [future.result() for future in futures]

    def cancel_all(self) -> int:
        """Cancel every backtest currently running; returns how many were signalled."""
        with self._lock:
            runners = list(self._active_runners)
        for runner in runners:
            runner.cancel()
        if runners:
            logger.info("Cancelled %d running backtests", len(runners))
        return len(runners)

    # ------------------------------------------------------------------
    # Screening and factors
    # ------------------------------------------------------------------

    def screen(
        self,
        criteria: Iterable[CriterionInput],
        symbols: Optional[Sequence[str]] = None,
        limit: int = 20,
    ) -> List[ScreenResult]:
        """
        Rank a universe by weighted factor criteria as of now.

        Args:
            criteria: FactorCriterion objects or mappings
                      ({"name", "weight", "min", "max", "higher_is_better"}).
            symbols: Universe; defaults to every symbol the provider lists.
            limit: Maximum results, 1..100.

        Raises:
            ValidationError: Unknown factor, bad band, bad symbol or limit.
        """
        built = build_criteria(criteria)
        universe = normalize_symbols(symbols) if symbols is not None else self.provider.list_symbols()
        return self.screener.screen(universe, built, limit=limit)

    def compute_factors(
        self,
        symbol: str,
        categories: Optional[Iterable[str]] = None,
    ) -> FactorSnapshot:
        """
        Factor snapshot for one symbol as of now.

        A symbol without bars yields a snapshot whose price factors are all
        unavailable (None); fundamentals are still filled in if known.

        Raises:
            ValidationError: Bad symbol or unknown category.
        """
        cleaned = normalize_symbol(symbol)
        wanted = validate_categories(categories)
        as_of = clock_timestamp(self.clock)
        start = as_of - self._lookback()
        try:
            frame = self.provider.fetch_daily_bars(cleaned, start, as_of)
        except DataUnavailableError as e:
            logger.info("compute_factors: %s", e.message)
            frame = bars_to_frame([])
        fundamentals = self.provider.fetch_fundamentals(cleaned, as_of)
        return self.factor_engine.compute(
            cleaned, frame, as_of, fundamentals=fundamentals, categories=wanted,
        )

    def strategies(self) -> List[dict]:
        return self.registry.describe()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        if cancel_running:
            self.cancel_all()
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
        return False

    # ========================================================================
    # Internal helper methods
    # ========================================================================

    def _execute(self, params: BacktestParams) -> BacktestResult:
        runner = BacktestRunner(
            self.provider,
            registry=self.registry,
            settings=self.settings,
            factor_engine=self.factor_engine,
        )
        with self._lock:
            self._active_runners.add(runner)
        try:
            return runner.run(params)
        finally:
            with self._lock:
                self._active_runners.discard(runner)

    def _lookback(self) -> pd.Timedelta:
        return pd.Timedelta(days=self.settings.history_lookback_days)

    @staticmethod
    def _resolve_config(strategy_id: str, config: ConfigInput) -> StrategyConfig:
        if config is None:
            return StrategyConfig(strategy_id=strategy_id)
        if isinstance(config, StrategyConfig):
            if config.strategy_id != strategy_id:
                raise ConfigurationError(
                    f"Config is for strategy '{config.strategy_id}', not '{strategy_id}'"
                )
            return config
        if isinstance(config, Mapping):
            return StrategyConfig.from_dict(strategy_id, config)
        raise ConfigurationError(f"config must be a mapping or StrategyConfig, got {config!r}")
