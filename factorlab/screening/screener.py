"""
Universe screener: rank symbols by weighted factor criteria as of "now".

**Conceptual**: The screener is the stateless sibling of the backtest's
decision step. For every symbol in the universe it loads recent history,
computes a factor snapshot as of the clock's current time, and then scores
all snapshots together with the same weighted-percentile formula the
StrategyEvaluator uses. Results come back best first with 1-based ranks.

**Parallelism**: Each symbol's fetch + factor computation is read-only and
independent, so it fans out to a thread pool (bounded by
`settings.screen_workers`). Scoring happens afterwards on the collected
snapshots, in one thread, so the ranking never depends on completion order.

**Missing data**: A symbol whose bars are unavailable, or that has no bar
on or before "now", is left out of the ranking. Any other error propagates.
"""

import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from factorlab.analytics.factors import FactorEngine, FactorSnapshot
from factorlab.config.settings import EngineSettings, get_settings
from factorlab.strategies.base import FactorCriterion
from factorlab.strategies.scoring import score_snapshots
from factorlab.utils.errors import DataUnavailableError, ValidationError
from factorlab.utils.time import Clock, RealClock, clock_timestamp
from factorlab.venues.base import DataProvider

logger = logging.getLogger(__name__)

MAX_SCREEN_LIMIT = 100


@dataclass
class ScreenResult:
    """
    One ranked row of a screen.

    Attributes:
        symbol: Instrument symbol.
        score: Composite weighted-percentile score.
        factors: The symbol's factor values (None where unavailable).
        rank: 1-based position in the ranking.
    """
    symbol: str
    score: float
    factors: Dict[str, Optional[float]] = field(default_factory=dict)
    rank: int = 0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "score": self.score,
            "rank": self.rank,
            "factors": dict(self.factors),
        }


class ScreenerEngine:
    """
    Ranks a symbol universe by weighted factor criteria.

    Args:
        provider: DataProvider for bars and fundamentals.
        factor_engine: FactorEngine (a default one if omitted).
        clock: Source of "now" (RealClock if omitted).
        settings: EngineSettings (worker count, history lookback).
    """

    def __init__(
        self,
        provider: DataProvider,
        factor_engine: Optional[FactorEngine] = None,
        clock: Optional[Clock] = None,
        settings: Optional[EngineSettings] = None,
    ):
        self.provider = provider
        self.factor_engine = factor_engine if factor_engine is not None else FactorEngine()
        self.clock = clock if clock is not None else RealClock()
        self.settings = settings if settings is not None else get_settings()

    def screen(
        self,
        universe: Sequence[str],
        criteria: Sequence[FactorCriterion],
        limit: int = 20,
    ) -> List[ScreenResult]:
        """
        Rank `universe` by `criteria` and return the top `limit`.

        Args:
            universe: Symbols to consider.
            criteria: Weighted factor criteria (may be empty).
            limit: Maximum results, 1..100.

        Returns:
            ScreenResult list sorted by descending score (ties by symbol),
            with rank[i] == i + 1.

        Raises:
            ValidationError: If limit is out of range.
        """
        if not 1 <= limit <= MAX_SCREEN_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_SCREEN_LIMIT}, got {limit}")

        as_of = clock_timestamp(self.clock)
        start_time = time.monotonic()
        symbols = sorted(set(universe))
        logger.info("Screening %d symbols as of %s", len(symbols), as_of)

        snapshots = self.compute_snapshots(symbols, as_of)

        scored = score_snapshots(snapshots, criteria)
        results = [
            ScreenResult(
                symbol=item.symbol,
                score=item.score,
                factors=dict(snapshots[item.symbol].values),
                rank=position,
            )
            for position, item in enumerate(scored[:limit], start=1)
        ]

        elapsed_ms = (time.monotonic() - start_time) * 1000
        logger.info(
            "Screen done: %d snapshots, %d qualified, %d returned in %.0fms",
            len(snapshots), len(scored), len(results), elapsed_ms,
        )
        return results

    def compute_snapshots(
        self,
        symbols: Sequence[str],
        as_of: pd.Timestamp,
    ) -> Dict[str, FactorSnapshot]:
        """Factor snapshots for every symbol with data, computed in parallel."""
        snapshots: Dict[str, FactorSnapshot] = {}
        if not symbols:
            return snapshots

        workers = min(self.settings.screen_workers, len(symbols))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_symbol = {
                executor.submit(self._snapshot_for, symbol, as_of): symbol
                for symbol in symbols
            }
            for future in concurrent.futures.as_completed(future_to_symbol):
                symbol = future_to_symbol[future]
                try:
                    snapshot = future.result()
                except DataUnavailableError as e:
                    logger.warning("Screen: skipping %s: %s", symbol, e.message)
                    continue
                snapshots[symbol] = snapshot
        return snapshots

    def _snapshot_for(self, symbol: str, as_of: pd.Timestamp) -> FactorSnapshot:
        history_start = as_of - pd.Timedelta(days=self.settings.history_lookback_days)
        frame = self.provider.fetch_daily_bars(symbol, history_start, as_of)
        if frame.empty:
            raise DataUnavailableError(f"No bars for '{symbol}' on or before {as_of}")
        fundamentals = self.provider.fetch_fundamentals(symbol, as_of)
        return self.factor_engine.compute(symbol, frame, as_of, fundamentals=fundamentals)
