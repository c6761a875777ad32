"""
Strategy evaluator: factor snapshots in, target allocation out.

**Algorithm** (one evaluation):
  1. Score and rank qualifying symbols with score_snapshots()
     (all required factors available, weighted percentile criteria).
  2. Keep the top `max_positions`.
  3. Assign weights according to `position_sizing`:
       - equal_weight: 1/N each.
       - percent:      position_percent/100 each; if N of them would exceed
                       100%, each becomes 1/N.
       - fixed:        fixed_position_value / total_equity each,
                       renormalized to sum 1 if the sum would exceed 1.
       - kelly:        mean / variance of the symbol's trailing daily
                       returns, clipped to [0, 1/max_positions].
  4. When `max_position_percent` is set, clip every weight to it.
  5. If nothing qualifies the allocation is empty: all cash.

The evaluator holds no state; one instance serves every run concurrently.
"""

import logging
from typing import Dict, List, Mapping, Tuple

from factorlab.analytics.factors import FactorSnapshot
from factorlab.strategies.base import (
    FactorCriterion,
    PositionSizing,
    StrategyConfig,
    TargetAllocation,
)
from factorlab.strategies.scoring import score_snapshots
from factorlab.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

KELLY_MEAN_FACTOR = "return_mean_60d"
KELLY_VARIANCE_FACTOR = "return_variance_60d"


class StrategyEvaluator:
    """Weighted-criteria evaluator used by every built-in strategy."""

    def evaluate(
        self,
        snapshots: Mapping[str, FactorSnapshot],
        config: StrategyConfig,
        total_equity: float,
        criteria: Tuple[FactorCriterion, ...],
    ) -> TargetAllocation:
        """
        Compute a ranked target allocation.

        Args:
            snapshots: Mapping symbol -> FactorSnapshot as of the decision bar.
            config: Strategy configuration (sizing mode, max positions, ...).
            total_equity: Current portfolio value, used by FIXED sizing.
            criteria: Scoring criteria resolved for this strategy.

        Returns:
            TargetAllocation with weights summing to <= 1.

        Raises:
            ConfigurationError: If the sizing mode is not recognised.
        """
        scored = score_snapshots(snapshots, criteria)
        selected = [item.symbol for item in scored[:config.max_positions]]

        weights = self._size_positions(selected, snapshots, config, total_equity)

        logger.debug(
            "Evaluated %s: %d scored, %d selected, total weight %.4f",
            config.strategy_id, len(scored), len(selected), sum(weights.values()),
        )
        return TargetAllocation(
            weights=weights,
            ranking=selected,
            scores={item.symbol: item.score for item in scored},
        )

    # ========================================================================
    # Internal helper methods
    # ========================================================================

    def _size_positions(
        self,
        selected: List[str],
        snapshots: Mapping[str, FactorSnapshot],
        config: StrategyConfig,
        total_equity: float,
    ) -> Dict[str, float]:
        weights = self._sized_weights(selected, snapshots, config, total_equity)
        if config.max_position_percent is None:
            return weights
        # Per-symbol ceiling; the excess stays in cash
        ceiling = config.max_position_percent / 100.0
        return {symbol: min(weight, ceiling) for symbol, weight in weights.items()}

    def _sized_weights(
        self,
        selected: List[str],
        snapshots: Mapping[str, FactorSnapshot],
        config: StrategyConfig,
        total_equity: float,
    ) -> Dict[str, float]:
        n = len(selected)
        if n == 0:
            return {}

        sizing = config.position_sizing
        if sizing == PositionSizing.EQUAL_WEIGHT:
            return {symbol: 1.0 / n for symbol in selected}

        if sizing == PositionSizing.PERCENT:
            weight = config.position_percent / 100.0
            if weight * n > 1.0:
                weight = 1.0 / n
            return {symbol: weight for symbol in selected}

        if sizing == PositionSizing.FIXED:
            if total_equity <= 0:
                return {symbol: 0.0 for symbol in selected}
            raw = {symbol: config.fixed_position_value / total_equity for symbol in selected}
            return _cap_total(raw)

        if sizing == PositionSizing.KELLY:
            cap = 1.0 / config.max_positions
            weights = {}
            for symbol in selected:
                snapshot = snapshots[symbol]
                mean = snapshot.get(KELLY_MEAN_FACTOR)
                variance = snapshot.get(KELLY_VARIANCE_FACTOR)
                if mean is None or variance is None or variance <= 0:
                    weights[symbol] = 0.0
                    continue
                weights[symbol] = min(max(mean / variance, 0.0), cap)
            return _cap_total(weights)

        raise ConfigurationError(f"Unsupported position sizing: {sizing!r}")


def _cap_total(weights: Dict[str, float]) -> Dict[str, float]:
    """Scale weights down proportionally so they sum to at most 1."""
    total = sum(weights.values())
    if total > 1.0:
        return {symbol: weight / total for symbol, weight in weights.items()}
    return weights
