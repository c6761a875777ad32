"""
Registry of named strategies.

**Conceptual**: Strategies are looked up by id ("momentum", "value", ...)
instead of being subclasses of a base class. Each registry entry is a
StrategyDefinition: default criteria plus an evaluator. Built-in strategies
share the weighted-criteria StrategyEvaluator and differ only in criteria.

**No module-level mutable state**: The built-in definitions are an immutable
tuple. A StrategyRegistry is an ordinary object created per service (or per
test). Registering a custom strategy changes that registry only, never the
built-ins and never another service's registry.

**Built-in strategies**:
  - momentum: 20/60-bar price momentum, with a trend-slope tie-in.
  - value: earnings and book yields (the inverses of P/E and P/B).
  - quality: ROE, ROA and margins, avoiding heavy leverage.
  - low_volatility: lowest realized volatility and drawdown.
  - mean_reversion: oversold RSI and short-term losers.
  - multi_factor: momentum, value, quality and low volatility blended.
  - equal_weight: no criteria; every symbol with data, equally weighted.
"""

import logging
import threading
from typing import Dict, List, Optional, Tuple

from factorlab.strategies.base import FactorCriterion, StrategyDefinition
from factorlab.strategies.evaluator import StrategyEvaluator
from factorlab.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _builtin_definitions() -> Tuple[StrategyDefinition, ...]:
    evaluator = StrategyEvaluator()
    return (
        StrategyDefinition(
            strategy_id="momentum",
            description="Buy recent winners: 20 and 60 bar price momentum",
            criteria=(
                FactorCriterion("momentum_20d", weight=0.5),
                FactorCriterion("momentum_60d", weight=0.3),
                FactorCriterion("trend_slope_20d", weight=0.2),
            ),
            evaluator=evaluator,
        ),
        StrategyDefinition(
            strategy_id="value",
            description="Cheap on earnings and book value",
            criteria=(
                FactorCriterion("earnings_yield", weight=0.6),
                FactorCriterion("book_yield", weight=0.4),
            ),
            evaluator=evaluator,
        ),
        StrategyDefinition(
            strategy_id="quality",
            description="High profitability with moderate leverage",
            criteria=(
                FactorCriterion("roe", weight=0.4),
                FactorCriterion("roa", weight=0.2),
                FactorCriterion("profit_margin", weight=0.2),
                FactorCriterion("debt_to_equity", weight=0.2, max_value=2.0),
            ),
            evaluator=evaluator,
        ),
        StrategyDefinition(
            strategy_id="low_volatility",
            description="Lowest realized volatility and shallowest drawdowns",
            criteria=(
                FactorCriterion("volatility_60d", weight=0.7),
                FactorCriterion("max_drawdown_60d", weight=0.3),
            ),
            evaluator=evaluator,
        ),
        StrategyDefinition(
            strategy_id="mean_reversion",
            description="Oversold names likely to bounce: low RSI, short-term losers",
            criteria=(
                FactorCriterion("rsi_14", weight=0.6, max_value=40.0),
                FactorCriterion("momentum_20d", weight=0.4, higher_is_better=False),
            ),
            evaluator=evaluator,
        ),
        StrategyDefinition(
            strategy_id="multi_factor",
            description="Blend of momentum, value, quality and low volatility",
            criteria=(
                FactorCriterion("momentum_60d", weight=0.3),
                FactorCriterion("earnings_yield", weight=0.25),
                FactorCriterion("roe", weight=0.25),
                FactorCriterion("volatility_60d", weight=0.2),
            ),
            evaluator=evaluator,
        ),
        StrategyDefinition(
            strategy_id="equal_weight",
            description="Hold every symbol with data in equal proportion",
            criteria=(),
            evaluator=evaluator,
        ),
    )


class StrategyRegistry:
    """
    Lookup table of strategy definitions.

    Args:
        include_builtins: Start with the built-in strategies (default True).

    Usage:
        registry = StrategyRegistry()
        definition = registry.get("momentum")
        registry.register(StrategyDefinition("my_alpha", "...", criteria, StrategyEvaluator()))
    """

    def __init__(self, include_builtins: bool = True):
        self._lock = threading.Lock()
        self._definitions: Dict[str, StrategyDefinition] = {}
        if include_builtins:
            for definition in _builtin_definitions():
                self._definitions[definition.strategy_id] = definition

    def get(self, strategy_id: str) -> StrategyDefinition:
        """
        Return the definition registered under `strategy_id`.

        Raises:
            ConfigurationError: If no such strategy is registered.
        """
        with self._lock:
            definition = self._definitions.get(strategy_id)
        if definition is None:
            raise ConfigurationError(
                f"Unknown strategy id '{strategy_id}'. Registered strategies: {self.ids()}"
            )
        return definition

    def register(self, definition: StrategyDefinition, replace: bool = False) -> None:
        """
        Add a strategy definition.

        Raises:
            ConfigurationError: If the id is taken and `replace` is False.
        """
        with self._lock:
            if definition.strategy_id in self._definitions and not replace:
                raise ConfigurationError(
                    f"Strategy id '{definition.strategy_id}' is already registered"
                )
            self._definitions[definition.strategy_id] = definition
        logger.info("Registered strategy %s", definition.strategy_id)

    def ids(self) -> List[str]:
        with self._lock:
            return sorted(self._definitions)

    def describe(self) -> List[Dict[str, object]]:
        """Id, description and criteria of every strategy, sorted by id."""
        with self._lock:
            definitions = sorted(self._definitions.values(), key=lambda d: d.strategy_id)
        return [
            {
                "id": d.strategy_id,
                "description": d.description,
                "criteria": [c.to_dict() for c in d.criteria],
            }
            for d in definitions
        ]

    def __contains__(self, strategy_id: Optional[str]) -> bool:
        with self._lock:
            return strategy_id in self._definitions
