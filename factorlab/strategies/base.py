"""
Strategy data model: configuration, criteria, allocations, definitions.

**Conceptual**: A strategy in this engine is not a class hierarchy. It is a
named definition holding a set of weighted factor criteria plus an evaluator
that turns factor snapshots into a ranked TargetAllocation. Momentum, value,
quality and the rest differ only in their criteria. A genuinely different
selection rule plugs in as another object satisfying the AllocationEvaluator
protocol.

**Target weight semantics** (long-only):
  - Weights are fractions of total portfolio value (0.0 to 1.0).
  - Weights of the selected symbols sum to <= 1.0; the remainder stays cash.
  - An empty allocation means "hold everything in cash".
  - Symbols currently held but absent from the allocation are sold.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional, Protocol, Tuple

from factorlab.analytics.factors import FactorSnapshot, get_factor_definition
from factorlab.utils.errors import ConfigurationError, ValidationError

DEFAULT_MAX_POSITIONS = 10


class PositionSizing(str, Enum):
    """How selected symbols are converted into weights."""
    EQUAL_WEIGHT = "equal_weight"
    PERCENT = "percent"
    FIXED = "fixed"
    KELLY = "kelly"


class RebalanceFrequency(str, Enum):
    """How often the runner recomputes the target allocation."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    NEVER = "never"


def _parse_enum(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = [member.value for member in enum_cls]
        raise ConfigurationError(f"{field_name} must be one of {allowed}, got: {value!r}")


def _parse_float(value, field_name: str, error_cls=ConfigurationError) -> float:
    """Coerce a JSON-style number (or numeric string) to a finite float."""
    if isinstance(value, bool):
        raise error_cls(f"{field_name} must be a number, got: {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise error_cls(f"{field_name} must be a number, got: {value!r}")
    if not math.isfinite(number):
        raise error_cls(f"{field_name} must be finite, got: {value!r}")
    return number


def _parse_count(value, field_name: str) -> int:
    """Coerce to int, accepting integral floats (2.0) but not 2.5."""
    number = _parse_float(value, field_name)
    if not number.is_integer():
        raise ConfigurationError(f"{field_name} must be a whole number, got: {value!r}")
    return int(number)


@dataclass(frozen=True)
class FactorCriterion:
    """
    One weighted factor criterion used for scoring.

    **Scoring rule** (see strategies/scoring.py):
      - The symbol's value is turned into a cross-sectional percentile in
        (0, 100], flipped when lower values are better.
      - Contribution = weight * percentile / 100 when the raw value lies
        inside [min_value, max_value]; 0 otherwise.

    Attributes:
        name: Factor name from the catalogue (e.g., "momentum_60d").
        weight: Relative importance (>= 0).
        min_value: Optional inclusive lower band on the raw value.
        max_value: Optional inclusive upper band on the raw value.
        higher_is_better: Ranking orientation; None uses the catalogue's.
    """
    name: str
    weight: float = 1.0
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    higher_is_better: Optional[bool] = None

    def __post_init__(self):
        get_factor_definition(self.name)
        label = f"Criterion '{self.name}'"
        object.__setattr__(
            self, "weight", _parse_float(self.weight, f"{label}: weight", ValidationError)
        )
        for bound in ("min_value", "max_value"):
            value = getattr(self, bound)
            if value is not None:
                object.__setattr__(
                    self, bound, _parse_float(value, f"{label}: {bound}", ValidationError)
                )
        if self.weight < 0:
            raise ValidationError(f"{label}: weight must be >= 0, got {self.weight}")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValidationError(
                f"{label}: min_value {self.min_value} exceeds max_value {self.max_value}"
            )

    @property
    def prefers_higher(self) -> bool:
        if self.higher_is_better is not None:
            return self.higher_is_better
        return get_factor_definition(self.name).higher_is_better

    def in_band(self, value: float) -> bool:
        """True when `value` satisfies both optional bands."""
        if self.min_value is not None and value < self.min_value:
            return False
        if self.max_value is not None and value > self.max_value:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "weight": self.weight,
            "min": self.min_value,
            "max": self.max_value,
            "higher_is_better": self.prefers_higher,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "FactorCriterion":
        """
        Build a criterion from an API-style mapping.

        Accepts {"name", "weight"?, "min"?, "max"?, "higher_is_better"?}
        (also "min_value"/"max_value").
        """
        if "name" not in data:
            raise ValidationError(f"Criterion is missing 'name': {dict(data)}")
        return cls(
            name=str(data["name"]),
            weight=data.get("weight", 1.0),
            min_value=data.get("min", data.get("min_value")),
            max_value=data.get("max", data.get("max_value")),
            higher_is_better=data.get("higher_is_better"),
        )


@dataclass(frozen=True)
class StrategyConfig:
    """
    Parameters controlling one strategy evaluation.

    Every field is honoured by the evaluator and the runner; none is
    accepted and then silently ignored.

    Attributes:
        strategy_id: Registry id of the strategy.
        max_positions: Maximum symbols held (>= 1). Defaults to 10.
        position_sizing: Weighting mode.
        rebalance_frequency: Runner cadence.
        position_percent: Per-symbol weight in percent for PERCENT sizing.
        fixed_position_value: Per-symbol dollar amount for FIXED sizing.
        max_position_percent: Optional cap, in percent of equity, on any
            single symbol's weight under every sizing mode.
        criteria: Optional override of the strategy's criteria.

    Numeric fields accept JSON-style values (2.0, "10") and are stored
    converted; anything non-numeric raises ConfigurationError.
    """
    strategy_id: str
    max_positions: int = DEFAULT_MAX_POSITIONS
    position_sizing: PositionSizing = PositionSizing.EQUAL_WEIGHT
    rebalance_frequency: RebalanceFrequency = RebalanceFrequency.MONTHLY
    position_percent: float = 10.0
    fixed_position_value: float = 10000.0
    max_position_percent: Optional[float] = None
    criteria: Optional[Tuple[FactorCriterion, ...]] = None

    def __post_init__(self):
        # Accept plain strings for the enum fields and normalise them
        object.__setattr__(
            self, "position_sizing",
            _parse_enum(PositionSizing, self.position_sizing, "position_sizing"),
        )
        object.__setattr__(
            self, "rebalance_frequency",
            _parse_enum(RebalanceFrequency, self.rebalance_frequency, "rebalance_frequency"),
        )
        if self.criteria is not None:
            object.__setattr__(self, "criteria", tuple(self.criteria))

        object.__setattr__(self, "max_positions", _parse_count(self.max_positions, "max_positions"))
        object.__setattr__(
            self, "position_percent", _parse_float(self.position_percent, "position_percent")
        )
        object.__setattr__(
            self, "fixed_position_value",
            _parse_float(self.fixed_position_value, "fixed_position_value"),
        )
        if self.max_position_percent is not None:
            object.__setattr__(
                self, "max_position_percent",
                _parse_float(self.max_position_percent, "max_position_percent"),
            )

        if self.max_positions < 1:
            raise ConfigurationError(
                f"max_positions must be at least 1, got: {self.max_positions}"
            )
        if not (0 < self.position_percent <= 100):
            raise ConfigurationError(
                f"position_percent must be in (0, 100], got: {self.position_percent}"
            )
        if self.fixed_position_value <= 0:
            raise ConfigurationError(
                f"fixed_position_value must be positive, got: {self.fixed_position_value}"
            )
        if self.max_position_percent is not None and not (0 < self.max_position_percent <= 100):
            raise ConfigurationError(
                f"max_position_percent must be in (0, 100], got: {self.max_position_percent}"
            )

    def to_dict(self) -> dict:
        return {
            "strategyId": self.strategy_id,
            "maxPositions": self.max_positions,
            "positionSizing": self.position_sizing.value,
            "rebalanceFrequency": self.rebalance_frequency.value,
            "positionPercent": self.position_percent,
            "fixedPositionValue": self.fixed_position_value,
            "maxPositionPercent": self.max_position_percent,
            "criteria": (
                [criterion.to_dict() for criterion in self.criteria]
                if self.criteria is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, strategy_id: str, data: Optional[Mapping] = None) -> "StrategyConfig":
        """
        Build a config from an API-style mapping.

        Recognised keys: max_positions, position_sizing, rebalance_frequency,
        position_percent, fixed_position_value, max_position_percent,
        criteria (list of criterion mappings). Unknown keys raise
        ConfigurationError rather than being dropped.
        """
        data = dict(data or {})
        known = {
            "max_positions", "position_sizing", "rebalance_frequency",
            "position_percent", "fixed_position_value", "max_position_percent",
            "criteria",
        }
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown config keys {unknown}. Known keys: {sorted(known)}")

        kwargs = {key: value for key, value in data.items() if key != "criteria" and value is not None}
        criteria = data.get("criteria")
        if criteria is not None:
            kwargs["criteria"] = tuple(
                c if isinstance(c, FactorCriterion) else FactorCriterion.from_dict(c)
                for c in criteria
            )
        return cls(strategy_id=strategy_id, **kwargs)


@dataclass
class TargetAllocation:
    """
    Desired portfolio weights produced by one evaluation.

    Attributes:
        weights: Mapping symbol -> target weight in [0, 1]; sum <= 1.
        ranking: Selected symbols, best first.
        scores: Composite score for every qualifying symbol (selected or not).
    """
    weights: Dict[str, float] = field(default_factory=dict)
    ranking: List[str] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.ranking

    @property
    def total_weight(self) -> float:
        return sum(self.weights.values())


class AllocationEvaluator(Protocol):
    """
    Anything that can turn factor snapshots into a target allocation.
    """

    def evaluate(
        self,
        snapshots: Mapping[str, FactorSnapshot],
        config: StrategyConfig,
        total_equity: float,
        criteria: Tuple[FactorCriterion, ...],
    ) -> TargetAllocation:
        ...


@dataclass(frozen=True)
class StrategyDefinition:
    """
    A named, registered strategy.

    Attributes:
        strategy_id: Registry key (e.g., "momentum").
        description: One-line description for listings.
        criteria: Default scoring criteria (may be empty).
        evaluator: Object implementing AllocationEvaluator.
    """
    strategy_id: str
    description: str
    criteria: Tuple[FactorCriterion, ...]
    evaluator: AllocationEvaluator

    def resolve_criteria(self, config: StrategyConfig) -> Tuple[FactorCriterion, ...]:
        """Criteria to use for `config`: its override, else the defaults."""
        return config.criteria if config.criteria is not None else self.criteria
