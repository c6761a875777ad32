"""
Tests for StrategyEvaluator: selection and position sizing.

Weights must always lie in [0, 1] and sum to at most 1.
"""

import pytest

from factorlab.analytics.factors import FactorSnapshot
from factorlab.strategies.base import FactorCriterion, StrategyConfig
from factorlab.strategies.evaluator import StrategyEvaluator

MOMENTUM = (FactorCriterion("momentum_20d"),)


def make_snapshots(n: int = 3, **extra):
    """Symbols S0..S(n-1) with momentum 10, 20, 30, ... plus shared extra factors."""
    return {
        f"S{i}": FactorSnapshot(
            symbol=f"S{i}", timestamp=None,
            values={"momentum_20d": 10.0 * (i + 1), **extra},
        )
        for i in range(n)
    }


def test_equal_weight_top_n():
    config = StrategyConfig("momentum", max_positions=2)

    allocation = StrategyEvaluator().evaluate(make_snapshots(3), config, 100000.0, MOMENTUM)

    assert allocation.ranking == ["S2", "S1"]
    assert allocation.weights == {"S2": 0.5, "S1": 0.5}
    assert set(allocation.scores) == {"S0", "S1", "S2"}


def test_percent_sizing():
    config = StrategyConfig("momentum", position_sizing="percent", position_percent=20.0)

    allocation = StrategyEvaluator().evaluate(make_snapshots(3), config, 100000.0, MOMENTUM)

    assert allocation.weights == {"S0": pytest.approx(0.2), "S1": pytest.approx(0.2),
                                  "S2": pytest.approx(0.2)}


def test_percent_sizing_renormalizes_when_over_allocated():
    """40% x 3 symbols would be 120%: every weight becomes 1/3."""
    config = StrategyConfig("momentum", position_sizing="percent", position_percent=40.0)

    allocation = StrategyEvaluator().evaluate(make_snapshots(3), config, 100000.0, MOMENTUM)

    assert all(w == pytest.approx(1.0 / 3.0) for w in allocation.weights.values())
    assert allocation.total_weight == pytest.approx(1.0)


def test_fixed_sizing_uses_equity():
    config = StrategyConfig("momentum", position_sizing="fixed", fixed_position_value=10000.0)

    allocation = StrategyEvaluator().evaluate(make_snapshots(2), config, 100000.0, MOMENTUM)

    assert allocation.weights == {"S0": pytest.approx(0.1), "S1": pytest.approx(0.1)}


def test_fixed_sizing_is_capped_at_full_investment():
    config = StrategyConfig("momentum", position_sizing="fixed", fixed_position_value=60000.0)

    allocation = StrategyEvaluator().evaluate(make_snapshots(3), config, 100000.0, MOMENTUM)

    assert allocation.total_weight == pytest.approx(1.0)


def test_kelly_is_clipped_to_one_over_max_positions():
    """
    Scenario: mean 0.001, variance 0.0001 → raw Kelly fraction 10.

    Expected: clipped to 1 / max_positions = 0.25.
    """
    snaps = make_snapshots(2, return_mean_60d=0.001, return_variance_60d=0.0001)
    config = StrategyConfig("momentum", max_positions=4, position_sizing="kelly")

    allocation = StrategyEvaluator().evaluate(snaps, config, 100000.0, MOMENTUM)

    assert allocation.weights == {"S0": pytest.approx(0.25), "S1": pytest.approx(0.25)}


def test_kelly_zero_for_negative_mean_or_missing_inputs():
    snaps = make_snapshots(1, return_mean_60d=-0.002, return_variance_60d=0.0001)
    snaps["S9"] = FactorSnapshot("S9", None, {"momentum_20d": 5.0})
    config = StrategyConfig("momentum", position_sizing="kelly")

    allocation = StrategyEvaluator().evaluate(snaps, config, 100000.0, MOMENTUM)

    assert allocation.weights == {"S0": 0.0, "S9": 0.0}


def test_no_qualifying_symbols_gives_empty_allocation():
    snaps = {"S0": FactorSnapshot("S0", None, {"momentum_20d": None})}

    allocation = StrategyEvaluator().evaluate(snaps, StrategyConfig("momentum"), 100000.0, MOMENTUM)

    assert allocation.is_empty
    assert allocation.weights == {}


def test_no_criteria_holds_everything_equally():
    config = StrategyConfig("equal_weight", max_positions=10)

    allocation = StrategyEvaluator().evaluate(make_snapshots(4), config, 100000.0, ())

    assert allocation.ranking == ["S0", "S1", "S2", "S3"]
    assert all(w == pytest.approx(0.25) for w in allocation.weights.values())


def test_max_position_percent_caps_each_weight():
    """
    Scenario: Two symbols equally weighted (50% each) with a 30% cap.

    Expected: 30% each; the other 40% stays in cash.
    """
    config = StrategyConfig("momentum", max_positions=2, max_position_percent=30.0)

    allocation = StrategyEvaluator().evaluate(make_snapshots(2), config, 100000.0, MOMENTUM)

    assert allocation.weights == {"S0": pytest.approx(0.3), "S1": pytest.approx(0.3)}
    assert allocation.total_weight == pytest.approx(0.6)


def test_max_position_percent_applies_to_percent_sizing():
    config = StrategyConfig(
        "momentum", position_sizing="percent", position_percent=40.0, max_position_percent=25.0,
    )

    allocation = StrategyEvaluator().evaluate(make_snapshots(2), config, 100000.0, MOMENTUM)

    assert all(w == pytest.approx(0.25) for w in allocation.weights.values())


def test_max_position_percent_above_weight_changes_nothing():
    config = StrategyConfig("momentum", max_positions=4, max_position_percent=50.0)

    allocation = StrategyEvaluator().evaluate(make_snapshots(4), config, 100000.0, MOMENTUM)

    assert all(w == pytest.approx(0.25) for w in allocation.weights.values())
