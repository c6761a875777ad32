"""
Tests for weighted-percentile scoring.

Percentile rule: the share of candidates whose value is at or below the
symbol's value (at or above when lower is better), times 100.
"""

import pytest

from factorlab.analytics.factors import FactorSnapshot
from factorlab.strategies.base import FactorCriterion
from factorlab.strategies.scoring import score_snapshots


def snapshots_from(values_by_symbol):
    """Build {symbol: FactorSnapshot} from {symbol: {factor: value}}."""
    return {
        symbol: FactorSnapshot(symbol=symbol, timestamp=None, values=dict(values))
        for symbol, values in values_by_symbol.items()
    }


def test_higher_momentum_ranks_first():
    """
    Scenario: momentum_20d of 10, 20, 30 with weight 1.

    Expected: percentiles 33.3, 66.7, 100; order C, B, A.
    """
    snaps = snapshots_from({"A": {"momentum_20d": 10.0}, "B": {"momentum_20d": 20.0},
                            "C": {"momentum_20d": 30.0}})

    scored = score_snapshots(snaps, [FactorCriterion("momentum_20d")])

    assert [s.symbol for s in scored] == ["C", "B", "A"]
    assert scored[0].score == pytest.approx(1.0)
    assert scored[1].score == pytest.approx(2.0 / 3.0)
    assert scored[2].score == pytest.approx(1.0 / 3.0)


def test_ties_are_broken_by_symbol():
    snaps = snapshots_from({"ZZZ": {"momentum_20d": 5.0}, "AAA": {"momentum_20d": 5.0}})

    scored = score_snapshots(snaps, [FactorCriterion("momentum_20d")])

    assert [s.symbol for s in scored] == ["AAA", "ZZZ"]
    assert scored[0].score == scored[1].score


def test_lower_is_better_flips_orientation():
    """volatility_60d defaults to lower-is-better: the calmer symbol wins."""
    snaps = snapshots_from({"A": {"volatility_60d": 10.0}, "B": {"volatility_60d": 20.0}})

    scored = score_snapshots(snaps, [FactorCriterion("volatility_60d")])

    assert [s.symbol for s in scored] == ["A", "B"]
    assert scored[0].score == pytest.approx(1.0)
    assert scored[1].score == pytest.approx(0.5)


def test_explicit_orientation_overrides_catalogue():
    snaps = snapshots_from({"A": {"momentum_20d": 10.0}, "B": {"momentum_20d": 20.0}})

    scored = score_snapshots(snaps, [FactorCriterion("momentum_20d", higher_is_better=False)])

    assert scored[0].symbol == "A"


def test_out_of_band_symbol_with_no_other_contribution_is_excluded():
    """
    Scenario: min_value 15 on momentum; A has 10.

    Expected: A contributes 0 on its only criterion and is dropped.
    """
    snaps = snapshots_from({"A": {"momentum_20d": 10.0}, "B": {"momentum_20d": 20.0},
                            "C": {"momentum_20d": 30.0}})

    scored = score_snapshots(snaps, [FactorCriterion("momentum_20d", min_value=15.0)])

    assert [s.symbol for s in scored] == ["C", "B"]


def test_out_of_band_criterion_zeroes_only_its_contribution():
    snaps = snapshots_from({
        "A": {"momentum_20d": 10.0, "roe": 30.0},
        "B": {"momentum_20d": 20.0, "roe": 10.0},
    })
    criteria = [FactorCriterion("momentum_20d", max_value=15.0), FactorCriterion("roe")]

    scored = {s.symbol: s for s in score_snapshots(snaps, criteria)}

    assert scored["B"].contributions["momentum_20d"] == 0.0
    assert scored["B"].score == pytest.approx(0.5)
    assert scored["A"].score == pytest.approx(0.5 + 1.0)


def test_symbol_missing_a_required_factor_is_excluded():
    snaps = snapshots_from({"A": {"momentum_20d": None}, "B": {"momentum_20d": 20.0},
                            "C": {}})

    scored = score_snapshots(snaps, [FactorCriterion("momentum_20d")])

    assert [s.symbol for s in scored] == ["B"]
    assert scored[0].score == pytest.approx(1.0)


def test_no_criteria_keeps_everyone_with_zero_score():
    snaps = snapshots_from({"B": {}, "A": {}})

    scored = score_snapshots(snaps, [])

    assert [s.symbol for s in scored] == ["A", "B"]
    assert all(s.score == 0.0 for s in scored)


def test_empty_universe():
    assert score_snapshots({}, [FactorCriterion("momentum_20d")]) == []
