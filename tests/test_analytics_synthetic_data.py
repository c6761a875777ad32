"""
Tests for factorlab/analytics/synthetic_data.py

These tests verify that the GBM and OU generators produce paths of the
expected length, honour seeds, behave as expected in trivial cases, and that
price_frame_from_closes yields frames the bar schema accepts.
"""

import numpy as np
import pytest

from factorlab.analytics.synthetic_data import (
    generate_gbm_closes,
    generate_ou_closes,
    price_frame_from_closes,
)
from factorlab.data.schemas import PRICE_COLUMNS, validate_price_frame


def test_gbm_length_and_initial_price():
    prices = generate_gbm_closes(initial_price=150.0, drift=0.05, volatility=0.15, n_steps=50, seed=42)

    # n_steps + 1 values, including the initial price
    assert len(prices) == 51
    assert prices[0] == 150.0


def test_gbm_zero_volatility_is_deterministic_growth():
    """With σ = 0 the path is S_t = S_0 * exp(μ t dt)."""
    prices = generate_gbm_closes(100.0, drift=0.10, volatility=0.0, n_steps=252, seed=1)

    assert prices[-1] == pytest.approx(100.0 * np.exp(0.10))


def test_gbm_seed_reproducibility():
    first = generate_gbm_closes(100.0, 0.1, 0.2, 100, seed=7)
    second = generate_gbm_closes(100.0, 0.1, 0.2, 100, seed=7)
    other = generate_gbm_closes(100.0, 0.1, 0.2, 100, seed=8)

    np.testing.assert_array_equal(first, second)
    assert not np.array_equal(first, other)


def test_gbm_rejects_bad_inputs():
    with pytest.raises(ValueError):
        generate_gbm_closes(0.0, 0.1, 0.2, 10, seed=1)
    with pytest.raises(ValueError):
        generate_gbm_closes(100.0, 0.1, 0.2, -1, seed=1)


def test_ou_zero_volatility_converges_to_mean():
    prices = generate_ou_closes(
        initial_price=150.0, mean_reversion_speed=5.0, long_term_mean=100.0,
        volatility=0.0, n_steps=2520, seed=1,
    )

    assert prices[0] == pytest.approx(150.0)
    assert prices[-1] == pytest.approx(100.0, rel=1e-3)
    assert np.all(np.diff(prices) <= 0)


def test_ou_seed_reproducibility_and_positive():
    first = generate_ou_closes(50.0, 3.0, 60.0, 0.5, 500, seed=11)
    second = generate_ou_closes(50.0, 3.0, 60.0, 0.5, 500, seed=11)

    np.testing.assert_array_equal(first, second)
    assert np.all(first > 0)


def test_price_frame_from_closes_passes_schema():
    closes = generate_gbm_closes(100.0, 0.1, 0.3, 99, seed=5)

    df = price_frame_from_closes(closes, start="2024-01-01")

    validate_price_frame(df)
    assert list(df.columns) == PRICE_COLUMNS
    assert len(df) == 100
    # Opens default to the previous close
    assert df['open_price'].iloc[1] == pytest.approx(closes[0])


def test_price_frame_from_closes_length_mismatch():
    with pytest.raises(ValueError, match="same length"):
        price_frame_from_closes([1.0, 2.0], opens=[1.0])
