"""
Synthetic market data generators for testing and demonstration.

This module produces deterministic, seeded price paths and turns them into
bar frames in the engine's canonical schema:
  - Geometric Brownian Motion (GBM): trending, compounding equity-like paths.
  - Ornstein-Uhlenbeck (OU) on log price: mean-reverting, range-bound paths.
  - price_frame_from_closes(): wraps any close sequence into OHLCV bars.

Every generator takes an explicit seed and draws from its own
numpy Generator, so two calls with the same arguments return identical data
and nothing touches numpy's global random state.
"""

import numpy as np
import pandas as pd


def generate_gbm_closes(
    initial_price: float,
    drift: float,
    volatility: float,
    n_steps: int,
    seed: int,
    dt: float = 1 / 252,
) -> np.ndarray:
    """
    Generate a closing-price path using Geometric Brownian Motion.

    **Mathematical**: Exact discretization of dS = μ S dt + σ S dW:
        S_{t+1} = S_t * exp((μ - 0.5 σ^2) dt + σ sqrt(dt) Z_t),  Z_t ~ N(0, 1)

    **Interpretation**:
      - drift > 0: upward trending market.
      - volatility = 0: deterministic exponential path.

    Args:
        initial_price: Starting price (must be positive).
        drift: Annualized drift μ (e.g., 0.10).
        volatility: Annualized volatility σ (e.g., 0.20).
        n_steps: Number of steps after the initial price.
        seed: Seed for the path's random generator.
        dt: Time increment per step (1/252 for daily).

    Returns:
        Array of n_steps + 1 prices, starting with initial_price.

    Raises:
        ValueError: If initial_price <= 0 or n_steps < 0.
    """
    if initial_price <= 0:
        raise ValueError(f"initial_price must be positive, got {initial_price}")
    if n_steps < 0:
        raise ValueError(f"n_steps must be non-negative, got {n_steps}")

    rng = np.random.default_rng(seed)
    shocks = rng.standard_normal(n_steps)

    log_increments = (drift - 0.5 * volatility ** 2) * dt + volatility * np.sqrt(dt) * shocks
    log_path = np.concatenate([[0.0], np.cumsum(log_increments)])
    return initial_price * np.exp(log_path)


def generate_ou_closes(
    initial_price: float,
    mean_reversion_speed: float,
    long_term_mean: float,
    volatility: float,
    n_steps: int,
    seed: int,
    dt: float = 1 / 252,
) -> np.ndarray:
    """
    Generate a mean-reverting closing-price path (OU process on log price).

    **Mathematical**: With X = ln(S) and θ = ln(long_term_mean):
        X_{t+1} = X_t + κ (θ - X_t) dt + σ sqrt(dt) Z_t

    Working in log space keeps every price strictly positive, which the bar
    schema requires.

    Args:
        initial_price: Starting price (positive).
        mean_reversion_speed: κ, how strongly price is pulled to the mean.
        long_term_mean: Equilibrium price level (positive).
        volatility: σ of log price, annualized.
        n_steps: Number of steps after the initial price.
        seed: Seed for the path's random generator.
        dt: Time increment per step.

    Returns:
        Array of n_steps + 1 prices.
    """
    if initial_price <= 0 or long_term_mean <= 0:
        raise ValueError(
            f"initial_price and long_term_mean must be positive, got {initial_price}, {long_term_mean}"
        )
    if n_steps < 0:
        raise ValueError(f"n_steps must be non-negative, got {n_steps}")

    rng = np.random.default_rng(seed)
    shocks = rng.standard_normal(n_steps)

    theta = np.log(long_term_mean)
    log_prices = np.empty(n_steps + 1)
    log_prices[0] = np.log(initial_price)
    for t in range(n_steps):
        pull = mean_reversion_speed * (theta - log_prices[t]) * dt
        log_prices[t + 1] = log_prices[t] + pull + volatility * np.sqrt(dt) * shocks[t]
    return np.exp(log_prices)


def price_frame_from_closes(
    closes,
    start: str | pd.Timestamp = "2020-01-01",
    freq: str = "B",
    volume: float = 1_000_000.0,
    opens=None,
) -> pd.DataFrame:
    """
    Wrap a close sequence into a canonical OHLCV bar frame.

    **Construction**:
      - timestamp: `len(closes)` dates from `start` at `freq` (business days
        by default).
      - open_price: `opens` if given, else the previous close (the first bar
        opens at its own close).
      - high/low: max/min of open and close, so bar invariants hold exactly.
      - volume: constant.

    Args:
        closes: Sequence of positive closing prices, oldest first.
        start: First timestamp.
        freq: pandas frequency string for the timestamps.
        volume: Volume for every bar.
        opens: Optional explicit opening prices (same length as closes).

    Returns:
        Price frame ready for normalize_price_frame / InMemoryDataProvider.
    """
    closes = np.asarray(closes, dtype=float)
    if opens is None:
        opens = np.concatenate([closes[:1], closes[:-1]])
    else:
        opens = np.asarray(opens, dtype=float)
        if len(opens) != len(closes):
            raise ValueError(
                f"opens and closes must have the same length, got {len(opens)} and {len(closes)}"
            )

    timestamps = pd.date_range(start=start, periods=len(closes), freq=freq)
    return pd.DataFrame({
        'timestamp': timestamps,
        'open_price': opens,
        'high_price': np.maximum(opens, closes),
        'low_price': np.minimum(opens, closes),
        'closing_price': closes,
        'volume': np.full(len(closes), float(volume)),
    })
