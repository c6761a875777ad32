"""
Bar record and canonical price-frame schema.

**Conceptual**: This module defines the data contract between the engine and
whatever supplies its market data. Every price frame the engine touches has
the same columns and ordering, so the factor engine and the runner can slice
by position without defensive checks.

**Schema**:
  - Columns: timestamp, open_price, high_price, low_price, closing_price, volume.
  - `timestamp` is a timezone-naive datetime64 column representing UTC.
  - Rows are in strictly increasing timestamp order (oldest first). Strict
    means no duplicate timestamps.
  - Per row: low <= open, close <= high, volume >= 0, all values finite.

**Why ascending?**
  - A backtest walks forward in time. With oldest-first rows, "everything
    known as of t" is a prefix of the frame, found with one binary search.
  - The newest bar is always `iloc[-1]`, which is what every factor reads.

Gaps (missing trading days) are allowed; the engine is gap-tolerant.
"""

from dataclasses import dataclass
from typing import List

import numpy as np
import pandas as pd

from factorlab.utils.errors import ValidationError


class SchemaValidationError(ValidationError):
    """
    Raised when a price frame does not conform to the bar schema.

    Messages include the context (symbol or file path) and the first
    offending rows so the data can be fixed at the source.
    """


PRICE_COLUMNS = [
    'timestamp',
    'open_price',
    'high_price',
    'low_price',
    'closing_price',
    'volume',
]

PRICE_VALUE_COLUMNS = PRICE_COLUMNS[1:]

# Relative slack for high/low containment checks on float data
_PRICE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class Bar:
    """
    One OHLCV sample for a symbol at a timestamp.

    Attributes:
        symbol: Instrument symbol.
        timestamp: Bar timestamp (naive UTC).
        open: Opening price.
        high: Highest traded price.
        low: Lowest traded price.
        close: Closing price.
        volume: Shares traded (>= 0).
    """
    symbol: str
    timestamp: pd.Timestamp
    open: float
    high: float
    low: float
    close: float
    volume: float


def validate_price_frame(df: pd.DataFrame, context: str | None = None) -> None:
    """
    Validate that a DataFrame conforms to the bar schema.

    **Functionally**:
      - All required columns present.
      - `timestamp` is datetime64 and strictly increasing.
      - Price and volume columns are finite numbers.
      - low <= open <= high, low <= close <= high, volume >= 0, low > 0.

    Args:
        df: Frame to validate.
        context: Optional description (symbol, file path) for error messages.

    Raises:
        SchemaValidationError: On the first violated rule.
    """
    ctx = f"{context}: " if context else ""

    missing_cols = set(PRICE_COLUMNS) - set(df.columns)
    if missing_cols:
        raise SchemaValidationError(
            f"{ctx}Missing required columns: {sorted(missing_cols)}. "
            f"Expected columns: {PRICE_COLUMNS}. "
            f"Found columns: {list(df.columns)}."
        )

    if not pd.api.types.is_datetime64_any_dtype(df['timestamp']):
        raise SchemaValidationError(
            f"{ctx}'timestamp' column must be datetime64, got {df['timestamp'].dtype}. "
            f"Use normalize_price_frame() to parse raw input."
        )

    if len(df) > 1:
        diffs = df['timestamp'].diff().iloc[1:]
        bad = diffs[diffs <= pd.Timedelta(0)]
        if not bad.empty:
            raise SchemaValidationError(
                f"{ctx}Timestamps are not in strictly increasing order. "
                f"Violations found at row indices: {bad.index.tolist()[:5]} (showing first 5). "
                f"Hint: sort by timestamp ascending (oldest first) and drop duplicates."
            )

    values = df[PRICE_VALUE_COLUMNS]
    try:
        numeric = values.astype(float)
    except (TypeError, ValueError) as e:
        raise SchemaValidationError(f"{ctx}Price/volume columns must be numeric. Error: {e}")

    if not np.isfinite(numeric.to_numpy()).all():
        raise SchemaValidationError(f"{ctx}Price/volume columns contain NaN or infinite values.")

    low = numeric['low_price']
    high = numeric['high_price']
    slack = high.abs() * _PRICE_TOLERANCE
    violations = (
        (low > numeric['open_price'] + slack)
        | (low > numeric['closing_price'] + slack)
        | (numeric['open_price'] > high + slack)
        | (numeric['closing_price'] > high + slack)
        | (low <= 0)
        | (numeric['volume'] < 0)
    )
    if violations.any():
        raise SchemaValidationError(
            f"{ctx}Bar invariants violated (low <= open,close <= high, low > 0, volume >= 0) "
            f"at row indices: {violations[violations].index.tolist()[:5]} (showing first 5)."
        )


def normalize_price_frame(df: pd.DataFrame, context: str | None = None) -> pd.DataFrame:
    """
    Parse timestamps into the canonical form and validate the result.

    Accepts ISO strings or datetimes, timezone-aware or naive. Aware stamps
    are converted to UTC and made naive. Row order is NOT changed: a frame
    that is out of order is rejected rather than silently re-sorted.

    Args:
        df: Raw frame with the bar schema columns.
        context: Optional description for error messages.

    Returns:
        A validated copy with a datetime64 `timestamp` column and a fresh
        RangeIndex.

    Raises:
        SchemaValidationError: If parsing or validation fails.
    """
    ctx = f"{context}: " if context else ""
    if 'timestamp' not in df.columns:
        raise SchemaValidationError(
            f"{ctx}'timestamp' column missing. Found columns: {list(df.columns)}."
        )

    out = df.copy()
    try:
        stamps = pd.to_datetime(out['timestamp'], format='ISO8601', utc=True)
    except (TypeError, ValueError) as e:
        raise SchemaValidationError(
            f"{ctx}Failed to parse 'timestamp' column as datetime. Error: {e}"
        )
    out['timestamp'] = stamps.dt.tz_localize(None)
    out = out.reset_index(drop=True)

    validate_price_frame(out, context=context)
    return out


def frame_to_bars(df: pd.DataFrame, symbol: str) -> List[Bar]:
    """Convert a validated price frame into Bar records (same order)."""
    return [
        Bar(
            symbol=symbol,
            timestamp=row.timestamp,
            open=float(row.open_price),
            high=float(row.high_price),
            low=float(row.low_price),
            close=float(row.closing_price),
            volume=float(row.volume),
        )
        for row in df.itertuples(index=False)
    ]


def bars_to_frame(bars: List[Bar]) -> pd.DataFrame:
    """Convert Bar records into a price frame with the canonical columns."""
    return pd.DataFrame(
        {
            'timestamp': pd.to_datetime([bar.timestamp for bar in bars]),
            'open_price': [bar.open for bar in bars],
            'high_price': [bar.high for bar in bars],
            'low_price': [bar.low for bar in bars],
            'closing_price': [bar.close for bar in bars],
            'volume': [bar.volume for bar in bars],
        },
        columns=PRICE_COLUMNS,
    )
