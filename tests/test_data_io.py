"""
Tests for the bar schema and CSV/JSON I/O.

This module tests:
  - Schema validation (columns, ordering, bar invariants).
  - Timestamp normalisation (ISO strings, aware stamps → naive UTC).
  - Price CSV read/write and the fundamentals table reader.

All file tests use the tmp_path fixture to avoid touching the real data/ tree.
"""

import numpy as np
import pandas as pd
import pytest

from factorlab.data.io import read_fundamentals_csv, read_price_csv, write_price_csv
from factorlab.data.schemas import (
    PRICE_COLUMNS,
    Bar,
    SchemaValidationError,
    bars_to_frame,
    frame_to_bars,
    normalize_price_frame,
    validate_price_frame,
)
from factorlab.utils.errors import ValidationError


# ============================================================================
# Helper functions for test data generation
# ============================================================================

def make_price_frame(n_rows: int = 10) -> pd.DataFrame:
    """Small ascending frame that satisfies every bar invariant."""
    closes = np.linspace(100.0, 110.0, n_rows)
    return pd.DataFrame({
        'timestamp': pd.date_range("2024-01-01", periods=n_rows, freq='D'),
        'open_price': closes - 0.5,
        'high_price': closes + 1.0,
        'low_price': closes - 1.0,
        'closing_price': closes,
        'volume': np.full(n_rows, 1_000_000.0),
    })


# ============================================================================
# Schema validation
# ============================================================================

def test_valid_frame_passes():
    validate_price_frame(make_price_frame())


def test_missing_column_is_rejected():
    df = make_price_frame().drop(columns=['volume'])

    with pytest.raises(SchemaValidationError, match="Missing required columns"):
        validate_price_frame(df, context="TEST")


def test_descending_or_duplicate_timestamps_are_rejected():
    """Rows must be oldest first with no repeated timestamps."""
    descending = make_price_frame().iloc[::-1].reset_index(drop=True)
    duplicated = make_price_frame()
    duplicated.loc[3, 'timestamp'] = duplicated.loc[2, 'timestamp']

    with pytest.raises(SchemaValidationError, match="strictly increasing"):
        validate_price_frame(descending)
    with pytest.raises(SchemaValidationError, match="strictly increasing"):
        validate_price_frame(duplicated)


def test_bar_invariants_are_enforced():
    """Close above high, or negative volume, violates the bar invariants."""
    bad_close = make_price_frame()
    bad_close.loc[4, 'closing_price'] = bad_close.loc[4, 'high_price'] + 5.0
    bad_volume = make_price_frame()
    bad_volume.loc[1, 'volume'] = -1.0

    with pytest.raises(SchemaValidationError, match="invariants"):
        validate_price_frame(bad_close)
    with pytest.raises(SchemaValidationError, match="invariants"):
        validate_price_frame(bad_volume)


def test_non_finite_values_are_rejected():
    df = make_price_frame()
    df.loc[0, 'open_price'] = np.nan

    with pytest.raises(SchemaValidationError, match="NaN"):
        validate_price_frame(df)


def test_schema_errors_are_validation_errors():
    assert issubclass(SchemaValidationError, ValidationError)
    assert SchemaValidationError("x").code == "validation_error"


def test_normalize_converts_aware_strings_to_naive_utc():
    """
    Scenario: ISO strings with a -05:00 offset.

    Expected: datetime64 column, naive, shifted to UTC (+5 hours).
    """
    df = make_price_frame(3)
    df['timestamp'] = [
        "2024-01-02T16:00:00-05:00",
        "2024-01-03T16:00:00-05:00",
        "2024-01-04T16:00:00-05:00",
    ]

    out = normalize_price_frame(df, context="TEST")

    assert pd.api.types.is_datetime64_any_dtype(out['timestamp'])
    assert out['timestamp'].dt.tz is None
    assert out['timestamp'].iloc[0] == pd.Timestamp("2024-01-02 21:00:00")


def test_frame_bar_conversion_preserves_values():
    df = make_price_frame(4)

    bars = frame_to_bars(df, "TEST")
    back = bars_to_frame(bars)

    assert isinstance(bars[0], Bar)
    assert bars[0].symbol == "TEST"
    assert bars[-1].close == pytest.approx(110.0)
    assert list(back.columns) == PRICE_COLUMNS
    pd.testing.assert_frame_equal(back, df[PRICE_COLUMNS], check_dtype=False)


# ============================================================================
# CSV I/O
# ============================================================================

def test_price_csv_write_then_read(tmp_path):
    df = make_price_frame(5)
    path = write_price_csv(df, tmp_path / "raw" / "TEST.csv")

    loaded = read_price_csv(path, symbol="TEST")

    assert path.exists()
    assert len(loaded) == 5
    assert loaded['timestamp'].iloc[0] == pd.Timestamp("2024-01-01")
    assert loaded['closing_price'].iloc[-1] == pytest.approx(110.0)


def test_read_price_csv_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_price_csv(tmp_path / "NOPE.csv")


def test_write_price_csv_refuses_invalid_frame(tmp_path):
    df = make_price_frame().iloc[::-1].reset_index(drop=True)

    with pytest.raises(SchemaValidationError):
        write_price_csv(df, tmp_path / "BAD.csv")
    assert not (tmp_path / "BAD.csv").exists()


def test_read_fundamentals_csv_skips_blank_cells(tmp_path):
    """
    Scenario: one symbol with a blank ROE, one lowercase symbol.

    Expected: blank cells are absent, symbols uppercased.
    """
    path = tmp_path / "fundamentals.csv"
    path.write_text("symbol,pe_ratio,roe\naapl,25.5,\nMSFT,30,35.2\n")

    snapshots = read_fundamentals_csv(path)

    assert snapshots["AAPL"] == {"pe_ratio": 25.5}
    assert snapshots["MSFT"] == {"pe_ratio": 30.0, "roe": 35.2}
