"""
CSV and JSON readers and writers with schema enforcement.

**Conceptual**: This module is the only file-system boundary of the engine.
Price CSVs are parsed and validated on the way in (via schemas.py), and
backtest artifacts (equity curve CSV, result JSON) are written in a stable
format on the way out.

**Rule**: Providers, scripts, and tests read and write data through these
functions, never with ad-hoc pd.read_csv / df.to_csv calls, so the schema is
enforced in exactly one place.

**File formats**:
  - Price CSV: bar schema columns, ISO 8601 timestamps, oldest row first.
  - Fundamentals CSV: a `symbol` column plus one column per fundamental
    field (pe_ratio, pb_ratio, roe, ...). Empty cells mean "not reported".
  - Equity curve CSV: timestamp, equity, cash.
  - Result JSON: BacktestResult.to_dict() with sorted keys.
"""

import json
import logging
import math
from pathlib import Path
from typing import Dict

import pandas as pd

from factorlab.data.schemas import (
    PRICE_COLUMNS,
    SchemaValidationError,
    normalize_price_frame,
    validate_price_frame,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def read_price_csv(path: Path | str, symbol: str | None = None) -> pd.DataFrame:
    """
    Read a price CSV file with schema validation.

    Args:
        path: Path to the CSV (e.g., "data/raw/AAPL.csv").
        symbol: Optional symbol for error message context.

    Returns:
        Validated price frame (datetime64 timestamps, ascending).

    Raises:
        FileNotFoundError: If the file doesn't exist.
        SchemaValidationError: If the file can't be parsed or violates the schema.
    """
    path = Path(path)
    context = symbol or str(path)

    if not path.exists():
        raise FileNotFoundError(
            f"Price CSV not found: {path}. "
            f"Ensure the file exists and the path is correct."
        )

    try:
        df = pd.read_csv(path)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise SchemaValidationError(f"{context}: Failed to read CSV. Error: {e}")

    return normalize_price_frame(df, context=context)


def write_price_csv(df: pd.DataFrame, path: Path | str) -> Path:
    """
    Write a price frame to CSV after validating it.

    Timestamps are written as "YYYY-MM-DD HH:MM:SS"; parent directories are
    created as needed.

    Returns:
        The path written.
    """
    path = Path(path)
    validate_price_frame(df, context=str(path))

    out = df[PRICE_COLUMNS].copy()
    out['timestamp'] = out['timestamp'].dt.strftime(TIMESTAMP_FORMAT)

    path.parent.mkdir(parents=True, exist_ok=True)
    out.to_csv(path, index=False)
    logger.debug("Wrote %d bars to %s", len(out), path)
    return path


def read_fundamentals_csv(path: Path | str) -> Dict[str, Dict[str, float]]:
    """
    Read a fundamentals snapshot table.

    Returns:
        Mapping symbol -> {field: value}. Empty or non-numeric cells are
        omitted from that symbol's mapping, so consumers see them as absent.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        SchemaValidationError: If the file has no `symbol` column.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Fundamentals CSV not found: {path}.")

    df = pd.read_csv(path)
    if 'symbol' not in df.columns:
        raise SchemaValidationError(
            f"{path}: fundamentals CSV needs a 'symbol' column. Found: {list(df.columns)}."
        )

    fields = [col for col in df.columns if col != 'symbol']
    snapshots: Dict[str, Dict[str, float]] = {}
    for _, row in df.iterrows():
        values: Dict[str, float] = {}
        for field_name in fields:
            value = pd.to_numeric(row[field_name], errors='coerce')
            if pd.notna(value) and math.isfinite(float(value)):
                values[field_name] = float(value)
        snapshots[str(row['symbol']).strip().upper()] = values
    return snapshots


def write_equity_curve_csv(result, path: Path | str) -> Path:
    """
    Write a backtest result's equity curve as CSV (timestamp, equity, cash).

    Args:
        result: A BacktestResult (anything with an `equity_curve` list of
                points carrying timestamp, equity and cash).
        path: Destination file.

    Returns:
        The path written.
    """
    path = Path(path)
    df = pd.DataFrame(
        {
            'timestamp': [point.timestamp.strftime(TIMESTAMP_FORMAT) for point in result.equity_curve],
            'equity': [point.equity for point in result.equity_curve],
            'cash': [point.cash for point in result.equity_curve],
        },
        columns=['timestamp', 'equity', 'cash'],
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return path


def write_backtest_result_json(result, path: Path | str) -> Path:
    """
    Serialize a backtest result to JSON using its stable field names.

    The output is byte-identical for identical results (sorted keys, fixed
    indentation).
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        f.write(result.to_json())
        f.write("\n")
    logger.info("Wrote backtest result %s to %s", result.id, path)
    return path


def read_backtest_result_json(path: Path | str) -> dict:
    """Load a serialized backtest result as a plain dictionary."""
    with open(Path(path), 'r', encoding='utf-8') as f:
        return json.load(f)
