"""
CSV-tree data provider.

**Layout** (under a data directory, by default <project>/data):
    raw/<SYMBOL>.csv        one price CSV per symbol (bar schema)
    fundamentals.csv        optional, one row per symbol

Files are read lazily on first use and cached per provider instance. The
cache is guarded by a lock because the screener fans symbol loads out to a
thread pool.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd

from factorlab.data.io import read_fundamentals_csv, read_price_csv
from factorlab.utils.errors import DataUnavailableError

logger = logging.getLogger(__name__)


class CsvDataProvider:
    """
    DataProvider reading canonical price CSVs from disk.

    Args:
        data_dir: Directory containing `raw/` and optionally `fundamentals.csv`.
    """

    def __init__(self, data_dir: Path | str):
        self._data_dir = Path(data_dir)
        self._raw_dir = self._data_dir / "raw"
        self._lock = threading.Lock()
        self._frames: Dict[str, pd.DataFrame] = {}
        self._fundamentals: Optional[Dict[str, Dict[str, float]]] = None

    def fetch_daily_bars(
        self,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> pd.DataFrame:
        df = self._load_frame(symbol)
        mask = (df['timestamp'] >= start) & (df['timestamp'] <= end)
        return df.loc[mask].reset_index(drop=True).copy()

    def fetch_fundamentals(
        self,
        symbol: str,
        as_of: pd.Timestamp,
    ) -> Optional[Dict[str, float]]:
        with self._lock:
            if self._fundamentals is None:
                path = self._data_dir / "fundamentals.csv"
                if path.exists():
                    self._fundamentals = read_fundamentals_csv(path)
                else:
                    logger.debug("No fundamentals file at %s", path)
                    self._fundamentals = {}
            values = self._fundamentals.get(symbol)
        return dict(values) if values is not None else None

    def list_symbols(self) -> List[str]:
        if not self._raw_dir.exists():
            return []
        return sorted(path.stem for path in self._raw_dir.glob("*.csv"))

    def _load_frame(self, symbol: str) -> pd.DataFrame:
        with self._lock:
            cached = self._frames.get(symbol)
        if cached is not None:
            return cached

        path = self._raw_dir / f"{symbol}.csv"
        if not path.exists():
            raise DataUnavailableError(f"No price CSV for symbol '{symbol}' at {path}")
        df = read_price_csv(path, symbol=symbol)

        with self._lock:
            self._frames.setdefault(symbol, df)
            return self._frames[symbol]
