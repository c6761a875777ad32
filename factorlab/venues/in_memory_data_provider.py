"""
Dictionary-backed data provider.

Holds validated price frames and fundamentals snapshots in memory. Used by
tests, by the synthetic-data scripts, and by any caller that already has its
data loaded (e.g., an API layer that fetched bars from a vendor).

Frames are validated and copied at construction; fetches return copies, so a
caller mutating a returned frame cannot affect other runs sharing the
provider. The provider is read-only after construction and safe to share
across threads.
"""

from typing import Dict, List, Mapping, Optional

import pandas as pd

from factorlab.data.schemas import normalize_price_frame
from factorlab.utils.errors import DataUnavailableError


class InMemoryDataProvider:
    """
    DataProvider over in-memory frames.

    Args:
        bars: Mapping symbol -> price frame (canonical schema, any timestamp
              representation accepted by normalize_price_frame).
        fundamentals: Optional mapping symbol -> {field: value}.
    """

    def __init__(
        self,
        bars: Mapping[str, pd.DataFrame],
        fundamentals: Optional[Mapping[str, Mapping[str, float]]] = None,
    ):
        self._bars: Dict[str, pd.DataFrame] = {
            symbol: normalize_price_frame(df, context=symbol)
            for symbol, df in bars.items()
        }
        self._fundamentals: Dict[str, Dict[str, float]] = {
            symbol: dict(values) for symbol, values in (fundamentals or {}).items()
        }

    def fetch_daily_bars(
        self,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> pd.DataFrame:
        if symbol not in self._bars:
            raise DataUnavailableError(f"No price history for symbol '{symbol}'")
        df = self._bars[symbol]
        mask = (df['timestamp'] >= start) & (df['timestamp'] <= end)
        return df.loc[mask].reset_index(drop=True).copy()

    def fetch_fundamentals(
        self,
        symbol: str,
        as_of: pd.Timestamp,
    ) -> Optional[Dict[str, float]]:
        # Snapshots here are static; as_of is accepted for interface parity
        values = self._fundamentals.get(symbol)
        return dict(values) if values is not None else None

    def list_symbols(self) -> List[str]:
        return sorted(self._bars)
