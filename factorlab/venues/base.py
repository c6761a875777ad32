"""
Base abstraction for data providers.

**Conceptual**: The engine never reaches out for market data on its own.
Everything it knows about prices and fundamentals comes through an injected
DataProvider, which makes every run a pure function of its inputs: hand the
same provider contents to two runs and they produce identical results.

**Why protocols over inheritance?**
  - Structural typing: any object with these methods is a DataProvider.
  - Test doubles are trivial (InMemoryDataProvider is a few dictionaries).
  - Vendors, databases, or CSV trees plug in without touching engine code.

**Data consistency guarantees** every provider MUST honour:
  1. Canonical bar schema columns (timestamp, open_price, high_price,
     low_price, closing_price, volume).
  2. Timezone-naive UTC timestamps in strictly increasing order.
  3. Only rows inside the requested [start, end] range (inclusive).
  4. Missing days are allowed; invented days are not.
  5. Unknown symbols raise DataUnavailableError (not KeyError, not an
     empty frame) so callers can tell "no such symbol" from "no bars in range".
"""

from typing import Dict, List, Optional, Protocol

import pandas as pd


class DataProvider(Protocol):
    """
    Protocol for supplying historical bars and fundamentals to the engine.
    """

    def fetch_daily_bars(
        self,
        symbol: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> pd.DataFrame:
        """
        Return daily bars for `symbol` with start <= timestamp <= end.

        Returns:
            Price frame in the canonical schema, oldest first. May be empty
            when the symbol exists but has no bars in range.

        Raises:
            DataUnavailableError: If the provider does not know the symbol.
        """
        ...

    def fetch_fundamentals(
        self,
        symbol: str,
        as_of: pd.Timestamp,
    ) -> Optional[Dict[str, float]]:
        """
        Return the fundamentals snapshot known as of `as_of`, or None.

        Keys are fundamental field names (pe_ratio, pb_ratio, roe, ...).
        """
        ...

    def list_symbols(self) -> List[str]:
        """Return every symbol the provider can serve, sorted."""
        ...
