"""
Data provider interface and concrete providers.

The engine never fetches data itself; it is handed a DataProvider that
returns ordered bar frames and fundamentals snapshots per symbol.
"""
