"""
Backtest runner and rebalance scheduling.

Drives factor engine, evaluator, and simulator bar by bar over a date range
and produces an equity curve, trade log, and metrics.
"""
