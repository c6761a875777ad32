"""
Order, trade, and portfolio models plus the portfolio simulator.

Implements integer-share fills, commission, slippage, and long-only
accounting for backtests.
"""
