"""
Service layer over the engine.

Validates caller input, resolves strategies, and runs independent backtests
and screens on bounded thread pools.
"""
