"""
Factor computation, performance metrics, and synthetic data.

Includes the point-in-time factor engine, the metrics calculator for equity
curves and trade logs, and seeded generators for test price paths.
"""
