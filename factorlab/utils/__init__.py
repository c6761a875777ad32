"""
Generic utility functions shared across modules.

Includes time/clock abstractions, numerical helpers for factor maths,
logging setup, and the engine's error classes.
"""
