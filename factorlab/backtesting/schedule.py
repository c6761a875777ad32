"""
Rebalance scheduling.

A bar is a rebalance boundary when it is the first trading bar of its
period:
  - daily:     every bar.
  - weekly:    first bar of each ISO week (year, week).
  - monthly:   first bar of each calendar month.
  - quarterly: first bar of each calendar quarter.
  - never:     only the first bar of the run.

The first bar of a run is always a boundary. "First bar on or after each
period start" falls out naturally: a period whose opening days have no bar
(holiday, data gap) starts at whichever bar comes first inside it.
"""

from typing import List, Sequence

import pandas as pd

from factorlab.strategies.base import RebalanceFrequency


def period_key(timestamp: pd.Timestamp, frequency: RebalanceFrequency) -> tuple:
    """Identifier of the period `timestamp` falls in for `frequency`."""
    if frequency == RebalanceFrequency.WEEKLY:
        iso = timestamp.isocalendar()
        return (iso[0], iso[1])
    if frequency == RebalanceFrequency.MONTHLY:
        return (timestamp.year, timestamp.month)
    if frequency == RebalanceFrequency.QUARTERLY:
        return (timestamp.year, (timestamp.month - 1) // 3 + 1)
    if frequency == RebalanceFrequency.DAILY:
        return (timestamp.year, timestamp.month, timestamp.day)
    return ()


def rebalance_flags(
    timestamps: Sequence[pd.Timestamp],
    frequency: RebalanceFrequency,
) -> List[bool]:
    """
    Mark which bars of a run are rebalance boundaries.

    Args:
        timestamps: The run's bar timestamps, strictly increasing.
        frequency: Rebalance cadence.

    Returns:
        One flag per timestamp.
    """
    flags: List[bool] = []
    previous_key = None
    for index, timestamp in enumerate(timestamps):
        if index == 0:
            flags.append(True)
        elif frequency == RebalanceFrequency.DAILY:
            flags.append(True)
        elif frequency == RebalanceFrequency.NEVER:
            flags.append(False)
        else:
            flags.append(period_key(timestamp, frequency) != previous_key)
        previous_key = period_key(timestamp, frequency)
    return flags
