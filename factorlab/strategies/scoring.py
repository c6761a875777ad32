"""
Composite weighted-criteria scoring shared by the evaluator and the screener.

**Conceptual**: Raw factor values live on incompatible scales (momentum in
percent, P/E as a ratio, RSI on 0-100), and some are better when low. Before
weighting, each criterion is turned into a cross-sectional percentile over
the symbols being compared, oriented so that "better" is always higher.

**Mathematical**: For criterion c over the candidate set S (|S| = n):
    pct_c(s) = |{t in S : v_t <= v_s}| / n * 100      (higher is better)
    pct_c(s) = |{t in S : v_t >= v_s}| / n * 100      (lower is better)
    contrib_c(s) = w_c * pct_c(s) / 100   if v_s is inside c's band, else 0
    score(s) = sum over c of contrib_c(s)

The percentile is always in (0, 100], since a symbol is always counted
against itself. A single candidate scores its full weights. Tied values
share a percentile.

**Selection rules**:
  - Only symbols with every criterion's factor available are candidates.
  - A band violation zeroes that criterion's contribution only.
  - A candidate is excluded when every contribution is <= 0, i.e. it
    violated every band (or every weight that applies is zero).
  - With no criteria at all, every candidate qualifies with score 0.
  - Order: descending score, ties by symbol (lexical), so results never
    depend on dict or thread ordering.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

import numpy as np

from factorlab.analytics.factors import FactorSnapshot
from factorlab.strategies.base import FactorCriterion


@dataclass
class ScoredSymbol:
    """
    Composite score for one symbol.

    Attributes:
        symbol: Instrument symbol.
        score: Sum of criterion contributions.
        contributions: Mapping criterion name -> contribution.
    """
    symbol: str
    score: float
    contributions: Dict[str, float] = field(default_factory=dict)


def _percentiles(values: np.ndarray, prefers_higher: bool) -> np.ndarray:
    """Oriented cross-sectional percentile of every element, in (0, 100]."""
    if prefers_higher:
        counts = (values[None, :] <= values[:, None]).sum(axis=1)
    else:
        counts = (values[None, :] >= values[:, None]).sum(axis=1)
    return counts / len(values) * 100.0


def score_snapshots(
    snapshots: Mapping[str, FactorSnapshot],
    criteria: Sequence[FactorCriterion],
) -> List[ScoredSymbol]:
    """
    Score and rank symbols by weighted factor criteria.

    Args:
        snapshots: Mapping symbol -> FactorSnapshot (same as-of time).
        criteria: Criteria to apply (may be empty).

    Returns:
        Qualifying symbols, best first (descending score, then symbol).
    """
    required = [criterion.name for criterion in criteria]
    candidates = sorted(
        symbol for symbol, snapshot in snapshots.items()
        if snapshot.has_all(required)
    )
    if not candidates:
        return []

    contributions: Dict[str, Dict[str, float]] = {symbol: {} for symbol in candidates}
    for criterion in criteria:
        raw = np.array([snapshots[s].get(criterion.name) for s in candidates], dtype=float)
        pct = _percentiles(raw, criterion.prefers_higher)
        for symbol, value, percentile in zip(candidates, raw, pct):
            if criterion.in_band(float(value)):
                contribution = criterion.weight * float(percentile) / 100.0
            else:
                contribution = 0.0
            # Criteria naming the same factor twice accumulate
            contributions[symbol][criterion.name] = (
                contributions[symbol].get(criterion.name, 0.0) + contribution
            )

    scored = []
    for symbol in candidates:
        parts = contributions[symbol]
        if criteria and all(value <= 0 for value in parts.values()):
            continue
        scored.append(ScoredSymbol(symbol=symbol, score=sum(parts.values()), contributions=parts))

    scored.sort(key=lambda item: (-item.score, item.symbol))
    return scored
