from __future__ import annotations

"""
Approximate display percentiles for fused scores.

The percentile of a score is read off a normal distribution fitted to the
current result set (population mean / std). It is only shown to users and
never feeds back into ranking.
"""

import math
from typing import List, Optional, Sequence

from .pipeline_types import Candidate


def normal_cdf(z: float) -> float:
    """Abramowitz & Stegun 26.2.17 approximation of the standard normal CDF."""
    t = 1.0 / (1.0 + 0.2316419 * abs(z))
    d = 0.3989423 * math.exp(-z * z / 2.0)
    p = d * t * (
        0.3193815
        + t * (-0.3565638
        + t * (1.781478
        + t * (-1.821256
        + t * 1.330274)))
    )
    return 1.0 - p if z > 0 else p


def compute_percentile(score: float, universe: Sequence[float]) -> float:
    if not universe or max(universe) == min(universe):
        return 50.0
    n = len(universe)
    mu = sum(universe) / n
    sigma = math.sqrt(sum((x - mu) ** 2 for x in universe) / n)
    if sigma == 0:
        return 50.0
    z = (score - mu) / sigma
    return max(0.0, min(100.0, normal_cdf(z) * 100.0))


def assign_percentiles(
    candidates: List[Candidate],
    population: Optional[Sequence[Candidate]] = None,
) -> List[Candidate]:
    """
    Set ``percentile_score`` on each candidate.

    ``population`` defaults to ``candidates`` itself; callers pass the full
    post-fusion list here so trimmed heads keep the same percentiles.
    """
    universe = [c.fusion_score for c in (population if population is not None else candidates)]
    for c in candidates:
        c.percentile_score = compute_percentile(c.fusion_score, universe)
    return candidates
