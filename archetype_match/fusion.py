from __future__ import annotations

from dataclasses import dataclass
from typing import List

from .config import (
    FUSION_W_BP_BEST,
    FUSION_W_BP_GAP,
    FUSION_W_RANK_BONUS,
    FUSION_W_RECALL,
)
from .pipeline_types import Candidate


@dataclass
class FusionWeights:
    """Linear weights for the fused ranking key."""

    recall: float = FUSION_W_RECALL
    rank_bonus: float = FUSION_W_RANK_BONUS
    bp_best: float = FUSION_W_BP_BEST
    bp_gap: float = FUSION_W_BP_GAP


def fusion_score(c: Candidate, weights: FusionWeights) -> float:
    rank_bonus = 1.0 / (1 + c.recall_rank)
    return (
        weights.recall * c.recall_score
        + weights.rank_bonus * rank_bonus
        + weights.bp_best * c.bp_best
        + weights.bp_gap * c.bp_gap
    )


def rank_by_fusion(candidates: List[Candidate], weights: FusionWeights | None = None) -> List[Candidate]:
    """
    Score every candidate and return a new list sorted by fusion score.

    Ties are broken by item id so the order never depends on input order.
    """
    weights = weights or FusionWeights()
    for c in candidates:
        c.fusion_score = fusion_score(c, weights)
    return sorted(candidates, key=lambda c: (-c.fusion_score, str(c.item_id)))
