from __future__ import annotations
"""
Recall stage for the archetype matcher.

Both query faces are searched in one batched index call; the two hit lists
are then unioned into a single candidate set keyed by archetype id:

- max-similarity merge (a strong match on either face keeps the archetype)
- stable descending sort, ties keep first-appearance order
- 1-based recall ranks
- optional soft trim to a recall size
"""

import math
from numbers import Real
from typing import Dict, Hashable, Iterable, List, Optional

from loguru import logger

from .config import ANN_RECALL_SIZE, RECALL_TRIM_SIZE
from .pipeline_types import Candidate, Hit, QueryVectorPair
from .vector_index import VectorIndex


# =============================================================================
# Hit validation
# =============================================================================

def _valid_hit(hit: object) -> bool:
    if not isinstance(hit, Hit):
        return False
    if hit.item_id is None or not isinstance(hit.item_id, Hashable):
        return False
    if isinstance(hit.score, bool) or not isinstance(hit.score, Real):
        return False
    return not math.isnan(float(hit.score))


def _iter_hits(hits: Optional[Iterable[Hit]], label: str) -> List[Hit]:
    if hits is None:
        return []
    try:
        raw = list(hits)
    except TypeError:
        logger.warning("Recall: hit set {} is not iterable; treating as empty", label)
        return []
    good = [h for h in raw if _valid_hit(h)]
    if len(good) != len(raw):
        logger.warning("Recall: skipped {} malformed hits in set {}", len(raw) - len(good), label)
    return good


# =============================================================================
# Merge
# =============================================================================

def merge_hits(
    hits_a: Optional[Iterable[Hit]],
    hits_b: Optional[Iterable[Hit]],
    recall_size: Optional[int] = None,
) -> List[Candidate]:
    """
    Union two hit lists by item id and rank the result.

    Duplicate ids keep the maximum similarity (and that hit's payload). The
    sort is stable, so equal scores stay in the order they were first seen,
    set A before set B.
    """
    merged: Dict[object, Candidate] = {}
    for label, hits in (("A", hits_a), ("B", hits_b)):
        for hit in _iter_hits(hits, label):
            score = float(hit.score)
            prev = merged.get(hit.item_id)
            if prev is None:
                merged[hit.item_id] = Candidate(
                    item_id=hit.item_id,
                    recall_score=score,
                    payload=dict(hit.payload or {}),
                )
            elif score > prev.recall_score:
                prev.recall_score = score
                prev.payload = dict(hit.payload or {})

    ranked = sorted(merged.values(), key=lambda c: -c.recall_score)
    for rank, cand in enumerate(ranked, start=1):
        cand.recall_rank = rank

    if recall_size is not None:
        ranked = ranked[: max(0, int(recall_size))]
    return ranked


# =============================================================================
# Public API
# =============================================================================

def aggregate_recall(
    index: VectorIndex,
    pair: QueryVectorPair,
    limit: int = ANN_RECALL_SIZE,
    recall_size: Optional[int] = RECALL_TRIM_SIZE,
) -> List[Candidate]:
    """
    Search both faces in a single batched call and merge the results.
    """
    if recall_size is not None and recall_size <= 0:
        logger.info("aggregate_recall: recall size {} -> no candidates", recall_size)
        return []

    batches = index.search_batch(pair.as_list(), limit)
    batches = list(batches or [])
    hits_a = batches[0] if len(batches) > 0 else None
    hits_b = batches[1] if len(batches) > 1 else None

    candidates = merge_hits(hits_a, hits_b, recall_size=recall_size)
    logger.info("aggregate_recall: {} result sets -> {} candidates", len(batches), len(candidates))
    return candidates
