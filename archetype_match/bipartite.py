from __future__ import annotations
"""
Two-sided (bipartite) consistency scoring.

For a candidate with reference vectors (r1, r2) and query vectors (q1, q2)
there are only two one-to-one pairings:

    direct   A = cos(q1, r1) + cos(q2, r2)
    crossed  B = cos(q1, r2) + cos(q2, r1)

bp_best = max(A, B) takes whichever orientation fits (the object may have
been photographed back-first); bp_gap = |A - B| measures how decisive that
orientation is. Both stay on the raw sum-of-two-cosines scale (~[-2, 2]).
"""

from typing import Dict, Hashable, List, Sequence, Tuple

import numpy as np
from loguru import logger

from .pipeline_types import Candidate, QueryVectorPair
from .vector_index import VectorIndex


def cosine(a: np.ndarray, b: np.ndarray) -> float:
    """Dot product; vectors are assumed L2-normalised."""
    return float(np.dot(a, b))


def bipartite_score(pair: QueryVectorPair, r1: np.ndarray, r2: np.ndarray) -> Tuple[float, float]:
    s11 = cosine(pair.q1, r1)
    s12 = cosine(pair.q1, r2)
    s21 = cosine(pair.q2, r1)
    s22 = cosine(pair.q2, r2)

    direct = s11 + s22
    crossed = s12 + s21
    return max(direct, crossed), abs(direct - crossed)


def score_candidate(cand: Candidate, pair: QueryVectorPair) -> None:
    """Fill bp_best / bp_gap from the candidate's reference vectors."""
    refs: Sequence[np.ndarray] = cand.reference_vectors
    if len(refs) != 2:
        cand.bp_best, cand.bp_gap = 0.0, 0.0
        return
    cand.bp_best, cand.bp_gap = bipartite_score(pair, refs[0], refs[1])


def add_bipartite_scores(
    candidates: List[Candidate],
    pair: QueryVectorPair,
    index: VectorIndex,
) -> List[Candidate]:
    """
    Attach reference vectors and consistency features to every candidate.

    Reference vectors come from one batched fetch over all candidate ids.
    A failing fetch propagates: nothing useful can be ranked without it.
    """
    if not candidates:
        return candidates

    vec_map: Dict[Hashable, List[np.ndarray]] = index.fetch_vectors([c.item_id for c in candidates])

    degenerate = 0
    for cand in candidates:
        cand.reference_vectors = list(vec_map.get(cand.item_id, []))
        if len(cand.reference_vectors) != 2:
            degenerate += 1
        score_candidate(cand, pair)

    if degenerate:
        logger.info("add_bipartite_scores: {} of {} candidates lack a front/back pair", degenerate, len(candidates))
    return candidates
