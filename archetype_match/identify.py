from __future__ import annotations

"""
End-to-end archetype identification.

    photos -> embed -> recall (both faces) -> bipartite features
           -> fusion ranking -> percentiles -> head (top N) -> optional refine

Required stages (embedding, index search, reference-vector fetch) raise;
the refiner is optional and degrades to the unrefined head.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

from loguru import logger

from .bipartite import add_bipartite_scores
from .config import (
    ANN_RECALL_SIZE,
    LOG_TIMERS,
    RECALL_TRIM_SIZE,
    TOP_N,
    XGBOOST_EXTRA_CANDIDATES_SIZE,
)
from .embedding import ImageEmbedder
from .fusion import FusionWeights, rank_by_fusion
from .percentile import assign_percentiles
from .pipeline_types import Candidate, QueryVectorPair
from .query_logs import catalog_number
from .recall import aggregate_recall
from .rerank import HeadScorer, refine_head
from .vector_index import VectorIndex


@dataclass
class IdentificationResult:
    recall: List[Candidate]   # recall order
    ranked: List[Candidate]   # fusion order, full list
    head: List[Candidate]     # final top N
    ranks: Optional[Dict[str, int]] = None
    timings: Dict[str, float] = field(default_factory=dict)


@contextmanager
def _stage(name: str, timings: Dict[str, float]) -> Iterator[None]:
    t0 = time.perf_counter()
    try:
        yield
    finally:
        timings[name] = (time.perf_counter() - t0) * 1000.0
        if LOG_TIMERS:
            logger.info("[timer] {}: {:.1f} ms", name, timings[name])


def _rank_of(candidates: Sequence[Candidate], number: str) -> int:
    for i, c in enumerate(candidates, start=1):
        if catalog_number(c.payload) == number:
            return i
    return 0


def ground_truth_ranks(
    recall: Sequence[Candidate],
    ranked: Sequence[Candidate],
    item_number: str,
) -> Dict[str, int]:
    """
    Where a known catalog item ("N# 123" or bare "123") landed, 1-based,
    in recall order and in fused order. 0 when it was not retrieved.
    """
    raw = str(item_number).strip()
    number = raw if raw.startswith("N# ") else f"N# {raw}"
    return {
        "ann_rank": _rank_of(recall, number),
        "final_rank": _rank_of(ranked, number),
    }


class IdentificationPipeline:
    """
    Holds the shared collaborators; one instance serves all requests.
    """

    def __init__(
        self,
        index: VectorIndex,
        head_scorer: Optional[HeadScorer] = None,
        embedder: Optional[ImageEmbedder] = None,
        *,
        search_limit: int = ANN_RECALL_SIZE,
        recall_size: Optional[int] = RECALL_TRIM_SIZE,
        top_n: int = TOP_N,
        extra_candidates: int = XGBOOST_EXTRA_CANDIDATES_SIZE,
        weights: Optional[FusionWeights] = None,
    ) -> None:
        self.index = index
        self.head_scorer = head_scorer
        self.embedder = embedder
        self.search_limit = search_limit
        self.recall_size = recall_size
        self.top_n = top_n
        self.extra_candidates = extra_candidates
        self.weights = weights or FusionWeights()

    def run(self, pair: QueryVectorPair, ground_truth: Optional[str] = None) -> IdentificationResult:
        timings: Dict[str, float] = {}

        with _stage("recall", timings):
            recall = aggregate_recall(
                self.index, pair, limit=self.search_limit, recall_size=self.recall_size
            )

        with _stage("bipartite", timings):
            add_bipartite_scores(recall, pair, self.index)

        with _stage("fusion", timings):
            ranked = rank_by_fusion(recall, self.weights)
            assign_percentiles(ranked)

        with _stage("refine", timings):
            head = refine_head(
                ranked, self.top_n, self.head_scorer, extra_candidates=self.extra_candidates
            )

        ranks = None
        if ground_truth:
            ranks = ground_truth_ranks(recall, ranked, ground_truth)
            logger.info(
                "Ground truth {}: ann_rank={} final_rank={}",
                ground_truth, ranks["ann_rank"], ranks["final_rank"],
            )

        logger.info("Identification: {} candidates, head of {}", len(ranked), len(head))
        return IdentificationResult(recall=recall, ranked=ranked, head=head, ranks=ranks, timings=timings)

    def identify(self, images: Sequence[bytes], ground_truth: Optional[str] = None) -> IdentificationResult:
        if self.embedder is None:
            raise RuntimeError("IdentificationPipeline has no embedder configured")
        timings: Dict[str, float] = {}
        with _stage("embed", timings):
            pair = self.embedder.embed(images)
        result = self.run(pair, ground_truth=ground_truth)
        result.timings = {**timings, **result.timings}
        return result
