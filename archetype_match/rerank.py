# archetype_match/rerank.py
from __future__ import annotations

import math
from typing import List, Optional, Protocol, Sequence

import httpx
from loguru import logger

from . import config
from .pipeline_types import Candidate


class HeadScorerError(RuntimeError):
    """The external point-scorer failed or returned an unusable payload."""


class HeadScorer(Protocol):
    """Stateless external model scoring one feature row per candidate."""

    def score(self, features: List[List[float]]) -> List[float]:
        ...


# ---------------------------------------------------------------------------
# HTTP point-scorer client
# ---------------------------------------------------------------------------

class HttpHeadScorer:
    """
    POSTs a JSON feature matrix to the scoring service and reads back a
    JSON list of scores, one per row.
    """

    def __init__(
        self,
        url: str = config.XGBOOST_SCORE_API_URL,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(config.HTTP_READ_TIMEOUT, connect=config.HTTP_CONNECT_TIMEOUT),
        )

    def score(self, features: List[List[float]]) -> List[float]:
        r = self._client.post(self.url, json=features)
        if r.status_code >= 400:
            raise HeadScorerError(f"Score API error: {r.status_code} {r.text}")
        try:
            scores = r.json()
        except ValueError as e:
            raise HeadScorerError(f"Score API returned non-JSON body: {e}") from e
        if not isinstance(scores, list) or len(scores) != len(features):
            raise HeadScorerError(
                f"Score API returned {type(scores).__name__} of length "
                f"{len(scores) if isinstance(scores, list) else 'n/a'} for {len(features)} rows"
            )
        return [float(s) for s in scores]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def build_feature_row(c: Candidate) -> List[float]:
    return [float(c.recall_score), float(c.bp_best), float(c.bp_gap)]


def boundary_batch(ranked: Sequence[Candidate], top_n: int, extra_candidates: int) -> List[Candidate]:
    """The current N-th candidate followed by up to ``extra_candidates`` runners-up."""
    if top_n <= 0:
        return []
    return list(ranked[top_n - 1 : top_n + extra_candidates])


# ---------------------------------------------------------------------------
# Main entry
# ---------------------------------------------------------------------------

def refine_head(
    ranked: List[Candidate],
    top_n: int,
    scorer: Optional[HeadScorer],
    extra_candidates: int = config.XGBOOST_EXTRA_CANDIDATES_SIZE,
) -> List[Candidate]:
    """
    Let the external scorer arbitrate the last head slot:
      1) head = ranked[:top_n]
      2) score the boundary batch (N-th + next ``extra_candidates``)
      3) stable sort by external score desc
      4) if the winner is not the current N-th, it takes the N-th slot
    Any scorer failure leaves the head untouched.
    """
    head = list(ranked[:top_n])
    if scorer is None or not head:
        return head

    batch = boundary_batch(ranked, top_n, extra_candidates)
    if len(batch) < 2:
        return head

    try:
        scores = scorer.score([build_feature_row(c) for c in batch])
        if len(scores) != len(batch):
            raise HeadScorerError(f"expected {len(batch)} scores, got {len(scores)}")
        if not all(math.isfinite(float(s)) for s in scores):
            raise HeadScorerError(f"non-finite score in {scores}")
    except Exception as e:
        logger.warning("Head refinement skipped; scorer unavailable: {}", e)
        return head

    order = sorted(range(len(batch)), key=lambda i: -float(scores[i]))
    prospect = batch[order[0]]

    if str(prospect.item_id) != str(head[-1].item_id):
        logger.info(
            "Head refinement: replacing candidate id {} with id {}",
            head[-1].item_id, prospect.item_id,
        )
        head = head[:-1] + [prospect]
    else:
        logger.info("Head refinement: no better candidate found for replacement.")
    return head[:top_n]
