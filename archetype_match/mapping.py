from __future__ import annotations
"""
Mapping utilities to convert ranked candidates into API responses.

Centralises how archetype payloads become ``MatchItem`` / ``MatchResponse``
objects: archetype id, catalog details, the two reference image URLs and
the display similarity.
"""

from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from .config import ARCHETYPE_IMAGES_BASE_URL, MatchData, MatchItem, MatchResponse
from .pipeline_types import Candidate
from .query_logs import catalog_number


def _strip_catalog_prefix(number: Optional[str]) -> str:
    """'N# 12345' -> '12345'."""
    if not number:
        return ""
    return str(number).replace("N# ", "").strip()


def archetype_image_urls(payload: Dict[str, Any], base_url: str = ARCHETYPE_IMAGES_BASE_URL) -> List[str]:
    nn = _strip_catalog_prefix(catalog_number(payload))
    if not nn:
        return []
    base = base_url.rstrip("/")
    return [f"{base}/{nn}_A.jpg", f"{base}/{nn}_B.jpg"]


def format_similarity(percentile: float) -> str:
    return f"{percentile:.2f}%"


def format_match(c: Candidate) -> MatchItem:
    payload = c.payload or {}
    details = payload.get("archetypeDetails")
    if not isinstance(details, dict):
        details = {}

    archetype_id = payload.get("archetypeId", c.item_id)
    return MatchItem(
        archetype_id=str(archetype_id),
        archetype_image_urls=archetype_image_urls(payload),
        similarity_score=format_similarity(c.percentile_score),
        final_score=float(c.fusion_score),
        details=dict(details),
    )


def map_head_to_response(
    head: Sequence[Candidate],
    image_urls: Sequence[str],
    matches_found_count: Optional[int] = None,
    ranks: Optional[Dict[str, int]] = None,
) -> MatchResponse:
    """
    Convert the final head into a MatchResponse.

    ``matches_found_count`` is the size of the full ranked list (defaults to
    ``len(head)``).
    """
    items: List[MatchItem] = []
    for c in head:
        try:
            items.append(format_match(c))
        except Exception as e:
            logger.exception("Failed to build MatchItem for id {}: {}", c.item_id, e)

    data = MatchData(
        image_urls=list(image_urls),
        matches_found_count=len(head) if matches_found_count is None else matches_found_count,
        matches=items,
        ranks=ranks,
    )
    logger.info("Mapped {} matches into API schema", len(items))
    return MatchResponse(data=data)
