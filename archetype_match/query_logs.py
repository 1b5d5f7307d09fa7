from __future__ import annotations

"""
Structured per-query logging.

Every candidate of a query becomes one row carrying the features the
external point-scorer is trained on (recall score and rank, bipartite
features) plus a 0/1 label against a known ground-truth archetype. Rows
are written through loguru as a single JSON line so a log sink can pick
them up by ``log_tag``; ``load_log_rows`` reads such files back into a
DataFrame.
"""

import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from loguru import logger

from .config import LOG_TAG
from .pipeline_types import Candidate

LOG_COLUMNS = [
    "log_tag",
    "ts",
    "query_id",
    "gt_id",
    "is_image_normalized",
    "candidate_id",
    "final_score",
    "final_rank",
    "numista_id",
    "ann_rank",
    "ann_score",
    "bp_best",
    "bp_gap",
    "label",
]


def catalog_number(payload: Dict[str, Any]) -> Optional[str]:
    """Catalog item number ("N# 123") stored on an archetype payload, if any."""
    details = (payload or {}).get("archetypeDetails") or {}
    if not isinstance(details, dict):
        return None
    num = details.get("numistaItemNumber")
    return str(num) if num is not None else None


def build_log_rows(
    query_id: str,
    gt_id: Optional[str],
    is_image_normalized: bool,
    candidates: Sequence[Candidate],
    ts: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    One row per candidate, in recall order.

    ``final_rank`` is the 1-based position by fusion score; ``label`` is 1
    only for the ground-truth archetype.
    """
    ts = int(time.time() * 1000) if ts is None else ts
    by_final = sorted(candidates, key=lambda c: (-c.fusion_score, str(c.item_id)))
    final_rank = {str(c.item_id): i for i, c in enumerate(by_final, start=1)}
    gt = str(gt_id) if gt_id is not None else None

    rows: List[Dict[str, Any]] = []
    for c in sorted(candidates, key=lambda c: c.recall_rank):
        cid = str(c.item_id)
        rows.append({
            "log_tag": LOG_TAG,
            "ts": ts,
            "query_id": query_id,
            "gt_id": gt,
            "is_image_normalized": bool(is_image_normalized),
            "candidate_id": cid,
            "final_score": float(c.fusion_score),
            "final_rank": final_rank[cid],
            "numista_id": catalog_number(c.payload),
            "ann_rank": int(c.recall_rank),
            "ann_score": float(c.recall_score),
            "bp_best": float(c.bp_best),
            "bp_gap": float(c.bp_gap),
            "label": 1 if gt is not None and cid == gt else 0,
        })
    return rows


def log_query(
    query_id: str,
    gt_id: Optional[str],
    is_image_normalized: bool,
    candidates: Sequence[Candidate],
) -> List[Dict[str, Any]]:
    rows = build_log_rows(query_id, gt_id, is_image_normalized, candidates)
    # one JSON array per query; opt() keeps loguru from formatting the braces
    logger.opt(raw=True).info(json.dumps(rows) + "\n")
    return rows


def _rows_from_line(line: str) -> List[Dict[str, Any]]:
    line = line.strip()
    start = line.find("[")
    if start < 0:
        return []
    try:
        parsed = json.loads(line[start:])
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []
    return [r for r in parsed if isinstance(r, dict) and r.get("log_tag") == LOG_TAG]


def load_log_rows(path: Path) -> pd.DataFrame:
    """
    Parse a log file into a frame with ``LOG_COLUMNS``.

    Lines that are not query-log arrays (ordinary log output) are skipped,
    so a raw service log can be fed in directly.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            rows.extend(_rows_from_line(line))

    df = pd.DataFrame(rows, columns=LOG_COLUMNS)
    logger.info("Loaded {} query-log rows ({} queries) from {}", len(df), df["query_id"].nunique(), path)
    return df
