# archetype_match/eval.py
from __future__ import annotations

import argparse
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

import pandas as pd

from .query_logs import load_log_rows

# ---------- per-query ground-truth ranks ----------

def query_ranks(frame: pd.DataFrame) -> pd.DataFrame:
    """
    One row per logged query with the 1-based rank of the ground-truth
    archetype in recall order (``ann_rank``) and fusion order
    (``final_rank``). 0 means the ground truth was not retrieved.
    """
    if frame.empty:
        return pd.DataFrame(columns=["query_id", "ann_rank", "final_rank"])

    labelled = frame[frame["gt_id"].notna()]
    queries = labelled["query_id"].drop_duplicates()
    hits = (
        labelled[labelled["label"] == 1]
        .drop_duplicates("query_id")
        .set_index("query_id")[["ann_rank", "final_rank"]]
    )
    out = hits.reindex(pd.Index(queries, name="query_id")).fillna(0).astype(int)
    return out.reset_index()

# ---------- metrics ----------

def recall_at_k(ranks: Iterable[int], k: int) -> float:
    """Fraction of queries whose ground truth sits within the top ``k``."""
    ranks = [int(r) for r in ranks]
    if not ranks:
        return 0.0
    hits = sum(1 for r in ranks if 1 <= r <= k)
    return hits / float(len(ranks))

def evaluate(frame: pd.DataFrame, ks: Sequence[int] = (1, 5, 10)) -> Dict[str, Dict[int, float]]:
    """
    Recall@k of the ground truth for plain recall order vs fused order.
    """
    per_query = query_ranks(frame)
    return {
        "recall": {k: recall_at_k(per_query["ann_rank"], k) for k in ks},
        "fusion": {k: recall_at_k(per_query["final_rank"], k) for k in ks},
    }

# ---------- CLI ----------

def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser()
    ap.add_argument("--logs", type=Path, required=True,
                    help="Service log file containing query-log JSON lines")
    ap.add_argument("--k", type=int, nargs="+", default=[1, 5, 10])
    args = ap.parse_args(argv)

    frame = load_log_rows(args.logs)
    n_queries = len(query_ranks(frame))
    scores = evaluate(frame, ks=args.k)

    print(f"Queries: {n_queries}")
    for k in args.k:
        print(f"Recall@{k}: ann={scores['recall'][k]:.4f}  fused={scores['fusion'][k]:.4f}")

if __name__ == "__main__":
    main()
