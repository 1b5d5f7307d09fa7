from __future__ import annotations

"""
Vector index backends for archetype reference vectors.

Every archetype is stored as two points (one per face), each carrying the
archetype id in its payload.  The matcher needs exactly two operations from
a backend, both batched:

* ``search_batch``: nearest neighbours for several query vectors in one call.
* ``fetch_vectors``: all stored reference vectors for a set of archetype ids
  in one call.

Two implementations are provided:

* :class:`QdrantVectorIndex`: the production backend (remote Qdrant).
* :class:`FaissVectorIndex`: an in-process inner-product index, loaded from
  a FAISS file plus a row -> archetype mapping, for local/offline use.
"""

import json
from pathlib import Path
from typing import Any, Dict, Hashable, List, Optional, Protocol, Sequence

import numpy as np
from loguru import logger
from qdrant_client import models

from .config import (
    ANN_OVERFETCH_SIZE,
    ARCHETYPE_ID_FIELD,
    FAISS_INDEX_PATH,
    IDS_MAPPING_PATH,
    QDRANT_COLLECTION,
    QDRANT_VECTOR_NAME,
)
from .pipeline_types import Hit


class VectorIndexError(RuntimeError):
    """The vector index is unreachable or misconfigured."""


class VectorIndex(Protocol):
    """Interface the pipeline relies on."""

    def search_batch(self, vectors: Sequence[np.ndarray], limit: int) -> List[List[Hit]]:
        ...

    def fetch_vectors(self, item_ids: Sequence[Hashable]) -> Dict[Hashable, List[np.ndarray]]:
        ...


# -------------------------------------------------------------------
# Qdrant
# -------------------------------------------------------------------

class QdrantVectorIndex:
    """Qdrant-backed index; ``client`` is a shared ``QdrantClient``."""

    def __init__(
        self,
        client,
        collection: str = QDRANT_COLLECTION,
        id_field: str = ARCHETYPE_ID_FIELD,
        hnsw_ef: int = ANN_OVERFETCH_SIZE,
        vector_name: str = QDRANT_VECTOR_NAME,
    ) -> None:
        if not collection:
            raise VectorIndexError("QDRANT_COLLECTION environment variable is not set.")
        self._client = client
        self._collection = collection
        self._id_field = id_field
        self._hnsw_ef = hnsw_ef
        self._vector_name = vector_name or None

    def _point_vector(self, vector: Any) -> Optional[np.ndarray]:
        if vector is None:
            return None
        if isinstance(vector, dict):
            if self._vector_name is None:
                if len(vector) != 1:
                    return None
                vector = next(iter(vector.values()))
            else:
                vector = vector.get(self._vector_name)
                if vector is None:
                    return None
        return np.asarray(vector, dtype="float32")

    def search_batch(self, vectors: Sequence[np.ndarray], limit: int) -> List[List[Hit]]:
        requests = [
            models.QueryRequest(
                query=np.asarray(v, dtype="float32").tolist(),
                using=self._vector_name,
                limit=limit,
                with_payload=True,
                with_vector=False,
                params=models.SearchParams(hnsw_ef=self._hnsw_ef),
            )
            for v in vectors
        ]
        try:
            responses = self._client.query_batch_points(
                collection_name=self._collection,
                requests=requests,
            )
        except Exception as e:
            raise VectorIndexError(f"Qdrant batch search failed: {e}") from e

        out: List[List[Hit]] = []
        for resp in responses:
            hits: List[Hit] = []
            for point in getattr(resp, "points", None) or []:
                payload = point.payload or {}
                hits.append(Hit(item_id=payload.get(self._id_field), score=point.score, payload=payload))
            out.append(hits)
        return out

    def fetch_vectors(self, item_ids: Sequence[Hashable]) -> Dict[Hashable, List[np.ndarray]]:
        ids = list(item_ids)
        if not ids:
            return {}
        try:
            points, _ = self._client.scroll(
                collection_name=self._collection,
                scroll_filter=models.Filter(
                    must=[
                        models.FieldCondition(
                            key=self._id_field,
                            match=models.MatchAny(any=ids),
                        )
                    ]
                ),
                limit=len(ids) * 2,
                with_payload=True,
                with_vectors=True,
            )
        except Exception as e:
            raise VectorIndexError(f"Qdrant vector fetch failed: {e}") from e

        vec_map: Dict[Hashable, List[np.ndarray]] = {}
        for p in points:
            item_id = (p.payload or {}).get(self._id_field)
            vec = self._point_vector(p.vector)
            if item_id is None or vec is None:
                continue
            vec_map.setdefault(item_id, []).append(vec)
        logger.debug("fetch_vectors: {} ids -> {} points", len(ids), len(points))
        return vec_map


# -------------------------------------------------------------------
# FAISS (local)
# -------------------------------------------------------------------

class FaissVectorIndex:
    """
    Inner-product FAISS index over L2-normalised reference vectors.

    Row ``i`` of the FAISS index belongs to ``rows[i]["item_id"]``; the
    row's ``payload`` is returned with search hits.
    """

    def __init__(self, index, rows: List[Dict[str, Any]]) -> None:
        if index.ntotal != len(rows):
            raise VectorIndexError(
                f"FAISS rows ({index.ntotal}) != mapping rows ({len(rows)}). Rebuild the index."
            )
        self._index = index
        self._rows = rows
        self._rows_by_id: Dict[Hashable, List[int]] = {}
        for i, row in enumerate(rows):
            self._rows_by_id.setdefault(row["item_id"], []).append(i)

    @classmethod
    def from_arrays(
        cls,
        vectors: np.ndarray,
        item_ids: Sequence[Hashable],
        payloads: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> "FaissVectorIndex":
        import faiss

        emb = np.array(vectors, dtype="float32", order="C")  # copy; normalize_L2 works in place
        if emb.ndim != 2:
            raise ValueError(f"Reference vectors must be 2D (N,D). Got {emb.shape}.")
        if len(item_ids) != emb.shape[0]:
            raise ValueError(f"{len(item_ids)} ids for {emb.shape[0]} vectors")
        faiss.normalize_L2(emb)
        index = faiss.IndexFlatIP(emb.shape[1])
        index.add(emb)

        payloads = payloads or [{} for _ in item_ids]
        rows = [{"item_id": iid, "payload": dict(p)} for iid, p in zip(item_ids, payloads)]
        logger.info("Built FAISS IndexFlatIP: rows={} dim={}", emb.shape[0], emb.shape[1])
        return cls(index, rows)

    @classmethod
    def load(
        cls,
        faiss_index_path: Path = FAISS_INDEX_PATH,
        ids_mapping_path: Path = IDS_MAPPING_PATH,
    ) -> "FaissVectorIndex":
        import faiss

        if not faiss_index_path.exists():
            raise VectorIndexError(f"FAISS index not found at {faiss_index_path}.")
        if not ids_mapping_path.exists():
            raise VectorIndexError(f"IDs mapping not found at {ids_mapping_path}.")

        index = faiss.read_index(str(faiss_index_path))
        with ids_mapping_path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        rows = [r if isinstance(r, dict) else {"item_id": r, "payload": {}} for r in raw]
        for r in rows:
            r.setdefault("payload", {})
        logger.info("Loaded FAISS index from {} ({} rows)", faiss_index_path, index.ntotal)
        return cls(index, rows)

    def search_batch(self, vectors: Sequence[np.ndarray], limit: int) -> List[List[Hit]]:
        if not len(vectors):
            return []
        if limit <= 0 or self._index.ntotal == 0:
            return [[] for _ in vectors]
        queries = np.ascontiguousarray(np.stack([np.asarray(v, dtype="float32") for v in vectors]))
        D, I = self._index.search(queries, min(limit, self._index.ntotal))
        out: List[List[Hit]] = []
        for dists, idxs in zip(D, I):
            hits: List[Hit] = []
            for dist, idx in zip(dists, idxs):
                if idx < 0:
                    continue
                row = self._rows[int(idx)]
                hits.append(Hit(item_id=row["item_id"], score=float(dist), payload=row["payload"]))
            out.append(hits)
        return out

    def fetch_vectors(self, item_ids: Sequence[Hashable]) -> Dict[Hashable, List[np.ndarray]]:
        vec_map: Dict[Hashable, List[np.ndarray]] = {}
        for iid in item_ids:
            rows = self._rows_by_id.get(iid)
            if not rows:
                continue
            vec_map[iid] = [np.asarray(self._index.reconstruct(r), dtype="float32") for r in rows]
        return vec_map
