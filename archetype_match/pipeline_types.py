"""Typed containers shared across pipeline modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List

import numpy as np


@dataclass(frozen=True)
class QueryVectorPair:
    """The two unit-length face embeddings of one photographed object."""

    q1: np.ndarray
    q2: np.ndarray

    def __post_init__(self) -> None:
        if self.q1.ndim != 1 or self.q2.ndim != 1:
            raise ValueError("Query vectors must be 1-D")
        if self.q1.shape != self.q2.shape:
            raise ValueError(f"Query vector dims differ: {self.q1.shape} vs {self.q2.shape}")

    @property
    def dim(self) -> int:
        return int(self.q1.shape[0])

    def as_list(self) -> List[np.ndarray]:
        return [self.q1, self.q2]

    def swapped(self) -> "QueryVectorPair":
        return QueryVectorPair(q1=self.q2, q2=self.q1)


@dataclass
class Hit:
    """One nearest-neighbour result from the vector index."""

    item_id: Hashable
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Candidate:
    """
    One archetype under consideration.

    Created by the recall stage; later stages only fill in their own fields.
    """

    item_id: Hashable
    recall_score: float
    recall_rank: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    reference_vectors: List[np.ndarray] = field(default_factory=list)
    bp_best: float = 0.0
    bp_gap: float = 0.0
    fusion_score: float = 0.0
    percentile_score: float = 0.0
