from __future__ import annotations

"""
Image embedding for query photos.

Wraps a HuggingFace ``image-feature-extraction`` pipeline (DINOv2 by
default).  Each photo is decoded with Pillow, the CLS token of the last
hidden state is taken as the image vector and L2-normalised, so dot
products downstream are cosine similarities.
"""

import io
import os
from typing import List, Optional, Sequence

import numpy as np
from loguru import logger
from PIL import Image
from transformers import pipeline

from .config import EMBED_DIM, EMBED_MODEL, HF_ENV_VARS
from .pipeline_types import QueryVectorPair


def _ensure_hf_env() -> None:
    """Set HuggingFace cache hints unless the environment already has them."""
    for key, val in HF_ENV_VARS.items():
        if key not in os.environ:
            os.environ[key] = val


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    vec = np.asarray(vec, dtype="float32")
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return vec / norm


def _cls_vector(features) -> np.ndarray:
    """Reduce pipeline output ([1, tokens, dim] / [tokens, dim] / [dim]) to one vector."""
    arr = np.asarray(features, dtype="float32")
    while arr.ndim > 1:
        arr = arr[0]
    return arr


class ImageEmbedder:
    """
    Lazily loads the feature-extraction pipeline on first use.

    ``extractor`` may be injected (any callable taking a list of PIL images
    and returning one feature array per image).
    """

    def __init__(
        self,
        model_name: str = EMBED_MODEL,
        expected_dim: Optional[int] = EMBED_DIM,
        extractor=None,
    ) -> None:
        self.model_name = model_name
        self.expected_dim = expected_dim
        self._extractor = extractor

    @property
    def extractor(self):
        if self._extractor is None:
            _ensure_hf_env()
            logger.info("Loading image feature extractor: {}", self.model_name)
            self._extractor = pipeline("image-feature-extraction", model=self.model_name)
        return self._extractor

    def _decode(self, data: bytes) -> Image.Image:
        return Image.open(io.BytesIO(data)).convert("RGB")

    def embed_images(self, images: Sequence[bytes]) -> List[np.ndarray]:
        pil_images = [self._decode(b) for b in images]
        outputs = self.extractor(pil_images)
        vectors = [l2_normalize(_cls_vector(out)) for out in outputs]
        for v in vectors:
            if self.expected_dim is not None and v.shape[0] != self.expected_dim:
                raise ValueError(
                    f"Embedding dimension {v.shape[0]} != configured EMBED_DIM {self.expected_dim}"
                )
        return vectors

    def embed(self, images: Sequence[bytes]) -> QueryVectorPair:
        """Embed the two faces of one object."""
        if len(images) < 2:
            raise ValueError("Two images are required to build a query vector pair")
        v1, v2 = self.embed_images(list(images[:2]))
        return QueryVectorPair(q1=v1, q2=v2)
