# archetype_match/_singletons.py
from functools import lru_cache

from loguru import logger
from qdrant_client import QdrantClient

from . import config
from .cnn_gate import load_session
from .embedding import ImageEmbedder
from .identify import IdentificationPipeline
from .rerank import HttpHeadScorer
from .vector_index import FaissVectorIndex, QdrantVectorIndex, VectorIndexError

@lru_cache(maxsize=1)
def get_qdrant_client():
    if not config.QDRANT_URL:
        raise VectorIndexError("QDRANT_URL environment variable is not set.")
    if not config.QDRANT_API_KEY:
        logger.warning("QDRANT_API_KEY is not set; connecting without authentication")
    return QdrantClient(
        url=config.QDRANT_URL,
        api_key=config.QDRANT_API_KEY or None,
        timeout=int(config.QDRANT_TIMEOUT),
    )

@lru_cache(maxsize=1)
def get_vector_index():
    if config.VECTOR_BACKEND == "faiss":
        return FaissVectorIndex.load()
    return QdrantVectorIndex(get_qdrant_client())

@lru_cache(maxsize=1)
def get_embedder():
    return ImageEmbedder()

@lru_cache(maxsize=1)
def get_head_scorer():
    # None disables head refinement
    if not config.APPLY_XGBOOST_OPTIMIZATION:
        return None
    if not config.XGBOOST_SCORE_API_URL.startswith("http"):
        logger.warning("XGBOOST_SCORE_API_URL is not an http(s) URL; head refinement disabled")
        return None
    return HttpHeadScorer(config.XGBOOST_SCORE_API_URL)

@lru_cache(maxsize=1)
def get_cnn_session():
    return load_session(config.CNN_MODEL_PATH)

@lru_cache(maxsize=1)
def get_pipeline():
    return IdentificationPipeline(
        get_vector_index(),
        head_scorer=get_head_scorer(),
        embedder=get_embedder(),
    )
