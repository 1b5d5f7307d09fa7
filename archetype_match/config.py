from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


# ---------------------------
# Paths
# ---------------------------

PROJECT_ROOT = Path(__file__).resolve().parents[1]

INDICES_DIR = PROJECT_ROOT / "indices"
FAISS_INDEX_PATH = Path(os.getenv("FAISS_INDEX_PATH", str(INDICES_DIR / "archetypes.faiss")))
IDS_MAPPING_PATH = Path(os.getenv("IDS_MAPPING_PATH", str(INDICES_DIR / "archetype_ids.json")))

MODELS_DIR = PROJECT_ROOT / "models"  # HF cache mount point


# ---------------------------
# Vector index
# ---------------------------

VECTOR_BACKEND = os.getenv("VECTOR_BACKEND", "qdrant")  # "qdrant" | "faiss"

QDRANT_URL = os.getenv("QDRANT_URL", "")
QDRANT_API_KEY = os.getenv("QDRANT_API_KEY", "")
QDRANT_COLLECTION = os.getenv("QDRANT_COLLECTION", "")
QDRANT_TIMEOUT = float(os.getenv("QDRANT_TIMEOUT", "30"))
QDRANT_VECTOR_NAME = os.getenv("QDRANT_VECTOR_NAME", "")  # empty = default unnamed vector

# payload field holding the archetype id on every stored reference point
ARCHETYPE_ID_FIELD = os.getenv("ARCHETYPE_ID_FIELD", "archetypeId")


# ---------------------------
# Recall & ranking
# ---------------------------

ANN_RECALL_SIZE = int(os.getenv("ANN_RECALL_SIZE", "300"))        # hits per query vector
ANN_OVERFETCH_SIZE = int(os.getenv("ANN_OVERFETCH_SIZE", "1000"))  # hnsw_ef
RECALL_TRIM_SIZE = _env_optional_int("RECALL_TRIM_SIZE")          # None = keep full union

TOP_N = int(os.getenv("TOP_N", "5"))

# Fusion weights (bp_best is a sum of two cosines, so 0.6 here outweighs 0.8 on recall)
FUSION_W_RECALL = float(os.getenv("FUSION_W_RECALL", "0.8"))
FUSION_W_RANK_BONUS = float(os.getenv("FUSION_W_RANK_BONUS", "0.3"))
FUSION_W_BP_BEST = float(os.getenv("FUSION_W_BP_BEST", "0.6"))
FUSION_W_BP_GAP = float(os.getenv("FUSION_W_BP_GAP", "0.15"))


# ---------------------------
# Head refinement (external point-scorer)
# ---------------------------

APPLY_XGBOOST_OPTIMIZATION = _env_flag("APPLY_XGBOOST_OPTIMIZATION")
XGBOOST_SCORE_API_URL = os.getenv("XGBOOST_SCORE_API_URL", "http://localhost:5000/score")
XGBOOST_EXTRA_CANDIDATES_SIZE = int(os.getenv("XGBOOST_EXTRA_CANDIDATES_SIZE", "5"))


# ---------------------------
# Embedding model
# ---------------------------

EMBED_MODEL = os.getenv("EMBED_MODEL", "facebook/dinov2-small")
EMBED_DIM = int(os.getenv("EMBED_DIM", "384"))

HF_ENV_VARS = {
    "HF_HOME": str(MODELS_DIR),
}


# ---------------------------
# LLM validity gate
# ---------------------------

LLM_GATE_ENABLED = _env_flag("LLM_GATE_ENABLED")
LLM_GATE_API_URL = os.getenv(
    "LLM_GATE_API_URL",
    "https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
)
LLM_GATE_API_KEY = os.getenv("LLM_GATE_API_KEY", "")
LLM_GATE_MODEL = os.getenv("LLM_GATE_MODEL", "gemini-2.0-flash-lite")


# ---------------------------
# CNN banknote-classifier gate
# ---------------------------

CNN_GATE_ENABLED = _env_flag("CNN_GATE_ENABLED")
CNN_MODEL_PATH = Path(os.getenv("CNN_MODEL_PATH", str(MODELS_DIR / "banknote-classifier.model.onnx")))
CNN_IMG_SIZE = 224
CNN_CONFIDENCE_THRESHOLD = float(os.getenv("CNN_CONFIDENCE_THRESHOLD", "0.8"))
CNN_HIGH_CONFIDENCE_THRESHOLD = 0.985  # lone banknote face must clear this
CNN_INTRA_OP_THREADS = int(os.getenv("CNN_INTRA_OP_THREADS", "4"))


# ---------------------------
# Object storage
# ---------------------------

S3_UPLOAD_ENABLED = _env_flag("S3_UPLOAD_ENABLED")
AWS_S3_BUCKET_NAME = os.getenv("AWS_S3_BUCKET_NAME", "example-bucket")
AWS_REGION = os.getenv("AWS_REGION", "us-west-2")
UPLOAD_KEY_LENGTH = 11

ARCHETYPE_IMAGES_BASE_URL = os.getenv(
    "ARCHETYPE_IMAGES_BASE_URL",
    "https://example-archetype-images.s3.us-west-2.amazonaws.com/banknotes",
)


# ---------------------------
# Upload validation
# ---------------------------

ALLOWED_MIMETYPES = ["image/jpeg", "image/png", "image/webp"]
MAX_FILE_SIZE = 5 * 1024 * 1024  # 5 MB


# ---------------------------
# HTTP hardening (scorer / gate)
# ---------------------------

HTTP_CONNECT_TIMEOUT = float(os.getenv("HTTP_CONNECT_TIMEOUT", "3.0"))
HTTP_READ_TIMEOUT = float(os.getenv("HTTP_READ_TIMEOUT", "10.0"))


# ---------------------------
# Request signing
# ---------------------------

HMAC_ENABLED = _env_flag("HMAC_ENABLED")
HMAC_SHARED_SECRET = os.getenv("HMAC_SHARED_SECRET", "")


# ---------------------------
# Logging / observability
# ---------------------------

LOG_TIMERS = _env_flag("LOG_TIMERS")
LOG_QUERY_METRICS = _env_flag("LOG_QUERY_METRICS")
LOG_QUERY_AND_EXIT = _env_flag("LOG_QUERY_AND_EXIT")
LOG_TAG = os.getenv("LOG_TAG", "query_metric")


# ---------------------------
# Pydantic models shared around the app
# ---------------------------

class MatchItem(BaseModel):
    """
    One identified archetype as returned to clients.
    """

    archetype_id: str
    archetype_image_urls: List[str]
    similarity_score: str  # e.g. "87.31%"
    final_score: float
    details: Dict[str, Any] = Field(default_factory=dict)


class MatchData(BaseModel):
    image_urls: List[str]
    matches_found_count: int = Field(ge=0)
    matches: List[MatchItem]
    ranks: Optional[Dict[str, int]] = None


class MatchResponse(BaseModel):
    """
    Response body for POST /match.
    """

    error: bool = False
    data: MatchData


class ErrorResponse(BaseModel):
    error: bool = True
    reason: str
    error_code: Optional[str] = None


class QueryLoggedResponse(BaseModel):
    """
    Response body when the service runs in log-and-exit mode.
    """

    error: bool = False
    query_id: str


class HealthResponse(BaseModel):
    status: str
