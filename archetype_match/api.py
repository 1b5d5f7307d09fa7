from __future__ import annotations

"""
FastAPI application for the archetype matcher.

- POST /match takes the two face photos of one object (multipart ``images``)
- the LLM validity gate (optional) and identification run concurrently;
  a gate rejection discards the identification result
- uploads get S3 permalinks up front; the actual upload runs in the background
- query-log mode writes training rows for a known ground truth (``gtid``)
"""

import asyncio
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config
from .auth import require_signature
from .config import ErrorResponse, HealthResponse, QueryLoggedResponse
from .cnn_gate import cnn_gate
from .gating import GateVerdict, validate_images
from .identify import IdentificationResult
from .mapping import map_head_to_response
from .query_logs import log_query
from .storage import UploadedImage, assign_upload_keys, new_upload_key, upload_images
from ._singletons import get_cnn_session, get_embedder, get_pipeline


# -----------------------
# Stage entry points (patched in tests)
# -----------------------

def identify_images(uploads: List[UploadedImage], ground_truth: Optional[str] = None) -> IdentificationResult:
    return get_pipeline().identify([u.data for u in uploads], ground_truth=ground_truth)


def classify_images(uploads: List[UploadedImage]) -> bool:
    return cnn_gate([u.data for u in uploads], get_cnn_session())


def gate_images(uploads: List[UploadedImage]) -> Optional[GateVerdict]:
    # local classifier first; the LLM is only asked when it passes
    if config.CNN_GATE_ENABLED and not classify_images(uploads):
        return GateVerdict(error=True, error_code="E001", reason="Images do not appear to show a banknote")
    if not config.LLM_GATE_ENABLED:
        return None
    return validate_images(uploads)


# -----------------------
# Upload validation
# -----------------------

def _error(status_code: int, reason: str, error_code: Optional[str] = None) -> JSONResponse:
    body = ErrorResponse(reason=reason, error_code=error_code)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


async def _read_uploads(files: Optional[List[UploadFile]]) -> List[UploadedImage]:
    if not files or len(files) != 2:
        raise HTTPException(status_code=400, detail="Two input files are required for matching")

    uploads: List[UploadedImage] = []
    for f in files:
        name = f.filename or "upload"
        mime = f.content_type or ""
        if mime not in config.ALLOWED_MIMETYPES:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid file type: {name} ({mime}). "
                       f"Allowed types: {', '.join(config.ALLOWED_MIMETYPES)}",
            )
        data = await f.read()
        if len(data) > config.MAX_FILE_SIZE:
            raise HTTPException(
                status_code=400,
                detail=f"File too large: {name} ({len(data) / 1024 / 1024:.2f} MB). Max allowed size is 5MB",
            )
        uploads.append(UploadedImage(filename=name, content_type=mime, data=data))
    return uploads


# -----------------------
# FastAPI app + startup
# -----------------------

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.on_event("startup")
def startup_event() -> None:
    logger.info("Starting app warmup...")
    try:
        get_pipeline()
        get_embedder().extractor
        if config.CNN_GATE_ENABLED:
            get_cnn_session()
    except Exception as e:
        logger.warning("Warmup partial failure: {}", e)
    logger.info("Warmup complete.")


@app.api_route("/health", methods=["GET", "POST"], response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok")


@app.post("/match", dependencies=[Depends(require_signature)])
async def match(
    background_tasks: BackgroundTasks,
    images: Optional[List[UploadFile]] = File(default=None),
    nn: Optional[str] = Query(default=None),
    gtid: Optional[str] = Query(default=None),
    gtaug: Optional[str] = Query(default=None),
):
    uploads = await _read_uploads(images)

    try:
        image_urls = assign_upload_keys(uploads)

        verdict, result = await asyncio.gather(
            asyncio.to_thread(gate_images, uploads),
            asyncio.to_thread(identify_images, uploads, nn),
        )

        if verdict is not None and verdict.error:
            logger.info("LLM gate rejected input: {} {}", verdict.error_code, verdict.reason)
            return _error(400, verdict.reason or "Invalid input images", verdict.error_code or "E003")

        if config.LOG_QUERY_METRICS and gtid:
            query_id = new_upload_key()
            try:
                log_query(query_id, gtid, not bool(gtaug), result.recall)
                if config.LOG_QUERY_AND_EXIT:
                    return QueryLoggedResponse(query_id=query_id)
            except Exception as e:
                logger.warning("Query logging failed: {}", e)
                if config.LOG_QUERY_AND_EXIT:
                    return _error(500, str(e))

        if config.S3_UPLOAD_ENABLED:
            background_tasks.add_task(upload_images, uploads)

        return map_head_to_response(
            result.head,
            image_urls,
            matches_found_count=len(result.ranked),
            ranks=result.ranks,
        )
    except Exception as e:
        logger.exception("Error in match handler: {}", e)
        return _error(500, "Internal server error")
