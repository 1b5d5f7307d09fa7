from __future__ import annotations

"""
Optional HMAC request signing for the public endpoints.

A signed request carries ``e`` (expiry, epoch seconds) and ``s`` (hex
HMAC-SHA256 of ``e`` under the shared secret) as query parameters.
"""

import hashlib
import hmac
import math
import time
from typing import Optional

from fastapi import HTTPException, Query
from loguru import logger

from . import config

INVALID_SIGNATURE = "Invalid or missing signature"
EXPIRED_SIGNATURE = "Signature Expired"


def sign_expiry(expiry: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), str(expiry).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(
    expiry: Optional[str],
    signature: Optional[str],
    secret: str,
    now: Optional[float] = None,
) -> None:
    """Raise 403 unless ``signature`` is a valid, unexpired signature of ``expiry``."""
    if not expiry or not signature:
        raise HTTPException(status_code=403, detail=INVALID_SIGNATURE)
    try:
        expires_at = float(expiry)
    except ValueError:
        raise HTTPException(status_code=403, detail=INVALID_SIGNATURE)
    if not math.isfinite(expires_at):
        raise HTTPException(status_code=403, detail=INVALID_SIGNATURE)

    now = math.floor(time.time()) if now is None else now
    if now > expires_at:
        raise HTTPException(status_code=403, detail=EXPIRED_SIGNATURE)

    if not secret:
        logger.warning("HMAC signing enabled but HMAC_SHARED_SECRET is empty")
        raise HTTPException(status_code=403, detail=INVALID_SIGNATURE)

    expected = sign_expiry(expiry, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        raise HTTPException(status_code=403, detail=INVALID_SIGNATURE)


def require_signature(
    e: Optional[str] = Query(default=None),
    s: Optional[str] = Query(default=None),
) -> None:
    """FastAPI dependency; a no-op unless ``HMAC_ENABLED`` is set."""
    if not config.HMAC_ENABLED:
        return
    verify_signature(e, s, config.HMAC_SHARED_SECRET)
