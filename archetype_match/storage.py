"""
Object storage for uploaded query photos.

Each upload gets a short random key and a public S3 permalink up front, so
the response can reference the images before they are actually written.
The write itself happens later in a background task (``S3_UPLOAD_ENABLED``)
and never affects the response.
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from typing import List, Sequence

from loguru import logger

from . import config

_KEY_ALPHABET = string.ascii_lowercase + string.digits

_s3_client = None


@dataclass
class UploadedImage:
    """One uploaded photo held in memory for the lifetime of a request."""

    filename: str
    content_type: str
    data: bytes
    key: str = ""
    permalink: str = ""


def new_upload_key(length: int = config.UPLOAD_KEY_LENGTH) -> str:
    # first char is a letter so keys never look numeric
    first = secrets.choice(string.ascii_lowercase)
    return first + "".join(secrets.choice(_KEY_ALPHABET) for _ in range(length - 1))


def permalink(key: str) -> str:
    return f"https://{config.AWS_S3_BUCKET_NAME}.s3.{config.AWS_REGION}.amazonaws.com/{key}"


def assign_upload_keys(uploads: Sequence[UploadedImage]) -> List[str]:
    """Give every upload a key and permalink; returns the permalinks in order."""
    for up in uploads:
        up.key = new_upload_key()
        up.permalink = permalink(up.key)
    return [up.permalink for up in uploads]


def _get_s3_client():
    """Get or create the shared boto3 S3 client."""
    global _s3_client
    if _s3_client is not None:
        return _s3_client

    import boto3
    _s3_client = boto3.client("s3", region_name=config.AWS_REGION)
    return _s3_client


def upload_images(uploads: Sequence[UploadedImage], client=None) -> int:
    """
    Write uploads to S3 under their assigned keys.

    Failures are logged per object; returns the number of successful writes.
    """
    client = client or _get_s3_client()
    ok = 0
    for up in uploads:
        if not up.key:
            logger.warning("S3 upload skipped for {}: no key assigned", up.filename)
            continue
        try:
            client.put_object(
                Bucket=config.AWS_S3_BUCKET_NAME,
                Key=up.key,
                Body=up.data,
                ContentType=up.content_type,
            )
            ok += 1
            logger.info("S3 upload successful for {}", up.key)
        except Exception as e:
            logger.warning("S3 upload failed for {}: {}", up.key, e)
    return ok
