from __future__ import annotations

import base64
import json
from typing import Optional, Sequence

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import (
    HTTP_CONNECT_TIMEOUT,
    HTTP_READ_TIMEOUT,
    LLM_GATE_API_KEY,
    LLM_GATE_API_URL,
    LLM_GATE_MODEL,
)
from .storage import UploadedImage


VALIDATION_PROMPT = """
You are an expert numismatist and visual analyst.

Given two images for the two faces/sides of a banknote, analyze and determine if they depict a valid banknote.

If you cannot confirm both images are of a valid banknote (e.g., not banknotes, too blurry, both images are the same or clearly different banknotes, or any other issue), respond with:
{
  "error": true,
  "errorCode": "E001 | E002 | E003 | E005 | E006",
  "reason": "Concise, specific reason"
}
Codes: E001 not a banknote; E002 image too blurry/distorted; E005 both images show the same side; E006 the images show two clearly different banknotes; E003 any other problem.

If valid, respond with:
{
  "error": false
}

Output only valid JSON, no extra text.
"""


class GateVerdict(BaseModel):
    """Outcome of the input-validity check."""

    model_config = ConfigDict(populate_by_name=True)

    error: bool
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    reason: Optional[str] = None


def _rejection(reason: str) -> GateVerdict:
    return GateVerdict(error=True, error_code="E003", reason=reason)


def _image_part(img: UploadedImage) -> dict:
    mime = img.content_type or "image/jpeg"
    b64 = base64.b64encode(img.data).decode("utf-8")
    return {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{b64}"}}


def build_request(images: Sequence[UploadedImage], model: str = LLM_GATE_MODEL) -> dict:
    return {
        "model": model,
        "messages": [
            {
                "role": "user",
                "content": [{"type": "text", "text": VALIDATION_PROMPT}]
                + [_image_part(img) for img in images[:2]],
            }
        ],
        "response_format": {"type": "json_object"},
    }


def validate_images(
    images: Sequence[UploadedImage],
    client: Optional[httpx.Client] = None,
    url: str = LLM_GATE_API_URL,
    api_key: str = LLM_GATE_API_KEY,
) -> GateVerdict:
    """
    Ask the LLM whether the two photos show the two faces of one banknote.

    Never raises: transport or parsing problems come back as an E003 verdict.
    """
    if len(images) < 2:
        return _rejection("At least two images are required for validation.")

    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    owns_client = client is None
    client = client or httpx.Client(
        timeout=httpx.Timeout(HTTP_READ_TIMEOUT, connect=HTTP_CONNECT_TIMEOUT),
    )
    try:
        r = client.post(url, json=build_request(images), headers=headers)
        if r.status_code >= 400:
            logger.warning("LLM gate: HTTP {} from {}", r.status_code, url)
            return _rejection(f"LLM API call failed: HTTP {r.status_code}")
        text = r.json()["choices"][0]["message"]["content"]
    except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
        logger.warning("LLM gate call failed: {}", e)
        return _rejection(f"LLM API call failed: {e}")
    finally:
        if owns_client:
            client.close()

    if not isinstance(text, str):
        return _rejection("LLM response is not a string.")
    try:
        return GateVerdict.model_validate(json.loads(text))
    except (ValueError, ValidationError):
        return _rejection("Failed to parse LLM response as JSON.")
