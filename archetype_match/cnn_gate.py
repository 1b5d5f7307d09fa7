from __future__ import annotations

"""
Local banknote classifier gate.

A small ONNX image classifier (two logits: banknote / not banknote) checks
each uploaded photo before the LLM gate is consulted. Photos are resized to
224x224 RGB and normalised with the ImageNet mean/std in CHW layout.

The set passes when every photo is classified as a banknote, or when exactly
one is and that one is very confident (the other face may be plain or worn).
"""

import io
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

import numpy as np
import onnxruntime as ort
from loguru import logger
from PIL import Image

from .config import (
    CNN_CONFIDENCE_THRESHOLD,
    CNN_HIGH_CONFIDENCE_THRESHOLD,
    CNN_IMG_SIZE,
    CNN_INTRA_OP_THREADS,
    CNN_MODEL_PATH,
    LOG_TIMERS,
)

MEAN = np.array([0.485, 0.456, 0.406], dtype="float32")
STD = np.array([0.229, 0.224, 0.225], dtype="float32")


@dataclass
class Confidence:
    banknote: float
    not_banknote: float
    is_banknote: bool = False


def load_session(model_path: Path = CNN_MODEL_PATH, intra_op_threads: int = CNN_INTRA_OP_THREADS):
    opts = ort.SessionOptions()
    opts.intra_op_num_threads = intra_op_threads
    logger.info("Loading banknote classifier from {}", model_path)
    return ort.InferenceSession(str(model_path), sess_options=opts, providers=["CPUExecutionProvider"])


def preprocess(data: bytes, size: int = CNN_IMG_SIZE) -> np.ndarray:
    """Raw image bytes -> float32 tensor of shape (1, 3, size, size)."""
    img = Image.open(io.BytesIO(data)).convert("RGB").resize((size, size))
    arr = np.asarray(img, dtype="float32") / 255.0
    arr = (arr - MEAN) / STD
    return np.ascontiguousarray(arr.transpose(2, 0, 1)[np.newaxis, ...], dtype="float32")


def softmax2(logits: Sequence[float]) -> List[float]:
    a, b = float(logits[0]), float(logits[1])
    m = max(a, b)
    ea, eb = np.exp(a - m), np.exp(b - m)
    s = ea + eb
    return [float(ea / s), float(eb / s)]


def confidence_matrix(
    images: Sequence[bytes],
    session,
    threshold: float = CNN_CONFIDENCE_THRESHOLD,
) -> List[Confidence]:
    out: List[Confidence] = []
    for data in images:
        outputs = session.run(["output"], {"input": preprocess(data)})
        logits = np.asarray(outputs[0], dtype="float32").reshape(-1)
        p_yes, p_no = softmax2(logits[:2])
        out.append(Confidence(
            banknote=p_yes,
            not_banknote=p_no,
            is_banknote=p_yes > p_no and p_yes > threshold,
        ))
    return out


def gate_decision(
    matrix: Sequence[Confidence],
    high_threshold: float = CNN_HIGH_CONFIDENCE_THRESHOLD,
) -> bool:
    if not matrix:
        return False
    positives = [c for c in matrix if c.is_banknote]
    if len(positives) == len(matrix):
        return True
    # a single confident face is enough
    return len(positives) == 1 and positives[0].banknote >= high_threshold


def cnn_gate(images: Sequence[bytes], session) -> bool:
    """True when the photos pass the classifier. Session errors propagate."""
    t0 = time.perf_counter()
    try:
        matrix = confidence_matrix(images, session)
        logger.debug("CNN gate confidences: {}", matrix)
        return gate_decision(matrix)
    finally:
        if LOG_TIMERS:
            logger.info("[timer] cnn_gate: {:.1f} ms", (time.perf_counter() - t0) * 1000.0)
