"""Pixel-level fallback when a face descriptor is missing.

Structural similarity of the two grayscale thumbnails. This compares
appearance, not identity, so results that come from here are flagged for
manual review by the verification service.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np
from skimage.metrics import structural_similarity

logger = logging.getLogger("idverify.face")


def _gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def visual_similarity(face_a: np.ndarray, face_b: np.ndarray) -> int:
    """SSIM of two face thumbnails scaled to 0-100 (negative SSIM -> 0)."""
    gray_a = _gray(face_a)
    gray_b = _gray(face_b)
    if gray_a.shape != gray_b.shape:
        gray_b = cv2.resize(gray_b, (gray_a.shape[1], gray_a.shape[0]),
                            interpolation=cv2.INTER_AREA)

    ssim = structural_similarity(gray_a, gray_b, data_range=255)
    score = int(round(max(0.0, float(ssim)) * 100))
    logger.info("Visual similarity ssim=%.4f score=%d", ssim, score)
    return min(100, score)
