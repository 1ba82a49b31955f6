"""Descriptor comparison with a calibrated 0-100 similarity score."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger("idverify.face")


@dataclass(frozen=True)
class FaceComparison:
    distance: float
    similarity: int


# Distance at the good/fair band edge (score 60), the match threshold the
# bands were tuned around
CALIBRATION_DISTANCE = 0.6


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise ValueError(f"Descriptor length mismatch: {a.size} vs {b.size}")
    return float(np.linalg.norm(a - b))


def distance_to_similarity(distance: float) -> int:
    """Map Euclidean distance to a 0-100 score.

    Raw embedding distance is not linear in perceived similarity, so four
    bands are stretched separately:
      <= 0.4  excellent  85-100
      <= 0.6  good       60-85
      <= 0.8  fair       30-60
      >  0.8  poor        0-30
    """
    if distance <= 0.4:
        similarity = 85 + (0.4 - distance) * 37.5
    elif distance <= 0.6:
        similarity = 60 + (0.6 - distance) * 125
    elif distance <= 0.8:
        similarity = 30 + (0.8 - distance) * 150
    else:
        similarity = max(0.0, 30 - (distance - 0.8) * 100)

    similarity = max(0.0, min(100.0, similarity))
    return int(math.floor(similarity + 0.5))


def compare_descriptors(a: np.ndarray, b: np.ndarray, scale: float = 1.0) -> FaceComparison:
    """Compare two descriptors.

    *scale* maps the embedding model's own distances onto the calibrated
    bands (see ``FaceLocator.distance_scale``). The returned distance is
    the unscaled one.
    """
    distance = euclidean_distance(a, b)
    similarity = distance_to_similarity(distance * scale)
    logger.info("Face comparison distance=%.4f scale=%.3f similarity=%d",
                distance, scale, similarity)
    return FaceComparison(distance=distance, similarity=similarity)
