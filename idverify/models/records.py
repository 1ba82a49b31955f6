"""Session records produced by the verification flow."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

import numpy as np


def _check_face_pair(face_image: Optional[np.ndarray],
                     descriptor: Optional[np.ndarray]) -> None:
    if descriptor is not None and face_image is None:
        raise ValueError("A face descriptor requires a cropped face image")


@dataclass
class DocumentRecord:
    full_name: str
    date_of_birth: Optional[date]
    document_image: np.ndarray
    devanagari_name: str = ""
    latin_name: str = ""
    document_number: str = ""
    face_image: Optional[np.ndarray] = None
    face_descriptor: Optional[np.ndarray] = None
    face_detected: bool = False
    ocr_text: str = ""
    ocr_configuration: Optional[str] = None

    def __post_init__(self):
        _check_face_pair(self.face_image, self.face_descriptor)


@dataclass(frozen=True)
class SelfieRecord:
    selfie_image: np.ndarray
    face_image: Optional[np.ndarray] = None
    face_descriptor: Optional[np.ndarray] = None
    face_detected: bool = False

    def __post_init__(self):
        _check_face_pair(self.face_image, self.face_descriptor)


COMPARISON_DESCRIPTOR = "descriptor"
COMPARISON_VISUAL = "visual"


@dataclass(frozen=True)
class VerificationResult:
    similarity: int
    verified: bool
    age: int
    comparison_method: str = COMPARISON_DESCRIPTOR
    distance: Optional[float] = None
    requires_manual_review: bool = False
    reasons: List[str] = field(default_factory=list)
