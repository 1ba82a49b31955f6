"""idverify.models.face_pipeline

Face location, descriptors and thumbnails.

Backend: DeepFace. A primary detector (RetinaFace by default) is tried
first; when it finds nothing the faster SSD detector is tried with a
relaxed confidence threshold. The recognition model is loaded once per
FaceLocator, guarded by a lock so concurrent first calls load it once.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from idverify.models.face_comparator import CALIBRATION_DISTANCE

logger = logging.getLogger("idverify.face")


class ModelLoadError(RuntimeError):
    """The face recognition model could not be loaded."""


# DeepFace's same-person thresholds for L2-normalised descriptors
L2_MATCH_DISTANCES = {
    "VGG-Face": 1.17,
    "Facenet": 0.80,
    "Facenet512": 1.04,
    "ArcFace": 1.13,
    "Dlib": 0.4,
    "SFace": 1.055,
    "OpenFace": 0.55,
    "DeepFace": 0.64,
    "DeepID": 0.17,
    "GhostFaceNet": 1.398,
}


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


# ---------------------------------------------------------------- config ---

@dataclass
class FaceLocatorConfig:
    """Controlled via env:
    - DEEPFACE_MODEL_NAME (Facenet gives 128-value descriptors)
    - DEEPFACE_DETECTOR_BACKEND / DEEPFACE_FALLBACK_DETECTOR
    - DEEPFACE_MATCH_DISTANCE (same-person distance of the model; defaults to
      the L2 table above)
    """
    model_name: str = field(
        default_factory=lambda: os.getenv("DEEPFACE_MODEL_NAME", "Facenet"))
    primary_detector: str = field(
        default_factory=lambda: os.getenv("DEEPFACE_DETECTOR_BACKEND", "retinaface"))
    primary_min_confidence: float = 0.5
    secondary_detector: str = field(
        default_factory=lambda: os.getenv("DEEPFACE_FALLBACK_DETECTOR", "ssd"))
    secondary_min_confidence: float = 0.3
    normalize: bool = True
    match_distance: Optional[float] = field(
        default_factory=lambda: _env_float("DEEPFACE_MATCH_DISTANCE"))


@dataclass
class CropConfig:
    output_size: int = 300
    document_padding: float = 0.4
    selfie_padding: float = 0.3
    # Best-guess photo region on a card: (x, y, width, height) fractions
    document_fallback_region: Tuple[float, float, float, float] = (0.05, 0.25, 0.35, 0.50)
    interpolation: int = cv2.INTER_CUBIC


# ---------------------------------------------------------------- result ---

@dataclass(frozen=True)
class BoundingBox:
    """Pixel rectangle in source-image coordinates."""
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    @classmethod
    def from_facial_area(cls, area: Dict[str, int]) -> "BoundingBox":
        return cls(int(area.get("x", 0)), int(area.get("y", 0)),
                   int(area.get("w", 0)), int(area.get("h", 0)))


@dataclass
class FaceDetection:
    box: BoundingBox
    descriptor: np.ndarray
    confidence: float
    detector: str


# -------------------------------------------------------------- helpers ---

def load_image(image_path: str) -> np.ndarray:
    image = cv2.imread(image_path)
    if image is None:
        raise ValueError(f"Unable to read image: {image_path}")
    return image


def _normalize(embedding: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(embedding)
    if norm == 0:
        raise ValueError("Invalid embedding norm")
    return embedding / norm


def _select_primary_face(reps: List[dict], min_confidence: float) -> Optional[dict]:
    """Largest face among those at or above *min_confidence*."""
    confident = [r for r in reps
                 if float(r.get("face_confidence", 0.0) or 0.0) >= min_confidence]
    if not confident:
        return None
    return max(confident,
               key=lambda r: r["facial_area"].get("w", 0) * r["facial_area"].get("h", 0))


# --------------------------------------------------------------- locator ---

class FaceLocator:
    """Finds the most prominent face in an image and embeds it."""

    def __init__(self, cfg: Optional[FaceLocatorConfig] = None):
        self.cfg = cfg or FaceLocatorConfig()
        self._initialized = False
        self._load_error: Optional[ModelLoadError] = None
        self._init_lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def distance_scale(self) -> float:
        """Factor that maps this model's descriptor distances onto the
        comparison bands: its same-person distance lands on
        CALIBRATION_DISTANCE. Unnormalised descriptors are only rescaled
        when DEEPFACE_MATCH_DISTANCE is given."""
        match_distance = self.cfg.match_distance
        if match_distance is None and self.cfg.normalize:
            match_distance = L2_MATCH_DISTANCES.get(self.cfg.model_name)
        if not match_distance:
            return 1.0
        return CALIBRATION_DISTANCE / match_distance

    def initialize(self) -> None:
        """Load the recognition model once.

        Raises ModelLoadError. The failure is remembered: locate() re-raises
        it without reloading until initialize() or ensure_ready() is called
        again.
        """
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            logger.info("Loading %s face model ...", self.cfg.model_name)
            try:
                from deepface import DeepFace

                DeepFace.build_model(self.cfg.model_name)
            except Exception as exc:
                logger.error("Face model failed to load: %s", exc)
                error = ModelLoadError(
                    f"Failed to initialize face model {self.cfg.model_name}")
                self._load_error = error
                raise error from exc
            self._load_error = None
            self._initialized = True
            logger.info("Face model ready")

    async def ensure_ready(self) -> None:
        await asyncio.to_thread(self.initialize)

    def _ensure_loaded(self) -> None:
        if self._initialized:
            return
        if self._load_error is not None:
            raise self._load_error
        self.initialize()

    def _represent(self, image: np.ndarray, detector: str) -> List[dict]:
        from deepface import DeepFace

        reps = DeepFace.represent(
            img_path=image,
            model_name=self.cfg.model_name,
            detector_backend=detector,
            enforce_detection=True,
            align=True,
        )
        if isinstance(reps, dict):
            reps = [reps]
        return reps

    def _detect_with(self, image: np.ndarray, detector: str,
                     min_confidence: float) -> Optional[FaceDetection]:
        try:
            reps = self._represent(image, detector)
        except ValueError:
            # DeepFace signals "no face" with ValueError under enforce_detection
            logger.info("No face found by %s", detector)
            return None
        except Exception:
            logger.warning("Detector %s failed", detector, exc_info=True)
            return None

        rep = _select_primary_face(reps, min_confidence)
        if rep is None:
            logger.info("No face above %.2f confidence from %s", min_confidence, detector)
            return None

        descriptor = np.asarray(rep["embedding"], dtype=np.float32)
        if self.cfg.normalize:
            try:
                descriptor = _normalize(descriptor)
            except ValueError:
                return None
        return FaceDetection(
            box=BoundingBox.from_facial_area(rep["facial_area"]),
            descriptor=descriptor,
            confidence=float(rep.get("face_confidence", 0.0) or 0.0),
            detector=detector,
        )

    def locate(self, image: np.ndarray) -> Optional[FaceDetection]:
        """Return the most prominent face, or None when no face is found.

        Only a model load failure raises (ModelLoadError).
        """
        self._ensure_loaded()
        attempts = [
            (self.cfg.primary_detector, self.cfg.primary_min_confidence),
            (self.cfg.secondary_detector, self.cfg.secondary_min_confidence),
        ]
        for detector, min_confidence in attempts:
            detection = self._detect_with(image, detector, min_confidence)
            if detection is not None:
                logger.info("Face found by %s at %s (confidence %.2f)",
                            detector, detection.box, detection.confidence)
                return detection
        return None


_locator: Optional[FaceLocator] = None
_locator_lock = threading.Lock()


def get_face_locator() -> FaceLocator:
    """Process-wide locator, so the model is loaded once per process."""
    global _locator
    with _locator_lock:
        if _locator is None:
            _locator = FaceLocator()
    return _locator


# --------------------------------------------------------------- cropper ---

def _resample(region: np.ndarray, size: int, interpolation: int) -> np.ndarray:
    if region.size == 0:
        raise ValueError("Failed to crop face region")
    return cv2.resize(region, (size, size), interpolation=interpolation)


def crop_face(image: np.ndarray, box: BoundingBox, padding: float,
              cfg: Optional[CropConfig] = None) -> np.ndarray:
    """Square thumbnail of *box* grown by ``padding * min(width, height)``
    on every side and clamped to the image."""
    cfg = cfg or CropConfig()
    img_h, img_w = image.shape[:2]
    pad = min(box.width, box.height) * padding

    x0 = max(0.0, box.x - pad)
    y0 = max(0.0, box.y - pad)
    x1 = min(float(img_w), box.x + box.width + pad)
    y1 = min(float(img_h), box.y + box.height + pad)

    region = image[int(y0):int(round(y1)), int(x0):int(round(x1))]
    return _resample(region, cfg.output_size, cfg.interpolation)


def crop_region(image: np.ndarray, region: Tuple[float, float, float, float],
                cfg: Optional[CropConfig] = None) -> np.ndarray:
    """Thumbnail of a fixed proportional region, used when no face is found."""
    cfg = cfg or CropConfig()
    img_h, img_w = image.shape[:2]
    fx, fy, fw, fh = region
    x0, y0 = int(img_w * fx), int(img_h * fy)
    x1 = min(img_w, int(round(img_w * (fx + fw))))
    y1 = min(img_h, int(round(img_h * (fy + fh))))
    cropped = image[y0:y1, x0:x1]
    if cropped.size == 0:
        logger.warning("Region %s is empty on a %dx%d image; using the whole image",
                       region, img_w, img_h)
        return thumbnail(image, cfg)
    return _resample(cropped, cfg.output_size, cfg.interpolation)


def thumbnail(image: np.ndarray, cfg: Optional[CropConfig] = None) -> np.ndarray:
    """Whole image squashed into the thumbnail size."""
    cfg = cfg or CropConfig()
    return _resample(image, cfg.output_size, cfg.interpolation)
