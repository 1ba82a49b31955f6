from __future__ import annotations

from datetime import date
from typing import Callable, Dict, List, Optional, Union

import numpy as np
import pytest

from idverify.models.face_pipeline import BoundingBox, FaceDetection
from idverify.models.field_extractor import FieldExtractor
from idverify.models.text_recognizer import DocumentReader, OcrConfiguration, TextRecognizerConfig
from idverify.services.verification_service import VerificationSession

TODAY = date(2026, 10, 19)


class FakeOcrEngine:
    """Returns canned text per configuration name; exceptions are raised."""

    def __init__(self, outputs: Union[str, Exception, Dict[str, object]]):
        self.outputs = outputs
        self.calls: List[str] = []
        self.timeouts: List[Optional[float]] = []

    def recognize(self, image: np.ndarray, configuration: OcrConfiguration,
                  timeout: Optional[float] = None) -> str:
        self.calls.append(configuration.name)
        self.timeouts.append(timeout)
        out = self.outputs
        if isinstance(out, dict):
            out = out.get(configuration.name, "")
        if isinstance(out, Exception):
            raise out
        return out


class SpyExtractor(FieldExtractor):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = 0

    def extract(self, text, configuration=""):
        self.calls += 1
        return super().extract(text, configuration)


class FakeFaceLocator:
    """Hands out queued detections (None = no face) in call order."""

    distance_scale = 1.0

    def __init__(self, *detections: Optional[FaceDetection]):
        self.queue = list(detections)
        self.calls = 0

    def locate(self, image: np.ndarray) -> Optional[FaceDetection]:
        self.calls += 1
        if not self.queue:
            return None
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def ensure_ready(self) -> None:
        return None


def detection(descriptor: np.ndarray, box=(40, 60, 80, 100)) -> FaceDetection:
    return FaceDetection(box=BoundingBox(*box), descriptor=descriptor,
                         confidence=0.99, detector="retinaface")


def descriptor_pair(distance: float, length: int = 128):
    a = np.zeros(length, dtype=np.float64)
    b = a.copy()
    b[0] = distance
    return a, b


@pytest.fixture
def card_image() -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.integers(0, 255, size=(400, 640, 3), dtype=np.uint8)


@pytest.fixture
def selfie_image() -> np.ndarray:
    rng = np.random.default_rng(11)
    return rng.integers(0, 255, size=(480, 640, 3), dtype=np.uint8)


def make_reader(engine, extractor: Optional[FieldExtractor] = None, **cfg) -> DocumentReader:
    cfg.setdefault("attempt_timeout_s", None)
    cfg.setdefault("enhance", False)
    return DocumentReader(engine=engine,
                          extractor=extractor or FieldExtractor(use_reference_corpus=False),
                          cfg=TextRecognizerConfig(**cfg))


def make_session(engine, locator, visual_scorer: Optional[Callable] = None,
                 extractor: Optional[FieldExtractor] = None) -> VerificationSession:
    kwargs = {}
    if visual_scorer is not None:
        kwargs["visual_scorer"] = visual_scorer
    return VerificationSession(
        reader=make_reader(engine, extractor),
        face_locator=locator,
        today=lambda: TODAY,
        **kwargs,
    )
