"""Verification session: document -> selfie -> comparison.

States:
    IDLE -> DOCUMENT_PROCESSING -> DOCUMENT_READY -> SELFIE_CAPTURING
         -> SELFIE_READY -> COMPARING -> VERIFIED | REJECTED

VERIFIED / REJECTED only leave through reset(). reset() also cancels a
running comparison, and any document or selfie step still in flight from
before the reset has its result discarded. OCR failure and face
detection failure degrade (manual entry, region crop, visual score) and
never abort the session; invalid user input raises TransitionError and
leaves the state unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Union

import numpy as np

from idverify.models.face_comparator import compare_descriptors
from idverify.models.face_pipeline import (
    CropConfig,
    FaceLocator,
    crop_face,
    crop_region,
    get_face_locator,
    load_image,
    thumbnail,
)
from idverify.models.field_extractor import calculate_age, parse_date_of_birth
from idverify.models.records import (
    COMPARISON_DESCRIPTOR,
    COMPARISON_VISUAL,
    DocumentRecord,
    SelfieRecord,
    VerificationResult,
)
from idverify.models.text_recognizer import DocumentReader, ProgressCallback
from idverify.models.visual_similarity import visual_similarity
from idverify.services.camera import CameraSession

logger = logging.getLogger("idverify.verify")


class TransitionError(ValueError):
    """A transition was refused; the message is meant for the user."""


class VerificationState(str, Enum):
    IDLE = "IDLE"
    DOCUMENT_PROCESSING = "DOCUMENT_PROCESSING"
    DOCUMENT_READY = "DOCUMENT_READY"
    SELFIE_CAPTURING = "SELFIE_CAPTURING"
    SELFIE_READY = "SELFIE_READY"
    COMPARING = "COMPARING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


S = VerificationState

TRANSITIONS: Dict[VerificationState, FrozenSet[VerificationState]] = {
    S.IDLE: frozenset({S.DOCUMENT_PROCESSING}),
    # back to IDLE when processing hits an infrastructure failure
    S.DOCUMENT_PROCESSING: frozenset({S.DOCUMENT_READY, S.IDLE}),
    S.DOCUMENT_READY: frozenset({S.SELFIE_CAPTURING}),
    S.SELFIE_CAPTURING: frozenset({S.SELFIE_READY}),
    # retake
    S.SELFIE_READY: frozenset({S.COMPARING, S.SELFIE_CAPTURING}),
    # back to SELFIE_READY when the comparison itself errors
    S.COMPARING: frozenset({S.VERIFIED, S.REJECTED, S.SELFIE_READY}),
    S.VERIFIED: frozenset(),
    S.REJECTED: frozenset(),
}

ACCEPTED_SUFFIXES = (".jpg", ".jpeg", ".png")
MAX_UPLOAD_BYTES = 15 * 1024 * 1024


# ---------------------------------------------------------------- config ---

@dataclass
class VerificationConfig:
    match_threshold: int = field(
        default_factory=lambda: int(os.getenv("FACE_MATCH_THRESHOLD", "65")))
    minimum_age: int = field(
        default_factory=lambda: int(os.getenv("MINIMUM_AGE", "18")))
    crop: CropConfig = field(default_factory=CropConfig)


@dataclass
class _FaceExtraction:
    face_image: np.ndarray
    descriptor: Optional[np.ndarray] = None
    detected: bool = False


StateListener = Callable[[VerificationState, VerificationState], None]
VisualScorer = Callable[[np.ndarray, np.ndarray], int]


def validate_upload(path: str) -> None:
    """Reject files the document step cannot read before any OCR runs."""
    if not path.lower().endswith(ACCEPTED_SUFFIXES):
        raise TransitionError("Please upload a valid image (JPEG, PNG)")
    if not os.path.isfile(path):
        raise TransitionError(f"File not found: {path}")
    if os.path.getsize(path) > MAX_UPLOAD_BYTES:
        raise TransitionError("File size should be less than 15MB")


# ============================================================== session ===

class VerificationSession:
    """Owns one verification flow and its records."""

    def __init__(self,
                 reader: Optional[DocumentReader] = None,
                 face_locator: Optional[FaceLocator] = None,
                 visual_scorer: VisualScorer = visual_similarity,
                 cfg: Optional[VerificationConfig] = None,
                 today: Callable[[], date] = date.today):
        self.cfg = cfg or VerificationConfig()
        self.reader = reader or DocumentReader()
        self.face_locator = face_locator or get_face_locator()
        self.visual_scorer = visual_scorer
        self.today = today

        self._state = S.IDLE
        self._listeners: List[StateListener] = []
        self._comparison: Optional[asyncio.Future] = None
        # bumped by reset(); work started under an older value is discarded
        self._generation = 0
        self.document: Optional[DocumentRecord] = None
        self.selfie: Optional[SelfieRecord] = None
        self.result: Optional[VerificationResult] = None

    # ---- state machine ---------------------------------------------

    @property
    def state(self) -> VerificationState:
        return self._state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call *listener(old, new)* on every transition; returns an unsubscribe."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _require(self, *states: VerificationState) -> None:
        if self._state not in states:
            allowed = ", ".join(s.value for s in states)
            raise TransitionError(
                f"Not allowed in state {self._state.value} (expected {allowed})")

    def _check_current(self, generation: int) -> None:
        if generation != self._generation:
            raise TransitionError("The session was reset; the result was discarded")

    def _transition(self, new: VerificationState) -> None:
        old = self._state
        if new not in TRANSITIONS[old]:
            raise TransitionError(f"Cannot go from {old.value} to {new.value}")
        self._state = new
        logger.info("Session %s -> %s", old.value, new.value)
        for listener in list(self._listeners):
            listener(old, new)

    def reset(self) -> None:
        old = self._state
        self._generation += 1
        if self._comparison is not None and not self._comparison.done():
            self._comparison.cancel()
        self._state = S.IDLE
        self._comparison = None
        self.document = None
        self.selfie = None
        self.result = None
        logger.info("Session reset")
        if old is not S.IDLE:
            for listener in list(self._listeners):
                listener(old, S.IDLE)

    # ---- faces -----------------------------------------------------

    async def _extract_face(self, image: np.ndarray, padding: float,
                            fallback: Callable[[np.ndarray], np.ndarray]) -> _FaceExtraction:
        detection = await asyncio.to_thread(self.face_locator.locate, image)
        if detection is not None:
            try:
                face = crop_face(image, detection.box, padding, self.cfg.crop)
                return _FaceExtraction(face, detection.descriptor, detected=True)
            except ValueError:
                logger.warning("Face box %s could not be cropped", detection.box)
        logger.info("No usable face, using fallback crop")
        return _FaceExtraction(fallback(image))

    # ---- document --------------------------------------------------

    async def upload_document(self, document: Union[str, np.ndarray],
                              on_progress: Optional[ProgressCallback] = None) -> DocumentRecord:
        """Run OCR, field extraction and face extraction on the ID card image."""
        self._require(S.IDLE)
        if isinstance(document, str):
            validate_upload(document)
            try:
                image = load_image(document)
            except ValueError as exc:
                raise TransitionError(str(exc)) from None
        else:
            image = document

        generation = self._generation
        self._transition(S.DOCUMENT_PROCESSING)
        try:
            reading = await self.reader.read(image, on_progress=on_progress)
            self._check_current(generation)
            region = self.cfg.crop.document_fallback_region
            face = await self._extract_face(
                image, self.cfg.crop.document_padding,
                lambda img: crop_region(img, region, self.cfg.crop))
            self._check_current(generation)
        except TransitionError:
            raise
        except Exception:
            logger.exception("Document processing failed")
            if generation == self._generation:
                self._transition(S.IDLE)
            raise

        candidate = reading.candidate
        birth = None
        if candidate.date_of_birth:
            birth = datetime.strptime(candidate.date_of_birth, "%d/%m/%Y").date()

        self.document = DocumentRecord(
            full_name=candidate.full_name,
            date_of_birth=birth,
            document_image=image,
            devanagari_name=candidate.devanagari_name,
            latin_name=candidate.latin_name,
            document_number=candidate.document_number,
            face_image=face.face_image,
            face_descriptor=face.descriptor,
            face_detected=face.detected,
            ocr_text=reading.text,
            ocr_configuration=reading.configuration,
        )
        if not reading.success:
            logger.warning("OCR found nothing; name and date of birth need manual entry")
        self._transition(S.DOCUMENT_READY)
        return self.document

    def set_document_data(self, full_name: Optional[str] = None,
                          date_of_birth: Optional[str] = None) -> DocumentRecord:
        """Manual correction of the extracted name / date of birth."""
        self._require(S.DOCUMENT_READY)
        updates = {}
        if full_name is not None:
            updates["full_name"] = full_name.strip()
        if date_of_birth is not None:
            try:
                updates["date_of_birth"] = parse_date_of_birth(date_of_birth)
            except ValueError as exc:
                raise TransitionError(str(exc)) from None
        self.document = replace(self.document, **updates)
        return self.document

    def begin_selfie(self) -> None:
        self._require(S.DOCUMENT_READY)
        doc = self.document
        if not doc.full_name:
            raise TransitionError("Please enter your full name")
        if doc.date_of_birth is None:
            raise TransitionError("Please enter your date of birth")
        if doc.face_image is None:
            raise TransitionError("Face extraction failed. Please try with a clearer image.")
        self._transition(S.SELFIE_CAPTURING)

    # ---- selfie ----------------------------------------------------

    def set_selfie_photo(self, image: np.ndarray) -> SelfieRecord:
        """Store a captured frame; a retake replaces the previous selfie."""
        self._require(S.SELFIE_CAPTURING, S.SELFIE_READY)
        if self._state is S.SELFIE_READY:
            self._transition(S.SELFIE_CAPTURING)
        self.selfie = SelfieRecord(selfie_image=image)
        return self.selfie

    def set_selfie_face_data(self, face_image: np.ndarray,
                             descriptor: Optional[np.ndarray] = None,
                             detected: bool = False) -> SelfieRecord:
        self._require(S.SELFIE_CAPTURING)
        if self.selfie is None:
            raise TransitionError("Please capture a selfie first")
        self.selfie = replace(self.selfie, face_image=face_image,
                              face_descriptor=descriptor, face_detected=detected)
        self._transition(S.SELFIE_READY)
        return self.selfie

    async def submit_selfie(self, image: np.ndarray) -> SelfieRecord:
        """Locate and crop the face in a captured frame."""
        self.set_selfie_photo(image)
        generation = self._generation
        face = await self._extract_face(
            image, self.cfg.crop.selfie_padding,
            lambda img: thumbnail(img, self.cfg.crop))
        self._check_current(generation)
        return self.set_selfie_face_data(face.face_image, face.descriptor, face.detected)

    async def capture_selfie(self, camera: CameraSession) -> SelfieRecord:
        self._require(S.SELFIE_CAPTURING, S.SELFIE_READY)
        try:
            frame = await asyncio.to_thread(camera.capture_frame)
        finally:
            camera.release()
        return await self.submit_selfie(frame)

    # ---- comparison ------------------------------------------------

    def set_comparison_result(self, result: VerificationResult) -> None:
        self._require(S.COMPARING)
        self.result = result
        self._transition(S.VERIFIED if result.verified else S.REJECTED)

    async def compare(self) -> VerificationResult:
        """Compute the verdict once; later calls return the same result."""
        if self._state in (S.VERIFIED, S.REJECTED):
            return self.result
        if self._comparison is None:
            self._require(S.SELFIE_READY)
            self._transition(S.COMPARING)
            self._comparison = asyncio.ensure_future(self._run_comparison(self._generation))
        return await asyncio.shield(self._comparison)

    async def _run_comparison(self, generation: int) -> VerificationResult:
        try:
            result = await self._compute_result()
        except Exception:
            if generation == self._generation:
                logger.exception("Comparison failed")
                self._comparison = None
                self._transition(S.SELFIE_READY)
            raise
        self._check_current(generation)
        self.set_comparison_result(result)
        return result

    async def _compute_result(self) -> VerificationResult:
        doc, selfie = self.document, self.selfie
        age = calculate_age(doc.date_of_birth, self.today())

        distance = None
        if doc.face_descriptor is not None and selfie.face_descriptor is not None:
            comparison = compare_descriptors(doc.face_descriptor, selfie.face_descriptor,
                                             scale=self.face_locator.distance_scale)
            similarity, distance = comparison.similarity, comparison.distance
            method = COMPARISON_DESCRIPTOR
        else:
            logger.info("Descriptor missing, falling back to visual comparison")
            similarity = await asyncio.to_thread(
                self.visual_scorer, doc.face_image, selfie.face_image)
            method = COMPARISON_VISUAL

        similarity = max(0, min(100, int(similarity)))
        reasons = []
        if similarity < self.cfg.match_threshold:
            reasons.append(f"Face match too low: {similarity}% "
                           f"(required: {self.cfg.match_threshold}%)")
        if age < 0:
            reasons.append("Date of birth is in the future")
        elif age < self.cfg.minimum_age:
            reasons.append(f"Age requirement not met: {age} years "
                           f"(required: {self.cfg.minimum_age}+)")

        result = VerificationResult(
            similarity=similarity,
            verified=not reasons,
            age=age,
            comparison_method=method,
            distance=distance,
            requires_manual_review=method == COMPARISON_VISUAL,
            reasons=reasons,
        )
        logger.info("Verification %s: similarity=%d age=%d method=%s",
                    "passed" if result.verified else "failed", similarity, age, method)
        return result
