import asyncio
import threading

import cv2
import numpy as np
import pytest

from idverify.models.face_pipeline import ModelLoadError
from idverify.models.records import COMPARISON_DESCRIPTOR, COMPARISON_VISUAL
from idverify.services import verification_service
from idverify.services.camera import CameraAccessError, CameraFailure
from idverify.services.report import render_report
from idverify.services.verification_service import (
    MAX_UPLOAD_BYTES,
    TRANSITIONS,
    TransitionError,
    VerificationState as S,
)

from conftest import (
    FakeFaceLocator,
    FakeOcrEngine,
    SpyExtractor,
    descriptor_pair,
    detection,
    make_session,
)

CARD = "Rahul Verma\nDOB: 19/10/2001\n1234 5678 9012"


def _ready_for_compare(session, card_image, selfie_image):
    asyncio.run(session.upload_document(card_image))
    session.begin_selfie()
    asyncio.run(session.submit_selfie(selfie_image))
    assert session.state is S.SELFIE_READY


# ---- end-to-end --------------------------------------------------------

def test_unreadable_card_needs_manual_entry(card_image, selfie_image):
    doc_vec, selfie_vec = descriptor_pair(0.3)
    locator = FakeFaceLocator(None, detection(selfie_vec))
    extractor = SpyExtractor(use_reference_corpus=False)
    session = make_session(FakeOcrEngine(RuntimeError("tesseract died")), locator,
                           extractor=extractor)

    doc = asyncio.run(session.upload_document(card_image))

    assert extractor.calls == 0

    assert session.state is S.DOCUMENT_READY
    assert doc.full_name == ""
    assert doc.date_of_birth is None
    assert doc.ocr_text == ""
    assert not doc.face_detected
    assert doc.face_image.shape == (300, 300, 3)
    assert doc.face_descriptor is None

    with pytest.raises(TransitionError, match="full name"):
        session.begin_selfie()
    assert session.state is S.DOCUMENT_READY

    session.set_document_data(full_name="  Rahul Verma ")
    with pytest.raises(TransitionError, match="date of birth"):
        session.begin_selfie()

    session.set_document_data(date_of_birth="19/10/2001")
    assert session.document.full_name == "Rahul Verma"
    session.begin_selfie()
    assert session.state is S.SELFIE_CAPTURING


def test_matching_adult_is_verified(card_image, selfie_image):
    doc_vec, selfie_vec = descriptor_pair(0.35)
    locator = FakeFaceLocator(detection(doc_vec), detection(selfie_vec))
    session = make_session(FakeOcrEngine(CARD), locator)

    _ready_for_compare(session, card_image, selfie_image)
    assert session.document.full_name == "Rahul Verma"
    assert session.document.face_detected
    assert session.selfie.face_detected

    result = asyncio.run(session.compare())

    assert session.state is S.VERIFIED
    assert result.verified
    assert result.similarity == 87
    assert result.age == 25
    assert result.distance == pytest.approx(0.35)
    assert result.comparison_method == COMPARISON_DESCRIPTOR
    assert not result.requires_manual_review
    assert result.reasons == []


def test_descriptor_distance_is_rescaled_for_the_model(card_image, selfie_image):
    doc_vec, selfie_vec = descriptor_pair(0.7)
    locator = FakeFaceLocator(detection(doc_vec), detection(selfie_vec))
    locator.distance_scale = 0.75
    session = make_session(FakeOcrEngine(CARD), locator)
    _ready_for_compare(session, card_image, selfie_image)

    result = asyncio.run(session.compare())

    assert result.verified
    assert result.similarity == 69
    assert result.distance == pytest.approx(0.7)


def test_missing_selfie_descriptor_uses_visual_score(card_image, selfie_image, monkeypatch):
    def must_not_run(a, b):
        raise AssertionError("descriptor comparison without two descriptors")

    monkeypatch.setattr(verification_service, "compare_descriptors", must_not_run)
    doc_vec, _ = descriptor_pair(0.0)
    scored = []

    def scorer(a, b):
        scored.append((a.shape, b.shape))
        return 70

    locator = FakeFaceLocator(detection(doc_vec), None)
    session = make_session(FakeOcrEngine(CARD), locator, visual_scorer=scorer)
    _ready_for_compare(session, card_image, selfie_image)
    assert not session.selfie.face_detected

    result = asyncio.run(session.compare())

    assert scored == [((300, 300, 3), (300, 300, 3))]
    assert result.comparison_method == COMPARISON_VISUAL
    assert result.requires_manual_review
    assert result.distance is None
    assert result.similarity == 70
    assert result.verified


def test_low_similarity_is_rejected(card_image, selfie_image):
    doc_vec, selfie_vec = descriptor_pair(0.9)
    session = make_session(FakeOcrEngine(CARD),
                           FakeFaceLocator(detection(doc_vec), detection(selfie_vec)))
    _ready_for_compare(session, card_image, selfie_image)

    result = asyncio.run(session.compare())

    assert session.state is S.REJECTED
    assert result.similarity == 20
    assert not result.verified
    assert result.reasons == ["Face match too low: 20% (required: 65%)"]


def test_similarity_at_threshold_passes(card_image, selfie_image):
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator(None, None),
                           visual_scorer=lambda a, b: 65)
    _ready_for_compare(session, card_image, selfie_image)
    assert asyncio.run(session.compare()).verified


def test_minor_is_rejected(card_image, selfie_image):
    doc_vec, selfie_vec = descriptor_pair(0.1)
    card = "Rahul Verma\nDOB: 20/10/2008"
    session = make_session(FakeOcrEngine(card),
                           FakeFaceLocator(detection(doc_vec), detection(selfie_vec)))
    _ready_for_compare(session, card_image, selfie_image)

    result = asyncio.run(session.compare())

    assert result.age == 17
    assert not result.verified
    assert result.reasons == ["Age requirement not met: 17 years (required: 18+)"]


def test_eighteenth_birthday_passes(card_image, selfie_image):
    doc_vec, selfie_vec = descriptor_pair(0.1)
    session = make_session(FakeOcrEngine("Rahul Verma\nDOB: 19/10/2008"),
                           FakeFaceLocator(detection(doc_vec), detection(selfie_vec)))
    _ready_for_compare(session, card_image, selfie_image)
    result = asyncio.run(session.compare())
    assert result.age == 18
    assert result.verified


def test_compare_is_idempotent(card_image, selfie_image):
    calls = []

    def scorer(a, b):
        calls.append(1)
        return 90

    locator = FakeFaceLocator(None, None)
    session = make_session(FakeOcrEngine(CARD), locator, visual_scorer=scorer)
    _ready_for_compare(session, card_image, selfie_image)

    first = asyncio.run(session.compare())
    second = asyncio.run(session.compare())
    assert first is second
    assert calls == [1]
    assert locator.calls == 2


def test_concurrent_compare_runs_once(card_image, selfie_image):
    calls = []

    def scorer(a, b):
        calls.append(1)
        return 90

    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator(None, None),
                           visual_scorer=scorer)
    _ready_for_compare(session, card_image, selfie_image)

    async def both():
        return await asyncio.gather(session.compare(), session.compare())

    a, b = asyncio.run(both())
    assert a is b
    assert calls == [1]
    assert session.state is S.VERIFIED


def test_comparison_error_returns_to_selfie_ready(card_image, selfie_image):
    def broken(a, b):
        raise RuntimeError("scorer crashed")

    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator(None, None),
                           visual_scorer=broken)
    _ready_for_compare(session, card_image, selfie_image)

    with pytest.raises(RuntimeError):
        asyncio.run(session.compare())
    assert session.state is S.SELFIE_READY
    assert session.result is None

    session.visual_scorer = lambda a, b: 80
    assert asyncio.run(session.compare()).similarity == 80


def test_reset_during_comparison_discards_stale_result(card_image, selfie_image):
    gate = threading.Event()

    def slow(a, b):
        gate.wait(5)
        return 90

    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator(), visual_scorer=slow)

    async def scenario():
        await session.upload_document(card_image)
        session.begin_selfie()
        await session.submit_selfie(selfie_image)
        stale = asyncio.ensure_future(session.compare())
        await asyncio.sleep(0.05)
        assert session.state is S.COMPARING

        session.reset()
        assert session.state is S.IDLE

        session.visual_scorer = lambda a, b: 10
        await session.upload_document(card_image)
        session.begin_selfie()
        await session.submit_selfie(selfie_image)
        fresh = await session.compare()

        gate.set()
        with pytest.raises(asyncio.CancelledError):
            await stale
        return fresh

    try:
        fresh = asyncio.run(scenario())
    finally:
        gate.set()

    assert fresh.similarity == 10
    assert session.result is fresh
    assert session.state is S.REJECTED


def test_reset_during_document_processing_discards_upload(card_image):
    gate = threading.Event()
    started = threading.Event()

    class GatedEngine(FakeOcrEngine):
        def recognize(self, image, configuration, timeout=None):
            started.set()
            gate.wait(5)
            return super().recognize(image, configuration, timeout)

    session = make_session(GatedEngine(CARD), FakeFaceLocator())

    async def scenario():
        upload = asyncio.ensure_future(session.upload_document(card_image))
        while not started.is_set():
            await asyncio.sleep(0.01)
        assert session.state is S.DOCUMENT_PROCESSING

        session.reset()
        gate.set()
        with pytest.raises(TransitionError, match="reset"):
            await upload
        assert session.state is S.IDLE
        assert session.document is None

        await session.upload_document(card_image)

    try:
        asyncio.run(scenario())
    finally:
        gate.set()

    assert session.state is S.DOCUMENT_READY
    assert session.document.full_name == "Rahul Verma"


# ---- transitions -------------------------------------------------------

def test_terminal_states_have_no_exits():
    assert TRANSITIONS[S.VERIFIED] == frozenset()
    assert TRANSITIONS[S.REJECTED] == frozenset()


def test_out_of_order_calls_are_refused(card_image, selfie_image):
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator())

    with pytest.raises(TransitionError):
        session.begin_selfie()
    with pytest.raises(TransitionError):
        asyncio.run(session.compare())
    with pytest.raises(TransitionError):
        session.set_selfie_photo(selfie_image)
    with pytest.raises(TransitionError):
        session.set_document_data(full_name="x")
    assert session.state is S.IDLE

    asyncio.run(session.upload_document(card_image))
    with pytest.raises(TransitionError):
        asyncio.run(session.upload_document(card_image))
    assert session.state is S.DOCUMENT_READY


def test_finished_session_only_resets(card_image, selfie_image):
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator(None, None),
                           visual_scorer=lambda a, b: 90)
    _ready_for_compare(session, card_image, selfie_image)
    asyncio.run(session.compare())

    with pytest.raises(TransitionError):
        session.begin_selfie()
    with pytest.raises(TransitionError):
        asyncio.run(session.submit_selfie(selfie_image))

    session.reset()
    assert session.state is S.IDLE
    assert session.document is None
    assert session.selfie is None
    assert session.result is None


def test_invalid_manual_date_keeps_state(card_image):
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator())
    asyncio.run(session.upload_document(card_image))

    with pytest.raises(TransitionError, match="DD/MM/YYYY"):
        session.set_document_data(date_of_birth="2001-10-19")
    with pytest.raises(TransitionError, match="birth year"):
        session.set_document_data(date_of_birth="01/01/2020")
    assert session.state is S.DOCUMENT_READY
    assert session.document.date_of_birth.year == 2001


def test_retake_replaces_selfie(card_image, selfie_image):
    doc_vec, first = descriptor_pair(0.9)
    _, second = descriptor_pair(0.1)
    session = make_session(FakeOcrEngine(CARD),
                           FakeFaceLocator(detection(doc_vec), detection(first), detection(second)))
    _ready_for_compare(session, card_image, selfie_image)

    asyncio.run(session.submit_selfie(selfie_image[::-1].copy()))
    assert session.state is S.SELFIE_READY
    assert asyncio.run(session.compare()).verified


def test_listeners_see_every_transition(card_image, selfie_image):
    seen = []
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator(None, None),
                           visual_scorer=lambda a, b: 10)
    unsubscribe = session.subscribe(lambda old, new: seen.append((old, new)))

    _ready_for_compare(session, card_image, selfie_image)
    asyncio.run(session.compare())
    session.reset()
    unsubscribe()
    asyncio.run(session.upload_document(card_image))

    assert seen == [
        (S.IDLE, S.DOCUMENT_PROCESSING),
        (S.DOCUMENT_PROCESSING, S.DOCUMENT_READY),
        (S.DOCUMENT_READY, S.SELFIE_CAPTURING),
        (S.SELFIE_CAPTURING, S.SELFIE_READY),
        (S.SELFIE_READY, S.COMPARING),
        (S.COMPARING, S.REJECTED),
        (S.REJECTED, S.IDLE),
    ]


def test_model_failure_during_upload_returns_to_idle(card_image):
    session = make_session(FakeOcrEngine(CARD),
                           FakeFaceLocator(ModelLoadError("no weights")))
    with pytest.raises(ModelLoadError):
        asyncio.run(session.upload_document(card_image))
    assert session.state is S.IDLE
    assert session.document is None


def test_tiny_card_image_still_gets_a_face_thumbnail():
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator())
    doc = asyncio.run(session.upload_document(np.full((1, 1, 3), 9, np.uint8)))

    assert session.state is S.DOCUMENT_READY
    assert not doc.face_detected
    assert doc.face_image.shape == (300, 300, 3)


# ---- uploads -----------------------------------------------------------

def test_upload_from_file(tmp_path, card_image):
    path = tmp_path / "card.png"
    cv2.imwrite(str(path), card_image)
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator())

    doc = asyncio.run(session.upload_document(str(path)))
    assert doc.document_image.shape == card_image.shape
    assert doc.full_name == "Rahul Verma"


@pytest.mark.parametrize("name,content,message", [
    ("card.gif", b"GIF89a", "valid image"),
    ("card.pdf", b"%PDF", "valid image"),
    ("missing.jpg", None, "File not found"),
    ("broken.png", b"not an image", "Unable to read image"),
])
def test_rejected_uploads_leave_session_idle(tmp_path, name, content, message):
    path = tmp_path / name
    if content is not None:
        path.write_bytes(content)
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator())

    with pytest.raises(TransitionError, match=message):
        asyncio.run(session.upload_document(str(path)))
    assert session.state is S.IDLE


def test_oversized_upload_is_rejected(tmp_path):
    path = tmp_path / "huge.JPG"
    with open(path, "wb") as f:
        f.truncate(MAX_UPLOAD_BYTES + 1)
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator())

    with pytest.raises(TransitionError, match="15MB"):
        asyncio.run(session.upload_document(str(path)))


# ---- camera ------------------------------------------------------------

class FakeCamera:
    def __init__(self, frame=None, error=None):
        self.frame = frame
        self.error = error
        self.released = 0

    def capture_frame(self):
        if self.error is not None:
            raise self.error
        return self.frame

    def release(self):
        self.released += 1


def test_capture_selfie_releases_camera(card_image, selfie_image):
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator(None, None))
    asyncio.run(session.upload_document(card_image))
    session.begin_selfie()

    camera = FakeCamera(frame=selfie_image)
    selfie = asyncio.run(session.capture_selfie(camera))

    assert camera.released == 1
    assert selfie.selfie_image is selfie_image
    assert session.state is S.SELFIE_READY


def test_camera_failure_keeps_capturing_state(card_image):
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator())
    asyncio.run(session.upload_document(card_image))
    session.begin_selfie()

    camera = FakeCamera(error=CameraAccessError(CameraFailure.NO_DEVICE))
    with pytest.raises(CameraAccessError, match="No camera found"):
        asyncio.run(session.capture_selfie(camera))
    assert camera.released == 1
    assert session.state is S.SELFIE_CAPTURING


# ---- report ------------------------------------------------------------

def test_report_shows_verdict_and_review_note(card_image, selfie_image):
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator(None, None),
                           visual_scorer=lambda a, b: 72)
    _ready_for_compare(session, card_image, selfie_image)
    asyncio.run(session.compare())

    report = render_report(session)
    assert "Rahul Verma" in report
    assert "19/10/2001" in report
    assert "72% (visual)" in report
    assert "VERIFIED" in report
    assert "manual review" in report


def test_report_before_comparison_shows_state():
    session = make_session(FakeOcrEngine(CARD), FakeFaceLocator())
    assert "IDLE" in render_report(session)
