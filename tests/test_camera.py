from types import SimpleNamespace

import cv2
import numpy as np
import pytest

from idverify.services import camera as camera_module
from idverify.services.camera import (
    CameraAccessError,
    CameraFailure,
    CameraSession,
    CameraUnsupportedError,
    classify_open_failure,
)


class FakeCapture:
    opened = True
    instances = []

    def __init__(self, index):
        self.index = index
        self.released = False
        self.props = {}
        FakeCapture.instances.append(self)

    def isOpened(self):
        return self.opened

    def set(self, prop, value):
        self.props[prop] = value

    def read(self):
        frame = np.zeros((4, 6, 3), np.uint8)
        frame[:, 0] = 255
        return True, frame

    def release(self):
        self.released = True


@pytest.fixture
def fake_cv2(monkeypatch):
    FakeCapture.opened = True
    FakeCapture.instances = []
    monkeypatch.setattr(cv2, "VideoCapture", FakeCapture)
    monkeypatch.setattr(cv2.videoio_registry, "getCameraBackends", lambda: [200])
    monkeypatch.setattr(CameraSession, "_held", set())
    return FakeCapture


@pytest.mark.parametrize("exists,access,expected", [
    (False, False, CameraFailure.NO_DEVICE),
    (True, False, CameraFailure.PERMISSION_DENIED),
    (True, True, CameraFailure.DEVICE_BUSY),
])
def test_classify_on_linux(monkeypatch, exists, access, expected):
    fake_os = SimpleNamespace(path=SimpleNamespace(exists=lambda p: exists),
                              access=lambda p, mode: access, R_OK=4, W_OK=2)
    monkeypatch.setattr(camera_module, "sys", SimpleNamespace(platform="linux"))
    monkeypatch.setattr(camera_module, "os", fake_os)
    assert classify_open_failure(0) is expected


def test_classify_elsewhere_is_other(monkeypatch):
    monkeypatch.setattr(camera_module, "sys", SimpleNamespace(platform="darwin"))
    assert classify_open_failure(0) is CameraFailure.OTHER


def test_capture_mirrors_and_releases(fake_cv2):
    session = CameraSession(0, width=1280, height=720)
    frame = session.capture_frame()

    assert frame.shape == (4, 6, 3)
    assert (frame[:, -1] == 255).all()
    assert not session.is_open
    capture = fake_cv2.instances[0]
    assert capture.released
    assert capture.props[cv2.CAP_PROP_FRAME_WIDTH] == 1280


def test_unmirrored_capture(fake_cv2):
    frame = CameraSession(0, mirror=False).capture_frame()
    assert (frame[:, 0] == 255).all()


def test_second_session_on_same_device_is_busy(fake_cv2):
    first = CameraSession(1)
    first.open()
    with pytest.raises(CameraAccessError) as excinfo:
        CameraSession(1).open()
    assert excinfo.value.reason is CameraFailure.DEVICE_BUSY

    CameraSession(2).open()
    first.release()
    with CameraSession(1) as again:
        assert again.is_open
    assert not again.is_open


def test_busy_session_release_keeps_holders_claim(fake_cv2):
    holder = CameraSession(0)
    holder.open()
    rejected = CameraSession(0)
    with pytest.raises(CameraAccessError):
        rejected.open()
    rejected.release()

    with pytest.raises(CameraAccessError):
        CameraSession(0).open()


def test_failed_open_is_classified_and_unclaimed(fake_cv2, monkeypatch):
    fake_cv2.opened = False
    monkeypatch.setattr(camera_module, "classify_open_failure",
                        lambda index: CameraFailure.PERMISSION_DENIED)

    with pytest.raises(CameraAccessError, match="allow camera permissions") as excinfo:
        CameraSession(0).open()
    assert excinfo.value.reason is CameraFailure.PERMISSION_DENIED
    assert fake_cv2.instances[0].released

    fake_cv2.opened = True
    CameraSession(0).open()


def test_no_camera_backends(fake_cv2, monkeypatch):
    monkeypatch.setattr(cv2.videoio_registry, "getCameraBackends", lambda: [])
    with pytest.raises(CameraUnsupportedError):
        CameraSession(0).open()
