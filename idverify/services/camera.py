"""Single-frame camera capture for the selfie step.

Only one CameraSession may hold a device at a time. The stream is released
right after a frame is captured and again on close / context exit.
"""

from __future__ import annotations

import logging
import os
import sys
import threading
from enum import Enum
from typing import Optional, Set

import cv2
import numpy as np

logger = logging.getLogger("idverify.camera")


class CameraFailure(str, Enum):
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NO_DEVICE = "NO_DEVICE"
    DEVICE_BUSY = "DEVICE_BUSY"
    OTHER = "OTHER"


_MESSAGES = {
    CameraFailure.PERMISSION_DENIED: "Please allow camera permissions and try again.",
    CameraFailure.NO_DEVICE: "No camera found on this device.",
    CameraFailure.DEVICE_BUSY: "Camera is being used by another application.",
    CameraFailure.OTHER: "Please check your camera settings and try again.",
}


class CameraAccessError(RuntimeError):
    def __init__(self, reason: CameraFailure, detail: str = ""):
        self.reason = reason
        message = f"Camera access failed. {_MESSAGES[reason]}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class CameraUnsupportedError(RuntimeError):
    """OpenCV was built without any camera backend."""


def classify_open_failure(device_index: int) -> CameraFailure:
    """Best-effort reason for a failed open, from the device node on Linux."""
    if not sys.platform.startswith("linux"):
        return CameraFailure.OTHER
    node = f"/dev/video{device_index}"
    if not os.path.exists(node):
        return CameraFailure.NO_DEVICE
    if not os.access(node, os.R_OK | os.W_OK):
        return CameraFailure.PERMISSION_DENIED
    return CameraFailure.DEVICE_BUSY


class CameraSession:
    """One consumer of one camera device."""

    _held: Set[int] = set()
    _held_lock = threading.Lock()

    def __init__(self, device_index: int = 0, width: int = 640, height: int = 480,
                 mirror: bool = True):
        self.device_index = device_index
        self.width = width
        self.height = height
        self.mirror = mirror
        self._capture: Optional[cv2.VideoCapture] = None
        self._claimed = False

    @property
    def is_open(self) -> bool:
        return self._capture is not None

    def open(self) -> None:
        if self._capture is not None:
            return
        if not cv2.videoio_registry.getCameraBackends():
            raise CameraUnsupportedError("Camera not supported by this OpenCV build")

        with self._held_lock:
            if self.device_index in self._held:
                raise CameraAccessError(CameraFailure.DEVICE_BUSY,
                                        f"device {self.device_index} already in use")
            self._held.add(self.device_index)
            self._claimed = True

        logger.info("Requesting camera %d", self.device_index)
        capture = cv2.VideoCapture(self.device_index)
        if not capture.isOpened():
            capture.release()
            self._release_claim()
            reason = classify_open_failure(self.device_index)
            logger.error("Camera %d failed to open: %s", self.device_index, reason.value)
            raise CameraAccessError(reason)

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture = capture

    def capture_frame(self) -> np.ndarray:
        """Grab one still frame and release the device."""
        self.open()
        try:
            success, frame = self._capture.read()
        finally:
            self.release()
        if not success or frame is None:
            raise CameraAccessError(CameraFailure.OTHER, "no frame received")
        if self.mirror:
            frame = cv2.flip(frame, 1)
        logger.info("Captured %dx%d frame", frame.shape[1], frame.shape[0])
        return frame

    def _release_claim(self) -> None:
        if not self._claimed:
            return
        with self._held_lock:
            self._held.discard(self.device_index)
        self._claimed = False

    def release(self) -> None:
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info("Camera %d released", self.device_index)
        self._release_claim()

    def __enter__(self) -> "CameraSession":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
