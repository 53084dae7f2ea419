"""
Image acquisition for the capture client: local files, remote URLs, and
camera frames via OpenCV.

A `CameraSession` walks idle -> requesting_permission -> previewing ->
capturing -> closed. `stop()` works from every state and always releases the
device, so a failed open or a failed capture never leaves the camera held.
"""

from __future__ import annotations

from enum import Enum
import logging
from pathlib import Path
from typing import Callable, Optional, Tuple

import cv2
import numpy as np
import requests

from .errors import CameraUnavailable, FetchFailed, InvalidImage

logger = logging.getLogger(__name__)

CaptureFactory = Callable[[int, Tuple[int, int]], "cv2.VideoCapture"]


def read_file_source(path: Path) -> bytes:
    path = Path(path)
    if not path.is_file():
        raise InvalidImage(f"Input file not found: {path}")
    return path.read_bytes()


def fetch_url_source(url: str, session: Optional[requests.Session] = None, timeout: float = 30.0) -> bytes:
    http = session or requests
    try:
        resp = http.get(url, timeout=(5, timeout))
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise FetchFailed(f"Could not download image: {exc}") from exc
    return resp.content


def open_video_capture(device_index: int, frame_size: Tuple[int, int]) -> "cv2.VideoCapture":
    capture = cv2.VideoCapture(device_index)
    capture.set(cv2.CAP_PROP_FRAME_WIDTH, frame_size[0])
    capture.set(cv2.CAP_PROP_FRAME_HEIGHT, frame_size[1])
    return capture


class CameraState(str, Enum):
    IDLE = "idle"
    REQUESTING_PERMISSION = "requesting_permission"
    PREVIEWING = "previewing"
    CAPTURING = "capturing"
    CLOSED = "closed"


class CameraSession:
    def __init__(
        self,
        device_index: int = 0,
        factory: Optional[CaptureFactory] = None,
        frame_size: Tuple[int, int] = (1280, 720),
    ):
        self.device_index = device_index
        self.frame_size = frame_size
        self._factory = factory or open_video_capture
        self._capture = None
        self._state = CameraState.IDLE

    @property
    def state(self) -> CameraState:
        return self._state

    @property
    def active(self) -> bool:
        return self._state not in (CameraState.IDLE, CameraState.CLOSED)

    def open(self) -> "CameraSession":
        if self._state is not CameraState.IDLE:
            raise CameraUnavailable(f"Camera session cannot be opened from state {self._state.value}")
        self._state = CameraState.REQUESTING_PERMISSION
        try:
            self._capture = self._factory(self.device_index, self.frame_size)
            if self._capture is None or not self._capture.isOpened():
                raise CameraUnavailable(f"Camera {self.device_index} could not be opened")
            ok, frame = self._capture.read()
            if not ok or frame is None:
                raise CameraUnavailable(f"Camera {self.device_index} returned no frames")
        except CameraUnavailable:
            self.stop()
            raise
        except Exception as exc:  # noqa: BLE001
            self.stop()
            raise CameraUnavailable(f"Error accessing camera: {exc}") from exc
        self._state = CameraState.PREVIEWING
        logger.info("Camera %s ready (%sx%s)", self.device_index, frame.shape[1], frame.shape[0])
        return self

    def preview(self) -> np.ndarray:
        """Return the latest BGR frame while previewing."""
        if self._state is not CameraState.PREVIEWING:
            raise CameraUnavailable("Camera is not previewing")
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise CameraUnavailable("Camera stopped delivering frames")
        return frame

    def capture(self) -> bytes:
        """Grab one frame as PNG bytes, then release the camera either way."""
        if self._state is not CameraState.PREVIEWING:
            raise CameraUnavailable("Camera is not previewing")
        self._state = CameraState.CAPTURING
        try:
            ok, frame = self._capture.read()
            if not ok or frame is None:
                raise CameraUnavailable("Failed to capture a frame")
            ok, encoded = cv2.imencode(".png", frame)
            if not ok:
                raise CameraUnavailable("Failed to encode the captured frame")
            return encoded.tobytes()
        finally:
            self.stop()

    def stop(self) -> None:
        if self._state is CameraState.CLOSED:
            return
        capture, self._capture = self._capture, None
        self._state = CameraState.CLOSED
        if capture is not None:
            try:
                capture.release()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Failed to release camera %s: %s", self.device_index, exc)

    def __enter__(self) -> "CameraSession":
        if self._state is CameraState.IDLE:
            self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
