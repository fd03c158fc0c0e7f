"""
Webcam frame source for the selfie flow.
Reads frames with OpenCV, runs the landmark detector and yields CapturedFrame items.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import cv2
import numpy as np

from ..config import CameraSettings, QualitySettings
from ..state import FaceLandmarkFrame
from .landmarks import FaceLandmarkDetector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapturedFrame:
    """One evaluated frame: landmarks for the gate plus the JPEG a capture would keep."""

    landmarks: FaceLandmarkFrame
    jpeg: bytes
    timestamp: float


def encode_jpeg(image: np.ndarray, quality: int = 92) -> Optional[bytes]:
    ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        return None
    return buf.tobytes()


class WebcamFrameSource:
    """Async iterator over webcam frames; the device is opened on first use.

    ``close()`` releases the camera and the landmarker; iteration ends once the
    source is closed.
    """

    def __init__(
        self,
        camera: CameraSettings,
        quality: QualitySettings,
        *,
        detector: Optional[FaceLandmarkDetector] = None,
    ) -> None:
        self.camera = camera
        self._detector = detector or FaceLandmarkDetector(
            camera.landmarker_model_path,
            brightness_sample_size=quality.brightness_sample_size,
            min_brightness=quality.min_brightness,
        )
        self._cap: Optional[cv2.VideoCapture] = None
        self._closed = False
        # serializes device reads with release
        self._device_lock = threading.Lock()
        self._frame_interval = 1.0 / max(camera.fps, 1)

    def _open(self) -> None:
        logger.info("Opening webcam (camera_id=%s)", self.camera.camera_id)
        cap = cv2.VideoCapture(self.camera.camera_id)
        if not cap.isOpened():
            cap.release()
            raise RuntimeError(f"Failed to open webcam {self.camera.camera_id}")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.camera.resolution_width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.camera.resolution_height)
        cap.set(cv2.CAP_PROP_FPS, self.camera.fps)
        self._cap = cap

    def _read_and_detect(self) -> Optional[CapturedFrame]:
        with self._device_lock:
            if self._closed:
                return None
            if self._cap is None:
                self._open()
            ret, image = self._cap.read()
            if not ret or image is None:
                return None
            now = time.time()
            landmarks = self._detector.detect(image, int(now * 1000))
        jpeg = encode_jpeg(image, self.camera.jpeg_quality)
        if jpeg is None:
            logger.warning("webcam: failed to encode frame")
            return None
        return CapturedFrame(landmarks=landmarks, jpeg=jpeg, timestamp=now)

    async def frames(self) -> AsyncIterator[CapturedFrame]:
        while not self._closed:
            started = time.monotonic()
            frame = await asyncio.to_thread(self._read_and_detect)
            if self._closed:
                break
            if frame is not None:
                yield frame
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(self._frame_interval - elapsed, 0.0))

    def __aiter__(self) -> AsyncIterator[CapturedFrame]:
        return self.frames()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        with self._device_lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
            self._detector.close()
        logger.info("Webcam released")


__all__ = ["CapturedFrame", "WebcamFrameSource", "encode_jpeg"]
