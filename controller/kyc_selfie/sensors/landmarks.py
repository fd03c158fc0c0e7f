"""MediaPipe FaceLandmarker adapter producing FaceLandmarkFrame snapshots."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import cv2
import numpy as np

from ..state import FaceLandmarkFrame, Point2D

logger = logging.getLogger(__name__)

# MediaPipe face mesh indices
NOSE_TIP = 1
LEFT_EAR = 234
RIGHT_EAR = 454

EYE_BLINK_LEFT = "eyeBlinkLeft"
EYE_BLINK_RIGHT = "eyeBlinkRight"


def average_brightness(image_bgr: np.ndarray, sample_size: int = 100) -> float:
    """Mean of (R+G+B)/3 over a small downsampled copy of the frame."""
    if image_bgr is None or image_bgr.size == 0:
        return 0.0
    small = cv2.resize(image_bgr, (sample_size, sample_size), interpolation=cv2.INTER_AREA)
    if small.ndim == 2:
        return float(small.mean())
    return float(small[..., :3].astype(np.float32).mean())


def _point(landmark: Any) -> Point2D:
    return Point2D(float(landmark.x), float(landmark.y))


def _blend_score(categories: Sequence[Any], name: str) -> float:
    for category in categories:
        if getattr(category, "category_name", None) == name:
            return float(category.score)
    return 0.0


def landmark_frame_from_result(result: Any, brightness: float) -> FaceLandmarkFrame:
    """Convert a FaceLandmarkerResult (first face only) into a FaceLandmarkFrame."""
    faces = getattr(result, "face_landmarks", None) or []
    if not faces:
        return FaceLandmarkFrame.no_face(brightness)

    landmarks = faces[0]
    if len(landmarks) <= RIGHT_EAR:
        logger.debug("landmarks: incomplete mesh (%d points), treating as no face", len(landmarks))
        return FaceLandmarkFrame.no_face(brightness)

    blendshapes = getattr(result, "face_blendshapes", None) or []
    categories = blendshapes[0] if blendshapes else []

    return FaceLandmarkFrame(
        has_face=True,
        average_brightness=brightness,
        nose=_point(landmarks[NOSE_TIP]),
        left_ear=_point(landmarks[LEFT_EAR]),
        right_ear=_point(landmarks[RIGHT_EAR]),
        eye_blink_left=_blend_score(categories, EYE_BLINK_LEFT),
        eye_blink_right=_blend_score(categories, EYE_BLINK_RIGHT),
    )


class FaceLandmarkDetector:
    """Lazily created MediaPipe FaceLandmarker in VIDEO mode with blend-shapes."""

    def __init__(
        self,
        model_path: Path,
        *,
        brightness_sample_size: int = 100,
        min_brightness: Optional[float] = None,
    ) -> None:
        self.model_path = Path(model_path)
        self.brightness_sample_size = brightness_sample_size
        # frames darker than this are reported without running the model
        self.min_brightness = min_brightness
        self._landmarker = None
        self._last_timestamp_ms = -1

    @property
    def landmarker(self):
        if self._landmarker is None:
            if not self.model_path.exists():
                raise FileNotFoundError(f"FaceLandmarker model not found at {self.model_path}")
            import mediapipe as mp

            options = mp.tasks.vision.FaceLandmarkerOptions(
                base_options=mp.tasks.BaseOptions(model_asset_path=str(self.model_path)),
                running_mode=mp.tasks.vision.RunningMode.VIDEO,
                num_faces=1,
                output_face_blendshapes=True,
            )
            self._landmarker = mp.tasks.vision.FaceLandmarker.create_from_options(options)
            logger.info("FaceLandmarker loaded from %s", self.model_path)
        return self._landmarker

    def detect(self, image_bgr: np.ndarray, timestamp_ms: int) -> FaceLandmarkFrame:
        brightness = average_brightness(image_bgr, self.brightness_sample_size)
        if self.min_brightness is not None and brightness < self.min_brightness:
            return FaceLandmarkFrame.no_face(brightness)

        import mediapipe as mp

        # VIDEO mode rejects non-increasing timestamps
        timestamp_ms = max(int(timestamp_ms), self._last_timestamp_ms + 1)
        self._last_timestamp_ms = timestamp_ms

        rgb = cv2.cvtColor(image_bgr, cv2.COLOR_BGR2RGB)
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb)
        result = self.landmarker.detect_for_video(mp_image, timestamp_ms)
        return landmark_frame_from_result(result, brightness)

    def close(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None


__all__ = ["FaceLandmarkDetector", "average_brightness", "landmark_frame_from_result"]
