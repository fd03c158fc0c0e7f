"""Frame quality gate deciding whether the current frame may be captured."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..config import QualitySettings
from ..state import FaceLandmarkFrame, QualityReason, QualityVerdict

# Defaults; every value can be overridden through QualitySettings.
MIN_BRIGHTNESS = 40.0
CENTER_MIN = 0.3
CENTER_MAX = 0.7
YAW_RATIO_MIN = 0.3
YAW_RATIO_MAX = 0.7
MAX_EYE_BLINK = 0.5

MESSAGES = {
    QualityReason.TOO_DARK: "Too dark. Ensure good lighting.",
    QualityReason.NO_FACE: "No face detected. Remove sunglasses or cap.",
    QualityReason.OFF_CENTER: "Position your face in the center.",
    QualityReason.NOT_FACING_FORWARD: "Look straight at the camera.",
    QualityReason.EYES_CLOSED: "Make sure your eyes are open.",
    QualityReason.OK: "Perfect! Hold still and capture.",
}

WAITING_VERDICT = QualityVerdict(ok=False, reason_code=QualityReason.NO_FACE, message="Scanning your face...")


@dataclass(frozen=True)
class QualityThresholds:
    min_brightness: float = MIN_BRIGHTNESS
    center_min: float = CENTER_MIN
    center_max: float = CENTER_MAX
    yaw_ratio_min: float = YAW_RATIO_MIN
    yaw_ratio_max: float = YAW_RATIO_MAX
    max_eye_blink: float = MAX_EYE_BLINK

    @classmethod
    def from_settings(cls, settings: QualitySettings) -> "QualityThresholds":
        return cls(
            min_brightness=settings.min_brightness,
            center_min=settings.center_min,
            center_max=settings.center_max,
            yaw_ratio_min=settings.yaw_ratio_min,
            yaw_ratio_max=settings.yaw_ratio_max,
            max_eye_blink=settings.max_eye_blink,
        )


def _fail(reason: QualityReason) -> QualityVerdict:
    return QualityVerdict(ok=False, reason_code=reason, message=MESSAGES[reason])


class FrameQualityGate:
    """Stateless per-frame judge.

    Checks run cheapest first and the first failure wins: brightness, face
    presence, nose centering, yaw proxy, open eyes. Each frame is judged on its
    own; there is no smoothing across frames.
    """

    def __init__(self, thresholds: Optional[QualityThresholds] = None) -> None:
        self.thresholds = thresholds or QualityThresholds()

    def evaluate(self, frame: FaceLandmarkFrame) -> QualityVerdict:
        t = self.thresholds

        if frame.average_brightness < t.min_brightness:
            return _fail(QualityReason.TOO_DARK)

        if not frame.has_face:
            return _fail(QualityReason.NO_FACE)

        nose = frame.nose
        if not (t.center_min <= nose.x <= t.center_max and t.center_min <= nose.y <= t.center_max):
            return _fail(QualityReason.OFF_CENTER)

        ratio = self.yaw_ratio(frame)
        if ratio is None or not (t.yaw_ratio_min <= ratio <= t.yaw_ratio_max):
            return _fail(QualityReason.NOT_FACING_FORWARD)

        if frame.eye_blink_left > t.max_eye_blink or frame.eye_blink_right > t.max_eye_blink:
            return _fail(QualityReason.EYES_CLOSED)

        return QualityVerdict(ok=True, reason_code=QualityReason.OK, message=MESSAGES[QualityReason.OK])

    @staticmethod
    def yaw_ratio(frame: FaceLandmarkFrame) -> Optional[float]:
        """Horizontal nose-to-left-ear share of the ear span; 0.5 is facing forward.

        None when both ears sit on the nose column (degenerate landmarks).
        """
        d_left = abs(frame.nose.x - frame.left_ear.x)
        d_right = abs(frame.nose.x - frame.right_ear.x)
        total = d_left + d_right
        if total == 0:
            return None
        return d_left / total


__all__ = ["FrameQualityGate", "QualityThresholds", "MESSAGES", "WAITING_VERDICT"]
