"""Shared state definitions for the selfie verification flow."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class SessionState(str, enum.Enum):
    """
    Verification session states:

    1. INTRO          - Flow entered with a token, waiting for "begin"
    2. NO_TOKEN       - Terminal: no usable credential at entry
    3. CAMERA_ACTIVE  - Frames evaluated by the quality gate, capture allowed on OK
    4. REVIEW         - Selfie captured, user may retake or submit
    5. SUBMITTING     - Upload + record creation in flight
    6. SUCCESS        - Compliance record created
    7. FAILED         - Submission or token re-validation failed (retake/reset/retry)
    8. CLOSED         - User left the flow; session discarded
    """
    INTRO = "intro"
    NO_TOKEN = "no_token"
    CAMERA_ACTIVE = "camera_active"
    REVIEW = "review"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILED = "failed"
    CLOSED = "closed"


class QualityReason(str, enum.Enum):
    TOO_DARK = "TOO_DARK"
    NO_FACE = "NO_FACE"
    OFF_CENTER = "OFF_CENTER"
    NOT_FACING_FORWARD = "NOT_FACING_FORWARD"
    EYES_CLOSED = "EYES_CLOSED"
    OK = "OK"


class SubmissionOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    UPLOAD_FAILED = "UPLOAD_FAILED"
    RECORD_CREATE_FAILED = "RECORD_CREATE_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"


@dataclass(frozen=True)
class Point2D:
    """Landmark position normalized to [0, 1] of the source frame."""

    x: float
    y: float


@dataclass(frozen=True)
class FaceLandmarkFrame:
    """Per-frame landmark snapshot handed to the quality gate."""

    has_face: bool
    average_brightness: float
    nose: Point2D = Point2D(0.0, 0.0)
    left_ear: Point2D = Point2D(0.0, 0.0)
    right_ear: Point2D = Point2D(0.0, 0.0)
    eye_blink_left: float = 0.0
    eye_blink_right: float = 0.0

    @classmethod
    def no_face(cls, average_brightness: float) -> "FaceLandmarkFrame":
        return cls(has_face=False, average_brightness=average_brightness)


@dataclass(frozen=True)
class QualityVerdict:
    ok: bool
    reason_code: QualityReason
    message: str


@dataclass(frozen=True)
class SubmissionResult:
    """Outcome of one submission attempt."""

    outcome: SubmissionOutcome
    asset_url: Optional[str] = None
    record_id: Optional[int] = None
    error_detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is SubmissionOutcome.SUCCESS


@dataclass
class VerificationSession:
    """Mutable session record; written only by the session controller."""

    state: SessionState
    last_quality_verdict: QualityVerdict
    captured_image: Optional[bytes] = None
    subject_id: Optional[int] = None
    submission_result: Optional[SubmissionResult] = None
    error_message: Optional[str] = None
    user_message: Optional[str] = None
    callback_url: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        verdict = self.last_quality_verdict
        result = self.submission_result
        return {
            "state": self.state.value,
            "has_capture": self.captured_image is not None,
            "quality": {"ok": verdict.ok, "reason": verdict.reason_code.value, "message": verdict.message},
            "subject_id": self.subject_id,
            "submission": None if result is None else {
                "outcome": result.outcome.value,
                "asset_url": result.asset_url,
                "record_id": result.record_id,
            },
            "error": self.user_message,
        }


@dataclass(frozen=True)
class FlowResult:
    """Outcome reported to whoever launched the flow."""

    success: bool
    status: str
    verification_id: Optional[int] = None
    user_id: Optional[int] = None
    reason: Optional[str] = None
    redirect_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "status": self.status}
        if self.verification_id is not None:
            payload["verificationId"] = self.verification_id
        if self.user_id is not None:
            payload["userId"] = self.user_id
        if self.reason:
            payload["reason"] = self.reason
        if self.redirect_url:
            payload["redirectUrl"] = self.redirect_url
        return payload


@dataclass
class SessionEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    state: SessionState
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


__all__ = [
    "SessionState",
    "QualityReason",
    "SubmissionOutcome",
    "Point2D",
    "FaceLandmarkFrame",
    "QualityVerdict",
    "SubmissionResult",
    "VerificationSession",
    "FlowResult",
    "SessionEvent",
]
