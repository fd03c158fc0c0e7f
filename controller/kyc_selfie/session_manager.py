"""Session orchestration for the selfie verification flow."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

import httpx

from .auth.token import TokenError, TokenValidator
from .backend.http_client import DocumentInfo
from .backend.submission import SubmissionOrchestrator
from .quality.gate import WAITING_VERDICT, FrameQualityGate
from .sensors.webcam_service import CapturedFrame
from .state import (
    FlowResult,
    QualityVerdict,
    SessionEvent,
    SessionState,
    SubmissionOutcome,
    SubmissionResult,
    VerificationSession,
)

logger = logging.getLogger(__name__)

MISSING_TOKEN_MESSAGE = "Missing authentication token. Please return to the app and try again."
INVALID_TOKEN_MESSAGE = "Your verification link is no longer valid. Please return to the app and try again."
SUBMISSION_FAILED_MESSAGE = "Verification failed. Please try again."
CAMERA_ERROR_MESSAGE = "Unable to access camera. Please check permissions."
USER_CANCELLED_REASON = "user_cancelled"


class FrameSource(Protocol):
    def __aiter__(self) -> AsyncIterator[CapturedFrame]: ...

    def close(self) -> None: ...


FrameSourceFactory = Callable[[], FrameSource]


class SessionFlowError(RuntimeError):
    """Raised when a transition is requested from a state that does not allow it."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class VerificationSessionController:
    """Owns the verification session and applies every state change.

    The quality gate and the orchestrator only return values; this class is the
    single writer of :class:`VerificationSession`. Frames are either pushed
    through :meth:`process_frame` or pulled from ``frame_source_factory`` by a
    loop started on "begin" and stopped on capture, reset or leave.
    """

    _TERMINAL_RESULT_STATES = {SessionState.SUCCESS, SessionState.FAILED, SessionState.NO_TOKEN}
    _RESETTABLE_STATES = {SessionState.REVIEW, SessionState.FAILED}
    _SUBMITTABLE_STATES = {SessionState.REVIEW, SessionState.FAILED}

    def __init__(
        self,
        *,
        validator: TokenValidator,
        orchestrator: SubmissionOrchestrator,
        gate: Optional[FrameQualityGate] = None,
        frame_source_factory: Optional[FrameSourceFactory] = None,
        default_callback_url: Optional[str] = None,
        ui_queue_size: int = 8,
    ) -> None:
        self._validator = validator
        self._orchestrator = orchestrator
        self._gate = gate or FrameQualityGate()
        self._frame_source_factory = frame_source_factory
        self._default_callback_url = default_callback_url
        self._ui_queue_size = ui_queue_size
        self._ui_subscribers: List[asyncio.Queue[SessionEvent]] = []

        self._session: Optional[VerificationSession] = None
        self._token: Optional[str] = None
        # bumped whenever the session is replaced or left; stale results compare against it
        self._generation = 0
        self._latest_frame: Optional[CapturedFrame] = None
        self._frame_source: Optional[FrameSource] = None
        self._frame_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------

    @property
    def session(self) -> Optional[VerificationSession]:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.CLOSED

    def register_ui(self) -> asyncio.Queue[SessionEvent]:
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=self._ui_queue_size)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[SessionEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    # ------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------

    async def open(self, token: Optional[str], *, callback_url: Optional[str] = None) -> VerificationSession:
        """Enter the flow. A missing or unusable token lands in NO_TOKEN."""
        if self._session is not None:
            await self.leave()

        self._generation += 1
        self._token = token or None
        session = VerificationSession(
            state=SessionState.INTRO,
            last_quality_verdict=WAITING_VERDICT,
            callback_url=callback_url,
        )
        self._session = session

        if not self._token:
            logger.warning("session.open: no token supplied")
            session.state = SessionState.NO_TOKEN
            session.error_message = "token missing"
            session.user_message = MISSING_TOKEN_MESSAGE
        else:
            try:
                payload = self._validator.validate(self._token)
            except TokenError as exc:
                logger.warning("session.open: token rejected (%s)", exc.code.value)
                session.state = SessionState.NO_TOKEN
                session.error_message = str(exc)
                session.user_message = INVALID_TOKEN_MESSAGE
            else:
                session.subject_id = payload.subject_id
                if not session.callback_url:
                    session.callback_url = payload.callback_url
                logger.info("session.open: session for user %s (token %s...)", payload.subject_id, self._token[:12])

        self._publish("state")
        return session

    async def begin(self) -> None:
        session = self._require_state({SessionState.INTRO}, "begin")
        session.state = SessionState.CAMERA_ACTIVE
        logger.info("session.begin: camera active")
        self._publish("state")
        self._start_frame_loop()

    def process_frame(self, frame: CapturedFrame) -> Optional[QualityVerdict]:
        """Judge one frame. Ignored unless the camera is active and nothing is captured."""
        session = self._session
        if session is None or session.state is not SessionState.CAMERA_ACTIVE or session.captured_image is not None:
            return None

        verdict = self._gate.evaluate(frame.landmarks)
        previous = session.last_quality_verdict
        session.last_quality_verdict = verdict
        self._latest_frame = frame
        if verdict.reason_code is not previous.reason_code:
            self._publish("quality", {"ok": verdict.ok, "reason": verdict.reason_code.value, "message": verdict.message})
        return verdict

    async def capture(self) -> bool:
        """Keep the current frame. Refused (returns False) unless the last verdict is OK."""
        session = self._session
        if session is None or session.state is not SessionState.CAMERA_ACTIVE:
            logger.debug("session.capture: ignored in state %s", self.state.value)
            return False
        if not session.last_quality_verdict.ok or self._latest_frame is None:
            logger.debug("session.capture: refused, quality=%s", session.last_quality_verdict.reason_code.value)
            return False

        session.captured_image = self._latest_frame.jpeg
        session.state = SessionState.REVIEW
        self._latest_frame = None
        logger.info("session.capture: captured %d bytes", len(session.captured_image))
        self._publish("state")
        await self._stop_frame_loop()
        return True

    async def retake(self) -> None:
        self._require_state({SessionState.REVIEW}, "retake")
        await self._return_to_camera("retake")

    async def reset(self) -> None:
        self._require_state(self._RESETTABLE_STATES, "reset")
        await self._return_to_camera("reset")

    async def submit(self, *, document: Optional[DocumentInfo] = None) -> Optional[SubmissionResult]:
        """Re-validate the token and hand the captured image to the orchestrator.

        Returns None when a submission is already in flight. A result that
        arrives after the session moved on is returned but not applied.
        """
        session = self._session
        if session is not None and session.state is SessionState.SUBMITTING:
            logger.info("session.submit: submission already in flight; ignoring")
            return None
        session = self._require_state(self._SUBMITTABLE_STATES, "submit")
        if session.captured_image is None or not self._token:
            raise SessionFlowError("Please capture a selfie first", log_message="submit without captured image")

        try:
            payload = self._validator.validate(self._token)
        except TokenError as exc:
            logger.warning("session.submit: token rejected at submit time (%s)", exc.code.value)
            session.state = SessionState.FAILED
            session.error_message = str(exc)
            session.user_message = SUBMISSION_FAILED_MESSAGE
            self._publish("state", error=session.user_message)
            return None

        previous = session.submission_result
        reuse_asset = (
            previous.asset_url
            if previous is not None and not previous.ok and previous.asset_url
            else None
        )

        session.state = SessionState.SUBMITTING
        session.subject_id = payload.subject_id
        session.error_message = None
        session.user_message = None
        generation = self._generation
        self._publish("state")
        logger.info("session.submit: submitting for user %s", payload.subject_id)

        try:
            result = await self._orchestrator.submit(
                session.captured_image,
                payload.subject_id,
                self._token,
                existing_asset_url=reuse_asset,
                document=document,
            )
        except Exception as exc:
            logger.exception("session.submit: unexpected orchestrator error")
            result = SubmissionResult(SubmissionOutcome.NETWORK_ERROR, error_detail=f"unexpected: {exc!r}")

        if generation != self._generation or self._session is not session:
            logger.info("session.submit: discarding %s result for a session that moved on", result.outcome.value)
            return result

        session.submission_result = result
        if result.ok:
            session.state = SessionState.SUCCESS
            logger.info("session.submit: verification %s recorded", result.record_id)
            self._publish("state", {"record_id": result.record_id})
        else:
            session.state = SessionState.FAILED
            session.error_message = result.error_detail or result.outcome.value
            session.user_message = SUBMISSION_FAILED_MESSAGE
            logger.error("session.submit: %s - %s", result.outcome.value, session.error_message)
            self._publish("state", {"outcome": result.outcome.value}, error=session.user_message)
        return result

    async def cancel(self) -> FlowResult:
        """User backed out of the flow: discard the session and report a failed result."""
        session = self._require_state(set(SessionState) - {SessionState.CLOSED}, "cancel")
        redirect = self._redirect_url(
            session.callback_url,
            {"status": "failed", "reason": USER_CANCELLED_REASON},
        )
        result = FlowResult(
            success=False,
            status="failed",
            user_id=session.subject_id,
            reason=USER_CANCELLED_REASON,
            redirect_url=redirect,
        )
        logger.info("session.cancel: user cancelled in state %s", session.state.value)
        await self.leave()
        return result

    async def leave(self) -> None:
        """Release the camera and discard the session."""
        await self._stop_frame_loop()
        self._generation += 1
        if self._session is not None:
            logger.info("session.leave: discarding session in state %s", self._session.state.value)
        self._session = None
        self._token = None
        self._latest_frame = None
        self._publish("state")

    # ------------------------------------------------------------
    # Results
    # ------------------------------------------------------------

    def flow_result(self) -> Optional[FlowResult]:
        session = self._session
        if session is None or session.state not in self._TERMINAL_RESULT_STATES:
            return None
        redirect = session.callback_url or self._default_callback_url
        if session.state is SessionState.SUCCESS:
            return FlowResult(
                success=True,
                status="success",
                verification_id=session.submission_result.record_id if session.submission_result else None,
                user_id=session.subject_id,
                redirect_url=redirect,
            )
        return FlowResult(
            success=False,
            status="failed",
            user_id=session.subject_id,
            reason=session.user_message,
            redirect_url=redirect,
        )

    # ------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------

    def _require_state(self, allowed: set, action: str) -> VerificationSession:
        session = self._session
        if session is None or session.state not in allowed:
            raise SessionFlowError(
                "This action is not available right now",
                log_message=f"{action} not allowed in state {self.state.value}",
            )
        return session

    def _redirect_url(self, callback_url: Optional[str], params: Dict[str, str]) -> Optional[str]:
        """Append ``params`` to the callback; an unusable callback falls back to the default one."""
        for candidate in (callback_url, self._default_callback_url):
            if not candidate:
                continue
            try:
                url = httpx.URL(candidate)
            except httpx.InvalidURL:
                logger.warning("session.redirect: ignoring invalid callback url %r", candidate)
                continue
            if url.scheme not in ("http", "https") or not url.host:
                logger.warning("session.redirect: ignoring invalid callback url %r", candidate)
                continue
            return str(url.copy_merge_params(params))
        return None

    async def _return_to_camera(self, action: str) -> None:
        session = self._session
        session.captured_image = None
        session.error_message = None
        session.user_message = None
        session.submission_result = None
        session.last_quality_verdict = WAITING_VERDICT
        session.state = SessionState.CAMERA_ACTIVE
        self._latest_frame = None
        logger.info("session.%s: back to camera", action)
        self._publish("state")
        self._start_frame_loop()

    def _start_frame_loop(self) -> None:
        if self._frame_source_factory is None:
            return
        if self._frame_task and not self._frame_task.done():
            return
        source = self._frame_source_factory()
        self._frame_source = source
        self._frame_task = asyncio.create_task(
            self._frame_loop(source, self._generation),
            name="session-frame-loop",
        )

    async def _stop_frame_loop(self) -> None:
        task, source = self._frame_task, self._frame_source
        self._frame_task = None
        self._frame_source = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping frame loop: %s", e)
        if source is not None:
            await asyncio.to_thread(source.close)

    async def _frame_loop(self, source: FrameSource, generation: int) -> None:
        try:
            async for frame in source:
                session = self._session
                if (
                    generation != self._generation
                    or session is None
                    or session.state is not SessionState.CAMERA_ACTIVE
                    or session.captured_image is not None
                ):
                    break
                self.process_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("session.frame_loop: frame source failed")
            if generation == self._generation and self._session is not None:
                self._session.user_message = CAMERA_ERROR_MESSAGE
                self._publish("camera_error", error=CAMERA_ERROR_MESSAGE)

    def _publish(self, event_type: str, data: Optional[Dict[str, Any]] = None, *, error: Optional[str] = None) -> None:
        """Broadcast event to all UI subscribers, dropping the oldest event on a full queue."""
        payload = dict(data or {})
        if self._session is not None and event_type == "state":
            payload.setdefault("session", self._session.snapshot())
        event = SessionEvent(type=event_type, state=self.state, data=payload, error=error)
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)


__all__ = [
    "VerificationSessionController",
    "SessionFlowError",
    "FrameSource",
    "FrameSourceFactory",
    "USER_CANCELLED_REASON",
]
