"""Tests for the verification session state machine."""

import asyncio

import pytest

from conftest import NOW, SECRET, ListFrameSource, captured, good_landmarks, make_token
from kyc_selfie.auth.token import TokenValidator
from kyc_selfie.session_manager import (
    MISSING_TOKEN_MESSAGE,
    SUBMISSION_FAILED_MESSAGE,
    SessionFlowError,
    VerificationSessionController,
)
from kyc_selfie.state import FaceLandmarkFrame, SessionState, SubmissionOutcome, SubmissionResult

DARK = captured(FaceLandmarkFrame.no_face(5.0), jpeg=b"dark")


class FakeOrchestrator:
    """Records calls; optionally blocks until released."""

    def __init__(self, result=None, *, block=False):
        self.result = result or SubmissionResult(SubmissionOutcome.SUCCESS, asset_url="https://x/y.jpg", record_id=42)
        self.calls = []
        self.release = asyncio.Event()
        if not block:
            self.release.set()

    async def submit(self, image, subject_id, token, *, existing_asset_url=None, document=None):
        self.calls.append(
            {"image": image, "subject_id": subject_id, "token": token, "existing_asset_url": existing_asset_url}
        )
        await self.release.wait()
        return self.result


class MutableClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def make_controller(orchestrator, validator=None, **kwargs):
    return VerificationSessionController(
        validator=validator or TokenValidator(SECRET, clock=lambda: NOW),
        orchestrator=orchestrator,
        default_callback_url="https://merchant.test/cb",
        **kwargs,
    )


async def in_review(controller, token):
    await controller.open(token)
    await controller.begin()
    controller.process_frame(captured())
    assert await controller.capture()


class TestEntry:
    @pytest.mark.asyncio
    async def test_missing_token_goes_to_no_token(self):
        controller = make_controller(FakeOrchestrator())
        session = await controller.open(None)

        assert session.state is SessionState.NO_TOKEN
        assert session.user_message == MISSING_TOKEN_MESSAGE
        with pytest.raises(SessionFlowError):
            await controller.begin()
        result = controller.flow_result()
        assert result.to_dict()["status"] == "failed"
        assert result.redirect_url == "https://merchant.test/cb"

    @pytest.mark.asyncio
    async def test_expired_token_goes_to_no_token_without_leaking(self):
        controller = make_controller(FakeOrchestrator())
        session = await controller.open(make_token({"user_id": 7, "exp": int(NOW) - 5}))

        assert session.state is SessionState.NO_TOKEN
        assert "EXPIRED" in session.error_message
        assert "EXPIRED" not in session.user_message

    @pytest.mark.asyncio
    async def test_valid_token_enters_intro(self, token):
        controller = make_controller(FakeOrchestrator())
        session = await controller.open(token, callback_url="https://app/return")

        assert session.state is SessionState.INTRO
        assert session.subject_id == 7
        assert session.callback_url == "https://app/return"

    @pytest.mark.asyncio
    async def test_callback_falls_back_to_token_claim(self):
        controller = make_controller(FakeOrchestrator())
        session = await controller.open(make_token({"user_id": 7, "callback_url": "https://claim/cb"}))
        assert session.callback_url == "https://claim/cb"

    @pytest.mark.asyncio
    async def test_non_finite_expiry_goes_to_no_token(self):
        controller = make_controller(FakeOrchestrator())
        session = await controller.open(make_token({"user_id": 5, "exp": float("inf")}))

        assert session.state is SessionState.NO_TOKEN
        assert "MALFORMED" in session.error_message
        with pytest.raises(SessionFlowError):
            await controller.begin()


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_reports_failed_result_with_redirect(self, token):
        controller = make_controller(FakeOrchestrator())
        await controller.open(token, callback_url="https://app.test/return?ref=abc")

        result = await controller.cancel()

        assert result.to_dict() == {
            "success": False,
            "status": "failed",
            "userId": 7,
            "reason": "user_cancelled",
            "redirectUrl": "https://app.test/return?ref=abc&status=failed&reason=user_cancelled",
        }
        assert controller.state is SessionState.CLOSED
        assert controller.flow_result() is None

    @pytest.mark.asyncio
    async def test_invalid_callback_falls_back_to_default(self):
        controller = make_controller(FakeOrchestrator())
        await controller.open(None, callback_url="not a url")

        result = await controller.cancel()

        assert result.redirect_url == "https://merchant.test/cb?status=failed&reason=user_cancelled"
        assert result.user_id is None

    @pytest.mark.asyncio
    async def test_cancel_during_submission_discards_late_result(self, token):
        orchestrator = FakeOrchestrator(block=True)
        controller = make_controller(orchestrator)
        await in_review(controller, token)

        pending = asyncio.create_task(controller.submit())
        await asyncio.sleep(0)
        result = await controller.cancel()
        orchestrator.release.set()
        await pending

        assert result.reason == "user_cancelled"
        assert controller.session is None

    @pytest.mark.asyncio
    async def test_cancel_without_session_is_rejected(self):
        controller = make_controller(FakeOrchestrator())
        with pytest.raises(SessionFlowError):
            await controller.cancel()


class TestCapture:
    @pytest.mark.asyncio
    async def test_frames_ignored_before_begin(self, token):
        controller = make_controller(FakeOrchestrator())
        await controller.open(token)
        assert controller.process_frame(captured()) is None
        assert not controller.session.last_quality_verdict.ok

    @pytest.mark.asyncio
    async def test_capture_refused_while_quality_fails(self, token):
        controller = make_controller(FakeOrchestrator())
        await controller.open(token)
        await controller.begin()
        verdict = controller.process_frame(DARK)

        assert not verdict.ok
        assert await controller.capture() is False
        assert controller.session.captured_image is None
        assert controller.state is SessionState.CAMERA_ACTIVE

    @pytest.mark.asyncio
    async def test_capture_uses_latest_frame_only(self, token):
        controller = make_controller(FakeOrchestrator())
        await controller.open(token)
        await controller.begin()
        controller.process_frame(captured(jpeg=b"good"))
        controller.process_frame(DARK)

        assert await controller.capture() is False

    @pytest.mark.asyncio
    async def test_capture_then_retake(self, token):
        controller = make_controller(FakeOrchestrator())
        await controller.open(token)
        await controller.begin()
        controller.process_frame(captured(jpeg=b"selfie"))

        assert await controller.capture() is True
        assert controller.state is SessionState.REVIEW
        assert controller.session.captured_image == b"selfie"
        # frames after capture no longer change anything
        assert controller.process_frame(DARK) is None

        await controller.retake()
        assert controller.state is SessionState.CAMERA_ACTIVE
        assert controller.session.captured_image is None
        assert await controller.capture() is False

    @pytest.mark.asyncio
    async def test_submit_without_capture_is_rejected(self, token):
        orchestrator = FakeOrchestrator()
        controller = make_controller(orchestrator)
        await controller.open(token)
        await controller.begin()

        with pytest.raises(SessionFlowError):
            await controller.submit()
        assert orchestrator.calls == []


class TestSubmit:
    @pytest.mark.asyncio
    async def test_concurrent_submits_call_orchestrator_once(self, token):
        orchestrator = FakeOrchestrator(block=True)
        controller = make_controller(orchestrator)
        await in_review(controller, token)

        first = asyncio.create_task(controller.submit())
        await asyncio.sleep(0)
        assert controller.state is SessionState.SUBMITTING
        second = await controller.submit()
        orchestrator.release.set()
        result = await first

        assert second is None
        assert result.ok
        assert len(orchestrator.calls) == 1
        assert controller.state is SessionState.SUCCESS

    @pytest.mark.asyncio
    async def test_subject_comes_from_token(self, token):
        orchestrator = FakeOrchestrator()
        controller = make_controller(orchestrator)
        await in_review(controller, token)

        await controller.submit()

        call = orchestrator.calls[0]
        assert call["subject_id"] == 7
        assert call["token"] == token
        assert call["image"] == captured().jpeg

    @pytest.mark.asyncio
    async def test_failure_then_reset(self, token):
        failure = SubmissionResult(SubmissionOutcome.UPLOAD_FAILED, error_detail="upload failed: 500 - boom")
        controller = make_controller(FakeOrchestrator(failure))
        await in_review(controller, token)

        await controller.submit()

        session = controller.session
        assert session.state is SessionState.FAILED
        assert session.error_message == "upload failed: 500 - boom"
        assert session.user_message == SUBMISSION_FAILED_MESSAGE
        assert session.subject_id == 7
        assert controller.flow_result().to_dict()["reason"] == SUBMISSION_FAILED_MESSAGE

        await controller.reset()
        assert session.state is SessionState.CAMERA_ACTIVE
        assert session.captured_image is None
        assert session.error_message is None
        assert session.submission_result is None

    @pytest.mark.asyncio
    async def test_retry_reuses_uploaded_asset(self, token):
        failure = SubmissionResult(SubmissionOutcome.RECORD_CREATE_FAILED, asset_url="https://x/y.jpg")
        orchestrator = FakeOrchestrator(failure)
        controller = make_controller(orchestrator)
        await in_review(controller, token)

        await controller.submit()
        orchestrator.result = SubmissionResult(SubmissionOutcome.SUCCESS, asset_url="https://x/y.jpg", record_id=9)
        await controller.submit()

        assert orchestrator.calls[0]["existing_asset_url"] is None
        assert orchestrator.calls[1]["existing_asset_url"] == "https://x/y.jpg"
        assert controller.state is SessionState.SUCCESS

    @pytest.mark.asyncio
    async def test_token_revalidated_at_submit(self, token):
        clock = MutableClock(NOW)
        orchestrator = FakeOrchestrator()
        controller = make_controller(orchestrator, TokenValidator(SECRET, clock=clock))
        await in_review(controller, token)

        clock.now = NOW + 3600
        assert await controller.submit() is None

        assert orchestrator.calls == []
        assert controller.state is SessionState.FAILED
        assert "EXPIRED" in controller.session.error_message
        assert controller.session.captured_image is not None

    @pytest.mark.asyncio
    async def test_late_result_is_discarded_after_leave(self, token):
        orchestrator = FakeOrchestrator(block=True)
        controller = make_controller(orchestrator)
        await in_review(controller, token)

        pending = asyncio.create_task(controller.submit())
        await asyncio.sleep(0)
        await controller.leave()
        orchestrator.release.set()
        result = await pending

        assert result.ok
        assert controller.session is None
        assert controller.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_late_result_is_not_applied_to_new_session(self, token):
        orchestrator = FakeOrchestrator(block=True)
        controller = make_controller(orchestrator)
        await in_review(controller, token)

        pending = asyncio.create_task(controller.submit())
        await asyncio.sleep(0)
        await controller.open(token)
        orchestrator.release.set()
        await pending

        assert controller.state is SessionState.INTRO
        assert controller.session.submission_result is None

    @pytest.mark.asyncio
    async def test_reset_not_allowed_while_submitting(self, token):
        orchestrator = FakeOrchestrator(block=True)
        controller = make_controller(orchestrator)
        await in_review(controller, token)

        pending = asyncio.create_task(controller.submit())
        await asyncio.sleep(0)
        with pytest.raises(SessionFlowError):
            await controller.reset()
        orchestrator.release.set()
        await pending


class TestFrameLoop:
    @pytest.mark.asyncio
    async def test_loop_feeds_gate_and_releases_camera_on_capture(self, token):
        sources = []

        def factory():
            source = ListFrameSource([DARK, captured(jpeg=b"live")])
            sources.append(source)
            return source

        controller = make_controller(FakeOrchestrator(), frame_source_factory=factory)
        await controller.open(token)
        await controller.begin()
        for _ in range(100):
            if controller.session.last_quality_verdict.ok:
                break
            await asyncio.sleep(0.01)

        assert await controller.capture()
        assert controller.session.captured_image == b"live"
        assert sources[0].closed

        await controller.retake()
        assert len(sources) == 2
        await controller.leave()
        assert sources[1].closed

    @pytest.mark.asyncio
    async def test_ui_events(self, token):
        controller = make_controller(FakeOrchestrator())
        queue = controller.register_ui()
        await controller.open(token)
        await controller.begin()
        controller.process_frame(captured())

        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        controller.unregister_ui(queue)

        assert [e.type for e in events][-1] == "quality"
        assert events[-1].data["reason"] == "OK"
        assert any(e.state is SessionState.CAMERA_ACTIVE for e in events)


@pytest.mark.asyncio
async def test_end_to_end_success(orchestrator, backend, token):
    controller = make_controller(orchestrator)
    await controller.open(token)
    await controller.begin()
    for _ in range(5):
        assert controller.process_frame(captured(good_landmarks())).ok

    assert await controller.capture()
    result = await controller.submit()

    assert result.asset_url == "https://x/y.jpg"
    flow = controller.flow_result().to_dict()
    assert flow["success"] is True
    assert flow["verificationId"] == 42
    assert flow["status"] == "success"
    assert flow["userId"] == 7
    assert len(backend.requests) == 2
