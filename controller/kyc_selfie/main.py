"""FastAPI entry-point for the selfie KYC controller."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .auth.token import TokenError, TokenValidator
from .backend.http_client import ComplianceHttpClient, DocumentInfo
from .backend.submission import InvalidImageError, SubmissionOrchestrator, image_to_bytes
from .config import Settings, get_settings
from .logging_config import configure_logging
from .quality.gate import FrameQualityGate, QualityThresholds
from .sensors.webcam_service import WebcamFrameSource
from .session_manager import (
    INVALID_TOKEN_MESSAGE,
    SUBMISSION_FAILED_MESSAGE,
    FrameSourceFactory,
    SessionFlowError,
    VerificationSessionController,
)
from .state import FlowResult, SessionState

logger = logging.getLogger(__name__)


class SessionStartRequest(BaseModel):
    token: Optional[str] = None
    callback_url: Optional[str] = None


class SubmitRequest(BaseModel):
    document_type: Optional[str] = None
    document_number: Optional[str] = None

    def document(self) -> Optional[DocumentInfo]:
        if self.document_type and self.document_number:
            return DocumentInfo(self.document_type, self.document_number)
        return None


class VerifyRequest(BaseModel):
    image: Optional[str] = None
    token: Optional[str] = None


def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    frame_source_factory: Optional[FrameSourceFactory] = None,
    configure_logs: bool = True,
) -> FastAPI:
    """Build the controller app. Tests inject a fake backend transport and frame source."""

    settings = settings or get_settings()
    if configure_logs:
        configure_logging(settings)

    validator = TokenValidator.from_settings(settings)
    client = ComplianceHttpClient(settings.backend, transport=transport)
    orchestrator = SubmissionOrchestrator(client)
    if frame_source_factory is None:
        def frame_source_factory() -> WebcamFrameSource:
            return WebcamFrameSource(settings.camera, settings.quality)

    controller = VerificationSessionController(
        validator=validator,
        orchestrator=orchestrator,
        gate=FrameQualityGate(QualityThresholds.from_settings(settings.quality)),
        frame_source_factory=frame_source_factory,
        default_callback_url=settings.default_callback_url,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Controller ready (decode_only_tokens=%s)", validator.decode_only)
        yield
        try:
            await controller.leave()
        except Exception as e:
            logger.warning("Error leaving session on shutdown: %s", e)
        await client.aclose()
        logger.info("Application shutdown complete")

    app = FastAPI(title="kyc-selfie-controller", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.controller = controller
    app.state.validator = validator
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SessionFlowError)
    async def session_flow_handler(request: Request, exc: SessionFlowError) -> JSONResponse:
        logger.info("Rejected %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": exc.user_message, "state": controller.state.value},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Validation error in %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        logger.exception("Unhandled exception in %s: %s", request.url.path, exc)
        return PlainTextResponse("Internal server error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    def session_payload() -> dict:
        session = controller.session
        payload = {"state": controller.state.value}
        if session is not None:
            payload.update(session.snapshot())
        result = controller.flow_result()
        if result is not None:
            payload["result"] = result.to_dict()
        return payload

    @app.get("/healthz")
    async def healthcheck() -> JSONResponse:
        return JSONResponse({"status": "ok", "state": controller.state.value})

    @app.get("/session")
    async def get_session() -> JSONResponse:
        return JSONResponse(session_payload())

    @app.post("/session")
    async def start_session(payload: SessionStartRequest) -> JSONResponse:
        await controller.open(payload.token, callback_url=payload.callback_url)
        return JSONResponse(session_payload())

    @app.post("/session/begin")
    async def begin_session() -> JSONResponse:
        await controller.begin()
        return JSONResponse(session_payload())

    @app.post("/session/capture")
    async def capture() -> JSONResponse:
        captured = await controller.capture()
        return JSONResponse({"captured": captured, **session_payload()})

    @app.post("/session/retake")
    async def retake() -> JSONResponse:
        await controller.retake()
        return JSONResponse(session_payload())

    @app.post("/session/submit")
    async def submit(payload: Optional[SubmitRequest] = None) -> JSONResponse:
        document = payload.document() if payload else None
        result = await controller.submit(document=document)
        if result is None and controller.state is SessionState.SUBMITTING:
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"error": "Submission already in progress", **session_payload()},
            )
        return JSONResponse(session_payload())

    @app.post("/session/reset")
    async def reset() -> JSONResponse:
        await controller.reset()
        return JSONResponse(session_payload())

    @app.post("/session/cancel")
    async def cancel() -> JSONResponse:
        result = await controller.cancel()
        return JSONResponse({"state": controller.state.value, "result": result.to_dict()})

    @app.post("/session/leave")
    async def leave() -> JSONResponse:
        await controller.leave()
        return JSONResponse(session_payload())

    @app.post("/api/verify")
    async def verify(payload: VerifyRequest) -> JSONResponse:
        """One-shot verification for clients that capture the selfie themselves."""
        if not payload.image:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Image data is required"})
        try:
            image = image_to_bytes(payload.image)
        except InvalidImageError as exc:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

        if not payload.token:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content=FlowResult(success=False, status="failed", reason=INVALID_TOKEN_MESSAGE).to_dict(),
            )
        try:
            token_payload = validator.validate(payload.token)
        except TokenError as exc:
            logger.warning("api.verify: token rejected (%s)", exc.code.value)
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content=FlowResult(success=False, status="failed", reason=INVALID_TOKEN_MESSAGE).to_dict(),
            )

        result = await orchestrator.submit(image, token_payload.subject_id, payload.token)
        if result.ok:
            body = FlowResult(
                success=True,
                status="success",
                verification_id=result.record_id,
                user_id=token_payload.subject_id,
            )
            return JSONResponse(body.to_dict())

        logger.error("api.verify: %s - %s", result.outcome.value, result.error_detail)
        body = FlowResult(
            success=False,
            status="failed",
            user_id=token_payload.subject_id,
            reason=SUBMISSION_FAILED_MESSAGE,
        )
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body.to_dict())

    @app.websocket("/ws/session")
    async def session_socket(ws: WebSocket) -> None:
        await ws.accept()
        queue = controller.register_ui()
        try:
            while True:
                event = await queue.get()
                message = {"type": event.type, "state": event.state.value, "data": event.data}
                if event.error:
                    message["error"] = event.error
                await ws.send_json(message)
        except (WebSocketDisconnect, asyncio.CancelledError):
            pass
        except Exception as e:
            logger.debug("Session websocket closed: %s", e)
        finally:
            controller.unregister_ui(queue)

    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(create_app(settings), host=settings.controller_host, port=settings.controller_port)


if __name__ == "__main__":
    run()
