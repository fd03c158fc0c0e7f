"""Shared fixtures for the selfie KYC controller tests."""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import jwt
import pytest
import pytest_asyncio

from kyc_selfie.auth.token import TokenValidator
from kyc_selfie.backend.http_client import ComplianceHttpClient
from kyc_selfie.backend.submission import SubmissionOrchestrator
from kyc_selfie.config import BackendSettings
from kyc_selfie.sensors.webcam_service import CapturedFrame
from kyc_selfie.state import FaceLandmarkFrame, Point2D

SECRET = "test-signing-secret-with-enough-bytes-for-hs256"
NOW = 1_700_000_000.0
UPLOAD_PATH = "/v1/compliance/individual-verification/photo/upload"
CREATE_PATH = "/v1/compliance/individual-verification/photo/create"


def make_token(claims: Dict[str, Any], secret: str = SECRET, algorithm: str = "HS256") -> str:
    return jwt.encode(claims, secret, algorithm=algorithm)


def good_landmarks(**overrides: Any) -> FaceLandmarkFrame:
    values: Dict[str, Any] = dict(
        has_face=True,
        average_brightness=128.0,
        nose=Point2D(0.5, 0.5),
        left_ear=Point2D(0.3, 0.5),
        right_ear=Point2D(0.7, 0.5),
        eye_blink_left=0.0,
        eye_blink_right=0.0,
    )
    values.update(overrides)
    return FaceLandmarkFrame(**values)


def captured(landmarks: Optional[FaceLandmarkFrame] = None, jpeg: bytes = b"\xff\xd8selfie\xff\xd9") -> CapturedFrame:
    return CapturedFrame(landmarks=landmarks or good_landmarks(), jpeg=jpeg, timestamp=NOW)


@dataclass
class FakeComplianceBackend:
    """In-memory stand-in for the compliance API, served through httpx.MockTransport."""

    upload_status: int = 200
    upload_body: Any = field(default_factory=lambda: {"photo_url": "https://x/y.jpg"})
    create_status: int = 200
    create_body: Any = field(default_factory=lambda: {"id": 42, "photo_url": "https://x/y.jpg", "status": "pending"})
    fail_upload_transport: bool = False
    fail_create_transport: bool = False
    requests: List[httpx.Request] = field(default_factory=list)

    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == UPLOAD_PATH:
            if self.fail_upload_transport:
                raise httpx.ConnectError("connection refused", request=request)
            return self._response(self.upload_status, self.upload_body)
        if request.url.path == CREATE_PATH:
            if self.fail_create_transport:
                raise httpx.ReadTimeout("timed out", request=request)
            return self._response(self.create_status, self.create_body)
        return httpx.Response(404, text="not found")

    @staticmethod
    def _response(status: int, body: Any) -> httpx.Response:
        if isinstance(body, (dict, list)):
            return httpx.Response(status, content=json.dumps(body), headers={"content-type": "application/json"})
        return httpx.Response(status, text=str(body))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class ListFrameSource:
    """Frame source that replays a fixed list, then idles until closed."""

    def __init__(self, frames: List[CapturedFrame]) -> None:
        self._frames = list(frames)
        self.closed = False
        self.delivered = 0

    async def _iterate(self):
        for frame in self._frames:
            if self.closed:
                return
            self.delivered += 1
            yield frame
            await asyncio.sleep(0)
        while not self.closed:
            await asyncio.sleep(0.01)

    def __aiter__(self):
        return self._iterate()

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def backend() -> FakeComplianceBackend:
    return FakeComplianceBackend()


@pytest.fixture
def backend_settings() -> BackendSettings:
    return BackendSettings(api_base_url="https://compliance.test")


@pytest_asyncio.fixture
async def orchestrator(backend, backend_settings):
    client = ComplianceHttpClient(backend_settings, transport=backend.transport())
    yield SubmissionOrchestrator(client)
    await client.aclose()


@pytest.fixture
def validator() -> TokenValidator:
    return TokenValidator(SECRET, clock=lambda: NOW)


@pytest.fixture
def token() -> str:
    return make_token({"user_id": 7, "exp": int(NOW) + 600, "iat": int(NOW) - 60})
