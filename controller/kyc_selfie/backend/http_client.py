"""HTTP client helpers for the compliance backend REST endpoints."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..config import BackendSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DocumentInfo:
    """Identity document attached to a record in the document endpoint variant."""

    document_type: str
    document_number: str


class ComplianceHttpClient:
    """Thin wrapper around the compliance photo upload / create API.

    Methods return the raw :class:`httpx.Response`; status interpretation is
    left to the submission orchestrator. Transport failures propagate as
    :class:`httpx.TransportError`.
    """

    def __init__(self, settings: BackendSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.timeout_seconds,
            transport=transport,
        )

    async def upload_photo(self, image: bytes, token: str, *, filename: Optional[str] = None) -> httpx.Response:
        """POST the selfie as multipart field ``file``."""
        filename = filename or f"selfie-{int(time.time() * 1000)}.jpg"
        url = self.settings.endpoint(self.settings.upload_path)
        logger.info("compliance.upload_photo: uploading %d bytes as %s", len(image), filename)
        return await self._client.post(
            url,
            headers=self._auth_headers(token),
            files={"file": (filename, image, "image/jpeg")},
        )

    async def create_photo_record(
        self,
        photo_url: str,
        subject_id: int,
        token: str,
        *,
        document: Optional[DocumentInfo] = None,
    ) -> httpx.Response:
        """POST the uploaded photo URL to create the compliance record."""
        payload: Dict[str, Any] = {"photo_url": photo_url, "user_id": subject_id}
        if document is not None:
            payload["document_type"] = document.document_type
            payload["document_number"] = document.document_number
        url = self.settings.endpoint(self.settings.create_path)
        logger.info("compliance.create_photo_record: creating record for user %s", subject_id)
        return await self._client.post(url, headers=self._auth_headers(token), json=payload)

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)

    @staticmethod
    def _auth_headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}
