"""Two-step selfie submission: upload the image, then create the compliance record."""
from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any, Optional, Union

import httpx

from ..state import SubmissionOutcome, SubmissionResult
from .http_client import ComplianceHttpClient, DocumentInfo

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, bytearray, str]

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")
_MAX_BODY_IN_DETAIL = 500


class InvalidImageError(ValueError):
    """Raised when an image payload cannot be turned into bytes."""


def image_to_bytes(image: ImageInput) -> bytes:
    """Accept raw bytes or a base64 / data-URL string and return raw bytes."""
    if isinstance(image, (bytes, bytearray)):
        data = bytes(image)
    elif isinstance(image, str):
        try:
            data = base64.b64decode(_DATA_URL_PREFIX.sub("", image.strip()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidImageError("image is not valid base64") from exc
    else:
        raise InvalidImageError(f"unsupported image type {type(image).__name__}")
    if not data:
        raise InvalidImageError("image is empty")
    return data


def _json_body(response: httpx.Response) -> Optional[dict[str, Any]]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _status_detail(step: str, response: httpx.Response) -> str:
    return f"{step} failed: {response.status_code} - {response.text[:_MAX_BODY_IN_DETAIL]}"


class SubmissionOrchestrator:
    """Turns one approved selfie into an uploaded asset plus a compliance record.

    Never raises for backend problems; every attempt yields exactly one
    :class:`SubmissionResult`. No retries happen here.
    """

    def __init__(self, client: ComplianceHttpClient) -> None:
        self._client = client

    async def submit(
        self,
        image: ImageInput,
        subject_id: int,
        token: str,
        *,
        existing_asset_url: Optional[str] = None,
        document: Optional[DocumentInfo] = None,
    ) -> SubmissionResult:
        if existing_asset_url:
            logger.info("submission: reusing uploaded asset, creating record only")
            return await self.create_record(existing_asset_url, subject_id, token, document=document)

        try:
            payload = image_to_bytes(image)
        except InvalidImageError as exc:
            return SubmissionResult(SubmissionOutcome.UPLOAD_FAILED, error_detail=str(exc))

        try:
            response = await self._client.upload_photo(payload, token)
        except httpx.TransportError as exc:
            logger.error("submission.upload: transport error - %s", exc)
            return SubmissionResult(SubmissionOutcome.NETWORK_ERROR, error_detail=f"upload: {exc!r}")

        if not response.is_success:
            logger.error("submission.upload: HTTP %d - %s", response.status_code, response.text[:200])
            return SubmissionResult(SubmissionOutcome.UPLOAD_FAILED, error_detail=_status_detail("upload", response))

        body = _json_body(response) or {}
        asset_url = body.get("photo_url")
        if not isinstance(asset_url, str) or not asset_url:
            logger.error("submission.upload: response missing photo_url %s", body)
            return SubmissionResult(
                SubmissionOutcome.UPLOAD_FAILED,
                error_detail="No photo URL returned from upload",
            )

        logger.info("submission.upload: stored asset %s", asset_url)
        return await self.create_record(asset_url, subject_id, token, document=document)

    async def create_record(
        self,
        asset_url: str,
        subject_id: int,
        token: str,
        *,
        document: Optional[DocumentInfo] = None,
    ) -> SubmissionResult:
        """Second step alone; the asset URL is carried in every result."""
        try:
            response = await self._client.create_photo_record(asset_url, subject_id, token, document=document)
        except httpx.TransportError as exc:
            logger.error("submission.create: transport error - %s", exc)
            return SubmissionResult(
                SubmissionOutcome.NETWORK_ERROR,
                asset_url=asset_url,
                error_detail=f"create: {exc!r}",
            )

        if not response.is_success:
            logger.error("submission.create: HTTP %d - %s", response.status_code, response.text[:200])
            return SubmissionResult(
                SubmissionOutcome.RECORD_CREATE_FAILED,
                asset_url=asset_url,
                error_detail=_status_detail("create", response),
            )

        body = _json_body(response) or {}
        record_id = body.get("id")
        if not isinstance(record_id, int) or isinstance(record_id, bool):
            logger.error("submission.create: response missing record id %s", body)
            return SubmissionResult(
                SubmissionOutcome.RECORD_CREATE_FAILED,
                asset_url=asset_url,
                error_detail="No record id returned from create",
            )

        logger.info("submission.create: record %d created for user %s", record_id, subject_id)
        return SubmissionResult(SubmissionOutcome.SUCCESS, asset_url=asset_url, record_id=record_id)


__all__ = ["SubmissionOrchestrator", "InvalidImageError", "image_to_bytes"]
