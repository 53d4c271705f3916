"""
HTTP client for the remote stage service.

Thin async wrapper over ``httpx.AsyncClient``. Each call has its own timeout;
transport errors, timeouts and non-2xx responses become ``NetworkFailure``,
unrecognised bodies become ``MalformedResponse``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

import httpx
from pydantic import ValidationError

from vintner.config import Settings
from vintner.errors import MalformedResponse, NetworkFailure

from .models import (
    CapabilityStatus,
    CompareResponse,
    OcrResponse,
    StoragePublishResponse,
    UploadedFile,
)
from .shapes import parse_upload_response


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceFile:
    """A label image selected by the operator."""

    filename: str
    content: bytes
    content_type: str = "image/jpeg"


def _error_detail(resp: httpx.Response) -> str:
    detail = f"HTTP {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        return detail
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("message") or data.get("error") or detail)
    return detail


def _decode(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class StageClient:
    """
    Request/response calls for every remote pipeline stage.

    Parameters:
        settings: Base URL, token and timeouts
        transport: Optional httpx transport (``httpx.MockTransport`` in tests)

    Example:
        >>> async with StageClient(Settings()) as client:
        ...     status = await client.health()
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.api_url,
            headers={"Accept": "application/json"},
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "StageClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _auth_headers(self) -> dict[str, str]:
        if self.settings.access_token:
            return {"Authorization": f"Bearer {self.settings.access_token}"}
        return {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkFailure("Request timed out") from e
        except httpx.HTTPError as e:
            raise NetworkFailure(str(e) or "Failed to fetch") from e

        if resp.is_error:
            raise NetworkFailure(_error_detail(resp), status_code=resp.status_code)
        return resp

    async def _post(self, path: str, *, timeout: float, **kwargs: Any) -> Any:
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        resp = await self._request("POST", path, timeout=timeout, headers=headers, **kwargs)
        return _decode(resp)

    async def _get(self, path: str, *, timeout: float, **kwargs: Any) -> Any:
        resp = await self._request("GET", path, timeout=timeout, **kwargs)
        return _decode(resp)

    async def upload(self, files: Sequence[SourceFile]) -> list[UploadedFile]:
        """
        Upload label images; POST /upload-images (multipart ``files``).

        Returns:
            One ``UploadedFile`` per submitted file, padded with synthesized
            ids when the backend returned fewer entries

        Raises:
            NetworkFailure: On transport or HTTP error
            MalformedResponse: If no entry can be recovered from the body, or
                an entry fails validation
        """
        multipart = [("files", (f.filename, f.content, f.content_type)) for f in files]
        raw = await self._post("/upload-images", timeout=self.settings.upload_timeout, files=multipart)
        return parse_upload_response(raw, [f.filename for f in files])

    async def ocr(self, ids: Sequence[str]) -> OcrResponse:
        """Run OCR over uploaded items; POST /process-ocr."""
        raw = await self._post("/process-ocr", timeout=self.settings.ocr_timeout, json={"ids": list(ids)})
        try:
            parsed = OcrResponse.model_validate(raw)
        except ValidationError as e:
            raise MalformedResponse(f"Unexpected OCR response format: {e.error_count()} error(s)") from e
        if not parsed.results:
            raise MalformedResponse("OCR returned no results")
        return parsed

    async def compare(self, ids: Sequence[str]) -> CompareResponse:
        """Match OCR text against catalog candidates; POST /compare-batch."""
        raw = await self._post(
            "/compare-batch", timeout=self.settings.compare_timeout, json={"ids": list(ids)}
        )
        if not isinstance(raw, dict) or not isinstance(raw.get("results"), list):
            raise MalformedResponse("Unexpected Compare response format")
        try:
            return CompareResponse.model_validate(raw)
        except ValidationError as e:
            raise MalformedResponse(f"Unexpected Compare response format: {e.error_count()} error(s)") from e

    async def publish_storage(
        self, user_id: str, selections: Sequence[dict[str, Any]]
    ) -> StoragePublishResponse:
        """Write selections into the linked storage account; POST /upload-to-drive."""
        raw = await self._post(
            "/upload-to-drive",
            timeout=self.settings.publish_timeout,
            json={"user_id": user_id, "selections": list(selections)},
        )
        if not isinstance(raw, dict):
            # Best-effort shape: a bare acknowledgement still counts as success.
            return StoragePublishResponse(message=str(raw) if raw else None)
        try:
            return StoragePublishResponse.model_validate(raw)
        except ValidationError as e:
            raise MalformedResponse("Unexpected storage publish response format") from e

    async def publish_catalog(self, selections: Sequence[dict[str, Any]]) -> int:
        """
        Create catalog entries; POST /upload-to-shopify-batch.

        Returns:
            Number of entries the backend reports, or the number submitted
            when the body carries no count
        """
        raw = await self._post(
            "/upload-to-shopify-batch", timeout=self.settings.publish_timeout, json=list(selections)
        )
        if isinstance(raw, bool):
            return len(selections)
        if isinstance(raw, int):
            return raw
        if isinstance(raw, list):
            return len(raw)
        if isinstance(raw, dict):
            for key in ("count", "success_count", "created"):
                if isinstance(raw.get(key), int):
                    return raw[key]
            for key in ("results", "products", "items"):
                if isinstance(raw.get(key), list):
                    return len(raw[key])
        return len(selections)

    async def refresh_catalog_cache(self) -> str:
        """Ask the backend to reload its catalog snapshot; POST /refresh-shopify-cache."""
        raw = await self._post("/refresh-shopify-cache", timeout=self.settings.status_timeout)
        if isinstance(raw, dict):
            return str(raw.get("message") or raw)
        return str(raw)

    async def capability_status(self, user_id: str) -> CapabilityStatus:
        """
        Storage link status for ``user_id``.

        Tries GET /auth/status first and GET /drive-status when that fails.
        """
        params = {"user_id": user_id}
        timeout = self.settings.status_timeout
        try:
            raw = await self._get("/auth/status", timeout=timeout, params=params)
        except NetworkFailure as first:
            LOGGER.info("capability_status_fallback", extra={"reason": str(first)})
            raw = await self._get("/drive-status", timeout=timeout, params=params)
        if not isinstance(raw, dict):
            raise MalformedResponse("Unexpected capability status format")
        try:
            return CapabilityStatus.model_validate(raw)
        except ValidationError as e:
            raise MalformedResponse("Unexpected capability status format") from e

    async def health(self) -> str:
        """Advisory backend status; GET /health, falling back to GET /."""
        timeout = self.settings.status_timeout
        try:
            raw = await self._get("/health", timeout=timeout)
        except NetworkFailure:
            raw = await self._get("/", timeout=timeout)
        if isinstance(raw, dict):
            return str(raw.get("status") or "ok")
        return str(raw) or "ok"
