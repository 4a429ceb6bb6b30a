"""Async HTTP client for the QuickSend upload API."""
import asyncio
import logging
from typing import Any, Optional, Sequence

import aiohttp

from quicksend.client.errors import (
    FileTooLargeError,
    NetworkError,
    ServerError,
    TierNotEligibleError,
)
from quicksend.services.tier_policy import Tier

logger = logging.getLogger(__name__)


class BackendClient:
    """Talks to the upload API; never to the blob store.

    Use as an async context manager so one ``aiohttp.ClientSession`` is
    shared by the API calls and by the transfer of the file bytes.
    """

    def __init__(
        self, base_url: str, *,
        timeout: float = 60,
        transfer_read_timeout: float = 300,
    ):
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None
        # API calls are bounded as a whole
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        # Transfers can take hours on a slow uplink; only a stalled socket aborts them
        self._transfer_timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=30, sock_read=transfer_read_timeout,
        )

    async def open(self) -> None:
        if not self._session:
            self._session = aiohttp.ClientSession(timeout=self._transfer_timeout)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "BackendClient":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if not self._session:
            raise RuntimeError("BackendClient is not open; use 'async with' or call open()")
        return self._session

    async def _post(self, path: str, payload: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.post(url, json=payload or {}, timeout=self._timeout) as resp:
                try:
                    body: Any = await resp.json(content_type=None)
                except ValueError:
                    body = {"message": await resp.text()}
                if not isinstance(body, dict):
                    body = {"message": str(body)}
                if resp.status >= 400:
                    raise self._error_for(resp.status, body, payload or {})
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

    @staticmethod
    def _error_for(status: int, body: dict, payload: dict) -> Exception:
        code = body.get("code") or body.get("error")
        message = body.get("message") or f"HTTP {status}"
        if status == 413 or code == "FileTooLarge":
            return FileTooLargeError(
                limit_bytes=int(body.get("limitBytes") or 0),
                actual_bytes=int(body.get("actualBytes") or payload.get("fileSize") or 0),
                tier=Tier.parse(body.get("currentTier") or payload.get("subscriptionTier")),
            )
        if status == 403 or code == "TierNotEligible":
            return TierNotEligibleError(message)
        return ServerError(message, status=status, code=code)

    @staticmethod
    def _upload_payload(file_name: str, mime_type: str, size: Optional[int], tier: Tier) -> dict:
        return {
            "fileName": file_name,
            "mimeType": mime_type,
            "fileSize": size,
            "subscriptionTier": Tier.parse(tier).value,
        }

    async def request_single(self, file_name: str, mime_type: str, size: Optional[int], tier: Tier) -> dict:
        """-> {uploadUrl, fileId, storageKey, expiresAt, urlExpiresIn}"""
        return await self._post(
            "/api/uploads/upload-url", self._upload_payload(file_name, mime_type, size, tier)
        )

    async def request_multipart(self, file_name: str, mime_type: str, size: int, tier: Tier) -> dict:
        """-> {uploadId, fileId, partUrls, bucket, key, partSize, expiresAt, urlExpiresIn}"""
        return await self._post(
            "/api/uploads/multipart", self._upload_payload(file_name, mime_type, size, tier)
        )

    async def complete_upload(self, file_id: str, size: Optional[int]) -> dict:
        return await self._post("/api/uploads/complete", {"fileId": file_id, "fileSize": size})

    async def complete_multipart(self, upload_id: str, file_id: str, parts: Sequence[dict]) -> dict:
        return await self._post(
            "/api/uploads/multipart/complete",
            {"uploadId": upload_id, "fileId": file_id, "parts": list(parts)},
        )

    async def abort_multipart(self, upload_id: str, file_id: str) -> None:
        """Best-effort; failures are logged only."""
        try:
            await self._post("/api/uploads/multipart/abort", {"uploadId": upload_id, "fileId": file_id})
        except (NetworkError, ServerError) as e:
            logger.warning(f"Abort of multipart upload {upload_id} failed: {e}")

    async def cancel_upload(self, file_id: str) -> None:
        """Best-effort; failures are logged only."""
        try:
            await self._post(f"/api/uploads/{file_id}/cancel")
        except (NetworkError, ServerError) as e:
            logger.warning(f"Cancel notification for {file_id} failed: {e}")
