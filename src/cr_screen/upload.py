"""HTTP upload consumer for finished recordings."""
from __future__ import annotations

import logging
from typing import Callable

import httpx

from .handoff import SendFailed
from .recording import Recording


logger = logging.getLogger(__name__)


class HttpUploadConsumer:
    """Post recordings as multipart uploads to a collection server."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30.0,
        code_provider: Callable[[], str | None] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url:
            raise ValueError("Upload URL must not be empty")
        self._url = url
        self._timeout = float(timeout)
        self._code_provider = code_provider
        self._client = client
        self._owns_client = client is None

    @property
    def url(self) -> str:
        return self._url

    async def __call__(self, recording: Recording) -> bool:
        client = self._get_client()
        data: dict[str, str] = {}
        code = self._code_provider() if self._code_provider is not None else None
        if code:
            data["session_code"] = code
        with recording.path.open("rb") as handle:
            files = {"file": (recording.name, handle, "video/mp4")}
            try:
                response = await client.post(self._url, data=data, files=files)
                response.raise_for_status()
            except httpx.ConnectError as exc:
                raise SendFailed(f"Unable to connect to upload server at {self._url}: {exc}") from exc
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                raise SendFailed(
                    f"Upload server returned HTTP {status} for {self._url}: {exc.response.text.strip()}"
                ) from exc
            except httpx.HTTPError as exc:
                raise SendFailed(f"Upload to {self._url} failed: {exc}") from exc
        logger.info("Uploaded %s to %s (HTTP %d)", recording.name, self._url, response.status_code)
        return True

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


__all__ = ["HttpUploadConsumer"]
