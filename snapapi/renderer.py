"""Rendering engine boundary.

The headless browser lives in a separate rendering service; this module only
knows how to hand it a validated job and read back the bytes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from .jobs import JobSpec

logger = logging.getLogger(__name__)


class RenderError(RuntimeError):
    pass


@dataclass
class RenderedDocument:
    content: bytes
    media_type: str


class Renderer(Protocol):
    async def render(self, job: JobSpec) -> RenderedDocument:
        ...


class RemoteRenderer:
    """POSTs jobs to ``{url}/render/{kind}`` and returns the rendered body."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 90.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def render(self, job: JobSpec) -> RenderedDocument:
        endpoint = f"{self.url}/render/{job.kind}"
        body = job.model_dump(mode="json")
        try:
            if self._client is not None:
                response = await self._client.post(endpoint, json=body, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(endpoint, json=body)
        except httpx.TimeoutException as exc:
            raise RenderError(f"Rendering timed out after {self.timeout_seconds:.0f}s") from exc
        except httpx.HTTPError as exc:
            raise RenderError(f"Rendering service unreachable: {exc}") from exc

        if response.status_code != 200:
            detail = response.text[:200] if response.content else ""
            raise RenderError(f"Rendering service returned {response.status_code}: {detail}")
        if not response.content:
            raise RenderError("Rendering service returned an empty document")
        media_type = response.headers.get("content-type", job.media_type).split(";", 1)[0].strip()
        return RenderedDocument(content=response.content, media_type=media_type or job.media_type)


__all__ = ["RemoteRenderer", "RenderError", "RenderedDocument", "Renderer"]
