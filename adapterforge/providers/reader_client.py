"""Readability fallback for JavaScript-rendered pages (Jina Reader)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from adapterforge.config import ProviderConfig
from adapterforge.web_text import USER_AGENT, collapse_whitespace, truncate

logger = logging.getLogger(__name__)

MAX_READABLE_CHARS = 36_000
MIN_READABLE_CHARS = 200


def reader_url(base_url: str, url: str) -> str:
    if url.startswith("http://"):
        bare = url[len("http://"):]
    elif url.startswith("https://"):
        bare = url[len("https://"):]
    else:
        bare = url
    return f"{base_url.rstrip('/')}/http://{bare}"


class ReaderClient:
    """Fetches a readable text rendering of a page through the reader service.

    :meth:`read` never raises: anything short of a usable rendering
    comes back as ``None``.
    """

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ReaderClient:
        await self._ensure_client()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def _ensure_client(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.timeout,
                follow_redirects=True,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "text/html,application/json,text/plain;q=0.9,*/*;q=0.8",
                },
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def read(self, url: str) -> str | None:
        await self._ensure_client()
        assert self._client is not None

        target = reader_url(self._config.base_url or "https://r.jina.ai", url)
        try:
            response = await self._client.get(target)
        except httpx.HTTPError as exc:
            logger.debug("Reader fallback failed for %s: %s", url, exc)
            return None
        if response.status_code >= 400:
            return None

        cleaned = collapse_whitespace(response.text)
        if len(cleaned) <= MIN_READABLE_CHARS:
            return None
        return truncate(cleaned, MAX_READABLE_CHARS)
