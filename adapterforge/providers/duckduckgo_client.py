"""Secondary web search provider scraping DuckDuckGo's HTML endpoint."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
from bs4 import BeautifulSoup

from adapterforge.providers.search_results import SearchError, SearchResult
from adapterforge.web_text import USER_AGENT, collapse_whitespace

logger = logging.getLogger(__name__)


class DuckDuckGoError(SearchError):
    """Raised when the HTML endpoint cannot be reached."""


def unwrap_redirect(href: str) -> str:
    """Resolve DuckDuckGo's ``/l/?uddg=`` click-through links to the target URL."""
    if href.startswith("//"):
        href = "https:" + href
    elif href.startswith("/l/?"):
        href = "https://duckduckgo.com" + href

    try:
        parts = urlsplit(href)
    except ValueError:
        return href
    if "duckduckgo.com" in parts.netloc and parts.path.startswith("/l/"):
        target = parse_qs(parts.query).get("uddg")
        if target:
            return target[0]
    return href


def parse_results(html: str, limit: int) -> list[SearchResult]:
    results: list[SearchResult] = []
    soup = BeautifulSoup(html, "html.parser")
    for anchor in soup.find_all("a", class_="result__a", href=True):
        if len(results) >= limit:
            break
        url = unwrap_redirect(anchor["href"].strip())
        if not url.startswith("http"):
            continue
        title = collapse_whitespace(anchor.get_text(" ", strip=True))
        results.append(SearchResult(title=title or url, url=url))
    return results


class DuckDuckGoClient:
    """Async client for ``https://duckduckgo.com/html/``."""

    def __init__(
        self,
        base_url: str = "https://duckduckgo.com",
        timeout: int = 15,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> DuckDuckGoClient:
        await self._ensure_client()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def _ensure_client(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                follow_redirects=True,
                headers={
                    "User-Agent": USER_AGENT,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                },
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, limit: int = 8) -> list[SearchResult]:
        await self._ensure_client()
        assert self._client is not None

        try:
            response = await self._client.get("/html/", params={"q": query})
        except httpx.RequestError as exc:
            raise DuckDuckGoError(f"Network error: {exc}") from exc

        if response.status_code >= 400:
            logger.warning("DuckDuckGo returned %d for %r", response.status_code, query)
            return []
        return parse_results(response.text, limit)
