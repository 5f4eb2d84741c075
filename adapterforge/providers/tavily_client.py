"""Async client for the Tavily Search API (primary web search provider).

Reference: https://docs.tavily.com/docs/tavily-api/rest_api
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from adapterforge.config import ProviderConfig
from adapterforge.providers.search_results import SearchError, SearchResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TavilyError(SearchError):
    """Base error for all Tavily client failures."""


class TavilyAuthError(TavilyError):
    """Raised when the API key is rejected."""


class TavilyRateLimitError(TavilyError):
    """Raised when the rate limit is exceeded."""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TavilyClient:
    """Async HTTP client that wraps the Tavily Search REST API.

    Usage::

        cfg = ProviderConfig(api_key="tvly-...", base_url="https://api.tavily.com")
        async with TavilyClient(cfg) as client:
            results = await client.search("toast pos api documentation")
    """

    _SEARCH_ENDPOINT = "/search"

    def __init__(
        self,
        config: ProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._config.api_key.strip())

    async def __aenter__(self) -> TavilyClient:
        await self._ensure_client()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def _ensure_client(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url or "https://api.tavily.com",
                timeout=self._config.timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )

    async def close(self) -> None:
        """Cleanly close the underlying HTTP connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        await self._ensure_client()
        assert self._client is not None  # for type-checkers

        try:
            response = await self._client.post(endpoint, json=payload)
        except httpx.TimeoutException as exc:
            raise TavilyError(f"Request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise TavilyError(f"Network error: {exc}") from exc

        if response.status_code == 401:
            raise TavilyAuthError("Invalid or missing Tavily API key.")
        if response.status_code == 429:
            raise TavilyRateLimitError("Tavily rate limit exceeded.")
        if response.status_code >= 400:
            raise TavilyError(
                f"Tavily API error {response.status_code}: {response.text[:300]}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TavilyError(f"Tavily returned a non-JSON response: {exc}") from exc
        if not isinstance(data, dict):
            raise TavilyError(f"Tavily returned unexpected JSON ({type(data).__name__}).")
        return data

    async def search(self, query: str, limit: int = 8) -> list[SearchResult]:
        """Run a basic-depth search. Returns ``[]`` when no API key is configured."""
        if not self.enabled:
            return []

        data = await self._post(self._SEARCH_ENDPOINT, {
            "api_key": self._config.api_key,
            "query": query,
            "max_results": max(limit, 5),
            "search_depth": "basic",
        })

        results: list[SearchResult] = []
        raw_results = data.get("results")
        for raw in raw_results if isinstance(raw_results, list) else []:
            if not isinstance(raw, dict):
                continue
            url = (raw.get("url") or "").strip()
            if not url:
                continue
            results.append(SearchResult(
                title=(raw.get("title") or "").strip() or url,
                url=url,
                snippet=(raw.get("content") or "").strip() or None,
            ))
        logger.debug("Tavily returned %d results for %r", len(results), query)
        return results[:limit]
