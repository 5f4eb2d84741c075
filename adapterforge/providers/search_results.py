"""Result model and error base shared by the web search providers."""

from __future__ import annotations

from pydantic import BaseModel

from adapterforge.web_text import normalize_url


class SearchError(Exception):
    """Base error for all search provider failures."""


class SearchResult(BaseModel):
    """A single web search hit."""

    title: str
    url: str
    snippet: str | None = None


def dedupe_results(results: list[SearchResult]) -> list[SearchResult]:
    """Drop empty URLs and repeats, comparing URLs without their fragment."""
    seen: set[str] = set()
    deduped: list[SearchResult] = []
    for result in results:
        if not result.url:
            continue
        key = normalize_url(result.url)
        if key in seen:
            continue
        seen.add(key)
        deduped.append(result)
    return deduped
