"""The discovery agent's tool palette.

Each tool is a typed parameter model plus an async handler returning a
:class:`ToolOutput`. Tools are looked up by name in :data:`TOOLS`;
:func:`dispatch_tool` validates the model's arguments, runs the handler and
converts tool-local failures into error results for the model instead of
aborting the run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol
from urllib.parse import urljoin, urlsplit

import httpx
from pydantic import BaseModel, Field, ValidationError

from adapterforge.discovery.findings import DiscoveryState
from adapterforge.discovery.openapi import OpenApiError, fetch_and_parse_openapi_spec, probe_openapi_paths
from adapterforge.providers.llm_runtime import ToolCall, ToolResultMessage, ToolSpec
from adapterforge.providers.reader_client import ReaderClient
from adapterforge.providers.search_results import SearchError, SearchResult, dedupe_results
from adapterforge.web_text import (
    BROWSER_HEADERS,
    USER_AGENT,
    html_to_text,
    normalize_domain,
    normalize_url,
    truncate,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_CHARS = 30_000
HTML_THIN_CONTENT_THRESHOLD = 500
MAX_LINK_RESULTS = 50
MAX_SEARCH_RESULTS = 8
ENDPOINT_BODY_CHARS = 2_000

FETCH_PAGE_TIMEOUT = httpx.Timeout(10.0)
ENDPOINT_TIMEOUT = httpx.Timeout(5.0)
DISCOVER_TIMEOUT = httpx.Timeout(3.0)

SOCIAL_DOMAINS = ("twitter.com", "x.com", "facebook.com", "linkedin.com")
RELEVANT_LINK_TERMS = ("api", "reference", "auth", "endpoint", "guide", "getting-started")
AUTH_PATH_TERMS = ("login", "sign-in", "signin", "signup", "sign-up")
SAFE_ENDPOINT_METHODS = ("GET", "HEAD", "OPTIONS")
INTERESTING_ENDPOINT_HEADERS = (
    "content-type",
    "www-authenticate",
    "x-ratelimit-limit",
    "x-ratelimit-remaining",
    "server",
    "location",
    "access-control-allow-origin",
)
SUBDOMAIN_PREFIXES = (
    "api", "developer", "developers", "dev", "docs", "doc",
    "sandbox", "partner", "open", "public-api",
)
BASE_PATHS = ("/developers", "/api", "/docs", "/api-docs")

_ANCHOR = re.compile(
    r"""<a\b[^>]*\bhref\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s"'<>`]+))[^>]*>([\s\S]*?)</a>""",
    re.IGNORECASE,
)
_HTML_TAG = re.compile(r"<html[\s>]", re.IGNORECASE)


class ToolError(Exception):
    """A tool could not produce a result; reported back to the model."""


@dataclass
class ToolOutput:
    content: str
    details: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


class SearchProvider(Protocol):
    async def search(self, query: str, limit: int = 8) -> list[SearchResult]: ...


class WebSearch:
    """Primary search with a secondary fallback used only when the primary finds nothing."""

    def __init__(self, primary: SearchProvider, secondary: SearchProvider) -> None:
        self._primary = primary
        self._secondary = secondary

    async def _safe_search(self, provider: SearchProvider, query: str) -> list[SearchResult]:
        try:
            return await provider.search(query, MAX_SEARCH_RESULTS)
        except (SearchError, httpx.HTTPError) as exc:
            logger.warning("Search via %s failed for %r: %s", type(provider).__name__, query, exc)
            return []

    async def search(self, query: str) -> list[SearchResult]:
        primary = await self._safe_search(self._primary, query)
        fallback = [] if primary else await self._safe_search(self._secondary, query)
        return dedupe_results(primary + fallback)[:MAX_SEARCH_RESULTS]


@dataclass
class ToolContext:
    state: DiscoveryState
    http: httpx.AsyncClient
    search: WebSearch
    reader: ReaderClient


# ---------------------------------------------------------------------------
# Parameter models
# ---------------------------------------------------------------------------


class WebSearchParams(BaseModel):
    query: str = Field(description="Search query")


class SearchSiteParams(BaseModel):
    domain: str = Field(description="Domain to search within, e.g. docs.example.com")
    query: str = Field(description="Search query (site: prefix is added automatically)")


class SearchGithubParams(BaseModel):
    query: str = Field(description="Search query for GitHub SDKs/examples")


class FetchPageParams(BaseModel):
    url: str = Field(description="URL to fetch")
    max_chars: float | None = Field(default=None, description="Max chars to return")


class ExtractLinksParams(BaseModel):
    url: str = Field(description="URL to extract links from")
    filter: str | None = Field(
        default=None,
        description="Optional keyword filter. Matches link text or URL (case-insensitive).",
    )


class EndpointProbeParams(BaseModel):
    url: str = Field(description="Full endpoint URL to probe")
    method: str | None = Field(
        default=None,
        description="HTTP method (default: GET). Only safe methods allowed: GET, HEAD, OPTIONS.",
    )


class DiscoverSubdomainsParams(BaseModel):
    domain: str = Field(description="Base domain to probe, e.g. example.com")


class CheckOpenApiParams(BaseModel):
    domain: str = Field(description="Domain to check, e.g. api.example.com")


class ParseOpenApiParams(BaseModel):
    url: str = Field(description="URL to OpenAPI spec")


class SaveFindingParams(BaseModel):
    category: str = Field(
        description="Category for this finding (e.g. auth, endpoints, base_urls, schemas, notes, or any relevant label)"
    )
    content: str = Field(description="The finding")
    source_url: str | None = Field(default=None, description="URL where this was found")


# ---------------------------------------------------------------------------
# Search tools
# ---------------------------------------------------------------------------


def _search_output(results: list[SearchResult], state: DiscoveryState, details: dict[str, Any]) -> ToolOutput:
    for result in results:
        state.register_source_url(result.url)
    payload = [r.model_dump(exclude_none=True) for r in results]
    return ToolOutput(json.dumps(payload, indent=2), {**details, "resultCount": len(results)})


def _require(value: str, message: str) -> str:
    value = value.strip()
    if not value:
        raise ToolError(message)
    return value


async def web_search(params: WebSearchParams, ctx: ToolContext) -> ToolOutput:
    query = _require(params.query, "web_search query cannot be empty.")
    results = await ctx.search.search(query)
    return _search_output(results, ctx.state, {"query": query})


async def search_site(params: SearchSiteParams, ctx: ToolContext) -> ToolOutput:
    domain = normalize_domain(params.domain)
    query = _require(params.query, "search_site query cannot be empty.")
    results = await ctx.search.search(f"site:{domain} {query}")
    return _search_output(results, ctx.state, {"domain": domain, "query": query})


async def search_github(params: SearchGithubParams, ctx: ToolContext) -> ToolOutput:
    query = _require(params.query, "search_github query cannot be empty.")
    results = await ctx.search.search(f"site:github.com {query}")
    return _search_output(results, ctx.state, {"query": query})


# ---------------------------------------------------------------------------
# Page tools
# ---------------------------------------------------------------------------


def _is_json(content_type: str) -> bool:
    return "application/json" in content_type or "+json" in content_type


def _is_yaml(content_type: str) -> bool:
    return any(t in content_type for t in (
        "application/yaml", "application/x-yaml", "text/yaml", "text/x-yaml",
    ))


async def fetch_page(params: FetchPageParams, ctx: ToolContext) -> ToolOutput:
    url = _require(params.url, "fetch_page url cannot be empty.")
    ctx.state.register_source_url(url)

    max_chars = DEFAULT_PAGE_CHARS
    if params.max_chars is not None and math.isfinite(params.max_chars) and params.max_chars > 0:
        max_chars = int(params.max_chars)

    source = "direct"
    content_type = ""
    try:
        response = await ctx.http.get(
            url, headers=BROWSER_HEADERS, follow_redirects=True, timeout=FETCH_PAGE_TIMEOUT,
        )
    except httpx.HTTPError as exc:
        extracted = await ctx.reader.read(url)
        if not extracted:
            raise ToolError(
                f"Failed to fetch page '{url}' directly and via reader fallback: {exc}"
            ) from exc
        source = "reader_fallback"
    else:
        content_type = response.headers.get("content-type", "").lower()
        raw = response.text
        if _is_json(content_type):
            try:
                extracted = json.dumps(json.loads(raw), indent=2)
            except ValueError:
                extracted = raw
        elif _is_yaml(content_type):
            extracted = raw
        elif "text/html" in content_type or _HTML_TAG.search(raw):
            extracted = html_to_text(raw)
            if len(extracted) < HTML_THIN_CONTENT_THRESHOLD:
                # Probably rendered client-side.
                readable = await ctx.reader.read(url)
                if readable:
                    extracted = readable
                    source = "reader_fallback"
        else:
            extracted = raw

    if not extracted.strip():
        raise ToolError(f"No content extracted from '{url}'.")

    ctx.state.pages_visited += 1
    return ToolOutput(truncate(extracted, max_chars), {
        "url": url,
        "chars": min(len(extracted), max_chars),
        "source": source,
        "contentType": content_type or "unknown",
    })


def is_junk_link(absolute_url: str, raw_href: str) -> bool:
    href = raw_href.strip().lower()
    if not href or href.startswith("#") or href.startswith("javascript:"):
        return True

    parts = urlsplit(absolute_url)
    host = (parts.hostname or "").lower()
    if any(host == d or host.endswith(f".{d}") for d in SOCIAL_DOMAINS):
        return True

    target = f"{parts.path}?{parts.query}".lower()
    return any(term in target for term in AUTH_PATH_TERMS)


def score_link(text: str, url: str) -> int:
    haystack = f"{text} {url}".lower()
    score = sum(2 for term in RELEVANT_LINK_TERMS if term in haystack)
    if "openapi" in haystack or "swagger" in haystack:
        score += 2
    if "blog" in haystack or "careers" in haystack:
        score -= 2
    return score


def extract_links_from_html(html: str, base_url: str, keyword: str = "") -> list[dict[str, str]]:
    """Pull scored, de-duplicated navigation links out of *html*."""
    keyword = keyword.strip().lower()
    seen: set[str] = set()
    links: list[dict[str, str]] = []

    for match in _ANCHOR.finditer(html):
        href = (match.group(1) or match.group(2) or match.group(3) or "").strip()
        if not href:
            continue
        try:
            absolute = urljoin(base_url, href)
            parts = urlsplit(absolute)
        except ValueError:
            continue
        if parts.scheme not in ("http", "https") or not parts.netloc:
            continue
        if is_junk_link(absolute, href):
            continue

        key = normalize_url(absolute)
        if key in seen:
            continue
        text = html_to_text(match.group(4) or "") or parts.path or parts.hostname or absolute
        if keyword and keyword not in f"{text} {absolute}".lower():
            continue
        seen.add(key)
        links.append({"text": text, "url": absolute})

    links.sort(key=lambda link: (-score_link(link["text"], link["url"]), link["url"]))
    return links[:MAX_LINK_RESULTS]


async def extract_links(params: ExtractLinksParams, ctx: ToolContext) -> ToolOutput:
    url = _require(params.url, "extract_links url cannot be empty.")
    ctx.state.register_source_url(url)

    try:
        response = await ctx.http.get(
            url, headers=BROWSER_HEADERS, follow_redirects=True, timeout=FETCH_PAGE_TIMEOUT,
        )
    except httpx.HTTPError as exc:
        raise ToolError(f"Failed to fetch '{url}' for link extraction: {exc}") from exc
    if not response.is_success:
        raise ToolError(
            f"Failed to fetch '{url}' for link extraction "
            f"({response.status_code} {response.reason_phrase})."
        )

    links = extract_links_from_html(response.text, str(response.url), params.filter or "")
    for link in links:
        ctx.state.register_source_url(link["url"])

    details: dict[str, Any] = {"url": url, "resultCount": len(links)}
    if params.filter and params.filter.strip():
        details["filter"] = params.filter.strip()
    return ToolOutput(json.dumps(links, indent=2), details)


# ---------------------------------------------------------------------------
# Probing tools
# ---------------------------------------------------------------------------


async def probe_endpoint(params: EndpointProbeParams, ctx: ToolContext) -> ToolOutput:
    url = _require(params.url, "test_endpoint url cannot be empty.")
    ctx.state.register_source_url(url)

    method = (params.method or "GET").strip().upper()
    if method not in SAFE_ENDPOINT_METHODS:
        raise ToolError(f"test_endpoint only allows GET, HEAD, or OPTIONS (received '{method}').")

    try:
        response = await ctx.http.request(
            method,
            url,
            headers={"Accept": "*/*", "User-Agent": USER_AGENT},
            follow_redirects=False,
            timeout=ENDPOINT_TIMEOUT,
        )
    except httpx.HTTPError as exc:
        raise ToolError(f"Network error while probing '{url}' with {method}: {exc}") from exc

    headers = {
        name: response.headers[name]
        for name in INTERESTING_ENDPOINT_HEADERS
        if response.headers.get(name)
    }
    body = "" if method == "HEAD" else truncate(response.text, ENDPOINT_BODY_CHARS)
    payload = {
        "status": response.status_code,
        "statusText": response.reason_phrase,
        "headers": headers,
        "body": body,
    }
    return ToolOutput(
        json.dumps(payload, indent=2),
        {"url": url, "method": method, "status": response.status_code},
    )


async def _probe(client: httpx.AsyncClient, subdomain: str, url: str) -> dict[str, Any] | None:
    try:
        response = await client.head(
            url,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=False,
            timeout=DISCOVER_TIMEOUT,
        )
    except httpx.HTTPError:
        return None
    result: dict[str, Any] = {"subdomain": subdomain, "url": url, "status": response.status_code}
    location = response.headers.get("location")
    if location:
        result["redirectsTo"] = location
    return result


async def discover_subdomains(params: DiscoverSubdomainsParams, ctx: ToolContext) -> ToolOutput:
    base_domain = normalize_domain(params.domain).lower().split(":")[0]
    ctx.state.register_source_url(f"https://{base_domain}")

    probes = [
        _probe(ctx.http, f"{prefix}.{base_domain}", f"https://{prefix}.{base_domain}")
        for prefix in SUBDOMAIN_PREFIXES
    ]
    probes += [
        _probe(ctx.http, base_domain, f"https://{base_domain}{path}")
        for path in BASE_PATHS
    ]
    settled = await asyncio.gather(*probes, return_exceptions=True)

    seen: set[str] = set()
    discovered: list[dict[str, Any]] = []
    for outcome in settled:
        if not isinstance(outcome, dict):
            continue
        key = normalize_url(outcome["url"])
        if key in seen:
            continue
        seen.add(key)
        discovered.append(outcome)
        ctx.state.register_source_url(outcome["url"])

    return ToolOutput(
        json.dumps(discovered, indent=2),
        {"domain": base_domain, "resultCount": len(discovered)},
    )


async def check_openapi(params: CheckOpenApiParams, ctx: ToolContext) -> ToolOutput:
    domain = normalize_domain(params.domain)
    ctx.state.register_source_url(f"https://{domain}")
    paths = await probe_openapi_paths(domain, ctx.http)
    for spec_url in paths:
        ctx.state.register_source_url(spec_url)
    content = json.dumps(paths, indent=2) if paths else "No specs found"
    return ToolOutput(content, {"domain": domain, "found": len(paths)})


async def parse_openapi(params: ParseOpenApiParams, ctx: ToolContext) -> ToolOutput:
    url = _require(params.url, "parse_openapi url cannot be empty.")
    ctx.state.register_source_url(url)
    summary = await fetch_and_parse_openapi_spec(url, ctx.http)
    return ToolOutput(summary.to_json(), {"url": url})


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


async def save_finding(params: SaveFindingParams, ctx: ToolContext) -> ToolOutput:
    content = _require(params.content, "save_finding content cannot be empty.")
    source_url = (params.source_url or "").strip()
    ctx.state.register_source_url(source_url)
    saved = f"{content} (source: {source_url})" if source_url else content

    category, total = ctx.state.save_finding(params.category, saved)
    details: dict[str, Any] = {"category": category, "total": total}
    if source_url:
        details["source_url"] = source_url
    return ToolOutput(f"Saved to {params.category}", details)


# ---------------------------------------------------------------------------
# Registry and dispatch
# ---------------------------------------------------------------------------

Handler = Callable[[Any, ToolContext], Awaitable[ToolOutput]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    params: type[BaseModel]
    handler: Handler

    def spec(self) -> ToolSpec:
        return ToolSpec(self.name, self.description, self.params.model_json_schema())


TOOLS: dict[str, ToolDefinition] = {
    t.name: t for t in (
        ToolDefinition(
            "web_search",
            "Search the web for API documentation, developer docs, or OpenAPI specs.",
            WebSearchParams, web_search,
        ),
        ToolDefinition(
            "search_site",
            "Search within a known domain using site: scoping.",
            SearchSiteParams, search_site,
        ),
        ToolDefinition(
            "search_github",
            "Search GitHub for SDKs and integration examples.",
            SearchGithubParams, search_github,
        ),
        ToolDefinition(
            "fetch_page",
            "Fetch a web page and extract readable text.",
            FetchPageParams, fetch_page,
        ),
        ToolDefinition(
            "extract_links",
            "Extract links from a page to navigate docs by URL and link text.",
            ExtractLinksParams, extract_links,
        ),
        ToolDefinition(
            "test_endpoint",
            "Probe an endpoint with a safe HTTP method to verify status/auth behavior.",
            EndpointProbeParams, probe_endpoint,
        ),
        ToolDefinition(
            "discover_subdomains",
            "Probe common API/docs subdomains and common docs paths on the base domain.",
            DiscoverSubdomainsParams, discover_subdomains,
        ),
        ToolDefinition(
            "check_openapi",
            "Probe a domain for OpenAPI/Swagger specs at well-known paths.",
            CheckOpenApiParams, check_openapi,
        ),
        ToolDefinition(
            "parse_openapi",
            "Download and parse an OpenAPI/Swagger spec.",
            ParseOpenApiParams, parse_openapi,
        ),
        ToolDefinition(
            "save_finding",
            "Save a structured finding from your research.",
            SaveFindingParams, save_finding,
        ),
    )
}


def tool_specs() -> list[ToolSpec]:
    return [t.spec() for t in TOOLS.values()]


async def dispatch_tool(call: ToolCall, ctx: ToolContext) -> ToolResultMessage:
    """Run one tool call; failures come back as ``is_error`` results."""
    definition = TOOLS.get(call.name)
    if definition is None:
        return ToolResultMessage(call.id, call.name, f"Tool '{call.name}' not found.", is_error=True)

    try:
        params = definition.params.model_validate(call.arguments)
    except ValidationError as exc:
        return ToolResultMessage(
            call.id, call.name, f"Invalid arguments for {call.name}: {exc}", is_error=True,
        )

    ctx.state.register_tool_call()
    try:
        output = await definition.handler(params, ctx)
    except (ToolError, OpenApiError, ValueError, httpx.HTTPError) as exc:
        logger.warning("Tool %s failed: %s", call.name, exc)
        return ToolResultMessage(call.id, call.name, str(exc), {"error": str(exc)}, is_error=True)
    return ToolResultMessage(call.id, call.name, output.content, output.details)


def describe_tool_start(name: str, args: dict[str, Any]) -> str:
    """One-line progress label for a tool invocation."""
    args_text = json.dumps(args, default=str)
    if name == "save_finding":
        category = str(args.get("category") or "unknown").strip()
        content = re.sub(r"\s+", " ", str(args.get("content") or "")).strip()
        return f"[save] {category} - {truncate(content, 120).replace(chr(10), ' ')}"
    prefixes = {
        "web_search": "[search] web_search: ",
        "search_site": "[search] search_site: ",
        "search_github": "[search] search_github: ",
        "extract_links": "[links] ",
        "test_endpoint": "[probe] ",
        "discover_subdomains": "[dns] ",
        "check_openapi": "[openapi] check_openapi: ",
        "parse_openapi": "[openapi] parse_openapi: ",
        "fetch_page": "[fetch] ",
    }
    return prefixes.get(name, f"[tool] {name}: ") + args_text
