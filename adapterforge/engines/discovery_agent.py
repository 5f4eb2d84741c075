"""Discovery Agent: autonomous API research for one platform.

Runs a tool-calling model loop against the discovery tool palette:

  prompt → model turn → dispatch tool calls → prune context → next turn

until the model stops calling tools or the wall-clock budget runs out. A
timeout keeps whatever was found and records a note; any other terminal
model failure is fatal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

import httpx

from adapterforge.config import AdapterForgeConfig
from adapterforge.discovery.context import prune_context
from adapterforge.discovery.findings import DiscoveryResult, DiscoveryState
from adapterforge.discovery.tools import (
    ToolContext,
    WebSearch,
    describe_tool_start,
    dispatch_tool,
    tool_specs,
)
from adapterforge.pipeline_bus import PipelineBus, pipeline_bus
from adapterforge.providers.credentials import LlmSession
from adapterforge.providers.duckduckgo_client import DuckDuckGoClient
from adapterforge.providers.llm_runtime import Message, ModelError, UserMessage, is_auth_error, run_turn
from adapterforge.providers.reader_client import ReaderClient
from adapterforge.providers.tavily_client import TavilyClient
from adapterforge.web_text import BROWSER_HEADERS

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT_SECONDS = 8 * 60
TURN_MAX_TOKENS = 16_000
THINKING_BUDGET = 4_096


class DiscoveryError(Exception):
    """The discovery model loop failed for a reason other than timeout.

    ``partial`` holds whatever was gathered before the failure.
    """

    def __init__(self, message: str, partial: DiscoveryResult | None = None) -> None:
        super().__init__(message)
        self.partial = partial


def build_discovery_system_prompt(platform_name: str) -> str:
    return "\n".join([
        "You are a developer researching a platform's API to build an integration.",
        f'Your goal: find enough information to generate an AGP adapter for "{platform_name}".',
        "",
        "You need to discover:",
        "1. Authentication - How does the API authenticate? (OAuth, API key, JWT, cookie?)",
        "2. Base URLs - What are the API base URLs?",
        "3. Discovery endpoints - How to list available services/catalog/menu",
        "4. Query endpoints - How to search/filter/get details",
        "5. Execute endpoints - How to create orders/bookings/transactions",
        "6. Request/response shapes - What do the payloads look like?",
        "",
        "Research strategy (recommended order):",
        f'1. Web search for "{platform_name} API documentation" / "{platform_name} developer docs"',
        "2. From search results, identify the docs domain",
        "3. discover_subdomains on the base domain - find api.*, docs.*, developer.* subdomains",
        "4. check_openapi on all API-looking subdomains (best case: you find a spec and skip manual research)",
        "5. If no OpenAPI spec: extract_links on the main docs page -> follow auth, API reference, and getting-started links",
        "6. search_site to find specific topics within the docs domain",
        "7. search_github for SDKs/examples if docs are thin",
        "8. test_endpoint on discovered endpoints to verify they exist and check auth requirements",
        "9. save_finding as you go - don't wait until the end",
        "",
        "Prioritize:",
        "- OpenAPI specs (structured, complete) > SDK source code (real examples) > HTML docs (may be incomplete) > marketing pages (useless)",
        "- Auth discovery first - you can't use any endpoint without knowing the auth pattern",
        "- At least 2-3 endpoints per AGP operation (discover, query, execute) before stopping",
        "",
        "Efficiency tips:",
        "- When fetching pages or specs, request a large max_chars on the first try (40000+) to avoid re-fetching the same URL.",
        "- Don't re-fetch a URL you've already fetched at a smaller size. Use save_finding to capture what you need, then move on.",
        "- Older fetch_page results are pruned from the conversation; anything worth keeping belongs in save_finding.",
        "",
        "Do not make up endpoints. If you cannot find documentation for an operation, note it as unsupported.",
        "",
        "Tool limits:",
        "- web_search, search_site and search_github return at most 8 results.",
        "- extract_links returns at most 50 links, most relevant first.",
        "- fetch_page returns 30000 characters unless max_chars says otherwise.",
        "- test_endpoint only allows GET, HEAD and OPTIONS.",
    ])


def build_discovery_prompt(platform_name: str, docs_url: str | None = None) -> str:
    docs_url = (docs_url or "").strip()
    docs_instruction = f" If a --docs-url was provided, start there: {docs_url}" if docs_url else ""
    return f"Research the API documentation for {platform_name} and save your findings.{docs_instruction}"


class DiscoveryAgent:
    """Researches a platform's API surface with a tool-calling model.

    Usage::

        config = AdapterForgeConfig.load()
        session = LlmSession(CredentialResolver(config))
        agent = DiscoveryAgent(config, session)
        result = await agent.run("Toast", docs_url="https://doc.toasttab.com")
    """

    def __init__(
        self,
        config: AdapterForgeConfig,
        session: LlmSession,
        bus: PipelineBus | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        search: WebSearch | None = None,
        reader: ReaderClient | None = None,
        timeout_seconds: float = DISCOVERY_TIMEOUT_SECONDS,
    ) -> None:
        self._config = config
        self._session = session
        self._bus = bus or pipeline_bus
        self._http = http
        self._search = search
        self._reader = reader
        self._timeout = timeout_seconds

    async def run(self, platform_name: str, docs_url: str | None = None) -> DiscoveryResult:
        state = DiscoveryState()
        state.register_source_url(docs_url)

        async with contextlib.AsyncExitStack() as stack:
            ctx = await self._build_context(state, stack)
            await self._bus.emit_step(
                "discovery", "start", f"Running agentic API discovery for '{platform_name}'...",
            )
            try:
                await asyncio.wait_for(
                    self._loop(ctx, platform_name, docs_url),
                    timeout=self._timeout,
                )
            except DiscoveryError as exc:
                exc.partial = state.result()
                count = state.finding_count()
                if count:
                    logger.warning("Discovery failed after collecting %d finding(s); they were not cached.", count)
                await self._bus.emit_error("discovery", "failed", str(exc))
                raise
            except asyncio.TimeoutError:
                note = (
                    f"Discovery timed out after {int(self._timeout)} seconds; "
                    "findings may be incomplete."
                )
                state.add_note(note)
                logger.warning(note)
                await self._bus.emit_error("discovery", "timeout", note)

        result = state.result()
        await self._bus.emit_result(
            "discovery",
            "complete",
            f"Discovery finished: {result.tool_calls} tool calls, {result.pages_visited} pages visited.",
            {"findings": sum(len(v) for v in result.findings.values())},
        )
        return result

    async def _build_context(self, state: DiscoveryState, stack: contextlib.AsyncExitStack) -> ToolContext:
        http = self._http
        if http is None:
            http = await stack.enter_async_context(httpx.AsyncClient(headers=BROWSER_HEADERS))

        search = self._search
        if search is None:
            tavily = await stack.enter_async_context(TavilyClient(self._config.tavily))
            ddg = await stack.enter_async_context(DuckDuckGoClient())
            search = WebSearch(tavily, ddg)

        reader = self._reader
        if reader is None:
            reader = await stack.enter_async_context(ReaderClient(self._config.reader))

        return ToolContext(state=state, http=http, search=search, reader=reader)

    async def _loop(self, ctx: ToolContext, platform_name: str, docs_url: str | None) -> None:
        system_prompt = build_discovery_system_prompt(platform_name)
        specs = tool_specs()
        messages: list[Message] = [UserMessage(build_discovery_prompt(platform_name, docs_url))]
        auth_retried = False

        while True:
            try:
                reply = await run_turn(
                    self._session.runtime,
                    system_prompt,
                    prune_context(messages, ctx.state.findings),
                    specs,
                    on_thinking=self._on_thinking,
                    on_text=self._on_text,
                    max_tokens=TURN_MAX_TOKENS,
                    thinking_budget=THINKING_BUDGET,
                )
            except ModelError as exc:
                if is_auth_error(exc) and not auth_retried:
                    auth_retried = True
                    logger.warning("Authentication error during discovery; refreshing credentials and retrying.")
                    await self._bus.emit_step("discovery", "auth", "Refreshing credentials after auth error")
                    self._session.refresh()
                    continue
                if is_auth_error(exc):
                    raise DiscoveryError(
                        f"Discovery agent failed: authentication failed again after refreshing credentials: {exc}"
                    ) from exc
                raise DiscoveryError(f"Discovery agent failed: {exc}") from exc

            auth_retried = False
            messages.append(reply)
            if not reply.tool_calls:
                return

            for call in reply.tool_calls:
                await self._bus.emit_tool_start(
                    call.name, describe_tool_start(call.name, call.arguments), call.arguments,
                )
                result = await dispatch_tool(call, ctx)
                await self._bus.emit_tool_end(call.name, result.is_error)
                messages.append(result)

    async def _on_thinking(self, delta: str) -> None:
        await self._bus.emit_thinking("discovery", delta)

    async def _on_text(self, delta: str) -> None:
        await self._bus.emit_text("discovery", delta)
