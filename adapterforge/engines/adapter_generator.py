"""Adapter Generator: findings to a type-checked adapter and interaction profile.

For one platform this engine:
  1. Decides between the discovery cache and a fresh discovery run.
  2. Builds the generation prompt from the findings and few-shot references.
  3. Streams the model output and parses the two artifacts from it.
  4. Normalizes and writes the interaction profile and adapter source.
  5. Type-checks the adapter, retrying with compiler feedback until accepted
     or the attempt budget runs out.
  6. Registers the platform in the user profile and lints the auth strategy.
  7. Emits progress events to the pipeline bus at every step.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Literal, cast

from pydantic import BaseModel, Field

from adapterforge.config import AdapterForgeConfig
from adapterforge.discovery.cache import (
    CacheReadResult,
    DiscoveryCache,
    DiscoveryCacheEntry,
    format_cache_age,
    is_fresh,
)
from adapterforge.discovery.findings import DiscoveryResult
from adapterforge.engines.discovery_agent import DiscoveryAgent
from adapterforge.generation.artifacts import ArtifactParseError, parse_generated_artifacts
from adapterforge.generation.auth_lint import lint_auth_strategy
from adapterforge.generation.business_profile import BusinessProfileUpdate, sync_business_profile
from adapterforge.generation.profile import normalize_interaction_profile
from adapterforge.generation.prompt import (
    FewShotContextError,
    build_analysis_summary,
    build_generation_prompt,
    read_few_shot_context,
    slugify_platform_name,
    to_pascal_case,
    truncate_for_prompt,
)
from adapterforge.generation.typecheck import TypecheckResult, run_typecheck, should_accept
from adapterforge.pipeline_bus import PipelineBus, pipeline_bus
from adapterforge.providers.credentials import LlmSession
from adapterforge.providers.llm_runtime import ModelError, is_auth_error, stream_prompt
from adapterforge.providers.search_results import SearchResult

logger = logging.getLogger(__name__)

GENERATION_TEMPERATURE = 0.1
GENERATION_MAX_TOKENS = 16_000
REVIEW_WARNING = "Warning: review the generated adapter/profile before running it against real accounts."

Confirm = Callable[[str], Awaitable[bool]]
Typechecker = Callable[[Path, Path], Awaitable[TypecheckResult]]


class GenerationError(Exception):
    """Fatal generation failure: exhaustion, repeated auth failure, bad input."""


# ---------------------------------------------------------------------------
# Result model
# ---------------------------------------------------------------------------


class GenerationResult(BaseModel):
    """Result of a successful generation run."""

    platform_slug: str
    adapter_path: str
    profile_path: str
    attempts: int
    docs_used: list[SearchResult] = Field(default_factory=list)
    provider: str
    model: str
    discovery_source: Literal["cache", "fresh"]
    business_profile_update: BusinessProfileUpdate | None = None
    warnings: list[str] = Field(default_factory=list)
    completed_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stdio_is_interactive() -> bool:
    return sys.stdin.isatty() and sys.stdout.isatty()


async def prompt_use_cache(question: str) -> bool:
    """Ask on the terminal; empty, y and yes mean yes, n and no mean no, anything else yes."""
    answer = await asyncio.to_thread(input, question)
    return answer.strip().lower() not in ("n", "no")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AdapterGenerator:
    """Runs discovery (or reuses its cache) and generates a verified adapter.

    Usage::

        config = AdapterForgeConfig.load()
        session = LlmSession(CredentialResolver(config))
        generator = AdapterGenerator(config, session)
        result = await generator.generate("Toast", docs_url="https://doc.toasttab.com")
    """

    def __init__(
        self,
        config: AdapterForgeConfig,
        session: LlmSession,
        bus: PipelineBus | None = None,
        *,
        discovery_agent: DiscoveryAgent | None = None,
        cache: DiscoveryCache | None = None,
        confirm: Confirm | None = None,
        typecheck: Typechecker | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._config = config
        self._session = session
        self._bus = bus or pipeline_bus
        self._discovery = discovery_agent or DiscoveryAgent(config, session, self._bus)
        self._cache = cache or DiscoveryCache(config.discovery_cache_dir)
        self._confirm = confirm
        self._typecheck = typecheck or self._run_typecheck
        self._today = today

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(
        self,
        platform_name: str,
        docs_url: str | None = None,
        *,
        skip_discovery: bool = False,
        rediscover: bool = False,
        output_path: str | None = None,
    ) -> GenerationResult:
        """Produce the adapter and interaction profile for *platform_name*.

        Raises:
            GenerationError: empty slug, missing few-shot references, repeated
                auth failure or exhausted attempts.
            DiscoveryCacheReadError: ``skip_discovery`` without a usable cache.
            DiscoveryError: the discovery model loop failed (including a
                second consecutive auth failure).
        """
        if skip_discovery and rediscover:
            raise GenerationError("--skip-discovery and --rediscover cannot be used together.")

        slug = slugify_platform_name(platform_name)
        if not slug:
            raise GenerationError("Platform name resolved to an empty slug. Use a name with letters or numbers.")

        docs_url = (docs_url or "").strip() or None
        docs_used = [SearchResult(title=f"{platform_name} documentation", url=docs_url)] if docs_url else []

        await self._log(
            "start",
            f"Using provider '{self._session.provider}' ({self._session.credentials.source}) "
            f"with model '{self._session.model}'.",
        )

        discovery, source = await self._obtain_discovery(
            platform_name, slug, docs_url, skip_discovery=skip_discovery, rediscover=rediscover,
        )
        logger.debug(
            "Discovery complete (%s): %d tool calls, %d pages visited.",
            source, discovery.tool_calls, discovery.pages_visited,
        )

        return await self._generate_artifacts(
            platform_name, slug, discovery, source, docs_used, output_path,
        )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _obtain_discovery(
        self,
        platform_name: str,
        slug: str,
        docs_url: str | None,
        *,
        skip_discovery: bool,
        rediscover: bool,
    ) -> tuple[DiscoveryResult, Literal["cache", "fresh"]]:
        if skip_discovery:
            # required=True raises instead of returning None.
            cached = cast(CacheReadResult, self._cache.read(slug, required=True))
            await self._log(
                "cache",
                f"[cache] Using cached discovery for '{platform_name}' ({format_cache_age(cached.age_seconds)} old).",
            )
            return self._from_cache(cached.cache), "cache"

        cache_path = self._cache.path_for(slug)
        cached = self._cache.read(slug)
        if cached is None and cache_path.exists():
            await self._log(
                "cache", f"[cache] Ignoring invalid discovery cache at '{cache_path}'; running fresh discovery.",
            )

        if rediscover:
            await self._log("cache", f"[cache] --rediscover enabled; running fresh discovery for '{platform_name}'.")
        elif cached is not None and is_fresh(cached.age_seconds, self._config.cache_max_age_seconds):
            age = format_cache_age(cached.age_seconds)
            use_cache = True
            if self._confirm is not None or _stdio_is_interactive():
                confirm = self._confirm or prompt_use_cache
                use_cache = await confirm(
                    f"[cache] Found cached discovery for '{platform_name}' ({age} old). Use cache? [Y/n] "
                )
            if use_cache:
                await self._log("cache", f"[cache] Using cached discovery for '{platform_name}' ({age} old).")
                return self._from_cache(cached.cache), "cache"
            await self._log("cache", f"[cache] User selected rediscovery for '{platform_name}'.")
        elif cached is not None:
            await self._log(
                "cache",
                f"[cache] Cached discovery for '{platform_name}' is stale "
                f"({format_cache_age(cached.age_seconds)} old); running fresh discovery.",
            )

        return await self._run_fresh_discovery(platform_name, slug, docs_url), "fresh"

    async def _run_fresh_discovery(self, platform_name: str, slug: str, docs_url: str | None) -> DiscoveryResult:
        started = time.monotonic()
        result = await self._discovery.run(platform_name, docs_url)

        entry = DiscoveryCacheEntry(
            platform_name=platform_name,
            platform_slug=slug,
            generated_at=_utc_timestamp(),
            model=self._session.model,
            provider=self._session.provider,
            duration_ms=max(0, int((time.monotonic() - started) * 1000)),
            source_urls=sorted({url.strip() for url in result.source_urls if url.strip()}),
            docs_url=docs_url,
            pages_visited=result.pages_visited,
            tool_calls=result.tool_calls,
            findings=result.findings,
        )
        self._cache.write(slug, entry)
        await self._log("cache", f"[cache] Saved discovery findings to '{self._cache.path_for(slug)}'.")
        return result

    @staticmethod
    def _from_cache(entry: DiscoveryCacheEntry) -> DiscoveryResult:
        return DiscoveryResult(
            findings=entry.findings,
            pages_visited=entry.pages_visited,
            tool_calls=entry.tool_calls,
            source_urls=entry.source_urls,
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _resolve_adapter_path(self, slug: str, output_path: str | None) -> Path:
        if output_path and output_path.strip():
            path = Path(output_path.strip()).expanduser()
            return path if path.is_absolute() else self._config.project_root / path
        return self._config.adapter_path(slug)

    async def _generate_artifacts(
        self,
        platform_name: str,
        slug: str,
        discovery: DiscoveryResult,
        source: Literal["cache", "fresh"],
        docs_used: list[SearchResult],
        output_path: str | None,
    ) -> GenerationResult:
        adapter_path = self._resolve_adapter_path(slug, output_path)
        profile_path = self._config.interaction_profile_path(slug)
        try:
            path_hint = os.path.relpath(adapter_path, self._config.project_root).replace("\\", "/")
        except ValueError:
            path_hint = str(adapter_path)

        try:
            few_shot = read_few_shot_context(self._config)
        except FewShotContextError as exc:
            raise GenerationError(str(exc)) from exc
        logger.debug("Loaded few-shot adapter/profile reference context.")

        analysis_summary = build_analysis_summary(
            discovery.findings, discovery.pages_visited, discovery.tool_calls,
        )
        current_date = self._today()
        max_attempts = self._config.generation.max_iterations

        previous_errors: str | None = None
        last_error = "Unknown generation failure"
        auth_retried = False
        attempt = 1

        while attempt <= max_attempts:
            await self._log("attempt", f"Generation attempt {attempt}/{max_attempts}...", {"attempt": attempt})
            prompt = build_generation_prompt(
                platform_name=platform_name,
                platform_slug=slug,
                adapter_class_name=f"{to_pascal_case(slug)}Adapter",
                adapter_file_path_hint=path_hint,
                analysis_summary=analysis_summary,
                few_shot=few_shot,
                current_date=current_date.isoformat(),
                previous_errors=previous_errors,
            )

            try:
                raw = await stream_prompt(
                    self._session.runtime,
                    prompt,
                    on_thinking=self._on_thinking,
                    on_text=self._on_text,
                    temperature=GENERATION_TEMPERATURE,
                    max_tokens=GENERATION_MAX_TOKENS,
                )
            except ModelError as exc:
                if not is_auth_error(exc):
                    auth_retried = False
                    last_error = str(exc)
                    previous_errors = truncate_for_prompt(last_error)
                    await self._log_failure(f"Attempt {attempt} failed: {last_error}", attempt)
                    attempt += 1
                    continue
                if auth_retried:
                    raise GenerationError(
                        f"Authentication failed again after refreshing credentials: {exc}"
                    ) from exc
                auth_retried = True
                await self._log(
                    "auth", "Authentication error from LLM provider; refreshing credentials and retrying.",
                )
                self._session.refresh()
                previous_errors = None
                last_error = "Authentication error while generating artifacts."
                continue
            auth_retried = False

            try:
                artifacts = parse_generated_artifacts(raw)
                profile_json = normalize_interaction_profile(
                    artifacts.interaction_profile_json, slug, today=current_date,
                )
            except (ArtifactParseError, ValueError) as exc:
                # pydantic's ValidationError is a ValueError subclass.
                last_error = str(exc)
                previous_errors = truncate_for_prompt(last_error)
                await self._log_failure(f"Attempt {attempt} failed: {last_error}", attempt)
                attempt += 1
                continue

            adapter_path.parent.mkdir(parents=True, exist_ok=True)
            profile_path.parent.mkdir(parents=True, exist_ok=True)
            profile_path.write_text(profile_json, encoding="utf-8")
            adapter_path.write_text(artifacts.adapter_source, encoding="utf-8")

            if self._config.generation.auto_verify:
                typecheck = await self._typecheck(self._config.project_root, adapter_path)
                if not should_accept(typecheck):
                    last_error = typecheck.output or typecheck.raw_output or "Type-check failed with no output."
                    previous_errors = truncate_for_prompt(last_error)
                    await self._log_failure(
                        f"Type-check failed on attempt {attempt}; retrying with error feedback.", attempt,
                    )
                    attempt += 1
                    continue
                await self._log(
                    "typecheck",
                    "Type-check passed." if typecheck.ok else
                    "Type-check passed for generated adapter; unrelated TypeScript diagnostics were ignored.",
                )

            logger.warning(REVIEW_WARNING)
            warnings = lint_auth_strategy(artifacts.adapter_source, discovery.findings)
            for warning in warnings:
                logger.warning(warning)

            result = GenerationResult(
                platform_slug=slug,
                adapter_path=str(adapter_path),
                profile_path=str(profile_path),
                attempts=attempt,
                docs_used=docs_used,
                provider=self._session.provider,
                model=self._session.model,
                discovery_source=source,
                business_profile_update=self._sync_business_profile(
                    platform_name, slug, discovery, artifacts.adapter_source, profile_json,
                ),
                warnings=warnings,
            )
            await self._bus.emit_result(
                "generation", "complete",
                f"Generated adapter for '{slug}' in {attempt} attempt(s).",
                result.model_dump(mode="json"),
            )
            return result

        await self._bus.emit_error("generation", "exhausted", last_error)
        raise GenerationError(f"Generation failed after {max_attempts} attempts. Last error: {last_error}")

    def _sync_business_profile(
        self,
        platform_name: str,
        slug: str,
        discovery: DiscoveryResult,
        adapter_source: str,
        profile_json: str,
    ) -> BusinessProfileUpdate | None:
        profile_path = self._config.user_profile_path
        try:
            update = sync_business_profile(
                profile_path,
                platform_name=platform_name,
                platform_slug=slug,
                findings=discovery.findings,
                source_urls=discovery.source_urls,
                adapter_source=adapter_source,
                interaction_profile_json=profile_json,
            )
        except OSError as exc:
            logger.error("Could not update user profile at '%s': %s", profile_path, exc)
            return BusinessProfileUpdate(
                profile_path=str(profile_path),
                status="skipped",
                message=f"Could not update user profile at '{profile_path}': {exc}",
            )
        logger.info(update.message)
        return update

    async def _run_typecheck(self, project_root: Path, adapter_path: Path) -> TypecheckResult:
        return await run_typecheck(self._config.generation.typecheck_command, project_root, adapter_path)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _log(self, step: str, message: str, data: dict | None = None) -> None:
        logger.info(message)
        await self._bus.emit_step("generation", step, message, data)

    async def _log_failure(self, message: str, attempt: int) -> None:
        logger.warning(message)
        await self._bus.emit_error("generation", "attempt", message, {"attempt": attempt})

    async def _on_thinking(self, delta: str) -> None:
        await self._bus.emit_thinking("generation", delta)

    async def _on_text(self, delta: str) -> None:
        await self._bus.emit_text("generation", delta)
