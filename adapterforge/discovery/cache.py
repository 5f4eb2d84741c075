"""Versioned on-disk cache of discovery findings, one JSON file per platform slug."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

CACHE_VERSION = 1
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DiscoveryCacheReadError(Exception):
    """Base error for a required cache that could not be used."""

    code = "invalid"

    def __init__(self, cache_path: Path, message: str) -> None:
        super().__init__(message)
        self.cache_path = cache_path


class DiscoveryCacheMissingError(DiscoveryCacheReadError):
    code = "missing"


class DiscoveryCacheInvalidError(DiscoveryCacheReadError):
    code = "invalid"


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class DiscoveryCacheEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: Literal[1] = CACHE_VERSION
    platform_name: str = Field(alias="platformName", min_length=1)
    platform_slug: str = Field(alias="platformSlug", min_length=1)
    generated_at: str = Field(alias="generatedAt", min_length=1)
    model: str = Field(min_length=1)
    provider: str = Field(min_length=1)
    duration_ms: int = Field(alias="durationMs", ge=0, strict=True)
    source_urls: list[str] = Field(alias="sourceUrls", default_factory=list)
    docs_url: str | None = Field(alias="docsUrl", default=None, min_length=1)
    pages_visited: int = Field(alias="pagesVisited", ge=0, strict=True)
    tool_calls: int = Field(alias="toolCalls", ge=0, strict=True)
    findings: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("generated_at")
    @classmethod
    def _valid_timestamp(cls, value: str) -> str:
        try:
            parse_timestamp(value)
        except ValueError as exc:
            raise ValueError("generatedAt must be a valid timestamp.") from exc
        return value

    @field_validator("source_urls")
    @classmethod
    def _non_empty_urls(cls, value: list[str]) -> list[str]:
        if any(not url for url in value):
            raise ValueError("sourceUrls entries must be non-empty.")
        return value

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), indent=2) + "\n"


@dataclass
class CacheReadResult:
    cache: DiscoveryCacheEntry
    age_seconds: float
    cache_path: Path


# ---------------------------------------------------------------------------
# Freshness
# ---------------------------------------------------------------------------


def is_fresh(age_seconds: float, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS) -> bool:
    return age_seconds < max_age_seconds


def format_cache_age(age_seconds: float) -> str:
    if age_seconds < 60:
        return "just now"

    total_minutes = int(age_seconds // 60)
    if total_minutes < 60:
        return f"{total_minutes}m"

    total_hours = total_minutes // 60
    if total_hours < 24:
        minutes = total_minutes % 60
        return f"{total_hours}h {minutes}m" if minutes else f"{total_hours}h"

    days, hours = divmod(total_hours, 24)
    return f"{days}d {hours}h" if hours else f"{days}d"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class DiscoveryCache:
    """Reads and writes ``<cache_dir>/<slug>.json``."""

    def __init__(self, cache_dir: Path, clock: Callable[[], float] = time.time) -> None:
        self._cache_dir = cache_dir
        self._clock = clock

    def path_for(self, slug: str) -> Path:
        return self._cache_dir / f"{slug}.json"

    def read(self, slug: str, required: bool = False) -> CacheReadResult | None:
        """Load the cache for *slug*.

        Returns ``None`` for an absent or unusable file unless *required*, in
        which case :class:`DiscoveryCacheMissingError` or
        :class:`DiscoveryCacheInvalidError` is raised.
        """
        cache_path = self.path_for(slug)
        if not cache_path.exists():
            if required:
                raise DiscoveryCacheMissingError(
                    cache_path,
                    f"No discovery cache found for '{slug}' at '{cache_path}'. "
                    "Run without --skip-discovery or pass --rediscover to create it.",
                )
            return None

        try:
            raw = json.loads(cache_path.read_text(encoding="utf-8"))
            entry = DiscoveryCacheEntry.model_validate(raw)
        except (OSError, ValueError) as exc:
            # pydantic's ValidationError is a ValueError subclass.
            reason = _describe(exc)
            logger.debug("Discovery cache at %s is invalid: %s", cache_path, reason)
            if required:
                raise DiscoveryCacheInvalidError(
                    cache_path, f"Discovery cache at '{cache_path}' is invalid: {reason}"
                ) from exc
            return None

        generated = parse_timestamp(entry.generated_at).timestamp()
        return CacheReadResult(
            cache=entry,
            age_seconds=max(0.0, self._clock() - generated),
            cache_path=cache_path,
        )

    def write(self, slug: str, entry: DiscoveryCacheEntry | dict[str, Any]) -> DiscoveryCacheEntry:
        """Validate and atomically persist *entry*; ``version`` and ``platformSlug`` are overwritten."""
        if isinstance(entry, DiscoveryCacheEntry):
            data = entry.model_dump(by_alias=True)
        else:
            data = dict(entry)
            for snake, camel in (("platform_slug", "platformSlug"), ("version", "version")):
                data.pop(snake, None)
                data.pop(camel, None)
        data["version"] = CACHE_VERSION
        data["platformSlug"] = slug
        normalized = DiscoveryCacheEntry.model_validate(data)

        cache_path = self.path_for(slug)
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=cache_path.parent, prefix=f".{slug}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(normalized.to_json())
            os.replace(tmp_name, cache_path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.info("Saved discovery findings to %s", cache_path)
        return normalized


def _describe(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(err["msg"] for err in exc.errors())
    return str(exc)
