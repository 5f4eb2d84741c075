"""Registers a generated platform as a business in the user profile file."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlsplit

from pydantic import BaseModel

from adapterforge.discovery.findings import Findings
from adapterforge.generation.prompt import flatten_findings, slugify_platform_name

logger = logging.getLogger(__name__)

_SOURCE_SUFFIX = re.compile(r"\s*\(source:\s*https?://[^)]+\)\s*$", re.IGNORECASE)
_DISPLAY_NAME_PATTERNS = [
    re.compile(
        r"\b(?:business|merchant|store|restaurant|location|account)\s*name\b[^:=-]*[:=-]\s*[\"']?([^\"'\n;(),]{2,80})",
        re.IGNORECASE,
    ),
    re.compile(r"\bdisplay\s*name\b[^:=-]*[:=-]\s*[\"']?([^\"'\n;(),]{2,80})", re.IGNORECASE),
    re.compile(r"\"name\"\s*:\s*\"([^\"]{2,80})\"", re.IGNORECASE),
    re.compile(r"\bname\b\s*[:=-]\s*[\"']([^\"']{2,80})[\"']", re.IGNORECASE),
]
_ENV_VAR = re.compile(r"\bprocess\.env\.([A-Z][A-Z0-9_]*)\b")
_URL = re.compile(r"https?://[^\s\"'`)<>\]]+")
_RELEVANT_ENV = re.compile(r"KEY|TOKEN|SECRET|CLIENT|ACCOUNT|MERCHANT|LOCATION")
_ID_SUFFIX = re.compile(r"\b(store|business|location|restaurant|merchant|account|shop)\b\s*$", re.IGNORECASE)
_SANDBOX_ENVIRONMENTS = {"sandbox", "test", "testing", "demo", "development"}


class BusinessProfileUpdate(BaseModel):
    profile_path: str
    status: Literal["added", "exists", "skipped"]
    message: str
    business_entry: dict[str, Any] | None = None


def _read_string(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None


def _as_record(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _valid_urls(urls: list[str]) -> list[str]:
    valid = []
    for url in urls:
        parts = urlsplit(url)
        if parts.scheme in ("http", "https") and parts.netloc:
            valid.append(url)
    return valid


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------


def extract_display_name(platform_name: str, findings: Findings) -> str:
    for entry in flatten_findings(findings):
        entry = _SOURCE_SUFFIX.sub("", entry).strip()
        for pattern in _DISPLAY_NAME_PATTERNS:
            match = pattern.search(entry)
            candidate = match.group(1).strip() if match else ""
            if not candidate:
                continue
            if re.match(r"^https?://", candidate, re.IGNORECASE) or candidate.lower() == "name":
                continue
            return candidate
    return platform_name.strip() or "Generated Business"


def extract_env_var_names(adapter_source: str) -> list[str]:
    return sorted(set(_ENV_VAR.findall(adapter_source)))


def extract_profile_urls(interaction_profile_json: str) -> list[str]:
    try:
        profile = _as_record(json.loads(interaction_profile_json))
    except ValueError:
        return []
    urls: set[str] = set()
    for capability in _as_record(profile.get("capabilities")).values():
        endpoint = _read_string(_as_record(capability).get("endpoint"))
        if endpoint:
            urls.update(_URL.findall(endpoint))
    return sorted(urls)


def infer_environment(platform_slug: str, findings: Findings, env_vars: list[str]) -> str:
    haystack = f"{chr(10).join(flatten_findings(findings))} {' '.join(env_vars)}".lower()

    if "sandbox" in haystack:
        return "test" if platform_slug == "stripe" else "sandbox"
    if re.search(r"\btest(?:ing)?\b", haystack) or re.search(r"\blivemode\s*[:=]\s*false\b", haystack):
        return "sandbox" if platform_slug in ("toast", "square") else "test"
    if re.search(r"\bprod(?:uction)?\b", haystack) or re.search(r"\blive\b", haystack):
        return "live" if platform_slug == "stripe" else "production"
    return "test" if platform_slug == "stripe" else "sandbox"


def location_from_environment(environment: str) -> str:
    return "Sandbox" if environment.strip().lower() in _SANDBOX_ENVIRONMENTS else "Unknown"


def build_platform_config(
    platform_slug: str,
    findings: Findings,
    adapter_source: str,
    interaction_profile_json: str,
    source_urls: list[str],
) -> dict[str, Any]:
    env_vars = extract_env_var_names(adapter_source)
    config: dict[str, Any] = {"environment": infer_environment(platform_slug, findings, env_vars)}

    all_urls = sorted(set(
        _valid_urls(_URL.findall(adapter_source))
        + extract_profile_urls(interaction_profile_json)
        + _valid_urls(source_urls)
    ))
    api_urls = [
        url for url in all_urls
        if any(marker in url.lower() for marker in ("api.", "/api", "/v1", "/v2"))
    ]
    if len(api_urls) == 1:
        config["baseUrl"] = api_urls[0]
    elif api_urls:
        config["baseUrls"] = api_urls

    env_keys = [name for name in env_vars if _RELEVANT_ENV.search(name)]
    if len(env_keys) == 1:
        config["apiKeyEnv"] = env_keys[0]
    elif env_keys:
        config["apiKeyEnvs"] = env_keys
    return config


def build_business_id(base_name: str, businesses: list[dict[str, Any]]) -> str:
    trimmed = _ID_SUFFIX.sub("", base_name.strip()).strip()
    seed = slugify_platform_name(trimmed) or slugify_platform_name(base_name) or "generated-business"
    existing = {
        slug for slug in (slugify_platform_name(_read_string(b.get("id")) or "") for b in businesses) if slug
    }
    if seed not in existing:
        return seed
    suffix = 2
    while f"{seed}-{suffix}" in existing:
        suffix += 1
    return f"{seed}-{suffix}"


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


def sync_business_profile(
    profile_path: Path,
    *,
    platform_name: str,
    platform_slug: str,
    findings: Findings,
    source_urls: list[str],
    adapter_source: str,
    interaction_profile_json: str,
) -> BusinessProfileUpdate:
    """Add a business entry for *platform_slug* unless one already exists.

    A profile that cannot be parsed is left untouched and reported as
    ``skipped``. Write failures propagate as ``OSError``.
    """
    path_text = str(profile_path)
    profile: dict[str, Any] = {"user": "user", "businesses": []}
    if profile_path.exists():
        try:
            loaded = json.loads(profile_path.read_text(encoding="utf-8"))
        except ValueError as exc:
            return BusinessProfileUpdate(
                profile_path=path_text,
                status="skipped",
                message=f"Could not parse user profile at '{path_text}': {exc}",
            )
        profile.update(_as_record(loaded))

    raw_businesses = profile.get("businesses")
    businesses = [_as_record(b) for b in raw_businesses] if isinstance(raw_businesses, list) else []

    for business in businesses:
        if slugify_platform_name(_read_string(business.get("platform")) or "") == platform_slug:
            return BusinessProfileUpdate(
                profile_path=path_text,
                status="exists",
                message=f"Business for platform '{platform_slug}' already exists in '{path_text}'.",
                business_entry=business,
            )

    name = extract_display_name(platform_name, findings)
    config_block = build_platform_config(
        platform_slug, findings, adapter_source, interaction_profile_json, source_urls,
    )
    entry: dict[str, Any] = {
        "id": build_business_id(name, businesses),
        "name": name,
        "platform": platform_slug,
        "location": location_from_environment(config_block["environment"]),
        "preferences": {},
        platform_slug: config_block,
    }
    businesses.append(entry)
    profile["user"] = _read_string(profile.get("user")) or "user"
    profile["businesses"] = businesses

    profile_path.parent.mkdir(parents=True, exist_ok=True)
    profile_path.write_text(json.dumps(profile, indent=2) + "\n", encoding="utf-8")
    os.chmod(profile_path, 0o600)
    logger.info("Added business '%s' for platform '%s'", entry["id"], platform_slug)

    return BusinessProfileUpdate(
        profile_path=path_text,
        status="added",
        message=f"Added business for platform '{platform_slug}' to '{path_text}'.",
        business_entry=entry,
    )
