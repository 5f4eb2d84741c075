"""Centralized configuration for AdapterForge.

Loads API keys and settings from environment variables and
.adapterforge/settings.json, and resolves every artifact path the
generator reads or writes.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class ProviderConfig:
    api_key: str = ""
    base_url: str = ""
    timeout: int = 30


@dataclass
class LlmConfig:
    """Model runtime preferences (credentials are resolved separately)."""

    provider: str = "anthropic-api"  # "anthropic-api" | "claude-code"
    model: str = ""
    api_key: str = ""
    subscription_token: str = ""
    timeout: int = 600


@dataclass
class GenerationConfig:
    max_iterations: int = 5
    auto_verify: bool = True
    typecheck_command: list[str] = field(default_factory=lambda: ["bun", "run", "typecheck"])
    cache_max_age_hours: float = 24.0


def _parse_bool(value: str, default: bool) -> bool:
    if not value:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class AdapterForgeConfig:
    """All configuration in one place."""

    project_root: Path = field(default_factory=lambda: Path.cwd())

    tavily: ProviderConfig = field(default_factory=ProviderConfig)
    reader: ProviderConfig = field(default_factory=ProviderConfig)
    llm: LlmConfig = field(default_factory=LlmConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    user_profile_override: str = ""

    @classmethod
    def load(cls, project_root: Path | None = None) -> AdapterForgeConfig:
        """Load config from environment and .adapterforge/settings.json."""
        env_root = os.environ.get("ADAPTERFORGE_PROJECT_ROOT", "").strip()
        root = project_root or (Path(env_root) if env_root else Path.cwd())
        cfg = cls(project_root=root)

        settings_path = root / ".adapterforge" / "settings.json"
        env_from_settings: dict[str, str] = {}
        if settings_path.exists():
            with open(settings_path) as f:
                settings = json.load(f)
                env_from_settings = settings.get("env", {})

        def get(key: str) -> str:
            return os.environ.get(key, env_from_settings.get(key, ""))

        # Tavily (primary web search)
        cfg.tavily = ProviderConfig(
            api_key=get("TAVILY_API_KEY"),
            base_url="https://api.tavily.com",
            timeout=int(get("TAVILY_TIMEOUT") or "30"),
        )

        # Readability fallback
        cfg.reader = ProviderConfig(
            base_url=get("JINA_READER_URL") or "https://r.jina.ai",
            timeout=int(get("JINA_READER_TIMEOUT") or "20"),
        )

        cfg.llm = LlmConfig(
            provider=get("ADAPTERFORGE_LLM_PROVIDER") or "anthropic-api",
            model=get("ADAPTERFORGE_LLM_MODEL"),
            api_key=get("ADAPTERFORGE_ANTHROPIC_API_KEY") or get("ANTHROPIC_API_KEY"),
            subscription_token=get("ADAPTERFORGE_SUBSCRIPTION_TOKEN"),
            timeout=int(get("ANTHROPIC_TIMEOUT") or "600"),
        )

        max_iterations = int(get("ADAPTERFORGE_MAX_ITERATIONS") or "5")
        typecheck = get("ADAPTERFORGE_TYPECHECK_COMMAND").split()
        cfg.generation = GenerationConfig(
            max_iterations=min(10, max(1, max_iterations)),
            auto_verify=_parse_bool(get("ADAPTERFORGE_AUTO_VERIFY"), True),
            typecheck_command=typecheck or ["bun", "run", "typecheck"],
            cache_max_age_hours=float(get("ADAPTERFORGE_CACHE_MAX_AGE_HOURS") or "24"),
        )

        cfg.user_profile_override = get("ADAPTERFORGE_USER_PROFILE_PATH").strip()
        return cfg

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def data_dir(self) -> Path:
        return self.project_root / "data"

    @property
    def adapters_dir(self) -> Path:
        return self.data_dir / "adapters"

    @property
    def interaction_profiles_dir(self) -> Path:
        return self.data_dir / "interaction-profiles"

    @property
    def discovery_cache_dir(self) -> Path:
        return self.data_dir / "discovery-cache"

    @property
    def user_profile_path(self) -> Path:
        if self.user_profile_override:
            path = Path(self.user_profile_override).expanduser()
            return path if path.is_absolute() else self.project_root / path
        return self.data_dir / "user-profile.json"

    @property
    def adapter_api_path(self) -> Path:
        return self.project_root / "src" / "adapter-api.ts"

    @property
    def reference_adapter_path(self) -> Path:
        return self.data_dir / "few-shot" / "stripe.ts"

    @property
    def reference_profile_path(self) -> Path:
        return self.interaction_profiles_dir / "stripe.json"

    @property
    def cache_max_age_seconds(self) -> float:
        return self.generation.cache_max_age_hours * 3600

    def adapter_path(self, slug: str) -> Path:
        return self.adapters_dir / f"{slug}.ts"

    def interaction_profile_path(self, slug: str) -> Path:
        return self.interaction_profiles_dir / f"{slug}.json"

    def discovery_cache_path(self, slug: str) -> Path:
        return self.discovery_cache_dir / f"{slug}.json"
