"""Credential resolution for the model runtime.

Two provider preferences are supported:

* ``anthropic-api``: an Anthropic API key from the environment
  (``ADAPTERFORGE_ANTHROPIC_API_KEY`` / ``ANTHROPIC_API_KEY``) or config.
* ``claude-code``: the Claude Code CLI OAuth login
  (``~/.claude/.credentials.json``) or a subscription token from
  ``ADAPTERFORGE_SUBSCRIPTION_TOKEN`` / config.

Every :meth:`CredentialResolver.resolve` call re-reads its sources, so
calling it again is how a refresh is forced.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from adapterforge.config import AdapterForgeConfig
from adapterforge.providers.llm_runtime import AnthropicRuntime, ModelRuntime

logger = logging.getLogger(__name__)

PROVIDER_PREFERENCES = ("anthropic-api", "claude-code")
API_KEY_ENV_VARS = ("ADAPTERFORGE_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY")
SUBSCRIPTION_TOKEN_ENV_VAR = "ADAPTERFORGE_SUBSCRIPTION_TOKEN"

MODEL_ALIASES = {
    "opus": "claude-opus-4-6",
    "sonnet": "claude-sonnet-4-5",
    "haiku": "claude-haiku-4-5",
}
DEFAULT_MODEL = "claude-opus-4-6"


class NoCredentialsError(Exception):
    """No usable credentials for the requested provider; message says how to fix it."""


@dataclass
class ResolvedCredentials:
    token: str
    provider: str  # runtime provider, always "anthropic" here
    model: str
    source: str  # "api-key" | "claude-cli" | "subscription-token"
    auth_mode: str  # "api-key" | "oauth" | "subscription-token"
    expires_at: float | None = None

    def summary(self) -> str:
        labels = {
            "claude-cli": "OAuth (via Claude Code CLI)",
            "subscription-token": "Subscription token",
        }
        label = labels.get(self.source, "API key")
        if self.expires_at is None:
            return label
        return f"{label} (expires {datetime.fromtimestamp(self.expires_at).isoformat()})"


def normalize_model_alias(model: str) -> str:
    model = model.strip()
    return MODEL_ALIASES.get(model.lower(), model)


def resolve_model(configured: str | None, override: str | None = None) -> str:
    if override and override.strip():
        return normalize_model_alias(override)
    if configured and configured.strip():
        return normalize_model_alias(configured)
    return DEFAULT_MODEL


def is_subscription_token(token: str) -> bool:
    return "sk-ant-oat" in token


def is_anthropic_api_key(token: str) -> bool:
    return token.startswith("sk-ant-") and not is_subscription_token(token)


def _coerce_expires_at(value: Any) -> float | None:
    """Return an epoch-seconds expiry from seconds, milliseconds or an ISO string."""
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            value = float(value)
        except ValueError:
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
            except ValueError:
                return None
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return value / 1000 if value > 1e11 else float(value)
    return None


class CredentialResolver:
    """Resolves a usable bearer token for the model runtime, or fails loudly."""

    def __init__(
        self,
        config: AdapterForgeConfig,
        environ: Mapping[str, str] | None = None,
        home: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._environ = environ if environ is not None else os.environ
        self._home = home or Path.home()
        self._clock = clock

    def resolve(
        self,
        provider_preference: str | None = None,
        overrides: Mapping[str, str | None] | None = None,
    ) -> ResolvedCredentials:
        overrides = overrides or {}
        preference = provider_preference or overrides.get("provider") or self._config.llm.provider
        model = resolve_model(self._config.llm.model, overrides.get("model"))
        notes: list[str] = []

        if preference == "claude-code":
            creds = self._from_claude_cli(model, notes) or self._from_subscription_tokens(model, notes)
        elif preference == "anthropic-api":
            creds = self._from_api_keys(model, notes)
        else:
            notes.append(f"Unknown provider '{preference}'.")
            creds = None

        if creds is None:
            raise NoCredentialsError(self._no_credentials_message(preference, notes))
        logger.debug("Resolved %s credentials from %s", creds.provider, creds.source)
        return creds

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def _from_api_keys(self, model: str, notes: list[str]) -> ResolvedCredentials | None:
        candidates = [
            (" or ".join(API_KEY_ENV_VARS), self._env_first(API_KEY_ENV_VARS)),
            ("Configured API key (anthropic)", self._config.llm.api_key.strip()),
        ]
        for label, token in candidates:
            if not token:
                continue
            if is_subscription_token(token):
                notes.append(
                    f"{label} looks like a Claude subscription token. "
                    f"Use provider 'claude-code' or set {SUBSCRIPTION_TOKEN_ENV_VAR} instead."
                )
                continue
            if not token.startswith("sk-ant"):
                notes.append(f"{label} is not an Anthropic API key format.")
                continue
            return ResolvedCredentials(
                token=token, provider="anthropic", model=model,
                source="api-key", auth_mode="api-key",
            )
        return None

    def _from_claude_cli(self, model: str, notes: list[str]) -> ResolvedCredentials | None:
        for path in self.claude_credential_paths():
            if not path.exists():
                continue
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                notes.append(f"Could not read Claude Code CLI credentials at '{path}' ({exc}).")
                continue

            oauth = raw.get("claudeAiOauth") if isinstance(raw, dict) else None
            if not isinstance(oauth, dict):
                continue
            token = next(
                (str(oauth[k]).strip() for k in ("accessToken", "access_token", "access") if oauth.get(k)),
                "",
            )
            if not token:
                continue

            expires_at = _coerce_expires_at(
                oauth.get("expiresAt", oauth.get("expires_at", oauth.get("expires")))
            )
            if expires_at is not None and expires_at <= self._clock():
                notes.append("Claude Code CLI OAuth unavailable (token expired; run 'claude login').")
                continue
            return ResolvedCredentials(
                token=token, provider="anthropic", model=model,
                source="claude-cli", auth_mode="oauth", expires_at=expires_at,
            )
        return None

    def _from_subscription_tokens(self, model: str, notes: list[str]) -> ResolvedCredentials | None:
        candidates = [
            (SUBSCRIPTION_TOKEN_ENV_VAR, (self._environ.get(SUBSCRIPTION_TOKEN_ENV_VAR) or "").strip()),
            ("Configured subscription token", self._config.llm.subscription_token.strip()),
        ]
        for label, token in candidates:
            if not token:
                continue
            if not is_subscription_token(token):
                if is_anthropic_api_key(token):
                    notes.append(
                        f"{label} looks like an Anthropic API key, not a Claude subscription token. "
                        "Use provider 'anthropic-api'."
                    )
                else:
                    notes.append(f"{label} format was not recognized as a supported subscription token.")
                continue
            return ResolvedCredentials(
                token=token, provider="anthropic", model=model,
                source="subscription-token", auth_mode="subscription-token",
            )
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def claude_credential_paths(self) -> list[Path]:
        base = self._home / ".claude"
        return [base / "credentials.json", base / ".credentials.json"]

    def _env_first(self, names: tuple[str, ...]) -> str:
        for name in names:
            value = (self._environ.get(name) or "").strip()
            if value:
                return value
        return ""

    @staticmethod
    def _no_credentials_message(preference: str, notes: list[str]) -> str:
        if preference == "anthropic-api":
            help_text = (
                "No anthropic-api credentials found. Set "
                f"{' or '.join(API_KEY_ENV_VARS)}, or add it to .adapterforge/settings.json."
            )
        else:
            help_text = (
                f"No {preference} credentials found. Run 'claude login' (or re-login), "
                f"or set {SUBSCRIPTION_TOKEN_ENV_VAR}."
            )
        switch_help = (
            "To use another provider, set ADAPTERFORGE_LLM_PROVIDER to one of: "
            + ", ".join(PROVIDER_PREFERENCES) + "."
        )
        suffix = f" ({' '.join(notes)})" if notes else ""
        return f"{help_text} {switch_help}{suffix}"


RuntimeFactory = Callable[[ResolvedCredentials], ModelRuntime]


class LlmSession:
    """Holds the current runtime and rebuilds it from fresh credentials on demand."""

    def __init__(
        self,
        resolver: CredentialResolver,
        provider_preference: str | None = None,
        model_override: str | None = None,
        runtime_factory: RuntimeFactory | None = None,
        timeout: float = 600,
    ) -> None:
        self._resolver = resolver
        self._preference = provider_preference
        self._overrides = {"model": model_override}
        self._factory = runtime_factory or (lambda creds: AnthropicRuntime(creds, timeout=timeout))
        self.credentials = self._resolver.resolve(self._preference, self._overrides)
        self.runtime = self._factory(self.credentials)

    @property
    def provider(self) -> str:
        return self.credentials.provider

    @property
    def model(self) -> str:
        return self.credentials.model

    def refresh(self) -> ModelRuntime:
        """Re-resolve credentials and rebuild the runtime."""
        self.credentials = self._resolver.resolve(self._preference, self._overrides)
        self.runtime = self._factory(self.credentials)
        logger.info(
            "Refreshed credentials. Using provider '%s' (%s) with model '%s'.",
            self.credentials.provider, self.credentials.source, self.credentials.model,
        )
        return self.runtime
