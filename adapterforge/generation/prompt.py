"""Generation prompt assembly: findings digest, few-shot references, retry feedback."""

from __future__ import annotations

import re
from dataclasses import dataclass

from adapterforge.config import AdapterForgeConfig
from adapterforge.discovery.findings import Findings
from adapterforge.web_text import truncate

ADAPTER_API_IMPORT_ALIAS = "agenr:adapter-api"
MAX_FEEDBACK_CHARS = 12_000


class FewShotContextError(Exception):
    """The reference adapter, profile or adapter API could not be read."""


@dataclass
class FewShotContext:
    adapter_api: str
    reference_adapter: str
    reference_interaction_profile: str


def read_few_shot_context(config: AdapterForgeConfig) -> FewShotContext:
    paths = (config.adapter_api_path, config.reference_adapter_path, config.reference_profile_path)
    try:
        texts = [p.read_text(encoding="utf-8") for p in paths]
    except OSError as exc:
        raise FewShotContextError(
            f"Failed to load few-shot context from '{paths[0]}', '{paths[1]}', and '{paths[2]}': {exc}"
        ) from exc
    return FewShotContext(*texts)


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def slugify_platform_name(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.strip().lower())
    return re.sub(r"-{2,}", "-", slug).strip("-")


def to_pascal_case(value: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[^a-zA-Z0-9]", value) if part)


# ---------------------------------------------------------------------------
# Findings digest
# ---------------------------------------------------------------------------


def _category_rank(category: str) -> int:
    if "business" in category or "merchant" in category or "account" in category:
        return 3
    if "discover" in category or "profile" in category:
        return 2
    if "notes" in category:
        return 1
    return 0


def ordered_categories(findings: Findings) -> list[str]:
    """Business/account categories first, then discovery/profile, then notes, then the rest."""
    return sorted(findings, key=lambda c: (-_category_rank(c), c))


def flatten_findings(findings: Findings) -> list[str]:
    return [entry for category in ordered_categories(findings) for entry in findings.get(category, [])]


def build_analysis_summary(findings: Findings, pages_visited: int, tool_calls: int) -> str:
    sections = [f"Discovery stats: pagesVisited={pages_visited}, toolCalls={tool_calls}"]
    for category in ordered_categories(findings):
        items = findings[category]
        if not items:
            continue
        label = re.sub(r"\b\w", lambda m: m.group(0).upper(), category.replace("_", " "))
        sections.append(f"{label}:\n" + "\n".join(f"- {item}" for item in items))
    return "\n\n".join(sections)


def truncate_for_prompt(text: str, max_chars: int = MAX_FEEDBACK_CHARS) -> str:
    return truncate(text, max_chars)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_AUTH_STRATEGIES = "\n".join([
    "10. Choose the correct auth strategy based on the platform's API authentication:",
    '    - "oauth2": Platform uses OAuth 2.0 authorization code flow (e.g., GitHub API, Google APIs, Stripe Connect). Set auth.oauth in the manifest with authorizationUrl, tokenUrl, and optionally oauthService and tokenContentType. The platform handles the OAuth redirect flow and token storage. The adapter receives injected Bearer tokens via ctx.fetch() automatically. Do NOT manually handle OAuth token exchange in the adapter code.',
    '    - "bearer": Platform uses a single API key or token as Bearer header (e.g., Stripe, OpenAI). User stores their key, ctx.fetch() injects it.',
    '    - "api-key-header": Platform uses a custom header for the API key (e.g., X-Api-Key). Set headerName in manifest.auth.',
    '    - "basic": Platform uses HTTP Basic auth (username:password).',
    '    - "cookie": Platform uses cookie-based auth. Set cookieName in manifest.auth.',
    '    - "custom": Platform uses a non-standard header. Set headerName in manifest.auth.',
    '    - "client-credentials": Platform requires clientId + clientSecret exchanged for a short-lived access token (e.g., Toast, Twilio, Salesforce). Use ctx.getCredential() to retrieve clientId/clientSecret from vault, do the token exchange via ctx.fetch(), then use the access token in subsequent ctx.fetch() calls with manually-set Authorization header.',
    '    - "none": Platform requires no authentication.',
])

_OAUTH_NOTES = [
    "IMPORTANT: For oauth2 adapters, the adapter code is the same as bearer -- just use ctx.fetch() normally. The OAuth flow (redirects, token exchange) is handled by the platform, NOT by the adapter. The manifest auth.oauth config tells the platform how to run the OAuth flow. The adapter just makes API calls with the injected token.",
    "When choosing between 'bearer' and 'oauth2': Use 'oauth2' when the platform's API documentation describes an OAuth 2.0 authorization code flow where users grant access to their account (e.g., 'Connect with GitHub', 'Authorize with Google'). Use 'bearer' when users simply paste an API key or token. Both result in Bearer token injection via ctx.fetch(), but 'oauth2' additionally declares the OAuth flow URLs so the platform can handle the redirect-based authorization.",
    "\n".join([
        "OAuth auth.oauth fields reference:",
        "    - oauthService (optional string): Which app credential to use. Defaults to platform name. Use when multiple adapters share one OAuth app (e.g., all GitHub adapters use oauthService: 'github').",
        "    - authorizationUrl (required string): The OAuth authorization endpoint URL. Must be HTTPS.",
        "    - tokenUrl (required string): The OAuth token exchange endpoint URL. Must be HTTPS.",
        '    - tokenContentType (optional "form" | "json"): Content-Type for token exchange request. Defaults to "form". Use "json" if the provider expects JSON body.',
        '    - extraAuthParams (optional Record<string, string>): Extra query params for the authorization URL (e.g., { access_type: "offline", prompt: "consent" } for Google).',
    ]),
]


def _import_line(import_path: str) -> str:
    return (
        "import { validateAdapterUrl, type AgpAdapter, type BusinessProfile, type ExecuteOptions, "
        f"type AdapterContext, defineManifest }} from '{import_path}'"
    )


def _bearer_example(import_path: str, slug: str, class_name: str) -> str:
    return "\n".join([
        "Required adapter structure example:",
        "```typescript",
        _import_line(import_path),
        "",
        "export const manifest = defineManifest({",
        f"  platform: '{slug}',",
        "  auth: { type: 'api_key', strategy: 'bearer' },",
        "  authenticatedDomains: ['api.example.com'],",
        "  allowedDomains: [],",
        "})",
        "",
        f"export default class {class_name} implements AgpAdapter {{",
        "  constructor(",
        "    private readonly businessProfile: BusinessProfile,",
        "    private readonly ctx: AdapterContext,",
        "  ) {",
        "    validateAdapterUrl('https://api.example.com')",
        "  }",
        "",
        "  async discover(ctx: AdapterContext): Promise<unknown> {",
        "    const res = await ctx.fetch('https://api.example.com/info')",
        "    return res.json()",
        "  }",
        "",
        "  async query(request: Record<string, unknown>, ctx: AdapterContext): Promise<unknown> {",
        "    const res = await ctx.fetch('https://api.example.com/search', {",
        "      method: 'POST',",
        "      headers: { 'Content-Type': 'application/json' },",
        "      body: JSON.stringify(request),",
        "    })",
        "    return res.json()",
        "  }",
        "",
        "  async execute(",
        "    request: Record<string, unknown>,",
        "    options: ExecuteOptions | undefined,",
        "    ctx: AdapterContext,",
        "  ): Promise<unknown> {",
        "    const res = await ctx.fetch('https://api.example.com/action', {",
        "      method: 'POST',",
        "      headers: { 'Content-Type': 'application/json' },",
        "      body: JSON.stringify(request),",
        "    })",
        "    return res.json()",
        "  }",
        "}",
        "```",
    ])


def _client_credentials_example(import_path: str) -> str:
    return "\n".join([
        "Example: client-credentials adapter (e.g., Toast, Twilio, Salesforce)",
        "```typescript",
        _import_line(import_path),
        "",
        "export const manifest = defineManifest({",
        "  platform: 'example-cc',",
        "  auth: { type: 'client_credentials', strategy: 'client-credentials' },",
        "  authenticatedDomains: ['api.example.com'],",
        "  allowedDomains: [],",
        "})",
        "",
        "export default class ExampleCcAdapter implements AgpAdapter {",
        "  private accessToken: string | null = null",
        "  private tokenExpiresAt = 0",
        "",
        "  constructor(",
        "    private readonly businessProfile: BusinessProfile,",
        "    private readonly ctx: AdapterContext,",
        "  ) {",
        "    validateAdapterUrl('https://api.example.com')",
        "  }",
        "",
        "  private async getAccessToken(ctx: AdapterContext): Promise<string> {",
        "    if (this.accessToken && Date.now() < this.tokenExpiresAt - 30_000) {",
        "      return this.accessToken",
        "    }",
        "",
        "    const credential = await ctx.getCredential()",
        "    if (!credential?.clientId || !credential?.clientSecret) {",
        "      throw new Error('No credentials. Store clientId and clientSecret via the Connections page.')",
        "    }",
        "",
        "    const response = await ctx.fetch('https://api.example.com/oauth/token', {",
        "      method: 'POST',",
        "      headers: { 'Content-Type': 'application/json' },",
        "      body: JSON.stringify({",
        "        grant_type: 'client_credentials',",
        "        client_id: credential.clientId,",
        "        client_secret: credential.clientSecret,",
        "      }),",
        "    })",
        "",
        "    if (!response.ok) throw new Error(`Token exchange failed (${response.status})`)",
        "    const data = await response.json() as { access_token: string; expires_in?: number }",
        "    this.accessToken = data.access_token",
        "    this.tokenExpiresAt = Date.now() + (data.expires_in ?? 900) * 1000",
        "    return this.accessToken",
        "  }",
        "",
        "  async discover(ctx: AdapterContext): Promise<unknown> {",
        "    const token = await this.getAccessToken(ctx)",
        "    const res = await ctx.fetch('https://api.example.com/info', {",
        "      headers: { Authorization: `Bearer ${token}` },",
        "    })",
        "    return res.json()",
        "  }",
        "",
        "  async query(request: Record<string, unknown>, ctx: AdapterContext): Promise<unknown> {",
        "    const token = await this.getAccessToken(ctx)",
        "    const res = await ctx.fetch('https://api.example.com/search', {",
        "      method: 'POST',",
        "      headers: { Authorization: `Bearer ${token}`, 'Content-Type': 'application/json' },",
        "      body: JSON.stringify(request),",
        "    })",
        "    return res.json()",
        "  }",
        "",
        "  async execute(",
        "    request: Record<string, unknown>,",
        "    options: ExecuteOptions | undefined,",
        "    ctx: AdapterContext,",
        "  ): Promise<unknown> {",
        "    const token = await this.getAccessToken(ctx)",
        "    const res = await ctx.fetch('https://api.example.com/action', {",
        "      method: 'POST',",
        "      headers: { Authorization: `Bearer ${token}`, 'Content-Type': 'application/json' },",
        "      body: JSON.stringify(request),",
        "    })",
        "    return res.json()",
        "  }",
        "}",
        "```",
    ])


_OAUTH_MANIFEST_EXAMPLE = "\n".join([
    "OAuth2 adapter manifest example:",
    "```typescript",
    "export const manifest = defineManifest({",
    "  platform: 'github-issues',",
    "  auth: {",
    "    type: 'oauth2',",
    "    strategy: 'bearer',",
    "    scopes: ['repo', 'read:user'],",
    "    oauth: {",
    "      oauthService: 'github',",
    "      authorizationUrl: 'https://github.com/login/oauth/authorize',",
    "      tokenUrl: 'https://github.com/login/oauth/access_token',",
    "      tokenContentType: 'form',",
    "    },",
    "  },",
    "  authenticatedDomains: ['api.github.com'],",
    "  allowedDomains: [],",
    "});",
    "```",
])


def build_generation_prompt(
    *,
    platform_name: str,
    platform_slug: str,
    adapter_class_name: str,
    adapter_file_path_hint: str,
    analysis_summary: str,
    few_shot: FewShotContext,
    current_date: str,
    previous_errors: str | None = None,
    adapter_api_import_path: str = ADAPTER_API_IMPORT_ALIAS,
) -> str:
    import_path = adapter_api_import_path
    sections = [
        "You are generating an AGP adapter from API docs.",
        f"Target platform: {platform_name}",
        f"Target slug: {platform_slug}",
        f"Required adapter class name: {adapter_class_name}",
        "Requirements:",
        "1. Create an interaction profile JSON that matches the existing profile schema.",
        '2. method must be "ai-generated".',
        f"3. generated must be '{current_date}' (YYYY-MM-DD).",
        "4. platform must match the target slug.",
        "5. Create a TypeScript adapter implementing AgpAdapter with discover/query/execute methods and default-export the class.",
        "6. Constructor signature MUST be: (businessProfile: BusinessProfile, ctx: AdapterContext). Store both as private readonly fields.",
        "7. Use this.ctx.fetch() for ALL HTTP calls. Never call global fetch().",
        "8. Do NOT import or use getValidToken, tokenStore, or any auth helper. For most auth strategies (oauth2, bearer, api-key-header, basic, cookie, custom), do NOT set Authorization headers manually; ctx.fetch() handles auth injection. Exception: for client-credentials strategy, the adapter manages its own token exchange and sets auth headers manually on ctx.fetch() calls.",
        "9. Export manifest using defineManifest() with platform, auth type/strategy, authenticatedDomains, optional allowedDomains, and auth.oauth config (if the platform uses OAuth2).",
        _AUTH_STRATEGIES,
        *_OAUTH_NOTES,
        f"11. The adapter file path is {adapter_file_path_hint}.",
        f"12. The adapter must import AGP types/helpers from '{import_path}'.",
        f"    Required import pattern example: {_import_line(import_path)};",
        "13. Keep code strict-TypeScript compatible.",
        "14. Follow the reference dynamic adapter style and patterns where appropriate.",
        "15. If reference snippets conflict with these requirements, follow these requirements. Use ctx.fetch() for all authenticated requests.",
        _bearer_example(import_path, platform_slug, adapter_class_name),
        _client_credentials_example(import_path),
        _OAUTH_MANIFEST_EXAMPLE,
        f"Previous attempt errors (fix these):\n{previous_errors}" if previous_errors else "",
        "Return exactly this format:",
        "===INTERACTION_PROFILE_JSON===",
        "{...valid JSON...}",
        "===ADAPTER_TYPESCRIPT===",
        "...valid TypeScript...",
        "===END===",
        "Reference: adapter API barrel exports",
        few_shot.adapter_api,
        "Reference: dynamic adapter example",
        few_shot.reference_adapter,
        "Reference: interaction profile example",
        few_shot.reference_interaction_profile,
        "LLM analysis summary",
        analysis_summary,
    ]
    return "\n\n".join(s for s in sections if s)
