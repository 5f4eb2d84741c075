"""OpenAPI/Swagger discovery and digesting.

The summary produced here is deliberately lossy: schemas are rendered to a
depth of two so the digest stays small enough to hand to a model.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, Field

from adapterforge.web_text import USER_AGENT, normalize_domain

logger = logging.getLogger(__name__)

OPENAPI_PATHS = (
    "/openapi.json",
    "/api/openapi.json",
    "/api/v1/openapi.json",
    "/swagger.json",
    "/api-docs",
    "/swagger/v1/swagger.json",
    "/.well-known/openapi.json",
    "/docs/openapi.json",
)

HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head", "options")

PROBE_TIMEOUT = httpx.Timeout(5.0)
FETCH_TIMEOUT = httpx.Timeout(10.0, read=30.0)


class OpenApiError(Exception):
    """The spec could not be fetched, or did not parse to a mapping."""


class Endpoint(BaseModel):
    method: str
    path: str
    description: str = ""


class OpenApiSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_url: str = Field(alias="sourceUrl")
    openapi_version: str = Field(alias="openapi", default="unknown")
    title: str = ""
    version: str = ""
    base_urls: list[str] = Field(alias="baseUrls", default_factory=list)
    auth_schemes: list[str] = Field(alias="authSchemes", default_factory=list)
    endpoints: list[Endpoint] = Field(default_factory=list)
    schema_names: list[str] = Field(alias="schemaNames", default_factory=list)
    request_shapes: list[str] = Field(alias="requestShapes", default_factory=list)
    response_shapes: list[str] = Field(alias="responseShapes", default_factory=list)

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), indent=2)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _read_str(record: dict[str, Any] | None, key: str) -> str:
    if not record:
        return ""
    value = record.get(key)
    return value.strip() if isinstance(value, str) else ""


def _dedupe(values: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        value = value.strip()
        if value:
            seen.setdefault(value, None)
    return list(seen)


def describe_schema(schema: Any, depth: int = 0) -> str:
    """Render *schema* as a compact one-line shape, at most two levels deep."""
    if depth > 2:
        return "..."

    record = _as_dict(schema)
    if record is None:
        return "unknown"

    ref = _read_str(record, "$ref")
    if ref:
        return f"ref({ref})"

    schema_type = record.get("type")
    if isinstance(schema_type, str):
        if schema_type == "array":
            return f"array<{describe_schema(record.get('items'), depth + 1)}>"
        if schema_type == "object":
            properties = _as_dict(record.get("properties"))
            keys = [str(k) for k in properties][:6] if properties else []
            if not keys:
                return "object"
            more = ",..." if len(keys) == 6 else ""
            return f"object{{{','.join(keys)}{more}}}"
        return schema_type

    for key, joiner in (("oneOf", "|"), ("anyOf", "|"), ("allOf", "+")):
        members = _as_list(record.get(key))
        if members:
            inner = joiner.join(describe_schema(m, depth + 1) for m in members[:3])
            return f"{key}({inner})"

    return "unknown"


def parse_spec_document(raw: str) -> dict[str, Any]:
    """Parse *raw* as JSON, falling back to YAML."""
    text = raw.strip()
    if not text:
        raise OpenApiError("OpenAPI document was empty.")

    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    else:
        if isinstance(parsed, dict):
            return parsed

    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise OpenApiError(f"OpenAPI document is neither JSON nor YAML: {exc}") from exc
    if not isinstance(parsed, dict):
        raise OpenApiError("Parsed OpenAPI document was not an object.")
    return parsed


def extract_base_urls(spec: dict[str, Any]) -> list[str]:
    base_urls = [
        _read_str(_as_dict(server), "url") for server in _as_list(spec.get("servers"))
    ]

    host = _read_str(spec, "host")
    if host:
        base_path = _read_str(spec, "basePath")
        schemes = [s.strip() for s in _as_list(spec.get("schemes")) if isinstance(s, str) and s.strip()]
        for scheme in schemes or ["https"]:
            base_urls.append(f"{scheme}://{host}{base_path}")

    return _dedupe(base_urls)


def extract_auth_schemes(spec: dict[str, Any]) -> list[str]:
    auth: list[str] = []

    components = _as_dict(spec.get("components"))
    security_schemes = _as_dict(components.get("securitySchemes")) if components else None
    for name, value in (security_schemes or {}).items():
        scheme = _as_dict(value)
        parts = [f"{name}: {_read_str(scheme, 'type') or 'unknown'}"]
        scheme_name = _read_str(scheme, "scheme")
        if scheme_name:
            parts.append(f"scheme={scheme_name}")
        flows = _as_dict(scheme.get("flows")) if scheme else None
        if flows:
            parts.append(f"flows={','.join(str(f) for f in flows)}")
        auth.append(" ".join(parts))

    for name, value in (_as_dict(spec.get("securityDefinitions")) or {}).items():
        scheme = _as_dict(value)
        parts = [f"{name}: {_read_str(scheme, 'type') or 'unknown'}"]
        location = _read_str(scheme, "in")
        if location:
            parts.append(f"in={location}")
        header = _read_str(scheme, "name")
        if header:
            parts.append(f"name={header}")
        auth.append(" ".join(parts))

    for requirement in _as_list(spec.get("security")):
        for name, value in (_as_dict(requirement) or {}).items():
            scopes = [s for s in _as_list(value) if isinstance(s, str) and s]
            if scopes:
                auth.append(f"requirement: {name} scopes={','.join(scopes)}")
            else:
                auth.append(f"requirement: {name}")

    return _dedupe(auth)


def extract_schema_names(spec: dict[str, Any]) -> list[str]:
    names: list[str] = []
    components = _as_dict(spec.get("components"))
    if components:
        names.extend(str(k) for k in (_as_dict(components.get("schemas")) or {}))
    names.extend(str(k) for k in (_as_dict(spec.get("definitions")) or {}))
    return _dedupe(names)


def _operation_shapes(
    method: str,
    path: str,
    operation: dict[str, Any],
    request_shapes: list[str],
    response_shapes: list[str],
) -> None:
    request_body = _as_dict(operation.get("requestBody"))
    if request_body:
        ref = _read_str(request_body, "$ref")
        if ref:
            request_shapes.append(f"{method} {path} request: {ref}")
        for media_type, content in (_as_dict(request_body.get("content")) or {}).items():
            schema = (_as_dict(content) or {}).get("schema")
            request_shapes.append(f"{method} {path} request({media_type}): {describe_schema(schema)}")

    for parameter in _as_list(operation.get("parameters")):
        parameter = _as_dict(parameter)
        if not parameter or _read_str(parameter, "in") != "body":
            continue
        name = _read_str(parameter, "name") or "body"
        request_shapes.append(f"{method} {path} request({name}): {describe_schema(parameter.get('schema'))}")

    for status, response in (_as_dict(operation.get("responses")) or {}).items():
        response = _as_dict(response)
        description = _read_str(response, "description")
        schema_description = describe_schema(response.get("schema") if response else None)

        content = _as_dict(response.get("content")) if response else None
        for media_type, media in (content or {}).items():
            media_schema = describe_schema((_as_dict(media) or {}).get("schema"))
            response_shapes.append(f"{method} {path} response({status},{media_type}): {media_schema}")

        response_shapes.append(
            f"{method} {path} response({status}): {description or schema_description or 'unspecified'}"
        )


def summarize_spec(spec: dict[str, Any], source_url: str) -> OpenApiSummary:
    """Flatten a parsed OpenAPI 3 or Swagger 2 document into an :class:`OpenApiSummary`."""
    info = _as_dict(spec.get("info"))
    endpoints: list[Endpoint] = []
    request_shapes: list[str] = []
    response_shapes: list[str] = []

    for path, definition in (_as_dict(spec.get("paths")) or {}).items():
        definition = _as_dict(definition)
        if not definition:
            continue
        for method in HTTP_METHODS:
            operation = _as_dict(definition.get(method))
            if not operation:
                continue
            verb = method.upper()
            endpoints.append(Endpoint(
                method=verb,
                path=str(path),
                description=_read_str(operation, "summary") or _read_str(operation, "description"),
            ))
            _operation_shapes(verb, str(path), operation, request_shapes, response_shapes)

    return OpenApiSummary(
        source_url=source_url,
        openapi_version=_read_str(spec, "openapi") or _read_str(spec, "swagger") or "unknown",
        title=_read_str(info, "title"),
        version=_read_str(info, "version"),
        base_urls=extract_base_urls(spec),
        auth_schemes=extract_auth_schemes(spec),
        endpoints=endpoints,
        schema_names=extract_schema_names(spec),
        request_shapes=_dedupe(request_shapes),
        response_shapes=_dedupe(response_shapes),
    )


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


async def probe_openapi_paths(domain: str, client: httpx.AsyncClient) -> list[str]:
    """HEAD every well-known spec path on *domain*; return those answering 2xx."""
    host = normalize_domain(domain)
    found: list[str] = []
    for path in OPENAPI_PATHS:
        candidate = f"https://{host}{path}"
        try:
            response = await client.head(candidate, follow_redirects=True, timeout=PROBE_TIMEOUT)
        except httpx.HTTPError as exc:
            logger.debug("OpenAPI probe %s failed: %s", candidate, exc)
            continue
        if response.is_success:
            found.append(candidate)
    return _dedupe(found)


async def fetch_and_parse_openapi_spec(url: str, client: httpx.AsyncClient) -> OpenApiSummary:
    try:
        response = await client.get(
            url,
            follow_redirects=True,
            timeout=FETCH_TIMEOUT,
            headers={
                "Accept": "application/json, application/yaml, text/yaml, text/plain;q=0.9, */*;q=0.8",
                "User-Agent": USER_AGENT,
            },
        )
    except httpx.HTTPError as exc:
        raise OpenApiError(f"Failed to fetch OpenAPI spec from '{url}': {exc}") from exc

    if not response.is_success:
        raise OpenApiError(
            f"Failed to fetch OpenAPI spec from '{url}': {response.status_code} {response.reason_phrase}"
        )
    return summarize_spec(parse_spec_document(response.text), url)
