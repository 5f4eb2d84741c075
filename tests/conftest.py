from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from adapterforge.config import AdapterForgeConfig
from adapterforge.pipeline_bus import PipelineBus
from adapterforge.providers.credentials import CredentialResolver, LlmSession
from adapterforge.providers.llm_runtime import AssistantMessage, ModelEvent, ToolCall

API_KEY = "sk-ant-api03-test-key"

VALID_PROFILE = {
    "platform": "whatever",
    "version": "1.0.0",
    "generated": "2000-01-01",
    "method": "manual",
    "capabilities": {
        "discover": {
            "operation": "discover",
            "method": "GET",
            "endpoint": "https://api.toasttab.com/menus/v2/menus",
            "authRequired": True,
            "description": "List menus",
        },
        "query": {
            "operation": "query",
            "method": "GET",
            "endpoint": "https://api.toasttab.com/orders/v2/orders",
            "authRequired": True,
            "description": "Search orders",
        },
        "execute": {
            "operation": "execute",
            "method": "POST",
            "endpoint": "https://api.toasttab.com/orders/v2/orders",
            "authRequired": True,
            "description": "Create an order",
        },
    },
}

ADAPTER_SOURCE = """import { type AgpAdapter, defineManifest } from 'agenr:adapter-api'

export const manifest = defineManifest({
  platform: 'toast',
  auth: { type: 'client_credentials', strategy: 'client-credentials' },
  authenticatedDomains: ['api.toasttab.com'],
  allowedDomains: [],
})

export default class ToastAdapter implements AgpAdapter {}
"""


def generation_output(profile: dict[str, Any] | None = None, adapter: str = ADAPTER_SOURCE) -> str:
    return "\n".join([
        "Here you go.",
        "===INTERACTION_PROFILE_JSON===",
        json.dumps(profile if profile is not None else VALID_PROFILE),
        "===ADAPTER_TYPESCRIPT===",
        adapter,
        "===END===",
    ])


class FakeRuntime:
    """Replays a script of turns; each entry is an AssistantMessage, a str or an exception."""

    provider = "anthropic"
    model = "claude-test"

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []

    async def stream(self, system_prompt, messages, tools=None, **options):
        self.calls.append({
            "system_prompt": system_prompt,
            "messages": list(messages),
            "tools": tools,
            "options": options,
        })
        if not self.script:
            raise AssertionError("FakeRuntime script exhausted")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        message = step if isinstance(step, AssistantMessage) else AssistantMessage(text=step)
        yield ModelEvent("thinking_delta", delta="thinking...")
        if message.text:
            yield ModelEvent("text_delta", delta=message.text)
        for call in message.tool_calls:
            yield ModelEvent("tool_call", tool_call=call)
        yield ModelEvent("done", message=message)


def tool_turn(*calls: tuple[str, dict[str, Any]]) -> AssistantMessage:
    return AssistantMessage(
        tool_calls=[ToolCall(f"call_{i}", name, args) for i, (name, args) in enumerate(calls)],
        stop_reason="tool_use",
    )


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "adapter-api.ts").write_text("export type AgpAdapter = {}\n")
    (tmp_path / "data" / "few-shot").mkdir(parents=True)
    (tmp_path / "data" / "few-shot" / "stripe.ts").write_text("export default class StripeAdapter {}\n")
    (tmp_path / "data" / "interaction-profiles").mkdir(parents=True)
    (tmp_path / "data" / "interaction-profiles" / "stripe.json").write_text('{"platform": "stripe"}\n')
    return tmp_path


@pytest.fixture
def config(project: Path) -> AdapterForgeConfig:
    cfg = AdapterForgeConfig(project_root=project)
    cfg.llm.api_key = API_KEY
    cfg.generation.auto_verify = False
    return cfg


@pytest.fixture
def bus() -> PipelineBus:
    return PipelineBus()


def make_session(config: AdapterForgeConfig, runtime: FakeRuntime, home: Path) -> LlmSession:
    resolver = CredentialResolver(config, environ={}, home=home)
    return LlmSession(resolver, runtime_factory=lambda creds: runtime)
