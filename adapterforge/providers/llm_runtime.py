"""Streaming model runtime on top of the Anthropic Messages API.

The runtime turns one model turn into an async stream of tagged
:class:`ModelEvent` objects (thinking/text deltas, tool calls, a final
``done`` carrying the assembled assistant message, or ``error``).
Authentication failures are raised as :class:`ModelAuthError` so callers
can refresh credentials and retry exactly once.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Protocol, Union

import anthropic

if TYPE_CHECKING:
    from adapterforge.providers.credentials import ResolvedCredentials

logger = logging.getLogger(__name__)

OAUTH_BETA_HEADER = "oauth-2025-04-20"

SYSTEM_PROMPT = " ".join([
    "You are generating production-ready integrations for an AGP gateway.",
    "AGP is the trust and commerce layer between AI agents and real-world businesses.",
    "Output must align with AGP protocol operations: discover, query, and execute.",
    "When asked to generate adapters, produce strict TypeScript and valid JSON that match the provided schemas/examples.",
    "Prefer concrete endpoint/auth details from provided docs and avoid inventing unsupported capabilities.",
])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ModelError(Exception):
    """A model call failed for a reason other than authentication."""


class ModelAuthError(ModelError):
    """The provider rejected the credentials (401/403, expired token, ...)."""


_AUTH_MESSAGE = re.compile(
    r"request failed \((401|403)\)|unauthorized|forbidden|invalid[_\s-]?api[_\s-]?key"
    r"|authentication|token expired|expired token|failed to refresh oauth token",
    re.IGNORECASE,
)


def is_auth_error(exc: BaseException) -> bool:
    """Classify *exc* as an authentication-class failure."""
    if isinstance(exc, (ModelAuthError, anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return True
    return bool(_AUTH_MESSAGE.search(str(exc)))


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class UserMessage:
    content: str
    role: str = "user"


@dataclass
class AssistantMessage:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    # Raw thinking blocks, replayed verbatim on the next turn.
    thinking_blocks: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: str | None = None
    role: str = "assistant"


@dataclass
class ToolResultMessage:
    tool_call_id: str
    tool_name: str
    content: str
    details: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False
    role: str = "tool_result"


Message = Union[UserMessage, AssistantMessage, ToolResultMessage]


@dataclass
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass
class ModelEvent:
    type: str  # "thinking_delta" | "text_delta" | "tool_call" | "done" | "error"
    delta: str = ""
    tool_call: ToolCall | None = None
    message: AssistantMessage | None = None
    error: str | None = None


class ModelRuntime(Protocol):
    provider: str
    model: str

    def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[ToolSpec] | None = None,
        *,
        max_tokens: int = 16_000,
        temperature: float | None = None,
        thinking_budget: int | None = None,
    ) -> AsyncIterator[ModelEvent]: ...


# ---------------------------------------------------------------------------
# Anthropic implementation
# ---------------------------------------------------------------------------


def to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert conversation history into Messages API payloads.

    Consecutive tool results are folded into a single user message, as the
    API expects all results for one assistant turn together.
    """
    payload: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, UserMessage):
            payload.append({"role": "user", "content": message.content})
        elif isinstance(message, AssistantMessage):
            blocks: list[dict[str, Any]] = list(message.thinking_blocks)
            if message.text:
                blocks.append({"type": "text", "text": message.text})
            for call in message.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments,
                })
            payload.append({"role": "assistant", "content": blocks or [{"type": "text", "text": ""}]})
        else:
            block = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id,
                "content": message.content,
                "is_error": message.is_error,
            }
            last = payload[-1] if payload else None
            if (
                last is not None
                and last["role"] == "user"
                and isinstance(last["content"], list)
                and all(b.get("type") == "tool_result" for b in last["content"])
            ):
                last["content"].append(block)
            else:
                payload.append({"role": "user", "content": [block]})
    return payload


class AnthropicRuntime:
    """Model runtime backed by ``anthropic.AsyncAnthropic`` streaming."""

    provider = "anthropic"

    def __init__(
        self,
        credentials: ResolvedCredentials,
        timeout: float = 600,
        client: Any = None,
    ) -> None:
        self.model = credentials.model
        self.credentials = credentials
        if client is not None:
            self._client = client
        elif credentials.auth_mode == "api-key":
            self._client = anthropic.AsyncAnthropic(api_key=credentials.token, timeout=timeout)
        else:
            self._client = anthropic.AsyncAnthropic(
                auth_token=credentials.token,
                timeout=timeout,
                default_headers={"anthropic-beta": OAUTH_BETA_HEADER},
            )

    async def stream(
        self,
        system_prompt: str,
        messages: list[Message],
        tools: list[ToolSpec] | None = None,
        *,
        max_tokens: int = 16_000,
        temperature: float | None = None,
        thinking_budget: int | None = None,
    ) -> AsyncIterator[ModelEvent]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "system": system_prompt,
            "messages": to_anthropic_messages(messages),
        }
        if tools:
            kwargs["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]
        if thinking_budget:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": thinking_budget}
        elif temperature is not None:
            kwargs["temperature"] = temperature

        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if event.type == "thinking":
                        yield ModelEvent(type="thinking_delta", delta=event.thinking)
                    elif event.type == "text":
                        yield ModelEvent(type="text_delta", delta=event.text)
                final = await stream.get_final_message()
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as exc:
            raise ModelAuthError(str(exc)) from exc
        except anthropic.APIError as exc:
            if is_auth_error(exc):
                raise ModelAuthError(str(exc)) from exc
            logger.warning("Anthropic request failed: %s", exc)
            yield ModelEvent(type="error", error=str(exc))
            return

        message = AssistantMessage(stop_reason=final.stop_reason)
        texts: list[str] = []
        for block in final.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                call = ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {}))
                message.tool_calls.append(call)
                yield ModelEvent(type="tool_call", tool_call=call)
            elif block.type == "thinking":
                message.thinking_blocks.append({
                    "type": "thinking",
                    "thinking": block.thinking,
                    "signature": block.signature,
                })
            elif block.type == "redacted_thinking":
                message.thinking_blocks.append({"type": "redacted_thinking", "data": block.data})
        message.text = "".join(texts)
        yield ModelEvent(type="done", message=message)


# ---------------------------------------------------------------------------
# Turn helpers
# ---------------------------------------------------------------------------

DeltaSink = Callable[[str], Awaitable[None]]


async def run_turn(
    runtime: ModelRuntime,
    system_prompt: str,
    messages: list[Message],
    tools: list[ToolSpec] | None = None,
    *,
    on_thinking: DeltaSink | None = None,
    on_text: DeltaSink | None = None,
    **options: Any,
) -> AssistantMessage:
    """Consume one streamed turn and return the assembled assistant message.

    Raises :class:`ModelError` on an ``error`` event; auth failures raised by
    the runtime propagate unchanged.
    """
    final: AssistantMessage | None = None
    async for event in runtime.stream(system_prompt, messages, tools, **options):
        if event.type == "thinking_delta" and on_thinking is not None:
            await on_thinking(event.delta)
        elif event.type == "text_delta" and on_text is not None:
            await on_text(event.delta)
        elif event.type == "error":
            message = event.error or "Model stream failed."
            if is_auth_error(ModelError(message)):
                raise ModelAuthError(message)
            raise ModelError(message)
        elif event.type == "done":
            final = event.message
    if final is None:
        raise ModelError("Model stream ended without a final message.")
    return final


async def stream_prompt(
    runtime: ModelRuntime,
    prompt: str,
    *,
    system_prompt: str | None = None,
    on_thinking: DeltaSink | None = None,
    on_text: DeltaSink | None = None,
    temperature: float | None = None,
    max_tokens: int = 16_000,
) -> str:
    """Single-prompt completion; returns the full response text."""
    message = await run_turn(
        runtime,
        (system_prompt or "").strip() or SYSTEM_PROMPT,
        [UserMessage(prompt)],
        on_thinking=on_thinking,
        on_text=on_text,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    return message.text
