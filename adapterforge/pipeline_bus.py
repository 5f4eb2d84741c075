"""Pipeline Event Bus: streaming of discovery and generation events.

Engines emit events at each processing step (tool start/end, model
thinking/text deltas, cache decisions, attempt progress). Consumers either
subscribe with an asyncio queue or register a synchronous listener, which
is how the CLI renders progress to stderr as it happens.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass
class PipelineEvent:
    """A single event emitted during a run."""

    event_type: str  # "step" | "result" | "error" | "thinking" | "text" | "tool_start" | "tool_end"
    engine: str  # "discovery" | "generation"
    step: str  # tool name, "cache", "attempt", "typecheck", ...
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


Listener = Callable[[PipelineEvent], None]


class PipelineBus:
    """Async event bus using per-subscriber queues plus direct listeners.

    Usage::

        bus = PipelineBus()
        bus.add_listener(lambda event: print(event.message))

        queue = bus.subscribe()
        try:
            event = await queue.get()
        finally:
            bus.unsubscribe(queue)
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[PipelineEvent]] = []
        self._listeners: list[Listener] = []
        self._history: list[PipelineEvent] = []
        self._max_history = 200

    def subscribe(self) -> asyncio.Queue[PipelineEvent]:
        """Create a new subscriber queue and return it."""
        queue: asyncio.Queue[PipelineEvent] = asyncio.Queue(maxsize=100)
        self._subscribers.append(queue)
        logger.debug("PipelineBus: new subscriber (total=%d)", len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[PipelineEvent]) -> None:
        try:
            self._subscribers.remove(queue)
        except ValueError:
            pass

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    async def emit(self, event: PipelineEvent) -> None:
        """Push an event to every listener and subscriber queue."""
        # Deltas are high volume and only useful live.
        if event.event_type not in ("thinking", "text"):
            self._history.append(event)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("PipelineBus: listener failed on %s event", event.event_type)

        dead: list[asyncio.Queue[PipelineEvent]] = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead.append(queue)
                logger.warning("PipelineBus: dropping slow subscriber")

        for q in dead:
            self.unsubscribe(q)

    async def _emit(
        self,
        event_type: str,
        engine: str,
        step: str,
        message: str,
        data: dict[str, Any] | None,
    ) -> None:
        await self.emit(PipelineEvent(
            event_type=event_type,
            engine=engine,
            step=step,
            message=message,
            data=data or {},
        ))

    async def emit_step(
        self,
        engine: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Convenience: emit a 'step' event."""
        await self._emit("step", engine, step, message, data)

    async def emit_error(
        self,
        engine: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self._emit("error", engine, step, message, data)

    async def emit_result(
        self,
        engine: str,
        step: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        await self._emit("result", engine, step, message, data)

    async def emit_thinking(self, engine: str, delta: str) -> None:
        await self._emit("thinking", engine, "model", delta, None)

    async def emit_text(self, engine: str, delta: str) -> None:
        await self._emit("text", engine, "model", delta, None)

    async def emit_tool_start(self, tool_name: str, message: str, args: dict[str, Any]) -> None:
        await self._emit("tool_start", "discovery", tool_name, message, {"args": args})

    async def emit_tool_end(self, tool_name: str, is_error: bool) -> None:
        status = "FAILED" if is_error else "ok"
        await self._emit("tool_end", "discovery", tool_name, status, {"is_error": is_error})

    @property
    def history(self) -> list[PipelineEvent]:
        """Return recent event history."""
        return list(self._history)


# ---------------------------------------------------------------------------
# Global singleton, used by the CLI and as the engines' default bus
# ---------------------------------------------------------------------------

pipeline_bus = PipelineBus()
