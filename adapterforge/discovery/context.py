"""Conversation pruning applied before every discovery model turn."""

from __future__ import annotations

import dataclasses

from adapterforge.discovery.findings import Findings, count_findings
from adapterforge.providers.llm_runtime import Message, ToolResultMessage
from adapterforge.web_text import collapse_whitespace

MAX_CONTEXT_FETCH_RESULTS = 3
OLD_PAGE_PREVIEW_CHARS = 500


def _is_fetch_result(message: Message) -> bool:
    return isinstance(message, ToolResultMessage) and message.tool_name == "fetch_page"


def prune_context(messages: list[Message], findings: Findings) -> list[Message]:
    """Return a copy of *messages* with all but the newest page fetches summarized.

    The newest :data:`MAX_CONTEXT_FETCH_RESULTS` ``fetch_page`` results are kept
    verbatim. Older ones shrink to their URL and a short preview. The input
    list and its messages are never modified.
    """
    fetch_indexes = [i for i, m in enumerate(messages) if _is_fetch_result(m)]
    keep = set(fetch_indexes[-MAX_CONTEXT_FETCH_RESULTS:])
    has_findings = count_findings(findings) > 0

    pruned: list[Message] = []
    for index, message in enumerate(messages):
        if index in keep or not _is_fetch_result(message):
            pruned.append(message)
            continue

        assert isinstance(message, ToolResultMessage)
        url = str(message.details.get("url") or "").strip() or "unknown"
        preview = collapse_whitespace(message.content)[:OLD_PAGE_PREVIEW_CHARS]
        lines = [
            "[fetch_page content pruned to manage context size]",
            f"URL: {url}",
            f"Preview: {preview or '[no text extracted]'}",
        ]
        if has_findings:
            lines.append("Use saved findings for durable facts.")
        pruned.append(dataclasses.replace(message, content="\n".join(lines)))
    return pruned
