"""Findings accumulator and per-run discovery state."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from adapterforge.web_text import normalize_url

Findings = dict[str, list[str]]

_CATEGORY_CHARS = re.compile(r"[^a-z0-9_]")


def normalize_category(category: str) -> str:
    return _CATEGORY_CHARS.sub("_", category.strip().lower())


def count_findings(findings: Findings) -> int:
    return sum(len(entries) for entries in findings.values())


class DiscoveryResult(BaseModel):
    """What a discovery run hands to generation."""

    findings: Findings = Field(default_factory=dict)
    pages_visited: int = 0
    tool_calls: int = 0
    source_urls: list[str] = Field(default_factory=list)


@dataclass
class DiscoveryState:
    """Mutable accumulator shared by every tool during one discovery run."""

    findings: Findings = field(default_factory=dict)
    source_urls: set[str] = field(default_factory=set)
    pages_visited: int = 0
    tool_calls: int = 0

    def register_tool_call(self) -> None:
        self.tool_calls += 1

    def register_source_url(self, url: str | None) -> None:
        url = (url or "").strip()
        if url:
            self.source_urls.add(normalize_url(url))

    def save_finding(self, category: str, content: str) -> tuple[str, int]:
        """Append *content* under the normalized *category* unless already present.

        Returns the normalized key and the number of entries it now holds.
        """
        key = normalize_category(category)
        entries = self.findings.setdefault(key, [])
        if content not in entries:
            entries.append(content)
        return key, len(entries)

    def add_note(self, note: str) -> None:
        self.save_finding("notes", note)

    def finding_count(self) -> int:
        return count_findings(self.findings)

    def result(self) -> DiscoveryResult:
        return DiscoveryResult(
            findings={k: list(v) for k, v in self.findings.items()},
            pages_visited=self.pages_visited,
            tool_calls=self.tool_calls,
            source_urls=sorted(self.source_urls),
        )
