"""Post-generation check of the manifest auth strategy against discovery evidence."""

from __future__ import annotations

import re

from adapterforge.discovery.findings import Findings
from adapterforge.generation.prompt import flatten_findings

_MANIFEST_STRATEGY = re.compile(r"\bstrategy\s*:\s*['\"]([a-z0-9-]+)['\"]")
_MANIFEST_OAUTH = re.compile(r"\boauth\s*:\s*\{")

# Checked in order; the first strategy with any signal is the evidence.
_EVIDENCE: list[tuple[str, list[re.Pattern[str]]]] = [
    ("client-credentials", [
        re.compile(r"client[_\s-]?credentials"),
        re.compile(r"client[_\s]?id\b.{0,80}client[_\s]?secret"),
    ]),
    ("oauth2", [
        re.compile(r"authorization[_\s]code"),
        re.compile(r"oauth\s*2(?:\.0)?.{0,60}(?:authorize|redirect|consent)"),
        re.compile(r"/oauth/authorize"),
    ]),
    ("api-key-header", [re.compile(r"\bx-[a-z0-9-]*(?:api-?key|token)\b")]),
    ("basic", [re.compile(r"\bbasic\s+auth"), re.compile(r"authorization:\s*basic\b")]),
    ("cookie", [re.compile(r"\bcookie[-\s]based\b"), re.compile(r"\bsession\s+cookie\b")]),
    ("bearer", [re.compile(r"\bbearer\b"), re.compile(r"\bapi\s*key\b")]),
]

# Strategies that satisfy evidence for another strategy.
_COMPATIBLE = {
    "oauth2": {"bearer"},
    "bearer": {"oauth2"},
    "api-key-header": {"custom"},
}


def manifest_strategy(adapter_source: str) -> str | None:
    match = _MANIFEST_STRATEGY.search(adapter_source)
    return match.group(1) if match else None


def evidence_strategy(findings: Findings) -> str | None:
    haystack = "\n".join(flatten_findings(findings)).lower()
    for strategy, patterns in _EVIDENCE:
        if any(p.search(haystack) for p in patterns):
            return strategy
    return None


def lint_auth_strategy(adapter_source: str, findings: Findings) -> list[str]:
    """Return warnings when the declared strategy disagrees with the findings.

    Never raises; an adapter without a recognizable manifest strategy gets a
    single warning.
    """
    declared = manifest_strategy(adapter_source)
    if declared is None:
        return ["Generated manifest does not declare an auth strategy."]

    expected = evidence_strategy(findings)
    if expected is None or declared == expected:
        return []

    if expected == "oauth2" and declared == "bearer" and _MANIFEST_OAUTH.search(adapter_source):
        return []
    if declared in _COMPATIBLE.get(expected, set()):
        return []

    return [
        f"Manifest declares auth strategy '{declared}' but discovery findings suggest '{expected}'."
    ]
