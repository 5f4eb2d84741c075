"""Parsing of the two-part generation output (profile JSON + adapter source)."""

from __future__ import annotations

import re
from dataclasses import dataclass

PROFILE_MARKER = "===INTERACTION_PROFILE_JSON==="
ADAPTER_MARKER = "===ADAPTER_TYPESCRIPT==="
END_MARKER = "===END==="

_JSON_FENCE_START = re.compile(r"^```json\s*", re.IGNORECASE)
_CODE_FENCE_START = re.compile(r"^```(?:(?:ts|typescript|js|javascript)\b)?\s*", re.IGNORECASE)
_FENCE_END = re.compile(r"```$")
_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_CODE_BLOCK = re.compile(r"```(?:ts|typescript|js|javascript)\b\s*([\s\S]*?)```", re.IGNORECASE)


class ArtifactParseError(ValueError):
    """The model output did not contain both a profile and an adapter."""


@dataclass
class GeneratedArtifacts:
    interaction_profile_json: str
    adapter_source: str


def parse_generated_artifacts(raw: str) -> GeneratedArtifacts:
    """Split *raw* into profile JSON and adapter source.

    Marker-delimited output is preferred; without markers the first
    ```json and ```ts blocks are used.
    """
    profile_index = raw.find(PROFILE_MARKER)
    adapter_index = raw.find(ADAPTER_MARKER)
    end_index = raw.find(END_MARKER)

    if profile_index >= 0 and adapter_index > profile_index:
        profile_text = raw[profile_index + len(PROFILE_MARKER):adapter_index].strip()
        profile_text = _FENCE_END.sub("", _JSON_FENCE_START.sub("", profile_text)).strip()

        adapter_end = end_index if end_index > adapter_index else len(raw)
        adapter_text = raw[adapter_index + len(ADAPTER_MARKER):adapter_end].strip()
        adapter_text = _FENCE_END.sub("", _CODE_FENCE_START.sub("", adapter_text)).strip()

        if not profile_text or not adapter_text:
            raise ArtifactParseError(
                "LLM output markers found, but profile or adapter content was empty."
            )
        return GeneratedArtifacts(profile_text, adapter_text + "\n")

    json_block = _JSON_BLOCK.search(raw)
    code_block = _CODE_BLOCK.search(raw)
    if json_block and code_block and json_block.group(1).strip() and code_block.group(1).strip():
        return GeneratedArtifacts(json_block.group(1).strip(), code_block.group(1).strip() + "\n")

    raise ArtifactParseError("Could not parse generated artifacts from model output.")
