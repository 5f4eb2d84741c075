import json
from datetime import date

import pytest
from pydantic import ValidationError

from adapterforge.generation.artifacts import ArtifactParseError, parse_generated_artifacts
from adapterforge.generation.profile import normalize_interaction_profile

from conftest import VALID_PROFILE


def test_marker_output_is_split_and_unfenced():
    raw = (
        "preamble\n===INTERACTION_PROFILE_JSON===\n```json\n{\"a\": 1}\n```\n"
        "===ADAPTER_TYPESCRIPT===\n```typescript\nexport default class X {}\n```\n===END===\ntrailing"
    )
    artifacts = parse_generated_artifacts(raw)

    assert artifacts.interaction_profile_json == '{"a": 1}'
    assert artifacts.adapter_source == "export default class X {}\n"


def test_marker_output_without_end_marker():
    raw = "===INTERACTION_PROFILE_JSON===\n{}\n===ADAPTER_TYPESCRIPT===\nconst x = 1"
    assert parse_generated_artifacts(raw).adapter_source == "const x = 1\n"


def test_empty_marker_section_is_an_error():
    raw = "===INTERACTION_PROFILE_JSON===\n\n===ADAPTER_TYPESCRIPT===\nconst x = 1\n===END==="
    with pytest.raises(ArtifactParseError, match="empty"):
        parse_generated_artifacts(raw)


def test_fenced_block_fallback():
    raw = "Profile:\n```json\n{\"b\": 2}\n```\nAdapter:\n```ts\nexport const y = 2\n```\n"
    artifacts = parse_generated_artifacts(raw)

    assert artifacts.interaction_profile_json == '{"b": 2}'
    assert artifacts.adapter_source == "export const y = 2\n"


def test_json_fence_is_not_taken_for_code():
    raw = "```json\n{\"b\": 2}\n```\n"
    with pytest.raises(ArtifactParseError):
        parse_generated_artifacts(raw)


def test_unparseable_output():
    with pytest.raises(ArtifactParseError):
        parse_generated_artifacts("I could not find enough documentation.")


def test_profile_normalization_stamps_fields():
    normalized = normalize_interaction_profile(json.dumps(VALID_PROFILE), "toast", today=date(2026, 3, 2))
    profile = json.loads(normalized)

    assert normalized.endswith("\n")
    assert profile["platform"] == "toast"
    assert profile["method"] == "ai-generated"
    assert profile["generated"] == "2026-03-02"
    assert profile["capabilities"]["execute"]["authRequired"] is True


def test_profile_missing_capability_is_rejected():
    broken = json.loads(json.dumps(VALID_PROFILE))
    del broken["capabilities"]["execute"]
    with pytest.raises(ValidationError):
        normalize_interaction_profile(json.dumps(broken), "toast")


def test_profile_requires_real_booleans():
    broken = json.loads(json.dumps(VALID_PROFILE))
    broken["capabilities"]["query"]["authRequired"] = "yes"
    with pytest.raises(ValidationError):
        normalize_interaction_profile(json.dumps(broken), "toast")


def test_profile_must_be_json():
    with pytest.raises(ValueError):
        normalize_interaction_profile("{not json", "toast")
