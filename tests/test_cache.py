import json
from datetime import datetime, timezone

import pytest

from adapterforge.discovery.cache import (
    DiscoveryCache,
    DiscoveryCacheEntry,
    DiscoveryCacheInvalidError,
    DiscoveryCacheMissingError,
    format_cache_age,
    is_fresh,
)

GENERATED_AT = "2026-03-01T12:00:00.000Z"
GENERATED_TS = datetime(2026, 3, 1, 12, tzinfo=timezone.utc).timestamp()


def _entry(**overrides):
    data = {
        "platformName": "Toast",
        "platformSlug": "caller-slug",
        "generatedAt": GENERATED_AT,
        "model": "claude-test",
        "provider": "anthropic",
        "durationMs": 1234,
        "sourceUrls": ["https://doc.toasttab.com/"],
        "docsUrl": "https://doc.toasttab.com",
        "pagesVisited": 4,
        "toolCalls": 9,
        "findings": {"auth": ["OAuth client credentials"]},
    }
    data.update(overrides)
    return data


@pytest.mark.parametrize("age,expected", [
    (0, True),
    (86_399.999, True),
    (86_400, False),
    (90_000, False),
])
def test_is_fresh_boundary(age, expected):
    assert is_fresh(age) is expected


def test_is_fresh_custom_max_age():
    assert is_fresh(10, 60)
    assert not is_fresh(60, 60)


@pytest.mark.parametrize("age,label", [
    (5, "just now"),
    (59.9, "just now"),
    (60, "1m"),
    (45 * 60, "45m"),
    (3600, "1h"),
    (3 * 3600 + 25 * 60, "3h 25m"),
    (24 * 3600, "1d"),
    (2 * 86400 + 5 * 3600, "2d 5h"),
])
def test_format_cache_age(age, label):
    assert format_cache_age(age) == label


def test_write_then_read_round_trip(tmp_path):
    cache = DiscoveryCache(tmp_path / "discovery-cache", clock=lambda: GENERATED_TS + 90)
    written = cache.write("toast", _entry(version=7))

    assert written.version == 1
    assert written.platform_slug == "toast"

    on_disk = json.loads(cache.path_for("toast").read_text())
    assert on_disk["version"] == 1
    assert on_disk["platformSlug"] == "toast"
    assert on_disk["docsUrl"] == "https://doc.toasttab.com"

    loaded = cache.read("toast")
    assert loaded is not None
    assert loaded.cache == written
    assert loaded.age_seconds == pytest.approx(90)


def test_write_omits_missing_docs_url(tmp_path):
    cache = DiscoveryCache(tmp_path)
    cache.write("toast", _entry(docsUrl=None))
    assert "docsUrl" not in json.loads(cache.path_for("toast").read_text())


def test_future_timestamp_reads_as_zero_age(tmp_path):
    cache = DiscoveryCache(tmp_path, clock=lambda: GENERATED_TS - 500)
    cache.write("toast", _entry())
    assert cache.read("toast").age_seconds == 0


def test_missing_cache(tmp_path):
    cache = DiscoveryCache(tmp_path)
    assert cache.read("toast") is None

    with pytest.raises(DiscoveryCacheMissingError) as excinfo:
        cache.read("toast", required=True)
    assert excinfo.value.code == "missing"
    assert "No discovery cache found for 'toast'" in str(excinfo.value)


@pytest.mark.parametrize("payload", [
    "not json",
    json.dumps(_entry(version=2)),
    json.dumps(_entry(pagesVisited=-1)),
    json.dumps(_entry(toolCalls=1.5)),
    json.dumps(_entry(generatedAt="yesterday")),
    json.dumps(_entry(sourceUrls=["https://ok.example.com", ""])),
    json.dumps(_entry(platformName="")),
])
def test_invalid_cache(tmp_path, payload):
    cache = DiscoveryCache(tmp_path)
    cache.path_for("toast").write_text(payload)

    assert cache.read("toast") is None
    with pytest.raises(DiscoveryCacheInvalidError) as excinfo:
        cache.read("toast", required=True)
    assert excinfo.value.code == "invalid"


def test_entry_accepts_snake_case_names():
    entry = DiscoveryCacheEntry(
        platform_name="Toast",
        platform_slug="toast",
        generated_at=GENERATED_AT,
        model="m",
        provider="p",
        duration_ms=0,
        pages_visited=0,
        tool_calls=0,
    )
    assert json.loads(entry.to_json())["platformName"] == "Toast"
