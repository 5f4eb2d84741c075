import json
from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from adapterforge.config import ProviderConfig
from adapterforge.discovery.cache import DiscoveryCache, DiscoveryCacheMissingError
from adapterforge.discovery.findings import DiscoveryResult
from adapterforge.discovery.tools import WebSearch
from adapterforge.engines.adapter_generator import AdapterGenerator, GenerationError
from adapterforge.engines.discovery_agent import DiscoveryAgent, DiscoveryError
from adapterforge.generation.typecheck import TypecheckResult
from adapterforge.providers.llm_runtime import ModelAuthError, ModelError
from adapterforge.providers.reader_client import ReaderClient

from conftest import ADAPTER_SOURCE, VALID_PROFILE, FakeRuntime, generation_output, make_session, tool_turn

FINDINGS = {"auth": ["OAuth client credentials via /authentication/v1/authentication/login"]}
TODAY = date(2026, 3, 1)


class StubDiscovery:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [DiscoveryResult(findings=FINDINGS, pages_visited=3, tool_calls=7)]
        self.runs = []

    async def run(self, platform_name, docs_url=None):
        self.runs.append((platform_name, docs_url))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class EmptySearch:
    async def search(self, query, limit=8):
        return []


def _generator(config, runtime, bus, tmp_path, **kwargs):
    kwargs.setdefault("discovery_agent", StubDiscovery())
    return AdapterGenerator(config, make_session(config, runtime, tmp_path), bus, today=lambda: TODAY, **kwargs)


def _write_cache(config, age_seconds):
    generated = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
    DiscoveryCache(config.discovery_cache_dir).write("toast", {
        "platformName": "Toast",
        "generatedAt": generated.isoformat(),
        "model": "claude-test",
        "provider": "anthropic",
        "durationMs": 5,
        "pagesVisited": 2,
        "toolCalls": 4,
        "findings": {"auth": ["Bearer token from cache"]},
    })


def _prompt(runtime, index):
    return runtime.calls[index]["messages"][0].content


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fresh_discovery_generates_and_caches(config, bus, tmp_path):
    runtime = FakeRuntime([
        tool_turn(("save_finding", {
            "category": "auth",
            "content": "OAuth client credentials",
            "source_url": "https://doc.toasttab.com/auth",
        })),
        "Done researching.",
        generation_output(),
    ])
    session = make_session(config, runtime, tmp_path)
    agent = DiscoveryAgent(
        config, session, bus,
        http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
        search=WebSearch(EmptySearch(), EmptySearch()),
        reader=ReaderClient(ProviderConfig(base_url="https://reader.test"),
                            transport=httpx.MockTransport(lambda r: httpx.Response(500))),
    )
    generator = AdapterGenerator(config, session, bus, discovery_agent=agent, today=lambda: TODAY)

    result = await generator.generate("Toast", docs_url="https://doc.toasttab.com")

    assert result.platform_slug == "toast"
    assert result.discovery_source == "fresh"
    assert result.attempts == 1
    assert result.warnings == []
    assert [d.url for d in result.docs_used] == ["https://doc.toasttab.com"]

    cache = json.loads(config.discovery_cache_path("toast").read_text())
    assert cache["version"] == 1
    assert cache["platformSlug"] == "toast"
    assert cache["platformName"] == "Toast"
    assert cache["docsUrl"] == "https://doc.toasttab.com"
    assert cache["toolCalls"] == 1
    assert cache["findings"] == {"auth": ["OAuth client credentials (source: https://doc.toasttab.com/auth)"]}
    assert cache["sourceUrls"] == ["https://doc.toasttab.com/", "https://doc.toasttab.com/auth"]

    assert config.adapter_path("toast").read_text() == ADAPTER_SOURCE
    profile = json.loads(config.interaction_profile_path("toast").read_text())
    assert profile["platform"] == "toast"
    assert profile["method"] == "ai-generated"
    assert profile["generated"] == "2026-03-01"

    assert result.business_profile_update.status == "added"
    assert config.user_profile_path.exists()

    generation_call = runtime.calls[2]
    assert generation_call["options"]["temperature"] == 0.1
    assert "ToastAdapter" in _prompt(runtime, 2)
    assert bus.history[-1].step == "complete"


@pytest.mark.asyncio
async def test_invalid_profile_is_retried_with_feedback(config, bus, tmp_path):
    incomplete = {**VALID_PROFILE, "capabilities": {
        k: v for k, v in VALID_PROFILE["capabilities"].items() if k != "execute"
    }}
    runtime = FakeRuntime([generation_output(incomplete), generation_output()])

    result = await _generator(config, runtime, bus, tmp_path).generate("Toast")

    assert result.attempts == 2
    assert "Previous attempt errors (fix these):" not in _prompt(runtime, 0)
    assert "Previous attempt errors (fix these):" in _prompt(runtime, 1)
    assert "capabilities.execute" in _prompt(runtime, 1)
    failures = [e for e in bus.history if e.event_type == "error" and e.step == "attempt"]
    assert len(failures) == 1
    assert failures[0].data == {"attempt": 1}


@pytest.mark.asyncio
async def test_existing_business_is_left_alone(config, bus, tmp_path):
    config.user_profile_path.parent.mkdir(parents=True, exist_ok=True)
    original = json.dumps({
        "user": "sam",
        "businesses": [{"id": "toast-cafe", "name": "Toast Cafe", "platform": "toast"}],
    })
    config.user_profile_path.write_text(original)
    runtime = FakeRuntime([generation_output()])

    result = await _generator(config, runtime, bus, tmp_path).generate("Toast")

    assert result.business_profile_update.status == "exists"
    assert config.user_profile_path.read_text() == original


# ---------------------------------------------------------------------------
# Model failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_auth_error_refreshes_without_spending_an_attempt(config, bus, tmp_path):
    runtime = FakeRuntime([ModelAuthError("request failed (401)"), generation_output()])

    result = await _generator(config, runtime, bus, tmp_path).generate("Toast")

    assert result.attempts == 1
    assert len(runtime.calls) == 2
    assert any(e.step == "auth" for e in bus.history)


@pytest.mark.asyncio
async def test_second_consecutive_auth_error_is_fatal(config, bus, tmp_path):
    runtime = FakeRuntime([ModelAuthError("token expired"), ModelAuthError("token expired")])

    with pytest.raises(GenerationError, match="Authentication failed again after refreshing credentials"):
        await _generator(config, runtime, bus, tmp_path).generate("Toast")
    assert not config.adapter_path("toast").exists()


@pytest.mark.asyncio
async def test_other_model_errors_spend_an_attempt(config, bus, tmp_path):
    runtime = FakeRuntime([ModelError("overloaded"), generation_output()])

    result = await _generator(config, runtime, bus, tmp_path).generate("Toast")

    assert result.attempts == 2
    assert "overloaded" in _prompt(runtime, 1)


@pytest.mark.asyncio
async def test_exhaustion_reports_last_error(config, bus, tmp_path):
    config.generation.max_iterations = 2
    runtime = FakeRuntime(["no artifacts here", "still nothing"])

    with pytest.raises(GenerationError) as excinfo:
        await _generator(config, runtime, bus, tmp_path).generate("Toast")

    assert str(excinfo.value) == (
        "Generation failed after 2 attempts. Last error: Could not parse generated artifacts from model output."
    )
    assert bus.history[-1].step == "exhausted"


def _real_agent(config, session, bus):
    return DiscoveryAgent(
        config, session, bus,
        http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))),
        search=WebSearch(EmptySearch(), EmptySearch()),
        reader=ReaderClient(ProviderConfig(base_url="https://reader.test"),
                            transport=httpx.MockTransport(lambda r: httpx.Response(500))),
    )


@pytest.mark.asyncio
async def test_discovery_auth_error_refreshes_once_and_keeps_findings(config, bus, tmp_path):
    runtime = FakeRuntime([
        tool_turn(("save_finding", {"category": "auth", "content": "OAuth client credentials"})),
        ModelAuthError("token expired"),
        "Done researching.",
        generation_output(),
    ])
    session = make_session(config, runtime, tmp_path)
    generator = AdapterGenerator(config, session, bus, discovery_agent=_real_agent(config, session, bus),
                                 today=lambda: TODAY)

    result = await generator.generate("Toast")

    assert result.attempts == 1
    assert len(runtime.calls) == 4
    cache = json.loads(config.discovery_cache_path("toast").read_text())
    assert cache["findings"] == {"auth": ["OAuth client credentials"]}


@pytest.mark.asyncio
async def test_second_consecutive_discovery_auth_error_is_fatal(config, bus, tmp_path):
    runtime = FakeRuntime([
        tool_turn(("save_finding", {"category": "auth", "content": "OAuth client credentials"})),
        ModelAuthError("token expired"),
        ModelAuthError("token expired"),
    ])
    session = make_session(config, runtime, tmp_path)
    generator = AdapterGenerator(config, session, bus, discovery_agent=_real_agent(config, session, bus),
                                 today=lambda: TODAY)

    with pytest.raises(DiscoveryError, match="authentication failed again") as excinfo:
        await generator.generate("Toast")

    assert len(runtime.calls) == 3
    assert excinfo.value.partial.findings == {"auth": ["OAuth client credentials"]}
    assert not config.discovery_cache_path("toast").exists()
    assert not config.adapter_path("toast").exists()


# ---------------------------------------------------------------------------
# Cache decisions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fresh_cache_used_when_confirmed(config, bus, tmp_path):
    _write_cache(config, age_seconds=600)
    questions = []

    async def confirm(question):
        questions.append(question)
        return True

    discovery = StubDiscovery()
    runtime = FakeRuntime([generation_output()])
    result = await _generator(
        config, runtime, bus, tmp_path, discovery_agent=discovery, confirm=confirm,
    ).generate("Toast")

    assert result.discovery_source == "cache"
    assert discovery.runs == []
    assert questions == ["[cache] Found cached discovery for 'Toast' (10m old). Use cache? [Y/n] "]
    assert "Bearer token from cache" in _prompt(runtime, 0)


@pytest.mark.asyncio
async def test_declined_cache_runs_discovery(config, bus, tmp_path):
    _write_cache(config, age_seconds=600)

    async def decline(question):
        return False

    discovery = StubDiscovery()
    result = await _generator(
        config, FakeRuntime([generation_output()]), bus, tmp_path, discovery_agent=discovery, confirm=decline,
    ).generate("Toast")

    assert result.discovery_source == "fresh"
    assert len(discovery.runs) == 1
    assert any("User selected rediscovery" in e.message for e in bus.history)


@pytest.mark.asyncio
async def test_stale_cache_is_replaced(config, bus, tmp_path):
    _write_cache(config, age_seconds=2 * 24 * 3600)
    discovery = StubDiscovery()

    result = await _generator(
        config, FakeRuntime([generation_output()]), bus, tmp_path, discovery_agent=discovery,
    ).generate("Toast")

    assert result.discovery_source == "fresh"
    assert any("is stale (2d old)" in e.message for e in bus.history)
    cache = json.loads(config.discovery_cache_path("toast").read_text())
    assert cache["findings"] == FINDINGS


@pytest.mark.asyncio
async def test_rediscover_ignores_fresh_cache(config, bus, tmp_path):
    _write_cache(config, age_seconds=60)

    async def never(question):
        raise AssertionError("should not ask")

    discovery = StubDiscovery()
    result = await _generator(
        config, FakeRuntime([generation_output()]), bus, tmp_path, discovery_agent=discovery, confirm=never,
    ).generate("Toast", rediscover=True)

    assert result.discovery_source == "fresh"


@pytest.mark.asyncio
async def test_skip_discovery_uses_cache_regardless_of_age(config, bus, tmp_path):
    _write_cache(config, age_seconds=30 * 24 * 3600)
    discovery = StubDiscovery()

    result = await _generator(
        config, FakeRuntime([generation_output()]), bus, tmp_path, discovery_agent=discovery,
    ).generate("Toast", skip_discovery=True)

    assert result.discovery_source == "cache"
    assert discovery.runs == []


@pytest.mark.asyncio
async def test_skip_discovery_without_cache(config, bus, tmp_path):
    with pytest.raises(DiscoveryCacheMissingError):
        await _generator(config, FakeRuntime([]), bus, tmp_path).generate("Toast", skip_discovery=True)


# ---------------------------------------------------------------------------
# Input and verification
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_conflicting_flags_and_empty_slug(config, bus, tmp_path):
    generator = _generator(config, FakeRuntime([]), bus, tmp_path)

    with pytest.raises(GenerationError, match="cannot be used together"):
        await generator.generate("Toast", skip_discovery=True, rediscover=True)
    with pytest.raises(GenerationError, match="empty slug"):
        await generator.generate("!!!")


@pytest.mark.asyncio
async def test_missing_few_shot_reference(config, bus, tmp_path):
    config.adapter_api_path.unlink()

    with pytest.raises(GenerationError, match="Failed to load few-shot context"):
        await _generator(config, FakeRuntime([]), bus, tmp_path).generate("Toast")


@pytest.mark.asyncio
async def test_typecheck_failures_feed_the_next_attempt(config, bus, tmp_path):
    config.generation.auto_verify = True
    results = [
        TypecheckResult(
            ok=False,
            output="data/adapters/toast.ts(4,3): error TS2322: Type 'string' is not assignable to type 'number'.",
            has_typescript_diagnostics=True,
            has_adapter_diagnostics=True,
        ),
        TypecheckResult(ok=False, output="src/other.ts(1,1): error TS1005", has_typescript_diagnostics=True),
    ]
    checked = []

    async def typecheck(project_root, adapter_path):
        checked.append(adapter_path)
        return results.pop(0)

    runtime = FakeRuntime([generation_output(), generation_output()])
    result = await _generator(config, runtime, bus, tmp_path, typecheck=typecheck).generate("Toast")

    assert result.attempts == 2
    assert "TS2322" in _prompt(runtime, 1)
    assert checked == [config.adapter_path("toast")] * 2
    assert any("unrelated TypeScript diagnostics were ignored" in e.message for e in bus.history)


@pytest.mark.asyncio
async def test_relative_output_path(config, bus, tmp_path):
    runtime = FakeRuntime([generation_output()])

    result = await _generator(config, runtime, bus, tmp_path).generate("Toast", output_path="custom/toast.ts")

    assert result.adapter_path == str(config.project_root / "custom" / "toast.ts")
    assert "The adapter file path is custom/toast.ts." in _prompt(runtime, 0)


@pytest.mark.asyncio
async def test_auth_strategy_mismatch_is_a_warning(config, bus, tmp_path):
    adapter = ADAPTER_SOURCE.replace("strategy: 'client-credentials'", "strategy: 'cookie'")
    runtime = FakeRuntime([generation_output(adapter=adapter)])

    result = await _generator(config, runtime, bus, tmp_path).generate("Toast")

    assert result.warnings == [
        "Manifest declares auth strategy 'cookie' but discovery findings suggest 'client-credentials'."
    ]
