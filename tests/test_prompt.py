import pytest

from adapterforge.generation.prompt import (
    FewShotContext,
    FewShotContextError,
    build_analysis_summary,
    build_generation_prompt,
    flatten_findings,
    ordered_categories,
    read_few_shot_context,
    slugify_platform_name,
    to_pascal_case,
    truncate_for_prompt,
)

FEW_SHOT = FewShotContext("ADAPTER_API_TEXT", "REFERENCE_ADAPTER_TEXT", "REFERENCE_PROFILE_TEXT")


@pytest.mark.parametrize("name,slug", [
    ("Toast", "toast"),
    ("  Square POS  ", "square-pos"),
    ("Uber Eats!!", "uber-eats"),
    ("--Dominos--Pizza--", "dominos-pizza"),
    ("!!!", ""),
])
def test_slugify(name, slug):
    assert slugify_platform_name(name) == slug


def test_pascal_case():
    assert to_pascal_case("square-pos") == "SquarePos"
    assert to_pascal_case("toast") == "Toast"


def test_category_ranking():
    findings = {
        "endpoints": ["GET /orders"],
        "notes": ["timed out"],
        "discover_endpoints": ["GET /menus"],
        "auth": ["bearer"],
        "merchant_info": ["Restaurant name: Joe's"],
        "account": ["account id"],
    }
    assert ordered_categories(findings) == [
        "account", "merchant_info", "discover_endpoints", "notes", "auth", "endpoints",
    ]
    assert flatten_findings(findings)[:2] == ["account id", "Restaurant name: Joe's"]


def test_analysis_summary():
    summary = build_analysis_summary(
        {"base_urls": ["https://api.example.com"], "auth": ["Bearer token"], "empty": []},
        pages_visited=3,
        tool_calls=7,
    )
    assert summary.startswith("Discovery stats: pagesVisited=3, toolCalls=7")
    assert "Auth:\n- Bearer token" in summary
    assert "Base Urls:\n- https://api.example.com" in summary
    assert "Empty" not in summary


def test_truncate_for_prompt():
    assert truncate_for_prompt("short") == "short"
    long = "x" * 12_500
    truncated = truncate_for_prompt(long)
    assert truncated == "x" * 12_000 + "\n...[truncated]"


def _prompt(previous_errors=None):
    return build_generation_prompt(
        platform_name="Toast",
        platform_slug="toast",
        adapter_class_name="ToastAdapter",
        adapter_file_path_hint="data/adapters/toast.ts",
        analysis_summary="Discovery stats: pagesVisited=1, toolCalls=2",
        few_shot=FEW_SHOT,
        current_date="2026-03-02",
        previous_errors=previous_errors,
    )


def test_generation_prompt_contents():
    prompt = _prompt()
    assert "Target slug: toast" in prompt
    assert "Required adapter class name: ToastAdapter" in prompt
    assert "generated must be '2026-03-02'" in prompt
    assert "from 'agenr:adapter-api'" in prompt
    assert "export default class ToastAdapter implements AgpAdapter" in prompt
    assert "strategy: 'client-credentials'" in prompt
    assert "===INTERACTION_PROFILE_JSON===" in prompt
    assert prompt.index("REFERENCE_ADAPTER_TEXT") < prompt.index("LLM analysis summary")
    assert prompt.rstrip().endswith("Discovery stats: pagesVisited=1, toolCalls=2")
    assert "Previous attempt errors" not in prompt


def test_generation_prompt_includes_retry_feedback():
    prompt = _prompt("data/adapters/toast.ts(3,1): error TS2304: Cannot find name 'foo'.")
    assert "Previous attempt errors (fix these):\ndata/adapters/toast.ts(3,1)" in prompt
    assert prompt.index("Previous attempt errors") < prompt.index("Return exactly this format:")


def test_read_few_shot_context(config):
    context = read_few_shot_context(config)
    assert context.adapter_api.startswith("export type AgpAdapter")


def test_read_few_shot_context_names_all_paths(config):
    config.reference_adapter_path.unlink()
    with pytest.raises(FewShotContextError) as excinfo:
        read_few_shot_context(config)
    message = str(excinfo.value)
    assert "adapter-api.ts" in message
    assert "stripe.ts" in message
    assert "stripe.json" in message
