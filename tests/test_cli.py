import io

import pytest

from adapterforge import cli
from adapterforge.engines.adapter_generator import GenerationError, GenerationResult
from adapterforge.pipeline_bus import PipelineEvent


def test_parser_defaults():
    args = cli.build_parser().parse_args(["generate", "Toast", "--docs-url", "https://doc.toasttab.com"])
    assert args.platform == "Toast"
    assert args.docs_url == "https://doc.toasttab.com"
    assert not args.skip_discovery and not args.rediscover
    assert args.provider is None


@pytest.mark.parametrize("flags", [
    ["--skip-discovery", "--rediscover"],
    ["--verbose", "--quiet"],
    ["--provider", "openai"],
])
def test_parser_rejects_bad_combinations(flags):
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["generate", "Toast", *flags])


def test_main_prints_fatal_errors(monkeypatch, capsys):
    async def failing(args):
        raise GenerationError("Generation failed after 5 attempts. Last error: boom")

    monkeypatch.setattr(cli, "run_generate", failing)

    assert cli.main(["generate", "Toast", "--quiet"]) == 1
    err = capsys.readouterr().err
    assert "error: Generation failed after 5 attempts. Last error: boom" in err


def test_main_prints_result(monkeypatch, capsys):
    async def succeed(args):
        return GenerationResult(
            platform_slug="toast",
            adapter_path="/work/data/adapters/toast.ts",
            profile_path="/work/data/interaction-profiles/toast.json",
            attempts=2,
            provider="anthropic",
            model="claude-opus-4-6",
            discovery_source="cache",
            warnings=["Manifest declares auth strategy 'cookie' but discovery findings suggest 'bearer'."],
        )

    monkeypatch.setattr(cli, "run_generate", succeed)

    assert cli.main(["generate", "Toast", "--quiet"]) == 0
    out = capsys.readouterr().out
    assert "Adapter: /work/data/adapters/toast.ts" in out
    assert "Attempts: 2" in out
    assert "Discovery: cache" in out
    assert "warning: Manifest declares auth strategy 'cookie'" in out


def _event(event_type, message="", step="discovery", **data):
    return PipelineEvent(event_type=event_type, engine="discovery", step=step, message=message, data=data)


def test_stream_renderer_separates_thinking_text_and_tools():
    out = io.StringIO()
    renderer = cli.StreamRenderer(out, show_thinking=True, show_text=True)

    renderer(_event("thinking", "Looking for auth docs"))
    renderer(_event("text", "Found it"))
    renderer(_event("tool_start", "[fetch] https://doc.toasttab.com", step="fetch_page"))
    renderer(_event("tool_end", "FAILED", step="fetch_page", is_error=True))
    renderer(_event("tool_end", "ok", step="save_finding", is_error=False))
    renderer.end_line()

    assert out.getvalue() == (
        f"{cli.THINKING_STYLE}Looking for auth docs{cli.RESET}\n"
        f"{cli.TEXT_STYLE}Found it{cli.RESET}\n"
        "  [fetch] https://doc.toasttab.com\n"
        "  [fetch_page] FAILED\n"
        "  [save_finding] ok\n"
    )


def test_stream_renderer_hides_text_unless_verbose():
    out = io.StringIO()
    renderer = cli.StreamRenderer(out, show_thinking=False, show_text=False)

    renderer(_event("thinking", "hmm"))
    renderer(_event("text", "hello"))
    renderer(_event("tool_start", "[search] web_search", step="web_search"))

    assert out.getvalue() == ""


def test_main_reports_bad_configuration(monkeypatch, capsys, tmp_path):
    monkeypatch.setenv("ADAPTERFORGE_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("ADAPTERFORGE_MAX_ITERATIONS", "many")

    assert cli.main(["generate", "Toast", "--quiet"]) == 1
    err = capsys.readouterr().err
    assert "error: invalid literal for int()" in err
    assert "Traceback" not in err
