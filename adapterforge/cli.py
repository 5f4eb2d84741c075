"""AdapterForge command line.

Run: adapterforge generate "Toast" --docs-url https://doc.toasttab.com
  or python -m adapterforge.cli generate "Toast"
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TextIO

from adapterforge.config import AdapterForgeConfig
from adapterforge.discovery.cache import DiscoveryCacheReadError
from adapterforge.engines.adapter_generator import AdapterGenerator, GenerationError, GenerationResult
from adapterforge.engines.discovery_agent import DiscoveryError
from adapterforge.pipeline_bus import PipelineEvent, pipeline_bus
from adapterforge.providers.credentials import PROVIDER_PREFERENCES, CredentialResolver, LlmSession, NoCredentialsError
from adapterforge.providers.llm_runtime import ModelError

logger = logging.getLogger("adapterforge.cli")

THINKING_STYLE = "\x1b[2;90m"
TEXT_STYLE = "\x1b[37m"
RESET = "\x1b[0m"


class StreamRenderer:
    """Bus listener that writes model deltas and tool progress to a terminal."""

    def __init__(self, stream: TextIO, *, show_thinking: bool, show_text: bool) -> None:
        self._stream = stream
        self._show_thinking = show_thinking
        self._show_text = show_text
        self._open_line: str | None = None  # "thinking" | "text"

    def __call__(self, event: PipelineEvent) -> None:
        if event.event_type == "thinking":
            self._write_delta("thinking", event.message, THINKING_STYLE, self._show_thinking)
        elif event.event_type == "text":
            self._write_delta("text", event.message, TEXT_STYLE, self._show_text)
        elif event.event_type == "tool_start" and self._show_thinking:
            self._line(f"  {event.message}")
        elif event.event_type == "tool_end" and self._show_thinking:
            status = "FAILED" if event.data.get("is_error") else "ok"
            self._line(f"  [{event.step}] {status}")

    def _write_delta(self, kind: str, text: str, style: str, enabled: bool) -> None:
        if not enabled or not text:
            return
        if self._open_line and self._open_line != kind:
            self._stream.write("\n")
        self._stream.write(f"{style}{text}{RESET}")
        self._stream.flush()
        self._open_line = None if text.endswith("\n") else kind

    def _line(self, text: str) -> None:
        self.end_line()
        self._stream.write(text + "\n")
        self._stream.flush()

    def end_line(self) -> None:
        if self._open_line:
            self._stream.write("\n")
            self._open_line = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adapterforge",
        description="Discover a platform's API and generate an AGP adapter for it.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate", help="Generate an adapter and interaction profile.")
    generate.add_argument("platform", help="Platform name, e.g. 'Toast'.")
    generate.add_argument("--docs-url", help="Documentation URL to start discovery from.")
    cache_mode = generate.add_mutually_exclusive_group()
    cache_mode.add_argument("--skip-discovery", action="store_true", help="Require and use the discovery cache.")
    cache_mode.add_argument("--rediscover", action="store_true", help="Ignore the cache and run discovery.")
    generate.add_argument("--provider", choices=PROVIDER_PREFERENCES, help="Credential source to use.")
    generate.add_argument("--model", help="Model id or alias (opus, sonnet, haiku).")
    generate.add_argument("--output", help="Adapter output path, absolute or project-relative.")
    verbosity = generate.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", action="store_true", help="Debug logging and model text output.")
    verbosity.add_argument("--quiet", action="store_true", help="Warnings only; no streamed thinking.")
    return parser


def print_result(result: GenerationResult, stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    print(f"Adapter: {result.adapter_path}", file=stream)
    print(f"Interaction profile: {result.profile_path}", file=stream)
    print(f"Attempts: {result.attempts}", file=stream)
    print(f"Discovery: {result.discovery_source}", file=stream)
    if result.business_profile_update is not None:
        print(result.business_profile_update.message, file=stream)
    for warning in result.warnings:
        print(f"warning: {warning}", file=stream)


async def run_generate(args: argparse.Namespace) -> GenerationResult:
    config = AdapterForgeConfig.load()
    session = LlmSession(
        CredentialResolver(config),
        provider_preference=args.provider,
        model_override=args.model,
        timeout=config.llm.timeout,
    )
    generator = AdapterGenerator(config, session, pipeline_bus)
    return await generator.generate(
        args.platform,
        args.docs_url,
        skip_discovery=args.skip_discovery,
        rediscover=args.rediscover,
        output_path=args.output,
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    # Keep transport chatter out of INFO output.
    for noisy in ("httpx", "httpcore", "anthropic"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    renderer = StreamRenderer(sys.stderr, show_thinking=not args.quiet, show_text=args.verbose)
    pipeline_bus.add_listener(renderer)
    try:
        result = asyncio.run(run_generate(args))
    except (
        GenerationError,
        DiscoveryError,
        DiscoveryCacheReadError,
        NoCredentialsError,
        ModelError,
        OSError,
        ValueError,
    ) as exc:
        renderer.end_line()
        logger.debug("Fatal error", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        renderer.end_line()
        print("error: interrupted", file=sys.stderr)
        return 130
    finally:
        pipeline_bus.remove_listener(renderer)

    renderer.end_line()
    print_result(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
