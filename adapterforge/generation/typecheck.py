"""Type-check gate for generated adapters.

Runs the project's type-check command and decides whether its output
blocks the generated adapter. Diagnostics in unrelated files are ignored.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")
_DIAGNOSTIC_PAREN = re.compile(r"^(.+)\(\d+,\d+\):\s+error\sTS\d+:")
_DIAGNOSTIC_DASH = re.compile(r"^(.+):\d+:\d+\s+-\s+error\sTS\d+:")
_TS_DIAGNOSTIC = re.compile(r"\berror\s+TS\d+:")


@dataclass
class TypecheckResult:
    ok: bool = False
    exit_code: int = 1
    output: str = ""
    has_typescript_diagnostics: bool = False
    has_adapter_diagnostics: bool = False
    filtered_output: str = ""
    raw_output: str = ""


def strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)


def _posix(value: str) -> str:
    return value.replace("\\", "/")


def extract_diagnostic_file(line: str) -> str | None:
    for pattern in (_DIAGNOSTIC_PAREN, _DIAGNOSTIC_DASH):
        match = pattern.match(line)
        if match:
            return match.group(1).strip()
    return None


def analyze_typecheck_output(output: str, project_root: Path, adapter_path: Path) -> TypecheckResult:
    """Classify compiler *output* relative to the generated adapter.

    Diagnostic lines naming the adapter are kept together with their
    continuation lines, up to the next diagnostic for another file.
    """
    raw = output.strip()
    if not raw:
        return TypecheckResult()

    root = Path(os.path.abspath(project_root))
    adapter_abs = _posix(os.path.abspath(root / adapter_path))
    adapter_rel = _posix(os.path.relpath(adapter_abs, root))

    filtered: list[str] = []
    has_ts = False
    has_adapter = False
    include_current = False

    for line in raw.splitlines():
        clean = strip_ansi(line)
        is_diagnostic = bool(_TS_DIAGNOSTIC.search(clean))
        has_ts = has_ts or is_diagnostic

        diagnostic_file = extract_diagnostic_file(clean)
        if diagnostic_file:
            resolved = _posix(os.path.abspath(root / diagnostic_file))
            include_current = (
                resolved == adapter_abs
                or resolved.endswith(f"/{adapter_rel}")
                or _posix(diagnostic_file).endswith(adapter_rel)
            )
            if include_current and is_diagnostic:
                has_adapter = True

        if include_current:
            filtered.append(line)

    if filtered:
        filtered_output = "\n".join(filtered).strip()
    elif has_ts:
        filtered_output = (
            f"Type-check failed, but no errors were reported in generated adapter '{adapter_rel}'."
        )
    else:
        filtered_output = raw

    return TypecheckResult(
        has_typescript_diagnostics=has_ts,
        has_adapter_diagnostics=has_adapter,
        filtered_output=filtered_output,
        raw_output=raw,
    )


def should_accept(result: TypecheckResult) -> bool:
    if result.ok:
        return True
    return result.has_typescript_diagnostics and not result.has_adapter_diagnostics


async def run_typecheck(command: list[str], project_root: Path, adapter_path: Path) -> TypecheckResult:
    """Run *command* in *project_root* and analyze its combined output.

    A command that cannot be started is reported as a failed check with the
    launch error as output.
    """
    logger.info("Running type-check: %s", " ".join(command))
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(project_root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        message = f"Could not run type-check command '{' '.join(command)}': {exc}"
        return TypecheckResult(output=message, filtered_output=message, raw_output=message)

    stdout, stderr = await proc.communicate()
    combined = "\n".join(
        part for part in (
            stdout.decode("utf-8", errors="replace").strip(),
            stderr.decode("utf-8", errors="replace").strip(),
        ) if part
    )
    exit_code = proc.returncode if proc.returncode is not None else 1

    result = analyze_typecheck_output(combined, project_root, adapter_path)
    result.ok = exit_code == 0
    result.exit_code = exit_code
    result.output = result.filtered_output or result.raw_output
    return result
