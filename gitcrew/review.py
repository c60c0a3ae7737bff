"""Review verdict parsing and the synchronous reviewer runner.

A reviewer prints free-form text. When the text contains `---REVIEW_RESULT---`, only what
follows the last marker is the verdict; otherwise the whole output is. A verdict is LGTM when
it starts with `✅ LGTM` after stripping whitespace.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from .agents import AgentCommand
from .errors import ResourceError
from .executor import CommandExecutor
from .scripts import prompt_block

REVIEW_RESULT_MARKER = "---REVIEW_RESULT---"
LGTM_PREFIX = "✅ LGTM"


@dataclass(frozen=True)
class ReviewResult:
    text: str
    lgtm: bool


def extract_review_result(output: str) -> str:
    idx = output.rfind(REVIEW_RESULT_MARKER)
    if idx != -1:
        output = output[idx + len(REVIEW_RESULT_MARKER) :]
    return output.strip()


def is_lgtm(text: str) -> bool:
    return text.strip().startswith(LGTM_PREFIX)


def parse_review(output: str) -> ReviewResult:
    text = extract_review_result(output)
    return ReviewResult(text=text, lgtm=is_lgtm(text))


def reviewer_script(cmd: AgentCommand) -> str:
    return "\n".join(["set -o pipefail", *prompt_block(cmd.prompt), cmd.command]) + "\n"


def run_reviewer(
    *,
    executor: CommandExecutor,
    cmd: AgentCommand,
    cwd: Path,
    stream: TextIO | None = None,
    cancel: threading.Event | None = None,
) -> ReviewResult:
    """Run the reviewer to completion in `cwd` and parse its verdict.

    Raises `ResourceError` when the reviewer exits non-zero or is cancelled; nothing about the
    task has been recorded at that point.
    """
    res = executor.run_streaming(
        ["bash", "-c", reviewer_script(cmd)],
        cwd=cwd,
        stdout_sink=stream,
        stderr_sink=stream,
        cancel=cancel,
    )
    if res.cancelled:
        raise ResourceError("reviewer cancelled")
    if res.exit_code != 0:
        detail = res.stderr.strip().splitlines()[-1:] or [""]
        raise ResourceError(f"reviewer {cmd.agent} exited with {res.exit_code}: {detail[0]}".rstrip(": "))
    return parse_review(res.stdout)
