"""Wrapper scripts that run agent commands inside tmux sessions.

Files written (all UTF-8, executable, rewritten on every start):
- `.crew/scripts/task-<id>.sh` for the worker session,
- `.crew/scripts/review-<id>.sh` for an asynchronous review session.

Both scripts load the rendered prompt into `$PROMPT` from a quoted heredoc (so the prompt is
never shell-expanded) and install an EXIT trap before running the agent. The trap calls back
into crew with the task ID and the agent's exit code:

- worker:   `crew _session-ended <id> <code>`
- reviewer: `crew _review-session-ended <id> <code>`

INT / TERM / HUP are turned into exits with the conventional 128+N codes so the EXIT trap
fires on every path, including `crew stop` (which SIGTERMs the session's process group).
The reviewer's combined output is also tee'd into `.crew/reviews/task-<id>.txt` so the
callback can read the verdict.
"""

from __future__ import annotations

import os
import shlex
import shutil
import sys
from pathlib import Path

from .agents import AgentCommand
from .errors import TemplateError
from .naming import review_output_path, review_script_path, script_path

HEREDOC_END = "END_OF_PROMPT"


def crew_command() -> list[str]:
    """argv prefix used by exit traps to call back into crew."""
    env_bin = os.environ.get("CREW_BIN")
    if env_bin:
        return shlex.split(env_bin)
    found = shutil.which("crew")
    if found:
        return [found]
    return [sys.executable, "-m", "gitcrew"]


def prompt_block(prompt: str) -> list[str]:
    if any(line.strip() == HEREDOC_END for line in prompt.splitlines()):
        raise TemplateError(f"prompt must not contain a line consisting of {HEREDOC_END}")
    return [
        f"read -r -d '' PROMPT << '{HEREDOC_END}'",
        prompt.rstrip("\n"),
        HEREDOC_END,
    ]


def _trap_block(*, func: str, hidden_cmd: str, task_id: int, crew_bin: list[str]) -> list[str]:
    callback = " ".join(shlex.quote(a) for a in [*crew_bin, hidden_cmd, str(task_id)])
    return [
        f"{func}() {{",
        "  local code=$?",
        f'  {callback} "$code" || true',
        "}",
        f"trap {func} EXIT",
        "trap 'exit 130' INT",
        "trap 'exit 143' TERM",
        "trap 'exit 129' HUP",
    ]


def render_session_script(
    *,
    task_id: int,
    cmd: AgentCommand,
    repo_root: Path,
    crew_bin: list[str],
) -> str:
    lines = [
        "#!/bin/bash",
        "set -o pipefail",
        f"export CREW_CONTROL_ROOT={shlex.quote(str(repo_root))}",
        "",
        *prompt_block(cmd.prompt),
        "",
        *_trap_block(func="SESSION_ENDED", hidden_cmd="_session-ended", task_id=task_id, crew_bin=crew_bin),
        "",
        cmd.command,
    ]
    return "\n".join(lines) + "\n"


def render_review_script(
    *,
    task_id: int,
    cmd: AgentCommand,
    repo_root: Path,
    output_path: Path,
    crew_bin: list[str],
) -> str:
    lines = [
        "#!/bin/bash",
        "set -o pipefail",
        f"export CREW_CONTROL_ROOT={shlex.quote(str(repo_root))}",
        "",
        *prompt_block(cmd.prompt),
        "",
        *_trap_block(func="REVIEW_ENDED", hidden_cmd="_review-session-ended", task_id=task_id, crew_bin=crew_bin),
        "",
        f"{cmd.command} 2>&1 | tee {shlex.quote(str(output_path))}",
    ]
    return "\n".join(lines) + "\n"


def _write_executable(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


def write_session_script(*, crew_dir: Path, repo_root: Path, task_id: int, cmd: AgentCommand) -> Path:
    body = render_session_script(task_id=task_id, cmd=cmd, repo_root=repo_root, crew_bin=crew_command())
    return _write_executable(script_path(crew_dir, task_id), body)


def write_review_script(*, crew_dir: Path, repo_root: Path, task_id: int, cmd: AgentCommand) -> Path:
    out = review_output_path(crew_dir, task_id)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.unlink(missing_ok=True)
    body = render_review_script(
        task_id=task_id,
        cmd=cmd,
        repo_root=repo_root,
        output_path=out,
        crew_bin=crew_command(),
    )
    return _write_executable(review_script_path(crew_dir, task_id), body)


def remove_scripts(crew_dir: Path, task_id: int, *, review: bool = False) -> None:
    if review:
        review_script_path(crew_dir, task_id).unlink(missing_ok=True)
    else:
        script_path(crew_dir, task_id).unlink(missing_ok=True)
