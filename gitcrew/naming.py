"""Deterministic names derived from a task ID.

Branch, worktree, session and script names are pure functions of the task ID (plus the
optional linked issue number for branches). `parse_branch_task_id` inverts the branch
name so the "current task" can be detected from the checked-out branch.
"""

from __future__ import annotations

import re
from pathlib import Path

BRANCH_PREFIX = "crew-"
DEFAULT_NAMESPACE = "default"

_BRANCH_RE = re.compile(r"^crew-(\d+)(?:-gh-\d+)?$")
_NAMESPACE_INVALID_RE = re.compile(r"[^a-z0-9-]+")


def branch_name(task_id: int, issue: int = 0) -> str:
    if issue > 0:
        return f"{BRANCH_PREFIX}{task_id}-gh-{issue}"
    return f"{BRANCH_PREFIX}{task_id}"


def parse_branch_task_id(branch: str) -> int | None:
    """Return the task ID encoded in a crew branch name, or None for other branches."""
    m = _BRANCH_RE.match(branch.strip())
    if m is None:
        return None
    task_id = int(m.group(1))
    return task_id if task_id > 0 else None


def is_crew_branch(branch: str) -> bool:
    return parse_branch_task_id(branch) is not None


def session_name(task_id: int) -> str:
    return f"{BRANCH_PREFIX}{task_id}"


def review_session_name(task_id: int) -> str:
    return f"{BRANCH_PREFIX}{task_id}-review"


def worktree_path(worktrees_dir: Path, task_id: int) -> Path:
    return worktrees_dir / str(task_id)


def script_path(crew_dir: Path, task_id: int) -> Path:
    return crew_dir / "scripts" / f"task-{task_id}.sh"


def review_script_path(crew_dir: Path, task_id: int) -> Path:
    return crew_dir / "scripts" / f"review-{task_id}.sh"


def review_output_path(crew_dir: Path, task_id: int) -> Path:
    return crew_dir / "reviews" / f"task-{task_id}.txt"


def task_log_path(crew_dir: Path, task_id: int) -> Path:
    return crew_dir / "logs" / f"task-{task_id}.log"


def global_log_path(crew_dir: Path) -> Path:
    return crew_dir / "logs" / "crew.log"


def sanitize_namespace(raw: str) -> str:
    ns = _NAMESPACE_INVALID_RE.sub("-", raw.strip().lower()).strip("-")
    return ns or DEFAULT_NAMESPACE

