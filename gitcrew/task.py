"""gitcrew.task

The persisted task model stored in `.crew/tasks.json`.

A `Task` is one unit of orchestrated work. It is bound 1:1 to a git branch + worktree and a
tmux session whose names are derived from the task ID (see `gitcrew.naming`); those names
are never stored.

Persisted shape (one object per task)
- `id` (int > 0), `namespace` (str)
- `title`, `description` (str)
- `status` (string enum, see `TaskStatus`)
- `substate` (optional string enum, see `Substate`): advisory refinement of `in_progress`
- `parent_id` (optional int): dangling references are tolerated
- `agent`, `model` (str): bound to the active work session; cleared on stop
- `base_branch` (str), `issue` (int, 0 when not linked)
- `created`, `started` (ISO-8601 timestamps; `started` is never cleared once set)
- `last_review_at`, `review_count`, `last_review_is_lgtm`, `auto_fix_retry_count`
- `block_reason` (str): non-empty blocks `start`; a `corrupted:` prefix marks a record
  that could not be parsed
- `skip_review` (true / false / absent): task-level override of the configured default
- `labels` (list[str], kept sorted and unique)
- `comments` (list[Comment]): append-only, edited by index, never reordered
- plus any unknown keys, preserved in `Task.extra`

Parsing is forgiving in the same way everywhere: unknown status values are not guessed at,
they turn the record into a blocked `error` task with a `corrupted:` reason so it still
shows up in listings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Protocol

CORRUPTED_PREFIX = "corrupted:"


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    NEEDS_INPUT = "needs_input"
    REVIEWING = "reviewing"
    DONE = "done"
    ERROR = "error"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.CLOSED)


class Substate(str, Enum):
    RUNNING = "running"
    IDLE = "idle"
    AWAITING_PERMISSION = "awaiting_permission"
    AWAITING_USER = "awaiting_user"


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def format_time(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.isoformat()


def parse_time(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


def format_elapsed(started: datetime | None, now: datetime) -> str:
    if started is None:
        return "-"
    secs = max(0, int((now - started).total_seconds()))
    hours, rem = divmod(secs, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes:02d}m"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


@dataclass
class Comment:
    text: str
    author: str = "user"
    type: str = "note"
    tags: list[str] = field(default_factory=list)
    time: datetime | None = None

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "Comment":
        return Comment(
            text=str(d.get("text", "")),
            author=str(d.get("author") or "user"),
            type=str(d.get("type") or "note"),
            tags=[str(t) for t in (d.get("tags") or [])],
            time=parse_time(d.get("time")),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"text": self.text, "author": self.author, "type": self.type}
        if self.tags:
            out["tags"] = list(self.tags)
        if self.time is not None:
            out["time"] = format_time(self.time)
        return out


_KNOWN_KEYS = {
    "id",
    "namespace",
    "title",
    "description",
    "status",
    "substate",
    "parent_id",
    "agent",
    "model",
    "base_branch",
    "issue",
    "created",
    "started",
    "last_review_at",
    "review_count",
    "last_review_is_lgtm",
    "auto_fix_retry_count",
    "block_reason",
    "skip_review",
    "labels",
    "comments",
}


@dataclass
class Task:
    id: int
    title: str
    namespace: str = "default"
    description: str = ""
    status: TaskStatus = TaskStatus.TODO
    substate: Substate | None = None
    parent_id: int | None = None
    agent: str = ""
    model: str = ""
    base_branch: str = ""
    issue: int = 0
    created: datetime | None = None
    started: datetime | None = None
    last_review_at: datetime | None = None
    review_count: int = 0
    last_review_is_lgtm: bool | None = None
    auto_fix_retry_count: int = 0
    block_reason: str = ""
    skip_review: bool | None = None
    labels: list[str] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_blocked(self) -> bool:
        return bool(self.block_reason.strip())

    @property
    def is_corrupted(self) -> bool:
        return self.block_reason.startswith(CORRUPTED_PREFIX)

    def resolve_skip_review(self, default: bool) -> bool:
        return default if self.skip_review is None else self.skip_review

    def set_labels(self, labels: list[str]) -> None:
        self.labels = sorted({str(x).strip() for x in labels if str(x).strip()})

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "Task":
        known: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for k, v in d.items():
            if k in _KNOWN_KEYS:
                known[k] = v
            else:
                extra[k] = v

        task = Task(
            id=int(known["id"]),
            title=str(known.get("title") or ""),
            namespace=str(known.get("namespace") or "default"),
            description=str(known.get("description") or ""),
            parent_id=(int(known["parent_id"]) if known.get("parent_id") not in (None, "", 0) else None),
            agent=str(known.get("agent") or ""),
            model=str(known.get("model") or ""),
            base_branch=str(known.get("base_branch") or ""),
            issue=int(known.get("issue") or 0),
            created=parse_time(known.get("created")),
            started=parse_time(known.get("started")),
            last_review_at=parse_time(known.get("last_review_at")),
            review_count=int(known.get("review_count") or 0),
            last_review_is_lgtm=(
                bool(known["last_review_is_lgtm"]) if known.get("last_review_is_lgtm") is not None else None
            ),
            auto_fix_retry_count=int(known.get("auto_fix_retry_count") or 0),
            block_reason=str(known.get("block_reason") or ""),
            skip_review=(bool(known["skip_review"]) if known.get("skip_review") is not None else None),
            comments=[Comment.from_dict(c) for c in (known.get("comments") or []) if isinstance(c, Mapping)],
            extra=extra,
        )
        task.set_labels(list(known.get("labels") or []))

        status_raw = str(known.get("status", TaskStatus.TODO.value))
        try:
            task.status = TaskStatus(status_raw)
        except ValueError:
            task.status = TaskStatus.ERROR
            task.block_reason = f"{CORRUPTED_PREFIX} unknown status {status_raw!r}"

        substate_raw = known.get("substate")
        if substate_raw:
            try:
                task.substate = Substate(str(substate_raw))
            except ValueError:
                task.substate = None
        return task

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "namespace": self.namespace,
            "title": self.title,
            "status": self.status.value,
            "review_count": self.review_count,
            "auto_fix_retry_count": self.auto_fix_retry_count,
            "labels": list(self.labels),
            "comments": [c.to_dict() for c in self.comments],
        }
        if self.description:
            out["description"] = self.description
        if self.substate is not None:
            out["substate"] = self.substate.value
        if self.parent_id is not None:
            out["parent_id"] = self.parent_id
        if self.agent:
            out["agent"] = self.agent
        if self.model:
            out["model"] = self.model
        if self.base_branch:
            out["base_branch"] = self.base_branch
        if self.issue:
            out["issue"] = self.issue
        for key, ts in (("created", self.created), ("started", self.started), ("last_review_at", self.last_review_at)):
            if ts is not None:
                out[key] = format_time(ts)
        if self.last_review_is_lgtm is not None:
            out["last_review_is_lgtm"] = self.last_review_is_lgtm
        if self.block_reason:
            out["block_reason"] = self.block_reason
        if self.skip_review is not None:
            out["skip_review"] = self.skip_review
        out.update(self.extra)
        return out
