"""JSON-file task repository (`.crew/tasks.json`).

Document shape:

    {
      "namespaces": {
        "<namespace>": {"next_id": 4, "tasks": {"1": {...}, "2": {...}}}
      }
    }

Every mutating call takes an exclusive `fcntl.flock` on `.crew/tasks.lock`, re-reads the
document, applies one change and writes the result atomically (temp file + `os.replace`).
The lock only serializes single writes; it is not held across a whole CLI command, so
callers must re-read a task right before mutating it.

Comments are append-only: `save()` never touches a stored task's comment list. Use
`add_comment()` / `edit_comment()` instead.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from .errors import CommentNotFoundError, StoreCorruptedError, TaskNotFoundError
from .task import CORRUPTED_PREFIX, Comment, Task, TaskStatus


class JsonTaskStore:
    def __init__(self, *, path: Path, namespace: str = "default") -> None:
        self.path = path
        self.namespace = namespace

    @property
    def lock_path(self) -> Path:
        return self.path.with_suffix(".lock")

    def get(self, task_id: int) -> Task | None:
        raw = self._tasks(self._load()).get(str(task_id))
        if raw is None:
            return None
        return _parse_task(task_id, raw, namespace=self.namespace)

    def require(self, task_id: int) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def list(
        self,
        *,
        status: TaskStatus | None = None,
        parent_id: int | None = None,
        label: str | None = None,
    ) -> list[Task]:
        tasks = [
            _parse_task(int(k), v, namespace=self.namespace)
            for k, v in self._tasks(self._load()).items()
            if str(k).isdigit()
        ]
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        if parent_id is not None:
            tasks = [t for t in tasks if t.parent_id == parent_id]
        if label is not None:
            tasks = [t for t in tasks if label in t.labels]
        return sorted(tasks, key=lambda t: t.id)

    def next_id(self) -> int:
        """Allocate and persist the next task ID for this namespace."""
        with self._mutate() as doc:
            ns = self._namespace(doc)
            existing = [int(k) for k in ns["tasks"] if str(k).isdigit()]
            next_id = max([int(ns.get("next_id") or 1), *(i + 1 for i in existing)])
            ns["next_id"] = next_id + 1
            return next_id

    def save(self, task: Task) -> None:
        task.namespace = self.namespace
        with self._mutate() as doc:
            tasks = self._namespace(doc)["tasks"]
            record = task.to_dict()
            stored = tasks.get(str(task.id))
            if isinstance(stored, dict):
                record["comments"] = list(stored.get("comments") or [])
            tasks[str(task.id)] = record

    def delete(self, task_id: int) -> None:
        with self._mutate() as doc:
            tasks = self._namespace(doc)["tasks"]
            if tasks.pop(str(task_id), None) is None:
                raise TaskNotFoundError(task_id)

    def comments(self, task_id: int) -> list[Comment]:
        return self.require(task_id).comments

    def add_comment(self, task_id: int, comment: Comment) -> int:
        """Append a comment and return its index."""
        with self._mutate() as doc:
            record = self._namespace(doc)["tasks"].get(str(task_id))
            if not isinstance(record, dict):
                raise TaskNotFoundError(task_id)
            comments = record.setdefault("comments", [])
            comments.append(comment.to_dict())
            return len(comments) - 1

    def edit_comment(self, task_id: int, index: int, text: str) -> None:
        with self._mutate() as doc:
            record = self._namespace(doc)["tasks"].get(str(task_id))
            if not isinstance(record, dict):
                raise TaskNotFoundError(task_id)
            comments = record.get("comments") or []
            if index < 0 or index >= len(comments):
                raise CommentNotFoundError(f"task #{task_id} has no comment at index {index}")
            comments[index]["text"] = text

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"namespaces": {}}
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return {"namespaces": {}}
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreCorruptedError(f"{self.path} is not valid JSON: {exc}") from exc
        if not isinstance(doc, dict) or not isinstance(doc.get("namespaces", {}), dict):
            raise StoreCorruptedError(f"{self.path} must contain a JSON object with a \"namespaces\" object")
        doc.setdefault("namespaces", {})
        return doc

    def _namespace(self, doc: dict[str, Any]) -> dict[str, Any]:
        ns = doc["namespaces"].setdefault(self.namespace, {})
        ns.setdefault("next_id", 1)
        ns.setdefault("tasks", {})
        return ns

    def _tasks(self, doc: dict[str, Any]) -> dict[str, Any]:
        ns = doc["namespaces"].get(self.namespace) or {}
        return ns.get("tasks") or {}

    @contextmanager
    def _mutate(self) -> Iterator[dict[str, Any]]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.lock_path.open("a", encoding="utf-8") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                doc = self._load()
                yield doc
                self._write(doc)
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def _write(self, doc: dict[str, Any]) -> None:
        fd, tmp = tempfile.mkstemp(prefix=".tasks-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(doc, indent=2, ensure_ascii=True) + "\n")
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


def _parse_task(task_id: int, raw: Any, *, namespace: str) -> Task:
    if isinstance(raw, dict):
        try:
            return Task.from_dict({"id": task_id, **raw, "namespace": namespace})
        except (KeyError, TypeError, ValueError) as exc:
            reason = f"{CORRUPTED_PREFIX} {exc}"
    else:
        reason = f"{CORRUPTED_PREFIX} record is not an object"
    return Task(id=task_id, title="(unreadable)", namespace=namespace, status=TaskStatus.ERROR, block_reason=reason)
