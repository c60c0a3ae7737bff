"""Single-shot poll watcher.

`crew poll` blocks until something happens, runs one command and exits. It is the only
long-lived loop in crew and is meant for managers and scripts that want to react to a task
without polling the store themselves.

Two modes:

- task mode (`watch_tasks`): watch a fixed set of task IDs and fire on the first status
  change of any of them. Template fields: `TaskID`, `OldStatus`, `NewStatus`.
  With `expect`, the baseline is the expected status set instead of whatever the task is in
  when polling starts; if a task is already outside it, the command fires immediately with
  `OldStatus` set to the (first) expected status.
- status mode (`watch_status`): fire as soon as any task is in a target status (checked
  immediately, then every interval). Template fields: `TaskID`, `Status`.

Every loop iteration checks first, then sleeps `min(interval, time left)`. Once the
deadline has passed with nothing observed, the watcher returns None without running the
command. A timeout of zero or less means no deadline: the watcher checks every interval
until something happens or it is cancelled. Sleeping is done with `threading.Event.wait`, so setting the cancel event (see
`cancel_on_signals`) wakes the watcher immediately and it returns None without firing.
"""

from __future__ import annotations

import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from .crewlog import CrewLogger
from .errors import TaskNotFoundError
from .executor import CommandExecutor
from .store import JsonTaskStore
from .task import TaskStatus
from .template import render_template

DEFAULT_TASK_COMMAND = 'echo "{{.TaskID}} {{.OldStatus}} -> {{.NewStatus}}"'
DEFAULT_STATUS_COMMAND = 'echo "{{.Status}} {{.TaskID}}"'


@dataclass(frozen=True)
class PollEvent:
    task_id: int
    old_status: str
    new_status: str
    exit_code: int | None = None


@contextmanager
def cancel_on_signals(event: threading.Event) -> Iterator[threading.Event]:
    """Set `event` on SIGINT / SIGTERM while the block runs; restore handlers afterwards."""

    def handler(signum: int, frame: object) -> None:
        event.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield event
    finally:
        for sig, prev in previous.items():
            signal.signal(sig, prev)


class PollWatcher:
    def __init__(
        self,
        *,
        store: JsonTaskStore,
        executor: CommandExecutor,
        cwd: Path,
        log: CrewLogger,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.executor = executor
        self.cwd = cwd
        self.log = log
        self.monotonic = monotonic

    def watch_tasks(
        self,
        task_ids: list[int],
        *,
        command: str | None = None,
        expect: list[TaskStatus] | None = None,
        interval: float = 10.0,
        timeout: float = 300.0,
        cancel: threading.Event | None = None,
    ) -> PollEvent | None:
        if not task_ids:
            raise ValueError("at least one task ID is required")
        template = command or DEFAULT_TASK_COMMAND
        # Fail on bad templates before waiting.
        render_template(template, {"TaskID": 0, "OldStatus": "", "NewStatus": ""})

        baseline: dict[int, TaskStatus] = {}
        for tid in task_ids:
            task = self.store.get(tid)
            if task is None:
                raise TaskNotFoundError(tid)
            if expect and task.status not in expect:
                return self._fire_task(template, tid, expect[0].value, task.status.value)
            baseline[tid] = task.status

        def check() -> PollEvent | None:
            for tid in task_ids:
                task = self.store.get(tid)
                if task is None:
                    continue
                if task.status != baseline[tid]:
                    return self._fire_task(template, tid, baseline[tid].value, task.status.value)
            return None

        return self._loop(check, interval=interval, timeout=timeout, cancel=cancel)

    def watch_status(
        self,
        target: TaskStatus,
        *,
        command: str | None = None,
        interval: float = 10.0,
        timeout: float = 300.0,
        cancel: threading.Event | None = None,
    ) -> PollEvent | None:
        template = command or DEFAULT_STATUS_COMMAND
        render_template(template, {"TaskID": 0, "Status": ""})

        def check() -> PollEvent | None:
            matches = self.store.list(status=target)
            if not matches:
                return None
            task = matches[0]
            code = self._run(render_template(template, {"TaskID": task.id, "Status": task.status.value}))
            return PollEvent(task_id=task.id, old_status="", new_status=task.status.value, exit_code=code)

        return self._loop(check, interval=interval, timeout=timeout, cancel=cancel)

    def _loop(
        self,
        check: Callable[[], PollEvent | None],
        *,
        interval: float,
        timeout: float,
        cancel: threading.Event | None,
    ) -> PollEvent | None:
        cancel = cancel or threading.Event()
        deadline = self.monotonic() + timeout if timeout > 0 else None
        interval = max(0.01, interval)
        while not cancel.is_set():
            event = check()
            if event is not None:
                return event
            wait = interval
            if deadline is not None:
                remaining = deadline - self.monotonic()
                if remaining <= 0:
                    self.log.debug("poll", f"timed out after {timeout:g}s")
                    return None
                wait = min(interval, remaining)
            if cancel.wait(wait):
                break
        self.log.debug("poll", "cancelled")
        return None

    def _fire_task(self, template: str, task_id: int, old: str, new: str) -> PollEvent:
        rendered = render_template(template, {"TaskID": task_id, "OldStatus": old, "NewStatus": new})
        code = self._run(rendered)
        return PollEvent(task_id=task_id, old_status=old, new_status=new, exit_code=code)

    def _run(self, command: str) -> int:
        code = self.executor.run_interactive(command, cwd=self.cwd)
        if code != 0:
            self.log.warn("poll", f"command exited with {code}: {command}")
        return code
