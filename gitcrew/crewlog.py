"""Event log for crew operations.

Each event goes to up to three places:
- stderr, as `[crew] <message>` (`[crew] warning: ...` / `[crew] error: ...` for those levels),
- `.crew/logs/crew.log`, for every event,
- `.crew/logs/task-<id>.log`, for events tied to a task.

File lines look like:

    [2025-01-31 14:02:11] [INFO] [task-3] [start] session crew-3 started

Events below the configured level are dropped everywhere. Failing to write a log file never
fails the operation being logged.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TextIO

from .naming import global_log_path, task_log_path
from .task import Clock, SystemClock

_LEVELS = {"debug": 10, "info": 20, "warn": 30, "error": 40}


class CrewLogger:
    def __init__(
        self,
        *,
        crew_dir: Path | None,
        level: str = "info",
        stream: TextIO | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.crew_dir = crew_dir
        self.level = _LEVELS.get(level, _LEVELS["info"])
        self.stream = stream
        self.clock = clock or SystemClock()

    def debug(self, category: str, message: str, *, task_id: int | None = None) -> None:
        self.log("debug", category, message, task_id=task_id)

    def info(self, category: str, message: str, *, task_id: int | None = None) -> None:
        self.log("info", category, message, task_id=task_id)

    def warn(self, category: str, message: str, *, task_id: int | None = None) -> None:
        self.log("warn", category, message, task_id=task_id)

    def error(self, category: str, message: str, *, task_id: int | None = None) -> None:
        self.log("error", category, message, task_id=task_id)

    def log(self, level: str, category: str, message: str, *, task_id: int | None = None) -> None:
        if _LEVELS.get(level, 0) < self.level:
            return

        stream = self.stream if self.stream is not None else sys.stderr
        prefix = {"warn": "warning: ", "error": "error: "}.get(level, "")
        print(f"[crew] {prefix}{message}", file=stream)

        if self.crew_dir is None:
            return
        ts = self.clock.now().strftime("%Y-%m-%d %H:%M:%S")
        scope = f"task-{task_id}" if task_id is not None else "global"
        line = f"[{ts}] [{level.upper()}] [{scope}] [{category}] {message}\n"
        paths = [global_log_path(self.crew_dir)]
        if task_id is not None:
            paths.append(task_log_path(self.crew_dir, task_id))
        for path in paths:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as f:
                    f.write(line)
            except OSError as exc:
                print(f"[crew] warning: could not write {path}: {exc}", file=stream)
