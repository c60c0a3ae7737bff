from __future__ import annotations

import io
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from gitcrew.config import CrewConfig
from gitcrew.coordinator import CrewPaths, ResourceCoordinator
from gitcrew.crewlog import CrewLogger
from gitcrew.errors import MergeConflictError, UncommittedChangesError, WorktreeNotFoundError
from gitcrew.executor import CommandResult, StreamResult
from gitcrew.git_ops import GitWorktree
from gitcrew.naming import branch_name
from gitcrew.store import JsonTaskStore


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeGit:
    def __init__(self, *, repo_root: Path, current: str = "main") -> None:
        self.repo_root = repo_root
        self.current = current
        self.branches: set[str] = {"main"}
        self.dirty: set[Path] = set()
        self.merge_fails = False
        self.calls: list[tuple[str, object]] = []

    def current_branch(self, *, cwd: Path | None = None) -> str:
        return self.current

    def branch_exists(self, branch: str) -> bool:
        return branch in self.branches

    def list_branches(self) -> list[str]:
        return sorted(self.branches)

    def default_branch(self) -> str:
        return "main"

    def has_uncommitted_changes(self, *, cwd: Path) -> bool:
        return cwd in self.dirty

    def merge(self, branch: str, *, cwd: Path | None = None, message: str | None = None) -> None:
        self.calls.append(("merge", branch))
        if self.merge_fails:
            raise MergeConflictError(f"merge of {branch} failed; merge aborted")

    def delete_branch(self, branch: str, *, force: bool = False) -> None:
        self.calls.append(("delete_branch", branch))
        self.branches.discard(branch)


class FakeWorktrees:
    def __init__(self, *, git: FakeGit) -> None:
        self.git = git
        self.paths: dict[str, Path] = {}
        self.calls: list[tuple[str, object]] = []
        self.copied: list[str] = []

    def create(self, *, branch: str, base_branch: str, path: Path) -> GitWorktree:
        self.calls.append(("create", (branch, base_branch)))
        if branch not in self.paths:
            path.mkdir(parents=True, exist_ok=True)
            self.paths[branch] = path
            self.git.branches.add(branch)
        return GitWorktree(branch=branch, path=self.paths[branch])

    def resolve(self, branch: str) -> Path:
        if branch not in self.paths:
            raise WorktreeNotFoundError(f"no worktree for branch {branch}")
        return self.paths[branch]

    def exists(self, branch: str) -> bool:
        return branch in self.paths

    def remove(self, branch: str, *, force: bool = False) -> None:
        path = self.resolve(branch)
        if path in self.git.dirty and not force:
            raise UncommittedChangesError(f"worktree {path} has uncommitted changes")
        self.calls.append(("remove", (branch, force)))
        del self.paths[branch]

    def list(self) -> dict[str, Path]:
        return dict(self.paths)

    def copy_files(self, *, paths: list[str], dest: Path) -> list[str]:
        self.copied.extend(paths)
        return list(paths)


class FakeSessions:
    def __init__(self) -> None:
        self.running: set[str] = set()
        self.started: list[tuple[str, Path, list[str]]] = []
        self.stopped: list[str] = []
        self.sent: list[tuple[str, str, bool]] = []

    def is_running(self, name: str) -> bool:
        return name in self.running

    def start(self, name: str, *, cwd: Path, argv: list[str], env: dict[str, str] | None = None) -> None:
        self.started.append((name, cwd, list(argv)))
        self.running.add(name)

    def stop(self, name: str) -> bool:
        if name not in self.running:
            return False
        self.running.discard(name)
        self.stopped.append(name)
        return True

    def attach(self, name: str) -> None:
        raise AssertionError("attach is not expected in tests")

    def peek(self, name: str, *, lines: int = 30) -> str:
        return f"{name}:{lines}"

    def send_keys(self, name: str, keys: str, *, enter: bool = True) -> None:
        self.sent.append((name, keys, enter))


class FakeExecutor:
    def __init__(self) -> None:
        self.results: dict[str, CommandResult] = {}
        self.runs: list[tuple[str, Path]] = []
        self.interactive: list[tuple[str, Path]] = []
        self.interactive_code = 0
        self.reviews: list[StreamResult] = []
        self.streamed: list[list[str]] = []

    def run(self, command: str, *, cwd: Path, env: dict[str, str] | None = None) -> CommandResult:
        self.runs.append((command, cwd))
        return self.results.get(command, CommandResult(exit_code=0, output=""))

    def run_interactive(self, command: str, *, cwd: Path, env: dict[str, str] | None = None) -> int:
        self.interactive.append((command, cwd))
        return self.interactive_code

    def run_streaming(self, argv, *, cwd, stdout_sink=None, stderr_sink=None, cancel=None) -> StreamResult:
        self.streamed.append(list(argv))
        if not self.reviews:
            raise AssertionError("No reviewer results left")
        return self.reviews.pop(0)


@dataclass
class Harness:
    paths: CrewPaths
    cfg: CrewConfig
    store: JsonTaskStore
    git: FakeGit
    worktrees: FakeWorktrees
    sessions: FakeSessions
    executor: FakeExecutor
    clock: FakeClock
    log_stream: io.StringIO
    coordinator: ResourceCoordinator = field(init=False)

    def __post_init__(self) -> None:
        self.coordinator = self.build(self.cfg)

    def build(self, cfg: CrewConfig) -> ResourceCoordinator:
        self.cfg = cfg
        self.coordinator = ResourceCoordinator(
            paths=self.paths,
            cfg=cfg,
            store=self.store,
            git=self.git,  # type: ignore[arg-type]
            worktrees=self.worktrees,  # type: ignore[arg-type]
            sessions=self.sessions,  # type: ignore[arg-type]
            executor=self.executor,  # type: ignore[arg-type]
            clock=self.clock,
            log=CrewLogger(crew_dir=self.paths.crew_dir, stream=self.log_stream, clock=self.clock),
        )
        return self.coordinator

    def worktree(self, task_id: int) -> Path:
        task = self.store.require(task_id)
        return self.worktrees.paths[branch_name(task.id, task.issue)]


@pytest.fixture
def harness(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Harness:
    monkeypatch.setenv("CREW_BIN", "crew")
    paths = CrewPaths(repo_root=tmp_path)
    git = FakeGit(repo_root=tmp_path)
    return Harness(
        paths=paths,
        cfg=CrewConfig(),
        store=JsonTaskStore(path=paths.tasks_path),
        git=git,
        worktrees=FakeWorktrees(git=git),
        sessions=FakeSessions(),
        executor=FakeExecutor(),
        clock=FakeClock(),
        log_stream=io.StringIO(),
    )
