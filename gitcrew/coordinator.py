"""Resource coordinator: state transitions with their git / worktree / session side effects.

Every public method is one CLI operation and follows the same shape:

1. re-read the task from the store (never trust a value loaded earlier),
2. validate the transition with `gitcrew.states` plus any git/shell guards,
3. perform side effects (branch + worktree, tmux session, merge, deletion),
4. re-read the task again, re-apply the transition and save it.

If step 3 fails the task status is left unchanged; resources created before the failure are
not rolled back. Steps that find their work already done (session absent, worktree absent,
branch already deleted) treat that as satisfied, so `stop`, `close` and `merge` can be re-run
after a crash part-way through.

Session self-reporting
`start` runs the agent inside a generated wrapper script (`gitcrew.scripts`) whose EXIT trap
calls `crew _session-ended <id> <code>`. `session_ended` turns that callback into a
transition: an `in_progress` task whose session died becomes `error`. `stop` clears the
task's agent *before* killing the session, and `session_ended` ignores tasks with no agent,
so an explicit stop never turns into an error.

`request_changes` tells the worker about the new comment: it types a notice into the running
work session, or relaunches the session first when it is gone. Failing to notify is only a
warning; the comment and the status change are already saved.

Review sessions use the same mechanism with `crew _review-session-ended`; see
`review_session_ended`.
"""

from __future__ import annotations

import shlex
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, TextIO

from . import states
from .agents import AgentCommand, AgentRole, build_agent_command
from .config import CrewConfig
from .crewlog import CrewLogger
from .errors import (
    CheckFailedError,
    CrewError,
    InvalidTransitionError,
    MaxRetriesReachedError,
    NotOnBaseBranchError,
    PreconditionError,
    ResourceError,
    SessionRunningError,
    UncommittedChangesError,
)
from .executor import CommandExecutor
from .git_ops import GitClient, WorktreeManager
from .naming import (
    branch_name,
    is_crew_branch,
    parse_branch_task_id,
    review_output_path,
    review_session_name,
    session_name,
    task_log_path,
    worktree_path,
)
from .review import ReviewResult, parse_review, run_reviewer
from .scripts import remove_scripts, write_review_script, write_session_script
from .store import JsonTaskStore
from .task import Clock, Comment, Substate, Task, TaskStatus
from .template import render_template
from .tmux import TmuxSessionManager


@dataclass(frozen=True)
class CrewPaths:
    repo_root: Path
    worktree_dir: str = ".crew/worktrees"

    @property
    def crew_dir(self) -> Path:
        return self.repo_root / ".crew"

    @property
    def tasks_path(self) -> Path:
        return self.crew_dir / "tasks.json"

    @property
    def config_path(self) -> Path:
        return self.crew_dir / "config.toml"

    @property
    def socket_path(self) -> Path:
        return self.crew_dir / "tmux.sock"

    @property
    def worktrees_dir(self) -> Path:
        return self.repo_root / self.worktree_dir


@dataclass(frozen=True)
class CompleteOutcome:
    task_id: int
    status: TaskStatus
    review_started: bool = False


@dataclass(frozen=True)
class ReviewOutcome:
    task_id: int
    review: ReviewResult
    status: TaskStatus
    retried: bool = False
    retry_count: int = 0


@dataclass
class PrunePlan:
    branches: list[str] = field(default_factory=list)
    worktrees: dict[str, Path] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def empty(self) -> bool:
        return not self.branches and not self.worktrees


@contextmanager
def _resource_step(step: str) -> Iterator[None]:
    try:
        yield
    except subprocess.CalledProcessError as exc:
        detail = exc.stderr.strip() if isinstance(exc.stderr, str) else ""
        raise ResourceError(f"{step} failed: {detail or exc}") from exc
    except OSError as exc:
        raise ResourceError(f"{step} failed: {exc}") from exc


def change_request_notice(task_id: int) -> str:
    return f"Changes were requested on task #{task_id}. Run `crew show {task_id}` and address the comments."


class ResourceCoordinator:
    def __init__(
        self,
        *,
        paths: CrewPaths,
        cfg: CrewConfig,
        store: JsonTaskStore,
        git: GitClient,
        worktrees: WorktreeManager,
        sessions: TmuxSessionManager,
        executor: CommandExecutor,
        clock: Clock,
        log: CrewLogger,
    ) -> None:
        self.paths = paths
        self.cfg = cfg
        self.store = store
        self.git = git
        self.worktrees = worktrees
        self.sessions = sessions
        self.executor = executor
        self.clock = clock
        self.log = log

    # -- creation and bookkeeping -------------------------------------------------

    def new_task(
        self,
        *,
        title: str,
        description: str = "",
        labels: list[str] | None = None,
        parent_id: int | None = None,
        issue: int = 0,
        base_branch: str | None = None,
        skip_review: bool | None = None,
    ) -> Task:
        if not title.strip():
            raise PreconditionError("task title must not be empty")
        base = base_branch or self.cfg.base_branch or self._current_or_default_branch()
        task_id = self.store.next_id()
        task = Task(
            id=task_id,
            title=title.strip(),
            namespace=self.store.namespace,
            description=description,
            parent_id=parent_id,
            issue=max(0, issue),
            base_branch=base,
            skip_review=skip_review,
            created=self.clock.now(),
        )
        task.set_labels(labels or [])
        self.store.save(task)
        if parent_id is not None and self.store.get(parent_id) is None:
            self.log.warn("new", f"task #{task_id}: parent #{parent_id} does not exist", task_id=task_id)
        self.log.info("new", f"created task #{task_id}: {task.title}", task_id=task_id)
        return task

    def edit(
        self,
        task_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        add_labels: list[str] | None = None,
        remove_labels: list[str] | None = None,
        block_reason: str | None = None,
        status: TaskStatus | None = None,
        skip_review: bool | None = None,
        clear_skip_review: bool = False,
    ) -> Task:
        task = self.store.require(task_id)
        if title is not None:
            task.title = title.strip()
        if description is not None:
            task.description = description
        if add_labels or remove_labels:
            labels = (set(task.labels) | set(add_labels or [])) - set(remove_labels or [])
            task.set_labels(list(labels))
        if block_reason is not None:
            task.block_reason = block_reason.strip()
        if clear_skip_review:
            task.skip_review = None
        elif skip_review is not None:
            task.skip_review = skip_review
        if status is not None and status != task.status:
            old = task.status
            states.set_status(task, status, now=self.clock.now())
            self.log.info("status", f"task #{task_id}: {old.value} -> {status.value}", task_id=task_id)
        self.store.save(task)
        return task

    def set_substate(self, task_id: int, substate: Substate | None) -> Task:
        task = self.store.require(task_id)
        if substate is not None and task.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransitionError(
                f"substate applies to in_progress tasks; task #{task_id} is {task.status.value}"
            )
        task.substate = substate
        self.store.save(task)
        return task

    def add_comment(
        self,
        task_id: int,
        text: str,
        *,
        author: str = "user",
        type: str = "note",
        tags: list[str] | None = None,
    ) -> int:
        self.store.require(task_id)
        comment = Comment(text=text, author=author, type=type, tags=list(tags or []), time=self.clock.now())
        return self.store.add_comment(task_id, comment)

    def edit_comment(self, task_id: int, index: int, text: str) -> None:
        self.store.edit_comment(task_id, index, text)

    def request_changes(self, task_id: int, text: str, *, author: str = "user") -> Task:
        task = self.store.require(task_id)
        states.check_request_changes(task)
        self.add_comment(task_id, text, author=author, type="request_changes")
        task = self.store.require(task_id)
        old = task.status
        states.request_changes(task, now=self.clock.now())
        self.store.save(task)
        self.log.info("request-changes", f"task #{task_id}: {old.value} -> in_progress", task_id=task_id)

        sess = session_name(task_id)
        try:
            if not self.sessions.is_running(sess):
                cmd, _, base = self._launch_work_session(task, agent=task.agent or None, model=task.model or None)
                task = self.store.require(task_id)
                task.agent = cmd.agent
                task.model = cmd.model
                if not task.base_branch:
                    task.base_branch = base
                self.store.save(task)
                self.log.info("request-changes", f"task #{task_id}: restarted {sess}", task_id=task_id)
            with _resource_step("notify session"):
                self.sessions.send_keys(sess, change_request_notice(task_id))
        except CrewError as exc:
            self.log.warn("request-changes", f"task #{task_id}: worker not notified: {exc}", task_id=task_id)
        return task

    def current_task_id(self, *, cwd: Path) -> int | None:
        try:
            branch = self.git.current_branch(cwd=cwd)
        except (RuntimeError, subprocess.CalledProcessError):
            return None
        return parse_branch_task_id(branch)

    # -- start ----------------------------------------------------------------------

    def start(self, task_id: int, *, agent: str | None = None, model: str | None = None) -> Task:
        task = self.store.require(task_id)
        states.check_start(task)
        self.cfg.agent(agent or self.cfg.worker_agent)
        sess = session_name(task_id)
        if self.sessions.is_running(sess):
            raise SessionRunningError(sess)

        cmd, wt_path, base = self._launch_work_session(task, agent=agent, model=model)

        task = self.store.require(task_id)
        states.start(task, now=self.clock.now())
        task.agent = cmd.agent
        task.model = cmd.model
        if not task.base_branch:
            task.base_branch = base
        self.store.save(task)
        self.log.info("start", f"task #{task_id} started: {cmd.agent} ({cmd.model}) in {wt_path}", task_id=task_id)
        return task

    def _launch_work_session(
        self, task: Task, *, agent: str | None, model: str | None
    ) -> tuple[AgentCommand, Path, str]:
        """Create (or reuse) the task worktree and run the worker in a fresh session.

        Returns the agent command, the worktree path and the base branch used.
        """
        task_id = task.id
        branch = branch_name(task.id, task.issue)
        base = task.base_branch or self._current_or_default_branch()
        wt_path = worktree_path(self.paths.worktrees_dir, task_id)

        with _resource_step("create worktree"):
            fresh = not self.worktrees.exists(branch)
            wt = self.worktrees.create(branch=branch, base_branch=base, path=wt_path)
        if fresh:
            self._prepare_worktree(task_id, wt.path)

        cmd = build_agent_command(
            cfg=self.cfg,
            task=task,
            role=AgentRole.WORKER,
            worktree=wt.path,
            repo_root=self.paths.repo_root,
            agent=agent,
            model=model,
        )
        with _resource_step("start session"):
            script = write_session_script(
                crew_dir=self.paths.crew_dir,
                repo_root=self.paths.repo_root,
                task_id=task_id,
                cmd=cmd,
            )
            self.sessions.start(session_name(task_id), cwd=wt.path, argv=["bash", str(script)])

        return cmd, wt.path, base

    def _prepare_worktree(self, task_id: int, path: Path) -> None:
        if self.cfg.worktree_copy:
            with _resource_step("copy files into worktree"):
                copied = self.worktrees.copy_files(paths=list(self.cfg.worktree_copy), dest=path)
            if copied:
                self.log.debug("start", f"copied into worktree: {', '.join(copied)}", task_id=task_id)
        if self.cfg.worktree_setup_command:
            res = self.executor.run(self.cfg.worktree_setup_command, cwd=path)
            if not res.ok:
                raise ResourceError(
                    f"worktree setup command failed (exit {res.exit_code}): {self.cfg.worktree_setup_command}"
                    + (f"\n{res.output.rstrip()}" if res.output.strip() else "")
                )
            self.log.info("start", "worktree setup command finished", task_id=task_id)

    # -- complete / review ------------------------------------------------------------

    def complete(self, task_id: int, *, start_review: bool = True) -> CompleteOutcome:
        task = self.store.require(task_id)
        states.check_complete(task)
        wt = self.worktrees.resolve(branch_name(task.id, task.issue))

        with _resource_step("check worktree status"):
            dirty = self.git.has_uncommitted_changes(cwd=wt)
        if dirty:
            raise UncommittedChangesError(f"task #{task_id} has uncommitted changes in {wt}; commit them first")

        if self.cfg.complete_command:
            self.log.info("complete", f"running check: {self.cfg.complete_command}", task_id=task_id)
            res = self.executor.run(self.cfg.complete_command, cwd=wt)
            if not res.ok:
                raise CheckFailedError(self.cfg.complete_command, res.exit_code, res.output)

        task = self.store.require(task_id)
        skip = task.resolve_skip_review(self.cfg.skip_review)
        status = states.complete(task, skip_review=skip)
        self.store.save(task)
        self.log.info("complete", f"task #{task_id} -> {status.value}", task_id=task_id)

        review_started = False
        if status == TaskStatus.REVIEWING and start_review:
            try:
                self.start_review_session(task_id)
                review_started = True
            except CrewError as exc:
                self.log.warn("complete", f"task #{task_id}: review session not started: {exc}", task_id=task_id)
        return CompleteOutcome(task_id=task_id, status=status, review_started=review_started)

    def start_review_session(self, task_id: int, *, agent: str | None = None, model: str | None = None) -> str:
        task = self.store.require(task_id)
        if task.status != TaskStatus.REVIEWING:
            raise InvalidTransitionError(f"task #{task_id} is {task.status.value}, not reviewing")
        sess = review_session_name(task_id)
        if self.sessions.is_running(sess):
            raise SessionRunningError(sess)
        wt = self.worktrees.resolve(branch_name(task.id, task.issue))
        cmd = build_agent_command(
            cfg=self.cfg,
            task=task,
            role=AgentRole.REVIEWER,
            worktree=wt,
            repo_root=self.paths.repo_root,
            agent=agent,
            model=model,
        )
        with _resource_step("start review session"):
            script = write_review_script(
                crew_dir=self.paths.crew_dir,
                repo_root=self.paths.repo_root,
                task_id=task_id,
                cmd=cmd,
            )
            self.sessions.start(sess, cwd=wt, argv=["bash", str(script)])
        self.log.info("review", f"review session {sess} started ({cmd.agent})", task_id=task_id)
        return sess

    def review(
        self,
        task_id: int,
        *,
        agent: str | None = None,
        model: str | None = None,
        message: str | None = None,
        auto_fix: bool | None = None,
        stream: TextIO | None = None,
    ) -> ReviewOutcome:
        """Run the reviewer synchronously on a `reviewing` task and apply its verdict."""
        task = self.store.require(task_id)
        if task.status != TaskStatus.REVIEWING:
            raise InvalidTransitionError(f"task #{task_id} is {task.status.value}, not reviewing")
        wt = self.worktrees.resolve(branch_name(task.id, task.issue))
        cmd = build_agent_command(
            cfg=self.cfg,
            task=task,
            role=AgentRole.REVIEWER,
            worktree=wt,
            repo_root=self.paths.repo_root,
            agent=agent,
            model=model,
            message=message,
        )
        self.log.info("review", f"running reviewer {cmd.agent} ({cmd.model})", task_id=task_id)
        result = run_reviewer(executor=self.executor, cmd=cmd, cwd=wt, stream=stream)
        return self.record_review(task_id, result, auto_fix=self.cfg.auto_fix if auto_fix is None else auto_fix)

    def record_review(self, task_id: int, result: ReviewResult, *, auto_fix: bool) -> ReviewOutcome:
        if result.text:
            self.add_comment(task_id, result.text, author="reviewer", type="review")
        task = self.store.require(task_id)
        try:
            outcome = states.apply_review_verdict(
                task,
                lgtm=result.lgtm,
                now=self.clock.now(),
                auto_fix=auto_fix,
                max_retries=self.cfg.auto_fix_max_retries,
            )
        except MaxRetriesReachedError:
            self.store.save(task)
            self.log.error("review", f"task #{task_id}: auto-fix retry limit reached", task_id=task_id)
            raise
        self.store.save(task)
        verdict = "LGTM" if outcome.lgtm else "changes requested"
        self.log.info("review", f"task #{task_id}: {verdict} -> {outcome.status.value}", task_id=task_id)
        return ReviewOutcome(
            task_id=task_id,
            review=result,
            status=outcome.status,
            retried=outcome.retried,
            retry_count=task.auto_fix_retry_count,
        )

    def review_session_ended(self, task_id: int, exit_code: int) -> bool:
        """Handle the review wrapper's EXIT callback. Returns False when ignored."""
        remove_scripts(self.paths.crew_dir, task_id, review=True)
        task = self.store.get(task_id)
        if task is None or task.status != TaskStatus.REVIEWING:
            return False
        out_path = review_output_path(self.paths.crew_dir, task_id)
        output = out_path.read_text(encoding="utf-8") if out_path.exists() else ""
        if exit_code != 0:
            self.log.warn("review", f"task #{task_id}: reviewer exited with {exit_code}; no verdict", task_id=task_id)
            return True
        result = parse_review(output)
        if not result.text:
            self.log.warn("review", f"task #{task_id}: reviewer produced no output", task_id=task_id)
            return True
        self.record_review(task_id, result, auto_fix=False)
        return True

    # -- stop / session ended -------------------------------------------------------

    def stop(self, task_id: int, *, review: bool = False) -> bool:
        """Stop the task's work (or review) session. Returns False when none was running."""
        task = self.store.require(task_id)
        if review:
            stopped = self.sessions.stop(review_session_name(task_id))
            remove_scripts(self.paths.crew_dir, task_id, review=True)
        else:
            if task.agent or task.model:
                task.agent = ""
                task.model = ""
                self.store.save(task)
            stopped = self.sessions.stop(session_name(task_id))
            remove_scripts(self.paths.crew_dir, task_id)
        name = review_session_name(task_id) if review else session_name(task_id)
        if stopped:
            self.log.info("stop", f"stopped session {name}", task_id=task_id)
        else:
            self.log.info("stop", f"no running session {name}", task_id=task_id)
        return stopped

    def session_ended(self, task_id: int, exit_code: int) -> bool:
        """Handle the work session's EXIT callback. Returns False when ignored."""
        task = self.store.get(task_id)
        if task is None:
            return False
        remove_scripts(self.paths.crew_dir, task_id)
        if not task.agent:
            return False
        old = task.status
        changed = states.session_exited(task)
        task.agent = ""
        task.model = ""
        self.store.save(task)
        if changed:
            self.log.warn(
                "session",
                f"task #{task_id}: session exited with {exit_code} while {old.value} -> error",
                task_id=task_id,
            )
        else:
            self.log.info("session", f"task #{task_id}: session exited with {exit_code}", task_id=task_id)
        return True

    # -- merge / close ----------------------------------------------------------------

    def merge(self, task_id: int, *, base: str | None = None) -> Task:
        task = self.store.require(task_id)
        states.check_merge(task)
        target = base or task.base_branch or self.git.default_branch()
        with _resource_step("read current branch"):
            current = self.git.current_branch(cwd=self.paths.repo_root)
        if current != target:
            raise NotOnBaseBranchError(f"merge target is {target} but {current} is checked out; switch to {target}")
        with _resource_step("check base tree"):
            dirty = self.git.has_uncommitted_changes(cwd=self.paths.repo_root)
        if dirty:
            raise UncommittedChangesError(f"{target} has uncommitted changes in {self.paths.repo_root}")

        branch = branch_name(task.id, task.issue)
        self._stop_sessions_best_effort(task_id)

        if self.git.branch_exists(branch):
            self.git.merge(branch, cwd=self.paths.repo_root, message=f"Merge task #{task_id}: {task.title}")
            self.log.info("merge", f"merged {branch} into {target}", task_id=task_id)
        else:
            self.log.warn("merge", f"branch {branch} no longer exists; assuming it was merged", task_id=task_id)

        with _resource_step("remove worktree"):
            if self.worktrees.exists(branch):
                self.worktrees.remove(branch)
        if self.git.branch_exists(branch):
            with _resource_step("delete branch"):
                self.git.delete_branch(branch)

        task = self.store.require(task_id)
        task.status = TaskStatus.CLOSED
        task.substate = None
        task.agent = ""
        task.model = ""
        self.store.save(task)
        self.log.info("merge", f"task #{task_id} merged and closed", task_id=task_id)
        return task

    def close(self, task_id: int, *, force: bool = False) -> Task:
        task = self.store.require(task_id)
        states.check_close(task)
        self._stop_sessions_best_effort(task_id)
        branch = branch_name(task.id, task.issue)
        with _resource_step("remove worktree"):
            if self.worktrees.exists(branch):
                self.worktrees.remove(branch, force=force)
                self.log.info("close", f"removed worktree for {branch}", task_id=task_id)
        task = self.store.require(task_id)
        states.close(task)
        self.store.save(task)
        self.log.info("close", f"task #{task_id} closed", task_id=task_id)
        return task

    def _stop_sessions_best_effort(self, task_id: int) -> None:
        for review in (False, True):
            try:
                self.stop(task_id, review=review)
            except (CrewError, subprocess.CalledProcessError, OSError) as exc:
                self.log.warn("stop", f"task #{task_id}: could not stop session: {exc}", task_id=task_id)

    # -- prune ------------------------------------------------------------------------

    def plan_prune(self) -> PrunePlan:
        """Branches and worktrees of terminal tasks, plus crew-named orphans with no task."""
        tasks = {t.id: t for t in self.store.list()}
        try:
            current = self.git.current_branch(cwd=self.paths.repo_root)
        except RuntimeError:
            current = ""
        worktrees = self.worktrees.list()
        plan = PrunePlan()

        for branch in sorted(set(self.git.list_branches()) | set(worktrees)):
            if not is_crew_branch(branch) or branch == current:
                continue
            tid = parse_branch_task_id(branch)
            task = tasks.get(tid) if tid is not None else None
            if task is not None and not task.status.is_terminal:
                continue
            if branch in worktrees:
                plan.worktrees[branch] = worktrees[branch]
            if self.git.branch_exists(branch):
                plan.branches.append(branch)
        return plan

    def prune(self, *, dry_run: bool = False, confirm: Callable[[PrunePlan], bool] | None = None) -> PrunePlan:
        plan = self.plan_prune()
        if plan.empty or dry_run:
            return plan
        if confirm is not None and not confirm(plan):
            self.log.info("prune", "prune cancelled")
            return PrunePlan(cancelled=True)
        for branch in plan.worktrees:
            with _resource_step(f"remove worktree {branch}"):
                self.worktrees.remove(branch, force=True)
            self.log.info("prune", f"removed worktree {plan.worktrees[branch]}")
        for branch in plan.branches:
            with _resource_step(f"delete branch {branch}"):
                self.git.delete_branch(branch, force=True)
            self.log.info("prune", f"deleted branch {branch}")
        return plan

    # -- session passthrough --------------------------------------------------------

    def attach(self, task_id: int, *, review: bool = False) -> None:
        self.store.require(task_id)
        self.sessions.attach(review_session_name(task_id) if review else session_name(task_id))

    def peek(self, task_id: int, *, lines: int = 30, review: bool = False) -> str:
        self.store.require(task_id)
        return self.sessions.peek(review_session_name(task_id) if review else session_name(task_id), lines=lines)

    def send(self, task_id: int, keys: str, *, enter: bool = True) -> None:
        self.store.require(task_id)
        self.sessions.send_keys(session_name(task_id), keys, enter=enter)

    # -- inspection -------------------------------------------------------------------

    def task_log(self, task_id: int, *, lines: int = 0) -> list[str]:
        """Lines of `.crew/logs/task-<id>.log`, the last `lines` of them when positive."""
        self.store.require(task_id)
        path = task_log_path(self.paths.crew_dir, task_id)
        if not path.exists():
            return []
        entries = path.read_text(encoding="utf-8").splitlines()
        return entries[-lines:] if lines > 0 else entries

    def diff(self, task_id: int, args: list[str] | None = None) -> int:
        task = self.store.require(task_id)
        wt = self.worktrees.resolve(branch_name(task.id, task.issue))
        base = task.base_branch or self.git.default_branch()
        command = render_template(
            self.cfg.diff_command,
            {"BaseBranch": shlex.quote(base), "Args": shlex.join(args or [])},
        ).rstrip()
        return self.executor.run_interactive(command, cwd=wt)

    def _current_or_default_branch(self) -> str:
        try:
            branch = self.git.current_branch(cwd=self.paths.repo_root)
        except (RuntimeError, subprocess.CalledProcessError):
            return self.git.default_branch()
        if is_crew_branch(branch):
            return self.git.default_branch()
        return branch
