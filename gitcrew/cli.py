"""gitcrew.cli

Command-line entrypoint for crew: run many AI coding-agent sessions side by side, each
bound to one task record, one git branch + worktree (`crew-<id>`) and one tmux session.

Entry points
- `crew ...` (console script, `gitcrew.cli:main`)
- `python3 -m gitcrew ...`

Control root
crew operates on the repository that contains:
- `$CREW_CONTROL_ROOT` when that environment variable is set, otherwise
- the current directory.
When the control root is inside a linked worktree, crew walks back to the main checkout, so
commands run by agents inside `.crew/worktrees/<id>` see the same `.crew/` state.

Commands
- task records: `new`, `list`, `show`, `edit`, `comment`, `substate`, `current`
- lifecycle: `start`, `complete`, `review`, `merge`, `close`, `stop`
- sessions: `attach`, `peek`, `send`
- inspection: `logs`, `diff`
- automation: `poll`, `prune`
- internal (called by generated wrapper scripts): `_session-ended`, `_review-session-ended`

`complete` and `show` accept an omitted task ID and fall back to the task whose branch is
checked out in the current directory.

Exit codes: 0 on success, 1 on any crew error (printed as `[crew] error: ...`), 130 when
interrupted. `complete` under auto-fix also exits 1 when the review requests changes.
"""

from __future__ import annotations

import argparse
import os
import sys
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .autofix import AutoFixSupervisor
from .config import CrewConfig, load_config
from .coordinator import CrewPaths, PrunePlan, ResourceCoordinator
from .crewlog import CrewLogger
from .errors import CrewError, PreconditionError
from .executor import CommandExecutor
from .git_ops import GitClient, WorktreeManager, resolve_repo_root
from .poll import PollWatcher, cancel_on_signals
from .store import JsonTaskStore
from .task import CORRUPTED_PREFIX, Substate, SystemClock, Task, TaskStatus, format_elapsed
from .tmux import TmuxSessionManager


@dataclass
class CrewApp:
    paths: CrewPaths
    cfg: CrewConfig
    store: JsonTaskStore
    coordinator: ResourceCoordinator
    poller: PollWatcher
    log: CrewLogger


def build_app(control_root: Path) -> CrewApp:
    repo_root = resolve_repo_root(control_root)
    cfg = load_config(CrewPaths(repo_root=repo_root).config_path)
    paths = CrewPaths(repo_root=repo_root, worktree_dir=cfg.worktree_dir)
    clock = SystemClock()
    log = CrewLogger(crew_dir=paths.crew_dir, level=cfg.log_level, clock=clock)
    store = JsonTaskStore(path=paths.tasks_path, namespace=cfg.namespace)
    git = GitClient(repo_root=repo_root)
    executor = CommandExecutor()
    coordinator = ResourceCoordinator(
        paths=paths,
        cfg=cfg,
        store=store,
        git=git,
        worktrees=WorktreeManager(git=git, worktrees_dir=paths.worktrees_dir),
        sessions=TmuxSessionManager(socket_path=paths.socket_path),
        executor=executor,
        clock=clock,
        log=log,
    )
    poller = PollWatcher(store=store, executor=executor, cwd=control_root, log=log)
    return CrewApp(paths=paths, cfg=cfg, store=store, coordinator=coordinator, poller=poller, log=log)


def _status(value: str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        choices = ", ".join(s.value for s in TaskStatus)
        raise argparse.ArgumentTypeError(f"invalid status {value!r} (choose from {choices})") from None


def _status_list(value: str) -> list[TaskStatus]:
    return [_status(v.strip()) for v in value.split(",") if v.strip()]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="crew", description="Run AI coding agents on isolated git worktrees.")
    sub = p.add_subparsers(dest="command", metavar="<command>", required=True)

    s = sub.add_parser("new", help="Create a task.")
    s.add_argument("title")
    s.add_argument("-d", "--description", default="")
    s.add_argument("-l", "--label", action="append", default=[], help="Label (repeatable).")
    s.add_argument("--parent", type=int, default=None, help="Parent task ID.")
    s.add_argument("--issue", type=int, default=0, help="Linked issue number (folded into the branch name).")
    s.add_argument("--base", default=None, help="Base branch (default: [tasks] base_branch or current branch).")
    skip = s.add_mutually_exclusive_group()
    skip.add_argument("--skip-review", dest="skip_review", action="store_true", default=None)
    skip.add_argument("--no-skip-review", dest="skip_review", action="store_false")
    s.set_defaults(func=_cmd_new)

    s = sub.add_parser("list", help="List tasks.")
    s.add_argument("--status", type=_status, default=None)
    s.add_argument("--label", default=None)
    s.add_argument("--parent", type=int, default=None)
    s.add_argument("-a", "--all", action="store_true", help="Include closed tasks.")
    s.set_defaults(func=_cmd_list)

    s = sub.add_parser("show", help="Show a task and its comments.")
    s.add_argument("task_id", type=int, nargs="?", default=None)
    s.set_defaults(func=_cmd_show)

    s = sub.add_parser("edit", help="Edit task fields.")
    s.add_argument("task_id", type=int)
    s.add_argument("--title", default=None)
    s.add_argument("--description", default=None)
    s.add_argument("--add-label", action="append", default=[])
    s.add_argument("--remove-label", action="append", default=[])
    block = s.add_mutually_exclusive_group()
    block.add_argument("--block", default=None, metavar="REASON")
    block.add_argument("--unblock", action="store_true")
    s.add_argument("--status", type=_status, default=None)
    skip = s.add_mutually_exclusive_group()
    skip.add_argument("--skip-review", dest="skip_review", action="store_true", default=None)
    skip.add_argument("--no-skip-review", dest="skip_review", action="store_false")
    skip.add_argument("--default-skip-review", action="store_true", help="Fall back to [tasks] skip_review.")
    s.set_defaults(func=_cmd_edit)

    s = sub.add_parser("comment", help="Add (or edit) a task comment.")
    s.add_argument("task_id", type=int)
    s.add_argument("text")
    s.add_argument("--author", default="user")
    s.add_argument("--type", default="note")
    s.add_argument("--tag", action="append", default=[])
    mode = s.add_mutually_exclusive_group()
    mode.add_argument("--request-changes", action="store_true", help="Also send the task back to in_progress.")
    mode.add_argument("--edit", type=int, default=None, metavar="INDEX", help="Replace the text of comment INDEX.")
    s.set_defaults(func=_cmd_comment)

    s = sub.add_parser("substate", help="Set the advisory in_progress substate.")
    s.add_argument("task_id", type=int)
    s.add_argument("substate", choices=[x.value for x in Substate] + ["clear"])
    s.set_defaults(func=_cmd_substate)

    s = sub.add_parser("current", help="Print the task ID of the checked-out crew branch.")
    s.set_defaults(func=_cmd_current)

    s = sub.add_parser("start", help="Create the worktree and start the worker session.")
    s.add_argument("task_id", type=int)
    s.add_argument("--agent", default=None)
    s.add_argument("--model", default=None)
    s.set_defaults(func=_cmd_start)

    s = sub.add_parser("complete", help="Mark the task's work complete and hand it to review.")
    s.add_argument("task_id", type=int, nargs="?", default=None)
    s.set_defaults(func=_cmd_complete)

    s = sub.add_parser("review", help="Run the reviewer on a reviewing task.")
    s.add_argument("task_id", type=int)
    s.add_argument("--agent", default=None)
    s.add_argument("--model", default=None)
    s.add_argument("-m", "--message", default=None, help="Extra instructions for the reviewer.")
    s.add_argument("--session", action="store_true", help="Run in a background review session instead.")
    s.set_defaults(func=_cmd_review)

    s = sub.add_parser("merge", help="Merge the task branch into its base branch and close the task.")
    s.add_argument("task_id", type=int)
    s.add_argument("--base", default=None, help="Override the merge target branch.")
    s.set_defaults(func=_cmd_merge)

    s = sub.add_parser("close", help="Close the task without merging.")
    s.add_argument("task_id", type=int)
    s.add_argument("--force", action="store_true", help="Remove the worktree even with uncommitted changes.")
    s.set_defaults(func=_cmd_close)

    s = sub.add_parser("stop", help="Stop the task's session.")
    s.add_argument("task_id", type=int)
    s.add_argument("--review", action="store_true", help="Stop the review session instead.")
    s.set_defaults(func=_cmd_stop)

    s = sub.add_parser("attach", help="Attach to the task's session.")
    s.add_argument("task_id", type=int)
    s.add_argument("--review", action="store_true")
    s.set_defaults(func=_cmd_attach)

    s = sub.add_parser("peek", help="Print the last lines of the task's session.")
    s.add_argument("task_id", type=int)
    s.add_argument("-n", "--lines", type=int, default=30)
    s.add_argument("--review", action="store_true")
    s.set_defaults(func=_cmd_peek)

    s = sub.add_parser("send", help="Send keys to the task's session.")
    s.add_argument("task_id", type=int)
    s.add_argument("keys", nargs="+")
    s.add_argument("--no-enter", action="store_true")
    s.set_defaults(func=_cmd_send)

    s = sub.add_parser("logs", help="Print the task log.")
    s.add_argument("task_id", type=int)
    s.add_argument("-n", "--lines", type=int, default=0, help="Only the last N lines.")
    s.set_defaults(func=_cmd_logs)

    s = sub.add_parser("diff", help="Show the task branch diff against its base branch.")
    s.add_argument("task_id", type=int)
    s.add_argument("args", nargs=argparse.REMAINDER, help="Extra arguments for the diff command.")
    s.set_defaults(func=_cmd_diff)

    s = sub.add_parser("poll", help="Wait for a task status change, run a command, exit.")
    s.add_argument("task_ids", type=int, nargs="*")
    target = s.add_mutually_exclusive_group()
    target.add_argument("--expect", type=_status_list, default=None, help="Comma-separated expected statuses.")
    target.add_argument("--status", type=_status, default=None, help="Fire when any task reaches this status.")
    s.add_argument("--interval", type=float, default=None)
    s.add_argument("--timeout", type=float, default=None)
    s.add_argument("-c", "--command", dest="hook", default=None, help="Command template to run.")
    s.set_defaults(func=_cmd_poll)

    s = sub.add_parser("prune", help="Delete branches/worktrees of finished tasks and orphans.")
    s.add_argument("--dry-run", action="store_true")
    s.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation.")
    s.set_defaults(func=_cmd_prune)

    s = sub.add_parser("_session-ended")
    s.add_argument("task_id", type=int)
    s.add_argument("exit_code", type=int)
    s.set_defaults(func=_cmd_session_ended)

    s = sub.add_parser("_review-session-ended")
    s.add_argument("task_id", type=int)
    s.add_argument("exit_code", type=int)
    s.set_defaults(func=_cmd_review_session_ended)
    return p


def _resolve_task_id(app: CrewApp, task_id: int | None) -> int:
    if task_id is not None:
        return task_id
    detected = app.coordinator.current_task_id(cwd=Path.cwd())
    if detected is None:
        raise PreconditionError("no task ID given and the current branch is not a crew branch")
    return detected


def _task_line(task: Task, *, now: datetime) -> str:
    flags = ""
    if task.is_corrupted:
        flags = " [CORRUPTED]"
    elif task.is_blocked:
        flags = " [blocked]"
    status = task.status.value
    if task.substate is not None:
        status += f"/{task.substate.value}"
    return f"#{task.id:<4} {status:<28} {format_elapsed(task.started, now):>7}  {task.title}{flags}"


def _cmd_new(app: CrewApp, args: argparse.Namespace) -> int:
    task = app.coordinator.new_task(
        title=args.title,
        description=args.description,
        labels=args.label,
        parent_id=args.parent,
        issue=args.issue,
        base_branch=args.base,
        skip_review=args.skip_review,
    )
    print(task.id)
    return 0


def _cmd_list(app: CrewApp, args: argparse.Namespace) -> int:
    tasks = app.store.list(status=args.status, parent_id=args.parent, label=args.label)
    if not args.all and args.status is None:
        tasks = [t for t in tasks if t.status != TaskStatus.CLOSED]
    now = app.coordinator.clock.now()
    for task in tasks:
        print(_task_line(task, now=now))
    return 0


def _cmd_show(app: CrewApp, args: argparse.Namespace) -> int:
    task = app.store.require(_resolve_task_id(app, args.task_id))
    now = app.coordinator.clock.now()
    print(f"Task #{task.id}: {task.title}")
    print(f"Status: {task.status.value}" + (f" ({task.substate.value})" if task.substate else ""))
    print(f"Namespace: {task.namespace}")
    print(f"Base: {task.base_branch or '-'}")
    if task.parent_id is not None:
        parent = app.store.get(task.parent_id)
        print(f"Parent: #{task.parent_id}" + ("" if parent else " (missing)"))
    if task.issue:
        print(f"Issue: #{task.issue}")
    if task.labels:
        print(f"Labels: {', '.join(task.labels)}")
    if task.agent:
        print(f"Agent: {task.agent} ({task.model or '-'})")
    print(f"Elapsed: {format_elapsed(task.started, now)}")
    if task.is_corrupted:
        print(f"CORRUPTED: {task.block_reason.removeprefix(CORRUPTED_PREFIX).strip()}")
    elif task.is_blocked:
        print(f"Blocked: {task.block_reason}")
    if task.review_count:
        verdict = "LGTM" if task.last_review_is_lgtm else "changes requested"
        print(f"Reviews: {task.review_count} (last: {verdict}), auto-fix retries: {task.auto_fix_retry_count}")
    if task.description:
        print()
        print(task.description.rstrip())
    for i, c in enumerate(task.comments):
        print()
        when = c.time.strftime("%Y-%m-%d %H:%M") if c.time else "-"
        tags = f" [{', '.join(c.tags)}]" if c.tags else ""
        print(f"[{i}] {c.author} ({c.type}) {when}{tags}")
        print(c.text.rstrip())
    return 0


def _cmd_edit(app: CrewApp, args: argparse.Namespace) -> int:
    block_reason = "" if args.unblock else args.block
    app.coordinator.edit(
        args.task_id,
        title=args.title,
        description=args.description,
        add_labels=args.add_label,
        remove_labels=args.remove_label,
        block_reason=block_reason,
        status=args.status,
        skip_review=args.skip_review,
        clear_skip_review=bool(args.default_skip_review),
    )
    return 0


def _cmd_comment(app: CrewApp, args: argparse.Namespace) -> int:
    if args.edit is not None:
        app.coordinator.edit_comment(args.task_id, args.edit, args.text)
        return 0
    if args.request_changes:
        app.coordinator.request_changes(args.task_id, args.text, author=args.author)
        return 0
    index = app.coordinator.add_comment(args.task_id, args.text, author=args.author, type=args.type, tags=args.tag)
    print(index)
    return 0


def _cmd_substate(app: CrewApp, args: argparse.Namespace) -> int:
    substate = None if args.substate == "clear" else Substate(args.substate)
    app.coordinator.set_substate(args.task_id, substate)
    return 0


def _cmd_current(app: CrewApp, args: argparse.Namespace) -> int:
    task_id = app.coordinator.current_task_id(cwd=Path.cwd())
    if task_id is None:
        raise PreconditionError("the current branch is not a crew branch")
    print(task_id)
    return 0


def _cmd_start(app: CrewApp, args: argparse.Namespace) -> int:
    app.coordinator.start(args.task_id, agent=args.agent, model=args.model)
    return 0


def _cmd_complete(app: CrewApp, args: argparse.Namespace) -> int:
    task_id = _resolve_task_id(app, args.task_id)
    if not app.cfg.auto_fix:
        app.coordinator.complete(task_id)
        return 0
    outcome = AutoFixSupervisor(app.coordinator).complete(task_id, stream=sys.stderr)
    if outcome.lgtm:
        return 0
    print("Review requested changes:")
    print(outcome.feedback)
    print(f"\nFix the issues above, commit, then run `crew complete {task_id}` again.")
    return 1


def _cmd_review(app: CrewApp, args: argparse.Namespace) -> int:
    if args.session:
        app.coordinator.start_review_session(args.task_id, agent=args.agent, model=args.model)
        return 0
    outcome = app.coordinator.review(
        args.task_id,
        agent=args.agent,
        model=args.model,
        message=args.message,
        stream=sys.stderr,
    )
    print(outcome.review.text)
    return 0


def _cmd_merge(app: CrewApp, args: argparse.Namespace) -> int:
    app.coordinator.merge(args.task_id, base=args.base)
    return 0


def _cmd_close(app: CrewApp, args: argparse.Namespace) -> int:
    app.coordinator.close(args.task_id, force=args.force)
    return 0


def _cmd_stop(app: CrewApp, args: argparse.Namespace) -> int:
    app.coordinator.stop(args.task_id, review=args.review)
    return 0


def _cmd_attach(app: CrewApp, args: argparse.Namespace) -> int:
    app.coordinator.attach(args.task_id, review=args.review)
    return 0


def _cmd_peek(app: CrewApp, args: argparse.Namespace) -> int:
    print(app.coordinator.peek(args.task_id, lines=args.lines, review=args.review))
    return 0


def _cmd_send(app: CrewApp, args: argparse.Namespace) -> int:
    app.coordinator.send(args.task_id, " ".join(args.keys), enter=not args.no_enter)
    return 0


def _cmd_logs(app: CrewApp, args: argparse.Namespace) -> int:
    for line in app.coordinator.task_log(args.task_id, lines=args.lines):
        print(line)
    return 0


def _cmd_diff(app: CrewApp, args: argparse.Namespace) -> int:
    extra = args.args[1:] if args.args[:1] == ["--"] else args.args
    return app.coordinator.diff(args.task_id, extra)


def _cmd_poll(app: CrewApp, args: argparse.Namespace) -> int:
    interval = args.interval if args.interval is not None else app.cfg.poll_interval
    timeout = args.timeout if args.timeout is not None else app.cfg.poll_timeout
    if args.status is not None and args.task_ids:
        raise PreconditionError("--status watches all tasks; do not pass task IDs with it")
    if args.status is None and not args.task_ids:
        raise PreconditionError("pass task IDs to watch, or --status")

    with cancel_on_signals(threading.Event()) as cancel:
        if args.status is not None:
            event = app.poller.watch_status(
                args.status, command=args.hook, interval=interval, timeout=timeout, cancel=cancel
            )
        else:
            event = app.poller.watch_tasks(
                args.task_ids,
                command=args.hook,
                expect=args.expect,
                interval=interval,
                timeout=timeout,
                cancel=cancel,
            )
    if event is None:
        return 130 if cancel.is_set() else 0
    return 0


def _confirm_prune(plan: PrunePlan) -> bool:
    for branch in plan.branches:
        print(f"branch   {branch}")
    for branch, path in plan.worktrees.items():
        print(f"worktree {path} ({branch})")
    try:
        answer = input("Delete these? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _cmd_prune(app: CrewApp, args: argparse.Namespace) -> int:
    plan = app.coordinator.prune(dry_run=args.dry_run, confirm=None if args.yes else _confirm_prune)
    if plan.cancelled:
        print("prune cancelled")
        return 0
    if plan.empty:
        print("nothing to prune")
        return 0
    if args.dry_run:
        for branch in plan.branches:
            print(f"would delete branch   {branch}")
        for branch, path in plan.worktrees.items():
            print(f"would remove worktree {path} ({branch})")
    return 0


def _cmd_session_ended(app: CrewApp, args: argparse.Namespace) -> int:
    app.coordinator.session_ended(args.task_id, args.exit_code)
    return 0


def _cmd_review_session_ended(app: CrewApp, args: argparse.Namespace) -> int:
    app.coordinator.review_session_ended(args.task_id, args.exit_code)
    return 0


def main(argv: list[str] | None = None) -> int:
    raw_argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(raw_argv)

    control_root_env = os.environ.get("CREW_CONTROL_ROOT")
    control_root = (Path(control_root_env) if control_root_env else Path.cwd()).resolve()

    try:
        app = build_app(control_root)
        return int(args.func(app, args))
    except CrewError as exc:
        print(f"[crew] error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
