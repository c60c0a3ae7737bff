"""Task status state machine.

The transition table below is the single authority on which status changes are legal.
Guards that depend only on the task record (status, block reason, retry counters) live
here; guards that need git or a shell (clean worktree, pre-check command, current branch)
are checked by the coordinator before it calls into this module.

    todo         -> in_progress (start), closed
    in_progress  -> needs_input, reviewing, done (skip review), error, closed
    needs_input  -> in_progress, reviewing, done (skip review), closed
    reviewing    -> in_progress, done, closed
    error        -> in_progress (restart), closed
    done         -> closed
    closed       -> (nothing)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from .errors import AlreadyClosedError, InvalidTransitionError, MaxRetriesReachedError, TaskBlockedError
from .task import Task, TaskStatus

S = TaskStatus

TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    S.TODO: frozenset({S.IN_PROGRESS, S.CLOSED}),
    S.IN_PROGRESS: frozenset({S.NEEDS_INPUT, S.REVIEWING, S.DONE, S.ERROR, S.CLOSED}),
    S.NEEDS_INPUT: frozenset({S.IN_PROGRESS, S.REVIEWING, S.DONE, S.CLOSED}),
    S.REVIEWING: frozenset({S.IN_PROGRESS, S.DONE, S.CLOSED}),
    S.ERROR: frozenset({S.IN_PROGRESS, S.CLOSED}),
    S.DONE: frozenset({S.CLOSED}),
    S.CLOSED: frozenset(),
}

STARTABLE = frozenset({S.TODO, S.ERROR})
COMPLETABLE = frozenset({S.IN_PROGRESS, S.NEEDS_INPUT})
MERGEABLE = frozenset({S.REVIEWING, S.DONE, S.IN_PROGRESS})


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def _invalid(task: Task, action: str) -> InvalidTransitionError:
    return InvalidTransitionError(f"cannot {action} task #{task.id} in {task.status.value} status")


def check_start(task: Task) -> None:
    if task.status not in STARTABLE:
        raise _invalid(task, "start")
    if task.is_blocked:
        raise TaskBlockedError(task.id, task.block_reason)


def start(task: Task, *, now: datetime) -> None:
    check_start(task)
    task.status = S.IN_PROGRESS
    task.substate = None
    if task.started is None:
        task.started = now


def check_complete(task: Task) -> None:
    if task.status not in COMPLETABLE:
        raise _invalid(task, "complete")


def complete(task: Task, *, skip_review: bool) -> TaskStatus:
    check_complete(task)
    task.status = S.DONE if skip_review else S.REVIEWING
    task.substate = None
    return task.status


def check_request_changes(task: Task) -> None:
    if task.status.is_terminal:
        raise _invalid(task, "request changes on")


def request_changes(task: Task, *, now: datetime) -> None:
    check_request_changes(task)
    task.status = S.IN_PROGRESS
    if task.started is None:
        task.started = now


def check_merge(task: Task) -> None:
    if task.status not in MERGEABLE:
        raise _invalid(task, "merge")


def check_close(task: Task) -> None:
    if task.status == S.CLOSED:
        raise AlreadyClosedError(task.id)
    if not can_transition(task.status, S.CLOSED):
        raise _invalid(task, "close")


def close(task: Task) -> None:
    check_close(task)
    task.status = S.CLOSED
    task.substate = None
    task.agent = ""
    task.model = ""


def set_status(task: Task, target: TaskStatus, *, now: datetime) -> None:
    """Manual status change (e.g. from agent hooks), validated against the table."""
    if task.status == target:
        return
    if target == S.CLOSED:
        check_close(task)
    elif not can_transition(task.status, target):
        raise InvalidTransitionError(f"task #{task.id}: {task.status.value} -> {target.value} is not allowed")
    if target == S.IN_PROGRESS and task.started is None:
        task.started = now
    task.status = target
    if target != S.IN_PROGRESS:
        task.substate = None


def session_exited(task: Task) -> bool:
    """Apply a work-session exit reported by the wrapper script's EXIT trap.

    Returns True when the status changed. A session that exits while the task is still
    `in_progress` was not ended by an explicit `complete`, so the task moves to `error`
    whatever the exit code was.
    """
    if task.status != S.IN_PROGRESS:
        return False
    task.status = S.ERROR
    task.substate = None
    return True


def check_auto_fix_budget(task: Task, *, max_retries: int) -> None:
    if task.auto_fix_retry_count >= max_retries:
        raise MaxRetriesReachedError(task.id, max_retries)


@dataclass(frozen=True)
class VerdictOutcome:
    lgtm: bool
    status: TaskStatus
    retried: bool = False


def apply_review_verdict(
    task: Task,
    *,
    lgtm: bool,
    now: datetime,
    auto_fix: bool,
    max_retries: int,
) -> VerdictOutcome:
    """Record a review verdict on a `reviewing` task and move it accordingly.

    Raises `MaxRetriesReachedError` (leaving the task in `reviewing`, with the review
    bookkeeping updated) when auto-fix is on and the retry budget is already spent.
    """
    if task.status != S.REVIEWING:
        raise _invalid(task, "record a review verdict for")

    task.review_count += 1
    task.last_review_at = now
    task.last_review_is_lgtm = lgtm

    if lgtm:
        task.status = S.DONE
        task.auto_fix_retry_count = 0
        return VerdictOutcome(lgtm=True, status=task.status)

    if not auto_fix:
        return VerdictOutcome(lgtm=False, status=task.status)

    check_auto_fix_budget(task, max_retries=max_retries)
    task.status = S.IN_PROGRESS
    task.auto_fix_retry_count += 1
    return VerdictOutcome(lgtm=False, status=task.status, retried=True)
