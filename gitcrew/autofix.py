"""Auto-fix supervisor: `complete` with a synchronous review and a bounded retry loop.

With `[complete] auto_fix = true`, `crew complete` (usually run by the worker agent itself)
does not start a background review session. Instead it:

1. performs the normal `complete` checks and moves the task to `reviewing`
   (or straight to `done` when review is skipped),
2. refuses to review again when `auto_fix_retry_count` has already reached
   `auto_fix_max_retries`, raising `MaxRetriesReachedError` and leaving the task in
   `reviewing` for a human,
3. otherwise runs the reviewer to completion and applies the verdict:
   - LGTM: the task is `done` and the retry counter is reset to 0,
   - anything else: the task goes back to `in_progress`, the counter is incremented and
     the review text is returned so the worker can act on it and run `complete` again.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TextIO

from . import states
from .coordinator import ResourceCoordinator
from .errors import MaxRetriesReachedError
from .task import TaskStatus


@dataclass(frozen=True)
class AutoFixOutcome:
    task_id: int
    status: TaskStatus
    lgtm: bool
    retry_count: int
    feedback: str = ""


class AutoFixSupervisor:
    def __init__(self, coordinator: ResourceCoordinator) -> None:
        self.coordinator = coordinator

    @property
    def max_retries(self) -> int:
        return self.coordinator.cfg.auto_fix_max_retries

    def complete(self, task_id: int, *, stream: TextIO | None = None) -> AutoFixOutcome:
        done = self.coordinator.complete(task_id, start_review=False)
        if done.status == TaskStatus.DONE:
            return AutoFixOutcome(task_id=task_id, status=done.status, lgtm=True, retry_count=0)

        task = self.coordinator.store.require(task_id)
        try:
            states.check_auto_fix_budget(task, max_retries=self.max_retries)
        except MaxRetriesReachedError:
            self.coordinator.log.error(
                "autofix",
                f"task #{task_id}: {task.auto_fix_retry_count}/{self.max_retries} retries used; not reviewing again",
                task_id=task_id,
            )
            raise

        outcome = self.coordinator.review(task_id, auto_fix=True, stream=stream)
        if outcome.review.lgtm:
            return AutoFixOutcome(
                task_id=task_id,
                status=outcome.status,
                lgtm=True,
                retry_count=outcome.retry_count,
                feedback=outcome.review.text,
            )

        self.coordinator.log.info(
            "autofix",
            f"task #{task_id}: review requested changes (retry {outcome.retry_count}/{self.max_retries})",
            task_id=task_id,
        )
        return AutoFixOutcome(
            task_id=task_id,
            status=outcome.status,
            lgtm=False,
            retry_count=outcome.retry_count,
            feedback=outcome.review.text,
        )
