"""Error types raised by the crew orchestration engine.

Errors fall into four groups:

- precondition violations: the requested operation is not legal for the task as it is
  right now (missing task, wrong status, blocked, dirty worktree, wrong base branch).
  Nothing has been mutated when one of these is raised.
- resource failures: a git, worktree, session or script call failed part-way through an
  operation. The task status is left unchanged; resources created before the failure are
  not rolled back.
- supervisory limits: the auto-fix retry cap was reached.
- template errors: a command template referenced a field that does not exist.

`ConfigError` and `StoreCorruptedError` report an unreadable `.crew/config.toml` or
`.crew/tasks.json`; nothing is written when one is raised.

The CLI maps every `CrewError` to a one-line message and exit code 1.
"""

from __future__ import annotations


class CrewError(RuntimeError):
    pass


class PreconditionError(CrewError):
    pass


class TaskNotFoundError(PreconditionError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"task #{task_id} not found")
        self.task_id = task_id


class InvalidTransitionError(PreconditionError):
    pass


class AlreadyClosedError(InvalidTransitionError):
    def __init__(self, task_id: int) -> None:
        super().__init__(f"task #{task_id} is already closed")
        self.task_id = task_id


class TaskBlockedError(PreconditionError):
    def __init__(self, task_id: int, reason: str) -> None:
        super().__init__(f"task #{task_id} is blocked: {reason}")
        self.task_id = task_id
        self.reason = reason


class UncommittedChangesError(PreconditionError):
    pass


class NotOnBaseBranchError(PreconditionError):
    pass


class CheckFailedError(PreconditionError):
    def __init__(self, command: str, exit_code: int, output: str = "") -> None:
        msg = f"check command failed (exit {exit_code}): {command}"
        if output.strip():
            msg += "\n" + output.rstrip()
        super().__init__(msg)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class AgentNotFoundError(PreconditionError):
    pass


class CommentNotFoundError(PreconditionError):
    pass


class ResourceError(CrewError):
    pass


class WorktreeNotFoundError(ResourceError):
    pass


class MergeConflictError(ResourceError):
    pass


class MaxRetriesReachedError(CrewError):
    def __init__(self, task_id: int, max_retries: int) -> None:
        super().__init__(
            f"task #{task_id}: auto-fix retry limit reached ({max_retries}); "
            "fix manually or raise [complete] auto_fix_max_retries"
        )
        self.task_id = task_id
        self.max_retries = max_retries


class TemplateError(CrewError):
    pass


class SessionRunningError(PreconditionError):
    def __init__(self, session: str) -> None:
        super().__init__(f"session {session} is already running")
        self.session = session


class NoSessionError(PreconditionError):
    def __init__(self, session: str) -> None:
        super().__init__(f"no running session {session}")
        self.session = session


class ConfigError(CrewError):
    pass


class StoreCorruptedError(CrewError):
    pass
