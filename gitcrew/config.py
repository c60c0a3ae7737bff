"""Configuration for crew, loaded from `<repo>/.crew/config.toml`.

A missing file means "all defaults". Unknown tables and keys are ignored so older binaries
keep working with newer config files. Recognized keys:

    [worktree]
    setup_command = "npm ci"         # run inside a freshly created worktree
    copy = [".env"]                  # repo-relative paths copied into new worktrees
    dir = ".crew/worktrees"          # where task worktrees live (repo-relative)

    [complete]
    command = "make test"            # pre-check; non-zero exit aborts `complete`
    auto_fix = false                 # run the reviewer synchronously and loop on failures
    auto_fix_max_retries = 3

    [tasks]
    skip_review = false              # default when a task has no override
    namespace = "default"
    base_branch = ""                 # default base for new tasks

    [agents]
    worker = "claude"
    reviewer = "claude"
    worker_prompt = "..."
    reviewer_prompt = "..."
    disabled = ["opencode*"]

    [agents.myagent]
    command = "myagent --model {{.Model}} {{.Prompt}}"
    review_command = "myagent --print {{.Prompt}}"
    model = "large"
    review_model = "small"

    [poll]
    interval = 10
    timeout = 300                    # 0 waits without a deadline

    [diff]
    command = "git diff {{.BaseBranch}}...HEAD {{.Args}}"

    [log]
    level = "info"

Agent command templates use `gitcrew.template` fields: `Model`, `Prompt` (the shell-quoted
`"$PROMPT"` variable set by the wrapper script), `TaskID`, `Worktree`, `Branch`, `Title`.
The diff command is run inside the task worktree with `BaseBranch` and `Args` (the extra
`crew diff` arguments, shell-quoted).
"""

from __future__ import annotations

import fnmatch
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .errors import AgentNotFoundError, ConfigError
from .naming import DEFAULT_NAMESPACE, sanitize_namespace

DEFAULT_WORKER_PROMPT = (
    "You are working on crew task #{{.TaskID}}: {{.Title}}\n\n"
    "{{.Description}}\n\n"
    "Work in this worktree on branch {{.Branch}}. Commit your changes with git. "
    "When the work is finished and committed, run `crew complete {{.TaskID}}`. "
    "If `crew complete` reports review feedback, address it and run it again."
)

DEFAULT_REVIEWER_PROMPT = (
    "Review the changes on branch {{.Branch}} for crew task #{{.TaskID}}: {{.Title}}\n\n"
    "{{.Description}}\n\n"
    "Inspect the diff against {{.BaseBranch}}. End your answer with a line `---REVIEW_RESULT---` "
    "followed by your verdict. Start the verdict with `✅ LGTM` only when the change is ready to merge; "
    "otherwise list the required fixes."
)


@dataclass(frozen=True)
class AgentDef:
    name: str
    command: str
    review_command: str = ""
    model: str = ""
    review_model: str = ""
    description: str = ""


BUILTIN_AGENTS: dict[str, AgentDef] = {
    "claude": AgentDef(
        name="claude",
        command="claude --model {{.Model}} --permission-mode acceptEdits {{.Prompt}}",
        review_command="claude -p --model {{.Model}} {{.Prompt}}",
        model="opus",
        review_model="sonnet",
        description="Claude Code CLI",
    ),
    "codex": AgentDef(
        name="codex",
        command="codex --model {{.Model}} --full-auto {{.Prompt}}",
        review_command="codex exec --model {{.Model}} {{.Prompt}}",
        model="gpt-5-codex",
        review_model="gpt-5-codex",
        description="OpenAI Codex CLI",
    ),
    "opencode": AgentDef(
        name="opencode",
        command="opencode --model {{.Model}} --prompt {{.Prompt}}",
        review_command="opencode run --model {{.Model}} {{.Prompt}}",
        model="anthropic/claude-sonnet-4-5",
        review_model="anthropic/claude-sonnet-4-5",
        description="opencode CLI",
    ),
}

DEFAULT_DIFF_COMMAND = "git diff {{.BaseBranch}}...HEAD {{.Args}}"

LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass(frozen=True)
class CrewConfig:
    worktree_setup_command: str = ""
    worktree_copy: tuple[str, ...] = ()
    worktree_dir: str = ".crew/worktrees"
    complete_command: str = ""
    auto_fix: bool = False
    auto_fix_max_retries: int = 3
    skip_review: bool = False
    namespace: str = DEFAULT_NAMESPACE
    base_branch: str = ""
    worker_agent: str = "claude"
    reviewer_agent: str = "claude"
    worker_prompt: str = DEFAULT_WORKER_PROMPT
    reviewer_prompt: str = DEFAULT_REVIEWER_PROMPT
    disabled_agents: tuple[str, ...] = ()
    agents: Mapping[str, AgentDef] = field(default_factory=lambda: dict(BUILTIN_AGENTS))
    poll_interval: float = 10.0
    poll_timeout: float = 300.0
    diff_command: str = DEFAULT_DIFF_COMMAND
    log_level: str = "info"

    def enabled_agents(self) -> dict[str, AgentDef]:
        return {
            name: agent
            for name, agent in self.agents.items()
            if not any(fnmatch.fnmatch(name, pat) for pat in self.disabled_agents)
        }

    def agent(self, name: str) -> AgentDef:
        enabled = self.enabled_agents()
        if name in enabled:
            return enabled[name]
        if name in self.agents:
            raise AgentNotFoundError(f"agent {name!r} is disabled")
        known = ", ".join(sorted(enabled)) or "(none)"
        raise AgentNotFoundError(f"agent {name!r} not found (available: {known})")


def _table(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    val = raw.get(key)
    return val if isinstance(val, Mapping) else {}


def _str_list(val: Any) -> tuple[str, ...]:
    if isinstance(val, str):
        return (val,) if val else ()
    return tuple(str(x) for x in (val or []))


def _number(table: Mapping[str, Any], key: str, default: float, *, where: str, kind: type = float) -> Any:
    val = table.get(key, default)
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        raise ConfigError(f"[{where}] {key} must be a number, got {val!r}")
    if kind is int and val != int(val):
        raise ConfigError(f"[{where}] {key} must be an integer, got {val!r}")
    return kind(val)


def _bool(table: Mapping[str, Any], key: str, default: bool, *, where: str) -> bool:
    val = table.get(key, default)
    if not isinstance(val, bool):
        raise ConfigError(f"[{where}] {key} must be true or false, got {val!r}")
    return val


def config_from_dict(raw: Mapping[str, Any]) -> CrewConfig:
    defaults = CrewConfig()
    worktree = _table(raw, "worktree")
    complete = _table(raw, "complete")
    tasks = _table(raw, "tasks")
    agents_tbl = _table(raw, "agents")
    poll = _table(raw, "poll")
    diff = _table(raw, "diff")
    log = _table(raw, "log")

    agents = dict(BUILTIN_AGENTS)
    for name, entry in agents_tbl.items():
        if not isinstance(entry, Mapping):
            continue
        base = agents.get(name)
        command = str(entry.get("command") or (base.command if base else ""))
        if not command:
            continue
        agents[name] = AgentDef(
            name=name,
            command=command,
            review_command=str(entry.get("review_command") or (base.review_command if base else "")),
            model=str(entry.get("model") or (base.model if base else "")),
            review_model=str(entry.get("review_model") or (base.review_model if base else "")),
            description=str(entry.get("description") or (base.description if base else "")),
        )

    level = str(log.get("level") or defaults.log_level).lower()
    if level not in LOG_LEVELS:
        level = defaults.log_level

    return CrewConfig(
        worktree_setup_command=str(worktree.get("setup_command") or ""),
        worktree_copy=_str_list(worktree.get("copy")),
        worktree_dir=str(worktree.get("dir") or defaults.worktree_dir),
        complete_command=str(complete.get("command") or ""),
        auto_fix=_bool(complete, "auto_fix", defaults.auto_fix, where="complete"),
        auto_fix_max_retries=max(
            0, _number(complete, "auto_fix_max_retries", defaults.auto_fix_max_retries, where="complete", kind=int)
        ),
        skip_review=_bool(tasks, "skip_review", defaults.skip_review, where="tasks"),
        namespace=sanitize_namespace(str(tasks.get("namespace") or defaults.namespace)),
        base_branch=str(tasks.get("base_branch") or ""),
        worker_agent=str(agents_tbl.get("worker") or defaults.worker_agent),
        reviewer_agent=str(agents_tbl.get("reviewer") or defaults.reviewer_agent),
        worker_prompt=str(agents_tbl.get("worker_prompt") or defaults.worker_prompt),
        reviewer_prompt=str(agents_tbl.get("reviewer_prompt") or defaults.reviewer_prompt),
        disabled_agents=_str_list(agents_tbl.get("disabled")),
        agents=agents,
        poll_interval=_number(poll, "interval", defaults.poll_interval, where="poll"),
        poll_timeout=_number(poll, "timeout", defaults.poll_timeout, where="poll"),
        diff_command=str(diff.get("command") or defaults.diff_command),
        log_level=level,
    )


def load_config(path: Path) -> CrewConfig:
    if not path.exists():
        return CrewConfig()
    with path.open("rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"{path}: {exc}") from exc
    return config_from_dict(raw)
