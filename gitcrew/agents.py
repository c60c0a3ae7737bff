"""Agent command construction for worker and reviewer sessions.

An agent is an external coding CLI (see `gitcrew.config.BUILTIN_AGENTS`). crew never talks
to an agent directly: it renders the agent's command template and the role prompt, and hands
both to the wrapper script generator in `gitcrew.scripts`, which runs the command with the
prompt in a `$PROMPT` shell variable.

Template fields available to both the prompt and the command:
`TaskID`, `Title`, `Description`, `Branch`, `BaseBranch`, `Worktree`, `RepoRoot`, `Model`,
plus `Prompt` (command only), which always renders as `"$PROMPT"`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .config import CrewConfig
from .errors import AgentNotFoundError
from .naming import branch_name
from .task import Task
from .template import render_template

PROMPT_VAR = '"$PROMPT"'


class AgentRole(str, Enum):
    WORKER = "worker"
    REVIEWER = "reviewer"


@dataclass(frozen=True)
class AgentCommand:
    agent: str
    model: str
    command: str
    prompt: str


def build_agent_command(
    *,
    cfg: CrewConfig,
    task: Task,
    role: AgentRole,
    worktree: Path,
    repo_root: Path,
    agent: str | None = None,
    model: str | None = None,
    message: str | None = None,
) -> AgentCommand:
    name = agent or (cfg.worker_agent if role == AgentRole.WORKER else cfg.reviewer_agent)
    agent_def = cfg.agent(name)

    if role == AgentRole.WORKER:
        template = agent_def.command
        resolved_model = model or agent_def.model
        prompt_template = cfg.worker_prompt
    else:
        template = agent_def.review_command
        resolved_model = model or agent_def.review_model or agent_def.model
        prompt_template = cfg.reviewer_prompt
    if not template:
        raise AgentNotFoundError(f"agent {name!r} has no {role.value} command")

    fields = {
        "TaskID": task.id,
        "Title": task.title,
        "Description": task.description,
        "Branch": branch_name(task.id, task.issue),
        "BaseBranch": task.base_branch,
        "Worktree": str(worktree),
        "RepoRoot": str(repo_root),
        "Model": resolved_model,
    }
    prompt = render_template(prompt_template, fields)
    if message:
        prompt = f"{prompt.rstrip()}\n\n{message.strip()}"
    command = render_template(template, {**fields, "Prompt": PROMPT_VAR})
    return AgentCommand(agent=name, model=resolved_model, command=command, prompt=prompt)
