"""gitcrew: run AI coding-agent sessions side by side on isolated git worktrees.

Every task is bound 1:1 to a task record (`.crew/tasks.json`), a git branch + worktree
(`crew-<id>`, `.crew/worktrees/<id>`) and a tmux session (`crew-<id>`). The package is
organized leaf-first:

- `naming`: names derived from a task ID, and branch -> task ID parsing
- `task`, `store`: the task model and its JSON repository
- `states`: the status state machine and its guards
- `git_ops`, `tmux`, `executor`, `scripts`: git / worktree / session / shell collaborators
- `coordinator`: transitions plus their side effects (start, complete, merge, close, ...)
- `autofix`: the bounded complete -> review -> retry loop
- `poll`: the single-shot watcher behind `crew poll`
- `cli`: the `crew` command
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
