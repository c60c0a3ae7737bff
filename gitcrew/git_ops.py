"""Git operations and worktree management for crew.

Two small classes with the same "one method, one git command" shape:

- `GitClient`: branch queries, the clean-tree check, merging and branch deletion. All
  commands run through `_git(...)` with `check=True`, so failures surface as
  `subprocess.CalledProcessError` unless a method documents otherwise.
- `WorktreeManager`: create / resolve / remove / exists / list for task worktrees. A task's
  worktree always lives at `<worktrees_dir>/<task_id>` (see `gitcrew.naming`), and the
  branch checked out there is the task branch.

`GitWorktree` is the immutable `(branch, path)` pair parsed from
`git worktree list --porcelain`.

Terminology:
- `repo_root` is the main checkout (where `.crew/` lives); worktree and branch commands run
  there.
- `cwd` is the working directory a command should inspect, usually a task worktree.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import MergeConflictError, UncommittedChangesError, WorktreeNotFoundError


@dataclass(frozen=True)
class GitWorktree:
    branch: str
    path: Path


class GitClient:
    def __init__(self, *, repo_root: Path) -> None:
        self.repo_root = repo_root

    def current_branch(self, *, cwd: Path | None = None) -> str:
        out = self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd or self.repo_root)
        out = out.strip()
        if out == "HEAD":
            raise RuntimeError("Detached HEAD; please run crew from a named branch.")
        return out

    def branch_exists(self, branch: str) -> bool:
        p = subprocess.run(
            ["git", "show-ref", "--verify", "--quiet", f"refs/heads/{branch}"],
            cwd=self.repo_root,
            check=False,
        )
        return p.returncode == 0

    def list_branches(self) -> list[str]:
        out = self._git(["for-each-ref", "--format=%(refname:short)", "refs/heads/"], cwd=self.repo_root)
        return [line.strip() for line in out.splitlines() if line.strip()]

    def default_branch(self) -> str:
        """Best guess at the repository's main branch (origin HEAD, then main/master)."""
        p = subprocess.run(
            ["git", "symbolic-ref", "--quiet", "--short", "refs/remotes/origin/HEAD"],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
            check=False,
        )
        if p.returncode == 0 and p.stdout.strip():
            return p.stdout.strip().removeprefix("origin/")
        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate
        return "main"

    def has_uncommitted_changes(self, *, cwd: Path) -> bool:
        status = self._git(["status", "--porcelain"], cwd=cwd)
        return bool(status.strip())

    def merge(self, branch: str, *, cwd: Path | None = None, message: str | None = None) -> None:
        """Merge `branch` into the branch checked out at `cwd` with a merge commit.

        On a failed merge the in-progress merge is aborted before `MergeConflictError` is
        raised, so the base tree is left as it was.
        """
        cwd = cwd or self.repo_root
        args = ["merge", "--no-ff", "--no-edit"]
        if message:
            args += ["-m", message]
        p = subprocess.run(["git", *args, branch], cwd=cwd, text=True, capture_output=True, check=False)
        if p.returncode == 0:
            return
        subprocess.run(["git", "merge", "--abort"], cwd=cwd, capture_output=True, check=False)
        detail = (p.stdout + p.stderr).strip()
        raise MergeConflictError(f"merge of {branch} failed; merge aborted" + (f"\n{detail}" if detail else ""))

    def delete_branch(self, branch: str, *, force: bool = False) -> None:
        self._git(["branch", "-D" if force else "-d", branch], cwd=self.repo_root)

    def _git(self, args: list[str], *, cwd: Path) -> str:
        p = subprocess.run(
            ["git", *args],
            cwd=cwd,
            text=True,
            check=True,
            capture_output=True,
        )
        return p.stdout


class WorktreeManager:
    def __init__(self, *, git: GitClient, worktrees_dir: Path) -> None:
        self.git = git
        self.worktrees_dir = worktrees_dir

    def create(self, *, branch: str, base_branch: str, path: Path) -> GitWorktree:
        """Ensure `branch` is checked out in a worktree; reuse an existing one."""
        existing = self.list()
        if branch in existing:
            return GitWorktree(branch=branch, path=existing[branch])

        path.parent.mkdir(parents=True, exist_ok=True)
        wt_path = path.resolve()
        if self.git.branch_exists(branch):
            self.git._git(["worktree", "add", str(wt_path), branch], cwd=self.git.repo_root)
        else:
            self.git._git(["worktree", "add", "-b", branch, str(wt_path), base_branch], cwd=self.git.repo_root)
        return GitWorktree(branch=branch, path=wt_path)

    def resolve(self, branch: str) -> Path:
        path = self.list().get(branch)
        if path is None:
            raise WorktreeNotFoundError(f"no worktree for branch {branch}")
        return path

    def exists(self, branch: str) -> bool:
        return branch in self.list()

    def remove(self, branch: str, *, force: bool = False) -> None:
        path = self.resolve(branch)
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        p = subprocess.run(
            ["git", *args, str(path)],
            cwd=self.git.repo_root,
            text=True,
            capture_output=True,
            check=False,
        )
        if p.returncode == 0:
            return
        err = p.stderr.strip()
        if "modified or untracked files" in err or "contains modified" in err:
            raise UncommittedChangesError(f"worktree {path} has uncommitted changes")
        raise subprocess.CalledProcessError(p.returncode, p.args, output=p.stdout, stderr=p.stderr)

    def list(self) -> dict[str, Path]:
        """Return mapping of branch name -> worktree path."""
        out = self.git._git(["worktree", "list", "--porcelain"], cwd=self.git.repo_root)
        current_path: Path | None = None
        branch: str | None = None
        result: dict[str, Path] = {}

        def flush() -> None:
            nonlocal current_path, branch
            if current_path is not None and branch is not None and branch.startswith("refs/heads/"):
                result[branch.removeprefix("refs/heads/")] = current_path
            current_path = None
            branch = None

        for line in out.splitlines():
            if not line.strip():
                continue
            if line.startswith("worktree "):
                flush()
                current_path = Path(line.split(" ", 1)[1]).resolve()
            elif line.startswith("branch "):
                branch = line.split(" ", 1)[1].strip()

        flush()
        return result

    def copy_files(self, *, paths: list[str], dest: Path) -> list[str]:
        """Copy repo-relative files/dirs into a fresh worktree; return those copied."""
        copied: list[str] = []
        for rel in paths:
            src = self.git.repo_root / rel
            target = dest / rel
            if not src.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, target, dirs_exist_ok=True)
            else:
                shutil.copy2(src, target)
            copied.append(rel)
        return copied


def resolve_repo_root(start: Path) -> Path:
    """Main checkout for `start`, even when `start` is inside a linked worktree."""
    p = subprocess.run(
        ["git", "rev-parse", "--path-format=absolute", "--git-common-dir"],
        cwd=start,
        text=True,
        capture_output=True,
        check=False,
    )
    if p.returncode != 0 or not p.stdout.strip():
        return start
    common = Path(p.stdout.strip())
    if common.name == ".git":
        return common.parent.resolve()
    return start
