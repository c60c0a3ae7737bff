from __future__ import annotations

import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from gitcrew import git_ops
from gitcrew.errors import MergeConflictError, UncommittedChangesError, WorktreeNotFoundError


def test_list_parses_porcelain_and_ignores_non_branch_entries(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    manager = git_ops.WorktreeManager(git=client, worktrees_dir=tmp_path / ".crew" / "worktrees")
    porcelain = "\n".join(
        [
            f"worktree {tmp_path}",
            "HEAD 1111111",
            "branch refs/heads/main",
            "",
            f"worktree {tmp_path / '.crew' / 'worktrees' / '3'}",
            "HEAD 2222222",
            "branch refs/heads/crew-3",
            "",
            f"worktree {tmp_path / 'detached'}",
            "HEAD 3333333",
            "detached",
            "",
        ]
    )
    monkeypatch.setattr(client, "_git", lambda args, cwd: porcelain)

    assert manager.list() == {
        "main": tmp_path.resolve(),
        "crew-3": (tmp_path / ".crew" / "worktrees" / "3").resolve(),
    }
    assert manager.exists("crew-3")
    assert not manager.exists("crew-4")
    with pytest.raises(WorktreeNotFoundError):
        manager.resolve("crew-4")


@pytest.mark.parametrize(
    ("returncode", "expected"),
    [
        (0, True),
        (1, False),
    ],
)
def test_branch_exists_uses_show_ref_and_return_code(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, returncode: int, expected: bool
) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    calls: list[tuple[list[str], Path, bool]] = []

    def fake_run(cmd: list[str], cwd: Path, check: bool) -> SimpleNamespace:
        calls.append((cmd, cwd, check))
        return SimpleNamespace(returncode=returncode)

    monkeypatch.setattr(git_ops.subprocess, "run", fake_run)

    assert client.branch_exists("crew-1") is expected
    assert calls == [(["git", "show-ref", "--verify", "--quiet", "refs/heads/crew-1"], tmp_path, False)]


def test_current_branch_raises_on_detached_head(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    monkeypatch.setattr(client, "_git", lambda args, cwd: "HEAD\n")

    with pytest.raises(RuntimeError, match="Detached HEAD"):
        client.current_branch(cwd=tmp_path)


def test_has_uncommitted_changes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    monkeypatch.setattr(client, "_git", lambda args, cwd: " M file.py\n")
    assert client.has_uncommitted_changes(cwd=tmp_path) is True

    monkeypatch.setattr(client, "_git", lambda args, cwd: "\n")
    assert client.has_uncommitted_changes(cwd=tmp_path) is False


def test_create_reuses_existing_worktree(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    manager = git_ops.WorktreeManager(git=client, worktrees_dir=tmp_path / "wt")
    existing = (tmp_path / "wt" / "1").resolve()
    monkeypatch.setattr(manager, "list", lambda: {"crew-1": existing})
    monkeypatch.setattr(client, "_git", lambda args, cwd: (_ for _ in ()).throw(AssertionError()))

    result = manager.create(branch="crew-1", base_branch="main", path=tmp_path / "wt" / "1")

    assert result == git_ops.GitWorktree(branch="crew-1", path=existing)


@pytest.mark.parametrize(
    ("branch_exists", "expected_args"),
    [
        (False, ["worktree", "add", "-b", "crew-2", "WT", "main"]),
        (True, ["worktree", "add", "WT", "crew-2"]),
    ],
)
def test_create_adds_worktree_with_or_without_new_branch(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, branch_exists: bool, expected_args: list[str]
) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    manager = git_ops.WorktreeManager(git=client, worktrees_dir=tmp_path / "wt")
    calls: list[list[str]] = []
    monkeypatch.setattr(manager, "list", lambda: {})
    monkeypatch.setattr(client, "branch_exists", lambda branch: branch_exists)
    monkeypatch.setattr(client, "_git", lambda args, cwd: calls.append(list(args)) or "")

    wt = manager.create(branch="crew-2", base_branch="main", path=tmp_path / "wt" / "2")

    wt_path = str((tmp_path / "wt" / "2").resolve())
    assert calls == [[wt_path if a == "WT" else a for a in expected_args]]
    assert wt.path == Path(wt_path)
    assert (tmp_path / "wt").is_dir()


def test_remove_maps_dirty_worktree_to_uncommitted_changes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    manager = git_ops.WorktreeManager(git=client, worktrees_dir=tmp_path / "wt")
    monkeypatch.setattr(manager, "list", lambda: {"crew-1": tmp_path / "wt" / "1"})
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> SimpleNamespace:
        calls.append(cmd)
        return SimpleNamespace(
            returncode=128,
            args=cmd,
            stdout="",
            stderr="fatal: '/x' contains modified or untracked files, use --force to delete it",
        )

    monkeypatch.setattr(git_ops.subprocess, "run", fake_run)

    with pytest.raises(UncommittedChangesError):
        manager.remove("crew-1")
    assert calls == [["git", "worktree", "remove", str(tmp_path / "wt" / "1")]]


def test_remove_with_force_passes_flag(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    manager = git_ops.WorktreeManager(git=client, worktrees_dir=tmp_path / "wt")
    monkeypatch.setattr(manager, "list", lambda: {"crew-1": tmp_path / "wt" / "1"})
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> SimpleNamespace:
        calls.append(cmd)
        return SimpleNamespace(returncode=0, args=cmd, stdout="", stderr="")

    monkeypatch.setattr(git_ops.subprocess, "run", fake_run)

    manager.remove("crew-1", force=True)

    assert calls == [["git", "worktree", "remove", "--force", str(tmp_path / "wt" / "1")]]


def test_remove_other_failures_raise_called_process_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    manager = git_ops.WorktreeManager(git=client, worktrees_dir=tmp_path / "wt")
    monkeypatch.setattr(manager, "list", lambda: {"crew-1": tmp_path / "wt" / "1"})
    monkeypatch.setattr(
        git_ops.subprocess,
        "run",
        lambda cmd, **kwargs: SimpleNamespace(returncode=1, args=cmd, stdout="", stderr="fatal: locked"),
    )

    with pytest.raises(subprocess.CalledProcessError):
        manager.remove("crew-1")


def test_merge_failure_aborts_and_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client = git_ops.GitClient(repo_root=tmp_path)
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> SimpleNamespace:
        calls.append(cmd)
        if cmd[:2] == ["git", "merge"] and "--abort" not in cmd:
            return SimpleNamespace(returncode=1, stdout="CONFLICT (content): a.txt\n", stderr="")
        return SimpleNamespace(returncode=0, stdout="", stderr="")

    monkeypatch.setattr(git_ops.subprocess, "run", fake_run)

    with pytest.raises(MergeConflictError, match="CONFLICT"):
        client.merge("crew-1", cwd=tmp_path, message="Merge task #1")

    assert calls == [
        ["git", "merge", "--no-ff", "--no-edit", "-m", "Merge task #1", "crew-1"],
        ["git", "merge", "--abort"],
    ]


def test_copy_files_copies_existing_paths_only(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    (repo / "config").mkdir(parents=True)
    (repo / ".env").write_text("A=1\n")
    (repo / "config" / "local.json").write_text("{}")
    dest = tmp_path / "wt"
    dest.mkdir()
    manager = git_ops.WorktreeManager(git=git_ops.GitClient(repo_root=repo), worktrees_dir=tmp_path)

    copied = manager.copy_files(paths=[".env", "config", "missing.txt"], dest=dest)

    assert copied == [".env", "config"]
    assert (dest / ".env").read_text() == "A=1\n"
    assert (dest / "config" / "local.json").exists()


def test_resolve_repo_root_walks_out_of_linked_worktree(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    main = tmp_path / "main"
    monkeypatch.setattr(
        git_ops.subprocess,
        "run",
        lambda cmd, **kwargs: SimpleNamespace(returncode=0, stdout=f"{main / '.git'}\n"),
    )

    assert git_ops.resolve_repo_root(tmp_path / "main" / ".crew" / "worktrees" / "1") == main.resolve()


def test_resolve_repo_root_falls_back_outside_git(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        git_ops.subprocess,
        "run",
        lambda cmd, **kwargs: SimpleNamespace(returncode=128, stdout=""),
    )

    assert git_ops.resolve_repo_root(tmp_path) == tmp_path
