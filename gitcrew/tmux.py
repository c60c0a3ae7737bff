"""tmux session manager for crew task sessions.

Every crew session lives on a private tmux server (`tmux -S <crew_dir>/tmux.sock`) so task
sessions never mix with the user's own tmux sessions, and `kill-server`-style accidents on
either side do not cross over.

Sessions are keyed by the names derived in `gitcrew.naming`:
- `crew-<id>` hosts the worker agent,
- `crew-<id>-review` hosts an asynchronous reviewer.

Design constraints:
- sessions are always created detached (`new-session -d`); `attach` is the only call that
  takes over the terminal, and it does so by exec'ing tmux,
- `stop` is idempotent: stopping a session that does not exist reports False instead of
  raising,
- the agent process is started as the session's only command (the generated wrapper script),
  so the session ends when the agent does and the wrapper's EXIT trap fires.
"""

from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path

from .errors import NoSessionError


class TmuxSessionManager:
    def __init__(self, *, socket_path: Path) -> None:
        self.socket_path = socket_path

    def _base(self) -> list[str]:
        return ["tmux", "-S", str(self.socket_path)]

    def is_running(self, name: str) -> bool:
        p = subprocess.run(
            [*self._base(), "has-session", "-t", f"={name}"],
            capture_output=True,
            check=False,
        )
        return p.returncode == 0

    def start(self, name: str, *, cwd: Path, argv: list[str], env: dict[str, str] | None = None) -> None:
        """Start `argv` in a new detached session named `name` with working dir `cwd`."""
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        env_args: list[str] = []
        for k, v in (env or {}).items():
            env_args += ["-e", f"{k}={v}"]
        subprocess.check_call([*self._base(), "new-session", "-d", "-s", name, "-c", str(cwd), *env_args, *argv])

    def stop(self, name: str) -> bool:
        """Terminate session `name`. Returns False when no such session was running."""
        if not self.is_running(name):
            return False
        for pid in self._pane_pids(name):
            try:
                os.killpg(os.getpgid(pid), signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                pass
        subprocess.run([*self._base(), "kill-session", "-t", f"={name}"], capture_output=True, check=False)
        return True

    def attach(self, name: str) -> None:
        if not self.is_running(name):
            raise NoSessionError(name)
        os.execvp("tmux", [*self._base(), "attach-session", "-t", f"={name}"])

    def peek(self, name: str, *, lines: int = 30) -> str:
        if not self.is_running(name):
            raise NoSessionError(name)
        out = subprocess.check_output(
            [*self._base(), "capture-pane", "-p", "-t", name, "-S", f"-{max(1, lines)}"],
            text=True,
        )
        return out.rstrip("\n")

    def send_keys(self, name: str, keys: str, *, enter: bool = True) -> None:
        if not self.is_running(name):
            raise NoSessionError(name)
        subprocess.check_call([*self._base(), "send-keys", "-t", name, "-l", keys])
        if enter:
            subprocess.check_call([*self._base(), "send-keys", "-t", name, "Enter"])

    def _pane_pids(self, name: str) -> list[int]:
        p = subprocess.run(
            [*self._base(), "list-panes", "-t", name, "-F", "#{pane_pid}"],
            text=True,
            capture_output=True,
            check=False,
        )
        pids: list[int] = []
        for line in p.stdout.splitlines():
            line = line.strip()
            if line.isdigit():
                pids.append(int(line))
        return pids
