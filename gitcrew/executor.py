"""Shell command execution for pre-checks, setup commands, reviewers and poll hooks.

`CommandExecutor` offers three ways to run a command:

- `run(command, cwd=...)`: `sh -c <command>` with stdout and stderr merged into one
  captured string. Used for `[complete] command` and `[worktree] setup_command`, where the
  caller only needs the exit code and something to show on failure.
- `run_interactive(command, cwd=...)`: `sh -c <command>` with the parent's stdio inherited.
  Used for poll hooks so their output appears directly in the terminal.
- `run_streaming(argv, cwd=..., stdout_sink=..., stderr_sink=..., cancel=...)`: argv run
  with both pipes read concurrently through `selectors`. Every line is captured and also
  forwarded to the matching sink when one is given. Setting the `cancel` event terminates
  the child. Used for the synchronous reviewer.

None of these raise on a non-zero exit status; callers decide what a failure means.
"""

from __future__ import annotations

import selectors
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class StreamResult:
    exit_code: int
    stdout: str
    stderr: str
    cancelled: bool = False


class CommandExecutor:
    def run(self, command: str, *, cwd: Path, env: dict[str, str] | None = None) -> CommandResult:
        p = subprocess.run(
            ["sh", "-c", command],
            cwd=cwd,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=env,
            check=False,
        )
        return CommandResult(exit_code=p.returncode, output=p.stdout or "")

    def run_interactive(self, command: str, *, cwd: Path, env: dict[str, str] | None = None) -> int:
        return subprocess.run(["sh", "-c", command], cwd=cwd, env=env, check=False).returncode

    def run_streaming(
        self,
        argv: list[str],
        *,
        cwd: Path,
        stdout_sink: TextIO | None = None,
        stderr_sink: TextIO | None = None,
        cancel: threading.Event | None = None,
    ) -> StreamResult:
        p = subprocess.Popen(
            argv,
            cwd=str(cwd),
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=1,
        )
        assert p.stdout is not None
        assert p.stderr is not None

        sel = selectors.DefaultSelector()
        sel.register(p.stdout, selectors.EVENT_READ)
        sel.register(p.stderr, selectors.EVENT_READ)

        out_chunks: list[str] = []
        err_chunks: list[str] = []
        cancelled = False

        while sel.get_map():
            if cancel is not None and cancel.is_set() and not cancelled:
                cancelled = True
                p.terminate()
            for key, _ in sel.select(timeout=0.1):
                stream = key.fileobj
                if not hasattr(stream, "readline"):
                    sel.unregister(stream)
                    continue
                line = stream.readline()
                if line == "":
                    sel.unregister(stream)
                    continue

                if stream is p.stdout:
                    out_chunks.append(line)
                    sink = stdout_sink
                else:
                    err_chunks.append(line)
                    sink = stderr_sink
                if sink is not None:
                    sink.write(line)
                    sink.flush()

            if p.poll() is not None and not sel.get_map():
                break

        sel.close()
        code = p.wait()
        return StreamResult(
            exit_code=code,
            stdout="".join(out_chunks),
            stderr="".join(err_chunks),
            cancelled=cancelled,
        )
