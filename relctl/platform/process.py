"""Subprocess execution with Result-based error handling.

The single place where relctl spawns processes. Every pipeline command
(prepare, build, test, git, gh, publish) goes through :func:`run`, which
enforces an optional timeout and an optional cancellation event.

Usage:
    result = run(["git", "push", "origin", "main"], cwd=repo, timeout=180)
    match result:
        case Ok(stdout):
            ...
        case Err(error) if error.timed_out:
            ...
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from relctl.core.result import Err, Ok, Result

__all__ = ["ProcessError", "run"]

_POLL_SECONDS = 0.2
_DRAIN_SECONDS = 5.0
_POSIX = os.name == "posix"


@dataclass(frozen=True, slots=True)
class ProcessError:
    """Error from a failed subprocess execution.

    Attributes:
        command: The command that was executed.
        returncode: Exit code, or -1 when the process could not be started,
            timed out or was cancelled.
        stdout: Standard output (may be empty).
        stderr: Standard error (contains error details).
        timed_out: The timeout elapsed and the process was killed.
        cancelled: The cancel event was set and the process was killed.
    """

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False

    def __str__(self) -> str:
        cmd_str = " ".join(self.command[:3])
        if len(self.command) > 3:
            cmd_str += " ..."
        if self.timed_out:
            return f"{cmd_str} timed out"
        if self.cancelled:
            return f"{cmd_str} cancelled"
        return f"{cmd_str} failed (exit {self.returncode})"


def _kill(proc: subprocess.Popen[str]) -> str:
    """Kill the child and everything it started; return buffered stdout."""
    if _POSIX:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            # Group already gone.
            pass
    else:
        proc.kill()
    try:
        out, _ = proc.communicate(timeout=_DRAIN_SECONDS)
    except subprocess.TimeoutExpired:
        # A descendant left the group and still holds the pipes open.
        proc.kill()
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None:
                pipe.close()
        proc.wait()
        return ""
    return out or ""


def run(
    cmd: list[str],
    cwd: Path,
    env: dict[str, str] | None = None,
    *,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
) -> Result[str, ProcessError]:
    """Execute a command and return stdout or error.

    Args:
        cmd: Command and arguments to execute.
        cwd: Working directory for the command.
        env: Full environment for the child (inherits the current one if None).
        timeout: Maximum seconds to wait (None for no limit).
        cancel: When set, the child is killed and an error with
            ``cancelled=True`` is returned.

    Returns:
        Ok(stdout) on success, Err(ProcessError) on failure.
    """
    command = tuple(cmd)
    if cancel is not None and cancel.is_set():
        return Err(ProcessError(command, -1, "", "cancelled before start", cancelled=True))

    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            # Own process group, so a timeout or cancel reaches grandchildren.
            start_new_session=_POSIX,
        )
    except OSError as e:
        return Err(ProcessError(command, -1, "", str(e)))

    deadline = time.monotonic() + timeout if timeout is not None else None
    while True:
        slice_seconds = _POLL_SECONDS if cancel is not None else None
        if deadline is not None:
            remaining = max(0.0, deadline - time.monotonic())
            slice_seconds = remaining if slice_seconds is None else min(slice_seconds, remaining)

        try:
            stdout, stderr = proc.communicate(timeout=slice_seconds)
            break
        except subprocess.TimeoutExpired:
            # communicate() keeps buffered output across retries.
            if deadline is not None and time.monotonic() >= deadline:
                out = _kill(proc)
                return Err(
                    ProcessError(
                        command,
                        -1,
                        out,
                        f"Command timed out after {timeout}s",
                        timed_out=True,
                    )
                )
            if cancel is not None and cancel.is_set():
                out = _kill(proc)
                return Err(ProcessError(command, -1, out, "Command cancelled", cancelled=True))

    if proc.returncode != 0:
        return Err(ProcessError(command, proc.returncode, stdout or "", stderr or ""))
    return Ok(stdout or "")
