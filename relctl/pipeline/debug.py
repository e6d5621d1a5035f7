"""Interactive remote-access window opened when a debug run fails."""

from __future__ import annotations

import os
import shlex
import shutil
import threading
from pathlib import Path
from typing import Protocol

from relctl.core.result import Err, Ok, Result
from relctl.output.console import ConsoleProtocol, Style
from relctl.platform.process import run as run_process
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.model import RunContext
from relctl.pipeline.timeouts import DEBUG_SESSION_TIMEOUT_SECONDS


class DebugHook(Protocol):
    def open(self, context: RunContext, *, reason: str) -> Result[None, PipelineError]: ...


def allowed_users(actor: str | None, maintainers: tuple[str, ...]) -> list[str]:
    """The triggering actor first, then maintainers, without duplicates."""
    users: list[str] = []
    for user in (actor, *maintainers):
        if user and user not in users:
            users.append(user)
    return users


class UptermDebugHook:
    def __init__(
        self,
        *,
        command: str,
        maintainers: tuple[str, ...],
        console: ConsoleProtocol,
        cancel: threading.Event | None = None,
        timeout: float = DEBUG_SESSION_TIMEOUT_SECONDS,
    ) -> None:
        self._command = command
        self._maintainers = maintainers
        self._console = console
        self._cancel = cancel
        self._timeout = timeout

    def build_command(self, context: RunContext) -> list[str]:
        cmd = shlex.split(self._command)
        for user in allowed_users(context.actor, self._maintainers):
            cmd += ["--github-user", user]
        return cmd

    def open(self, context: RunContext, *, reason: str) -> Result[None, PipelineError]:
        cmd = self.build_command(context)
        if not cmd or shutil.which(cmd[0]) is None:
            return Err(
                PipelineError(
                    kind="setup_failed",
                    message=f"debug session unavailable: {cmd[0] if cmd else '(empty command)'} not found",
                )
            )

        self._console.warning(f"opening debug session: {reason}")
        self._console.print(" ".join(cmd), Style.DIM)
        cwd = context.repo_path if context.repo_path.is_dir() else Path.cwd()
        result = run_process(
            cmd,
            cwd=cwd,
            env={**os.environ, **context.as_env()},
            timeout=self._timeout,
            cancel=self._cancel,
        )
        if isinstance(result, Err):
            e = result.error
            if e.timed_out:
                # The window closing on its own is the normal end of a session.
                return Ok(None)
            return Err(
                PipelineError(
                    kind="setup_failed",
                    message=f"debug session ended with an error: {e}",
                    hint=e.stderr.strip() or None,
                )
            )
        return Ok(None)
