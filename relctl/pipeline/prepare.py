"""Adapter for the external prepare step.

The prepare command (version bump, changelog rotation, release branch) is
opaque to relctl. It communicates its results by writing shell ``export``
lines to the release environment script, which later steps source:

    export VERSION="0.1.0-beta-rc.2"
    export TAG="holochain-0.1.0-beta-rc.2"
    export RELEASE_BRANCH="release-20221031.101500"
    export RELEASABLE_CRATES="true"
"""

from __future__ import annotations

import os
import shlex
import threading
from pathlib import Path
from typing import Protocol

from relctl.core.result import Err, Ok, Result
from relctl.output.console import ConsoleProtocol, Style
from relctl.platform.process import run as run_process
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.model import PrepareOutput, RunContext
from relctl.pipeline.timeouts import PREPARE_TIMEOUT_SECONDS
from relctl.pipeline.variables import parse_flag


class Preparer(Protocol):
    def prepare(self, context: RunContext) -> Result[PrepareOutput, PipelineError]: ...


def parse_release_env(text: str) -> dict[str, str]:
    """Collect ``NAME=value`` assignments from a release environment script.

    Only plain assignments (optionally prefixed with ``export``) are read;
    anything else in the script is ignored.
    """
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            tokens = shlex.split(line, comments=True)
        except ValueError:
            continue
        if tokens and tokens[0] == "export":
            tokens = tokens[1:]
        for token in tokens:
            name, sep, value = token.partition("=")
            if sep and name.isidentifier():
                values[name] = value
    return values


def prepare_output_from_env(values: dict[str, str]) -> Result[PrepareOutput, PipelineError]:
    version = values.get("VERSION", "")
    tag = values.get("TAG", "")
    release_branch = values.get("RELEASE_BRANCH", "")

    flag = values.get("RELEASABLE_CRATES")
    releasable = parse_flag(flag) if flag is not None else bool(version)

    if releasable and not (version and tag and release_branch):
        missing = [
            name
            for name, value in (
                ("VERSION", version),
                ("TAG", tag),
                ("RELEASE_BRANCH", release_branch),
            )
            if not value
        ]
        return Err(
            PipelineError(
                kind="prepare_failed",
                message="release environment is incomplete",
                hint=f"missing: {', '.join(missing)}",
            )
        )

    return Ok(
        PrepareOutput(
            releasable_crates=releasable,
            version=version,
            tag=tag,
            release_branch=release_branch,
        )
    )


class ScriptPreparer:
    """Runs the configured prepare command, then reads the release script."""

    def __init__(
        self,
        *,
        command: str,
        console: ConsoleProtocol,
        cancel: threading.Event | None = None,
        timeout: float = PREPARE_TIMEOUT_SECONDS,
    ) -> None:
        self._command = command
        self._console = console
        self._cancel = cancel
        self._timeout = timeout

    def prepare(self, context: RunContext) -> Result[PrepareOutput, PipelineError]:
        self._console.header("Prepare")
        self._console.print(self._command, Style.DIM)

        cwd = context.repo_path if context.repo_path.is_dir() else Path.cwd()
        env = {**os.environ, **context.as_env()}
        result = run_process(
            ["bash", "-c", self._command],
            cwd=cwd,
            env=env,
            timeout=self._timeout,
            cancel=self._cancel,
        )
        if isinstance(result, Err):
            e = result.error
            if e.cancelled:
                return Err(PipelineError(kind="cancelled", message="prepare cancelled"))
            return Err(
                PipelineError(
                    kind="timed_out" if e.timed_out else "prepare_failed",
                    message=f"prepare step failed: {e}",
                    hint=e.stderr.strip() or None,
                )
            )

        try:
            text = context.release_sh.read_text(encoding="utf-8")
        except OSError as e:
            return Err(
                PipelineError(
                    kind="prepare_failed",
                    message=f"cannot read release environment: {context.release_sh}",
                    hint=str(e),
                )
            )

        output = prepare_output_from_env(parse_release_env(text))
        if isinstance(output, Ok):
            out = output.value
            if out.releasable_crates:
                self._console.success(f"prepared {out.tag} on {out.release_branch}")
            else:
                self._console.info("no releasable crates")
        return output
