"""Shared helpers for CLI commands."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, NoReturn, TypeVar

import typer

from relctl.core.errors import ErrorCode
from relctl.core.result import Err, Result
from relctl.output.console import Style
from relctl.pipeline.model import RunContext, Trigger
from relctl.pipeline.variables import Overrides, resolve

if TYPE_CHECKING:
    from relctl.cli.context import CLIContext


T = TypeVar("T")
E = TypeVar("E")


def exit_on_error[T, E](
    result: Result[T, E],
    ctx: CLIContext,
    error_code: ErrorCode = ErrorCode.USER_ERROR,
) -> None:
    """Exit with ``error_code`` if result is Err, otherwise return.

    Expects error objects to have 'message' and optional 'hint' attributes.
    """
    if isinstance(result, Err):
        error = result.error
        message: str = getattr(error, "message", str(error))
        hint: str | None = getattr(error, "hint", None)
        ctx.console.error(message)
        if hint:
            ctx.console.print(f"hint: {hint}", Style.DIM)
        raise typer.Exit(code=int(error_code))


def exit_with_code(code: int) -> NoReturn:
    raise typer.Exit(code=code)


def env_default(*names: str, fallback: str = "") -> str:
    """First non-empty environment variable among ``names``."""
    for name in names:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return fallback


def run_context(
    ctx: CLIContext,
    *,
    trigger: Trigger,
    overrides: Overrides,
    branch: str | None,
    run_id: str | None,
    run_attempt: str | None,
    actor: str | None,
) -> RunContext:
    """Resolve a RunContext, defaulting run metadata from the CI environment."""
    triggering_branch = branch or env_default("GITHUB_HEAD_REF", "GITHUB_REF_NAME")
    if not triggering_branch and not overrides.holochain_source_branch.strip():
        ctx.console.error("no source branch: pass --branch or --holochain-source-branch")
        exit_with_code(int(ErrorCode.USER_ERROR))

    return resolve(
        trigger,
        overrides,
        triggering_branch=triggering_branch,
        run_id=run_id or env_default("GITHUB_RUN_ID", fallback="local"),
        run_attempt=run_attempt or env_default("GITHUB_RUN_NUMBER", fallback="1"),
        actor=actor or env_default("GITHUB_ACTOR") or None,
        repo_path=ctx.config.paths.repo,
        release_sh=ctx.config.paths.release_sh,
    )
