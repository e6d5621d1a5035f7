from __future__ import annotations

import typer

from relctl.cli.context import build_context
from relctl.cli.commands._helpers import run_context
from relctl.pipeline.concurrency import cancel_in_progress, group_for
from relctl.pipeline.model import Trigger
from relctl.pipeline.variables import Overrides


def _flag(value: bool) -> str:
    return "true" if value else "false"


def vars_(
    trigger: Trigger = typer.Option(Trigger.WORKFLOW_DISPATCH, "--trigger", help="Event class"),
    holochain_source_branch: str = typer.Option("", "--holochain-source-branch"),
    holochain_nixpkgs_source_branch: str = typer.Option("", "--holochain-nixpkgs-source-branch"),
    holonix_source_branch: str = typer.Option("", "--holonix-source-branch"),
    dry_run: str = typer.Option("", "--dry-run"),
    debug: str = typer.Option("", "--debug"),
    skip_test: str = typer.Option("", "--skip-test"),
    force_cancel_in_progress: str = typer.Option("", "--force-cancel-in-progress"),
    branch: str | None = typer.Option(None, "--branch", help="Triggering branch"),
    run_id: str | None = typer.Option(None, "--run-id"),
    run_attempt: str | None = typer.Option(None, "--run-attempt"),
    actor: str | None = typer.Option(None, "--actor"),
) -> None:
    """Print the resolved run parameters."""
    ctx = build_context()
    context = run_context(
        ctx,
        trigger=trigger,
        overrides=Overrides(
            holochain_source_branch=holochain_source_branch,
            holochain_nixpkgs_source_branch=holochain_nixpkgs_source_branch,
            holonix_source_branch=holonix_source_branch,
            dry_run=dry_run,
            debug=debug,
            skip_test=skip_test,
            force_cancel_in_progress=force_cancel_in_progress,
        ),
        branch=branch,
        run_id=run_id,
        run_attempt=run_attempt,
        actor=actor,
    )

    rows = [
        ["trigger", str(context.trigger)],
        ["triggering_branch", context.triggering_branch],
        ["holochain_source_branch", context.holochain_source_branch],
        ["holochain_nixpkgs_source_branch", context.holochain_nixpkgs_source_branch],
        ["holonix_source_branch", context.holonix_source_branch],
        ["dry_run", _flag(context.dry_run)],
        ["debug", _flag(context.debug)],
        ["skip_test", _flag(context.skip_test)],
        ["force_cancel_in_progress", _flag(context.force_cancel_in_progress)],
        ["release_intent", _flag(context.release_intent)],
        ["run_id", context.run_id],
        ["run_attempt", context.run_attempt],
        ["actor", context.actor or "-"],
        ["repo_path", str(context.repo_path)],
        ["release_sh", str(context.release_sh)],
        ["concurrency_group", group_for(context)],
        ["cancel_in_progress", _flag(cancel_in_progress(context))],
    ]
    ctx.console.table("Run context", ["name", "value"], rows)
