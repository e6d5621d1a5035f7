from __future__ import annotations

import os
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType

import typer

from relctl.cli.context import CLIContext, build_context
from relctl.cli.commands._helpers import exit_with_code, run_context
from relctl.output.console import Style
from relctl.pipeline.cache import CacheStore
from relctl.pipeline.concurrency import RunSlot, group_for
from relctl.pipeline.debug import UptermDebugHook
from relctl.pipeline.finalize import Finalizer
from relctl.pipeline.host import GitHubReleaseHost
from relctl.pipeline.matrix import BuildMatrixScheduler
from relctl.pipeline.model import RunContext, Trigger
from relctl.pipeline.notifier import Notifier
from relctl.pipeline.prepare import ScriptPreparer
from relctl.pipeline.runner import ShellExecutor, StageRunner
from relctl.pipeline.service import ReleasePipeline
from relctl.pipeline.variables import Overrides


@contextmanager
def _cancel_on_signals(cancel: threading.Event) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, frame: FrameType | None) -> None:
        del frame
        typer.echo(f"received {signal.Signals(signum).name}; cancelling", err=True)
        cancel.set()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def build_pipeline(ctx: CLIContext, context: RunContext, cancel: threading.Event) -> ReleasePipeline:
    cfg = ctx.config
    console = ctx.console
    cache = CacheStore(cfg.paths.cache_dir)

    runner = StageRunner(cache=cache, executor=ShellExecutor(), console=console, cancel=cancel)
    host = GitHubReleaseHost(
        repo_path=context.repo_path,
        repo_slug=cfg.project.repo_slug,
        console=console,
        token=cfg.notify.github_token,
        env={**os.environ, **context.as_env()},
        cancel=cancel,
    )
    return ReleasePipeline(
        config=cfg,
        preparer=ScriptPreparer(command=cfg.release.prepare_command, console=console, cancel=cancel),
        scheduler=BuildMatrixScheduler(
            runner=runner,
            console=console,
            max_parallel=cfg.matrix.max_parallel,
        ),
        finalizer=Finalizer(host=host, project=cfg.project, steps=cfg.release, console=console),
        notifier=Notifier(
            http=ctx.http,
            config=cfg.notify,
            project=cfg.project,
            console=console,
            commit_sha=os.environ.get("GITHUB_SHA") or None,
        ),
        debug_hook=UptermDebugHook(
            command=cfg.debug.command,
            maintainers=cfg.debug.maintainers,
            console=console,
            cancel=cancel,
        ),
        cache=cache,
        console=console,
        cancel=cancel,
        slot=RunSlot(
            state_dir=cfg.paths.state_dir,
            group=group_for(context),
            run_id=context.run_id,
            console=console,
        ),
    )


def run(
    trigger: Trigger = typer.Option(Trigger.WORKFLOW_DISPATCH, "--trigger", help="Event class"),
    holochain_source_branch: str = typer.Option("", "--holochain-source-branch"),
    holochain_nixpkgs_source_branch: str = typer.Option("", "--holochain-nixpkgs-source-branch"),
    holonix_source_branch: str = typer.Option("", "--holonix-source-branch"),
    dry_run: str = typer.Option("", "--dry-run", help="true/false (default depends on trigger)"),
    debug: str = typer.Option("", "--debug", help="Open a debug session on failure"),
    skip_test: str = typer.Option("", "--skip-test", help="Skip the test commands"),
    force_cancel_in_progress: str = typer.Option(
        "", "--force-cancel-in-progress", help="Supersede a running pipeline of the same group"
    ),
    branch: str | None = typer.Option(None, "--branch", help="Triggering branch"),
    run_id: str | None = typer.Option(None, "--run-id"),
    run_attempt: str | None = typer.Option(None, "--run-attempt"),
    actor: str | None = typer.Option(None, "--actor"),
) -> None:
    """Run the release pipeline."""
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

    cancel = threading.Event()
    pipeline = build_pipeline(ctx, context, cancel)
    ctx.console.print(
        f"{context.trigger} run {context.run_id} on {context.holochain_source_branch}"
        + (" (dry-run)" if context.dry_run else ""),
        Style.DIM,
    )
    with _cancel_on_signals(cancel):
        result = pipeline.run(context)

    code = result.exit_code
    if code.is_success:
        ctx.console.success(f"pipeline {result.outcome.verdict}")
        return
    ctx.console.error(f"pipeline {result.outcome.verdict} ({code})")
    exit_with_code(int(code))
