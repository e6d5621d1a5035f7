"""Execution of one matrix cell.

A cell goes through: cache restore, build-only step, test attempts with
retry, cache save. Attempts follow an explicit per-stage state machine
(:class:`StageTask`).
"""

from __future__ import annotations

import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Protocol

from relctl.core.result import Err, Ok, Result
from relctl.output.console import ConsoleProtocol, Style
from relctl.platform.process import ProcessError
from relctl.platform.process import run as run_process
from relctl.pipeline.cache import CacheStore
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.model import (
    AttemptResult,
    MatrixCell,
    RunContext,
    StageOutcome,
    StageResult,
)
from relctl.pipeline.timeouts import BUILD_ONLY_TIMEOUT_SECONDS

BUILD_ONLY_ENV: Mapping[str, str] = {
    "CARGO_TEST_ARGS": "--no-run",
    "CARGO_NEXTEST_ARGS": "list",
}


class StageState(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"
    DONE = "done"


_TRANSITIONS: dict[StageState, frozenset[StageState]] = {
    StageState.PENDING: frozenset({StageState.RUNNING, StageState.DONE}),
    StageState.RUNNING: frozenset({StageState.SUCCESS, StageState.FAILED}),
    StageState.SUCCESS: frozenset({StageState.DONE}),
    StageState.FAILED: frozenset({StageState.RETRYING, StageState.DONE}),
    StageState.RETRYING: frozenset({StageState.RUNNING, StageState.DONE}),
    StageState.DONE: frozenset(),
}


def _pending_history() -> list[StageState]:
    return [StageState.PENDING]


@dataclass
class StageTask:
    cell: MatrixCell
    state: StageState = StageState.PENDING
    history: list[StageState] = field(default_factory=_pending_history)

    def transition(self, to: StageState) -> None:
        if to not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"{self.cell.cell_id}: illegal stage transition {self.state} -> {to}")
        self.state = to
        self.history.append(to)


def restore_key(cell: MatrixCell, context: RunContext) -> str:
    return f"{cell.platform}-{cell.command.name}-{context.run_id}"


def fallback_keys(cell: MatrixCell, context: RunContext) -> list[str]:
    return [
        f"{cell.platform}-{cell.command.name}",
        f"{cell.platform}-prepare-{context.run_id}",
        f"{cell.platform}-prepare",
    ]


def save_key(cell: MatrixCell, context: RunContext) -> str:
    return f"{cell.platform}-{cell.command.name}-{context.run_id}-{context.run_attempt}"


def cache_paths(cell: MatrixCell, context: RunContext) -> list[Path]:
    return [(context.repo_path / p).absolute() for p in cell.command.cache_paths]


class Executor(Protocol):
    """Runs a cell's command on its platform."""

    def execute(
        self,
        cell: MatrixCell,
        context: RunContext,
        *,
        extra_env: Mapping[str, str],
        timeout: float,
        cancel: threading.Event | None,
    ) -> Result[str, ProcessError]: ...


class ShellExecutor:
    """Runs commands with bash on the local host.

    The release environment script is sourced first when it exists, and the
    command runs inside the release checkout.
    """

    def execute(
        self,
        cell: MatrixCell,
        context: RunContext,
        *,
        extra_env: Mapping[str, str],
        timeout: float,
        cancel: threading.Event | None,
    ) -> Result[str, ProcessError]:
        script = (
            "set -e\n"
            'if [ -f "$HOLOCHAIN_RELEASE_SH" ]; then . "$HOLOCHAIN_RELEASE_SH"; fi\n'
            f"{cell.command.run}\n"
        )
        env = {**os.environ, **context.as_env(), **extra_env}
        cwd = context.repo_path if context.repo_path.is_dir() else Path.cwd()
        return run_process(["bash", "-c", script], cwd=cwd, env=env, timeout=timeout, cancel=cancel)


def _outcome_of(error: ProcessError) -> StageOutcome:
    if error.timed_out:
        return StageOutcome.TIMED_OUT
    if error.cancelled:
        return StageOutcome.CANCELLED
    return StageOutcome.FAILURE


def _tail(error: ProcessError, lines: int = 3) -> str:
    text = (error.stderr or error.stdout).strip()
    if not text:
        return str(error)
    return "\n".join(text.splitlines()[-lines:])


class StageRunner:
    def __init__(
        self,
        *,
        cache: CacheStore,
        executor: Executor,
        console: ConsoleProtocol,
        cancel: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache = cache
        self._executor = executor
        self._console = console
        self._cancel = cancel
        self._clock = clock

    def run(self, cell: MatrixCell, context: RunContext) -> Result[StageResult, PipelineError]:
        command = cell.command
        label = cell.cell_id
        max_attempts = command.attempts_for(cell.platform)
        if max_attempts is None or max_attempts < 1:
            return Err(
                PipelineError(
                    kind="invalid_config",
                    message=f"{label}: no max_attempts for platform {cell.platform}",
                )
            )

        started = self._clock()
        cache_hit: str | None = None
        if command.restores_cache:
            restored = self._cache.restore(
                restore_key(cell, context),
                fallback_keys(cell, context),
                cache_paths(cell, context),
                required=cell.primary,
            )
            if isinstance(restored, Err):
                return restored
            cache_hit = restored.value.matched_key
            self._console.print(f"{label}: cache {restored.value.summary}", Style.DIM)

        task = StageTask(cell)
        attempts: list[AttemptResult] = []
        outcome = StageOutcome.SUCCESS
        detail: str | None = None

        if command.restores_cache:
            task.transition(StageState.RUNNING)
            built = self._execute(cell, context, BUILD_ONLY_ENV, BUILD_ONLY_TIMEOUT_SECONDS)
            if isinstance(built, Err):
                outcome = _outcome_of(built.error)
                detail = f"build-only step failed: {_tail(built.error)}"
                task.transition(StageState.FAILED)
            elif context.skip_test:
                task.transition(StageState.SUCCESS)

        if outcome is StageOutcome.SUCCESS and not context.skip_test:
            outcome, detail = self._attempts(task, context, max_attempts, attempts)

        if task.state is not StageState.DONE:
            task.transition(StageState.DONE)

        if command.saves_cache and not context.skip_test:
            saved = self._cache.save(save_key(cell, context), cache_paths(cell, context))
            if isinstance(saved, Err):
                self._console.warning(f"{label}: {saved.error.pretty()}")

        result = StageResult(
            cell_id=label,
            attempt=len(attempts),
            outcome=outcome,
            duration_seconds=self._clock() - started,
            tolerated=cell.tolerated,
            attempts=tuple(attempts),
            detail=detail,
            cache_hit=cache_hit,
        )
        self._report(result)
        return Ok(result)

    def _attempts(
        self,
        task: StageTask,
        context: RunContext,
        max_attempts: int,
        attempts: list[AttemptResult],
    ) -> tuple[StageOutcome, str | None]:
        cell = task.cell
        timeout = cell.command.timeout_minutes * 60.0
        while True:
            if task.state is not StageState.RUNNING:
                task.transition(StageState.RUNNING)

            attempt = len(attempts) + 1
            t0 = self._clock()
            result = self._execute(cell, context, {}, timeout)
            elapsed = self._clock() - t0

            if isinstance(result, Ok):
                attempts.append(AttemptResult(attempt, StageOutcome.SUCCESS, elapsed))
                task.transition(StageState.SUCCESS)
                return StageOutcome.SUCCESS, None

            outcome = _outcome_of(result.error)
            detail = _tail(result.error)
            attempts.append(AttemptResult(attempt, outcome, elapsed, detail))
            task.transition(StageState.FAILED)
            self._console.print(
                f"{cell.cell_id}: attempt {attempt}/{max_attempts} {outcome}", Style.DIM
            )

            if outcome is StageOutcome.CANCELLED or attempt >= max_attempts:
                return outcome, detail
            task.transition(StageState.RETRYING)

    def _execute(
        self,
        cell: MatrixCell,
        context: RunContext,
        extra_env: Mapping[str, str],
        timeout: float,
    ) -> Result[str, ProcessError]:
        return self._executor.execute(
            cell,
            context,
            extra_env=extra_env,
            timeout=timeout,
            cancel=self._cancel,
        )

    def _report(self, result: StageResult) -> None:
        if result.ok:
            self._console.success(f"{result.cell_id} ({result.attempt} attempt(s))")
        elif result.tolerated:
            self._console.warning(f"{result.cell_id}: {result.outcome} (tolerated)")
        else:
            self._console.error(f"{result.cell_id}: {result.outcome}")
