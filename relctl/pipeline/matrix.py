"""Build/test matrix: cell construction and parallel execution."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from relctl.core.result import Err, Ok, Result
from relctl.output.console import ConsoleProtocol
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.model import (
    ExclusionRule,
    MatrixCell,
    Platform,
    RunContext,
    StageOutcome,
    StageResult,
    TestCommand,
    Trigger,
)
from relctl.pipeline.runner import StageRunner

type ExcludePredicate = Callable[[Platform, TestCommand, Trigger], bool]


def exclusion_predicate(rules: Sequence[ExclusionRule]) -> ExcludePredicate:
    """Turn declarative exclusion rules into a predicate."""
    frozen = tuple(rules)

    def exclude(platform: Platform, command: TestCommand, trigger: Trigger) -> bool:
        return any(rule.matches(platform, command, trigger) for rule in frozen)

    return exclude


def build_matrix(
    *,
    platforms: Sequence[Platform],
    commands: Sequence[TestCommand],
    exclude: ExcludePredicate,
    trigger: Trigger,
    primary: Platform,
) -> Result[list[MatrixCell], PipelineError]:
    missing = [
        f"{c.name}:{p}" for c in commands for p in platforms if c.attempts_for(p) is None
    ]
    if missing:
        return Err(
            PipelineError(
                kind="invalid_config",
                message="max_attempts is missing platform entries",
                hint=", ".join(missing),
            )
        )

    names = [c.name for c in commands]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        return Err(
            PipelineError(
                kind="invalid_config",
                message=f"duplicate test command names: {', '.join(duplicates)}",
            )
        )

    cells = [
        MatrixCell(platform=p, command=c, primary=p == primary)
        for p in platforms
        for c in commands
        if not exclude(p, c, trigger)
    ]
    return Ok(cells)


@dataclass(frozen=True, slots=True)
class MatrixReport:
    results: tuple[StageResult, ...]

    @property
    def ok(self) -> bool:
        return all(not r.fails_pipeline for r in self.results)

    @property
    def cancelled(self) -> bool:
        return any(r.outcome is StageOutcome.CANCELLED for r in self.results)

    def failed(self) -> list[StageResult]:
        return [r for r in self.results if r.fails_pipeline]


class BuildMatrixScheduler:
    """Runs every cell concurrently; one failing cell never stops the others."""

    def __init__(
        self,
        *,
        runner: StageRunner,
        console: ConsoleProtocol,
        max_parallel: int | None = None,
    ) -> None:
        self._runner = runner
        self._console = console
        self._max_parallel = max_parallel

    def run(self, cells: Sequence[MatrixCell], context: RunContext) -> MatrixReport:
        if not cells:
            self._console.warning("matrix is empty")
            return MatrixReport(results=())

        workers = self._max_parallel or len(cells)
        self._console.header(f"Test matrix ({len(cells)} cells)")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="relctl-cell") as pool:
            futures = [pool.submit(self._run_cell, cell, context) for cell in cells]
            results = tuple(f.result() for f in futures)

        report = MatrixReport(results=results)
        self._render(report)
        return report

    def _run_cell(self, cell: MatrixCell, context: RunContext) -> StageResult:
        result = self._runner.run(cell, context)
        if isinstance(result, Ok):
            return result.value

        # Setup errors are never tolerated, even on secondary platforms.
        error = result.error
        self._console.error(f"{cell.cell_id}: {error.pretty()}")
        return StageResult(
            cell_id=cell.cell_id,
            attempt=0,
            outcome=StageOutcome.FAILURE,
            duration_seconds=0.0,
            tolerated=False,
            detail=f"{error.kind}: {error.message}",
        )

    def _render(self, report: MatrixReport) -> None:
        rows: list[list[str]] = []
        for r in report.results:
            status = str(r.outcome)
            if not r.ok and r.tolerated:
                status += " (tolerated)"
            rows.append(
                [
                    r.cell_id,
                    status,
                    str(r.attempt),
                    f"{r.duration_seconds:.1f}s",
                    r.cache_hit or "-",
                ]
            )
        self._console.table(
            "Matrix results",
            ["cell", "outcome", "attempts", "duration", "cache"],
            rows,
        )
