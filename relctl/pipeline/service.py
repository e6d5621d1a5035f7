"""Top-level release pipeline.

States::

    init -> prepared -> tested -> finalized -> reported
      \\         \\          \\          \\
       `---------`----------`----------`--> aborted -> reported

Reporting always happens, including after an abort or a cancellation.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace

from relctl.core.errors import ErrorCode
from relctl.core.result import Err, Ok, Result
from relctl.output.console import ConsoleProtocol, Style
from relctl.pipeline.cache import CacheStore
from relctl.pipeline.concurrency import RunSlot, cancel_in_progress
from relctl.pipeline.config import PipelineConfig
from relctl.pipeline.debug import DebugHook
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.finalize import FinalizeReport, Finalizer
from relctl.pipeline.fsm import FINISH, StepOutcome, advance, run_state_machine
from relctl.pipeline.matrix import (
    BuildMatrixScheduler,
    MatrixReport,
    build_matrix,
    exclusion_predicate,
)
from relctl.pipeline.model import (
    PipelineOutcome,
    PipelineState,
    PrepareOutput,
    RunContext,
    Trigger,
)
from relctl.pipeline.notifier import Notifier, NotifyReport
from relctl.pipeline.prepare import Preparer

PREPARE_STEP = "prepare"
TEST_STEP = "test"


@dataclass(frozen=True, slots=True)
class _RunState:
    outcome: PipelineOutcome
    prepared: PrepareOutput | None = None


@dataclass
class PipelineRun:
    """Everything a caller may want to inspect after a run."""

    outcome: PipelineOutcome
    matrix: MatrixReport | None = None
    finalize: FinalizeReport | None = None
    notify: NotifyReport | None = None
    errors: list[PipelineError] = field(default_factory=list)
    transitions: list[tuple[PipelineState, PipelineState]] = field(default_factory=list)

    @property
    def exit_code(self) -> ErrorCode:
        return exit_code_for(self.outcome)


def exit_code_for(outcome: PipelineOutcome) -> ErrorCode:
    if outcome.cancelled:
        return ErrorCode.CANCELLED
    if not outcome.prepare_ok:
        return ErrorCode.SETUP_ERROR
    if not outcome.test_ok:
        return ErrorCode.TEST_FAILURE
    if outcome.failed_step is not None:
        return ErrorCode.FINALIZE_FAILURE
    return ErrorCode.OK


def prepare_cache_key(config: PipelineConfig, context: RunContext) -> str:
    return f"{config.matrix.primary}-prepare-{context.run_id}"


class ReleasePipeline:
    def __init__(
        self,
        *,
        config: PipelineConfig,
        preparer: Preparer,
        scheduler: BuildMatrixScheduler,
        finalizer: Finalizer,
        notifier: Notifier,
        debug_hook: DebugHook,
        cache: CacheStore,
        console: ConsoleProtocol,
        cancel: threading.Event | None = None,
        slot: RunSlot | None = None,
    ) -> None:
        self._config = config
        self._preparer = preparer
        self._scheduler = scheduler
        self._finalizer = finalizer
        self._notifier = notifier
        self._debug_hook = debug_hook
        self._cache = cache
        self._console = console
        self._cancel = cancel or threading.Event()
        self._slot = slot

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def run(self, context: RunContext) -> PipelineRun:
        initial = PipelineOutcome(release_intent=context.release_intent, dry_run=context.dry_run)
        run = PipelineRun(outcome=initial)

        if self._slot is not None:
            claimed = self._slot.acquire(take_over=cancel_in_progress(context), cancel=self._cancel)
            if isinstance(claimed, Err):
                run.errors.append(claimed.error)
                self._cancel.set()
            else:
                self._slot.watch(self._cancel)

        try:
            return self._drive(context, run)
        finally:
            if self._slot is not None:
                self._slot.release()

    def _drive(self, context: RunContext, run: PipelineRun) -> PipelineRun:
        def on_transition(before: _RunState, after: _RunState) -> None:
            run.transitions.append((before.outcome.state, after.outcome.state))
            run.outcome = after.outcome
            self._console.print(f"state: {before.outcome.state} -> {after.outcome.state}", Style.DIM)

        def init(state: _RunState) -> Result[StepOutcome[_RunState], PipelineError]:
            if self._cancel.is_set():
                return Ok(advance(self._abort(state, None, cancelled=True)))
            return Ok(advance(self._prepare(context, state, run)))

        def prepared(state: _RunState) -> Result[StepOutcome[_RunState], PipelineError]:
            if self._cancel.is_set():
                return Ok(advance(self._abort(state, TEST_STEP, cancelled=True)))
            return Ok(advance(self._test(context, state, run)))

        def tested(state: _RunState) -> Result[StepOutcome[_RunState], PipelineError]:
            if self._should_finalize(state):
                if self._cancel.is_set():
                    return Ok(advance(self._abort(state, None, cancelled=True)))
                return Ok(advance(self._finalize(context, state, run)))
            return Ok(advance(self._report(context, state, run)))

        def finalized(state: _RunState) -> Result[StepOutcome[_RunState], PipelineError]:
            return Ok(advance(self._report(context, state, run)))

        def aborted(state: _RunState) -> Result[StepOutcome[_RunState], PipelineError]:
            self._maybe_debug(context, state, run)
            return Ok(advance(self._report(context, state, run)))

        def reported(state: _RunState) -> Result[StepOutcome[_RunState], PipelineError]:
            del state
            return Ok(FINISH)

        result = run_state_machine(
            initial_state=_RunState(outcome=run.outcome),
            get_step=lambda s: str(s.outcome.state),
            handlers={
                PipelineState.INIT: init,
                PipelineState.PREPARED: prepared,
                PipelineState.TESTED: tested,
                PipelineState.FINALIZED: finalized,
                PipelineState.ABORTED: aborted,
                PipelineState.REPORTED: reported,
            },
            on_transition=on_transition,
        )
        if isinstance(result, Err):
            run.errors.append(result.error)
        else:
            run.outcome = result.value.outcome
        return run

    def _abort(self, state: _RunState, step: str | None, *, cancelled: bool = False) -> _RunState:
        outcome = replace(
            state.outcome,
            state=PipelineState.ABORTED,
            failed_step=step or state.outcome.failed_step,
            cancelled=state.outcome.cancelled or cancelled,
        )
        return replace(state, outcome=outcome)

    def _prepare(self, context: RunContext, state: _RunState, run: PipelineRun) -> _RunState:
        prepared = self._preparer.prepare(context)
        if isinstance(prepared, Err):
            run.errors.append(prepared.error)
            self._console.error(prepared.error.pretty())
            cancelled = prepared.error.kind == "cancelled" or self._cancel.is_set()
            return self._abort(state, PREPARE_STEP, cancelled=cancelled)

        out = prepared.value
        self._save_prepare_cache(context)
        outcome = replace(
            state.outcome,
            state=PipelineState.PREPARED,
            prepare_ok=True,
            releasable_crates=out.releasable_crates,
            version=out.version,
            tag=out.tag,
        )
        return _RunState(outcome=outcome, prepared=out)

    def _save_prepare_cache(self, context: RunContext) -> None:
        paths: list[str] = []
        for command in self._config.matrix.test_commands:
            for p in command.cache_paths:
                if p not in paths:
                    paths.append(p)
        if not paths:
            return
        key = prepare_cache_key(self._config, context)
        saved = self._cache.save(key, [(context.repo_path / p).absolute() for p in paths])
        if isinstance(saved, Err):
            self._console.warning(saved.error.pretty())
        else:
            self._console.print(f"saved cache {key}", Style.DIM)

    def _test(self, context: RunContext, state: _RunState, run: PipelineRun) -> _RunState:
        if context.trigger is Trigger.PULL_REQUEST:
            self._console.info("pull request run: test matrix skipped")
            return replace(state, outcome=replace(state.outcome, state=PipelineState.TESTED, test_ok=True))

        matrix_cfg = self._config.matrix
        cells = build_matrix(
            platforms=matrix_cfg.platforms,
            commands=matrix_cfg.test_commands,
            exclude=exclusion_predicate(matrix_cfg.exclusions),
            trigger=context.trigger,
            primary=matrix_cfg.primary,
        )
        if isinstance(cells, Err):
            run.errors.append(cells.error)
            self._console.error(cells.error.pretty())
            return self._abort(state, TEST_STEP)

        report = self._scheduler.run(cells.value, context)
        run.matrix = report
        outcome = replace(state.outcome, results=report.results, test_ok=report.ok)
        if report.cancelled or self._cancel.is_set():
            return self._abort(replace(state, outcome=replace(outcome, test_ok=False)), TEST_STEP, cancelled=True)
        if not report.ok:
            return self._abort(replace(state, outcome=outcome), TEST_STEP)
        return replace(state, outcome=replace(outcome, state=PipelineState.TESTED))

    def _should_finalize(self, state: _RunState) -> bool:
        o = state.outcome
        return o.release_intent and o.releasable_crates and o.test_ok and state.prepared is not None

    def _finalize(self, context: RunContext, state: _RunState, run: PipelineRun) -> _RunState:
        if state.prepared is None:
            return self._abort(state, None)
        report = self._finalizer.run(context, state.prepared)
        run.finalize = report
        if not report.ok:
            if report.error is not None:
                run.errors.append(report.error)
            cancelled = report.error is not None and report.error.kind == "cancelled"
            return self._abort(state, report.failed_step, cancelled=cancelled or self._cancel.is_set())
        return replace(
            state,
            outcome=replace(state.outcome, state=PipelineState.FINALIZED, finalize_ok=True),
        )

    def _maybe_debug(self, context: RunContext, state: _RunState, run: PipelineRun) -> None:
        o = state.outcome
        if not context.debug or o.cancelled or o.failed_step in (None, PREPARE_STEP):
            return
        opened = self._debug_hook.open(context, reason=f"{o.failed_step} failed")
        if isinstance(opened, Err):
            run.errors.append(opened.error)
            self._console.warning(opened.error.pretty())

    def _report(self, context: RunContext, state: _RunState, run: PipelineRun) -> _RunState:
        self._console.header(f"Verdict: {state.outcome.verdict}")
        run.notify = self._notifier.notify(state.outcome, run_id=context.run_id)
        return replace(state, outcome=replace(state.outcome, state=PipelineState.REPORTED))
