"""Generic step loop for state-machine driven flows."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TypeVar

from relctl.core.result import Err, Ok, Result
from relctl.pipeline.errors import PipelineError

S = TypeVar("S")


@dataclass(frozen=True, slots=True)
class StepAdvance[S]:
    state: S


@dataclass(frozen=True, slots=True)
class StepFinish:
    pass


StepOutcome = StepAdvance[S] | StepFinish
StepHandler = Callable[[S], Result[StepOutcome[S], PipelineError]]
OnTransition = Callable[[S, S], None]
GetStep = Callable[[S], str]


FINISH = StepFinish()


def advance[S](state: S) -> StepAdvance[S]:
    return StepAdvance(state=state)


def run_state_machine(
    *,
    initial_state: S,
    get_step: GetStep[S],
    handlers: Mapping[str, StepHandler[S]],
    on_transition: OnTransition[S] | None = None,
    max_steps: int = 64,
) -> Result[S, PipelineError]:
    """Drive ``handlers`` until one finishes; return the last state.

    ``get_step`` maps a state to the handler key. A handler returning
    ``Err`` stops the loop with that error.
    """
    current = initial_state

    for _ in range(max_steps):
        step = get_step(current)
        handler = handlers.get(step)
        if handler is None:
            return Err(PipelineError(kind="invalid_config", message=f"no handler for step: {step}"))

        outcome = handler(current)
        if isinstance(outcome, Err):
            return outcome

        if isinstance(outcome.value, StepFinish):
            return Ok(current)

        previous = current
        current = outcome.value.state
        if on_transition is not None:
            on_transition(previous, current)

    return Err(PipelineError(kind="invalid_config", message=f"state machine did not finish in {max_steps} steps"))
