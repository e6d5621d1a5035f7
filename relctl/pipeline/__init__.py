"""Release pipeline: variables, cache, matrix, finalize and reporting."""

from .errors import PipelineError, PipelineErrorKind
from .model import (
    MatrixCell,
    PipelineOutcome,
    PipelineState,
    Platform,
    RunContext,
    StageOutcome,
    StageResult,
    TestCommand,
    Trigger,
    Verdict,
)

__all__ = [
    # errors
    "PipelineError",
    "PipelineErrorKind",
    # model
    "MatrixCell",
    "PipelineOutcome",
    "PipelineState",
    "Platform",
    "RunContext",
    "StageOutcome",
    "StageResult",
    "TestCommand",
    "Trigger",
    "Verdict",
]
