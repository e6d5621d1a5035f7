"""Error payload for the release pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

PipelineErrorKind = Literal[
    "setup_failed",
    "cache_required_missing",
    "execution_failed",
    "timed_out",
    "prepare_failed",
    "finalize_failed",
    "notify_failed",
    "invalid_config",
    "cancelled",
]


@dataclass(frozen=True, slots=True)
class PipelineError:
    """Canonical pipeline error.

    ``kind`` classifies the failure for exit-code mapping; ``hint`` carries
    the most useful detail (usually the tail of a command's stderr).
    """

    kind: PipelineErrorKind
    message: str
    hint: str | None = None

    def pretty(self) -> str:
        if self.hint:
            return f"{self.message} (hint: {self.hint})"
        return self.message
