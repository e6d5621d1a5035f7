from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path


class Trigger(StrEnum):
    """Event class that started a pipeline run."""

    SCHEDULE = "schedule"
    WORKFLOW_DISPATCH = "workflow_dispatch"
    PULL_REQUEST = "pull_request"

    @property
    def intends_release(self) -> bool:
        # Peer-review runs only validate; they never push or publish.
        return self is not Trigger.PULL_REQUEST


class Platform(StrEnum):
    UBUNTU = "ubuntu-latest"
    MACOS = "macos-latest"


@dataclass(frozen=True, slots=True)
class RunContext:
    """Resolved, read-only parameters of one pipeline run."""

    trigger: Trigger
    holochain_source_branch: str
    holochain_nixpkgs_source_branch: str
    holonix_source_branch: str
    dry_run: bool
    debug: bool
    skip_test: bool
    force_cancel_in_progress: bool
    run_id: str
    run_attempt: str
    repo_path: Path
    release_sh: Path
    actor: str | None = None
    triggering_branch: str = ""

    @property
    def release_intent(self) -> bool:
        return self.trigger.intends_release

    def as_env(self) -> dict[str, str]:
        """Variables exported to every command the pipeline runs."""
        return {
            "HOLOCHAIN_REPO": str(self.repo_path),
            "HOLOCHAIN_RELEASE_SH": str(self.release_sh),
            "HOLOCHAIN_SOURCE_BRANCH": self.holochain_source_branch,
            "HOLOCHAIN_NIXPKGS_SOURCE_BRANCH": self.holochain_nixpkgs_source_branch,
            "HOLONIX_SOURCE_BRANCH": self.holonix_source_branch,
            "RELCTL_DRY_RUN": str(self.dry_run).lower(),
            "RELCTL_RUN_ID": self.run_id,
            "RELCTL_RUN_ATTEMPT": self.run_attempt,
        }


@dataclass(frozen=True, slots=True)
class TestCommand:
    """One test suite of the build/test matrix."""

    __test__ = False  # not a pytest class

    name: str
    run: str
    timeout_minutes: int
    max_attempts: Mapping[Platform, int]
    restores_cache: bool = False
    saves_cache: bool = False
    ignore_error_on_secondary_platform: bool = False
    # Relative paths are resolved against RunContext.repo_path.
    cache_paths: tuple[str, ...] = ()

    def attempts_for(self, platform: Platform) -> int | None:
        return self.max_attempts.get(platform)


@dataclass(frozen=True, slots=True)
class MatrixCell:
    platform: Platform
    command: TestCommand
    primary: bool

    @property
    def cell_id(self) -> str:
        return f"{self.platform}/{self.command.name}"

    @property
    def tolerated(self) -> bool:
        return not self.primary and self.command.ignore_error_on_secondary_platform


@dataclass(frozen=True, slots=True)
class ExclusionRule:
    """Matrix exclusion; a field left as None matches anything."""

    trigger: Trigger | None = None
    platform: Platform | None = None
    test: str | None = None

    def matches(self, platform: Platform, command: TestCommand, trigger: Trigger) -> bool:
        if self.trigger is not None and self.trigger != trigger:
            return False
        if self.platform is not None and self.platform != platform:
            return False
        if self.test is not None and self.test != command.name:
            return False
        return True


class StageOutcome(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class AttemptResult:
    attempt: int
    outcome: StageOutcome
    duration_seconds: float
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class StageResult:
    cell_id: str
    attempt: int
    outcome: StageOutcome
    duration_seconds: float
    tolerated: bool
    attempts: tuple[AttemptResult, ...] = ()
    detail: str | None = None
    cache_hit: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is StageOutcome.SUCCESS

    @property
    def fails_pipeline(self) -> bool:
        return not self.ok and not self.tolerated


@dataclass(frozen=True, slots=True)
class PrepareOutput:
    releasable_crates: bool
    version: str
    tag: str
    release_branch: str


class PipelineState(StrEnum):
    INIT = "init"
    PREPARED = "prepared"
    TESTED = "tested"
    FINALIZED = "finalized"
    REPORTED = "reported"
    ABORTED = "aborted"


class Verdict(StrEnum):
    SUCCESS = "success"
    NO_CHANGES = "no changes to release"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    """Aggregate accumulated stage by stage and consumed by the notifier."""

    release_intent: bool
    dry_run: bool
    prepare_ok: bool = False
    test_ok: bool = False
    finalize_ok: bool = False
    releasable_crates: bool = False
    version: str = ""
    tag: str = ""
    state: PipelineState = PipelineState.INIT
    failed_step: str | None = None
    cancelled: bool = False
    results: tuple[StageResult, ...] = field(default_factory=tuple)

    @property
    def verdict(self) -> Verdict:
        if self.cancelled or not self.prepare_ok:
            return Verdict.FAILURE
        # Nothing to release is reported as such even when tests failed.
        if self.release_intent and not self.releasable_crates:
            return Verdict.NO_CHANGES
        if not self.test_ok:
            return Verdict.FAILURE
        if not self.release_intent or self.finalize_ok:
            return Verdict.SUCCESS
        return Verdict.FAILURE
