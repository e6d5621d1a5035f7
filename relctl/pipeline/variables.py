"""Resolution of run parameters from trigger type and manual overrides.

Every field is defaulted independently; a non-empty override always wins.
The result is a frozen :class:`RunContext` handed to every component.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from relctl.pipeline.config import (
    DEFAULT_HOLONIX_BRANCH,
    DEFAULT_NIXPKGS_BRANCH,
    HOLOCHAIN_RELEASE_SH,
    HOLOCHAIN_REPO,
)
from relctl.pipeline.model import RunContext, Trigger

_TRUE_VALUES = frozenset({"true", "1", "yes"})


@dataclass(frozen=True, slots=True)
class Overrides:
    """Manual dispatch inputs; empty strings mean "not given"."""

    holochain_source_branch: str = ""
    holochain_nixpkgs_source_branch: str = ""
    holonix_source_branch: str = ""
    dry_run: str = ""
    debug: str = ""
    skip_test: str = ""
    force_cancel_in_progress: str = ""


def parse_flag(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _pick(override: str, default: str) -> str:
    value = override.strip()
    return value if value else default


def _flag(override: str, default: bool) -> bool:
    if override.strip():
        return parse_flag(override)
    return default


def resolve(
    trigger: Trigger,
    overrides: Overrides,
    *,
    triggering_branch: str,
    run_id: str,
    run_attempt: str = "1",
    actor: str | None = None,
    repo_path: Path = HOLOCHAIN_REPO,
    release_sh: Path = HOLOCHAIN_RELEASE_SH,
) -> RunContext:
    """Compute the effective run parameters. Pure and total."""
    return RunContext(
        trigger=trigger,
        holochain_source_branch=_pick(overrides.holochain_source_branch, triggering_branch),
        holochain_nixpkgs_source_branch=_pick(
            overrides.holochain_nixpkgs_source_branch, DEFAULT_NIXPKGS_BRANCH
        ),
        holonix_source_branch=_pick(overrides.holonix_source_branch, DEFAULT_HOLONIX_BRANCH),
        # Only the scheduled run releases for real unless told otherwise.
        dry_run=_flag(overrides.dry_run, trigger is not Trigger.SCHEDULE),
        debug=_flag(
            overrides.debug,
            trigger not in (Trigger.SCHEDULE, Trigger.PULL_REQUEST),
        ),
        skip_test=_flag(overrides.skip_test, False),
        force_cancel_in_progress=_flag(overrides.force_cancel_in_progress, False),
        run_id=run_id,
        run_attempt=run_attempt,
        repo_path=repo_path,
        release_sh=release_sh,
        actor=actor,
        triggering_branch=triggering_branch.strip(),
    )
