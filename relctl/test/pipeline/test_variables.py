from __future__ import annotations

from pathlib import Path

import pytest

from relctl.pipeline.model import Trigger
from relctl.pipeline.variables import Overrides, parse_flag, resolve


def _resolve(trigger: Trigger, overrides: Overrides | None = None):
    return resolve(
        trigger,
        overrides or Overrides(),
        triggering_branch="develop",
        run_id="42",
        repo_path=Path("/tmp/holochain_repo"),
        release_sh=Path("/tmp/holochain_release.sh"),
    )


@pytest.mark.parametrize(
    ("trigger", "dry_run", "debug"),
    [
        (Trigger.SCHEDULE, False, False),
        (Trigger.WORKFLOW_DISPATCH, True, True),
        (Trigger.PULL_REQUEST, True, False),
    ],
)
def test_trigger_defaults(trigger: Trigger, dry_run: bool, debug: bool) -> None:
    ctx = _resolve(trigger)

    assert ctx.dry_run is dry_run
    assert ctx.debug is debug
    assert ctx.skip_test is False
    assert ctx.force_cancel_in_progress is False
    assert ctx.holochain_source_branch == "develop"
    assert ctx.holochain_nixpkgs_source_branch == "develop"
    assert ctx.holonix_source_branch == "main"


def test_non_empty_overrides_win() -> None:
    ctx = _resolve(
        Trigger.SCHEDULE,
        Overrides(
            holochain_source_branch="release-x",
            holochain_nixpkgs_source_branch="feat",
            holonix_source_branch="next",
            dry_run="true",
            debug="yes",
            skip_test="1",
            force_cancel_in_progress="TRUE",
        ),
    )

    assert ctx.holochain_source_branch == "release-x"
    assert ctx.holochain_nixpkgs_source_branch == "feat"
    assert ctx.holonix_source_branch == "next"
    assert ctx.dry_run and ctx.debug and ctx.skip_test and ctx.force_cancel_in_progress


def test_explicit_false_overrides_trigger_default() -> None:
    ctx = _resolve(Trigger.WORKFLOW_DISPATCH, Overrides(dry_run="false", debug="no"))

    assert ctx.dry_run is False
    assert ctx.debug is False


def test_whitespace_override_is_treated_as_empty() -> None:
    ctx = _resolve(Trigger.SCHEDULE, Overrides(holochain_source_branch="  ", dry_run=" "))

    assert ctx.holochain_source_branch == "develop"
    assert ctx.dry_run is False


def test_resolve_is_pure() -> None:
    overrides = Overrides(dry_run="false", holonix_source_branch="x")
    first = _resolve(Trigger.WORKFLOW_DISPATCH, overrides)
    second = _resolve(Trigger.WORKFLOW_DISPATCH, overrides)

    assert first == second
    assert overrides == Overrides(dry_run="false", holonix_source_branch="x")


@pytest.mark.parametrize(
    ("value", "expected"),
    [("true", True), ("1", True), ("YES", True), ("false", False), ("0", False), ("maybe", False)],
)
def test_parse_flag(value: str, expected: bool) -> None:
    assert parse_flag(value) is expected


def test_release_intent_and_env() -> None:
    assert _resolve(Trigger.SCHEDULE).release_intent
    assert not _resolve(Trigger.PULL_REQUEST).release_intent

    env = _resolve(Trigger.SCHEDULE).as_env()
    assert env["HOLOCHAIN_REPO"] == "/tmp/holochain_repo"
    assert env["HOLOCHAIN_RELEASE_SH"] == "/tmp/holochain_release.sh"
    assert env["RELCTL_DRY_RUN"] == "false"
    assert env["RELCTL_RUN_ID"] == "42"
