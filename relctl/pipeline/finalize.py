"""Finalize: publish a tested release.

Steps run in a fixed order and the first failure stops the sequence. Steps
marked irreversible are skipped on dry runs; the release branch push and the
merge request still happen so that a dry run can be reviewed.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from relctl.core.result import Err, Ok, Result
from relctl.output.console import ConsoleProtocol, Style
from relctl.pipeline.config import ProjectConfig, ReleaseStepsConfig
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.host import PullRequest, ReleaseHost
from relctl.pipeline.model import PrepareOutput, RunContext

PUSH_MAIN = "push-main"
PUSH_RELEASE_BRANCH = "push-release-branch"
OPEN_PULL_REQUEST = "open-pull-request"
AUTO_MERGE = "auto-merge-and-approve"
PUBLISH = "publish"
PUSH_TAGS = "push-tags"
CREATE_RELEASE = "create-release"


def changelog_anchor(release_branch: str) -> str:
    """``release-20221031.101500`` -> ``20221031101500``."""
    return re.sub(r"(release-|\.)", "", release_branch)


def release_notes(changelog_url: str, release_branch: str) -> str:
    return (
        f"***Please read [this release's top-level CHANGELOG]"
        f"({changelog_url}#{changelog_anchor(release_branch)}) "
        "to see the full list of crates that were released together.***"
    )


@dataclass(frozen=True, slots=True)
class FinalizeStep:
    name: str
    irreversible: bool
    action: Callable[[], Result[None, PipelineError]]


@dataclass(frozen=True, slots=True)
class FinalizeReport:
    completed: tuple[str, ...]
    skipped: tuple[str, ...]
    failed_step: str | None = None
    error: PipelineError | None = None
    pull_request: PullRequest | None = None
    release_url: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed_step is None


class _Run:
    """Mutable state shared by the steps of one finalize run."""

    def __init__(self) -> None:
        self.pull_request: PullRequest | None = None
        self.release_url: str | None = None


class Finalizer:
    def __init__(
        self,
        *,
        host: ReleaseHost,
        project: ProjectConfig,
        steps: ReleaseStepsConfig,
        console: ConsoleProtocol,
    ) -> None:
        self._host = host
        self._project = project
        self._steps = steps
        self._console = console

    def plan(self, context: RunContext, prepared: PrepareOutput, state: _Run) -> list[FinalizeStep]:
        host = self._host
        cfg = self._steps
        main = self._project.main_branch

        def open_pr() -> Result[None, PipelineError]:
            opened = host.open_pull_request(
                head=prepared.release_branch,
                base=context.holochain_source_branch,
                title=f"Merge {prepared.release_branch} back into {context.holochain_source_branch}",
                body=cfg.pr_body,
                labels=cfg.pr_labels,
            )
            if isinstance(opened, Err):
                return opened
            state.pull_request = opened.value
            return Ok(None)

        def auto_merge() -> Result[None, PipelineError]:
            pr = state.pull_request
            if pr is None:
                return Err(PipelineError(kind="finalize_failed", message="no pull request to merge"))
            merged = host.enable_auto_merge(pr.number)
            if isinstance(merged, Err):
                return merged
            return host.approve(pr.number)

        def create_release() -> Result[None, PipelineError]:
            created = host.create_release(
                tag=prepared.tag,
                title=f"{self._project.name} {prepared.version}",
                notes=release_notes(cfg.changelog_url, prepared.release_branch),
            )
            if isinstance(created, Err):
                return created
            state.release_url = created.value or None
            return Ok(None)

        return [
            FinalizeStep(PUSH_MAIN, True, lambda: host.push_branch(main)),
            FinalizeStep(
                PUSH_RELEASE_BRANCH,
                False,
                lambda: host.push_branch(prepared.release_branch, checkout=True),
            ),
            FinalizeStep(OPEN_PULL_REQUEST, False, open_pr),
            FinalizeStep(AUTO_MERGE, True, auto_merge),
            FinalizeStep(PUBLISH, True, lambda: host.publish(cfg.publish_command)),
            FinalizeStep(PUSH_TAGS, True, lambda: host.push_tags(main)),
            FinalizeStep(CREATE_RELEASE, True, create_release),
        ]

    def run(self, context: RunContext, prepared: PrepareOutput) -> FinalizeReport:
        self._console.header(f"Finalize {prepared.tag}" + (" (dry-run)" if context.dry_run else ""))
        state = _Run()
        completed: list[str] = []
        skipped: list[str] = []

        for step in self.plan(context, prepared, state):
            if step.irreversible and context.dry_run:
                self._console.print(f"{step.name}: skipped (dry-run)", Style.DIM)
                skipped.append(step.name)
                continue

            result = step.action()
            if isinstance(result, Err):
                self._console.error(f"{step.name}: {result.error.pretty()}")
                return FinalizeReport(
                    completed=tuple(completed),
                    skipped=tuple(skipped),
                    failed_step=step.name,
                    error=result.error,
                    pull_request=state.pull_request,
                    release_url=state.release_url,
                )
            self._console.success(step.name)
            completed.append(step.name)

        return FinalizeReport(
            completed=tuple(completed),
            skipped=tuple(skipped),
            pull_request=state.pull_request,
            release_url=state.release_url,
        )
