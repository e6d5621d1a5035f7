from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from pathlib import Path

from relctl.core.errors import ErrorCode
from relctl.core.result import Err, Ok
from relctl.output.console import MockConsole
from relctl.platform.http import MockHttpClient
from relctl.pipeline.cache import CacheStore
from relctl.pipeline.concurrency import RunSlot
from relctl.pipeline.config import CHAT_CHANNEL_CI, MatrixConfig, NotifyConfig, PipelineConfig
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.finalize import Finalizer
from relctl.pipeline.matrix import BuildMatrixScheduler
from relctl.pipeline.model import PipelineState, PrepareOutput, RunContext, Trigger, Verdict
from relctl.pipeline.notifier import GITHUB_API_URL, Notifier
from relctl.pipeline.runner import StageRunner
from relctl.pipeline.service import PipelineRun, ReleasePipeline, exit_code_for
from relctl.pipeline.variables import Overrides

from ._support import FakeDebugHook, FakeExecutor, FakeHost, FakePreparer, fail, make_command, make_context

CHAT_URL = "https://chat.example/api/v4/posts"
STATUS_URL = f"{GITHUB_API_URL}/repos/holochain/holochain/statuses/abc123"


@dataclass
class Harness:
    pipeline: ReleasePipeline
    preparer: FakePreparer
    executor: FakeExecutor
    host: FakeHost
    debug: FakeDebugHook
    http: MockHttpClient
    console: MockConsole
    cache: CacheStore

    def run(self, context: RunContext) -> PipelineRun:
        return self.pipeline.run(context)

    def status_state(self) -> object:
        return self.http.posts_to(STATUS_URL)[-1].payload["state"]


def _harness(
    tmp_path: Path,
    *,
    preparer: FakePreparer | None = None,
    executor: FakeExecutor | None = None,
    host: FakeHost | None = None,
    tolerant: bool = False,
    cancel: threading.Event | None = None,
    slot: bool = False,
) -> Harness:
    config = PipelineConfig(
        matrix=MatrixConfig(
            test_commands=(
                make_command(restores_cache=True, saves_cache=True, tolerant=tolerant),
                make_command("nix-test"),
            ),
        ),
        notify=NotifyConfig(chat_url=CHAT_URL, chat_token="chat", github_token="gh"),
    )
    console = MockConsole()
    http = MockHttpClient()
    cache = CacheStore(tmp_path / "cache")
    preparer = preparer or FakePreparer()
    executor = executor or FakeExecutor()
    host = host or FakeHost()
    debug = FakeDebugHook()
    cancel = cancel or threading.Event()

    runner = StageRunner(cache=cache, executor=executor, console=console, cancel=cancel)
    pipeline = ReleasePipeline(
        config=config,
        preparer=preparer,
        scheduler=BuildMatrixScheduler(runner=runner, console=console),
        finalizer=Finalizer(host=host, project=config.project, steps=config.release, console=console),
        notifier=Notifier(
            http=http,
            config=config.notify,
            project=config.project,
            console=console,
            commit_sha="abc123",
        ),
        debug_hook=debug,
        cache=cache,
        console=console,
        cancel=cancel,
        slot=RunSlot(state_dir=tmp_path / "state", group="develop-schedule", run_id="1001", console=console)
        if slot
        else None,
    )
    return Harness(pipeline, preparer, executor, host, debug, http, console, cache)


def test_scheduled_release(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    run = h.run(make_context(tmp_path))

    assert run.exit_code is ErrorCode.OK
    assert run.outcome.verdict is Verdict.SUCCESS
    assert run.outcome.state is PipelineState.REPORTED
    assert run.transitions == [
        (PipelineState.INIT, PipelineState.PREPARED),
        (PipelineState.PREPARED, PipelineState.TESTED),
        (PipelineState.TESTED, PipelineState.FINALIZED),
        (PipelineState.FINALIZED, PipelineState.REPORTED),
    ]
    assert run.matrix is not None and len(run.matrix.results) == 4
    assert "release:holochain-0.1.0:holochain 0.1.0" in h.host.actions
    assert h.status_state() == "success"
    assert len(h.http.posts_to(CHAT_URL)) == 1
    assert h.debug.reasons == []


def test_prepare_cache_feeds_primary_restore(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    run = h.run(make_context(tmp_path))

    keys = {e.key for e in h.cache.keys()}
    assert "ubuntu-latest-prepare-1001" in keys
    assert "ubuntu-latest-cargo-test-standard-1001-1" in keys
    assert "macos-latest-cargo-test-standard-1001-1" in keys
    assert run.matrix is not None
    primary = next(r for r in run.matrix.results if r.cell_id == "ubuntu-latest/cargo-test-standard")
    assert primary.cache_hit == "ubuntu-latest-prepare-1001"


def test_nothing_to_release(tmp_path: Path) -> None:
    preparer = FakePreparer(Ok(PrepareOutput(releasable_crates=False, version="", tag="", release_branch="")))
    h = _harness(tmp_path, preparer=preparer)

    run = h.run(make_context(tmp_path))

    assert run.exit_code is ErrorCode.OK
    assert run.outcome.verdict is Verdict.NO_CHANGES
    assert run.finalize is None
    assert h.host.actions == []
    assert h.status_state() == "success"


def test_primary_test_failure_blocks_finalize(tmp_path: Path) -> None:
    executor = FakeExecutor({"ubuntu-latest/nix-test": [fail()]})
    h = _harness(tmp_path, executor=executor)

    run = h.run(make_context(tmp_path, Trigger.WORKFLOW_DISPATCH))

    assert run.exit_code is ErrorCode.TEST_FAILURE
    assert run.outcome.verdict is Verdict.FAILURE
    assert run.outcome.failed_step == "test"
    assert run.outcome.state is PipelineState.REPORTED
    assert h.host.actions == []
    assert len(executor.test_calls("ubuntu-latest/nix-test")) == 2
    # Debug defaults on for manual runs.
    assert h.debug.reasons == ["test failed"]
    assert h.status_state() == "failure"


def test_tolerated_secondary_failure_still_releases(tmp_path: Path) -> None:
    executor = FakeExecutor({"macos-latest/cargo-test-standard": [fail()]})
    h = _harness(tmp_path, executor=executor, tolerant=True)

    run = h.run(make_context(tmp_path))

    assert run.exit_code is ErrorCode.OK
    assert run.outcome.test_ok
    assert run.finalize is not None and run.finalize.ok


def test_prepare_failure(tmp_path: Path) -> None:
    preparer = FakePreparer(Err(PipelineError(kind="prepare_failed", message="bump failed")))
    h = _harness(tmp_path, preparer=preparer)

    run = h.run(make_context(tmp_path, Trigger.WORKFLOW_DISPATCH))

    assert run.exit_code is ErrorCode.SETUP_ERROR
    assert run.outcome.failed_step == "prepare"
    assert h.executor.calls == []
    assert h.host.actions == []
    assert h.debug.reasons == []
    assert h.status_state() == "failure"


def test_pull_request_only_validates(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    run = h.run(make_context(tmp_path, Trigger.PULL_REQUEST))

    assert run.exit_code is ErrorCode.OK
    assert run.outcome.verdict is Verdict.SUCCESS
    assert run.matrix is None
    assert h.executor.calls == []
    assert h.host.actions == []
    assert h.http.posts_to(CHAT_URL)[0].payload["channel_id"] == CHAT_CHANNEL_CI


def test_dry_run_keeps_irreversible_steps_back(tmp_path: Path) -> None:
    h = _harness(tmp_path)

    run = h.run(make_context(tmp_path, Trigger.WORKFLOW_DISPATCH))

    assert run.exit_code is ErrorCode.OK
    assert h.host.actions == [
        "push:release-20221031.101500",
        "pr:release-20221031.101500->develop:Merge release-20221031.101500 back into develop",
    ]


def test_finalize_failure(tmp_path: Path) -> None:
    h = _harness(tmp_path, host=FakeHost(fail_on="publish"))

    run = h.run(make_context(tmp_path, overrides=Overrides(debug="true")))

    assert run.exit_code is ErrorCode.FINALIZE_FAILURE
    assert run.outcome.failed_step == "publish"
    assert run.outcome.verdict is Verdict.FAILURE
    assert h.debug.reasons == ["publish failed"]
    assert h.status_state() == "failure"


def test_cancelled_before_start_still_reports(tmp_path: Path) -> None:
    cancel = threading.Event()
    cancel.set()
    h = _harness(tmp_path, cancel=cancel)

    run = h.run(make_context(tmp_path, overrides=Overrides(debug="true")))

    assert run.exit_code is ErrorCode.CANCELLED
    assert h.preparer.calls == 0
    assert h.debug.reasons == []
    assert run.notify is not None and run.notify.chat_sent


def test_run_slot_released_after_run(tmp_path: Path) -> None:
    h = _harness(tmp_path, slot=True)

    run = h.run(make_context(tmp_path))

    assert run.exit_code is ErrorCode.OK
    assert list((tmp_path / "state").glob("*.slot")) == []


def test_exit_code_precedence(tmp_path: Path) -> None:
    ctx = make_context(tmp_path)
    h = _harness(tmp_path)
    outcome = h.run(ctx).outcome

    assert exit_code_for(outcome) is ErrorCode.OK
    assert exit_code_for(replace(outcome, cancelled=True, test_ok=False)) is ErrorCode.CANCELLED
    assert exit_code_for(replace(outcome, test_ok=False)) is ErrorCode.TEST_FAILURE


def test_failed_tests_with_nothing_to_release(tmp_path: Path) -> None:
    preparer = FakePreparer(Ok(PrepareOutput(releasable_crates=False, version="", tag="", release_branch="")))
    executor = FakeExecutor({"ubuntu-latest/nix-test": [fail()]})
    h = _harness(tmp_path, preparer=preparer, executor=executor)

    run = h.run(make_context(tmp_path))

    assert run.outcome.verdict is Verdict.NO_CHANGES
    assert run.exit_code is ErrorCode.TEST_FAILURE
    assert h.host.actions == []
    assert "no changes to release" in str(h.http.posts_to(CHAT_URL)[0].payload["message"])
    assert h.status_state() == "failure"


def test_repeated_dry_runs_have_no_irreversible_effects(tmp_path: Path) -> None:
    h = _harness(tmp_path)
    ctx = make_context(tmp_path, overrides=Overrides(dry_run="true"))

    first = h.run(ctx)
    second = h.run(ctx)

    assert first.exit_code is ErrorCode.OK
    assert second.exit_code is ErrorCode.OK
    irreversible = ("push:main", "auto-merge", "approve", "publish", "tags:", "release:")
    assert not any(a.startswith(irreversible) for a in h.host.actions)
    assert h.host.actions == [
        "push:release-20221031.101500",
        "pr:release-20221031.101500->develop:Merge release-20221031.101500 back into develop",
    ] * 2
    assert first.finalize is not None and first.finalize.pull_request is not None
    assert second.finalize is not None and second.finalize.pull_request is not None
    assert not first.finalize.pull_request.reused
    assert second.finalize.pull_request.reused
    assert second.finalize.pull_request.number == first.finalize.pull_request.number
