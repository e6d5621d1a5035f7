from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from relctl.core.result import Err, Ok, Result
from relctl.output.console import MockConsole
from relctl.platform.process import ProcessError
from relctl.pipeline import host as host_mod
from relctl.pipeline.host import GitHubReleaseHost


class FakeRun:
    """Answers commands by their leading words; unmatched commands succeed."""

    def __init__(self, responses: dict[tuple[str, ...], list[Result[str, ProcessError]]] | None = None) -> None:
        self.responses = {k: list(v) for k, v in (responses or {}).items()}
        self.calls: list[list[str]] = []
        self.envs: list[dict[str, str] | None] = []

    def __call__(
        self,
        cmd: list[str],
        *,
        cwd: Path,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Result[str, ProcessError]:
        del cwd, timeout, cancel
        self.calls.append(cmd)
        self.envs.append(env)
        for prefix, queue in self.responses.items():
            if tuple(cmd[: len(prefix)]) == prefix and queue:
                return queue.pop(0) if len(queue) > 1 else queue[0]
        return Ok("")


def _err(stderr: str, *, timed_out: bool = False, cancelled: bool = False) -> Err[ProcessError]:
    return Err(ProcessError(("gh",), 1, "", stderr, timed_out=timed_out, cancelled=cancelled))


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr(host_mod, "sleep", recorded.append)
    return recorded


def _host(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, fake: FakeRun) -> GitHubReleaseHost:
    monkeypatch.setattr(host_mod, "run_process", fake)
    return GitHubReleaseHost(
        repo_path=tmp_path,
        repo_slug="holochain/holochain",
        console=MockConsole(),
        token="ghp_test",
        env={"PATH": "/usr/bin"},
    )


def test_token_is_exported(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeRun()
    host = _host(monkeypatch, tmp_path, fake)

    assert isinstance(host.push_branch("main"), Ok)
    assert fake.calls == [["git", "push", "origin", "main"]]
    assert fake.envs[0] == {"PATH": "/usr/bin", "GH_TOKEN": "ghp_test"}


def test_push_branch_with_checkout(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeRun()
    host = _host(monkeypatch, tmp_path, fake)

    host.push_branch("release-1", checkout=True)

    assert fake.calls == [["git", "checkout", "release-1"], ["git", "push", "origin", "release-1"]]


def test_push_failure(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeRun({("git", "push"): [_err("rejected: non-fast-forward")]})
    host = _host(monkeypatch, tmp_path, fake)

    result = host.push_tags("main")

    assert isinstance(result, Err)
    assert result.error.kind == "finalize_failed"
    assert result.error.hint == "rejected: non-fast-forward"
    assert fake.calls == [["git", "push", "origin", "main", "--tags"]]


def test_cancelled_command_maps_to_cancelled(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeRun({("bash",): [_err("", cancelled=True)]})
    host = _host(monkeypatch, tmp_path, fake)

    result = host.publish("release-automation publish")

    assert isinstance(result, Err)
    assert result.error.kind == "cancelled"


def test_open_pull_request_reuses_existing(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    listing = json.dumps([{"number": 12, "url": "https://github.com/holochain/holochain/pull/12"}])
    fake = FakeRun({("gh", "pr", "list"): [Ok(listing)]})
    host = _host(monkeypatch, tmp_path, fake)

    result = host.open_pull_request(head="release-1", base="develop", title="t", body="b", labels=("release",))

    assert isinstance(result, Ok)
    assert result.value.number == 12
    assert result.value.reused
    assert not any(call[:3] == ["gh", "pr", "create"] for call in fake.calls)


def test_open_pull_request_creates(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeRun(
        {
            ("gh", "pr", "list"): [Ok("[]")],
            ("gh", "pr", "create"): [Ok("Creating pull request\nhttps://github.com/holochain/holochain/pull/42\n")],
        }
    )
    host = _host(monkeypatch, tmp_path, fake)

    result = host.open_pull_request(
        head="release-1",
        base="develop",
        title="Merge release-1 back into develop",
        body="check changelogs",
        labels=("release", "autoupdate:opt-in"),
    )

    assert isinstance(result, Ok)
    assert result.value.number == 42
    assert not result.value.reused
    create = fake.calls[-1]
    assert create.count("--label") == 2
    assert create[create.index("--base") + 1] == "develop"
    assert create[create.index("--head") + 1] == "release-1"


def test_unexpected_create_output(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeRun({("gh", "pr", "list"): [Ok("[]")], ("gh", "pr", "create"): [Ok("done")]})
    host = _host(monkeypatch, tmp_path, fake)

    result = host.open_pull_request(head="h", base="b", title="t", body="", labels=())

    assert isinstance(result, Err)
    assert result.error.hint == "done"


def test_transient_list_error_is_retried(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, sleeps: list[float]
) -> None:
    fake = FakeRun({("gh", "pr", "list"): [_err("HTTP 502: Bad Gateway"), Ok("[]")]})
    host = _host(monkeypatch, tmp_path, fake)

    result = host.find_open_pull_request(head="h", base="b")

    assert result == Ok(None)
    assert len(sleeps) == 1
    assert sum(1 for c in fake.calls if c[:3] == ["gh", "pr", "list"]) == 2


def test_permanent_list_error_is_not_retried(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, sleeps: list[float]
) -> None:
    fake = FakeRun({("gh", "pr", "list"): [_err("HTTP 404: Not Found")]})
    host = _host(monkeypatch, tmp_path, fake)

    result = host.find_open_pull_request(head="h", base="b")

    assert isinstance(result, Err)
    assert sleeps == []


def test_auto_merge_and_approve_commands(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeRun()
    host = _host(monkeypatch, tmp_path, fake)

    host.enable_auto_merge(7)
    host.approve(7)

    assert fake.calls == [
        ["gh", "pr", "merge", "7", "--repo", "holochain/holochain", "--merge", "--auto"],
        ["gh", "pr", "review", "7", "--repo", "holochain/holochain", "--approve"],
    ]


def test_create_release_returns_url(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    url = "https://github.com/holochain/holochain/releases/tag/holochain-0.1.0"
    fake = FakeRun({("gh", "release", "create"): [Ok(url + "\n")]})
    host = _host(monkeypatch, tmp_path, fake)

    result = host.create_release(tag="holochain-0.1.0", title="holochain 0.1.0", notes="notes")

    assert result == Ok(url)
