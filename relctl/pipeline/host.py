"""git and GitHub CLI adapter used by the finalize steps."""

from __future__ import annotations

import json
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from time import sleep
from typing import Protocol

from relctl.core.result import Err, Ok, Result
from relctl.core.structured import as_obj_list, as_str_dict, get_int, get_str
from relctl.output.console import ConsoleProtocol, Style
from relctl.platform.process import ProcessError
from relctl.platform.process import run as run_process
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.timeouts import (
    GH_READ_RETRY_ATTEMPTS,
    GH_READ_RETRY_DELAY_SECONDS,
    GH_TIMEOUT_SECONDS,
    GIT_NETWORK_TIMEOUT_SECONDS,
    GIT_TIMEOUT_SECONDS,
    PUBLISH_TIMEOUT_SECONDS,
)

_PR_NUMBER_RE = re.compile(r"/pull/(\d+)\s*$")


@dataclass(frozen=True, slots=True)
class PullRequest:
    number: int
    url: str
    reused: bool = False


class ReleaseHost(Protocol):
    """Side effects of finalizing a release.

    Every method is one externally visible action; the finalizer decides
    which of them a dry run may perform.
    """

    def push_branch(self, branch: str, *, checkout: bool = False) -> Result[None, PipelineError]: ...

    def open_pull_request(
        self,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        labels: tuple[str, ...],
    ) -> Result[PullRequest, PipelineError]: ...

    def enable_auto_merge(self, number: int) -> Result[None, PipelineError]: ...

    def approve(self, number: int) -> Result[None, PipelineError]: ...

    def publish(self, command: str) -> Result[None, PipelineError]: ...

    def push_tags(self, branch: str) -> Result[None, PipelineError]: ...

    def create_release(self, *, tag: str, title: str, notes: str) -> Result[str, PipelineError]: ...


def _is_transient_gh_error(error: ProcessError) -> bool:
    text = f"{error.stderr}\n{error.stdout}".lower()
    markers = (
        "timeout",
        "timed out",
        "connection reset",
        "connection refused",
        "temporarily unavailable",
        "service unavailable",
        "bad gateway",
        "gateway timeout",
        "network is unreachable",
        "http 429",
        "http 500",
        "http 502",
        "http 503",
        "http 504",
    )
    return error.timed_out or any(marker in text for marker in markers)


def _failed(message: str, error: ProcessError) -> Err[PipelineError]:
    if error.cancelled:
        return Err(PipelineError(kind="cancelled", message=f"{message}: cancelled"))
    return Err(
        PipelineError(
            kind="timed_out" if error.timed_out else "finalize_failed",
            message=message,
            hint=error.stderr.strip() or str(error),
        )
    )


class GitHubReleaseHost:
    def __init__(
        self,
        *,
        repo_path: Path,
        repo_slug: str,
        console: ConsoleProtocol,
        token: str | None = None,
        env: dict[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self._repo = repo_path
        self._slug = repo_slug
        self._console = console
        self._cancel = cancel
        base = dict(env) if env is not None else dict(os.environ)
        if token:
            base["GH_TOKEN"] = token
        self._env = base

    def _run(self, cmd: list[str], timeout: float) -> Result[str, ProcessError]:
        self._console.print(" ".join(cmd[:4]) + (" ..." if len(cmd) > 4 else ""), Style.DIM)
        return run_process(cmd, cwd=self._repo, env=self._env, timeout=timeout, cancel=self._cancel)

    def _gh_read(self, cmd: list[str], message: str) -> Result[str, PipelineError]:
        for attempt in range(GH_READ_RETRY_ATTEMPTS):
            result = self._run(cmd, GH_TIMEOUT_SECONDS)
            if isinstance(result, Ok):
                return result
            if attempt < GH_READ_RETRY_ATTEMPTS - 1 and _is_transient_gh_error(result.error):
                sleep(GH_READ_RETRY_DELAY_SECONDS * (attempt + 1))
                continue
            return _failed(message, result.error)
        return Err(PipelineError(kind="finalize_failed", message=message))

    def push_branch(self, branch: str, *, checkout: bool = False) -> Result[None, PipelineError]:
        if checkout:
            switched = self._run(["git", "checkout", branch], GIT_TIMEOUT_SECONDS)
            if isinstance(switched, Err):
                return _failed(f"failed to check out {branch}", switched.error)

        pushed = self._run(["git", "push", "origin", branch], GIT_NETWORK_TIMEOUT_SECONDS)
        if isinstance(pushed, Err):
            return _failed(f"failed to push {branch}", pushed.error)
        return Ok(None)

    def push_tags(self, branch: str) -> Result[None, PipelineError]:
        pushed = self._run(["git", "push", "origin", branch, "--tags"], GIT_NETWORK_TIMEOUT_SECONDS)
        if isinstance(pushed, Err):
            return _failed("failed to push tags", pushed.error)
        return Ok(None)

    def find_open_pull_request(self, *, head: str, base: str) -> Result[PullRequest | None, PipelineError]:
        listed = self._gh_read(
            [
                "gh",
                "pr",
                "list",
                "--repo",
                self._slug,
                "--head",
                head,
                "--base",
                base,
                "--state",
                "open",
                "--json",
                "number,url",
            ],
            f"failed to list pull requests for {head}",
        )
        if isinstance(listed, Err):
            return listed

        try:
            obj: object = json.loads(listed.value or "[]")
        except json.JSONDecodeError as e:
            return Err(
                PipelineError(
                    kind="finalize_failed",
                    message=f"invalid JSON from gh pr list: {e}",
                )
            )

        for item in as_obj_list(obj) or []:
            data = as_str_dict(item)
            if data is None:
                continue
            number = get_int(data, "number")
            url = get_str(data, "url")
            if number is not None and url:
                return Ok(PullRequest(number=number, url=url, reused=True))
        return Ok(None)

    def open_pull_request(
        self,
        *,
        head: str,
        base: str,
        title: str,
        body: str,
        labels: tuple[str, ...],
    ) -> Result[PullRequest, PipelineError]:
        existing = self.find_open_pull_request(head=head, base=base)
        if isinstance(existing, Err):
            return existing
        if existing.value is not None:
            self._console.print(f"reusing {existing.value.url}", Style.DIM)
            return Ok(existing.value)

        cmd = ["gh", "pr", "create", "--repo", self._slug, "--title", title]
        for label in labels:
            cmd += ["--label", label]
        cmd += ["--base", base, "--head", head, "--body", body]

        created = self._run(cmd, GH_TIMEOUT_SECONDS)
        if isinstance(created, Err):
            return _failed(f"failed to open pull request {head} -> {base}", created.error)

        url = created.value.strip().splitlines()[-1].strip() if created.value.strip() else ""
        match = _PR_NUMBER_RE.search(url)
        if match is None:
            return Err(
                PipelineError(
                    kind="finalize_failed",
                    message="unexpected gh pr create output",
                    hint=url or None,
                )
            )
        return Ok(PullRequest(number=int(match.group(1)), url=url))

    def enable_auto_merge(self, number: int) -> Result[None, PipelineError]:
        merged = self._run(
            ["gh", "pr", "merge", str(number), "--repo", self._slug, "--merge", "--auto"],
            GH_TIMEOUT_SECONDS,
        )
        if isinstance(merged, Err):
            return _failed(f"failed to enable auto-merge for #{number}", merged.error)
        return Ok(None)

    def approve(self, number: int) -> Result[None, PipelineError]:
        reviewed = self._run(
            ["gh", "pr", "review", str(number), "--repo", self._slug, "--approve"],
            GH_TIMEOUT_SECONDS,
        )
        if isinstance(reviewed, Err):
            return _failed(f"failed to approve #{number}", reviewed.error)
        return Ok(None)

    def publish(self, command: str) -> Result[None, PipelineError]:
        published = self._run(["bash", "-c", command], PUBLISH_TIMEOUT_SECONDS)
        if isinstance(published, Err):
            return _failed("failed to publish packages", published.error)
        return Ok(None)

    def create_release(self, *, tag: str, title: str, notes: str) -> Result[str, PipelineError]:
        created = self._run(
            [
                "gh",
                "release",
                "create",
                tag,
                "--repo",
                self._slug,
                "--title",
                title,
                "--notes",
                notes,
            ],
            GH_TIMEOUT_SECONDS,
        )
        if isinstance(created, Err):
            return _failed(f"failed to create release {tag}", created.error)
        return Ok(created.value.strip())
