"""Tests for relctl.platform.process module."""

from __future__ import annotations

import shutil
import sys
import threading
import time
from pathlib import Path

import pytest

from relctl.core.result import Err, Ok
from relctl.platform.process import ProcessError, run


class TestProcessError:
    def test_str_short_command(self) -> None:
        error = ProcessError(
            command=("git", "push"),
            returncode=1,
            stdout="",
            stderr="rejected",
        )
        assert str(error) == "git push failed (exit 1)"

    def test_str_long_command_truncated(self) -> None:
        error = ProcessError(("gh", "pr", "create", "--title", "x"), 1, "", "")
        assert str(error) == "gh pr create ... failed (exit 1)"

    def test_str_timed_out(self) -> None:
        error = ProcessError(("bash", "-c", "x"), -1, "", "", timed_out=True)
        assert str(error) == "bash -c x timed out"

    def test_frozen(self) -> None:
        error = ProcessError(("cmd",), 1, "", "")
        with pytest.raises(AttributeError):
            error.returncode = 2  # type: ignore[misc]


class TestRun:
    def test_success_returns_stdout(self, tmp_path: Path) -> None:
        result = run([sys.executable, "-c", "print('hello')"], cwd=tmp_path)

        assert isinstance(result, Ok)
        assert "hello" in result.value

    def test_failure_returns_error(self, tmp_path: Path) -> None:
        result = run(
            [sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"],
            cwd=tmp_path,
        )

        assert isinstance(result, Err)
        assert result.error.returncode == 3
        assert "bad" in result.error.stderr
        assert not result.error.timed_out

    def test_env_is_passed(self, tmp_path: Path) -> None:
        result = run(
            [sys.executable, "-c", "import os; print(os.environ['RELCTL_MARKER'])"],
            cwd=tmp_path,
            env={"RELCTL_MARKER": "42"},
        )

        assert isinstance(result, Ok)
        assert result.value.strip() == "42"

    def test_timeout_kills_process(self, tmp_path: Path) -> None:
        result = run(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            cwd=tmp_path,
            timeout=0.5,
        )

        assert isinstance(result, Err)
        assert result.error.timed_out
        assert result.error.returncode == -1

    def test_cancel_event_kills_process(self, tmp_path: Path) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        try:
            result = run(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                cwd=tmp_path,
                cancel=cancel,
            )
        finally:
            timer.cancel()

        assert isinstance(result, Err)
        assert result.error.cancelled
        assert not result.error.timed_out

    def test_already_cancelled_does_not_start(self, tmp_path: Path) -> None:
        cancel = threading.Event()
        cancel.set()

        result = run([sys.executable, "-c", "print('x')"], cwd=tmp_path, cancel=cancel)

        assert isinstance(result, Err)
        assert result.error.cancelled

    def test_missing_executable(self, tmp_path: Path) -> None:
        result = run(["relctl-definitely-missing-binary"], cwd=tmp_path)

        assert isinstance(result, Err)
        assert result.error.returncode == -1


needs_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")


@needs_bash
class TestRunKillsProcessTree:
    """A multi-line bash script forks its commands; killing bash alone is not enough."""

    def test_timeout_does_not_wait_for_grandchild(self, tmp_path: Path) -> None:
        started = time.monotonic()

        result = run(["bash", "-c", "set -e\nsleep 30\ntrue\n"], cwd=tmp_path, timeout=0.5)

        elapsed = time.monotonic() - started
        assert isinstance(result, Err)
        assert result.error.timed_out
        assert elapsed < 5.0

    def test_cancel_does_not_wait_for_grandchild(self, tmp_path: Path) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.3, cancel.set)
        timer.start()
        started = time.monotonic()
        try:
            result = run(["bash", "-c", "sleep 30\ntrue\n"], cwd=tmp_path, cancel=cancel)
        finally:
            timer.cancel()

        elapsed = time.monotonic() - started
        assert isinstance(result, Err)
        assert result.error.cancelled
        assert elapsed < 5.0

    def test_output_before_timeout_is_kept(self, tmp_path: Path) -> None:
        result = run(["bash", "-c", "echo building\nsleep 30\ntrue\n"], cwd=tmp_path, timeout=1.0)

        assert isinstance(result, Err)
        assert result.error.timed_out
        assert "building" in result.error.stdout
