"""Run concurrency: one active run per group.

Runs of the same branch and trigger share a concurrency group. A slot file
under the state directory names the run that currently owns the group. A
run that cancels in progress takes the slot over and the previous owner,
which watches the file, cancels itself. Any other run waits until the slot
is free.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from relctl.core.result import Err, Ok, Result
from relctl.core.structured import as_str_dict, get_int, get_str
from relctl.output.console import ConsoleProtocol
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.model import RunContext, Trigger
from relctl.pipeline.timeouts import RUN_SLOT_POLL_SECONDS


def concurrency_group(branch: str, trigger: Trigger) -> str:
    return f"{branch}-{trigger}"


def group_for(context: RunContext) -> str:
    """Group name of a run: its triggering branch and event class."""
    return concurrency_group(context.triggering_branch or context.holochain_source_branch, context.trigger)


def cancel_in_progress(context: RunContext) -> bool:
    return context.force_cancel_in_progress or context.trigger is Trigger.PULL_REQUEST


@dataclass(frozen=True, slots=True)
class SlotOwner:
    run_id: str
    pid: int


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RunSlot:
    def __init__(
        self,
        *,
        state_dir: Path,
        group: str,
        run_id: str,
        console: ConsoleProtocol,
        poll_seconds: float = RUN_SLOT_POLL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        pid_alive: Callable[[int], bool] = _pid_alive,
    ) -> None:
        self.path = state_dir / f"{quote(group, safe='')}.slot"
        self.group = group
        self.run_id = run_id
        self._console = console
        self._poll = poll_seconds
        self._sleep = sleep
        self._pid_alive = pid_alive
        self._watcher: threading.Thread | None = None
        self._stop = threading.Event()

    def owner(self) -> SlotOwner | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = as_str_dict(json.loads(text))
        except json.JSONDecodeError:
            return None
        if data is None:
            return None
        run_id = get_str(data, "run_id")
        if run_id is None:
            return None
        return SlotOwner(run_id=run_id, pid=get_int(data, "pid") or 0)

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"run_id": self.run_id, "pid": os.getpid(), "acquired_at": time.time()}, f)
            os.replace(tmp, self.path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise

    def _free_for_us(self) -> bool:
        current = self.owner()
        return current is None or current.run_id == self.run_id or not self._pid_alive(current.pid)

    def acquire(self, *, take_over: bool, cancel: threading.Event) -> Result[None, PipelineError]:
        """Claim the group slot.

        With ``take_over`` the slot is claimed immediately and the previous
        owner will cancel itself. Otherwise wait until the slot is free.
        """
        try:
            if not take_over:
                announced = False
                while not self._free_for_us():
                    if cancel.is_set():
                        return Err(
                            PipelineError(
                                kind="cancelled",
                                message=f"cancelled while waiting for {self.group}",
                            )
                        )
                    if not announced:
                        owner = self.owner()
                        self._console.info(
                            f"waiting for run {owner.run_id if owner else '?'} in group {self.group}"
                        )
                        announced = True
                    self._sleep(self._poll)
            else:
                previous = self.owner()
                if previous is not None and previous.run_id != self.run_id:
                    self._console.warning(f"superseding run {previous.run_id} in group {self.group}")
            self._write()
        except OSError as e:
            return Err(
                PipelineError(
                    kind="setup_failed",
                    message=f"cannot claim run slot {self.path}",
                    hint=str(e),
                )
            )
        return Ok(None)

    def check_superseded(self) -> str | None:
        """Return the run id that took the slot over, if any."""
        current = self.owner()
        if current is not None and current.run_id != self.run_id:
            return current.run_id
        return None

    def watch(self, cancel: threading.Event) -> None:
        """Set ``cancel`` when another run takes the slot over."""

        def loop() -> None:
            while not self._stop.is_set() and not cancel.is_set():
                newer = self.check_superseded()
                if newer is not None:
                    self._console.warning(f"superseded by run {newer}; cancelling")
                    cancel.set()
                    return
                self._stop.wait(self._poll)

        self._watcher = threading.Thread(target=loop, name="relctl-slot-watch", daemon=True)
        self._watcher.start()

    def release(self) -> None:
        self._stop.set()
        if self._watcher is not None:
            self._watcher.join(timeout=self._poll + 1.0)
        if self.check_superseded() is None:
            self.path.unlink(missing_ok=True)
