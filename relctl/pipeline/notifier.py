"""Best-effort reporting of a pipeline outcome.

Two channels: a chat post (markdown summary table) and a commit status on
the source repository. Neither may fail the pipeline; errors become console
warnings.
"""

from __future__ import annotations

from dataclasses import dataclass

from relctl.core.result import Err
from relctl.output.console import ConsoleProtocol
from relctl.platform.http import HttpClient
from relctl.pipeline.config import NotifyConfig, ProjectConfig
from relctl.pipeline.errors import PipelineError
from relctl.pipeline.model import PipelineOutcome, Verdict

GITHUB_API_URL = "https://api.github.com"

# Repositories whose release state this pipeline does not determine.
COLLABORATORS: tuple[str, ...] = ("holochain-nixpkgs", "holonix")


@dataclass(frozen=True, slots=True)
class NotifyReport:
    chat_sent: bool
    status_sent: bool
    errors: tuple[PipelineError, ...] = ()


def run_url(slug: str, run_id: str) -> str:
    return f"https://github.com/{slug}/actions/runs/{run_id}"


def commit_state(outcome: PipelineOutcome) -> str:
    """Commit status for ``outcome``; failed tests stay red with nothing to release."""
    if outcome.verdict is Verdict.FAILURE or not outcome.test_ok:
        return "failure"
    return "success"


def mode_label(outcome: PipelineOutcome) -> str:
    if not outcome.release_intent:
        return "ci-mode"
    return "release-mode, dry-run" if outcome.dry_run else "release-mode"


def status_line(outcome: PipelineOutcome, *, log_url: str, slug: str) -> str:
    verdict = outcome.verdict
    if not outcome.release_intent:
        mark = ":white_check_mark:" if verdict is Verdict.SUCCESS else ":x:"
        return f"{mark} [log]({log_url})"
    if verdict is Verdict.SUCCESS:
        tag_url = f"https://github.com/{slug}/releases/tag/{outcome.tag}"
        return f"success :white_check_mark: [log]({log_url}), [tag]({tag_url})"
    if verdict is Verdict.NO_CHANGES:
        return f"no changes to release :ballot_box_with_check: [log]({log_url})"
    return f"failure :x: [log]({log_url})"


def format_message(outcome: PipelineOutcome, *, project: ProjectConfig, log_url: str) -> str:
    lines = [
        f"#### {project.name.capitalize()} release run ({mode_label(outcome)})",
        "",
        f"Version | {outcome.version}",
        "--- | ---",
        f"{project.name} | {status_line(outcome, log_url=log_url, slug=project.repo_slug)}",
    ]
    if outcome.release_intent:
        lines += [f"{name} | _undetermined_" for name in COLLABORATORS]
    return "\n".join(lines)


class Notifier:
    def __init__(
        self,
        *,
        http: HttpClient,
        config: NotifyConfig,
        project: ProjectConfig,
        console: ConsoleProtocol,
        commit_sha: str | None = None,
    ) -> None:
        self._http = http
        self._config = config
        self._project = project
        self._console = console
        self._commit_sha = commit_sha

    def notify(self, outcome: PipelineOutcome, *, run_id: str) -> NotifyReport:
        """Report ``outcome``. Never raises."""
        log_url = run_url(self._project.repo_slug, run_id)
        errors: list[PipelineError] = []

        chat_sent = self._post_chat(outcome, log_url, errors)
        status_sent = self._post_status(outcome, log_url, errors)

        for error in errors:
            self._console.warning(error.pretty())
        return NotifyReport(chat_sent=chat_sent, status_sent=status_sent, errors=tuple(errors))

    def _post_chat(self, outcome: PipelineOutcome, log_url: str, errors: list[PipelineError]) -> bool:
        cfg = self._config
        if not cfg.chat_url or not cfg.chat_token:
            self._console.info("chat notification skipped (no endpoint or token)")
            return False

        channel = cfg.release_channel_id if outcome.release_intent else cfg.ci_channel_id
        payload: dict[str, object] = {
            "channel_id": channel,
            "message": format_message(outcome, project=self._project, log_url=log_url),
            "props": {"version": outcome.version},
        }
        posted = self._http.post_json(
            cfg.chat_url,
            payload,
            headers={"Authorization": f"Bearer {cfg.chat_token}"},
        )
        if isinstance(posted, Err):
            errors.append(
                PipelineError(kind="notify_failed", message="chat notification failed", hint=str(posted.error))
            )
            return False
        return True

    def _post_status(self, outcome: PipelineOutcome, log_url: str, errors: list[PipelineError]) -> bool:
        cfg = self._config
        if not self._commit_sha or not cfg.github_token:
            self._console.info("commit status skipped (no commit or token)")
            return False

        url = f"{GITHUB_API_URL}/repos/{self._project.repo_slug}/statuses/{self._commit_sha}"
        payload: dict[str, object] = {
            "state": commit_state(outcome),
            "target_url": log_url,
            "description": cfg.status_description,
            "context": cfg.status_context,
        }
        posted = self._http.post_json(
            url,
            payload,
            headers={"Authorization": f"token {cfg.github_token}"},
        )
        if isinstance(posted, Err):
            errors.append(
                PipelineError(kind="notify_failed", message="commit status update failed", hint=str(posted.error))
            )
            return False
        return True
