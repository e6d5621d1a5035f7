from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

import typer

from relctl.core.config import DEFAULT_CONFIG_NAME
from relctl.core.errors import ErrorCode
from relctl.core.result import Err
from relctl.output.console import ConsoleProtocol, RichConsole
from relctl.platform.http import HttpClient, RealHttpClient
from relctl.pipeline.config import PipelineConfig, load_pipeline_config
from relctl.pipeline.timeouts import NOTIFY_TIMEOUT_SECONDS

CONFIG_ENV = "RELCTL_CONFIG"
CHAT_TOKEN_ENV = "RELCTL_CHAT_TOKEN"
GITHUB_TOKEN_ENV = "RELCTL_GITHUB_TOKEN"


@dataclass(frozen=True, slots=True)
class CLIContext:
    config: PipelineConfig
    config_path: Path | None
    console: ConsoleProtocol
    http: HttpClient


def _config_path() -> tuple[Path, bool]:
    explicit = os.environ.get(CONFIG_ENV, "").strip()
    if explicit:
        return Path(explicit).expanduser(), True
    return Path(DEFAULT_CONFIG_NAME), False


def build_context() -> CLIContext:
    path, explicit = _config_path()

    config = PipelineConfig()
    config_path: Path | None = None
    if explicit or path.is_file():
        loaded = load_pipeline_config(path)
        if isinstance(loaded, Err):
            typer.echo(f"error: {loaded.error.message}", err=True)
            raise typer.Exit(code=int(ErrorCode.USER_ERROR))
        config = loaded.value
        config_path = path

    config = replace(
        config,
        notify=replace(
            config.notify,
            chat_token=os.environ.get(CHAT_TOKEN_ENV) or None,
            github_token=os.environ.get(GITHUB_TOKEN_ENV) or None,
        ),
    )

    return CLIContext(
        config=config,
        config_path=config_path,
        console=RichConsole(),
        http=RealHttpClient(timeout=NOTIFY_TIMEOUT_SECONDS),
    )
