from __future__ import annotations

import os
from pathlib import Path

import typer

from relctl import __version__
from relctl.cli.commands.cache_cmd import cache_app
from relctl.cli.commands.matrix_cmd import matrix
from relctl.cli.commands.run_cmd import run
from relctl.cli.commands.vars_cmd import vars_
from relctl.cli.context import CONFIG_ENV
from relctl.core.errors import ErrorCode


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# Commands
app.command()(run)
app.command("vars")(vars_)
app.command()(matrix)

# Sub-apps
app.add_typer(cache_app, name="cache", help="Inspect and prune the build cache.")


def _show_version(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit(code=0)


@app.callback()
def _main(  # pyright: ignore[reportUnusedFunction]
    version: bool = typer.Option(
        False,
        "--version",
        callback=_show_version,
        is_eager=True,
        help="Show version and exit.",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        help="Pipeline config file (default: ./relctl.toml if present)",
    ),
) -> None:
    del version
    if config is not None:
        path = config.expanduser()
        if not path.is_file():
            typer.echo(f"error: --config '{path}' does not exist", err=True)
            raise typer.Exit(code=int(ErrorCode.USER_ERROR))
        os.environ[CONFIG_ENV] = str(path)


def main() -> None:
    app()
