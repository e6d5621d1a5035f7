from __future__ import annotations

import typer

from relctl.cli.context import build_context
from relctl.cli.commands._helpers import exit_on_error
from relctl.core.errors import ErrorCode
from relctl.core.result import Err
from relctl.pipeline.matrix import build_matrix, exclusion_predicate
from relctl.pipeline.model import Trigger


def _cache_mode(restores: bool, saves: bool) -> str:
    modes = [name for name, on in (("restore", restores), ("save", saves)) if on]
    return "+".join(modes) or "-"


def matrix(
    trigger: Trigger = typer.Option(Trigger.SCHEDULE, "--trigger", help="Event class"),
) -> None:
    """Show the matrix cells a trigger would run."""
    ctx = build_context()
    cfg = ctx.config.matrix

    cells = build_matrix(
        platforms=cfg.platforms,
        commands=cfg.test_commands,
        exclude=exclusion_predicate(cfg.exclusions),
        trigger=trigger,
        primary=cfg.primary,
    )
    exit_on_error(cells, ctx, ErrorCode.USER_ERROR)
    if isinstance(cells, Err):
        return

    rows: list[list[str]] = []
    for cell in cells.value:
        command = cell.command
        rows.append(
            [
                cell.cell_id,
                "yes" if cell.primary else "no",
                str(command.attempts_for(cell.platform)),
                f"{command.timeout_minutes}m",
                "yes" if cell.tolerated else "no",
                _cache_mode(command.restores_cache, command.saves_cache),
            ]
        )
    ctx.console.table(
        f"Matrix for {trigger} ({len(rows)} cells)",
        ["cell", "primary", "attempts", "timeout", "tolerated", "cache"],
        rows,
    )
