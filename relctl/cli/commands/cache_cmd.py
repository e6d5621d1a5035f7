from __future__ import annotations

from datetime import datetime

import typer

from relctl.cli.context import build_context
from relctl.core.errors import ErrorCode
from relctl.pipeline.cache import CacheStore

cache_app = typer.Typer(add_completion=False, no_args_is_help=True)


def _size(n: int) -> str:
    value = float(n)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{n}B"


@cache_app.command("list")
def list_entries() -> None:
    """List cache entries, newest first."""
    ctx = build_context()
    store = CacheStore(ctx.config.paths.cache_dir)
    entries = store.keys()
    if not entries:
        ctx.console.info(f"no cache entries in {store.root}")
        return

    rows = [
        [
            e.key,
            datetime.fromtimestamp(e.saved_at).isoformat(timespec="seconds"),
            _size(e.size_bytes),
        ]
        for e in entries
    ]
    ctx.console.table(f"Cache ({store.root})", ["key", "saved", "size"], rows)


@cache_app.command("prune")
def prune(
    keep: int = typer.Option(20, "--keep", help="Number of newest entries to keep"),
) -> None:
    """Delete the oldest cache entries."""
    ctx = build_context()
    if keep < 0:
        ctx.console.error("--keep must be >= 0")
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))

    removed = CacheStore(ctx.config.paths.cache_dir).prune(keep)
    for key in removed:
        ctx.console.print(f"removed {key}")
    ctx.console.success(f"pruned {len(removed)} entr{'y' if len(removed) == 1 else 'ies'}")
