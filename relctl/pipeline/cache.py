"""Persistent cache of file-tree snapshots.

Each entry is a gzip tar archive named after its (URL-quoted) key. Paths are
archived relative to their filesystem anchor and restored to the same
absolute location. Writes go to a temporary file first and are renamed into
place, so concurrent saves of the same key resolve to last-writer-wins and a
reader never sees a partial archive.

Lookup order on restore:
1. the exact key;
2. each fallback key in order, first as an exact key, then as a prefix
   (most recently saved match wins).

A fallback hit only guarantees that something was saved under an older key;
it says nothing about the freshness of the restored contents.
"""

from __future__ import annotations

import os
import tarfile
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import quote, unquote

from relctl.core.result import Err, Ok, Result
from relctl.pipeline.errors import PipelineError

_SUFFIX = ".tar.gz"


@dataclass(frozen=True, slots=True)
class RestoreResult:
    hit: bool
    matched_key: str | None = None
    restored_files: int = 0

    @property
    def summary(self) -> str:
        if not self.hit:
            return "miss"
        return f"hit ({self.matched_key})"


@dataclass(frozen=True, slots=True)
class CacheEntryInfo:
    key: str
    saved_at: float
    size_bytes: int


class CacheStore:
    def __init__(self, root: Path) -> None:
        self.root = root

    def _archive(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}{_SUFFIX}"

    def keys(self) -> list[CacheEntryInfo]:
        """All stored entries, most recently saved first."""
        if not self.root.is_dir():
            return []
        out: list[CacheEntryInfo] = []
        for path in self.root.iterdir():
            if not path.name.endswith(_SUFFIX):
                continue
            try:
                st = path.stat()
            except FileNotFoundError:
                # Replaced or pruned concurrently.
                continue
            key = unquote(path.name[: -len(_SUFFIX)])
            out.append(CacheEntryInfo(key=key, saved_at=st.st_mtime, size_bytes=st.st_size))
        out.sort(key=lambda e: (e.saved_at, e.key), reverse=True)
        return out

    def lookup(self, key: str, fallback_keys: Sequence[str] = ()) -> str | None:
        """Return the key a restore would use, or None."""
        if self._archive(key).is_file():
            return key

        entries: list[CacheEntryInfo] | None = None
        for fallback in fallback_keys:
            if self._archive(fallback).is_file():
                return fallback
            if entries is None:
                entries = self.keys()
            for entry in entries:
                if entry.key.startswith(fallback):
                    return entry.key
        return None

    def restore(
        self,
        key: str,
        fallback_keys: Sequence[str],
        paths: Sequence[Path],
        *,
        required: bool,
    ) -> Result[RestoreResult, PipelineError]:
        matched = self.lookup(key, fallback_keys)
        if matched is None:
            if required:
                tried = ", ".join([key, *fallback_keys])
                return Err(
                    PipelineError(
                        kind="cache_required_missing",
                        message=f"required cache entry not found: {key}",
                        hint=f"tried: {tried}",
                    )
                )
            return Ok(RestoreResult(hit=False))

        wanted = [_relative(p) for p in paths]
        anchor = Path(paths[0]).anchor if paths else os.sep
        try:
            with tarfile.open(self._archive(matched), "r:gz") as tar:
                members = [m for m in tar.getmembers() if _selected(m.name, wanted)]
                tar.extractall(path=anchor, members=members, filter="data")
        except FileNotFoundError:
            # Pruned between lookup and open.
            if required:
                return Err(
                    PipelineError(
                        kind="cache_required_missing",
                        message=f"cache entry disappeared: {matched}",
                    )
                )
            return Ok(RestoreResult(hit=False))
        except (tarfile.TarError, OSError) as e:
            return Err(
                PipelineError(
                    kind="setup_failed",
                    message=f"failed to restore cache entry {matched}",
                    hint=str(e),
                )
            )

        files = sum(1 for m in members if m.isfile())
        return Ok(RestoreResult(hit=True, matched_key=matched, restored_files=files))

    def save(self, key: str, paths: Sequence[Path]) -> Result[CacheEntryInfo, PipelineError]:
        """Snapshot ``paths`` under ``key``, replacing any previous entry."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.root, suffix=".tmp")
        except OSError as e:
            return Err(
                PipelineError(kind="setup_failed", message="cannot write cache", hint=str(e))
            )

        tmp = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as raw, tarfile.open(fileobj=raw, mode="w:gz") as tar:
                for path in paths:
                    p = Path(path)
                    if not p.exists():
                        continue
                    tar.add(p, arcname=_relative(p))
            target = self._archive(key)
            os.replace(tmp, target)
            st = target.stat()
        except (tarfile.TarError, OSError) as e:
            tmp.unlink(missing_ok=True)
            return Err(
                PipelineError(
                    kind="setup_failed",
                    message=f"failed to save cache entry {key}",
                    hint=str(e),
                )
            )

        return Ok(CacheEntryInfo(key=key, saved_at=st.st_mtime, size_bytes=st.st_size))

    def prune(self, max_entries: int) -> list[str]:
        """Delete the oldest entries beyond ``max_entries``; return removed keys."""
        removed: list[str] = []
        for entry in self.keys()[max(0, max_entries) :]:
            self._archive(entry.key).unlink(missing_ok=True)
            removed.append(entry.key)
        return removed


def _relative(path: Path) -> str:
    p = Path(path)
    return p.relative_to(p.anchor).as_posix().rstrip("/") if p.is_absolute() else p.as_posix()


def _selected(name: str, wanted: list[str]) -> bool:
    member = PurePosixPath(name).as_posix()
    return any(member == w or member.startswith(w + "/") for w in wanted)
