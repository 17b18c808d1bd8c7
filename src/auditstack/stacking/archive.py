"""Immutable history store for completed or abandoned runs.

A workspace is archived by moving it under ``history_dir/<name>.partial``,
writing an ``ARCHIVE.json`` manifest and renaming it to its final name. Only a
directory with a final name and a valid manifest is a usable archive; anything
else is reported as corrupt and never consumed.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from auditstack.errors import ArchiveCorruptError
from auditstack.util.identity import short_ref
from auditstack.util.io import read_json, write_json_atomic
from auditstack.util.timeutil import to_iso, utc_now

log = logging.getLogger(__name__)

MANIFEST_NAME = "ARCHIVE.json"
PARTIAL_SUFFIX = ".partial"
ARCHIVE_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    path: Path
    run_id: str
    sequence: int
    codebase_ref: str
    archived_at: str
    completed: bool
    file_count: int

    def manifest(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("path")
        data["schema_version"] = ARCHIVE_SCHEMA_VERSION
        return data


def archive_name(codebase_ref: str, when: datetime) -> str:
    return f"{when.strftime('%Y-%m-%d')}-{short_ref(codebase_ref)}"


def _unique_name(history_dir: Path, base: str) -> str:
    name = base
    counter = 2
    while (history_dir / name).exists() or (history_dir / f"{name}{PARTIAL_SUFFIX}").exists():
        name = f"{base}-{counter}"
        counter += 1
    return name


def _count_files(root: Path) -> int:
    return sum(1 for p in root.rglob("*") if p.is_file())


def archive(
    workspace: Path,
    history_dir: Path,
    run_id: str,
    sequence: int,
    codebase_ref: str,
    completed: bool,
    now: datetime | None = None,
) -> ArchiveEntry:
    """Move ``workspace`` into the history store and return its entry."""
    if not workspace.is_dir():
        raise ArchiveCorruptError(workspace, "workspace does not exist")
    when = now or utc_now()
    history_dir.mkdir(parents=True, exist_ok=True)
    name = _unique_name(history_dir, archive_name(codebase_ref, when))
    staging = history_dir / f"{name}{PARTIAL_SUFFIX}"
    final = history_dir / name

    try:
        shutil.move(str(workspace), str(staging))
        entry = ArchiveEntry(
            name=name,
            path=final,
            run_id=run_id,
            sequence=sequence,
            codebase_ref=codebase_ref,
            archived_at=to_iso(when),
            completed=completed,
            file_count=_count_files(staging),
        )
        write_json_atomic(staging / MANIFEST_NAME, entry.manifest())
        staging.rename(final)
    except OSError as exc:
        # a leftover staging directory is reported as corrupt by list_archives
        raise ArchiveCorruptError(staging, f"archiving {workspace} failed: {exc}") from exc
    log.info(
        "Archived run %s (sequence %d, %s) to %s",
        run_id,
        sequence,
        "completed" if completed else "incomplete",
        final,
    )
    return entry


def load_archive(path: Path) -> ArchiveEntry:
    if path.name.endswith(PARTIAL_SUFFIX):
        raise ArchiveCorruptError(path, "archive move did not complete")
    raw = read_json(path / MANIFEST_NAME)
    if not isinstance(raw, dict):
        raise ArchiveCorruptError(path, f"missing or unreadable {MANIFEST_NAME}")
    try:
        entry = ArchiveEntry(
            name=str(raw["name"]),
            path=path,
            run_id=str(raw["run_id"]),
            sequence=int(raw["sequence"]),
            codebase_ref=str(raw["codebase_ref"]),
            archived_at=str(raw.get("archived_at", "")),
            completed=bool(raw.get("completed", False)),
            file_count=int(raw.get("file_count", 0)),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ArchiveCorruptError(path, f"invalid manifest ({exc})") from exc
    if entry.name != path.name:
        raise ArchiveCorruptError(path, f"manifest name {entry.name!r} does not match directory")
    actual = _count_files(path) - 1
    if actual < entry.file_count:
        raise ArchiveCorruptError(path, f"expected {entry.file_count} files, found {actual}")
    return entry


def list_archives(history_dir: Path) -> tuple[list[ArchiveEntry], list[ArchiveCorruptError]]:
    """Valid archives ordered oldest to newest, plus the corrupt ones found."""
    entries: list[ArchiveEntry] = []
    corrupt: list[ArchiveCorruptError] = []
    if not history_dir.is_dir():
        return entries, corrupt
    for child in sorted(history_dir.iterdir()):
        if not child.is_dir():
            continue
        try:
            entries.append(load_archive(child))
        except ArchiveCorruptError as exc:
            corrupt.append(exc)
    entries.sort(key=lambda e: (e.sequence, e.archived_at, e.name))
    return entries, corrupt


def latest_archive(history_dir: Path) -> ArchiveEntry | None:
    entries, corrupt = list_archives(history_dir)
    for exc in corrupt:
        log.warning("%s; skipping.", exc)
    if not entries:
        return None
    return entries[-1]
