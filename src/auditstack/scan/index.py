from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from auditstack.scan.entrypoints import matches_any, normalize_patterns
from auditstack.util.identity import file_hash
from auditstack.util.io import read_json, write_json_atomic

log = logging.getLogger(__name__)

INDEX_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class IndexedFile:
    path: str
    lines: int
    size: int
    sha1: str
    focus: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CodebaseIndex:
    codebase_ref: str
    files: dict[str, IndexedFile]
    focus_areas: list[str]

    def files_for(self, focus: str) -> list[IndexedFile]:
        return [f for f in self.files.values() if focus in f.focus]

    def line_counts(self, paths: list[str] | None = None) -> dict[str, int]:
        selected = self.files.values() if paths is None else (self.files[p] for p in paths if p in self.files)
        return {f.path: f.lines for f in selected}

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": INDEX_SCHEMA_VERSION,
            "codebase_ref": self.codebase_ref,
            "focus_areas": list(self.focus_areas),
            "files": [asdict(f) for f in sorted(self.files.values(), key=lambda f: f.path)],
        }


def assign_focus(rel: str, focus_patterns: dict[str, list[str]]) -> list[str]:
    return [name for name, patterns in focus_patterns.items() if matches_any(rel, patterns)]


def build_index(
    repo_root: Path,
    paths: list[str],
    focus_areas: dict[str, list[str]],
    codebase_ref: str,
) -> CodebaseIndex:
    focus_patterns = {name: normalize_patterns(patterns) for name, patterns in focus_areas.items()}
    files: dict[str, IndexedFile] = {}
    for rel in paths:
        try:
            data = (repo_root / rel).read_bytes()
        except OSError as exc:
            log.warning("Skipping unreadable file %s (%s)", rel, exc)
            continue
        lines = data.count(b"\n") + (1 if data and not data.endswith(b"\n") else 0)
        files[rel] = IndexedFile(
            path=rel,
            lines=lines,
            size=len(data),
            sha1=file_hash(data),
            focus=assign_focus(rel, focus_patterns),
        )
    untagged = [f.path for f in files.values() if not f.focus]
    if untagged:
        log.info("%d file(s) match no focus area and will not be analyzed.", len(untagged))
    return CodebaseIndex(codebase_ref=codebase_ref, files=files, focus_areas=list(focus_areas))


def write_index(index: CodebaseIndex, path: Path) -> None:
    write_json_atomic(path, index.to_dict())


def read_index(path: Path) -> CodebaseIndex | None:
    raw = read_json(path)
    if not isinstance(raw, dict):
        return None
    files: dict[str, IndexedFile] = {}
    for item in raw.get("files", []):
        if not isinstance(item, dict) or not item.get("path"):
            continue
        entry = IndexedFile(
            path=str(item["path"]),
            lines=int(item.get("lines", 0)),
            size=int(item.get("size", 0)),
            sha1=str(item.get("sha1", "")),
            focus=[str(f) for f in item.get("focus", [])],
        )
        files[entry.path] = entry
    return CodebaseIndex(
        codebase_ref=str(raw.get("codebase_ref", "")),
        files=files,
        focus_areas=[str(f) for f in raw.get("focus_areas", [])],
    )
