"""File-level delta between two codebase snapshots.

The delta decides how much of a prior run can be reused: UNCHANGED files are
verified, MODIFIED files are re-checked, NEW files are analyzed from scratch and
DELETED files resolve whatever was found in them.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from auditstack.git.diff import PathChange

log = logging.getLogger(__name__)

NEW = "NEW"
MODIFIED = "MODIFIED"
UNCHANGED = "UNCHANGED"
DELETED = "DELETED"
STATUSES = (NEW, MODIFIED, UNCHANGED, DELETED)

MINOR = "minor"
MAJOR = "major"

DEFAULT_MAGNITUDE_THRESHOLD = 10
DEFAULT_REWRITE_THRESHOLD = 0.70

DiffProvider = Callable[[str, str], "Mapping[str, PathChange] | None"]

_STATUS_LETTERS = {
    "A": NEW,
    "M": MODIFIED,
    "T": MODIFIED,
    "D": DELETED,
}


@dataclass(frozen=True)
class FileDelta:
    status: str
    magnitude: str | None = None
    changed_lines: int | None = None


@dataclass(frozen=True)
class Delta:
    prior_ref: str
    current_ref: str
    entries: dict[str, FileDelta]
    prior_resolved: bool = True
    rewrite_threshold: float = DEFAULT_REWRITE_THRESHOLD
    counts: dict[str, int] = field(default_factory=dict)

    def status_of(self, path: str) -> str | None:
        entry = self.entries.get(path)
        return entry.status if entry else None

    def is_unchanged(self, path: str) -> bool:
        return self.status_of(path) == UNCHANGED

    def paths_with(self, status: str) -> list[str]:
        return sorted(p for p, e in self.entries.items() if e.status == status)

    @property
    def current_total(self) -> int:
        return sum(1 for e in self.entries.values() if e.status != DELETED)

    @property
    def change_ratio(self) -> float:
        total = self.current_total
        if total == 0:
            return 0.0
        return (self.counts.get(NEW, 0) + self.counts.get(MODIFIED, 0)) / total

    @property
    def massive_rewrite(self) -> bool:
        return self.change_ratio > self.rewrite_threshold

    def fragment(self, paths: Iterable[str]) -> dict[str, dict[str, Any]]:
        """Delta entries restricted to ``paths`` in the shape handed to workers."""
        out: dict[str, dict[str, Any]] = {}
        for p in paths:
            entry = self.entries.get(p)
            if entry is None:
                continue
            out[p] = _entry_to_dict(entry)
        return out

    def summary(self) -> dict[str, Any]:
        return {
            "prior_ref": self.prior_ref,
            "current_ref": self.current_ref,
            "prior_resolved": self.prior_resolved,
            "counts": {s: self.counts.get(s, 0) for s in STATUSES},
            "change_ratio": round(self.change_ratio, 4),
            "massive_rewrite": self.massive_rewrite,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.summary()
        data["rewrite_threshold"] = self.rewrite_threshold
        data["files"] = {p: _entry_to_dict(self.entries[p]) for p in sorted(self.entries)}
        return data


def _entry_to_dict(entry: FileDelta) -> dict[str, Any]:
    data: dict[str, Any] = {"status": entry.status}
    if entry.magnitude is not None:
        data["magnitude"] = entry.magnitude
    if entry.changed_lines is not None:
        data["changed_lines"] = entry.changed_lines
    return data


def delta_from_dict(raw: dict[str, Any]) -> Delta:
    entries: dict[str, FileDelta] = {}
    files = raw.get("files", {})
    if isinstance(files, dict):
        for path, item in files.items():
            if not isinstance(item, dict):
                continue
            status = str(item.get("status", "")).upper()
            if status not in STATUSES:
                continue
            changed = item.get("changed_lines")
            entries[str(path)] = FileDelta(
                status=status,
                magnitude=item.get("magnitude"),
                changed_lines=int(changed) if changed is not None else None,
            )
    return _build(
        prior_ref=str(raw.get("prior_ref", "")),
        current_ref=str(raw.get("current_ref", "")),
        entries=entries,
        prior_resolved=bool(raw.get("prior_resolved", True)),
        rewrite_threshold=float(raw.get("rewrite_threshold", DEFAULT_REWRITE_THRESHOLD)),
    )


def classify_magnitude(changed_lines: int | None, threshold: int = DEFAULT_MAGNITUDE_THRESHOLD) -> str:
    if changed_lines is None:
        return MAJOR
    return MINOR if changed_lines < threshold else MAJOR


def _build(
    prior_ref: str,
    current_ref: str,
    entries: dict[str, FileDelta],
    prior_resolved: bool,
    rewrite_threshold: float,
) -> Delta:
    counts = Counter(e.status for e in entries.values())
    return Delta(
        prior_ref=prior_ref,
        current_ref=current_ref,
        entries=entries,
        prior_resolved=prior_resolved,
        rewrite_threshold=rewrite_threshold,
        counts={s: counts.get(s, 0) for s in STATUSES},
    )


def compute_delta(
    prior_ref: str,
    current_ref: str,
    tracked_paths: Iterable[str],
    diff: DiffProvider,
    magnitude_threshold: int = DEFAULT_MAGNITUDE_THRESHOLD,
    rewrite_threshold: float = DEFAULT_REWRITE_THRESHOLD,
    in_scope: Callable[[str], bool] | None = None,
) -> Delta:
    """Classify every tracked path as NEW, MODIFIED, UNCHANGED or DELETED.

    ``tracked_paths`` are the in-scope files of the current snapshot; paths the
    diff reports as deleted are added when ``in_scope`` accepts them. If the
    prior ref cannot be resolved every tracked path is NEW, which forces full
    re-analysis rather than skipping work.
    """
    tracked = sorted(set(tracked_paths))
    changes = diff(prior_ref, current_ref) if prior_ref else None
    if changes is None:
        log.warning(
            "Prior ref %r cannot be resolved; treating all %d file(s) as NEW.",
            prior_ref,
            len(tracked),
        )
        return _build(
            prior_ref=prior_ref,
            current_ref=current_ref,
            entries={p: FileDelta(status=NEW) for p in tracked},
            prior_resolved=False,
            rewrite_threshold=rewrite_threshold,
        )

    tracked_set = set(tracked)
    entries: dict[str, FileDelta] = {}
    for path in tracked:
        change = changes.get(path)
        if change is None:
            entries[path] = FileDelta(status=UNCHANGED)
            continue
        status = _STATUS_LETTERS.get(change.status, MODIFIED)
        if status == DELETED:
            # deleted in the diff yet present now: re-added in the worktree
            status = NEW
        if status == MODIFIED:
            entries[path] = FileDelta(
                status=MODIFIED,
                magnitude=classify_magnitude(change.changed_lines, magnitude_threshold),
                changed_lines=change.changed_lines,
            )
        else:
            entries[path] = FileDelta(status=status, changed_lines=change.changed_lines)

    for path, change in changes.items():
        if path in tracked_set:
            continue
        if _STATUS_LETTERS.get(change.status) != DELETED:
            continue
        if in_scope is not None and not in_scope(path):
            continue
        entries[path] = FileDelta(status=DELETED, changed_lines=change.changed_lines)

    delta = _build(
        prior_ref=prior_ref,
        current_ref=current_ref,
        entries=entries,
        prior_resolved=True,
        rewrite_threshold=rewrite_threshold,
    )
    log.info(
        "Delta %s..%s: %s",
        prior_ref[:12],
        current_ref[:12],
        ", ".join(f"{s}={delta.counts[s]}" for s in STATUSES),
    )
    if delta.massive_rewrite:
        log.warning(
            "Massive rewrite detected (%.0f%% of files new or modified); verification is disabled.",
            delta.change_ratio * 100,
        )
    return delta
