from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

WORKTREE_REF = "WORKTREE"


@dataclass(frozen=True)
class PathChange:
    """One path as reported by ``git diff``: status letter and changed-line count."""

    status: str
    changed_lines: int | None


def _run_git_checked(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", "-C", str(repo_root), *args],
        check=False,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="surrogateescape",
    )


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        return _run_git_checked(repo_root, args)
    except FileNotFoundError:
        return subprocess.CompletedProcess(["git", *args], 127, "", "git executable not found")


def is_git_repo(repo_root: Path) -> bool:
    p = _run_git(repo_root, ["rev-parse", "--is-inside-work-tree"])
    return p.returncode == 0 and p.stdout.strip() == "true"


def ref_exists(repo_root: Path, ref: str) -> bool:
    p = _run_git(repo_root, ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"])
    return p.returncode == 0


def resolve_ref(repo_root: Path, ref: str = "HEAD") -> str | None:
    p = _run_git(repo_root, ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"])
    if p.returncode != 0:
        return None
    return p.stdout.strip() or None


def current_ref(repo_root: Path) -> str:
    """Commit hash of HEAD, or the worktree marker outside git."""
    return resolve_ref(repo_root, "HEAD") or WORKTREE_REF


def tracked_files(repo_root: Path, ref: str | None = None) -> list[str] | None:
    """Repo-relative tracked paths at ``ref`` (index when ref is None).

    Returns None if git is unavailable or the ref does not resolve.
    """
    if ref and ref != WORKTREE_REF:
        p = _run_git(repo_root, ["ls-tree", "-r", "--name-only", "-z", ref])
    else:
        p = _run_git(repo_root, ["ls-files", "-z"])
    if p.returncode != 0:
        return None
    return sorted(item for item in p.stdout.split("\0") if item)


def _parse_numstat(out: str) -> dict[str, int | None]:
    # -z records: "<added>\t<removed>\t<path>\0"
    counts: dict[str, int | None] = {}
    for record in out.split("\0"):
        parts = record.strip("\n").split("\t", 2)
        if len(parts) != 3:
            continue
        added, removed, path = parts
        if added == "-" or removed == "-":
            # binary
            counts[path] = None
            continue
        try:
            counts[path] = int(added) + int(removed)
        except ValueError:
            counts[path] = None
    return counts


def _parse_name_status(out: str) -> dict[str, str]:
    # -z records alternate status and path: "M\0path\0A\0path\0"
    statuses: dict[str, str] = {}
    fields = out.split("\0")
    for i in range(0, len(fields) - 1, 2):
        letter = fields[i].strip()[:1]
        path = fields[i + 1]
        if letter and path:
            statuses[path] = letter
    return statuses


def diff_refs(repo_root: Path, ref_a: str, ref_b: str) -> dict[str, PathChange] | None:
    """Per-path status and change size between two refs.

    ``ref_b`` may be the worktree marker to compare against the working tree.
    Returns None if ``ref_a`` cannot be resolved or git fails.
    """
    if not ref_a or ref_a == WORKTREE_REF or not ref_exists(repo_root, ref_a):
        return None
    target = [] if ref_b == WORKTREE_REF else [ref_b]
    base_args = ["diff", "-z", "--no-renames", "--no-color", ref_a, *target, "--"]
    status_p = _run_git(repo_root, [*base_args[:1], "--name-status", *base_args[1:]])
    if status_p.returncode != 0:
        return None
    numstat_p = _run_git(repo_root, [*base_args[:1], "--numstat", *base_args[1:]])
    if numstat_p.returncode != 0:
        return None
    statuses = _parse_name_status(status_p.stdout)
    counts = _parse_numstat(numstat_p.stdout)
    return {
        path: PathChange(status=letter, changed_lines=counts.get(path))
        for path, letter in statuses.items()
    }
