from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from auditstack.git.diff import WORKTREE_REF, PathChange, current_ref, diff_refs, tracked_files
from auditstack.stacking.delta import MODIFIED, compute_delta


def _git(root: Path, *args: str) -> str:
    p = subprocess.run(
        ["git", "-C", str(root), "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        check=True,
        capture_output=True,
        text=True,
    )
    return p.stdout.strip()


def test_outside_git_uses_worktree_marker(tmp_path: Path) -> None:
    assert current_ref(tmp_path) == WORKTREE_REF
    assert diff_refs(tmp_path, WORKTREE_REF, WORKTREE_REF) is None


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_diff_against_worktree(tmp_path: Path) -> None:
    (tmp_path / "keep.src").write_text("a\nb\n", encoding="utf-8")
    (tmp_path / "edit.src").write_text("a\nb\nc\n", encoding="utf-8")
    (tmp_path / "drop.src").write_text("x\n", encoding="utf-8")
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "base")
    base = _git(tmp_path, "rev-parse", "HEAD")

    (tmp_path / "edit.src").write_text("a\nB\nc\nd\n", encoding="utf-8")
    _git(tmp_path, "rm", "-q", "drop.src")
    (tmp_path / "add.src").write_text("new\n", encoding="utf-8")
    _git(tmp_path, "add", "add.src")

    assert current_ref(tmp_path) == base
    changes = diff_refs(tmp_path, base, WORKTREE_REF)

    assert changes == {
        "add.src": PathChange("A", 1),
        "drop.src": PathChange("D", 1),
        "edit.src": PathChange("M", 3),
    }
    assert tracked_files(tmp_path) == ["add.src", "edit.src", "keep.src"]
    assert diff_refs(tmp_path, "0" * 40, WORKTREE_REF) is None


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_non_ascii_paths_match_tracked_files(tmp_path: Path) -> None:
    (tmp_path / "café.src").write_text("a\nb\n", encoding="utf-8")
    (tmp_path / "plain.src").write_text("a\nb\n", encoding="utf-8")
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "config", "core.quotePath", "true")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "base")
    base = _git(tmp_path, "rev-parse", "HEAD")

    (tmp_path / "café.src").write_text("a\nB\nc\n", encoding="utf-8")
    (tmp_path / "plain.src").write_text("a\nB\nc\n", encoding="utf-8")

    changes = diff_refs(tmp_path, base, WORKTREE_REF)
    assert changes == {"café.src": PathChange("M", 3), "plain.src": PathChange("M", 3)}

    tracked = tracked_files(tmp_path)
    assert tracked == ["café.src", "plain.src"]
    delta = compute_delta(base, WORKTREE_REF, tracked, lambda a, b: diff_refs(tmp_path, a, b))
    assert {p: delta.status_of(p) for p in tracked} == {"café.src": MODIFIED, "plain.src": MODIFIED}
