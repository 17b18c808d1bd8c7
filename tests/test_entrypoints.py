from __future__ import annotations

from pathlib import Path

from auditstack.config.schema import AuditStackConfig
from auditstack.scan.entrypoints import build_scope_predicate, discover_files, normalize_pattern
from auditstack.scan.index import build_index, read_index, write_index


def test_discover_files_respects_exclude(tmp_path: Path) -> None:
    (tmp_path / "src" / "excluded").mkdir(parents=True)
    (tmp_path / "src" / "keep.src").write_text("a\n", encoding="utf-8")
    (tmp_path / "src" / "excluded" / "skip.src").write_text("b\n", encoding="utf-8")

    cfg = AuditStackConfig(include=["src"], exclude=["src/excluded"])

    assert discover_files(tmp_path, cfg) == ["src/keep.src"]


def test_discover_files_respects_ignore_file(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "keep.src").write_text("a\n", encoding="utf-8")
    (tmp_path / "src" / "skip.src").write_text("b\n", encoding="utf-8")
    (tmp_path / ".auditstackignore").write_text("# generated\nsrc/skip.src\n", encoding="utf-8")

    assert discover_files(tmp_path, AuditStackConfig(include=["src"])) == ["src/keep.src"]


def test_workspace_and_history_are_never_in_scope(tmp_path: Path) -> None:
    cfg = AuditStackConfig(exclude=[], workspace_dir="work", history_dir="hist")
    in_scope = build_scope_predicate(tmp_path, cfg)

    assert in_scope("app.src")
    assert not in_scope("work/STATE.json")
    assert not in_scope("hist/2024-01-01-abc1234/report.json")


def test_normalize_pattern() -> None:
    assert normalize_pattern("./src/") == "src/**"
    assert normalize_pattern("src") == "src/**"
    assert normalize_pattern(".") == "**"
    assert normalize_pattern("*.src") == "*.src"
    assert normalize_pattern("# comment") == ""


def test_index_tags_files_with_focus_areas(tmp_path: Path) -> None:
    (tmp_path / "auth").mkdir()
    (tmp_path / "auth" / "login.src").write_text("one\ntwo\nthree", encoding="utf-8")
    (tmp_path / "README.md").write_text("readme\n", encoding="utf-8")
    focus = {"auth": ["auth/**"], "docs": ["*.md"], "general": ["**"]}

    index = build_index(tmp_path, ["auth/login.src", "README.md"], focus, "WORKTREE")

    assert index.files["auth/login.src"].lines == 3
    assert index.files["auth/login.src"].focus == ["auth", "general"]
    assert index.files["README.md"].focus == ["docs", "general"]
    assert [f.path for f in index.files_for("auth")] == ["auth/login.src"]

    path = tmp_path / "INDEX.json"
    write_index(index, path)
    assert read_index(path) == index
