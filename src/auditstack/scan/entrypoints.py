from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from pathlib import Path, PurePosixPath

import pathspec

from auditstack.config.schema import AuditStackConfig
from auditstack.git.diff import tracked_files

log = logging.getLogger(__name__)

IGNORE_FILENAME = ".auditstackignore"

_GLOB_CHARS = set("*?[")


def has_glob(pattern: str) -> bool:
    return any(ch in pattern for ch in _GLOB_CHARS)


def _expand_glob_patterns(pattern: str) -> list[str]:
    patterns = [pattern]
    if "**/" in pattern:
        patterns.append(pattern.replace("**/", ""))
    if pattern.endswith("/**"):
        suffix = pattern[:-3]
        patterns.append(suffix or ".")
    seen: list[str] = []
    for item in patterns:
        if not item:
            continue
        if item not in seen:
            seen.append(item)
    return seen


def normalize_pattern(pattern: str) -> str:
    p = pattern.strip()
    if not p or p.startswith("#"):
        return ""
    p = p.replace("\\", "/")
    if p.startswith("./"):
        p = p[2:]
    if p.startswith("/"):
        p = p.lstrip("/")
    if p == ".":
        return "**"
    if p.endswith("/"):
        return f"{p}**"
    if not has_glob(p) and Path(p).suffix == "":
        return f"{p}/**"
    return p


def normalize_patterns(patterns: Iterable[str]) -> list[str]:
    out: list[str] = []
    for pattern in patterns:
        norm = normalize_pattern(str(pattern))
        if not norm:
            continue
        for expanded in _expand_glob_patterns(norm):
            if expanded not in out:
                out.append(expanded)
    return out


def matches_any(rel: str, patterns: list[str]) -> bool:
    """Match a repo-relative posix path against normalized patterns.

    ``**`` alone matches everything; ``PurePosixPath.match`` treats it as a
    single segment otherwise.
    """
    if "**" in patterns:
        return True
    path = PurePosixPath(rel)
    for pattern in patterns:
        if path.match(pattern):
            return True
        if pattern.endswith("/**") and (rel == pattern[:-3] or rel.startswith(pattern[:-2])):
            return True
    return False


def _load_ignore_lines(repo_root: Path) -> list[str]:
    ignore_path = repo_root / IGNORE_FILENAME
    if not ignore_path.exists():
        return []
    try:
        lines = ignore_path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        log.warning("Failed to read %s (%s). Ignoring it.", ignore_path, exc)
        return []
    return [line for line in lines if line.strip() and not line.lstrip().startswith("#")]


def _build_ignore_matcher(repo_root: Path) -> Callable[[str], bool]:
    lines = _load_ignore_lines(repo_root)
    if not lines:
        return lambda _p: False
    spec = pathspec.PathSpec.from_lines("gitwildmatch", lines)

    def match_spec(rel: str) -> bool:
        return bool(spec.match_file(rel))

    return match_spec


def build_scope_predicate(repo_root: Path, cfg: AuditStackConfig) -> Callable[[str], bool]:
    """Predicate over repo-relative posix paths honoring include, exclude and ignore file."""
    include_patterns = normalize_patterns(cfg.include or ["."])
    exclude_patterns = normalize_patterns(cfg.exclude)
    ignore_matcher = _build_ignore_matcher(repo_root)
    workspace_patterns = normalize_patterns([cfg.workspace_dir, cfg.history_dir])

    def in_scope(rel: str) -> bool:
        if include_patterns and not matches_any(rel, include_patterns):
            return False
        if matches_any(rel, exclude_patterns) or matches_any(rel, workspace_patterns):
            return False
        if ignore_matcher(rel):
            return False
        return True

    return in_scope


def _walk_files(repo_root: Path) -> list[str]:
    out: list[str] = []
    for p in repo_root.rglob("*"):
        if not p.is_file():
            continue
        try:
            rel = p.relative_to(repo_root).as_posix()
        except ValueError:
            continue
        if rel.startswith(".git/"):
            continue
        out.append(rel)
    return sorted(out)


def discover_files(repo_root: Path, cfg: AuditStackConfig) -> list[str]:
    """Tracked, in-scope files as repo-relative posix paths.

    Uses the git index when available and falls back to a directory walk.
    """
    candidates = tracked_files(repo_root)
    if candidates is None:
        log.debug("git ls-files unavailable in %s; walking the tree.", repo_root)
        candidates = _walk_files(repo_root)
    in_scope = build_scope_predicate(repo_root, cfg)
    files: list[str] = []
    for rel in candidates:
        if not in_scope(rel):
            continue
        if not (repo_root / rel).is_file():
            continue
        files.append(rel)
        if len(files) >= cfg.max_files:
            log.warning("max_files (%d) reached; remaining files are out of scope.", cfg.max_files)
            break
    return files
