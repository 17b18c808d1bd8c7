from __future__ import annotations

import logging
import shlex
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml

from .schema import AuditStackConfig

log = logging.getLogger(__name__)

CONFIG_FILENAME = ".auditstack.yml"


def _load_raw_config(path: Path) -> dict[str, Any]:
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except Exception as e:
        log.warning("Failed to load %s (%s). Skipping.", path, e)
        return {}


def _get_list(raw: dict[str, Any], key: str) -> list[str] | None:
    if key not in raw:
        return None
    v = raw.get(key)
    if isinstance(v, list):
        return [str(x) for x in v]
    return None


def _get_command(raw: dict[str, Any], key: str) -> list[str] | None:
    if key not in raw:
        return None
    return _as_command(raw.get(key))


def _as_command(v: Any) -> list[str] | None:
    if isinstance(v, str):
        return shlex.split(v)
    if isinstance(v, list):
        return [str(x) for x in v]
    return None


def _get_optional_int(raw: dict[str, Any], key: str) -> int | None:
    if key not in raw:
        return None
    v = raw.get(key)
    if v is None:
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _get_optional_float(raw: dict[str, Any], key: str) -> float | None:
    if key not in raw:
        return None
    v = raw.get(key)
    if v is None:
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _get_optional_str(raw: dict[str, Any], key: str) -> str | None:
    if key not in raw:
        return None
    v = raw.get(key)
    if v is None:
        return None
    return str(v)


def _get_pattern_map(raw: dict[str, Any], key: str) -> dict[str, list[str]] | None:
    v = raw.get(key)
    if not isinstance(v, dict):
        return None
    out: dict[str, list[str]] = {}
    for name, patterns in v.items():
        name = str(name).strip()
        if not name:
            continue
        if isinstance(patterns, str):
            out[name] = [patterns]
        elif isinstance(patterns, list):
            out[name] = [str(p) for p in patterns]
    return out


def _get_phase_workers(raw: dict[str, Any]) -> dict[str, list[str]]:
    v = raw.get("phase_workers")
    if not isinstance(v, dict):
        return {}
    out: dict[str, list[str]] = {}
    for phase, cmd in v.items():
        argv = _as_command(cmd)
        if argv:
            out[str(phase)] = argv
    return out


def _get_worker_tiers(raw: dict[str, Any]) -> dict[str, str]:
    v = raw.get("worker_tiers")
    if not isinstance(v, dict):
        return {}
    return {str(k): str(val) for k, val in v.items() if val is not None}


def _merge_config(
    base: AuditStackConfig,
    raw: dict[str, Any],
    include_set: bool,
    exclude_set: bool,
) -> tuple[AuditStackConfig, bool, bool]:
    include = base.include
    exclude = base.exclude

    raw_include = _get_list(raw, "include")
    if raw_include is not None:
        if include_set:
            include = [*include, *raw_include]
        else:
            include = raw_include
            include_set = True

    raw_exclude = _get_list(raw, "exclude")
    if raw_exclude is not None:
        if exclude_set:
            exclude = [*exclude, *raw_exclude]
        else:
            exclude = raw_exclude
            exclude_set = True

    max_files = _get_optional_int(raw, "max_files")
    if max_files is None:
        max_files = base.max_files
    workspace_dir = _get_optional_str(raw, "workspace_dir") or base.workspace_dir
    history_dir = _get_optional_str(raw, "history_dir") or base.history_dir
    tier = (_get_optional_str(raw, "tier") or base.tier).strip().lower()

    focus_areas = base.focus_areas
    raw_focus = _get_pattern_map(raw, "focus_areas")
    if raw_focus is not None:
        focus_areas = raw_focus
    knowledge_refs = base.knowledge_refs
    raw_refs = _get_pattern_map(raw, "knowledge_refs")
    if raw_refs is not None:
        knowledge_refs = {**knowledge_refs, **raw_refs}

    worker_command = _get_command(raw, "worker_command")
    if worker_command is None:
        worker_command = base.worker_command
    phase_workers = {**base.phase_workers, **_get_phase_workers(raw)}
    worker_tiers = {**base.worker_tiers, **_get_worker_tiers(raw)}
    worker_timeout_seconds = _get_optional_float(raw, "worker_timeout_seconds")
    if worker_timeout_seconds is None:
        worker_timeout_seconds = base.worker_timeout_seconds
    max_retries = _get_optional_int(raw, "max_retries")
    if max_retries is None:
        max_retries = base.max_retries

    magnitude_threshold = _get_optional_int(raw, "magnitude_threshold")
    if magnitude_threshold is None:
        magnitude_threshold = base.magnitude_threshold
    rewrite_threshold = _get_optional_float(raw, "rewrite_threshold")
    if rewrite_threshold is None:
        rewrite_threshold = base.rewrite_threshold

    fixed_cost = _get_optional_int(raw, "fixed_cost")
    if fixed_cost is None:
        fixed_cost = base.fixed_cost
    per_line_cost = _get_optional_int(raw, "per_line_cost")
    if per_line_cost is None:
        per_line_cost = base.per_line_cost
    per_reference_byte = _get_optional_float(raw, "per_reference_byte")
    if per_reference_byte is None:
        per_reference_byte = base.per_reference_byte
    per_routed_report = _get_optional_int(raw, "per_routed_report")
    if per_routed_report is None:
        per_routed_report = base.per_routed_report
    task_ceiling = _get_optional_int(raw, "task_ceiling")
    if task_ceiling is None:
        task_ceiling = base.task_ceiling
    batch_ceiling = _get_optional_int(raw, "batch_ceiling")
    if batch_ceiling is None:
        batch_ceiling = base.batch_ceiling
    max_batch_size = _get_optional_int(raw, "max_batch_size")
    if max_batch_size is None:
        max_batch_size = base.max_batch_size
    estimator_plugin = _get_optional_str(raw, "estimator_plugin")
    if estimator_plugin is None:
        estimator_plugin = base.estimator_plugin

    min_novel_fraction = _get_optional_float(raw, "min_novel_fraction")
    if min_novel_fraction is None:
        min_novel_fraction = base.min_novel_fraction
    max_hypotheses = _get_optional_int(raw, "max_hypotheses")
    if max_hypotheses is None:
        max_hypotheses = base.max_hypotheses
    supplemental_rounds = _get_optional_int(raw, "supplemental_rounds")
    if supplemental_rounds is None:
        supplemental_rounds = base.supplemental_rounds
    persistence_threshold = _get_optional_int(raw, "persistence_threshold")
    if persistence_threshold is None:
        persistence_threshold = base.persistence_threshold
    conclusion_snapshot_chars = _get_optional_int(raw, "conclusion_snapshot_chars")
    if conclusion_snapshot_chars is None:
        conclusion_snapshot_chars = base.conclusion_snapshot_chars

    return (
        AuditStackConfig(
            include=include,
            exclude=exclude,
            max_files=max_files,
            workspace_dir=workspace_dir,
            history_dir=history_dir,
            tier=tier,
            focus_areas=focus_areas,
            knowledge_refs=knowledge_refs,
            worker_command=worker_command,
            phase_workers=phase_workers,
            worker_tiers=worker_tiers,
            worker_timeout_seconds=worker_timeout_seconds,
            max_retries=max_retries,
            magnitude_threshold=magnitude_threshold,
            rewrite_threshold=rewrite_threshold,
            fixed_cost=fixed_cost,
            per_line_cost=per_line_cost,
            per_reference_byte=per_reference_byte,
            per_routed_report=per_routed_report,
            task_ceiling=task_ceiling,
            batch_ceiling=batch_ceiling,
            max_batch_size=max_batch_size,
            estimator_plugin=estimator_plugin,
            min_novel_fraction=min_novel_fraction,
            max_hypotheses=max_hypotheses,
            supplemental_rounds=supplemental_rounds,
            persistence_threshold=persistence_threshold,
            conclusion_snapshot_chars=conclusion_snapshot_chars,
        ),
        include_set,
        exclude_set,
    )


def resolve_config_paths(repo_root: Path, config_paths: Iterable[Path] | None) -> list[Path]:
    if config_paths is None:
        return [repo_root / CONFIG_FILENAME]
    resolved: list[Path] = []
    for path in config_paths:
        p = Path(path)
        if not p.is_absolute():
            p = repo_root / p
        resolved.append(p)
    return resolved


def load_config(repo_root: Path, config_paths: Iterable[Path] | None = None) -> AuditStackConfig:
    paths = resolve_config_paths(repo_root, config_paths)
    if config_paths is None and not paths[0].exists():
        return AuditStackConfig()

    cfg = AuditStackConfig()
    include_set = False
    exclude_set = False
    for path in paths:
        if not path.exists():
            log.warning("Config %s not found; skipping.", path)
            continue
        raw = _load_raw_config(path)
        if not isinstance(raw, dict):
            log.warning("Config %s is not a mapping; skipping.", path)
            continue
        cfg, include_set, exclude_set = _merge_config(cfg, raw, include_set, exclude_set)
    return cfg
