from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import yaml

from .schema import TIERS

PHASES = {"scan", "index", "analyze", "synthesize", "investigate", "report"}

KNOWN_KEYS = {
    "include",
    "exclude",
    "max_files",
    "workspace_dir",
    "history_dir",
    "tier",
    "focus_areas",
    "knowledge_refs",
    "worker_command",
    "phase_workers",
    "worker_tiers",
    "worker_timeout_seconds",
    "max_retries",
    "magnitude_threshold",
    "rewrite_threshold",
    "fixed_cost",
    "per_line_cost",
    "per_reference_byte",
    "per_routed_report",
    "task_ceiling",
    "batch_ceiling",
    "max_batch_size",
    "estimator_plugin",
    "min_novel_fraction",
    "max_hypotheses",
    "supplemental_rounds",
    "persistence_threshold",
    "conclusion_snapshot_chars",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_command(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return isinstance(value, list) and bool(value) and all(isinstance(v, str) for v in value)


def _validate_list_strings(raw: dict[str, Any], key: str, errors: list[str]) -> None:
    if key not in raw:
        return
    value = raw.get(key)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        errors.append(f"{key} must be a list of strings")


def _validate_optional_number(raw: dict[str, Any], key: str, errors: list[str]) -> None:
    if key not in raw:
        return
    value = raw.get(key)
    if value is None:
        return
    if not _is_number(value):
        errors.append(f"{key} must be a number")


def _validate_optional_int(raw: dict[str, Any], key: str, errors: list[str]) -> None:
    if key not in raw:
        return
    value = raw.get(key)
    if value is None:
        return
    if not _is_int(value):
        errors.append(f"{key} must be an integer")
    elif value < 0:
        errors.append(f"{key} must not be negative")


def _validate_fraction(raw: dict[str, Any], key: str, errors: list[str]) -> None:
    if key not in raw or raw.get(key) is None:
        return
    value = raw.get(key)
    if not _is_number(value):
        errors.append(f"{key} must be a number")
    elif not 0.0 <= float(value) <= 1.0:
        errors.append(f"{key} must be between 0 and 1")


def _validate_pattern_map(raw: dict[str, Any], key: str, errors: list[str]) -> None:
    if key not in raw:
        return
    value = raw.get(key)
    if not isinstance(value, dict):
        errors.append(f"{key} must be a mapping of name to list of patterns")
        return
    for name, patterns in value.items():
        if isinstance(patterns, str):
            continue
        if not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns):
            errors.append(f"{key}.{name} must be a list of strings")


def _validate_phase_map(raw: dict[str, Any], key: str, errors: list[str], commands: bool) -> None:
    if key not in raw:
        return
    value = raw.get(key)
    if not isinstance(value, dict):
        errors.append(f"{key} must be a mapping keyed by phase")
        return
    for phase, item in value.items():
        if phase not in PHASES:
            errors.append(f"{key} has unknown phase: {phase}")
            continue
        if commands and not _is_command(item):
            errors.append(f"{key}.{phase} must be a command string or list of strings")
        if not commands and not isinstance(item, str):
            errors.append(f"{key}.{phase} must be a string")


def validate_raw_config(raw: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    for key in raw.keys():
        if key not in KNOWN_KEYS:
            errors.append(f"Unknown key: {key}")

    _validate_list_strings(raw, "include", errors)
    _validate_list_strings(raw, "exclude", errors)
    _validate_pattern_map(raw, "focus_areas", errors)
    _validate_pattern_map(raw, "knowledge_refs", errors)
    _validate_phase_map(raw, "phase_workers", errors, commands=True)
    _validate_phase_map(raw, "worker_tiers", errors, commands=False)

    if "worker_command" in raw and raw.get("worker_command") is not None:
        if not _is_command(raw.get("worker_command")):
            errors.append("worker_command must be a command string or list of strings")

    if "tier" in raw and raw.get("tier") is not None:
        tier = raw.get("tier")
        if not isinstance(tier, str) or tier.lower() not in TIERS:
            errors.append(f"tier must be one of: {', '.join(TIERS)}")

    for key in ["workspace_dir", "history_dir", "estimator_plugin"]:
        if key in raw and raw.get(key) is not None and not isinstance(raw.get(key), str):
            errors.append(f"{key} must be a string")

    for key in [
        "max_files",
        "max_retries",
        "magnitude_threshold",
        "fixed_cost",
        "per_line_cost",
        "per_routed_report",
        "task_ceiling",
        "batch_ceiling",
        "max_batch_size",
        "max_hypotheses",
        "supplemental_rounds",
        "persistence_threshold",
        "conclusion_snapshot_chars",
    ]:
        _validate_optional_int(raw, key, errors)

    for key in ["worker_timeout_seconds", "per_reference_byte"]:
        _validate_optional_number(raw, key, errors)

    _validate_fraction(raw, "rewrite_threshold", errors)
    _validate_fraction(raw, "min_novel_fraction", errors)

    task_ceiling = raw.get("task_ceiling")
    batch_ceiling = raw.get("batch_ceiling")
    if _is_int(task_ceiling) and _is_int(batch_ceiling) and batch_ceiling < task_ceiling:
        errors.append("batch_ceiling must be at least task_ceiling")
    if _is_int(raw.get("max_batch_size")) and raw.get("max_batch_size") == 0:
        errors.append("max_batch_size must be at least 1")

    return errors


def validate_config_path(path: Path) -> list[str]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except Exception as exc:
        return [f"{path}: failed to read ({exc})"]
    if not isinstance(raw, dict):
        return [f"{path}: config must be a mapping"]
    errors = validate_raw_config(raw)
    return [f"{path}: {err}" for err in errors]


def validate_config_paths(paths: Iterable[Path]) -> list[str]:
    errors: list[str] = []
    for path in paths:
        if not path.exists():
            errors.append(f"{path}: file not found")
            continue
        errors.extend(validate_config_path(path))
    return errors
