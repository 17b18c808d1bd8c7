from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from auditstack.util.identity import stable_finding_id
from auditstack.util.io import read_json, write_json_atomic

from .models import (
    SCHEMA_VERSION,
    AnalysisTask,
    AuditReport,
    Conclusion,
    Finding,
    Hypothesis,
    Origin,
    Report,
    ReportStats,
    ResolvedFinding,
)
from .severity import normalize_severity


def _str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(v) for v in value]
    return []


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def task_from_dict(raw: dict[str, Any]) -> AnalysisTask:
    return AnalysisTask(
        unit_id=str(raw.get("unit_id", "")),
        phase=str(raw.get("phase", "")),
        focus=str(raw.get("focus", "")),
        inputs={str(k): _int(v) for k, v in dict(raw.get("inputs") or {}).items()},
        requires=frozenset(_str_list(raw.get("requires"))),
        provides=frozenset(_str_list(raw.get("provides"))),
        references={str(k): _int(v) for k, v in dict(raw.get("references") or {}).items()},
        routed=tuple(_str_list(raw.get("routed"))),
        split_of=str(raw["split_of"]) if raw.get("split_of") else None,
        payload=dict(raw.get("payload") or {}),
    )


def conclusion_from_dict(raw: Any, index: int) -> Conclusion:
    if isinstance(raw, str):
        return Conclusion(id=f"C{index}", text=raw)
    if not isinstance(raw, dict):
        return Conclusion(id=f"C{index}", text=str(raw))
    return Conclusion(
        id=str(raw.get("id") or f"C{index}"),
        text=str(raw.get("text", "")),
        files=_str_list(raw.get("files")),
    )


def report_from_dict(raw: dict[str, Any]) -> Report:
    conclusions_raw = raw.get("conclusions") or []
    if not isinstance(conclusions_raw, list):
        conclusions_raw = []
    return Report(
        report_id=str(raw.get("report_id", "")),
        phase=str(raw.get("phase", "")),
        focus=str(raw.get("focus", "")),
        provides=frozenset(_str_list(raw.get("provides"))),
        summary=str(raw.get("summary", "")),
        conclusions=[conclusion_from_dict(c, i) for i, c in enumerate(conclusions_raw, start=1)],
        body=dict(raw.get("body") or {}),
        parts=tuple(_str_list(raw.get("parts"))),
    )


def hypothesis_from_dict(raw: dict[str, Any]) -> Hypothesis:
    return Hypothesis(
        hypothesis_id=str(raw.get("hypothesis_id", "")),
        title=str(raw.get("title", "")),
        file=str(raw.get("file", "")),
        condition=str(raw.get("condition") or raw.get("title", "")),
        origin=Origin.parse(raw.get("origin")),
        requires=frozenset(_str_list(raw.get("requires"))),
        focus=str(raw.get("focus", "")),
        priority=_int(raw.get("priority")),
    )


def finding_from_dict(raw: dict[str, Any]) -> Finding:
    file = str(raw.get("file", ""))
    condition = str(raw.get("condition") or raw.get("title", ""))
    status = str(raw.get("status", "potential")).strip().lower()
    if status not in {"confirmed", "potential", "dismissed"}:
        status = "potential"
    original = raw.get("original_severity")
    return Finding(
        finding_id=str(raw.get("finding_id") or stable_finding_id(file, condition)),
        hypothesis_id=str(raw.get("hypothesis_id", "")),
        status=status,
        severity=normalize_severity(raw.get("severity")),
        file=file,
        line=_int(raw.get("line"), 0),
        title=str(raw.get("title", "")),
        condition=condition,
        description=str(raw.get("description", "")),
        evolution=str(raw["evolution"]) if raw.get("evolution") else None,
        original_severity=normalize_severity(original) if original else None,
        persistent=bool(raw.get("persistent", False)),
    )


def write_report(report: AuditReport, path: Path) -> None:
    write_json_atomic(path, report.to_dict())


def read_report(path: Path) -> AuditReport:
    raw = json.loads(path.read_text(encoding="utf-8"))
    stats_raw = raw.get("stats")
    stats = None
    if isinstance(stats_raw, dict):
        stats = ReportStats(
            findings_total=_int(stats_raw.get("findings_total")),
            active_total=_int(stats_raw.get("active_total")),
            dismissed_total=_int(stats_raw.get("dismissed_total")),
            severity_counts=dict(stats_raw.get("severity_counts", {})),
            evolution_counts=dict(stats_raw.get("evolution_counts", {})),
            resolved_total=_int(stats_raw.get("resolved_total")),
            persistent_total=_int(stats_raw.get("persistent_total")),
        )
    resolved = [
        ResolvedFinding(
            finding_id=str(r.get("finding_id", "")),
            title=str(r.get("title", "")),
            file=str(r.get("file", "")),
            severity=normalize_severity(r.get("severity")),
            reason=str(r.get("reason", "")),
        )
        for r in raw.get("resolved", [])
        if isinstance(r, dict)
    ]
    return AuditReport(
        schema_version=_int(raw.get("schema_version"), SCHEMA_VERSION),
        generated_at=str(raw.get("generated_at", "")),
        run_id=str(raw.get("run_id", "")),
        sequence=_int(raw.get("sequence"), 1),
        codebase_ref=str(raw.get("codebase_ref", "")),
        stacked=bool(raw.get("stacked", False)),
        findings=[finding_from_dict(f) for f in raw.get("findings", []) if isinstance(f, dict)],
        resolved=resolved,
        lineage=[row for row in raw.get("lineage", []) if isinstance(row, dict)],
        degraded_phases=_str_list(raw.get("degraded_phases")),
        notes=_str_list(raw.get("notes")),
        stats=stats,
    )


def is_part_file(path: Path) -> bool:
    stem = path.stem
    head, sep, tail = stem.rpartition(".part")
    return bool(sep and head and tail.isdigit())


def write_unit_report(report: Report, path: Path) -> None:
    write_json_atomic(path, report.to_dict())


def read_unit_report(path: Path) -> Report | None:
    raw = read_json(path)
    if not isinstance(raw, dict) or not raw.get("report_id"):
        return None
    return report_from_dict(raw)


def load_reports(directory: Path, include_parts: bool = False) -> list[Report]:
    """Logical reports of one phase, ordered by report id."""
    if not directory.is_dir():
        return []
    reports: list[Report] = []
    for path in sorted(directory.glob("*.json")):
        if not include_parts and is_part_file(path):
            continue
        report = read_unit_report(path)
        if report is not None:
            reports.append(report)
    return reports
