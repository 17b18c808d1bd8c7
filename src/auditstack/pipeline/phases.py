"""Unit planning and worker-output parsing for the worker-backed phases."""

from __future__ import annotations

import dataclasses
import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict
from pathlib import Path
from typing import Any

from auditstack.config.schema import AuditStackConfig
from auditstack.dispatch.router import ReportIndex, route
from auditstack.errors import WorkerError
from auditstack.report.format_json import conclusion_from_dict, finding_from_dict, hypothesis_from_dict
from auditstack.report.models import AnalysisTask, Finding, FocusSnapshot, Hypothesis, Origin, Report
from auditstack.scan.index import CodebaseIndex
from auditstack.stacking.delta import MODIFIED, NEW, Delta
from auditstack.stacking.handover import CarriedFinding
from auditstack.stacking.verification import (
    NEEDS_RECHECK,
    is_verification_report,
    parse_verification_report,
    slug,
    spawn_verification,
    verification_tag,
)
from auditstack.util.identity import stable_finding_id

log = logging.getLogger(__name__)

RECHECK_PRIORITY = 100
CONCERN_PRIORITY = 50

_UNIT_SAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def unit_slug(text: str) -> str:
    return _UNIT_SAFE.sub("-", text).strip("-") or "unit"


def knowledge_references(repo_root: Path, cfg: AuditStackConfig, focus: str) -> dict[str, int]:
    refs: dict[str, int] = {}
    for rel in cfg.knowledge_refs.get(focus, []):
        path = repo_root / rel
        try:
            refs[rel] = path.stat().st_size
        except OSError:
            log.warning("Knowledge reference %s for focus %s not found; skipped.", rel, focus)
    return refs


def plan_analyze(
    repo_root: Path,
    cfg: AuditStackConfig,
    index: CodebaseIndex,
    delta: Delta | None,
    incremental: bool,
    conclusions: Mapping[str, FocusSnapshot],
) -> list[AnalysisTask]:
    """One analysis task per focus area, plus verification tasks on incremental runs.

    Incremental runs analyze only NEW and MODIFIED files; anything the delta
    does not know is analyzed as well.
    """
    tasks: list[AnalysisTask] = []
    for focus in cfg.focus_areas:
        files = sorted(index.files_for(focus), key=lambda f: f.path)
        if not files:
            continue
        if incremental and delta is not None:
            targets = [f for f in files if delta.status_of(f.path) in (NEW, MODIFIED, None)]
        else:
            targets = files
        if targets:
            paths = [f.path for f in targets]
            tasks.append(
                AnalysisTask(
                    unit_id=f"analyze-{slug(focus)}",
                    phase="analyze",
                    focus=focus,
                    inputs={f.path: f.lines for f in targets},
                    provides=frozenset({focus}),
                    references=knowledge_references(repo_root, cfg, focus),
                    payload={
                        "kind": "analysis",
                        "mode": "incremental" if incremental else "full",
                        "delta": delta.fragment(paths) if delta is not None else {},
                    },
                )
            )
        if incremental and delta is not None:
            verification = spawn_verification(focus, conclusions.get(focus), delta, [f.path for f in files])
            if verification is not None:
                tasks.append(verification)
    return tasks


def plan_synthesize(
    cfg: AuditStackConfig,
    analyses: ReportIndex,
    conclusions: Mapping[str, FocusSnapshot],
    rechecks: Sequence[CarriedFinding],
) -> list[AnalysisTask]:
    tasks: list[AnalysisTask] = []
    for focus in cfg.focus_areas:
        requires = frozenset({focus, verification_tag(focus)})
        routed = route(requires, analyses)
        prior = conclusions.get(focus)
        if not routed and prior is None:
            continue
        tasks.append(
            AnalysisTask(
                unit_id=f"synthesize-{slug(focus)}",
                phase="synthesize",
                focus=focus,
                requires=requires,
                provides=frozenset({focus, "hypotheses"}),
                routed=tuple(r.report_id for r in routed),
                payload={
                    "kind": "synthesis",
                    "conclusions": asdict(prior) if prior is not None else None,
                    "rechecks": [asdict(f) for f in rechecks],
                },
            )
        )
    return tasks


def recheck_hypotheses(rechecks: Iterable[CarriedFinding], index: CodebaseIndex) -> list[Hypothesis]:
    out: list[Hypothesis] = []
    for carried in rechecks:
        entry = index.files.get(carried.file)
        out.append(
            Hypothesis(
                hypothesis_id=f"H-recheck-{carried.finding_id}",
                title=carried.title,
                file=carried.file,
                condition=carried.condition,
                origin=Origin("recheck", carried.finding_id),
                requires=frozenset(entry.focus if entry else ()),
                focus=entry.focus[0] if entry and entry.focus else "",
                priority=RECHECK_PRIORITY,
            )
        )
    return out


def concern_hypotheses(
    reports: Iterable[Report],
    conclusions: Mapping[str, FocusSnapshot],
    index: CodebaseIndex,
) -> list[Hypothesis]:
    """Hypotheses raised by this run's verification reports.

    Each new concern becomes one hypothesis; each carried conclusion judged
    NEEDS_RECHECK becomes one hypothesis per file it names that is still
    indexed.
    """
    out: list[Hypothesis] = []
    for report in sorted(reports, key=lambda r: r.report_id):
        if not is_verification_report(report):
            continue
        focus = report.focus
        prior = conclusions.get(focus)
        verdicts = parse_verification_report(focus, report.body, [c.id for c in prior.conclusions] if prior else [])
        requires = frozenset({focus} if focus else ())
        for n, concern in enumerate(verdicts.new_concerns, start=1):
            file = str(concern.get("file") or "")
            condition = str(concern.get("condition") or concern.get("title") or "")
            if not file or not condition:
                continue
            out.append(
                Hypothesis(
                    hypothesis_id=f"H-concern-{slug(focus)}-{n}",
                    title=str(concern.get("title") or condition),
                    file=file,
                    condition=condition,
                    origin=Origin("verification", report.report_id),
                    requires=requires,
                    focus=focus,
                    priority=CONCERN_PRIORITY,
                )
            )
        if prior is None:
            continue
        recheck_ids = verdicts.ids_with(NEEDS_RECHECK)
        for conclusion in prior.conclusions:
            if conclusion.id not in recheck_ids:
                continue
            for file in conclusion.files:
                if file not in index.files:
                    continue
                out.append(
                    Hypothesis(
                        hypothesis_id=f"H-reverify-{unit_slug(conclusion.id)}-{unit_slug(file)}",
                        title=f"Re-examine {conclusion.id}",
                        file=file,
                        condition=conclusion.text,
                        origin=Origin("verification", conclusion.id),
                        requires=requires,
                        focus=focus,
                        priority=CONCERN_PRIORITY,
                    )
                )
    return out


def proposed_hypotheses(reports: Iterable[Report], prefix: str = "H") -> list[Hypothesis]:
    """Hypotheses proposed in ``reports``, with missing ids assigned in proposal order."""
    out: list[Hypothesis] = []
    seen_ids: set[str] = set()
    for report in sorted(reports, key=lambda r: r.report_id):
        items = report.body.get("hypotheses", [])
        if not isinstance(items, list):
            continue
        for n, item in enumerate(items, start=1):
            if not isinstance(item, dict) or not (item.get("file") and (item.get("condition") or item.get("title"))):
                continue
            h = hypothesis_from_dict(item)
            hid = h.hypothesis_id or f"{prefix}-{slug(report.focus or report.report_id)}-{n}"
            while hid in seen_ids:
                hid = f"{hid}-dup"
            seen_ids.add(hid)
            out.append(
                dataclasses.replace(
                    h,
                    hypothesis_id=hid,
                    focus=h.focus or report.focus,
                    requires=h.requires or frozenset({report.focus} if report.focus else ()),
                )
            )
    return out


def unique_by_signature(hypotheses: Iterable[Hypothesis]) -> list[Hypothesis]:
    out: list[Hypothesis] = []
    seen: set[str] = set()
    for h in hypotheses:
        if h.signature in seen:
            continue
        seen.add(h.signature)
        out.append(h)
    return out


def cap_hypotheses(hypotheses: Sequence[Hypothesis], cap: int) -> list[Hypothesis]:
    """Keep at most ``cap`` hypotheses; rechecks first, then by priority, then proposal order."""
    ranked = sorted(
        enumerate(hypotheses),
        key=lambda item: (0 if item[1].origin.kind == "recheck" else 1, -item[1].priority, item[0]),
    )
    kept = sorted(ranked[: max(0, cap)], key=lambda item: item[0])
    if len(hypotheses) > cap:
        log.info("Hypothesis cap %d reached; %d dropped.", cap, len(hypotheses) - cap)
    return [h for _, h in kept]


def plan_investigate(
    hypotheses: Iterable[Hypothesis],
    index: CodebaseIndex,
    analyses: ReportIndex,
) -> list[AnalysisTask]:
    tasks: list[AnalysisTask] = []
    for h in hypotheses:
        entry = index.files.get(h.file)
        requires = frozenset(h.requires | ({h.focus} if h.focus else set()))
        routed = route(requires, analyses)
        tasks.append(
            AnalysisTask(
                unit_id=f"investigate-{unit_slug(h.hypothesis_id)}",
                phase="investigate",
                focus=h.focus,
                inputs={h.file: entry.lines} if entry else {},
                requires=requires,
                provides=frozenset({"findings"}),
                routed=tuple(r.report_id for r in routed),
                payload={"kind": "investigation", "hypothesis": h.to_dict()},
            )
        )
    return tasks


def parse_report(task: AnalysisTask, raw: dict[str, Any]) -> Report:
    """Build the report of one unit from a worker's output."""
    conclusions_raw = raw.get("conclusions") or []
    if not isinstance(conclusions_raw, list):
        raise WorkerError(f"{task.unit_id}: 'conclusions' must be a list")
    return Report(
        report_id=task.unit_id,
        phase=task.phase,
        focus=task.focus,
        provides=task.provides,
        summary=str(raw.get("summary", "")),
        conclusions=[conclusion_from_dict(c, i) for i, c in enumerate(conclusions_raw, start=1)],
        body=raw,
    )


def parse_investigation(task: AnalysisTask, raw: dict[str, Any]) -> Report:
    finding = raw.get("finding", raw if "status" in raw else None)
    if not isinstance(finding, dict):
        raise WorkerError(f"{task.unit_id}: worker returned no finding")
    report = parse_report(task, raw)
    body = dict(raw)
    body["finding"] = dict(finding)
    body["hypothesis"] = task.payload.get("hypothesis", {})
    return dataclasses.replace(report, body=body)


def finding_of(report: Report) -> Finding | None:
    """The finding recorded in an investigation report, bound to its hypothesis."""
    hypothesis = report.body.get("hypothesis") or {}
    raw = report.body.get("finding")
    if not isinstance(raw, dict):
        return None
    h = hypothesis_from_dict(hypothesis) if isinstance(hypothesis, dict) else None
    merged = dict(raw)
    if h is not None:
        merged.setdefault("file", h.file)
        merged.setdefault("condition", h.condition)
        merged.setdefault("title", h.title)
        merged["hypothesis_id"] = h.hypothesis_id
    finding = finding_from_dict(merged)
    if h is not None and h.origin.kind == "recheck" and h.origin.ref:
        return dataclasses.replace(finding, finding_id=h.origin.ref)
    if not raw.get("finding_id"):
        return dataclasses.replace(finding, finding_id=stable_finding_id(finding.file, finding.condition))
    return finding
