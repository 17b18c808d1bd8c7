"""Bridging document between an archived run and the run that follows it.

Each section is persisted as its own JSON file under ``handover/`` so later
phases read only what they need: synthesis reads ``conclusions``, investigation
reads ``findings`` (RECHECK entries), reporting reads ``lineage``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any

from auditstack.report.format_json import conclusion_from_dict, load_reports, read_report
from auditstack.report.format_md import handover_to_markdown
from auditstack.report.models import Conclusion, FocusSnapshot, Report
from auditstack.report.severity import normalize_severity
from auditstack.stacking.archive import ArchiveEntry
from auditstack.stacking.dedup import Ledger, carry_forward, ledger_from_dict, load_ledger
from auditstack.stacking.delta import DELETED, UNCHANGED, Delta, delta_from_dict
from auditstack.stacking.lineage import (
    ROW_CLOSED,
    ROW_OPEN,
    Lineage,
    LineageRow,
    lineage_from_dict,
    load_lineage,
    snapshot_of,
)
from auditstack.stacking.verification import VERIFIED, is_verification_report, parse_verification_report
from auditstack.util.io import atomic_write, read_json, write_json_atomic
from auditstack.workspace import Workspace

log = logging.getLogger(__name__)

VERIFY = "VERIFY"
RECHECK = "RECHECK"
RESOLVED_BY_REMOVAL = "RESOLVED_BY_REMOVAL"

SECTIONS = ("meta", "delta", "findings", "ledger", "conclusions", "lineage")

_QUALIFIED = re.compile(r"^R\d+-")


@dataclass(frozen=True)
class CarriedFinding:
    finding_id: str
    title: str
    file: str
    line: int
    severity: str
    status: str
    condition: str
    tag: str


@dataclass(frozen=True)
class Handover:
    sequence: int
    run_id: str
    prior_run_id: str
    prior_sequence: int
    prior_ref: str
    archive_path: str
    delta: Delta
    findings: list[CarriedFinding] = field(default_factory=list)
    ledger: Ledger = field(default_factory=Ledger)
    conclusions: dict[str, FocusSnapshot] = field(default_factory=dict)
    lineage: Lineage = field(default_factory=Lineage)

    def tagged(self, tag: str) -> list[CarriedFinding]:
        return [f for f in self.findings if f.tag == tag]

    def meta(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "run_id": self.run_id,
            "prior_run_id": self.prior_run_id,
            "prior_sequence": self.prior_sequence,
            "prior_ref": self.prior_ref,
            "archive_path": self.archive_path,
        }


def retag(status: str | None) -> str:
    if status == UNCHANGED:
        return VERIFY
    if status == DELETED:
        return RESOLVED_BY_REMOVAL
    # MODIFIED, NEW (re-added) or unknown to the delta
    return RECHECK


def _qualify(conclusion: Conclusion, sequence: int) -> Conclusion:
    if _QUALIFIED.match(conclusion.id):
        return conclusion
    return Conclusion(id=f"R{sequence}-{conclusion.id}", text=conclusion.text, files=list(conclusion.files))


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if limit <= 0 or len(text) <= limit:
        return text
    return text[: max(0, limit - 3)].rstrip() + "..."


def condense_conclusions(ws: Workspace, sequence: int, snapshot_chars: int = 600) -> dict[str, FocusSnapshot]:
    """Per-focus conclusions still standing at the end of the run in ``ws``.

    Carried conclusions survive only where that run's verification marked them
    VERIFIED; conclusions of its own analysis reports are added on top.
    """
    carried = load_conclusions(ws)
    reports = load_reports(ws.reports_dir("analyze"))
    verifications: dict[str, Report] = {}
    analyses: list[Report] = []
    for report in reports:
        if is_verification_report(report):
            verifications[report.focus] = report
        else:
            analyses.append(report)

    out: dict[str, FocusSnapshot] = {}
    for focus, snap in carried.items():
        verification = verifications.get(focus)
        if verification is None:
            continue
        verdicts = parse_verification_report(
            focus, verification.body, [c.id for c in snap.conclusions]
        )
        verified = verdicts.ids_with(VERIFIED)
        kept = [c for c in snap.conclusions if c.id in verified]
        if kept:
            out[focus] = FocusSnapshot(focus=focus, summary=snap.summary, conclusions=kept, files=snap.files)

    for report in sorted(analyses, key=lambda r: r.report_id):
        if not report.focus:
            continue
        new = [_qualify(c, sequence) for c in report.conclusions]
        prev = out.get(report.focus)
        merged: dict[str, Conclusion] = {c.id: c for c in (prev.conclusions if prev else [])}
        for c in new:
            merged[c.id] = c
        files = sorted({*(prev.files if prev else []), *(f for c in new for f in c.files)})
        summary = report.summary or (prev.summary if prev else "")
        out[report.focus] = FocusSnapshot(
            focus=report.focus,
            summary=summary,
            conclusions=list(merged.values()),
            files=files,
        )

    return {
        focus: FocusSnapshot(
            focus=snap.focus,
            summary=_truncate(snap.summary, snapshot_chars),
            conclusions=snap.conclusions,
            files=snap.files,
        )
        for focus, snap in sorted(out.items())
    }


def build_handover(
    entry: ArchiveEntry,
    delta: Delta,
    sequence: int,
    run_id: str,
    codebase_ref: str,
    started_at: str,
    snapshot_chars: int = 600,
) -> Handover | None:
    """Synthesize the handover from an archived run and a fresh delta.

    Returns None when the archived run never reached its report phase: there
    is no reliable finding set to carry forward.
    """
    if not entry.completed:
        log.warning(
            "Prior run %s did not complete; handover skipped and no findings carried forward.",
            entry.run_id,
        )
        return None
    ws = Workspace(entry.path)
    if not ws.report_json.exists():
        log.warning("Prior run %s has no report.json; handover skipped.", entry.run_id)
        return None
    prior_report = read_report(ws.report_json)

    carried = [
        CarriedFinding(
            finding_id=f.finding_id,
            title=f.title,
            file=f.file,
            line=f.line,
            severity=f.severity,
            status=f.status,
            condition=f.condition,
            tag=retag(delta.status_of(f.file)),
        )
        for f in prior_report.findings
        if f.active
    ]
    carried.sort(key=lambda c: (c.tag, c.file, c.line, c.finding_id))

    ledger = carry_forward(load_ledger(ws.ledger_path), delta, sequence)

    lineage = load_lineage(ws.lineage_path)
    if lineage is None:
        lineage = Lineage().append_row(
            LineageRow(
                sequence=entry.sequence,
                run_id=entry.run_id,
                codebase_ref=entry.codebase_ref,
                started_at=prior_report.generated_at,
                status=ROW_CLOSED,
                counts={"findings": sum(1 for f in prior_report.findings if f.active)},
            )
        ).append_snapshot(snapshot_of(entry.sequence, entry.run_id, prior_report.findings))
    lineage = lineage.append_row(
        LineageRow(
            sequence=sequence,
            run_id=run_id,
            codebase_ref=codebase_ref,
            started_at=started_at,
            status=ROW_OPEN,
        )
    )

    handover = Handover(
        sequence=sequence,
        run_id=run_id,
        prior_run_id=entry.run_id,
        prior_sequence=entry.sequence,
        prior_ref=entry.codebase_ref,
        archive_path=str(entry.path),
        delta=delta,
        findings=carried,
        ledger=ledger,
        conclusions=condense_conclusions(ws, entry.sequence, snapshot_chars),
        lineage=lineage,
    )
    log.info(
        "Handover from %s: %d VERIFY, %d RECHECK, %d RESOLVED_BY_REMOVAL, %d dismissal(s) carried",
        entry.run_id,
        len(handover.tagged(VERIFY)),
        len(handover.tagged(RECHECK)),
        len(handover.tagged(RESOLVED_BY_REMOVAL)),
        len(ledger.view()),
    )
    return handover


def _snapshot_to_dict(snap: FocusSnapshot) -> dict[str, Any]:
    return asdict(snap)


def write_handover(handover: Handover, ws: Workspace) -> None:
    sections: dict[str, Any] = {
        "meta": handover.meta(),
        "delta": handover.delta.to_dict(),
        "findings": {"findings": [asdict(f) for f in handover.findings]},
        "ledger": handover.ledger.to_dict(),
        "conclusions": {
            focus: _snapshot_to_dict(snap) for focus, snap in handover.conclusions.items()
        },
        "lineage": handover.lineage.to_dict(),
    }
    for name, data in sections.items():
        write_json_atomic(ws.section_path(name), data)
    atomic_write(ws.handover_md, handover_to_markdown(handover).encode("utf-8"))


def has_handover(ws: Workspace) -> bool:
    return ws.section_path("meta").exists()


def load_section(ws: Workspace, name: str) -> Any | None:
    if name not in SECTIONS:
        raise ValueError(f"Unknown handover section: {name}")
    return read_json(ws.section_path(name))


def load_handover_delta(ws: Workspace) -> Delta | None:
    raw = load_section(ws, "delta")
    if not isinstance(raw, dict):
        return None
    return delta_from_dict(raw)


def load_carried_findings(ws: Workspace, tag: str | None = None) -> list[CarriedFinding]:
    raw = load_section(ws, "findings")
    if not isinstance(raw, dict):
        return []
    out: list[CarriedFinding] = []
    for item in raw.get("findings", []):
        if not isinstance(item, dict):
            continue
        carried = CarriedFinding(
            finding_id=str(item.get("finding_id", "")),
            title=str(item.get("title", "")),
            file=str(item.get("file", "")),
            line=int(item.get("line", 0)),
            severity=normalize_severity(item.get("severity")),
            status=str(item.get("status", "")),
            condition=str(item.get("condition", "")),
            tag=str(item.get("tag", RECHECK)),
        )
        if tag is None or carried.tag == tag:
            out.append(carried)
    return out


def load_handover_ledger(ws: Workspace) -> Ledger:
    return ledger_from_dict(load_section(ws, "ledger"))


def load_conclusions(ws: Workspace) -> dict[str, FocusSnapshot]:
    raw = load_section(ws, "conclusions")
    if not isinstance(raw, dict):
        return {}
    out: dict[str, FocusSnapshot] = {}
    for focus, item in raw.items():
        if not isinstance(item, dict):
            continue
        conclusions = item.get("conclusions", [])
        out[str(focus)] = FocusSnapshot(
            focus=str(item.get("focus", focus)),
            summary=str(item.get("summary", "")),
            conclusions=[
                conclusion_from_dict(c, i)
                for i, c in enumerate(conclusions if isinstance(conclusions, list) else [], start=1)
            ],
            files=[str(f) for f in item.get("files", [])],
        )
    return out


def load_handover_lineage(ws: Workspace) -> Lineage | None:
    raw = load_section(ws, "lineage")
    if raw is None:
        return None
    return lineage_from_dict(raw)


def load_handover_meta(ws: Workspace) -> dict[str, Any] | None:
    raw = load_section(ws, "meta")
    return raw if isinstance(raw, dict) else None

