"""How findings evolve across a chain of runs.

The chain is stored append-only: rows are versioned per run sequence (the last
version wins when folded) and every completed run contributes one snapshot of
its active findings.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from auditstack.report.models import Finding, ResolvedFinding
from auditstack.report.severity import escalate_severity, max_severity, normalize_severity
from auditstack.stacking.delta import DELETED, Delta
from auditstack.util.io import read_json, write_json_atomic

log = logging.getLogger(__name__)

LINEAGE_SCHEMA_VERSION = 1

NEW = "NEW"
RECURRENT = "RECURRENT"
REGRESSION = "REGRESSION"
RESOLVED = "RESOLVED"
EVOLUTION_TAGS = (NEW, RECURRENT, REGRESSION, RESOLVED)

ROW_OPEN = "open"
ROW_CLOSED = "closed"
ROW_ABANDONED = "abandoned"


@dataclass(frozen=True)
class LineageRow:
    sequence: int
    run_id: str
    codebase_ref: str
    started_at: str
    status: str = ROW_OPEN
    counts: dict[str, int] | None = None


@dataclass(frozen=True)
class ChainFinding:
    finding_id: str
    severity: str
    title: str = ""
    file: str = ""


@dataclass(frozen=True)
class ChainSnapshot:
    sequence: int
    run_id: str
    findings: list[ChainFinding] = field(default_factory=list)

    def ids(self) -> set[str]:
        return {f.finding_id for f in self.findings}

    def get(self, finding_id: str) -> ChainFinding | None:
        for f in self.findings:
            if f.finding_id == finding_id:
                return f
        return None


@dataclass(frozen=True)
class Lineage:
    rows: tuple[LineageRow, ...] = ()
    snapshots: tuple[ChainSnapshot, ...] = ()

    def table(self) -> list[LineageRow]:
        latest: dict[int, LineageRow] = {}
        for row in self.rows:
            latest[row.sequence] = row
        return [latest[s] for s in sorted(latest)]

    def chain(self) -> list[ChainSnapshot]:
        latest: dict[int, ChainSnapshot] = {}
        for snap in self.snapshots:
            latest[snap.sequence] = snap
        return [latest[s] for s in sorted(latest)]

    def append_row(self, row: LineageRow) -> Lineage:
        return Lineage(rows=(*self.rows, row), snapshots=self.snapshots)

    def append_snapshot(self, snapshot: ChainSnapshot) -> Lineage:
        return Lineage(rows=self.rows, snapshots=(*self.snapshots, snapshot))

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": LINEAGE_SCHEMA_VERSION,
            "rows": [asdict(r) for r in self.rows],
            "snapshots": [asdict(s) for s in self.snapshots],
        }


@dataclass(frozen=True)
class Evolution:
    finding_id: str
    tag: str
    severity: str
    original_severity: str
    consecutive_runs: int = 0
    persistent: bool = False


def lineage_from_dict(raw: Any) -> Lineage:
    if not isinstance(raw, dict):
        return Lineage()
    rows: list[LineageRow] = []
    for item in raw.get("rows", []):
        if not isinstance(item, dict):
            continue
        counts = item.get("counts")
        rows.append(
            LineageRow(
                sequence=int(item.get("sequence", 0)),
                run_id=str(item.get("run_id", "")),
                codebase_ref=str(item.get("codebase_ref", "")),
                started_at=str(item.get("started_at", "")),
                status=str(item.get("status", ROW_OPEN)),
                counts={str(k): int(v) for k, v in counts.items()} if isinstance(counts, dict) else None,
            )
        )
    snapshots: list[ChainSnapshot] = []
    for item in raw.get("snapshots", []):
        if not isinstance(item, dict):
            continue
        snapshots.append(
            ChainSnapshot(
                sequence=int(item.get("sequence", 0)),
                run_id=str(item.get("run_id", "")),
                findings=[
                    ChainFinding(
                        finding_id=str(f.get("finding_id", "")),
                        severity=normalize_severity(f.get("severity")),
                        title=str(f.get("title", "")),
                        file=str(f.get("file", "")),
                    )
                    for f in item.get("findings", [])
                    if isinstance(f, dict) and f.get("finding_id")
                ],
            )
        )
    return Lineage(rows=tuple(rows), snapshots=tuple(snapshots))


def load_lineage(path: Path) -> Lineage | None:
    raw = read_json(path)
    if raw is None:
        return None
    return lineage_from_dict(raw)


def save_lineage(lineage: Lineage, path: Path) -> None:
    write_json_atomic(path, lineage.to_dict())


def snapshot_of(sequence: int, run_id: str, findings: Iterable[Finding]) -> ChainSnapshot:
    return ChainSnapshot(
        sequence=sequence,
        run_id=run_id,
        findings=[
            ChainFinding(finding_id=f.finding_id, severity=f.severity, title=f.title, file=f.file)
            for f in findings
            if f.active
        ],
    )


def _consecutive_prior_runs(finding_id: str, chain: Sequence[ChainSnapshot]) -> int:
    streak = 0
    for snap in reversed(chain):
        if finding_id not in snap.ids():
            break
        streak += 1
    return streak


def classify(
    current_findings: Iterable[Finding],
    prior_chain: Sequence[ChainSnapshot],
    persistence_threshold: int = 2,
) -> dict[str, Evolution]:
    """Tag each active finding NEW, RECURRENT or REGRESSION, and each vanished one RESOLVED."""
    chain = sorted(prior_chain, key=lambda s: s.sequence)
    prior = chain[-1] if chain else None
    prior_ids = prior.ids() if prior else set()
    out: dict[str, Evolution] = {}
    current_ids: set[str] = set()

    for finding in current_findings:
        if not finding.active:
            continue
        fid = finding.finding_id
        current_ids.add(fid)
        history = [snap.get(fid) for snap in chain]
        seen = [entry for entry in history if entry is not None]
        if not seen:
            out[fid] = Evolution(
                finding_id=fid,
                tag=NEW,
                severity=finding.severity,
                original_severity=finding.severity,
            )
            continue
        original = seen[0].severity
        if fid in prior_ids:
            streak = _consecutive_prior_runs(fid, chain)
            out[fid] = Evolution(
                finding_id=fid,
                tag=RECURRENT,
                severity=finding.severity,
                original_severity=original,
                consecutive_runs=streak,
                persistent=streak >= persistence_threshold,
            )
            continue
        # seen earlier, absent from the prior run: it was resolved and came back
        escalated = escalate_severity(max_severity(original, finding.severity))
        out[fid] = Evolution(
            finding_id=fid,
            tag=REGRESSION,
            severity=escalated,
            original_severity=original,
        )
        log.info("Regression %s: severity %s -> %s", fid, original, escalated)

    if prior is not None:
        for entry in prior.findings:
            if entry.finding_id in current_ids:
                continue
            out[entry.finding_id] = Evolution(
                finding_id=entry.finding_id,
                tag=RESOLVED,
                severity=entry.severity,
                original_severity=entry.severity,
            )
    return out


def apply_evolution(findings: Iterable[Finding], evolutions: Mapping[str, Evolution]) -> list[Finding]:
    out: list[Finding] = []
    for finding in findings:
        evo = evolutions.get(finding.finding_id)
        if evo is None or not finding.active:
            out.append(finding)
            continue
        out.append(
            dataclasses.replace(
                finding,
                evolution=evo.tag,
                severity=evo.severity,
                original_severity=evo.original_severity,
                persistent=evo.persistent,
            )
        )
    return out


def resolved_findings(
    evolutions: Mapping[str, Evolution],
    prior_chain: Sequence[ChainSnapshot],
    delta: Delta | None,
) -> list[ResolvedFinding]:
    chain = sorted(prior_chain, key=lambda s: s.sequence)
    if not chain:
        return []
    prior = chain[-1]
    out: list[ResolvedFinding] = []
    for evo in evolutions.values():
        if evo.tag != RESOLVED:
            continue
        entry = prior.get(evo.finding_id)
        if entry is None:
            continue
        removed = delta is not None and delta.status_of(entry.file) == DELETED
        out.append(
            ResolvedFinding(
                finding_id=entry.finding_id,
                title=entry.title,
                file=entry.file,
                severity=entry.severity,
                reason="file deleted" if removed else "not reproduced",
            )
        )
    out.sort(key=lambda r: (r.file, r.finding_id))
    return out
