"""Dismissed-hypothesis ledger and hypothesis deduplication.

The ledger is an append-only list of records keyed by run sequence. Nothing is
edited in place: a run that invalidates dismissals appends a record that drops
them, and readers fold the records to get the current view.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from auditstack.report.models import Finding, Hypothesis
from auditstack.stacking.delta import Delta
from auditstack.util.identity import hypothesis_signature
from auditstack.util.io import read_json, write_json_atomic

log = logging.getLogger(__name__)

LEDGER_SCHEMA_VERSION = 1
DEFAULT_MIN_NOVEL_FRACTION = 0.2


@dataclass(frozen=True)
class LedgerEntry:
    signature: str
    file: str
    title: str
    dismissed_in: int
    reason: str = ""


@dataclass(frozen=True)
class LedgerRecord:
    sequence: int
    source: str
    added: list[LedgerEntry] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Ledger:
    records: tuple[LedgerRecord, ...] = ()

    def view(self) -> dict[str, LedgerEntry]:
        current: dict[str, LedgerEntry] = {}
        for record in sorted(self.records, key=lambda r: r.sequence):
            for entry in record.added:
                current[entry.signature] = entry
            for signature in record.dropped:
                current.pop(signature, None)
        return current

    def entries(self) -> list[LedgerEntry]:
        return sorted(self.view().values(), key=lambda e: (e.file, e.signature))

    def append(self, record: LedgerRecord) -> Ledger:
        return Ledger(records=(*self.records, record))

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": LEDGER_SCHEMA_VERSION,
            "records": [asdict(r) for r in self.records],
        }


def ledger_from_dict(raw: Any) -> Ledger:
    if not isinstance(raw, dict):
        return Ledger()
    records: list[LedgerRecord] = []
    for item in raw.get("records", []):
        if not isinstance(item, dict):
            continue
        added = [
            LedgerEntry(
                signature=str(e.get("signature", "")),
                file=str(e.get("file", "")),
                title=str(e.get("title", "")),
                dismissed_in=int(e.get("dismissed_in", 0)),
                reason=str(e.get("reason", "")),
            )
            for e in item.get("added", [])
            if isinstance(e, dict) and e.get("signature")
        ]
        records.append(
            LedgerRecord(
                sequence=int(item.get("sequence", 0)),
                source=str(item.get("source", "")),
                added=added,
                dropped=[str(s) for s in item.get("dropped", [])],
            )
        )
    return Ledger(records=tuple(records))


def load_ledger(path: Path) -> Ledger:
    return ledger_from_dict(read_json(path))


def save_ledger(ledger: Ledger, path: Path) -> None:
    write_json_atomic(path, ledger.to_dict())


def carry_forward(ledger: Ledger, delta: Delta, sequence: int) -> Ledger:
    """Drop every dismissal whose target file is no longer UNCHANGED."""
    dropped = [
        signature
        for signature, entry in sorted(ledger.view().items())
        if not delta.is_unchanged(entry.file)
    ]
    if dropped:
        log.info("Dropping %d stale dismissal(s) on changed files.", len(dropped))
    return ledger.append(LedgerRecord(sequence=sequence, source="handover", dropped=dropped))


def record_dismissals(
    ledger: Ledger,
    findings: Iterable[Finding],
    sequence: int,
    source: str = "investigate",
) -> Ledger:
    """Append the dismissals not yet recorded by ``source`` in this run.

    A resumed phase calls this again with the full finding set; only the
    dismissals produced since the last call are appended.
    """
    recorded = {
        entry.signature
        for record in ledger.records
        if record.sequence == sequence and record.source == source
        for entry in record.added
    }
    added: list[LedgerEntry] = []
    for f in findings:
        if f.status != "dismissed":
            continue
        signature = hypothesis_signature(f.file, f.condition)
        if signature in recorded:
            continue
        recorded.add(signature)
        added.append(
            LedgerEntry(
                signature=signature,
                file=f.file,
                title=f.title,
                dismissed_in=sequence,
                reason=f.description,
            )
        )
    if not added:
        return ledger
    return ledger.append(LedgerRecord(sequence=sequence, source=source, added=added))


def filter_hypotheses(
    proposed: Sequence[Hypothesis],
    ledger_entries: Iterable[LedgerEntry],
    delta: Delta | None,
    min_novel_fraction: float = DEFAULT_MIN_NOVEL_FRACTION,
) -> list[Hypothesis]:
    """Suppress hypotheses already dismissed on files that have not changed.

    A hypothesis on a changed file is never dropped. At least
    ``floor(min_novel_fraction * novel)`` novel hypotheses survive, re-admitted
    in proposal order.
    """
    signatures = {e.signature for e in ledger_entries}
    keep: set[int] = set()
    suppressed_novel: list[int] = []
    for idx, h in enumerate(proposed):
        dismissed = (
            h.signature in signatures and delta is not None and delta.is_unchanged(h.file)
        )
        if not dismissed:
            keep.add(idx)
            continue
        if h.is_novel:
            suppressed_novel.append(idx)
        log.debug("Suppressing previously dismissed hypothesis %s (%s)", h.hypothesis_id, h.file)

    novel_total = sum(1 for h in proposed if h.is_novel)
    required = int(min_novel_fraction * novel_total + 1e-9)
    kept_novel = sum(1 for idx in keep if proposed[idx].is_novel)
    shortfall = max(0, required - kept_novel)
    if shortfall:
        keep.update(suppressed_novel[:shortfall])

    dropped = len(proposed) - len(keep)
    if dropped:
        log.info("Deduplication dropped %d of %d hypotheses.", dropped, len(proposed))
    return [h for idx, h in enumerate(proposed) if idx in keep]
