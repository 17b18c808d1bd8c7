from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from auditstack.report.models import AnalysisTask, FocusSnapshot, Report
from auditstack.stacking.delta import UNCHANGED, Delta

log = logging.getLogger(__name__)

VERIFIED = "VERIFIED"
NEEDS_RECHECK = "NEEDS_RECHECK"
VERDICTS = (VERIFIED, NEEDS_RECHECK)

VERIFICATION_TAG = "verification"


def verification_tag(focus: str) -> str:
    """Routing tag of one focus area's verification report."""
    return f"{VERIFICATION_TAG}:{focus}"


def is_verification_report(report: Report) -> bool:
    # older archives carry the bare tag
    return any(t == VERIFICATION_TAG or t.startswith(f"{VERIFICATION_TAG}:") for t in report.provides)


@dataclass(frozen=True)
class VerificationResult:
    conclusion_id: str
    verdict: str
    note: str = ""


@dataclass(frozen=True)
class VerificationReport:
    focus: str
    results: list[VerificationResult] = field(default_factory=list)
    new_concerns: list[dict[str, Any]] = field(default_factory=list)

    def ids_with(self, verdict: str) -> set[str]:
        return {r.conclusion_id for r in self.results if r.verdict == verdict}


def slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "focus"


def should_verify(handover_present: bool, delta: Delta | None) -> bool:
    """Verification runs only for stacked runs below the massive-rewrite threshold."""
    return handover_present and delta is not None and not delta.massive_rewrite


def spawn_verification(
    focus: str,
    prior: FocusSnapshot | None,
    delta: Delta,
    focus_files: Iterable[str],
) -> AnalysisTask | None:
    """Build the verification task for one focus area, if it qualifies.

    The task carries only the condensed prior conclusions and the delta; it has
    no source inputs.
    """
    if prior is None:
        return None
    unchanged = sorted(p for p in focus_files if delta.status_of(p) == UNCHANGED)
    if not unchanged:
        return None
    changed = sorted(p for p, e in delta.entries.items() if e.status != UNCHANGED)
    return AnalysisTask(
        unit_id=f"verify-{slug(focus)}",
        phase="analyze",
        focus=focus,
        provides=frozenset({focus, verification_tag(focus)}),
        payload={
            "kind": VERIFICATION_TAG,
            "prior_summary": prior.summary,
            "prior_conclusions": [
                {"id": c.id, "text": c.text, "files": list(c.files)} for c in prior.conclusions
            ],
            "unchanged_files": unchanged,
            "changed_files": delta.fragment(changed),
        },
    )


def parse_verification_report(
    focus: str,
    body: dict[str, Any],
    conclusion_ids: Iterable[str] = (),
) -> VerificationReport:
    """Read a worker's verification output.

    Unknown verdicts and prior conclusions the worker did not address are
    treated as NEEDS_RECHECK.
    """
    results: dict[str, VerificationResult] = {}
    raw_results = body.get("results", [])
    if isinstance(raw_results, list):
        for item in raw_results:
            if not isinstance(item, dict):
                continue
            cid = str(item.get("conclusion_id") or item.get("id") or "").strip()
            if not cid:
                continue
            verdict = str(item.get("verdict", "")).strip().upper()
            if verdict not in VERDICTS:
                log.debug("Unknown verdict %r for %s; treating as %s", verdict, cid, NEEDS_RECHECK)
                verdict = NEEDS_RECHECK
            results[cid] = VerificationResult(
                conclusion_id=cid, verdict=verdict, note=str(item.get("note", ""))
            )
    for cid in conclusion_ids:
        if cid not in results:
            results[cid] = VerificationResult(
                conclusion_id=cid, verdict=NEEDS_RECHECK, note="not addressed by verification"
            )
    concerns = body.get("new_concerns", [])
    new_concerns = [c for c in concerns if isinstance(c, dict)] if isinstance(concerns, list) else []
    return VerificationReport(
        focus=focus,
        results=sorted(results.values(), key=lambda r: r.conclusion_id),
        new_concerns=new_concerns,
    )
