from __future__ import annotations

import pytest

from auditstack.errors import WorkerError
from auditstack.pipeline.phases import (
    cap_hypotheses,
    concern_hypotheses,
    finding_of,
    parse_investigation,
    proposed_hypotheses,
    unique_by_signature,
)
from auditstack.report.models import AnalysisTask, Conclusion, FocusSnapshot, Hypothesis, Origin, Report
from auditstack.scan.index import CodebaseIndex, IndexedFile
from auditstack.stacking.verification import verification_tag
from auditstack.util.identity import stable_finding_id


def _hyp(hid: str, kind: str = "novel", priority: int = 0, condition: str | None = None) -> Hypothesis:
    return Hypothesis(
        hypothesis_id=hid,
        title=hid,
        file="a.src",
        condition=condition or f"cond {hid}",
        origin=Origin(kind, "F-1" if kind == "recheck" else ""),
        priority=priority,
    )


def _investigation(hypothesis: Hypothesis) -> AnalysisTask:
    return AnalysisTask(
        unit_id=f"investigate-{hypothesis.hypothesis_id}",
        phase="investigate",
        provides=frozenset({"findings"}),
        payload={"kind": "investigation", "hypothesis": hypothesis.to_dict()},
    )


def test_proposals_get_ids_in_order_and_focus() -> None:
    report = Report(
        report_id="synthesize-auth",
        phase="synthesize",
        focus="auth",
        provides=frozenset({"auth", "hypotheses"}),
        body={
            "hypotheses": [
                {"file": "a.src", "condition": "first"},
                {"title": "no file"},
                {"file": "b.src", "condition": "second", "hypothesis_id": "H-custom"},
            ]
        },
    )

    hyps = proposed_hypotheses([report])

    assert [h.hypothesis_id for h in hyps] == ["H-auth-1", "H-custom"]
    assert all(h.focus == "auth" and h.requires == frozenset({"auth"}) for h in hyps)


def test_cap_prefers_rechecks_then_priority() -> None:
    hyps = [_hyp("n1", priority=5), _hyp("r1", kind="recheck"), _hyp("n2", priority=9), _hyp("n3", priority=1)]

    kept = cap_hypotheses(hyps, 2)

    assert [h.hypothesis_id for h in kept] == ["r1", "n2"]
    assert cap_hypotheses(hyps, 10) == hyps


def test_unique_by_signature_keeps_first() -> None:
    hyps = [_hyp("a", condition="Same  Bug"), _hyp("b", condition="same bug"), _hyp("c")]
    assert [h.hypothesis_id for h in unique_by_signature(hyps)] == ["a", "c"]


def test_recheck_finding_keeps_carried_id() -> None:
    h = _hyp("H-recheck-F-1", kind="recheck", condition="carried condition")
    report = parse_investigation(_investigation(h), {"finding": {"status": "confirmed", "severity": "high"}})

    finding = finding_of(report)

    assert finding is not None
    assert finding.finding_id == "F-1"
    assert finding.file == "a.src"
    assert finding.hypothesis_id == "H-recheck-F-1"


def test_novel_finding_id_is_stable() -> None:
    h = _hyp("H-1", condition="Unchecked length")
    report = parse_investigation(_investigation(h), {"finding": {"status": "potential", "severity": "low"}})

    finding = finding_of(report)

    assert finding is not None
    assert finding.finding_id == stable_finding_id("a.src", "unchecked   length")


def test_investigation_without_finding_is_rejected() -> None:
    with pytest.raises(WorkerError):
        parse_investigation(_investigation(_hyp("H-1")), {"summary": "nothing"})


def test_verification_concerns_and_rechecks_become_hypotheses() -> None:
    prior = FocusSnapshot(
        focus="auth",
        summary="",
        conclusions=[
            Conclusion("R1-C1", "Tokens are checked before use", ["auth/a.src"]),
            Conclusion("R1-C2", "Logout clears the session", ["auth/b.src", "auth/gone.src"]),
        ],
    )
    index = CodebaseIndex(
        codebase_ref="abc",
        files={p: IndexedFile(p, 10, 100, "h", ["auth"]) for p in ("auth/a.src", "auth/b.src")},
        focus_areas=["auth"],
    )
    verification = Report(
        report_id="verify-auth",
        phase="analyze",
        focus="auth",
        provides=frozenset({"auth", verification_tag("auth")}),
        body={
            "results": [
                {"conclusion_id": "R1-C1", "verdict": "VERIFIED"},
                {"conclusion_id": "R1-C2", "verdict": "NEEDS_RECHECK"},
            ],
            "new_concerns": [{"file": "auth/a.src", "condition": "token reused after refresh"}, {"title": "no file"}],
        },
    )
    analysis = Report(report_id="analyze-auth", phase="analyze", focus="auth", provides=frozenset({"auth"}))

    hyps = concern_hypotheses([analysis, verification], {"auth": prior}, index)

    assert [(h.file, h.condition, str(h.origin)) for h in hyps] == [
        ("auth/a.src", "token reused after refresh", "verification:verify-auth"),
        ("auth/b.src", "Logout clears the session", "verification:R1-C2"),
    ]
    assert all(h.focus == "auth" and h.requires == frozenset({"auth"}) for h in hyps)
