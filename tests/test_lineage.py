from __future__ import annotations

from pathlib import Path

from auditstack.git.diff import PathChange
from auditstack.report.models import Finding
from auditstack.stacking.delta import compute_delta
from auditstack.stacking.lineage import (
    NEW,
    RECURRENT,
    REGRESSION,
    RESOLVED,
    ROW_ABANDONED,
    ROW_CLOSED,
    ROW_OPEN,
    ChainFinding,
    ChainSnapshot,
    Lineage,
    LineageRow,
    apply_evolution,
    classify,
    load_lineage,
    resolved_findings,
    save_lineage,
    snapshot_of,
)


def _finding(fid: str, severity: str = "medium", file: str = "x.src", status: str = "confirmed") -> Finding:
    return Finding(fid, "H", status, severity, file, 1, f"title {fid}", f"cond {fid}")


def _snap(seq: int, *entries: tuple[str, str]) -> ChainSnapshot:
    return ChainSnapshot(
        sequence=seq,
        run_id=f"{seq}-run",
        findings=[ChainFinding(fid, sev, title=f"title {fid}", file=f"{fid}.src") for fid, sev in entries],
    )


def test_first_run_findings_are_new() -> None:
    evolutions = classify([_finding("F1")], [])
    assert evolutions["F1"].tag == NEW
    assert not evolutions["F1"].persistent


def test_recurrent_becomes_persistent_after_threshold() -> None:
    chain = [_snap(1, ("F1", "low")), _snap(2, ("F1", "medium"))]

    evolutions = classify([_finding("F1", "medium")], chain, persistence_threshold=2)
    evo = evolutions["F1"]
    assert evo.tag == RECURRENT
    assert evo.consecutive_runs == 2
    assert evo.persistent
    assert evo.original_severity == "low"

    once = classify([_finding("F1")], chain[1:], persistence_threshold=2)
    assert once["F1"].tag == RECURRENT and not once["F1"].persistent


def test_regression_escalates_severity() -> None:
    chain = [_snap(1, ("F1", "medium")), _snap(2)]

    evo = classify([_finding("F1", "low")], chain)["F1"]

    assert evo.tag == REGRESSION
    assert evo.original_severity == "medium"
    assert evo.severity == "high"


def test_regression_severity_caps_at_critical() -> None:
    chain = [_snap(1, ("F1", "critical")), _snap(2)]
    assert classify([_finding("F1", "high")], chain)["F1"].severity == "critical"


def test_vanished_findings_are_resolved_with_reason() -> None:
    chain = [_snap(1, ("gone", "high"), ("fixed", "low"), ("kept", "low"))]
    delta = compute_delta(
        "abc1234",
        "def5678",
        ["fixed.src", "kept.src"],
        lambda _a, _b: {"gone.src": PathChange("D", 10)},
    )
    evolutions = classify([_finding("kept", file="kept.src")], chain)

    resolved = resolved_findings(evolutions, chain, delta)

    assert evolutions["kept"].tag == RECURRENT
    assert {r.finding_id: r.reason for r in resolved} == {"fixed": "not reproduced", "gone": "file deleted"}
    assert all(evolutions[r.finding_id].tag == RESOLVED for r in resolved)


def test_inactive_findings_are_not_classified() -> None:
    findings = [_finding("F1", status="dismissed")]
    evolutions = classify(findings, [_snap(1, ("F1", "low"))])

    assert evolutions["F1"].tag == RESOLVED
    assert apply_evolution(findings, evolutions)[0].evolution is None


def test_apply_evolution_sets_tags() -> None:
    chain = [_snap(1, ("F1", "medium")), _snap(2)]
    findings = apply_evolution([_finding("F1", "low")], classify([_finding("F1", "low")], chain))
    assert findings[0].evolution == REGRESSION
    assert findings[0].severity == "high"
    assert findings[0].original_severity == "medium"


def test_rows_fold_to_latest_version(tmp_path: Path) -> None:
    lineage = (
        Lineage()
        .append_row(LineageRow(1, "1-a", "aaa", "t1", ROW_OPEN))
        .append_row(LineageRow(1, "1-a", "aaa", "t1", ROW_CLOSED, {"findings": 2}))
        .append_row(LineageRow(2, "2-b", "bbb", "t2", ROW_OPEN))
        .append_row(LineageRow(2, "2-b", "bbb", "t2", ROW_ABANDONED))
        .append_snapshot(snapshot_of(1, "1-a", [_finding("F1"), _finding("F2", status="dismissed")]))
    )

    assert [(r.sequence, r.status) for r in lineage.table()] == [(1, ROW_CLOSED), (2, ROW_ABANDONED)]
    assert [f.finding_id for f in lineage.chain()[0].findings] == ["F1"]

    path = tmp_path / "lineage.json"
    save_lineage(lineage, path)
    assert load_lineage(path) == lineage
    assert load_lineage(tmp_path / "missing.json") is None
