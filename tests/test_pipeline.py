from __future__ import annotations

import json
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Any

import pytest

from auditstack.config.schema import AuditStackConfig
from auditstack.errors import PhaseBlockedError, StateError, WorkerError
from auditstack.pipeline.orchestrator import Orchestrator
from auditstack.pipeline.state import COMPLETED, DEGRADED, PENDING
from auditstack.report.format_json import read_report
from auditstack.report.models import AnalysisTask
from auditstack.stacking.archive import list_archives
from auditstack.stacking.dedup import load_ledger
from auditstack.stacking.handover import RECHECK, RESOLVED_BY_REMOVAL, load_carried_findings
from auditstack.stacking.lineage import ROW_ABANDONED, ROW_CLOSED, ROW_OPEN, load_lineage
from auditstack.workspace import Workspace

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


class FakeWorker:
    """Answers every worker phase from canned data and records what it was given."""

    def __init__(
        self,
        hypotheses: list[dict[str, Any]] | None = None,
        fail: tuple[str, ...] = (),
        follow_ups: dict[str, list[dict[str, Any]]] | None = None,
        dismiss: tuple[str, ...] = (),
        verdict: str = "VERIFIED",
        concerns: list[dict[str, Any]] | None = None,
    ) -> None:
        self.hypotheses = hypotheses or []
        self.fail = fail
        self.follow_ups = follow_ups or {}
        self.dismiss = dismiss
        self.verdict = verdict
        self.concerns = concerns or []
        self.tasks: list[AnalysisTask] = []
        self._lock = threading.Lock()

    @property
    def units(self) -> list[str]:
        return sorted(t.unit_id for t in self.tasks)

    def __call__(self, wtask: Any) -> dict[str, Any]:
        task = wtask.task
        with self._lock:
            self.tasks.append(task)
        if task.unit_id in self.fail:
            raise WorkerError(f"{task.unit_id}: simulated failure")
        kind = task.payload.get("kind")
        if kind == "verification":
            return {
                "summary": "checked",
                "results": [
                    {"conclusion_id": c["id"], "verdict": self.verdict} for c in task.payload["prior_conclusions"]
                ],
                "new_concerns": self.concerns,
            }
        if kind == "analysis":
            return {
                "summary": f"Reviewed {task.focus}",
                "conclusions": [{"id": "C1", "text": f"{task.focus} reviewed", "files": sorted(task.inputs)}],
            }
        if kind == "synthesis":
            return {"summary": "", "hypotheses": self.hypotheses}
        hypothesis = task.payload["hypothesis"]
        status = "dismissed" if hypothesis["condition"] in self.dismiss else "confirmed"
        return {
            "finding": {"status": status, "severity": "medium", "line": 3, "description": "reproduced"},
            "follow_ups": self.follow_ups.get(hypothesis["condition"], []),
        }


def _orch(root: Path, worker: FakeWorker, cfg: AuditStackConfig | None = None, **kwargs: Any) -> Orchestrator:
    return Orchestrator(root, cfg or AuditStackConfig(), worker_factory=lambda _phase: worker, **kwargs)


def _git(root: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-C", str(root), "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        check=True,
        capture_output=True,
    )


def _write_lines(path: Path, prefix: str, count: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(f"{prefix} line {i}\n" for i in range(count)), encoding="utf-8")


def _init_repo(root: Path) -> None:
    _write_lines(root / "x.src", "x", 30)
    _write_lines(root / "y.src", "y", 5)
    _write_lines(root / "z.src", "z", 5)
    _git(root, "init", "-q")
    _git(root, "add", ".")
    _git(root, "commit", "-q", "-m", "initial")


@needs_git
def test_second_run_stacks_on_the_first(tmp_path: Path) -> None:
    _init_repo(tmp_path)
    first = FakeWorker(
        hypotheses=[
            {"file": "x.src", "condition": "unchecked length in parse", "title": "Length not checked"},
            {"file": "y.src", "condition": "shared counter race", "title": "Counter race"},
        ]
    )
    record1 = _orch(tmp_path, first).run()
    assert record1.completed and record1.sequence == 1 and not record1.stacked

    ws = Workspace(tmp_path / ".audit")
    report1 = read_report(ws.report_json)
    assert sorted(f.file for f in report1.findings) == ["x.src", "y.src"]
    assert {f.evolution for f in report1.findings} == {"NEW"}
    x_id = next(f.finding_id for f in report1.findings if f.file == "x.src")
    y_id = next(f.finding_id for f in report1.findings if f.file == "y.src")

    _write_lines(tmp_path / "x.src", "x changed", 15)
    with (tmp_path / "x.src").open("a", encoding="utf-8") as fh:
        fh.write("".join(f"x line {i}\n" for i in range(15, 30)))
    _git(tmp_path, "rm", "-q", "y.src")
    _git(tmp_path, "commit", "-q", "-am", "rework x, drop y")

    second = FakeWorker()
    record2 = _orch(tmp_path, second).run()

    assert record2.completed and record2.sequence == 2
    assert record2.prior is not None and record2.prior.prior_run_id == record1.run_id
    entries, corrupt = list_archives(tmp_path / ".audit-history")
    assert [e.run_id for e in entries] == [record1.run_id] and not corrupt

    carried = {f.finding_id: f.tag for f in load_carried_findings(ws)}
    assert carried == {x_id: RECHECK, y_id: RESOLVED_BY_REMOVAL}

    analyze = {t.unit_id: t for t in second.tasks if t.phase == "analyze"}
    assert set(analyze) == {"analyze-general", "verify-general"}
    assert list(analyze["analyze-general"].inputs) == ["x.src"]
    assert analyze["verify-general"].inputs == {}
    assert analyze["verify-general"].payload["unchanged_files"] == ["z.src"]
    assert [c["id"] for c in analyze["verify-general"].payload["prior_conclusions"]] == ["R1-C1"]
    investigated = [t for t in second.tasks if t.phase == "investigate"]
    assert [t.payload["hypothesis"]["origin"] for t in investigated] == [f"recheck:{x_id}"]

    report2 = read_report(ws.report_json)
    assert report2.stacked
    assert [(f.finding_id, f.evolution, f.persistent) for f in report2.findings] == [(x_id, "RECURRENT", False)]
    assert [(r.finding_id, r.reason) for r in report2.resolved] == [(y_id, "file deleted")]
    assert [(row["sequence"], row["status"]) for row in report2.lineage] == [(1, ROW_CLOSED), (2, ROW_CLOSED)]
    assert "Resolved since previous run" in ws.final_report_md.read_text(encoding="utf-8")

    # nothing changed: the finding is carried as VERIFY and turns persistent
    third = FakeWorker()
    record3 = _orch(tmp_path, third).run()
    assert record3.sequence == 3
    assert not [t for t in third.tasks if t.unit_id == "analyze-general"]
    report3 = read_report(ws.report_json)
    assert [(f.finding_id, f.evolution, f.persistent) for f in report3.findings] == [(x_id, "RECURRENT", True)]
    assert report3.resolved == []


@needs_git
def test_massive_rewrite_disables_verification(tmp_path: Path) -> None:
    _init_repo(tmp_path)
    _orch(tmp_path, FakeWorker()).run()

    for name in ("x.src", "y.src", "z.src"):
        _write_lines(tmp_path / name, f"{name} rewritten", 20)
    _git(tmp_path, "commit", "-q", "-am", "rewrite everything")

    worker = FakeWorker()
    record = _orch(tmp_path, worker).run()

    assert record.completed
    assert any(note.startswith("Massive rewrite") for note in record.notes)
    analyze = [t for t in worker.tasks if t.phase == "analyze"]
    assert [t.unit_id for t in analyze] == ["analyze-general"]
    assert sorted(analyze[0].inputs) == ["x.src", "y.src", "z.src"]
    assert analyze[0].payload["mode"] == "full"


@needs_git
def test_verification_flags_feed_the_hypothesis_set(tmp_path: Path) -> None:
    _init_repo(tmp_path)
    _orch(tmp_path, FakeWorker()).run()

    _write_lines(tmp_path / "x.src", "x", 31)
    _git(tmp_path, "commit", "-q", "-am", "grow x")

    worker = FakeWorker(
        verdict="NEEDS_RECHECK",
        concerns=[{"file": "z.src", "condition": "stale cache read", "title": "Stale cache"}],
    )
    record = _orch(tmp_path, worker).run()
    assert record.completed

    synth = next(t for t in worker.tasks if t.unit_id == "synthesize-general")
    assert synth.routed == ("analyze-general", "verify-general")

    doc = json.loads(Workspace(tmp_path / ".audit").hypotheses_path.read_text(encoding="utf-8"))
    flagged = sorted(
        (h["file"], h["condition"], h["origin"]) for h in doc["hypotheses"] if h["origin"].startswith("verification:")
    )
    assert flagged == [
        ("x.src", "general reviewed", "verification:R1-C1"),
        ("y.src", "general reviewed", "verification:R1-C1"),
        ("z.src", "general reviewed", "verification:R1-C1"),
        ("z.src", "stale cache read", "verification:verify-general"),
    ]
    investigated = {t.payload["hypothesis"]["condition"] for t in worker.tasks if t.phase == "investigate"}
    assert "stale cache read" in investigated


def _two_focus_repo(root: Path) -> AuditStackConfig:
    _write_lines(root / "a" / "one.src", "a", 10)
    _write_lines(root / "b" / "two.src", "b", 10)
    return AuditStackConfig(focus_areas={"a": ["a/**"], "b": ["b/**"]}, max_retries=0)


def test_degraded_phase_blocks_and_resumes_failed_units_only(tmp_path: Path) -> None:
    cfg = _two_focus_repo(tmp_path)
    broken = FakeWorker(fail=("analyze-b",))

    record = _orch(tmp_path, broken, cfg).run()

    status = record.phase("analyze")
    assert status.status == DEGRADED
    assert list(status.failed_units) == ["analyze-b"]
    assert record.phase("synthesize").status == PENDING
    assert broken.units == ["analyze-a", "analyze-b"]
    with pytest.raises(PhaseBlockedError):
        _orch(tmp_path, broken, cfg).synthesize()

    fixed = FakeWorker()
    orch = _orch(tmp_path, fixed, cfg)
    record = orch.analyze()
    assert record.phase("analyze").status == COMPLETED
    assert fixed.units == ["analyze-b"]

    # a completed phase dispatches nothing
    orch.analyze()
    assert fixed.units == ["analyze-b"]

    record = orch.run()
    assert record.completed
    assert [t.unit_id for t in fixed.tasks if t.phase == "analyze"] == ["analyze-b"]


def test_resumed_investigate_records_late_dismissals(tmp_path: Path) -> None:
    cfg = AuditStackConfig(max_retries=0, supplemental_rounds=0)
    _write_lines(tmp_path / "x.src", "x", 10)
    _write_lines(tmp_path / "y.src", "y", 10)
    hyps = [
        {"hypothesis_id": "H-x", "file": "x.src", "condition": "x guard missing"},
        {"hypothesis_id": "H-y", "file": "y.src", "condition": "y guard missing"},
    ]
    dismiss = ("x guard missing", "y guard missing")

    record = _orch(tmp_path, FakeWorker(hypotheses=hyps, fail=("investigate-H-y",), dismiss=dismiss), cfg).run()
    assert record.phase("investigate").status == DEGRADED

    ws = Workspace(tmp_path / ".audit")
    assert [e.file for e in load_ledger(ws.ledger_path).entries()] == ["x.src"]

    resumed = FakeWorker(hypotheses=hyps, dismiss=dismiss)
    record = _orch(tmp_path, resumed, cfg).investigate()

    assert record.phase("investigate").status == COMPLETED
    assert resumed.units == ["investigate-H-y"]
    ledger = load_ledger(ws.ledger_path)
    assert [e.file for e in ledger.entries()] == ["x.src", "y.src"]
    assert sum(len(r.added) for r in ledger.records) == 2


def test_allow_degraded_lets_the_run_continue(tmp_path: Path) -> None:
    cfg = _two_focus_repo(tmp_path)
    record = _orch(tmp_path, FakeWorker(fail=("analyze-b",)), cfg, allow_degraded=True).run()

    assert record.completed
    assert record.degraded_phases() == ["analyze"]
    report = read_report(Workspace(tmp_path / ".audit").report_json)
    assert report.degraded_phases == ["analyze"]


def test_interrupted_run_is_abandoned_by_fresh_scan(tmp_path: Path) -> None:
    cfg = _two_focus_repo(tmp_path)
    orch = _orch(tmp_path, FakeWorker(), cfg)
    first = orch.scan()
    orch.index()

    # a plain scan resumes the run in progress
    assert orch.scan().run_id == first.run_id

    second = orch.scan(fresh=True)

    assert second.sequence == 2
    assert not second.stacked
    assert any("did not complete" in note for note in second.notes)
    entries, _ = list_archives(tmp_path / ".audit-history")
    assert [(e.run_id, e.completed) for e in entries] == [(first.run_id, False)]
    lineage = load_lineage(Workspace(tmp_path / ".audit").lineage_path)
    assert lineage is not None
    assert [(r.sequence, r.status) for r in lineage.table()] == [(1, ROW_ABANDONED), (2, ROW_OPEN)]


def test_workspace_without_record_needs_fresh(tmp_path: Path) -> None:
    cfg = _two_focus_repo(tmp_path)
    (tmp_path / ".audit").mkdir()
    (tmp_path / ".audit" / "leftover.json").write_text("{}", encoding="utf-8")
    orch = _orch(tmp_path, FakeWorker(), cfg)

    with pytest.raises(StateError):
        orch.scan()
    assert orch.scan(fresh=True).sequence == 1
    assert not (tmp_path / ".audit" / "leftover.json").exists()


def test_outside_git_every_file_is_new_on_the_next_run(tmp_path: Path) -> None:
    cfg = _two_focus_repo(tmp_path)
    hyp = [{"file": "a/one.src", "condition": "missing bounds check", "title": "Bounds"}]
    _orch(tmp_path, FakeWorker(hypotheses=hyp), cfg).run()

    worker = FakeWorker()
    record = _orch(tmp_path, worker, cfg).run()

    assert record.completed and record.stacked
    assert any("could not be resolved" in note for note in record.notes)
    assert [f.tag for f in load_carried_findings(Workspace(tmp_path / ".audit"))] == [RECHECK]
    assert not [t for t in worker.tasks if t.unit_id.startswith("verify-")]


def test_supplemental_round_investigates_follow_ups(tmp_path: Path) -> None:
    cfg = _two_focus_repo(tmp_path)
    worker = FakeWorker(
        hypotheses=[{"file": "a/one.src", "condition": "missing bounds check", "title": "Bounds"}],
        follow_ups={"missing bounds check": [{"file": "a/one.src", "condition": "off by one in loop"}]},
    )

    record = _orch(tmp_path, worker, cfg).run()

    ws = Workspace(tmp_path / ".audit")
    doc = json.loads(ws.hypotheses_path.read_text(encoding="utf-8"))
    assert [h["condition"] for h in doc["supplemental"]["1"]] == ["off by one in loop"]
    assert record.phase("investigate").units_total == 2
    conditions = sorted(f.condition for f in read_report(ws.report_json).findings)
    assert conditions == ["missing bounds check", "off by one in loop"]


def test_hypothesis_cap_keeps_highest_priority(tmp_path: Path) -> None:
    cfg = AuditStackConfig(max_hypotheses=1, supplemental_rounds=0)
    _write_lines(tmp_path / "app.src", "app", 10)
    worker = FakeWorker(
        hypotheses=[
            {"file": "app.src", "condition": "low value", "priority": 1},
            {"file": "app.src", "condition": "high value", "priority": 9},
        ]
    )

    _orch(tmp_path, worker, cfg).run()

    investigated = [t.payload["hypothesis"]["condition"] for t in worker.tasks if t.phase == "investigate"]
    assert investigated == ["high value"]
