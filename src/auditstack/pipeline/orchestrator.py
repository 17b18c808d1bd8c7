"""Phase orchestrator: the only writer of the run record and the archive store.

Phases run strictly in order. Each worker-backed phase skips units whose output
already exists, so re-invoking an interrupted or degraded phase only dispatches
what is missing.
"""

from __future__ import annotations

import dataclasses
import logging
import shutil
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import asdict
from pathlib import Path
from typing import Any

from auditstack.config.schema import AuditStackConfig
from auditstack.dispatch.batcher import plan_batches, split_all
from auditstack.dispatch.estimate import CostEstimator, load_estimator
from auditstack.dispatch.router import ReportIndex, merge_parts, split_parent
from auditstack.dispatch.workers import CommandWorker, Worker, WorkerTask, run_batch
from auditstack.errors import AuditStackError, PhaseBlockedError, StateError
from auditstack.git.diff import WORKTREE_REF, current_ref, diff_refs
from auditstack.report.format_json import (
    hypothesis_from_dict,
    load_reports,
    read_unit_report,
    write_report,
    write_unit_report,
)
from auditstack.report.format_md import to_markdown
from auditstack.report.models import (
    SCHEMA_VERSION,
    AnalysisTask,
    AuditReport,
    Finding,
    FocusSnapshot,
    Hypothesis,
    Report,
    ReportStats,
)
from auditstack.report.severity import severity_rank
from auditstack.scan.entrypoints import build_scope_predicate, discover_files
from auditstack.scan.index import CodebaseIndex, build_index, read_index, write_index
from auditstack.stacking.archive import ArchiveEntry, archive, latest_archive
from auditstack.stacking.dedup import Ledger, filter_hypotheses, load_ledger, record_dismissals, save_ledger
from auditstack.stacking.delta import Delta, compute_delta
from auditstack.stacking.handover import (
    RECHECK,
    RESOLVED_BY_REMOVAL,
    VERIFY,
    CarriedFinding,
    build_handover,
    has_handover,
    load_carried_findings,
    load_conclusions,
    load_handover_delta,
    write_handover,
)
from auditstack.stacking.lineage import (
    ROW_ABANDONED,
    ROW_CLOSED,
    ROW_OPEN,
    Lineage,
    LineageRow,
    apply_evolution,
    classify,
    load_lineage,
    resolved_findings,
    save_lineage,
    snapshot_of,
)
from auditstack.stacking.verification import should_verify
from auditstack.util.io import atomic_write, read_json, write_json_atomic
from auditstack.util.timeutil import utc_now_iso
from auditstack.workspace import Workspace

from . import phases as plans
from .state import (
    COMPLETED,
    DEGRADED,
    IN_PROGRESS,
    PHASES,
    PriorRun,
    RunRecord,
    load_state,
    new_run,
    save_state,
)

log = logging.getLogger(__name__)

HYPOTHESES_SCHEMA_VERSION = 1

WorkerFactory = Callable[[str], Worker]


@dataclasses.dataclass
class DispatchResult:
    completed: list[str] = dataclasses.field(default_factory=list)
    failed: dict[str, str] = dataclasses.field(default_factory=dict)


class Orchestrator:
    def __init__(
        self,
        repo_root: Path,
        cfg: AuditStackConfig,
        worker_factory: WorkerFactory | None = None,
        estimator: CostEstimator | None = None,
        allow_degraded: bool = False,
    ) -> None:
        self.repo_root = repo_root
        self.cfg = cfg
        self.ws = Workspace(repo_root / cfg.workspace_dir)
        self.history_dir = repo_root / cfg.history_dir
        self.estimator = estimator or load_estimator(cfg)
        self.allow_degraded = allow_degraded
        self._worker_factory = worker_factory or self._command_worker

    # -- run record ---------------------------------------------------------

    def _command_worker(self, phase: str) -> Worker:
        command = self.cfg.worker_for(phase)
        if not command:
            raise AuditStackError(
                f"No worker command configured for phase {phase!r} "
                f"(set worker_command or phase_workers.{phase})"
            )
        return CommandWorker(command, timeout_seconds=self.cfg.worker_timeout_seconds, cwd=self.repo_root)

    def load(self) -> RunRecord:
        record = load_state(self.ws.state_path)
        if record is None:
            raise StateError(f"No run in {self.ws.root}; start one with `auditstack scan`.")
        return record

    def _save(self, record: RunRecord) -> RunRecord:
        save_state(record, self.ws.state_path)
        return record

    def _set_phase(self, record: RunRecord, phase: str, **changes: Any) -> RunRecord:
        status = dataclasses.replace(record.phase(phase), **changes)
        return self._save(record.with_phase(phase, status))

    def _begin(self, record: RunRecord, phase: str) -> RunRecord | None:
        """Check the predecessor and mark ``phase`` in progress; None if already completed."""
        current = record.phase(phase)
        if current.status == COMPLETED:
            log.info("Phase %s already completed; nothing to do.", phase)
            return None
        idx = PHASES.index(phase)
        if idx > 0:
            pred = PHASES[idx - 1]
            pred_status = record.phase(pred).status
            allowed = pred_status == COMPLETED or (self.allow_degraded and pred_status == DEGRADED)
            if not allowed:
                raise PhaseBlockedError(phase, pred, pred_status)
        if current.status == DEGRADED:
            log.info("Re-running degraded phase %s; completed units are kept.", phase)
        return self._set_phase(
            record,
            phase,
            status=IN_PROGRESS,
            started_at=current.started_at or utc_now_iso(),
            completed_at=None,
        )

    def _finish(self, record: RunRecord, phase: str, failed: dict[str, str]) -> RunRecord:
        status = DEGRADED if failed else COMPLETED
        record = self._set_phase(
            record,
            phase,
            status=status,
            completed_at=utc_now_iso(),
            failed_units=dict(sorted(failed.items())),
        )
        if failed:
            for unit, error in sorted(failed.items()):
                log.error("Phase %s unit %s failed: %s", phase, unit, error)
            log.error("Phase %s is degraded (%d failed unit(s)).", phase, len(failed))
        else:
            log.info("Phase %s completed.", phase)
        return record

    # -- scan ---------------------------------------------------------------

    def _start_run(self, record: RunRecord | None, fresh: bool) -> tuple[RunRecord, ArchiveEntry | None]:
        prior: ArchiveEntry | None = None
        if record is not None:
            if not record.completed:
                log.warning("Abandoning incomplete run %s.", record.run_id)
            prior = archive(
                self.ws.root,
                self.history_dir,
                record.run_id,
                record.sequence,
                record.codebase_ref,
                completed=record.completed,
            )
        elif self.ws.root.exists() and any(self.ws.root.iterdir()):
            if not fresh:
                raise StateError(
                    f"{self.ws.root} exists but holds no run record; use `scan --fresh` to discard it."
                )
            log.warning("Discarding workspace %s without a run record.", self.ws.root)
            shutil.rmtree(self.ws.root)
        if prior is None:
            prior = latest_archive(self.history_dir)
        sequence = prior.sequence + 1 if prior else 1
        fresh_record = new_run(sequence, current_ref(self.repo_root), self.cfg.tier, self.cfg.worker_tiers)
        self.ws.root.mkdir(parents=True, exist_ok=True)
        return self._save(fresh_record), prior

    def _prior_for(self, record: RunRecord) -> ArchiveEntry | None:
        if record.sequence <= 1:
            return None
        entry = latest_archive(self.history_dir)
        if entry is None or entry.sequence != record.sequence - 1:
            return None
        return entry

    def scan(self, fresh: bool = False) -> RunRecord:
        try:
            record = load_state(self.ws.state_path)
        except StateError:
            if not fresh:
                raise
            log.warning("Run record in %s is unreadable; discarding it.", self.ws.root)
            record = None
        if record is not None and not fresh and not record.completed:
            if record.phase("scan").status == COMPLETED:
                log.info("Run %s is in progress; next phase: %s", record.run_id, record.next_phase())
                return record
            prior = self._prior_for(record)
        else:
            record, prior = self._start_run(record, fresh)
        record = self._set_phase(record, "scan", status=IN_PROGRESS, started_at=utc_now_iso())
        log.info("Run %s (sequence %d) at %s", record.run_id, record.sequence, record.codebase_ref)

        files = discover_files(self.repo_root, self.cfg)
        log.info("Scope: %d file(s).", len(files))
        lineage = Lineage()
        ledger = Ledger()
        handover = None
        if prior is not None and prior.completed:
            delta = compute_delta(
                prior.codebase_ref,
                record.codebase_ref,
                files,
                self._diff,
                magnitude_threshold=self.cfg.magnitude_threshold,
                rewrite_threshold=self.cfg.rewrite_threshold,
                in_scope=build_scope_predicate(self.repo_root, self.cfg),
            )
            handover = build_handover(
                prior,
                delta,
                record.sequence,
                record.run_id,
                record.codebase_ref,
                record.started_at,
                self.cfg.conclusion_snapshot_chars,
            )
        if handover is not None:
            write_handover(handover, self.ws)
            lineage = handover.lineage
            ledger = handover.ledger
            counts = {
                "findings": len(handover.findings),
                VERIFY: len(handover.tagged(VERIFY)),
                RECHECK: len(handover.tagged(RECHECK)),
                RESOLVED_BY_REMOVAL: len(handover.tagged(RESOLVED_BY_REMOVAL)),
            }
            record = dataclasses.replace(
                record,
                prior=PriorRun(
                    archive_path=str(prior.path),
                    prior_run_id=prior.run_id,
                    prior_sequence=prior.sequence,
                    prior_ref=prior.codebase_ref,
                    prior_summary_counts=counts,
                ),
            )
            if not handover.delta.prior_resolved:
                record = record.with_note(
                    f"Prior ref {prior.codebase_ref} could not be resolved; every file is treated as NEW."
                )
            if handover.delta.massive_rewrite:
                record = record.with_note(
                    f"Massive rewrite ({handover.delta.change_ratio:.0%} of files new or modified); "
                    "verification disabled, full re-analysis."
                )
        else:
            if prior is not None:
                record = record.with_note(
                    f"Prior run {prior.run_id} did not complete; handover skipped and no findings carried forward."
                    if not prior.completed
                    else f"Prior run {prior.run_id} has no usable report; handover skipped."
                )
                lineage = self._abandoned_chain(prior)
            lineage = lineage.append_row(
                LineageRow(
                    sequence=record.sequence,
                    run_id=record.run_id,
                    codebase_ref=record.codebase_ref,
                    started_at=record.started_at,
                    status=ROW_OPEN,
                )
            )
        save_ledger(ledger, self.ws.ledger_path)
        save_lineage(lineage, self.ws.lineage_path)
        return self._finish(record, "scan", {})

    def _diff(self, ref_a: str, ref_b: str) -> Any:
        # compared against the working tree so uncommitted edits count
        return diff_refs(self.repo_root, ref_a, WORKTREE_REF)

    def _abandoned_chain(self, prior: ArchiveEntry) -> Lineage:
        lineage = load_lineage(Workspace(prior.path).lineage_path) or Lineage()
        for row in lineage.table():
            if row.sequence == prior.sequence and row.status == ROW_OPEN:
                lineage = lineage.append_row(dataclasses.replace(row, status=ROW_ABANDONED))
        return lineage

    # -- index --------------------------------------------------------------

    def index(self) -> RunRecord:
        record = self._begin(self.load(), "index")
        if record is None:
            return self.load()
        files = discover_files(self.repo_root, self.cfg)
        idx = build_index(self.repo_root, files, self.cfg.focus_areas, record.codebase_ref)
        write_index(idx, self.ws.index_path)
        log.info("Indexed %d file(s) across %d focus area(s).", len(idx.files), len(idx.focus_areas))
        return self._finish(record, "index", {})

    def _read_index(self) -> CodebaseIndex:
        idx = read_index(self.ws.index_path)
        if idx is None:
            raise StateError(f"{self.ws.index_path} is missing; re-run `auditstack index`.")
        return idx

    # -- dispatch -----------------------------------------------------------

    def _dispatch(
        self,
        record: RunRecord,
        phase: str,
        tasks: list[AnalysisTask],
        parse: Callable[[AnalysisTask, dict[str, Any]], Report],
        routed_index: ReportIndex | None = None,
    ) -> tuple[RunRecord, DispatchResult]:
        """Run every task of ``phase`` whose report is not on disk yet."""
        result = DispatchResult()
        pending = []
        for task in tasks:
            if self.ws.report_path(phase, task.unit_id).exists():
                result.completed.append(task.unit_id)
            else:
                pending.append(task)
        if len(pending) < len(tasks):
            log.info("Phase %s: %d of %d unit(s) already done.", phase, len(tasks) - len(pending), len(tasks))
        if not pending:
            return record, result

        pieces, rejected = split_all(pending, self.estimator, self.cfg.task_ceiling)
        result.failed.update(rejected)
        todo = [t for t in pieces if not self.ws.report_path(phase, t.unit_id).exists()]
        batches = plan_batches(
            todo,
            self.estimator,
            self.cfg.task_ceiling,
            self.cfg.batch_ceiling,
            self.cfg.max_batch_size,
        )
        record = self._set_phase(
            record,
            phase,
            units_total=len(tasks),
            units_completed=len(result.completed),
            batches_total=len(batches),
            batches_completed=0,
        )
        worker: Worker | None = None
        reports = routed_index.reports if routed_index is not None else {}
        tier = record.worker_tier(phase)

        def build(task: AnalysisTask) -> WorkerTask:
            return WorkerTask(
                run_id=record.run_id,
                phase=phase,
                tier=tier,
                task=task,
                repo_root=str(self.repo_root),
                context={"reports": [reports[r].to_dict() for r in task.routed if r in reports]},
            )

        def persist(task: AnalysisTask, report: Report) -> None:
            write_unit_report(report, self.ws.report_path(phase, task.unit_id))

        for batch in batches:
            if worker is None:
                worker = self._worker_factory(phase)
            log.info("Phase %s: dispatching batch %d/%d (%d unit(s)).", phase, batch.index + 1, len(batches), len(batch.tasks))
            outcome = run_batch(batch, worker, build, parse, persist, max_retries=self.cfg.max_retries)
            result.failed.update(outcome.failed)
            result.completed.extend(u for u in outcome.completed if split_parent(u) is None)
            record = self._set_phase(
                record,
                phase,
                units_completed=len(result.completed),
                batches_completed=batch.index + 1,
            )

        for task in pending:
            parts = [t for t in pieces if t.split_of == task.unit_id]
            if not parts:
                continue
            part_reports = [read_unit_report(self.ws.report_path(phase, p.unit_id)) for p in parts]
            if any(r is None for r in part_reports):
                continue
            merged = merge_parts(task.unit_id, [r for r in part_reports if r is not None])
            write_unit_report(merged, self.ws.report_path(phase, task.unit_id))
            result.completed.append(task.unit_id)
        record = self._set_phase(record, phase, units_completed=len(result.completed))
        return record, result

    def _stacked_state(self) -> tuple[bool, Delta | None]:
        present = has_handover(self.ws)
        return present, load_handover_delta(self.ws) if present else None

    # -- analyze ------------------------------------------------------------

    def analyze(self) -> RunRecord:
        record = self._begin(self.load(), "analyze")
        if record is None:
            return self.load()
        idx = self._read_index()
        present, delta = self._stacked_state()
        incremental = should_verify(present, delta)
        conclusions: dict[str, FocusSnapshot] = load_conclusions(self.ws) if incremental else {}
        tasks = plans.plan_analyze(self.repo_root, self.cfg, idx, delta, incremental, conclusions)
        log.info(
            "Analyze: %d unit(s) (%s).",
            len(tasks),
            "incremental with verification" if incremental else "full",
        )
        record, result = self._dispatch(record, "analyze", tasks, plans.parse_report)
        return self._finish(record, "analyze", result.failed)

    # -- synthesize ---------------------------------------------------------

    def _analyses(self) -> ReportIndex:
        return ReportIndex.build(load_reports(self.ws.reports_dir("analyze"), include_parts=True))

    def synthesize(self) -> RunRecord:
        record = self._begin(self.load(), "synthesize")
        if record is None:
            return self.load()
        idx = self._read_index()
        analyses = self._analyses()
        conclusions = load_conclusions(self.ws)
        rechecks = load_carried_findings(self.ws, RECHECK)
        tasks = plans.plan_synthesize(self.cfg, analyses, conclusions, rechecks)
        record, result = self._dispatch(record, "synthesize", tasks, plans.parse_report, analyses)

        proposals = plans.proposed_hypotheses(load_reports(self.ws.reports_dir("synthesize")))
        concerns = plans.concern_hypotheses(analyses.reports.values(), conclusions, idx)
        hypotheses = self._select_hypotheses(
            [*plans.recheck_hypotheses(rechecks, idx), *concerns, *proposals],
            self.cfg.hypothesis_cap(),
        )
        write_json_atomic(
            self.ws.hypotheses_path,
            {
                "schema_version": HYPOTHESES_SCHEMA_VERSION,
                "run_id": record.run_id,
                "hypotheses": [h.to_dict() for h in hypotheses],
                "supplemental": {},
            },
        )
        log.info("Synthesize: %d hypothesis(es) selected from %d proposal(s).", len(hypotheses), len(proposals))
        return self._finish(record, "synthesize", result.failed)

    def _select_hypotheses(self, candidates: list[Hypothesis], cap: int) -> list[Hypothesis]:
        present, delta = self._stacked_state()
        ledger = load_ledger(self.ws.ledger_path)
        unique = plans.unique_by_signature(candidates)
        kept = filter_hypotheses(
            unique,
            ledger.view().values(),
            delta if present else None,
            self.cfg.min_novel_fraction,
        )
        return plans.cap_hypotheses(kept, cap)

    def _load_hypotheses(self) -> tuple[list[Hypothesis], dict[str, Any]]:
        raw = read_json(self.ws.hypotheses_path)
        if not isinstance(raw, dict):
            raise StateError(f"{self.ws.hypotheses_path} is missing; re-run `auditstack synthesize`.")
        items = raw.get("hypotheses", [])
        return [hypothesis_from_dict(h) for h in items if isinstance(h, dict)], raw

    # -- investigate --------------------------------------------------------

    def investigate(self) -> RunRecord:
        record = self._begin(self.load(), "investigate")
        if record is None:
            return self.load()
        idx = self._read_index()
        analyses = self._analyses()
        hypotheses, doc = self._load_hypotheses()
        tasks = plans.plan_investigate(hypotheses, idx, analyses)
        log.info("Investigate: %d hypothesis(es).", len(tasks))
        record, result = self._dispatch(record, "investigate", tasks, plans.parse_investigation, analyses)
        failed = dict(result.failed)

        known = list(hypotheses)
        round_reports = [
            r for r in load_reports(self.ws.reports_dir("investigate")) if r.report_id in {t.unit_id for t in tasks}
        ]
        supplemental: dict[str, list[dict[str, Any]]] = {}
        for round_no in range(1, max(0, self.cfg.supplemental_rounds) + 1):
            if failed:
                # dependent rounds only start once every earlier output is persisted
                break
            follow_ups = self._follow_ups(round_reports, round_no, known)
            if not follow_ups:
                break
            supplemental[str(round_no)] = [h.to_dict() for h in follow_ups]
            known.extend(follow_ups)
            round_tasks = plans.plan_investigate(follow_ups, idx, analyses)
            log.info("Investigate: supplemental round %d with %d hypothesis(es).", round_no, len(round_tasks))
            record, round_result = self._dispatch(
                record, "investigate", round_tasks, plans.parse_investigation, analyses
            )
            failed.update(round_result.failed)
            ids = {t.unit_id for t in round_tasks}
            round_reports = [r for r in load_reports(self.ws.reports_dir("investigate")) if r.report_id in ids]
            tasks = [*tasks, *round_tasks]

        if supplemental:
            write_json_atomic(self.ws.hypotheses_path, {**doc, "supplemental": supplemental})
        record = self._set_phase(
            record,
            "investigate",
            units_total=len(tasks),
            units_completed=sum(1 for t in tasks if self.ws.report_path("investigate", t.unit_id).exists()),
        )

        findings = self._investigated_findings()
        ledger = load_ledger(self.ws.ledger_path)
        updated = record_dismissals(ledger, findings, record.sequence)
        if updated is not ledger:
            save_ledger(updated, self.ws.ledger_path)
        return self._finish(record, "investigate", failed)

    def _follow_ups(self, reports: Iterable[Report], round_no: int, known: list[Hypothesis]) -> list[Hypothesis]:
        proposals: list[Hypothesis] = []
        for report in sorted(reports, key=lambda r: r.report_id):
            items = report.body.get("follow_ups", [])
            if not isinstance(items, list):
                continue
            carrier = Report(
                report_id=report.report_id,
                phase=report.phase,
                focus=report.focus,
                provides=report.provides,
                body={"hypotheses": items},
            )
            proposals.extend(plans.proposed_hypotheses([carrier], prefix=f"H-s{round_no}"))
        if not proposals:
            return []
        seen = {h.signature for h in known}
        ids = {h.hypothesis_id for h in known}
        fresh = [
            dataclasses.replace(h, hypothesis_id=f"S{round_no}-{h.hypothesis_id}") if h.hypothesis_id in ids else h
            for h in proposals
            if h.signature not in seen
        ]
        room = max(0, self.cfg.hypothesis_cap() - len(known))
        return self._select_hypotheses(fresh, room)

    def _investigated_findings(self) -> list[Finding]:
        out: list[Finding] = []
        for report in load_reports(self.ws.reports_dir("investigate")):
            finding = plans.finding_of(report)
            if finding is not None:
                out.append(finding)
        return out

    # -- report -------------------------------------------------------------

    def report(self) -> RunRecord:
        record = self._begin(self.load(), "report")
        if record is None:
            return self.load()
        present, delta = self._stacked_state()
        findings = self._current_findings(load_carried_findings(self.ws, VERIFY) if present else [])

        lineage = load_lineage(self.ws.lineage_path) or Lineage()
        chain = [s for s in lineage.chain() if s.sequence < record.sequence]
        evolutions = classify(findings, chain, self.cfg.persistence_threshold)
        findings = apply_evolution(findings, evolutions)
        resolved = resolved_findings(evolutions, chain, delta)

        active = [f for f in findings if f.active]
        lineage = lineage.append_snapshot(snapshot_of(record.sequence, record.run_id, findings)).append_row(
            LineageRow(
                sequence=record.sequence,
                run_id=record.run_id,
                codebase_ref=record.codebase_ref,
                started_at=record.started_at,
                status=ROW_CLOSED,
                counts={"findings": len(active), "resolved": len(resolved)},
            )
        )
        save_lineage(lineage, self.ws.lineage_path)

        severity_counts = Counter(f.severity for f in active)
        evolution_counts = Counter(f.evolution for f in active if f.evolution)
        if resolved:
            evolution_counts["RESOLVED"] = len(resolved)
        audit = AuditReport(
            schema_version=SCHEMA_VERSION,
            generated_at=utc_now_iso(),
            run_id=record.run_id,
            sequence=record.sequence,
            codebase_ref=record.codebase_ref,
            stacked=present,
            findings=sorted(
                findings,
                key=lambda f: (not f.persistent, -severity_rank(f.severity), f.file, f.line, f.finding_id),
            ),
            resolved=resolved,
            lineage=[asdict(row) for row in lineage.table()],
            degraded_phases=record.degraded_phases(),
            notes=list(record.notes),
            stats=ReportStats(
                findings_total=len(findings),
                active_total=len(active),
                dismissed_total=sum(1 for f in findings if f.status == "dismissed"),
                severity_counts=dict(sorted(severity_counts.items(), key=lambda kv: -severity_rank(kv[0]))),
                evolution_counts=dict(sorted(evolution_counts.items())),
                resolved_total=len(resolved),
                persistent_total=sum(1 for f in active if f.persistent),
            ),
        )
        write_report(audit, self.ws.report_json)
        atomic_write(self.ws.final_report_md, to_markdown(audit).encode("utf-8"))
        log.info(
            "Report: %d active finding(s), %d resolved, written to %s",
            len(active),
            len(resolved),
            self.ws.final_report_md,
        )
        return self._finish(record, "report", {})

    def _current_findings(self, verified: list[CarriedFinding]) -> list[Finding]:
        """Investigated findings plus carried findings on unchanged files.

        An investigated finding replaces a carried one with the same id.
        """
        by_id: dict[str, Finding] = {}
        for carried in verified:
            by_id[carried.finding_id] = Finding(
                finding_id=carried.finding_id,
                hypothesis_id="",
                status=carried.status,
                severity=carried.severity,
                file=carried.file,
                line=carried.line,
                title=carried.title,
                condition=carried.condition,
                description="Carried forward; file unchanged since the previous run.",
            )
        for finding in self._investigated_findings():
            prev = by_id.get(finding.finding_id)
            # two hypotheses reaching the same finding: an active outcome wins
            if prev is not None and prev.hypothesis_id and prev.active and not finding.active:
                continue
            by_id[finding.finding_id] = finding
        return sorted(by_id.values(), key=lambda f: (f.file, f.line, f.finding_id))

    # -- driver -------------------------------------------------------------

    def run_phase(self, phase: str, fresh: bool = False) -> RunRecord:
        if phase == "scan":
            return self.scan(fresh=fresh)
        handler = getattr(self, phase, None)
        if phase not in PHASES or handler is None:
            raise AuditStackError(f"Unknown phase {phase!r}")
        return handler()

    def run(self, fresh: bool = False) -> RunRecord:
        """Run every remaining phase, stopping at the first degraded one."""
        record = None if fresh else load_state(self.ws.state_path)
        if record is None or record.completed:
            record = self.scan(fresh=fresh)
        for phase in PHASES:
            if record.phase(phase).status == COMPLETED:
                continue
            record = self.run_phase(phase)
            if record.phase(phase).status == DEGRADED and not self.allow_degraded:
                log.error("Stopping at degraded phase %s.", phase)
                break
        return record

