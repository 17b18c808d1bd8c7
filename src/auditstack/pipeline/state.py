"""The run record (``STATE.json``).

Only the orchestrator writes it, always atomically, so readers such as
``auditstack status`` see either the previous or the next consistent state.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from auditstack.errors import StateError
from auditstack.util.identity import short_ref
from auditstack.util.io import read_json, write_json_atomic
from auditstack.util.timeutil import utc_now_iso, utc_timestamp

log = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1
SKILL_NAME = "auditstack"

PHASES = ("scan", "index", "analyze", "synthesize", "investigate", "report")
WORKER_PHASES = ("analyze", "synthesize", "investigate")

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
DEGRADED = "degraded"
PHASE_STATUSES = (PENDING, IN_PROGRESS, COMPLETED, DEGRADED)


@dataclass(frozen=True)
class PhaseStatus:
    status: str = PENDING
    started_at: str | None = None
    completed_at: str | None = None
    units_total: int = 0
    units_completed: int = 0
    batches_total: int = 0
    batches_completed: int = 0
    failed_units: dict[str, str] = field(default_factory=dict)

    @property
    def done(self) -> bool:
        return self.status in (COMPLETED, DEGRADED)


@dataclass(frozen=True)
class PriorRun:
    archive_path: str
    prior_run_id: str
    prior_sequence: int
    prior_ref: str
    prior_summary_counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    sequence: int
    codebase_ref: str
    started_at: str
    updated_at: str
    tier: str = "standard"
    worker_tiers: dict[str, str] = field(default_factory=dict)
    phases: dict[str, PhaseStatus] = field(default_factory=dict)
    finished_at: str | None = None
    prior: PriorRun | None = None
    notes: list[str] = field(default_factory=list)

    def phase(self, name: str) -> PhaseStatus:
        return self.phases.get(name, PhaseStatus())

    def with_phase(self, name: str, status: PhaseStatus) -> RunRecord:
        phases = dict(self.phases)
        phases[name] = status
        finished = self.finished_at
        if name == PHASES[-1] and status.done:
            finished = status.completed_at
        return dataclasses.replace(self, phases=phases, updated_at=utc_now_iso(), finished_at=finished)

    def with_note(self, note: str) -> RunRecord:
        if note in self.notes:
            return self
        return dataclasses.replace(self, notes=[*self.notes, note], updated_at=utc_now_iso())

    @property
    def completed(self) -> bool:
        """True once the report phase has finished, degraded or not."""
        return self.phase(PHASES[-1]).done

    @property
    def stacked(self) -> bool:
        return self.prior is not None

    def degraded_phases(self) -> list[str]:
        return [p for p in PHASES if self.phase(p).status == DEGRADED]

    def next_phase(self) -> str | None:
        for name in PHASES:
            if not self.phase(name).done:
                return name
        return None

    def worker_tier(self, phase: str) -> str:
        return self.worker_tiers.get(phase, self.tier)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": STATE_SCHEMA_VERSION,
            "skill": SKILL_NAME,
            "run_id": self.run_id,
            "sequence": self.sequence,
            "codebase_ref": self.codebase_ref,
            "started_at": self.started_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
            "config": {"tier": self.tier, "worker_tiers": dict(self.worker_tiers)},
            "phases": {name: asdict(self.phase(name)) for name in PHASES},
            "prior": asdict(self.prior) if self.prior else None,
            "notes": list(self.notes),
        }


def make_run_id(sequence: int, codebase_ref: str, when: datetime | None = None) -> str:
    return f"{sequence}-{short_ref(codebase_ref)}-{utc_timestamp(when)}"


def new_run(
    sequence: int,
    codebase_ref: str,
    tier: str,
    worker_tiers: dict[str, str] | None = None,
    prior: PriorRun | None = None,
) -> RunRecord:
    now = utc_now_iso()
    return RunRecord(
        run_id=make_run_id(sequence, codebase_ref),
        sequence=sequence,
        codebase_ref=codebase_ref,
        started_at=now,
        updated_at=now,
        tier=tier,
        worker_tiers=dict(worker_tiers or {}),
        phases={name: PhaseStatus() for name in PHASES},
        prior=prior,
    )


def _phase_from_dict(raw: Any) -> PhaseStatus:
    if not isinstance(raw, dict):
        return PhaseStatus()
    status = str(raw.get("status", PENDING))
    if status not in PHASE_STATUSES:
        status = PENDING
    failed = raw.get("failed_units") or {}
    return PhaseStatus(
        status=status,
        started_at=raw.get("started_at"),
        completed_at=raw.get("completed_at"),
        units_total=int(raw.get("units_total", 0)),
        units_completed=int(raw.get("units_completed", 0)),
        batches_total=int(raw.get("batches_total", 0)),
        batches_completed=int(raw.get("batches_completed", 0)),
        failed_units={str(k): str(v) for k, v in failed.items()} if isinstance(failed, dict) else {},
    )


def record_from_dict(raw: dict[str, Any]) -> RunRecord:
    try:
        config = raw.get("config") or {}
        prior_raw = raw.get("prior")
        prior = None
        if isinstance(prior_raw, dict):
            prior = PriorRun(
                archive_path=str(prior_raw.get("archive_path", "")),
                prior_run_id=str(prior_raw.get("prior_run_id", "")),
                prior_sequence=int(prior_raw.get("prior_sequence", 0)),
                prior_ref=str(prior_raw.get("prior_ref", "")),
                prior_summary_counts={
                    str(k): int(v) for k, v in (prior_raw.get("prior_summary_counts") or {}).items()
                },
            )
        phases_raw = raw.get("phases") or {}
        return RunRecord(
            run_id=str(raw["run_id"]),
            sequence=int(raw["sequence"]),
            codebase_ref=str(raw.get("codebase_ref", "")),
            started_at=str(raw.get("started_at", "")),
            updated_at=str(raw.get("updated_at", "")),
            tier=str(config.get("tier", "standard")),
            worker_tiers={str(k): str(v) for k, v in (config.get("worker_tiers") or {}).items()},
            phases={name: _phase_from_dict(phases_raw.get(name)) for name in PHASES},
            finished_at=raw.get("finished_at"),
            prior=prior,
            notes=[str(n) for n in raw.get("notes") or []],
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise StateError(f"Run record is malformed: {exc}") from exc


def load_state(path: Path) -> RunRecord | None:
    if not path.exists():
        return None
    raw = read_json(path)
    if not isinstance(raw, dict):
        raise StateError(f"Run record {path} cannot be read")
    return record_from_dict(raw)


def save_state(record: RunRecord, path: Path) -> None:
    write_json_atomic(path, record.to_dict())


def next_step(record: RunRecord | None) -> str:
    """Operator-facing suggestion for what to run next."""
    if record is None:
        return "auditstack scan"
    phase = record.next_phase()
    if phase is None:
        if record.degraded_phases():
            return "review degraded phases, then `auditstack scan` to start the next run"
        return "auditstack scan (starts the next stacked run)"
    current = record.phase(phase)
    if current.status == IN_PROGRESS:
        return f"auditstack {phase} (resumes the interrupted phase)"
    return f"auditstack {phase}"
