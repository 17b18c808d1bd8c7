from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from pathlib import Path

import pytest

from auditstack.errors import StateError
from auditstack.pipeline.state import (
    COMPLETED,
    DEGRADED,
    IN_PROGRESS,
    PHASES,
    PhaseStatus,
    PriorRun,
    load_state,
    make_run_id,
    new_run,
    next_step,
    save_state,
)


def test_run_id_format() -> None:
    when = datetime(2024, 3, 1, 9, 5, 7, tzinfo=timezone.utc)
    assert make_run_id(3, "ABCDEF1234567890", when) == "3-abcdef1-20240301_090507"


def test_state_roundtrip(tmp_path: Path) -> None:
    record = new_run(
        2,
        "abcdef1234",
        "deep",
        {"analyze": "quick"},
        prior=PriorRun("/h/2024-03-01-abcdef1", "1-abcdef1-x", 1, "abcdef1", {"findings": 3}),
    )
    record = record.with_phase("scan", PhaseStatus(status=COMPLETED, completed_at="t"))
    record = record.with_phase(
        "index", PhaseStatus(status=DEGRADED, units_total=2, units_completed=1, failed_units={"u": "boom"})
    )
    record = record.with_note("massive rewrite").with_note("massive rewrite")
    path = tmp_path / "STATE.json"

    save_state(record, path)
    loaded = load_state(path)

    assert loaded == record
    assert loaded.worker_tier("analyze") == "quick"
    assert loaded.worker_tier("investigate") == "deep"
    assert loaded.notes == ["massive rewrite"]
    assert loaded.degraded_phases() == ["index"]


def test_missing_state_is_none_and_garbage_raises(tmp_path: Path) -> None:
    path = tmp_path / "STATE.json"
    assert load_state(path) is None

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(StateError):
        load_state(path)

    path.write_text('{"sequence": 1}', encoding="utf-8")
    with pytest.raises(StateError):
        load_state(path)


def test_completion_and_next_step() -> None:
    record = new_run(1, "WORKTREE", "standard")
    assert next_step(None) == "auditstack scan"
    assert record.next_phase() == "scan"
    assert not record.completed

    for name in PHASES[:-1]:
        record = record.with_phase(name, PhaseStatus(status=COMPLETED))
    record = record.with_phase("report", PhaseStatus(status=IN_PROGRESS))
    assert "resumes" in next_step(record)

    record = record.with_phase("report", PhaseStatus(status=DEGRADED, completed_at="t"))
    assert record.completed
    assert record.finished_at == "t"
    assert record.next_phase() is None
    assert next_step(record).startswith("review degraded phases")


def test_record_is_immutable() -> None:
    record = new_run(1, "WORKTREE", "standard")
    with pytest.raises(dataclasses.FrozenInstanceError):
        record.sequence = 2  # type: ignore[misc]
