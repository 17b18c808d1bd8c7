from __future__ import annotations

import sys
import threading
from typing import Any

import pytest

from auditstack.dispatch.batcher import Batch
from auditstack.dispatch.workers import CommandWorker, WorkerTask, run_batch
from auditstack.errors import WorkerError
from auditstack.report.models import AnalysisTask


def _wtask(unit_id: str = "u1") -> WorkerTask:
    return WorkerTask(run_id="1-x", phase="analyze", tier="standard", task=AnalysisTask(unit_id=unit_id, phase="analyze"))


def _echo(task: AnalysisTask, raw: dict[str, Any]) -> dict[str, Any]:
    return raw


def test_command_worker_round_trips_json() -> None:
    script = (
        "import json, os, sys; t = json.load(sys.stdin); "
        "print(json.dumps({'unit': t['task']['unit_id'], 'phase': os.environ['AUDITSTACK_PHASE']}))"
    )
    worker = CommandWorker([sys.executable, "-c", script], timeout_seconds=30)

    assert worker(_wtask()) == {"unit": "u1", "phase": "analyze"}


@pytest.mark.parametrize(
    "script",
    [
        "import sys; sys.exit(3)",
        "print('not json')",
        "print('[1, 2]')",
    ],
)
def test_command_worker_failures_raise_worker_error(script: str) -> None:
    worker = CommandWorker([sys.executable, "-c", script], timeout_seconds=30)
    with pytest.raises(WorkerError):
        worker(_wtask())


def test_run_batch_retries_then_gives_up() -> None:
    calls: dict[str, int] = {}
    lock = threading.Lock()

    def worker(wtask: WorkerTask) -> dict[str, Any]:
        uid = wtask.task.unit_id
        with lock:
            calls[uid] = calls.get(uid, 0) + 1
            n = calls[uid]
        if uid == "flaky" and n < 2:
            raise RuntimeError("transient")
        if uid == "broken":
            raise WorkerError("always fails")
        return {"ok": uid}

    tasks = [AnalysisTask(unit_id=u, phase="analyze") for u in ("good", "flaky", "broken")]
    persisted: list[str] = []

    outcome = run_batch(
        Batch(index=0, tasks=tasks),
        worker,
        lambda t: WorkerTask(run_id="1-x", phase="analyze", tier="standard", task=t),
        _echo,
        lambda t, _v: persisted.append(t.unit_id),
        max_retries=2,
    )

    assert sorted(outcome.completed) == ["flaky", "good"]
    assert list(outcome.failed) == ["broken"]
    assert sorted(persisted) == ["flaky", "good"]
    assert calls == {"good": 1, "flaky": 2, "broken": 3}


def test_parse_errors_are_retried() -> None:
    def parse(task: AnalysisTask, raw: dict[str, Any]) -> dict[str, Any]:
        if "finding" not in raw:
            raise WorkerError("no finding")
        return raw

    outcome = run_batch(
        Batch(index=0, tasks=[AnalysisTask(unit_id="u", phase="investigate")]),
        lambda _w: {},
        lambda t: WorkerTask(run_id="1-x", phase="investigate", tier="standard", task=t),
        parse,
        lambda _t, _v: None,
        max_retries=0,
    )
    assert outcome.failed == {"u": "no finding"}


def test_unpersisted_output_fails_the_unit() -> None:
    def persist(task: AnalysisTask, _value: dict[str, Any]) -> None:
        if task.unit_id == "full-disk":
            raise OSError(28, "No space left on device")

    outcome = run_batch(
        Batch(index=0, tasks=[AnalysisTask(unit_id=u, phase="analyze") for u in ("ok", "full-disk")]),
        lambda w: {"ok": w.task.unit_id},
        lambda t: WorkerTask(run_id="1-x", phase="analyze", tier="standard", task=t),
        _echo,
        persist,
        max_retries=0,
    )

    assert list(outcome.completed) == ["ok"]
    assert list(outcome.failed) == ["full-disk"]
    assert "No space left" in outcome.failed["full-disk"]
