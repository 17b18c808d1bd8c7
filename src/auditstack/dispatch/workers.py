"""Worker invocation boundary.

A worker receives one ``WorkerTask`` and returns one JSON-compatible dict. The
built-in ``CommandWorker`` runs an external command per task; tests and
embedding code may pass any callable with the same shape.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from auditstack.errors import WorkerError
from auditstack.report.models import AnalysisTask

from .batcher import Batch

log = logging.getLogger(__name__)

T = TypeVar("T")

_STDERR_TAIL = 400


@dataclass(frozen=True)
class WorkerTask:
    run_id: str
    phase: str
    tier: str
    task: AnalysisTask
    repo_root: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "phase": self.phase,
            "tier": self.tier,
            "repo_root": self.repo_root,
            "task": self.task.to_dict(),
            "context": self.context,
        }


class Worker(Protocol):
    def __call__(self, task: WorkerTask) -> dict[str, Any]: ...


@dataclass(frozen=True)
class CommandWorker:
    """Runs ``command`` with the task as JSON on stdin; expects one JSON object on stdout."""

    command: Sequence[str]
    timeout_seconds: float = 900.0
    cwd: Path | None = None

    def __call__(self, task: WorkerTask) -> dict[str, Any]:
        if not self.command:
            raise WorkerError(f"No worker command configured for phase {task.phase!r}")
        try:
            result = subprocess.run(
                list(self.command),
                input=json.dumps(task.to_dict()),
                text=True,
                capture_output=True,
                timeout=self.timeout_seconds,
                env={**os.environ, "AUDITSTACK_PHASE": task.phase, "AUDITSTACK_TIER": task.tier},
                cwd=str(self.cwd) if self.cwd else None,
            )
        except subprocess.TimeoutExpired as exc:
            raise WorkerError(f"{task.task.unit_id}: timed out after {self.timeout_seconds:g}s") from exc
        except OSError as exc:
            raise WorkerError(f"{task.task.unit_id}: cannot start worker ({exc})") from exc
        if result.returncode != 0:
            error = result.stderr.strip()[-_STDERR_TAIL:] or "worker failed"
            raise WorkerError(f"{task.task.unit_id}: exit {result.returncode}: {error}")
        try:
            data = json.loads(result.stdout.strip() or "null")
        except json.JSONDecodeError as exc:
            raise WorkerError(f"{task.task.unit_id}: invalid worker output ({exc.msg})") from exc
        if not isinstance(data, dict):
            raise WorkerError(f"{task.task.unit_id}: worker output is not a JSON object")
        return data


@dataclass
class BatchOutcome(Generic[T]):
    completed: dict[str, T] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)


def _attempt(
    worker: Worker,
    wtask: WorkerTask,
    parse: Callable[[AnalysisTask, dict[str, Any]], T],
    max_retries: int,
) -> T:
    last = WorkerError(f"{wtask.task.unit_id}: no attempt made")
    for attempt in range(1, max(0, max_retries) + 2):
        try:
            return parse(wtask.task, worker(wtask))
        except WorkerError as exc:
            last = exc
        except Exception as exc:
            last = WorkerError(f"{wtask.task.unit_id}: {type(exc).__name__}: {exc}")
        log.warning("Unit %s attempt %d failed: %s", wtask.task.unit_id, attempt, last)
    raise last


def run_batch(
    batch: Batch,
    worker: Worker,
    build: Callable[[AnalysisTask], WorkerTask],
    parse: Callable[[AnalysisTask, dict[str, Any]], T],
    on_complete: Callable[[AnalysisTask, T], None],
    max_retries: int = 2,
    parallel: int | None = None,
) -> BatchOutcome[T]:
    """Dispatch every task of ``batch`` concurrently.

    ``parse`` validates a worker result and raises WorkerError to trigger a
    retry. ``on_complete`` runs on the calling thread as each unit finishes, so
    outputs are persisted one by one. Units still failing after ``max_retries``
    retries, or whose output cannot be persisted, are returned in ``failed``;
    other units are not cancelled.
    """
    outcome: BatchOutcome[T] = BatchOutcome()
    if not batch.tasks:
        return outcome
    workers = max(1, parallel or len(batch.tasks))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {
            executor.submit(_attempt, worker, build(task), parse, max_retries): task
            for task in batch.tasks
        }
        for future in as_completed(futures):
            task = futures[future]
            try:
                value = future.result()
            except WorkerError as exc:
                outcome.failed[task.unit_id] = str(exc)
                continue
            try:
                on_complete(task, value)
            except OSError as exc:
                log.error("Unit %s: could not persist output: %s", task.unit_id, exc)
                outcome.failed[task.unit_id] = f"{task.unit_id}: output not persisted: {exc}"
                continue
            outcome.completed[task.unit_id] = value
    log.debug(
        "Batch %d: %d completed, %d failed",
        batch.index,
        len(outcome.completed),
        len(outcome.failed),
    )
    return outcome
