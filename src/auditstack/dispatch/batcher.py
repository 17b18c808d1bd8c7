from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from auditstack.errors import TaskTooLargeError
from auditstack.report.models import AnalysisTask

from .estimate import CostEstimator

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Batch:
    index: int
    tasks: list[AnalysisTask] = field(default_factory=list)
    estimate: int = 0

    @property
    def unit_ids(self) -> list[str]:
        return [t.unit_id for t in self.tasks]


def part_id(unit_id: str, n: int) -> str:
    return f"{unit_id}.part{n}"


def _with_inputs(task: AnalysisTask, inputs: dict[str, int], unit_id: str | None = None) -> AnalysisTask:
    return dataclasses.replace(
        task,
        unit_id=unit_id or task.unit_id,
        inputs=inputs,
        split_of=task.split_of if unit_id is None else task.unit_id,
    )


def _lpt(costs: Sequence[tuple[str, int]], parts: int) -> list[list[str]]:
    bins: list[list[str]] = [[] for _ in range(parts)]
    loads = [0] * parts
    for path, cost in costs:
        i = min(range(parts), key=lambda k: (loads[k], k))
        bins[i].append(path)
        loads[i] += cost
    return bins


def split_task(task: AnalysisTask, estimator: CostEstimator, ceiling: int) -> list[AnalysisTask]:
    """Split ``task`` across the fewest parts that each fit under ``ceiling``.

    Inputs are assigned longest first to the least loaded part. Parts keep the
    task's provides, references and routed reports, so only the source inputs
    are divided.
    """
    total = estimator.estimate(task)
    if total <= ceiling:
        return [task]

    base = estimator.estimate(_with_inputs(task, {}))
    costs: list[tuple[str, int]] = []
    for path, lines in task.inputs.items():
        single = estimator.estimate(_with_inputs(task, {path: lines}))
        if single > ceiling:
            raise TaskTooLargeError(task.unit_id, single, ceiling)
        costs.append((path, single - base))
    if not costs:
        raise TaskTooLargeError(task.unit_id, total, ceiling)
    costs.sort(key=lambda item: (-item[1], item[0]))

    room = max(ceiling - base, 1)
    start = max(2, math.ceil(sum(c for _, c in costs) / room))
    for parts in range(start, len(costs) + 1):
        bins = _lpt(costs, parts)
        candidates = [
            _with_inputs(
                task,
                {path: task.inputs[path] for path in sorted(paths)},
                unit_id=part_id(task.unit_id, n),
            )
            for n, paths in enumerate((b for b in bins if b), start=1)
        ]
        if all(estimator.estimate(c) <= ceiling for c in candidates):
            log.info(
                "Split %s (estimate %d > %d) into %d part(s)",
                task.unit_id,
                total,
                ceiling,
                len(candidates),
            )
            return candidates
    # one input per part always fits once every single input fits
    raise TaskTooLargeError(task.unit_id, total, ceiling)


def split_all(
    tasks: Iterable[AnalysisTask],
    estimator: CostEstimator,
    ceiling: int,
) -> tuple[list[AnalysisTask], dict[str, str]]:
    """Split every oversized task; units that cannot be split are rejected with a reason."""
    out: list[AnalysisTask] = []
    rejected: dict[str, str] = {}
    for task in tasks:
        try:
            out.extend(split_task(task, estimator, ceiling))
        except TaskTooLargeError as exc:
            log.error("%s", exc)
            rejected[task.unit_id] = str(exc)
    return out, rejected


def plan_batches(
    tasks: Iterable[AnalysisTask],
    estimator: CostEstimator,
    task_ceiling: int,
    batch_ceiling: int,
    max_batch_size: int,
) -> list[Batch]:
    """Split oversized tasks, then pack them greedily into bounded batches.

    Raises TaskTooLargeError when a task cannot be split; use ``split_all``
    first to reject such units without aborting the plan.
    """
    expanded: list[AnalysisTask] = []
    for task in tasks:
        expanded.extend(split_task(task, estimator, task_ceiling))

    size_cap = max(1, max_batch_size)
    batches: list[Batch] = []
    current: list[AnalysisTask] = []
    current_cost = 0
    for task in expanded:
        cost = estimator.estimate(task)
        if current and (current_cost + cost > batch_ceiling or len(current) >= size_cap):
            batches.append(Batch(index=len(batches), tasks=current, estimate=current_cost))
            current, current_cost = [], 0
        current.append(task)
        current_cost += cost
    if current:
        batches.append(Batch(index=len(batches), tasks=current, estimate=current_cost))
    return batches
