"""Cost estimation for analysis tasks.

Estimates are abstract capacity units compared against the configured task and
batch ceilings. The default estimator is linear in every input, so adding a
file, a reference or a routed report never lowers the estimate.
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from auditstack.config.schema import AuditStackConfig
from auditstack.report.models import AnalysisTask

log = logging.getLogger(__name__)


@runtime_checkable
class CostEstimator(Protocol):
    def estimate(self, task: AnalysisTask) -> int: ...


@dataclass(frozen=True)
class LinearEstimator:
    fixed_cost: int = 4000
    per_line_cost: int = 12
    per_reference_byte: float = 0.25
    per_routed_report: int = 1500

    def estimate(self, task: AnalysisTask) -> int:
        lines = sum(max(0, n) for n in task.inputs.values())
        ref_bytes = sum(max(0, n) for n in task.references.values())
        cost = (
            self.fixed_cost
            + self.per_line_cost * lines
            + self.per_reference_byte * ref_bytes
            + self.per_routed_report * len(task.routed)
        )
        return int(round(cost))

    def input_cost(self, lines: int) -> int:
        return self.per_line_cost * max(0, lines)


def linear_from_config(cfg: AuditStackConfig) -> LinearEstimator:
    return LinearEstimator(
        fixed_cost=cfg.fixed_cost,
        per_line_cost=cfg.per_line_cost,
        per_reference_byte=cfg.per_reference_byte,
        per_routed_report=cfg.per_routed_report,
    )


def load_estimator(cfg: AuditStackConfig) -> CostEstimator:
    """Return the configured estimator.

    ``estimator_plugin`` names a module exposing either ``build_estimator(cfg)``
    or a module-level ``ESTIMATOR``. A plugin that fails to load falls back to
    the linear estimator with a warning.
    """
    default = linear_from_config(cfg)
    module_path = (cfg.estimator_plugin or "").strip()
    if not module_path:
        return default
    try:
        module = importlib.import_module(module_path)
    except Exception as exc:
        log.warning("Failed to load estimator plugin %s (%s)", module_path, exc)
        return default
    factory = getattr(module, "build_estimator", None)
    if callable(factory):
        try:
            candidate = factory(cfg)
        except Exception as exc:
            log.warning("Estimator plugin build_estimator() failed for %s (%s)", module_path, exc)
            return default
    else:
        candidate = getattr(module, "ESTIMATOR", None)
    if isinstance(candidate, CostEstimator):
        log.debug("Using estimator from %s", module_path)
        return candidate
    log.warning("Estimator plugin %s has no ESTIMATOR or build_estimator()", module_path)
    return default
