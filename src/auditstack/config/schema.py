from __future__ import annotations

from dataclasses import dataclass, field

TIERS = ("quick", "standard", "deep")

# Hypothesis cap per tier when max_hypotheses is not set explicitly.
TIER_HYPOTHESIS_CAPS: dict[str, int] = {
    "quick": 20,
    "standard": 50,
    "deep": 120,
}


@dataclass(frozen=True)
class AuditStackConfig:
    include: list[str] = field(default_factory=lambda: ["."])
    exclude: list[str] = field(
        default_factory=lambda: [
            ".git",
            ".audit",
            ".audit-history",
            ".venv",
            "venv",
            ".tox",
            "build",
            "dist",
            "node_modules",
            "vendor",
            "target",
        ]
    )
    max_files: int = 5000
    workspace_dir: str = ".audit"
    history_dir: str = ".audit-history"
    tier: str = "standard"
    focus_areas: dict[str, list[str]] = field(default_factory=lambda: {"general": ["**"]})
    knowledge_refs: dict[str, list[str]] = field(default_factory=dict)
    worker_command: list[str] = field(default_factory=list)
    phase_workers: dict[str, list[str]] = field(default_factory=dict)
    worker_tiers: dict[str, str] = field(default_factory=dict)
    worker_timeout_seconds: float = 900.0
    max_retries: int = 2
    magnitude_threshold: int = 10
    rewrite_threshold: float = 0.70
    fixed_cost: int = 4000
    per_line_cost: int = 12
    per_reference_byte: float = 0.25
    per_routed_report: int = 1500
    task_ceiling: int = 120000
    batch_ceiling: int = 480000
    max_batch_size: int = 8
    estimator_plugin: str | None = None
    min_novel_fraction: float = 0.2
    max_hypotheses: int | None = None
    supplemental_rounds: int = 1
    persistence_threshold: int = 2
    conclusion_snapshot_chars: int = 600

    def hypothesis_cap(self) -> int:
        if self.max_hypotheses is not None:
            return self.max_hypotheses
        return TIER_HYPOTHESIS_CAPS.get(self.tier, TIER_HYPOTHESIS_CAPS["standard"])

    def worker_for(self, phase: str) -> list[str]:
        return list(self.phase_workers.get(phase) or self.worker_command)
