from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Workspace:
    """File layout of one run's workspace (current or archived)."""

    root: Path

    @property
    def state_path(self) -> Path:
        return self.root / "STATE.json"

    @property
    def index_path(self) -> Path:
        return self.root / "INDEX.json"

    @property
    def handover_dir(self) -> Path:
        return self.root / "handover"

    @property
    def handover_md(self) -> Path:
        return self.root / "HANDOVER.md"

    @property
    def hypotheses_path(self) -> Path:
        return self.root / "hypotheses.json"

    @property
    def ledger_path(self) -> Path:
        return self.root / "ledger.json"

    @property
    def lineage_path(self) -> Path:
        return self.root / "lineage.json"

    @property
    def report_json(self) -> Path:
        return self.root / "report.json"

    @property
    def final_report_md(self) -> Path:
        return self.root / "FINAL_REPORT.md"

    def reports_dir(self, phase: str) -> Path:
        return self.root / "reports" / phase

    def report_path(self, phase: str, unit_id: str) -> Path:
        return self.reports_dir(phase) / f"{unit_id}.json"

    def section_path(self, section: str) -> Path:
        return self.handover_dir / f"{section}.json"

    def exists(self) -> bool:
        return self.state_path.exists()
