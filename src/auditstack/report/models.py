from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from auditstack.util.identity import hypothesis_signature

SCHEMA_VERSION = 1

FINDING_STATUSES = ("confirmed", "potential", "dismissed")
ACTIVE_STATUSES = frozenset({"confirmed", "potential"})
ORIGIN_KINDS = ("novel", "recheck", "verification", "catalog", "playbook")


def _tags(values: frozenset[str]) -> list[str]:
    return sorted(values)


@dataclass(frozen=True)
class Origin:
    kind: str
    ref: str = ""

    def __str__(self) -> str:
        if self.ref:
            return f"{self.kind}:{self.ref}"
        return self.kind

    @classmethod
    def parse(cls, value: str | None) -> Origin:
        text = (value or "").strip()
        kind, _, ref = text.partition(":")
        kind = kind.strip().lower()
        if kind not in ORIGIN_KINDS:
            return cls("novel")
        return cls(kind, ref.strip())


@dataclass(frozen=True)
class AnalysisTask:
    unit_id: str
    phase: str
    focus: str = ""
    inputs: dict[str, int] = field(default_factory=dict)
    requires: frozenset[str] = frozenset()
    provides: frozenset[str] = frozenset()
    references: dict[str, int] = field(default_factory=dict)
    routed: tuple[str, ...] = ()
    split_of: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def logical_id(self) -> str:
        return self.split_of or self.unit_id

    @property
    def input_lines(self) -> int:
        return sum(self.inputs.values())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["requires"] = _tags(self.requires)
        data["provides"] = _tags(self.provides)
        data["routed"] = list(self.routed)
        return data


@dataclass(frozen=True)
class Conclusion:
    id: str
    text: str
    files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class FocusSnapshot:
    """Condensed conclusions of one focus area, carried between runs."""

    focus: str
    summary: str
    conclusions: list[Conclusion] = field(default_factory=list)
    files: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Report:
    report_id: str
    phase: str
    focus: str
    provides: frozenset[str]
    summary: str = ""
    conclusions: list[Conclusion] = field(default_factory=list)
    body: dict[str, Any] = field(default_factory=dict)
    parts: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["provides"] = _tags(self.provides)
        data["parts"] = list(self.parts)
        return data


@dataclass(frozen=True)
class Hypothesis:
    hypothesis_id: str
    title: str
    file: str
    condition: str
    origin: Origin
    requires: frozenset[str] = frozenset()
    focus: str = ""
    priority: int = 0

    @property
    def signature(self) -> str:
        return hypothesis_signature(self.file, self.condition)

    @property
    def is_novel(self) -> bool:
        return self.origin.kind == "novel"

    def to_dict(self) -> dict[str, Any]:
        return {
            "hypothesis_id": self.hypothesis_id,
            "title": self.title,
            "file": self.file,
            "condition": self.condition,
            "origin": str(self.origin),
            "requires": _tags(self.requires),
            "focus": self.focus,
            "priority": self.priority,
            "signature": self.signature,
        }


@dataclass(frozen=True)
class Finding:
    finding_id: str
    hypothesis_id: str
    status: str
    severity: str
    file: str
    line: int
    title: str
    condition: str
    description: str = ""
    evolution: str | None = None
    original_severity: str | None = None
    persistent: bool = False

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ResolvedFinding:
    finding_id: str
    title: str
    file: str
    severity: str
    reason: str


@dataclass(frozen=True)
class ReportStats:
    findings_total: int
    active_total: int
    dismissed_total: int
    severity_counts: dict[str, int]
    evolution_counts: dict[str, int]
    resolved_total: int
    persistent_total: int


@dataclass(frozen=True)
class AuditReport:
    schema_version: int
    generated_at: str
    run_id: str
    sequence: int
    codebase_ref: str
    stacked: bool
    findings: list[Finding]
    resolved: list[ResolvedFinding] = field(default_factory=list)
    lineage: list[dict[str, Any]] = field(default_factory=list)
    degraded_phases: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    stats: ReportStats | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data.get("stats") is None:
            data.pop("stats", None)
        return data
