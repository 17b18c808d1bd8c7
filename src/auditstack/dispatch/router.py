"""Provides/requires routing of phase reports to downstream tasks."""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from auditstack.report.models import Conclusion, Report

_PART = re.compile(r"^(?P<unit>.+)\.part(?P<n>\d+)$")


def split_parent(report_id: str) -> tuple[str, int] | None:
    m = _PART.match(report_id)
    if not m:
        return None
    return m.group("unit"), int(m.group("n"))


def _merge_bodies(bodies: Iterable[dict[str, Any]]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for body in bodies:
        for key, value in body.items():
            if key not in merged:
                merged[key] = list(value) if isinstance(value, list) else value
            elif isinstance(merged[key], list) and isinstance(value, list):
                merged[key].extend(value)
    return merged


def merge_parts(unit_id: str, parts: list[Report]) -> Report:
    """Fold the outputs of a split task back into one logical report."""
    ordered = sorted(parts, key=lambda r: (split_parent(r.report_id) or (r.report_id, 0))[1])
    conclusions: list[Conclusion] = []
    seen: set[str] = set()
    for part in ordered:
        tag = part.report_id.rsplit(".", 1)[-1]
        for c in part.conclusions:
            cid = c.id if c.id not in seen else f"{tag}-{c.id}"
            seen.add(cid)
            conclusions.append(Conclusion(id=cid, text=c.text, files=list(c.files)))
    provides: frozenset[str] = frozenset().union(*(p.provides for p in ordered))
    return Report(
        report_id=unit_id,
        phase=ordered[0].phase,
        focus=ordered[0].focus,
        provides=provides,
        summary=" ".join(p.summary.strip() for p in ordered if p.summary.strip()),
        conclusions=conclusions,
        body=_merge_bodies(p.body for p in ordered),
        parts=tuple(p.report_id for p in ordered),
    )


def merge_split_reports(reports: Iterable[Report]) -> list[Report]:
    """Replace part reports by their merged logical report, sorted by id."""
    whole: dict[str, Report] = {}
    grouped: dict[str, list[Report]] = defaultdict(list)
    for report in reports:
        parent = split_parent(report.report_id)
        if parent is None:
            whole[report.report_id] = report
        else:
            grouped[parent[0]].append(report)
    for unit_id, parts in grouped.items():
        if unit_id in whole:
            continue
        whole[unit_id] = merge_parts(unit_id, parts)
    return [whole[k] for k in sorted(whole)]


@dataclass(frozen=True)
class ReportIndex:
    """Bipartite index from provides tags to report ids, built once per phase."""

    reports: dict[str, Report] = field(default_factory=dict)
    by_tag: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def build(cls, reports: Iterable[Report]) -> ReportIndex:
        logical = merge_split_reports(reports)
        by_id = {r.report_id: r for r in logical}
        tags: dict[str, set[str]] = defaultdict(set)
        for report in logical:
            for tag in report.provides:
                tags[tag].add(report.report_id)
        return cls(
            reports=by_id,
            by_tag={tag: tuple(sorted(ids)) for tag, ids in sorted(tags.items())},
        )

    def ids_for(self, tag: str) -> tuple[str, ...]:
        return self.by_tag.get(tag, ())

    def __len__(self) -> int:
        return len(self.reports)


def route(requires: Iterable[str], index: ReportIndex) -> list[Report]:
    """Every report providing any of ``requires``, deduplicated and sorted by id."""
    ids: set[str] = set()
    for tag in requires:
        ids.update(index.ids_for(tag))
    return [index.reports[i] for i in sorted(ids)]
