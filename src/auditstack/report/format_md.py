from __future__ import annotations

from typing import TYPE_CHECKING

from .models import AuditReport, Finding
from .severity import severity_rank

if TYPE_CHECKING:
    from auditstack.stacking.handover import Handover


def _finding_order(f: Finding) -> tuple[int, int, str, int, str]:
    return (
        0 if f.persistent else 1,
        -severity_rank(f.severity),
        f.file,
        f.line,
        f.finding_id,
    )


def _escape(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")


def to_markdown(report: AuditReport, top_n: int | None = None) -> str:
    lines: list[str] = []
    lines.append("# Audit report")
    lines.append("")
    lines.append(f"- Generated: `{report.generated_at}`")
    lines.append(f"- Run: `{report.run_id}` (sequence {report.sequence})")
    lines.append(f"- Codebase ref: `{report.codebase_ref}`")
    lines.append(f"- Mode: `{'stacked' if report.stacked else 'fresh'}`")
    lines.append(f"- Schema: `v{report.schema_version}`")
    if report.stats:
        lines.append(f"- Active findings: `{report.stats.active_total}`")
        if report.stats.dismissed_total:
            lines.append(f"- Dismissed: `{report.stats.dismissed_total}`")
        if report.stats.severity_counts:
            severity_ordered = sorted(
                report.stats.severity_counts.items(),
                key=lambda item: severity_rank(item[0]),
                reverse=True,
            )
            severity_str = ", ".join(f"{key}:{value}" for key, value in severity_ordered)
            lines.append(f"- Findings by severity: `{severity_str}`")
        if report.stats.evolution_counts:
            evo_str = ", ".join(f"{k}:{v}" for k, v in sorted(report.stats.evolution_counts.items()))
            lines.append(f"- Evolution: `{evo_str}`")
    lines.append("")

    if report.degraded_phases:
        lines.append("> **Degraded phases:** " + ", ".join(f"`{p}`" for p in report.degraded_phases))
        lines.append("")

    active = sorted((f for f in report.findings if f.active), key=_finding_order)
    if top_n is not None:
        active = active[:top_n]
    lines.append("## Findings")
    lines.append("")
    if active:
        lines.append("| Severity | Evolution | Status | Location | Title |")
        lines.append("|---|---|---|---|---|")
        for f in active:
            evolution = f.evolution or "-"
            if f.persistent:
                evolution += " (persistent)"
            if f.original_severity and f.original_severity != f.severity:
                severity = f"{f.severity} (was {f.original_severity})"
            else:
                severity = f.severity
            loc = f"{f.file}:{f.line}" if f.line else f.file
            lines.append(f"| {severity} | {evolution} | {f.status} | `{loc}` | {_escape(f.title)} |")
    else:
        lines.append("No active findings.")
    lines.append("")

    if report.resolved:
        lines.append("## Resolved since previous run")
        lines.append("")
        for r in report.resolved:
            lines.append(f"- `{r.finding_id}` {_escape(r.title)} ({r.file}, {r.severity}): {r.reason}")
        lines.append("")

    if report.lineage:
        lines.append("## Lineage")
        lines.append("")
        lines.append("| Seq | Run | Ref | Started | Status | Findings |")
        lines.append("|---:|---|---|---|---|---:|")
        for row in report.lineage:
            counts = row.get("counts") or {}
            lines.append(
                f"| {row.get('sequence', '')} | `{row.get('run_id', '')}` | `{row.get('codebase_ref', '')}` "
                f"| {row.get('started_at', '')} | {row.get('status', '')} | {counts.get('findings', '')} |"
            )
        lines.append("")

    if report.notes:
        lines.append("## Notes")
        lines.append("")
        for note in report.notes:
            lines.append(f"- {note}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def handover_to_markdown(handover: Handover) -> str:
    delta = handover.delta
    summary = delta.summary()
    lines: list[str] = []
    lines.append(f"# Handover to run {handover.sequence}")
    lines.append("")
    lines.append(f"- Run: `{handover.run_id}`")
    lines.append(f"- Prior run: `{handover.prior_run_id}` (sequence {handover.prior_sequence})")
    lines.append(f"- Prior ref: `{handover.prior_ref}` -> `{delta.current_ref}`")
    lines.append(f"- Archive: `{handover.archive_path}`")
    if not delta.prior_resolved:
        lines.append("- Prior ref could not be resolved; every file is treated as NEW.")
    lines.append("")

    lines.append("## Delta")
    lines.append("")
    counts = summary.get("counts", {})
    lines.append(", ".join(f"{status}: {counts.get(status, 0)}" for status in sorted(counts)) or "No files.")
    if delta.massive_rewrite:
        lines.append("")
        lines.append(
            f"Massive rewrite ({summary.get('change_ratio', 0):.0%} of files changed); "
            "verification is disabled for this run."
        )
    lines.append("")

    lines.append("## Carried findings")
    lines.append("")
    if handover.findings:
        lines.append("| Tag | Severity | Location | Title |")
        lines.append("|---|---|---|---|")
        for f in handover.findings:
            loc = f"{f.file}:{f.line}" if f.line else f.file
            lines.append(f"| {f.tag} | {f.severity} | `{loc}` | {_escape(f.title)} |")
    else:
        lines.append("None.")
    lines.append("")

    entries = handover.ledger.entries()
    lines.append("## Dismissed hypotheses")
    lines.append("")
    if entries:
        for e in entries:
            lines.append(f"- `{e.signature}` {_escape(e.title)} ({e.file}, run {e.dismissed_in})")
    else:
        lines.append("None.")
    lines.append("")

    lines.append("## Conclusions")
    lines.append("")
    if handover.conclusions:
        for focus, snap in handover.conclusions.items():
            lines.append(f"### {focus}")
            lines.append("")
            if snap.summary:
                lines.append(snap.summary)
                lines.append("")
            for c in snap.conclusions:
                lines.append(f"- `{c.id}` {_escape(c.text)}")
            lines.append("")
    else:
        lines.append("None.")
        lines.append("")

    table = handover.lineage.table()
    if table:
        lines.append("## Lineage")
        lines.append("")
        for row in table:
            lines.append(f"- {row.sequence}: `{row.run_id}` at `{row.codebase_ref}` ({row.status})")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
