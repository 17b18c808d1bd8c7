from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any

import yaml

from auditstack import __version__
from auditstack.config.loader import CONFIG_FILENAME, load_config, resolve_config_paths
from auditstack.config.schema import AuditStackConfig
from auditstack.config.templates import CONFIG_PRESETS
from auditstack.config.validate import validate_config_paths
from auditstack.errors import AuditStackError
from auditstack.pipeline.orchestrator import Orchestrator
from auditstack.pipeline.state import DEGRADED, PHASES, RunRecord, load_state, next_step
from auditstack.report.format_json import read_report
from auditstack.report.models import Finding
from auditstack.report.severity import SEVERITIES, severity_rank
from auditstack.scan.entrypoints import matches_any, normalize_patterns
from auditstack.stacking.archive import list_archives, latest_archive
from auditstack.stacking.handover import SECTIONS, load_handover_lineage, load_section
from auditstack.stacking.lineage import load_lineage
from auditstack.util.logging import setup_logging
from auditstack.workspace import Workspace

log = logging.getLogger(__name__)

SHOW_TARGETS = ("report", "findings", "handover", "lineage")


def _repo_root(args: argparse.Namespace) -> Path:
    return Path(args.path).resolve()


def _config(args: argparse.Namespace) -> AuditStackConfig:
    config_paths = [Path(p) for p in args.config] if args.config else None
    return load_config(_repo_root(args), config_paths)


def _orchestrator(args: argparse.Namespace) -> Orchestrator:
    return Orchestrator(
        _repo_root(args),
        _config(args),
        allow_degraded=bool(getattr(args, "allow_degraded", False)),
    )


def _report_failures(record: RunRecord, phases: list[str]) -> int:
    exit_code = 0
    for phase in phases:
        status = record.phase(phase)
        if status.status != DEGRADED:
            continue
        exit_code = 1
        for unit, error in sorted(status.failed_units.items()):
            print(f"{phase}: {unit}: {error}")
    return exit_code


def cmd_phase(args: argparse.Namespace) -> int:
    orch = _orchestrator(args)
    phase = args.cmd
    if phase == "scan":
        record = orch.scan(fresh=bool(args.fresh))
    else:
        record = orch.run_phase(phase)
    log.info("Next: %s", next_step(record))
    return _report_failures(record, [phase])


def cmd_run(args: argparse.Namespace) -> int:
    orch = _orchestrator(args)
    record = orch.run(fresh=bool(args.fresh))
    if not record.completed:
        log.info("Next: %s", next_step(record))
    else:
        log.info("Run %s complete: %s", record.run_id, orch.ws.final_report_md)
    return _report_failures(record, list(PHASES))


def _status_data(repo_root: Path, cfg: AuditStackConfig) -> dict[str, Any]:
    ws = Workspace(repo_root / cfg.workspace_dir)
    record = load_state(ws.state_path)
    entries, corrupt = list_archives(repo_root / cfg.history_dir)
    lineage = load_handover_lineage(ws) or load_lineage(ws.lineage_path)
    return {
        "workspace": str(ws.root),
        "run": record.to_dict() if record else None,
        "lineage": [dataclasses.asdict(r) for r in lineage.table()] if lineage else [],
        "archives": len(entries),
        "corrupt_archives": [str(exc.path) for exc in corrupt],
        "next_step": next_step(record),
    }


def cmd_status(args: argparse.Namespace) -> int:
    data = _status_data(_repo_root(args), _config(args))
    if args.json:
        print(json.dumps(data, indent=2))
        return 0
    run = data["run"]
    if run is None:
        print("No run in progress.")
    else:
        print(f"Run {run['run_id']} (sequence {run['sequence']}) at {run['codebase_ref']}")
        if run.get("prior"):
            print(f"  stacked on {run['prior']['prior_run_id']}")
        for name in PHASES:
            phase = run["phases"][name]
            progress = ""
            if phase.get("units_total"):
                progress = f" {phase['units_completed']}/{phase['units_total']} units"
            failed = phase.get("failed_units") or {}
            if failed:
                progress += f", {len(failed)} failed"
            print(f"  {name:<12} {phase['status']}{progress}")
        for note in run.get("notes", []):
            print(f"  note: {note}")
    if data["lineage"]:
        print("Lineage:")
        for row in data["lineage"]:
            print(f"  {row['sequence']}: {row['run_id']} {row['status']}")
    print(f"Archives: {data['archives']}")
    for path in data["corrupt_archives"]:
        print(f"  corrupt: {path}")
    print(f"Next: {data['next_step']}")
    return 0


def _resolve_run_dir(repo_root: Path, cfg: AuditStackConfig, which: str) -> Path | None:
    if which == "current":
        return repo_root / cfg.workspace_dir
    if which == "previous":
        entry = latest_archive(repo_root / cfg.history_dir)
        return entry.path if entry else None
    path = Path(which)
    return path if path.is_absolute() else repo_root / path


def _filter_findings(findings: list[Finding], severity: str | None, files: list[str] | None) -> list[Finding]:
    out = [f for f in findings if f.active]
    if severity:
        floor = severity_rank(severity)
        out = [f for f in out if severity_rank(f.severity) >= floor]
    if files:
        patterns = normalize_patterns(files)
        out = [f for f in out if matches_any(f.file, patterns)]
    return out


def cmd_show(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    cfg = _config(args)
    root = _resolve_run_dir(repo_root, cfg, args.run)
    if root is None or not root.is_dir():
        log.error("No run found for %r.", args.run)
        return 1
    ws = Workspace(root)
    what = args.what

    if what == "handover":
        if args.json:
            sections = {name: load_section(ws, name) for name in SECTIONS}
            if all(v is None for v in sections.values()):
                log.error("%s has no handover.", root)
                return 1
            print(json.dumps(sections, indent=2))
            return 0
        if not ws.handover_md.exists():
            log.error("%s has no handover.", root)
            return 1
        print(ws.handover_md.read_text(encoding="utf-8"), end="")
        return 0

    if what == "lineage":
        lineage = load_lineage(ws.lineage_path)
        if lineage is None:
            log.error("%s has no lineage.", root)
            return 1
        rows = [dataclasses.asdict(r) for r in lineage.table()]
        if args.json:
            print(json.dumps(rows, indent=2))
        else:
            for row in rows:
                counts = row.get("counts") or {}
                print(f"{row['sequence']}\t{row['run_id']}\t{row['codebase_ref']}\t{row['status']}\t{counts.get('findings', '')}")
        return 0

    if not ws.report_json.exists():
        log.error("%s has no report yet.", root)
        return 1
    report = read_report(ws.report_json)
    if what == "report":
        if args.json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            print(ws.final_report_md.read_text(encoding="utf-8"), end="")
        return 0

    findings = _filter_findings(report.findings, args.severity, args.file)
    if args.json:
        print(json.dumps([f.to_dict() for f in findings], indent=2))
        return 0
    for f in findings:
        tag = f.evolution or "-"
        if f.persistent:
            tag += "*"
        loc = f"{f.file}:{f.line}" if f.line else f.file
        print(f"{f.severity:<8} {tag:<11} {f.finding_id} {loc} {f.title}")
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    cfg = _config(args)
    entries, corrupt = list_archives(_repo_root(args) / cfg.history_dir)
    if args.json:
        data = {
            "archives": [{**e.manifest(), "path": str(e.path)} for e in entries],
            "corrupt": [{"path": str(exc.path), "reason": exc.reason} for exc in corrupt],
        }
        print(json.dumps(data, indent=2))
        return 0
    if not entries and not corrupt:
        print("No archived runs.")
    for e in entries:
        state = "completed" if e.completed else "incomplete"
        print(f"{e.name}\tsequence {e.sequence}\t{e.run_id}\t{state}\t{e.archived_at}")
    for exc in corrupt:
        print(f"CORRUPT\t{exc.path}\t{exc.reason}")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    target = Path(args.output) if args.output else repo_root / CONFIG_FILENAME
    if not target.is_absolute():
        target = repo_root / target
    preset = str(args.preset or "full").lower()
    template = CONFIG_PRESETS.get(preset, CONFIG_PRESETS["full"])
    if target.exists() and not args.force:
        log.error("Config %s already exists. Use --force to overwrite.", target)
        return 1
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(template, encoding="utf-8")
    log.info("Wrote config to %s", target)
    return 0


def cmd_config_show(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    data = dataclasses.asdict(_config(args))
    text = yaml.safe_dump(data, sort_keys=False)
    if args.output:
        out_path = Path(args.output)
        if not out_path.is_absolute():
            out_path = repo_root / out_path
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(text, encoding="utf-8")
    else:
        print(text)
    return 0


def cmd_config_validate(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config_paths = resolve_config_paths(repo_root, [Path(p) for p in args.config] if args.config else None)
    if not args.config and not config_paths[0].exists():
        log.error("Config %s not found.", config_paths[0])
        return 1
    errors = validate_config_paths(config_paths)
    if errors:
        for err in errors:
            log.error("%s", err)
        return 1
    log.info("Config valid.")
    return 0


def _add_common_args(a: argparse.ArgumentParser) -> None:
    a.add_argument("path", nargs="?", default=".", help="Repo root (default: .)")
    a.add_argument(
        "--config",
        action="append",
        default=None,
        help="Config file path (repeatable, repo-relative or absolute)",
    )


def _add_phase_args(a: argparse.ArgumentParser) -> None:
    _add_common_args(a)
    a.add_argument(
        "--allow-degraded",
        action="store_true",
        help="Let this phase start after a degraded predecessor",
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="auditstack", description="auditstack  Incremental multi-run audit orchestrator")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("scan", help="Start a run: archive, delta and handover")
    _add_phase_args(s)
    s.add_argument("--fresh", action="store_true", help="Abandon the current run and start a new one")
    s.set_defaults(func=cmd_phase)

    for name, text in (
        ("index", "Index the files in scope"),
        ("analyze", "Dispatch analysis workers"),
        ("synthesize", "Dispatch synthesis workers and select hypotheses"),
        ("investigate", "Dispatch investigation workers"),
        ("report", "Classify findings and write the final report"),
    ):
        a = sub.add_parser(name, help=text)
        _add_phase_args(a)
        a.set_defaults(func=cmd_phase)

    r = sub.add_parser("run", help="Run every remaining phase")
    _add_phase_args(r)
    r.add_argument("--fresh", action="store_true", help="Abandon the current run and start a new one")
    r.set_defaults(func=cmd_run)

    st = sub.add_parser("status", help="Show the current run without changing it")
    _add_common_args(st)
    st.add_argument("--json", action="store_true", help="Print JSON")
    st.set_defaults(func=cmd_status)

    sh = sub.add_parser("show", help="Show the report, findings, handover or lineage of a run")
    sh.add_argument("what", choices=SHOW_TARGETS, help="What to show")
    _add_common_args(sh)
    sh.add_argument(
        "--run",
        default="current",
        help="current, previous, or a path to a workspace or archive (default: current)",
    )
    sh.add_argument("--severity", default=None, choices=SEVERITIES, help="Only findings at or above this severity")
    sh.add_argument("--file", action="append", default=None, help="Only findings in matching files (repeatable)")
    sh.add_argument("--json", action="store_true", help="Print JSON")
    sh.set_defaults(func=cmd_show)

    h = sub.add_parser("history", help="List archived runs")
    _add_common_args(h)
    h.add_argument("--json", action="store_true", help="Print JSON")
    h.set_defaults(func=cmd_history)

    c = sub.add_parser("config", help="Config utilities")
    c_sub = c.add_subparsers(dest="config_cmd", required=True)
    c_show = c_sub.add_parser("show", help="Show merged config")
    _add_common_args(c_show)
    c_show.add_argument("--output", default=None, help="Write output to path instead of stdout")
    c_show.set_defaults(func=cmd_config_show)

    c_validate = c_sub.add_parser("validate", help="Validate config file(s)")
    _add_common_args(c_validate)
    c_validate.set_defaults(func=cmd_config_validate)

    i = sub.add_parser("init", help="Create an auditstack configuration file")
    i.add_argument("path", nargs="?", default=".", help="Repo root (default: .)")
    i.add_argument("--output", default=None, help=f"Output path (default: {CONFIG_FILENAME})")
    i.add_argument(
        "--preset",
        default="full",
        choices=sorted(CONFIG_PRESETS.keys()),
        help="Template preset (default: full)",
    )
    i.add_argument("--force", action="store_true", help="Overwrite existing config if present")
    i.set_defaults(func=cmd_init)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(bool(args.verbose))
    try:
        return int(args.func(args))
    except AuditStackError as exc:
        log.error("%s", exc)
        return 1
