from __future__ import annotations

from pathlib import Path

from auditstack.config.loader import load_config
from auditstack.config.schema import AuditStackConfig


def test_load_multiple_configs_merges_lists(tmp_path: Path) -> None:
    cfg1 = tmp_path / "a.yml"
    cfg2 = tmp_path / "b.yml"
    cfg1.write_text("include: ['pkg/a']\nexclude: ['tests']\nworker_command: 'run-worker --fast'\n", encoding="utf-8")
    cfg2.write_text(
        "include: ['pkg/b']\nphase_workers:\n  investigate: ['deep-worker', '--json']\nworker_tiers:\n  analyze: deep\n",
        encoding="utf-8",
    )

    cfg = load_config(tmp_path, [cfg1, cfg2])

    assert cfg.include == ["pkg/a", "pkg/b"]
    assert cfg.exclude == ["tests"]
    assert cfg.worker_for("analyze") == ["run-worker", "--fast"]
    assert cfg.worker_for("investigate") == ["deep-worker", "--json"]
    assert cfg.worker_tiers == {"analyze": "deep"}


def test_missing_default_config_gives_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path) == AuditStackConfig()


def test_default_config_file_is_picked_up(tmp_path: Path) -> None:
    (tmp_path / ".auditstack.yml").write_text(
        "tier: Deep\nfocus_areas:\n  auth: 'src/auth/**'\nrewrite_threshold: 0.5\nmax_hypotheses: 7\n",
        encoding="utf-8",
    )

    cfg = load_config(tmp_path)

    assert cfg.tier == "deep"
    assert cfg.focus_areas == {"auth": ["src/auth/**"]}
    assert cfg.rewrite_threshold == 0.5
    assert cfg.hypothesis_cap() == 7


def test_hypothesis_cap_follows_tier() -> None:
    assert AuditStackConfig(tier="quick").hypothesis_cap() == 20
    assert AuditStackConfig(tier="deep").hypothesis_cap() == 120
    assert AuditStackConfig(tier="unknown").hypothesis_cap() == 50
