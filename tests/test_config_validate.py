from __future__ import annotations

from pathlib import Path

from auditstack.config.templates import CONFIG_PRESETS
from auditstack.config.validate import validate_config_paths, validate_raw_config


def test_validate_unknown_key() -> None:
    errors = validate_raw_config({"unknown": True})
    assert any("Unknown key" in err for err in errors)


def test_validate_thresholds_and_phases() -> None:
    errors = validate_raw_config(
        {
            "rewrite_threshold": 1.5,
            "max_retries": -1,
            "tier": "extreme",
            "phase_workers": {"deploy": "x"},
            "task_ceiling": 100,
            "batch_ceiling": 50,
        }
    )
    assert "rewrite_threshold must be between 0 and 1" in errors
    assert "max_retries must not be negative" in errors
    assert any(err.startswith("tier must be one of") for err in errors)
    assert "phase_workers has unknown phase: deploy" in errors
    assert "batch_ceiling must be at least task_ceiling" in errors


def test_presets_are_valid(tmp_path: Path) -> None:
    paths = []
    for name, text in CONFIG_PRESETS.items():
        path = tmp_path / f"{name}.yml"
        path.write_text(text, encoding="utf-8")
        paths.append(path)
    assert validate_config_paths(paths) == []
    assert validate_config_paths([tmp_path / "missing.yml"]) == [f"{tmp_path / 'missing.yml'}: file not found"]
