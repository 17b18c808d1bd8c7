from __future__ import annotations

SEVERITIES = ("info", "low", "medium", "high", "critical")


def normalize_severity(severity: str | None) -> str:
    value = (severity or "").strip().lower()
    if value in SEVERITIES:
        return value
    return "info"


def severity_rank(severity: str | None) -> int:
    return SEVERITIES.index(normalize_severity(severity))


def max_severity(*severities: str | None) -> str:
    return max((normalize_severity(s) for s in severities), key=severity_rank, default="info")


def escalate_severity(severity: str | None, steps: int = 1) -> str:
    """Raise a severity by ``steps`` levels, capped at critical."""
    rank = min(severity_rank(severity) + max(steps, 0), len(SEVERITIES) - 1)
    return SEVERITIES[rank]
