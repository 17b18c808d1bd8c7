from __future__ import annotations

from auditstack.git.diff import PathChange
from auditstack.report.models import Conclusion, FocusSnapshot
from auditstack.stacking.delta import compute_delta
from auditstack.stacking.verification import (
    NEEDS_RECHECK,
    VERIFIED,
    parse_verification_report,
    should_verify,
    spawn_verification,
    verification_tag,
)

PRIOR = FocusSnapshot(
    focus="auth",
    summary="Session handling reviewed.",
    conclusions=[
        Conclusion("R1-C1", "Tokens are checked before use", ["auth/a.src"]),
        Conclusion("R1-C2", "Logout clears the session", ["auth/b.src"]),
    ],
)


def _delta(changes: dict[str, PathChange], tracked: list[str], threshold: float = 0.7):
    return compute_delta("abc1234", "def5678", tracked, lambda _a, _b: changes, rewrite_threshold=threshold)


def test_spawned_task_carries_conclusions_not_sources() -> None:
    delta = _delta({"auth/b.src": PathChange("M", 12)}, ["auth/a.src", "auth/b.src"])

    task = spawn_verification("auth", PRIOR, delta, ["auth/a.src", "auth/b.src"])

    assert task is not None
    assert task.unit_id == "verify-auth"
    assert task.inputs == {}
    assert task.provides == frozenset({"auth", verification_tag("auth")})
    assert task.payload["unchanged_files"] == ["auth/a.src"]
    assert list(task.payload["changed_files"]) == ["auth/b.src"]
    assert [c["id"] for c in task.payload["prior_conclusions"]] == ["R1-C1", "R1-C2"]


def test_no_task_without_prior_or_unchanged_files() -> None:
    delta = _delta({"auth/a.src": PathChange("M", 12)}, ["auth/a.src"], threshold=1.0)
    assert spawn_verification("auth", PRIOR, delta, ["auth/a.src"]) is None
    assert spawn_verification("auth", None, delta, ["auth/a.src"]) is None


def test_should_verify_requires_handover_and_no_massive_rewrite() -> None:
    calm = _delta({}, ["a.src", "b.src"])
    massive = _delta({"a.src": PathChange("M", 40), "b.src": PathChange("M", 40)}, ["a.src", "b.src"])

    assert should_verify(True, calm)
    assert not should_verify(False, calm)
    assert not should_verify(True, None)
    assert not should_verify(True, massive)


def test_unknown_and_missing_verdicts_need_recheck() -> None:
    body = {
        "results": [
            {"conclusion_id": "R1-C1", "verdict": "verified"},
            {"conclusion_id": "R1-C3", "verdict": "probably fine"},
        ],
        "new_concerns": [{"title": "new sink"}, "ignored"],
    }

    report = parse_verification_report("auth", body, ["R1-C1", "R1-C2"])

    assert report.ids_with(VERIFIED) == {"R1-C1"}
    assert report.ids_with(NEEDS_RECHECK) == {"R1-C2", "R1-C3"}
    assert report.new_concerns == [{"title": "new sink"}]
