from __future__ import annotations


class AuditStackError(Exception):
    """Base class for errors surfaced to the operator."""


class StateError(AuditStackError):
    """The run record is missing or cannot be read."""


class PhaseBlockedError(AuditStackError):
    def __init__(self, phase: str, predecessor: str, predecessor_status: str) -> None:
        self.phase = phase
        self.predecessor = predecessor
        self.predecessor_status = predecessor_status
        super().__init__(
            f"Phase {phase!r} cannot start: {predecessor!r} is {predecessor_status}"
        )


class ArchiveCorruptError(AuditStackError):
    def __init__(self, path: object, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Archive {path} is corrupt: {reason}")


class WorkerError(AuditStackError):
    """A worker invocation failed; the unit may be retried."""


class TaskTooLargeError(AuditStackError):
    def __init__(self, unit_id: str, estimate: int, ceiling: int) -> None:
        self.unit_id = unit_id
        self.estimate = estimate
        self.ceiling = ceiling
        super().__init__(
            f"Unit {unit_id} cannot be split under the capacity ceiling "
            f"(estimate {estimate} > {ceiling})"
        )
