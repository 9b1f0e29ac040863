"""Per-step outcomes of a reconciliation workflow."""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum


class StepStatus(str, Enum):
    """Outcome of one workflow step."""

    OK = "ok"
    SKIPPED = "skipped"
    ADVISORY = "advisory"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class StepResult:
    """A single step of an operation and how it ended."""

    name: str
    status: StepStatus
    detail: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "status": self.status.value, "detail": self.detail}


@dataclass(slots=True)
class OperationReport:
    """Ordered step results plus free-form data for output."""

    operation: str
    steps: list[StepResult] = field(default_factory=list)
    data: dict[str, object] = field(default_factory=dict)
    changed: int = 0

    def __iter__(self) -> Iterator[StepResult]:
        return iter(self.steps)

    def ok(self, name: str, detail: str = "") -> None:
        """Record a completed step."""
        self.steps.append(StepResult(name, StepStatus.OK, detail))

    def skipped(self, name: str, detail: str = "") -> None:
        """Record a step that had nothing to do."""
        self.steps.append(StepResult(name, StepStatus.SKIPPED, detail))

    def advisory(self, name: str, detail: str) -> None:
        """Record a best-effort step that failed without aborting."""
        self.steps.append(StepResult(name, StepStatus.ADVISORY, detail))

    def fatal(self, name: str, detail: str) -> None:
        """Record a step whose failure aborted the operation."""
        self.steps.append(StepResult(name, StepStatus.FATAL, detail))

    def extend(self, other: OperationReport, *, prefix: str = "") -> None:
        """Append the steps of *other*, optionally prefixing their names."""
        for step in other.steps:
            name = f"{prefix}{step.name}" if prefix else step.name
            self.steps.append(StepResult(name, step.status, step.detail))
        self.changed += other.changed

    @property
    def advisories(self) -> list[StepResult]:
        """Steps that failed best-effort."""
        return [step for step in self.steps if step.status is StepStatus.ADVISORY]

    @property
    def failures(self) -> list[StepResult]:
        """Steps that failed fatally."""
        return [step for step in self.steps if step.status is StepStatus.FATAL]

    @property
    def succeeded(self) -> bool:
        """True when no step failed fatally."""
        return not self.failures

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "operation": self.operation,
            "changed": self.changed,
            "steps": [step.to_dict() for step in self.steps],
            "data": self.data,
        }


__all__ = ["OperationReport", "StepResult", "StepStatus"]
