"""Exception hierarchy for plan-engine.

Every error raised by the engine derives from ``PlanEngineError`` so callers
can catch the whole family at one seam. Structural errors (``ParseError``,
``CycleError``) abort a run before any task executes; per-task errors
(``ExecutionError``, ``ScopeViolation``) are caught by the driver and mapped
onto task state.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from plan_engine.executor.verifier import VerificationResult


class PlanEngineError(Exception):
    """Base exception for all plan-engine errors."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(PlanEngineError):
    """Invalid engine configuration (bad option combination, bad value)."""

    pass


# =============================================================================
# Structural Errors
# =============================================================================


class ParseErrorKind(str, Enum):
    """Category of a plan document problem."""

    MISSING_FIELD = "missing_field"
    INVALID_VALUE = "invalid_value"
    DUPLICATE_TASK = "duplicate_task"
    DANGLING_DEPENDENCY = "dangling_dependency"
    INVALID_ID = "invalid_id"
    NO_PHASE = "no_phase"
    EMPTY_PLAN = "empty_plan"


class ParseProblem:
    """A single problem found while parsing a plan document.

    Attributes:
        kind: Problem category.
        message: Human-readable description.
        line_number: 1-based line in the document (0 when not line-bound).
        task_id: Task the problem belongs to, if any.
    """

    __slots__ = ("kind", "message", "line_number", "task_id")

    def __init__(
        self,
        kind: ParseErrorKind,
        message: str,
        line_number: int = 0,
        task_id: str | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        self.line_number = line_number
        self.task_id = task_id

    def __str__(self) -> str:
        if self.line_number:
            return f"Line {self.line_number}: {self.message}"
        return self.message

    def __repr__(self) -> str:
        return f"ParseProblem({self.kind.value!r}, {self.message!r}, line={self.line_number})"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "line_number": self.line_number,
            "task_id": self.task_id,
        }


class ParseError(PlanEngineError):
    """The plan document is malformed.

    The parser collects every problem it finds; the first one becomes the
    headline message and all of them are available on ``problems``.
    """

    def __init__(self, problems: list[ParseProblem]):
        if not problems:
            raise ValueError("ParseError requires at least one problem")
        headline = str(problems[0])
        if len(problems) > 1:
            headline += f" (and {len(problems) - 1} more problem(s))"
        super().__init__(headline, details={"problems": [p.to_dict() for p in problems]})
        self.problems = problems

    @property
    def kind(self) -> ParseErrorKind:
        """Category of the first problem."""
        return self.problems[0].kind

    @property
    def line_number(self) -> int:
        """Line of the first problem."""
        return self.problems[0].line_number

    def has_kind(self, kind: ParseErrorKind) -> bool:
        """Whether any collected problem is of the given kind."""
        return any(p.kind == kind for p in self.problems)


class CycleError(PlanEngineError):
    """The task dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle + cycle[:1])}",
            details={"cycle": cycle},
        )
        self.cycle = cycle


class InvalidTransitionError(PlanEngineError):
    """A task status change that the state machine does not allow."""

    def __init__(self, task_id: str, current: str, requested: str):
        super().__init__(
            f"Task {task_id}: illegal transition {current} -> {requested}",
            details={"task_id": task_id, "from": current, "to": requested},
        )
        self.task_id = task_id
        self.current = current
        self.requested = requested


# =============================================================================
# Per-task Errors
# =============================================================================


class ExecutionError(PlanEngineError):
    """A task's effect could not be applied at all."""

    def __init__(self, task_id: str, message: str):
        super().__init__(f"Task {task_id}: {message}", details={"task_id": task_id})
        self.task_id = task_id


class ScopeViolation(PlanEngineError):
    """A task tried to touch a path outside its declared targets."""

    def __init__(self, task_id: str, path: str, targets: list[str] | tuple[str, ...]):
        super().__init__(
            f"Task {task_id}: write to '{path}' is outside declared targets "
            f"{sorted(targets)}",
            details={"task_id": task_id, "path": path, "targets": sorted(targets)},
        )
        self.task_id = task_id
        self.path = path
        self.targets = list(targets)


class VerificationFailure(PlanEngineError):
    """A verification command did not pass."""

    def __init__(self, task_id: str, result: VerificationResult):
        super().__init__(
            f"Task {task_id}: verification failed (exit code {result.exit_code})",
            details={"task_id": task_id, "output": result.output},
        )
        self.task_id = task_id
        self.result = result


# =============================================================================
# Persistence Errors
# =============================================================================


class CheckpointError(PlanEngineError):
    """Persisting a checkpoint failed."""

    pass


class RollbackError(PlanEngineError):
    """Restoring a phase's resources failed."""

    pass
