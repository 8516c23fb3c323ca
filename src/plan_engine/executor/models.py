"""Data models for the Executor module."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from plan_engine.errors import InvalidTransitionError


class TaskStatus(Enum):
    """Status of a task in the plan."""

    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    FAILED_TERMINAL = "failed_terminal"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is expected from this status."""
        return self in TERMINAL_STATUSES

    @property
    def is_done(self) -> bool:
        """Whether the task counts toward phase completion."""
        return self in (TaskStatus.COMPLETED, TaskStatus.SKIPPED)

    @property
    def is_failure(self) -> bool:
        """Whether the task ended its attempt unsuccessfully."""
        return self in (TaskStatus.FAILED, TaskStatus.FAILED_TERMINAL)


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.FAILED_TERMINAL}
)

# Allowed status changes. Resetting to PENDING (rollback) is handled by the
# checkpoint store and deliberately absent here.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.READY, TaskStatus.SKIPPED}),
    TaskStatus.READY: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.VERIFYING, TaskStatus.FAILED}),
    TaskStatus.VERIFYING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED_TERMINAL}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
    TaskStatus.FAILED_TERMINAL: frozenset(),
}


def can_transition(current: TaskStatus, requested: TaskStatus) -> bool:
    """Check whether ``current -> requested`` is a legal transition."""
    return requested in TRANSITIONS[current]


class Action(str, Enum):
    """What a task does to its targets."""

    CREATE = "CREATE"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    EXECUTE = "EXECUTE"

    @classmethod
    def from_string(cls, value: str) -> Action:
        """Parse an action name (case-insensitive).

        Raises:
            ValueError: If the value names no action.
        """
        normalized = value.strip().strip("`*").upper()
        for action in cls:
            if action.value == normalized:
                return action
        raise ValueError(f"Unknown action: {value!r}")

    @property
    def mutates_targets(self) -> bool:
        """Whether the action writes to its declared targets."""
        return self is not Action.EXECUTE


# {phase}.{number} with an optional .{subletter}
TASK_ID_PATTERN = re.compile(r"^([A-Za-z0-9]+)\.(\d+)(?:\.([a-z]))?$")


def task_sort_key(task_id: str) -> tuple[str, int, str]:
    """Deterministic ordering key: (phase, number, subletter).

    Ids that do not follow the composite format sort after well-formed ones
    of the same text prefix.
    """
    match = TASK_ID_PATTERN.match(task_id)
    if not match:
        return (task_id, 0, "")
    phase, number, subletter = match.groups()
    return (phase, int(number), subletter or "")


@dataclass
class Task:
    """A task parsed from a plan document.

    Attributes:
        id: Composite identifier, e.g. ``"A.1"`` or ``"A.1.b"``.
        title: Human-readable summary (opaque to the engine).
        action: What the task does to its targets.
        targets: Normalized relative paths the task may touch.
        verify: Verification command, or None when the task declares
            no verification.
        depends_on: Ids that must be COMPLETED before this task runs.
        estimate: Opaque duration hint, used only for reporting.
        command: Command run by an EXECUTE task.
        fix: Command used by the command-based auto-fix strategy.
        phase: Id of the owning phase.
        status: Current state.
        attempts: Verification attempts made so far.
        line_number: Source line of the task's checkbox.
        marker_offset: Character offset of the status marker in the document.
        metadata: Unrecognized ``**Key**: value`` fields, kept for callers.
    """

    id: str
    title: str
    action: Action
    targets: tuple[str, ...] = ()
    verify: str | None = None
    depends_on: tuple[str, ...] = ()
    estimate: str = ""
    command: str | None = None
    fix: str | None = None
    phase: str = ""
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    line_number: int = 0
    marker_offset: int = -1
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def sort_key(self) -> tuple[str, int, str]:
        """Ordering key used for deterministic scheduling."""
        return task_sort_key(self.id)

    @property
    def has_verification(self) -> bool:
        """Whether a verification command must run for this task."""
        return self.verify is not None

    def transition(self, requested: TaskStatus) -> TaskStatus:
        """Move to ``requested`` if the state machine allows it.

        Only the checkpoint store calls this; everything else goes through it.

        Returns:
            The previous status.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if not can_transition(self.status, requested):
            raise InvalidTransitionError(self.id, self.status.value, requested.value)
        previous = self.status
        self.status = requested
        return previous

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "action": self.action.value,
            "targets": list(self.targets),
            "verify": self.verify,
            "depends_on": list(self.depends_on),
            "estimate": self.estimate,
            "command": self.command,
            "fix": self.fix,
            "phase": self.phase,
            "status": self.status.value,
            "attempts": self.attempts,
            "line_number": self.line_number,
        }
