"""Aggregate models for parsed plan documents.

A ``Plan`` owns its ``Phase`` objects, which own their ``Task`` objects. The
structure is fixed once parsed; only task status and attempts change during
execution.
"""

from __future__ import annotations

import copy
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from plan_engine.executor.models import Task, TaskStatus


@dataclass
class Phase:
    """A named group of tasks in the plan.

    Attributes:
        id: Phase identifier (e.g., "A", "P2")
        name: Phase name
        tasks: Tasks in document order
        line_number: Source line of the phase header
    """

    id: str
    name: str
    tasks: list[Task] = field(default_factory=list)
    line_number: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "tasks": [t.to_dict() for t in self.tasks],
            "line_number": self.line_number,
        }

    @property
    def task_count(self) -> int:
        """Get number of tasks in this phase."""
        return len(self.tasks)

    @property
    def completed_count(self) -> int:
        """Get number of completed tasks."""
        return sum(1 for t in self.tasks if t.status == TaskStatus.COMPLETED)

    @property
    def is_complete(self) -> bool:
        """Whether every task is COMPLETED or SKIPPED."""
        return all(t.status.is_done for t in self.tasks)


@dataclass
class Plan:
    """A parsed plan document.

    Attributes:
        id: Identifier derived from the source document
        title: Document title (first ``#`` heading)
        phases: Phases in document order
        source: Original document text, used for re-serialization
        path: Path of the source document ("" when parsed from a string)
        parsed_at: When the plan was parsed
    """

    id: str
    title: str = ""
    phases: list[Phase] = field(default_factory=list)
    source: str = ""
    path: str = ""
    parsed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        self._index: dict[str, Task] = {}
        self._reindex()

    def _reindex(self) -> None:
        self._index = {task.id: task for phase in self.phases for task in phase.tasks}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "path": self.path,
            "phases": [p.to_dict() for p in self.phases],
            "parsed_at": self.parsed_at.isoformat(),
        }

    def copy(self) -> Plan:
        """Deep copy of the plan (used for dry runs)."""
        clone = copy.deepcopy(self)
        clone._reindex()
        return clone

    # =========================================================================
    # Task Access
    # =========================================================================

    def all_tasks(self) -> Iterator[Task]:
        """Iterate over all tasks in document order."""
        for phase in self.phases:
            yield from phase.tasks

    def get_task(self, task_id: str) -> Task | None:
        """Get a task by ID."""
        return self._index.get(task_id)

    def require_task(self, task_id: str) -> Task:
        """Get a task by ID, raising KeyError when absent."""
        task = self._index.get(task_id)
        if task is None:
            raise KeyError(f"Unknown task: {task_id}")
        return task

    def get_phase(self, phase_id: str) -> Phase | None:
        """Get a phase by ID."""
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def tasks_in(self, phase_id: str | None) -> list[Task]:
        """Tasks of one phase, or of the whole plan when ``phase_id`` is None."""
        if phase_id is None:
            return list(self.all_tasks())
        phase = self.get_phase(phase_id)
        return list(phase.tasks) if phase else []

    # =========================================================================
    # Status Vector
    # =========================================================================

    def status_vector(self) -> dict[str, TaskStatus]:
        """Map of task id to current status, in document order."""
        return {task.id: task.status for task in self.all_tasks()}

    def attempts_vector(self) -> dict[str, int]:
        """Map of task id to verification attempts."""
        return {task.id: task.attempts for task in self.all_tasks()}

    @property
    def total_tasks(self) -> int:
        """Get total number of tasks across all phases."""
        return len(self._index)

    @property
    def completed_count(self) -> int:
        """Get number of completed tasks."""
        return sum(p.completed_count for p in self.phases)

    @property
    def is_complete(self) -> bool:
        """Whether every phase is complete."""
        return all(p.is_complete for p in self.phases)

    def summary(self) -> str:
        """Get a human-readable summary."""
        lines = [
            f"Plan: {self.title or self.id}",
            f"Phases: {len(self.phases)}",
            f"Tasks: {self.total_tasks} ({self.completed_count} completed)",
        ]
        for phase in self.phases:
            lines.append(f"  {phase.id}: {phase.name} [{phase.completed_count}/{phase.task_count}]")
        return "\n".join(lines)
