"""Durable task-status checkpoints for the Executor module.

The ``CheckpointStore`` is the only writer of task state. Every status change
goes through ``commit``, which:

1. validates the transition against the task state machine,
2. appends a checkpoint record to the plan's journal
   (``.plan-engine/<plan id>.checkpoints.jsonl``), flushed and fsynced,
3. atomically replaces the plan document when a status marker changed.

On restart the document's markers are authoritative; the journal is history.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from plan_engine.errors import CheckpointError
from plan_engine.executor.models import TaskStatus
from plan_engine.executor.parser import PlanParser, persisted_status, serialize
from plan_engine.executor.plan import Plan
from plan_engine.logging import get_logger

logger = get_logger("executor.checkpoint")

STATE_DIR = ".plan-engine"


# =============================================================================
# File Helpers
# =============================================================================


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` so readers see old or new, never partial.

    Writes to a temporary file in the same directory, fsyncs it, then renames
    it over the target.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def state_dir_for(root: Path) -> Path:
    """Directory holding journals and snapshots for plans under ``root``."""
    return Path(root) / STATE_DIR


# =============================================================================
# Checkpoint Model
# =============================================================================


@dataclass
class Checkpoint:
    """One entry in a plan's checkpoint journal.

    Attributes:
        plan_id: Plan the checkpoint belongs to.
        sequence: Position in the journal (1-based).
        event: ``"transition"`` or ``"reset"``.
        task_id: Task whose change triggered the checkpoint (None for resets
            covering several tasks).
        status: Status the task moved to.
        statuses: Status vector after the change.
        attempts: Attempts vector after the change.
        revision: Revision recorded for the most recently completed task.
        timestamp: When the checkpoint was taken (UTC).
    """

    plan_id: str
    sequence: int
    event: str
    task_id: str | None
    status: TaskStatus
    statuses: dict[str, TaskStatus] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)
    revision: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def phase(self) -> str | None:
        """Phase prefix of the triggering task."""
        return self.task_id.split(".")[0] if self.task_id else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return {
            "plan_id": self.plan_id,
            "sequence": self.sequence,
            "event": self.event,
            "task_id": self.task_id,
            "status": self.status.value,
            "statuses": {tid: s.value for tid, s in self.statuses.items()},
            "attempts": self.attempts,
            "revision": self.revision,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        """Create from dictionary."""
        timestamp = data.get("timestamp")
        return cls(
            plan_id=data["plan_id"],
            sequence=data.get("sequence", 0),
            event=data.get("event", "transition"),
            task_id=data.get("task_id"),
            status=TaskStatus(data["status"]),
            statuses={tid: TaskStatus(s) for tid, s in data.get("statuses", {}).items()},
            attempts=data.get("attempts", {}),
            revision=data.get("revision"),
            timestamp=(
                datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else datetime.now(UTC)
            ),
        )


# =============================================================================
# Checkpoint Store
# =============================================================================


class CheckpointStore:
    """Single writer of task status for plans rooted in one workspace.

    Example:
        >>> store = CheckpointStore(Path("."))
        >>> store.commit(plan, "A.1", TaskStatus.READY)
        >>> store.current.task_id
        'A.1'

    Attributes:
        root: Workspace root; journals live under ``root/.plan-engine``.
        dry_run: Apply transitions in memory only, writing nothing.
    """

    def __init__(
        self,
        root: str | Path = ".",
        *,
        dry_run: bool = False,
        state_dir: str | Path | None = None,
    ) -> None:
        self.root = Path(root)
        self.dry_run = dry_run
        self._state_dir = Path(state_dir) if state_dir else state_dir_for(self.root)
        self._lock = threading.RLock()
        self._history: list[Checkpoint] = []
        self._last_revision: str | None = None

    @property
    def state_dir(self) -> Path:
        """Directory holding journals and snapshots."""
        return self._state_dir

    @property
    def current(self) -> Checkpoint | None:
        """The latest checkpoint, if any."""
        return self._history[-1] if self._history else None

    @property
    def last_revision(self) -> str | None:
        """Revision of the most recently completed task."""
        return self._last_revision

    def journal_path(self, plan: Plan) -> Path:
        """Journal file for a plan."""
        return self._state_dir / f"{plan.id}.checkpoints.jsonl"

    # =========================================================================
    # Writes
    # =========================================================================

    def commit(
        self,
        plan: Plan,
        task_id: str,
        new_status: TaskStatus,
        *,
        revision: str | None = None,
    ) -> Checkpoint:
        """Apply a status transition and persist it.

        Args:
            plan: Plan owning the task.
            task_id: Task to transition.
            new_status: Requested status.
            revision: Revision to record with a COMPLETED transition.

        Returns:
            The checkpoint that was appended.

        Raises:
            KeyError: If the task does not exist.
            InvalidTransitionError: If the state machine forbids the change.
            CheckpointError: If the journal or document could not be written.
        """
        with self._lock:
            task = plan.require_task(task_id)
            previous = task.transition(new_status)

            if new_status == TaskStatus.COMPLETED and revision:
                self._last_revision = revision

            checkpoint = self._append(plan, "transition", task_id, new_status)
            try:
                self._persist(plan, checkpoint)
            except OSError as e:
                task.status = previous
                self._history.pop()
                raise CheckpointError(
                    f"Failed to checkpoint {task_id} -> {new_status.value}: {e}",
                    details={"task_id": task_id, "status": new_status.value},
                ) from e

            logger.debug(
                f"Checkpoint {checkpoint.sequence}: {task_id} "
                f"{previous.value} -> {new_status.value}"
            )
            return checkpoint

    def record_attempt(self, plan: Plan, task_id: str) -> int:
        """Increment a task's verification attempts.

        Returns:
            The new attempt count.
        """
        with self._lock:
            task = plan.require_task(task_id)
            task.attempts += 1
            return task.attempts

    def reset(self, plan: Plan, task_ids: Iterable[str]) -> Checkpoint | None:
        """Return tasks to PENDING with zero attempts, bypassing the state machine.

        Used by rollback and by runs that start from the beginning.

        Returns:
            The checkpoint recording the reset, or None when nothing changed.
        """
        with self._lock:
            changed: list[tuple[str, TaskStatus, int]] = []
            for task_id in task_ids:
                task = plan.require_task(task_id)
                if task.status == TaskStatus.PENDING and task.attempts == 0:
                    continue
                changed.append((task_id, task.status, task.attempts))
                task.status = TaskStatus.PENDING
                task.attempts = 0

            if not changed:
                return None

            task_id = changed[0][0] if len(changed) == 1 else None
            checkpoint = self._append(plan, "reset", task_id, TaskStatus.PENDING)
            try:
                self._persist(plan, checkpoint)
            except OSError as e:
                for tid, status, attempts in changed:
                    task = plan.require_task(tid)
                    task.status = status
                    task.attempts = attempts
                self._history.pop()
                raise CheckpointError(f"Failed to reset tasks: {e}") from e

            logger.info(f"Reset {len(changed)} task(s) to pending in plan {plan.id}")
            return checkpoint

    def _append(
        self,
        plan: Plan,
        event: str,
        task_id: str | None,
        status: TaskStatus,
    ) -> Checkpoint:
        checkpoint = Checkpoint(
            plan_id=plan.id,
            sequence=len(self._history) + 1,
            event=event,
            task_id=task_id,
            status=status,
            statuses=plan.status_vector(),
            attempts=plan.attempts_vector(),
            revision=self._last_revision,
        )
        self._history.append(checkpoint)
        return checkpoint

    def _persist(self, plan: Plan, checkpoint: Checkpoint) -> None:
        """Journal first, then the document.

        If the document cannot be replaced the journal is truncated back, so
        either both record the checkpoint or neither does.
        """
        if self.dry_run:
            return

        journal = self.journal_path(plan)
        journal.parent.mkdir(parents=True, exist_ok=True)
        offset = journal.stat().st_size if journal.exists() else 0
        with open(journal, "a", encoding="utf-8") as f:
            f.write(json.dumps(checkpoint.to_dict()) + "\n")
            f.flush()
            os.fsync(f.fileno())

        try:
            self.write_document(plan)
        except OSError:
            with open(journal, "r+b") as f:
                f.truncate(offset)
                f.flush()
                os.fsync(f.fileno())
            raise

    def write_document(self, plan: Plan) -> bool:
        """Rewrite the plan document if any persisted marker changed.

        Returns:
            True if the document was replaced.
        """
        if self.dry_run or not plan.path:
            return False

        with self._lock:
            content = serialize(plan)
            if content == plan.source:
                return False
            atomic_write_text(Path(plan.path), content)
            plan.source = content
            return True

    # =========================================================================
    # Reads
    # =========================================================================

    def resume(self, path: str | Path) -> Plan:
        """Re-parse a plan document and load its journal history.

        The document's markers are authoritative: COMPLETED and SKIPPED tasks
        are never re-run, everything else starts PENDING.
        """
        plan = PlanParser().parse(path)
        self.load_history(plan)
        done = sum(1 for t in plan.all_tasks() if persisted_status(t.status) != TaskStatus.PENDING)
        logger.info(f"Resuming plan {plan.id}: {done}/{plan.total_tasks} task(s) already done")
        return plan

    def load_history(self, plan: Plan) -> list[Checkpoint]:
        """Load the plan's journal into memory.

        A trailing record cut short by a crash is ignored.
        """
        journal = self.journal_path(plan)
        history: list[Checkpoint] = []
        if journal.exists():
            lines = journal.read_text(encoding="utf-8").splitlines()
            for index, line in enumerate(lines):
                if not line.strip():
                    continue
                try:
                    history.append(Checkpoint.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    if index == len(lines) - 1:
                        logger.warning(f"Ignoring truncated journal record in {journal}")
                        continue
                    raise CheckpointError(f"Corrupt journal record {index + 1} in {journal}") from e

        with self._lock:
            self._history = history
            self._last_revision = next(
                (cp.revision for cp in reversed(history) if cp.revision), None
            )
        return list(history)

    def history(self, phase: str | None = None) -> list[Checkpoint]:
        """Checkpoints in journal order, optionally limited to one phase."""
        if phase is None:
            return list(self._history)
        return [cp for cp in self._history if cp.phase == phase]
