"""Phase rollback for the Executor module.

Before a task mutates anything, the executor snapshots every target and hands
the snapshots to the ``RollbackManager``. The first snapshot of a path within
a phase wins, so the stored state is the state before the phase's first task
touched it. ``rollback`` restores those states and resets the phase's tasks to
PENDING through the checkpoint store.

Snapshots persist to ``.plan-engine/<plan id>.snapshots.json`` so a later
invocation (``plan-engine rollback``) can still restore them.
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from plan_engine.errors import RollbackError
from plan_engine.executor.checkpoint import CheckpointStore, atomic_write_text
from plan_engine.executor.models import Task, TaskStatus
from plan_engine.executor.plan import Plan
from plan_engine.logging import get_logger

logger = get_logger("executor.recovery")


# =============================================================================
# Snapshots
# =============================================================================


@dataclass
class FileSnapshot:
    """Snapshot of a target's state before a task changed it.

    Attributes:
        path: Relative file path.
        exists: Whether the file existed.
        content: File bytes (None when the file did not exist).
        hash: SHA256 hash of the contents.
    """

    path: str
    exists: bool = True
    content: bytes | None = None
    hash: str | None = None

    @property
    def size(self) -> int:
        return len(self.content) if self.content is not None else 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "path": self.path,
            "exists": self.exists,
            "hash": self.hash,
            "content": (
                base64.b64encode(self.content).decode("ascii") if self.content is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileSnapshot:
        """Create from dictionary."""
        content = data.get("content")
        return cls(
            path=data["path"],
            exists=data.get("exists", True),
            content=base64.b64decode(content) if content is not None else None,
            hash=data.get("hash"),
        )

    @classmethod
    def from_file(cls, workspace: Path, path: str) -> FileSnapshot:
        """Create snapshot from a file."""
        file_path = workspace / path
        if not file_path.is_file():
            return cls(path=path, exists=False)

        content = file_path.read_bytes()
        return cls(
            path=path,
            exists=True,
            content=content,
            hash=hashlib.sha256(content).hexdigest(),
        )

    def restore(self, workspace: Path) -> str:
        """Put the file back the way it was.

        Returns:
            ``"restored"``, ``"deleted"`` or ``"unchanged"``.
        """
        file_path = workspace / self.path
        if not self.exists:
            if file_path.exists():
                file_path.unlink()
                return "deleted"
            return "unchanged"

        if file_path.is_file() and hashlib.sha256(file_path.read_bytes()).hexdigest() == self.hash:
            return "unchanged"
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(self.content or b"")
        return "restored"


@dataclass
class RollbackResult:
    """Result of rolling back a phase.

    Attributes:
        phase_id: Phase that was rolled back.
        files_restored: Files rewritten to their snapshot content.
        files_deleted: Files removed because they did not exist before.
        tasks_reset: Tasks returned to PENDING.
    """

    phase_id: str
    files_restored: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    tasks_reset: list[str] = field(default_factory=list)

    @property
    def total_files_affected(self) -> int:
        return len(self.files_restored) + len(self.files_deleted)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "phase_id": self.phase_id,
            "files_restored": self.files_restored,
            "files_deleted": self.files_deleted,
            "tasks_reset": self.tasks_reset,
        }


# =============================================================================
# Rollback Manager
# =============================================================================


class RollbackManager:
    """Capture pre-phase snapshots and restore them on demand.

    Example:
        >>> manager = RollbackManager(Path("."), store)
        >>> result = manager.rollback(plan, "A")
        >>> print(f"Restored {result.total_files_affected} files")
    """

    def __init__(self, root: str | Path, store: CheckpointStore) -> None:
        self.root = Path(root)
        self.store = store
        # plan id -> phase id -> path -> snapshot
        self._snapshots: dict[str, dict[str, dict[str, FileSnapshot]]] = {}

    def snapshot_path(self, plan: Plan) -> Path:
        """Snapshot file for a plan."""
        return self.store.state_dir / f"{plan.id}.snapshots.json"

    # =========================================================================
    # Capture
    # =========================================================================

    def capture(self, plan: Plan, task: Task, snapshots: list[FileSnapshot]) -> None:
        """Record pre-mutation snapshots for a task's phase.

        Paths already captured earlier in the phase keep their first snapshot.
        """
        phase = self._phase_snapshots(plan).setdefault(task.phase, {})
        added = 0
        for snapshot in snapshots:
            if snapshot.path not in phase:
                phase[snapshot.path] = snapshot
                added += 1

        if added:
            logger.debug(f"Captured {added} snapshot(s) for task {task.id} in phase {task.phase}")
            self._save(plan)

    def snapshots_for(self, plan: Plan, phase_id: str) -> list[FileSnapshot]:
        """Snapshots held for a phase, in path order."""
        phase = self._phase_snapshots(plan).get(phase_id, {})
        return [phase[path] for path in sorted(phase)]

    def clear(self, plan: Plan, phase_id: str | None = None) -> None:
        """Forget snapshots for one phase, or for the whole plan."""
        snapshots = self._phase_snapshots(plan)
        if phase_id is None:
            snapshots.clear()
        else:
            snapshots.pop(phase_id, None)
        self._save(plan)

    # =========================================================================
    # Rollback
    # =========================================================================

    def rollback(self, plan: Plan, phase_id: str) -> RollbackResult:
        """Restore a phase's targets and reset its tasks to PENDING.

        SKIPPED tasks are human decisions with no effects and keep their status.

        Raises:
            KeyError: If the phase does not exist.
            RollbackError: If any file could not be restored.
        """
        phase = plan.get_phase(phase_id)
        if phase is None:
            raise KeyError(f"Unknown phase: {phase_id}")

        result = RollbackResult(phase_id=phase_id)
        failed: dict[str, str] = {}

        for snapshot in self.snapshots_for(plan, phase_id):
            try:
                outcome = snapshot.restore(self.root)
            except OSError as e:
                failed[snapshot.path] = str(e)
                continue
            if outcome == "restored":
                result.files_restored.append(snapshot.path)
            elif outcome == "deleted":
                result.files_deleted.append(snapshot.path)

        if failed:
            raise RollbackError(
                f"Could not restore {len(failed)} file(s) in phase {phase_id}",
                details={"failed": failed, "restored": result.files_restored},
            )

        to_reset = [t.id for t in phase.tasks if t.status != TaskStatus.SKIPPED]
        self.store.reset(plan, to_reset)
        result.tasks_reset = to_reset
        self.clear(plan, phase_id)

        logger.info(
            f"Rolled back phase {phase_id}: {result.total_files_affected} file(s), "
            f"{len(to_reset)} task(s) reset"
        )
        return result

    # =========================================================================
    # Persistence
    # =========================================================================

    def _phase_snapshots(self, plan: Plan) -> dict[str, dict[str, FileSnapshot]]:
        if plan.id not in self._snapshots:
            self._snapshots[plan.id] = self._load(plan)
        return self._snapshots[plan.id]

    def _load(self, plan: Plan) -> dict[str, dict[str, FileSnapshot]]:
        path = self.snapshot_path(plan)
        if self.store.dry_run or not path.exists():
            return {}
        data = json.loads(path.read_text(encoding="utf-8"))
        return {
            phase_id: {p: FileSnapshot.from_dict(s) for p, s in entries.items()}
            for phase_id, entries in data.get("phases", {}).items()
        }

    def _save(self, plan: Plan) -> None:
        if self.store.dry_run:
            return
        snapshots = self._snapshots.get(plan.id, {})
        data = {
            "plan_id": plan.id,
            "phases": {
                phase_id: {p: s.to_dict() for p, s in entries.items()}
                for phase_id, entries in snapshots.items()
            },
        }
        atomic_write_text(self.snapshot_path(plan), json.dumps(data, indent=2))
