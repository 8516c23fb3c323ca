"""Task effects for the Executor module.

``TaskExecutor.execute`` applies one task's action to its targets:

- DELETE removes each target (all must exist).
- CREATE / MODIFY hand a ``ScopedWorkspace`` to the injected
  ``EffectHandler``; without one, CREATE materializes missing targets as
  empty files and MODIFY only checks the targets exist.
- EXECUTE runs the task's ``Command``, if it has one.

Targets are snapshotted before anything changes and the snapshots go to the
rollback manager. The executor reports what it did; verification decides
whether the task succeeded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from plan_engine.errors import ExecutionError, PlanEngineError
from plan_engine.executor.models import Action, Task
from plan_engine.executor.plan import Plan
from plan_engine.executor.recovery import FileSnapshot
from plan_engine.executor.verifier import run_shell
from plan_engine.executor.workspace import ScopedWorkspace
from plan_engine.logging import get_logger

if TYPE_CHECKING:
    from plan_engine.executor.recovery import RollbackManager

logger = get_logger("executor.effects")


class EffectHandler(Protocol):
    """Produces the content of CREATE and MODIFY tasks.

    Implementations write through ``workspace``; any path that is not one of
    the task's targets raises ``ScopeViolation``. Called from a worker thread.
    """

    def apply(self, task: Task, workspace: ScopedWorkspace) -> None: ...


@dataclass
class EffectResult:
    """What a task's effect did.

    Attributes:
        task_id: Task that ran.
        action: The task's action.
        created: Paths that did not exist before.
        modified: Existing paths that were rewritten.
        deleted: Paths that were removed.
        snapshots: Target states captured before the effect.
        output: Command output for EXECUTE tasks.
    """

    task_id: str
    action: Action
    created: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    snapshots: list[FileSnapshot] = field(default_factory=list)
    output: str = ""

    @property
    def changed_paths(self) -> list[str]:
        """Every path the effect touched."""
        return self.created + self.modified + self.deleted

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "action": self.action.value,
            "created": self.created,
            "modified": self.modified,
            "deleted": self.deleted,
            "output": self.output,
        }


class TaskExecutor:
    """Apply task effects inside a workspace.

    Example:
        >>> executor = TaskExecutor(Path("."), handler=my_handler)
        >>> result = await executor.execute(task, plan)
        >>> print(result.created)
    """

    def __init__(
        self,
        workspace: str | Path,
        *,
        handler: EffectHandler | None = None,
        rollback: RollbackManager | None = None,
        command_timeout: float | None = None,
    ):
        """Initialize the executor.

        Args:
            workspace: Root directory targets are relative to.
            handler: Content producer for CREATE and MODIFY tasks.
            rollback: Receives pre-mutation snapshots.
            command_timeout: Timeout for EXECUTE commands, in seconds.
        """
        self.workspace = Path(workspace)
        self.handler = handler
        self.rollback = rollback
        self.command_timeout = command_timeout

    async def execute(self, task: Task, plan: Plan | None = None) -> EffectResult:
        """Apply the task's effect.

        Raises:
            ExecutionError: If the effect could not be applied.
            ScopeViolation: If the effect reached outside the task's targets.
        """
        logger.info(f"Executing task {task.id} ({task.action.value}): {task.title}")

        if task.action == Action.EXECUTE:
            return await self._run_command(task)

        scoped = ScopedWorkspace(self.workspace, task)
        try:
            snapshots = self.snapshot_targets(task, scoped)
        except OSError as e:
            raise ExecutionError(task.id, f"could not read targets: {e}") from e
        if self.rollback is not None and plan is not None:
            self.rollback.capture(plan, task, snapshots)

        try:
            await asyncio.to_thread(self._apply, task, scoped)
        except OSError as e:
            raise ExecutionError(task.id, f"could not apply {task.action.value}: {e}") from e

        return EffectResult(
            task_id=task.id,
            action=task.action,
            created=list(scoped.created),
            modified=list(scoped.modified),
            deleted=list(scoped.deleted),
            snapshots=snapshots,
        )

    def snapshot_targets(self, task: Task, scoped: ScopedWorkspace) -> list[FileSnapshot]:
        """Read every target before it changes."""
        snapshots = []
        for target in task.targets:
            # resolve() refuses targets that escape the workspace
            scoped.resolve(target)
            snapshots.append(FileSnapshot.from_file(self.workspace, target))
        return snapshots

    def _apply(self, task: Task, scoped: ScopedWorkspace) -> None:
        if task.action == Action.DELETE:
            missing = [t for t in task.targets if not scoped.exists(t)]
            if missing:
                raise ExecutionError(task.id, f"cannot delete missing target(s): {', '.join(missing)}")
            for target in task.targets:
                scoped.delete(target)
            return

        if self.handler is not None:
            try:
                self.handler.apply(task, scoped)
            except PlanEngineError:
                raise
            except Exception as e:
                raise ExecutionError(task.id, f"effect handler failed: {e}") from e
            return

        if task.action == Action.CREATE:
            for target in task.targets:
                if not scoped.exists(target):
                    scoped.write_bytes(target, b"")
        elif task.action == Action.MODIFY:
            missing = [t for t in task.targets if not scoped.exists(t)]
            if missing:
                raise ExecutionError(task.id, f"cannot modify missing target(s): {', '.join(missing)}")

    async def _run_command(self, task: Task) -> EffectResult:
        result = EffectResult(task_id=task.id, action=task.action)
        if not task.command:
            logger.debug(f"Task {task.id} has no command; nothing to execute")
            return result

        try:
            outcome = await run_shell(task.command, self.workspace, self.command_timeout)
        except OSError as e:
            raise ExecutionError(task.id, f"could not launch command: {e}") from e

        result.output = outcome.output
        if outcome.timed_out:
            raise ExecutionError(task.id, f"command timed out after {self.command_timeout}s")
        if outcome.returncode != 0:
            raise ExecutionError(
                task.id,
                f"command exited with code {outcome.returncode}: {outcome.output[-500:]}",
            )
        return result
