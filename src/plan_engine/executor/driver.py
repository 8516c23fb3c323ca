"""Scheduler and driver for plan execution.

The ``Driver`` pulls runnable tasks from the dependency graph and takes each
through the task lifecycle::

    PENDING -> READY -> IN_PROGRESS -> (effect) -> VERIFYING -> (verify) -> COMPLETED

``step`` executes one task (or, in parallel mode, a round of tasks with
pairwise-disjoint targets). ``run`` repeats ``step`` until nothing is
runnable. Every status change goes through the ``CheckpointStore``.

Example:
    >>> driver = Driver(DriverConfig(auto_fix=True, max_retries=2), workspace=".")
    >>> summary = await driver.run(plan)
    >>> print(summary.summary())
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from plan_engine.errors import (
    ConfigurationError,
    ExecutionError,
    PlanEngineError,
    ScopeViolation,
)
from plan_engine.executor.checkpoint import CheckpointStore
from plan_engine.executor.dependencies import DependencyGraph
from plan_engine.executor.effects import EffectHandler, EffectResult, TaskExecutor
from plan_engine.executor.models import Task, TaskStatus, task_sort_key
from plan_engine.executor.plan import Plan
from plan_engine.executor.recovery import RollbackManager, RollbackResult
from plan_engine.executor.revisions import NullRevisions, RevisionRecorder
from plan_engine.executor.verifier import FixStrategy, VerificationGate, VerificationResult
from plan_engine.logging import get_logger

logger = get_logger("executor.driver")

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_STRUCTURAL = 2


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class DriverConfig:
    """Configuration for the Driver.

    Attributes:
        phase: Restrict execution to one phase (None for the whole plan).
        dry_run: Report what would run without effects or checkpoints.
        auto_fix: Enable the fix-and-retry loop on verification failure.
        max_retries: Fix attempts allowed under auto-fix.
        parallel: Run disjoint runnable tasks concurrently.
        workers: Maximum tasks per parallel round.
        timeout: Per-task verification and command timeout in seconds.
        skipped_satisfies: Let SKIPPED dependencies count as satisfied.
        rollback_on_failure: Roll back a failed task's phase and halt.
        fresh_start: Reset the scope's COMPLETED tasks to PENDING before
            executing (runs without ``--resume``).
        max_steps: Stop ``run`` after this many steps (0 = unlimited).
    """

    phase: str | None = None
    dry_run: bool = False
    auto_fix: bool = False
    max_retries: int = 3
    parallel: bool = False
    workers: int = 4
    timeout: float | None = None
    skipped_satisfies: bool = False
    rollback_on_failure: bool = False
    fresh_start: bool = False
    max_steps: int = 0

    def validate(self) -> None:
        """Check option values.

        Raises:
            ConfigurationError: If a value is out of range.
        """
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0")
        if self.workers < 1:
            raise ConfigurationError("workers must be >= 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if self.max_steps < 0:
            raise ConfigurationError("max_steps must be >= 0")

    @property
    def round_size(self) -> int:
        """Tasks a single step may run."""
        return self.workers if self.parallel else 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "phase": self.phase,
            "dry_run": self.dry_run,
            "auto_fix": self.auto_fix,
            "max_retries": self.max_retries,
            "parallel": self.parallel,
            "workers": self.workers,
            "timeout": self.timeout,
            "skipped_satisfies": self.skipped_satisfies,
            "rollback_on_failure": self.rollback_on_failure,
            "fresh_start": self.fresh_start,
            "max_steps": self.max_steps,
        }


# =============================================================================
# Results
# =============================================================================


@dataclass
class TaskOutcome:
    """How one task ended within a step.

    Attributes:
        task_id: The task.
        status: Status at the end of the step.
        attempts: Verification attempts used.
        effect: What the effect did (None if it never ran).
        verification: Last verification result (None if never verified).
        error: Error message for execution errors and scope violations.
        aborted: Whether the error aborts the whole run.
        revision: Revision recorded on completion.
        dry_run: Whether the task was only simulated.
    """

    task_id: str
    status: TaskStatus = TaskStatus.IN_PROGRESS
    attempts: int = 0
    effect: EffectResult | None = None
    verification: VerificationResult | None = None
    error: str | None = None
    aborted: bool = False
    revision: str | None = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def diagnostic(self) -> str:
        """Last verification output, or the error message."""
        if self.verification is not None and not self.verification.passed:
            return self.verification.output
        return self.error or ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "effect": self.effect.to_dict() if self.effect else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "error": self.error,
            "aborted": self.aborted,
            "revision": self.revision,
            "dry_run": self.dry_run,
        }


@dataclass
class StepResult:
    """Report of one ``step`` call.

    Attributes:
        executed: Ids that ran this step, in ascending order.
        outcomes: Per-task outcomes, in the same order.
        blocked: Pending ids mapped to their unmet dependencies (filled when
            nothing could run).
        dry_run: Whether the step was simulated.
        rollbacks: Phases rolled back after a failure.
    """

    executed: list[str] = field(default_factory=list)
    outcomes: list[TaskOutcome] = field(default_factory=list)
    blocked: dict[str, list[str]] = field(default_factory=dict)
    dry_run: bool = False
    rollbacks: list[RollbackResult] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        """Whether nothing was runnable."""
        return not self.executed

    @property
    def aborted(self) -> bool:
        return any(o.aborted for o in self.outcomes)

    @property
    def failed(self) -> list[str]:
        return [o.task_id for o in self.outcomes if o.status.is_failure]

    @property
    def success(self) -> bool:
        """Whether every executed task completed (or nothing was left to do)."""
        if self.idle:
            return not self.blocked
        return all(o.success for o in self.outcomes)

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.success else EXIT_FAILURE

    @property
    def message(self) -> str:
        """One-line description of the step."""
        if self.idle:
            if not self.blocked:
                return "No runnable tasks"
            waits = sorted({d for deps in self.blocked.values() for d in deps}, key=task_sort_key)
            return f"Blocked on {', '.join(waits)}"
        prefix = "Would run" if self.dry_run else "Ran"
        states = ", ".join(f"{o.task_id} ({o.status.value})" for o in self.outcomes)
        return f"{prefix} {states}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "executed": self.executed,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "blocked": self.blocked,
            "dry_run": self.dry_run,
            "rollbacks": [r.to_dict() for r in self.rollbacks],
            "message": self.message,
            "exit_code": self.exit_code,
        }


class RunStatus(str, Enum):
    """Status of a driver run."""

    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    ABORTED = "aborted"
    DRY_RUN = "dry_run"
    NO_TASKS = "no_tasks"


@dataclass
class RunSummary:
    """Summary of a driver run.

    Attributes:
        status: Overall run status.
        order: Ids in the order they executed (or would execute).
        outcomes: Every task outcome, in execution order.
        failed: Failing ids mapped to their last verification output or error.
        blocked: Pending ids mapped to their unmet dependencies.
        statuses: Final status vector of the scope.
        rollbacks: Phases rolled back after failure.
        started_at: When the run started.
        completed_at: When the run completed.
        duration_ms: Total run duration.
    """

    status: RunStatus
    order: list[str] = field(default_factory=list)
    outcomes: list[TaskOutcome] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    blocked: dict[str, list[str]] = field(default_factory=dict)
    statuses: dict[str, TaskStatus] = field(default_factory=dict)
    rollbacks: list[RollbackResult] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: float = 0.0

    @property
    def exit_code(self) -> int:
        if self.status in (RunStatus.COMPLETED, RunStatus.NO_TASKS, RunStatus.DRY_RUN):
            return EXIT_SUCCESS
        return EXIT_FAILURE

    @property
    def tasks_completed(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "order": self.order,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "failed": self.failed,
            "blocked": self.blocked,
            "statuses": {tid: s.value for tid, s in self.statuses.items()},
            "rollbacks": [r.to_dict() for r in self.rollbacks],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }

    def summary(self) -> str:
        """Get human-readable summary."""
        lines = [
            f"Status: {self.status.value}",
            f"Executed: {', '.join(self.order) if self.order else '(none)'}",
            f"Completed: {self.tasks_completed}",
        ]
        for task_id, output in self.failed.items():
            lines.append(f"Failed: {task_id}")
            last_line = output.strip().splitlines()[-1:]
            if last_line:
                lines.append(f"  {last_line[0]}")
        if self.blocked:
            lines.append(f"Blocked: {', '.join(self.blocked)}")
        lines.append(f"Duration: {self.duration_ms / 1000:.1f}s")
        return "\n".join(lines)


# =============================================================================
# Driver
# =============================================================================


class Driver:
    """Select, execute, verify and checkpoint plan tasks.

    Collaborators are created from the config when not supplied, so a bare
    ``Driver(config, workspace=root)`` is fully functional.
    """

    def __init__(
        self,
        config: DriverConfig | None = None,
        *,
        workspace: str | Path = ".",
        store: CheckpointStore | None = None,
        executor: TaskExecutor | None = None,
        gate: VerificationGate | None = None,
        rollback: RollbackManager | None = None,
        revisions: RevisionRecorder | None = None,
        handler: EffectHandler | None = None,
        fix_strategy: FixStrategy | None = None,
    ):
        """Initialize the driver.

        Args:
            config: Driver configuration. Uses defaults if not provided.
            workspace: Root directory targets and commands are relative to.
            store: Checkpoint store (single writer of task state).
            executor: Applies task effects.
            gate: Runs verification and the auto-fix loop.
            rollback: Restores phases after failure.
            revisions: Records a revision for each completed task.
            handler: Content producer for CREATE/MODIFY (ignored if
                ``executor`` is given).
            fix_strategy: Auto-fix action (ignored if ``gate`` is given).
        """
        self.config = config or DriverConfig()
        self.config.validate()
        self.workspace = Path(workspace)
        self.store = store or CheckpointStore(self.workspace)
        self.rollback = rollback or RollbackManager(self.workspace, self.store)
        self.executor = executor or TaskExecutor(
            self.workspace,
            handler=handler,
            rollback=self.rollback,
            command_timeout=self.config.timeout,
        )
        self.gate = gate or VerificationGate(
            self.workspace,
            timeout=self.config.timeout,
            auto_fix=self.config.auto_fix,
            max_retries=self.config.max_retries,
            fix_strategy=fix_strategy,
        )
        self.revisions: RevisionRecorder = revisions or NullRevisions()

    # =========================================================================
    # Public API
    # =========================================================================

    async def step(self, plan: Plan) -> StepResult:
        """Execute one task, or one parallel round.

        In dry-run mode the step is simulated on a copy of the plan.
        """
        target, store = self._target(plan)
        self._prepare(target, store)
        return await self._step(target, store)

    async def run(self, plan: Plan) -> RunSummary:
        """Step until nothing is runnable, the run aborts, or a rollback halts it."""
        started_at = datetime.now(UTC)
        start = time.perf_counter()

        target, store = self._target(plan)
        self._prepare(target, store)

        order: list[str] = []
        outcomes: list[TaskOutcome] = []
        rollbacks: list[RollbackResult] = []
        blocked: dict[str, list[str]] = {}
        aborted = False
        steps = 0

        while True:
            result = await self._step(target, store)
            if result.idle:
                blocked = result.blocked
                break

            steps += 1
            order.extend(result.executed)
            outcomes.extend(result.outcomes)

            if result.aborted:
                aborted = True
                break
            if result.rollbacks:
                rollbacks.extend(result.rollbacks)
                break
            if self.config.max_steps and steps >= self.config.max_steps:
                break

        if not blocked:
            graph = DependencyGraph.build(target)
            blocked = graph.blocked_tasks(
                target, self.config.phase, skipped_satisfies=self.config.skipped_satisfies
            )

        failed = {o.task_id: o.diagnostic for o in outcomes if o.status.is_failure}
        status = self._run_status(order, failed, blocked, aborted)

        summary = RunSummary(
            status=status,
            order=order,
            outcomes=outcomes,
            failed=failed,
            blocked=blocked,
            statuses={t.id: t.status for t in target.tasks_in(self.config.phase)},
            rollbacks=rollbacks,
            started_at=started_at,
            completed_at=datetime.now(UTC),
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        logger.info(f"Run finished: {status.value} ({len(order)} task(s) executed)")
        return summary

    # =========================================================================
    # Internals
    # =========================================================================

    def _target(self, plan: Plan) -> tuple[Plan, CheckpointStore]:
        """The plan and store a call operates on (a copy for dry runs)."""
        if self.config.phase is not None and plan.get_phase(self.config.phase) is None:
            raise ConfigurationError(f"Unknown phase: {self.config.phase}")
        if self.config.dry_run:
            return plan.copy(), CheckpointStore(self.workspace, dry_run=True)
        return plan, self.store

    def _prepare(self, plan: Plan, store: CheckpointStore) -> None:
        """Reset COMPLETED tasks in scope when starting from the beginning."""
        if not self.config.fresh_start:
            return
        done = [
            t.id
            for t in plan.tasks_in(self.config.phase)
            if t.status != TaskStatus.SKIPPED and t.status != TaskStatus.PENDING
        ]
        if done:
            logger.info(f"Starting from the beginning: resetting {len(done)} task(s)")
            store.reset(plan, done)
        if not store.dry_run:
            self.rollback.clear(plan, self.config.phase)

    def _run_status(
        self,
        order: list[str],
        failed: dict[str, str],
        blocked: dict[str, list[str]],
        aborted: bool,
    ) -> RunStatus:
        if aborted:
            return RunStatus.ABORTED
        if failed:
            return RunStatus.FAILED
        if self.config.dry_run:
            return RunStatus.DRY_RUN if order else RunStatus.NO_TASKS
        if blocked:
            return RunStatus.BLOCKED
        if not order:
            return RunStatus.NO_TASKS
        return RunStatus.COMPLETED

    async def _step(self, plan: Plan, store: CheckpointStore) -> StepResult:
        graph = DependencyGraph.build(plan)
        skipped_satisfies = self.config.skipped_satisfies
        runnable = graph.next_runnable(plan, self.config.phase, skipped_satisfies=skipped_satisfies)

        if not runnable:
            blocked = graph.blocked_tasks(plan, self.config.phase, skipped_satisfies=skipped_satisfies)
            if blocked:
                logger.info(f"Nothing runnable; blocked: {', '.join(blocked)}")
            return StepResult(blocked=blocked, dry_run=store.dry_run)

        candidates = [plan.require_task(task_id) for task_id in runnable]
        if self.config.parallel:
            chosen = graph.select_disjoint(candidates, self.config.workers)
        else:
            chosen = candidates[:1]

        if store.dry_run:
            return self._simulate(plan, store, chosen)
        return await self._execute_round(plan, store, chosen)

    def _simulate(self, plan: Plan, store: CheckpointStore, chosen: list[Task]) -> StepResult:
        """Walk tasks to COMPLETED in memory so later steps see their dependents."""
        result = StepResult(dry_run=True)
        for task in chosen:
            for status in (
                TaskStatus.READY,
                TaskStatus.IN_PROGRESS,
                TaskStatus.VERIFYING,
                TaskStatus.COMPLETED,
            ):
                store.commit(plan, task.id, status)
            logger.info(f"[dry-run] Would run {task.id}: {task.title}")
            result.executed.append(task.id)
            result.outcomes.append(TaskOutcome(task_id=task.id, status=task.status, dry_run=True))
        return result

    async def _execute_round(
        self,
        plan: Plan,
        store: CheckpointStore,
        chosen: list[Task],
    ) -> StepResult:
        for task in chosen:
            store.commit(plan, task.id, TaskStatus.READY)
            store.commit(plan, task.id, TaskStatus.IN_PROGRESS)

        gathered = await asyncio.gather(
            *(self._run_task(plan, store, task) for task in chosen),
            return_exceptions=True,
        )
        for item in gathered:
            if isinstance(item, BaseException):
                raise item

        outcomes: list[TaskOutcome] = [o for o in gathered if isinstance(o, TaskOutcome)]
        outcomes.sort(key=lambda o: task_sort_key(o.task_id))

        # Completions are committed one at a time in ascending id order
        for outcome in outcomes:
            task = plan.require_task(outcome.task_id)
            if task.status == TaskStatus.VERIFYING and outcome.verification is not None:
                if outcome.verification.passed:
                    outcome.revision = await self._record_revision(task)
                    store.commit(plan, task.id, TaskStatus.COMPLETED, revision=outcome.revision)
            outcome.status = task.status
            outcome.attempts = task.attempts

        result = StepResult(
            executed=[o.task_id for o in outcomes],
            outcomes=outcomes,
        )

        if result.failed and self.config.rollback_on_failure and not result.aborted:
            for phase_id in sorted({plan.require_task(tid).phase for tid in result.failed}):
                logger.warning(f"Rolling back phase {phase_id} after failure")
                result.rollbacks.append(self.rollback.rollback(plan, phase_id))

        return result

    async def _run_task(self, plan: Plan, store: CheckpointStore, task: Task) -> TaskOutcome:
        """Effect then verification for one IN_PROGRESS task."""
        outcome = TaskOutcome(task_id=task.id)
        try:
            outcome.effect = await self.executor.execute(task, plan)
            store.commit(plan, task.id, TaskStatus.VERIFYING)
            outcome.verification = await self.gate.verify_with_retries(task, plan, store)
        except ScopeViolation as e:
            logger.error(f"Aborting: {e}")
            self._fail(plan, store, task)
            outcome.error = str(e)
            outcome.aborted = True
        except ExecutionError as e:
            logger.error(f"Execution failed: {e}")
            self._fail(plan, store, task)
            outcome.error = str(e)
        except asyncio.CancelledError:
            logger.warning(f"Task {task.id} cancelled; it stays pending on disk")
            self._fail(plan, store, task)
            raise

        outcome.status = task.status
        outcome.attempts = task.attempts
        return outcome

    @staticmethod
    def _fail(plan: Plan, store: CheckpointStore, task: Task) -> None:
        if task.status in (TaskStatus.IN_PROGRESS, TaskStatus.VERIFYING):
            store.commit(plan, task.id, TaskStatus.FAILED)

    async def _record_revision(self, task: Task) -> str | None:
        try:
            return await asyncio.to_thread(self.revisions.record, task)
        except PlanEngineError as e:
            logger.error(f"Could not record revision for task {task.id}: {e}")
            return None
