"""Task verification for the Executor module.

A task's ``Verify`` entry is an arbitrary shell command run in the workspace:
exit code 0 passes, anything else fails, and combined stdout/stderr is kept
as diagnostic text. The gate also owns the auto-fix loop, calling an injected
``FixStrategy`` between attempts.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from plan_engine.errors import VerificationFailure
from plan_engine.executor.models import Task, TaskStatus
from plan_engine.executor.plan import Plan
from plan_engine.executor.workspace import ScopedWorkspace
from plan_engine.logging import get_logger

if TYPE_CHECKING:
    from plan_engine.executor.checkpoint import CheckpointStore

logger = get_logger("executor.verifier")

# Output kept on results; long test logs are truncated from the front
MAX_OUTPUT_CHARS = 20_000


# =============================================================================
# Shell Commands
# =============================================================================


@dataclass
class CommandOutcome:
    """Result of running one shell command."""

    returncode: int | None
    output: str
    duration_ms: float
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.returncode == 0


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """Kill the shell and every process it started."""
    # The group outlives the shell while a grandchild still holds the pipe
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)


async def run_shell(
    command: str,
    cwd: Path,
    timeout: float | None = None,
) -> CommandOutcome:
    """Run a shell command, capturing combined stdout and stderr.

    A timeout kills the process group and returns ``timed_out=True``. Cancellation
    kills the process group and re-raises ``CancelledError``.

    Raises:
        OSError: If the shell could not be launched.
    """
    start_time = time.perf_counter()

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=cwd,
        start_new_session=True,
    )

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        _kill_process_group(proc)
        await proc.wait()
        return CommandOutcome(
            returncode=None,
            output=f"Command timed out after {timeout}s: {command}",
            duration_ms=(time.perf_counter() - start_time) * 1000,
            timed_out=True,
        )
    except asyncio.CancelledError:
        _kill_process_group(proc)
        await proc.wait()
        raise

    output = stdout.decode("utf-8", errors="replace")
    if len(output) > MAX_OUTPUT_CHARS:
        output = "...\n" + output[-MAX_OUTPUT_CHARS:]

    return CommandOutcome(
        returncode=proc.returncode,
        output=output,
        duration_ms=(time.perf_counter() - start_time) * 1000,
    )


# =============================================================================
# Results
# =============================================================================


@dataclass
class VerificationResult:
    """Result of verifying a task once.

    Attributes:
        task_id: The task that was verified.
        passed: Whether the command exited with code 0.
        output: Combined stdout/stderr.
        exit_code: Process exit code (None on timeout or when nothing ran).
        timed_out: Whether the command hit the timeout.
        duration_ms: How long verification took.
        command: The command that ran (None when the task has no verification).
        attempt: Attempt number this result belongs to.
    """

    task_id: str
    passed: bool
    output: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    duration_ms: float = 0.0
    command: str | None = None
    attempt: int = 0

    @property
    def skipped(self) -> bool:
        """Whether the task declared no verification."""
        return self.command is None

    def raise_for_failure(self) -> None:
        """Raise ``VerificationFailure`` if the result did not pass."""
        if not self.passed:
            raise VerificationFailure(self.task_id, self)

    def summary(self) -> str:
        """Get a one-line summary."""
        if self.skipped:
            return "no verification declared"
        if self.timed_out:
            return f"timed out after {self.duration_ms / 1000:.1f}s"
        state = "passed" if self.passed else f"failed (exit code {self.exit_code})"
        return f"{state} in {self.duration_ms:.0f}ms"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "task_id": self.task_id,
            "passed": self.passed,
            "output": self.output,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
            "command": self.command,
            "attempt": self.attempt,
        }


# =============================================================================
# Fix Strategies
# =============================================================================


class FixStrategy(Protocol):
    """Corrective action invoked between verification attempts."""

    async def fix(self, task: Task, result: VerificationResult, workspace: ScopedWorkspace) -> None:
        """Try to repair the task's targets after a failed verification."""
        ...


class NoopFixStrategy:
    """Re-verify without changing anything (useful for flaky commands)."""

    async def fix(self, task: Task, result: VerificationResult, workspace: ScopedWorkspace) -> None:
        logger.debug(f"No fix applied for task {task.id}; re-verifying")


class CommandFixStrategy:
    """Run the task's ``Fix`` command in the workspace.

    A failing fix command is logged and the task is re-verified anyway; the
    verification result decides the outcome.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    async def fix(self, task: Task, result: VerificationResult, workspace: ScopedWorkspace) -> None:
        if not task.fix:
            logger.debug(f"Task {task.id} declares no Fix command; re-verifying")
            return

        logger.info(f"Running fix for task {task.id}: {task.fix}")
        outcome = await run_shell(task.fix, workspace.root, self.timeout)
        if not outcome.succeeded:
            logger.warning(
                f"Fix command for task {task.id} failed "
                f"(exit code {outcome.returncode}, timed out: {outcome.timed_out})"
            )


# =============================================================================
# Verification Gate
# =============================================================================


class VerificationGate:
    """Runs verification commands and the auto-fix retry loop.

    Example:
        >>> gate = VerificationGate(Path("."), timeout=60, auto_fix=True, max_retries=2)
        >>> result = await gate.verify(task)
        >>> if not result.passed:
        ...     print(result.output)
    """

    def __init__(
        self,
        workspace: str | Path,
        *,
        timeout: float | None = None,
        auto_fix: bool = False,
        max_retries: int = 3,
        fix_strategy: FixStrategy | None = None,
    ):
        """Initialize the gate.

        Args:
            workspace: Directory commands run in.
            timeout: Per-verification timeout in seconds (None for no limit).
            auto_fix: Enable the fix-and-retry loop.
            max_retries: Fix attempts allowed under auto-fix.
            fix_strategy: Corrective action between attempts.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.workspace = Path(workspace)
        self.timeout = timeout
        self.auto_fix = auto_fix
        self.max_retries = max_retries
        self.fix_strategy: FixStrategy = fix_strategy or NoopFixStrategy()

    @property
    def max_attempts(self) -> int:
        """Verification attempts a task may use before FAILED_TERMINAL."""
        return self.max_retries + 1 if self.auto_fix else 1

    async def verify(self, task: Task) -> VerificationResult:
        """Run a task's verification command once.

        A task without verification passes without running anything. A
        command that cannot be launched fails like a non-zero exit.
        """
        if task.verify is None:
            return VerificationResult(task_id=task.id, passed=True, attempt=task.attempts)

        logger.debug(f"Verifying task {task.id}: {task.verify}")
        try:
            outcome = await run_shell(task.verify, self.workspace, self.timeout)
        except OSError as e:
            logger.error(f"Could not launch verification for task {task.id}: {e}")
            return VerificationResult(
                task_id=task.id,
                passed=False,
                output=str(e),
                command=task.verify,
                attempt=task.attempts,
            )

        result = VerificationResult(
            task_id=task.id,
            passed=outcome.succeeded,
            output=outcome.output,
            exit_code=outcome.returncode,
            timed_out=outcome.timed_out,
            duration_ms=outcome.duration_ms,
            command=task.verify,
            attempt=task.attempts,
        )
        logger.info(f"Verification of task {task.id} {result.summary()}")
        return result

    async def verify_with_retries(
        self,
        task: Task,
        plan: Plan,
        store: CheckpointStore,
        workspace: ScopedWorkspace | None = None,
    ) -> VerificationResult:
        """Verify a VERIFYING task, fixing and retrying under auto-fix.

        On success the task is left VERIFYING so the caller decides when the
        COMPLETED checkpoint is written. On exhaustion the task is committed
        FAILED_TERMINAL with ``attempts == max_attempts``.

        Returns:
            The last verification result.
        """
        workspace = workspace or ScopedWorkspace(self.workspace, task)

        while True:
            attempts = store.record_attempt(plan, task.id)
            result = await self.verify(task)
            if result.passed:
                return result

            store.commit(plan, task.id, TaskStatus.FAILED)

            if attempts < self.max_attempts:
                logger.info(
                    f"Task {task.id} failed verification "
                    f"(attempt {attempts}/{self.max_attempts}); applying fix"
                )
                store.commit(plan, task.id, TaskStatus.IN_PROGRESS)
                await self.fix_strategy.fix(task, result, workspace)
                store.commit(plan, task.id, TaskStatus.VERIFYING)
                continue

            store.commit(plan, task.id, TaskStatus.FAILED_TERMINAL)
            logger.warning(f"Task {task.id} failed verification after {attempts} attempt(s)")
            return result
