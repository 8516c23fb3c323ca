"""Tests for the scheduler/driver."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from plan_engine.errors import ConfigurationError, CycleError, PlanEngineError
from plan_engine.executor.checkpoint import STATE_DIR
from plan_engine.executor.driver import Driver, DriverConfig, RunStatus
from plan_engine.executor.models import Task, TaskStatus
from plan_engine.executor.parser import ParserConfig, PlanParser
from plan_engine.executor.plan import Plan
from plan_engine.executor.workspace import ScopedWorkspace

# =============================================================================
# Fixtures
# =============================================================================


def task(
    task_id: str,
    *,
    action: str = "CREATE",
    files: tuple[str, ...] = (),
    verify: str | None = None,
    deps: str = "",
    command: str | None = None,
    mark: str = " ",
) -> str:
    """Render one task entry."""
    lines = [f"- [{mark}] **{task_id}** Task {task_id}"]
    if action != "EXECUTE":
        files = files or (f"out/{task_id}.txt",)
    if files:
        lines.append("  - **Files**: " + ", ".join(f"`{f}`" for f in files))
    lines.append(f"  - **Action**: {action}")
    lines.append(f"  - **Verify**: `{verify}`" if verify else "  - **Verify**: none")
    if deps:
        lines.append(f"  - **Depends on**: {deps}")
    if command:
        lines.append(f"  - **Command**: `{command}`")
    return "\n".join(lines) + "\n\n"


def document(*phases: tuple[str, list[str]]) -> str:
    """Render a plan document from (phase id, task entries) pairs."""
    parts = ["# Driver test\n\n"]
    for phase_id, tasks in phases:
        parts.append(f"## Phase {phase_id}: Phase {phase_id}\n\n")
        parts.extend(tasks)
    return "".join(parts)


@pytest.fixture
def load(write_plan: Callable[..., Path]) -> Callable[[str], tuple[Plan, Path]]:
    """Write a document into the workspace and parse it."""

    def _load(content: str) -> tuple[Plan, Path]:
        path = write_plan(content)
        return PlanParser().parse(path), path

    return _load


class WritingHandler:
    """Effect handler that writes every target and tracks concurrency."""

    def __init__(self, plan: Plan | None = None, content: str = "changed\n") -> None:
        self.plan = plan
        self.content = content
        self.lock = threading.Lock()
        self.active: dict[str, tuple[str, ...]] = {}
        self.max_active = 0
        self.violations: list[str] = []

    def apply(self, task: Task, workspace: ScopedWorkspace) -> None:
        with self.lock:
            for other, targets in self.active.items():
                if set(targets) & set(task.targets):
                    self.violations.append(f"{task.id} overlaps {other}")
            if self.plan is not None:
                for dep in task.depends_on:
                    if self.plan.require_task(dep).status != TaskStatus.COMPLETED:
                        self.violations.append(f"{task.id} started before {dep} completed")
            self.active[task.id] = task.targets
            self.max_active = max(self.max_active, len(self.active))

        time.sleep(0.05)
        for target in task.targets:
            workspace.write_text(target, self.content)

        with self.lock:
            del self.active[task.id]


class EscapingHandler:
    """Effect handler that writes outside the task's targets."""

    def apply(self, task: Task, workspace: ScopedWorkspace) -> None:
        workspace.write_text("setup.py", "oops")


class FakeRevisions:
    def __init__(self) -> None:
        self.recorded: list[str] = []

    def record(self, task: Task) -> str | None:
        self.recorded.append(task.id)
        return f"rev-{task.id}"


class BrokenRevisions:
    def record(self, task: Task) -> str | None:
        raise PlanEngineError("git is unhappy")


# =============================================================================
# Configuration Tests
# =============================================================================


class TestDriverConfig:
    """Test driver configuration."""

    def test_defaults(self) -> None:
        config = DriverConfig()

        assert config.max_retries == 3
        assert not config.parallel
        assert config.round_size == 1

    def test_parallel_round_size(self) -> None:
        assert DriverConfig(parallel=True, workers=3).round_size == 3

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": -1}, {"workers": 0}, {"timeout": 0}, {"max_steps": -1}],
    )
    def test_invalid_values(self, kwargs: dict, workspace: Path) -> None:
        with pytest.raises(ConfigurationError):
            Driver(DriverConfig(**kwargs), workspace=workspace)

    @pytest.mark.asyncio
    async def test_unknown_phase(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.1")])))
        driver = Driver(DriverConfig(phase="Z"), workspace=workspace)

        with pytest.raises(ConfigurationError):
            await driver.run(plan)


# =============================================================================
# Step Tests
# =============================================================================


class TestStep:
    """Test single steps."""

    @pytest.mark.asyncio
    async def test_two_steps_follow_dependencies(self, load, workspace: Path) -> None:
        """Test the first step runs A.1 and the second A.2."""
        plan, path = load(
            document(
                ("A", [task("A.1", verify="test -f out/A.1.txt"), task("A.2", deps="A.1")])
            )
        )
        driver = Driver(workspace=workspace)

        first = await driver.step(plan)
        assert first.executed == ["A.1"]
        assert first.outcomes[0].status == TaskStatus.COMPLETED
        assert first.message == "Ran A.1 (completed)"
        assert first.exit_code == 0
        assert "- [x] **A.1**" in path.read_text()

        second = await driver.step(plan)
        assert second.executed == ["A.2"]
        assert plan.require_task("A.2").status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_blocked_after_failure(self, load, workspace: Path) -> None:
        """Test a failed dependency leaves the next step blocked on it."""
        plan, path = load(
            document(("A", [task("A.1", verify="false"), task("A.2", deps="A.1")]))
        )
        driver = Driver(workspace=workspace)

        first = await driver.step(plan)
        assert first.outcomes[0].status == TaskStatus.FAILED_TERMINAL
        assert first.failed == ["A.1"]
        assert first.exit_code == 1

        second = await driver.step(plan)
        assert second.idle
        assert second.blocked == {"A.2": ["A.1"]}
        assert second.message == "Blocked on A.1"
        assert second.exit_code == 1
        assert "- [ ] **A.1**" in path.read_text()

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.1", mark="x")])))

        result = await Driver(workspace=workspace).step(plan)

        assert result.idle
        assert result.message == "No runnable tasks"
        assert result.exit_code == 0


# =============================================================================
# Run Tests
# =============================================================================


class TestRun:
    """Test full runs."""

    @pytest.mark.asyncio
    async def test_run_to_completion(self, load, workspace: Path) -> None:
        """Test every task completes in dependency order and is checkpointed."""
        plan, path = load(
            document(
                ("A", [task("A.1"), task("A.2", deps="A.1")]),
                ("B", [task("B.1", deps="A.2", verify="test -f out/A.2.txt")]),
            )
        )

        summary = await Driver(workspace=workspace).run(plan)

        assert summary.status == RunStatus.COMPLETED
        assert summary.exit_code == 0
        assert summary.order == ["A.1", "A.2", "B.1"]
        assert all(s == TaskStatus.COMPLETED for s in summary.statuses.values())
        assert path.read_text().count("- [x]") == 3
        assert "Status: completed" in summary.summary()

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, load, workspace: Path) -> None:
        """Test an always-failing task uses max_retries + 1 attempts."""
        plan, _ = load(document(("A", [task("A.1", verify="echo 'still broken'; exit 1")])))
        driver = Driver(DriverConfig(auto_fix=True, max_retries=2), workspace=workspace)

        summary = await driver.run(plan)

        assert summary.status == RunStatus.FAILED
        assert summary.exit_code == 1
        assert plan.require_task("A.1").status == TaskStatus.FAILED_TERMINAL
        assert plan.require_task("A.1").attempts == 3
        assert "still broken" in summary.failed["A.1"]

    @pytest.mark.asyncio
    async def test_cycle_executes_nothing(self, workspace: Path, write_plan) -> None:
        """Test a cyclic plan fails before any task runs."""
        path = write_plan(
            document(("B", [task("B.1", deps="B.2"), task("B.2", deps="B.1")]))
        )
        plan = PlanParser(ParserConfig(check_cycles=False)).parse(path)

        with pytest.raises(CycleError) as exc_info:
            await Driver(workspace=workspace).run(plan)

        assert exc_info.value.cycle == ["B.1", "B.2"]
        assert not (workspace / "out").exists()
        assert not (workspace / STATE_DIR).exists()

    @pytest.mark.asyncio
    async def test_failed_branch_does_not_stop_others(self, load, workspace: Path) -> None:
        """Test unrelated branches keep running after a failure."""
        plan, _ = load(
            document(
                ("A", [task("A.1", verify="false"), task("A.2", deps="A.1")]),
                ("B", [task("B.1")]),
            )
        )

        summary = await Driver(workspace=workspace).run(plan)

        assert summary.status == RunStatus.FAILED
        assert summary.order == ["A.1", "B.1"]
        assert summary.blocked == {"A.2": ["A.1"]}
        assert plan.require_task("B.1").status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_execution_error_is_not_retried(self, load, workspace: Path) -> None:
        """Test a task whose effect cannot apply ends FAILED with its error."""
        plan, _ = load(document(("A", [task("A.1", action="MODIFY", files=("missing.txt",))])))

        summary = await Driver(DriverConfig(auto_fix=True), workspace=workspace).run(plan)

        assert plan.require_task("A.1").status == TaskStatus.FAILED
        assert plan.require_task("A.1").attempts == 0
        assert "cannot modify" in summary.failed["A.1"]

    @pytest.mark.asyncio
    async def test_filesystem_error_fails_task(self, load, workspace: Path) -> None:
        """Test an OS error while applying an effect fails only that task."""
        (workspace / "d").mkdir()
        plan, _ = load(
            document(
                (
                    "A",
                    [
                        task("A.1", action="DELETE", files=("d",)),
                        task("A.2", files=("b.txt",)),
                    ],
                )
            )
        )
        driver = Driver(DriverConfig(parallel=True, workers=2), workspace=workspace)

        summary = await driver.run(plan)

        assert summary.status == RunStatus.FAILED
        assert summary.exit_code == 1
        assert plan.require_task("A.1").status == TaskStatus.FAILED
        assert "could not apply DELETE" in summary.failed["A.1"]
        assert plan.require_task("A.2").status == TaskStatus.COMPLETED
        assert (workspace / "d").is_dir()

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_cancelled_run_leaves_task_pending(self, load, workspace: Path) -> None:
        """Test cancelling mid-verification records the task as not done."""
        plan, path = load(document(("A", [task("A.1", action="EXECUTE", verify="sleep 3")])))
        driver = Driver(workspace=workspace)

        running = asyncio.create_task(driver.run(plan))
        await asyncio.sleep(0.5)
        running.cancel()

        with pytest.raises(asyncio.CancelledError):
            await running

        assert plan.require_task("A.1").status == TaskStatus.FAILED
        assert "- [ ] **A.1**" in path.read_text()

    @pytest.mark.asyncio
    async def test_scope_violation_aborts(self, load, workspace: Path) -> None:
        """Test an out-of-scope write aborts the whole run."""
        plan, _ = load(
            document(
                ("A", [task("A.1"), task("A.2", deps="A.1")]),
                ("B", [task("B.1")]),
            )
        )
        driver = Driver(workspace=workspace, handler=EscapingHandler())

        summary = await driver.run(plan)

        assert summary.status == RunStatus.ABORTED
        assert summary.exit_code == 1
        assert summary.order == ["A.1"]
        assert "outside declared targets" in summary.failed["A.1"]
        assert summary.blocked == {"A.2": ["A.1"]}
        assert plan.require_task("B.1").status == TaskStatus.PENDING
        assert not (workspace / "setup.py").exists()

    @pytest.mark.asyncio
    async def test_blocked_by_skipped(self, load, workspace: Path) -> None:
        """Test a skipped dependency blocks by default."""
        plan, _ = load(document(("A", [task("A.1", mark="-"), task("A.2", deps="A.1")])))

        summary = await Driver(workspace=workspace).run(plan)

        assert summary.status == RunStatus.BLOCKED
        assert summary.exit_code == 1
        assert summary.order == []

    @pytest.mark.asyncio
    async def test_skipped_satisfies(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.1", mark="-"), task("A.2", deps="A.1")])))

        summary = await Driver(DriverConfig(skipped_satisfies=True), workspace=workspace).run(plan)

        assert summary.status == RunStatus.COMPLETED
        assert summary.order == ["A.2"]
        assert plan.require_task("A.1").status == TaskStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_phase_scope(self, load, workspace: Path) -> None:
        """Test --phase limits execution to one phase."""
        plan, _ = load(
            document(
                ("A", [task("A.1", mark="x"), task("A.2")]),
                ("B", [task("B.1", deps="A.1"), task("B.2")]),
            )
        )

        summary = await Driver(DriverConfig(phase="B"), workspace=workspace).run(plan)

        assert summary.order == ["B.1", "B.2"]
        assert list(summary.statuses) == ["B.1", "B.2"]
        assert plan.require_task("A.2").status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_max_steps(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.1"), task("A.2")])))

        summary = await Driver(DriverConfig(max_steps=1), workspace=workspace).run(plan)

        assert summary.order == ["A.1"]

    @pytest.mark.asyncio
    async def test_deterministic(self, tmp_path: Path) -> None:
        """Test identical plans run in the same order to the same statuses."""
        content = document(
            ("A", [task("A.10"), task("A.2"), task("A.1", verify="false")]),
            ("B", [task("B.1", deps="A.2"), task("B.2", deps="A.1")]),
        )
        results = []
        for name in ("one", "two"):
            root = tmp_path / name
            root.mkdir()
            (root / "PLAN.md").write_text(content)
            plan = PlanParser().parse(root / "PLAN.md")
            summary = await Driver(workspace=root).run(plan)
            results.append((summary.order, summary.statuses))

        assert results[0] == results[1]
        assert results[0][0] == ["A.1", "A.2", "A.10", "B.1"]


# =============================================================================
# Resume / Fresh Start Tests
# =============================================================================


class TestResume:
    """Test resuming from the document's markers."""

    @pytest.fixture
    def resumable(self, load) -> tuple[Plan, Path]:
        """A.1 already done; running it again would leave a marker file."""
        return load(
            document(
                (
                    "A",
                    [
                        task("A.1", action="EXECUTE", command="touch a1-ran", mark="x"),
                        task("A.2", deps="A.1"),
                    ],
                )
            )
        )

    @pytest.mark.asyncio
    async def test_resume_skips_completed(self, resumable, workspace: Path) -> None:
        """Test completed tasks are never re-executed."""
        plan, _ = resumable

        summary = await Driver(workspace=workspace).run(plan)

        assert summary.order == ["A.2"]
        assert not (workspace / "a1-ran").exists()

    @pytest.mark.asyncio
    async def test_fresh_start_reruns(self, resumable, workspace: Path) -> None:
        """Test starting from the beginning resets completed tasks first."""
        plan, _ = resumable

        summary = await Driver(DriverConfig(fresh_start=True), workspace=workspace).run(plan)

        assert summary.order == ["A.1", "A.2"]
        assert (workspace / "a1-ran").exists()

    @pytest.mark.asyncio
    async def test_interrupted_run_resumes(self, load, workspace: Path) -> None:
        """Test a second process picks up where the first stopped."""
        plan, path = load(document(("A", [task("A.1"), task("A.2"), task("A.3")])))
        await Driver(DriverConfig(max_steps=1), workspace=workspace).run(plan)

        reloaded = PlanParser().parse(path)
        summary = await Driver(workspace=workspace).run(reloaded)

        assert summary.order == ["A.2", "A.3"]
        assert reloaded.is_complete


# =============================================================================
# Dry Run Tests
# =============================================================================


class TestDryRun:
    """Test dry runs."""

    @pytest.mark.asyncio
    async def test_reports_without_effects(self, load, workspace: Path) -> None:
        """Test a dry run reports the order and changes nothing."""
        plan, path = load(document(("A", [task("A.1"), task("A.2", deps="A.1")])))
        original = path.read_text()

        summary = await Driver(DriverConfig(dry_run=True), workspace=workspace).run(plan)

        assert summary.status == RunStatus.DRY_RUN
        assert summary.exit_code == 0
        assert summary.order == ["A.1", "A.2"]
        assert all(o.dry_run for o in summary.outcomes)
        assert not (workspace / "out").exists()
        assert not (workspace / STATE_DIR).exists()
        assert path.read_text() == original
        assert plan.require_task("A.1").status == TaskStatus.PENDING

        real = await Driver(workspace=workspace).run(plan)
        assert real.order == ["A.1", "A.2"]

    @pytest.mark.asyncio
    async def test_dry_step(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.1")])))

        result = await Driver(DriverConfig(dry_run=True), workspace=workspace).step(plan)

        assert result.dry_run
        assert result.message == "Would run A.1 (completed)"


# =============================================================================
# Parallel Tests
# =============================================================================


class TestParallel:
    """Test parallel rounds."""

    @pytest.mark.asyncio
    async def test_disjoint_targets(self, load, workspace: Path) -> None:
        """Test concurrent tasks never share a target."""
        plan, _ = load(
            document(
                (
                    "A",
                    [
                        task("A.1", files=("shared.txt",)),
                        task("A.2", files=("shared.txt", "b.txt")),
                        task("A.3", files=("c.txt",)),
                        task("A.4", files=("d.txt",), deps="A.3"),
                    ],
                )
            )
        )
        handler = WritingHandler(plan)
        driver = Driver(DriverConfig(parallel=True, workers=4), workspace=workspace, handler=handler)

        first = await driver.step(plan)
        assert first.executed == ["A.1", "A.3"]

        summary = await driver.run(plan)

        assert summary.order == ["A.2", "A.4"]
        assert handler.violations == []
        assert handler.max_active >= 2
        assert plan.is_complete

    @pytest.mark.asyncio
    async def test_completions_committed_in_id_order(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.3"), task("A.1"), task("A.2")])))
        driver = Driver(
            DriverConfig(parallel=True, workers=3),
            workspace=workspace,
            handler=WritingHandler(),
        )

        await driver.step(plan)

        completed = [cp.task_id for cp in driver.store.history() if cp.status == TaskStatus.COMPLETED]
        assert completed == ["A.1", "A.2", "A.3"]

    @pytest.mark.asyncio
    async def test_worker_limit(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.1"), task("A.2"), task("A.3")])))
        driver = Driver(DriverConfig(parallel=True, workers=2), workspace=workspace)

        result = await driver.step(plan)

        assert result.executed == ["A.1", "A.2"]


# =============================================================================
# Rollback and Revision Tests
# =============================================================================


class TestRollbackOnFailure:
    """Test phase rollback after a failed task."""

    @pytest.mark.asyncio
    async def test_phase_restored_and_run_halts(self, load, workspace: Path) -> None:
        (workspace / "config.ini").write_text("debug = false\n")
        content = document(
            (
                "A",
                [
                    task("A.1", files=("new.txt",), verify="test -f new.txt"),
                    task("A.2", action="MODIFY", files=("config.ini",), verify="false", deps="A.1"),
                ],
            ),
            ("B", [task("B.1")]),
        )
        plan, path = load(content)
        driver = Driver(
            DriverConfig(rollback_on_failure=True),
            workspace=workspace,
            handler=WritingHandler(),
        )

        summary = await driver.run(plan)

        assert summary.status == RunStatus.FAILED
        assert summary.order == ["A.1", "A.2"]
        assert [r.phase_id for r in summary.rollbacks] == ["A"]
        assert (workspace / "config.ini").read_text() == "debug = false\n"
        assert not (workspace / "new.txt").exists()
        assert plan.require_task("A.1").status == TaskStatus.PENDING
        assert plan.require_task("A.2").status == TaskStatus.PENDING
        assert plan.require_task("B.1").status == TaskStatus.PENDING
        assert path.read_text() == content


class TestRevisions:
    """Test revision recording on completion."""

    @pytest.mark.asyncio
    async def test_revision_recorded(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.1"), task("A.2", verify="false")])))
        revisions = FakeRevisions()
        driver = Driver(workspace=workspace, revisions=revisions)

        summary = await driver.run(plan)

        assert revisions.recorded == ["A.1"]
        assert summary.outcomes[0].revision == "rev-A.1"
        assert driver.store.last_revision == "rev-A.1"

    @pytest.mark.asyncio
    async def test_revision_failure_does_not_fail_task(self, load, workspace: Path) -> None:
        plan, _ = load(document(("A", [task("A.1")])))

        summary = await Driver(workspace=workspace, revisions=BrokenRevisions()).run(plan)

        assert summary.status == RunStatus.COMPLETED
        assert summary.outcomes[0].revision is None
