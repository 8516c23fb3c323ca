"""Tests for the task dependency graph."""

from __future__ import annotations

import sys

import pytest

from plan_engine.errors import CycleError
from plan_engine.executor.dependencies import DependencyGraph
from plan_engine.executor.models import Action, Task, TaskStatus
from plan_engine.executor.plan import Phase, Plan

# =============================================================================
# Fixtures
# =============================================================================


def make_task(
    task_id: str,
    *deps: str,
    targets: tuple[str, ...] = (),
    status: TaskStatus = TaskStatus.PENDING,
) -> Task:
    return Task(
        id=task_id,
        title=f"Task {task_id}",
        action=Action.CREATE,
        targets=targets or (f"{task_id}.txt",),
        depends_on=deps,
        phase=task_id.split(".")[0],
        status=status,
    )


def make_plan(*tasks: Task) -> Plan:
    phases: dict[str, Phase] = {}
    for task in tasks:
        phases.setdefault(task.phase, Phase(id=task.phase, name=task.phase)).tasks.append(task)
    return Plan(id="test", phases=list(phases.values()))


@pytest.fixture
def diamond() -> Plan:
    """A.1 -> (A.2, A.3) -> B.1."""
    return make_plan(
        make_task("A.1"),
        make_task("A.2", "A.1"),
        make_task("A.3", "A.1"),
        make_task("B.1", "A.2", "A.3"),
    )


# =============================================================================
# Graph Construction Tests
# =============================================================================


class TestBuild:
    """Test graph construction."""

    def test_edges(self, diamond: Plan) -> None:
        """Test dependencies and dependents are both recorded."""
        graph = DependencyGraph.build(diamond)

        assert graph.task_count == 4
        assert graph.get_dependencies("B.1") == {"A.2", "A.3"}
        assert graph.get_dependents("A.1") == {"A.2", "A.3"}
        assert graph.get_dependents("A.1", transitive=True) == {"A.2", "A.3", "B.1"}
        assert graph.get_dependencies("Z.1") == set()

    def test_cycle_raises(self) -> None:
        """Test a cycle is reported with its members sorted."""
        plan = make_plan(make_task("A.1"), make_task("B.2", "B.1"), make_task("B.1", "A.1", "B.2"))

        with pytest.raises(CycleError) as exc_info:
            DependencyGraph.build(plan)

        assert exc_info.value.cycle == ["B.1", "B.2"]

    def test_longer_cycle(self) -> None:
        """Test a three-task cycle."""
        plan = make_plan(make_task("A.1", "A.3"), make_task("A.2", "A.1"), make_task("A.3", "A.2"))

        with pytest.raises(CycleError) as exc_info:
            DependencyGraph.build(plan)

        assert exc_info.value.cycle == ["A.1", "A.2", "A.3"]

    def test_long_chain(self) -> None:
        """Test a chain deeper than the interpreter's recursion limit."""
        depth = sys.getrecursionlimit() * 2
        tasks = [make_task(f"A.{n}", f"A.{n + 1}") for n in range(1, depth)]
        tasks.append(make_task(f"A.{depth}"))

        graph = DependencyGraph.build(make_plan(*tasks))

        assert graph.find_cycle() is None
        assert graph.topological_order()[-1] == "A.1"

    def test_long_cycle(self) -> None:
        """Test a cycle spanning a chain deeper than the recursion limit."""
        depth = sys.getrecursionlimit() * 2
        tasks = [make_task(f"A.{n}", f"A.{n + 1}") for n in range(1, depth)]
        tasks.append(make_task(f"A.{depth}", "A.1"))

        with pytest.raises(CycleError) as exc_info:
            DependencyGraph.build(make_plan(*tasks))

        assert len(exc_info.value.cycle) == depth
        assert exc_info.value.cycle[0] == "A.1"

    def test_topological_order(self, diamond: Plan) -> None:
        """Test Kahn ordering is deterministic."""
        graph = DependencyGraph.build(diamond)

        assert graph.topological_order() == ["A.1", "A.2", "A.3", "B.1"]

    def test_to_dict_and_visualize(self, diamond: Plan) -> None:
        """Test serialized and Mermaid forms."""
        graph = DependencyGraph.build(diamond)

        data = graph.to_dict()
        assert data["order"] == ["A.1", "A.2", "A.3", "B.1"]
        assert data["nodes"][0] == {"task_id": "A.1", "dependencies": [], "dependents": ["A.2", "A.3"]}

        mermaid = graph.visualize()
        assert mermaid.startswith("graph TD")
        assert 't_A_1["A.1"] --> t_A_2["A.2"]' in mermaid


# =============================================================================
# Runnable Frontier Tests
# =============================================================================


class TestNextRunnable:
    """Test the runnable frontier."""

    def test_roots_first(self, diamond: Plan) -> None:
        """Test only tasks without dependencies are runnable initially."""
        graph = DependencyGraph.build(diamond)

        assert graph.next_runnable(diamond) == ["A.1"]

    def test_frontier_advances(self, diamond: Plan) -> None:
        """Test completing a dependency releases its dependents."""
        graph = DependencyGraph.build(diamond)
        diamond.require_task("A.1").status = TaskStatus.COMPLETED

        assert graph.next_runnable(diamond) == ["A.2", "A.3"]

    def test_numeric_order(self) -> None:
        """Test A.2 runs before A.10."""
        plan = make_plan(make_task("A.10"), make_task("A.2"), make_task("A.1.b"))
        graph = DependencyGraph.build(plan)

        assert graph.next_runnable(plan) == ["A.1.b", "A.2", "A.10"]

    def test_scope(self, diamond: Plan) -> None:
        """Test restricting the frontier to one phase."""
        for task_id in ("A.1", "A.2", "A.3"):
            diamond.require_task(task_id).status = TaskStatus.COMPLETED
        graph = DependencyGraph.build(diamond)

        assert graph.next_runnable(diamond, "A") == []
        assert graph.next_runnable(diamond, "B") == ["B.1"]

    def test_cross_phase_dependency_respected(self, diamond: Plan) -> None:
        """Test a scoped run still waits on other phases."""
        graph = DependencyGraph.build(diamond)

        assert graph.next_runnable(diamond, "B") == []
        assert graph.blocked_tasks(diamond, "B") == {"B.1": ["A.2", "A.3"]}

    def test_skipped_does_not_satisfy_by_default(self) -> None:
        """Test a SKIPPED dependency blocks its dependents."""
        plan = make_plan(make_task("A.1", status=TaskStatus.SKIPPED), make_task("A.2", "A.1"))
        graph = DependencyGraph.build(plan)

        assert graph.next_runnable(plan) == []
        assert graph.blocked_tasks(plan) == {"A.2": ["A.1"]}

    def test_skipped_satisfies_flag(self) -> None:
        """Test the skipped_satisfies flag releases dependents."""
        plan = make_plan(make_task("A.1", status=TaskStatus.SKIPPED), make_task("A.2", "A.1"))
        graph = DependencyGraph.build(plan)

        assert graph.next_runnable(plan, skipped_satisfies=True) == ["A.2"]

    def test_failed_dependency_blocks(self, diamond: Plan) -> None:
        """Test a terminally failed dependency never releases dependents."""
        diamond.require_task("A.1").status = TaskStatus.COMPLETED
        diamond.require_task("A.2").status = TaskStatus.FAILED_TERMINAL
        diamond.require_task("A.3").status = TaskStatus.COMPLETED
        graph = DependencyGraph.build(diamond)

        assert graph.next_runnable(diamond) == []
        assert graph.blocked_by(diamond.require_task("B.1"), diamond) == ["A.2"]

    def test_non_pending_excluded(self) -> None:
        """Test only PENDING tasks are candidates."""
        plan = make_plan(
            make_task("A.1", status=TaskStatus.COMPLETED),
            make_task("A.2", status=TaskStatus.FAILED),
            make_task("A.3"),
        )
        graph = DependencyGraph.build(plan)

        assert graph.next_runnable(plan) == ["A.3"]


# =============================================================================
# Parallel Selection Tests
# =============================================================================


class TestSelectDisjoint:
    """Test choosing tasks for a parallel round."""

    def test_overlapping_targets_deferred(self) -> None:
        """Test a task sharing a target with an earlier pick is left out."""
        tasks = [
            make_task("A.1", targets=("shared.py",)),
            make_task("A.2", targets=("shared.py", "other.py")),
            make_task("A.3", targets=("third.py",)),
        ]

        chosen = DependencyGraph.select_disjoint(tasks, limit=4)

        assert [t.id for t in chosen] == ["A.1", "A.3"]

    def test_limit(self) -> None:
        """Test no more than ``limit`` tasks are picked."""
        tasks = [make_task(f"A.{n}") for n in range(1, 6)]

        chosen = DependencyGraph.select_disjoint(tasks, limit=2)

        assert [t.id for t in chosen] == ["A.1", "A.2"]

    def test_in_flight_targets_held(self) -> None:
        """Test targets of running tasks are unavailable."""
        running = [make_task("A.9", targets=("a.py",))]
        tasks = [make_task("A.1", targets=("a.py",)), make_task("A.2", targets=("b.py",))]

        chosen = DependencyGraph.select_disjoint(tasks, limit=4, in_flight=running)

        assert [t.id for t in chosen] == ["A.2"]

    def test_pairwise_disjoint(self) -> None:
        """Test the chosen set never shares a target."""
        tasks = [
            make_task("A.1", targets=("x", "y")),
            make_task("A.2", targets=("y", "z")),
            make_task("A.3", targets=("z",)),
            make_task("A.4", targets=("w",)),
        ]

        chosen = DependencyGraph.select_disjoint(tasks, limit=10)

        seen: set[str] = set()
        for task in chosen:
            assert seen.isdisjoint(task.targets)
            seen.update(task.targets)
        assert [t.id for t in chosen] == ["A.1", "A.3", "A.4"]
