"""Task dependency graph for the Executor module.

Builds a DAG over plan tasks from their explicit ``Depends on`` declarations
and answers the scheduling questions the driver asks:

- Which tasks are runnable right now (the runnable frontier)?
- Which tasks are blocked, and by what?
- Which runnable tasks can share a parallel round (disjoint targets)?
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from plan_engine.errors import CycleError
from plan_engine.executor.models import Task, TaskStatus, task_sort_key
from plan_engine.executor.plan import Plan
from plan_engine.logging import get_logger

logger = get_logger("executor.dependencies")


@dataclass
class TaskNode:
    """A node in the task dependency graph.

    Attributes:
        task_id: Unique task identifier.
        dependencies: Ids this task waits on.
        dependents: Ids that wait on this task.
    """

    task_id: str
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "dependencies": sorted(self.dependencies, key=task_sort_key),
            "dependents": sorted(self.dependents, key=task_sort_key),
        }


class DependencyGraph:
    """Directed acyclic graph of ``dependency -> dependent`` edges.

    Example:
        >>> graph = DependencyGraph.build(plan)
        >>> graph.next_runnable(plan)
        ['A.1']
        >>> graph.blocked_by(plan.require_task("A.2"), plan)
        ['A.1']
    """

    def __init__(self) -> None:
        self._nodes: dict[str, TaskNode] = {}

    @classmethod
    def build(cls, plan: Plan) -> DependencyGraph:
        """Build the graph for a plan and check it for cycles.

        Dependencies on unknown ids are ignored here; the parser reports them
        as dangling before a graph is ever built.

        Raises:
            CycleError: If any dependency chain loops back on itself.
        """
        graph = cls()
        for task in plan.all_tasks():
            graph._nodes[task.id] = TaskNode(task_id=task.id)

        for task in plan.all_tasks():
            for dep in task.depends_on:
                if dep not in graph._nodes:
                    continue
                graph._nodes[task.id].dependencies.add(dep)
                graph._nodes[dep].dependents.add(task.id)

        cycle = graph.find_cycle()
        if cycle:
            raise CycleError(cycle)

        logger.debug(f"Built dependency graph for {len(graph._nodes)} tasks")
        return graph

    @property
    def task_count(self) -> int:
        """Number of tasks in the graph."""
        return len(self._nodes)

    # =========================================================================
    # Cycle Detection
    # =========================================================================

    def find_cycle(self) -> list[str] | None:
        """Find one dependency cycle using an iterative DFS.

        Returns:
            The ids on the cycle in ascending order, or None when acyclic.
        """
        visited: set[str] = set()
        on_path: set[str] = set()
        path: list[str] = []
        # Each frame is a node and an iterator over its remaining dependencies
        stack: list[tuple[str, Iterator[str]]] = []

        def enter(node: str) -> None:
            visited.add(node)
            on_path.add(node)
            path.append(node)
            deps = sorted(self._nodes[node].dependencies, key=task_sort_key)
            stack.append((node, iter(deps)))

        for root in sorted(self._nodes, key=task_sort_key):
            if root in visited:
                continue

            enter(root)
            while stack:
                node, deps = stack[-1]
                dep = next(deps, None)
                if dep is None:
                    stack.pop()
                    path.pop()
                    on_path.remove(node)
                elif dep in on_path:
                    # Back edge: the cycle is the path from dep to here
                    return sorted(path[path.index(dep) :], key=task_sort_key)
                elif dep not in visited:
                    enter(dep)
        return None

    # =========================================================================
    # Queries
    # =========================================================================

    def get_dependencies(self, task_id: str) -> set[str]:
        """Direct dependencies of a task."""
        node = self._nodes.get(task_id)
        return set(node.dependencies) if node else set()

    def get_dependents(self, task_id: str, *, transitive: bool = False) -> set[str]:
        """Tasks that depend on ``task_id``, directly or transitively."""
        node = self._nodes.get(task_id)
        if node is None:
            return set()
        if not transitive:
            return set(node.dependents)

        seen: set[str] = set()
        stack = list(node.dependents)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._nodes[current].dependents)
        return seen

    def topological_order(self) -> list[str]:
        """All task ids in a dependency-respecting, deterministic order (Kahn)."""
        in_degree = {tid: len(node.dependencies) for tid, node in self._nodes.items()}
        ready = sorted((tid for tid, deg in in_degree.items() if deg == 0), key=task_sort_key)
        order: list[str] = []

        while ready:
            current = ready.pop(0)
            order.append(current)
            for dependent in self._nodes[current].dependents:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)
            ready.sort(key=task_sort_key)

        return order

    @staticmethod
    def dependency_satisfied(status: TaskStatus, *, skipped_satisfies: bool = False) -> bool:
        """Whether a dependency in ``status`` lets its dependents run."""
        if status == TaskStatus.COMPLETED:
            return True
        return skipped_satisfies and status == TaskStatus.SKIPPED

    def blocked_by(
        self,
        task: Task,
        plan: Plan,
        *,
        skipped_satisfies: bool = False,
    ) -> list[str]:
        """Dependencies of ``task`` that are not yet satisfied."""
        unmet = [
            dep
            for dep in self.get_dependencies(task.id)
            if not self.dependency_satisfied(
                plan.require_task(dep).status, skipped_satisfies=skipped_satisfies
            )
        ]
        return sorted(unmet, key=task_sort_key)

    def next_runnable(
        self,
        plan: Plan,
        scope: str | None = None,
        *,
        skipped_satisfies: bool = False,
    ) -> list[str]:
        """Ids of PENDING tasks whose dependencies are all satisfied.

        Args:
            plan: Plan holding the current statuses.
            scope: Optional phase id to restrict the result to.
            skipped_satisfies: Let SKIPPED dependencies count as satisfied.

        Returns:
            Runnable ids in ascending ``(phase, number, subletter)`` order.
        """
        runnable = []
        for task in plan.all_tasks():
            if task.status != TaskStatus.PENDING:
                continue
            if scope is not None and task.phase != scope:
                continue
            if self.blocked_by(task, plan, skipped_satisfies=skipped_satisfies):
                continue
            runnable.append(task.id)
        return sorted(runnable, key=task_sort_key)

    def blocked_tasks(
        self,
        plan: Plan,
        scope: str | None = None,
        *,
        skipped_satisfies: bool = False,
    ) -> dict[str, list[str]]:
        """PENDING tasks that cannot run yet, mapped to their unmet dependencies."""
        blocked: dict[str, list[str]] = {}
        for task in sorted(plan.all_tasks(), key=lambda t: t.sort_key):
            if task.status != TaskStatus.PENDING:
                continue
            if scope is not None and task.phase != scope:
                continue
            unmet = self.blocked_by(task, plan, skipped_satisfies=skipped_satisfies)
            if unmet:
                blocked[task.id] = unmet
        return blocked

    # =========================================================================
    # Parallel Selection
    # =========================================================================

    @staticmethod
    def select_disjoint(
        tasks: list[Task],
        limit: int,
        *,
        in_flight: list[Task] | None = None,
    ) -> list[Task]:
        """Pick a maximal subset with pairwise-disjoint targets.

        Tasks are considered in id order; a task is taken when none of its
        targets is held by an already-chosen or in-flight task.

        Args:
            tasks: Candidate runnable tasks.
            limit: Maximum number of tasks to pick (worker count).
            in_flight: Tasks already running whose targets are held.

        Returns:
            The chosen tasks in id order.
        """
        held: set[str] = set()
        for task in in_flight or []:
            held.update(task.targets)

        chosen: list[Task] = []
        for task in sorted(tasks, key=lambda t: t.sort_key):
            if len(chosen) >= max(limit, 1):
                break
            if held.intersection(task.targets):
                logger.debug(f"Deferring {task.id}: targets overlap an in-flight task")
                continue
            chosen.append(task)
            held.update(task.targets)
        return chosen

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "nodes": [
                self._nodes[tid].to_dict() for tid in sorted(self._nodes, key=task_sort_key)
            ],
            "order": self.topological_order(),
        }

    def visualize(self) -> str:
        """Render the graph as a Mermaid flowchart."""
        lines = ["graph TD"]
        for tid in sorted(self._nodes, key=task_sort_key):
            node = self._nodes[tid]
            if not node.dependencies and not node.dependents:
                lines.append(f'    {_mermaid_id(tid)}["{tid}"]')
            for dependent in sorted(node.dependents, key=task_sort_key):
                lines.append(f'    {_mermaid_id(tid)}["{tid}"] --> {_mermaid_id(dependent)}["{dependent}"]')
        return "\n".join(lines)


def _mermaid_id(task_id: str) -> str:
    return "t_" + task_id.replace(".", "_")
