"""Progress reporting for plan execution.

``summarize`` is a pure function of a plan: it counts tasks by status, works
out what can run next and what is blocked, and estimates the time remaining
from the ``Estimate`` entries of unfinished tasks.

Example:
    ```python
    from plan_engine.executor.progress import summarize

    summary = summarize(plan)
    print(f"Progress: {summary.percent:.0f}%")
    print(f"ETA: {summary.estimated_remaining}")
    ```
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from plan_engine.errors import CycleError
from plan_engine.executor.dependencies import DependencyGraph
from plan_engine.executor.models import TaskStatus
from plan_engine.executor.plan import Plan
from plan_engine.logging import get_logger

logger = get_logger("executor.progress")

# 1d 2h 30m 45s, also "45 min", "2 hours", "1.5h"
ESTIMATE_PART_PATTERN = re.compile(
    r"(\d+(?:\.\d+)?)\s*(d|days?|h|hrs?|hours?|m|mins?|minutes?|s|secs?|seconds?)(?![a-z])",
    re.IGNORECASE,
)

UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}


def parse_estimate(estimate: str) -> timedelta | None:
    """Parse a duration estimate such as ``30m``, ``1h30m`` or ``45 min``.

    Returns:
        The duration, or None if the text has no recognizable duration.
    """
    matches = ESTIMATE_PART_PATTERN.findall(estimate or "")
    if not matches:
        return None
    seconds = 0.0
    for amount, unit in matches:
        seconds += float(amount) * UNIT_SECONDS[unit[0].lower()]
    return timedelta(seconds=seconds)


def format_duration(duration: timedelta) -> str:
    """Render a duration as ``1h 30m``."""
    total_minutes = int(duration.total_seconds() // 60)
    hours, minutes = divmod(total_minutes, 60)
    if hours and minutes:
        return f"{hours}h {minutes}m"
    if hours:
        return f"{hours}h"
    return f"{minutes}m"


@dataclass
class ProgressSummary:
    """Summary of progress through a plan.

    Attributes:
        scope: Phase the summary covers (None for the whole plan).
        total: Total number of tasks.
        counts: Number of tasks per status value.
        percent: Percentage of tasks COMPLETED or SKIPPED.
        runnable: Ids that could run now.
        blocked: Ids waiting on unmet dependencies.
        estimated_remaining: Sum of parseable estimates of unfinished tasks.
        unestimated: Unfinished tasks whose estimate could not be parsed.
    """

    scope: str | None
    total: int
    counts: dict[str, int] = field(default_factory=dict)
    percent: float = 0.0
    runnable: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    estimated_remaining: timedelta | None = None
    unestimated: int = 0

    @property
    def completed(self) -> int:
        return self.counts.get(TaskStatus.COMPLETED.value, 0)

    @property
    def skipped(self) -> int:
        return self.counts.get(TaskStatus.SKIPPED.value, 0)

    @property
    def pending(self) -> int:
        return self.counts.get(TaskStatus.PENDING.value, 0)

    @property
    def failed(self) -> int:
        return self.counts.get(TaskStatus.FAILED.value, 0) + self.counts.get(
            TaskStatus.FAILED_TERMINAL.value, 0
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "scope": self.scope,
            "total": self.total,
            "counts": self.counts,
            "percent": self.percent,
            "runnable": self.runnable,
            "blocked": self.blocked,
            "estimated_remaining_seconds": (
                self.estimated_remaining.total_seconds() if self.estimated_remaining else None
            ),
            "unestimated": self.unestimated,
        }


def summarize(
    plan: Plan,
    scope: str | None = None,
    *,
    skipped_satisfies: bool = False,
) -> ProgressSummary:
    """Summarize a plan's progress without changing it.

    Args:
        plan: The plan to summarize.
        scope: Optional phase id to restrict the summary to.
        skipped_satisfies: Let SKIPPED dependencies count as satisfied.
    """
    tasks = plan.tasks_in(scope)
    counts = {status.value: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status.value] += 1

    done = counts[TaskStatus.COMPLETED.value] + counts[TaskStatus.SKIPPED.value]
    percent = (done / len(tasks)) * 100 if tasks else 0.0

    runnable: list[str] = []
    blocked: list[str] = []
    try:
        graph = DependencyGraph.build(plan)
    except CycleError:
        logger.warning(f"Plan {plan.id} has a dependency cycle; runnable set unavailable")
    else:
        runnable = graph.next_runnable(plan, scope, skipped_satisfies=skipped_satisfies)
        blocked = list(graph.blocked_tasks(plan, scope, skipped_satisfies=skipped_satisfies))

    remaining = timedelta()
    estimated = False
    unestimated = 0
    for task in tasks:
        if task.status.is_done:
            continue
        duration = parse_estimate(task.estimate)
        if duration is None:
            unestimated += 1
            continue
        remaining += duration
        estimated = True

    return ProgressSummary(
        scope=scope,
        total=len(tasks),
        counts=counts,
        percent=percent,
        runnable=runnable,
        blocked=blocked,
        estimated_remaining=remaining if estimated else None,
        unestimated=unestimated,
    )
