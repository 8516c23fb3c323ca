"""Plan document parser and serializer for the Executor module.

A plan document is a Markdown checklist grouped under phase headers::

    # Plan: Add user accounts

    ## Phase A: Foundation

    - [ ] **A.1** Create the user model
      - **File**: `src/models/user.py`
      - **Action**: CREATE
      - **Verify**: `python -m pytest tests/test_user.py`
      - **Estimate**: 20m

    - [x] **A.2** Document the model
      - **Files**: `docs/user.md`
      - **Action**: CREATE
      - **Verify**: none
      - **Depends on**: A.1

Parsing records the offset of every status marker so ``serialize`` can
rewrite markers in place and leave every other byte of the document alone.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path

from plan_engine.errors import ParseError, ParseErrorKind, ParseProblem
from plan_engine.executor.dependencies import DependencyGraph
from plan_engine.executor.models import TASK_ID_PATTERN, Action, Task, TaskStatus
from plan_engine.executor.plan import Phase, Plan
from plan_engine.logging import get_logger

logger = get_logger("executor.parser")

# =============================================================================
# Regex Patterns
# =============================================================================

# Document title: # Title
TITLE_PATTERN = re.compile(r"^#\s+(.+?)\s*$")

# Phase header: ## Phase A: Name (case-insensitive, ':' or '-')
PHASE_PATTERN = re.compile(
    r"^##\s+phase\s+([A-Za-z0-9]+)\s*[:\-]\s*(.*?)\s*$",
    re.IGNORECASE,
)

# Any other heading ends the current task's metadata block
HEADING_PATTERN = re.compile(r"^#{1,6}\s")

# Checkbox item: - [ ] body, * [x] body, + [-] body
CHECKBOX_PATTERN = re.compile(r"^(\s*)[-*+]\s+\[(.)\]\s+(.+?)\s*$")

# Task head inside a checkbox body: **A.1** Title, Task A.1: Title, A.1.b - Title.
# The match is case-insensitive; captured ids are checked against TASK_ID_PATTERN.
TASK_HEAD_PATTERN = re.compile(
    r"^\**(?:task\s+)?([A-Za-z0-9]+\.\d+(?:\.[a-z])?)\**\s*[:.\-]?\**\s*(.*)$",
    re.IGNORECASE,
)

# Metadata: **Key**: value, **Key:** value, optionally as a nested bullet
METADATA_PATTERN = re.compile(
    r"^\s*(?:[-*+]\s+)?\*\*([A-Za-z][A-Za-z ]*?)\s*:?\*\*\s*:?\s*(.*?)\s*$"
)

# Backtick extraction
BACKTICK_PATTERN = re.compile(r"`([^`]+)`")

# Status marker characters
MARKER_STATUS = {
    " ": TaskStatus.PENDING,
    "x": TaskStatus.COMPLETED,
    "X": TaskStatus.COMPLETED,
    "-": TaskStatus.SKIPPED,
}

# Values that declare a task has no verification step
NO_VERIFY_VALUES = frozenset({"none", "no verification", "n/a", "na", "-"})

# Values that declare an empty dependency list
NO_DEPENDENCY_VALUES = frozenset({"none", "n/a", "na", "-", ""})

TARGET_KEYS = frozenset({"file", "files", "target", "targets"})
DEPENDS_KEYS = frozenset({"depends on", "depends", "dependencies"})


# =============================================================================
# Parser Configuration
# =============================================================================


@dataclass
class ParserConfig:
    """Configuration for plan parsing.

    Attributes:
        check_cycles: Build the dependency graph after parsing so cycles are
            reported as ``CycleError``.
        require_phase_prefix: Require task ids to start with their phase id.
    """

    check_cycles: bool = True
    require_phase_prefix: bool = True


@dataclass
class _TaskDraft:
    """Fields collected for one task while scanning lines."""

    id: str
    title: str
    status: TaskStatus
    phase: str
    line_number: int
    marker_offset: int
    targets: list[str] = field(default_factory=list)
    action: str | None = None
    verify: str | None = None
    verify_declared: bool = False
    depends_on: list[str] = field(default_factory=list)
    estimate: str = ""
    command: str | None = None
    fix: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


# =============================================================================
# Status Markers
# =============================================================================


def persisted_status(status: TaskStatus) -> TaskStatus:
    """Project a status onto what the document can record.

    Only COMPLETED and SKIPPED survive in the document; everything else is
    written back as PENDING so an interrupted or failed task resumes cleanly.
    """
    if status in (TaskStatus.COMPLETED, TaskStatus.SKIPPED):
        return status
    return TaskStatus.PENDING


def render_marker(status: TaskStatus, original: str = " ") -> str:
    """Marker character for ``status``, keeping ``original`` when equivalent."""
    target = persisted_status(status)
    if MARKER_STATUS.get(original) == target:
        return original
    if target == TaskStatus.COMPLETED:
        return "x"
    if target == TaskStatus.SKIPPED:
        return "-"
    return " "


def slugify(text: str) -> str:
    """Lowercase slug used for plan identifiers."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "plan"


def normalize_target(raw: str) -> str:
    """Normalize a target path to a relative POSIX form."""
    value = raw.strip().strip("`").replace("\\", "/")
    normalized = posixpath.normpath(value)
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


# =============================================================================
# PlanParser
# =============================================================================


class PlanParser:
    """Parser for plan documents.

    Example:
        >>> parser = PlanParser()
        >>> plan = parser.parse("./PLAN.md")
        >>> print(f"Found {len(plan.phases)} phases, {plan.total_tasks} tasks")

    Attributes:
        config: Parser configuration.
    """

    def __init__(self, config: ParserConfig | None = None) -> None:
        """Initialize the parser.

        Args:
            config: Parser configuration. Uses defaults if not provided.
        """
        self.config = config or ParserConfig()
        self._problems: list[ParseProblem] = []

    def parse(self, path: str | Path) -> Plan:
        """Parse a plan document from disk.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ParseError: If the document is malformed.
            CycleError: If the dependencies contain a cycle.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Plan document not found: {path}")

        # newline="" keeps \r\n intact so offsets match the bytes on disk
        with open(path, encoding="utf-8", newline="") as f:
            content = f.read()
        return self.parse_string(content, path=str(path))

    def parse_string(self, content: str, path: str = "") -> Plan:
        """Parse a plan document from a string.

        Args:
            content: Document text.
            path: Source path (metadata only; also used to derive the plan id).

        Returns:
            Parsed Plan object.
        """
        self._problems = []
        title, phases = self._scan(content)

        if not any(phase.tasks for phase in phases) and not self._problems:
            self._add_problem(ParseErrorKind.EMPTY_PLAN, "Plan document contains no tasks")

        self._check_references(phases)

        if self._problems:
            raise ParseError(self._problems)

        plan_id = slugify(Path(path).stem) if path else slugify(title)
        plan = Plan(id=plan_id, title=title, phases=phases, source=content, path=path)

        if self.config.check_cycles:
            DependencyGraph.build(plan)

        logger.debug(f"Parsed plan {plan.id}: {len(phases)} phases, {plan.total_tasks} tasks")
        return plan

    @property
    def problems(self) -> list[ParseProblem]:
        """Problems from the last parse operation."""
        return self._problems.copy()

    # =========================================================================
    # Line Scanning
    # =========================================================================

    def _scan(self, content: str) -> tuple[str, list[Phase]]:
        """Walk the document line by line, building phases and tasks."""
        title = ""
        phases: list[Phase] = []
        current_phase: Phase | None = None
        current_task: _TaskDraft | None = None
        offset = 0

        for line_number, raw_line in enumerate(content.splitlines(keepends=True), start=1):
            line = raw_line.rstrip("\r\n")
            line_offset = offset
            offset += len(raw_line)

            phase_match = PHASE_PATTERN.match(line)
            if phase_match:
                self._finish_task(current_task, current_phase)
                current_task = None
                phase_id = phase_match.group(1)
                if any(p.id == phase_id for p in phases):
                    self._add_problem(
                        ParseErrorKind.INVALID_ID,
                        f"Duplicate phase id '{phase_id}'",
                        line_number,
                    )
                current_phase = Phase(
                    id=phase_id, name=phase_match.group(2), line_number=line_number
                )
                phases.append(current_phase)
                continue

            if HEADING_PATTERN.match(line):
                self._finish_task(current_task, current_phase)
                current_task = None
                title_match = TITLE_PATTERN.match(line)
                if title_match and not title and not phases:
                    title = title_match.group(1)
                continue

            checkbox = CHECKBOX_PATTERN.match(line)
            if checkbox:
                head = TASK_HEAD_PATTERN.match(checkbox.group(3))
                if head is None:
                    if not checkbox.group(1):
                        self._add_problem(
                            ParseErrorKind.INVALID_ID,
                            f"Checklist item has no task id: {checkbox.group(3)[:50]}",
                            line_number,
                        )
                    continue

                self._finish_task(current_task, current_phase)
                current_task = self._start_task(
                    head=head,
                    mark=checkbox.group(2),
                    marker_offset=line_offset + checkbox.start(2),
                    line_number=line_number,
                    phase=current_phase,
                )
                continue

            if current_task is not None:
                meta = METADATA_PATTERN.match(line)
                if meta:
                    self._apply_field(current_task, meta.group(1), meta.group(2), line_number)

        self._finish_task(current_task, current_phase)
        return title, phases

    def _start_task(
        self,
        head: re.Match[str],
        mark: str,
        marker_offset: int,
        line_number: int,
        phase: Phase | None,
    ) -> _TaskDraft:
        task_id = head.group(1)
        title = head.group(2).replace("**", "").strip()

        if not TASK_ID_PATTERN.match(task_id):
            self._add_problem(
                ParseErrorKind.INVALID_ID,
                f"Malformed task id '{task_id}' (expected e.g. A.1 or A.1.b)",
                line_number,
                task_id,
            )

        status = MARKER_STATUS.get(mark)
        if status is None:
            self._add_problem(
                ParseErrorKind.INVALID_VALUE,
                f"Unknown status marker '[{mark}]' (expected [ ], [x] or [-])",
                line_number,
                task_id,
            )
            status = TaskStatus.PENDING

        if phase is None:
            self._add_problem(
                ParseErrorKind.NO_PHASE,
                f"Task {task_id} appears before any '## Phase' header",
                line_number,
                task_id,
            )
        elif self.config.require_phase_prefix and task_id.split(".")[0] != phase.id:
            self._add_problem(
                ParseErrorKind.INVALID_ID,
                f"Task {task_id} is not prefixed with its phase id '{phase.id}'",
                line_number,
                task_id,
            )

        return _TaskDraft(
            id=task_id,
            title=title,
            status=status,
            phase=phase.id if phase else "",
            line_number=line_number,
            marker_offset=marker_offset,
        )

    # =========================================================================
    # Field Extraction
    # =========================================================================

    def _apply_field(self, draft: _TaskDraft, key: str, value: str, line_number: int) -> None:
        """Record one ``**Key**: value`` line on a task draft."""
        key = " ".join(key.lower().split())

        if key in TARGET_KEYS:
            for raw in self._split_list(value):
                target = normalize_target(raw)
                if target.startswith("/") or target == ".." or target.startswith("../"):
                    self._add_problem(
                        ParseErrorKind.INVALID_VALUE,
                        f"Target '{raw}' must be a path inside the workspace",
                        line_number,
                        draft.id,
                    )
                    continue
                if target not in draft.targets:
                    draft.targets.append(target)
        elif key == "action":
            draft.action = value
        elif key == "verify":
            draft.verify_declared = True
            command = self._unwrap(value)
            draft.verify = None if command.lower() in NO_VERIFY_VALUES else command
        elif key in DEPENDS_KEYS:
            if value.strip().lower() in NO_DEPENDENCY_VALUES:
                return
            for dep in self._split_list(value):
                dep = dep.strip().strip("*")
                if dep and dep not in draft.depends_on:
                    draft.depends_on.append(dep)
        elif key == "estimate":
            draft.estimate = self._unwrap(value)
        elif key == "command":
            draft.command = self._unwrap(value) or None
        elif key == "fix":
            draft.fix = self._unwrap(value) or None
        else:
            draft.metadata[key] = value

    @staticmethod
    def _unwrap(value: str) -> str:
        """Strip one level of backtick quoting from a value."""
        value = value.strip()
        if len(value) >= 2 and value.startswith("`") and value.endswith("`"):
            return value.strip("`").strip()
        return value

    @staticmethod
    def _split_list(value: str) -> list[str]:
        """Split a list value: backticked items if present, else comma-separated."""
        quoted = BACKTICK_PATTERN.findall(value)
        if quoted:
            return [q.strip() for q in quoted if q.strip()]
        return [part.strip() for part in re.split(r"[,\s]+", value) if part.strip()]

    def _finish_task(self, draft: _TaskDraft | None, phase: Phase | None) -> None:
        """Validate a task draft and attach the resulting Task to its phase."""
        if draft is None:
            return

        action: Action | None = None
        if draft.action is None:
            self._add_problem(
                ParseErrorKind.MISSING_FIELD,
                f"Task {draft.id} has no Action",
                draft.line_number,
                draft.id,
            )
        else:
            try:
                action = Action.from_string(draft.action)
            except ValueError:
                self._add_problem(
                    ParseErrorKind.INVALID_VALUE,
                    f"Task {draft.id} has unknown Action '{draft.action}' "
                    "(expected CREATE, MODIFY, DELETE or EXECUTE)",
                    draft.line_number,
                    draft.id,
                )

        if not draft.verify_declared:
            self._add_problem(
                ParseErrorKind.MISSING_FIELD,
                f"Task {draft.id} has no Verify command (use 'Verify: none' to opt out)",
                draft.line_number,
                draft.id,
            )

        if action is not None and action.mutates_targets and not draft.targets:
            self._add_problem(
                ParseErrorKind.MISSING_FIELD,
                f"Task {draft.id} ({action.value}) declares no File targets",
                draft.line_number,
                draft.id,
            )

        if phase is None or action is None:
            return

        phase.tasks.append(
            Task(
                id=draft.id,
                title=draft.title,
                action=action,
                targets=tuple(draft.targets),
                verify=draft.verify,
                depends_on=tuple(draft.depends_on),
                estimate=draft.estimate,
                command=draft.command,
                fix=draft.fix,
                phase=draft.phase,
                status=draft.status,
                line_number=draft.line_number,
                marker_offset=draft.marker_offset,
                metadata=draft.metadata,
            )
        )

    def _check_references(self, phases: list[Phase]) -> None:
        """Report duplicate ids and dependencies on unknown tasks."""
        seen: dict[str, Task] = {}
        for phase in phases:
            for task in phase.tasks:
                if task.id in seen:
                    self._add_problem(
                        ParseErrorKind.DUPLICATE_TASK,
                        f"Task id {task.id} is defined more than once "
                        f"(first at line {seen[task.id].line_number})",
                        task.line_number,
                        task.id,
                    )
                else:
                    seen[task.id] = task

        for phase in phases:
            for task in phase.tasks:
                for dep in task.depends_on:
                    if dep not in seen:
                        self._add_problem(
                            ParseErrorKind.DANGLING_DEPENDENCY,
                            f"Task {task.id} depends on undefined task '{dep}'",
                            task.line_number,
                            task.id,
                        )
                    elif not TASK_ID_PATTERN.match(dep):
                        self._add_problem(
                            ParseErrorKind.INVALID_ID,
                            f"Task {task.id} has malformed dependency id '{dep}'",
                            task.line_number,
                            task.id,
                        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _add_problem(
        self,
        kind: ParseErrorKind,
        message: str,
        line: int = 0,
        task_id: str | None = None,
    ) -> None:
        self._problems.append(ParseProblem(kind, message, line, task_id))


# =============================================================================
# Serialization
# =============================================================================


def serialize(plan: Plan) -> str:
    """Render the plan back to document text.

    Only status markers whose persisted state differs from the source are
    rewritten; every other character is copied from ``plan.source``.
    """
    source = plan.source
    tasks = sorted(
        (t for t in plan.all_tasks() if t.marker_offset >= 0),
        key=lambda t: t.marker_offset,
    )

    parts: list[str] = []
    cursor = 0
    for task in tasks:
        original = source[task.marker_offset]
        marker = render_marker(task.status, original)
        if marker == original:
            continue
        parts.append(source[cursor : task.marker_offset])
        parts.append(marker)
        cursor = task.marker_offset + 1
    parts.append(source[cursor:])
    return "".join(parts)


def parse(path: str | Path, config: ParserConfig | None = None) -> Plan:
    """Parse a plan document from disk with a fresh parser."""
    return PlanParser(config).parse(path)


def parse_string(content: str, path: str = "", config: ParserConfig | None = None) -> Plan:
    """Parse plan text with a fresh parser."""
    return PlanParser(config).parse_string(content, path)
