"""Scoped file access for task effects.

A ``ScopedWorkspace`` is handed to an effect handler while one task runs. It
resolves every path against the workspace root and refuses anything that is
not one of the task's declared targets, so a task can only ever touch what
its plan entry says it touches.
"""

from __future__ import annotations

import posixpath
from pathlib import Path

from plan_engine.errors import ScopeViolation
from plan_engine.executor.models import Task
from plan_engine.logging import get_logger

logger = get_logger("executor.workspace")


def relative_target(root: Path, path: str | Path) -> str | None:
    """Normalize ``path`` to a POSIX path relative to ``root``.

    Returns:
        The relative path, or None when the path escapes the root.
    """
    candidate = Path(path)
    if candidate.is_absolute():
        try:
            candidate = candidate.resolve().relative_to(root.resolve())
        except ValueError:
            return None

    normalized = posixpath.normpath(candidate.as_posix())
    if normalized == ".." or normalized.startswith("../") or normalized.startswith("/"):
        return None
    return normalized


class ScopedWorkspace:
    """File access limited to one task's targets.

    Example:
        >>> ws = ScopedWorkspace(Path("."), task)
        >>> ws.write_text("src/models/user.py", "class User: ...")
        >>> ws.write_text("setup.py", "")  # not a target
        Traceback (most recent call last):
        ...
        ScopeViolation: Task A.1: write to 'setup.py' is outside declared targets ...

    Attributes:
        root: Workspace root directory.
        task: Task whose targets bound the accessible paths.
    """

    def __init__(self, root: Path, task: Task) -> None:
        self.root = Path(root)
        self.task = task
        self._allowed = frozenset(task.targets)
        self.created: list[str] = []
        self.modified: list[str] = []
        self.deleted: list[str] = []

    @property
    def targets(self) -> tuple[str, ...]:
        """Paths this workspace grants access to."""
        return self.task.targets

    def resolve(self, path: str | Path) -> Path:
        """Absolute path for a declared target.

        Raises:
            ScopeViolation: If the path escapes the root or is not a target.
        """
        relative = relative_target(self.root, path)
        if relative is None or relative not in self._allowed:
            logger.warning(f"Task {self.task.id} attempted out-of-scope access: {path}")
            raise ScopeViolation(self.task.id, str(path), self.task.targets)

        resolved = (self.root / relative).resolve()
        # A symlinked target must still land inside the root
        if not resolved.is_relative_to(self.root.resolve()):
            raise ScopeViolation(self.task.id, str(path), self.task.targets)
        return self.root / relative

    def exists(self, path: str | Path) -> bool:
        return self.resolve(path).exists()

    def read_bytes(self, path: str | Path) -> bytes:
        return self.resolve(path).read_bytes()

    def read_text(self, path: str | Path, encoding: str = "utf-8") -> str:
        return self.resolve(path).read_text(encoding=encoding)

    def write_bytes(self, path: str | Path, data: bytes) -> None:
        """Write a target, creating parent directories as needed."""
        file_path = self.resolve(path)
        existed = file_path.exists()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_bytes(data)
        self._record(relative_target(self.root, path) or str(path), existed)

    def write_text(self, path: str | Path, content: str, encoding: str = "utf-8") -> None:
        self.write_bytes(path, content.encode(encoding))

    def delete(self, path: str | Path) -> None:
        """Delete a target file.

        Raises:
            FileNotFoundError: If the target does not exist.
        """
        file_path = self.resolve(path)
        file_path.unlink()
        relative = relative_target(self.root, path) or str(path)
        if relative in self.created:
            self.created.remove(relative)
        elif relative not in self.deleted:
            self.deleted.append(relative)

    def _record(self, relative: str, existed: bool) -> None:
        if relative in self.created or relative in self.modified:
            return
        if existed:
            self.modified.append(relative)
        else:
            self.created.append(relative)
