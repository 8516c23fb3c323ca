"""Git revisions for completed tasks.

When enabled, each task that reaches COMPLETED gets a git commit of its
targets, and the commit SHA is stored with the checkpoint. Revisions are an
optional convenience; the checkpoint journal and the plan document are the
source of truth either way.
"""

from __future__ import annotations

import re
import subprocess
from pathlib import Path
from typing import Protocol

from plan_engine.errors import PlanEngineError
from plan_engine.executor.models import Task
from plan_engine.logging import get_logger

logger = get_logger("executor.revisions")

# Pattern to identify engine commits: plan-engine(A.1): title
ENGINE_COMMIT_PATTERN = re.compile(r"^plan-engine\(([^)]+)\):")


# =============================================================================
# Exceptions
# =============================================================================


class GitNotFoundError(PlanEngineError):
    """Git is not installed or not in PATH."""

    pass


class NotAGitRepoError(PlanEngineError):
    """The workspace is not a git repository."""

    pass


class GitOperationError(PlanEngineError):
    """A git operation failed."""

    def __init__(self, message: str, command: str, returncode: int, stderr: str):
        super().__init__(message, details={"command": command, "stderr": stderr})
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


# =============================================================================
# Recorders
# =============================================================================


class RevisionRecorder(Protocol):
    """Records an external revision for a completed task."""

    def record(self, task: Task) -> str | None:
        """Create a revision for ``task`` and return its identifier."""
        ...


class NullRevisions:
    """Recorder that records nothing."""

    def record(self, task: Task) -> str | None:
        return None


class GitRevisions:
    """Commit a completed task's targets to git.

    Example:
        >>> revisions = GitRevisions("/path/to/repo")
        >>> sha = revisions.record(task)
        >>> print(f"Created commit: {sha}")
    """

    def __init__(
        self,
        workspace: str | Path,
        *,
        author_name: str = "plan-engine",
        author_email: str = "plan-engine@localhost",
    ):
        """Initialize the recorder.

        Args:
            workspace: Path to the git repository.
            author_name: Name for commit author.
            author_email: Email for commit author.

        Raises:
            GitNotFoundError: If git is not installed.
            NotAGitRepoError: If the workspace is not a git repository.
        """
        self._workspace = Path(workspace).resolve()
        self._author_name = author_name
        self._author_email = author_email
        self._validate()

    @property
    def workspace(self) -> Path:
        """The workspace path."""
        return self._workspace

    @property
    def current_sha(self) -> str | None:
        """The current HEAD commit SHA."""
        result = self._run_git(["rev-parse", "HEAD"], check=False)
        return result.strip() if result else None

    def record(self, task: Task) -> str | None:
        """Commit the task's targets.

        Returns:
            The new commit SHA, or the current HEAD when nothing changed.

        Raises:
            GitOperationError: If staging or committing fails.
        """
        staged = self._stage_files(list(task.targets))
        if not staged:
            logger.debug(f"No changes to commit for task {task.id}")
            return self.current_sha

        title = task.title[:50]
        if len(task.title) > 50:
            title = title[:47] + "..."
        sha = self._commit(f"plan-engine({task.id}): {title}", staged)
        logger.info(f"Created revision {sha[:7]} for task {task.id}")
        return sha

    def commit_for_task(self, task_id: str, limit: int = 100) -> str | None:
        """SHA of the most recent engine commit for a task."""
        log = self._run_git(["log", f"-{limit}", "--format=%H|%s"], check=False)
        for line in (log or "").splitlines():
            sha, _, subject = line.partition("|")
            match = ENGINE_COMMIT_PATTERN.match(subject)
            if match and match.group(1) == task_id:
                return sha
        return None

    # =========================================================================
    # Internal Git Operations
    # =========================================================================

    def _validate(self) -> None:
        try:
            subprocess.run(["git", "--version"], capture_output=True, check=True)
        except FileNotFoundError:
            raise GitNotFoundError("Git is not installed or not in PATH")

        if not self._workspace.exists():
            raise NotAGitRepoError(f"Workspace does not exist: {self._workspace}")
        if self._run_git(["rev-parse", "--git-dir"], check=False) is None:
            raise NotAGitRepoError(f"Not a git repository: {self._workspace}")

    def _run_git(self, args: list[str], *, check: bool = True) -> str | None:
        """Run a git command.

        Returns:
            Command stdout, or None if check=False and the command failed.
        """
        cmd = ["git", "-C", str(self._workspace)] + args
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)

        if result.returncode != 0:
            if not check:
                return None
            raise GitOperationError(
                f"Git command failed: {' '.join(args)}",
                command=" ".join(cmd),
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result.stdout

    def _stage_files(self, files: list[str]) -> list[str]:
        """Stage files, including deletions; returns those now staged."""
        for file in files:
            # --all stages removal of deleted targets too
            self._run_git(["add", "--all", "--", file], check=False)
        # --relative lists paths against the workspace, which may sit below the repo root
        staged = self._run_git(["diff", "--cached", "--name-only", "--relative"]) or ""
        staged_set = {line for line in staged.splitlines() if line}
        return [f for f in files if f in staged_set]

    def _commit(self, message: str, files: list[str]) -> str:
        """Commit only ``files``, leaving anything else in the index staged."""
        self._run_git(
            [
                "commit",
                "-m",
                message,
                "--author",
                f"{self._author_name} <{self._author_email}>",
                "--",
                *files,
            ]
        )
        result = self._run_git(["rev-parse", "HEAD"])
        assert result is not None
        return result.strip()

    @classmethod
    def for_workspace(cls, workspace: str | Path) -> GitRevisions | None:
        """Create a recorder if the workspace is a git repo, else None."""
        try:
            return cls(workspace)
        except (NotAGitRepoError, GitNotFoundError):
            return None
