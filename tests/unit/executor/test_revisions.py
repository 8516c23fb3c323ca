"""Tests for git revisions of completed tasks."""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Generator
from pathlib import Path

import pytest

from plan_engine.executor.models import Action, Task
from plan_engine.executor.revisions import GitRevisions, NotAGitRepoError, NullRevisions

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

# =============================================================================
# Fixtures
# =============================================================================


def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout


@pytest.fixture
def temp_git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary git repository with one commit."""
    git(tmp_path, "init")
    git(tmp_path, "config", "user.email", "test@example.com")
    git(tmp_path, "config", "user.name", "Test User")
    (tmp_path / "README.md").write_text("# Test Project\n")
    git(tmp_path, "add", "README.md")
    git(tmp_path, "commit", "-m", "Initial commit")
    yield tmp_path


def make_task(*targets: str, title: str = "Add the module") -> Task:
    return Task(id="A.1", title=title, action=Action.CREATE, targets=targets, phase="A")


# =============================================================================
# Tests
# =============================================================================


class TestGitRevisions:
    """Test committing task targets."""

    def test_not_a_repo(self, tmp_path: Path) -> None:
        """Test a plain directory is rejected."""
        with pytest.raises(NotAGitRepoError):
            GitRevisions(tmp_path)

        assert GitRevisions.for_workspace(tmp_path) is None

    def test_record_commits_targets(self, temp_git_repo: Path) -> None:
        """Test the task's targets are committed with a tagged message."""
        (temp_git_repo / "module.py").write_text("VALUE = 1\n")
        (temp_git_repo / "unrelated.txt").write_text("leave me\n")
        revisions = GitRevisions(temp_git_repo)

        sha = revisions.record(make_task("module.py"))

        assert sha is not None
        assert sha == revisions.current_sha
        assert git(temp_git_repo, "log", "-1", "--format=%s").strip() == (
            "plan-engine(A.1): Add the module"
        )
        committed = git(temp_git_repo, "show", "--name-only", "--format=", "HEAD").split()
        assert committed == ["module.py"]
        assert revisions.commit_for_task("A.1") == sha

    def test_no_changes_returns_head(self, temp_git_repo: Path) -> None:
        revisions = GitRevisions(temp_git_repo)
        head = revisions.current_sha

        assert revisions.record(make_task("README.md")) == head

    def test_deletion_committed(self, temp_git_repo: Path) -> None:
        """Test a deleted target is staged as a removal."""
        (temp_git_repo / "README.md").unlink()
        revisions = GitRevisions(temp_git_repo)

        revisions.record(make_task("README.md", title="Remove readme"))

        assert "README.md" not in git(temp_git_repo, "ls-files")

    def test_long_title_truncated(self, temp_git_repo: Path) -> None:
        (temp_git_repo / "a.txt").write_text("a")
        revisions = GitRevisions(temp_git_repo)

        revisions.record(make_task("a.txt", title="x" * 80))

        subject = git(temp_git_repo, "log", "-1", "--format=%s").strip()
        assert subject == "plan-engine(A.1): " + "x" * 47 + "..."

    def test_workspace_in_subdirectory(self, temp_git_repo: Path) -> None:
        """Test targets relative to a nested workspace are committed."""
        workspace = temp_git_repo / "sub"
        workspace.mkdir()
        (workspace / "a.txt").write_text("a\n")
        revisions = GitRevisions(workspace)
        head = revisions.current_sha

        sha = revisions.record(make_task("a.txt"))

        assert sha != head
        committed = git(temp_git_repo, "show", "--name-only", "--format=", "HEAD").split()
        assert committed == ["sub/a.txt"]

    def test_other_staged_files_left_out(self, temp_git_repo: Path) -> None:
        """Test files the user staged stay staged and out of the task's commit."""
        (temp_git_repo / "user.txt").write_text("work in progress\n")
        git(temp_git_repo, "add", "user.txt")
        (temp_git_repo / "module.py").write_text("VALUE = 1\n")
        revisions = GitRevisions(temp_git_repo)

        revisions.record(make_task("module.py"))

        committed = git(temp_git_repo, "show", "--name-only", "--format=", "HEAD").split()
        assert committed == ["module.py"]
        assert git(temp_git_repo, "diff", "--cached", "--name-only").split() == ["user.txt"]

    def test_unknown_task_has_no_commit(self, temp_git_repo: Path) -> None:
        assert GitRevisions(temp_git_repo).commit_for_task("Z.9") is None


def test_null_revisions() -> None:
    assert NullRevisions().record(make_task("a.txt")) is None
