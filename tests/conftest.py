"""
Root conftest.py for plan-engine tests.

This file provides:
1. Common pytest markers for test categorization
2. Shared fixtures for writing plan documents into temporary workspaces
3. Logging isolation between tests

Fixtures are organized by category:
- Environment fixtures (logging, env vars)
- Workspace fixtures (plan documents on disk)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from plan_engine.logging import LOG_FORMAT_ENV, LOG_LEVEL_ENV, ROOT_LOGGER_NAME

# =============================================================================
# PYTEST CONFIGURATION
# =============================================================================


def pytest_collection_modifyitems(config, items):
    """Mark tests that drive a real git repository as integration tests."""
    for item in items:
        if "temp_git_repo" in getattr(item, "fixturenames", ()):
            item.add_marker(pytest.mark.integration)


# =============================================================================
# ENVIRONMENT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_logging(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Undo configure_logging() side effects after each test."""
    monkeypatch.delenv(LOG_LEVEL_ENV, raising=False)
    monkeypatch.delenv(LOG_FORMAT_ENV, raising=False)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    level = root.level
    propagate = root.propagate
    yield
    for handler in list(root.handlers):
        if getattr(handler, "_plan_engine_handler", False):
            root.removeHandler(handler)
    root.setLevel(level)
    root.propagate = propagate


# =============================================================================
# WORKSPACE FIXTURES
# =============================================================================


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Empty workspace directory."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def write_plan(workspace: Path) -> Callable[..., Path]:
    """Factory writing a plan document into the workspace."""

    def _write(content: str, name: str = "PLAN.md") -> Path:
        path = workspace / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write
