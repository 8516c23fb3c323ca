"""Logging setup for plan-engine.

Modules obtain loggers through ``get_logger`` so every record lands under the
``plan_engine`` namespace::

    from plan_engine.logging import get_logger

    logger = get_logger("executor.checkpoint")

``configure_logging`` installs a single handler on the namespace root. The
format is ``rich`` (default), ``json`` or ``plain`` and can be chosen through
``PLAN_ENGINE_LOG_FORMAT``; the level through ``PLAN_ENGINE_LOG_LEVEL``.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER_NAME = "plan_engine"

LOG_LEVEL_ENV = "PLAN_ENGINE_LOG_LEVEL"
LOG_FORMAT_ENV = "PLAN_ENGINE_LOG_FORMAT"

_STANDARD_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys() | {"message", "asctime"}
)


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Fields passed via extra={...}
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_FIELDS and not key.startswith("_"):
                entry[key] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the plan_engine namespace.

    Args:
        name: Dotted suffix, e.g. ``"executor.driver"``.

    Returns:
        The ``plan_engine.<name>`` logger.
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_logging(
    level: int | str | None = None,
    fmt: str | None = None,
    *,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the plan_engine logger hierarchy.

    Calling this more than once replaces the previously installed handler.

    Args:
        level: Log level name or number. Falls back to ``PLAN_ENGINE_LOG_LEVEL``,
            then WARNING.
        fmt: ``"rich"``, ``"json"`` or ``"plain"``. Falls back to
            ``PLAN_ENGINE_LOG_FORMAT``, then ``"rich"``.
        console: Rich console for the rich handler (stderr by default).

    Returns:
        The configured namespace root logger.
    """
    if level is None:
        level = os.environ.get(LOG_LEVEL_ENV, "WARNING")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.WARNING

    fmt = (fmt or os.environ.get(LOG_FORMAT_ENV, "rich")).lower()

    handler: logging.Handler
    if fmt == "json":
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    elif fmt == "plain":
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    else:
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for existing in list(root.handlers):
        if getattr(existing, "_plan_engine_handler", False):
            root.removeHandler(existing)

    handler._plan_engine_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    return root
