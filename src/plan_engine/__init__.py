import os

from dotenv import find_dotenv, load_dotenv

if not os.environ.get("PLAN_ENGINE_ENV_LOADED"):
    load_dotenv(find_dotenv(usecwd=True))
    os.environ["PLAN_ENGINE_ENV_LOADED"] = "1"

# Cross-cutting concerns
from plan_engine.errors import (
    CheckpointError,
    ConfigurationError,
    CycleError,
    ExecutionError,
    InvalidTransitionError,
    ParseError,
    ParseErrorKind,
    PlanEngineError,
    RollbackError,
    ScopeViolation,
    VerificationFailure,
)
from plan_engine.executor import (
    Driver,
    DriverConfig,
    Plan,
    PlanParser,
    RunStatus,
    RunSummary,
    Task,
    TaskStatus,
    parse,
    serialize,
    summarize,
)
from plan_engine.logging import configure_logging, get_logger

__version__ = "0.1.0"

__all__ = [
    # Executor
    "Driver",
    "DriverConfig",
    "Plan",
    "PlanParser",
    "RunStatus",
    "RunSummary",
    "Task",
    "TaskStatus",
    "parse",
    "serialize",
    "summarize",
    # Errors
    "CheckpointError",
    "ConfigurationError",
    "CycleError",
    "ExecutionError",
    "InvalidTransitionError",
    "ParseError",
    "ParseErrorKind",
    "PlanEngineError",
    "RollbackError",
    "ScopeViolation",
    "VerificationFailure",
    # Logging
    "configure_logging",
    "get_logger",
]
