"""Executor: dependency-ordered execution of plan documents.

The Executor module provides infrastructure for:
- Parsing tasks from Markdown plan documents
- Resolving task dependencies and the runnable frontier
- Applying task effects inside a scoped workspace
- Verifying tasks with external commands, with an auto-fix retry loop
- Checkpointing task status durably into the plan document
- Rolling back a phase's effects after failure

Example:
    >>> from plan_engine.executor import Driver, DriverConfig, PlanParser
    >>>
    >>> plan = PlanParser().parse("./PLAN.md")
    >>> driver = Driver(DriverConfig(auto_fix=True), workspace=".")
    >>> summary = await driver.run(plan)
"""

from plan_engine.executor.checkpoint import Checkpoint, CheckpointStore
from plan_engine.executor.dependencies import DependencyGraph, TaskNode
from plan_engine.executor.driver import (
    Driver,
    DriverConfig,
    RunStatus,
    RunSummary,
    StepResult,
    TaskOutcome,
)
from plan_engine.executor.effects import EffectHandler, EffectResult, TaskExecutor
from plan_engine.executor.models import Action, Task, TaskStatus, can_transition
from plan_engine.executor.parser import PlanParser, ParserConfig, parse, parse_string, serialize
from plan_engine.executor.plan import Phase, Plan
from plan_engine.executor.progress import ProgressSummary, parse_estimate, summarize
from plan_engine.executor.recovery import FileSnapshot, RollbackManager, RollbackResult
from plan_engine.executor.revisions import GitRevisions, NullRevisions, RevisionRecorder
from plan_engine.executor.verifier import (
    CommandFixStrategy,
    FixStrategy,
    NoopFixStrategy,
    VerificationGate,
    VerificationResult,
)
from plan_engine.executor.workspace import ScopedWorkspace

__all__ = [
    # Models
    "Action",
    "Phase",
    "Plan",
    "Task",
    "TaskStatus",
    "can_transition",
    # Parser
    "ParserConfig",
    "PlanParser",
    "parse",
    "parse_string",
    "serialize",
    # Dependencies
    "DependencyGraph",
    "TaskNode",
    # Effects
    "EffectHandler",
    "EffectResult",
    "ScopedWorkspace",
    "TaskExecutor",
    # Verification
    "CommandFixStrategy",
    "FixStrategy",
    "NoopFixStrategy",
    "VerificationGate",
    "VerificationResult",
    # Checkpoints
    "Checkpoint",
    "CheckpointStore",
    "GitRevisions",
    "NullRevisions",
    "RevisionRecorder",
    # Recovery
    "FileSnapshot",
    "RollbackManager",
    "RollbackResult",
    # Driver
    "Driver",
    "DriverConfig",
    "RunStatus",
    "RunSummary",
    "StepResult",
    "TaskOutcome",
    # Progress
    "ProgressSummary",
    "parse_estimate",
    "summarize",
]
