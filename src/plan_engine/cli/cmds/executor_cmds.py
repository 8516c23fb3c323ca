"""
CLI commands for the Executor module.

Usage:
    plan-engine run PLAN.md --auto-fix --max-retries 2
    plan-engine step PLAN.md
    plan-engine run PLAN.md --dry-run --phase A
    plan-engine status PLAN.md --json
    plan-engine validate PLAN.md
    plan-engine skip PLAN.md A.3
    plan-engine rollback PLAN.md --phase A
    plan-engine reset PLAN.md --force

Targets and commands are resolved relative to the plan document's directory.
Exit codes: 0 success, 1 a task failed or the run was blocked/aborted,
2 the plan document is missing or malformed.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from plan_engine.errors import (
    CheckpointError,
    ConfigurationError,
    CycleError,
    InvalidTransitionError,
    ParseError,
    RollbackError,
)
from plan_engine.executor import (
    CheckpointStore,
    CommandFixStrategy,
    Driver,
    DriverConfig,
    GitRevisions,
    Plan,
    PlanParser,
    RollbackManager,
    RunStatus,
    RunSummary,
    StepResult,
    TaskStatus,
    summarize,
)
from plan_engine.executor.driver import EXIT_FAILURE, EXIT_STRUCTURAL, EXIT_SUCCESS
from plan_engine.executor.progress import ProgressSummary, format_duration
from plan_engine.logging import configure_logging

console = Console()


# =============================================================================
# Constants
# =============================================================================

# Status icons for task display
STATUS_ICONS = {
    TaskStatus.COMPLETED: "[green]✓[/green]",
    TaskStatus.FAILED: "[red]✗[/red]",
    TaskStatus.FAILED_TERMINAL: "[red]✗[/red]",
    TaskStatus.IN_PROGRESS: "[yellow]→[/yellow]",
    TaskStatus.VERIFYING: "[yellow]→[/yellow]",
    TaskStatus.READY: "[yellow]○[/yellow]",
    TaskStatus.PENDING: "[dim]○[/dim]",
    TaskStatus.SKIPPED: "[dim]⊘[/dim]",
}

STATUS_STYLES = {
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.FAILED_TERMINAL: "red",
    TaskStatus.IN_PROGRESS: "yellow",
    TaskStatus.VERIFYING: "yellow",
}

# Status colors for run status
RUN_STATUS_COLORS = {
    RunStatus.COMPLETED: "green",
    RunStatus.FAILED: "red",
    RunStatus.BLOCKED: "yellow",
    RunStatus.ABORTED: "red",
    RunStatus.DRY_RUN: "blue",
    RunStatus.NO_TASKS: "dim",
}

# Last lines of verification output shown on failure
OUTPUT_TAIL_LINES = 15


# =============================================================================
# Shared Options
# =============================================================================

PlanArg = Annotated[
    Path,
    typer.Argument(help="Path to the plan document", dir_okay=False),
]
PhaseOpt = Annotated[
    str | None,
    typer.Option("--phase", "-p", help="Only consider tasks in this phase"),
]
DryRunOpt = Annotated[
    bool,
    typer.Option("--dry-run", help="Show what would run without changing targets or the plan"),
]
AutoFixOpt = Annotated[
    bool,
    typer.Option("--auto-fix", help="Run the task's Fix command and re-verify on failure"),
]
MaxRetriesOpt = Annotated[
    int,
    typer.Option("--max-retries", min=0, help="Fix attempts allowed per task under --auto-fix"),
]
ParallelOpt = Annotated[
    bool,
    typer.Option("--parallel", help="Run runnable tasks with disjoint targets concurrently"),
]
WorkersOpt = Annotated[
    int,
    typer.Option("--workers", min=1, help="Maximum concurrent tasks in parallel mode"),
]
ResumeOpt = Annotated[
    bool,
    typer.Option("--resume", help="Trust the document's [x] markers instead of starting over"),
]
RestartOpt = Annotated[
    bool,
    typer.Option("--restart", help="Reset completed tasks and start from the beginning"),
]
TimeoutOpt = Annotated[
    float | None,
    typer.Option("--timeout", help="Per-task verification timeout in seconds"),
]
SkippedSatisfiesOpt = Annotated[
    bool,
    typer.Option("--skipped-satisfies", help="Let skipped tasks satisfy their dependents"),
]
RollbackOpt = Annotated[
    bool,
    typer.Option("--rollback-on-failure", help="Restore a failed task's phase and stop"),
]
GitCommitOpt = Annotated[
    bool,
    typer.Option("--git-commit", help="Commit each completed task's targets to git"),
]
JsonOpt = Annotated[
    bool,
    typer.Option("--json", "-j", help="Output as JSON"),
]
VerboseOpt = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]


# =============================================================================
# Helpers
# =============================================================================


def _print_json(data: dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2))


def _load_plan(plan_path: Path, *, output_json: bool = False) -> Plan:
    """Parse the plan document, exiting with code 2 on any structural error."""
    if not plan_path.is_file():
        if output_json:
            _print_json({"error": "FileNotFoundError", "message": f"Plan not found: {plan_path}"})
        else:
            console.print(f"[red]Error: plan document not found: {plan_path}[/red]")
        raise typer.Exit(EXIT_STRUCTURAL)

    try:
        return PlanParser().parse(plan_path)
    except ParseError as e:
        if output_json:
            _print_json(e.to_dict())
        else:
            console.print(f"[red]Invalid plan document ({len(e.problems)} problem(s)):[/red]")
            for problem in e.problems:
                console.print(f"  [red]•[/red] [dim]{problem.kind.value}[/dim] {escape(str(problem))}")
        raise typer.Exit(EXIT_STRUCTURAL)
    except CycleError as e:
        if output_json:
            _print_json(e.to_dict())
        else:
            console.print(f"[red]Error: {escape(e.message)}[/red]")
        raise typer.Exit(EXIT_STRUCTURAL)


def _workspace_for(plan_path: Path) -> Path:
    return plan_path.resolve().parent


def _build_driver(plan_path: Path, config: DriverConfig, git_commit: bool) -> Driver:
    workspace = _workspace_for(plan_path)
    revisions = None
    if git_commit and not config.dry_run:
        revisions = GitRevisions.for_workspace(workspace)
        if revisions is None:
            console.print(
                "[yellow]Warning: --git-commit ignored; workspace is not a git repository[/yellow]"
            )
    return Driver(
        config,
        workspace=workspace,
        revisions=revisions,
        fix_strategy=CommandFixStrategy(timeout=config.timeout),
    )


def _output_tail(output: str) -> str:
    lines = output.strip().splitlines()
    if len(lines) > OUTPUT_TAIL_LINES:
        lines = ["..."] + lines[-OUTPUT_TAIL_LINES:]
    return "\n".join(lines)


def _render_run_summary(summary: RunSummary, plan: Plan) -> Panel:
    """Render a run summary as a Rich panel."""
    status_color = RUN_STATUS_COLORS.get(summary.status, "white")

    lines = [f"[bold]Status:[/bold]     [{status_color}]{summary.status.value}[/{status_color}]"]
    label = "Would run" if summary.status == RunStatus.DRY_RUN else "Executed"
    lines.append(f"[bold]{label}:[/bold]  {', '.join(summary.order) if summary.order else '-'}")

    done = sum(1 for s in summary.statuses.values() if s.is_done)
    lines.append(f"[bold]Tasks:[/bold]      {done}/{len(summary.statuses)} done")
    lines.append(f"[bold]Duration:[/bold]   {summary.duration_ms / 1000:.1f}s")

    if summary.blocked:
        blocked = ", ".join(
            f"{tid} (waits on {', '.join(deps)})" for tid, deps in summary.blocked.items()
        )
        lines.append(f"[bold]Blocked:[/bold]    {blocked}")
    for rollback in summary.rollbacks:
        lines.append(
            f"[bold]Rolled back:[/bold] phase {rollback.phase_id} "
            f"({rollback.total_files_affected} file(s), {len(rollback.tasks_reset)} task(s))"
        )

    return Panel("\n".join(lines), title=f"Run Summary: {escape(plan.title or plan.id)}", border_style=status_color)


def _render_failures(failed: dict[str, str]) -> None:
    for task_id, output in failed.items():
        body = escape(_output_tail(output)) if output.strip() else "[dim](no output)[/dim]"
        console.print(Panel(body, title=f"[red]{task_id} failed[/red]", border_style="red"))


def _render_step(result: StepResult) -> None:
    if result.idle:
        style = "yellow" if result.blocked else "dim"
        console.print(f"[{style}]{escape(result.message)}[/{style}]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("", width=3)
    table.add_column("Task ID", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Verification")

    for outcome in result.outcomes:
        style = STATUS_STYLES.get(outcome.status, "dim")
        if outcome.dry_run:
            verification = "[dim](dry run)[/dim]"
        elif outcome.verification is not None:
            verification = escape(outcome.verification.summary())
        else:
            verification = escape(outcome.error or "-")
        table.add_row(
            STATUS_ICONS.get(outcome.status, "?"),
            outcome.task_id,
            f"[{style}]{outcome.status.value}[/{style}]",
            str(outcome.attempts),
            verification,
        )
    console.print(table)

    _render_failures({o.task_id: o.diagnostic for o in result.outcomes if o.status.is_failure})


def _render_status_table(plan: Plan, phase: str | None) -> Table:
    """Render task status as a Rich table."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("", width=3)
    table.add_column("Task ID", style="cyan")
    table.add_column("Title", no_wrap=False)
    table.add_column("Action")
    table.add_column("Depends on")
    table.add_column("Estimate", justify="right")

    for task in plan.tasks_in(phase):
        title = task.title[:47] + "..." if len(task.title) > 50 else task.title
        table.add_row(
            STATUS_ICONS.get(task.status, "?"),
            task.id,
            escape(title),
            task.action.value,
            ", ".join(task.depends_on) or "-",
            task.estimate or "-",
        )
    return table


def _render_progress(plan: Plan, progress: ProgressSummary) -> Panel:
    eta = format_duration(progress.estimated_remaining) if progress.estimated_remaining else "-"
    if progress.unestimated and progress.estimated_remaining:
        eta += f" (+{progress.unestimated} unestimated)"
    lines = [
        f"[bold]Plan:[/bold]        {escape(plan.title or plan.id)}",
        f"[bold]Progress:[/bold]    {progress.completed + progress.skipped}/{progress.total} "
        f"({progress.percent:.0f}%)",
        f"  • Completed:   [green]{progress.completed}[/green]",
        f"  • Skipped:     [dim]{progress.skipped}[/dim]",
        f"  • Pending:     [dim]{progress.pending}[/dim]",
        f"[bold]Runnable:[/bold]    {', '.join(progress.runnable) or '-'}",
        f"[bold]Blocked:[/bold]     {', '.join(progress.blocked) or '-'}",
        f"[bold]Remaining:[/bold]   {eta}",
    ]
    title = f"Plan Status (phase {progress.scope})" if progress.scope else "Plan Status"
    return Panel("\n".join(lines), title=title, border_style="blue")


def _execute(
    plan_path: Path,
    config: DriverConfig,
    *,
    git_commit: bool,
    output_json: bool,
    verbose: bool,
    single_step: bool,
) -> int:
    """Shared body of ``run`` and ``step``; returns the exit code."""
    configure_logging("DEBUG" if verbose else None)
    plan = _load_plan(plan_path, output_json=output_json)

    try:
        driver = _build_driver(plan_path, config, git_commit)
        if single_step:
            result: StepResult | RunSummary = asyncio.run(driver.step(plan))
        else:
            result = asyncio.run(driver.run(plan))
    except ConfigurationError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        return EXIT_STRUCTURAL
    except (CheckpointError, RollbackError) as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        return EXIT_FAILURE

    if output_json:
        _print_json({"plan": plan.id, "config": config.to_dict(), **result.to_dict()})
        return result.exit_code

    if isinstance(result, StepResult):
        _render_step(result)
    else:
        console.print(_render_run_summary(result, plan))
        _render_failures(result.failed)
    return result.exit_code


# =============================================================================
# plan-engine run / step
# =============================================================================


def run_cmd(
    plan_path: PlanArg,
    phase: PhaseOpt = None,
    dry_run: DryRunOpt = False,
    auto_fix: AutoFixOpt = False,
    max_retries: MaxRetriesOpt = 3,
    parallel: ParallelOpt = False,
    workers: WorkersOpt = 4,
    resume: ResumeOpt = False,
    timeout: TimeoutOpt = None,
    skipped_satisfies: SkippedSatisfiesOpt = False,
    rollback_on_failure: RollbackOpt = False,
    git_commit: GitCommitOpt = False,
    output_json: JsonOpt = False,
    verbose: VerboseOpt = False,
):
    """Execute runnable tasks until the plan is done, blocked, or a task fails."""
    config = DriverConfig(
        phase=phase,
        dry_run=dry_run,
        auto_fix=auto_fix,
        max_retries=max_retries,
        parallel=parallel,
        workers=workers,
        timeout=timeout,
        skipped_satisfies=skipped_satisfies,
        rollback_on_failure=rollback_on_failure,
        fresh_start=not resume,
    )
    code = _execute(
        plan_path,
        config,
        git_commit=git_commit,
        output_json=output_json,
        verbose=verbose,
        single_step=False,
    )
    raise typer.Exit(code)


def step_cmd(
    plan_path: PlanArg,
    phase: PhaseOpt = None,
    dry_run: DryRunOpt = False,
    auto_fix: AutoFixOpt = False,
    max_retries: MaxRetriesOpt = 3,
    parallel: ParallelOpt = False,
    workers: WorkersOpt = 4,
    restart: RestartOpt = False,
    timeout: TimeoutOpt = None,
    skipped_satisfies: SkippedSatisfiesOpt = False,
    rollback_on_failure: RollbackOpt = False,
    git_commit: GitCommitOpt = False,
    output_json: JsonOpt = False,
    verbose: VerboseOpt = False,
):
    """Execute exactly one runnable task (or one parallel round).

    Unlike ``run``, ``step`` trusts the document's markers unless ``--restart``
    is given, so repeated calls walk through the plan.
    """
    config = DriverConfig(
        phase=phase,
        dry_run=dry_run,
        auto_fix=auto_fix,
        max_retries=max_retries,
        parallel=parallel,
        workers=workers,
        timeout=timeout,
        skipped_satisfies=skipped_satisfies,
        rollback_on_failure=rollback_on_failure,
        fresh_start=restart,
    )
    code = _execute(
        plan_path,
        config,
        git_commit=git_commit,
        output_json=output_json,
        verbose=verbose,
        single_step=True,
    )
    raise typer.Exit(code)


# =============================================================================
# plan-engine status / validate
# =============================================================================


def status_cmd(
    plan_path: PlanArg,
    phase: PhaseOpt = None,
    skipped_satisfies: SkippedSatisfiesOpt = False,
    output_json: JsonOpt = False,
):
    """Show progress, runnable and blocked tasks, and the remaining estimate."""
    plan = _load_plan(plan_path, output_json=output_json)
    if phase is not None and plan.get_phase(phase) is None:
        console.print(f"[red]Error: unknown phase: {escape(phase)}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    progress = summarize(plan, phase, skipped_satisfies=skipped_satisfies)

    if output_json:
        _print_json(
            {
                "plan": plan.id,
                "path": str(plan_path),
                "progress": progress.to_dict(),
                "tasks": [t.to_dict() for t in plan.tasks_in(phase)],
            }
        )
        return

    console.print(_render_progress(plan, progress))
    console.print()
    console.print(_render_status_table(plan, phase))


def validate_cmd(
    plan_path: PlanArg,
    output_json: JsonOpt = False,
):
    """Check that a plan document parses and its dependencies are acyclic."""
    plan = _load_plan(plan_path, output_json=output_json)

    if output_json:
        _print_json(
            {
                "valid": True,
                "plan": plan.id,
                "phases": len(plan.phases),
                "tasks": plan.total_tasks,
            }
        )
        return

    console.print(
        f"[green]✓ Plan is valid:[/green] {len(plan.phases)} phase(s), {plan.total_tasks} task(s)"
    )


# =============================================================================
# plan-engine skip / rollback / reset
# =============================================================================


def skip_cmd(
    plan_path: PlanArg,
    task_id: Annotated[str, typer.Argument(help="Task to mark as skipped")],
):
    """Mark a pending task as skipped (human override)."""
    plan = _load_plan(plan_path)
    if plan.get_task(task_id) is None:
        console.print(f"[red]Error: unknown task: {escape(task_id)}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    store = CheckpointStore(_workspace_for(plan_path))
    try:
        store.commit(plan, task_id, TaskStatus.SKIPPED)
    except InvalidTransitionError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        raise typer.Exit(EXIT_FAILURE)
    except CheckpointError as e:
        console.print(f"[red]Error: {escape(e.message)}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    console.print(f"Task [cyan]{task_id}[/cyan] marked as skipped")


def rollback_cmd(
    plan_path: PlanArg,
    phase: Annotated[str, typer.Option("--phase", "-p", help="Phase to roll back")],
    verbose: VerboseOpt = False,
):
    """Restore a phase's targets to their pre-phase state and reset its tasks."""
    configure_logging("DEBUG" if verbose else None)
    plan = _load_plan(plan_path)
    if plan.get_phase(phase) is None:
        console.print(f"[red]Error: unknown phase: {escape(phase)}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    workspace = _workspace_for(plan_path)
    store = CheckpointStore(workspace)
    manager = RollbackManager(workspace, store)

    console.print(f"Rolling back phase [cyan]{phase}[/cyan]...")
    try:
        result = manager.rollback(plan, phase)
    except (RollbackError, CheckpointError) as e:
        console.print(f"[red]Rollback failed: {escape(e.message)}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    console.print(f"[green]Rolled back {result.total_files_affected} file(s)[/green]")
    for path in result.files_restored:
        console.print(f"  restored {path}")
    for path in result.files_deleted:
        console.print(f"  deleted  {path}")
    console.print(f"  {len(result.tasks_reset)} task(s) reset to pending")


def reset_cmd(
    plan_path: PlanArg,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip confirmation prompt"),
    ] = False,
):
    """Reset every task marker to [ ], including skips, and forget snapshots."""
    plan = _load_plan(plan_path)

    if not force:
        confirm = typer.confirm(
            f"This will reset all {plan.total_tasks} task(s) in {plan_path} to pending. Continue?"
        )
        if not confirm:
            console.print("[yellow]Aborted.[/yellow]")
            raise typer.Exit(EXIT_SUCCESS)

    workspace = _workspace_for(plan_path)
    store = CheckpointStore(workspace)
    try:
        store.reset(plan, [t.id for t in plan.all_tasks()])
        RollbackManager(workspace, store).clear(plan)
    except CheckpointError as e:
        console.print(f"[red]Error resetting plan: {escape(e.message)}[/red]")
        raise typer.Exit(EXIT_FAILURE)

    console.print("[green]Plan reset successfully.[/green]")
    console.print(f"  Tasks: {plan.total_tasks}")


# =============================================================================
# Registration
# =============================================================================


def register(parent: typer.Typer):
    """Register executor commands with the parent CLI app."""
    parent.command("run")(run_cmd)
    parent.command("step")(step_cmd)
    parent.command("status")(status_cmd)
    parent.command("validate")(validate_cmd)
    parent.command("skip")(skip_cmd)
    parent.command("rollback")(rollback_cmd)
    parent.command("reset")(reset_cmd)
