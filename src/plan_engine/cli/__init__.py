from __future__ import annotations

import typer
from rich.console import Console

from plan_engine import __version__
from plan_engine.cli.cmds import register_executor

console = Console()


def version_callback(value: bool):
    """Show version and exit."""
    if value:
        console.print(f"plan-engine [dim]v{__version__}[/dim]")
        raise typer.Exit()


_TYPER_HELP = """Execute Markdown plan documents task by task.

**Quick start:**

* `plan-engine validate PLAN.md` — Check a plan document
* `plan-engine status PLAN.md` — Show progress and what can run next
* `plan-engine step PLAN.md` — Execute the next runnable task
* `plan-engine run PLAN.md --auto-fix` — Execute everything from the beginning
"""

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=_TYPER_HELP,
    rich_markup_mode="markdown",
)


@app.callback()
def main_callback(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
):
    """plan-engine: verified, resumable execution of Markdown plans."""


register_executor(app)


def main():
    app()


if __name__ == "__main__":
    main()
