"""
CLI module - Command line interface for resumeflow

Entry point for the `rfw` command using Typer.
"""

import signal
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config, validate_config
from .constants import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARN
from .errors import ResumeflowError, ValidationError
from .logs import configure_logging
from .runners import OutputEvent, RunnerCallbacks, RunnerResult
from .service import WorkflowService
from .workflow import TaskStatus, WorkflowStatus, WorkflowSummary, load_workflow_file

console = Console()
app = typer.Typer(
    name="rfw",
    help="resumeflow - resumable workflows with encrypted checkpoints.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

STATUS_STYLES = {
    TaskStatus.PENDING: "dim",
    TaskStatus.RUNNING: "cyan",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
    TaskStatus.SKIPPED: "yellow",
}

LEVEL_STYLES = {
    LEVEL_INFO: "cyan",
    LEVEL_WARN: "yellow",
    LEVEL_ERROR: "red",
}


# Global options callback for version
def version_callback(value: bool):
    if value:
        console.print(f"rfw version {__version__}")
        raise typer.Exit()


# Type aliases for common options
ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Path to config file", exists=True, dir_okay=False),
]
DiscardOption = Annotated[
    bool,
    typer.Option("--discard-invalid", help="Start over when the checkpoint fails verification"),
]


@app.callback()
def main(
    version: Annotated[
        bool, typer.Option("--version", "-v", callback=version_callback, is_eager=True, help="Show version")
    ] = False,
):
    """resumeflow - resumable workflows with encrypted checkpoints."""
    pass


def get_service(config_path: Path | None = None) -> WorkflowService:
    """Load configuration, set up logging and build the service."""
    config: AppConfig = load_config(config_path)
    errors = validate_config(config)
    if errors:
        for error in errors:
            console.print(f"[red]Config error:[/red] {error}")
        raise typer.Exit(2)
    configure_logging(config.logging)
    return WorkflowService(config)


def _fail(error: ResumeflowError) -> typer.Exit:
    console.print(f"[red]Error:[/red] {error}")
    return typer.Exit(2 if isinstance(error, ValidationError) else 1)


def _console_callbacks() -> RunnerCallbacks:
    """Callbacks that print progress to the console."""

    def on_workflow_start(workflow_id: str, total: int) -> None:
        console.print(f"[bold]Workflow {workflow_id}[/bold] ({total} tasks)")

    def on_task_start(name: str, title: str) -> None:
        console.print(f"\n[cyan]▶ {title}[/cyan] [dim]({name})[/dim]")

    def on_task_complete(name: str, status: TaskStatus) -> None:
        style = STATUS_STYLES[status]
        console.print(f"  [{style}]{status.value}[/{style}] {name}")

    def on_output(event: OutputEvent) -> None:
        if not event.message:
            return
        style = LEVEL_STYLES.get(event.level)
        message = escape(event.message)
        text = f"[{style}]{message}[/{style}]" if style else message
        console.print(f"  [dim]{event.progress:5.1f}%[/dim] {text}", highlight=False)

    def on_reboot_requested(reason: str) -> None:
        console.print(f"\n[yellow]Restart required:[/yellow] {reason}")

    return RunnerCallbacks(
        on_workflow_start=on_workflow_start,
        on_task_start=on_task_start,
        on_task_complete=on_task_complete,
        on_output=on_output,
        on_reboot_requested=on_reboot_requested,
    )


def _print_result(result: RunnerResult) -> None:
    console.print()
    if result.status == WorkflowStatus.AWAITING_RESUME:
        console.print(f"[yellow]Awaiting restart:[/yellow] {result.reboot_reason}")
        console.print(f"[dim]Resume manually with: rfw resume {result.workflow_id}[/dim]")
    elif result.success:
        console.print(f"[green]Workflow {result.workflow_id} {result.outcome}[/green] ({result.progress:.0f}%)")
    else:
        console.print(f"[red]Workflow {result.workflow_id} {result.outcome}[/red]")
        for error in result.errors:
            console.print(f"  [red]•[/red] {error}")

    console.print(
        f"[dim]{result.tasks_completed} completed, {result.tasks_failed} failed, "
        f"{result.tasks_skipped} skipped[/dim]"
    )


def _run_with_interrupt(service: WorkflowService, workflow_id: str, func):
    """Run ``func`` with Ctrl+C mapped to a cooperative cancel."""

    def handler(signum, frame):
        console.print("\n[yellow]Cancelling...[/yellow]")
        service.cancel(workflow_id)

    previous = signal.signal(signal.SIGINT, handler)
    try:
        return func()
    finally:
        signal.signal(signal.SIGINT, previous)


def _exit_for(result: RunnerResult) -> None:
    if result.success or result.awaiting_resume:
        return
    raise typer.Exit(1)


@app.command()
def run(
    file: Annotated[Path, typer.Argument(help="Workflow YAML file", exists=True, dir_okay=False)],
    discard_invalid: DiscardOption = False,
    config: ConfigOption = None,
):
    """
    Run a workflow file.

    An interrupted earlier run of the same workflow id is resumed.

    [bold]Examples:[/bold]

        rfw run provision.yaml

        rfw run provision.yaml --discard-invalid
    """
    service = get_service(config)
    try:
        definition = load_workflow_file(file)
        result = _run_with_interrupt(
            service,
            definition.id,
            lambda: service.start(definition, _console_callbacks(), discard_invalid=discard_invalid),
        )
    except ResumeflowError as e:
        raise _fail(e) from e

    _print_result(result)
    _exit_for(result)


@app.command()
def resume(
    workflow_id: Annotated[str, typer.Argument(help="Workflow id")],
    definition: Annotated[
        Path | None,
        typer.Option("--definition", "-d", help="Workflow YAML file (default: recorded in the checkpoint)"),
    ] = None,
    discard_invalid: DiscardOption = False,
    config: ConfigOption = None,
):
    """
    Resume a workflow from its checkpoint.

    This is the command registered to run after a restart.
    """
    service = get_service(config)
    try:
        if definition is None:
            definition = service.definition_path(workflow_id)
            if definition is None:
                console.print(f"[red]Error:[/red] No workflow file known for {workflow_id}; pass --definition")
                raise typer.Exit(1)
        loaded = load_workflow_file(definition)
        if loaded.id != workflow_id:
            raise ValidationError(f"{definition} defines workflow {loaded.id}", workflow_id)
        result = _run_with_interrupt(
            service,
            workflow_id,
            lambda: service.resume(loaded, _console_callbacks(), discard_invalid=discard_invalid),
        )
    except ResumeflowError as e:
        raise _fail(e) from e

    _print_result(result)
    _exit_for(result)


def _summary_table(summary: WorkflowSummary) -> Table:
    table = Table(title=f"{summary.title} ({summary.workflow_id})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Task", style="cyan")
    table.add_column("Status")

    for index, (name, status) in enumerate(summary.tasks, start=1):
        style = STATUS_STYLES[status]
        table.add_row(str(index), name, f"[{style}]{status.value}[/{style}]")
    return table


@app.command()
def status(
    workflow_id: Annotated[str, typer.Argument(help="Workflow id")],
    config: ConfigOption = None,
):
    """Show the checkpointed state of a workflow."""
    service = get_service(config)
    try:
        summary = service.status(workflow_id)
    except ResumeflowError as e:
        raise _fail(e) from e

    if summary is None:
        console.print(f"[dim]No checkpoint for {workflow_id}[/dim]")
        return

    console.print(_summary_table(summary))
    console.print(f"Outcome: [bold]{summary.outcome}[/bold]")
    console.print(f"Progress: {summary.progress:.1f}%  Next task: {summary.next_index + 1}/{summary.total_tasks}")
    console.print(f"[dim]Sequence {summary.sequence}, updated {summary.updated_at}[/dim]")
    if summary.reboot_reason:
        console.print(f"[yellow]Awaiting restart:[/yellow] {summary.reboot_reason}")
    if service.is_running(workflow_id):
        console.print("[cyan]Currently running[/cyan]")


@app.command()
def cancel(
    workflow_id: Annotated[str, typer.Argument(help="Workflow id")],
    config: ConfigOption = None,
):
    """Cancel a running or pending workflow."""
    service = get_service(config)
    try:
        cancelled = service.cancel(workflow_id)
    except ResumeflowError as e:
        raise _fail(e) from e

    if cancelled:
        console.print(f"[yellow]Cancel requested for {workflow_id}[/yellow]")
    else:
        console.print(f"[dim]Nothing to cancel for {workflow_id}[/dim]")


@app.command()
def clear(
    workflow_id: Annotated[str, typer.Argument(help="Workflow id")],
    force: Annotated[bool, typer.Option("--force", "-f", help="Clear even if the workflow looks running")] = False,
    config: ConfigOption = None,
):
    """Delete the checkpoint of a workflow."""
    service = get_service(config)
    try:
        removed = service.clear_state(workflow_id, force=force)
    except ResumeflowError as e:
        raise _fail(e) from e

    if removed:
        console.print(f"[green]✓[/green] Cleared state for {workflow_id}")
    else:
        console.print(f"[dim]No checkpoint for {workflow_id}[/dim]")


@app.command("list")
def list_workflows(config: ConfigOption = None):
    """List workflows with a checkpoint."""
    service = get_service(config)
    listings = service.list_workflows()

    if not listings:
        console.print("[dim]No workflows[/dim]")
        return

    table = Table(title="Workflows")
    table.add_column("Id", style="cyan")
    table.add_column("Outcome")
    table.add_column("Progress", justify="right")
    table.add_column("Updated", style="dim")

    for listing in listings:
        if listing.summary is None:
            table.add_row(listing.workflow_id, f"[red]unreadable: {listing.error}[/red]", "-", "-")
            continue
        outcome = listing.summary.outcome + (" [cyan](running)[/cyan]" if listing.running else "")
        table.add_row(
            listing.workflow_id,
            outcome,
            f"{listing.summary.progress:.0f}%",
            listing.summary.updated_at,
        )

    console.print(table)


def main_cli():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main_cli()
