#!/usr/bin/env python3
"""
Lifecycle Control CLI - Command Line Interface for the Lifecycle Engine.

Provides commands for starting onboarding and offboarding workflows,
inspecting their progress, cancelling or resuming them, and viewing the
audit trail.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import build_orchestrator, load_config
from ..exceptions import ValidationError, WorkflowNotFoundError
from ..models import TaskState, WorkflowInstance, WorkflowStatus
from ..workflows import parse_workflow_kind

logger = logging.getLogger(__name__)

# Rich console for pretty output
console = Console()

STATUS_STYLES = {
    WorkflowStatus.PENDING: "white",
    WorkflowStatus.RUNNING: "blue",
    WorkflowStatus.COMPLETED: "green",
    WorkflowStatus.FAILED: "red",
    WorkflowStatus.CANCELLED: "yellow",
}

TASK_STYLES = {
    TaskState.PENDING: "white",
    TaskState.RUNNING: "blue",
    TaskState.COMPLETED: "green",
    TaskState.FAILED: "red",
    TaskState.SKIPPED: "yellow",
}


class LifecycleController:
    """Main controller for Lifecycle Engine operations."""

    def __init__(self, config_path: Optional[str] = None, mock_mode: Optional[bool] = None):
        """Initialize the lifecycle controller."""
        self.config = load_config(config_path)
        if mock_mode is not None:
            self.config["mock_mode"] = mock_mode

        logging.basicConfig(
            level=getattr(logging, str(self.config.get("log_level", "INFO")).upper(), logging.INFO),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        self.orchestrator = build_orchestrator(self.config)
        self.mock_mode = self.config["mock_mode"]


def _parse_params(pairs: Tuple[str, ...], params_file: Optional[str]) -> Dict[str, Any]:
    """Merge a parameters file with key=value overrides."""
    params: Dict[str, Any] = {}

    if params_file:
        path = Path(params_file)
        with open(path, encoding="utf-8") as f:
            loaded = json.load(f) if path.suffix.lower() == ".json" else yaml.safe_load(f)
        if not isinstance(loaded, dict):
            raise click.BadParameter(f"{params_file} must contain a key/value map")
        params.update(loaded)

    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"Expected key=value, got '{pair}'")
        key, value = pair.split("=", 1)
        params[key.strip()] = value.strip()

    return params


@click.group()
@click.option('--config', '-c', type=click.Path(), help='Path to configuration file (JSON or YAML)')
@click.option('--mock/--real', default=None,
              help='Use the in-memory mock directory or Microsoft Graph (default from config)')
@click.pass_context
def cli(ctx, config, mock):
    """Lifecycle Engine Control CLI - Onboarding and Offboarding Workflows"""
    ctx.ensure_object(dict)
    ctx.obj['controller'] = LifecycleController(config, mock)


@cli.command()
@click.argument('kind')
@click.option('--param', '-p', 'pairs', multiple=True, help='Workflow parameter as key=value')
@click.option('--params-file', type=click.Path(exists=True), help='JSON or YAML file of parameters')
@click.option('--no-wait', is_flag=True, help='Create the workflow without executing it')
@click.pass_context
def start(ctx, kind, pairs, params_file, no_wait):
    """Start an onboarding or offboarding workflow."""
    controller = ctx.obj['controller']
    params = _parse_params(pairs, params_file)

    try:
        if no_wait:
            instance = controller.orchestrator.create(kind, params)
        else:
            console.print(f"[blue]Running {kind.lower()} workflow[/blue]")
            instance = controller.orchestrator.start(kind, params)
    except ValidationError as e:
        console.print("[red]Invalid workflow parameters:[/red]")
        for error in e.errors or [str(e)]:
            console.print(f"  - {error}")
        sys.exit(1)

    display_workflow(instance)
    display_credentials(controller.orchestrator.take_credentials(instance.id))
    if no_wait:
        console.print("[blue]Workflow created; run 'lifecyclectl resume' to execute it[/blue]")
    if instance.status == WorkflowStatus.FAILED:
        sys.exit(2)


@cli.command()
@click.argument('instance_id')
@click.pass_context
def show(ctx, instance_id):
    """Show a workflow and its tasks."""
    controller = ctx.obj['controller']

    try:
        instance = controller.orchestrator.get_instance(instance_id)
    except WorkflowNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    display_workflow(instance)


@cli.command(name='list')
@click.option('--kind', help='Filter by kind (onboarding, offboarding)')
@click.option('--status', type=click.Choice([s.value for s in WorkflowStatus], case_sensitive=False),
              help='Filter by status')
@click.option('--limit', default=50, help='Maximum number of workflows to show')
@click.pass_context
def list_workflows(ctx, kind, status, limit):
    """List workflows, newest first."""
    controller = ctx.obj['controller']

    try:
        kind_filter = parse_workflow_kind(kind) if kind else None
    except ValidationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    instances = controller.orchestrator.list_instances(
        kind=kind_filter, status=WorkflowStatus(status.upper()) if status else None
    )[:limit]

    if not instances:
        console.print("[yellow]No workflows found[/yellow]")
        return

    table = Table(title=f"Workflows ({len(instances)})")
    table.add_column("ID", style="cyan")
    table.add_column("Kind", style="green")
    table.add_column("Subject", style="blue")
    table.add_column("Status")
    table.add_column("Progress", justify="right", style="magenta")
    table.add_column("Created", style="yellow")

    for instance in instances:
        style = STATUS_STYLES[instance.status]
        table.add_row(
            instance.id,
            instance.kind.value,
            instance.subject_identity,
            f"[{style}]{instance.status.value}[/{style}]",
            f"{instance.progress}%",
            instance.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


@cli.command()
@click.argument('instance_id')
@click.pass_context
def cancel(ctx, instance_id):
    """Cancel a workflow that has not finished."""
    controller = ctx.obj['controller']

    try:
        accepted = controller.orchestrator.cancel(instance_id)
        instance = controller.orchestrator.get_instance(instance_id)
    except WorkflowNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if accepted:
        console.print(f"[green]✓ Cancel accepted for {instance_id} ({instance.status.value})[/green]")
    else:
        console.print(f"[yellow]Workflow {instance_id} already {instance.status.value}[/yellow]")


@cli.command()
@click.pass_context
def resume(ctx):
    """Resume every workflow left incomplete."""
    controller = ctx.obj['controller']

    resumed = controller.orchestrator.resume_incomplete(wait=True)
    if not resumed:
        console.print("[yellow]No incomplete workflows[/yellow]")
        return

    for instance_id in resumed:
        instance = controller.orchestrator.get_instance(instance_id)
        style = STATUS_STYLES[instance.status]
        console.print(
            f"{instance_id}: [{style}]{instance.status.value}[/{style}] ({instance.progress}%)"
        )
        display_credentials(controller.orchestrator.take_credentials(instance_id))


@cli.command()
@click.option('--workflow-id', help='Filter by workflow instance ID')
@click.option('--subject', help='Filter by subject identity')
@click.option('--limit', default=50, help='Maximum number of records to show')
@click.pass_context
def audit(ctx, workflow_id, subject, limit):
    """Show audit records, most recent first."""
    controller = ctx.obj['controller']

    records = controller.orchestrator.audit_logger.get_events(
        workflow_id=workflow_id, subject_identity=subject, limit=limit
    )

    if not records:
        console.print("[yellow]No audit records found[/yellow]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Timestamp", style="cyan")
    table.add_column("Workflow", style="blue")
    table.add_column("Event Type", style="green")
    table.add_column("Task", style="yellow")
    table.add_column("Transition", style="magenta")
    table.add_column("Success", style="red")

    for record in records:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.workflow_id[:8],
            record.event_type,
            record.task_type.value if record.task_type else "",
            f"{record.from_state or ''} → {record.to_state or ''}",
            "✓" if record.success else "✗",
        )

    console.print(table)


@cli.command()
@click.argument('kind')
@click.pass_context
def catalog(ctx, kind):
    """Show the ordered task list for a workflow kind."""
    controller = ctx.obj['controller']

    try:
        workflow_kind = parse_workflow_kind(kind)
    except ValidationError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    table = Table(title=f"{workflow_kind.value} Tasks")
    table.add_column("#", justify="right")
    table.add_column("Task", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Mandatory", style="red")
    table.add_column("Depends On", style="yellow")
    table.add_column("Condition", style="magenta")

    for position, template in enumerate(controller.orchestrator.catalog.get_templates(workflow_kind), 1):
        condition = ""
        if template.enabled_by:
            condition = f"if {template.enabled_by}"
        elif template.requires:
            condition = f"needs {template.requires}"
        table.add_row(
            str(position),
            template.task_type.value,
            template.name,
            "yes" if template.mandatory else "no",
            ", ".join(dep.value for dep in template.depends_on),
            condition,
        )

    console.print(table)


@cli.command()
@click.pass_context
def summary(ctx):
    """Show workflow counts by kind and status."""
    controller = ctx.obj['controller']
    counts = controller.orchestrator.get_summary()

    table = Table(title=f"Workflows ({counts['total_workflows']})")
    table.add_column("Group", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Count", justify="right", style="magenta")

    for kind, count in sorted(counts["workflows_by_kind"].items()):
        table.add_row("kind", kind, str(count))
    for status, count in sorted(counts["workflows_by_status"].items()):
        table.add_row("status", status, str(count))

    console.print(table)


@cli.command()
@click.option('--port', default=8000, help='Port to run the API server on')
@click.option('--host', default='127.0.0.1', help='Host to bind the API server to')
@click.pass_context
def serve(ctx, port, host):
    """Start the Lifecycle Engine API server."""
    from ..api.server import start_server

    controller = ctx.obj['controller']
    controller.orchestrator.shutdown()

    console.print(f"[green]Starting Lifecycle Engine API server on {host}:{port}[/green]")
    console.print("[blue]Press Ctrl+C to stop[/blue]")

    try:
        start_server(host=host, port=port, reload=False,
                     log_level=str(controller.config.get("log_level", "info")),
                     config=controller.config)
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped[/yellow]")


def display_workflow(instance: WorkflowInstance):
    """Display a workflow instance with its task table."""
    style = STATUS_STYLES[instance.status]
    console.print(Panel.fit(
        f"[bold blue]{instance.kind.value}[/bold blue] {instance.subject_identity}\n"
        f"ID: {instance.id}\n"
        f"Status: [{style}]{instance.status.value}[/{style}]  Progress: {instance.progress}%"
    ))

    table = Table(title="Tasks")
    table.add_column("Task", style="cyan")
    table.add_column("State")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail", style="yellow")

    for task in instance.tasks:
        task_style = TASK_STYLES[task.state]
        detail = task.last_error or task.skip_reason or ""
        if not detail and task.result:
            detail = task.result.get("message", "")
        table.add_row(
            f"{task.name}{'' if task.mandatory else ' (optional)'}",
            f"[{task_style}]{task.state.value}[/{task_style}]",
            str(task.attempt),
            detail,
        )

    console.print(table)


def display_credentials(credentials: Dict[str, str]):
    """Print one-time secrets; they cannot be retrieved again."""
    if not credentials:
        return

    lines = "\n".join(f"{key}: {value}" for key, value in credentials.items())
    console.print(Panel.fit(
        f"{lines}\n[yellow]Shown once only; hand over through a secure channel[/yellow]",
        title="One-time credentials",
    ))


def main():
    """Console script entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
