"""CLI entry point for continuity.

Commands:
- continuity init: Create .continuity/ with a default config and database
- continuity register / heartbeat / close: Instance lifecycle
- continuity list / stale / details: Inspect instances
- continuity resume: Resume a stale instance
- continuity emit / events: Event log
- continuity checkpoint create|list|show|cleanup: Checkpoints
- continuity log-command / search-commands / command-stats: Command log
"""

from __future__ import annotations

import json
import logging
import sqlite3
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from continuity import __version__
from continuity.config import CONFIG_DIR, CONFIG_FILENAME, DEFAULT_CONFIG_YAML
from continuity.core.errors import ContinuityError
from continuity.core.heartbeat import format_staleness_message
from continuity.core.models import (
    CheckpointType,
    CommandFilters,
    CommandInput,
    CommandType,
    ConfidenceLevel,
    EventType,
    Instance,
    InstanceStatus,
    InstanceType,
    RetentionPolicy,
)
from continuity.resume.resolver import Disambiguation, NotFound
from continuity.service import ContinuityService

console = Console()

_CLI_ERRORS = (ContinuityError, ValueError, sqlite3.Error)

_STATUS_STYLES = {
    InstanceStatus.ACTIVE: "green",
    InstanceStatus.STALE: "yellow",
    InstanceStatus.CLOSED: "dim",
}

_LEVEL_STYLES = {
    ConfidenceLevel.HIGH: "green",
    ConfidenceLevel.MODERATE: "cyan",
    ConfidenceLevel.LOW: "yellow",
    ConfidenceLevel.VERY_LOW: "red",
}


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


def _service(ctx: click.Context) -> ContinuityService:
    if "service" not in ctx.obj:
        db_path = ctx.obj.get("db_path")
        ctx.obj["service"] = ContinuityService.for_repo(
            get_repo_path(), db_path=Path(db_path) if db_path else None
        )
    return ctx.obj["service"]


def _fail(error: Exception) -> NoReturn:
    console.print(f"[red]Error:[/red] {error}")
    sys.exit(1)


def _parse_json(ctx: click.Context, param: click.Parameter, value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}") from e


def _status_text(instance: Instance) -> str:
    style = _STATUS_STYLES[instance.status]
    return f"[{style}]{instance.status.value}[/{style}]"


def _instance_table(title: str, instances: list[Instance], now) -> Table:
    table = Table(title=title)
    table.add_column("Instance", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Context", justify="right")
    table.add_column("Epic")
    table.add_column("Host", style="dim")
    table.add_column("Last heartbeat")

    for instance in instances:
        table.add_row(
            instance.instance_id,
            instance.type.value,
            _status_text(instance),
            f"{instance.context_percent}%",
            instance.current_epic or "-",
            instance.host_machine or "-",
            format_staleness_message(instance.heartbeat_age_seconds(now), instance.status),
        )
    return table


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--db",
    "db_path",
    envvar="CONTINUITY_DB",
    type=click.Path(dir_okay=False),
    help="Database file (default: .continuity/state.db)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, db_path: str | None, verbose: bool) -> None:
    """Continuity - session tracking and resume for worker instances.

    Instances heartbeat while they run. When one stops, its work can be
    resumed from checkpoints, events or the command log.
    """
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Initialize .continuity/ in the current directory."""
    continuity_dir = get_repo_path() / CONFIG_DIR
    config_path = continuity_dir / CONFIG_FILENAME

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        for table, count in _service(ctx).db.table_counts().items():
            console.print(f"  {table}: {count}")
        return

    continuity_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)
    service = _service(ctx)

    console.print(f"[green]Initialized continuity in {continuity_dir}[/green]")
    console.print(f"  Config:   {config_path}")
    console.print(f"  Database: {service.db.db_path}")


# --- Instances ---


@main.command()
@click.argument("project")
@click.option(
    "--type",
    "instance_type",
    type=click.Choice([t.value for t in InstanceType]),
    default=InstanceType.WORKER.value,
    show_default=True,
)
@click.option("--path", "project_path", help="Working directory of the instance")
@click.option("--host", "host_machine", help="Host name (default: $CONTINUITY_HOST or hostname)")
@click.pass_context
def register(
    ctx: click.Context,
    project: str,
    instance_type: str,
    project_path: str | None,
    host_machine: str | None,
) -> None:
    """Register a new instance for PROJECT and print its ID."""
    try:
        instance = _service(ctx).register_instance(
            project, instance_type, project_path=project_path, host_machine=host_machine
        )
    except _CLI_ERRORS as e:
        _fail(e)
    console.print(f"[green]Registered[/green] {instance.instance_id}")


@main.command()
@click.argument("instance_id")
@click.argument("context_percent", type=click.IntRange(0, 100))
@click.option("--epic", "current_epic", help="Epic the instance is working on")
@click.pass_context
def heartbeat(
    ctx: click.Context, instance_id: str, context_percent: int, current_epic: str | None
) -> None:
    """Record a heartbeat for INSTANCE_ID."""
    try:
        result = _service(ctx).heartbeat(instance_id, context_percent, current_epic)
    except _CLI_ERRORS as e:
        _fail(e)

    console.print(f"[green]Heartbeat[/green] {instance_id} ({context_percent}% context)")
    if result.stale:
        console.print(
            f"[yellow]Instance was stale for {int(result.age_seconds)}s "
            "and is active again[/yellow]"
        )
    if result.auto_checkpoint_id:
        console.print(f"[cyan]Auto checkpoint:[/cyan] {result.auto_checkpoint_id}")


@main.command()
@click.argument("instance_id")
@click.pass_context
def close(ctx: click.Context, instance_id: str) -> None:
    """Close INSTANCE_ID permanently."""
    try:
        instance = _service(ctx).close_instance(instance_id)
    except _CLI_ERRORS as e:
        _fail(e)
    console.print(f"Closed {instance.instance_id}")


@main.command(name="list")
@click.option("--project", "-p", help="Only instances of this project")
@click.option("--all", "include_closed", is_flag=True, help="Include closed instances")
@click.pass_context
def list_cmd(ctx: click.Context, project: str | None, include_closed: bool) -> None:
    """List instances."""
    service = _service(ctx)
    instances = service.list_instances(project=project, include_closed=include_closed)
    if not instances:
        console.print("[dim]No instances found[/dim]")
        return
    console.print(_instance_table("Instances", instances, service.clock.now()))


@main.command()
@click.option("--project", "-p", help="Only instances of this project")
@click.option("--detect", is_flag=True, help="Record instance_stale events for new stale instances")
@click.pass_context
def stale(ctx: click.Context, project: str | None, detect: bool) -> None:
    """List stale (resumable) instances, most recent first."""
    service = _service(ctx)
    if detect:
        newly = service.detect_stale_instances(project)
        console.print(f"[yellow]{len(newly)} newly stale instance(s) recorded[/yellow]")
    instances = service.list_stale_instances(project)
    if not instances:
        console.print("[dim]No stale instances[/dim]")
        return
    console.print(_instance_table("Stale Instances", instances, service.clock.now()))


@main.command()
@click.argument("id_or_fragment")
@click.pass_context
def details(ctx: click.Context, id_or_fragment: str) -> None:
    """Show details and recovery info for an instance (ID, prefix or hash fragment)."""
    try:
        info = _service(ctx).get_resume_instance_details(id_or_fragment)
    except _CLI_ERRORS as e:
        _fail(e)

    instance = info.instance
    table = Table(title=f"Instance {instance.instance_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Project", instance.project)
    table.add_row("Type", instance.type.value)
    table.add_row("Status", _status_text(instance))
    table.add_row("Liveness", info.staleness)
    table.add_row("Context", f"{instance.context_percent}%")
    table.add_row("Epic", instance.current_epic or "-")
    table.add_row("Path", instance.project_path or "-")
    table.add_row("Host", instance.host_machine or "-")
    table.add_row("Registered", instance.created_at.isoformat(timespec="seconds"))
    table.add_row(
        "Commands",
        f"{info.command_stats.total} ({info.command_stats.failed} failed)",
    )
    table.add_row("Events", str(sum(info.event_counts.values())))
    console.print(table)

    if info.recent_commands:
        console.print("\n[bold]Recent commands[/bold]")
        for entry in info.recent_commands:
            marker = "[green]ok[/green]" if entry.success else "[red]failed[/red]"
            console.print(f"  {entry.command_type.value}: {entry.action} {marker}")

    if info.recovery_instructions:
        console.print()
        console.print(Markdown(info.recovery_instructions))


@main.command()
@click.argument("hint", required=False)
@click.option("--choice", "-c", type=int, help="Pick candidate N (1-based) when ambiguous")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write handoff document")
@click.option("--handoff", is_flag=True, help="Print the full handoff document")
@click.pass_context
def resume(
    ctx: click.Context,
    hint: str | None,
    choice: int | None,
    output: str | None,
    handoff: bool,
) -> None:
    """Resume a stale instance.

    HINT may be a full instance ID, 4-6 characters of its hash, a project
    name or an epic ID. Without a hint the most recently stale instance is
    resumed.

    Example:
        continuity resume 8f4a2b
    """
    try:
        result = _service(ctx).resume_instance(hint, choice)
    except _CLI_ERRORS as e:
        _fail(e)

    if isinstance(result, NotFound):
        console.print(f"[red]Not found:[/red] {result.reason}")
        sys.exit(1)

    if isinstance(result, Disambiguation):
        table = Table(title="Multiple matches")
        table.add_column("#", justify="right")
        table.add_column("Instance", style="cyan")
        table.add_column("Epic")
        table.add_column("Last heartbeat")
        for index, candidate in enumerate(result.candidates, start=1):
            table.add_row(
                str(index),
                candidate.instance_id,
                candidate.current_epic or "-",
                candidate.last_heartbeat.isoformat(timespec="seconds"),
            )
        console.print(table)
        console.print(f"[yellow]{result.hint}[/yellow]")
        return

    confidence = result.confidence
    style = _LEVEL_STYLES[confidence.level]
    console.print(
        Panel(
            f"[bold]{result.instance_id}[/bold]\n"
            f"Source: {result.reconstruction.source.value} "
            f"({result.reconstruction.age_minutes} min old)\n"
            f"Confidence: [{style}]{confidence.score}% {confidence.level.value}[/{style}] "
            f"- {confidence.level.guidance}",
            title="Resume",
        )
    )
    for warning in confidence.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")

    console.print("\n[bold]Next steps[/bold]")
    for index, step in enumerate(result.summary.next_steps, start=1):
        console.print(f"  {index}. {step}")

    if output:
        Path(output).write_text(result.handoff_document)
        console.print(f"\n[dim]Handoff written to {output}[/dim]")
    if handoff:
        console.print()
        console.print(Markdown(result.handoff_document))


# --- Events ---


@main.command()
@click.argument("instance_id")
@click.argument("event_type", type=click.Choice([t.value for t in EventType]))
@click.option("--data", callback=_parse_json, help="Event data as JSON")
@click.option("--metadata", callback=_parse_json, help="Event metadata as JSON")
@click.pass_context
def emit(
    ctx: click.Context,
    instance_id: str,
    event_type: str,
    data: dict[str, Any] | None,
    metadata: dict[str, Any] | None,
) -> None:
    """Append an event to INSTANCE_ID's log."""
    try:
        event = _service(ctx).emit_event(instance_id, event_type, data or {}, metadata)
    except _CLI_ERRORS as e:
        _fail(e)
    console.print(f"Event #{event.sequence_num} {event.event_type.value} for {instance_id}")


@main.command()
@click.option("--instance", "-i", "instance_id", help="Only events of this instance")
@click.option(
    "--type",
    "-t",
    "event_types",
    multiple=True,
    type=click.Choice([t.value for t in EventType]),
    help="Event type (repeatable)",
)
@click.option("--limit", "-n", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--counts", is_flag=True, help="Show counts per event type instead")
@click.pass_context
def events(
    ctx: click.Context,
    instance_id: str | None,
    event_types: tuple[str, ...],
    limit: int,
    counts: bool,
) -> None:
    """Show recent events."""
    service = _service(ctx)
    if counts:
        table = Table(title="Events by type")
        table.add_column("Type", style="cyan")
        table.add_column("Count", justify="right")
        for event_type, count in service.aggregate_events(instance_id).items():
            table.add_row(event_type, str(count))
        console.print(table)
        return

    found = service.query_events(
        instance_id=instance_id, event_types=list(event_types) or None, limit=limit
    )
    if not found:
        console.print("[dim]No events found[/dim]")
        return

    table = Table(title="Events")
    table.add_column("Instance", style="cyan")
    table.add_column("#", justify="right")
    table.add_column("Type")
    table.add_column("Time")
    table.add_column("Data", style="dim")
    for event in found:
        table.add_row(
            event.instance_id,
            str(event.sequence_num),
            event.event_type.value,
            event.timestamp.isoformat(timespec="seconds"),
            json.dumps(event.event_data)[:80],
        )
    console.print(table)


# --- Checkpoints ---


@main.group()
def checkpoint() -> None:
    """Create, inspect and prune checkpoints."""
    pass


@checkpoint.command(name="create")
@click.argument("instance_id")
@click.option(
    "--type",
    "checkpoint_type",
    type=click.Choice([t.value for t in CheckpointType]),
    default=CheckpointType.MANUAL.value,
    show_default=True,
)
@click.option("--context", "context_percent", type=click.IntRange(0, 100))
@click.option(
    "--state",
    "state_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML/JSON work-state file (default: folded from the event log)",
)
@click.option("--note", help="Free-text note stored in the checkpoint metadata")
@click.pass_context
def checkpoint_create(
    ctx: click.Context,
    instance_id: str,
    checkpoint_type: str,
    context_percent: int | None,
    state_file: str | None,
    note: str | None,
) -> None:
    """Create a checkpoint for INSTANCE_ID."""
    work_state = None
    if state_file:
        try:
            with open(state_file, encoding="utf-8") as f:
                work_state = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            _fail(ValueError(f"Invalid work-state file {state_file}: {e}"))
        if not isinstance(work_state, dict):
            _fail(ValueError(f"Work-state file {state_file} must contain a mapping"))

    try:
        created = _service(ctx).create_checkpoint(
            instance_id,
            checkpoint_type,
            context_percent=context_percent,
            work_state=work_state,
            metadata={"note": note} if note else None,
        )
    except _CLI_ERRORS as e:
        _fail(e)
    console.print(
        f"[green]Checkpoint[/green] {created.checkpoint_id} "
        f"(event #{created.sequence_num}, {created.metadata['size_bytes']} bytes)"
    )


@checkpoint.command(name="list")
@click.argument("instance_id")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=20, show_default=True)
@click.pass_context
def checkpoint_list(ctx: click.Context, instance_id: str, limit: int) -> None:
    """List checkpoints of INSTANCE_ID, newest first."""
    found = _service(ctx).list_checkpoints(instance_id, limit)
    if not found:
        console.print("[dim]No checkpoints found[/dim]")
        return
    table = Table(title=f"Checkpoints for {instance_id}")
    table.add_column("Checkpoint", style="cyan")
    table.add_column("Type")
    table.add_column("Event #", justify="right")
    table.add_column("Context", justify="right")
    table.add_column("Taken")
    for item in found:
        table.add_row(
            item.checkpoint_id,
            item.checkpoint_type.value,
            str(item.sequence_num),
            f"{item.context_window_percent}%" if item.context_window_percent is not None else "-",
            item.timestamp.isoformat(timespec="seconds"),
        )
    console.print(table)


@checkpoint.command(name="show")
@click.argument("checkpoint_id")
@click.pass_context
def checkpoint_show(ctx: click.Context, checkpoint_id: str) -> None:
    """Print recovery instructions for CHECKPOINT_ID."""
    service = _service(ctx)
    found = service.get_checkpoint(checkpoint_id)
    if found is None:
        _fail(ContinuityError(f"Checkpoint not found: {checkpoint_id}"))
    console.print(Markdown(service.checkpoints.recovery_instructions(found)))


@checkpoint.command(name="cleanup")
@click.option("--max-age-days", type=click.FloatRange(min=0, min_open=True))
@click.option("--max-per-instance", type=click.IntRange(min=1))
@click.pass_context
def checkpoint_cleanup(
    ctx: click.Context, max_age_days: float | None, max_per_instance: int | None
) -> None:
    """Delete checkpoints outside the retention policy."""
    service = _service(ctx)
    policy = None
    if max_age_days is not None or max_per_instance is not None:
        policy = RetentionPolicy(max_age_days=max_age_days, max_per_instance=max_per_instance)
    deleted = service.cleanup_checkpoints(policy)
    console.print(f"Deleted {deleted} checkpoint(s)")


# --- Command log ---


@main.command(name="log-command")
@click.argument("instance_id")
@click.argument("command_type", type=click.Choice([t.value for t in CommandType]))
@click.argument("action")
@click.option("--tool", "tool_name", help="Tool that ran the command")
@click.option("--params", callback=_parse_json, help="Parameters as JSON")
@click.option("--result", callback=_parse_json, help="Result as JSON")
@click.option("--failed", is_flag=True, help="Mark the command as failed")
@click.option("--duration-ms", type=click.IntRange(min=0), help="Execution time")
@click.option("--tag", "tags", multiple=True, help="Tag (repeatable)")
@click.pass_context
def log_command(
    ctx: click.Context,
    instance_id: str,
    command_type: str,
    action: str,
    tool_name: str | None,
    params: dict[str, Any] | None,
    result: dict[str, Any] | None,
    failed: bool,
    duration_ms: int | None,
    tags: tuple[str, ...],
) -> None:
    """Record a command for INSTANCE_ID."""
    try:
        entry = _service(ctx).log_command(
            instance_id,
            CommandInput(
                command_type=CommandType(command_type),
                action=action,
                tool_name=tool_name,
                parameters=params or {},
                result=result,
                success=not failed,
                execution_time_ms=duration_ms,
                tags=list(tags),
            ),
        )
    except _CLI_ERRORS as e:
        _fail(e)
    console.print(f"Logged command {entry.id} ({entry.command_type.value}: {entry.action})")


@main.command(name="search-commands")
@click.option("--instance", "-i", "instance_id")
@click.option("--type", "command_type", type=click.Choice([t.value for t in CommandType]))
@click.option("--action")
@click.option("--tool", "tool_name")
@click.option("--text", help="Free-text match on action, parameters and result")
@click.option("--tag", "tags", multiple=True)
@click.option("--success-only", is_flag=True)
@click.option("--limit", "-n", type=click.IntRange(1, 1000), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0)
@click.pass_context
def search_commands(
    ctx: click.Context,
    instance_id: str | None,
    command_type: str | None,
    action: str | None,
    tool_name: str | None,
    text: str | None,
    tags: tuple[str, ...],
    success_only: bool,
    limit: int,
    offset: int,
) -> None:
    """Search the command log, newest first."""
    filters = CommandFilters(
        instance_id=instance_id,
        command_type=CommandType(command_type) if command_type else None,
        action=action,
        tool_name=tool_name,
        text=text,
        tags=list(tags),
        success_only=success_only,
        limit=limit,
        offset=offset,
    )
    found = _service(ctx).search_commands(filters)
    if not found:
        console.print("[dim]No commands found[/dim]")
        return

    table = Table(title="Commands")
    table.add_column("ID", justify="right")
    table.add_column("Instance", style="cyan")
    table.add_column("Type")
    table.add_column("Action")
    table.add_column("Tool")
    table.add_column("OK")
    table.add_column("Time")
    for entry in found:
        table.add_row(
            str(entry.id),
            entry.instance_id,
            entry.command_type.value,
            entry.action,
            entry.tool_name or "-",
            "[green]yes[/green]" if entry.success else "[red]no[/red]",
            entry.created_at.isoformat(timespec="seconds"),
        )
    console.print(table)


@main.command(name="command-stats")
@click.argument("instance_id")
@click.pass_context
def command_stats(ctx: click.Context, instance_id: str) -> None:
    """Summarize the command log of INSTANCE_ID."""
    stats = _service(ctx).command_stats(instance_id)
    console.print(
        f"Total: {stats.total}  Successful: {stats.successful}  Failed: {stats.failed}"
    )
    for command_type, count in stats.by_type.items():
        console.print(f"  {command_type}: {count}")
    if stats.tools_used:
        console.print(f"Tools: {', '.join(stats.tools_used)}")


@main.command()
def version() -> None:
    """Show version information."""
    console.print(f"Continuity v{__version__}")
    console.print("Session continuity and resume for worker instances")


if __name__ == "__main__":
    main()
