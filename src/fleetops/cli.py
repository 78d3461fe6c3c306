"""Command-line interface for fleetops."""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click

from fleetops import __version__
from fleetops.config import Settings, load_settings
from fleetops.credentials import CredentialResolver
from fleetops.crypto import SecretCipher
from fleetops.exceptions import FleetOpsError
from fleetops.facts import summarize_facts
from fleetops.hosts import MemoryHostRepository, load_hosts
from fleetops.logging import configure_logging, get_level_from_name, get_level_from_verbosity, get_logger
from fleetops.orchestrator import ExecutionOrchestrator
from fleetops.progress import ProgressReporter, create_progress_reporter
from fleetops.report import (
    format_facts_text,
    format_result_json,
    format_result_text,
    format_task_json,
    format_task_list_text,
    format_task_text,
    host_names,
)
from fleetops.runner import FleetRunner
from fleetops.store import JsonTaskStore
from fleetops.tasks import TaskRecord, TaskStatus
from fleetops.types import ExecutionRequest, Playbook

logger = get_logger("fleetops.cli")

T = TypeVar("T")

format_option = click.option(
    "--format", "-f", "output_format", type=click.Choice(["text", "json"]),
    default="text", help="Output format (default: text)",
)
hosts_option = click.option(
    "--host", "-H", "host_ids", multiple=True,
    help="Target host id (repeatable; default: every host in the catalog)",
)
timeout_option = click.option(
    "--timeout", "-t", type=int, default=None,
    help="Execution timeout in seconds (default: from settings)",
)


def _run(coro_factory: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine, turning fleetops errors into CLI errors."""
    try:
        return asyncio.run(coro_factory())
    except FleetOpsError as e:
        raise click.ClickException(str(e)) from e


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _reporter(ctx: click.Context) -> ProgressReporter:
    return create_progress_reporter(
        enabled=ctx.obj["progress"] or ctx.obj["json_progress"],
        json_format=ctx.obj["json_progress"],
        interactive=sys.stderr.isatty(),
    )


def _orchestrator(
    ctx: click.Context,
    hosts: MemoryHostRepository | None = None,
) -> ExecutionOrchestrator:
    settings = _settings(ctx)
    resolver = None
    if settings.encryption_key:
        try:
            resolver = CredentialResolver(SecretCipher(settings.encryption_key))
        except FleetOpsError as e:
            raise click.ClickException(str(e)) from e
    runner = FleetRunner(settings, resolver)
    return ExecutionOrchestrator(
        store=JsonTaskStore(settings.state_dir),
        hosts=hosts if hosts is not None else MemoryHostRepository(),
        runner=runner,
        reporter=_reporter(ctx),
        settings=settings,
    )


def _load_catalog(hosts_file: str) -> MemoryHostRepository:
    try:
        return load_hosts(hosts_file)
    except FleetOpsError as e:
        raise click.ClickException(str(e)) from e


def _target_ids(catalog: MemoryHostRepository, host_ids: tuple[str, ...]) -> list[str]:
    ids = list(host_ids) or list(catalog.hosts)
    if not ids:
        raise click.ClickException("No hosts to target")
    return ids


def _echo_task(record: TaskRecord, output_format: str) -> None:
    if output_format == "json":
        click.echo(format_task_json(record))
    else:
        click.echo(format_task_text(record))

    if record.status is not TaskStatus.SUCCESS:
        if output_format == "json":
            raise SystemExit(1)
        raise click.ClickException(f"Task {record.id} finished {record.status.value}")


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False), default=None,
              help="YAML settings file (default: $FLEETOPS_CONFIG)")
@click.option("-v", "--verbose", count=True,
              help="Increase verbosity: -v=info, -vv=debug, -vvv=trace")
@click.option("--log-level", type=click.Choice(["trace", "debug", "info", "warning", "error"]),
              default=None, help="Set log level explicitly (overrides -v)")
@click.option("--log-file", type=click.Path(), default=None,
              help="Write logs to file (in addition to console)")
@click.option("--progress/--no-progress", default=False, help="Show progress as tasks advance")
@click.option("--json-progress", is_flag=True, help="Emit progress as NDJSON on stderr")
@click.pass_context
def cli(
    ctx: click.Context,
    version: bool,
    config_file: str | None,
    verbose: int,
    log_level: str | None,
    log_file: str | None,
    progress: bool,
    json_progress: bool,
) -> None:
    """Run commands and playbooks across a fleet through ansible."""
    if version:
        click.echo(f"fleetops {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit(0)

    level = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)
    configure_logging(
        level=level,
        log_file=log_file,
        file_level=level if log_file else None,
        debug=(level <= logging.DEBUG),
    )

    try:
        settings = load_settings(config_file)
    except FleetOpsError as e:
        raise click.ClickException(str(e)) from e

    logger.debug("Settings loaded", state_dir=settings.state_dir, scratch_dir=settings.scratch_dir)
    ctx.obj = {"settings": settings, "progress": progress, "json_progress": json_progress}


@cli.command("command")
@click.argument("hosts_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("command")
@hosts_option
@timeout_option
@format_option
@click.pass_context
def run_command(
    ctx: click.Context,
    hosts_file: str,
    command: str,
    host_ids: tuple[str, ...],
    timeout: int | None,
    output_format: str,
) -> None:
    """Run a shell command on hosts as a tracked task.

    Examples:
        fleetops command hosts.yml "uptime"

        fleetops command hosts.yml "df -h" -H 3f2a... -H 9b7c...
    """
    catalog = _load_catalog(hosts_file)
    orchestrator = _orchestrator(ctx, catalog)

    async def run() -> TaskRecord:
        request = ExecutionRequest(host_ids=_target_ids(catalog, host_ids), command=command, timeout=timeout)
        task_id = await orchestrator.submit(request)
        return await orchestrator.wait(task_id)

    with orchestrator.reporter:
        record = _run(run)
    _echo_task(record, output_format)


@cli.command("playbook")
@click.argument("hosts_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("playbook_file", type=click.Path(exists=True, dir_okay=False))
@hosts_option
@click.option("--extra-vars", "-e", "extra_vars", default=None, help="Variables as a JSON object")
@timeout_option
@format_option
@click.pass_context
def run_playbook(
    ctx: click.Context,
    hosts_file: str,
    playbook_file: str,
    host_ids: tuple[str, ...],
    extra_vars: str | None,
    timeout: int | None,
    output_format: str,
) -> None:
    """Run a playbook on hosts as a tracked task.

    Examples:
        fleetops playbook hosts.yml site.yml -e '{"version": "1.2"}'
    """
    variables: dict[str, Any] = {}
    if extra_vars:
        try:
            variables = json.loads(extra_vars)
        except json.JSONDecodeError as e:
            raise click.ClickException(f"--extra-vars is not valid JSON: {e}") from e
        if not isinstance(variables, dict):
            raise click.ClickException("--extra-vars must be a JSON object")

    path = Path(playbook_file)
    playbook = Playbook(content=path.read_text(), name=path.stem)
    catalog = _load_catalog(hosts_file)
    orchestrator = _orchestrator(ctx, catalog)

    async def run() -> TaskRecord:
        request = ExecutionRequest(
            host_ids=_target_ids(catalog, host_ids),
            playbook=playbook,
            variables=variables,
            timeout=timeout,
        )
        task_id = await orchestrator.submit(request)
        return await orchestrator.wait(task_id)

    with orchestrator.reporter:
        record = _run(run)
    _echo_task(record, output_format)


@cli.command("facts")
@click.argument("hosts_file", type=click.Path(exists=True, dir_okay=False))
@hosts_option
@timeout_option
@format_option
@click.pass_context
def gather_facts(
    ctx: click.Context,
    hosts_file: str,
    host_ids: tuple[str, ...],
    timeout: int | None,
    output_format: str,
) -> None:
    """Gather OS, CPU, memory and disk facts from hosts."""
    catalog = _load_catalog(hosts_file)
    orchestrator = _orchestrator(ctx, catalog)
    result = _run(lambda: orchestrator.gather_facts(_target_ids(catalog, host_ids), timeout=timeout))
    summaries = summarize_facts(result)

    if output_format == "json":
        output = {
            host_id: {
                "success": host_result.success,
                "facts": summaries[host_id].to_dict() if summaries[host_id] else None,
                "error": host_result.error,
            }
            for host_id, host_result in result.results.items()
        }
        click.echo(json.dumps(output, indent=2))
    else:
        names = host_names(list(catalog.hosts.values()))
        click.echo(format_facts_text(summaries, names))
        for host_id, host_result in result.results.items():
            if host_result.error:
                click.echo(f"  {names.get(host_id, host_id)}: {host_result.error}")

    if result.failed:
        raise SystemExit(1)


@cli.command("ping")
@click.argument("hosts_file", type=click.Path(exists=True, dir_okay=False))
@hosts_option
@timeout_option
@format_option
@click.pass_context
def ping(
    ctx: click.Context,
    hosts_file: str,
    host_ids: tuple[str, ...],
    timeout: int | None,
    output_format: str,
) -> None:
    """Check that hosts are reachable and accept their credentials."""
    catalog = _load_catalog(hosts_file)
    orchestrator = _orchestrator(ctx, catalog)
    result = _run(lambda: orchestrator.ping(_target_ids(catalog, host_ids), timeout=timeout))

    if output_format == "json":
        click.echo(format_result_json(result))
        if result.failed:
            raise SystemExit(1)
    else:
        click.echo(format_result_text(result, host_names(list(catalog.hosts.values()))))
        if result.failed:
            raise click.ClickException(f"{result.failed} host(s) unreachable")


@cli.group()
def tasks() -> None:
    """Inspect and manage recorded tasks."""


@tasks.command("list")
@click.option("--project", default=None, help="Only tasks of this project")
@format_option
@click.pass_context
def tasks_list(ctx: click.Context, project: str | None, output_format: str) -> None:
    """List tasks, newest first."""
    orchestrator = _orchestrator(ctx)
    records = _run(lambda: orchestrator.store.list(project))
    if output_format == "json":
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
    else:
        click.echo(format_task_list_text(records))


@tasks.command("show")
@click.argument("task_id")
@format_option
@click.pass_context
def tasks_show(ctx: click.Context, task_id: str, output_format: str) -> None:
    """Show one task with its output log."""
    orchestrator = _orchestrator(ctx)
    record = _run(lambda: orchestrator.get(task_id))
    if output_format == "json":
        click.echo(format_task_json(record))
    else:
        click.echo(format_task_text(record))


@tasks.command("cancel")
@click.argument("task_id")
@click.pass_context
def tasks_cancel(ctx: click.Context, task_id: str) -> None:
    """Cancel a pending or running task."""
    orchestrator = _orchestrator(ctx)
    record = _run(lambda: orchestrator.cancel(task_id))
    click.echo(f"Task {record.id} cancelled.")


@tasks.command("retry")
@click.argument("task_id")
@click.argument("hosts_file", type=click.Path(exists=True, dir_okay=False))
@format_option
@click.pass_context
def tasks_retry(ctx: click.Context, task_id: str, hosts_file: str, output_format: str) -> None:
    """Run a failed task again."""
    orchestrator = _orchestrator(ctx, _load_catalog(hosts_file))

    async def run() -> TaskRecord:
        await orchestrator.retry(task_id)
        return await orchestrator.wait(task_id)

    with orchestrator.reporter:
        record = _run(run)
    _echo_task(record, output_format)


@tasks.command("delete")
@click.argument("task_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def tasks_delete(ctx: click.Context, task_id: str, yes: bool) -> None:
    """Delete a task that is not running."""
    if not yes:
        click.confirm(f"Delete task '{task_id}'?", abort=True)
    orchestrator = _orchestrator(ctx)
    _run(lambda: orchestrator.delete(task_id))
    click.echo(f"Task {task_id} deleted.")


@tasks.command("stats")
@click.option("--project", default=None, help="Only tasks of this project")
@click.option("--days", type=int, default=7, help="Days covered by the per-day counts (default: 7)")
@click.pass_context
def tasks_stats(ctx: click.Context, project: str | None, days: int) -> None:
    """Show task counts by status, type and day."""
    orchestrator = _orchestrator(ctx)
    stats = _run(lambda: orchestrator.statistics(project, days=days))
    click.echo(json.dumps(stats, indent=2))


def main() -> None:
    """Package entry point for the fleetops command-line interface."""
    cli()


if __name__ == "__main__":
    cli()
