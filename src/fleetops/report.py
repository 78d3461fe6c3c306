"""Rendering of execution results and task records.

The multi-host log stored on a task record looks like::

    [web01] ✅ succeeded
    load average: 0.01, 0.02, 0.00

    [db01] ❌ failed
    Host UNREACHABLE: Failed to connect to the host via ssh
"""

import json
from typing import Any

from .facts import HostFacts
from .tasks import TaskRecord
from .types import ExecutionResult, Host, Playbook


def _label(host_id: str, names: dict[str, str]) -> str:
    return names.get(host_id) or host_id


def host_names(hosts: list[Host]) -> dict[str, str]:
    """Map host ids to display names."""
    return {host.id: host.display_name for host in hosts}


def render_command_log(result: ExecutionResult, names: dict[str, str]) -> str:
    """Render the per-host log for a command run."""
    blocks = []
    for host_id, host_result in result.results.items():
        label = _label(host_id, names)
        if host_result.success:
            stdout = (host_result.data or {}).get("stdout", "")
            blocks.append(f"[{label}] ✅ succeeded\n{stdout}\n")
        else:
            blocks.append(f"[{label}] ❌ failed\n{host_result.error or ''}\n")
    return "\n".join(blocks)


def render_playbook_log(
    result: ExecutionResult,
    names: dict[str, str],
    playbook: Playbook,
    variables: dict[str, Any],
) -> str:
    """Render the per-host log for a playbook run, listing task outcomes."""
    lines = [f"Playbook: {playbook.name}", f"Variables: {json.dumps(variables, indent=2)}", ""]
    markers = {"ok": "✅", "changed": "🔄", "skipped": "⏭️", "failed": "❌", "unreachable": "❌"}

    for host_id, host_result in result.results.items():
        label = _label(host_id, names)
        if host_result.success:
            lines.append(f"[{label}] ✅ succeeded")
            current_play = None
            for task in (host_result.data or {}).get("tasks", []):
                if task["play"] != current_play:
                    current_play = task["play"]
                    lines.append(f"  Play: {current_play or 'Unnamed'}")
                lines.append(f"    {markers.get(task['status'], '•')} {task['task'] or 'Unnamed Task'}")
        else:
            lines.append(f"[{label}] ❌ failed")
            lines.append(host_result.error or "")
        lines.append("")

    return "\n".join(lines)


def command_summary(stats: dict[str, int]) -> str:
    return f"Completed: {stats['success']}/{stats['total']} succeeded"


def playbook_summary(stats: dict[str, int]) -> str:
    return (
        f"Playbook completed: {stats['success']}/{stats['total']} succeeded, "
        f"{stats['changed']} changed, {stats['skipped']} skipped"
    )


def format_result_text(result: ExecutionResult, names: dict[str, str], verbose: bool = False) -> str:
    """Format an execution result as human-readable text."""
    lines = [
        "",
        "Execution Results:",
        f"Total hosts: {result.total}",
        f"Successful: {result.successful}",
        f"Failed: {result.failed}",
        "",
    ]

    for host_id, host_result in result.results.items():
        status = "OK" if host_result.success else "FAILED"
        changed = " (changed)" if host_result.changed else ""
        lines.append(f"  {_label(host_id, names)}: {status}{changed}")
        if host_result.error:
            lines.append(f"    Error: {host_result.error}")
        if verbose and host_result.data:
            for key, value in host_result.data.items():
                lines.append(f"    {key}: {value}")
    lines.append("")

    return "\n".join(lines)


def format_result_json(result: ExecutionResult) -> str:
    return json.dumps(result.to_dict(), indent=2)


def format_facts_text(facts: dict[str, HostFacts | None], names: dict[str, str]) -> str:
    """Format fact summaries; hosts without facts are listed as unavailable."""
    lines = [""]
    for host_id, summary in facts.items():
        label = _label(host_id, names)
        if summary is None:
            lines.append(f"  {label}: facts unavailable")
            continue
        lines.append(f"  {label}:")
        for key, value in summary.to_dict().items():
            lines.append(f"    {key}: {value if value is not None else '-'}")
    lines.append("")
    return "\n".join(lines)


def format_task_text(record: TaskRecord, show_output: bool = True) -> str:
    """Format a task record as human-readable text."""
    lines = [
        f"Task {record.id}",
        f"  Name: {record.name}",
        f"  Type: {record.type.value}",
        f"  Status: {record.status.value}",
        f"  Hosts: {len(record.host_ids)}",
        f"  Created: {record.created_at.isoformat()}",
    ]
    if record.started_at:
        lines.append(f"  Started: {record.started_at.isoformat()}")
    if record.ended_at:
        lines.append(f"  Ended: {record.ended_at.isoformat()}")
    if record.duration is not None:
        lines.append(f"  Duration: {record.duration}s")
    if record.schedule_id:
        lines.append(f"  Schedule: {record.schedule_id}")

    result = record.result or {}
    if result.get("summary"):
        lines.append(f"  Summary: {result['summary']}")
    if result.get("error"):
        lines.append(f"  Error: {result['error']}")

    if show_output and record.output:
        lines.extend(["", record.output])
    return "\n".join(lines)


def format_task_list_text(records: list[TaskRecord]) -> str:
    if not records:
        return "No tasks found."
    lines = []
    for record in records:
        lines.append(
            f"{record.id}  {record.status.value:<9}  {record.type.value:<8}  "
            f"{record.created_at.strftime('%Y-%m-%d %H:%M:%S')}  {record.name}"
        )
    return "\n".join(lines)


def format_task_json(record: TaskRecord) -> str:
    return json.dumps(record.to_dict(), indent=2)
