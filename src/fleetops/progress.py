"""Progress reporting for fleetops.

The orchestrator reports discrete progress percentages for a task (10, 80,
90, 100) and a terminal "task updated" event carrying the final record.
Reporters render those events as NDJSON, plain text or a rich progress bar.
"""

import json
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .tasks import TaskRecord, TaskStatus


@dataclass
class ProgressEvent:
    """A progress event for one task.

    Attributes:
        event_type: Type of event (progress, task_updated)
        task_id: Task the event belongs to
        timestamp: When the event occurred
        details: Additional event-specific details
    """

    event_type: str
    task_id: str
    timestamp: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event": self.event_type,
            "task_id": self.task_id,
            "timestamp": self.timestamp,
        }
        result.update(self.details)
        return result

    def to_json(self) -> str:
        """Convert to JSON string (NDJSON format)."""
        return json.dumps(self.to_dict())


class ProgressReporter(ABC):
    """Base class for progress reporters.

    Reporters are context managers so a caller can wrap a run in
    ``with reporter:`` whatever the concrete display is.
    """

    def __enter__(self) -> "ProgressReporter":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        pass

    @abstractmethod
    def on_progress(self, task_id: str, percent: int, message: str = "") -> None:
        """Called when a task reaches a progress milestone."""

    @abstractmethod
    def on_task_updated(self, record: TaskRecord) -> None:
        """Called with the record snapshot after a terminal transition."""


class JsonProgressReporter(ProgressReporter):
    """Reports progress as NDJSON (newline-delimited JSON) events."""

    def __init__(self, output: Any = None) -> None:
        """Initialize JSON progress reporter.

        Args:
            output: Output stream (defaults to sys.stderr to not pollute stdout)
        """
        self.output = output or sys.stderr

    def _emit(self, event: ProgressEvent) -> None:
        print(event.to_json(), file=self.output, flush=True)

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def on_progress(self, task_id: str, percent: int, message: str = "") -> None:
        details: dict[str, Any] = {"percent": percent}
        if message:
            details["message"] = message
        self._emit(ProgressEvent("progress", task_id, self._now(), details))

    def on_task_updated(self, record: TaskRecord) -> None:
        self._emit(ProgressEvent("task_updated", record.id, self._now(), {"task": record.to_dict()}))


class TextProgressReporter(ProgressReporter):
    """Reports progress as human-readable text."""

    def __init__(self, output: Any = None) -> None:
        self.output = output or sys.stderr

    def _emit(self, message: str) -> None:
        print(message, file=self.output, flush=True)

    def on_progress(self, task_id: str, percent: int, message: str = "") -> None:
        suffix = f" {message}" if message else ""
        self._emit(f"[{task_id[:8]}] {percent:3d}%{suffix}")

    def on_task_updated(self, record: TaskRecord) -> None:
        status = "✓" if record.status is TaskStatus.SUCCESS else "✗"
        stats = (record.result or {}).get("stats")
        if stats:
            counts = f" ({stats['success']}/{stats['total']} succeeded)"
        else:
            counts = ""
        self._emit(f"[{record.id[:8]}] {status} {record.status.value}{counts}")


class RichProgressReporter(ProgressReporter):
    """Displays one rich progress bar per task.

    Example:
        with RichProgressReporter() as reporter:
            orchestrator = ExecutionOrchestrator(..., reporter=reporter)
            await orchestrator.execute(...)
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=True,
        )
        self._tasks: dict[str, TaskID] = {}

    def __enter__(self) -> "RichProgressReporter":
        self.progress.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.progress.stop()

    def on_progress(self, task_id: str, percent: int, message: str = "") -> None:
        description = f"[{task_id[:8]}] {message}" if message else f"[{task_id[:8]}]"
        if task_id not in self._tasks:
            self._tasks[task_id] = self.progress.add_task(description, total=100, completed=percent)
        else:
            self.progress.update(self._tasks[task_id], description=description, completed=percent)

    def on_task_updated(self, record: TaskRecord) -> None:
        rich_id = self._tasks.pop(record.id, None)
        if rich_id is not None:
            self.progress.remove_task(rich_id)
        style = "green" if record.status is TaskStatus.SUCCESS else "red"
        self.console.print(f"[{record.id[:8]}] {record.status.value}", style=style)


class NullProgressReporter(ProgressReporter):
    """No-op progress reporter that discards all events."""

    def on_progress(self, task_id: str, percent: int, message: str = "") -> None:
        pass

    def on_task_updated(self, record: TaskRecord) -> None:
        pass


def create_progress_reporter(
    enabled: bool,
    json_format: bool = False,
    output: Any = None,
    interactive: bool = False,
) -> ProgressReporter:
    """Create a progress reporter.

    Args:
        enabled: Whether progress reporting is enabled
        json_format: Use JSON format instead of text
        output: Output stream (defaults to sys.stderr)
        interactive: Draw rich progress bars instead of text lines

    Returns:
        ProgressReporter instance
    """
    if not enabled:
        return NullProgressReporter()

    if json_format:
        return JsonProgressReporter(output)
    if interactive:
        return RichProgressReporter()
    return TextProgressReporter(output)
