"""Task records and their lifecycle.

A TaskRecord is the durable unit of observability for one execution.
Allowed transitions::

    PENDING -> RUNNING -> SUCCESS | FAILED
    PENDING -> FAILED            (host resolution failed before start)
    PENDING | RUNNING -> CANCELLED
    FAILED -> PENDING            (retry)

SUCCESS, FAILED and CANCELLED are terminal. A terminal state is never
overwritten by a later terminal write.
"""

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

from .exceptions import TaskStateError
from .types import ExecutionResult


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.CANCELLED)


class TaskType(str, Enum):
    COMMAND = "COMMAND"
    PLAYBOOK = "PLAYBOOK"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class TaskRecord:
    """Persisted state of one execution.

    Attributes:
        id: Task identifier
        type: COMMAND or PLAYBOOK
        name: Human-readable task name
        host_ids: Target host identifiers
        status: Current lifecycle state
        created_at: Creation time
        started_at: Time the execution started running
        ended_at: Time the task reached a terminal state
        duration: Whole seconds between start and end
        output: Rendered multi-host log
        result: Stats and summary, or the error detail
        progress: Last reported progress percentage
        project_id: Owning project
        created_by: Submitting user
        schedule_id: Schedule that produced this run, if any
        request: Serialized ExecutionRequest, kept so the task can be retried
    """

    id: str
    type: TaskType
    name: str
    host_ids: list[str]
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration: int | None = None
    output: str = ""
    result: dict[str, Any] | None = None
    progress: int = 0
    project_id: str | None = None
    created_by: str | None = None
    schedule_id: str | None = None
    request: dict[str, Any] | None = None

    @classmethod
    def new(
        cls,
        type: TaskType,
        name: str,
        host_ids: Iterable[str],
        **kwargs: Any,
    ) -> "TaskRecord":
        """Create a PENDING record with a fresh id."""
        return cls(id=str(uuid.uuid4()), type=type, name=name, host_ids=list(host_ids), **kwargs)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def start(self, now: datetime | None = None) -> None:
        """Move PENDING to RUNNING and record the start time.

        Raises:
            TaskStateError: If the task is not PENDING
        """
        if self.status is not TaskStatus.PENDING:
            raise TaskStateError(
                f"Cannot start task {self.id} in state {self.status.value}",
                task_id=self.id,
                status=self.status.value,
            )
        self.status = TaskStatus.RUNNING
        self.started_at = now or _now()

    def finish(
        self,
        status: TaskStatus,
        output: str = "",
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Write a terminal state unless one is already recorded.

        Returns:
            True if the record changed, False if it was already terminal
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal state")
        if self.is_terminal:
            return False

        self.status = status
        self.ended_at = now or _now()
        if self.started_at is not None:
            self.duration = round((self.ended_at - self.started_at).total_seconds())
        self.output = output
        self.result = result
        return True

    def succeed(self, output: str, result: dict[str, Any]) -> bool:
        return self.finish(TaskStatus.SUCCESS, output, result)

    def fail(self, error: str, output: str = "", result: dict[str, Any] | None = None) -> bool:
        return self.finish(TaskStatus.FAILED, output or error, {**(result or {}), "error": error})

    def cancel(self) -> None:
        """Mark the task CANCELLED.

        Raises:
            TaskStateError: If the task is not PENDING or RUNNING
        """
        if self.status not in (TaskStatus.PENDING, TaskStatus.RUNNING):
            raise TaskStateError(
                f"Only pending or running tasks can be cancelled (task {self.id} is {self.status.value})",
                task_id=self.id,
                status=self.status.value,
            )
        self.finish(TaskStatus.CANCELLED, output=self.output, result=self.result)

    def reset(self) -> None:
        """Return a FAILED task to PENDING with its run fields cleared.

        Raises:
            TaskStateError: If the task is not FAILED
        """
        if self.status is not TaskStatus.FAILED:
            raise TaskStateError(
                f"Only failed tasks can be retried (task {self.id} is {self.status.value})",
                task_id=self.id,
                status=self.status.value,
            )
        self.status = TaskStatus.PENDING
        self.started_at = None
        self.ended_at = None
        self.duration = None
        self.output = ""
        self.result = None
        self.progress = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "host_ids": list(self.host_ids),
            "status": self.status.value,
            "created_at": _format_time(self.created_at),
            "started_at": _format_time(self.started_at),
            "ended_at": _format_time(self.ended_at),
            "duration": self.duration,
            "output": self.output,
            "result": self.result,
            "progress": self.progress,
            "project_id": self.project_id,
            "created_by": self.created_by,
            "schedule_id": self.schedule_id,
            "request": self.request,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            type=TaskType(data["type"]),
            name=data.get("name", ""),
            host_ids=list(data.get("host_ids", [])),
            status=TaskStatus(data.get("status", "PENDING")),
            created_at=_parse_time(data.get("created_at")) or _now(),
            started_at=_parse_time(data.get("started_at")),
            ended_at=_parse_time(data.get("ended_at")),
            duration=data.get("duration"),
            output=data.get("output", ""),
            result=data.get("result"),
            progress=data.get("progress", 0),
            project_id=data.get("project_id"),
            created_by=data.get("created_by"),
            schedule_id=data.get("schedule_id"),
            request=data.get("request"),
        )


def compute_stats(result: ExecutionResult, playbook: bool = False) -> dict[str, int]:
    """Aggregate per-host outcomes into task stats.

    Playbook stats add ``changed`` and ``skipped`` summed from the per-host
    counters of successful hosts.
    """
    stats = {"total": result.total, "success": result.successful, "failed": result.failed}
    if playbook:
        stats["changed"] = 0
        stats["skipped"] = 0
        for host_result in result.results.values():
            host_stats = (host_result.data or {}).get("stats") if host_result.success else None
            if host_stats:
                stats["changed"] += int(host_stats.get("changed", 0))
                stats["skipped"] += int(host_stats.get("skipped", 0))
    return stats


def summarize_tasks(
    records: Iterable[TaskRecord],
    days: int = 7,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Compute task statistics by status, type and day.

    Args:
        records: Task records to summarize
        days: Size of the per-day window ending now
        now: Reference time (defaults to the current UTC time)

    Returns:
        Dictionary with totals, per-status and per-type counts, and a
        newest-first list of per-day counts inside the window
    """
    now = now or _now()
    window_start = now - timedelta(days=days)

    records = list(records)
    by_status = Counter(r.status.value for r in records)
    by_type = Counter(r.type.value for r in records)

    by_day: dict[str, dict[str, Any]] = {}
    for record in records:
        if record.created_at < window_start:
            continue
        day = record.created_at.date().isoformat()
        entry = by_day.setdefault(day, {"date": day, "count": 0, "success": 0, "failed": 0})
        entry["count"] += 1
        if record.status is TaskStatus.SUCCESS:
            entry["success"] += 1
        elif record.status is TaskStatus.FAILED:
            entry["failed"] += 1

    return {
        "total": len(records),
        "pending": by_status[TaskStatus.PENDING.value],
        "running": by_status[TaskStatus.RUNNING.value],
        "completed": by_status[TaskStatus.SUCCESS.value],
        "failed": by_status[TaskStatus.FAILED.value],
        "cancelled": by_status[TaskStatus.CANCELLED.value],
        "by_status": [{"status": s, "count": c} for s, c in sorted(by_status.items())],
        "by_type": [{"type": t, "count": c} for t, c in sorted(by_type.items())],
        "by_day": sorted(by_day.values(), key=lambda e: e["date"], reverse=True),
    }
