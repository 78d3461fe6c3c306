"""Task lifecycle orchestration.

The orchestrator turns an ExecutionRequest into a TaskRecord and drives it
through its states while the runner does the work::

    resolve hosts -> RUNNING -> invoke + correlate -> stats -> terminal state

Persistence of RUNNING precedes invocation and persistence of the terminal
state is the last action, so a reader never sees output before RUNNING.
Failures of any step are written to the record as FAILED; they do not
escape the background task that runs the execution.
"""

import asyncio
from typing import Any

from .config import Settings
from .exceptions import FleetOpsError, NoValidHosts, TaskStateError
from .hosts import HostRepository
from .logging import get_logger
from .progress import NullProgressReporter, ProgressReporter
from .report import (
    command_summary,
    host_names,
    playbook_summary,
    render_command_log,
    render_playbook_log,
)
from .runner import FleetRunner
from .store import TaskStore
from .tasks import TaskRecord, TaskStatus, TaskType, compute_stats, summarize_tasks
from .types import (
    Adhoc,
    ExecutionRequest,
    ExecutionResult,
    ExecutionTrigger,
    Host,
    PerHostResult,
    Scheduled,
)

logger = get_logger(__name__)

HOST_NOT_FOUND = "HostNotFound"


def _start(record: TaskRecord) -> bool:
    if record.is_terminal:
        return False
    record.start()
    record.progress = 10
    return True


def _cancel(record: TaskRecord) -> bool:
    record.cancel()
    return True


def _reset(record: TaskRecord) -> bool:
    if record.request is None:
        raise TaskStateError(f"Task {record.id} has no stored request to retry", task_id=record.id)
    record.reset()
    return True


class ExecutionOrchestrator:
    """Runs execution requests as tracked tasks.

    Attributes:
        store: Task record persistence
        hosts: Host lookup
        runner: Runs the external tool for one request
        reporter: Receives progress and task-updated events
        settings: Runtime settings

    Example:
        >>> orchestrator = ExecutionOrchestrator(store, hosts, runner)
        >>> task_id = await orchestrator.submit(ExecutionRequest(host_ids=("h1",), command="uptime"))
        >>> record = await orchestrator.wait(task_id)
        >>> record.status
        <TaskStatus.SUCCESS: 'SUCCESS'>
    """

    def __init__(
        self,
        store: TaskStore,
        hosts: HostRepository,
        runner: FleetRunner,
        reporter: ProgressReporter | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.hosts = hosts
        self.runner = runner
        self.reporter = reporter or NullProgressReporter()
        self.settings = settings or runner.settings
        self._running: dict[str, asyncio.Task[TaskRecord]] = {}

    # Submission

    async def submit(
        self,
        request: ExecutionRequest,
        project_id: str | None = None,
        created_by: str | None = None,
        name: str | None = None,
    ) -> str:
        """Create a PENDING task and start executing it in the background.

        Returns:
            The new task id, before the execution has run

        Raises:
            InvalidRequest: If the request timeout exceeds the configured maximum
        """
        request.effective_timeout(self.settings.default_timeout, self.settings.max_timeout)

        record = self._new_record(request, name=name, project_id=project_id, created_by=created_by)
        await self.store.save(record)
        logger.info("Task submitted", task_id=record.id, type=record.type.value, hosts=len(record.host_ids))

        self._launch(record, request)
        return record.id

    async def execute(
        self,
        trigger: ExecutionTrigger,
        request: ExecutionRequest,
        project_id: str | None = None,
        created_by: str | None = None,
    ) -> TaskRecord:
        """Run a request to completion and return the final record.

        An Adhoc trigger runs the existing task it names. A Scheduled trigger
        creates a fresh record linked to the schedule for this run.
        """
        if isinstance(trigger, Adhoc):
            record = await self.store.get(trigger.task_id)
        elif isinstance(trigger, Scheduled):
            record = self._new_record(
                request,
                project_id=project_id,
                created_by=created_by,
                schedule_id=trigger.schedule_id,
            )
            await self.store.save(record)
        else:
            raise TypeError(f"Unknown execution trigger: {trigger!r}")
        return await self._execute(record, request)

    async def run_scheduled(
        self,
        schedule_id: str,
        request: ExecutionRequest,
        project_id: str | None = None,
        created_by: str | None = None,
    ) -> TaskRecord:
        """Entry point for an external scheduler firing a schedule."""
        return await self.execute(Scheduled(schedule_id), request, project_id, created_by)

    def _new_record(
        self,
        request: ExecutionRequest,
        name: str | None = None,
        **kwargs: Any,
    ) -> TaskRecord:
        if request.playbook is not None:
            task_type = TaskType.PLAYBOOK
            default_name = request.playbook.name
        else:
            task_type = TaskType.COMMAND
            command = request.command or ""
            default_name = command if len(command) <= 50 else f"{command[:50]}..."
        if kwargs.get("schedule_id"):
            default_name = f"Scheduled run: {default_name}"
        return TaskRecord.new(
            task_type,
            name or default_name,
            request.host_ids,
            request=request.to_dict(),
            **kwargs,
        )

    def _launch(self, record: TaskRecord, request: ExecutionRequest) -> None:
        task = asyncio.create_task(self._execute(record, request), name=f"task-{record.id}")
        self._running[record.id] = task

        def done(t: asyncio.Task[TaskRecord]) -> None:
            if self._running.get(record.id) is t:
                del self._running[record.id]
            if not t.cancelled() and t.exception() is not None:
                logger.error("Task execution crashed", task_id=record.id, error=t.exception())

        task.add_done_callback(done)

    # Execution pipeline

    async def _execute(self, record: TaskRecord, request: ExecutionRequest) -> TaskRecord:
        log = logger.bind(task_id=record.id)
        try:
            hosts, missing = await self._resolve_hosts(request.host_ids, record.project_id)
            timeout = request.effective_timeout(self.settings.default_timeout, self.settings.max_timeout)

            record = await self.store.update(record.id, _start)
            if record.status is not TaskStatus.RUNNING:
                log.info("Task finished before it started", status=record.status.value)
                return record

            self.reporter.on_progress(record.id, 10, "Hosts resolved")
            log.info("Task running", hosts=len(hosts), missing=len(missing))

            if request.playbook is not None:
                result = await self.runner.playbook(hosts, request.playbook, request.variables, timeout)
            else:
                result = await self.runner.shell(hosts, request.command or "", timeout)
            result = self._with_missing(result, missing, request.host_ids)
            self._progress(record, 80, "Execution finished")

            status, output, task_result = self._summarize(request, hosts, result)
            self._progress(record, 90, "Results correlated")

            log.info("Task completed", status=status.value, **task_result["stats"])
            return await self._finish(record.id, status, output, task_result)

        except asyncio.CancelledError:
            log.info("Task execution cancelled")
            await self._finish(record.id, TaskStatus.CANCELLED, "", {"error": "Cancelled"})
            raise
        except FleetOpsError as e:
            log.error(f"Task failed: {e}", kind=e.kind)
            return await self._finish(record.id, TaskStatus.FAILED, str(e), e.to_dict())
        except Exception as e:
            log.exception(f"Unexpected error in task: {e}")
            await self._finish(record.id, TaskStatus.FAILED, str(e), {"error": str(e), "kind": type(e).__name__})
            raise

    def _progress(self, record: TaskRecord, percent: int, message: str) -> None:
        record.progress = percent
        self.reporter.on_progress(record.id, percent, message)

    def _summarize(
        self,
        request: ExecutionRequest,
        hosts: list[Host],
        result: ExecutionResult,
    ) -> tuple[TaskStatus, str, dict[str, Any]]:
        names = host_names(hosts)
        stats = compute_stats(result, playbook=request.is_playbook)

        if request.playbook is not None:
            output = render_playbook_log(result, names, request.playbook, request.variables)
            summary = playbook_summary(stats)
            task_result: dict[str, Any] = {
                "stats": stats,
                "summary": summary,
                "playbook": {
                    "id": request.playbook.id,
                    "name": request.playbook.name,
                    "version": request.playbook.version,
                },
                "variables": dict(request.variables),
            }
        else:
            output = render_command_log(result, names)
            task_result = {"stats": stats, "summary": command_summary(stats)}

        task_result["results"] = result.to_dict()["results"]
        status = TaskStatus.SUCCESS if result.success and stats["failed"] == 0 else TaskStatus.FAILED
        return status, output, task_result

    async def _finish(
        self,
        task_id: str,
        status: TaskStatus,
        output: str,
        result: dict[str, Any],
    ) -> TaskRecord:
        """Persist a terminal state unless the record already has one."""
        changed = False

        def terminate(record: TaskRecord) -> bool:
            nonlocal changed
            changed = record.finish(status, output, result)
            if changed:
                record.progress = 100
            return changed

        record = await self.store.update(task_id, terminate)
        if not changed:
            logger.info(
                "Keeping existing terminal state",
                task_id=task_id,
                status=record.status.value,
                discarded=status.value,
            )
            return record

        self.reporter.on_progress(record.id, 100, status.value)
        self.reporter.on_task_updated(record)
        return record

    async def _resolve_hosts(
        self, host_ids: tuple[str, ...] | list[str], project_id: str | None
    ) -> tuple[list[Host], list[str]]:
        """Look up hosts, failing fast when none of them exist.

        Raises:
            NoValidHosts: If no requested id resolves to a host
        """
        hosts = await self.hosts.get_many(host_ids, project_id)
        if not hosts:
            raise NoValidHosts(list(host_ids))
        found = {host.id for host in hosts}
        return hosts, [host_id for host_id in host_ids if host_id not in found]

    def _with_missing(
        self,
        result: ExecutionResult,
        missing: list[str],
        order: tuple[str, ...] | list[str],
    ) -> ExecutionResult:
        extra = {
            host_id: PerHostResult.error_result(
                host_id, HOST_NOT_FOUND, f"{HOST_NOT_FOUND}: host no longer exists"
            )
            for host_id in missing
        }
        return self.runner.merge_results(result, extra, list(order))

    # Task management

    async def cancel(self, task_id: str) -> TaskRecord:
        """Mark a PENDING or RUNNING task CANCELLED.

        When ``cancel_kills_process`` is set, the in-flight execution is
        cancelled too, which kills the external tool's process group.

        Raises:
            TaskNotFound: If the task does not exist
            TaskStateError: If the task is already terminal
        """
        record = await self.store.update(task_id, _cancel)
        self.reporter.on_task_updated(record)
        logger.info("Task cancelled", task_id=task_id)

        task = self._running.get(task_id)
        if task is not None and self.settings.cancel_kills_process:
            task.cancel()
        return record

    async def retry(self, task_id: str) -> TaskRecord:
        """Reset a FAILED task to PENDING and run it again.

        Raises:
            TaskNotFound: If the task does not exist
            TaskStateError: If the task is not FAILED or has no stored request
        """
        record = await self.store.update(task_id, _reset)
        request = ExecutionRequest.from_dict(record.request)
        logger.info("Task retried", task_id=task_id)

        self._launch(record, request)
        return record

    async def delete(self, task_id: str) -> None:
        """Delete a task record.

        Raises:
            TaskNotFound: If the task does not exist
            TaskStateError: If the task is RUNNING
        """
        record = await self.store.get(task_id)
        if record.status is TaskStatus.RUNNING:
            raise TaskStateError(f"Cannot delete running task {task_id}", task_id=task_id)
        await self.store.delete(task_id)
        logger.info("Task deleted", task_id=task_id)

    async def get(self, task_id: str) -> TaskRecord:
        return await self.store.get(task_id)

    async def wait(self, task_id: str) -> TaskRecord:
        """Wait for a background execution to end and return the record."""
        task = self._running.get(task_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return await self.store.get(task_id)

    async def statistics(self, project_id: str | None = None, days: int = 7) -> dict[str, Any]:
        """Task counts by status, type and day."""
        return summarize_tasks(await self.store.list(project_id), days=days)

    async def shutdown(self) -> None:
        """Cancel every in-flight execution and wait for them to settle."""
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Untracked operations

    async def gather_facts(
        self,
        host_ids: list[str],
        project_id: str | None = None,
        timeout: int | None = None,
    ) -> ExecutionResult:
        """Collect facts from hosts without creating a task.

        Raises:
            NoValidHosts: If no requested id resolves to a host
        """
        hosts, missing = await self._resolve_hosts(host_ids, project_id)
        result = await self.runner.setup(hosts, timeout)
        return self._with_missing(result, missing, host_ids)

    async def ping(
        self,
        host_ids: list[str],
        project_id: str | None = None,
        timeout: int | None = None,
    ) -> ExecutionResult:
        """Check connectivity to hosts without creating a task.

        Raises:
            NoValidHosts: If no requested id resolves to a host
        """
        hosts, missing = await self._resolve_hosts(host_ids, project_id)
        result = await self.runner.ping(hosts, timeout)
        return self._with_missing(result, missing, host_ids)
