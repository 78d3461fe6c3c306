"""Tests for task orchestration."""

import asyncio
import dataclasses

import pytest

from fleetops.exceptions import ExecutionFailed, InvalidRequest, NoValidHosts, TaskStateError
from fleetops.hosts import MemoryHostRepository
from fleetops.orchestrator import HOST_NOT_FOUND, ExecutionOrchestrator
from fleetops.progress import ProgressReporter
from fleetops.runner import FleetRunner
from fleetops.store import JsonTaskStore, MemoryTaskStore
from fleetops.tasks import TaskRecord, TaskStatus, TaskType
from fleetops.types import Adhoc, ExecutionRequest, ExecutionResult, Host, PerHostResult, Playbook

from conftest import process_alive, sleeping_script, wait_for_file


class FakeRunner(FleetRunner):
    """Runner that answers from canned per-host outcomes instead of a process."""

    def __init__(self, settings, outcomes=None, errors=(), block=False):
        super().__init__(settings, None)
        self.outcomes = outcomes or {}
        self.errors = list(errors)
        self.block = block
        self.calls = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.cancelled = False

    async def _answer(self, kind, hosts, **kwargs):
        self.calls.append((kind, [h.id for h in hosts], kwargs))
        self.started.set()
        if self.block:
            try:
                await self.release.wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.errors:
            raise self.errors.pop(0)
        results = {
            h.id: self.outcomes.get(h.id)
            or PerHostResult.success_result(h.id, {"stdout": f"out-{h.id}", "stderr": "", "rc": 0})
            for h in hosts
        }
        order = [h.id for h in hosts]
        return self.merge_results(ExecutionResult(success=True, results=results), {}, order)

    async def shell(self, hosts, command, timeout=None):
        return await self._answer("shell", hosts, command=command, timeout=timeout)

    async def playbook(self, hosts, playbook, variables=None, timeout=None):
        return await self._answer("playbook", hosts, playbook=playbook, variables=variables, timeout=timeout)

    async def setup(self, hosts, timeout=None):
        return await self._answer("setup", hosts, timeout=timeout)

    async def ping(self, hosts, timeout=None):
        return await self._answer("ping", hosts, timeout=timeout)


class RecordingReporter(ProgressReporter):
    def __init__(self):
        self.progress = []
        self.updates = []

    def on_progress(self, task_id, percent, message=""):
        self.progress.append((task_id, percent, message))

    def on_task_updated(self, record):
        self.updates.append(record)


class RecordingStore(MemoryTaskStore):
    """Memory store that remembers every status it was asked to save."""

    def __init__(self):
        super().__init__()
        self.saved = []

    async def save(self, record):
        self.saved.append((record.id, record.status))
        await super().save(record)


HOSTS = [
    Host(id="h1", name="web01", address="10.0.0.1"),
    Host(id="h2", name="db01", address="10.0.0.2"),
]


def make_orchestrator(settings, runner=None, store=None, **settings_overrides):
    settings = dataclasses.replace(settings, **settings_overrides)
    runner = runner or FakeRunner(settings)
    runner.settings = settings
    reporter = RecordingReporter()
    orchestrator = ExecutionOrchestrator(
        store or MemoryTaskStore(),
        MemoryHostRepository(HOSTS),
        runner,
        reporter=reporter,
        settings=settings,
    )
    return orchestrator, runner, reporter


def command(*host_ids, **kwargs):
    return ExecutionRequest(host_ids=host_ids or ("h1", "h2"), command="uptime", **kwargs)


class TestSubmit:
    """Tests for submitting and running command tasks."""

    @pytest.mark.asyncio
    async def test_successful_command(self, settings):
        """Test a full run through PENDING, RUNNING and SUCCESS."""
        store = RecordingStore()
        orchestrator, runner, reporter = make_orchestrator(settings, store=store)

        task_id = await orchestrator.submit(command(), created_by="alice")
        record = await orchestrator.wait(task_id)

        assert record.status is TaskStatus.SUCCESS
        assert record.type is TaskType.COMMAND
        assert record.name == "uptime"
        assert record.progress == 100
        assert record.duration is not None
        assert record.result["stats"] == {"total": 2, "success": 2, "failed": 0}
        assert record.result["summary"] == "Completed: 2/2 succeeded"
        assert record.result["results"]["h1"]["data"]["stdout"] == "out-h1"
        assert "[web01] ✅ succeeded\nout-h1\n" in record.output
        assert "[db01] ✅ succeeded\nout-h2\n" in record.output

        assert [s for _, s in store.saved] == [TaskStatus.PENDING, TaskStatus.RUNNING, TaskStatus.SUCCESS]
        assert [p for _, p, _ in reporter.progress] == [10, 80, 90, 100]
        assert [r.status for r in reporter.updates] == [TaskStatus.SUCCESS]
        assert runner.calls == [("shell", ["h1", "h2"], {"command": "uptime", "timeout": settings.default_timeout})]

    @pytest.mark.asyncio
    async def test_one_host_failed(self, settings):
        """Test a single failed host fails the task with per-host stats."""
        runner = FakeRunner(settings, outcomes={"h2": PerHostResult.error_result("h2", "Failed", "Host FAILED")})
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)

        record = await orchestrator.wait(await orchestrator.submit(command()))

        assert record.status is TaskStatus.FAILED
        assert record.result["stats"] == {"total": 2, "success": 1, "failed": 1}
        assert "[db01] ❌ failed\nHost FAILED\n" in record.output

    @pytest.mark.asyncio
    async def test_no_valid_hosts(self, settings):
        """Test unknown hosts fail the task without it ever running."""
        store = RecordingStore()
        orchestrator, runner, reporter = make_orchestrator(settings, store=store)

        record = await orchestrator.wait(await orchestrator.submit(command("nope1", "nope2")))

        assert record.status is TaskStatus.FAILED
        assert record.result["kind"] == NoValidHosts.kind
        assert record.started_at is None
        assert TaskStatus.RUNNING not in [s for _, s in store.saved]
        assert runner.calls == []
        assert [r.status for r in reporter.updates] == [TaskStatus.FAILED]

    @pytest.mark.asyncio
    async def test_missing_host_reported(self, settings):
        """Test ids that no longer exist get HostNotFound entries."""
        orchestrator, runner, _ = make_orchestrator(settings)

        record = await orchestrator.wait(await orchestrator.submit(command("h1", "gone")))

        assert runner.calls[0][1] == ["h1"]
        assert record.status is TaskStatus.FAILED
        assert list(record.result["results"]) == ["h1", "gone"]
        assert record.result["results"]["gone"]["error_kind"] == HOST_NOT_FOUND
        assert record.result["stats"] == {"total": 2, "success": 1, "failed": 1}

    @pytest.mark.asyncio
    async def test_timeout_over_maximum_rejected(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)

        with pytest.raises(InvalidRequest):
            await orchestrator.submit(command(timeout=settings.max_timeout + 1))

        assert await orchestrator.store.list() == []

    @pytest.mark.asyncio
    async def test_request_timeout_passed_to_runner(self, settings):
        orchestrator, runner, _ = make_orchestrator(settings)

        await orchestrator.wait(await orchestrator.submit(command(timeout=42)))

        assert runner.calls[0][2]["timeout"] == 42

    @pytest.mark.asyncio
    async def test_tool_failure_recorded(self, settings):
        """Test a runner error is written to the record, not raised."""
        runner = FakeRunner(settings, errors=[ExecutionFailed(3, stderr="ansible exploded")])
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)

        record = await orchestrator.wait(await orchestrator.submit(command()))

        assert record.status is TaskStatus.FAILED
        assert record.result["kind"] == "ExecutionFailed"
        assert record.result["exit_code"] == 3
        assert "ansible exploded" in record.output

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded(self, settings):
        runner = FakeRunner(settings, errors=[RuntimeError("disk on fire")])
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)

        record = await orchestrator.wait(await orchestrator.submit(command()))

        assert record.status is TaskStatus.FAILED
        assert record.result == {"error": "disk on fire", "kind": "RuntimeError"}


class TestPlaybookTasks:
    """Tests for playbook tasks."""

    @pytest.mark.asyncio
    async def test_playbook_task(self, settings):
        stats = {"ok": 2, "changed": 1, "failures": 0, "unreachable": 0, "skipped": 1}
        outcomes = {
            h: PerHostResult.success_result(
                h,
                {"stats": stats, "tasks": [{"play": "site", "task": "install", "status": "changed"}]},
                changed=True,
            )
            for h in ("h1", "h2")
        }
        runner = FakeRunner(settings, outcomes=outcomes)
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)
        playbook = Playbook(content="- hosts: all", id="pb1", name="site", version=2)
        request = ExecutionRequest(host_ids=("h1", "h2"), playbook=playbook, variables={"env": "prod"})

        record = await orchestrator.wait(await orchestrator.submit(request))

        assert record.status is TaskStatus.SUCCESS
        assert record.type is TaskType.PLAYBOOK
        assert record.name == "site"
        assert record.result["stats"] == {"total": 2, "success": 2, "failed": 0, "changed": 2, "skipped": 2}
        assert record.result["summary"] == "Playbook completed: 2/2 succeeded, 2 changed, 2 skipped"
        assert record.result["playbook"] == {"id": "pb1", "name": "site", "version": 2}
        assert record.result["variables"] == {"env": "prod"}
        assert record.output.startswith("Playbook: site")
        assert "🔄 install" in record.output
        assert runner.calls[0][2]["variables"] == {"env": "prod"}


class TestCancel:
    """Tests for cancelling tasks."""

    @pytest.mark.asyncio
    async def test_cancel_running_kills_execution(self, settings):
        runner = FakeRunner(settings, block=True)
        orchestrator, _, reporter = make_orchestrator(settings, runner=runner)

        task_id = await orchestrator.submit(command())
        await asyncio.wait_for(runner.started.wait(), 5)
        cancelled = await orchestrator.cancel(task_id)
        record = await orchestrator.wait(task_id)

        assert cancelled.status is TaskStatus.CANCELLED
        assert record.status is TaskStatus.CANCELLED
        assert runner.cancelled is True
        assert [r.status for r in reporter.updates] == [TaskStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_late_result_does_not_overwrite_cancel(self, settings):
        """Test a result arriving after cancellation is discarded."""
        runner = FakeRunner(settings, block=True)
        orchestrator, _, reporter = make_orchestrator(settings, runner=runner, cancel_kills_process=False)

        task_id = await orchestrator.submit(command())
        await asyncio.wait_for(runner.started.wait(), 5)
        await orchestrator.cancel(task_id)
        runner.release.set()
        record = await orchestrator.wait(task_id)

        assert runner.cancelled is False
        assert record.status is TaskStatus.CANCELLED
        assert record.output == ""
        assert [r.status for r in reporter.updates] == [TaskStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_cancel_terminal_rejected(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        task_id = await orchestrator.submit(command())
        await orchestrator.wait(task_id)

        with pytest.raises(TaskStateError):
            await orchestrator.cancel(task_id)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running(self, settings):
        runner = FakeRunner(settings, block=True)
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)

        task_id = await orchestrator.submit(command())
        await asyncio.wait_for(runner.started.wait(), 5)
        await orchestrator.shutdown()

        assert (await orchestrator.get(task_id)).status is TaskStatus.CANCELLED


@pytest.fixture(params=["memory", "json"])
def task_store(request, tmp_path):
    if request.param == "memory":
        return MemoryTaskStore()
    return JsonTaskStore(tmp_path / "tasks")


class TestCancelWithStores:
    """Cancellation racing execution on every store."""

    @pytest.mark.asyncio
    async def test_cancel_pending_never_runs(self, settings, task_store):
        orchestrator, runner, reporter = make_orchestrator(
            settings, store=task_store, cancel_kills_process=False
        )

        task_id = await orchestrator.submit(command())
        cancelled = await orchestrator.cancel(task_id)
        record = await orchestrator.wait(task_id)

        assert cancelled.status is TaskStatus.CANCELLED
        assert record.status is TaskStatus.CANCELLED
        assert record.started_at is None
        assert runner.calls == []
        assert [r.status for r in reporter.updates] == [TaskStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_cancel_running_without_kill_stays_cancelled(self, settings, task_store):
        runner = FakeRunner(settings, block=True)
        orchestrator, _, reporter = make_orchestrator(
            settings, runner=runner, store=task_store, cancel_kills_process=False
        )

        task_id = await orchestrator.submit(command())
        await asyncio.wait_for(runner.started.wait(), 5)
        await orchestrator.cancel(task_id)
        runner.release.set()
        record = await orchestrator.wait(task_id)

        assert runner.cancelled is False
        assert record.status is TaskStatus.CANCELLED
        assert record.started_at is not None
        assert [r.status for r in reporter.updates] == [TaskStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_repeated_submit_then_cancel(self, settings, task_store):
        """Test a cancel that succeeded is never overwritten by the execution."""
        orchestrator, _, _ = make_orchestrator(settings, store=task_store, cancel_kills_process=False)

        overwritten = []
        for _ in range(20):
            task_id = await orchestrator.submit(command())
            cancelled = await orchestrator.cancel(task_id)
            record = await orchestrator.wait(task_id)
            assert cancelled.status is TaskStatus.CANCELLED
            if record.status is not TaskStatus.CANCELLED:
                overwritten.append(record.status)

        assert overwritten == []

    @pytest.mark.asyncio
    async def test_cancel_after_success_keeps_success(self, settings, task_store):
        orchestrator, _, reporter = make_orchestrator(settings, store=task_store)
        task_id = await orchestrator.submit(command())
        await orchestrator.wait(task_id)

        with pytest.raises(TaskStateError):
            await orchestrator.cancel(task_id)

        assert (await orchestrator.get(task_id)).status is TaskStatus.SUCCESS
        assert [r.status for r in reporter.updates] == [TaskStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_success_persisted(self, settings, task_store):
        orchestrator, _, _ = make_orchestrator(settings, store=task_store)

        task_id = await orchestrator.submit(command())
        record = await orchestrator.wait(task_id)

        assert record.status is TaskStatus.SUCCESS
        assert record.progress == 100
        assert record.result["stats"] == {"total": 2, "success": 2, "failed": 0}


class TestRetryAndDelete:
    """Tests for retry and delete."""

    @pytest.mark.asyncio
    async def test_retry_failed(self, settings):
        runner = FakeRunner(settings, errors=[ExecutionFailed(1, stderr="flaky")])
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)
        task_id = await orchestrator.submit(command())
        assert (await orchestrator.wait(task_id)).status is TaskStatus.FAILED

        reset = await orchestrator.retry(task_id)
        record = await orchestrator.wait(task_id)

        assert reset.status is TaskStatus.PENDING
        assert record.status is TaskStatus.SUCCESS
        assert len(runner.calls) == 2

    @pytest.mark.asyncio
    async def test_retry_successful_rejected(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        task_id = await orchestrator.submit(command())
        await orchestrator.wait(task_id)

        with pytest.raises(TaskStateError):
            await orchestrator.retry(task_id)

    @pytest.mark.asyncio
    async def test_retry_without_request(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        record = TaskRecord.new(TaskType.COMMAND, "legacy", ["h1"])
        record.fail("boom")
        await orchestrator.store.save(record)

        with pytest.raises(TaskStateError, match="no stored request"):
            await orchestrator.retry(record.id)

    @pytest.mark.asyncio
    async def test_delete_running_rejected(self, settings):
        runner = FakeRunner(settings, block=True)
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)
        task_id = await orchestrator.submit(command())
        await asyncio.wait_for(runner.started.wait(), 5)

        with pytest.raises(TaskStateError):
            await orchestrator.delete(task_id)

        runner.release.set()
        await orchestrator.wait(task_id)
        await orchestrator.delete(task_id)
        assert await orchestrator.store.list() == []


class TestTriggers:
    """Tests for adhoc and scheduled triggers."""

    @pytest.mark.asyncio
    async def test_adhoc_trigger_runs_existing_record(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)
        request = command()
        record = TaskRecord.new(TaskType.COMMAND, "uptime", request.host_ids, request=request.to_dict())
        await orchestrator.store.save(record)

        final = await orchestrator.execute(Adhoc(record.id), request)

        assert final.id == record.id
        assert final.status is TaskStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_adhoc_trigger_on_cancelled_record(self, settings):
        """Test a task cancelled before it started is not run."""
        orchestrator, runner, _ = make_orchestrator(settings)
        request = command()
        record = TaskRecord.new(TaskType.COMMAND, "uptime", request.host_ids)
        record.cancel()
        await orchestrator.store.save(record)

        final = await orchestrator.execute(Adhoc(record.id), request)

        assert final.status is TaskStatus.CANCELLED
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_run_scheduled_creates_fresh_records(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)

        first = await orchestrator.run_scheduled("sched-1", command())
        second = await orchestrator.run_scheduled("sched-1", command())

        assert first.id != second.id
        assert first.schedule_id == "sched-1"
        assert first.name == "Scheduled run: uptime"
        assert first.status is TaskStatus.SUCCESS
        assert len(await orchestrator.store.list()) == 2


class TestUntracked:
    """Tests for fact gathering, ping and statistics."""

    @pytest.mark.asyncio
    async def test_gather_facts(self, settings):
        runner = FakeRunner(settings, outcomes={"h1": PerHostResult.success_result("h1", {"ansible_distribution": "Euler"})})
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)

        result = await orchestrator.gather_facts(["h1", "gone"])

        assert list(result.results) == ["h1", "gone"]
        assert result.results["h1"].data == {"ansible_distribution": "Euler"}
        assert result.results["gone"].error_kind == HOST_NOT_FOUND
        assert await orchestrator.store.list() == []

    @pytest.mark.asyncio
    async def test_ping_no_valid_hosts(self, settings):
        orchestrator, _, _ = make_orchestrator(settings)

        with pytest.raises(NoValidHosts):
            await orchestrator.ping(["gone"])

    @pytest.mark.asyncio
    async def test_statistics(self, settings):
        runner = FakeRunner(settings, errors=[ExecutionFailed(1)])
        orchestrator, _, _ = make_orchestrator(settings, runner=runner)
        await orchestrator.wait(await orchestrator.submit(command()))
        await orchestrator.wait(await orchestrator.submit(command()))

        stats = await orchestrator.statistics()

        assert stats["total"] == 2
        assert stats["completed"] == 1
        assert stats["failed"] == 1
        assert stats["by_day"][0]["count"] == 2


class TestRealProcess:
    """Tests running a stand-in tool binary end to end."""

    @pytest.mark.asyncio
    async def test_timeout_fails_task_and_kills_tool(self, tmp_path, settings, resolver, password_host):
        pidfile = tmp_path / "pid"
        script = sleeping_script(tmp_path / "ansible", pidfile)
        settings = dataclasses.replace(settings, ansible_bin=str(script))
        orchestrator = ExecutionOrchestrator(
            MemoryTaskStore(),
            MemoryHostRepository([password_host]),
            FleetRunner(settings, resolver),
        )

        task_id = await orchestrator.submit(ExecutionRequest(host_ids=("h1",), command="sleep 60", timeout=1))
        record = await orchestrator.wait(task_id)

        pid = int(await wait_for_file(pidfile))
        assert record.status is TaskStatus.FAILED
        assert record.result["kind"] == "Timeout"
        assert record.result["error"].startswith("Timeout")
        assert not process_alive(pid)
        assert list(settings.scratch_dir.iterdir()) == []
