"""Tests for the external tool process executor."""

import asyncio
import json
from pathlib import Path

import pytest

from fleetops.config import Settings
from fleetops.exceptions import ExecutionFailed, ExecutionTimeout, SpawnError
from fleetops.process import HOST_KEY_OVERRIDE, ProcessExecutor

from conftest import process_alive, sleeping_script, wait_for_file, write_script


class TestArgv:
    """Tests for argument vector construction."""

    def test_adhoc_argv(self):
        executor = ProcessExecutor(Settings(forks=5, connect_timeout=15))

        argv = executor.adhoc_argv(Path("/tmp/inv.yml"), "shell", "uptime")

        assert argv == [
            "ansible", "all", "-i", "/tmp/inv.yml", "-m", "shell", "-a", "uptime",
            "--timeout=15", "-f", "5", "-e", HOST_KEY_OVERRIDE,
        ]

    def test_adhoc_argv_without_args(self):
        argv = ProcessExecutor(Settings()).adhoc_argv(Path("/tmp/inv.yml"), "setup")

        assert "-a" not in argv
        assert argv[argv.index("-m") + 1] == "setup"

    def test_playbook_argv(self):
        """Test playbook argv carries extra vars as JSON and verbosity flags."""
        executor = ProcessExecutor(Settings(ansible_playbook_bin="/opt/ansible-playbook", verbosity=2))

        argv = executor.playbook_argv(Path("/w/inv.yml"), Path("/w/playbook.yml"), {"env": "prod"})

        assert argv[:4] == ["/opt/ansible-playbook", "-i", "/w/inv.yml", "/w/playbook.yml"]
        assert json.loads(argv[argv.index("--extra-vars") + 1]) == {"env": "prod"}
        assert "-vv" in argv

    def test_verbosity_capped(self):
        argv = ProcessExecutor(Settings(verbosity=9)).adhoc_argv(Path("i"), "ping")

        assert "-vvvv" in argv

    def test_environment(self):
        executor = ProcessExecutor(Settings())

        plain = executor.environment()
        structured = executor.environment(structured=True)

        assert plain["ANSIBLE_HOST_KEY_CHECKING"] == "False"
        assert "ANSIBLE_STDOUT_CALLBACK" not in plain
        assert structured["ANSIBLE_STDOUT_CALLBACK"] == "json"


class TestRun:
    """Tests for running the tool."""

    @pytest.mark.asyncio
    async def test_success(self, tmp_path):
        script = write_script(tmp_path / "tool", 'echo "out $1"\necho "err" >&2\n')
        executor = ProcessExecutor(Settings())

        output = await executor.run([str(script), "arg"], timeout=10)

        assert output.exit_code == 0
        assert output.stdout == "out arg\n"
        assert output.stderr == "err\n"
        assert executor.active == 0

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, tmp_path):
        """Test a non-zero exit raises with both streams kept."""
        script = write_script(tmp_path / "tool", 'echo "partial"\necho "broken" >&2\nexit 2\n')

        with pytest.raises(ExecutionFailed) as exc_info:
            await ProcessExecutor(Settings()).run([str(script)], timeout=10)

        assert exc_info.value.exit_code == 2
        assert exc_info.value.stdout == "partial\n"
        assert exc_info.value.stderr == "broken\n"
        assert "broken" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        with pytest.raises(SpawnError):
            await ProcessExecutor(Settings()).run([str(tmp_path / "missing")], timeout=10)

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, tmp_path):
        """Test a process outliving the timeout is killed."""
        pidfile = tmp_path / "pid"
        script = sleeping_script(tmp_path / "tool", pidfile)

        with pytest.raises(ExecutionTimeout) as exc_info:
            await ProcessExecutor(Settings()).run([str(script)], timeout=0.5)

        pid = int(await wait_for_file(pidfile))
        assert exc_info.value.kind == "Timeout"
        assert str(exc_info.value).startswith("Timeout")
        assert not process_alive(pid)

    @pytest.mark.asyncio
    async def test_cancel_kills_process(self, tmp_path):
        """Test cancelling the awaiting task kills the child."""
        pidfile = tmp_path / "pid"
        script = sleeping_script(tmp_path / "tool", pidfile)
        executor = ProcessExecutor(Settings())

        task = asyncio.create_task(executor.run([str(script)], timeout=30))
        pid = int(await wait_for_file(pidfile))
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert not process_alive(pid)
        assert executor.active == 0

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, tmp_path):
        """Test no more than max_concurrent processes run at once."""
        script = write_script(tmp_path / "tool", "sleep 0.3\n")
        executor = ProcessExecutor(Settings(), max_concurrent=2)
        peak = 0

        async def watch():
            nonlocal peak
            while True:
                peak = max(peak, executor.active)
                await asyncio.sleep(0.01)

        watcher = asyncio.create_task(watch())
        try:
            await asyncio.gather(*(executor.run([str(script)], timeout=10) for _ in range(5)))
        finally:
            watcher.cancel()

        assert peak == 2
        assert executor.active == 0
