"""Invocation of the external automation tool.

The executor spawns ``ansible`` / ``ansible-playbook`` as a child process in
its own session, captures stdout and stderr separately, and enforces a
timeout by killing the whole process group. An admission semaphore caps how
many tool processes run at once on the control node.
"""

import asyncio
import json
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import Settings
from .exceptions import ExecutionFailed, ExecutionTimeout, SpawnError
from .inventory import SSH_COMMON_ARGS
from .logging import TRACE

logger = logging.getLogger(__name__)

HOST_KEY_OVERRIDE = f'ansible_ssh_common_args="{SSH_COMMON_ARGS}"'


@dataclass
class ProcessOutput:
    """Captured result of a finished tool process."""

    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0


class ProcessExecutor:
    """Runs the external tool with a bounded number of concurrent processes.

    Attributes:
        settings: Binary names, forks, timeouts and verbosity
        max_concurrent: Upper bound on simultaneously running processes

    Example:
        >>> executor = ProcessExecutor(Settings())
        >>> argv = executor.adhoc_argv(Path("/tmp/inv.yml"), "shell", "uptime")
        >>> output = await executor.run(argv, timeout=60)
    """

    def __init__(self, settings: Settings, max_concurrent: int | None = None) -> None:
        self.settings = settings
        self.max_concurrent = max_concurrent or settings.max_concurrent_executions
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._active = 0

    @property
    def active(self) -> int:
        """Number of tool processes currently running."""
        return self._active

    def adhoc_argv(
        self,
        inventory_path: Path,
        module: str,
        module_args: str | None = None,
    ) -> list[str]:
        """Build the argument vector for an ad-hoc module run."""
        argv = [self.settings.ansible_bin, "all", "-i", str(inventory_path), "-m", module]
        if module_args:
            argv += ["-a", module_args]
        argv += [f"--timeout={self.settings.connect_timeout}", "-f", str(self.settings.forks)]
        argv += self._verbosity_flags()
        argv += ["-e", HOST_KEY_OVERRIDE]
        return argv

    def playbook_argv(
        self,
        inventory_path: Path,
        playbook_path: Path,
        variables: dict[str, Any] | None = None,
    ) -> list[str]:
        """Build the argument vector for a playbook run."""
        argv = [self.settings.ansible_playbook_bin, "-i", str(inventory_path), str(playbook_path)]
        if variables:
            argv += ["--extra-vars", json.dumps(variables)]
        argv += [f"--timeout={self.settings.connect_timeout}", "-f", str(self.settings.forks)]
        argv += self._verbosity_flags()
        argv += ["-e", HOST_KEY_OVERRIDE]
        return argv

    def _verbosity_flags(self) -> list[str]:
        if self.settings.verbosity <= 0:
            return []
        return ["-" + "v" * min(self.settings.verbosity, 4)]

    def environment(self, structured: bool = False) -> dict[str, str]:
        """Environment for the child process.

        Args:
            structured: Switch stdout to the machine-readable json callback
        """
        env = dict(os.environ)
        env["ANSIBLE_HOST_KEY_CHECKING"] = "False"
        env["ANSIBLE_NOCOLOR"] = "1"
        env["ANSIBLE_RETRY_FILES_ENABLED"] = "False"
        if structured:
            env["ANSIBLE_STDOUT_CALLBACK"] = "json"
            env["ANSIBLE_LOAD_CALLBACK_PLUGINS"] = "1"
        return env

    async def run(
        self,
        argv: list[str],
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> ProcessOutput:
        """Run the tool to completion.

        Args:
            argv: Argument vector; argv[0] is the binary
            timeout: Seconds to wait before killing the process group
            env: Child environment (defaults to :meth:`environment`)

        Returns:
            ProcessOutput for a zero exit code

        Raises:
            SpawnError: If the binary cannot be started
            ExecutionTimeout: If the process outlives ``timeout``
            ExecutionFailed: If the process exits non-zero
        """
        async with self._slots:
            self._active += 1
            try:
                return await self._run(argv, timeout, env if env is not None else self.environment())
            finally:
                self._active -= 1

    async def _run(self, argv: list[str], timeout: float, env: dict[str, str]) -> ProcessOutput:
        logger.debug(f"Running: {' '.join(argv)}")
        start = time.perf_counter()

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {argv[0]}: {e}")
            raise SpawnError(argv[0], str(e)) from e

        try:
            stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{argv[0]} (pid {proc.pid}) exceeded {timeout}s, killing process group")
            await self._kill(proc)
            raise ExecutionTimeout(timeout) from None
        except asyncio.CancelledError:
            logger.info(f"Execution cancelled, killing {argv[0]} (pid {proc.pid})")
            await self._kill(proc)
            raise

        duration = time.perf_counter() - start
        stdout = stdout_b.decode("utf-8", errors="replace")
        stderr = stderr_b.decode("utf-8", errors="replace")
        exit_code = proc.returncode if proc.returncode is not None else -1

        logger.debug(f"{argv[0]} finished with code {exit_code} in {duration:.2f}s")
        logger.log(TRACE, f"stdout:\n{stdout}")
        if stderr:
            logger.log(TRACE, f"stderr:\n{stderr}")

        if exit_code != 0:
            raise ExecutionFailed(exit_code, stdout=stdout, stderr=stderr)

        return ProcessOutput(exit_code=exit_code, stdout=stdout, stderr=stderr, duration=duration)

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the child's process group and reap the child."""
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.kill()
        await proc.wait()
