"""One invocation of the external tool against a set of hosts.

FleetRunner composes the pieces of a single execution in order: resolve
credentials, write the inventory into a scratch workspace, run the tool,
and correlate its output. The workspace is removed on every exit path.
"""

import logging
from pathlib import Path
from typing import Any, Callable

from .config import Settings
from .correlator import NO_OUTPUT, OutputCorrelator
from .credentials import CredentialResolver
from .exceptions import ConfigurationError, DecryptionError, ExecutionFailed, FleetOpsError, MissingCredential
from .inventory import InventoryBuilder, ScratchWorkspace
from .logging import log_performance
from .process import ProcessExecutor
from .types import ConnectionSecrets, ExecutionResult, Host, PerHostResult, Playbook

logger = logging.getLogger(__name__)

ArgvBuilder = Callable[[ScratchWorkspace, Path], list[str]]
Correlate = Callable[[str, list[str]], ExecutionResult]


class FleetRunner:
    """Runs ad-hoc modules and playbooks through the external tool.

    Attributes:
        settings: Runtime settings
        resolver: Credential resolver for host secrets (None when no key is configured)
        executor: Process executor (shared admission pool)
        correlator: Output correlator

    Example:
        >>> runner = FleetRunner(settings, CredentialResolver(SecretCipher(key)))
        >>> result = await runner.shell(hosts, "uptime")
        >>> result.results[hosts[0].id].data["stdout"]
    """

    def __init__(
        self,
        settings: Settings,
        resolver: CredentialResolver | None,
        executor: ProcessExecutor | None = None,
        correlator: OutputCorrelator | None = None,
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self.executor = executor or ProcessExecutor(settings)
        self.correlator = correlator or OutputCorrelator(partial_success=settings.partial_success)

    async def shell(self, hosts: list[Host], command: str, timeout: int | None = None) -> ExecutionResult:
        """Run a shell command on every host."""
        with log_performance(logger, "Shell command", hosts=len(hosts)):
            return await self._adhoc(hosts, "shell", command, timeout, mode="adhoc")

    async def setup(self, hosts: list[Host], timeout: int | None = None) -> ExecutionResult:
        """Gather facts; each successful result's data is the fact mapping."""
        with log_performance(logger, "Fact gathering", hosts=len(hosts)):
            return await self._adhoc(hosts, "setup", None, timeout, mode="facts")

    async def ping(self, hosts: list[Host], timeout: int | None = None) -> ExecutionResult:
        """Check connectivity and authentication with the ping module."""
        with log_performance(logger, "Ping", hosts=len(hosts)):
            return await self._adhoc(hosts, "ping", None, timeout, mode="adhoc")

    async def playbook(
        self,
        hosts: list[Host],
        playbook: Playbook,
        variables: dict[str, Any] | None = None,
        timeout: int | None = None,
    ) -> ExecutionResult:
        """Run a playbook; each result's data carries per-host stats and tasks."""

        def build_argv(workspace: ScratchWorkspace, inventory_path: Path) -> list[str]:
            playbook_path = workspace.write_file("playbook.yml", playbook.content)
            return self.executor.playbook_argv(inventory_path, playbook_path, variables)

        with log_performance(logger, f"Playbook {playbook.name}", hosts=len(hosts)):
            return await self._invoke(
                hosts,
                build_argv,
                timeout,
                structured=True,
                correlate=self.correlator.correlate_playbook,
            )

    async def _adhoc(
        self,
        hosts: list[Host],
        module: str,
        module_args: str | None,
        timeout: int | None,
        mode: str,
    ) -> ExecutionResult:
        structured = self.settings.structured_output
        text_correlate = self.correlator.correlate_facts if mode == "facts" else self.correlator.correlate

        def correlate(output: str, host_ids: list[str]) -> ExecutionResult:
            if structured:
                result = self.correlator.correlate_json(output, host_ids, mode=mode)
                if result is not None:
                    return result
                logger.debug("Structured output not found, using text correlation")
            return text_correlate(output, host_ids)

        def build_argv(workspace: ScratchWorkspace, inventory_path: Path) -> list[str]:
            return self.executor.adhoc_argv(inventory_path, module, module_args)

        return await self._invoke(hosts, build_argv, timeout, structured, correlate)

    async def _invoke(
        self,
        hosts: list[Host],
        build_argv: ArgvBuilder,
        timeout: int | None,
        structured: bool,
        correlate: Correlate,
    ) -> ExecutionResult:
        entries, excluded = self._resolve(hosts)
        timeout = timeout or self.settings.default_timeout

        with ScratchWorkspace(self.settings.scratch_dir) as workspace:
            builder = InventoryBuilder(workspace)
            inventory_path = builder.write(builder.build(entries))
            argv = build_argv(workspace, inventory_path)
            host_ids = [host.id for host, _ in entries]

            try:
                output = await self.executor.run(argv, timeout, self.executor.environment(structured))
                stdout, stderr, exit_code = output.stdout, output.stderr, output.exit_code
            except ExecutionFailed as e:
                if not e.stdout.strip():
                    raise
                logger.info(f"Tool exited with code {e.exit_code}, correlating partial output")
                result = correlate(e.stdout, host_ids)
                if all(r.error_kind == NO_OUTPUT for r in result.results.values()):
                    raise
                stdout, stderr, exit_code = e.stdout, e.stderr, e.exit_code
            else:
                result = correlate(stdout, host_ids)

        result.stderr = stderr
        result.exit_code = exit_code
        return self.merge_results(result, excluded, [host.id for host in hosts])

    def _resolve(
        self, hosts: list[Host]
    ) -> tuple[list[tuple[Host, ConnectionSecrets]], dict[str, PerHostResult]]:
        """Resolve secrets per host, excluding hosts whose secrets are unusable.

        Raises:
            MissingCredential: If no host could be resolved (or the first
                DecryptionError when that was the cause)
        """
        if self.resolver is None:
            raise ConfigurationError("No encryption key configured; cannot decrypt host secrets")

        entries: list[tuple[Host, ConnectionSecrets]] = []
        excluded: dict[str, PerHostResult] = {}
        first_error: FleetOpsError | None = None

        for host in hosts:
            try:
                entries.append((host, self.resolver.resolve(host)))
            except (MissingCredential, DecryptionError) as e:
                logger.warning(f"Excluding host {host.display_name}: {e}")
                excluded[host.id] = PerHostResult.error_result(host.id, e.kind, f"{e.kind}: {e}")
                first_error = first_error or e

        if not entries and first_error is not None:
            raise first_error
        return entries, excluded

    def merge_results(
        self,
        result: ExecutionResult,
        extra: dict[str, PerHostResult],
        order: list[str],
    ) -> ExecutionResult:
        """Add per-host results produced outside correlation.

        Results are reordered to follow ``order`` and the overall success
        is recomputed over the merged set.
        """
        merged = {**result.results, **extra}
        result.results = {host_id: merged[host_id] for host_id in order if host_id in merged}
        for host_id, host_result in merged.items():
            result.results.setdefault(host_id, host_result)
        result.success = self.correlator.overall_success(result.results)
        return result
