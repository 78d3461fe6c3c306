"""Exception hierarchy for fleetops.

Every error carries a human-readable message plus a context dict so the
orchestrator can copy the full failure detail into a task record instead of
letting it escape past the request boundary.
"""

from typing import Any


class FleetOpsError(Exception):
    """Base class for all fleetops errors.

    Attributes:
        msg: Human-readable error message
        context: Additional structured fields describing the failure

    Example:
        raise FleetOpsError("Inventory write failed", path="/tmp/inv.yml")
        # context: {"path": "/tmp/inv.yml"}
    """

    kind = "FleetOpsError"

    def __init__(self, msg: str, **context: Any) -> None:
        super().__init__(msg)
        self.msg = msg
        self.context: dict[str, Any] = context

    def __str__(self) -> str:
        return self.msg

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for task results and JSON output."""
        return {"error": self.msg, "kind": self.kind, **self.context}


class ConfigurationError(FleetOpsError):
    """Raised when settings are missing or invalid."""

    kind = "ConfigurationError"


class InvalidRequest(FleetOpsError):
    """Raised when an execution request fails validation."""

    kind = "InvalidRequest"


class DecryptionError(FleetOpsError):
    """Raised when stored secret material cannot be decrypted."""

    kind = "DecryptionError"


class MissingCredential(FleetOpsError):
    """Raised when a host's authentication mode lacks its required secret."""

    kind = "MissingCredential"

    def __init__(self, host_id: str, auth_mode: str, missing: str) -> None:
        super().__init__(
            f"Host {host_id} ({auth_mode}) has no {missing} configured",
            host_id=host_id,
            auth_mode=auth_mode,
            missing=missing,
        )


class SpawnError(FleetOpsError):
    """Raised when the external tool cannot be started at all."""

    kind = "SpawnError"

    def __init__(self, binary: str, reason: str) -> None:
        super().__init__(f"Failed to start {binary}: {reason}", binary=binary)


class ExecutionFailed(FleetOpsError):
    """Raised when the external tool exits with a non-zero code.

    The captured streams are kept because ansible exits non-zero as soon as
    one host fails, while the stdout still holds results for the others.
    """

    kind = "ExecutionFailed"

    def __init__(self, exit_code: int, stdout: str = "", stderr: str = "") -> None:
        detail = stderr.strip() or stdout.strip()[-500:]
        message = f"External tool failed with exit code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, exit_code=exit_code)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ExecutionTimeout(FleetOpsError):
    """Raised when the external tool does not finish within the timeout."""

    kind = "Timeout"

    def __init__(self, timeout: float, stdout: str = "") -> None:
        super().__init__(f"Timeout: execution exceeded {timeout:g}s", timeout=timeout)
        self.timeout = timeout
        self.stdout = stdout


class NoValidHosts(FleetOpsError):
    """Raised when none of the requested host ids resolve to a host."""

    kind = "NoValidHosts"

    def __init__(self, host_ids: list[str]) -> None:
        super().__init__(
            f"No valid hosts found among {len(host_ids)} requested id(s)",
            host_ids=list(host_ids),
        )


class TaskNotFound(FleetOpsError):
    """Raised when a task id is unknown to the store."""

    kind = "TaskNotFound"

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found", task_id=task_id)


class TaskStateError(FleetOpsError):
    """Raised when a task transition is not allowed from its current state."""

    kind = "TaskStateError"
