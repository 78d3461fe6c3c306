"""Type definitions for fleetops.

This module defines the core data types that flow through an execution:
host records read from the outside world, the request that targets them,
the secrets resolved for a connection, and the per-host results produced
by correlating the external tool's output.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .exceptions import InvalidRequest


class AuthMode(str, Enum):
    """How a host authenticates its SSH connection."""

    PASSWORD = "PASSWORD"
    SSH_KEY = "SSH_KEY"
    CREDENTIAL = "CREDENTIAL"


@dataclass
class Credential:
    """A reusable credential record that hosts can link to.

    All secret fields hold ciphertext in the ``iv:tag:data`` hex format
    produced by :class:`fleetops.crypto.SecretCipher`.

    Attributes:
        id: Credential identifier
        username: Optional username that overrides the host's own
        password: Encrypted password
        private_key: Encrypted PEM private key
        passphrase: Encrypted private key passphrase
    """

    id: str
    username: str | None = None
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting unset fields."""
        result: dict[str, Any] = {"id": self.id}
        for key in ("username", "password", "private_key", "passphrase"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        """Create from dictionary."""
        return cls(
            id=str(data["id"]),
            username=data.get("username"),
            password=data.get("password"),
            private_key=data.get("private_key"),
            passphrase=data.get("passphrase"),
        )


@dataclass
class Host:
    """A managed host as stored by the surrounding application.

    The core treats hosts as read-only input. Hosts are keyed everywhere by
    ``id`` rather than name or address, because the id is what appears as
    the inventory hostname in the external tool's output.

    Attributes:
        id: Stable host identifier (often a UUID)
        name: Display name
        address: IP address or DNS name to connect to
        port: SSH port (default: 22)
        username: SSH username
        auth_mode: Authentication mode
        password: Encrypted password (PASSWORD mode)
        credential: Linked credential record (SSH_KEY / CREDENTIAL modes)
        project_id: Owning project

    Example:
        >>> host = Host(id="h1", name="web01", address="10.0.0.5")
        >>> host.port
        22
        >>> host.display_name
        'web01'
    """

    id: str
    name: str
    address: str
    port: int = 22
    username: str = "root"
    auth_mode: AuthMode = AuthMode.PASSWORD
    password: str | None = None
    credential: Credential | None = None
    project_id: str | None = None

    def __post_init__(self) -> None:
        if isinstance(self.auth_mode, str):
            self.auth_mode = AuthMode(self.auth_mode.upper())

    @property
    def display_name(self) -> str:
        """Name to use in human-readable logs."""
        return self.name or self.id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "port": self.port,
            "username": self.username,
            "auth_mode": self.auth_mode.value,
        }
        if self.password is not None:
            result["password"] = self.password
        if self.credential is not None:
            result["credential"] = self.credential.to_dict()
        if self.project_id is not None:
            result["project_id"] = self.project_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Host":
        """Create from dictionary."""
        credential = data.get("credential")
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            address=data["address"],
            port=int(data.get("port", 22)),
            username=data.get("username", "root"),
            auth_mode=AuthMode(str(data.get("auth_mode", "PASSWORD")).upper()),
            password=data.get("password"),
            credential=Credential.from_dict(credential) if isinstance(credential, dict) else None,
            project_id=data.get("project_id"),
        )


@dataclass
class ConnectionSecrets:
    """Plaintext secrets resolved for one host connection.

    Never persisted; lives only for the duration of one execution.
    """

    username: str
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None

    def __repr__(self) -> str:
        return (
            f"ConnectionSecrets(username={self.username!r}, "
            f"password={'***' if self.password else None}, "
            f"private_key={'***' if self.private_key else None}, "
            f"passphrase={'***' if self.passphrase else None})"
        )


@dataclass(frozen=True)
class Playbook:
    """A playbook document to run against a host set."""

    content: str
    id: str | None = None
    name: str = "playbook"
    version: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "version": self.version, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Playbook":
        return cls(
            content=data["content"],
            id=data.get("id"),
            name=data.get("name", "playbook"),
            version=data.get("version"),
        )


@dataclass(frozen=True)
class ExecutionRequest:
    """An immutable request to execute a payload against a set of hosts.

    Exactly one of ``command`` or ``playbook`` must be set.

    Attributes:
        host_ids: Target host identifiers (non-empty)
        command: Shell command to run ad-hoc
        playbook: Playbook to run
        variables: Extra variables passed to a playbook run
        timeout: Overall execution timeout in seconds (None = default)

    Example:
        >>> request = ExecutionRequest(host_ids=("h1",), command="uptime")
        >>> request.is_playbook
        False
    """

    host_ids: tuple[str, ...]
    command: str | None = None
    playbook: Playbook | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    timeout: int | None = None

    def __post_init__(self) -> None:
        # Accept any iterable; duplicates collapse so each host gets one result
        object.__setattr__(self, "host_ids", tuple(dict.fromkeys(self.host_ids)))

        if not self.host_ids:
            raise InvalidRequest("At least one host id is required")
        if (self.command is None) == (self.playbook is None):
            raise InvalidRequest("Exactly one of command or playbook must be provided")
        if self.command is not None and not self.command.strip():
            raise InvalidRequest("Command must not be empty")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidRequest(f"Timeout must be positive, got {self.timeout}")

    @property
    def is_playbook(self) -> bool:
        return self.playbook is not None

    def effective_timeout(self, default: int, maximum: int) -> int:
        """Resolve the timeout against configured bounds.

        Raises:
            InvalidRequest: If the requested timeout exceeds ``maximum``
        """
        if self.timeout is None:
            return default
        if self.timeout > maximum:
            raise InvalidRequest(
                f"Timeout {self.timeout}s exceeds the maximum of {maximum}s",
                timeout=self.timeout,
            )
        return self.timeout

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage on a task record."""
        return {
            "host_ids": list(self.host_ids),
            "command": self.command,
            "playbook": self.playbook.to_dict() if self.playbook else None,
            "variables": dict(self.variables),
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutionRequest":
        """Create from dictionary."""
        playbook = data.get("playbook")
        return cls(
            host_ids=tuple(data["host_ids"]),
            command=data.get("command"),
            playbook=Playbook.from_dict(playbook) if playbook else None,
            variables=data.get("variables") or {},
            timeout=data.get("timeout"),
        )


@dataclass(frozen=True)
class Adhoc:
    """Trigger for a caller-submitted execution bound to an existing task."""

    task_id: str


@dataclass(frozen=True)
class Scheduled:
    """Trigger for a schedule-driven execution; each run gets a fresh task."""

    schedule_id: str


ExecutionTrigger = Adhoc | Scheduled


@dataclass
class PerHostResult:
    """Outcome of one execution on one host.

    Attributes:
        host_id: Host identifier
        success: Whether the host succeeded
        data: ``{stdout, stderr, rc}`` for commands, a fact mapping for
            fact-gathering, or stats/tasks for playbooks
        error: Diagnostic message when the host failed
        error_kind: Short tag for the failure (Failed, Unreachable,
            Unparseable, NoOutput, MissingCredential, HostNotFound)
        changed: Whether the host reported changes
    """

    host_id: str
    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    error_kind: str | None = None
    changed: bool = False

    @classmethod
    def success_result(
        cls, host_id: str, data: dict[str, Any], changed: bool = False
    ) -> "PerHostResult":
        """Create a successful result."""
        return cls(host_id=host_id, success=True, data=data, changed=changed)

    @classmethod
    def error_result(
        cls,
        host_id: str,
        kind: str,
        error: str,
        data: dict[str, Any] | None = None,
    ) -> "PerHostResult":
        """Create a failed result tagged with an error kind."""
        return cls(host_id=host_id, success=False, data=data, error=error, error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "data": self.data,
            "error": self.error,
        }
        if self.error_kind:
            result["error_kind"] = self.error_kind
        if self.changed:
            result["changed"] = True
        return result


@dataclass
class ExecutionResult:
    """Correlated results of one external tool invocation.

    Attributes:
        success: Overall success under the configured batch policy
        results: One PerHostResult per requested host id
        output: Raw stdout of the external tool
        stderr: Raw stderr of the external tool
        exit_code: Exit code (None when the tool never ran)
    """

    success: bool
    results: dict[str, PerHostResult] = field(default_factory=dict)
    output: str = ""
    stderr: str = ""
    exit_code: int | None = None

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results.values() if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    def to_dict(self) -> dict[str, Any]:
        """Convert to the ``{success, results}`` contract shape."""
        return {
            "success": self.success,
            "results": {host_id: r.to_dict() for host_id, r in self.results.items()},
        }
