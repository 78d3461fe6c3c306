"""Ephemeral inventory generation for fleetops.

Each execution gets its own scratch workspace holding the inventory
document, private key files and playbook file. The workspace is removed
when the execution ends, whatever the outcome.

The inventory uses a single ``all`` group keyed by host id:

    all:
      hosts:
        3f2a...:
          ansible_host: 10.0.0.5
          ansible_port: 22
          ansible_user: root
          ansible_password: ...
      vars:
        ansible_ssh_common_args: -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null
        ansible_host_key_checking: false
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Any

import yaml

from .types import ConnectionSecrets, Host

logger = logging.getLogger(__name__)

SSH_COMMON_ARGS = "-o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"

GLOBAL_CONNECTION_VARS: dict[str, Any] = {
    "ansible_ssh_common_args": SSH_COMMON_ARGS,
    "ansible_host_key_checking": False,
}


@dataclass
class InventoryHost:
    """Connection parameters for one host in a generated inventory.

    Attributes:
        host_id: Inventory hostname (the stable host id)
        address: Address to connect to
        port: SSH port
        username: Effective SSH username
        password: Inline plaintext password
        private_key_file: Path of the key file written for this run
        passphrase: Passphrase for the private key
    """

    host_id: str
    address: str
    port: int = 22
    username: str = "root"
    password: str | None = None
    private_key_file: Path | None = None
    passphrase: str | None = None

    def to_vars(self) -> dict[str, Any]:
        """Render as ansible host variables."""
        host_vars: dict[str, Any] = {
            "ansible_host": self.address,
            "ansible_port": self.port,
            "ansible_user": self.username,
        }
        if self.private_key_file is not None:
            host_vars["ansible_ssh_private_key_file"] = str(self.private_key_file)
            if self.passphrase:
                host_vars["ansible_ssh_pass"] = self.passphrase
        elif self.password is not None:
            host_vars["ansible_password"] = self.password
        return host_vars


@dataclass
class HostGroup:
    """A group of hosts in the inventory with shared variables."""

    name: str
    hosts: dict[str, InventoryHost] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)

    def add_host(self, host: InventoryHost) -> None:
        self.hosts[host.host_id] = host


@dataclass
class Inventory:
    """Inventory document for one execution.

    Example:
        >>> inventory = Inventory()
        >>> inventory.all.add_host(InventoryHost(host_id="h1", address="10.0.0.5"))
        >>> list(inventory.host_ids)
        ['h1']
    """

    all: HostGroup = field(
        default_factory=lambda: HostGroup(name="all", vars=dict(GLOBAL_CONNECTION_VARS))
    )

    @property
    def host_ids(self) -> list[str]:
        return list(self.all.hosts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "all": {
                "hosts": {host_id: h.to_vars() for host_id, h in self.all.hosts.items()},
                "vars": dict(self.all.vars),
            }
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


class ScratchWorkspace:
    """A private per-execution directory removed on exit.

    Used as a context manager; removal runs on every exit path and a
    failure to remove is logged rather than raised.

    Example:
        >>> with ScratchWorkspace(Path("/tmp/fleetops")) as workspace:
        ...     inventory_path = workspace.write_file("inventory.yml", "all: {}")
    """

    def __init__(self, parent: Path) -> None:
        self.parent = Path(parent)
        self.path: Path | None = None

    def __enter__(self) -> "ScratchWorkspace":
        self.parent.mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix="run-", dir=self.parent))
        logger.debug(f"Created scratch workspace {self.path}")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.cleanup()

    def write_file(self, name: str, content: str, mode: int = 0o600) -> Path:
        """Write a file into the workspace with the given permissions.

        The file is created with ``mode`` directly so its contents are never
        readable by other users, even briefly.
        """
        if self.path is None:
            raise RuntimeError("Workspace is not open")

        target = self.path / name
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(target, mode)
        return target

    def cleanup(self) -> None:
        """Remove the workspace directory and everything in it."""
        if self.path is None:
            return
        try:
            shutil.rmtree(self.path)
            logger.debug(f"Removed scratch workspace {self.path}")
        except OSError as e:
            logger.warning(f"Failed to clean up scratch workspace {self.path}: {e}")
        finally:
            self.path = None


class InventoryBuilder:
    """Builds an inventory from resolved hosts inside a workspace.

    Passwords are embedded inline; private keys are written to owner-only
    files in the workspace and referenced by path.

    Attributes:
        workspace: Open workspace receiving key and inventory files
        key_files: Key files written so far
    """

    def __init__(self, workspace: ScratchWorkspace) -> None:
        self.workspace = workspace
        self.key_files: list[Path] = []

    def build(self, entries: list[tuple[Host, ConnectionSecrets]]) -> Inventory:
        """Build the inventory document for the given hosts.

        Args:
            entries: (host, resolved secrets) pairs

        Returns:
            Inventory keyed by host id
        """
        inventory = Inventory()
        for host, secrets in entries:
            entry = InventoryHost(
                host_id=host.id,
                address=host.address,
                port=host.port or 22,
                username=secrets.username or "root",
            )
            if secrets.private_key:
                entry.private_key_file = self._write_key(host.id, secrets.private_key)
                entry.passphrase = secrets.passphrase
            else:
                entry.password = secrets.password
            inventory.all.add_host(entry)
        return inventory

    def write(self, inventory: Inventory) -> Path:
        """Write the inventory document and return its path."""
        return self.workspace.write_file("inventory.yml", inventory.to_yaml())

    def _write_key(self, host_id: str, private_key: str) -> Path:
        if not private_key.endswith("\n"):
            # ssh rejects PEM bodies without a trailing newline
            private_key += "\n"
        path = self.workspace.write_file(f"key_{_safe_name(host_id)}", private_key)
        self.key_files.append(path)
        return path


def _safe_name(value: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in value)

