"""Host lookup boundary.

Hosts are owned by the surrounding application; the core only reads them.
The YAML catalog lets the command line work without that application:

    credentials:
      deploy-key:
        username: deploy
        private_key: "<iv>:<tag>:<ciphertext>"
    hosts:
      3f2a...:
        name: web01
        address: 10.0.0.5
        auth_mode: SSH_KEY
        credential: deploy-key
      9b7c...:
        name: db01
        address: 10.0.0.6
        port: 2222
        password: "<iv>:<tag>:<ciphertext>"

Secret values are stored encrypted, exactly as the application keeps them.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable

import yaml

from .exceptions import ConfigurationError
from .types import Credential, Host

logger = logging.getLogger(__name__)


class HostRepository(ABC):
    """Base class for host lookups."""

    @abstractmethod
    async def get_many(self, host_ids: Iterable[str], project_id: str | None = None) -> list[Host]:
        """Return the hosts that exist among ``host_ids``.

        Unknown ids are silently absent from the result; a project filter
        excludes hosts owned by other projects.
        """


class MemoryHostRepository(HostRepository):
    """Host repository backed by a dictionary keyed by host id."""

    def __init__(self, hosts: Iterable[Host] = ()) -> None:
        self.hosts: dict[str, Host] = {host.id: host for host in hosts}

    def add(self, host: Host) -> None:
        self.hosts[host.id] = host

    def remove(self, host_id: str) -> None:
        self.hosts.pop(host_id, None)

    async def get_many(self, host_ids: Iterable[str], project_id: str | None = None) -> list[Host]:
        found = []
        for host_id in host_ids:
            host = self.hosts.get(host_id)
            if host is None:
                continue
            if project_id is not None and host.project_id != project_id:
                continue
            found.append(host)
        return found


def load_hosts(path: str | Path) -> MemoryHostRepository:
    """Load a YAML host catalog.

    Args:
        path: Catalog file with ``credentials`` and ``hosts`` sections

    Returns:
        MemoryHostRepository holding every host in the file

    Raises:
        ConfigurationError: If the file is unreadable or malformed
    """
    path = Path(path)
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read host catalog {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in host catalog {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Host catalog {path} must contain a mapping")

    credentials = {
        str(cred_id): Credential.from_dict({**(cred_data or {}), "id": cred_id})
        for cred_id, cred_data in (data.get("credentials") or {}).items()
    }

    repository = MemoryHostRepository()
    for host_id, host_data in (data.get("hosts") or {}).items():
        repository.add(_host_from_entry(str(host_id), host_data or {}, credentials, path))

    logger.debug(f"Loaded {len(repository.hosts)} host(s) from {path}")
    return repository


def _host_from_entry(
    host_id: str,
    entry: dict[str, Any],
    credentials: dict[str, Credential],
    path: Path,
) -> Host:
    entry = dict(entry)
    credential_ref = entry.pop("credential", None)
    if "address" not in entry:
        raise ConfigurationError(f"Host {host_id} in {path} has no address", host_id=host_id)

    try:
        host = Host.from_dict({**entry, "id": host_id, "name": entry.get("name", host_id)})
    except ValueError as e:
        raise ConfigurationError(f"Invalid host {host_id} in {path}: {e}", host_id=host_id) from e

    if credential_ref is not None:
        if isinstance(credential_ref, dict):
            host.credential = Credential.from_dict({"id": f"{host_id}-credential", **credential_ref})
        elif str(credential_ref) in credentials:
            host.credential = credentials[str(credential_ref)]
        else:
            raise ConfigurationError(
                f"Host {host_id} references unknown credential {credential_ref}",
                host_id=host_id,
            )
    return host
