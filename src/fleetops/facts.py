"""Normalization of gathered host facts into an inventory summary."""

import re
from dataclasses import dataclass
from typing import Any

from .types import ExecutionResult

PRIMARY_DISKS = ("sda", "vda", "nvme0n1", "hda")

_UNITS = {
    "MB": 1024 ** 2,
    "GB": 1024 ** 3,
    "TB": 1024 ** 4,
}
_SIZE = re.compile(r"^\s*([\d.]+)\s*([MGT]B)\s*$", re.IGNORECASE)


def parse_size_to_bytes(size: str) -> int | None:
    """Convert a device size such as ``"20.00 GB"`` to bytes.

    Returns None for sizes without a recognized MB/GB/TB suffix.

    Example:
        >>> parse_size_to_bytes("1.5 GB")
        1610612736
    """
    match = _SIZE.match(size or "")
    if not match:
        return None
    try:
        value = float(match.group(1))
    except ValueError:
        return None
    return int(value * _UNITS[match.group(2).upper()])


@dataclass
class HostFacts:
    """Summary of the facts the fleet inventory keeps per host.

    Attributes:
        os_type: Distribution name (or OS family when unknown)
        os_version: Distribution version
        cpu_cores: Virtual CPU count, falling back to physical cores
        memory_bytes: Total memory in bytes
        disk_bytes: Size of the primary block device in bytes
    """

    os_type: str | None = None
    os_version: str | None = None
    cpu_cores: int | None = None
    memory_bytes: int | None = None
    disk_bytes: int | None = None

    @classmethod
    def from_facts(cls, facts: dict[str, Any]) -> "HostFacts":
        """Build a summary from an ansible fact mapping."""
        os_type = facts.get("ansible_distribution") or facts.get("ansible_os_family")

        cpu = facts.get("ansible_processor_vcpus") or facts.get("ansible_processor_cores")
        memtotal_mb = facts.get("ansible_memtotal_mb")

        return cls(
            os_type=os_type,
            os_version=facts.get("ansible_distribution_version"),
            cpu_cores=int(cpu) if cpu else None,
            memory_bytes=int(memtotal_mb) * 1024 * 1024 if memtotal_mb else None,
            disk_bytes=_primary_disk_bytes(facts.get("ansible_devices") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "os_type": self.os_type,
            "os_version": self.os_version,
            "cpu_cores": self.cpu_cores,
            "memory_bytes": self.memory_bytes,
            "disk_bytes": self.disk_bytes,
        }


def _primary_disk_bytes(devices: dict[str, Any]) -> int | None:
    for name in PRIMARY_DISKS:
        device = devices.get(name)
        if not isinstance(device, dict):
            continue
        if "size_bytes" in device:
            return int(device["size_bytes"])
        return parse_size_to_bytes(str(device.get("size", "")))
    return None


def summarize_facts(result: ExecutionResult) -> dict[str, HostFacts | None]:
    """Summarize each host's gathered facts; failed hosts map to None."""
    return {
        host_id: HostFacts.from_facts(host_result.data or {}) if host_result.success else None
        for host_id, host_result in result.results.items()
    }
