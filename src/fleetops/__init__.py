"""fleetops - fleet execution core built on ansible.

Runs ad-hoc commands, fact gathering and playbooks against a set of hosts
by invoking ansible against a per-run inventory, correlates the combined
output back to one result per host, and tracks each run as a task.

Quick Start:
    from fleetops import ExecutionOrchestrator, ExecutionRequest

    task_id = await orchestrator.submit(ExecutionRequest(host_ids=["h1"], command="uptime"))
    record = await orchestrator.wait(task_id)
"""

__version__ = "0.1.0"

from fleetops.orchestrator import ExecutionOrchestrator
from fleetops.types import ExecutionRequest, ExecutionResult, Host, PerHostResult

__all__ = [
    "__version__",
    "ExecutionOrchestrator",
    "ExecutionRequest",
    "ExecutionResult",
    "Host",
    "PerHostResult",
]
