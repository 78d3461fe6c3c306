"""Correlation of combined tool output back to per-host results.

The external tool writes one text stream for every targeted host. Each
host's result starts with a delimiter line such as::

    3f2a... | CHANGED | rc=0 >>
    3f2a... | SUCCESS => { ... }
    3f2a... | FAILED | rc=1 >>
    3f2a... | UNREACHABLE! => { ... }

Nothing guarantees the payload cannot itself look like a delimiter, so
text correlation is best-effort. For every requested host the strategies
below are tried in order until one matches:

1. strict: ``<id> | SUCCESS|CHANGED | rc=N >> payload`` (or ``=> {json}``)
2. loose: ``<id> ... >> payload`` on a line that does not report a failure
3. failure: ``<id> | FAILED|UNREACHABLE``
4. fallback: the id appears somewhere and the stream carries a global
   SUCCESS/CHANGED marker; otherwise the host is Unparseable
5. the id never appears: NoOutput

A payload ends at the next line that starts with a known host id or a
UUID-shaped token followed by ``|``, or at end of stream.

The machine-readable ``json`` stdout callback is the preferred source when
available (:meth:`OutputCorrelator.correlate_json`); text correlation
remains the compatibility path. Correlation never raises for per-host
ambiguity: every requested host id gets exactly one result.
"""

import json
import logging
import re
from typing import Any

from .facts import PRIMARY_DISKS, parse_size_to_bytes
from .types import ExecutionResult, PerHostResult

logger = logging.getLogger(__name__)

FAILED = "Failed"
UNREACHABLE = "Unreachable"
UNPARSEABLE = "Unparseable"
NO_OUTPUT = "NoOutput"

UUID_TOKEN = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"

# Characters that may continue a host id; used to avoid matching "h1" inside "h10"
_ID_TAIL = r"(?![\w.-])"
_ID_HEAD = r"(?<![\w.-])"

_FLAGS = re.IGNORECASE | re.DOTALL | re.MULTILINE

_STRING_FACTS = (
    "ansible_os_family",
    "ansible_distribution",
    "ansible_distribution_version",
    "ansible_distribution_file_variety",
)
_INT_FACTS = (
    "ansible_processor_vcpus",
    "ansible_processor_cores",
    "ansible_memtotal_mb",
)

_RECAP_LINE = re.compile(
    r"^[ \t]*(?P<host>\S+)\s*:\s*ok=(?P<ok>\d+)\s+changed=(?P<changed>\d+)\s+"
    r"unreachable=(?P<unreachable>\d+)\s+failed=(?P<failures>\d+)"
    r"(?:\s+skipped=(?P<skipped>\d+))?(?:\s+rescued=(?P<rescued>\d+))?"
    r"(?:\s+ignored=(?P<ignored>\d+))?",
    re.MULTILINE,
)
_MSG_FIELD = re.compile(r'"msg"\s*:\s*"((?:[^"\\]|\\.)*)"')
_RC_FIELD = re.compile(r"rc=(\d+)")


class OutputCorrelator:
    """Maps combined tool output to one PerHostResult per host.

    Attributes:
        partial_success: When True, the batch counts as successful if at
            least one host succeeded and no host reported FAILED or
            UNREACHABLE. When False, every host must succeed.

    Example:
        >>> correlator = OutputCorrelator()
        >>> result = correlator.correlate("h1 | SUCCESS | rc=0 >> hello", ["h1"])
        >>> result.results["h1"].data["stdout"]
        'hello'
    """

    def __init__(self, partial_success: bool = False) -> None:
        self.partial_success = partial_success

    # Ad-hoc shell / module output

    def correlate(self, output: str, host_ids: list[str]) -> ExecutionResult:
        """Correlate ad-hoc command output."""
        boundary = _boundary(host_ids)
        results = {hid: self._correlate_host(output, hid, boundary) for hid in _unique(host_ids)}
        return self._result(results, output)

    def _correlate_host(self, output: str, host_id: str, boundary: str) -> PerHostResult:
        hid = re.escape(host_id)

        strict = re.search(
            rf"^[ \t]*{hid}\s*\|\s*(SUCCESS|CHANGED)\s*\|\s*rc=(\d+)\s*>>[ \t]*(.*?){boundary}",
            output,
            _FLAGS,
        )
        if strict:
            status, rc, payload = strict.group(1), int(strict.group(2)), strict.group(3).strip()
            logger.debug(f"Host {host_id} matched strict pattern ({status}, rc={rc})")
            return PerHostResult.success_result(
                host_id,
                {"stdout": payload, "stderr": "", "rc": rc},
                changed=status.upper() == "CHANGED",
            )

        json_form = re.search(
            rf"^[ \t]*{hid}\s*\|\s*(SUCCESS|CHANGED)\s*=>\s*(\{{.*?\}}){boundary}",
            output,
            _FLAGS,
        )
        if json_form:
            status = json_form.group(1)
            body = _load_object(json_form.group(2))
            data: dict[str, Any] = {"stdout": "", "stderr": "", "rc": 0}
            if body is not None:
                data.update(
                    stdout=str(body.get("stdout", "")),
                    stderr=str(body.get("stderr", "")),
                    rc=body.get("rc", 0),
                    result=body,
                )
            logger.debug(f"Host {host_id} matched module result ({status})")
            return PerHostResult.success_result(
                host_id,
                data,
                changed=status.upper() == "CHANGED" or bool(body and body.get("changed")),
            )

        loose = re.search(
            rf"^[ \t]*{hid}{_ID_TAIL}(?:(?!FAILED|UNREACHABLE)[^>\n])*>>[ \t]*(.*?){boundary}",
            output,
            _FLAGS,
        )
        if loose:
            logger.debug(f"Host {host_id} matched loose pattern")
            return PerHostResult.success_result(
                host_id, {"stdout": loose.group(1).strip(), "stderr": "", "rc": 0}
            )

        failure = self._match_failure(output, host_id, boundary)
        if failure is not None:
            return failure

        return self._fallback(output, host_id)

    def _match_failure(self, output: str, host_id: str, boundary: str) -> PerHostResult | None:
        """Match a FAILED/UNREACHABLE delimiter and build the failed result."""
        hid = re.escape(host_id)
        match = re.search(
            rf"^[ \t]*{hid}\s*\|\s*(FAILED|UNREACHABLE)!?(.*?){boundary}",
            output,
            _FLAGS,
        )
        if not match:
            return None

        keyword = match.group(1).upper()
        segment = match.group(2)
        error = f"Host {keyword}"
        message = _extract_msg(segment)
        if message:
            error = f"{error}: {message}"

        data = None
        rc_match = _RC_FIELD.search(segment.split("\n", 1)[0])
        if rc_match:
            payload = segment.split(">>", 1)[1] if ">>" in segment else ""
            data = {"stdout": payload.strip(), "stderr": "", "rc": int(rc_match.group(1))}

        logger.debug(f"Host {host_id} reported {keyword}")
        kind = UNREACHABLE if keyword == "UNREACHABLE" else FAILED
        return PerHostResult.error_result(host_id, kind, error, data=data)

    def _fallback(self, output: str, host_id: str) -> PerHostResult:
        if not _mentions(output, host_id):
            logger.debug(f"Host {host_id} not found in output")
            return PerHostResult.error_result(
                host_id, NO_OUTPUT, "NoOutput: host did not appear in the tool output"
            )

        if "SUCCESS" in output or "CHANGED" in output:
            logger.debug(f"Host {host_id} present with a global success marker")
            return PerHostResult.success_result(host_id, {"stdout": "", "stderr": "", "rc": 0})

        logger.debug(f"Host {host_id} present but output could not be parsed")
        return PerHostResult.error_result(
            host_id, UNPARSEABLE, "Unparseable: host output could not be parsed"
        )

    # Fact gathering (setup module)

    def correlate_facts(self, output: str, host_ids: list[str]) -> ExecutionResult:
        """Correlate ``setup`` module output into per-host fact mappings."""
        boundary = _boundary(host_ids)
        results = {
            hid: self._correlate_facts_host(output, hid, boundary) for hid in _unique(host_ids)
        }
        return self._result(results, output)

    def _correlate_facts_host(self, output: str, host_id: str, boundary: str) -> PerHostResult:
        hid = re.escape(host_id)

        block = re.search(
            rf"^[ \t]*{hid}\s*\|\s*SUCCESS\s*=>\s*\{{(.*?)\}}{boundary}",
            output,
            _FLAGS,
        )
        if block:
            parsed = _load_object("{" + block.group(1) + "}")
            if parsed is not None:
                facts = parsed.get("ansible_facts", parsed)
                logger.debug(f"Host {host_id} facts parsed as JSON")
                return PerHostResult.success_result(host_id, facts)

            logger.debug(f"Host {host_id} facts are not valid JSON, extracting fields")
            return self._facts_from_segment(output, host_id, boundary)

        if re.search(rf"^[ \t]*{hid}{_ID_TAIL}[^{{\n]*\{{.*?\"ansible_facts\"\s*:\s*\{{", output, _FLAGS):
            return self._facts_from_segment(output, host_id, boundary)

        failure = self._match_failure(output, host_id, boundary)
        if failure is not None:
            return failure

        if _mentions(output, host_id) and "SUCCESS" in output:
            return self._facts_from_segment(output, host_id, boundary)

        if _mentions(output, host_id):
            return PerHostResult.error_result(
                host_id, UNPARSEABLE, "Unparseable: host output could not be parsed"
            )
        return PerHostResult.error_result(
            host_id, NO_OUTPUT, "NoOutput: host did not appear in the tool output"
        )

    def _facts_from_segment(self, output: str, host_id: str, boundary: str) -> PerHostResult:
        segment = host_segment(output, host_id, boundary)
        facts = extract_facts(segment) if segment else {}
        if facts:
            return PerHostResult.success_result(host_id, facts)
        return PerHostResult.error_result(
            host_id, UNPARSEABLE, "Unparseable: fact data could not be parsed"
        )

    # Structured output (json stdout callback)

    def correlate_json(
        self, output: str, host_ids: list[str], mode: str = "adhoc"
    ) -> ExecutionResult | None:
        """Correlate output produced by the ``json`` stdout callback.

        Args:
            output: Raw stdout
            host_ids: Requested host ids
            mode: "adhoc" for command results, "facts" for setup results,
                "playbook" for playbook runs

        Returns:
            ExecutionResult, or None when the output is not a callback document
        """
        document = _load_document(output)
        if document is None or not isinstance(document.get("plays"), list):
            return None

        tasks_by_host: dict[str, list[dict[str, Any]]] = {}
        for play in document["plays"]:
            play_name = (play.get("play") or {}).get("name", "")
            for task in play.get("tasks") or []:
                task_name = (task.get("task") or {}).get("name", "")
                for hid, host_result in (task.get("hosts") or {}).items():
                    if isinstance(host_result, dict):
                        tasks_by_host.setdefault(str(hid), []).append(
                            {"play": play_name, "task": task_name, "result": host_result}
                        )

        stats = document.get("stats") or {}
        results: dict[str, PerHostResult] = {}
        for hid in _unique(host_ids):
            entries = tasks_by_host.get(hid, [])
            host_stats = stats.get(hid)
            if not entries and host_stats is None:
                results[hid] = PerHostResult.error_result(
                    hid, NO_OUTPUT, "NoOutput: host did not appear in the tool output"
                )
            elif mode == "playbook":
                results[hid] = _playbook_host_result(hid, entries, host_stats)
            else:
                results[hid] = _adhoc_host_result(hid, entries, facts=mode == "facts")

        return self._result(results, output)

    # Playbooks

    def correlate_playbook(self, output: str, host_ids: list[str]) -> ExecutionResult:
        """Correlate playbook output.

        Uses the json callback document when present, then the PLAY RECAP
        table, then the per-host failure and presence heuristics.
        """
        structured = self.correlate_json(output, host_ids, mode="playbook")
        if structured is not None:
            return structured

        recap = parse_play_recap(output)
        boundary = _boundary(host_ids)
        results: dict[str, PerHostResult] = {}
        for hid in _unique(host_ids):
            if hid in recap:
                results[hid] = _playbook_host_result(hid, [], recap[hid])
                continue
            failure = self._match_failure(output, hid, boundary)
            results[hid] = failure if failure is not None else self._fallback(output, hid)
        return self._result(results, output)

    def _result(self, results: dict[str, PerHostResult], output: str) -> ExecutionResult:
        return ExecutionResult(
            success=self.overall_success(results),
            results=results,
            output=output,
        )

    def overall_success(self, results: dict[str, PerHostResult]) -> bool:
        """Apply the batch success policy."""
        if not results or not any(r.success for r in results.values()):
            return False
        if self.partial_success:
            return not any(r.error_kind in (FAILED, UNREACHABLE) for r in results.values())
        return all(r.success for r in results.values())


def _unique(host_ids: list[str]) -> list[str]:
    return list(dict.fromkeys(host_ids))


def _boundary(host_ids: list[str]) -> str:
    """Lookahead ending a payload at the next host delimiter or end of stream."""
    ids = sorted({re.escape(h) for h in host_ids}, key=len, reverse=True)
    alternatives = "|".join(ids + [UUID_TOKEN])
    return rf"(?=\n[ \t]*(?:{alternatives})\s*\||\s*\Z)"


def _mentions(output: str, host_id: str) -> bool:
    return re.search(rf"{_ID_HEAD}{re.escape(host_id)}{_ID_TAIL}", output) is not None


def host_segment(output: str, host_id: str, boundary: str | None = None) -> str:
    """Return the text from the host's delimiter up to the next delimiter."""
    boundary = boundary or _boundary([host_id])
    match = re.search(
        rf"^[ \t]*{re.escape(host_id)}{_ID_TAIL}.*?{boundary}", output, _FLAGS
    )
    return match.group(0) if match else ""


def extract_facts(text: str) -> dict[str, Any]:
    """Recover well-known facts by field-level regex.

    Used when the captured block is not valid JSON. Recovers OS family,
    distribution and version, CPU counts, total memory, and the size of the
    primary block device (normalized to bytes under ``size_bytes``).
    """
    facts: dict[str, Any] = {}

    for key in _STRING_FACTS:
        match = re.search(rf'"{key}"\s*:\s*"([^"]*)"', text)
        if match:
            facts[key] = match.group(1)

    for key in _INT_FACTS:
        match = re.search(rf'"{key}"\s*:\s*(\d+)', text)
        if match:
            facts[key] = int(match.group(1))

    for device in PRIMARY_DISKS:
        match = re.search(rf'"{device}"\s*:\s*\{{[^}}]*?"size"\s*:\s*"([^"]+)"', text)
        if match:
            size = match.group(1)
            entry: dict[str, Any] = {"size": size}
            size_bytes = parse_size_to_bytes(size)
            if size_bytes is not None:
                entry["size_bytes"] = size_bytes
            facts["ansible_devices"] = {device: entry}
            break

    return facts


def parse_play_recap(output: str) -> dict[str, dict[str, int]]:
    """Parse the PLAY RECAP table into per-host counters."""
    marker = output.rfind("PLAY RECAP")
    if marker == -1:
        return {}

    recap: dict[str, dict[str, int]] = {}
    for match in _RECAP_LINE.finditer(output, marker):
        recap[match.group("host")] = {
            key: int(value or 0)
            for key, value in match.groupdict().items()
            if key != "host"
        }
    return recap


def _load_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _load_document(output: str) -> dict[str, Any] | None:
    """Decode the first JSON object that starts a line in the output."""
    decoder = json.JSONDecoder()
    for match in re.finditer(r"^\{", output, re.MULTILINE):
        try:
            document, _ = decoder.raw_decode(output, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(document, dict):
            return document
    return None


def _extract_msg(segment: str) -> str | None:
    match = _MSG_FIELD.search(segment)
    if not match:
        return None
    try:
        return json.loads(f'"{match.group(1)}"')
    except json.JSONDecodeError:
        return match.group(1)


def _adhoc_host_result(
    host_id: str, entries: list[dict[str, Any]], facts: bool
) -> PerHostResult:
    if not entries:
        return PerHostResult.error_result(
            host_id, UNPARSEABLE, "Unparseable: no task result for host"
        )

    result = entries[-1]["result"]
    changed = bool(result.get("changed"))
    data = {
        "stdout": result.get("stdout", ""),
        "stderr": result.get("stderr", ""),
        "rc": result.get("rc", 0),
    }

    if result.get("unreachable"):
        message = result.get("msg")
        error = f"Host UNREACHABLE: {message}" if message else "Host UNREACHABLE"
        return PerHostResult.error_result(host_id, UNREACHABLE, error)
    if result.get("failed"):
        message = result.get("msg")
        error = f"Host FAILED: {message}" if message else "Host FAILED"
        return PerHostResult.error_result(host_id, FAILED, error, data=data)

    if facts:
        return PerHostResult.success_result(host_id, result.get("ansible_facts", {}), changed)
    return PerHostResult.success_result(host_id, data, changed)


def _playbook_host_result(
    host_id: str,
    entries: list[dict[str, Any]],
    host_stats: dict[str, Any] | None,
) -> PerHostResult:
    tasks = []
    first_error: tuple[str, str] | None = None
    for entry in entries:
        result = entry["result"]
        if result.get("unreachable"):
            status = "unreachable"
        elif result.get("failed") and not result.get("ignore_errors"):
            status = "failed"
        elif result.get("skipped"):
            status = "skipped"
        elif result.get("changed"):
            status = "changed"
        else:
            status = "ok"
        task = {"play": entry["play"], "task": entry["task"], "status": status}
        if result.get("msg"):
            task["msg"] = result["msg"]
        tasks.append(task)
        if status in ("failed", "unreachable") and first_error is None:
            first_error = (status, f"{entry['task'] or 'task'}: {result.get('msg', '')}".rstrip(": "))

    if host_stats is None:
        host_stats = {
            "ok": sum(1 for t in tasks if t["status"] in ("ok", "changed")),
            "changed": sum(1 for t in tasks if t["status"] == "changed"),
            "failures": sum(1 for t in tasks if t["status"] == "failed"),
            "unreachable": sum(1 for t in tasks if t["status"] == "unreachable"),
            "skipped": sum(1 for t in tasks if t["status"] == "skipped"),
        }
    stats = {
        key: int(host_stats.get(key, 0) or 0)
        for key in ("ok", "changed", "failures", "unreachable", "skipped", "rescued", "ignored")
    }
    data = {"stats": stats, "tasks": tasks}

    if stats["unreachable"]:
        detail = first_error[1] if first_error else ""
        error = f"Host UNREACHABLE: {detail}" if detail else "Host UNREACHABLE"
        return PerHostResult.error_result(host_id, UNREACHABLE, error, data=data)
    if stats["failures"]:
        detail = first_error[1] if first_error else ""
        error = f"Host FAILED: {detail}" if detail else "Host FAILED"
        return PerHostResult.error_result(host_id, FAILED, error, data=data)

    return PerHostResult.success_result(host_id, data, changed=stats["changed"] > 0)
