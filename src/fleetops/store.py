"""Persistence boundary for task records.

The orchestrator only needs read/write by id. Two stores are provided: an
in-memory store for embedding and tests, and a JSON-file store (one file
per task) used by the command line.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

from .exceptions import TaskNotFound
from .tasks import TaskRecord

logger = logging.getLogger(__name__)


class TaskStore(ABC):
    """Base class for task record stores.

    Subclasses implement get, save, delete and list. ``update`` is the only
    way the orchestrator changes an existing record: it holds a per-task lock
    around get, change and save so concurrent transitions of one task never
    interleave.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    async def update(self, task_id: str, change: Callable[[TaskRecord], bool]) -> TaskRecord:
        """Apply ``change`` to the stored record and save it if it returns True.

        Exceptions raised by ``change`` propagate and nothing is saved.

        Returns:
            The record as stored after the update

        Raises:
            TaskNotFound: If no record has this id
        """
        lock = self._locks.setdefault(task_id, asyncio.Lock())
        async with lock:
            record = await self.get(task_id)
            if change(record):
                await self.save(record)
            return record

    @abstractmethod
    async def get(self, task_id: str) -> TaskRecord:
        """Load a record.

        Raises:
            TaskNotFound: If no record has this id
        """

    @abstractmethod
    async def save(self, record: TaskRecord) -> None:
        """Create or replace a record."""

    @abstractmethod
    async def delete(self, task_id: str) -> None:
        """Remove a record.

        Raises:
            TaskNotFound: If no record has this id
        """

    @abstractmethod
    async def list(self, project_id: str | None = None) -> list[TaskRecord]:
        """List records, newest first, optionally filtered by project."""


class MemoryTaskStore(TaskStore):
    """Dictionary-backed store.

    Records are copied in and out so callers never share mutable state
    with the store.
    """

    def __init__(self) -> None:
        super().__init__()
        self._records: dict[str, TaskRecord] = {}

    async def get(self, task_id: str) -> TaskRecord:
        if task_id not in self._records:
            raise TaskNotFound(task_id)
        return TaskRecord.from_dict(self._records[task_id].to_dict())

    async def save(self, record: TaskRecord) -> None:
        self._records[record.id] = TaskRecord.from_dict(record.to_dict())

    async def delete(self, task_id: str) -> None:
        if self._records.pop(task_id, None) is None:
            raise TaskNotFound(task_id)
        self._locks.pop(task_id, None)

    async def list(self, project_id: str | None = None) -> list[TaskRecord]:
        records = [
            TaskRecord.from_dict(r.to_dict())
            for r in self._records.values()
            if project_id is None or r.project_id == project_id
        ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)


class JsonTaskStore(TaskStore):
    """Stores each record as ``<task id>.json`` in a directory.

    Writes go to a temporary file that is then renamed over the target, so
    a reader never sees a half-written record.

    Example:
        >>> store = JsonTaskStore(Path("~/.fleetops/tasks").expanduser())
        >>> await store.save(record)
        >>> (await store.get(record.id)).status
        <TaskStatus.PENDING: 'PENDING'>
    """

    def __init__(self, directory: Path | str) -> None:
        super().__init__()
        self.directory = Path(directory)

    def _path(self, task_id: str) -> Path:
        if not task_id or "/" in task_id or task_id.startswith("."):
            raise TaskNotFound(task_id)
        return self.directory / f"{task_id}.json"

    async def get(self, task_id: str) -> TaskRecord:
        return await asyncio.to_thread(self._read, self._path(task_id))

    async def save(self, record: TaskRecord) -> None:
        await asyncio.to_thread(self._write, record)

    async def delete(self, task_id: str) -> None:
        path = self._path(task_id)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            raise TaskNotFound(task_id) from None
        self._locks.pop(task_id, None)
        logger.debug(f"Deleted task record {path}")

    async def list(self, project_id: str | None = None) -> list[TaskRecord]:
        return await asyncio.to_thread(self._list, project_id)

    def _read(self, path: Path) -> TaskRecord:
        try:
            with path.open() as f:
                data = json.load(f)
        except FileNotFoundError:
            raise TaskNotFound(path.stem) from None
        return TaskRecord.from_dict(data)

    def _write(self, record: TaskRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(record.id)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _list(self, project_id: str | None) -> "list[TaskRecord]":
        if not self.directory.exists():
            return []

        records = []
        for path in self.directory.glob("*.json"):
            if path.name.startswith("."):
                continue
            try:
                record = self._read(path)
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable task record {path}: {e}")
                continue
            except TaskNotFound:
                continue
            if project_id is None or record.project_id == project_id:
                records.append(record)
        return sorted(records, key=lambda r: r.created_at, reverse=True)
