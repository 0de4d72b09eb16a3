"""
Durable per-project issue state with atomic, cross-process safe updates.

Every command is a separate process, so in-process locking alone cannot
serialize two operators acting on the same project. The store therefore
combines an asyncio lock (one command, several coroutines) with an OS-level
``fcntl.flock`` on a sidecar lock file (several commands). A crashed process
releases its flock automatically.

State File Structure:
    One JSON document per project, ``projects/<name>.state.json``::

        {
            "issues": {
                "42": {"state": "assigned", "title": "...", "assigned_worker": "w1", ...},
                "43": {"state": "created", ...}
            },
            "workers": {
                "w2": {"paused": true}
            }
        }

    Issue keys keep the order in which they were first written.

Write Discipline:
    ``apply`` holds an exclusive lock across read, merge and write. The
    document is written to a temporary file, fsynced and renamed over the
    original, so readers see either the old or the new document, never a
    partial one.

Corruption:
    An unparsable document raises ``StoreCorrupt`` and is never treated as
    an empty store, otherwise a retried ``create`` would duplicate issues on
    the Tracker.

Example:
    >>> store = StateStore(Path("projects/acme.state.json"))
    >>> record = await store.apply(42, {"state": "assigned"}, guard=require_created)
    >>> (await store.get(42)).state
    <LifecycleState.ASSIGNED: 'assigned'>
"""

import asyncio
import fcntl
import json
import os
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from issue_pipeline.exceptions import NotFoundError, StoreCorrupt
from issue_pipeline.models.domain import IssueRecord

log = structlog.get_logger(__name__)

Guard = Callable[[IssueRecord | None], None]


@dataclass
class StoreSnapshot:
    """All issues and worker flags as read under one shared lock."""

    records: list[IssueRecord] = field(default_factory=list)
    paused_workers: set[str] = field(default_factory=set)


class StateStore:
    """JSON-file State Store for one project.

    Attributes:
        path: The state document.
        lock_path: Sidecar file used for ``flock``; never holds data.
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize the store.

        Args:
            path: Location of the state document. Its directory is created
                if missing; the document itself is created on first write.
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.path.with_suffix(".lock")
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Locking and raw document I/O
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, exclusive: bool) -> AsyncIterator[None]:
        """Hold the in-process lock and an OS-level file lock."""
        async with self._lock:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
                # flock blocks; keep the event loop free while waiting on another process
                await asyncio.to_thread(fcntl.flock, fd, mode)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    async def _read_document(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"issues": {}, "workers": {}}

        try:
            async with aiofiles.open(self.path) as f:
                content = await f.read()
        except OSError as e:
            raise StoreCorrupt(f"State file cannot be read: {e}", path=str(self.path)) from e

        if not content.strip():
            raise StoreCorrupt("State file is empty", path=str(self.path))

        try:
            document = json.loads(content)
        except json.JSONDecodeError as e:
            raise StoreCorrupt(f"State file is not valid JSON: {e}", path=str(self.path)) from e

        if not isinstance(document, dict):
            raise StoreCorrupt("State file must hold a JSON object", path=str(self.path))

        issues = document.setdefault("issues", {})
        workers = document.setdefault("workers", {})
        if not isinstance(issues, dict) or not isinstance(workers, dict):
            raise StoreCorrupt("State file 'issues' and 'workers' must be objects", path=str(self.path))

        return document

    async def _write_document(self, document: dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(document, indent=2))
            await f.flush()
            os.fsync(f.fileno())

        tmp_path.replace(self.path)

    def _parse(self, key: str, data: Any) -> IssueRecord:
        try:
            return IssueRecord.from_dict(int(key), data)
        except (TypeError, ValueError) as e:
            raise StoreCorrupt(f"Invalid record for issue {key}: {e}", path=str(self.path)) from e

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def get(self, number: int) -> IssueRecord:
        """Return one issue record.

        Raises:
            NotFoundError: If the store has no record for ``number``
            StoreCorrupt: If the state document cannot be parsed
        """
        async with self._locked(exclusive=False):
            document = await self._read_document()

        data = document["issues"].get(str(number))
        if data is None:
            raise NotFoundError(f"Issue #{number} is not tracked in this project")
        return self._parse(str(number), data)

    async def exists(self, number: int) -> bool:
        async with self._locked(exclusive=False):
            document = await self._read_document()
        return str(number) in document["issues"]

    async def list(self) -> list[IssueRecord]:
        """All issue records in order of first appearance.

        Raises:
            StoreCorrupt: If the document or any record cannot be parsed
        """
        return (await self.snapshot()).records

    async def snapshot(self) -> StoreSnapshot:
        """Read every record and worker flag from one consistent document."""
        async with self._locked(exclusive=False):
            document = await self._read_document()

        records = [self._parse(key, data) for key, data in document["issues"].items()]
        paused = {
            worker_id
            for worker_id, flags in document["workers"].items()
            if isinstance(flags, dict) and flags.get("paused")
        }
        return StoreSnapshot(records=records, paused_workers=paused)

    async def apply(self, number: int, updates: Mapping[str, Any], guard: Guard | None = None) -> IssueRecord:
        """Merge ``updates`` into an issue record atomically.

        Fields not named in ``updates`` are left untouched. A record is
        created if none exists. A value of None removes the field.

        Args:
            number: Issue number
            updates: Field name to new value
            guard: Called with the current record (or None) while the
                exclusive lock is held; raising aborts the update without
                writing anything

        Returns:
            The record as written

        Raises:
            StoreCorrupt: If the existing document cannot be parsed
            PipelineError: Whatever ``guard`` raises
        """
        key = str(number)
        async with self._locked(exclusive=True):
            document = await self._read_document()
            existing = document["issues"].get(key)
            current = self._parse(key, existing) if existing is not None else None

            if guard is not None:
                guard(current)

            merged = dict(existing) if existing is not None else {}
            for name, value in updates.items():
                if value is None:
                    merged.pop(name, None)
                elif isinstance(value, Enum):
                    merged[name] = value.value
                else:
                    merged[name] = value

            record = self._parse(key, merged)
            document["issues"][key] = merged
            await self._write_document(document)

        log.debug("issue_record_applied", issue=number, fields=sorted(updates), state=record.state.value)
        return record

    async def set_worker_paused(self, worker_id: str, paused: bool) -> bool:
        """Set a worker's pause flag.

        Returns:
            True if the flag changed, False if it already had that value
        """
        async with self._locked(exclusive=True):
            document = await self._read_document()
            flags = document["workers"].get(worker_id)
            if not isinstance(flags, dict):
                flags = {}
            if bool(flags.get("paused")) == paused:
                return False

            if paused:
                flags["paused"] = True
            else:
                flags.pop("paused", None)

            if flags:
                document["workers"][worker_id] = flags
            else:
                document["workers"].pop(worker_id, None)
            await self._write_document(document)

        log.info("worker_pause_changed", worker=worker_id, paused=paused)
        return True
