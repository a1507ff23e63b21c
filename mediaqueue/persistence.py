"""
Persists the recoverable part of the queue across restarts.

Only pending, paused and failed jobs are written. Transient execution state is
reset on the way out and again on the way in, so a job interrupted mid-transfer
comes back as a fresh pending job. Writes are debounced: a burst of mutations
produces a single write of the latest snapshot.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

import aiofiles
from pydantic import ValidationError

from .constants import PERSIST_DEBOUNCE, PERSISTED_ITEMS_KEY, STATUS_QUEUED
from .jobs import ACTIVE_STATUSES, PERSISTABLE_STATUSES, DownloadJob, JobStatus


class DurableStore(Protocol):
    """A key-value store whose contents survive a restart once `save` returns."""

    async def get(self, key: str) -> Any: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def save(self) -> None: ...


class JsonFileStore:
    """A `DurableStore` backed by a single JSON file."""

    def __init__(self, path: Path):
        """
        Initializes the JsonFileStore.

        Args:
            path: The JSON file to read and write. Its directory is created on save.
        """
        self.path = path
        self.logger = logging.getLogger(__name__)
        self._data: Optional[Dict[str, Any]] = None

    async def load(self) -> Dict[str, Any]:
        """
        Reads the file into memory.

        A missing file yields an empty store. A corrupted file is backed up and
        an empty store is used instead.
        """
        if not await asyncio.to_thread(self.path.exists):
            self._data = {}
            return self._data
        try:
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                data = json.loads(await f.read())
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            self._data = data
        except (ValueError, OSError) as e:
            self.logger.error(f"Error loading {self.path}: {e}. Backing up and starting empty.")
            self._data = {}
            try:
                backup_path = self.path.with_suffix(f".{int(time.time())}.bak")
                await asyncio.to_thread(self.path.rename, backup_path)
                self.logger.info(f"Backed up corrupted store to {backup_path}")
            except OSError as backup_e:
                self.logger.error(f"Could not back up corrupted store: {backup_e}")
        return self._data

    async def get(self, key: str) -> Any:
        if self._data is None:
            await self.load()
        return self._data.get(key)

    async def set(self, key: str, value: Any) -> None:
        if self._data is None:
            await self.load()
        self._data[key] = value

    async def save(self) -> None:
        """Writes the store atomically (temporary file, then replace)."""
        data = self._data or {}
        await asyncio.to_thread(self.path.parent.mkdir, parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2))
        await asyncio.to_thread(os.replace, tmp_path, self.path)


def serialize_jobs(jobs: Iterable[DownloadJob]) -> List[Dict[str, Any]]:
    """
    Converts the persistable subset of `jobs` to JSON-ready records.

    Jobs that are downloading, processing or completed are left out. Transfer
    telemetry is reset; failed jobs keep their error and status message.
    """
    return [
        _reset_transient(job).model_dump(mode='json')
        for job in jobs
        if job.status in PERSISTABLE_STATUSES
    ]


def _reset_transient(job: DownloadJob) -> DownloadJob:
    status = JobStatus.PENDING if job.status in ACTIVE_STATUSES else job.status
    failed = status is JobStatus.FAILED
    return job.evolve(
        status=status,
        status_message=job.status_message if failed else STATUS_QUEUED,
        progress=0.0,
        speed='',
        eta='',
        error=job.error if failed else None,
    )


def restore_jobs(records: Any) -> List[DownloadJob]:
    """
    Rebuilds jobs from persisted records, defensively.

    Records that fail validation or carry a status outside pending/paused/failed
    are dropped; any stray active status is collapsed to pending.
    """
    logger = logging.getLogger(__name__)
    if not isinstance(records, list):
        if records is not None:
            logger.warning(f"Ignoring persisted queue of unexpected type {type(records).__name__}")
        return []

    jobs = []
    for record in records:
        try:
            job = DownloadJob.model_validate(record)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable persisted job: {e.error_count()} validation error(s)")
            continue
        if job.status in ACTIVE_STATUSES:
            job = job.evolve(status=JobStatus.PENDING)
        if job.status not in PERSISTABLE_STATUSES:
            logger.debug(f"Discarding persisted job {job.job_id} with status '{job.status.value}'")
            continue
        jobs.append(_reset_transient(job))
    return jobs


class QueuePersistence:
    """Loads the queue from a durable store and writes it back with debouncing."""

    def __init__(self, store: DurableStore, debounce: float = PERSIST_DEBOUNCE,
                 key: str = PERSISTED_ITEMS_KEY):
        """
        Initializes the QueuePersistence.

        Args:
            store: Where the queue is kept.
            debounce: Seconds of quiet required before a scheduled write happens.
            key: Store key holding the serialized jobs.
        """
        self.store = store
        self.debounce = debounce
        self.key = key
        self.logger = logging.getLogger(__name__)
        self._pending_write: Optional[asyncio.Task] = None
        self._snapshot: Optional[Callable[[], Sequence[DownloadJob]]] = None

    async def load(self) -> List[DownloadJob]:
        """Returns the restorable jobs; a read failure is logged and yields none."""
        try:
            records = await self.store.get(self.key)
        except Exception as e:
            self.logger.error(f"Failed to load queue from storage: {e}")
            return []
        jobs = restore_jobs(records)
        if records:
            self.logger.info(f"Loaded {len(jobs)} queued item(s) from storage")
        return jobs

    def schedule_save(self, snapshot: Callable[[], Sequence[DownloadJob]]):
        """
        Schedules a write of `snapshot()` once `debounce` seconds pass without another call.

        The snapshot is taken when the write happens, so the latest state wins.
        """
        self._snapshot = snapshot
        if self._pending_write and not self._pending_write.done():
            self._pending_write.cancel()
        self._pending_write = asyncio.create_task(self._write_later(), name="queue-persist")

    async def _write_later(self):
        await asyncio.sleep(self.debounce)
        await self._write()

    async def flush(self):
        """Writes any scheduled snapshot immediately."""
        if self._pending_write and not self._pending_write.done():
            self._pending_write.cancel()
            self._pending_write = None
            await self._write()

    async def save_now(self, jobs: Sequence[DownloadJob]):
        self._snapshot = lambda: jobs
        if self._pending_write and not self._pending_write.done():
            self._pending_write.cancel()
        self._pending_write = None
        await self._write()

    async def _write(self):
        if self._snapshot is None:
            return
        try:
            serialized = serialize_jobs(self._snapshot())
            await self.store.set(self.key, serialized)
            await self.store.save()
            self.logger.debug(f"Saved {len(serialized)} queue item(s) to storage")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Failed to save queue: {e}")
