from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
import weakref
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Callable

from talkscribe.types import Job

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"

_JOB_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class JobStateError(RuntimeError):
    """Raised when a persisted job record exists but cannot be used."""


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def is_valid_job_id(job_id: str) -> bool:
    return bool(_JOB_ID_RE.match(job_id))


class JobStore:
    """File-backed job records, one ``metadata.json`` per job directory.

    Every write goes through :meth:`update`, which holds a per-job lock
    around read, mutate and an atomic replace of the file. Two writers of
    the same job (pipeline monitor and thumbnail task) are serialized and
    neither can overwrite the other's fields with a stale copy.
    """

    def __init__(self, jobs_dir: Path) -> None:
        self.jobs_dir = jobs_dir
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        self._locks_guard = Lock()
        # Entries vanish once no caller holds the lock.
        self._locks: weakref.WeakValueDictionary[str, Lock] = weakref.WeakValueDictionary()

    def job_dir(self, job_id: str) -> Path:
        if not is_valid_job_id(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return self.jobs_dir / job_id

    def metadata_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / METADATA_FILENAME

    def _lock_for(self, job_id: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = Lock()
                self._locks[job_id] = lock
            return lock

    def create(self, *, media: str, presentation: str, job_id: str | None = None) -> Job:
        job_id = job_id or new_job_id()
        job_dir = self.job_dir(job_id)
        with self._lock_for(job_id):
            if (job_dir / METADATA_FILENAME).exists():
                raise JobStateError(f"Job {job_id} already exists")
            job_dir.mkdir(parents=True, exist_ok=True)
            job = Job(
                job_id=job_id,
                media=media,
                presentation=presentation,
                status="queued",
                created_at=utc_now(),
            )
            self._write(job)
        logger.info("Created job %s", job_id)
        return job

    def get(self, job_id: str) -> Job | None:
        """Return the job, ``None`` when absent; raise JobStateError when corrupt."""
        if not is_valid_job_id(job_id):
            return None
        path = self.metadata_path(job_id)
        if not path.exists():
            return None
        return self._read(path)

    def update(self, job_id: str, mutate: Callable[[Job], None]) -> Job:
        with self._lock_for(job_id):
            path = self.metadata_path(job_id)
            if not path.exists():
                raise JobStateError(f"Job {job_id} not found")
            current = self._read(path)
            updated = replace(current, transcribed_chunk_names=list(current.transcribed_chunk_names))
            mutate(updated)
            merged = self._merge(current, updated)
            self._write(merged)
            return merged

    def list_ids(self) -> list[str]:
        if not self.jobs_dir.exists():
            return []
        return sorted(
            entry.name
            for entry in self.jobs_dir.iterdir()
            if entry.is_dir() and (entry / METADATA_FILENAME).exists()
        )

    @staticmethod
    def _merge(current: Job, updated: Job) -> Job:
        if current.is_terminal:
            # Finished jobs only accept thumbnail results.
            return replace(
                current,
                transcribed_chunk_names=list(current.transcribed_chunk_names),
                thumbnail_exists=updated.thumbnail_exists,
                thumbnail_created_at=updated.thumbnail_created_at,
                thumbnail_error=updated.thumbnail_error,
            )
        updated.progress = max(0, min(100, max(current.progress, updated.progress)))
        if current.total_chunks is not None:
            updated.total_chunks = current.total_chunks
        updated.transcribed_chunk_names = list(
            dict.fromkeys([*current.transcribed_chunk_names, *updated.transcribed_chunk_names])
        )
        return updated

    @staticmethod
    def _read(path: Path) -> Job:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise JobStateError(f"Unreadable job state at {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise JobStateError(f"Job state at {path} is not an object")
        try:
            return Job.from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise JobStateError(f"Invalid job state at {path}: {exc}") from exc

    def _write(self, job: Job) -> None:
        path = self.metadata_path(job.job_id)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_text(json.dumps(job.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp_path, path)
