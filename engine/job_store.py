"""Per-job working directories and their retention."""

from __future__ import annotations

import logging
import os
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import uuid4

from engine.paths import ensure_dir, resolve_within
from media.segment import build_part_template, list_parts

logger = logging.getLogger(__name__)

JOB_STATUS_PENDING = "pending"
JOB_STATUS_DOWNLOADING = "downloading"
JOB_STATUS_PROBING = "probing"
JOB_STATUS_SEGMENTING = "segmenting"
JOB_STATUS_DONE = "done"
JOB_STATUS_FAILED = "failed"

TERMINAL_STATUSES = (JOB_STATUS_DONE, JOB_STATUS_FAILED)
ACTIVE_STATUSES = (
    JOB_STATUS_PENDING,
    JOB_STATUS_DOWNLOADING,
    JOB_STATUS_PROBING,
    JOB_STATUS_SEGMENTING,
)

SOURCE_BASENAME = "source"


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def new_job_id() -> str:
    # Millisecond timestamp first so ids sort by creation time.
    return f"{time.time_ns() // 1_000_000:013d}-{uuid4().hex[:8]}"


@dataclass
class Job:
    id: str
    directory: Path
    split_seconds: int
    prefix: str
    container_ext: str = "mp4"
    status: str = JOB_STATUS_PENDING
    outputs: list[str] = field(default_factory=list)
    error: str | None = None
    duration: float | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str | None = None

    @property
    def source_path(self) -> Path:
        return self.directory / f"{SOURCE_BASENAME}.{self.container_ext}"

    @property
    def part_template(self) -> str:
        return build_part_template(self.directory, self.prefix, self.container_ext)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def set_status(self, status: str, *, error: str | None = None) -> None:
        self.status = status
        if error is not None:
            self.error = error
        self.updated_at = utc_now()

    def to_dict(self) -> dict:
        return {
            "jobId": self.id,
            "status": self.status,
            "prefix": self.prefix,
            "splitSeconds": self.split_seconds,
            "parts": list(self.outputs),
            "error": self.error,
            "duration": self.duration,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class JobStore:
    """Allocate, list and reclaim job directories under one root."""

    def __init__(self, root, *, container_ext: str = "mp4") -> None:
        self.root = Path(root)
        self.container_ext = container_ext
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()
        ensure_dir(self.root)

    def create(self, split_seconds: int, prefix: str) -> Job:
        while True:
            job_id = new_job_id()
            directory = self.root / job_id
            try:
                os.mkdir(directory)
            except FileExistsError:
                continue
            break
        job = Job(
            id=job_id,
            directory=directory,
            split_seconds=split_seconds,
            prefix=prefix,
            container_ext=self.container_ext,
        )
        with self._lock:
            self._jobs[job_id] = job
        logger.info("Job created id=%s dir=%s", job_id, directory)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def job_dir(self, job_id: str) -> Path:
        """Return the directory for ``job_id``; raises ``ValueError`` outside the root."""
        if not job_id or job_id in (".", ".."):
            raise ValueError("job id is required")
        return resolve_within(job_id, self.root)

    def resolve_output(self, job_id: str, name: str) -> Path:
        """Return the path of a produced file, refusing anything outside the job dir."""
        directory = self.job_dir(job_id)
        if not name or os.path.basename(name) != name:
            raise ValueError("invalid file name")
        return resolve_within(name, directory)

    def list_outputs(self, job: Job) -> list[str]:
        return list_parts(job.part_template)

    def reclaim(self, max_age_hours: float, *, now: float | None = None) -> list[str]:
        """Delete job directories last modified more than ``max_age_hours`` ago.

        Best-effort: a directory that cannot be inspected or removed is logged
        and skipped. Directories of jobs still running in this process are
        never touched.
        """
        cutoff = (now if now is not None else time.time()) - max_age_hours * 3600
        removed: list[str] = []
        try:
            entries = list(os.scandir(self.root))
        except FileNotFoundError:
            return removed
        for entry in entries:
            try:
                if not entry.is_dir(follow_symlinks=False):
                    continue
                if entry.stat(follow_symlinks=False).st_mtime >= cutoff:
                    continue
            except OSError as exc:
                logger.warning("Reclaim skipped %s: %s", entry.path, exc)
                continue
            job = self.get(entry.name)
            if job is not None and job.status in ACTIVE_STATUSES:
                logger.info("Reclaim skipped active job id=%s", entry.name)
                continue
            try:
                shutil.rmtree(entry.path)
            except OSError as exc:
                logger.warning("Reclaim failed for %s: %s", entry.path, exc)
                continue
            with self._lock:
                self._jobs.pop(entry.name, None)
            removed.append(entry.name)
        if removed:
            logger.info("Reclaimed %d job directories older than %sh", len(removed), max_age_hours)
        return removed

    def disk_usage(self) -> dict:
        usage = shutil.disk_usage(self.root)
        jobs_bytes = 0
        for dirpath, _dirnames, filenames in os.walk(self.root):
            for name in filenames:
                try:
                    jobs_bytes += os.path.getsize(os.path.join(dirpath, name))
                except OSError:
                    pass
        return {
            "root": str(self.root),
            "total_bytes": usage.total,
            "free_bytes": usage.free,
            "jobs_bytes": jobs_bytes,
        }
