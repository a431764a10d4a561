"""
In-memory job store. No database: all state lives in one dict guarded
by a lock. A server restart will clear all jobs.

JobStore.update is the only mutation path after creation: the worker
writes progress through it while request handlers read snapshots.
"""

import copy
import math
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from errors import ValidationError

QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"

STATUSES = (QUEUED, PROCESSING, COMPLETED, ERROR)
TERMINAL = (COMPLETED, ERROR)


@dataclass(frozen=True)
class Segment:
    """A [start, end) time range of the source, in seconds."""

    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class RenderOptions:
    title: Optional[str] = None
    audio_url: Optional[str] = None


@dataclass
class RenderJob:
    id: str
    source_url: str
    segments: List[Segment]
    options: RenderOptions = field(default_factory=RenderOptions)
    status: str = QUEUED
    progress: int = 0
    final_url: Optional[str] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL


def validate_segments(segments: Sequence[Segment]) -> List[Segment]:
    """Return *segments* as a list, raising ValidationError if any is malformed."""
    if not segments:
        raise ValidationError("At least one segment is required")

    checked: List[Segment] = []
    for index, seg in enumerate(segments):
        try:
            start, end = float(seg.start), float(seg.end)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Segment {index}: start and end must be numbers") from exc
        if not (math.isfinite(start) and math.isfinite(end)):
            raise ValidationError(f"Segment {index}: start and end must be finite numbers")
        if start < 0:
            raise ValidationError(f"Segment {index}: start must be >= 0 (got {start})")
        if end <= start:
            raise ValidationError(
                f"Segment {index}: end ({end}) must be greater than start ({start})"
            )
        checked.append(Segment(start, end))
    return checked


class JobStore:
    """Thread-safe in-memory registry of RenderJob records, keyed by id."""

    def __init__(self) -> None:
        self._jobs: Dict[str, RenderJob] = {}
        self._lock = threading.Lock()

    def create(
        self,
        source_url: str,
        segments: Sequence[Segment],
        options: Optional[RenderOptions] = None,
    ) -> str:
        """Validate the request, insert a queued job and return its ID."""
        source_url = (source_url or "").strip()
        if not source_url:
            raise ValidationError("sourceUrl is required")
        checked = validate_segments(segments)

        job_id = str(uuid.uuid4())
        job = RenderJob(
            id=job_id,
            source_url=source_url,
            segments=checked,
            options=options or RenderOptions(),
        )
        with self._lock:
            self._jobs[job_id] = job
        return job_id

    def get(self, job_id: str) -> Optional[RenderJob]:
        """Return a snapshot of the job, or None if not found."""
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.copy(job) if job is not None else None

    def update(
        self,
        job_id: str,
        status: Optional[str] = None,
        progress: Optional[int] = None,
        final_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Apply the non-None fields to an existing job in one step.

        Unknown ids are ignored (the job may have been evicted). Terminal
        jobs are never modified, and progress never moves backwards.
        """
        if status is not None and status not in STATUSES:
            raise ValueError(f"Unknown job status: {status!r}")

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return

            now = time.time()
            if progress is not None:
                job.progress = max(job.progress, min(100, max(0, int(progress))))
            if final_url is not None:
                job.final_url = final_url
            if error is not None:
                job.error = error
            if status is not None:
                job.status = status
                if status == PROCESSING and job.started_at is None:
                    job.started_at = now
                if status in TERMINAL:
                    job.completed_at = now
            job.updated_at = now

    def list_queued(self) -> List[str]:
        """IDs of queued jobs, oldest first."""
        with self._lock:
            queued = [job for job in self._jobs.values() if job.status == QUEUED]
        queued.sort(key=lambda job: job.created_at)
        return [job.id for job in queued]

    def ids_with_status(self, status: str) -> List[str]:
        with self._lock:
            return [job_id for job_id, job in self._jobs.items() if job.status == status]

    def evict_older_than(self, max_age: float) -> int:
        """Drop non-processing jobs created more than *max_age* seconds ago."""
        cutoff = time.time() - max_age
        with self._lock:
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status != PROCESSING and job.created_at < cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            counts = {status: 0 for status in STATUSES}
            for job in self._jobs.values():
                counts[job.status] += 1
            counts["total"] = len(self._jobs)
        return counts
