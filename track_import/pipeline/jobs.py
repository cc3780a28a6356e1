"""Import candidates, jobs and the in-memory job table.

An ``ImportJob`` is mutated only by the orchestrator. Everything handed to
readers (HTTP adapter, progress subscribers) is a frozen ``JobSnapshot``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath

from track_import.errors import DuplicateImportError, ImportErrorKind, PipelineError


class CandidateOrigin(StrEnum):
    REMOTE = "remote"
    LOCAL = "local"


class JobStatus(StrEnum):
    PENDING = "pending"
    PROBING = "probing"
    CONVERTING = "converting"
    UPLOADING = "uploading"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


# Allowed forward transitions. PROBING is entered twice (tags, then duration).
_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROBING}),
    JobStatus.PROBING: frozenset(
        {JobStatus.PROBING, JobStatus.CONVERTING, JobStatus.UPLOADING, JobStatus.COMMITTING}
    ),
    JobStatus.CONVERTING: frozenset({JobStatus.PROBING}),
    JobStatus.UPLOADING: frozenset({JobStatus.PROBING}),
    JobStatus.COMMITTING: frozenset({JobStatus.SUCCEEDED}),
}


@dataclass(frozen=True)
class ImportCandidate:
    """One file awaiting import. ``source_ref`` is a remote path or a local file path."""

    source_ref: str
    display_name: str = ""
    size_bytes: int = 0
    origin: CandidateOrigin = CandidateOrigin.REMOTE
    content_type: str | None = None

    def __post_init__(self) -> None:
        if not self.display_name:
            object.__setattr__(self, "display_name", PurePosixPath(self.source_ref).name)


@dataclass(frozen=True)
class JobError:
    kind: ImportErrorKind
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> JobError:
        if isinstance(exc, PipelineError):
            return cls(kind=exc.kind, message=exc.message)
        return cls(kind=ImportErrorKind.OTHER, message=str(exc) or type(exc).__name__)


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of a job at one point in time."""

    job_id: uuid.UUID
    batch_id: uuid.UUID | None
    source_ref: str
    display_name: str
    status: JobStatus
    progress_percent: int
    attempt: int
    error: JobError | None = None
    result_track_id: uuid.UUID | None = None


@dataclass
class ImportJob:
    candidate: ImportCandidate
    batch_id: uuid.UUID | None = None
    attempt: int = 1
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: JobStatus = JobStatus.PENDING
    progress_percent: int = 0
    error: JobError | None = None
    result_track_id: uuid.UUID | None = None

    def advance(self, status: JobStatus, progress: int) -> None:
        """Move forward to ``status``. Progress never decreases."""
        if status not in _TRANSITIONS.get(self.status, frozenset()):
            raise ValueError(f"Illegal transition {self.status} -> {status}")
        self.status = status
        self.progress_percent = max(self.progress_percent, min(progress, 100))

    def succeed(self, track_id: uuid.UUID) -> None:
        self.advance(JobStatus.SUCCEEDED, 100)
        self.result_track_id = track_id

    def fail(self, exc: BaseException) -> None:
        if self.status.is_terminal:
            raise ValueError(f"Job {self.id} already {self.status}")
        self.status = JobStatus.FAILED
        self.error = JobError.from_exception(exc)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.id,
            batch_id=self.batch_id,
            source_ref=self.candidate.source_ref,
            display_name=self.candidate.display_name,
            status=self.status,
            progress_percent=self.progress_percent,
            attempt=self.attempt,
            error=self.error,
            result_track_id=self.result_track_id,
        )


class JobTable:
    """Jobs by id, plus the active (non-terminal) job per source."""

    def __init__(self) -> None:
        self._jobs: dict[uuid.UUID, ImportJob] = {}
        self._active: dict[str, uuid.UUID] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def has_active(self, source_ref: str) -> bool:
        job_id = self._active.get(source_ref)
        if job_id is None:
            return False
        job = self._jobs.get(job_id)
        return job is not None and not job.status.is_terminal

    def add(self, job: ImportJob) -> None:
        """Register a new pending job.

        Raises:
            DuplicateImportError: the source already has a non-terminal job.
        """
        if self.has_active(job.candidate.source_ref):
            raise DuplicateImportError(job.candidate.source_ref)
        self._jobs[job.id] = job
        self._active[job.candidate.source_ref] = job.id

    def get(self, job_id: uuid.UUID) -> ImportJob | None:
        return self._jobs.get(job_id)

    def discard(self, job_id: uuid.UUID) -> None:
        job = self._jobs.pop(job_id, None)
        if job is not None and self._active.get(job.candidate.source_ref) == job_id:
            del self._active[job.candidate.source_ref]
