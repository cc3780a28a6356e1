from __future__ import annotations

import uuid

from pydantic import BaseModel, Field

from track_import.errors import ImportErrorKind
from track_import.pipeline.jobs import JobStatus


class RemoteImportRequest(BaseModel):
    """Remote paths (``path_lower`` values from a listing) in selection order."""

    paths: list[str] = Field(min_length=1)


class JobErrorOut(BaseModel):
    kind: ImportErrorKind
    message: str


class JobOut(BaseModel):
    job_id: uuid.UUID
    source_ref: str
    display_name: str
    status: JobStatus
    progress_percent: int
    attempt: int
    retryable: bool
    error: JobErrorOut | None = None
    result_track_id: uuid.UUID | None = None


class TallyOut(BaseModel):
    completed: int
    failed: int
    total: int
    skipped: int = 0


class RejectedFileOut(BaseModel):
    """A file turned away before the batch started; the rest are still imported."""

    name: str
    code: str
    message: str


class BatchOut(BaseModel):
    batch_id: uuid.UUID
    running: bool
    jobs: list[JobOut]
    tally: TallyOut
    summary: str
    message: str | None = None  # end-of-batch notification, once nothing is running
    rejected: list[RejectedFileOut] = Field(default_factory=list)


class RetryResponse(BaseModel):
    batch_id: uuid.UUID
    job_id: uuid.UUID
