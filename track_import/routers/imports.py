"""Import endpoints: start batches, watch progress, retry, cancel and clear.

Batches run in the background; every endpoint returns immediately with a
snapshot, and ``GET /imports/events`` streams progress as NDJSON.
"""

from __future__ import annotations

import json
import logging
import re
import tempfile
import uuid
from collections.abc import AsyncIterator
from pathlib import Path, PurePosixPath

import magic
from fastapi import APIRouter, Depends, File, Request, Response, UploadFile
from fastapi.responses import StreamingResponse

from track_import.audio.classifier import is_supported_audio
from track_import.auth.admin import ApiError, require_admin_key
from track_import.errors import DuplicateImportError, JobStateError
from track_import.pipeline.jobs import CandidateOrigin, ImportCandidate, JobSnapshot
from track_import.pipeline.orchestrator import ImportOrchestrator
from track_import.pipeline.progress import (
    AuthExpiredNotice,
    BatchTally,
    JobSkipped,
    ProgressEvent,
)
from track_import.pipeline.selection import batch_message, can_retry, summarize
from track_import.remote.lister import RemoteFileLister
from track_import.schemas.errors import ErrorResponse
from track_import.schemas.imports import (
    BatchOut,
    JobErrorOut,
    JobOut,
    RejectedFileOut,
    RemoteImportRequest,
    RetryResponse,
    TallyOut,
)
from track_import.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["imports"])

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ALLOWED_MIME_TYPES: set[str] = {
    "audio/mpeg",
    "audio/mp4",
    "audio/x-m4a",
    "video/mp4",
    "audio/aac",
    "audio/x-hx-aac-adts",
    "audio/wav",
    "audio/x-wav",
    "audio/flac",
    "audio/x-flac",
    "audio/ogg",
    "audio/x-aiff",
    "audio/aiff",
    "audio/x-ms-wma",
    "video/x-ms-asf",
}

_UNSAFE_CHARS = re.compile(r"[^\w.\-]+")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _orchestrator(request: Request) -> ImportOrchestrator:
    return request.app.state.orchestrator


def _job_out(snap: JobSnapshot) -> JobOut:
    return JobOut(
        job_id=snap.job_id,
        source_ref=snap.source_ref,
        display_name=snap.display_name,
        status=snap.status,
        progress_percent=snap.progress_percent,
        attempt=snap.attempt,
        retryable=can_retry(snap),
        error=JobErrorOut(kind=snap.error.kind, message=snap.error.message) if snap.error else None,
        result_track_id=snap.result_track_id,
    )


def _batch_out(
    orchestrator: ImportOrchestrator,
    batch_id: uuid.UUID,
    rejected: list[RejectedFileOut] | None = None,
) -> BatchOut:
    try:
        snapshots = orchestrator.batch_snapshot(batch_id)
    except KeyError:
        raise ApiError(404, "NOT_FOUND", f"Unknown import batch {batch_id}") from None
    tally = orchestrator.tally(batch_id)
    running = orchestrator.is_running(batch_id)
    return BatchOut(
        batch_id=batch_id,
        running=running,
        jobs=[_job_out(s) for s in snapshots],
        tally=TallyOut(
            completed=tally.completed,
            failed=tally.failed,
            total=tally.total,
            skipped=tally.skipped,
        ),
        summary=summarize(snapshots).text,
        message=None
        if running
        else batch_message(tally.completed, tally.failed, tally.total - tally.skipped),
        rejected=rejected or [],
    )


def _event_payload(event: ProgressEvent) -> dict:
    if isinstance(event, JobSnapshot):
        return {
            "type": "job",
            "batch_id": str(event.batch_id) if event.batch_id else None,
            **_job_out(event).model_dump(mode="json"),
        }
    if isinstance(event, BatchTally):
        return {
            "type": "tally",
            "batch_id": str(event.batch_id),
            "completed": event.completed,
            "failed": event.failed,
            "total": event.total,
            "skipped": event.skipped,
        }
    if isinstance(event, JobSkipped):
        return {
            "type": "skipped",
            "batch_id": str(event.batch_id),
            "job_id": str(event.job_id),
            "source_ref": event.source_ref,
        }
    if isinstance(event, AuthExpiredNotice):
        return {"type": "auth_expired", "message": event.message}
    raise TypeError(f"Unknown progress event {event!r}")


def _start(
    orchestrator: ImportOrchestrator,
    candidates: list[ImportCandidate],
    rejected: list[RejectedFileOut],
) -> BatchOut:
    if not candidates:
        codes = {r.code for r in rejected}
        raise ApiError(
            400,
            codes.pop() if len(codes) == 1 else "NO_SUPPORTED_FILES",
            " ".join(r.message for r in rejected),
        )
    for r in rejected:
        logger.warning("Rejected %s: %s", r.name, r.message)
    batch_id = orchestrator.start_import(candidates)
    return _batch_out(orchestrator, batch_id, rejected)


def _reject(name: str, exc: ApiError) -> RejectedFileOut:
    return RejectedFileOut(name=name, code=exc.code, message=exc.message)


def _upload_dir() -> Path:
    path = Path(settings.upload_tmp_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _release_local_files(candidates: list[ImportCandidate]) -> None:
    upload_root = Path(settings.upload_tmp_dir).resolve()
    for candidate in candidates:
        if candidate.origin != CandidateOrigin.LOCAL:
            continue
        path = Path(candidate.source_ref).resolve()
        if upload_root in path.parents:
            path.unlink(missing_ok=True)


def _check_upload(name: str, content: bytes) -> str:
    """Validate one uploaded file and return its detected MIME type.

    Raises:
        ApiError: empty, too large, or not a supported audio format.
    """
    if not content:
        raise ApiError(400, "EMPTY_FILE", f"Empty file uploaded: {name}")
    if len(content) > settings.max_upload_bytes:
        raise ApiError(
            400,
            "FILE_TOO_LARGE",
            f"{name} is too large. Maximum upload size is "
            f"{settings.max_upload_bytes // (1024 * 1024)} MB.",
        )
    if not is_supported_audio(name):
        raise ApiError(400, "UNSUPPORTED_FORMAT", f"Unsupported audio file: {name}")

    try:
        detected_type = magic.from_buffer(content, mime=True)
    except Exception:
        logger.exception("Failed to detect MIME type for %s", name)
        raise ApiError(400, "UNSUPPORTED_FORMAT", "Unable to detect file format.") from None
    if detected_type not in ALLOWED_MIME_TYPES:
        raise ApiError(
            400,
            "UNSUPPORTED_FORMAT",
            f"Unsupported audio format for {name}: {detected_type}.",
        )
    return detected_type


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/imports/events")
async def stream_import_events(request: Request) -> StreamingResponse:
    """Stream progress events as newline-delimited JSON."""
    channel = _orchestrator(request).channel

    async def _events() -> AsyncIterator[bytes]:
        async for event in channel.subscribe():
            if await request.is_disconnected():
                break
            yield (json.dumps(_event_payload(event)) + "\n").encode()

    return StreamingResponse(_events(), media_type="application/x-ndjson")


@router.post(
    "/imports",
    response_model=BatchOut,
    status_code=202,
    responses={
        400: {"description": "No supported file in the request", "model": ErrorResponse},
        401: {"description": "Remote storage not linked", "model": ErrorResponse},
        403: {"description": "Missing or invalid admin API key", "model": ErrorResponse},
    },
    dependencies=[Depends(require_admin_key)],
)
async def import_remote_files(body: RemoteImportRequest, request: Request) -> BatchOut:
    """Import remote files (by ``path_lower``) in the given order.

    Unsupported files are reported in ``rejected``; the rest still import.
    """
    lister: RemoteFileLister = request.app.state.remote_lister
    if not request.app.state.remote_client.has_token:
        raise ApiError(401, "REMOTE_AUTH_EXPIRED", "Remote storage account is not linked.")

    candidates: list[ImportCandidate] = []
    rejected: list[RejectedFileOut] = []
    for path in body.paths:
        entry = lister.find_file(path.lower())
        name = entry.name if entry else PurePosixPath(path).name
        if not is_supported_audio(name):
            rejected.append(
                RejectedFileOut(
                    name=name, code="UNSUPPORTED_FORMAT", message=f"Unsupported audio file: {name}"
                )
            )
            continue
        candidates.append(
            ImportCandidate(
                source_ref=entry.path_lower if entry else path,
                display_name=name,
                size_bytes=entry.size if entry else 0,
                origin=CandidateOrigin.REMOTE,
            )
        )

    return _start(_orchestrator(request), candidates, rejected)


@router.post(
    "/imports/uploads",
    response_model=BatchOut,
    status_code=202,
    responses={
        400: {"description": "No acceptable file (format, size)", "model": ErrorResponse},
        403: {"description": "Missing or invalid admin API key", "model": ErrorResponse},
    },
    dependencies=[Depends(require_admin_key)],
)
async def import_uploaded_files(
    request: Request,
    files: list[UploadFile] = File(  # noqa: B008
        ...,
        description="Audio files (MP3, WAV, AIFF, M4A, AAC, FLAC, OGG, WMA).",
    ),
) -> BatchOut:
    """Spool uploaded files to disk and import the acceptable ones as one batch.

    Empty, oversized or non-audio files are reported in ``rejected``. The
    request fails with 400 only when no file is accepted.
    """
    upload_dir = _upload_dir()
    candidates: list[ImportCandidate] = []
    rejected: list[RejectedFileOut] = []

    try:
        for upload in files:
            name = PurePosixPath(upload.filename or "upload").name
            content = await upload.read()
            try:
                detected_type = _check_upload(name, content)
            except ApiError as exc:
                rejected.append(_reject(name, exc))
                continue

            safe_name = _UNSAFE_CHARS.sub("_", name)
            with tempfile.NamedTemporaryFile(
                delete=False, dir=upload_dir, prefix="upload_", suffix=f"_{safe_name}"
            ) as tmp:
                tmp.write(content)
            candidates.append(
                ImportCandidate(
                    source_ref=tmp.name,
                    display_name=name,
                    size_bytes=len(content),
                    origin=CandidateOrigin.LOCAL,
                    content_type=detected_type,
                )
            )
    except Exception:
        _release_local_files(candidates)
        raise

    return _start(_orchestrator(request), candidates, rejected)


@router.get("/imports/{batch_id}", response_model=BatchOut)
async def get_import_batch(batch_id: uuid.UUID, request: Request) -> BatchOut:
    return _batch_out(_orchestrator(request), batch_id)


@router.post(
    "/imports/jobs/{job_id}/retry",
    response_model=RetryResponse,
    status_code=202,
    responses={
        404: {"description": "Unknown job", "model": ErrorResponse},
        409: {"description": "Job not failed", "model": ErrorResponse},
    },
    dependencies=[Depends(require_admin_key)],
)
async def retry_import_job(job_id: uuid.UUID, request: Request) -> RetryResponse:
    orchestrator = _orchestrator(request)
    try:
        new_job_id = orchestrator.start_retry(job_id)
    except KeyError:
        raise ApiError(404, "NOT_FOUND", f"Unknown import job {job_id}") from None
    except (JobStateError, DuplicateImportError) as exc:
        raise ApiError(409, "CONFLICT", str(exc)) from exc

    return RetryResponse(batch_id=orchestrator.batch_of(new_job_id), job_id=new_job_id)


@router.post(
    "/imports/{batch_id}/cancel",
    response_model=BatchOut,
    status_code=202,
    dependencies=[Depends(require_admin_key)],
)
async def cancel_import_batch(batch_id: uuid.UUID, request: Request) -> BatchOut:
    """Skip jobs that have not started yet; running jobs finish."""
    orchestrator = _orchestrator(request)
    try:
        orchestrator.cancel_batch(batch_id)
    except KeyError:
        raise ApiError(404, "NOT_FOUND", f"Unknown import batch {batch_id}") from None
    return _batch_out(orchestrator, batch_id)


@router.delete(
    "/imports/{batch_id}",
    status_code=204,
    responses={
        404: {"description": "Unknown batch", "model": ErrorResponse},
        409: {"description": "Batch running", "model": ErrorResponse},
    },
    dependencies=[Depends(require_admin_key)],
)
async def clear_import_batch(batch_id: uuid.UUID, request: Request) -> Response:
    """Forget a finished batch and delete its spooled uploads."""
    try:
        released = _orchestrator(request).clear_batch(batch_id)
    except KeyError:
        raise ApiError(404, "NOT_FOUND", f"Unknown import batch {batch_id}") from None
    except JobStateError as exc:
        raise ApiError(409, "CONFLICT", str(exc)) from exc

    _release_local_files(released)
    return Response(status_code=204)
