"""Import orchestrator: drives candidates through the import state machine.

Per job, strictly forward::

    pending -> probing (source + tags) -> converting | uploading (gateway)
            -> probing (duration of the stored object) -> committing -> succeeded
    any step --error--> failed

Only the catalog commit is retried automatically (bounded, exponential
backoff). Every other failure ends the job immediately; the caller retries
the whole job explicitly, which creates a fresh job for the same candidate.

Batches run on a single worker by default, so jobs start and finish in
selection order and at most one gateway call is in flight. A failed job
never stops its batch.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from track_import.audio.classifier import needs_transcode
from track_import.audio.metadata import parse_filename
from track_import.audio.prober import MetadataProber, ProbedTags, format_duration
from track_import.catalog import CatalogRecord, CatalogWriter
from track_import.errors import (
    AuthExpiredError,
    DuplicateImportError,
    ImportValidationError,
    JobStateError,
    PipelineError,
    StepTimeoutError,
    TransientNetworkError,
)
from track_import.gateway.client import (
    AudioSource,
    GatewayResult,
    StorageKind,
    TranscodeStoreGateway,
    quality_params,
)
from track_import.pipeline.jobs import (
    CandidateOrigin,
    ImportCandidate,
    ImportJob,
    JobError,
    JobSnapshot,
    JobStatus,
    JobTable,
)
from track_import.pipeline.progress import (
    AuthNotifier,
    BatchTally,
    JobSkipped,
    ProgressChannel,
)
from track_import.remote.client import RemoteStorageClient

logger = logging.getLogger(__name__)

# Progress checkpoints (percent)
PROGRESS_STARTED = 10
PROGRESS_TAGS_READ = 20
PROGRESS_GATEWAY = 35
PROGRESS_STORED = 65
PROGRESS_COMMITTING = 85

UNKNOWN_TITLE = "Unknown Track"
UNKNOWN_ARTIST = "Unknown Artist"


@dataclass(frozen=True)
class ImportConfig:
    """Explicit pipeline configuration, built once and passed in."""

    quality_preference: str = "mp3-320"
    commit_attempts: int = 3
    commit_backoff_base: float = 0.5
    commit_timeout_seconds: float = 30.0
    max_concurrent_jobs: int = 1
    max_concurrent_gateway_calls: int = 1
    auth_notice_interval_seconds: float = 5.0
    is_public: bool = False

    def __post_init__(self) -> None:
        quality_params(self.quality_preference)
        if self.commit_attempts < 1:
            raise ValueError("commit_attempts must be at least 1")
        if self.max_concurrent_jobs < 1 or self.max_concurrent_gateway_calls < 1:
            raise ValueError("concurrency limits must be at least 1")

    @classmethod
    def from_settings(cls, settings: Any) -> ImportConfig:
        return cls(
            quality_preference=settings.quality_preference,
            commit_attempts=settings.commit_attempts,
            commit_backoff_base=settings.commit_backoff_base_seconds,
            commit_timeout_seconds=settings.commit_timeout_seconds,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            max_concurrent_gateway_calls=settings.max_concurrent_gateway_calls,
            auth_notice_interval_seconds=settings.auth_notice_interval_seconds,
            is_public=settings.imports_public_by_default,
        )


class CancellationToken:
    """Once cancelled, jobs of the batch that have not started are skipped."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class BatchReport:
    batch_id: uuid.UUID
    total: int
    completed: int
    failed: int
    skipped: int
    failed_jobs: tuple[JobSnapshot, ...] = ()


@dataclass
class _Batch:
    id: uuid.UUID
    job_ids: list[uuid.UUID]
    cancel: CancellationToken
    total: int
    skipped: int = 0
    active_runs: int = 0


@dataclass(frozen=True)
class _ResolvedSource:
    audio: AudioSource
    location: str  # what the prober reads; a temporary link for remote files
    is_temporary: bool = False


@dataclass
class _Counts:
    completed: int = 0
    failed: int = 0
    failed_jobs: list[JobSnapshot] = field(default_factory=list)


def resolve_title_artist(
    tags: ProbedTags, result: GatewayResult | None, display_name: str
) -> tuple[str, str]:
    """Pick catalog title/artist: embedded tags, then gateway filename, then our filename."""
    from_name = parse_filename(display_name)
    gateway_title = None
    if result is not None and result.original_filename:
        gateway_title = PurePosixPath(result.original_filename).stem.strip() or None

    title = (tags.title or gateway_title or from_name.title or "").strip() or UNKNOWN_TITLE
    artist = (tags.artist or from_name.artist or "").strip() or UNKNOWN_ARTIST
    return title, artist


class ImportOrchestrator:
    """Owns the job table and runs import batches."""

    def __init__(
        self,
        config: ImportConfig,
        *,
        remote: RemoteStorageClient | None,
        prober: MetadataProber,
        gateway: TranscodeStoreGateway,
        catalog: CatalogWriter,
        channel: ProgressChannel | None = None,
    ) -> None:
        self.config = config
        self._remote = remote
        self._prober = prober
        self._gateway = gateway
        self._catalog = catalog
        self.channel = channel or ProgressChannel()
        self._auth_notifier = AuthNotifier(self.channel, config.auth_notice_interval_seconds)
        self._jobs = JobTable()
        self._batches: dict[uuid.UUID, _Batch] = {}
        self._gateway_slots = asyncio.Semaphore(config.max_concurrent_gateway_calls)
        self._tasks: set[asyncio.Task[BatchReport]] = set()

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    async def import_selected(
        self,
        candidates: list[ImportCandidate],
        cancel: CancellationToken | None = None,
    ) -> BatchReport:
        """Import ``candidates`` in selection order and return the batch report."""
        batch = self._prepare_batch(candidates, cancel)
        return await self._run_batch(batch)

    def start_import(
        self,
        candidates: list[ImportCandidate],
        cancel: CancellationToken | None = None,
    ) -> uuid.UUID:
        """Create the batch now and run it in the background. Returns the batch id.

        Progress is observed through ``channel`` and ``batch_snapshot``.
        """
        batch = self._prepare_batch(candidates, cancel)
        batch.active_runs += 1
        self._spawn(
            self._run_claimed(batch, self._batch_jobs(batch)), name=f"import-batch-{batch.id}"
        )
        return batch.id

    async def retry(self, job_id: uuid.UUID) -> BatchReport:
        """Re-run a failed job from ``pending`` as a fresh job."""
        batch, job = self._prepare_retry(job_id)
        return await self._run_jobs(batch, [job], honor_cancel=False)

    def start_retry(self, job_id: uuid.UUID) -> uuid.UUID:
        """Background variant of ``retry``. Returns the new job id."""
        batch, job = self._prepare_retry(job_id)
        batch.active_runs += 1
        self._spawn(
            self._run_claimed(batch, [job], honor_cancel=False), name=f"import-retry-{job.id}"
        )
        return job.id

    def cancel_batch(self, batch_id: uuid.UUID) -> None:
        self._require_batch(batch_id).cancel.cancel()

    def clear_batch(self, batch_id: uuid.UUID) -> list[ImportCandidate]:
        """Forget a finished batch and its jobs. Returns the released candidates.

        Raises:
            KeyError: unknown batch.
            JobStateError: the batch still has a running job.
        """
        batch = self._require_batch(batch_id)
        if batch.active_runs:
            raise JobStateError(f"Batch {batch_id} is still running")
        candidates = []
        for job_id in batch.job_ids:
            job = self._jobs.get(job_id)
            if job is not None:
                candidates.append(job.candidate)
                self._jobs.discard(job_id)
        del self._batches[batch_id]
        return candidates

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def snapshot(self, job_id: uuid.UUID) -> JobSnapshot | None:
        job = self._jobs.get(job_id)
        return job.snapshot() if job is not None else None

    def batch_of(self, job_id: uuid.UUID) -> uuid.UUID:
        """Batch id of a known job. Raises ``KeyError`` for unknown or unbatched jobs."""
        job = self._jobs.get(job_id)
        if job is None or job.batch_id is None:
            raise KeyError(job_id)
        return job.batch_id

    def batch_snapshot(self, batch_id: uuid.UUID) -> list[JobSnapshot]:
        batch = self._require_batch(batch_id)
        return [job.snapshot() for job in self._batch_jobs(batch)]

    def tally(self, batch_id: uuid.UUID) -> BatchTally:
        return self._tally(self._require_batch(batch_id))

    def is_running(self, batch_id: uuid.UUID) -> bool:
        return self._require_batch(batch_id).active_runs > 0

    # ------------------------------------------------------------------
    # Batch handling
    # ------------------------------------------------------------------

    def _prepare_batch(
        self, candidates: list[ImportCandidate], cancel: CancellationToken | None
    ) -> _Batch:
        batch_id = uuid.uuid4()
        jobs: list[ImportJob] = []
        seen: set[str] = set()
        for candidate in candidates:
            if candidate.source_ref in seen:
                continue
            seen.add(candidate.source_ref)
            if self._jobs.has_active(candidate.source_ref):
                logger.warning(
                    "Skipping %s: an import for it is already in progress",
                    candidate.display_name,
                )
                continue
            job = ImportJob(candidate=candidate, batch_id=batch_id)
            self._jobs.add(job)
            jobs.append(job)

        batch = _Batch(
            id=batch_id,
            job_ids=[job.id for job in jobs],
            cancel=cancel or CancellationToken(),
            total=len(jobs),
        )
        self._batches[batch_id] = batch
        for job in jobs:
            self._publish(job)
        logger.info("Prepared import batch %s with %d file(s)", batch_id, len(jobs))
        return batch

    def _prepare_retry(self, job_id: uuid.UUID) -> tuple[_Batch, ImportJob]:
        old = self._jobs.get(job_id)
        if old is None:
            raise KeyError(job_id)
        if old.status != JobStatus.FAILED:
            raise JobStateError(f"Only failed jobs can be retried (job is {old.status})")
        if old.batch_id is None or old.batch_id not in self._batches:
            raise KeyError(job_id)
        batch = self._batches[old.batch_id]

        if self._jobs.has_active(old.candidate.source_ref):
            raise DuplicateImportError(old.candidate.source_ref)

        job = ImportJob(candidate=old.candidate, batch_id=batch.id, attempt=old.attempt + 1)
        self._jobs.discard(old.id)
        self._jobs.add(job)
        batch.job_ids[batch.job_ids.index(old.id)] = job.id
        self._publish(job)
        logger.info("Retrying %s (attempt %d)", job.candidate.display_name, job.attempt)
        return batch, job

    async def _run_batch(self, batch: _Batch) -> BatchReport:
        return await self._run_jobs(batch, list(self._batch_jobs(batch)))

    async def _run_claimed(
        self, batch: _Batch, jobs: list[ImportJob], *, honor_cancel: bool = True
    ) -> BatchReport:
        # The caller already counted this run so the batch reports running at once.
        try:
            return await self._run_jobs(batch, jobs, honor_cancel=honor_cancel)
        finally:
            batch.active_runs -= 1

    async def _run_jobs(
        self, batch: _Batch, jobs: list[ImportJob], *, honor_cancel: bool = True
    ) -> BatchReport:
        """Run ``jobs`` on the worker pool.

        A cancelled batch skips its unstarted jobs only while the batch itself
        runs. Explicit retries ignore the batch token.
        """
        queue: asyncio.Queue[ImportJob] = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)

        async def worker() -> None:
            while True:
                try:
                    job = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if honor_cancel and batch.cancel.cancelled:
                    self._skip(batch, job)
                    continue
                await self._run_job(job)
                self.channel.publish(self._tally(batch))

        batch.active_runs += 1
        try:
            workers = max(1, min(self.config.max_concurrent_jobs, len(jobs)))
            await asyncio.gather(*(worker() for _ in range(workers)))
        finally:
            batch.active_runs -= 1

        report = self._report(batch)
        logger.info(
            "Import batch %s: %d succeeded, %d failed, %d skipped (of %d)",
            batch.id,
            report.completed,
            report.failed,
            report.skipped,
            report.total,
        )
        return report

    def _skip(self, batch: _Batch, job: ImportJob) -> None:
        logger.info("Batch %s cancelled, skipping %s", batch.id, job.candidate.display_name)
        self._jobs.discard(job.id)
        batch.job_ids.remove(job.id)
        batch.skipped += 1
        self.channel.publish(
            JobSkipped(job_id=job.id, batch_id=batch.id, source_ref=job.candidate.source_ref)
        )
        self.channel.publish(self._tally(batch))

    # ------------------------------------------------------------------
    # Single job
    # ------------------------------------------------------------------

    async def _run_job(self, job: ImportJob) -> None:
        name = job.candidate.display_name
        transcode = needs_transcode(name)
        preference = self.config.quality_preference

        try:
            self._advance(job, JobStatus.PROBING, PROGRESS_STARTED)
            source = await self._resolve_source(job.candidate)
            tags = await self._prober.probe_tags(source.location, name)
            self._advance(job, JobStatus.PROBING, PROGRESS_TAGS_READ)

            async with self._gateway_slots:
                if transcode:
                    self._advance(job, JobStatus.CONVERTING, PROGRESS_GATEWAY)
                    result = await self._gateway.transcode_and_store(
                        source.audio, name, preference
                    )
                else:
                    self._advance(job, JobStatus.UPLOADING, PROGRESS_GATEWAY)
                    result = await self._gateway.store_as_is(source.audio, name, preference)
            _check_durable_reference(result, source)

            self._advance(job, JobStatus.PROBING, PROGRESS_STORED)
            duration = await self._prober.probe_duration(result.playback_url)

            self._advance(job, JobStatus.COMMITTING, PROGRESS_COMMITTING)
            title, artist = resolve_title_artist(tags, result, name)
            record = CatalogRecord.from_descriptor(
                result.descriptor,
                title=title,
                artist=artist,
                duration=format_duration(duration),
                is_public=self.config.is_public,
            )
            track_id = await self._commit_with_retry(record, name)

            job.succeed(track_id)
            self._publish(job)
            logger.info("Imported %s -> track %s", name, track_id)

        except AuthExpiredError as exc:
            self._auth_notifier.notify()
            self._fail(job, exc)
        except PipelineError as exc:
            self._fail(job, exc)
        except asyncio.CancelledError:
            self._fail(job, PipelineError("Import interrupted"))
            raise
        except Exception as exc:
            logger.exception("Unexpected error importing %s", name)
            self._fail(job, exc)

    async def _resolve_source(self, candidate: ImportCandidate) -> _ResolvedSource:
        if candidate.origin == CandidateOrigin.LOCAL:
            path = Path(candidate.source_ref)
            if not path.is_file():
                raise ImportValidationError(f"Local file missing: {candidate.display_name}")
            return _ResolvedSource(
                audio=AudioSource(path=path, content_type=candidate.content_type),
                location=str(path),
            )

        if self._remote is None:
            raise AuthExpiredError("No remote storage account linked")
        link = await self._remote.get_temporary_link(candidate.source_ref)
        return _ResolvedSource(audio=AudioSource(url=link), location=link, is_temporary=True)

    async def _commit_with_retry(self, record: CatalogRecord, name: str) -> uuid.UUID:
        attempts = self.config.commit_attempts
        last_error: PipelineError | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._catalog.insert(record), timeout=self.config.commit_timeout_seconds
                )
            except TimeoutError:
                last_error = StepTimeoutError(
                    f"Catalog insert exceeded {self.config.commit_timeout_seconds:.0f}s"
                )
            except (TransientNetworkError, StepTimeoutError) as exc:
                last_error = exc
            except PipelineError:
                raise
            except Exception as exc:
                last_error = TransientNetworkError(f"Catalog insert failed: {exc}")

            logger.warning(
                "Track creation attempt %d/%d failed for %s: %s",
                attempt,
                attempts,
                name,
                last_error.message,
            )
            if attempt < attempts:
                await asyncio.sleep(self.config.commit_backoff_base * 2 ** (attempt - 1))

        logger.error("All %d track creation attempts failed for %s", attempts, name)
        if last_error is None:
            raise ValueError("commit_attempts must be at least 1")
        raise last_error

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _advance(self, job: ImportJob, status: JobStatus, progress: int) -> None:
        job.advance(status, progress)
        self._publish(job)

    def _fail(self, job: ImportJob, exc: BaseException) -> None:
        job.fail(exc)
        self._publish(job)
        error = JobError.from_exception(exc)
        logger.warning(
            "Import of %s failed [%s]: %s",
            job.candidate.display_name,
            error.kind,
            error.message,
        )

    def _publish(self, job: ImportJob) -> None:
        self.channel.publish(job.snapshot())

    def _spawn(self, coro: Any, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _require_batch(self, batch_id: uuid.UUID) -> _Batch:
        return self._batches[batch_id]

    def _batch_jobs(self, batch: _Batch) -> list[ImportJob]:
        jobs = (self._jobs.get(job_id) for job_id in batch.job_ids)
        return [job for job in jobs if job is not None]

    def _counts(self, batch: _Batch) -> _Counts:
        counts = _Counts()
        for job in self._batch_jobs(batch):
            if job.status == JobStatus.SUCCEEDED:
                counts.completed += 1
            elif job.status == JobStatus.FAILED:
                counts.failed += 1
                counts.failed_jobs.append(job.snapshot())
        return counts

    def _tally(self, batch: _Batch) -> BatchTally:
        counts = self._counts(batch)
        return BatchTally(
            batch_id=batch.id,
            completed=counts.completed,
            failed=counts.failed,
            total=batch.total,
            skipped=batch.skipped,
        )

    def _report(self, batch: _Batch) -> BatchReport:
        counts = self._counts(batch)
        return BatchReport(
            batch_id=batch.id,
            total=batch.total,
            completed=counts.completed,
            failed=counts.failed,
            skipped=batch.skipped,
            failed_jobs=tuple(counts.failed_jobs),
        )


def _check_durable_reference(result: GatewayResult, source: _ResolvedSource) -> None:
    """Reject descriptors that point at a short-lived URL instead of durable storage."""
    ref = result.descriptor.ref
    if source.is_temporary and ref == source.location:
        raise ImportValidationError("Gateway returned the temporary source link as storage ref")
    if result.descriptor.kind == StorageKind.PRIVATE_KEY and ref == result.playback_url:
        raise ImportValidationError("Gateway returned the playback URL as storage key")
