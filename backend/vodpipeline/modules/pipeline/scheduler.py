"""Pipeline scheduler.

Per video: ``uploaded -> transcoding -> ready``, ``transcoding -> failed`` once
the retry budget is spent, and ``failed -> transcoding`` on manual resubmission.
Claims are leases: a worker that dies mid-job stops renewing its lease and the
video is returned to the queue by a later poll.
"""

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vodpipeline.core.config import Settings
from vodpipeline.core.database import create_engine, create_session_maker, utcnow
from vodpipeline.core.logging import job_context, log_error, log_info, log_warning
from vodpipeline.core.metrics import (
    CLAIM_CONFLICTS_TOTAL,
    TRANSCODE_ACTIVE_JOBS,
    TRANSCODE_JOBS_TOTAL,
)
from vodpipeline.core.storage import (
    StorageCapacityExceeded,
    StorageIOFailure,
    StorageService,
    create_storage_backend,
)
from vodpipeline.modules.job.tasks import RETRY_CONFIGS, RetryConfig, transcode_retry_config
from vodpipeline.modules.transcoding.abr import RenditionLadder
from vodpipeline.modules.transcoding.engine import (
    SourceUnavailableError,
    TranscodeEngine,
    TranscodeJob,
)
from vodpipeline.modules.transcoding.ffmpeg import (
    EncodeFailure,
    EncoderRunner,
    FFmpegHLSEncoder,
    SubprocessEncoderRunner,
)
from vodpipeline.modules.video.catalog import (
    CatalogAdapter,
    CatalogUnavailable,
    ClaimConflict,
    LeaseLostError,
)
from vodpipeline.modules.video.models import Video

logger = logging.getLogger(__name__)

T = TypeVar("T")


class JobOutcome(str, Enum):
    """How a transcode attempt ended."""

    READY = "ready"
    RETRY = "retry"
    FAILED = "failed"
    LEASE_LOST = "lease_lost"
    # result could not be persisted; the lease will expire
    ABANDONED = "abandoned"


@dataclass
class PollSummary:
    """What a single poll cycle did."""

    reclaimed: int = 0
    fetched: int = 0
    claimed: int = 0
    conflicts: int = 0
    halted: bool = False


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class PipelineScheduler:
    """Polls the catalog and runs transcode jobs on a fixed number of slots."""

    def __init__(
        self,
        catalog: CatalogAdapter,
        engine: TranscodeEngine,
        settings: Settings,
        ladder: Optional[RenditionLadder] = None,
        worker_id: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        persist_retry_config: Optional[RetryConfig] = None,
    ):
        self.catalog = catalog
        self.engine = engine
        self.settings = settings
        self.ladder = ladder or RenditionLadder.from_names(
            settings.TRANSCODE_RENDITIONS, settings.HLS_SEGMENT_DURATION
        )
        self.worker_id = worker_id or default_worker_id()
        self.retry_config = retry_config or transcode_retry_config(settings)
        self.persist_retry_config = persist_retry_config or RetryConfig(
            max_attempts=settings.CATALOG_PERSIST_ATTEMPTS,
            initial_delay=RETRY_CONFIGS["catalog"].initial_delay,
            max_delay=RETRY_CONFIGS["catalog"].max_delay,
            backoff_multiplier=RETRY_CONFIGS["catalog"].backoff_multiplier,
        )
        self.max_concurrent_jobs = settings.TRANSCODE_MAX_CONCURRENT_JOBS
        self.batch_size = settings.TRANSCODE_BATCH_SIZE
        self.lease_seconds = settings.TRANSCODE_LEASE_SECONDS
        self.poll_interval = settings.TRANSCODE_POLL_INTERVAL_SECONDS
        self._slots = asyncio.Semaphore(self.max_concurrent_jobs)
        self._active: set[asyncio.Task] = set()

    def new_lease_owner(self) -> str:
        """Lease owner for one claim, distinct from every earlier claim by this worker."""
        return f"{self.worker_id}:{uuid.uuid4().hex}"

    @property
    def active_jobs(self) -> int:
        return len(self._active)

    @property
    def free_slots(self) -> int:
        return max(self.max_concurrent_jobs - len(self._active), 0)

    async def poll_once(self) -> PollSummary:
        """Reclaim expired leases and claim as many videos as there are free slots."""
        summary = PollSummary()
        if self.free_slots == 0:
            return summary

        try:
            summary.reclaimed = await self.catalog.reclaim_expired_leases(
                self.retry_config.max_attempts
            )
            videos = await self.catalog.next_pending_videos(
                min(self.batch_size, self.free_slots)
            )
        except CatalogUnavailable as e:
            log_warning(logger, "Catalog unavailable, not claiming new videos", error=str(e))
            summary.halted = True
            return summary

        summary.fetched = len(videos)
        for video in videos:
            if self.free_slots == 0:
                break
            try:
                job = await self.claim(video)
            except ClaimConflict:
                summary.conflicts += 1
                CLAIM_CONFLICTS_TOTAL.inc()
                continue
            except CatalogUnavailable as e:
                log_warning(logger, "Catalog unavailable, not claiming new videos", error=str(e))
                summary.halted = True
                break
            summary.claimed += 1
            self._launch(job)

        return summary

    async def claim(self, video: Video) -> TranscodeJob:
        """Take the lease on an uploaded video.

        Raises:
            ClaimConflict: If another worker got there first.
        """
        lease_owner = self.new_lease_owner()
        claimed = await self.catalog.mark_transcoding(video.id, lease_owner, self.lease_seconds)
        if not claimed:
            raise ClaimConflict(video.id)
        claimed_video = await self.catalog.get_video(video.id)
        return self._build_job(claimed_video, lease_owner)

    async def resubmit(self, video_id: int) -> TranscodeJob:
        """Manually re-run a failed video and start its job.

        Raises:
            VideoNotFoundError: If the video does not exist.
            ClaimConflict: If the video is not in the failed state.
        """
        lease_owner = self.new_lease_owner()
        if not await self.catalog.resubmit(video_id, lease_owner, self.lease_seconds):
            await self.catalog.get_video(video_id)
            raise ClaimConflict(video_id)
        video = await self.catalog.get_video(video_id)
        job = self._build_job(video, lease_owner)
        log_info(logger, "Video resubmitted", video_id=video_id, lease_owner=lease_owner)
        self._launch(job)
        return job

    def _build_job(self, video: Video, lease_owner: str) -> TranscodeJob:
        return TranscodeJob(
            video_id=video.id,
            public_token=video.public_token,
            source_path=video.source_path,
            renditions=list(self.ladder),
            working_dir=self.engine.working_dir_for(video.public_token, video.transcode_attempts),
            attempt=video.transcode_attempts,
            completed_renditions=video.completed_renditions,
            lease_expires_at=video.lease_expires_at,
            lease_owner=lease_owner,
        )

    def _launch(self, job: TranscodeJob) -> asyncio.Task:
        task = asyncio.create_task(self._run_job(job))
        self._active.add(task)
        task.add_done_callback(self._active.discard)
        return task

    async def drain(self) -> None:
        """Wait for every running job to finish."""
        while self._active:
            await asyncio.gather(*list(self._active))

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Poll on a fixed interval until ``stop_event`` is set, then drain."""
        stop = stop_event or asyncio.Event()
        log_info(
            logger,
            "Transcode scheduler started",
            worker_id=self.worker_id,
            slots=self.max_concurrent_jobs,
            interval_s=self.poll_interval,
        )
        try:
            while not stop.is_set():
                summary = await self.poll_once()
                if summary.claimed or summary.reclaimed:
                    log_info(
                        logger,
                        "Poll cycle",
                        claimed=summary.claimed,
                        reclaimed=summary.reclaimed,
                        conflicts=summary.conflicts,
                        active=self.active_jobs,
                    )
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
        finally:
            await self.drain()
            log_info(logger, "Transcode scheduler stopped", worker_id=self.worker_id)

    async def _run_job(self, job: TranscodeJob) -> JobOutcome:
        async with self._slots:
            gauge = TRANSCODE_ACTIVE_JOBS.labels(worker_id=self.worker_id)
            gauge.inc()
            try:
                with job_context(job.public_token, job.attempt):
                    outcome = await self.process(job)
            finally:
                gauge.dec()
        TRANSCODE_JOBS_TOTAL.labels(outcome=outcome.value).inc()
        return outcome

    async def process(self, job: TranscodeJob) -> JobOutcome:
        """Run one attempt and record its outcome in the catalog."""
        log_info(
            logger,
            "Transcode attempt started",
            video_id=job.video_id,
            attempt=job.attempt,
            pending=[r.name for r in job.pending_renditions],
        )
        try:
            await self.engine.run(job)
        except LeaseLostError as e:
            log_warning(logger, "Abandoning job, lease lost", video_id=job.video_id, error=str(e))
            return JobOutcome.LEASE_LOST
        except (StorageCapacityExceeded, SourceUnavailableError) as e:
            return await self._fail(job, str(e))
        except (EncodeFailure, StorageIOFailure, CatalogUnavailable) as e:
            return await self._retry_or_fail(job, str(e))
        except Exception as e:
            log_error(logger, "Unexpected transcode error", e, video_id=job.video_id)
            return await self._retry_or_fail(job, f"unexpected error: {e}")

        marked = await self._persist(self.catalog.mark_ready, job.video_id, job.lease_owner)
        if marked is None:
            return JobOutcome.ABANDONED
        if not marked:
            return JobOutcome.LEASE_LOST
        log_info(logger, "Video ready", video_id=job.video_id, attempt=job.attempt)
        return JobOutcome.READY

    async def _retry_or_fail(self, job: TranscodeJob, reason: str) -> JobOutcome:
        if self.retry_config.is_exhausted(job.attempt):
            return await self._fail(job, f"{reason} (gave up after {job.attempt} attempts)")

        delay = self.retry_config.calculate_delay(job.attempt)
        next_attempt_at = utcnow() + timedelta(seconds=delay)
        requeued = await self._persist(
            self.catalog.requeue, job.video_id, next_attempt_at, reason, job.lease_owner
        )
        if requeued is None:
            return JobOutcome.ABANDONED
        if not requeued:
            return JobOutcome.LEASE_LOST
        log_warning(
            logger,
            "Transcode attempt failed, retry scheduled",
            video_id=job.video_id,
            attempt=job.attempt,
            retry_in_s=delay,
            reason=reason,
        )
        return JobOutcome.RETRY

    async def _fail(self, job: TranscodeJob, reason: str) -> JobOutcome:
        failed = await self._persist(self.catalog.mark_failed, job.video_id, reason, job.lease_owner)
        if failed is None:
            return JobOutcome.ABANDONED
        if not failed:
            return JobOutcome.LEASE_LOST
        log_error(logger, "Transcode failed", video_id=job.video_id, attempt=job.attempt, reason=reason)
        return JobOutcome.FAILED

    async def _persist(self, operation: Callable[..., Awaitable[T]], *args) -> Optional[T]:
        """Run a catalog write, retrying while the catalog is unavailable.

        Returns None when every attempt failed.
        """
        config = self.persist_retry_config
        for attempt in range(1, config.max_attempts + 1):
            try:
                return await operation(*args)
            except CatalogUnavailable as e:
                if config.is_exhausted(attempt):
                    log_error(
                        logger,
                        "Could not persist job result, leaving it to lease expiry",
                        e,
                        operation=getattr(operation, "__name__", str(operation)),
                    )
                    return None
                await asyncio.sleep(config.calculate_delay(attempt))
        return None


def create_scheduler(
    settings: Settings,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    runner: Optional[EncoderRunner] = None,
    worker_id: Optional[str] = None,
) -> PipelineScheduler:
    """Wire a scheduler from configuration."""
    if session_maker is None:
        session_maker = create_session_maker(create_engine(settings))
    catalog = CatalogAdapter(session_maker)
    storage = StorageService(create_storage_backend(settings))
    if runner is None:
        runner = SubprocessEncoderRunner(
            FFmpegHLSEncoder(
                ffmpeg_path=settings.FFMPEG_PATH,
                video_codec=settings.FFMPEG_VIDEO_CODEC,
                preset=settings.FFMPEG_PRESET,
            ),
            timeout=settings.ENCODER_TIMEOUT_SECONDS,
        )
    engine = TranscodeEngine(storage, catalog, runner, settings)
    return PipelineScheduler(catalog, engine, settings, worker_id=worker_id)
