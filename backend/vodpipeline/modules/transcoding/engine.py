"""Transcode engine.

Produces the renditions of one video in ascending order. After each rendition
is fully written to storage the master playlist is rewritten to list every
rendition completed so far, so the lowest tier becomes playable as soon as it
exists and the master never references a rendition that is not in storage.
"""

import asyncio
import logging
import shutil
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, TypeVar

from vodpipeline.core.config import Settings
from vodpipeline.core.database import utcnow
from vodpipeline.core.logging import log_info, log_warning
from vodpipeline.core.metrics import RENDITIONS_PUBLISHED_TOTAL
from vodpipeline.core.storage import (
    StorageNotFound,
    StorageService,
    join_key,
    translate_os_errors,
)
from vodpipeline.modules.transcoding.abr import Rendition
from vodpipeline.modules.transcoding.ffmpeg import (
    EncodeRequest,
    EncoderRunner,
    IncompleteOutputError,
    TranscodeError,
)
from vodpipeline.modules.transcoding.playlist import (
    MASTER_PLAYLIST_NAME,
    MEDIA_PLAYLIST_NAME,
    PlaylistError,
    build_master_playlist,
    parse_media_playlist,
)
from vodpipeline.modules.video.catalog import CatalogAdapter, CatalogUnavailable, LeaseLostError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SourceUnavailableError(TranscodeError):
    """The source file of a video cannot be found."""

    def __init__(self, source_path: str):
        self.source_path = source_path
        super().__init__(f"Source file not found: {source_path}")


@dataclass
class TranscodeJob:
    """One claimed attempt at transcoding a video."""

    video_id: int
    public_token: str
    source_path: str
    renditions: list[Rendition]
    working_dir: Path
    attempt: int
    completed_renditions: list[str] = field(default_factory=list)
    lease_expires_at: Optional[datetime] = None
    lease_owner: Optional[str] = None

    @property
    def pending_renditions(self) -> list[Rendition]:
        return [r for r in self.renditions if r.name not in self.completed_renditions]


@dataclass
class TranscodeResult:
    video_id: int
    master_playlist_key: Optional[str]
    completed_renditions: list[str]
    published_this_attempt: list[str]


class StreamLayout:
    """Storage keys of a video's published stream."""

    def __init__(self, key_prefix: str = "hls"):
        self.key_prefix = key_prefix

    def stream_root(self, public_token: str) -> str:
        return join_key(self.key_prefix, public_token)

    def master_key(self, public_token: str) -> str:
        return join_key(self.stream_root(public_token), MASTER_PLAYLIST_NAME)

    def rendition_root(self, public_token: str, rendition: str) -> str:
        return join_key(self.stream_root(public_token), rendition)

    def playlist_key(self, public_token: str, rendition: str) -> str:
        return join_key(self.rendition_root(public_token, rendition), MEDIA_PLAYLIST_NAME)


class TranscodeEngine:
    """Runs the rendition sequence of a claimed video."""

    def __init__(
        self,
        storage: StorageService,
        catalog: CatalogAdapter,
        runner: EncoderRunner,
        settings: Settings,
        lease_seconds: Optional[int] = None,
    ):
        self.storage = storage
        self.catalog = catalog
        self.runner = runner
        self.settings = settings
        self.layout = StreamLayout(settings.HLS_KEY_PREFIX)
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.TRANSCODE_LEASE_SECONDS

    def working_dir_for(self, public_token: str, attempt: int) -> Path:
        return Path(self.settings.TRANSCODE_WORK_DIR) / f"{public_token}-{attempt}"

    async def run(self, job: TranscodeJob) -> TranscodeResult:
        """Encode and publish every rendition not yet completed.

        Raises:
            EncodeFailure: A rendition could not be encoded; renditions
                published before it stay published.
            SourceUnavailableError: The source file does not exist.
            StorageIOFailure, StorageCapacityExceeded: Writing output failed.
            LeaseLostError: Another worker took over the video.
        """
        completed = list(job.completed_renditions)
        published: list[str] = []
        existing_master = self.layout.master_key(job.public_token) if completed else None

        with translate_os_errors(str(job.working_dir)):
            job.working_dir.mkdir(parents=True, exist_ok=True)

        async def produce_all() -> Optional[str]:
            latest = existing_master
            source = await self._resolve_source(job)
            for rendition in job.renditions:
                if rendition.name in completed:
                    log_info(logger, "Rendition already published", rendition=rendition.name)
                    continue
                latest = await self._produce_rendition(job, source, rendition, completed)
                published.append(rendition.name)
            return latest

        try:
            master_key = await self._run_leased(job, produce_all())
        finally:
            await asyncio.to_thread(shutil.rmtree, job.working_dir, True)

        return TranscodeResult(
            video_id=job.video_id,
            master_playlist_key=master_key,
            completed_renditions=completed,
            published_this_attempt=published,
        )

    async def _resolve_source(self, job: TranscodeJob) -> Path:
        """Locate the source on local disk, downloading it from storage if needed."""
        candidate = Path(job.source_path)
        if candidate.is_absolute():
            if candidate.is_file():
                return candidate
            raise SourceUnavailableError(job.source_path)

        under_upload_root = Path(self.settings.UPLOAD_ROOT) / candidate
        if under_upload_root.is_file():
            return under_upload_root

        destination = job.working_dir / f"source{candidate.suffix}"
        try:
            await self.storage.download(job.source_path, str(destination))
        except (StorageNotFound, ValueError) as e:
            raise SourceUnavailableError(job.source_path) from e
        return destination

    async def _produce_rendition(
        self,
        job: TranscodeJob,
        source: Path,
        rendition: Rendition,
        completed: list[str],
    ) -> str:
        output_dir = job.working_dir / rendition.name
        if output_dir.exists():
            await asyncio.to_thread(shutil.rmtree, output_dir)

        log_info(logger, "Encoding rendition", video_id=job.video_id, rendition=rendition.name)
        await self.runner.run(EncodeRequest(source, rendition, output_dir))
        files, segment_count = collect_rendition_output(rendition, output_dir)

        # write the rendition, then publish it through the master playlist
        await self._ensure_lease(job)
        await self.storage.put_tree(
            self.layout.rendition_root(job.public_token, rendition.name), files
        )
        completed.append(rendition.name)
        listed = [r for r in job.renditions if r.name in completed]
        master_key = self.layout.master_key(job.public_token)
        await self._ensure_lease(job)
        await self.storage.put(master_key, build_master_playlist(listed).encode())

        await self.catalog.record_rendition_complete(
            job.video_id,
            rendition,
            master_key,
            playlist_key=self.layout.playlist_key(job.public_token, rendition.name),
            segment_count=segment_count,
            lease_owner=job.lease_owner,
        )
        RENDITIONS_PUBLISHED_TOTAL.labels(rendition=rendition.name).inc()
        log_info(
            logger,
            "Rendition published",
            video_id=job.video_id,
            rendition=rendition.name,
            segments=segment_count,
            listed=[r.name for r in listed],
        )
        return master_key

    def _leased(self, job: TranscodeJob) -> bool:
        return job.lease_owner is not None and self.lease_seconds > 0

    async def _run_leased(self, job: TranscodeJob, work: Awaitable[T]) -> T:
        """Run ``work`` while renewing the job's lease in the background.

        Raises:
            LeaseLostError: The lease was lost; ``work`` has been cancelled.
        """
        if not self._leased(job):
            return await work

        body = asyncio.ensure_future(work)
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            await asyncio.wait({body, heartbeat}, return_when=asyncio.FIRST_COMPLETED)
            if body.done():
                return body.result()
            heartbeat.result()
            log_warning(logger, "Lease lost while transcoding, cancelling job", video_id=job.video_id)
            raise LeaseLostError(job.video_id, job.lease_owner)
        finally:
            body.cancel()
            heartbeat.cancel()
            await asyncio.gather(body, heartbeat, return_exceptions=True)

    async def _heartbeat(self, job: TranscodeJob) -> None:
        """Renew the lease every third of its duration; returns once it is lost."""
        interval = max(self.lease_seconds / 3, 1.0)
        while True:
            await asyncio.sleep(interval)
            if not await self._renew_lease(job):
                return

    async def _ensure_lease(self, job: TranscodeJob) -> None:
        """Raise ``LeaseLostError`` unless the job still holds its lease."""
        if self._leased(job) and not await self._renew_lease(job):
            raise LeaseLostError(job.video_id, job.lease_owner)

    async def _renew_lease(self, job: TranscodeJob) -> bool:
        # while the catalog is down the lease is trusted until it would have expired
        expires_at = utcnow() + timedelta(seconds=self.lease_seconds)
        try:
            renewed = await self.catalog.renew_lease(job.video_id, job.lease_owner, self.lease_seconds)
        except CatalogUnavailable as e:
            log_warning(logger, "Lease renewal failed", video_id=job.video_id, error=str(e))
            return job.lease_expires_at is None or utcnow() < job.lease_expires_at
        if renewed:
            job.lease_expires_at = expires_at
        return renewed


def collect_rendition_output(
    rendition: Rendition,
    output_dir: Path,
) -> tuple[dict[str, Path], int]:
    """Verify an encoder's output and list the files to publish.

    Returns:
        tuple: ({relative path: local file}, segment count)

    Raises:
        IncompleteOutputError: If the playlist or any segment it lists is missing.
    """
    playlist = output_dir / MEDIA_PLAYLIST_NAME
    if not playlist.is_file():
        raise IncompleteOutputError(rendition.name, "media playlist was not written")

    try:
        segments = parse_media_playlist(playlist.read_text())
    except PlaylistError as e:
        raise IncompleteOutputError(rendition.name, str(e)) from e
    if not segments:
        raise IncompleteOutputError(rendition.name, "media playlist lists no segments")

    files: dict[str, Path] = {MEDIA_PLAYLIST_NAME: playlist}
    for uri in segments:
        if "/" in uri or "\\" in uri:
            raise IncompleteOutputError(rendition.name, f"unexpected segment URI {uri}")
        segment = output_dir / uri
        if not segment.is_file():
            raise IncompleteOutputError(rendition.name, f"segment {uri} is missing")
        files[uri] = segment
    return files, len(segments)
