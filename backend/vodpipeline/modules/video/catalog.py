"""Catalog adapter: the pipeline's only view of persistent video metadata.

Each operation runs in its own short transaction. Database connectivity
faults surface as ``CatalogUnavailable`` so that callers can tell "the
catalog is down" apart from programming errors.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from typing import Optional, TypeVar

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vodpipeline.core.database import utcnow
from vodpipeline.core.logging import log_info, log_warning
from vodpipeline.core.metrics import LEASES_RECLAIMED_TOTAL
from vodpipeline.modules.analytics.repository import ViewRecordRepository
from vodpipeline.modules.video.models import Video
from vodpipeline.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNAVAILABLE_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    OSError,
)


class CatalogError(Exception):
    """Base exception for catalog errors."""


class CatalogUnavailable(CatalogError):
    """The catalog database cannot be reached."""


class ClaimConflict(CatalogError):
    """Another worker already owns the video."""

    def __init__(self, video_id: int):
        self.video_id = video_id
        super().__init__(f"Video {video_id} is already claimed")


class VideoNotFoundError(CatalogError):
    """Video does not exist."""

    def __init__(self, video_id):
        self.video_id = video_id
        super().__init__(f"Video {video_id} not found")


class LeaseLostError(CatalogError):
    """The caller no longer holds the lease on the video."""

    def __init__(self, video_id: int, lease_owner: Optional[str]):
        self.video_id = video_id
        self.lease_owner = lease_owner
        super().__init__(f"Lease {lease_owner} is no longer held on video {video_id}")


class CatalogAdapter:
    """Transactional facade over the video and view repositories."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def _run(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    return await operation(session)
        except _UNAVAILABLE_ERRORS as e:
            raise CatalogUnavailable(str(e)) from e

    # ---- lookups ---------------------------------------------------------

    async def get_video(self, video_id: int) -> Video:
        video = await self._run(lambda s: VideoRepository(s).get_by_id(video_id))
        if video is None:
            raise VideoNotFoundError(video_id)
        return video

    async def get_video_by_token(self, public_token: str) -> Video:
        video = await self._run(lambda s: VideoRepository(s).get_by_token(public_token))
        if video is None:
            raise VideoNotFoundError(public_token)
        return video

    async def register_upload(
        self,
        title: str,
        source_path: str,
        description: Optional[str] = None,
    ) -> Video:
        return await self._run(
            lambda s: VideoRepository(s).create(title, source_path, description)
        )

    async def known_titles(self) -> set[str]:
        return await self._run(lambda s: VideoRepository(s).get_titles())

    async def status_counts(self) -> dict[str, int]:
        return await self._run(lambda s: VideoRepository(s).status_counts())

    # ---- transcode lifecycle ---------------------------------------------

    async def next_pending_videos(self, limit: int) -> list[Video]:
        """Uploaded videos that are due for an attempt, oldest first."""
        return await self._run(lambda s: VideoRepository(s).list_pending(limit))

    async def mark_transcoding(
        self,
        video_id: int,
        lease_owner: str,
        lease_seconds: int,
    ) -> bool:
        """Atomically claim an uploaded video.

        Returns:
            bool: False if another worker claimed it first.
        """
        lease_expires_at = utcnow() + timedelta(seconds=lease_seconds)
        return await self._run(
            lambda s: VideoRepository(s).claim(video_id, lease_owner, lease_expires_at)
        )

    async def resubmit(self, video_id: int, lease_owner: str, lease_seconds: int) -> bool:
        """Claim a failed video for a manual re-run."""
        lease_expires_at = utcnow() + timedelta(seconds=lease_seconds)
        return await self._run(
            lambda s: VideoRepository(s).claim_failed(video_id, lease_owner, lease_expires_at)
        )

    async def renew_lease(self, video_id: int, lease_owner: str, lease_seconds: int) -> bool:
        lease_expires_at = utcnow() + timedelta(seconds=lease_seconds)
        return await self._run(
            lambda s: VideoRepository(s).renew_lease(video_id, lease_owner, lease_expires_at)
        )

    async def reclaim_expired_leases(self, max_attempts: int) -> int:
        """Release every expired lease; returns how many videos were released."""
        requeued, failed = await self._run(
            lambda s: VideoRepository(s).release_expired_leases(max_attempts)
        )
        if requeued or failed:
            LEASES_RECLAIMED_TOTAL.inc(requeued + failed)
            log_warning(
                logger,
                "Reclaimed expired transcode leases",
                requeued=requeued,
                failed=failed,
            )
        return requeued + failed

    async def requeue(
        self,
        video_id: int,
        next_attempt_at: datetime,
        reason: str,
        lease_owner: Optional[str] = None,
    ) -> bool:
        return await self._run(
            lambda s: VideoRepository(s).requeue(video_id, lease_owner, next_attempt_at, reason)
        )

    async def record_rendition_complete(
        self,
        video_id: int,
        rendition,
        master_playlist_key: str,
        playlist_key: str,
        segment_count: int,
        lease_owner: Optional[str] = None,
    ) -> None:
        """Record a published rendition and the master playlist listing it.

        Raises:
            LeaseLostError: If ``lease_owner`` is given and no longer holds the lease.
        """

        async def operation(session: AsyncSession) -> bool:
            repo = VideoRepository(session)
            if not await repo.set_master_playlist(video_id, master_playlist_key, lease_owner):
                return False
            await repo.add_rendition(
                video_id=video_id,
                name=rendition.name,
                width=rendition.width,
                height=rendition.height,
                bandwidth=rendition.bandwidth,
                playlist_key=playlist_key,
                segment_count=segment_count,
            )
            return True

        if not await self._run(operation):
            raise LeaseLostError(video_id, lease_owner)
        log_info(
            logger,
            "Rendition recorded",
            video_id=video_id,
            rendition=rendition.name,
            master_playlist_key=master_playlist_key,
        )

    async def mark_ready(self, video_id: int, lease_owner: Optional[str] = None) -> bool:
        return await self._run(lambda s: VideoRepository(s).mark_ready(video_id, lease_owner))

    async def mark_failed(
        self,
        video_id: int,
        reason: str,
        lease_owner: Optional[str] = None,
    ) -> bool:
        return await self._run(
            lambda s: VideoRepository(s).mark_failed(video_id, reason, lease_owner)
        )

    # ---- views -----------------------------------------------------------

    async def record_view(
        self,
        video_id: int,
        user_id: str,
        day: date,
        watch_time_delta: int,
        playback_position: int,
        playback_rate: float,
        device_type: str,
    ) -> None:
        await self._run(
            lambda s: ViewRecordRepository(s).upsert(
                video_id,
                user_id,
                day,
                watch_time_delta,
                playback_position,
                playback_rate,
                device_type,
            )
        )

    async def increment_view_count(self, video_id: int) -> None:
        await self._run(lambda s: VideoRepository(s).increment_view_count(video_id))

    async def refresh_view_counts(self) -> int:
        return await self._run(lambda s: ViewRecordRepository(s).refresh_view_counts())

    async def prune_view_report_receipts(self, older_than: datetime) -> int:
        return await self._run(lambda s: ViewRecordRepository(s).prune_receipts(older_than))
