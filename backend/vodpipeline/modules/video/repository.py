"""Video repository for catalog database operations.

Every state transition is a single conditional UPDATE so that concurrent
workers can never both believe they own the same video.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from vodpipeline.core.database import utcnow
from vodpipeline.modules.video.models import Video, VideoRendition, VideoStatus


def dialect_insert(session: AsyncSession, model):
    """Return an INSERT construct supporting ``on_conflict_*`` for the bound dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on {dialect}")


class VideoRepository:
    """Repository for Video and VideoRendition operations."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session."""
        self.session = session

    async def create(
        self,
        title: str,
        source_path: str,
        description: Optional[str] = None,
    ) -> Video:
        """Register an uploaded video, ready to be picked up for transcoding."""
        video = Video(
            title=title,
            source_path=source_path,
            description=description,
            status=VideoStatus.UPLOADED.value,
        )
        self.session.add(video)
        await self.session.flush()
        await self.session.refresh(video, attribute_names=["renditions"])
        return video

    async def get_by_id(self, video_id: int) -> Optional[Video]:
        result = await self.session.execute(select(Video).where(Video.id == video_id))
        return result.scalar_one_or_none()

    async def get_by_token(self, public_token: str) -> Optional[Video]:
        result = await self.session.execute(
            select(Video).where(Video.public_token == public_token)
        )
        return result.scalar_one_or_none()

    async def get_titles(self) -> set[str]:
        result = await self.session.execute(select(Video.title))
        return set(result.scalars().all())

    async def list_pending(self, limit: int, now: Optional[datetime] = None) -> list[Video]:
        """Uploaded videos whose retry delay (if any) has elapsed, oldest first."""
        now = now or utcnow()
        result = await self.session.execute(
            select(Video)
            .where(
                Video.status == VideoStatus.UPLOADED.value,
                or_(Video.next_attempt_at.is_(None), Video.next_attempt_at <= now),
            )
            .order_by(Video.created_at.asc(), Video.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _conditional_update(self, *criteria, **values) -> bool:
        result = await self.session.execute(
            update(Video)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim(
        self,
        video_id: int,
        lease_owner: str,
        lease_expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """Move an uploaded video to transcoding and take its lease.

        Returns:
            bool: False if the video was not claimable (already taken, not yet
            due, or in another state).
        """
        now = now or utcnow()
        return await self._conditional_update(
            Video.id == video_id,
            Video.status == VideoStatus.UPLOADED.value,
            or_(Video.next_attempt_at.is_(None), Video.next_attempt_at <= now),
            status=VideoStatus.TRANSCODING.value,
            lease_owner=lease_owner,
            lease_expires_at=lease_expires_at,
            next_attempt_at=None,
            transcode_attempts=Video.transcode_attempts + 1,
            updated_at=now,
        )

    async def claim_failed(
        self,
        video_id: int,
        lease_owner: str,
        lease_expires_at: datetime,
    ) -> bool:
        """Manually resubmit a failed video; starts a fresh retry budget."""
        return await self._conditional_update(
            Video.id == video_id,
            Video.status == VideoStatus.FAILED.value,
            status=VideoStatus.TRANSCODING.value,
            lease_owner=lease_owner,
            lease_expires_at=lease_expires_at,
            next_attempt_at=None,
            transcode_attempts=1,
            failure_reason=None,
            updated_at=utcnow(),
        )

    def _owned_by(self, video_id: int, lease_owner: Optional[str]) -> list:
        criteria = [Video.id == video_id, Video.status == VideoStatus.TRANSCODING.value]
        if lease_owner is not None:
            criteria.append(Video.lease_owner == lease_owner)
        return criteria

    async def renew_lease(
        self,
        video_id: int,
        lease_owner: str,
        lease_expires_at: datetime,
    ) -> bool:
        return await self._conditional_update(
            *self._owned_by(video_id, lease_owner),
            lease_expires_at=lease_expires_at,
        )

    async def release_expired_leases(
        self,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> tuple[int, int]:
        """Return videos whose lease expired to the queue.

        Videos that already spent their attempt budget are failed instead.

        Returns:
            tuple: (requeued count, failed count)
        """
        now = now or utcnow()
        expired = and_(
            Video.status == VideoStatus.TRANSCODING.value,
            Video.lease_expires_at < now,
        )
        failed = await self.session.execute(
            update(Video)
            .where(expired, Video.transcode_attempts >= max_attempts)
            .values(
                status=VideoStatus.FAILED.value,
                lease_owner=None,
                lease_expires_at=None,
                failure_reason="Lease expired on final attempt",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        requeued = await self.session.execute(
            update(Video)
            .where(expired, Video.transcode_attempts < max_attempts)
            .values(
                status=VideoStatus.UPLOADED.value,
                lease_owner=None,
                lease_expires_at=None,
                next_attempt_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return requeued.rowcount, failed.rowcount

    async def requeue(
        self,
        video_id: int,
        lease_owner: Optional[str],
        next_attempt_at: datetime,
        reason: str,
    ) -> bool:
        """Give up the lease and schedule another attempt."""
        return await self._conditional_update(
            *self._owned_by(video_id, lease_owner),
            status=VideoStatus.UPLOADED.value,
            lease_owner=None,
            lease_expires_at=None,
            next_attempt_at=next_attempt_at,
            failure_reason=reason,
            updated_at=utcnow(),
        )

    async def add_rendition(
        self,
        video_id: int,
        name: str,
        width: int,
        height: int,
        bandwidth: int,
        playlist_key: str,
        segment_count: int,
    ) -> None:
        """Record a published rendition; recording it twice is a no-op."""
        stmt = dialect_insert(self.session, VideoRendition).values(
            video_id=video_id,
            name=name,
            width=width,
            height=height,
            bandwidth=bandwidth,
            playlist_key=playlist_key,
            segment_count=segment_count,
            created_at=utcnow(),
        )
        await self.session.execute(
            stmt.on_conflict_do_nothing(index_elements=["video_id", "name"])
        )

    async def set_master_playlist(
        self,
        video_id: int,
        master_playlist_key: str,
        lease_owner: Optional[str] = None,
    ) -> bool:
        return await self._conditional_update(
            *self._owned_by(video_id, lease_owner),
            master_playlist_key=master_playlist_key,
            updated_at=utcnow(),
        )

    async def mark_ready(self, video_id: int, lease_owner: Optional[str] = None) -> bool:
        now = utcnow()
        return await self._conditional_update(
            *self._owned_by(video_id, lease_owner),
            Video.master_playlist_key.is_not(None),
            status=VideoStatus.READY.value,
            lease_owner=None,
            lease_expires_at=None,
            failure_reason=None,
            ready_at=now,
            updated_at=now,
        )

    async def mark_failed(
        self,
        video_id: int,
        reason: str,
        lease_owner: Optional[str] = None,
    ) -> bool:
        return await self._conditional_update(
            *self._owned_by(video_id, lease_owner),
            status=VideoStatus.FAILED.value,
            lease_owner=None,
            lease_expires_at=None,
            failure_reason=reason,
            updated_at=utcnow(),
        )

    async def increment_view_count(self, video_id: int) -> None:
        await self.session.execute(
            update(Video)
            .where(Video.id == video_id)
            .values(view_count=Video.view_count + 1)
            .execution_options(synchronize_session=False)
        )

    async def status_counts(self) -> dict[str, int]:
        result = await self.session.execute(
            select(Video.status, func.count(Video.id)).group_by(Video.status)
        )
        counts = {status.value: 0 for status in VideoStatus}
        counts.update({status: count for status, count in result.all()})
        return counts
