"""View record repository.

The upsert runs as one INSERT .. ON CONFLICT DO UPDATE so concurrent reports
for the same (video, user, day) can never lose an update.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from vodpipeline.core.database import utcnow
from vodpipeline.modules.analytics.models import ViewRecord, ViewReportReceipt
from vodpipeline.modules.video.models import Video
from vodpipeline.modules.video.repository import dialect_insert


@dataclass
class VideoViewSummary:
    """Aggregated viewing activity of one video."""

    video_id: int
    public_token: str
    title: str
    viewer_days: int
    total_views: int
    total_watch_time: int
    view_count: int


class ViewRecordRepository:
    """Repository for ViewRecord and ViewReportReceipt operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(
        self,
        video_id: int,
        user_id: str,
        view_date: date,
        watch_time_delta: int,
        playback_position: int,
        playback_rate: float,
        device_type: str,
    ) -> None:
        """Merge a report into the daily record.

        Watch time is added, the playback high-water mark kept, and the
        playback rate and device overwritten with the latest values.
        """
        now = utcnow()
        stmt = dialect_insert(self.session, ViewRecord).values(
            video_id=video_id,
            user_id=user_id,
            view_date=view_date,
            watch_time=watch_time_delta,
            max_playback_position=playback_position,
            playback_rate=playback_rate,
            device_type=device_type,
            report_count=1,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=["video_id", "user_id", "view_date"],
            set_={
                "watch_time": ViewRecord.watch_time + excluded.watch_time,
                "max_playback_position": case(
                    (
                        excluded.max_playback_position > ViewRecord.max_playback_position,
                        excluded.max_playback_position,
                    ),
                    else_=ViewRecord.max_playback_position,
                ),
                "playback_rate": excluded.playback_rate,
                "device_type": excluded.device_type,
                "report_count": ViewRecord.report_count + 1,
                "updated_at": excluded.updated_at,
            },
        )
        await self.session.execute(stmt)

    async def get(self, video_id: int, user_id: str, view_date: date) -> Optional[ViewRecord]:
        result = await self.session.execute(
            select(ViewRecord)
            .where(
                ViewRecord.video_id == video_id,
                ViewRecord.user_id == user_id,
                ViewRecord.view_date == view_date,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def count_for(self, video_id: int, user_id: str, view_date: date) -> int:
        result = await self.session.execute(
            select(func.count(ViewRecord.id)).where(
                ViewRecord.video_id == video_id,
                ViewRecord.user_id == user_id,
                ViewRecord.view_date == view_date,
            )
        )
        return result.scalar_one()

    async def add_receipt(
        self,
        video_id: int,
        user_id: str,
        report_id: str,
        view_date: date,
        dedup_after: datetime,
    ) -> bool:
        """Record a client report id.

        Returns:
            bool: True if the report is new (or its previous receipt is older
            than ``dedup_after``), False if it is a repeat inside the window.
        """
        now = utcnow()
        inserted = await self.session.execute(
            dialect_insert(self.session, ViewReportReceipt)
            .values(
                video_id=video_id,
                user_id=user_id,
                report_id=report_id,
                view_date=view_date,
                received_at=now,
            )
            .on_conflict_do_nothing(index_elements=["video_id", "user_id", "report_id"])
        )
        if inserted.rowcount == 1:
            return True

        refreshed = await self.session.execute(
            update(ViewReportReceipt)
            .where(*self._receipt_key(video_id, user_id, report_id))
            .where(ViewReportReceipt.received_at < dedup_after)
            .values(received_at=now, view_date=view_date)
            .execution_options(synchronize_session=False)
        )
        return refreshed.rowcount == 1

    async def get_receipt(
        self,
        video_id: int,
        user_id: str,
        report_id: str,
    ) -> Optional[ViewReportReceipt]:
        result = await self.session.execute(
            select(ViewReportReceipt).where(*self._receipt_key(video_id, user_id, report_id))
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _receipt_key(video_id: int, user_id: str, report_id: str) -> tuple:
        return (
            ViewReportReceipt.video_id == video_id,
            ViewReportReceipt.user_id == user_id,
            ViewReportReceipt.report_id == report_id,
        )

    async def prune_receipts(self, older_than: datetime) -> int:
        result = await self.session.execute(
            delete(ViewReportReceipt)
            .where(ViewReportReceipt.received_at < older_than)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def refresh_view_counts(self, video_id: Optional[int] = None) -> int:
        """Recompute the denormalized ``videos.view_count`` from view records."""
        total = (
            select(func.coalesce(func.sum(ViewRecord.report_count), 0))
            .where(ViewRecord.video_id == Video.id)
            .correlate(Video)
            .scalar_subquery()
        )
        stmt = update(Video).values(view_count=total).execution_options(synchronize_session=False)
        if video_id is not None:
            stmt = stmt.where(Video.id == video_id)
        result = await self.session.execute(stmt)
        return result.rowcount

    async def summary(self) -> list[VideoViewSummary]:
        total_views = func.coalesce(func.sum(ViewRecord.report_count), 0)
        result = await self.session.execute(
            select(
                Video.id,
                Video.public_token,
                Video.title,
                func.count(ViewRecord.id),
                total_views,
                func.coalesce(func.sum(ViewRecord.watch_time), 0),
                Video.view_count,
            )
            .outerjoin(ViewRecord, ViewRecord.video_id == Video.id)
            .group_by(Video.id, Video.public_token, Video.title, Video.view_count)
            .order_by(total_views.desc(), Video.id.asc())
        )
        return [VideoViewSummary(*row) for row in result.all()]
