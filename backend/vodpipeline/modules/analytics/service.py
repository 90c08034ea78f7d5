"""View aggregator.

Merges client view reports into daily per-user records. Watch time arrives as
deltas, which are not safe to replay, so clients may attach a ``report_id``:
a repeat of an id inside the deduplication window is acknowledged without
being applied again.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from vodpipeline.core.config import Settings
from vodpipeline.core.database import utcnow
from vodpipeline.core.logging import log_warning
from vodpipeline.core.metrics import VIEW_REPORTS_TOTAL
from vodpipeline.modules.analytics.models import DeviceClass, ViewRecord
from vodpipeline.modules.analytics.repository import VideoViewSummary, ViewRecordRepository
from vodpipeline.modules.video.catalog import VideoNotFoundError
from vodpipeline.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)

_MOBILE_UA = re.compile(r"Mobile|Android|iOS")


class InvalidViewReportError(ValueError):
    """A view report carries impossible values."""


def classify_device(user_agent: Optional[str]) -> str:
    """Device class from a User-Agent header."""
    if user_agent and _MOBILE_UA.search(user_agent):
        return DeviceClass.MOBILE.value
    return DeviceClass.DESKTOP.value


@dataclass
class ViewReport:
    """A single client report of viewing activity."""

    video_id: int
    user_id: str
    watch_time: int  # seconds watched since the previous report
    playback_position: int  # seconds
    playback_rate: float = 1.0
    device_type: str = DeviceClass.DESKTOP.value
    view_date: Optional[date] = None
    report_id: Optional[str] = None


@dataclass
class ViewReportResult:
    record: ViewRecord
    duplicate: bool = False


class ViewAggregator:
    """Applies view reports through the catalog's atomic upsert."""

    def __init__(self, session: AsyncSession, settings: Settings):
        self.session = session
        self.settings = settings
        self.videos = VideoRepository(session)
        self.views = ViewRecordRepository(session)

    async def video_id_for_token(self, public_token: str) -> int:
        """Resolve a public token to the internal video id.

        Raises:
            VideoNotFoundError: If no video has this token.
        """
        video = await self.videos.get_by_token(public_token)
        if video is None:
            VIEW_REPORTS_TOTAL.labels(result="not_found").inc()
            raise VideoNotFoundError(public_token)
        return video.id

    async def report_view(self, report: ViewReport) -> ViewReportResult:
        """Merge a view report into the (video, user, day) record.

        Raises:
            VideoNotFoundError: If the video does not exist.
            InvalidViewReportError: If the report carries negative values.
        """
        _validate(report)

        video = await self.videos.get_by_id(report.video_id)
        if video is None:
            VIEW_REPORTS_TOTAL.labels(result="not_found").inc()
            log_warning(
                logger,
                "View report for unknown video",
                video_id=report.video_id,
                user_id=report.user_id,
            )
            raise VideoNotFoundError(report.video_id)

        view_date = report.view_date or utcnow().date()

        if report.report_id:
            dedup_after = utcnow() - timedelta(seconds=self.settings.VIEW_REPORT_DEDUP_WINDOW_SECONDS)
            is_new = await self.views.add_receipt(
                report.video_id, report.user_id, report.report_id, view_date, dedup_after
            )
            if not is_new:
                return await self._duplicate(report)

        await self.views.upsert(
            video_id=report.video_id,
            user_id=report.user_id,
            view_date=view_date,
            watch_time_delta=report.watch_time,
            playback_position=report.playback_position,
            playback_rate=report.playback_rate,
            device_type=report.device_type,
        )
        await self.videos.increment_view_count(report.video_id)

        record = await self.views.get(report.video_id, report.user_id, view_date)
        VIEW_REPORTS_TOTAL.labels(result="accepted").inc()
        return ViewReportResult(record=record, duplicate=False)

    async def _duplicate(self, report: ViewReport) -> ViewReportResult:
        """Acknowledge a repeated report with the record it was first applied to."""
        VIEW_REPORTS_TOTAL.labels(result="duplicate").inc()
        receipt = await self.views.get_receipt(report.video_id, report.user_id, report.report_id)
        record = await self.views.get(report.video_id, report.user_id, receipt.view_date)
        return ViewReportResult(record=record, duplicate=True)

    async def view_summary(self) -> list[VideoViewSummary]:
        return await self.views.summary()


def _validate(report: ViewReport) -> None:
    if report.watch_time < 0:
        raise InvalidViewReportError("watch_time must not be negative")
    if report.playback_position < 0:
        raise InvalidViewReportError("playback_position must not be negative")
    if report.playback_rate <= 0:
        raise InvalidViewReportError("playback_rate must be positive")
    if not report.user_id:
        raise InvalidViewReportError("user_id is required")
