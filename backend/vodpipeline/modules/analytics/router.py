"""View analytics API router."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from vodpipeline.core.config import Settings, get_settings
from vodpipeline.core.database import get_db
from vodpipeline.core.identity import CallerIdentity, get_caller_identity, require_admin
from vodpipeline.modules.analytics.schemas import (
    VideoViewSummaryResponse,
    ViewRecordResponse,
    ViewReportRequest,
)
from vodpipeline.modules.analytics.service import (
    InvalidViewReportError,
    ViewAggregator,
    ViewReport,
    classify_device,
)
from vodpipeline.modules.video.catalog import VideoNotFoundError

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.post("/views", response_model=ViewRecordResponse)
async def report_view(
    body: ViewReportRequest,
    user_agent: Optional[str] = Header(default=None),
    caller: CallerIdentity = Depends(get_caller_identity),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Record playback activity of the calling user."""
    aggregator = ViewAggregator(db, settings)
    try:
        video_id = await aggregator.video_id_for_token(body.video_token)
        result = await aggregator.report_view(
            ViewReport(
                video_id=video_id,
                user_id=caller.user_id,
                watch_time=body.watch_time,
                playback_position=body.playback_position,
                playback_rate=body.playback_rate,
                device_type=classify_device(user_agent),
                report_id=body.report_id,
            )
        )
    except VideoNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    except InvalidViewReportError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    record = result.record
    return ViewRecordResponse(
        video_token=body.video_token,
        user_id=record.user_id,
        view_date=record.view_date,
        watch_time=record.watch_time,
        max_playback_position=record.max_playback_position,
        playback_rate=record.playback_rate,
        device_type=record.device_type,
        report_count=record.report_count,
        updated_at=record.updated_at,
        duplicate=result.duplicate,
    )


@router.get("/views/summary", response_model=list[VideoViewSummaryResponse])
async def get_view_summary(
    _admin: CallerIdentity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Per-video viewing totals, most viewed first."""
    summaries = await ViewAggregator(db, settings).view_summary()
    return [
        VideoViewSummaryResponse(
            video_token=summary.public_token,
            title=summary.title,
            viewer_days=summary.viewer_days,
            total_views=summary.total_views,
            total_watch_time=summary.total_watch_time,
            view_count=summary.view_count,
        )
        for summary in summaries
    ]
