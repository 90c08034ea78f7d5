"""Pydantic schemas for view analytics."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field


class ViewReportRequest(BaseModel):
    """View report sent periodically by the player."""

    video_token: str = Field(..., min_length=1, max_length=64, description="Public token of the video")
    watch_time: int = Field(..., ge=0, description="Seconds watched since the previous report")
    playback_position: int = Field(..., ge=0, description="Current playback position in seconds")
    playback_rate: float = Field(default=1.0, gt=0, le=16, description="Playback speed")
    report_id: Optional[str] = Field(
        None,
        min_length=1,
        max_length=128,
        description="Client-generated id; repeats inside the dedup window are not re-applied",
    )


class ViewRecordResponse(BaseModel):
    """Daily view record after a report was applied."""

    video_token: str
    user_id: str
    view_date: date
    watch_time: int
    max_playback_position: int
    playback_rate: float
    device_type: str
    report_count: int
    updated_at: datetime
    duplicate: bool = False


class VideoViewSummaryResponse(BaseModel):
    video_token: str
    title: str
    viewer_days: int
    total_views: int
    total_watch_time: int
    view_count: int

    class Config:
        from_attributes = True
