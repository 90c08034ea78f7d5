"""Pydantic schemas for video playback and pipeline administration."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class RenditionInfo(BaseModel):
    name: str
    width: int
    height: int
    bandwidth: int

    class Config:
        from_attributes = True


class PlaybackInfo(BaseModel):
    """Where a player can stream a video from, if anywhere yet."""

    video_token: str
    title: str
    status: str
    playable: bool
    master_playlist_url: Optional[str] = None
    renditions: list[RenditionInfo] = Field(default_factory=list)


class ResubmitResponse(BaseModel):
    video_token: str
    task_id: str
    status: str = "queued"


class PipelineStatusResponse(BaseModel):
    counts: dict[str, int]
    generated_at: datetime
