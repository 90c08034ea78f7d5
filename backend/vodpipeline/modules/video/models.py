"""Video catalog models.

A Video moves through ``uploaded -> transcoding -> ready`` (or ``failed``);
completed renditions are recorded one row each as they are published.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vodpipeline.core.database import Base, utcnow


class VideoStatus(str, Enum):
    """Encode status of a video."""

    UPLOADED = "uploaded"
    TRANSCODING = "transcoding"
    READY = "ready"
    FAILED = "failed"


def generate_public_token() -> str:
    return uuid.uuid4().hex


class Video(Base):
    """A catalogued video and its transcode state.

    The internal ``id`` never leaves the service; published paths and URLs use
    ``public_token``.
    """

    __tablename__ = "videos"
    __table_args__ = (
        Index("ix_videos_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public_token: Mapped[str] = mapped_column(
        String(64), unique=True, index=True, nullable=False, default=generate_public_token
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_path: Mapped[str] = mapped_column(String(1024), nullable=False)

    # Transcode state
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VideoStatus.UPLOADED.value
    )
    master_playlist_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    transcode_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lease held by the worker processing the video
    lease_owner: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Denormalized, see ViewRecord
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    ready_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    renditions: Mapped[list["VideoRendition"]] = relationship(
        "VideoRendition",
        back_populates="video",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="VideoRendition.bandwidth",
    )

    @property
    def completed_renditions(self) -> list[str]:
        return [rendition.name for rendition in self.renditions]

    @property
    def is_playable(self) -> bool:
        """At least one rendition is listed in a published master playlist."""
        return self.master_playlist_key is not None and bool(self.renditions)

    def __repr__(self) -> str:
        return f"<Video {self.id} {self.public_token} - {self.status}>"


class VideoRendition(Base):
    """A rendition that has been written to storage and published."""

    __tablename__ = "video_renditions"
    __table_args__ = (
        UniqueConstraint("video_id", "name", name="uq_video_renditions_video_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    video_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(20), nullable=False)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    bandwidth: Mapped[int] = mapped_column(Integer, nullable=False)  # bps, video + audio
    playlist_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    segment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    video: Mapped["Video"] = relationship("Video", back_populates="renditions")

    def __repr__(self) -> str:
        return f"<VideoRendition {self.video_id} - {self.name}>"
