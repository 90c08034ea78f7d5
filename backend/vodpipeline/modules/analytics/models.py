"""View analytics models."""

from datetime import date, datetime
from enum import Enum

from sqlalchemy import Date, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from vodpipeline.core.database import Base, utcnow


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"


class ViewRecord(Base):
    """Daily viewing activity of one user on one video.

    At most one row exists per (video, user, day). ``watch_time`` only grows
    within a day and ``max_playback_position`` never decreases.
    """

    __tablename__ = "view_records"
    __table_args__ = (
        UniqueConstraint("video_id", "user_id", "view_date", name="uq_view_records_video_user_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    video_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("videos.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    view_date: Mapped[date] = mapped_column(Date, nullable=False)
    watch_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # seconds
    max_playback_position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # seconds
    playback_rate: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    device_type: Mapped[str] = mapped_column(String(20), nullable=False, default=DeviceClass.DESKTOP.value)
    report_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<ViewRecord {self.video_id}/{self.user_id}/{self.view_date}>"


class ViewReportReceipt(Base):
    """Client report id already applied, kept for the deduplication window."""

    __tablename__ = "view_report_receipts"

    video_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("videos.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    report_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    view_date: Mapped[date] = mapped_column(Date, nullable=False)  # day the report was applied to
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
