"""Video pipeline schema.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates videos, video_renditions, view_records and view_report_receipts.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create videos table
    op.create_table(
        "videos",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("public_token", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_path", sa.String(1024), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="uploaded"),
        sa.Column("master_playlist_key", sa.String(1024), nullable=True),
        sa.Column("transcode_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("ready_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_videos_public_token"), "videos", ["public_token"], unique=True)
    op.create_index("ix_videos_status_created", "videos", ["status", "created_at"], unique=False)

    # Create video_renditions table
    op.create_table(
        "video_renditions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("video_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(20), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("bandwidth", sa.Integer(), nullable=False),
        sa.Column("playlist_key", sa.String(1024), nullable=False),
        sa.Column("segment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["video_id"], ["videos.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("video_id", "name", name="uq_video_renditions_video_name"),
    )
    op.create_index(op.f("ix_video_renditions_video_id"), "video_renditions", ["video_id"], unique=False)

    # Create view_records table
    op.create_table(
        "view_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("video_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("view_date", sa.Date(), nullable=False),
        sa.Column("watch_time", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_playback_position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("playback_rate", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("device_type", sa.String(20), nullable=False, server_default="desktop"),
        sa.Column("report_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["video_id"], ["videos.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("video_id", "user_id", "view_date", name="uq_view_records_video_user_day"),
    )
    op.create_index(op.f("ix_view_records_video_id"), "view_records", ["video_id"], unique=False)
    op.create_index(op.f("ix_view_records_user_id"), "view_records", ["user_id"], unique=False)

    # Create view_report_receipts table
    op.create_table(
        "view_report_receipts",
        sa.Column("video_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("report_id", sa.String(128), nullable=False),
        sa.Column("view_date", sa.Date(), nullable=False),
        sa.Column("received_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["video_id"], ["videos.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("video_id", "user_id", "report_id"),
    )
    op.create_index(
        op.f("ix_view_report_receipts_received_at"),
        "view_report_receipts",
        ["received_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_view_report_receipts_received_at"), table_name="view_report_receipts")
    op.drop_table("view_report_receipts")
    op.drop_index(op.f("ix_view_records_user_id"), table_name="view_records")
    op.drop_index(op.f("ix_view_records_video_id"), table_name="view_records")
    op.drop_table("view_records")
    op.drop_index(op.f("ix_video_renditions_video_id"), table_name="video_renditions")
    op.drop_table("video_renditions")
    op.drop_index("ix_videos_status_created", table_name="videos")
    op.drop_index(op.f("ix_videos_public_token"), table_name="videos")
    op.drop_table("videos")
