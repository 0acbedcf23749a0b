"""create_engagement_analytics_tables

Revision ID: 3c1a7e5d9b20
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3c1a7e5d9b20"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "videos",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("owner_user_id", sa.String(length=64), nullable=True),
        sa.Column("view_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.CheckConstraint("view_count >= 0", name="ck_videos_view_count_nonnegative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_videos_tenant_id", "videos", ["tenant_id"], unique=False)

    op.create_table(
        "engagement_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("video_id", sa.String(length=64), nullable=False),
        sa.Column("viewer_user_id", sa.String(length=255), nullable=True),
        sa.Column("session_id", sa.String(length=255), nullable=True),
        sa.Column("viewer_key", sa.String(length=264), nullable=True),
        sa.Column("event_type", sa.String(length=20), nullable=False),
        sa.Column("position_seconds", sa.Float(), nullable=True),
        sa.Column("device", sa.String(length=255), nullable=True),
        sa.Column("browser", sa.String(length=255), nullable=True),
        sa.Column("os", sa.String(length=255), nullable=True),
        sa.Column("country", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=255), nullable=True),
        sa.Column("referrer", sa.String(length=255), nullable=True),
        sa.Column("utm_source", sa.String(length=255), nullable=True),
        sa.Column("utm_medium", sa.String(length=255), nullable=True),
        sa.Column("utm_campaign", sa.String(length=255), nullable=True),
        sa.Column("metadata", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("day_key", sa.Date(), nullable=False),
        sa.CheckConstraint(
            "event_type IN ('view', 'complete', 'exit', 'like', 'dislike', 'comment', 'share', 'download')",
            name="ck_engagement_events_event_type",
        ),
        sa.CheckConstraint(
            "position_seconds IS NULL OR position_seconds >= 0",
            name="ck_engagement_events_position_nonnegative",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_engagement_events_video_time",
        "engagement_events",
        ["tenant_id", "video_id", "occurred_at"],
        unique=False,
    )
    op.create_index(
        "idx_engagement_events_video_day",
        "engagement_events",
        ["tenant_id", "video_id", "day_key"],
        unique=False,
    )
    op.create_index(
        "idx_engagement_events_dedup",
        "engagement_events",
        ["tenant_id", "video_id", "viewer_key", "event_type", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "video_daily_aggregates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("video_id", sa.String(length=64), nullable=False),
        sa.Column("date_utc", sa.Date(), nullable=False),
        sa.Column("views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_viewers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("watch_time_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("completes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("likes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("comments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("shares", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "video_id", "date_utc", name="uq_video_daily_aggregates_key"),
    )
    op.create_index(
        "idx_video_daily_aggregates_tenant_date",
        "video_daily_aggregates",
        ["tenant_id", "date_utc"],
        unique=False,
    )

    op.create_table(
        "video_hourly_aggregates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("video_id", sa.String(length=64), nullable=False),
        sa.Column("bucket_start_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unique_viewers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("watch_time_seconds", sa.Float(), nullable=False, server_default="0"),
        sa.Column("completes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("likes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("comments", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("shares", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id", "video_id", "bucket_start_utc", name="uq_video_hourly_aggregates_key"
        ),
    )

    op.create_table(
        "video_country_daily_aggregates",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("video_id", sa.String(length=64), nullable=False),
        sa.Column("date_utc", sa.Date(), nullable=False),
        sa.Column("country_code", sa.String(length=2), nullable=False),
        sa.Column("views", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id",
            "video_id",
            "date_utc",
            "country_code",
            name="uq_video_country_daily_aggregates_key",
        ),
    )
    op.create_index(
        "idx_video_country_daily_aggregates_tenant_date",
        "video_country_daily_aggregates",
        ["tenant_id", "date_utc"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_video_country_daily_aggregates_tenant_date", table_name="video_country_daily_aggregates")
    op.drop_table("video_country_daily_aggregates")
    op.drop_table("video_hourly_aggregates")
    op.drop_index("idx_video_daily_aggregates_tenant_date", table_name="video_daily_aggregates")
    op.drop_table("video_daily_aggregates")
    op.drop_index("idx_engagement_events_dedup", table_name="engagement_events")
    op.drop_index("idx_engagement_events_video_day", table_name="engagement_events")
    op.drop_index("idx_engagement_events_video_time", table_name="engagement_events")
    op.drop_table("engagement_events")
    op.drop_index("ix_videos_tenant_id", table_name="videos")
    op.drop_table("videos")
