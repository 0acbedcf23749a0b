"""
SQLAlchemy models for the engagement analytics service.
"""
import uuid

from sqlalchemy import (
    Column, Integer, String, Text, Float, Date, DateTime,
    CheckConstraint, Index, UniqueConstraint,
)
from sqlalchemy.sql import func

from streamstats.core.database import Base

EVENT_TYPES = ("view", "complete", "exit", "like", "dislike", "comment", "share", "download")


def _new_id() -> str:
    return str(uuid.uuid4())


class Video(Base):
    """Video catalog row (owned by the catalog collaborator; only view_count is written here)."""
    __tablename__ = "videos"

    id = Column(String(64), primary_key=True, default=_new_id)
    tenant_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="")
    duration_seconds = Column(Float, nullable=True)
    owner_user_id = Column(String(64), nullable=True)
    view_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint("view_count >= 0", name="ck_videos_view_count_nonnegative"),
    )


class EngagementEvent(Base):
    """Raw engagement event. Append-only: rows are never updated or deleted."""
    __tablename__ = "engagement_events"

    id = Column(String(36), primary_key=True, default=_new_id)
    tenant_id = Column(String(64), nullable=False)
    video_id = Column(String(64), nullable=False)
    viewer_user_id = Column(String(255), nullable=True)
    session_id = Column(String(255), nullable=True)
    # Derived dedup identity ("user:<id>" / "session:<id>"), null when unidentified.
    viewer_key = Column(String(264), nullable=True)
    event_type = Column(String(20), nullable=False)
    position_seconds = Column(Float, nullable=True)

    device = Column(String(255), nullable=True)
    browser = Column(String(255), nullable=True)
    os = Column(String(255), nullable=True)
    country = Column(String(255), nullable=True)
    city = Column(String(255), nullable=True)
    referrer = Column(String(255), nullable=True)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    event_metadata = Column("metadata", Text, nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False)
    day_key = Column(Date, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "event_type IN ('view', 'complete', 'exit', 'like', 'dislike', 'comment', 'share', 'download')",
            name="ck_engagement_events_event_type",
        ),
        CheckConstraint(
            "position_seconds IS NULL OR position_seconds >= 0",
            name="ck_engagement_events_position_nonnegative",
        ),
        Index("idx_engagement_events_video_time", "tenant_id", "video_id", "occurred_at"),
        Index("idx_engagement_events_video_day", "tenant_id", "video_id", "day_key"),
        Index(
            "idx_engagement_events_dedup",
            "tenant_id", "video_id", "viewer_key", "event_type", "occurred_at",
        ),
    )


class VideoDailyAggregate(Base):
    """Per-day rollup, replaced wholesale on every refresh."""
    __tablename__ = "video_daily_aggregates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    video_id = Column(String(64), nullable=False)
    date_utc = Column(Date, nullable=False)
    views = Column(Integer, nullable=False, default=0)
    unique_viewers = Column(Integer, nullable=False, default=0)
    watch_time_seconds = Column(Float, nullable=False, default=0.0)
    completes = Column(Integer, nullable=False, default=0)
    likes = Column(Integer, nullable=False, default=0)
    comments = Column(Integer, nullable=False, default=0)
    shares = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "video_id", "date_utc", name="uq_video_daily_aggregates_key"),
        Index("idx_video_daily_aggregates_tenant_date", "tenant_id", "date_utc"),
    )


class VideoHourlyAggregate(Base):
    """Per-hour rollup; bucket_start_utc is truncated to :00:00."""
    __tablename__ = "video_hourly_aggregates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    video_id = Column(String(64), nullable=False)
    bucket_start_utc = Column(DateTime(timezone=True), nullable=False)
    views = Column(Integer, nullable=False, default=0)
    unique_viewers = Column(Integer, nullable=False, default=0)
    watch_time_seconds = Column(Float, nullable=False, default=0.0)
    completes = Column(Integer, nullable=False, default=0)
    likes = Column(Integer, nullable=False, default=0)
    comments = Column(Integer, nullable=False, default=0)
    shares = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "video_id", "bucket_start_utc", name="uq_video_hourly_aggregates_key"
        ),
    )


class VideoCountryDailyAggregate(Base):
    """Per-day, per-country view counts (ISO-3166 alpha-2 codes only)."""
    __tablename__ = "video_country_daily_aggregates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    video_id = Column(String(64), nullable=False)
    date_utc = Column(Date, nullable=False)
    country_code = Column(String(2), nullable=False)
    views = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "video_id", "date_utc", "country_code",
            name="uq_video_country_daily_aggregates_key",
        ),
        Index("idx_video_country_daily_aggregates_tenant_date", "tenant_id", "date_utc"),
    )
