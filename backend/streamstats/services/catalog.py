"""Video catalog lookups (existence checks, durations) and the live view counter."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, update

from streamstats.models.models import Video
from streamstats.services.scope import TenantScope


@dataclass(frozen=True)
class VideoInfo:
    exists: bool
    duration_seconds: float | None = None
    owner_user_id: str | None = None
    title: str | None = None


MISSING_VIDEO = VideoInfo(exists=False)


def lookup_video(scope: TenantScope, video_id: str) -> VideoInfo:
    video = scope.videos().filter(Video.id == video_id).first()
    if video is None:
        return MISSING_VIDEO
    duration = float(video.duration_seconds) if video.duration_seconds is not None else None
    return VideoInfo(
        exists=True,
        duration_seconds=duration,
        owner_user_id=video.owner_user_id,
        title=video.title,
    )


def video_titles(scope: TenantScope, video_ids: set[str]) -> dict[str, str]:
    if not video_ids:
        return {}
    rows = scope.videos(Video.id, Video.title).filter(Video.id.in_(video_ids)).all()
    return {str(row.id): str(row.title or "") for row in rows}


def increment_view_count(scope: TenantScope, video_id: str) -> None:
    """Single-statement increment so concurrent writers never lose an update."""
    scope.db.execute(
        update(Video)
        .where(Video.tenant_id == scope.tenant_id, Video.id == video_id)
        .values(view_count=Video.view_count + 1)
    )


def count_videos(scope: TenantScope, video_id: str | None = None) -> int:
    query = scope.videos(func.count(Video.id))
    if video_id is not None:
        query = query.filter(Video.id == video_id)
    return int(query.scalar() or 0)
