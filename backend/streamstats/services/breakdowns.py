"""
Per-video retention curve and attribute breakdowns, computed from raw events.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, func
from sqlalchemy.orm import Query, Session

from streamstats.core.errors import InvalidArgument, InvalidState, NotFound
from streamstats.core.time import ensure_utc
from streamstats.models.models import EngagementEvent
from streamstats.services.catalog import VideoInfo, lookup_video
from streamstats.services.metrics import (
    WATCH_TIME_EVENT_TYPES,
    count_where,
    guard_scan,
    normalize_country_code,
)
from streamstats.services.scope import TenantScope, storage_errors

logger = logging.getLogger(__name__)

RETENTION_STEPS = tuple(range(10, 101, 10))
ENGAGEMENT_TYPES = ("like", "dislike", "comment", "share", "download")


def _percent(part: float, whole: float) -> float:
    if whole <= 0:
        return 0.0
    return round(100.0 * part / whole, 2)


@dataclass
class RetentionCurve:
    video_id: str
    duration_seconds: float
    total_views: int
    retention: dict[int, float]
    average_retention: float
    viewers_at_position: list[dict[str, int]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "video_id": self.video_id,
            "duration_seconds": self.duration_seconds,
            "total_views": self.total_views,
            "retention": [{"percent": step, "retention": self.retention[step]} for step in RETENTION_STEPS],
            "average_retention": self.average_retention,
            "viewers_at_position": self.viewers_at_position,
        }


@dataclass(frozen=True)
class GroupRow:
    key: str
    count: int
    percentage: float
    avg_watch_time_seconds: float
    completion_rate: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "count": self.count,
            "percentage": self.percentage,
            "avg_watch_time_seconds": self.avg_watch_time_seconds,
            "completion_rate": self.completion_rate,
        }


@dataclass
class BreakdownReport:
    video_id: str
    total_events: int
    groups: dict[str, list[GroupRow]]

    def as_dict(self) -> dict[str, Any]:
        return {
            "video_id": self.video_id,
            "total_events": self.total_events,
            **{name: [row.as_dict() for row in rows] for name, rows in self.groups.items()},
        }


@dataclass
class EngagementReport:
    video_id: str
    likes: int
    dislikes: int
    comments: int
    shares: int
    downloads: int
    total_views: int
    like_ratio: float
    comment_ratio: float
    share_ratio: float
    engagement_over_time: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _require_video(scope: TenantScope, video_id: Any) -> tuple[str, VideoInfo]:
    vid = str(video_id or "").strip()
    if not vid:
        raise InvalidArgument("video_id is required")
    info = lookup_video(scope, vid)
    if not info.exists:
        raise NotFound(f"Video {vid} not found")
    return vid, info


def _in_range(query: Query, start: datetime | None, end: datetime | None) -> Query:
    start_utc = ensure_utc(start)
    end_utc = ensure_utc(end)
    if start_utc is not None and end_utc is not None and start_utc > end_utc:
        raise InvalidArgument("start must not be after end")
    if start_utc is not None:
        query = query.filter(EngagementEvent.occurred_at >= start_utc)
    if end_utc is not None:
        query = query.filter(EngagementEvent.occurred_at <= end_utc)
    return query


def get_retention(db: Session, *, tenant_id: str, video_id: str) -> RetentionCurve:
    """
    Share of viewers still watching at each 10% of the video's duration.

    retention[i] = 100 * (Exit/Complete events at or past duration*i/100) / (View events),
    clamped to [0, 100]. Exits can cluster, so the curve is not guaranteed monotonic.
    """
    scope = TenantScope(db, tenant_id)
    with storage_errors(db, "reading retention"):
        vid, info = _require_video(scope, video_id)
        duration = info.duration_seconds
        if duration is None or duration <= 0:
            raise InvalidState(f"Duration of video {vid} is not known yet")

        e = EngagementEvent
        total_views = int(
            scope.events(func.count(e.id), video_id=vid).filter(e.event_type == "view").scalar() or 0
        )
        # One row per distinct exit position keeps the read small regardless of event volume.
        position_rows = (
            scope.events(e.position_seconds, func.count(e.id), video_id=vid)
            .filter(e.event_type.in_(WATCH_TIME_EVENT_TYPES), e.position_seconds.isnot(None))
            .group_by(e.position_seconds)
            .all()
        )
    positions = [(float(position), int(count)) for position, count in position_rows]

    def reached(threshold: float) -> int:
        return sum(count for position, count in positions if position >= threshold)

    retention: dict[int, float] = {}
    for step in RETENTION_STEPS:
        if total_views <= 0:
            retention[step] = 0.0
            continue
        value = _percent(reached(duration * step / 100.0), total_views)
        retention[step] = min(100.0, max(0.0, value))

    viewers_at_position = [
        {"second": second, "viewers": reached(float(second))}
        for second in range(0, int(duration) + 1, 60)
    ]
    average = round(sum(retention.values()) / len(retention), 2)

    return RetentionCurve(
        video_id=vid,
        duration_seconds=duration,
        total_views=total_views,
        retention=retention,
        average_retention=average,
        viewers_at_position=viewers_at_position,
    )


def _normalize_key(dimension: str, value: Any) -> str | None:
    if dimension == "country":
        return normalize_country_code(value)
    key = str(value or "").strip()
    return key or None


def _group_by(
    scope: TenantScope,
    *,
    video_id: str,
    dimension: str,
    start: datetime | None,
    end: datetime | None,
    total_events: int,
) -> list[GroupRow]:
    e = EngagementEvent
    column = getattr(e, dimension)
    watched = and_(e.event_type.in_(WATCH_TIME_EVENT_TYPES), e.position_seconds.isnot(None))
    query = scope.events(
        column.label("group_key"),
        func.count(e.id).label("events"),
        func.coalesce(func.sum(case((watched, e.position_seconds), else_=0.0)), 0.0).label("watch_total"),
        count_where(watched).label("watch_events"),
        count_where(e.event_type == "view").label("views"),
        count_where(e.event_type == "complete").label("completes"),
        video_id=video_id,
    ).filter(column.isnot(None))
    rows = _in_range(query, start, end).group_by(column).all()

    # Raw values that differ only in whitespace or case (for countries) share a group.
    merged: dict[str, dict[str, float]] = {}
    for row in rows:
        key = _normalize_key(dimension, row.group_key)
        if key is None:
            continue
        bucket = merged.setdefault(key, {"count": 0, "watch_total": 0.0, "watch_events": 0, "views": 0, "completes": 0})
        bucket["count"] += int(row.events or 0)
        bucket["watch_total"] += float(row.watch_total or 0.0)
        bucket["watch_events"] += int(row.watch_events or 0)
        bucket["views"] += int(row.views or 0)
        bucket["completes"] += int(row.completes or 0)

    groups = [
        GroupRow(
            key=key,
            count=int(values["count"]),
            percentage=_percent(values["count"], total_events),
            avg_watch_time_seconds=(
                round(values["watch_total"] / values["watch_events"], 2) if values["watch_events"] else 0.0
            ),
            completion_rate=_percent(values["completes"], values["views"]),
        )
        for key, values in merged.items()
    ]
    groups.sort(key=lambda row: (-row.count, row.key))
    return groups


def _breakdown(
    db: Session,
    *,
    tenant_id: str,
    video_id: str,
    dimensions: tuple[str, ...],
    start: datetime | None,
    end: datetime | None,
) -> BreakdownReport:
    scope = TenantScope(db, tenant_id)
    with storage_errors(db, "reading breakdown"):
        vid, _ = _require_video(scope, video_id)
        # Blank attributes are excluded from groups but still count toward the total.
        total_events = guard_scan(_in_range(scope.events(video_id=vid), start, end), what="video events")
        groups = {
            dimension: _group_by(
                scope, video_id=vid, dimension=dimension, start=start, end=end, total_events=total_events
            )
            for dimension in dimensions
        }
    return BreakdownReport(video_id=vid, total_events=total_events, groups=groups)


def get_device_breakdown(
    db: Session, *, tenant_id: str, video_id: str, start: datetime | None = None, end: datetime | None = None
) -> BreakdownReport:
    return _breakdown(
        db, tenant_id=tenant_id, video_id=video_id, dimensions=("device", "browser", "os"), start=start, end=end
    )


def get_geography(
    db: Session, *, tenant_id: str, video_id: str, start: datetime | None = None, end: datetime | None = None
) -> BreakdownReport:
    return _breakdown(
        db, tenant_id=tenant_id, video_id=video_id, dimensions=("country", "city"), start=start, end=end
    )


def get_engagement(
    db: Session, *, tenant_id: str, video_id: str, start: datetime | None = None, end: datetime | None = None
) -> EngagementReport:
    scope = TenantScope(db, tenant_id)
    e = EngagementEvent
    with storage_errors(db, "reading engagement"):
        vid, _ = _require_video(scope, video_id)
        base = _in_range(scope.events(video_id=vid), start, end)
        guard_scan(base, what="video events")

        totals = _in_range(
            scope.events(
                *(count_where(e.event_type == kind).label(kind) for kind in ENGAGEMENT_TYPES),
                count_where(e.event_type == "view").label("views"),
                video_id=vid,
            ),
            start,
            end,
        ).one()

        daily_rows = (
            _in_range(
                scope.events(
                    e.day_key,
                    count_where(e.event_type == "like").label("likes"),
                    count_where(e.event_type == "comment").label("comments"),
                    count_where(e.event_type == "share").label("shares"),
                    video_id=vid,
                ),
                start,
                end,
            )
            .filter(e.event_type.in_(("like", "comment", "share")))
            .group_by(e.day_key)
            .order_by(e.day_key.asc())
            .all()
        )

    likes = int(totals.like or 0)
    dislikes = int(totals.dislike or 0)
    comments = int(totals.comment or 0)
    shares = int(totals.share or 0)
    total_views = int(totals.views or 0)

    return EngagementReport(
        video_id=vid,
        likes=likes,
        dislikes=dislikes,
        comments=comments,
        shares=shares,
        downloads=int(totals.download or 0),
        total_views=total_views,
        like_ratio=_percent(likes, likes + dislikes),
        comment_ratio=_percent(comments, total_views),
        share_ratio=_percent(shares, total_views),
        engagement_over_time=[
            {
                "date": row.day_key.isoformat(),
                "likes": int(row.likes or 0),
                "comments": int(row.comments or 0),
                "shares": int(row.shares or 0),
            }
            for row in daily_rows
        ],
    )
