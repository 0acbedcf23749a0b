"""
Bucket metric computation over raw events.

The aggregate maintainer and the query fallback both call into this module, so
a bucket computed on demand is numerically identical to the stored rollup.

Unique viewers follow the union rule: distinct authenticated user ids plus
distinct session ids of events without a user id. A viewer who logs in halfway
through a day is counted twice; that overcount is kept on purpose so rollups
stay comparable with historical data.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable

from sqlalchemy import case, distinct, func
from sqlalchemy.orm import Query

from streamstats.core.config import settings
from streamstats.core.errors import ResourceExhausted
from streamstats.models.models import EngagementEvent
from streamstats.services.scope import TenantScope

WATCH_TIME_EVENT_TYPES = ("complete", "exit")


@dataclass(frozen=True)
class BucketMetrics:
    views: int = 0
    unique_viewers: int = 0
    watch_time_seconds: float = 0.0
    completes: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0

    def __add__(self, other: "BucketMetrics") -> "BucketMetrics":
        return BucketMetrics(
            views=self.views + other.views,
            unique_viewers=self.unique_viewers + other.unique_viewers,
            watch_time_seconds=self.watch_time_seconds + other.watch_time_seconds,
            completes=self.completes + other.completes,
            likes=self.likes + other.likes,
            comments=self.comments + other.comments,
            shares=self.shares + other.shares,
        )

    @property
    def avg_watch_time_seconds(self) -> float:
        if self.views <= 0:
            return 0.0
        return self.watch_time_seconds / self.views

    @property
    def completion_rate(self) -> float:
        """Percent of views that reached a Complete event, 0 without views."""
        if self.views <= 0:
            return 0.0
        return round(100.0 * self.completes / self.views, 2)

    def as_dict(self) -> dict[str, Any]:
        return {
            "views": self.views,
            "unique_viewers": self.unique_viewers,
            "watch_time_seconds": self.watch_time_seconds,
            "completes": self.completes,
            "likes": self.likes,
            "comments": self.comments,
            "shares": self.shares,
        }


EMPTY_METRICS = BucketMetrics()


def count_where(condition):
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


def metric_columns() -> list:
    e = EngagementEvent
    return [
        count_where(e.event_type == "view").label("views"),
        func.count(distinct(e.viewer_user_id)).label("unique_users"),
        func.count(distinct(case((e.viewer_user_id.is_(None), e.session_id)))).label("unique_sessions"),
        func.coalesce(
            func.sum(
                case(
                    (e.event_type.in_(WATCH_TIME_EVENT_TYPES), func.coalesce(e.position_seconds, 0.0)),
                    else_=0.0,
                )
            ),
            0.0,
        ).label("watch_time_seconds"),
        count_where(e.event_type == "complete").label("completes"),
        count_where(e.event_type == "like").label("likes"),
        count_where(e.event_type == "comment").label("comments"),
        count_where(e.event_type == "share").label("shares"),
    ]


def _metrics_from_row(row: Any) -> BucketMetrics:
    if row is None:
        return EMPTY_METRICS
    return BucketMetrics(
        views=int(row.views or 0),
        unique_viewers=int(row.unique_users or 0) + int(row.unique_sessions or 0),
        watch_time_seconds=float(row.watch_time_seconds or 0.0),
        completes=int(row.completes or 0),
        likes=int(row.likes or 0),
        comments=int(row.comments or 0),
        shares=int(row.shares or 0),
    )


def metrics_for_day(scope: TenantScope, *, video_id: str, day: date) -> BucketMetrics:
    row = (
        scope.events(*metric_columns(), video_id=video_id)
        .filter(EngagementEvent.day_key == day)
        .first()
    )
    return _metrics_from_row(row)


def metrics_for_window(
    scope: TenantScope, *, video_id: str, start: datetime, end: datetime
) -> BucketMetrics:
    """Metrics for raw events in the half-open window [start, end)."""
    row = (
        scope.events(*metric_columns(), video_id=video_id)
        .filter(EngagementEvent.occurred_at >= start, EngagementEvent.occurred_at < end)
        .first()
    )
    return _metrics_from_row(row)


def metrics_by_video_day(
    scope: TenantScope, *, first_day: date, last_day: date, video_id: str | None = None
) -> dict[tuple[str, date], BucketMetrics]:
    """Per-(video, day) metrics for an inclusive day range, grouped the same way rollups are keyed."""
    e = EngagementEvent
    base = scope.events(video_id=video_id).filter(e.day_key >= first_day, e.day_key <= last_day)
    guard_scan(base, what="raw events")
    rows = (
        scope.events(e.video_id, e.day_key, *metric_columns(), video_id=video_id)
        .filter(e.day_key >= first_day, e.day_key <= last_day)
        .group_by(e.video_id, e.day_key)
        .all()
    )
    return {(str(row.video_id), row.day_key): _metrics_from_row(row) for row in rows}


def normalize_country_code(value: Any) -> str | None:
    code = str(value or "").strip().upper()
    if len(code) != 2 or not code.isalpha():
        return None
    return code


def merge_country_counts(rows: Iterable[Any]) -> dict[tuple[str, date, str], int]:
    """Fold (video_id, day_key, country, views) rows into normalized country buckets."""
    merged: dict[tuple[str, date, str], int] = {}
    for row in rows:
        code = normalize_country_code(row.country)
        if code is None:
            continue
        key = (str(row.video_id), row.day_key, code)
        merged[key] = merged.get(key, 0) + int(row.views or 0)
    return merged


def country_views_by_video_day(
    scope: TenantScope, *, first_day: date, last_day: date, video_id: str | None = None
) -> dict[tuple[str, date, str], int]:
    e = EngagementEvent
    rows = (
        scope.events(e.video_id, e.day_key, e.country, func.count(e.id).label("views"), video_id=video_id)
        .filter(e.event_type == "view", e.day_key >= first_day, e.day_key <= last_day)
        .filter(e.country.isnot(None))
        .group_by(e.video_id, e.day_key, e.country)
        .all()
    )
    return merge_country_counts(rows)


def guard_scan(query: Query, *, what: str) -> int:
    """Count rows a raw scan would touch, refusing scans above FALLBACK_MAX_ROWS."""
    limit = max(1, int(getattr(settings, "FALLBACK_MAX_ROWS", 250_000)))
    # Counting a LIMIT-ed subquery keeps the count itself bounded.
    capped = query.with_entities(EngagementEvent.id).limit(limit + 1).subquery()
    rows = int(query.session.query(func.count()).select_from(capped).scalar() or 0)
    if rows > limit:
        raise ResourceExhausted(f"Scan of {what} exceeds {limit} rows; narrow the date range")
    return rows
