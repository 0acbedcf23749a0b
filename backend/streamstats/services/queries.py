"""
Overview and time-series queries.

Reads prefer the rollup tables. When a range has no daily rollup rows at all
(e.g. right after a video's first view, before the refresh lands) the same
shape is computed from raw events with the metric function the maintainer
uses, so both paths agree number for number.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from streamstats.core.config import settings
from streamstats.core.errors import InvalidArgument, ResourceExhausted
from streamstats.core.time import day_start_utc, ensure_utc, truncate_to_hour
from streamstats.models.models import (
    VideoCountryDailyAggregate,
    VideoDailyAggregate,
    VideoHourlyAggregate,
)
from streamstats.services.catalog import count_videos, video_titles
from streamstats.services.metrics import (
    EMPTY_METRICS,
    BucketMetrics,
    country_views_by_video_day,
    metrics_by_video_day,
)
from streamstats.services.scope import TenantScope, storage_errors

logger = logging.getLogger(__name__)

SOURCE_AGGREGATE = "aggregate"
SOURCE_RAW = "raw"
TIMESERIES_BUCKETS = ("hour", "day")


@dataclass
class OverviewReport:
    start: datetime
    end: datetime
    totals: BucketMetrics
    total_videos: int = 0
    views_by_date: list[dict[str, Any]] = field(default_factory=list)
    top_videos: list[dict[str, Any]] = field(default_factory=list)
    top_countries: list[dict[str, Any]] = field(default_factory=list)
    source: str = SOURCE_AGGREGATE

    def as_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "total_videos": self.total_videos,
            "totals": {
                **self.totals.as_dict(),
                "avg_watch_time_seconds": self.totals.avg_watch_time_seconds,
                "completion_rate": self.totals.completion_rate,
            },
            "views_by_date": self.views_by_date,
            "top_videos": self.top_videos,
            "top_countries": self.top_countries,
            "source": self.source,
        }


@dataclass(frozen=True)
class TimeseriesPoint:
    bucket_start: datetime
    views: int
    unique_viewers: int
    watch_time_seconds: float
    completes: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "bucket_start": self.bucket_start.isoformat(),
            "views": self.views,
            "unique_viewers": self.unique_viewers,
            "watch_time_seconds": self.watch_time_seconds,
            "completes": self.completes,
        }


def _require_range(start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
    if start is None or end is None:
        raise InvalidArgument("start and end are required")
    start_utc = ensure_utc(start)
    end_utc = ensure_utc(end)
    if start_utc > end_utc:
        raise InvalidArgument("start must not be after end")
    return start_utc, end_utc


def clamp_top_n(top_n: int | None) -> int:
    limit = int(settings.TOP_N_MAX)
    if top_n is None:
        return max(1, min(int(settings.TOP_N_DEFAULT), limit))
    return max(1, min(int(top_n), limit))


def check_fallback_range(first_day: date, last_day: date) -> None:
    max_days = int(settings.FALLBACK_MAX_RANGE_DAYS)
    span = (last_day - first_day).days + 1
    if span > max_days:
        raise ResourceExhausted(
            f"Range of {span} days has no rollups and exceeds the {max_days}-day raw scan limit"
        )


def _metrics_from_aggregate(row: Any) -> BucketMetrics:
    return BucketMetrics(
        views=int(row.views or 0),
        unique_viewers=int(row.unique_viewers or 0),
        watch_time_seconds=float(row.watch_time_seconds or 0.0),
        completes=int(row.completes or 0),
        likes=int(row.likes or 0),
        comments=int(row.comments or 0),
        shares=int(row.shares or 0),
    )


def daily_buckets(
    scope: TenantScope, *, first_day: date, last_day: date, video_id: str | None = None
) -> tuple[dict[tuple[str, date], BucketMetrics], str]:
    """Per-(video, day) metrics for an inclusive day range, aggregate-first with raw fallback."""
    rows = (
        scope.daily(video_id=video_id)
        .filter(VideoDailyAggregate.date_utc >= first_day, VideoDailyAggregate.date_utc <= last_day)
        .all()
    )
    if rows:
        return {(str(row.video_id), row.date_utc): _metrics_from_aggregate(row) for row in rows}, SOURCE_AGGREGATE

    check_fallback_range(first_day, last_day)
    logger.info(
        "No daily rollups for tenant %s in %s..%s; computing from raw events",
        scope.tenant_id,
        first_day,
        last_day,
    )
    return metrics_by_video_day(scope, first_day=first_day, last_day=last_day, video_id=video_id), SOURCE_RAW


def country_totals(
    scope: TenantScope, *, first_day: date, last_day: date, source: str, video_id: str | None = None
) -> dict[str, int]:
    """
    Views per country for an inclusive day range, read from the same source
    the daily buckets came from.

    Country rows exist only for views that carried a valid code, so an
    aggregate-backed overview may legitimately have none. The raw path relies
    on the bounds daily_buckets already enforced for the same range.
    """
    totals: dict[str, int] = {}
    if source == SOURCE_AGGREGATE:
        rows = (
            scope.country_daily(video_id=video_id)
            .filter(
                VideoCountryDailyAggregate.date_utc >= first_day,
                VideoCountryDailyAggregate.date_utc <= last_day,
            )
            .all()
        )
        for row in rows:
            totals[row.country_code] = totals.get(row.country_code, 0) + int(row.views or 0)
        return totals

    counts = country_views_by_video_day(scope, first_day=first_day, last_day=last_day, video_id=video_id)
    for (_, _, code), views in counts.items():
        totals[code] = totals.get(code, 0) + views
    return totals


def _ranked(totals: dict[str, int], limit: int) -> list[tuple[str, int]]:
    ranked = sorted(((key, views) for key, views in totals.items() if views > 0), key=lambda item: (-item[1], item[0]))
    return ranked[:limit]


def get_overview(
    db: Session,
    *,
    tenant_id: str,
    start: datetime,
    end: datetime,
    top_n: int | None = None,
    video_id: str | None = None,
) -> OverviewReport:
    """
    Totals, daily series, top videos and top countries for `[start, end]`.

    The range covers whole UTC days from start.date() through end.date(),
    matching the granularity of the daily rollups. The source (rollups or raw
    events) is chosen once by the daily buckets; countries follow it.
    """
    scope = TenantScope(db, tenant_id)
    start_utc, end_utc = _require_range(start, end)
    first_day, last_day = start_utc.date(), end_utc.date()
    limit = clamp_top_n(top_n)
    video_filter = str(video_id).strip() if video_id else None

    with storage_errors(db, "reading overview"):
        buckets, source = daily_buckets(scope, first_day=first_day, last_day=last_day, video_id=video_filter)
        countries = country_totals(
            scope, first_day=first_day, last_day=last_day, source=source, video_id=video_filter
        )
        total_videos = count_videos(scope, video_filter)

        totals = EMPTY_METRICS
        per_day: dict[date, BucketMetrics] = {}
        per_video: dict[str, BucketMetrics] = {}
        for (bucket_video, day), metrics in buckets.items():
            totals = totals + metrics
            per_day[day] = per_day.get(day, EMPTY_METRICS) + metrics
            per_video[bucket_video] = per_video.get(bucket_video, EMPTY_METRICS) + metrics

        top_video_ids = _ranked({vid: m.views for vid, m in per_video.items()}, limit)
        titles = video_titles(scope, {vid for vid, _ in top_video_ids})

    views_by_date = [
        {"date": day.isoformat(), **per_day[day].as_dict()} for day in sorted(per_day)
    ]
    top_videos = [
        {
            "video_id": vid,
            "title": titles.get(vid, ""),
            "views": views,
            "unique_viewers": per_video[vid].unique_viewers,
            "watch_time_seconds": per_video[vid].watch_time_seconds,
            "likes": per_video[vid].likes,
            "comments": per_video[vid].comments,
            "completion_rate": per_video[vid].completion_rate,
        }
        for vid, views in top_video_ids
    ]
    top_countries = [{"country_code": code, "views": views} for code, views in _ranked(countries, limit)]

    return OverviewReport(
        start=start_utc,
        end=end_utc,
        totals=totals,
        total_videos=total_videos,
        views_by_date=views_by_date,
        top_videos=top_videos,
        top_countries=top_countries,
        source=source,
    )


def _hourly_points(scope: TenantScope, *, video_id: str, start: datetime, end: datetime) -> list[TimeseriesPoint]:
    # The bucket containing `start` is included, as it is for day buckets.
    first_bucket = truncate_to_hour(start)
    rows = (
        scope.hourly(video_id=video_id)
        .filter(VideoHourlyAggregate.bucket_start_utc >= first_bucket, VideoHourlyAggregate.bucket_start_utc < end)
        .order_by(VideoHourlyAggregate.bucket_start_utc.asc())
        .all()
    )
    return [
        TimeseriesPoint(
            bucket_start=ensure_utc(row.bucket_start_utc),
            views=int(row.views or 0),
            unique_viewers=int(row.unique_viewers or 0),
            watch_time_seconds=float(row.watch_time_seconds or 0.0),
            completes=int(row.completes or 0),
        )
        for row in rows
    ]


def _daily_points(scope: TenantScope, *, video_id: str, start: datetime, end: datetime) -> list[TimeseriesPoint]:
    first_day = start.date()
    last_day = (end - timedelta(microseconds=1)).date()
    buckets, _ = daily_buckets(scope, first_day=first_day, last_day=last_day, video_id=video_id)
    return [
        TimeseriesPoint(
            bucket_start=day_start_utc(day),
            views=metrics.views,
            unique_viewers=metrics.unique_viewers,
            watch_time_seconds=metrics.watch_time_seconds,
            completes=metrics.completes,
        )
        for (_, day), metrics in sorted(buckets.items(), key=lambda item: item[0][1])
    ]


def get_timeseries(
    db: Session,
    *,
    tenant_id: str,
    video_id: str,
    bucket: str,
    start: datetime,
    end: datetime,
) -> list[TimeseriesPoint]:
    """
    Bucketed metrics for one video over the half-open range `[start, end)`.

    `hour` reads hourly rollups only; missing hours are simply absent.
    `day` reads daily rollups with the raw-event fallback.
    """
    scope = TenantScope(db, tenant_id)
    video_id = str(video_id or "").strip()
    if not video_id:
        raise InvalidArgument("video_id is required")
    bucket_name = str(bucket or "").strip().lower()
    if bucket_name not in TIMESERIES_BUCKETS:
        raise InvalidArgument(f"bucket must be one of {', '.join(TIMESERIES_BUCKETS)}")
    start_utc, end_utc = _require_range(start, end)
    if start_utc == end_utc:
        return []

    with storage_errors(db, "reading timeseries"):
        if bucket_name == "hour":
            return _hourly_points(scope, video_id=video_id, start=start_utc, end=end_utc)
        return _daily_points(scope, video_id=video_id, start=start_utc, end=end_utc)
