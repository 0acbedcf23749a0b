"""
Aggregate maintenance: recompute hour/day/country buckets from raw events.

Buckets are recomputed from scratch and replaced, never incremented, so a
refresh is idempotent and safe to repeat. A lost refresh only delays the
rollup; the query fallback and the periodic sweep cover the gap.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timedelta
from typing import Any, Callable

from sqlalchemy import distinct
from sqlalchemy.orm import Session

from streamstats.core.config import settings
from streamstats.core.time import day_window_utc, ensure_utc, now_utc, truncate_to_hour
from streamstats.models.models import (
    EngagementEvent,
    VideoCountryDailyAggregate,
    VideoDailyAggregate,
    VideoHourlyAggregate,
)
from streamstats.services.locks import StripedLock
from streamstats.services.metrics import (
    country_views_by_video_day,
    metrics_for_day,
    metrics_for_window,
)
from streamstats.services.scope import TenantScope, active_tenant_ids

logger = logging.getLogger(__name__)

bucket_locks = StripedLock(stripes=128)


def refresh_daily(db: Session, *, tenant_id: str, video_id: str, day: date) -> dict[str, Any]:
    scope = TenantScope(db, tenant_id)
    metrics = metrics_for_day(scope, video_id=video_id, day=day)
    values = {**metrics.as_dict(), "updated_at": now_utc()}
    scope.upsert(
        VideoDailyAggregate,
        key={"video_id": video_id, "date_utc": day},
        values=values,
    )
    return values


def refresh_hourly(db: Session, *, tenant_id: str, video_id: str, hour_start: datetime) -> dict[str, Any]:
    scope = TenantScope(db, tenant_id)
    bucket_start = truncate_to_hour(hour_start)
    metrics = metrics_for_window(
        scope,
        video_id=video_id,
        start=bucket_start,
        end=bucket_start + timedelta(hours=1),
    )
    values = {**metrics.as_dict(), "updated_at": now_utc()}
    scope.upsert(
        VideoHourlyAggregate,
        key={"video_id": video_id, "bucket_start_utc": bucket_start},
        values=values,
    )
    return values


def refresh_country_daily(db: Session, *, tenant_id: str, video_id: str, day: date) -> dict[str, int]:
    scope = TenantScope(db, tenant_id)
    counts = {
        code: views
        for (_, _, code), views in country_views_by_video_day(
            scope, first_day=day, last_day=day, video_id=video_id
        ).items()
    }
    # Codes already stored but no longer present in raw data are zeroed, never deleted.
    stored = {
        str(row.country_code)
        for row in scope.country_daily(VideoCountryDailyAggregate.country_code, video_id=video_id)
        .filter(VideoCountryDailyAggregate.date_utc == day)
        .all()
    }
    updated_at = now_utc()
    for code in sorted(stored | set(counts)):
        scope.upsert(
            VideoCountryDailyAggregate,
            key={"video_id": video_id, "date_utc": day, "country_code": code},
            values={"views": int(counts.get(code, 0)), "updated_at": updated_at},
        )
    return counts


def refresh_buckets(
    db: Session,
    *,
    tenant_id: str,
    video_id: str,
    day: date,
    hour_start: datetime,
) -> dict[str, Any]:
    """Recompute and replace the daily, hourly and country rows touching one event. Does not commit."""
    daily = refresh_daily(db, tenant_id=tenant_id, video_id=video_id, day=day)
    hourly = refresh_hourly(db, tenant_id=tenant_id, video_id=video_id, hour_start=hour_start)
    countries = refresh_country_daily(db, tenant_id=tenant_id, video_id=video_id, day=day)
    return {"daily": daily, "hourly": hourly, "countries": countries}


def refresh_and_commit(db: Session, *, tenant_id: str, video_id: str, day: date, hour_start: datetime) -> dict[str, Any]:
    # Serialize refreshes of the same bucket so replaces land in order.
    with bucket_locks.hold((tenant_id, video_id, day)):
        result = refresh_buckets(db, tenant_id=tenant_id, video_id=video_id, day=day, hour_start=hour_start)
        db.commit()
    return result


class AggregateRefresher:
    """Runs bucket refreshes off the request path; failures are logged, never raised."""

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        inline: bool | None = None,
        max_workers: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._inline = inline
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None

    @property
    def inline(self) -> bool:
        if self._inline is not None:
            return bool(self._inline)
        return bool(getattr(settings, "AGGREGATE_REFRESH_INLINE", False))

    def _get_session_factory(self) -> Callable[[], Session]:
        if self._session_factory is None:
            from streamstats.core.database import SessionLocal

            self._session_factory = SessionLocal
        return self._session_factory

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            workers = self._max_workers or int(getattr(settings, "AGGREGATE_REFRESH_WORKERS", 4))
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, workers),
                thread_name_prefix="aggregate-refresh",
            )
        return self._executor

    def schedule(self, *, tenant_id: str, video_id: str, occurred_at: datetime) -> Future | None:
        occurred = ensure_utc(occurred_at)
        kwargs = {
            "tenant_id": tenant_id,
            "video_id": video_id,
            "day": occurred.date(),
            "hour_start": truncate_to_hour(occurred),
        }
        if self.inline:
            self._run(**kwargs)
            return None
        try:
            return self._get_executor().submit(self._run, **kwargs)
        except RuntimeError as e:
            # Executor already shut down (process exiting); the sweep will catch up.
            logger.warning("Aggregate refresh not scheduled for %s/%s: %s", tenant_id, video_id, e)
            return None

    def _run(self, **kwargs: Any) -> None:
        db = self._get_session_factory()()
        try:
            refresh_and_commit(db, **kwargs)
        except Exception:
            db.rollback()
            logger.exception(
                "Aggregate refresh failed for tenant=%s video=%s day=%s",
                kwargs.get("tenant_id"),
                kwargs.get("video_id"),
                kwargs.get("day"),
            )
        finally:
            db.close()

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None


aggregate_refresher = AggregateRefresher()


def _active_videos(db: Session, *, start: datetime, end: datetime) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for tenant_id in active_tenant_ids(db, since=start, until=end):
        scope = TenantScope(db, tenant_id)
        rows = (
            scope.events(distinct(EngagementEvent.video_id))
            .filter(EngagementEvent.occurred_at >= start, EngagementEvent.occurred_at < end)
            .all()
        )
        pairs.extend((tenant_id, str(row[0])) for row in rows)
    return pairs


def sweep_recent_buckets(db: Session, *, now: datetime | None = None) -> dict[str, Any]:
    """
    Re-refresh the last complete hour and the previous UTC day for every
    (tenant, video) with events in those windows.

    Repairs rollups whose per-event refresh was lost (crash, executor
    shutdown, transient DB errors).
    """
    current = ensure_utc(now) if now is not None else now_utc()
    hour_end = truncate_to_hour(current)
    hour_start = hour_end - timedelta(hours=1)
    previous_day = current.date() - timedelta(days=1)
    day_start, day_end = day_window_utc(previous_day)

    hourly_pairs = _active_videos(db, start=hour_start, end=hour_end)
    for tenant_id, video_id in hourly_pairs:
        with bucket_locks.hold((tenant_id, video_id, hour_start.date())):
            refresh_hourly(db, tenant_id=tenant_id, video_id=video_id, hour_start=hour_start)
            db.commit()

    daily_pairs = _active_videos(db, start=day_start, end=day_end)
    for tenant_id, video_id in daily_pairs:
        with bucket_locks.hold((tenant_id, video_id, previous_day)):
            refresh_daily(db, tenant_id=tenant_id, video_id=video_id, day=previous_day)
            refresh_country_daily(db, tenant_id=tenant_id, video_id=video_id, day=previous_day)
            db.commit()

    summary = {
        "hour_start": hour_start.isoformat(),
        "day_key": previous_day.isoformat(),
        "hourly_refreshed": len(hourly_pairs),
        "daily_refreshed": len(daily_pairs),
    }
    logger.info(
        "Rollup sweep refreshed %s hourly and %s daily buckets",
        summary["hourly_refreshed"],
        summary["daily_refreshed"],
    )
    return summary
