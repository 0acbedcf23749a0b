from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from streamstats.core.errors import InvalidArgument, ResourceExhausted
from streamstats.services import queries, tracking
from streamstats.services.queries import get_overview, get_timeseries
from streamstats.services.rollups import refresh_buckets

DAY = date(2026, 3, 1)


def _at(hour, minute=0, day=DAY):
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def _refresh_all(db, events):
    seen = set()
    for event in events:
        occurred = event.occurred_at.replace(tzinfo=timezone.utc)
        key = (event.tenant_id, event.video_id, occurred.date(), occurred.hour)
        if key in seen:
            continue
        seen.add(key)
        refresh_buckets(
            db,
            tenant_id=event.tenant_id,
            video_id=event.video_id,
            day=occurred.date(),
            hour_start=occurred.replace(minute=0, second=0, microsecond=0),
        )
    db.commit()


@pytest.fixture
def sample_events(make_video, make_event):
    make_video("v1", title="Launch")
    make_video("v2", title="Teaser")
    make_video("v3", title="Outtakes")
    return [
        make_event("view", occurred_at=_at(9, 0), video_id="v1", session_id="s1", country="US"),
        make_event("view", occurred_at=_at(9, 10), video_id="v1", session_id="s2", country="us"),
        make_event("view", occurred_at=_at(10, 0), video_id="v1", viewer_user_id="u1", country="DE"),
        make_event("complete", occurred_at=_at(10, 30), video_id="v1", viewer_user_id="u1", position_seconds=600),
        make_event("view", occurred_at=_at(11, 0), video_id="v2", session_id="s3", country="FR"),
        make_event("exit", occurred_at=_at(11, 2), video_id="v2", session_id="s3", position_seconds=45),
        make_event("view", occurred_at=_at(8, 0, day=date(2026, 3, 2)), video_id="v1", session_id="s1"),
        make_event("view", occurred_at=_at(8, 0, day=date(2026, 3, 2)), video_id="v3", session_id="s4"),
        make_event("view", occurred_at=_at(9, 0), video_id="v1", session_id="s9", tenant_id="t2"),
    ]


def test_scenario_a_overview_falls_back_to_raw_events(db, make_video, clock, publisher, recording_refresher):
    make_video()

    tracking.track_event(db, tenant_id="t1", video_id="v1", event_type="view", session_id="s1")
    report = get_overview(db, tenant_id="t1", start=_at(9), end=_at(11))

    assert report.source == "raw"
    assert report.totals.views == 1
    assert report.totals.unique_viewers == 1


def test_scenario_b_deduped_view_leaves_overview_unchanged(db, make_video, clock, publisher, recording_refresher):
    make_video()

    tracking.track_event(db, tenant_id="t1", video_id="v1", event_type="view", session_id="s1")
    before = get_overview(db, tenant_id="t1", start=_at(9), end=_at(11))
    clock.set(_at(10, 5))
    result = tracking.track_event(db, tenant_id="t1", video_id="v1", event_type="view", session_id="s1")
    after = get_overview(db, tenant_id="t1", start=_at(9), end=_at(11))

    assert result.deduped is True
    assert after.as_dict()["totals"] == before.as_dict()["totals"]


def test_aggregate_and_raw_paths_agree(db, sample_events):
    start, end = _at(0), _at(23, day=date(2026, 3, 2))

    raw = get_overview(db, tenant_id="t1", start=start, end=end, top_n=10)
    _refresh_all(db, sample_events)
    aggregated = get_overview(db, tenant_id="t1", start=start, end=end, top_n=10)

    assert raw.source == "raw"
    assert aggregated.source == "aggregate"
    raw_body, agg_body = raw.as_dict(), aggregated.as_dict()
    for key in ("total_videos", "totals", "views_by_date", "top_videos", "top_countries"):
        assert raw_body[key] == agg_body[key]


def test_overview_totals_and_rankings(db, sample_events):
    report = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23, day=date(2026, 3, 2)), top_n=2)

    assert report.totals.views == 6
    assert report.totals.completes == 1
    assert report.totals.watch_time_seconds == pytest.approx(645.0)
    assert report.totals.avg_watch_time_seconds == pytest.approx(645.0 / 6)
    assert [item["video_id"] for item in report.top_videos] == ["v1", "v2"]
    assert report.top_videos[0]["title"] == "Launch"
    assert report.top_countries == [
        {"country_code": "US", "views": 2},
        {"country_code": "DE", "views": 1},
    ]
    assert [item["date"] for item in report.views_by_date] == ["2026-03-01", "2026-03-02"]
    assert [item["views"] for item in report.views_by_date] == [4, 2]


def test_overview_can_filter_to_one_video(db, sample_events):
    report = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23), video_id="v2")

    assert report.totals.views == 1
    assert [item["video_id"] for item in report.top_videos] == ["v2"]


def test_overview_range_covers_whole_days(db, sample_events):
    report = get_overview(db, tenant_id="t1", start=_at(10, 59), end=_at(11, 0))

    assert report.totals.views == 4


@pytest.mark.parametrize("top_n, expected", [(0, 1), (-5, 1), (500, 3), (None, 3)])
def test_top_n_is_clamped(db, sample_events, top_n, expected):
    report = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23, day=date(2026, 3, 2)), top_n=top_n)

    assert len(report.top_videos) == expected


def test_overview_without_data_is_empty(db):
    report = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23))

    assert report.totals.views == 0
    assert report.totals.avg_watch_time_seconds == 0.0
    assert report.top_videos == []
    assert report.views_by_date == []


def test_overview_rejects_inverted_range(db):
    with pytest.raises(InvalidArgument):
        get_overview(db, tenant_id="t1", start=_at(12), end=_at(11))


def test_fallback_scan_is_bounded_by_rows(db, sample_events, monkeypatch):
    monkeypatch.setattr(queries.settings, "FALLBACK_MAX_ROWS", 3)

    with pytest.raises(ResourceExhausted):
        get_overview(db, tenant_id="t1", start=_at(0), end=_at(23))


def test_fallback_scan_is_bounded_by_range(db, sample_events, monkeypatch):
    monkeypatch.setattr(queries.settings, "FALLBACK_MAX_RANGE_DAYS", 7)

    with pytest.raises(ResourceExhausted):
        get_overview(db, tenant_id="t1", start=_at(0), end=_at(0) + timedelta(days=10))


def test_aggregates_bypass_fallback_bounds(db, sample_events, monkeypatch):
    _refresh_all(db, sample_events)
    monkeypatch.setattr(queries.settings, "FALLBACK_MAX_ROWS", 1)

    report = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23))

    assert report.totals.views == 4


def test_rollup_overview_without_country_data_needs_no_raw_scan(db, make_video, make_event, monkeypatch):
    make_video()
    events = [make_event("view", occurred_at=_at(9, minute), session_id=f"s{minute}") for minute in range(3)]
    _refresh_all(db, events)
    monkeypatch.setattr(queries.settings, "FALLBACK_MAX_ROWS", 1)

    report = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23))

    assert report.source == "aggregate"
    assert report.totals.views == 3
    assert report.top_countries == []


def test_rollup_overview_ignores_raw_range_limit(db, make_video, make_event, monkeypatch):
    make_video()
    _refresh_all(db, [make_event("view", occurred_at=_at(9), session_id="s1")])
    monkeypatch.setattr(queries.settings, "FALLBACK_MAX_RANGE_DAYS", 7)

    report = get_overview(db, tenant_id="t1", start=_at(0) - timedelta(days=10), end=_at(0) + timedelta(days=10))

    assert report.source == "aggregate"
    assert report.totals.views == 1


@pytest.fixture
def engagement_events(make_video, make_event):
    make_video("v1", title="Launch")
    make_video("v2", title="Teaser")
    make_video("v3", title="Unwatched")
    return [
        make_event("view", occurred_at=_at(9, 0), video_id="v1", session_id="s1"),
        make_event("view", occurred_at=_at(9, 1), video_id="v1", session_id="s2"),
        make_event("complete", occurred_at=_at(9, 20), video_id="v1", session_id="s1", position_seconds=600),
        make_event("like", occurred_at=_at(9, 21), video_id="v1", session_id="s1"),
        make_event("like", occurred_at=_at(9, 22), video_id="v1", session_id="s2"),
        make_event("comment", occurred_at=_at(9, 23), video_id="v1", session_id="s1"),
        make_event("share", occurred_at=_at(9, 24), video_id="v1", session_id="s2"),
        make_event("view", occurred_at=_at(10, 0), video_id="v2", session_id="s3"),
        make_event("comment", occurred_at=_at(10, 1), video_id="v2", session_id="s3"),
    ]


def test_overview_engagement_totals_and_completion_rates(db, engagement_events):
    report = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23))
    body = report.as_dict()

    assert report.total_videos == 3
    assert (report.totals.likes, report.totals.comments, report.totals.shares) == (2, 2, 1)
    assert body["totals"]["completion_rate"] == pytest.approx(33.33)
    assert [
        (item["video_id"], item["likes"], item["comments"], item["completion_rate"]) for item in report.top_videos
    ] == [("v1", 2, 1, 50.0), ("v2", 0, 1, 0.0)]


def test_overview_engagement_matches_between_sources(db, engagement_events):
    raw = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23))
    _refresh_all(db, engagement_events)
    aggregated = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23))

    assert aggregated.source == "aggregate"
    assert aggregated.as_dict()["totals"] == raw.as_dict()["totals"]
    assert aggregated.top_videos == raw.top_videos


def test_overview_total_videos_follows_video_filter(db, engagement_events):
    report = get_overview(db, tenant_id="t1", start=_at(0), end=_at(23), video_id="v2")

    assert report.total_videos == 1
    assert report.totals.comments == 1


def test_hour_timeseries_includes_bucket_containing_start(db, sample_events):
    _refresh_all(db, sample_events)

    hourly = get_timeseries(db, tenant_id="t1", video_id="v1", bucket="hour", start=_at(10, 30), end=_at(12))
    daily = get_timeseries(db, tenant_id="t1", video_id="v1", bucket="day", start=_at(10, 30), end=_at(12))

    assert [(point.bucket_start, point.views) for point in hourly] == [(_at(10), 1)]
    assert [point.bucket_start for point in daily] == [_at(0)]


def test_hour_timeseries_reads_rollups_only(db, sample_events):
    before = get_timeseries(db, tenant_id="t1", video_id="v1", bucket="hour", start=_at(0), end=_at(23))
    _refresh_all(db, sample_events)
    after = get_timeseries(db, tenant_id="t1", video_id="v1", bucket="HOUR", start=_at(9), end=_at(10))

    assert before == []
    assert [(point.bucket_start, point.views) for point in after] == [(_at(9), 2)]


def test_day_timeseries_uses_fallback(db, sample_events):
    points = get_timeseries(
        db,
        tenant_id="t1",
        video_id="v1",
        bucket="day",
        start=_at(0),
        end=_at(0, day=date(2026, 3, 3)),
    )

    assert [(point.bucket_start, point.views) for point in points] == [
        (_at(0), 3),
        (_at(0, day=date(2026, 3, 2)), 1),
    ]
    assert points[0].completes == 1
    assert points[0].unique_viewers == 3


def test_day_timeseries_end_is_exclusive(db, sample_events):
    points = get_timeseries(
        db, tenant_id="t1", video_id="v1", bucket="day", start=_at(0), end=_at(0, day=date(2026, 3, 2))
    )

    assert [point.bucket_start for point in points] == [_at(0)]


def test_timeseries_rejects_unknown_bucket(db):
    with pytest.raises(InvalidArgument):
        get_timeseries(db, tenant_id="t1", video_id="v1", bucket="week", start=_at(0), end=_at(1))


def test_queries_are_tenant_scoped(db, sample_events):
    report = get_overview(db, tenant_id="t2", start=_at(0), end=_at(23))

    assert report.totals.views == 1
    assert [item["video_id"] for item in report.top_videos] == ["v1"]
