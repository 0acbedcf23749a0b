from __future__ import annotations

import os

# Must run before any streamstats import: settings and the engine are built at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_LEVEL", "warning")

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from streamstats.core.database import Base
from streamstats.models.models import EngagementEvent, Video
from streamstats.services import tracking
from streamstats.services.rollups import AggregateRefresher


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingPublisher:
    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    def publish(self, topic, payload):
        self.messages.append((topic, payload))


class RecordingRefresher:
    def __init__(self):
        self.calls: list[dict] = []

    def schedule(self, **kwargs):
        self.calls.append(kwargs)
        return None


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock(monkeypatch):
    frozen = FrozenClock(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(tracking, "now_utc", frozen)
    return frozen


@pytest.fixture
def publisher(monkeypatch):
    recording = RecordingPublisher()
    monkeypatch.setattr(tracking, "live_publisher", recording)
    return recording


@pytest.fixture
def recording_refresher(monkeypatch):
    recording = RecordingRefresher()
    monkeypatch.setattr(tracking, "aggregate_refresher", recording)
    return recording


@pytest.fixture
def inline_refresher(monkeypatch, session_factory):
    refresher = AggregateRefresher(session_factory, inline=True)
    monkeypatch.setattr(tracking, "aggregate_refresher", refresher)
    return refresher


@pytest.fixture
def make_video(db):
    def _make(video_id="v1", *, tenant_id="t1", duration_seconds=600.0, title=None):
        video = Video(
            id=video_id,
            tenant_id=tenant_id,
            title=title or f"Video {video_id}",
            duration_seconds=duration_seconds,
            view_count=0,
        )
        db.add(video)
        db.commit()
        return video

    return _make


@pytest.fixture
def make_event(db):
    """Insert a raw event directly, bypassing the ingestion gate."""

    def _make(
        event_type="view",
        *,
        occurred_at,
        tenant_id="t1",
        video_id="v1",
        viewer_user_id=None,
        session_id=None,
        **fields,
    ):
        viewer_key = None
        if viewer_user_id:
            viewer_key = f"user:{viewer_user_id}"
        elif session_id:
            viewer_key = f"session:{session_id}"
        event = EngagementEvent(
            tenant_id=tenant_id,
            video_id=video_id,
            viewer_user_id=viewer_user_id,
            session_id=session_id,
            viewer_key=viewer_key,
            event_type=event_type,
            occurred_at=occurred_at,
            day_key=occurred_at.date(),
            **fields,
        )
        db.add(event)
        db.commit()
        return event

    return _make
