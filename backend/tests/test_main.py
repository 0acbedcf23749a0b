from __future__ import annotations

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from streamstats import main
from streamstats.core import database


class _DownSession:
    def __init__(self):
        self.closed = False

    def execute(self, *_args, **_kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    def close(self):
        self.closed = True


def test_health_is_independent_of_storage():
    with TestClient(main.app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["live_subscribers"] == 0


def test_ready_reports_database_and_disabled_redis(monkeypatch, session_factory):
    monkeypatch.setattr(database, "SessionLocal", session_factory)

    with TestClient(main.app) as client:
        response = client.get("/ready")

    assert response.status_code == 200
    assert response.json() == {"status": "ready", "db": "ok", "redis": "disabled"}


def test_ready_is_503_when_database_is_down(monkeypatch):
    down = _DownSession()
    monkeypatch.setattr(database, "SessionLocal", lambda: down)

    with TestClient(main.app) as client:
        response = client.get("/ready")

    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"
    assert down.closed is True
