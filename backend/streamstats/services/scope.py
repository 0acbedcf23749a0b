"""
Tenant-scoped data access.

Every read of the event and aggregate tables goes through `TenantScope`, which
stamps the tenant filter on each query it builds and the tenant id on each row
it writes. Services never query those tables with a bare session.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import and_, distinct
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from streamstats.core.errors import InvalidArgument, Unavailable
from streamstats.models.models import (
    EngagementEvent,
    Video,
    VideoCountryDailyAggregate,
    VideoDailyAggregate,
    VideoHourlyAggregate,
)

logger = logging.getLogger(__name__)


@contextmanager
def storage_errors(db: Session, action: str) -> Iterator[None]:
    """Roll back and re-raise storage failures as Unavailable."""
    try:
        yield
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Storage failure while %s: %s", action, e)
        raise Unavailable(f"Storage unavailable while {action}; retry later") from e


def active_tenant_ids(db: Session, *, since: datetime, until: datetime) -> list[str]:
    """Tenants with events in [since, until). System jobs use this to fan out per-tenant scopes."""
    rows = (
        db.query(distinct(EngagementEvent.tenant_id))
        .filter(EngagementEvent.occurred_at >= since, EngagementEvent.occurred_at < until)
        .all()
    )
    return sorted(str(row[0]) for row in rows if row[0])


class TenantScope:
    def __init__(self, db: Session, tenant_id: Any):
        tenant = str(tenant_id or "").strip()
        if not tenant:
            raise InvalidArgument("tenant_id is required")
        self.db = db
        self.tenant_id = tenant

    def _scoped(self, model, entities: tuple) -> Query:
        query = self.db.query(*(entities or (model,)))
        return query.filter(model.tenant_id == self.tenant_id)

    def videos(self, *entities) -> Query:
        return self._scoped(Video, entities)

    def events(self, *entities, video_id: str | None = None) -> Query:
        query = self._scoped(EngagementEvent, entities)
        if video_id is not None:
            query = query.filter(EngagementEvent.video_id == video_id)
        return query

    def daily(self, *entities, video_id: str | None = None) -> Query:
        query = self._scoped(VideoDailyAggregate, entities)
        if video_id is not None:
            query = query.filter(VideoDailyAggregate.video_id == video_id)
        return query

    def hourly(self, *entities, video_id: str | None = None) -> Query:
        query = self._scoped(VideoHourlyAggregate, entities)
        if video_id is not None:
            query = query.filter(VideoHourlyAggregate.video_id == video_id)
        return query

    def country_daily(self, *entities, video_id: str | None = None) -> Query:
        query = self._scoped(VideoCountryDailyAggregate, entities)
        if video_id is not None:
            query = query.filter(VideoCountryDailyAggregate.video_id == video_id)
        return query

    def add_event(self, **fields: Any) -> EngagementEvent:
        event = EngagementEvent(tenant_id=self.tenant_id, **fields)
        self.db.add(event)
        return event

    def upsert(self, model, *, key: dict[str, Any], values: dict[str, Any]) -> None:
        """Replace-all-fields upsert in a single statement where the dialect allows it."""
        row = {"tenant_id": self.tenant_id, **key, **values}
        conflict_columns = ["tenant_id", *key.keys()]
        dialect = self.db.get_bind().dialect.name

        if dialect in ("postgresql", "sqlite"):
            if dialect == "postgresql":
                from sqlalchemy.dialects.postgresql import insert
            else:
                from sqlalchemy.dialects.sqlite import insert
            stmt = insert(model).values(**row)
            stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=values)
            self.db.execute(stmt)
            return

        criteria = and_(*(getattr(model, column) == row[column] for column in conflict_columns))
        existing = self.db.query(model).filter(criteria).with_for_update().first()
        if existing is None:
            self.db.add(model(**row))
        else:
            for column, value in values.items():
                setattr(existing, column, value)
        self.db.flush()
