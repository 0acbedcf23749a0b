"""CSV export of raw events, streamed in batches."""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from typing import Iterator

from sqlalchemy.orm import Session

from streamstats.core.errors import InvalidArgument, NotFound
from streamstats.core.time import ensure_utc, now_utc
from streamstats.models.models import EngagementEvent
from streamstats.services.catalog import lookup_video
from streamstats.services.scope import TenantScope, storage_errors

logger = logging.getLogger(__name__)

CSV_HEADER = (
    "timestampUtc",
    "eventType",
    "userId",
    "sessionId",
    "country",
    "deviceType",
    "browser",
    "os",
    "positionSeconds",
    "referrer",
)
EXPORT_BATCH_SIZE = 500


def export_filename(video_id: str, now: datetime | None = None) -> str:
    stamp = ensure_utc(now or now_utc()).strftime("%Y%m%d%H%M%S")
    return f"video_analytics_{video_id}_{stamp}.csv"


def _format_position(value: float | None) -> str:
    if value is None:
        return ""
    number = float(value)
    return str(int(number)) if number.is_integer() else repr(number)


def _row(event: EngagementEvent) -> tuple[str, ...]:
    occurred = ensure_utc(event.occurred_at)
    return (
        occurred.strftime("%Y-%m-%dT%H:%M:%SZ") if occurred else "",
        event.event_type or "",
        event.viewer_user_id or "",
        event.session_id or "",
        event.country or "",
        event.device or "",
        event.browser or "",
        event.os or "",
        _format_position(event.position_seconds),
        event.referrer or "",
    )


def _encode(rows: list[tuple[str, ...]]) -> bytes:
    buffer = io.StringIO()
    # QUOTE_MINIMAL quotes fields containing a comma, quote or newline and doubles inner quotes.
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


def export_csv(
    db: Session,
    *,
    tenant_id: str,
    video_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> Iterator[bytes]:
    """
    Validate eagerly, then return a generator of CSV chunks for events in [start, end].

    Validation runs before the first chunk so a caller can still answer with
    an error status; rows are read with `yield_per` and never held in full.
    """
    scope = TenantScope(db, tenant_id)
    vid = str(video_id or "").strip()
    if not vid:
        raise InvalidArgument("video_id is required")
    start_utc = ensure_utc(start)
    end_utc = ensure_utc(end)
    if start_utc is not None and end_utc is not None and start_utc > end_utc:
        raise InvalidArgument("start must not be after end")

    with storage_errors(db, "exporting events"):
        if not lookup_video(scope, vid).exists:
            raise NotFound(f"Video {vid} not found")

    query = scope.events(video_id=vid)
    if start_utc is not None:
        query = query.filter(EngagementEvent.occurred_at >= start_utc)
    if end_utc is not None:
        query = query.filter(EngagementEvent.occurred_at <= end_utc)
    query = query.order_by(EngagementEvent.occurred_at.asc(), EngagementEvent.id.asc())

    def generate() -> Iterator[bytes]:
        yield _encode([CSV_HEADER])
        exported = 0
        batch: list[tuple[str, ...]] = []
        with storage_errors(db, "exporting events"):
            for event in query.yield_per(EXPORT_BATCH_SIZE):
                batch.append(_row(event))
                if len(batch) >= EXPORT_BATCH_SIZE:
                    exported += len(batch)
                    yield _encode(batch)
                    batch = []
        if batch:
            exported += len(batch)
            yield _encode(batch)
        logger.info("Exported %s events for video %s", exported, vid)

    return generate()
