"""
Ingestion gate: validate, de-duplicate and persist one engagement event.

The write path is synchronous up to the commit. Aggregate refresh and the live
notification run after it and can neither fail nor delay the call.
"""
from __future__ import annotations

import json
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from streamstats.core.config import settings
from streamstats.core.errors import AnalyticsError, InvalidArgument, NotFound, Unavailable
from streamstats.core.time import now_utc
from streamstats.models.models import EVENT_TYPES, EngagementEvent
from streamstats.services.catalog import increment_view_count, lookup_video
from streamstats.services.dedup import dedup_lock
from streamstats.services.identity import ViewerKey, resolve_viewer_key
from streamstats.services.live import live_publisher, topics_for
from streamstats.services.rollups import aggregate_refresher
from streamstats.services.scope import TenantScope

logger = logging.getLogger(__name__)

STRING_ATTRIBUTES = (
    "device",
    "browser",
    "os",
    "country",
    "city",
    "referrer",
    "utm_source",
    "utm_medium",
    "utm_campaign",
)


@dataclass(frozen=True)
class TrackResult:
    accepted: bool
    deduped: bool
    event_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"accepted": self.accepted, "deduped": self.deduped, "event_id": self.event_id}


def normalize_event_type(value: Any) -> str:
    event_type = str(value or "").strip().lower()
    if event_type not in EVENT_TYPES:
        raise InvalidArgument(f"Unsupported event_type: {value!r}")
    return event_type


def _parse_position(value: Any) -> float | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise InvalidArgument("position_seconds must be a number")
    try:
        position = float(value)
    except (TypeError, ValueError):
        raise InvalidArgument("position_seconds must be a number") from None
    if not math.isfinite(position) or position < 0:
        raise InvalidArgument("position_seconds must be a non-negative number")
    return position


def _clean_string(value: Any, max_length: int) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_length]


def _encode_metadata(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        encoded = json.dumps(value, separators=(",", ":"), default=str)
    else:
        encoded = str(value)
    if not encoded:
        return None
    return encoded[: int(settings.MAX_METADATA_LENGTH)]


def clean_attributes(attributes: dict[str, Any] | None) -> dict[str, Any]:
    """Trim and cap client-supplied attributes into EngagementEvent column values."""
    raw = dict(attributes or {})
    max_length = int(settings.MAX_ATTRIBUTE_LENGTH)
    cleaned: dict[str, Any] = {
        name: _clean_string(raw.get(name), max_length) for name in STRING_ATTRIBUTES
    }
    cleaned["position_seconds"] = _parse_position(raw.get("position_seconds"))
    cleaned["event_metadata"] = _encode_metadata(raw.get("metadata"))
    return cleaned


def _recent_view_exists(scope: TenantScope, *, video_id: str, viewer_key: str, since: datetime) -> bool:
    row = (
        scope.events(EngagementEvent.id, video_id=video_id)
        .filter(
            EngagementEvent.viewer_key == viewer_key,
            EngagementEvent.event_type == "view",
            EngagementEvent.occurred_at >= since,
        )
        .first()
    )
    return row is not None


def _persist(
    scope: TenantScope,
    *,
    video_id: str,
    event_type: str,
    viewer: ViewerKey,
    viewer_user_id: str | None,
    session_id: str | None,
    fields: dict[str, Any],
    occurred_at: datetime,
) -> str:
    event_id = str(uuid.uuid4())
    scope.add_event(
        id=event_id,
        video_id=video_id,
        viewer_user_id=viewer_user_id,
        session_id=session_id,
        viewer_key=viewer.storage_key,
        event_type=event_type,
        occurred_at=occurred_at,
        day_key=occurred_at.date(),
        **fields,
    )
    if event_type == "view":
        increment_view_count(scope, video_id)
    scope.db.commit()
    return event_id


def _after_commit(
    *, tenant_id: str, video_id: str, event_type: str, event_id: str, occurred_at: datetime
) -> None:
    try:
        aggregate_refresher.schedule(tenant_id=tenant_id, video_id=video_id, occurred_at=occurred_at)
    except Exception:
        logger.exception("Failed to schedule aggregate refresh for %s/%s", tenant_id, video_id)

    if event_type != "view" or not settings.LIVE_PUBLISH_ENABLED:
        return
    payload = {
        "type": "view",
        "tenant_id": tenant_id,
        "video_id": video_id,
        "event_id": event_id,
        "occurred_at": occurred_at.isoformat(),
    }
    for topic in topics_for(tenant_id, video_id):
        try:
            live_publisher.publish(topic, payload)
        except Exception as e:
            logger.warning("Live notification to %s failed: %s", topic, e)


def track_event(
    db: Session,
    *,
    tenant_id: str,
    video_id: str,
    event_type: str,
    viewer_user_id: str | None = None,
    session_id: str | None = None,
    attributes: dict[str, Any] | None = None,
) -> TrackResult:
    """
    Accept or drop one event.

    Returns `deduped=True` (and writes nothing) for a repeated View from the
    same identified viewer inside DEDUP_WINDOW_MINUTES. Raises InvalidArgument,
    NotFound, or Unavailable on storage failure; a failed call is safe to retry.
    """
    scope = TenantScope(db, tenant_id)
    video_id = str(video_id or "").strip()
    if not video_id:
        raise InvalidArgument("video_id is required")
    event_type = normalize_event_type(event_type)
    fields = clean_attributes(attributes)

    viewer = resolve_viewer_key(viewer_user_id, session_id)
    max_length = int(settings.MAX_ATTRIBUTE_LENGTH)
    user_value = _clean_string(viewer_user_id, max_length)
    session_value = _clean_string(session_id, max_length)

    try:
        if not lookup_video(scope, video_id).exists:
            raise NotFound(f"Video {video_id} not found")

        if event_type == "view" and viewer.is_identified:
            with dedup_lock.hold(scope.tenant_id, video_id, viewer.storage_key):
                occurred_at = now_utc()
                window_start = occurred_at - timedelta(minutes=int(settings.DEDUP_WINDOW_MINUTES))
                if _recent_view_exists(
                    scope, video_id=video_id, viewer_key=viewer.storage_key, since=window_start
                ):
                    logger.debug("Deduped view for video %s (%s)", video_id, viewer.kind)
                    db.rollback()
                    return TrackResult(accepted=False, deduped=True)
                event_id = _persist(
                    scope,
                    video_id=video_id,
                    event_type=event_type,
                    viewer=viewer,
                    viewer_user_id=user_value,
                    session_id=session_value,
                    fields=fields,
                    occurred_at=occurred_at,
                )
        else:
            occurred_at = now_utc()
            event_id = _persist(
                scope,
                video_id=video_id,
                event_type=event_type,
                viewer=viewer,
                viewer_user_id=user_value,
                session_id=session_value,
                fields=fields,
                occurred_at=occurred_at,
            )
    except AnalyticsError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Event write failed for video %s: %s", video_id, e)
        raise Unavailable("Event storage unavailable; retry later") from e

    logger.debug("Accepted %s event %s for video %s", event_type, event_id, video_id)
    _after_commit(
        tenant_id=scope.tenant_id,
        video_id=video_id,
        event_type=event_type,
        event_id=event_id,
        occurred_at=occurred_at,
    )
    return TrackResult(accepted=True, deduped=False, event_id=event_id)
