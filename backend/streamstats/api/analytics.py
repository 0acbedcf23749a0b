"""
Engagement analytics API router.

Tenant and viewer identity arrive in trusted upstream headers
(`X-Tenant-Id`, `X-Viewer-User-Id`); this service does no authentication.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from streamstats.core.database import SessionLocal
from streamstats.core.errors import AnalyticsError, InvalidArgument
from streamstats.core.time import now_utc
from streamstats.services.breakdowns import get_device_breakdown, get_engagement, get_geography, get_retention
from streamstats.services.export import export_csv, export_filename
from streamstats.services.live import stream_topic, tenant_topic, video_topic
from streamstats.services.queries import get_overview, get_timeseries
from streamstats.services.tracking import track_event

router = APIRouter()
logger = logging.getLogger(__name__)

DEFAULT_OVERVIEW_DAYS = 30


class TrackEventRequest(BaseModel):
    video_id: str = Field(..., max_length=64)
    event_type: str = Field(..., max_length=20)
    session_id: Optional[str] = None
    position_seconds: Optional[float] = None
    device: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    metadata: Optional[Any] = None


def _call(failure_detail: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
    """Run a service call in its own session, mapping taxonomy errors to HTTP statuses."""
    db = SessionLocal()
    try:
        return fn(db, **kwargs)
    except AnalyticsError as e:
        db.rollback()
        raise HTTPException(status_code=e.http_status, detail=e.message) from e
    except Exception as e:
        db.rollback()
        logger.exception("%s: %s", failure_detail, e)
        raise HTTPException(status_code=500, detail=failure_detail) from e
    finally:
        db.close()


@router.post("/track")
def track(
    payload: TrackEventRequest,
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
    x_viewer_user_id: Optional[str] = Header(default=None, alias="X-Viewer-User-Id"),
):
    attributes = payload.model_dump(exclude={"video_id", "event_type", "session_id"})
    result = _call(
        "Failed to record event",
        track_event,
        tenant_id=x_tenant_id,
        video_id=payload.video_id,
        event_type=payload.event_type,
        viewer_user_id=x_viewer_user_id,
        session_id=payload.session_id,
        attributes=attributes,
    )
    return result.as_dict()


@router.get("/overview")
def overview(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    top_n: Optional[int] = Query(None),
    video_id: Optional[str] = Query(None),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
):
    end_at = end or now_utc()
    start_at = start or (end_at - timedelta(days=DEFAULT_OVERVIEW_DAYS))
    report = _call(
        "Failed to load overview",
        get_overview,
        tenant_id=x_tenant_id,
        start=start_at,
        end=end_at,
        top_n=top_n,
        video_id=video_id,
    )
    return report.as_dict()


@router.get("/videos/{video_id}/timeseries")
def timeseries(
    video_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    bucket: str = Query("day"),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
):
    points = _call(
        "Failed to load timeseries",
        get_timeseries,
        tenant_id=x_tenant_id,
        video_id=video_id,
        bucket=bucket,
        start=start,
        end=end,
    )
    return {
        "video_id": video_id,
        "bucket": bucket,
        "points": [point.as_dict() for point in points],
    }


@router.get("/videos/{video_id}/retention")
def retention(
    video_id: str,
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
):
    curve = _call("Failed to load retention", get_retention, tenant_id=x_tenant_id, video_id=video_id)
    return curve.as_dict()


@router.get("/videos/{video_id}/geography")
def geography(
    video_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
):
    report = _call(
        "Failed to load geography",
        get_geography,
        tenant_id=x_tenant_id,
        video_id=video_id,
        start=start,
        end=end,
    )
    return report.as_dict()


@router.get("/videos/{video_id}/device")
def device(
    video_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
):
    report = _call(
        "Failed to load device breakdown",
        get_device_breakdown,
        tenant_id=x_tenant_id,
        video_id=video_id,
        start=start,
        end=end,
    )
    return report.as_dict()


@router.get("/videos/{video_id}/engagement")
def engagement(
    video_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
):
    report = _call(
        "Failed to load engagement",
        get_engagement,
        tenant_id=x_tenant_id,
        video_id=video_id,
        start=start,
        end=end,
    )
    return report.as_dict()


@router.get("/videos/{video_id}/export")
def export(
    video_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
):
    db = SessionLocal()
    try:
        chunks = export_csv(db, tenant_id=x_tenant_id, video_id=video_id, start=start, end=end)
    except AnalyticsError as e:
        db.rollback()
        db.close()
        raise HTTPException(status_code=e.http_status, detail=e.message) from e
    except Exception as e:
        db.rollback()
        db.close()
        logger.exception("Failed to export events: %s", e)
        raise HTTPException(status_code=500, detail="Failed to export events") from e

    def stream() -> Iterator[bytes]:
        # The session must outlive the handler; it is closed once the body is sent.
        try:
            yield from chunks
        finally:
            db.close()

    filename = export_filename(video_id)
    return StreamingResponse(
        stream(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/live/stream")
async def live_stream(
    request: Request,
    video_id: Optional[str] = Query(None),
    x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-Id"),
):
    tenant_id = str(x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(status_code=400, detail=InvalidArgument("tenant_id is required").message)
    topic = video_topic(tenant_id, video_id.strip()) if video_id and video_id.strip() else tenant_topic(tenant_id)
    return await stream_topic(request, topic)
