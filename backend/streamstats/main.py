"""
StreamStats - Video Engagement Analytics
FastAPI application: ingestion, reporting, export and live streams.
"""
from contextlib import asynccontextmanager
import logging
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from streamstats.api import analytics
from streamstats.core import database
from streamstats.core.config import settings
from streamstats.services.live import broadcaster, redis_live_publisher
from streamstats.services.redis_client import redis_connector
from streamstats.services.rollups import aggregate_refresher

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper()))
logger = logging.getLogger(__name__)


def _host(url: str) -> str | None:
    try:
        return urlparse(url or "").hostname
    except ValueError:
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting StreamStats API (env=%s db_host=%s redis_host=%s)",
        settings.ENVIRONMENT,
        _host(settings.DATABASE_URL),
        _host(settings.REDIS_URL) or "disabled",
    )
    logger.info(
        "Ingestion: dedup_window_minutes=%s refresh_inline=%s refresh_workers=%s live_publish=%s",
        settings.DEDUP_WINDOW_MINUTES,
        settings.AGGREGATE_REFRESH_INLINE,
        settings.AGGREGATE_REFRESH_WORKERS,
        settings.LIVE_PUBLISH_ENABLED,
    )
    yield
    # Queued refreshes finish first; the worker's sweep repairs anything lost on a hard kill.
    aggregate_refresher.shutdown(wait=True)
    redis_live_publisher.shutdown(wait=False)
    logger.info("StreamStats API stopped")


app = FastAPI(
    title="StreamStats API",
    description="Video engagement analytics: event ingestion, rollups, and reporting",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL, "http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(analytics, prefix="/api/analytics", tags=["analytics"])


@app.get("/health")
async def health_check():
    """Liveness only; touches no external service."""
    return {
        "status": "ok",
        "service": "streamstats-backend",
        "environment": settings.ENVIRONMENT,
        "live_subscribers": broadcaster.subscriber_count(),
    }


@app.get("/ready")
def readiness_check():
    """The database must answer; Redis is optional and only reported."""
    db = database.SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Readiness check failed: %s", e)
        return JSONResponse(status_code=503, content={"status": "not_ready", "db": "error", "error": str(e)})
    finally:
        db.close()

    redis_state = "ok" if redis_connector.get() is not None else "disabled"
    return {"status": "ready", "db": "ok", "redis": redis_state}
