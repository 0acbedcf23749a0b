#!/usr/bin/env python3
"""
Rollup sweep worker.

Runs apart from the API process. Every ROLLUP_SWEEP_INTERVAL_SECONDS it
re-refreshes the last complete hour and the previous UTC day, repairing any
per-event refresh that was lost. A small HTTP listener on PORT answers
`GET /health` with the outcome of the most recent sweep.
"""
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

sys.path.insert(0, str(Path(__file__).parent))

from streamstats.core.config import settings
from streamstats.core.database import SessionLocal
from streamstats.core.time import now_utc
from streamstats.services.rollups import sweep_recent_buckets

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)
DB_RETRY_SECONDS = max(5, int(os.environ.get("WORKER_DB_RETRY_SECONDS", "20")))


@dataclass
class SweepStatus:
    last_run_at: Optional[str] = None
    last_summary: Optional[dict] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    def record_success(self, summary: dict) -> None:
        self.last_run_at = now_utc().isoformat()
        self.last_summary = summary
        self.last_error = None
        self.consecutive_failures = 0

    def record_failure(self, error: Exception) -> None:
        self.last_run_at = now_utc().isoformat()
        self.last_error = str(error)
        self.consecutive_failures += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": "ok" if self.consecutive_failures == 0 else "degraded",
            "service": "streamstats-worker",
            "environment": settings.ENVIRONMENT,
            "sweep_enabled": bool(settings.ROLLUP_SWEEP_ENABLED),
            "last_run_at": self.last_run_at,
            "last_summary": self.last_summary,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
        }


status = SweepStatus()


def health_response(request_line: bytes) -> tuple[str, bytes]:
    """Map the first line of an HTTP request to (status line, JSON body)."""
    parts = request_line.decode("utf-8", errors="ignore").split()
    if len(parts) >= 2 and parts[0] == "GET" and parts[1] == "/health":
        return "200 OK", json.dumps(status.as_dict()).encode("utf-8")
    return "404 Not Found", b'{"status":"not_found"}'


async def _serve_health(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        request_line = await reader.readline()
        # Headers are read and ignored.
        while await reader.readline() not in (b"", b"\r\n", b"\n"):
            pass
        if not request_line:
            return
        status_line, body = health_response(request_line)
        writer.write(
            (
                f"HTTP/1.1 {status_line}\r\n"
                "Content-Type: application/json\r\n"
                f"Content-Length: {len(body)}\r\n"
                "Connection: close\r\n\r\n"
            ).encode("utf-8")
            + body
        )
        await writer.drain()
    except (ConnectionError, asyncio.IncompleteReadError) as e:
        logger.debug("Health check connection dropped: %s", e)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass


async def _start_health_server() -> Optional[asyncio.AbstractServer]:
    raw_port = str(os.environ.get("PORT", "8080") or "8080").strip()
    if not raw_port.isdigit():
        logger.warning("PORT=%s is not a number; worker health endpoint disabled", raw_port)
        return None
    server = await asyncio.start_server(_serve_health, host="0.0.0.0", port=int(raw_port))
    logger.info("Worker health endpoint on 0.0.0.0:%s/health", raw_port)
    return server


def run_sweep_once() -> dict:
    """Run one rollup sweep in its own session."""
    db = SessionLocal()
    try:
        return sweep_recent_buckets(db)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def sweep_forever() -> None:
    interval = max(1, int(settings.ROLLUP_SWEEP_INTERVAL_SECONDS))
    while True:
        if not settings.ROLLUP_SWEEP_ENABLED:
            await asyncio.sleep(60)
            continue
        try:
            status.record_success(await asyncio.to_thread(run_sweep_once))
            delay = interval
        except SQLAlchemyError as e:
            status.record_failure(e)
            logger.error("Rollup sweep could not reach the database; retrying in %ss: %s", DB_RETRY_SECONDS, e)
            delay = DB_RETRY_SECONDS
        except Exception as e:
            status.record_failure(e)
            logger.exception("Rollup sweep failed; retrying in %ss", DB_RETRY_SECONDS)
            delay = DB_RETRY_SECONDS
        await asyncio.sleep(delay)


async def main():
    logger.info(
        "Starting rollup worker (env=%s, sweep_enabled=%s, interval=%ss)",
        settings.ENVIRONMENT,
        settings.ROLLUP_SWEEP_ENABLED,
        settings.ROLLUP_SWEEP_INTERVAL_SECONDS,
    )
    if not settings.ROLLUP_SWEEP_ENABLED:
        logger.info("ROLLUP_SWEEP_ENABLED is false; worker will idle")

    health_server = await _start_health_server()
    try:
        await sweep_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Received shutdown signal")
    finally:
        if health_server is not None:
            health_server.close()
            await health_server.wait_closed()
        logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
