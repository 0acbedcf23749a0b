"""
Lazy Redis connection shared by the dedup lock and the live publisher.

Redis is optional: when REDIS_URL is empty or the server does not answer a
ping, callers get `None` and fall back to in-process behavior.
"""
from __future__ import annotations

import logging
import re
import threading

import redis

from streamstats.core.config import settings

logger = logging.getLogger(__name__)


class RedisConnector:
    """Connects once, remembers failure, and hands out the shared client."""

    def __init__(self, url: str | None = None, *, purpose: str = "analytics") -> None:
        self._url = url
        self._purpose = purpose
        self._redis: redis.Redis | None = None
        self._redis_checked = False
        self._lock = threading.Lock()

    @property
    def url(self) -> str:
        if self._url is not None:
            return self._url
        return str(getattr(settings, "REDIS_URL", "") or "").strip()

    def get(self) -> redis.Redis | None:
        if self._redis is not None:
            return self._redis
        if self._redis_checked:
            return None
        with self._lock:
            if self._redis_checked:
                return self._redis
            url = self.url
            if not url:
                self._redis_checked = True
                logger.info("Redis disabled for %s (REDIS_URL is empty)", self._purpose)
                return None
            try:
                client = redis.Redis.from_url(
                    url,
                    socket_connect_timeout=1,
                    socket_timeout=1,
                    decode_responses=True,
                )
                # Fail fast so callers fall back instead of hanging per request.
                client.ping()
                self._redis = client
            except Exception as e:
                logger.warning("Redis unavailable for %s; using in-process fallback: %s", self._purpose, e)
                self._redis = None
            self._redis_checked = True
            return self._redis

    def reset(self) -> None:
        with self._lock:
            self._redis = None
            self._redis_checked = False


def key_prefix() -> str:
    configured = str(getattr(settings, "REDIS_KEY_PREFIX", "") or "").strip()
    if not configured:
        return ""
    normalized = re.sub(r"[^a-zA-Z0-9:_-]+", "-", configured.lower()).strip("-")
    return f"{normalized}:" if normalized else ""


redis_connector = RedisConnector(purpose="dedup locks and live fan-out")
