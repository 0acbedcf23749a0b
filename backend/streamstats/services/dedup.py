"""
Per-viewer dedup lock.

Narrows the check-then-insert race for repeated View events from one viewer.
The in-process striped lock covers threads of one worker; the Redis lock
covers workers sharing a Redis. Both are best-effort: when a lock can't be
taken in time the caller proceeds, and an occasional double count is accepted.
"""
from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from typing import Iterator

import redis

from streamstats.core.config import settings
from streamstats.services.locks import StripedLock
from streamstats.services.redis_client import RedisConnector, key_prefix, redis_connector

logger = logging.getLogger(__name__)


class DedupLock:
    def __init__(self, connector: RedisConnector | None = None, *, stripes: int = 256) -> None:
        self._connector = connector or redis_connector
        self._local = StripedLock(stripes=stripes)

    @staticmethod
    def lock_name(tenant_id: str, video_id: str, viewer_key: str) -> str:
        digest = hashlib.sha1(f"{tenant_id}\x1f{video_id}\x1f{viewer_key}".encode("utf-8")).hexdigest()
        return f"{key_prefix()}analytics:dedup:{digest}"

    @contextmanager
    def _redis_lock(self, name: str) -> Iterator[bool]:
        r = self._connector.get()
        if r is None:
            yield False
            return

        lock = r.lock(
            name,
            timeout=float(settings.DEDUP_LOCK_TIMEOUT_SECONDS),
            blocking_timeout=float(settings.DEDUP_LOCK_WAIT_SECONDS),
        )
        try:
            acquired = bool(lock.acquire())
        except redis.RedisError as e:
            logger.warning("Redis dedup lock unavailable (%s); continuing with in-process lock", e)
            acquired = False
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except redis.exceptions.LockError:
                    # Expired before release; another writer may already hold it.
                    logger.debug("Redis dedup lock %s expired before release", name)
                except redis.RedisError as e:
                    logger.warning("Failed to release Redis dedup lock: %s", e)

    @contextmanager
    def hold(self, tenant_id: str, video_id: str, viewer_key: str) -> Iterator[bool]:
        """Yields True when both the local and (if configured) the Redis lock were taken."""
        wait = float(settings.DEDUP_LOCK_WAIT_SECONDS)
        with self._local.hold((tenant_id, video_id, viewer_key), timeout=wait) as local_acquired:
            if not local_acquired:
                logger.warning("Dedup lock wait exceeded for video %s; proceeding unlocked", video_id)
            with self._redis_lock(self.lock_name(tenant_id, video_id, viewer_key)) as remote_acquired:
                yield bool(local_acquired) and (remote_acquired or self._connector.get() is None)


dedup_lock = DedupLock()
