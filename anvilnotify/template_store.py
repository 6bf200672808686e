"""Database-backed template lookup with a TTL cache keyed by ``channel:event_type``."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional, Union

from cachetools import TTLCache

from .errors import TemplateError
from .schema import _database_errors

logger = logging.getLogger(__name__)

_CACHE_CAPACITY = 1_024


@dataclass(frozen=True)
class NotificationTemplate:
    """Subject and bodies of one active template."""

    subject: str
    body_html: str
    body_text: str


class TemplateStore:
    """Resolves templates from ``notification_template``, caching for ``cache_ttl`` seconds.

    A ``cache_ttl`` of zero disables caching.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        cache_ttl: Union[float, timedelta] = 300.0,
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if isinstance(cache_ttl, timedelta):
            cache_ttl = cache_ttl.total_seconds()
        self._conn = conn
        self._lock = threading.Lock()
        self._cache: Optional[TTLCache] = (
            TTLCache(maxsize=_CACHE_CAPACITY, ttl=cache_ttl, timer=timer)
            if cache_ttl > 0
            else None
        )

    def resolve(self, event_type: str, channel: str) -> NotificationTemplate:
        """Return the active template; raise :class:`TemplateError` when none exists."""
        key = f"{channel}:{event_type}"
        if self._cache is not None:
            with self._lock:
                cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Template cache hit for %s", key)
                return cached

        with _database_errors():
            row = self._conn.execute(
                'SELECT subject, body_html, body_text FROM notification_template '
                'WHERE "type" = ? AND channel = ? AND active = 1',
                (event_type, channel),
            ).fetchone()
        if row is None:
            raise TemplateError(
                f"Unknown event type '{event_type}' for channel '{channel}' "
                "— add a row to notification_template"
            )

        template = NotificationTemplate(*row)
        if self._cache is not None:
            with self._lock:
                self._cache[key] = template
        logger.info("Template %s loaded from DB and cached", key)
        return template

    def invalidate(self, event_type: str) -> int:
        """Evict ``event_type`` on every channel; return how many entries were removed."""
        if self._cache is None:
            return 0
        suffix = f":{event_type}"
        with self._lock:
            keys = [key for key in list(self._cache) if key.endswith(suffix)]
            for key in keys:
                self._cache.pop(key, None)
        logger.info("Template cache entries invalidated for %s: %d", event_type, len(keys))
        return len(keys)

    def invalidate_all(self) -> None:
        """Clear the whole template cache."""
        if self._cache is not None:
            with self._lock:
                self._cache.clear()
        logger.info("Template cache cleared")