"""Database-backed block/allow list with a TTL-cached snapshot.

``check`` consults a cached snapshot of every active row; on a miss the whole
table is reloaded. Any write through this store evicts the snapshot.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from cachetools import TTLCache

from .errors import BlockedError, NotFoundError
from .schema import _NOW_SQL, _database_errors, _parse_timestamp

logger = logging.getLogger(__name__)

_CACHE_KEY = "block_list"


@dataclass(frozen=True)
class _Snapshot:
    blocked_emails: frozenset = frozenset()
    blocked_domains: frozenset = frozenset()
    allowed_emails: frozenset = frozenset()
    allowed_domains: frozenset = frozenset()

    @property
    def allowlist_mode(self) -> bool:
        return bool(self.allowed_emails or self.allowed_domains)

    @property
    def is_passthrough(self) -> bool:
        return not self.blocked_emails and not self.blocked_domains and not self.allowlist_mode


@dataclass(frozen=True)
class BlockListEntry:
    """One ``block_list`` row."""

    id: int
    kind: str
    value: str
    reason: Optional[str]
    active: bool
    created_at: datetime


def _entry_from_row(row: tuple) -> BlockListEntry:
    entry_id, kind, value, reason, active, created_at = row
    return BlockListEntry(
        id=entry_id,
        kind=kind,
        value=value,
        reason=reason,
        active=bool(active),
        created_at=_parse_timestamp(created_at),
    )


class BlockListStore:
    """Block/allow list stored in the database, cached for ``ttl`` seconds.

    A ``ttl`` of zero disables caching, so every check reads the database.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        ttl: Union[float, timedelta],
        *,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if isinstance(ttl, timedelta):
            ttl = ttl.total_seconds()
        self._conn = conn
        self._lock = threading.Lock()
        self._cache: Optional[TTLCache] = (
            TTLCache(maxsize=1, ttl=ttl, timer=timer) if ttl > 0 else None
        )

    def check(self, email: str) -> None:
        """Return if ``email`` may receive mail; raise :class:`BlockedError` if not."""
        snap = self._snapshot()
        email_lc = email.lower()
        _, sep, domain_part = email_lc.rpartition("@")
        domain = domain_part if sep else None

        if email_lc in snap.blocked_emails:
            logger.debug("Recipient %s is on the DB email blocklist", email)
            raise BlockedError(f"{email} is on the blocked-email list")
        if domain is not None and domain in snap.blocked_domains:
            logger.debug("Recipient domain %s is on the DB blocklist", domain)
            raise BlockedError(f"{email}: domain '{domain}' is on the blocked-domain list")

        if snap.allowlist_mode:
            allowed = email_lc in snap.allowed_emails or (
                domain is not None and domain in snap.allowed_domains
            )
            if not allowed:
                logger.debug("Recipient %s not on DB allowlist", email)
                raise BlockedError(
                    f"{email} is not on the allowed list (allowlist mode active)"
                )

    def invalidate(self) -> None:
        """Evict the cached snapshot so the next check reloads from the database."""
        if self._cache is not None:
            with self._lock:
                self._cache.pop(_CACHE_KEY, None)
        logger.info("BlockListStore cache invalidated")

    def is_empty(self) -> bool:
        """True when no active entries exist; False if the database cannot be read."""
        try:
            return self._snapshot().is_passthrough
        except Exception:  # noqa: BLE001 - any failure means "not known to be empty"
            logger.exception("Could not load block list snapshot")
            return False

    def add_entry(self, kind: str, value: str, reason: Optional[str] = None) -> BlockListEntry:
        """Insert an entry, or reactivate an existing one with a new reason.

        ``kind`` is one of ``blocked_email``, ``blocked_domain``,
        ``allowed_email`` or ``allowed_domain``; values are stored lowercased.
        """
        value_lc = value.lower()
        with _database_errors(), self._conn:
            self._conn.execute(
                "INSERT INTO block_list (kind, value, reason, active) VALUES (?, ?, ?, 1) "
                "ON CONFLICT (kind, value) DO UPDATE SET active = 1, "
                f"reason = excluded.reason, updated_at = {_NOW_SQL}",
                (kind, value_lc, reason),
            )
            row = self._conn.execute(
                "SELECT id, kind, value, reason, active, created_at FROM block_list "
                "WHERE kind = ? AND value = ?",
                (kind, value_lc),
            ).fetchone()
        self.invalidate()
        return _entry_from_row(row)

    def remove_entry(self, entry_id: int) -> None:
        """Deactivate an entry; raise :class:`NotFoundError` if no active row has that id."""
        with _database_errors(), self._conn:
            cursor = self._conn.execute(
                f"UPDATE block_list SET active = 0, updated_at = {_NOW_SQL} "
                "WHERE id = ? AND active = 1",
                (entry_id,),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(f"No active block_list entry with id {entry_id}")
        self.invalidate()

    def list_entries(self) -> list[BlockListEntry]:
        """All active entries ordered by id."""
        with _database_errors():
            rows = self._conn.execute(
                "SELECT id, kind, value, reason, active, created_at FROM block_list "
                "WHERE active = 1 ORDER BY id"
            ).fetchall()
        return [_entry_from_row(row) for row in rows]

    def _snapshot(self) -> _Snapshot:
        if self._cache is not None:
            with self._lock:
                cached = self._cache.get(_CACHE_KEY)
            if cached is not None:
                return cached

        with _database_errors():
            rows = self._conn.execute(
                "SELECT kind, value FROM block_list WHERE active = 1"
            ).fetchall()

        buckets: dict[str, set[str]] = {
            "blocked_email": set(),
            "blocked_domain": set(),
            "allowed_email": set(),
            "allowed_domain": set(),
        }
        for kind, value in rows:
            bucket = buckets.get(kind)
            if bucket is None:
                logger.warning("Unknown block_list kind %r — skipping", kind)
                continue
            bucket.add(value)

        snap = _Snapshot(
            blocked_emails=frozenset(buckets["blocked_email"]),
            blocked_domains=frozenset(buckets["blocked_domain"]),
            allowed_emails=frozenset(buckets["allowed_email"]),
            allowed_domains=frozenset(buckets["allowed_domain"]),
        )
        logger.info(
            "BlockListStore snapshot loaded from DB: blocked_emails=%d blocked_domains=%d "
            "allowed_emails=%d allowed_domains=%d",
            len(snap.blocked_emails),
            len(snap.blocked_domains),
            len(snap.allowed_emails),
            len(snap.allowed_domains),
        )
        if self._cache is not None:
            with self._lock:
                self._cache[_CACHE_KEY] = snap
        return snap