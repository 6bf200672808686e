"""SQLite schema shared by the notification, template, block-list and outbox stores."""

from __future__ import annotations

import contextlib
import sqlite3
from datetime import datetime, timezone
from typing import Iterator

from .errors import DatabaseError

# UTC timestamp in ISO-8601 form with millisecond precision, e.g.
# 2024-01-01T12:00:00.123+00:00. Text columns compare in time order.
_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now')"

_SCHEMA = f"""
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS notification_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id        TEXT    NOT NULL,
    event_type      TEXT    NOT NULL,
    channel         TEXT    NOT NULL,
    recipient_id    TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'PENDING'
                    CHECK (status IN ('PENDING', 'SENT', 'FAILED', 'BLOCKED', 'SKIPPED')),
    retry_count     INTEGER NOT NULL DEFAULT 0,
    total_attempts  INTEGER NOT NULL DEFAULT 0,
    last_error      TEXT,
    payload         TEXT    NOT NULL,
    event_timestamp TEXT    NOT NULL,
    created_at      TEXT    NOT NULL DEFAULT ({_NOW_SQL}),
    updated_at      TEXT    NOT NULL DEFAULT ({_NOW_SQL}),
    UNIQUE (event_id, channel, recipient_id)
);

CREATE INDEX IF NOT EXISTS idx_notification_log_status_updated
    ON notification_log (status, updated_at);

CREATE TABLE IF NOT EXISTS email_notification_log (
    notification_id  INTEGER PRIMARY KEY
                     REFERENCES notification_log (id) ON DELETE CASCADE,
    recipient_email  TEXT NOT NULL,
    recipient_name   TEXT,
    from_override    TEXT,
    sender_account   TEXT,
    send_mode        TEXT NOT NULL DEFAULT 'individual',
    group_retry_mode TEXT,
    cc               TEXT,
    bcc              TEXT,
    attachments      TEXT,
    to_recipients    TEXT
);

CREATE TABLE IF NOT EXISTS notification_template (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    "type"     TEXT    NOT NULL,
    channel    TEXT    NOT NULL DEFAULT 'email',
    subject    TEXT    NOT NULL,
    body_html  TEXT    NOT NULL,
    body_text  TEXT    NOT NULL,
    version    INTEGER NOT NULL DEFAULT 1,
    active     INTEGER NOT NULL DEFAULT 1,
    created_at TEXT    NOT NULL DEFAULT ({_NOW_SQL}),
    updated_at TEXT    NOT NULL DEFAULT ({_NOW_SQL}),
    UNIQUE ("type", channel)
);

CREATE TABLE IF NOT EXISTS block_list (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    kind       TEXT    NOT NULL
               CHECK (kind IN ('blocked_email', 'blocked_domain',
                               'allowed_email', 'allowed_domain')),
    value      TEXT    NOT NULL,
    reason     TEXT,
    active     INTEGER NOT NULL DEFAULT 1,
    created_at TEXT    NOT NULL DEFAULT ({_NOW_SQL}),
    updated_at TEXT    NOT NULL DEFAULT ({_NOW_SQL}),
    UNIQUE (kind, value)
);

CREATE TABLE IF NOT EXISTS outbox (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id     TEXT    NOT NULL UNIQUE,
    event_type   TEXT    NOT NULL,
    payload      TEXT    NOT NULL,
    status       TEXT    NOT NULL DEFAULT 'PENDING',
    fail_count   INTEGER NOT NULL DEFAULT 0,
    locked_at    TEXT,
    created_at   TEXT    NOT NULL DEFAULT ({_NOW_SQL}),
    published_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_outbox_status_created
    ON outbox (status, created_at);
"""


def create_schema(conn: sqlite3.Connection) -> None:
    """Create every table and index if missing; existing data is kept."""
    conn.executescript(_SCHEMA)


def _parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp into an aware UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@contextlib.contextmanager
def _database_errors() -> Iterator[None]:
    """Re-raise driver errors as :class:`DatabaseError`."""
    try:
        yield
    except sqlite3.Error as exc:
        raise DatabaseError(str(exc)) from exc