"""Read-only queries behind the operator command-line tool."""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from .schema import _database_errors, _parse_timestamp

EventId = Union[uuid.UUID, str]


@dataclass(frozen=True)
class NotificationLogRow:
    """One row from :func:`list_notification_logs`."""

    event_id: str
    event_type: str
    recipient_email: str
    status: str
    retry_count: int
    last_error: Optional[str]
    updated_at: datetime


@dataclass(frozen=True)
class RecipientStatusRow:
    """Delivery state of one recipient within an event."""

    recipient_email: str
    status: str
    retry_count: int
    last_error: Optional[str]
    updated_at: datetime


@dataclass(frozen=True)
class TemplateListRow:
    """Summary of one template."""

    event_type: str
    channel: str
    subject: str
    version: int
    active: bool
    updated_at: datetime


@dataclass(frozen=True)
class TemplateDetailRow:
    """Full content of one template."""

    event_type: str
    channel: str
    subject: str
    body_html: str
    body_text: str
    version: int
    active: bool
    updated_at: datetime


@dataclass(frozen=True)
class OutboxRow:
    """One row of the business-side outbox table."""

    event_id: str
    event_type: str
    status: str
    fail_count: int
    payload: Any
    created_at: datetime
    published_at: Optional[datetime]


def _check_limit(limit: int) -> None:
    if limit < 0:
        raise ValueError("LIMIT must not be negative")


def _status_row(row: tuple) -> RecipientStatusRow:
    recipient, status, retry_count, last_error, updated_at = row
    return RecipientStatusRow(
        recipient_email=recipient,
        status=status,
        retry_count=retry_count,
        last_error=last_error,
        updated_at=_parse_timestamp(updated_at),
    )


def list_notification_logs(
    conn: sqlite3.Connection,
    status: Optional[str],
    event_type_filter: str,
    email_filter: str,
    limit: int,
) -> list[NotificationLogRow]:
    """Most recently updated email-channel rows.

    ``status`` is matched exactly when given and ignored when ``None``. The two
    filters are case-insensitive LIKE patterns (``%`` matches anything).
    """
    _check_limit(limit)
    clauses = ["n.channel = 'email'"]
    params: list[Any] = []
    if status is not None:
        clauses.append("n.status = ?")
        params.append(status)
    clauses.append("n.event_type LIKE ? ESCAPE '\\'")
    clauses.append("n.recipient_id LIKE ? ESCAPE '\\'")
    params.extend([event_type_filter, email_filter, limit])
    sql = (
        "SELECT n.event_id, n.event_type, n.recipient_id, n.status, n.retry_count, "
        "n.last_error, n.updated_at FROM notification_log n "
        f"WHERE {' AND '.join(clauses)} "
        "ORDER BY n.updated_at DESC, n.id DESC LIMIT ?"
    )
    with _database_errors():
        rows = conn.execute(sql, params).fetchall()
    return [
        NotificationLogRow(
            event_id=str(event_id),
            event_type=event_type,
            recipient_email=recipient,
            status=row_status,
            retry_count=retry_count,
            last_error=last_error,
            updated_at=_parse_timestamp(updated_at),
        )
        for event_id, event_type, recipient, row_status, retry_count, last_error, updated_at in rows
    ]


def get_status_for_event(conn: sqlite3.Connection, event_id: EventId) -> list[RecipientStatusRow]:
    """Every email delivery row of an event, oldest first."""
    with _database_errors():
        rows = conn.execute(
            "SELECT n.recipient_id, n.status, n.retry_count, n.last_error, n.updated_at "
            "FROM notification_log n WHERE n.event_id = ? AND n.channel = 'email' "
            "ORDER BY n.created_at, n.id",
            (str(event_id),),
        ).fetchall()
    return [_status_row(row) for row in rows]


def get_status_for_recipient(
    conn: sqlite3.Connection, event_id: EventId, email: str
) -> Optional[RecipientStatusRow]:
    """The email delivery row of one recipient, or ``None`` when absent."""
    with _database_errors():
        row = conn.execute(
            "SELECT n.recipient_id, n.status, n.retry_count, n.last_error, n.updated_at "
            "FROM notification_log n WHERE n.event_id = ? AND n.channel = 'email' "
            "AND n.recipient_id = ?",
            (str(event_id), email),
        ).fetchone()
    return None if row is None else _status_row(row)


def list_templates(conn: sqlite3.Connection) -> list[TemplateListRow]:
    """All templates ordered by event type, then channel."""
    with _database_errors():
        rows = conn.execute(
            'SELECT "type", channel, subject, version, active, updated_at '
            'FROM notification_template ORDER BY "type", channel'
        ).fetchall()
    return [
        TemplateListRow(
            event_type=event_type,
            channel=channel,
            subject=subject,
            version=version,
            active=bool(active),
            updated_at=_parse_timestamp(updated_at),
        )
        for event_type, channel, subject, version, active, updated_at in rows
    ]


def show_template(conn: sqlite3.Connection, event_type: str) -> list[TemplateDetailRow]:
    """Every channel variant of one event type, ordered by channel."""
    with _database_errors():
        rows = conn.execute(
            'SELECT "type", channel, subject, body_html, body_text, version, active, updated_at '
            'FROM notification_template WHERE "type" = ? ORDER BY channel',
            (event_type,),
        ).fetchall()
    return [
        TemplateDetailRow(
            event_type=row_type,
            channel=channel,
            subject=subject,
            body_html=body_html,
            body_text=body_text,
            version=version,
            active=bool(active),
            updated_at=_parse_timestamp(updated_at),
        )
        for row_type, channel, subject, body_html, body_text, version, active, updated_at in rows
    ]


def list_outbox_rows(conn: sqlite3.Connection, status: str, limit: int) -> list[OutboxRow]:
    """Newest outbox rows with the given status.

    ``conn`` must be connected to the business database that holds the outbox.
    """
    _check_limit(limit)
    with _database_errors():
        rows = conn.execute(
            "SELECT event_id, event_type, status, fail_count, payload, created_at, published_at "
            "FROM outbox WHERE status = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (status, limit),
        ).fetchall()
    return [
        OutboxRow(
            event_id=str(event_id),
            event_type=event_type,
            status=row_status,
            fail_count=fail_count,
            payload=json.loads(payload),
            created_at=_parse_timestamp(created_at),
            published_at=None if published_at is None else _parse_timestamp(published_at),
        )
        for event_id, event_type, row_status, fail_count, payload, created_at, published_at in rows
    ]