"""Delivery-state store for notifications, with the email channel implementation.

Every delivery is one ``notification_log`` row keyed by
``(event_id, channel, recipient_id)``. Email-specific detail lives in
``email_notification_log`` and is written in the same transaction.
"""

from __future__ import annotations

import abc
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from .errors import AppError, NotFoundError
from .notification_models import (
    CHANNEL_EMAIL,
    Duplicate,
    EmailInsertPendingArgs,
    EventDeliveryDetail,
    InsertResult,
    Inserted,
    NotificationLog,
    NotificationStatus,
)
from .schema import _database_errors, _parse_timestamp

logger = logging.getLogger(__name__)

EventId = Union[uuid.UUID, str]

# Safety cap on rows loaded for one event.
_ROW_LIMIT = 500

REAPER_MESSAGE = (
    "Orphaned by stale-PENDING reaper: PENDING row exceeded timeout with no AMQP "
    "message to drive it. Trigger a manual retry when the broker is healthy."
)

_LOG_SELECT = """
SELECT
    n.id, n.event_id, n.event_type, n.status, n.retry_count, n.total_attempts,
    n.last_error, n.payload, n.event_timestamp, n.created_at, n.updated_at,
    COALESCE(e.recipient_email, n.recipient_id),
    e.recipient_name, e.from_override, e.sender_account, e.send_mode,
    e.group_retry_mode, e.cc, e.bcc, e.attachments, e.to_recipients
FROM notification_log n
LEFT JOIN email_notification_log e ON e.notification_id = n.id
"""

_DETAIL_FIELDS = (
    "event_type",
    "from_override",
    "sender_account",
    "send_mode",
    "group_retry_mode",
    "attachments",
    "cc",
    "bcc",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def _event_key(event_id: EventId) -> str:
    return str(event_id if isinstance(event_id, uuid.UUID) else uuid.UUID(str(event_id)))


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


def _status(value: str) -> NotificationStatus:
    try:
        return NotificationStatus(value)
    except ValueError:
        raise AppError(f"unknown notification status {value!r}") from None


def _log_from_row(row: tuple) -> NotificationLog:
    (
        row_id, event_id, event_type, status, retry_count, total_attempts,
        last_error, payload, event_timestamp, created_at, updated_at,
        recipient_email, recipient_name, from_override, sender_account, send_mode,
        group_retry_mode, cc, bcc, attachments, to_recipients,
    ) = row
    return NotificationLog(
        id=row_id,
        event_id=uuid.UUID(event_id),
        event_type=event_type,
        channel=CHANNEL_EMAIL,
        recipient_email=recipient_email,
        recipient_name=recipient_name,
        status=_status(status),
        retry_count=retry_count,
        total_attempts=total_attempts,
        last_error=last_error,
        payload=_loads(payload),
        from_override=_loads(from_override),
        attachments=_loads(attachments),
        sender_account=sender_account,
        cc=_loads(cc),
        bcc=_loads(bcc),
        send_mode=send_mode,
        group_retry_mode=group_retry_mode,
        to_recipients=_loads(to_recipients),
        event_timestamp=_parse_timestamp(event_timestamp),
        created_at=_parse_timestamp(created_at),
        updated_at=_parse_timestamp(updated_at),
    )


class NotificationStore(abc.ABC):
    """Channel-agnostic interface that every channel store implements."""

    @abc.abstractmethod
    def insert_pending(self, args: EmailInsertPendingArgs) -> InsertResult:
        """Insert a PENDING row, or report the existing one as a duplicate."""

    def insert_pending_batch(
        self, args: Iterable[EmailInsertPendingArgs]
    ) -> list[InsertResult]:
        """Insert several PENDING rows one after another.

        This fallback is not atomic: rows written before a failure stay
        written. Implementations handling group sends should override it
        with a real transaction.
        """
        return [self.insert_pending(a) for a in args]

    @abc.abstractmethod
    def mark_sent(self, event_id: EventId, recipient_id: str) -> None:
        """Mark a delivery as sent."""

    @abc.abstractmethod
    def mark_failed(
        self, event_id: EventId, recipient_id: str, error_msg: str, exhausted: bool
    ) -> None:
        """Record a failure; FAILED when retries are exhausted, else still PENDING."""

    @abc.abstractmethod
    def reap_stale_pending(self, timeout_secs: int) -> list[uuid.UUID]:
        """Turn PENDING rows older than ``timeout_secs`` into FAILED."""

    @abc.abstractmethod
    def mark_blocked(self, event_id: EventId, recipient_id: str, reason: str) -> None:
        """Mark a delivery as blocked by the recipient filter."""

    @abc.abstractmethod
    def mark_skipped(
        self,
        event_id: EventId,
        event_type: str,
        recipient_id: str,
        reason: str,
        event_timestamp: datetime,
        payload: Any,
    ) -> None:
        """Record a terminal skip for an event-level validation failure."""

    @abc.abstractmethod
    def get_by_event_id(self, event_id: EventId) -> list[NotificationLog]:
        """All delivery rows of an event."""

    @abc.abstractmethod
    def get_recipients_for_event(
        self, event_id: EventId, only_emails: Optional[Sequence[str]]
    ) -> list[NotificationLog]:
        """Delivery rows of an event, optionally limited to some recipients."""

    @abc.abstractmethod
    def get_by_event_and_recipient(
        self, event_id: EventId, recipient_id: str
    ) -> NotificationLog:
        """The row of one recipient within an event."""

    @abc.abstractmethod
    def reset_for_retry(self, event_id: EventId, recipient_id: str) -> None:
        """Reset one FAILED or BLOCKED row to PENDING."""

    @abc.abstractmethod
    def reset_all_failed_for_event(self, event_id: EventId) -> list[str]:
        """Reset every FAILED row of an event to PENDING; return their recipients."""

    @abc.abstractmethod
    def get_event_delivery_detail(self, event_id: EventId) -> EventDeliveryDetail:
        """Event-level replay data of an event."""


class EmailNotificationStore(NotificationStore):
    """Email channel store; the idempotency key is ``(event_id, 'email', recipient)``."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._conn = conn
        self._clock = clock

    @property
    def conn(self) -> sqlite3.Connection:
        """The underlying connection, for health checks."""
        return self._conn

    def _now(self) -> str:
        return _format_ts(self._clock())

    # ── inserts ──────────────────────────────────────────────────────────────

    def _insert_row(self, args: EmailInsertPendingArgs) -> InsertResult:
        event_key = _event_key(args.event_id)
        payload = json.dumps(args.payload)
        detail = (
            args.recipient_email,
            args.recipient_name,
            _dumps(args.from_override),
            args.sender_account,
            args.send_mode,
            args.group_retry_mode,
            _dumps(args.cc),
            _dumps(args.bcc),
            _dumps(args.attachments),
            _dumps(args.to_recipients),
        )
        now = self._now()
        cursor = self._conn.execute(
            "INSERT INTO notification_log (event_id, event_type, channel, recipient_id, "
            "payload, event_timestamp, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT (event_id, channel, recipient_id) DO NOTHING",
            (
                event_key,
                args.event_type,
                CHANNEL_EMAIL,
                args.recipient_email,
                payload,
                _format_ts(args.event_timestamp),
                now,
                now,
            ),
        )
        if cursor.rowcount == 0:
            retry_count, status = self._conn.execute(
                "SELECT retry_count, status FROM notification_log "
                "WHERE event_id = ? AND channel = ? AND recipient_id = ?",
                (event_key, CHANNEL_EMAIL, args.recipient_email),
            ).fetchone()
            return Duplicate(retry_count=retry_count, status=status)

        self._conn.execute(
            "INSERT INTO email_notification_log (notification_id, recipient_email, "
            "recipient_name, from_override, sender_account, send_mode, group_retry_mode, "
            "cc, bcc, attachments, to_recipients) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (cursor.lastrowid, *detail),
        )
        return Inserted()

    def insert_pending(self, args: EmailInsertPendingArgs) -> InsertResult:
        """Insert the log and email detail rows in one transaction."""
        with _database_errors(), self._conn:
            return self._insert_row(args)

    def insert_pending_batch(
        self, args: Iterable[EmailInsertPendingArgs]
    ) -> list[InsertResult]:
        """Insert every row in a single transaction; any failure rolls all back."""
        with _database_errors(), self._conn:
            return [self._insert_row(a) for a in args]

    # ── state transitions ────────────────────────────────────────────────────

    def _update_one(self, sql: str, params: tuple, what: str, event_key: str, recipient: str) -> None:
        with _database_errors(), self._conn:
            cursor = self._conn.execute(sql, params)
        if cursor.rowcount == 0:
            logger.warning(
                "%s matched no rows for %s/%s — row may have been deleted or "
                "recipient_id is wrong",
                what,
                event_key,
                recipient,
            )

    def mark_sent(self, event_id: EventId, recipient_id: str) -> None:
        event_key = _event_key(event_id)
        self._update_one(
            "UPDATE notification_log SET status = 'SENT', "
            "total_attempts = total_attempts + 1, updated_at = ? "
            "WHERE event_id = ? AND channel = ? AND recipient_id = ?",
            (self._now(), event_key, CHANNEL_EMAIL, recipient_id),
            "mark_sent",
            event_key,
            recipient_id,
        )

    def mark_failed(
        self, event_id: EventId, recipient_id: str, error_msg: str, exhausted: bool
    ) -> None:
        event_key = _event_key(event_id)
        status = NotificationStatus.FAILED if exhausted else NotificationStatus.PENDING
        self._update_one(
            "UPDATE notification_log SET retry_count = retry_count + 1, "
            "total_attempts = total_attempts + 1, last_error = ?, status = ?, "
            "updated_at = ? WHERE event_id = ? AND channel = ? AND recipient_id = ?",
            (error_msg, status.value, self._now(), event_key, CHANNEL_EMAIL, recipient_id),
            "mark_failed",
            event_key,
            recipient_id,
        )

    def mark_blocked(self, event_id: EventId, recipient_id: str, reason: str) -> None:
        event_key = _event_key(event_id)
        self._update_one(
            "UPDATE notification_log SET status = 'BLOCKED', last_error = ?, "
            "updated_at = ? WHERE event_id = ? AND channel = ? AND recipient_id = ?",
            (reason, self._now(), event_key, CHANNEL_EMAIL, recipient_id),
            "mark_blocked",
            event_key,
            recipient_id,
        )

    def mark_skipped(
        self,
        event_id: EventId,
        event_type: str,
        recipient_id: str,
        reason: str,
        event_timestamp: datetime,
        payload: Any,
    ) -> None:
        """Insert a SKIPPED row; an existing row for the same key is kept as is.

        No email detail row is written: nothing was rendered or sent.
        """
        payload_json = json.dumps(payload)
        now = self._now()
        with _database_errors(), self._conn:
            self._conn.execute(
                "INSERT INTO notification_log (event_id, event_type, channel, recipient_id, "
                "status, last_error, payload, event_timestamp, retry_count, total_attempts, "
                "created_at, updated_at) "
                "VALUES (?, ?, ?, ?, 'SKIPPED', ?, ?, ?, 0, 0, ?, ?) "
                "ON CONFLICT (event_id, channel, recipient_id) DO NOTHING",
                (
                    _event_key(event_id),
                    event_type,
                    CHANNEL_EMAIL,
                    recipient_id,
                    reason,
                    payload_json,
                    _format_ts(event_timestamp),
                    now,
                    now,
                ),
            )

    # ── reads ────────────────────────────────────────────────────────────────

    def get_by_event_id(self, event_id: EventId) -> list[NotificationLog]:
        """All rows of an event, oldest first; :class:`NotFoundError` when none."""
        event_key = _event_key(event_id)
        with _database_errors():
            rows = self._conn.execute(
                _LOG_SELECT + "WHERE n.event_id = ? AND n.channel = ? "
                "ORDER BY n.created_at, n.id LIMIT ?",
                (event_key, CHANNEL_EMAIL, _ROW_LIMIT),
            ).fetchall()
        if not rows:
            raise NotFoundError(event_key)
        return [_log_from_row(row) for row in rows]

    def get_recipients_for_event(
        self, event_id: EventId, only_emails: Optional[Sequence[str]] = None
    ) -> list[NotificationLog]:
        """Rows of an event, limited to ``only_emails`` when that is non-empty."""
        if not only_emails:
            return self.get_by_event_id(event_id)
        event_key = _event_key(event_id)
        emails = list(only_emails)
        placeholders = ", ".join("?" for _ in emails)
        with _database_errors():
            rows = self._conn.execute(
                _LOG_SELECT + "WHERE n.event_id = ? AND n.channel = ? "
                f"AND COALESCE(e.recipient_email, n.recipient_id) IN ({placeholders}) "
                "ORDER BY n.created_at, n.id LIMIT ?",
                (event_key, CHANNEL_EMAIL, *emails, _ROW_LIMIT),
            ).fetchall()
        if not rows:
            raise NotFoundError(event_key)
        return [_log_from_row(row) for row in rows]

    def get_by_event_and_recipient(
        self, event_id: EventId, recipient_id: str
    ) -> NotificationLog:
        event_key = _event_key(event_id)
        with _database_errors():
            row = self._conn.execute(
                _LOG_SELECT + "WHERE n.event_id = ? AND n.channel = ? AND n.recipient_id = ?",
                (event_key, CHANNEL_EMAIL, recipient_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"{event_key}/{recipient_id}")
        return _log_from_row(row)

    # ── manual retry ─────────────────────────────────────────────────────────

    def reset_for_retry(self, event_id: EventId, recipient_id: str) -> None:
        event_key = _event_key(event_id)
        with _database_errors(), self._conn:
            cursor = self._conn.execute(
                "UPDATE notification_log SET status = 'PENDING', retry_count = 0, "
                "last_error = NULL, updated_at = ? "
                "WHERE event_id = ? AND channel = ? AND recipient_id = ? "
                "AND status IN ('FAILED', 'BLOCKED')",
                (self._now(), event_key, CHANNEL_EMAIL, recipient_id),
            )
        if cursor.rowcount == 0:
            raise NotFoundError(
                f"No FAILED or BLOCKED record for {event_key}/{recipient_id}"
            )

    def reset_all_failed_for_event(self, event_id: EventId) -> list[str]:
        event_key = _event_key(event_id)
        with _database_errors(), self._conn:
            rows = self._conn.execute(
                "SELECT id, recipient_id FROM notification_log "
                "WHERE event_id = ? AND channel = ? AND status = 'FAILED' ORDER BY id",
                (event_key, CHANNEL_EMAIL),
            ).fetchall()
            now = self._now()
            self._conn.executemany(
                "UPDATE notification_log SET status = 'PENDING', retry_count = 0, "
                "last_error = NULL, updated_at = ? WHERE id = ?",
                [(now, row_id) for row_id, _ in rows],
            )
        return [recipient for _, recipient in rows]

    def get_event_delivery_detail(self, event_id: EventId) -> EventDeliveryDetail:
        """Event-level replay data taken from the first row.

        Rows without email detail (SKIPPED ones) are ignored, so an event made
        only of skipped rows raises :class:`NotFoundError`.
        """
        event_key = _event_key(event_id)
        with _database_errors():
            rows = self._conn.execute(
                "SELECT n.event_type, e.from_override, e.sender_account, e.send_mode, "
                "e.group_retry_mode, e.attachments, e.cc, e.bcc, "
                "n.payload, n.event_timestamp, n.created_at "
                "FROM notification_log n "
                "JOIN email_notification_log e ON e.notification_id = n.id "
                "WHERE n.event_id = ? AND n.channel = ? ORDER BY n.created_at, n.id",
                (event_key, CHANNEL_EMAIL),
            ).fetchall()
        if not rows:
            raise NotFoundError(event_key)

        first = rows[0]
        if __debug__:
            for row in rows[1:]:
                for index, name in enumerate(_DETAIL_FIELDS):
                    if row[index] != first[index]:
                        raise AssertionError(f"{name} mismatch for event_id {event_key}")

        (
            event_type, from_override, sender_account, send_mode, group_retry_mode,
            attachments, cc, bcc, payload, event_timestamp, _,
        ) = first
        earliest = min(_parse_timestamp(row[10]) for row in rows)
        return EventDeliveryDetail(
            event_type=event_type,
            payload=_loads(payload),
            event_timestamp=_parse_timestamp(event_timestamp),
            earliest_created_at=earliest,
            from_override=_loads(from_override),
            sender_account=sender_account,
            send_mode=send_mode,
            group_retry_mode=group_retry_mode,
            attachments=_loads(attachments),
            cc=_loads(cc),
            bcc=_loads(bcc),
        )

    # ── maintenance ──────────────────────────────────────────────────────────

    def reap_stale_pending(self, timeout_secs: int) -> list[uuid.UUID]:
        """Mark PENDING rows not updated for ``timeout_secs`` as FAILED.

        Returns the event ids of the rows changed, for operator follow-up.
        """
        if timeout_secs < 0:
            raise ValueError("timeout_secs must not be negative")
        now_dt = self._clock()
        cutoff = _format_ts(now_dt - timedelta(seconds=timeout_secs))
        with _database_errors(), self._conn:
            rows = self._conn.execute(
                "SELECT id, event_id FROM notification_log "
                "WHERE status = 'PENDING' AND channel = ? AND updated_at < ? ORDER BY id",
                (CHANNEL_EMAIL, cutoff),
            ).fetchall()
            now = _format_ts(now_dt)
            self._conn.executemany(
                "UPDATE notification_log SET status = 'FAILED', last_error = ?, "
                "updated_at = ? WHERE id = ?",
                [(REAPER_MESSAGE, now, row_id) for row_id, _ in rows],
            )
        return [uuid.UUID(event_key) for _, event_key in rows]