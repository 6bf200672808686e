"""Value types exchanged with the notification delivery store."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

CHANNEL_EMAIL = "email"


class NotificationStatus(str, enum.Enum):
    """Delivery state of one recipient row."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    SKIPPED = "SKIPPED"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Inserted:
    """A new row was written for this recipient."""


@dataclass(frozen=True)
class Duplicate:
    """The row already existed; carries its current retry count and status."""

    retry_count: int
    status: str


InsertResult = Union[Inserted, Duplicate]


@dataclass(frozen=True)
class EmailInsertPendingArgs:
    """Everything needed to record a PENDING email delivery.

    ``event_id`` may be given as a string; it is normalised to a UUID.
    ``to_recipients`` is only set for group sends retried as a whole, where one
    row tracks several recipients.
    """

    event_id: uuid.UUID
    event_type: str
    recipient_email: str
    payload: Any
    event_timestamp: datetime
    recipient_name: Optional[str] = None
    from_override: Optional[Any] = None
    attachments: Optional[Any] = None
    sender_account: Optional[str] = None
    cc: Optional[Any] = None
    bcc: Optional[Any] = None
    send_mode: str = "individual"
    group_retry_mode: Optional[str] = None
    to_recipients: Optional[Any] = None

    def __post_init__(self) -> None:
        if not isinstance(self.event_id, uuid.UUID):
            object.__setattr__(self, "event_id", uuid.UUID(str(self.event_id)))


@dataclass(frozen=True)
class EventDeliveryDetail:
    """Event-level replay data shared by every recipient row of one event."""

    event_type: str
    payload: Any
    event_timestamp: datetime
    earliest_created_at: datetime
    from_override: Optional[Any] = None
    sender_account: Optional[str] = None
    send_mode: Optional[str] = None
    group_retry_mode: Optional[str] = None
    attachments: Optional[Any] = None
    cc: Optional[Any] = None
    bcc: Optional[Any] = None


@dataclass(frozen=True)
class NotificationLog:
    """One delivery row joined with its email-specific detail."""

    id: int
    event_id: uuid.UUID
    event_type: str
    channel: str
    recipient_email: str
    recipient_name: Optional[str]
    status: NotificationStatus
    retry_count: int
    total_attempts: int
    last_error: Optional[str]
    payload: Optional[Any]
    from_override: Optional[Any]
    attachments: Optional[Any]
    sender_account: Optional[str]
    cc: Optional[Any]
    bcc: Optional[Any]
    send_mode: Optional[str]
    group_retry_mode: Optional[str]
    to_recipients: Optional[Any]
    event_timestamp: Optional[datetime]
    created_at: datetime
    updated_at: datetime