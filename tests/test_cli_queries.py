import json
import sqlite3
import uuid
from datetime import datetime, timezone

import pytest

from anvilnotify import cli_queries
from anvilnotify.schema import create_schema

T1 = "2024-01-01T10:00:00.000+00:00"
T2 = "2024-01-01T11:00:00.000+00:00"
T3 = "2024-01-01T12:00:00.000+00:00"


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:")
    create_schema(connection)
    yield connection
    connection.close()


def _log(conn, event_id, recipient, *, status="PENDING", event_type="order.created",
         channel="email", created_at=T1, updated_at=T1, retry_count=0, last_error=None):
    conn.execute(
        "INSERT INTO notification_log (event_id, event_type, channel, recipient_id, status, "
        "retry_count, last_error, payload, event_timestamp, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, '{}', ?, ?, ?)",
        (str(event_id), event_type, channel, recipient, status, retry_count, last_error,
         T1, created_at, updated_at),
    )
    conn.commit()


def _outbox(conn, event_id, status, created_at, payload, published_at=None, fail_count=0):
    conn.execute(
        "INSERT INTO outbox (event_id, event_type, payload, status, fail_count, created_at, "
        "published_at) VALUES (?, 'order.created', ?, ?, ?, ?, ?)",
        (event_id, json.dumps(payload), status, fail_count, created_at, published_at),
    )
    conn.commit()


def test_list_logs_newest_first_email_only(conn):
    eid = uuid.uuid4()
    _log(conn, eid, "a@example.com", updated_at=T1)
    _log(conn, eid, "b@example.com", updated_at=T3)
    _log(conn, eid, "c@example.com", updated_at=T2)
    _log(conn, eid, "+100", channel="sms", updated_at=T3)
    rows = cli_queries.list_notification_logs(conn, None, "%", "%", 10)
    assert [r.recipient_email for r in rows] == ["b@example.com", "c@example.com", "a@example.com"]
    assert rows[0].event_id == str(eid)
    assert rows[0].updated_at == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)


def test_list_logs_status_filter_and_limit(conn):
    eid = uuid.uuid4()
    _log(conn, eid, "a@example.com", status="FAILED", updated_at=T1, last_error="boom")
    _log(conn, eid, "b@example.com", status="FAILED", updated_at=T2)
    _log(conn, eid, "c@example.com", status="SENT", updated_at=T3)
    failed = cli_queries.list_notification_logs(conn, "FAILED", "%", "%", 10)
    assert {r.recipient_email for r in failed} == {"a@example.com", "b@example.com"}
    assert all(r.status == "FAILED" for r in failed)
    limited = cli_queries.list_notification_logs(conn, None, "%", "%", 1)
    assert [r.recipient_email for r in limited] == ["c@example.com"]


def test_list_logs_patterns_are_case_insensitive(conn):
    eid = uuid.uuid4()
    _log(conn, eid, "alice@example.com", event_type="order.created")
    _log(conn, eid, "bob@example.com", event_type="user.signup")
    by_type = cli_queries.list_notification_logs(conn, None, "%ORDER%", "%", 10)
    assert [r.recipient_email for r in by_type] == ["alice@example.com"]
    by_email = cli_queries.list_notification_logs(conn, None, "%", "%BOB%", 10)
    assert [r.event_type for r in by_email] == ["user.signup"]


def test_negative_limit_rejected(conn):
    with pytest.raises(ValueError):
        cli_queries.list_notification_logs(conn, None, "%", "%", -1)
    with pytest.raises(ValueError):
        cli_queries.list_outbox_rows(conn, "PENDING", -1)


def test_status_for_event_ordered_by_creation(conn):
    eid = uuid.uuid4()
    other = uuid.uuid4()
    _log(conn, eid, "late@example.com", created_at=T2)
    _log(conn, eid, "early@example.com", created_at=T1, retry_count=2, last_error="timeout")
    _log(conn, other, "x@example.com")
    rows = cli_queries.get_status_for_event(conn, eid)
    assert [r.recipient_email for r in rows] == ["early@example.com", "late@example.com"]
    assert rows[0].retry_count == 2
    assert rows[0].last_error == "timeout"


def test_status_for_recipient(conn):
    eid = uuid.uuid4()
    _log(conn, eid, "a@example.com", status="SENT")
    row = cli_queries.get_status_for_recipient(conn, eid, "a@example.com")
    assert row.status == "SENT"
    assert row.recipient_email == "a@example.com"
    assert cli_queries.get_status_for_recipient(conn, eid, "b@example.com") is None
    assert cli_queries.get_status_for_recipient(conn, str(eid), "a@example.com") == row


def _template(conn, event_type, channel, subject, version=1, active=1):
    conn.execute(
        "INSERT INTO notification_template (type, channel, subject, body_html, body_text, "
        "version, active, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (event_type, channel, subject, f"<b>{subject}</b>", subject, version, active, T1),
    )
    conn.commit()


def test_list_templates_ordered(conn):
    _template(conn, "user.signup", "email", "Welcome")
    _template(conn, "order.created", "sms", "Order sms", version=3, active=0)
    _template(conn, "order.created", "email", "Order email")
    rows = cli_queries.list_templates(conn)
    assert [(r.event_type, r.channel) for r in rows] == [
        ("order.created", "email"),
        ("order.created", "sms"),
        ("user.signup", "email"),
    ]
    assert rows[1].version == 3
    assert rows[1].active is False


def test_show_template_returns_all_channels(conn):
    _template(conn, "order.created", "sms", "Order sms")
    _template(conn, "order.created", "email", "Order email")
    _template(conn, "user.signup", "email", "Welcome")
    rows = cli_queries.show_template(conn, "order.created")
    assert [r.channel for r in rows] == ["email", "sms"]
    assert rows[0].body_html == "<b>Order email</b>"
    assert rows[0].body_text == "Order email"
    assert cli_queries.show_template(conn, "missing") == []


def test_list_outbox_rows(conn):
    _outbox(conn, "e1", "PENDING", T1, {"n": 1})
    _outbox(conn, "e2", "PENDING", T3, {"n": 2})
    _outbox(conn, "e3", "PUBLISHED", T2, {"n": 3}, published_at=T3)
    pending = cli_queries.list_outbox_rows(conn, "PENDING", 10)
    assert [r.event_id for r in pending] == ["e2", "e1"]
    assert pending[0].payload == {"n": 2}
    assert pending[0].published_at is None
    published = cli_queries.list_outbox_rows(conn, "PUBLISHED", 10)
    assert published[0].published_at == datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
    assert len(cli_queries.list_outbox_rows(conn, "PENDING", 1)) == 1