import sqlite3
from datetime import datetime

import pytest

from anvilnotify.schema import create_schema


@pytest.fixture
def conn():
    connection = sqlite3.connect(":memory:")
    create_schema(connection)
    yield connection
    connection.close()


def _tables(conn):
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {name for (name,) in rows}


def test_creates_all_tables(conn):
    expected = {
        "notification_log",
        "email_notification_log",
        "notification_template",
        "block_list",
        "outbox",
    }
    assert expected <= _tables(conn)


def test_create_schema_is_idempotent_and_keeps_data(conn):
    conn.execute(
        "INSERT INTO block_list (kind, value) VALUES ('blocked_email', 'a@example.com')"
    )
    conn.commit()
    create_schema(conn)
    count = conn.execute("SELECT COUNT(*) FROM block_list").fetchone()[0]
    assert count == 1


def test_notification_log_defaults(conn):
    conn.execute(
        "INSERT INTO notification_log (event_id, event_type, channel, recipient_id, "
        "payload, event_timestamp) VALUES ('e1', 't', 'email', 'a@example.com', '{}', "
        "'2024-01-01T00:00:00+00:00')"
    )
    status, retry, attempts, created = conn.execute(
        "SELECT status, retry_count, total_attempts, created_at FROM notification_log"
    ).fetchone()
    assert status == "PENDING"
    assert (retry, attempts) == (0, 0)
    assert created.endswith("+00:00")
    assert datetime.fromisoformat(created).tzinfo is not None


def test_notification_log_idempotency_key(conn):
    sql = (
        "INSERT INTO notification_log (event_id, event_type, channel, recipient_id, "
        "payload, event_timestamp) VALUES ('e1', 't', 'email', 'a@example.com', '{}', 'x')"
    )
    conn.execute(sql)
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(sql)


def test_notification_log_rejects_unknown_status(conn):
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO notification_log (event_id, event_type, channel, recipient_id, "
            "status, payload, event_timestamp) "
            "VALUES ('e1', 't', 'email', 'a@example.com', 'BOGUS', '{}', 'x')"
        )


def test_block_list_rejects_unknown_kind(conn):
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("INSERT INTO block_list (kind, value) VALUES ('nonsense', 'x')")


def test_email_detail_requires_parent_row(conn):
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO email_notification_log (notification_id, recipient_email) "
            "VALUES (999, 'a@example.com')"
        )


def test_template_unique_per_type_and_channel(conn):
    sql = (
        "INSERT INTO notification_template (type, channel, subject, body_html, body_text) "
        "VALUES ('order.created', 'email', 's', 'h', 't')"
    )
    conn.execute(sql)
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(sql)