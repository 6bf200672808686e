# anvilnotify

Core pieces of a transactional e-mail notification service. Each module can
be used on its own:

- `anvilnotify.recipient_filter`: block-list and allow-list rules from
  configuration.
- `anvilnotify.rate_limiter`: an asyncio token bucket that caps sends per
  second.
- `anvilnotify.notification_store`: the per-recipient delivery log, kept in
  SQLite.
- `anvilnotify.template_store` and `anvilnotify.block_list_store`: lookups
  backed by the database, with a TTL cache in front.
- `anvilnotify.cli_queries`: read-only listings for operators.
- `anvilnotify.outbox_env`: outbox worker settings read from `AN__OUTBOX__*`
  environment variables.
- `anvilnotify.schema`: `create_schema(conn)` creates every table the stores
  use.

Install with `pip install .`, or with `pip install .[test]` to get the test
tools as well. The only runtime dependency is `cachetools`.

## Errors

Every failure is a subclass of `anvilnotify.errors.AppError`:

- `BlockedError`: the recipient must not receive mail.
- `NotFoundError`: no matching row exists.
- `TemplateError`: there is no active template for an event type and channel.
- `DatabaseError`: a `sqlite3` error raised by a store or query.

Invalid configuration values and arguments raise `ValueError`. Examples are a
negative rate, a missing outbox variable, a negative `limit` or a negative
reaper timeout.

## Filtering recipients

```python
from anvilnotify.errors import BlockedError
from anvilnotify.recipient_filter import FilterConfig, RecipientFilter

rules = RecipientFilter(FilterConfig(
    blocked_emails=["banned@example.com"],
    allowed_domains=["example.com"],
))

rules.check("ok@example.com")          # returns None: allowed
try:
    rules.check("BANNED@example.com")  # matching ignores case
except BlockedError as exc:
    print(exc)
```

Block entries always take priority. Once any allow entry is configured, only
listed addresses or domains pass. `is_passthrough()` returns true when no
entries are configured at all.

## Rate limiting sends

```python
import asyncio
from anvilnotify.rate_limiter import MailRateLimiter, RateLimitConfig, TokenResult

limiter = MailRateLimiter(RateLimitConfig(emails_per_second=10, burst_size=20))

async def send_one(shutdown: asyncio.Event) -> None:
    result = await limiter.wait_for_token(shutdown)
    if result is TokenResult.SHUTDOWN:
        return
    ...  # send the message
```

`wait_for_token` returns one of three values:

- `ACQUIRED` when a token was free at once.
- `ACQUIRED_AFTER_WAIT` when the caller had to wait.
- `SHUTDOWN` when the event was set before a token became free.

With `emails_per_second=0` the limiter is disabled. In that case
`is_disabled()` is true and every call returns `ACQUIRED`. The defaults are
10 per second with a burst of 20. A burst of 0 is treated as 1.

## Storage

Every store and query takes a `sqlite3.Connection` on which
`create_schema(conn)` has been run. Timestamps are stored as UTC ISO-8601
text and returned as timezone-aware `datetime` objects. JSON fields go in and
come out as Python values.

```python
import sqlite3, uuid
from datetime import datetime, timezone
from anvilnotify.schema import create_schema
from anvilnotify.notification_models import EmailInsertPendingArgs
from anvilnotify.notification_store import EmailNotificationStore

conn = sqlite3.connect(":memory:")
create_schema(conn)
store = EmailNotificationStore(conn)

event_id = uuid.uuid4()
args = EmailInsertPendingArgs(
    event_id=event_id,
    event_type="user.welcome",
    recipient_email="alice@example.com",
    payload={"name": "Alice"},
    event_timestamp=datetime.now(timezone.utc),
)
store.insert_pending(args)   # Inserted()
store.insert_pending(args)   # Duplicate(retry_count=0, status='PENDING')
store.mark_failed(event_id, "alice@example.com", "smtp timeout", exhausted=True)
store.reset_for_retry(event_id, "alice@example.com")
store.mark_sent(event_id, "alice@example.com")
```

### Delivery log (`EmailNotificationStore`)

Each row is keyed by `(event_id, 'email', recipient)`. Its status is one of
`NotificationStatus` PENDING, SENT, FAILED, BLOCKED or SKIPPED.

- `insert_pending` writes the log row and its e-mail detail row in one
  transaction. If the key already exists it returns `Duplicate` instead.
  `insert_pending_batch` writes all rows in one transaction.
- `mark_sent`, `mark_failed` (FAILED when `exhausted`, otherwise still
  PENDING with the retry count increased) and `mark_blocked` update a row. If
  no row matches they log a warning and change nothing.
- `mark_skipped` inserts a SKIPPED row and keeps any row that already exists.
  It writes no e-mail detail row.
- `get_by_event_id`, `get_recipients_for_event` and
  `get_by_event_and_recipient` return `NotificationLog` values, or raise
  `NotFoundError`. Per event, at most 500 rows are returned.
- `reset_for_retry` resets one FAILED or BLOCKED row to PENDING.
  `reset_all_failed_for_event` resets every FAILED row of an event and
  returns the recipients.
- `get_event_delivery_detail` returns the event-level replay data as an
  `EventDeliveryDetail`. SKIPPED rows are ignored. When assertions are
  enabled, rows whose event-level fields disagree raise `AssertionError`.
- `reap_stale_pending(timeout_secs)` marks PENDING rows that have not been
  updated for that many seconds as FAILED and returns their event ids.

`NotificationStore` is the abstract interface. Its default
`insert_pending_batch` inserts rows one by one, without a transaction.

### Templates and block list

`TemplateStore(conn, cache_ttl=300.0)` provides `resolve(event_type,
channel)`, which returns a `NotificationTemplate` or raises `TemplateError`.
`invalidate(event_type)` evicts that type on every channel and returns how
many entries were removed. `invalidate_all()` clears the cache.

`BlockListStore(conn, ttl)` holds a cached snapshot of the `block_list`
table. `check(email)` applies the same rules as `RecipientFilter`. The
other methods are:

- `add_entry(kind, value, reason=None)`, where `kind` is `blocked_email`,
  `blocked_domain`, `allowed_email` or `allowed_domain`. It stores the value
  lowercased and reactivates an existing entry.
- `remove_entry(entry_id)`, a soft delete that raises `NotFoundError` when
  no active row has that id.
- `list_entries()`.
- `is_empty()`.
- `invalidate()`.

Writes evict the snapshot.

For both stores a TTL of zero turns caching off.

### Read-only queries

`anvilnotify.cli_queries` offers:

- `list_notification_logs(conn, status, event_type_filter, email_filter,
  limit)`. The filters are LIKE patterns and `status=None` matches any
  status.
- `get_status_for_event`.
- `get_status_for_recipient`.
- `list_templates`.
- `show_template`.
- `list_outbox_rows(conn, status, limit)`.

## Outbox worker settings

`OutboxEnv.from_env(environ=None)` reads from `os.environ` when no mapping
is given:

| Variable | Default |
| --- | --- |
| `AN__OUTBOX__DATABASE_URL` | required, must not be empty |
| `AN__OUTBOX__AMQP_URL` | required, must not be empty |
| `AN__OUTBOX__EXCHANGE` | `anvil-notify` |
| `AN__OUTBOX__ROUTING_KEY` | `email.requested` |
| `AN__OUTBOX__POLL_INTERVAL_MS` | `1000` |
| `AN__OUTBOX__BATCH_SIZE` | `50` |
| `AN__OUTBOX__POOL_SIZE` | `2` |
| `AN__OUTBOX__STALE_LOCK_TIMEOUT_SECS` | `300` |
| `AN__OUTBOX__MAX_PUBLISH_FAILURES` | `5` |

Numeric values must be integers within range.

## What this package does not do

The package provides components only. It has no command to run, no HTTP API,
no message-queue consumer or outbox publishing loop, and it does not render
templates or send mail over SMTP or webhooks. `OutboxEnv` only loads
settings. Storage is SQLite through the standard `sqlite3` module, and no
migrations are included beyond `create_schema`.