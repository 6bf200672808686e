"""Components of a transactional e-mail notification service: recipient filtering, send rate limiting, SQLite-backed delivery log, template and block-list stores, operator queries and outbox settings."""

__version__ = "0.1.0"

__all__ = [
    "block_list_store",
    "cli_queries",
    "errors",
    "notification_models",
    "notification_store",
    "outbox_env",
    "rate_limiter",
    "recipient_filter",
    "schema",
    "template_store",
]