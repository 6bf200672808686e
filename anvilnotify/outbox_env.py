"""Environment-driven configuration for the outbox worker.

Keys carry the ``AN__OUTBOX__`` prefix, e.g. ``AN__OUTBOX__DATABASE_URL``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

_PREFIX = "AN__OUTBOX__"

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1
_I32_MIN, _I32_MAX = -(2**31), 2**31 - 1
_I64_MIN, _I64_MAX = -(2**63), 2**63 - 1

_INT_BOUNDS = {
    "poll_interval_ms": (0, _U64_MAX),
    "batch_size": (_I64_MIN, _I64_MAX),
    "pool_size": (0, _U32_MAX),
    "stale_lock_timeout_secs": (0, _U64_MAX),
    "max_publish_failures": (_I32_MIN, _I32_MAX),
}


def _parse_int(name: str, raw: str) -> int:
    try:
        value = int(raw.strip())
    except ValueError:
        raise ValueError(f"{_PREFIX}{name.upper()} must be an integer, got {raw!r}") from None
    low, high = _INT_BOUNDS[name]
    if not low <= value <= high:
        raise ValueError(
            f"{_PREFIX}{name.upper()} out of range [{low}, {high}]: {value}"
        )
    return value


@dataclass(frozen=True)
class OutboxEnv:
    """Outbox worker settings: business DB, broker and polling behaviour."""

    database_url: str
    amqp_url: str
    exchange: str = "anvil-notify"
    routing_key: str = "email.requested"
    poll_interval_ms: int = 1_000
    batch_size: int = 50
    pool_size: int = 2
    stale_lock_timeout_secs: int = 300
    max_publish_failures: int = 5

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OutboxEnv":
        """Build from ``AN__OUTBOX__*`` variables; raise ``ValueError`` when invalid."""
        if environ is None:
            environ = os.environ
        known = {f.name for f in fields(cls)}
        values: dict[str, object] = {}
        for key, raw in environ.items():
            if not key.upper().startswith(_PREFIX):
                continue
            name = key[len(_PREFIX):].lower()
            if name not in known:
                continue
            values[name] = _parse_int(name, raw) if name in _INT_BOUNDS else raw

        for required in ("database_url", "amqp_url"):
            if required not in values:
                raise ValueError(f"missing field `{required}` ({_PREFIX}{required.upper()})")
        if not values["database_url"]:
            raise ValueError("AN__OUTBOX__DATABASE_URL must not be empty")
        if not values["amqp_url"]:
            raise ValueError("AN__OUTBOX__AMQP_URL must not be empty")
        return cls(**values)  # type: ignore[arg-type]