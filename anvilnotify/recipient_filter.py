"""Configured recipient block/allow-list filter.

In blocklist-only mode any listed address or domain is dropped and everything
else passes. When an allow list is configured only listed addresses or
domains pass. Block entries always take priority. Matching ignores case.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from .errors import BlockedError

logger = logging.getLogger(__name__)


@dataclass
class FilterConfig:
    """Settings from the ``[filter]`` section."""

    blocked_emails: list[str] = field(default_factory=list)
    blocked_domains: list[str] = field(default_factory=list)
    allowed_emails: list[str] = field(default_factory=list)
    allowed_domains: list[str] = field(default_factory=list)


def _domain_of(email: str) -> Optional[str]:
    _, sep, domain = email.rpartition("@")
    return domain if sep else None


class RecipientFilter:
    """A compiled filter ready for repeated queries."""

    def __init__(self, config: Optional[FilterConfig] = None) -> None:
        config = config if config is not None else FilterConfig()
        self._blocked_emails = frozenset(s.lower() for s in config.blocked_emails)
        self._blocked_domains = frozenset(s.lower() for s in config.blocked_domains)
        self._allowed_emails = frozenset(s.lower() for s in config.allowed_emails)
        self._allowed_domains = frozenset(s.lower() for s in config.allowed_domains)
        self._allowlist_mode = bool(self._allowed_emails or self._allowed_domains)

    def check(self, email: str) -> None:
        """Return if ``email`` may receive mail; raise :class:`BlockedError` if not."""
        email_lc = email.lower()
        domain = _domain_of(email_lc)

        if email_lc in self._blocked_emails:
            logger.debug("Recipient %s is on the email blocklist", email)
            raise BlockedError(f"{email} is on the blocked-email list")
        if domain is not None and domain in self._blocked_domains:
            logger.debug("Recipient domain %s is on the blocklist", domain)
            raise BlockedError(
                f"{email}: domain '{domain}' is on the blocked-domain list"
            )

        if self._allowlist_mode:
            email_allowed = email_lc in self._allowed_emails
            domain_allowed = domain is not None and domain in self._allowed_domains
            if not (email_allowed or domain_allowed):
                logger.debug("Recipient %s not on allowlist — dropping", email)
                raise BlockedError(
                    f"{email} is not on the allowed-email/domain list "
                    "(allowlist mode active)"
                )

    def is_passthrough(self) -> bool:
        """True when no block or allow entries are configured."""
        return (
            not self._blocked_emails
            and not self._blocked_domains
            and not self._allowlist_mode
        )