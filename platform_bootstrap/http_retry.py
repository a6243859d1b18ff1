"""
Retry policy for admin API calls.

One policy object replaces per-call retry loops. It is turned into a urllib3
``Retry`` and mounted on the client's ``requests.Session``, so every request
made through that session retries transient failures at the transport layer.
"""

from __future__ import annotations

from dataclasses import dataclass

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

TRANSIENT_STATUSES = (429, 500, 502, 503, 504)
# Only these are re-sent after a read error or a transient status; a POST
# that may already have been applied is never repeated.
IDEMPOTENT_METHODS = frozenset({"HEAD", "GET", "PUT", "DELETE", "OPTIONS"})


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry a request."""

    # Total attempts including the first one
    max_attempts: int = 3
    # urllib3 sleeps backoff_factor * 2 ** (retry - 1) between retries
    backoff_factor: float = 1.0
    retry_statuses: tuple[int, ...] = TRANSIENT_STATUSES
    allowed_methods: frozenset[str] = IDEMPOTENT_METHODS

    def is_retryable(self, status: int) -> bool:
        return status in self.retry_statuses

    def to_retry(self) -> Retry:
        """
        urllib3 ``Retry`` equivalent of this policy.

        ``raise_on_status`` is off so the last response comes back to the
        caller once retries run out; ``ApiSession`` decides whether that
        status is acceptable.
        """
        return Retry(
            total=max(self.max_attempts - 1, 0),
            status_forcelist=self.retry_statuses,
            allowed_methods=self.allowed_methods,
            backoff_factor=self.backoff_factor,
            raise_on_status=False,
        )


DEFAULT_POLICY = RetryPolicy()
NO_RETRY = RetryPolicy(max_attempts=1)


def mount_retries(session: requests.Session, policy: RetryPolicy = DEFAULT_POLICY) -> requests.Session:
    """Mount an adapter carrying ``policy`` on both URL schemes of ``session``."""
    adapter = HTTPAdapter(max_retries=policy.to_retry())
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
