"""Exceptions for platform bootstrap and teardown."""

from __future__ import annotations


class BootstrapError(RuntimeError):
    """Raised when a precondition fails and the run must abort."""


class ApiError(BootstrapError):
    """Raised when an admin API returns an unexpected status."""

    def __init__(self, method: str, url: str, status: int, body: str = "") -> None:
        self.method = method
        self.url = url
        self.status = status
        self.body = body
        msg = f"{method} {url} returned HTTP {status}"
        if body:
            msg += f": {body[:300]}"
        super().__init__(msg)


class CommandError(BootstrapError):
    """Raised when an external command exits non-zero."""
