"""Shared request plumbing for the admin API clients."""

from __future__ import annotations

import logging
from typing import Any, Iterable

import requests

from platform_bootstrap.errors import ApiError
from platform_bootstrap.http_retry import DEFAULT_POLICY, RetryPolicy, mount_retries

logger = logging.getLogger(__name__)

OK = (200, 201, 204)


class ApiSession:
    """
    Thin wrapper around a ``requests.Session`` bound to one API base URL.

    Subclasses add authentication headers and product-specific calls. The
    session carries a retrying adapter built from the policy; an unexpected
    status raises ``ApiError`` unless the call is marked best-effort.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: int = 30,
        verify: bool = True,
        policy: RetryPolicy = DEFAULT_POLICY,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.verify = verify
        self.policy = policy
        self.session = mount_retries(session or requests.Session(), policy)
        self.session.headers.setdefault("Accept", "application/json")

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        *,
        expected: Iterable[int] = OK,
        best_effort: bool = False,
        **kwargs: Any,
    ) -> requests.Response:
        url = self.url(path)
        kwargs.setdefault("timeout", self.timeout)
        kwargs.setdefault("verify", self.verify)
        resp = self.session.request(method, url, **kwargs)
        if resp.status_code not in tuple(expected):
            if best_effort:
                logger.warning("%s %s returned HTTP %d (ignored)", method, url, resp.status_code)
                return resp
            raise ApiError(method, url, resp.status_code, resp.text or "")
        return resp

    def get_json(self, path: str, **kwargs: Any) -> Any:
        resp = self.request("GET", path, expected=(200,), **kwargs)
        return resp.json() if resp.content else None

    def post_json(self, path: str, payload: Any, **kwargs: Any) -> requests.Response:
        return self.request("POST", path, json=payload, **kwargs)

    def put_json(self, path: str, payload: Any, **kwargs: Any) -> requests.Response:
        return self.request("PUT", path, json=payload, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> requests.Response:
        return self.request("DELETE", path, **kwargs)
