"""
Client for the KASM Workspaces admin API.

The admin endpoints are undocumented. Every call is a POST whose JSON body
carries the session token and user id returned by the public login call.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from platform_bootstrap.clients.base import ApiSession
from platform_bootstrap.errors import ApiError, BootstrapError

logger = logging.getLogger(__name__)


class KasmClient(ApiSession):

    def __init__(self, base_url: str, **kwargs: Any) -> None:
        super().__init__(base_url, **kwargs)
        self.token: str | None = None
        self.user_id: str | None = None

    def healthcheck(self) -> bool:
        try:
            self.request("GET", "/api/__healthcheck", expected=(200,))
        except (ApiError, requests.RequestException) as exc:
            logger.warning("KASM health check failed: %s", exc)
            return False
        return True

    def login(self, username: str, password: str) -> None:
        resp = self.post_json(
            "/api/public/login",
            {"username": username, "password": password},
            expected=(200,),
        )
        data = resp.json() or {}
        self.token = data.get("session_token")
        self.user_id = data.get("user_id")
        if not self.token or not self.user_id:
            raise BootstrapError(
                f"KASM login failed: {data.get('error_message') or 'no session token in response'}"
            )

    def _admin_call(self, endpoint: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.token:
            raise BootstrapError("KASM client is not logged in")
        payload = {"token": self.token, "user_id": self.user_id}
        payload.update(extra or {})
        resp = self.post_json(f"/api/admin/{endpoint}", payload, expected=(200,))
        return resp.json() or {}

    def get_oidc_configs(self) -> list[dict[str, Any]]:
        return self._admin_call("get_oidc_configs").get("oidc_configs") or []

    def find_oidc_config(self, client_id: str) -> dict[str, Any] | None:
        for cfg in self.get_oidc_configs():
            if cfg.get("client_id") == client_id:
                return cfg
        return None

    def create_oidc_config(self, oidc_config: dict[str, Any]) -> str | None:
        """
        Create an OIDC provider config.

        Tries ``create_oidc_config`` first and falls back to ``set_oidc_config``
        (older releases). Returns the new config id, or None when neither
        endpoint accepted the payload.
        """
        for endpoint in ("create_oidc_config", "set_oidc_config"):
            try:
                data = self._admin_call(endpoint, {"target_oidc_config": oidc_config})
            except ApiError as exc:
                logger.warning("KASM %s failed: %s", endpoint, exc)
                continue
            config_id = (data.get("oidc_config") or {}).get("oidc_config_id")
            if config_id:
                return config_id
            logger.warning("KASM %s returned no config id: %s", endpoint, data.get("error_message", data))
        return None
