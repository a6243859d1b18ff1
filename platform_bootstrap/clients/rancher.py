"""Rancher Steve API client (``/v1`` resources)."""

from __future__ import annotations

from typing import Any

from platform_bootstrap.clients.base import ApiSession


class RancherClient(ApiSession):
    """Bearer-token client; Rancher usually serves a self-signed certificate."""

    def __init__(self, base_url: str, token: str, **kwargs: Any) -> None:
        kwargs.setdefault("verify", False)
        super().__init__(base_url, **kwargs)
        self.session.headers["Authorization"] = f"Bearer {token}"

    def list(self, resource_type: str, namespace: str) -> list[dict[str, Any]]:
        data = self.get_json(f"/v1/{resource_type}/{namespace}") or {}
        return data.get("data") or []

    def get(self, resource_type: str, namespace: str, name: str) -> dict[str, Any]:
        return self.get_json(f"/v1/{resource_type}/{namespace}/{name}")

    def put(self, resource_type: str, namespace: str, name: str, body: dict[str, Any]) -> bool:
        resp = self.put_json(
            f"/v1/{resource_type}/{namespace}/{name}", body, expected=(200,), best_effort=True,
        )
        return resp.status_code == 200

    def remove(self, resource_type: str, namespace: str, name: str) -> bool:
        """Delete a resource; 404 counts as already gone."""
        resp = self.delete(
            f"/v1/{resource_type}/{namespace}/{name}",
            expected=(200, 202, 204, 404),
            best_effort=True,
        )
        return resp.status_code in (200, 202, 204, 404)
