"""Keycloak Admin REST API client."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests

from platform_bootstrap.clients.base import ApiSession
from platform_bootstrap.errors import ApiError, BootstrapError

logger = logging.getLogger(__name__)


def _created_id(resp: requests.Response) -> str | None:
    """ID of a created resource from the Location header."""
    location = resp.headers.get("Location", "")
    if not location:
        return None
    return location.rstrip("/").rsplit("/", 1)[-1]


class KeycloakClient(ApiSession):
    """Calls ``{base_url}/admin/realms/...`` with a bearer token."""

    def authenticate_client_credentials(self, client_id: str, client_secret: str) -> None:
        """Obtain an admin token from the master realm (client_credentials grant)."""
        resp = self.request(
            "POST",
            "/realms/master/protocol/openid-connect/token",
            expected=(200,),
            data={
                "grant_type": "client_credentials",
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        token = (resp.json() or {}).get("access_token")
        if not token:
            raise BootstrapError("Keycloak token response did not contain access_token")
        self.session.headers["Authorization"] = f"Bearer {token}"

    def _admin(self, realm: str, path: str = "") -> str:
        return f"/admin/realms/{realm}{path}"

    def _search(self, realm: str, path: str) -> list[dict[str, Any]]:
        """Collection lookup under a realm; a realm that does not exist yet finds nothing."""
        resp = self.request("GET", self._admin(realm, path), expected=(200, 404))
        if resp.status_code == 404 or not resp.content:
            return []
        return resp.json() or []

    # Realms

    def realm_exists(self, realm: str) -> bool:
        resp = self.request("GET", self._admin(realm), expected=(200, 404))
        return resp.status_code == 200

    def create_realm(self, representation: dict[str, Any]) -> None:
        self.post_json("/admin/realms", representation, expected=(201,))

    def update_realm(self, realm: str, representation: dict[str, Any], best_effort: bool = False) -> None:
        self.put_json(self._admin(realm), representation, expected=(204,), best_effort=best_effort)

    # Clients

    def find_client(self, realm: str, client_id: str) -> dict[str, Any] | None:
        clients = self._search(realm, f"/clients?clientId={quote(client_id)}")
        for client in clients:
            if client.get("clientId") == client_id:
                return client
        return None

    def get_client(self, realm: str, uuid: str) -> dict[str, Any]:
        return self.get_json(self._admin(realm, f"/clients/{uuid}"))

    def update_client(self, realm: str, uuid: str, representation: dict[str, Any], best_effort: bool = False) -> bool:
        resp = self.put_json(
            self._admin(realm, f"/clients/{uuid}"), representation,
            expected=(204,), best_effort=best_effort,
        )
        return resp.status_code == 204

    def create_client(self, realm: str, representation: dict[str, Any]) -> str:
        resp = self.post_json(self._admin(realm, "/clients"), representation, expected=(201,))
        uuid = _created_id(resp)
        if uuid:
            return uuid
        found = self.find_client(realm, representation["clientId"])
        if not found:
            raise BootstrapError(f"Client {representation['clientId']} not found after creation")
        return found["id"]

    def get_client_secret(self, realm: str, uuid: str) -> str | None:
        data = self.get_json(self._admin(realm, f"/clients/{uuid}/client-secret")) or {}
        return data.get("value")

    def regenerate_client_secret(self, realm: str, uuid: str) -> str | None:
        resp = self.request("POST", self._admin(realm, f"/clients/{uuid}/client-secret"), expected=(200,))
        return (resp.json() or {}).get("value")

    def client_role(self, realm: str, uuid: str, role: str) -> dict[str, Any]:
        return self.get_json(self._admin(realm, f"/clients/{uuid}/roles/{quote(role)}"))

    def service_account_user(self, realm: str, uuid: str) -> dict[str, Any] | None:
        resp = self.request("GET", self._admin(realm, f"/clients/{uuid}/service-account-user"), expected=(200, 404))
        if resp.status_code == 404 or not resp.content:
            return None
        return resp.json()

    # Users

    def find_user(self, realm: str, username: str) -> dict[str, Any] | None:
        users = self._search(realm, f"/users?username={quote(username)}&exact=true")
        for user in users:
            if user.get("username") == username:
                return user
        return None

    def create_user(self, realm: str, representation: dict[str, Any]) -> str:
        resp = self.post_json(self._admin(realm, "/users"), representation, expected=(201,))
        uuid = _created_id(resp)
        if uuid:
            return uuid
        found = self.find_user(realm, representation["username"])
        if not found:
            raise BootstrapError(f"User {representation['username']} not found after creation")
        return found["id"]

    def add_client_role_to_user(self, realm: str, user_id: str, client_uuid: str, role: dict[str, Any]) -> None:
        self.post_json(
            self._admin(realm, f"/users/{user_id}/role-mappings/clients/{client_uuid}"),
            [role],
            expected=(204,),
        )

    # Groups

    def find_group(self, realm: str, name: str) -> dict[str, Any] | None:
        groups = self._search(realm, f"/groups?search={quote(name)}&exact=true")
        for group in groups:
            if group.get("name") == name:
                return group
        return None

    def create_group(self, realm: str, name: str) -> str:
        resp = self.post_json(self._admin(realm, "/groups"), {"name": name}, expected=(201,))
        uuid = _created_id(resp)
        if uuid:
            return uuid
        found = self.find_group(realm, name)
        if not found:
            raise BootstrapError(f"Group {name} not found after creation")
        return found["id"]

    def add_user_to_group(self, realm: str, user_id: str, group_id: str) -> None:
        self.request("PUT", self._admin(realm, f"/users/{user_id}/groups/{group_id}"), expected=(204,))

    # Protocol mappers

    def list_protocol_mappers(self, realm: str, client_uuid: str) -> list[dict[str, Any]]:
        return self.get_json(self._admin(realm, f"/clients/{client_uuid}/protocol-mappers/models")) or []

    def add_protocol_mapper(self, realm: str, client_uuid: str, mapper: dict[str, Any]) -> bool:
        """Create a protocol mapper. Returns False when it already existed (409)."""
        resp = self.post_json(
            self._admin(realm, f"/clients/{client_uuid}/protocol-mappers/models"),
            mapper,
            expected=(201, 409),
        )
        return resp.status_code == 201

    def reachable(self) -> bool:
        """True when the master realm endpoint answers."""
        try:
            self.request("GET", "/realms/master", expected=(200,))
        except (ApiError, requests.RequestException) as exc:
            logger.debug("Keycloak not reachable at %s: %s", self.base_url, exc)
            return False
        return True
