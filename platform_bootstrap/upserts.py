"""
Idempotent "create if missing" helpers for Keycloak, GitLab and Harbor.

Each helper looks the resource up by its unique name or path first. A hit is
a success and is left as it is (OIDC clients are the one exception: their
redirect URIs are refreshed). A miss is created. With ``dry_run`` the lookups
still happen but nothing is created.
"""

from __future__ import annotations

import logging
from typing import Any

from platform_bootstrap.clients.gitlab import GitLabClient
from platform_bootstrap.clients.harbor import HarborClient
from platform_bootstrap.clients.keycloak import KeycloakClient
from platform_bootstrap.constants import GROUP_MAPPER_NAME
from platform_bootstrap.errors import ApiError, BootstrapError

logger = logging.getLogger(__name__)

DRY_RUN_ID = "dry-run"

REALM_SECURITY_SETTINGS = {
    "bruteForceProtected": True,
    "permanentLockout": False,
    "maxFailureWaitSeconds": 900,
    "minimumQuickLoginWaitSeconds": 60,
    "waitIncrementSeconds": 60,
    "quickLoginCheckMilliSeconds": 1000,
    "maxDeltaTimeSeconds": 43200,
    "failureFactor": 5,
    "sslRequired": "external",
    "accessTokenLifespan": 300,
    "ssoSessionIdleTimeout": 1800,
    "ssoSessionMaxLifespan": 36000,
}


# Keycloak

def ensure_realm(kc: KeycloakClient, realm: str, display_name: str, dry_run: bool = False) -> bool:
    """Create the realm with brute-force protection. Returns True if created."""
    if kc.realm_exists(realm):
        print(f"  Realm '{realm}' already exists.")
        return False
    if dry_run:
        print(f"  Dry run: would create realm '{realm}'")
        return False
    kc.create_realm({"realm": realm, "enabled": True, "displayName": display_name, **REALM_SECURITY_SETTINGS})
    print(f"  Realm '{realm}' created.")
    return True


def ensure_user(
    kc: KeycloakClient,
    realm: str,
    username: str,
    password: str,
    *,
    email: str,
    first_name: str,
    last_name: str,
    dry_run: bool = False,
) -> tuple[str, bool]:
    """Returns (user id, created). An existing user keeps its password."""
    existing = kc.find_user(realm, username)
    if existing:
        print(f"  User '{username}' already exists (id: {existing['id']}).")
        return existing["id"], False
    if dry_run:
        print(f"  Dry run: would create user '{username}'")
        return DRY_RUN_ID, False
    user_id = kc.create_user(realm, {
        "username": username,
        "email": email,
        "enabled": True,
        "emailVerified": True,
        "firstName": first_name,
        "lastName": last_name,
        "credentials": [{"type": "password", "value": password, "temporary": False}],
    })
    print(f"  User '{username}' created.")
    return user_id, True


def grant_client_role(
    kc: KeycloakClient, realm: str, user_id: str, client_id: str, role: str, dry_run: bool = False,
) -> None:
    """Map a client role (e.g. realm-management/realm-admin) onto a user."""
    if dry_run:
        print(f"  Dry run: would grant {client_id}/{role} to user {user_id}")
        return
    client = kc.find_client(realm, client_id)
    if not client:
        raise BootstrapError(f"Client '{client_id}' not found in realm '{realm}'")
    kc.add_client_role_to_user(realm, user_id, client["id"], kc.client_role(realm, client["id"], role))
    print(f"  {role} role assigned.")


def ensure_group(kc: KeycloakClient, realm: str, name: str, dry_run: bool = False) -> str:
    existing = kc.find_group(realm, name)
    if existing:
        print(f"  Group '{name}' already exists.")
        return existing["id"]
    if dry_run:
        print(f"  Dry run: would create group '{name}'")
        return DRY_RUN_ID
    group_id = kc.create_group(realm, name)
    print(f"  Group '{name}' created.")
    return group_id


def ensure_group_membership(
    kc: KeycloakClient, realm: str, username: str, group_name: str, dry_run: bool = False,
) -> bool:
    """Add a user to a group; both must exist. Membership PUT is idempotent."""
    user = kc.find_user(realm, username)
    group = kc.find_group(realm, group_name)
    if not user or not group:
        logger.warning("Cannot add %s to %s: user or group missing", username, group_name)
        return False
    if dry_run:
        print(f"  Dry run: would add '{username}' to '{group_name}'")
        return True
    kc.add_user_to_group(realm, user["id"], group["id"])
    print(f"  '{username}' is a member of '{group_name}'.")
    return True


def _confidential_client(client_id: str, name: str, redirect_uris: list[str]) -> dict[str, Any]:
    return {
        "clientId": client_id,
        "name": name,
        "enabled": True,
        "protocol": "openid-connect",
        "publicClient": False,
        "clientAuthenticatorType": "client-secret",
        "standardFlowEnabled": True,
        "directAccessGrantsEnabled": False,
        "serviceAccountsEnabled": False,
        "redirectUris": redirect_uris,
        "webOrigins": ["+"],
        "attributes": {"post.logout.redirect.uris": "+"},
    }


def ensure_oidc_client(
    kc: KeycloakClient,
    realm: str,
    client_id: str,
    redirect_uris: list[str],
    name: str | None = None,
    dry_run: bool = False,
) -> str | None:
    """
    Create or refresh a confidential OIDC client and return its secret.

    An existing client gets its redirect URIs and web origins rewritten
    (best-effort) and keeps its secret.
    """
    existing = kc.find_client(realm, client_id)
    if existing:
        uuid = existing["id"]
        print(f"  Client '{client_id}' already exists, updating redirect URIs.")
        if dry_run:
            print(f"  Dry run: would set redirect URIs of '{client_id}' to {redirect_uris}")
        else:
            representation = kc.get_client(realm, uuid)
            representation["redirectUris"] = redirect_uris
            representation["webOrigins"] = ["+"]
            representation.setdefault("attributes", {})["post.logout.redirect.uris"] = "+"
            if not kc.update_client(realm, uuid, representation, best_effort=True):
                print(f"  Warning: could not update redirect URIs for '{client_id}'")
        return kc.get_client_secret(realm, uuid)

    if dry_run:
        print(f"  Dry run: would create client '{client_id}'")
        return None
    uuid = kc.create_client(realm, _confidential_client(client_id, name or client_id, redirect_uris))
    secret = kc.regenerate_client_secret(realm, uuid) or kc.get_client_secret(realm, uuid)
    print(f"  Client '{client_id}' created (secret: {(secret or '')[:8]}...).")
    return secret


def ensure_public_client(
    kc: KeycloakClient,
    realm: str,
    client_id: str,
    redirect_uris: list[str],
    name: str | None = None,
    dry_run: bool = False,
    pkce: bool = False,
) -> str | None:
    """
    Public client (no secret), e.g. for kubectl oidc-login. Returns its id.

    ``pkce`` requires an S256 code challenge, as browser single-page apps use.
    """
    existing = kc.find_client(realm, client_id)
    if existing:
        print(f"  Public client '{client_id}' already exists.")
        return existing["id"]
    if dry_run:
        print(f"  Dry run: would create public client '{client_id}'")
        return None
    representation = _confidential_client(client_id, name or client_id, redirect_uris)
    representation["publicClient"] = True
    del representation["clientAuthenticatorType"]
    if pkce:
        representation["attributes"]["pkce.code.challenge.method"] = "S256"
    uuid = kc.create_client(realm, representation)
    print(f"  Public client '{client_id}' created.")
    return uuid


def ensure_service_account_client(
    kc: KeycloakClient,
    realm: str,
    client_id: str,
    name: str | None = None,
    dry_run: bool = False,
) -> tuple[str | None, str | None]:
    """
    Confidential client used only for the client_credentials grant.

    Returns (client uuid, secret). An existing client keeps its secret; a new
    one gets a freshly generated secret.
    """
    existing = kc.find_client(realm, client_id)
    if existing:
        print(f"  Service account client '{client_id}' already exists.")
        return existing["id"], kc.get_client_secret(realm, existing["id"])
    if dry_run:
        print(f"  Dry run: would create service account client '{client_id}'")
        return None, None
    representation = _confidential_client(client_id, name or client_id, [])
    representation.update({
        "standardFlowEnabled": False,
        "serviceAccountsEnabled": True,
        "webOrigins": [],
    })
    uuid = kc.create_client(realm, representation)
    secret = kc.regenerate_client_secret(realm, uuid) or kc.get_client_secret(realm, uuid)
    print(f"  Service account client '{client_id}' created (secret: {(secret or '')[:8]}...).")
    return uuid, secret


def group_mapper() -> dict[str, Any]:
    return {
        "name": GROUP_MAPPER_NAME,
        "protocol": "openid-connect",
        "protocolMapper": "oidc-group-membership-mapper",
        "consentRequired": False,
        "config": {
            "full.path": "false",
            "id.token.claim": "true",
            "access.token.claim": "true",
            "claim.name": "groups",
            "userinfo.token.claim": "true",
        },
    }


def ensure_group_mapper(kc: KeycloakClient, realm: str, client_id: str, dry_run: bool = False) -> bool:
    """
    Add the ``groups`` claim mapper to a client. Best-effort: an existing
    mapper (by name or a 409) and API failures are not errors.
    """
    client = kc.find_client(realm, client_id)
    if not client:
        logger.warning("Client %s not found; skipping group mapper", client_id)
        return False
    uuid = client["id"]
    for mapper in kc.list_protocol_mappers(realm, uuid):
        if mapper.get("name") == GROUP_MAPPER_NAME or mapper.get("protocolMapper") == "oidc-group-membership-mapper":
            print(f"  Group mapper already present on '{client_id}'.")
            return False
    if dry_run:
        print(f"  Dry run: would add group mapper to '{client_id}'")
        return False
    try:
        created = kc.add_protocol_mapper(realm, uuid, group_mapper())
    except ApiError as exc:
        logger.warning("Could not add group mapper to %s: %s", client_id, exc)
        return False
    print(f"  Group mapper {'added to' if created else 'already present on'} '{client_id}'.")
    return created


# GitLab

def ensure_gitlab_group(gl: GitLabClient, name: str, path: str, dry_run: bool = False) -> dict[str, Any] | None:
    existing = gl.find_group(path)
    if existing:
        print(f"  Group '{path}' already exists (id: {existing['id']}).")
        return existing
    if dry_run:
        print(f"  Dry run: would create group '{path}'")
        return None
    group = gl.create_group(name, path)
    print(f"  Group '{path}' created (id: {group['id']}).")
    return group


def ensure_gitlab_project(
    gl: GitLabClient, name: str, namespace_path: str, namespace_id: int, dry_run: bool = False,
) -> tuple[dict[str, Any] | None, bool]:
    """Returns (project, created)."""
    existing = gl.find_project(name, namespace_path)
    if existing:
        print(f"  Project already exists: {namespace_path}/{name} (id: {existing['id']})")
        return existing, False
    if dry_run:
        print(f"  Dry run: would create project {namespace_path}/{name}")
        return None, False
    project = gl.create_project(name, namespace_id)
    print(f"  Created project: {namespace_path}/{name} (id: {project['id']})")
    return project, True


# Harbor

def ensure_harbor_project(hb: HarborClient, name: str, public: bool = False, dry_run: bool = False) -> bool:
    if hb.find_project(name):
        print(f"  Harbor project '{name}' already exists.")
        return False
    if dry_run:
        print(f"  Dry run: would create Harbor project '{name}'")
        return False
    hb.create_project(name, public=public)
    print(f"  Harbor project '{name}' created.")
    return True


def ensure_harbor_robot(
    hb: HarborClient,
    name: str,
    description: str,
    permissions: list[dict[str, Any]],
    dry_run: bool = False,
) -> dict[str, str] | None:
    """
    Create a non-expiring system robot account.

    Returns ``{"name", "secret"}`` for a new robot, or None when it already
    exists (Harbor never returns an existing robot's secret) or in dry-run.
    """
    existing = hb.find_robot(name)
    if existing:
        print(f"  Robot '{existing.get('name', name)}' already exists.")
        return None
    if dry_run:
        print(f"  Dry run: would create robot '{name}'")
        return None
    created = hb.create_robot({
        "name": name,
        "description": description,
        "duration": -1,
        "level": "system",
        "permissions": permissions,
    })
    print(f"  Robot created: {created.get('name', name)}")
    return {"name": created.get("name", f"robot${name}"), "secret": created.get("secret", "")}
