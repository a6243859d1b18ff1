"""
Targeted deployment of the Identity Portal onto a running cluster.

Phases:
1. Vault SSH certificate authority: signer mount, roles, policies and the
   Kubernetes auth role the backend logs in with (``--skip-vault``)
2. Namespace, root CA ConfigMap and the substituted Kustomize manifests
3. Keycloak clients: public PKCE frontend and the confidential backend
   service account with realm-admin (``--skip-keycloak``)
4. Backend client secret and a backend restart
5. Deployment readiness and the ingress TLS certificate
6. Health check and summary

Vault, Keycloak, cert-manager and the container images must already be in
place.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests
import yaml

from platform_bootstrap import constants as c
from platform_bootstrap.clients.base import ApiSession
from platform_bootstrap.clients.keycloak import KeycloakClient
from platform_bootstrap.config import PlatformConfig
from platform_bootstrap.credentials import SecretStore
from platform_bootstrap.errors import ApiError, BootstrapError
from platform_bootstrap.flows.common import KeycloakConnection, vault_exec, vault_root_token
from platform_bootstrap.http_retry import NO_RETRY
from platform_bootstrap.kube import KubectlRunner
from platform_bootstrap.manifests import substitute_placeholders
from platform_bootstrap.phases import Phase, print_banner, run_phases
from platform_bootstrap.upserts import (
    ensure_group_mapper,
    ensure_public_client,
    ensure_service_account_client,
    grant_client_role,
)

_EXTENSIONS = ("permit-pty", "permit-port-forwarding", "permit-agent-forwarding",
               "permit-X11-forwarding", "permit-user-rc")


def ssh_role(allowed_users: str, extensions: int, ttl: str, max_ttl: str) -> dict[str, Any]:
    """SSH CA signing role granting the first ``extensions`` of the OpenSSH permits."""
    return {
        "key_type": "ca",
        "allow_user_certificates": True,
        "allowed_users": allowed_users,
        "default_extensions": {name: "" for name in _EXTENSIONS[:extensions]},
        "ttl": ttl,
        "max_ttl": max_ttl,
    }


SSH_ROLES = {
    "admin-role": ssh_role("*", 5, "24h", "72h"),
    "infra-role": ssh_role("rocky,infra,ansible", 3, "8h", "24h"),
    "developer-role": ssh_role("rocky,developer", 1, "4h", "8h"),
}


def _hcl(*rules: tuple[str, tuple[str, ...]]) -> str:
    blocks = []
    for path, capabilities in rules:
        caps = ", ".join(f'"{cap}"' for cap in capabilities)
        blocks.append(f'path "{path}" {{\n  capabilities = [{caps}]\n}}\n')
    return "".join(blocks)


SIGN = ("create", "update")
CRUD = ("read", "list", "create", "update", "delete")
_M = c.VAULT_SSH_MOUNT

VAULT_POLICIES = {
    "ssh-sign-admin": _hcl((f"{_M}/sign/*", SIGN), (f"{_M}/config/ca", ("read",))),
    "ssh-sign-self": _hcl((f"{_M}/sign/developer-role", SIGN), (f"{_M}/config/ca", ("read",))),
    "ssh-admin": _hcl((f"{_M}/*", ("create", "read", "update", "delete", "list"))),
    "identity-portal": _hcl(
        (f"{_M}/sign/*", SIGN),
        (f"{_M}/config/ca", ("read",)),
        (f"{_M}/roles/*", CRUD),
        ("sys/policies/acl/*", CRUD),
        ("sys/policies/acl", ("list",)),
        ("pki_int/cert/ca_chain", ("read",)),
    ),
}

# Metadata the API server owns; dropped before re-applying an object elsewhere
SERVER_FIELDS = ("resourceVersion", "uid", "creationTimestamp", "managedFields")


@dataclass
class IdentityPortalSetup:
    config: PlatformConfig
    kubectl: KubectlRunner
    store: SecretStore
    connection: KeycloakConnection
    skip_vault: bool = False
    skip_keycloak: bool = False
    http_factory: Callable[..., ApiSession] = ApiSession
    sleep: Callable[[float], None] = time.sleep

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def namespace(self) -> str:
        return c.IDENTITY_PORTAL_NAMESPACE

    @property
    def tls_secret(self) -> str:
        return f"identity-{self.config.domain_dashed}-tls"

    def keycloak(self) -> KeycloakClient:
        return self.connection.get()


def configure_vault_ssh(ctx: IdentityPortalSetup) -> None:
    if ctx.skip_vault:
        print("  Skipping Vault SSH CA setup (--skip-vault)")
        return
    root_token = vault_root_token(ctx.config)
    if not root_token:
        raise BootstrapError(
            f"No Vault root token in {ctx.config.vault_init_file}; cannot configure the SSH CA without it"
        )

    def vault(*args: str, stdin: str | None = None) -> bool:
        return vault_exec(ctx.kubectl, root_token, *args, stdin=stdin)

    print("Enabling SSH client signer secrets engine...")
    if not vault("secrets", "enable", f"-path={c.VAULT_SSH_MOUNT}", "ssh"):
        print(f"  {c.VAULT_SSH_MOUNT} already enabled.")
    if not vault("write", f"{c.VAULT_SSH_MOUNT}/config/ca", "generate_signing_key=true"):
        print("  SSH CA signing key already present.")

    ok = True
    print("Creating SSH signing roles...")
    for name, role in SSH_ROLES.items():
        ok = vault("write", f"{c.VAULT_SSH_MOUNT}/roles/{name}", "-", stdin=json.dumps(role)) and ok
    print("Creating Vault policies...")
    for name, policy in VAULT_POLICIES.items():
        ok = vault("policy", "write", name, "-", stdin=policy) and ok
    print("Creating Vault Kubernetes auth role for the portal...")
    ok = vault(
        "write", "auth/kubernetes/role/identity-portal",
        "bound_service_account_names=identity-portal",
        f"bound_service_account_namespaces={ctx.namespace}",
        "policies=identity-portal",
        "ttl=1h",
    ) and ok
    if ok:
        print(f"  Vault SSH CA configured ({len(SSH_ROLES)} roles, {len(VAULT_POLICIES)} policies, K8s auth role)")
    else:
        print("  Warning: Vault SSH CA setup incomplete, check 'vault read ssh-client-signer/config/ca'")


def retarget(obj: dict[str, Any], namespace: str) -> dict[str, Any]:
    """Copy of a fetched object, stripped of server fields and moved to ``namespace``."""
    metadata = {k: v for k, v in obj.get("metadata", {}).items() if k not in SERVER_FIELDS}
    metadata["namespace"] = namespace
    return {**obj, "metadata": metadata}


def copy_root_ca(ctx: IdentityPortalSetup) -> None:
    r = ctx.kubectl.kubectl("-n", "kube-system", "get", "configmap", c.ROOT_CA_CONFIGMAP, "-o", "json")
    if r.returncode != 0:
        print(f"  Warning: {c.ROOT_CA_CONFIGMAP} ConfigMap not found in kube-system, TLS verification may fail")
        return
    ctx.kubectl.apply_yaml(json.dumps(retarget(json.loads(r.stdout), ctx.namespace)))
    if not ctx.dry_run:
        print(f"  Root CA ConfigMap copied to {ctx.namespace}.")


def apply_manifests(ctx: IdentityPortalSetup) -> None:
    print(f"Creating namespace {ctx.namespace}...")
    ctx.kubectl.apply_yaml(yaml.safe_dump({"apiVersion": "v1", "kind": "Namespace",
                                           "metadata": {"name": ctx.namespace}}))
    print("Distributing the root CA...")
    copy_root_ca(ctx)

    source = ctx.config.services_dir / c.IDENTITY_PORTAL_MANIFESTS
    if not source.is_dir():
        raise BootstrapError(f"Identity Portal manifests not found: {source}")
    print(f"Applying manifests from {source.relative_to(ctx.config.repo_root)}...")
    ctx.kubectl.apply_yaml(substitute_placeholders(ctx.kubectl.kustomize(source), ctx.config))
    if not ctx.dry_run:
        print("  Manifests applied.")


def create_clients(ctx: IdentityPortalSetup) -> None:
    if ctx.skip_keycloak:
        print("  Skipping Keycloak client setup (--skip-keycloak)")
        print(f"  The backend secret comes from {ctx.store.path} or IDENTITY_PORTAL_OIDC_SECRET")
        return
    kc = ctx.keycloak()
    realm = ctx.config.realm
    print(f"Creating OIDC client: {c.IDENTITY_PORTAL_CLIENT_ID} (public, PKCE)")
    ensure_public_client(
        kc, realm, c.IDENTITY_PORTAL_CLIENT_ID, [f"{ctx.config.url('identity')}/*"],
        "Identity Portal (Frontend)", dry_run=ctx.dry_run, pkce=True,
    )

    print(f"Creating OIDC client: {c.IDENTITY_PORTAL_ADMIN_CLIENT_ID} (service account)")
    uuid, secret = ensure_service_account_client(
        kc, realm, c.IDENTITY_PORTAL_ADMIN_CLIENT_ID, "Identity Portal Admin (Backend)", dry_run=ctx.dry_run,
    )
    if secret and not ctx.dry_run:
        ctx.store.set(c.IDENTITY_PORTAL_ADMIN_CLIENT_ID, secret)
    if uuid:
        account = kc.service_account_user(realm, uuid)
        if account:
            grant_client_role(kc, realm, account["id"], "realm-management", "realm-admin", dry_run=ctx.dry_run)
        else:
            print(f"  Warning: no service account user on '{c.IDENTITY_PORTAL_ADMIN_CLIENT_ID}'")

    for client_id in (c.IDENTITY_PORTAL_CLIENT_ID, c.IDENTITY_PORTAL_ADMIN_CLIENT_ID):
        ensure_group_mapper(kc, realm, client_id, dry_run=ctx.dry_run)


def backend_secret(ctx: IdentityPortalSetup) -> str:
    """
    Client secret of the backend's Keycloak client.

    The saved Keycloak secret wins; ``IDENTITY_PORTAL_OIDC_SECRET`` is the
    fallback for clusters whose client was created elsewhere.

    Raises:
        BootstrapError: If neither source has a value
    """
    secret = ctx.store.get(c.IDENTITY_PORTAL_ADMIN_CLIENT_ID)
    if secret:
        return secret
    secret = ctx.config.env.get("IDENTITY_PORTAL_OIDC_SECRET")
    if not secret:
        raise BootstrapError(
            f"No '{c.IDENTITY_PORTAL_ADMIN_CLIENT_ID}' secret in {ctx.store.path} and "
            "IDENTITY_PORTAL_OIDC_SECRET is not set; run without --skip-keycloak first"
        )
    print("  Using IDENTITY_PORTAL_OIDC_SECRET; it must match the Keycloak client secret.")
    return secret


def backend_secret_manifest(namespace: str, secret: str) -> str:
    return yaml.safe_dump({
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": c.IDENTITY_PORTAL_SECRET, "namespace": namespace},
        "type": "Opaque",
        "stringData": {"KEYCLOAK_CLIENT_SECRET": secret},
    }, sort_keys=False)


def inject_secret(ctx: IdentityPortalSetup) -> None:
    ctx.kubectl.apply_yaml(backend_secret_manifest(ctx.namespace, backend_secret(ctx)))
    if not ctx.dry_run:
        print(f"  {c.IDENTITY_PORTAL_SECRET} written.")
    if ctx.kubectl.rollout_restart(ctx.namespace, f"deployment/{c.IDENTITY_PORTAL_BACKEND}") and not ctx.dry_run:
        print("  Backend restart triggered.")


def wait_for_tls_secret(ctx: IdentityPortalSetup) -> bool:
    elapsed = 0
    while elapsed < c.TLS_WAIT_TIMEOUT:
        if ctx.kubectl.exists(ctx.namespace, "secret", ctx.tls_secret):
            return True
        ctx.sleep(c.TLS_POLL_INTERVAL)
        elapsed += c.TLS_POLL_INTERVAL
    return False


def wait_for_rollout(ctx: IdentityPortalSetup) -> None:
    for name in (c.IDENTITY_PORTAL_BACKEND, c.IDENTITY_PORTAL_FRONTEND):
        if not ctx.kubectl.wait_for_deployment(ctx.namespace, name, c.DEPLOYMENT_WAIT_TIMEOUT):
            raise BootstrapError(f"deployment/{name} in {ctx.namespace} did not become available")
    if ctx.dry_run:
        print(f"  Dry run: would wait for TLS secret {ctx.tls_secret}")
        return
    print("  All deployments ready.")
    if wait_for_tls_secret(ctx):
        print(f"  TLS secret {ctx.tls_secret} issued.")
    else:
        print(f"  Warning: TLS secret {ctx.tls_secret} not found after {c.TLS_WAIT_TIMEOUT}s "
              "(cert-manager may still be issuing)")


def verify(ctx: IdentityPortalSetup) -> None:
    url = ctx.config.url("identity")
    if ctx.dry_run:
        print(f"  Dry run: would check {url}/healthz")
    else:
        try:
            ctx.http_factory(url, verify=False, timeout=15, policy=NO_RETRY).request(
                "GET", "/healthz", expected=(200,),
            )
            print(f"  {url}/healthz is healthy.")
        except (ApiError, requests.RequestException) as exc:
            print(f"  Warning: HTTPS check failed, DNS may not be configured yet ({exc})")

    print_banner("IDENTITY PORTAL")
    print(f"  URL: {url}")
    print("Next steps:")
    print(f"  1. Ensure DNS resolves identity.{ctx.config.domain} to the cluster ingress IP")
    print(f"  2. Open {url} and log in through Keycloak")
    print("  3. Test SSH certificate signing and the kubeconfig download")


def build_phases() -> list[Phase]:
    return [
        Phase(1, "Vault SSH certificate authority", configure_vault_ssh),
        Phase(2, "Namespace and manifests", apply_manifests),
        Phase(3, "Keycloak clients", create_clients),
        Phase(4, "Backend client secret", inject_secret),
        Phase(5, "Rollout", wait_for_rollout),
        Phase(6, "Verification", verify),
    ]


def run(config: PlatformConfig, args) -> int:
    kubectl = KubectlRunner(config.rke2_kubeconfig, dry_run=config.dry_run)
    ctx = IdentityPortalSetup(
        config=config,
        kubectl=kubectl,
        store=SecretStore(config.oidc_secrets_file),
        connection=KeycloakConnection(config, kubectl),
        skip_vault=args.skip_vault,
        skip_keycloak=args.skip_keycloak,
    )
    try:
        run_phases(build_phases(), ctx)
    finally:
        ctx.connection.close()
    return 0
