"""
Keycloak realm, OIDC clients and service bindings.

Phases:
1. Realm and users (admin with realm-admin, general user, TOTP policy)
2. OIDC clients for every platform service; secrets saved locally
3. Bind Grafana, ArgoCD, Harbor, Vault and Mattermost to Keycloak
4. Groups, memberships and the groups claim mapper
5. Summary and credentials log

Run after the cluster is deployed. ``--from N`` resumes at phase N; phase 3
reads client secrets from the local secrets file, so it can run without
phase 2 in the same invocation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable

import requests
import yaml

from platform_bootstrap import constants as c
from platform_bootstrap.clients.harbor import HarborClient
from platform_bootstrap.clients.keycloak import KeycloakClient
from platform_bootstrap.config import PlatformConfig, gen_password
from platform_bootstrap.credentials import SecretStore, append_credentials, harbor_admin_password
from platform_bootstrap.errors import BootstrapError
from platform_bootstrap.flows.common import KeycloakConnection, oidc_issuer, vault_exec, vault_root_token
from platform_bootstrap.kube import KubectlRunner
from platform_bootstrap.phases import Phase, print_banner, run_phases
from platform_bootstrap.upserts import (
    ensure_group,
    ensure_group_mapper,
    ensure_group_membership,
    ensure_oidc_client,
    ensure_public_client,
    ensure_realm,
    ensure_user,
    grant_client_role,
)

TOTP_POLICY = {
    "otpPolicyType": "totp",
    "otpPolicyAlgorithm": "HmacSHA1",
    "otpPolicyDigits": 6,
    "otpPolicyPeriod": 30,
}

GRAFANA_ROLE_PATH = (
    "contains(groups[*], 'platform-admins') && 'Admin' || "
    "contains(groups[*], 'infra-engineers') && 'Admin' || "
    "contains(groups[*], 'senior-developers') && 'Editor' || "
    "contains(groups[*], 'developers') && 'Editor' || 'Viewer'"
)

ARGOCD_POLICY_CSV = (
    "g, platform-admins, role:admin\n"
    "g, developers, role:readonly\n"
    "p, role:developer, applications, sync, */*, allow\n"
    "p, role:developer, applications, get, */*, allow\n"
    "g, developers, role:developer\n"
)


@dataclass
class KeycloakSetup:
    """State shared by the phases of one run."""

    config: PlatformConfig
    kubectl: KubectlRunner
    store: SecretStore
    connection: KeycloakConnection
    harbor_factory: Callable[..., HarborClient] = HarborClient
    admin_password: str = field(default_factory=lambda: gen_password(32))
    user_password: str = field(default_factory=lambda: gen_password(32))
    created_users: list[str] = field(default_factory=list)

    @property
    def realm(self) -> str:
        return self.config.realm

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def issuer(self) -> str:
        return oidc_issuer(self.config)

    def keycloak(self) -> KeycloakClient:
        return self.connection.get()


def setup_realm(ctx: KeycloakSetup) -> None:
    kc = ctx.keycloak()
    domain = ctx.config.domain
    ensure_realm(kc, ctx.realm, ctx.config.org_name, dry_run=ctx.dry_run)

    print("Creating realm admin user...")
    admin_id, created = ensure_user(
        kc, ctx.realm, "admin", ctx.admin_password,
        email=f"admin@{domain}", first_name="Realm", last_name="Admin", dry_run=ctx.dry_run,
    )
    if created:
        ctx.created_users.append("admin")
        grant_client_role(kc, ctx.realm, admin_id, "realm-management", "realm-admin")

    print("Creating general user...")
    _, created = ensure_user(
        kc, ctx.realm, "user", ctx.user_password,
        email=f"user@{domain}", first_name="General", last_name="User", dry_run=ctx.dry_run,
    )
    if created:
        ctx.created_users.append("user")

    print("Enabling TOTP 2FA...")
    if ctx.dry_run:
        print(f"  Dry run: would set the TOTP policy on realm '{ctx.realm}'")
    else:
        kc.update_realm(ctx.realm, {"realm": ctx.realm, **TOTP_POLICY}, best_effort=True)
        print("  TOTP policy configured.")


def create_clients(ctx: KeycloakSetup) -> None:
    kc = ctx.keycloak()
    for client_id, name, uris in c.OIDC_CLIENTS:
        print(f"Creating OIDC client: {client_id}")
        redirect_uris = [uri.format(domain=ctx.config.domain) for uri in uris]
        secret = ensure_oidc_client(kc, ctx.realm, client_id, redirect_uris, name, dry_run=ctx.dry_run)
        if secret and not ctx.dry_run:
            ctx.store.set(client_id, secret)
        elif not secret and not ctx.dry_run:
            print(f"  Warning: no secret returned for '{client_id}'")

    print(f"Creating OIDC client: {c.KUBERNETES_CLIENT_ID} (public)")
    ensure_public_client(
        kc, ctx.realm, c.KUBERNETES_CLIENT_ID, c.KUBERNETES_REDIRECT_URIS,
        "Kubernetes (kubelogin)", dry_run=ctx.dry_run,
    )
    print(f"  Client secrets saved to {ctx.store.path}")


def _bind_grafana(ctx: KeycloakSetup, secret: str) -> None:
    issuer = ctx.issuer
    env = {
        "GF_AUTH_GENERIC_OAUTH_ENABLED": "true",
        "GF_AUTH_GENERIC_OAUTH_NAME": "Keycloak",
        "GF_AUTH_GENERIC_OAUTH_ALLOW_SIGN_UP": "true",
        "GF_AUTH_GENERIC_OAUTH_CLIENT_ID": "grafana",
        "GF_AUTH_GENERIC_OAUTH_CLIENT_SECRET": secret,
        "GF_AUTH_GENERIC_OAUTH_SCOPES": "openid profile email",
        "GF_AUTH_GENERIC_OAUTH_AUTH_URL": f"{issuer}/protocol/openid-connect/auth",
        "GF_AUTH_GENERIC_OAUTH_TOKEN_URL": f"{issuer}/protocol/openid-connect/token",
        "GF_AUTH_GENERIC_OAUTH_API_URL": f"{issuer}/protocol/openid-connect/userinfo",
        "GF_AUTH_GENERIC_OAUTH_ROLE_ATTRIBUTE_PATH": GRAFANA_ROLE_PATH,
        "GF_AUTH_SIGNOUT_REDIRECT_URL": (
            f"{issuer}/protocol/openid-connect/logout"
            f"?post_logout_redirect_uri=https%3A%2F%2Fgrafana.{ctx.config.domain}%2Flogin"
        ),
    }
    if ctx.kubectl.set_env("monitoring", "deployment/grafana", env):
        print("  Grafana OIDC configured.")
    else:
        print("  Warning: Grafana OIDC binding may need manual configuration")


def argocd_oidc_config(issuer: str, secret: str) -> str:
    return yaml.safe_dump({
        "name": "Keycloak",
        "issuer": issuer,
        "clientID": "argocd",
        "clientSecret": secret,
        "requestedScopes": ["openid", "profile", "email", "groups"],
    }, sort_keys=False)


def _bind_argocd(ctx: KeycloakSetup, secret: str) -> None:
    cm_patch = {"data": {"url": ctx.config.url("argo"), "oidc.config": argocd_oidc_config(ctx.issuer, secret)}}
    rbac_patch = {"data": {"policy.csv": ARGOCD_POLICY_CSV, "policy.default": "role:readonly"}}
    ok = ctx.kubectl.patch_merge(c.ARGOCD_NAMESPACE, "configmap", "argocd-cm", json.dumps(cm_patch))
    ok = ctx.kubectl.patch_merge(c.ARGOCD_NAMESPACE, "configmap", "argocd-rbac-cm", json.dumps(rbac_patch)) and ok
    ctx.kubectl.rollout_restart(c.ARGOCD_NAMESPACE, "deployment/argocd-server")
    if ok:
        print("  ArgoCD OIDC configured.")
    else:
        print("  Warning: ArgoCD OIDC binding may need manual configuration")


def harbor_oidc_settings(issuer: str, secret: str) -> dict[str, Any]:
    return {
        "auth_mode": "oidc_auth",
        "oidc_name": "Keycloak",
        "oidc_endpoint": issuer,
        "oidc_client_id": "harbor",
        "oidc_client_secret": secret,
        "oidc_scope": "openid,profile,email",
        "oidc_auto_onboard": True,
        "oidc_groups_claim": "groups",
        "oidc_admin_group": c.ADMIN_GROUP,
        "oidc_verify_cert": True,
        "primary_auth_mode": True,
    }


def _bind_harbor(ctx: KeycloakSetup, secret: str) -> None:
    if ctx.dry_run:
        print("  Dry run: would switch Harbor to OIDC authentication")
        return
    try:
        harbor = ctx.harbor_factory(
            f"{ctx.config.url('harbor')}/api/v2.0", "admin", harbor_admin_password(ctx.config), verify=False,
        )
        ok = harbor.update_configurations(harbor_oidc_settings(ctx.issuer, secret), best_effort=True)
    except (BootstrapError, requests.RequestException) as exc:
        print(f"  Warning: Harbor OIDC binding failed ({exc}); configure it in the Harbor UI")
        return
    if ok:
        print("  Harbor OIDC configured.")
    else:
        print("  Warning: Harbor OIDC binding failed; configure it in the Harbor UI")


def vault_role(domain: str) -> dict[str, Any]:
    return {
        "bound_audiences": ["vault"],
        "allowed_redirect_uris": [
            f"https://vault.{domain}/ui/vault/auth/oidc/oidc/callback",
            "http://localhost:8250/oidc/callback",
        ],
        "user_claim": "preferred_username",
        "groups_claim": "groups",
        "policies": ["default"],
        "token_ttl": "1h",
    }


def _bind_vault(ctx: KeycloakSetup, secret: str) -> None:
    root_token = vault_root_token(ctx.config)
    if not root_token:
        print(f"  Warning: no root_token in {ctx.config.vault_init_file}, configure Vault OIDC manually")
        return

    def vault(*args: str, stdin: str | None = None) -> bool:
        return vault_exec(ctx.kubectl, root_token, *args, stdin=stdin)

    if not vault("auth", "enable", "oidc"):
        print("  OIDC auth already enabled.")
    ok = vault(
        "write", "auth/oidc/config",
        f"oidc_discovery_url={ctx.issuer}",
        "oidc_client_id=vault",
        f"oidc_client_secret={secret}",
        "default_role=default",
    )
    # Array values only survive when the role is written as JSON
    ok = vault("write", "auth/oidc/role/default", "-", stdin=json.dumps(vault_role(ctx.config.domain))) and ok
    if ok:
        print("  Vault OIDC configured.")
    else:
        print("  Warning: Vault OIDC binding incomplete, check 'vault read auth/oidc/config'")


def _bind_mattermost(ctx: KeycloakSetup, secret: str) -> None:
    env = {
        "MM_OPENIDSETTINGS_ENABLE": "true",
        "MM_OPENIDSETTINGS_SECRET": secret,
        "MM_OPENIDSETTINGS_ID": "mattermost",
        "MM_OPENIDSETTINGS_DISCOVERYENDPOINT": f"{ctx.issuer}/.well-known/openid-configuration",
    }
    if ctx.kubectl.set_env("mattermost", "deployment/mattermost", env):
        print("  Mattermost OIDC configured.")
    else:
        print("  Warning: Mattermost OIDC binding may need manual configuration")


BINDINGS: list[tuple[str, str, Callable[[KeycloakSetup, str], None]]] = [
    ("grafana", "Grafana", _bind_grafana),
    ("argocd", "ArgoCD", _bind_argocd),
    ("harbor", "Harbor", _bind_harbor),
    ("vault", "Vault", _bind_vault),
    ("mattermost", "Mattermost", _bind_mattermost),
]


def bind_services(ctx: KeycloakSetup) -> None:
    secrets = ctx.store.load()
    for client_id, label, bind in BINDINGS:
        print(f"Binding {label} to Keycloak...")
        secret = secrets.get(client_id)
        if not secret:
            print(f"  Warning: no client secret for '{client_id}' in {ctx.store.path}, skipping")
            continue
        bind(ctx, secret)

    print("KASM OIDC: run 'platform-bootstrap kasm-oidc', or configure it in Admin UI > Authentication > OpenID")
    print(f"  Client ID:     {c.KASM_CLIENT_ID}")
    print(f"  Client Secret: {secrets.get(c.KASM_CLIENT_ID, '(not created)')}")
    print(f"  Discovery URL: {ctx.issuer}/.well-known/openid-configuration")
    print("GitLab OIDC must be configured in the GitLab Helm values:")
    print("  Client ID:     gitlab")
    print(f"  Client Secret: {secrets.get('gitlab', '(not created)')}")
    print(f"  Issuer:        {ctx.issuer}")


def setup_groups(ctx: KeycloakSetup) -> None:
    kc = ctx.keycloak()
    for group in c.PLATFORM_GROUPS:
        ensure_group(kc, ctx.realm, group, dry_run=ctx.dry_run)

    print("Assigning group memberships...")
    ensure_group_membership(kc, ctx.realm, "admin", c.ADMIN_GROUP, dry_run=ctx.dry_run)
    ensure_group_membership(kc, ctx.realm, "user", c.USER_GROUP, dry_run=ctx.dry_run)

    print("Configuring group claim mappers...")
    for client_id in [client[0] for client in c.OIDC_CLIENTS] + [c.KUBERNETES_CLIENT_ID]:
        ensure_group_mapper(kc, ctx.realm, client_id, dry_run=ctx.dry_run)


def summarize(ctx: KeycloakSetup) -> None:
    console = f"{ctx.config.url('keycloak')}/admin/{ctx.realm}/console"
    passwords = {"admin": ctx.admin_password, "user": ctx.user_password}
    user_lines = []
    for username in ("admin", "user"):
        if username in ctx.created_users:
            user_lines.append(f"{username} / {passwords[username]}  (TOTP required on first login)")
        else:
            user_lines.append(f"{username} / (unchanged)")

    print_banner("KEYCLOAK SETUP SUMMARY")
    print(f"  Realm:     {ctx.realm}")
    print(f"  Admin URL: {console}")
    print(f"  Account:   {ctx.config.url('keycloak')}/realms/{ctx.realm}/account")
    for line in user_lines:
        print(f"  User:      {line}")
    print(f"  Client secrets: {ctx.store.path}")
    print(f"  Groups: {', '.join(c.PLATFORM_GROUPS)}")

    if ctx.dry_run:
        return
    if not ctx.config.credentials_file.is_file():
        print(f"  Warning: {ctx.config.credentials_file} not found, skipping credentials append")
        return
    secrets = ctx.store.load()
    lines = [f"Keycloak Realm  {console}"] + [f"  {line}" for line in user_lines]
    lines += ["OIDC Client Secrets:"] + [f"  {k}: {v}" for k, v in sorted(secrets.items())]
    append_credentials(ctx.config.credentials_file, "Keycloak OIDC", lines)
    print(f"  Keycloak credentials appended to {ctx.config.credentials_file}")


def build_phases() -> list[Phase]:
    return [
        Phase(1, "Realm and users", setup_realm),
        Phase(2, "OIDC clients", create_clients),
        Phase(3, "Service bindings", bind_services),
        Phase(4, "Groups and role mapping", setup_groups),
        Phase(5, "Summary", summarize),
    ]


def run(config: PlatformConfig, args) -> int:
    kubectl = KubectlRunner(config.rke2_kubeconfig, dry_run=config.dry_run)
    ctx = KeycloakSetup(
        config=config,
        kubectl=kubectl,
        store=SecretStore(config.oidc_secrets_file),
        connection=KeycloakConnection(config, kubectl),
    )
    try:
        run_phases(build_phases(), ctx, from_phase=args.from_phase)
    finally:
        ctx.connection.close()
    return 0
