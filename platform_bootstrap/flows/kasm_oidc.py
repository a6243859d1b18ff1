"""
Wire KASM Workspaces to Keycloak over OIDC.

Keycloak side: check the ``kasm`` client exists, resolve its secret, add the
groups claim mapper and set the backchannel logout URL. KASM side: log in
as the KASM admin and create the OpenID provider config through the admin
API, printing the values for a manual setup when the API refuses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from platform_bootstrap import constants as c
from platform_bootstrap.clients.kasm import KasmClient
from platform_bootstrap.config import PlatformConfig
from platform_bootstrap.credentials import SecretStore
from platform_bootstrap.errors import BootstrapError
from platform_bootstrap.flows.common import KeycloakConnection, oidc_issuer
from platform_bootstrap.kube import KubectlRunner, read_secret_value
from platform_bootstrap.phases import Phase, run_phases
from platform_bootstrap.upserts import ensure_group_mapper


@dataclass
class KasmOidcOptions:
    skip_keycloak: bool = False
    skip_kasm: bool = False


@dataclass
class KasmOidcSetup:
    config: PlatformConfig
    options: KasmOidcOptions
    store: SecretStore
    connection: KeycloakConnection
    kasm_factory: Callable[..., KasmClient] = KasmClient
    client_secret: str | None = None
    # Set when the KASM side needs a human
    manual_steps: list[str] = field(default_factory=list)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def kasm_url(self) -> str:
        return self.config.url("kasm")


def backchannel_logout_url(config: PlatformConfig) -> str:
    return f"{config.url('kasm')}/api/oidc_backchannel_logout"


def kasm_oidc_config(config: PlatformConfig, client_secret: str) -> dict[str, Any]:
    """Payload for KASM's ``create_oidc_config`` admin call."""
    issuer = oidc_issuer(config)
    return {
        "enabled": True,
        "display_name": "Continue with Keycloak",
        "logo_url": f"{config.url('keycloak')}/resources/favicon.ico",
        "auto_login": False,
        "hostname": "",
        "default": True,
        "client_id": c.KASM_CLIENT_ID,
        "client_secret": client_secret,
        "authorization_url": f"{issuer}/protocol/openid-connect/auth",
        "token_url": f"{issuer}/protocol/openid-connect/token",
        "user_info_url": f"{issuer}/protocol/openid-connect/userinfo",
        "scope": "openid email profile",
        "username_attribute": "preferred_username",
        "groups_attribute": "groups",
        "redirect_url": f"{config.url('kasm')}/api/oidc_callback",
        "oidc_issuer": issuer,
        "logout_with_oidc_provider": True,
        "debug": True,
    }


def configure_keycloak(setup: KasmOidcSetup) -> None:
    kc = setup.connection.get()
    realm = setup.config.realm

    client = kc.find_client(realm, c.KASM_CLIENT_ID)
    if not client:
        raise BootstrapError(
            f"KASM client not found in Keycloak realm '{realm}'. Run 'platform-bootstrap keycloak' first."
        )
    uuid = client["id"]
    print(f"  Found '{c.KASM_CLIENT_ID}' client (id: {uuid})")

    secret = setup.store.get(c.KASM_CLIENT_ID) or kc.get_client_secret(realm, uuid)
    if not secret:
        raise BootstrapError("Could not retrieve the kasm client secret from the secrets file or Keycloak")
    setup.client_secret = secret
    print(f"  Client secret retrieved ({secret[:8]}...)")

    ensure_group_mapper(kc, realm, c.KASM_CLIENT_ID, dry_run=setup.dry_run)

    expected = backchannel_logout_url(setup.config)
    representation = kc.get_client(realm, uuid)
    attributes = representation.setdefault("attributes", {})
    if attributes.get("backchannel.logout.url") == expected:
        print("  Backchannel logout URL already configured.")
        return
    if setup.dry_run:
        print(f"  Dry run: would set backchannel logout URL: {expected}")
        return
    attributes["backchannel.logout.url"] = expected
    attributes["backchannel.logout.session.required"] = "true"
    representation["frontchannelLogout"] = False
    kc.update_client(realm, uuid, representation)
    print(f"  Backchannel logout URL set: {expected}")


def _manual_instructions(setup: KasmOidcSetup) -> list[str]:
    cfg = kasm_oidc_config(setup.config, setup.client_secret or "")
    return [
        "Configure OIDC in KASM Admin > Access Management > Authentication > OpenID:",
        f"  Client ID:       {cfg['client_id']}",
        f"  Client Secret:   {(setup.client_secret or '')[:8]}...",
        f"  Authorization:   {cfg['authorization_url']}",
        f"  Token:           {cfg['token_url']}",
        f"  Userinfo:        {cfg['user_info_url']}",
        f"  Redirect:        {cfg['redirect_url']}",
        f"  Issuer:          {cfg['oidc_issuer']}",
        f"  Username Attr:   {cfg['username_attribute']}",
        f"  Groups Attr:     {cfg['groups_attribute']}",
        f"  Scopes:          {cfg['scope']}",
    ]


def configure_kasm(setup: KasmOidcSetup) -> None:
    admin_password = read_secret_value(
        setup.connection.core(), c.KASM_NAMESPACE, c.KASM_SECRET, c.KASM_ADMIN_PASSWORD_KEY,
    )
    if not admin_password:
        raise BootstrapError(f"Could not read the KASM admin password from secret {c.KASM_SECRET}")

    secret = setup.client_secret or setup.store.get(c.KASM_CLIENT_ID)
    if not secret:
        raise BootstrapError(
            "KASM client secret not available. Run the Keycloak side or create the secrets file first."
        )
    setup.client_secret = secret

    kasm = setup.kasm_factory(setup.kasm_url, verify=False)
    if not kasm.healthcheck():
        raise BootstrapError(f"Cannot reach KASM API at {setup.kasm_url}")
    print("  KASM API reachable.")

    kasm.login(c.KASM_ADMIN_USER, admin_password)
    print(f"  Logged in (user_id: {(kasm.user_id or '')[:8]}...)")

    existing = kasm.find_oidc_config(c.KASM_CLIENT_ID)
    if existing:
        print(f"  OIDC config for client_id '{c.KASM_CLIENT_ID}' already exists "
              f"(id: {existing.get('oidc_config_id')}).")
        print("  To recreate it, delete it first in KASM Admin > Authentication > OpenID.")
        return

    payload = kasm_oidc_config(setup.config, secret)
    if setup.dry_run:
        shown = {k: v for k, v in payload.items() if k != "client_secret"}
        print(f"  Dry run: would create OIDC config: {shown}")
        return

    config_id = kasm.create_oidc_config(payload)
    if not config_id:
        setup.manual_steps = _manual_instructions(setup)
        print("  Warning: automated OIDC creation failed.")
        for line in setup.manual_steps:
            print(f"  {line}")
        return
    print(f"  OIDC config created (id: {config_id}).")
    print("  OIDC debug mode is enabled. Disable it after validation:")
    print("    KASM Admin > Authentication > OpenID > edit > uncheck Debug")


def summarize(setup: KasmOidcSetup) -> None:
    print(f"  Issuer:            {oidc_issuer(setup.config)}")
    print(f"  KASM login:        {setup.kasm_url}")
    print(f"  Backchannel logout: {backchannel_logout_url(setup.config)}")
    if setup.manual_steps:
        print("  KASM provider requires manual configuration (see above).")


def keycloak_side(setup: KasmOidcSetup) -> None:
    if setup.options.skip_keycloak:
        print("  --skip-keycloak set, skipping.")
        return
    configure_keycloak(setup)


def kasm_side(setup: KasmOidcSetup) -> None:
    if setup.options.skip_kasm:
        print("  --skip-kasm set, skipping.")
        return
    configure_kasm(setup)


def build_phases() -> list[Phase]:
    return [
        Phase(1, "Keycloak: kasm client", keycloak_side),
        Phase(2, "KASM: OpenID provider", kasm_side),
        Phase(3, "Summary", summarize),
    ]


def run(config: PlatformConfig, args) -> int:
    """Returns 1 when the KASM provider needs manual configuration."""
    kubectl = KubectlRunner(config.rke2_kubeconfig, dry_run=config.dry_run)
    setup = KasmOidcSetup(
        config=config,
        options=KasmOidcOptions(skip_keycloak=args.skip_keycloak, skip_kasm=args.skip_kasm),
        store=SecretStore(config.oidc_secrets_file),
        connection=KeycloakConnection(config, kubectl),
    )
    try:
        run_phases(build_phases(), setup)
    finally:
        setup.connection.close()
    return 1 if setup.manual_steps else 0
