"""Pieces shared by several flows."""

from __future__ import annotations

import json
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import requests
import yaml

from platform_bootstrap import constants as c
from platform_bootstrap import kube
from platform_bootstrap.clients.keycloak import KeycloakClient
from platform_bootstrap.config import PlatformConfig
from platform_bootstrap.errors import ApiError, BootstrapError, CommandError
from platform_bootstrap.kube import KubectlRunner, load_api_clients, read_secret_value
from platform_bootstrap.manifests import render_application, substitute_placeholders
from platform_bootstrap.services import ServiceDescriptor

AUTH_RETRIES = 10
AUTH_RETRY_DELAY = 5
VAULT_ADDR = "http://127.0.0.1:8200"


def oidc_issuer(config: PlatformConfig) -> str:
    """Realm issuer URL as services see it (never the port-forward)."""
    return f"{config.url('keycloak')}/realms/{config.realm}"


def vault_root_token(config: PlatformConfig) -> str | None:
    """Root token from ``cluster/vault-init.json``; None when the file or key is missing."""
    init_file = config.vault_init_file
    if not init_file.is_file():
        return None
    return json.loads(init_file.read_text()).get("root_token") or None


def vault_exec(kubectl: KubectlRunner, root_token: str, *args: str, stdin: str | None = None) -> bool:
    """Run the vault CLI inside ``vault-0`` as root."""
    cmd = ["env", f"VAULT_ADDR={VAULT_ADDR}", f"VAULT_TOKEN={root_token}", "vault", *args]
    return kubectl.exec("vault", "vault-0", cmd, stdin=stdin)


@dataclass
class KeycloakConnection:
    """
    Lazily connected Keycloak admin client.

    Tries ``https://keycloak.<domain>`` first and falls back to a kubectl
    port-forward to the Keycloak service. Authenticates with the bootstrap
    admin client stored in the ``keycloak-admin-secret`` Secret.
    """

    config: PlatformConfig
    kubectl: KubectlRunner
    sleep: Callable[[float], None] = time.sleep
    client_factory: Callable[..., KeycloakClient] = KeycloakClient
    core_api: Any = None
    client: KeycloakClient | None = None
    port_forward: subprocess.Popen | None = None

    def core(self) -> Any:
        if self.core_api is None:
            self.core_api, _ = load_api_clients(self.config.rke2_kubeconfig)
        return self.core_api

    def get(self) -> KeycloakClient:
        if self.client is None:
            self.client = self._connect()
        return self.client

    def _reachable_client(self) -> KeycloakClient:
        kc = self.client_factory(self.config.url("keycloak"), verify=False)
        if kc.reachable():
            return kc
        print("  Direct HTTPS to Keycloak unreachable, starting kubectl port-forward")
        self.port_forward = self.kubectl.port_forward(
            c.KEYCLOAK_NAMESPACE, "svc/keycloak",
            c.KEYCLOAK_PORT_FORWARD_LOCAL, c.KEYCLOAK_PORT_FORWARD_REMOTE,
        )
        self.sleep(3)
        kc = self.client_factory(f"http://localhost:{c.KEYCLOAK_PORT_FORWARD_LOCAL}")
        if not kc.reachable():
            raise BootstrapError("Cannot reach Keycloak via direct HTTPS or port-forward")
        print(f"  Port-forward active, using {kc.base_url}")
        return kc

    def _connect(self) -> KeycloakClient:
        kc = self._reachable_client()
        core = self.core()
        client_id = read_secret_value(
            core, c.KEYCLOAK_NAMESPACE, c.KEYCLOAK_ADMIN_SECRET, c.KEYCLOAK_ADMIN_CLIENT_ID_KEY,
        ) or c.KEYCLOAK_DEFAULT_ADMIN_CLIENT_ID
        client_secret = read_secret_value(
            core, c.KEYCLOAK_NAMESPACE, c.KEYCLOAK_ADMIN_SECRET, c.KEYCLOAK_ADMIN_CLIENT_SECRET_KEY,
        )
        if not client_secret:
            raise BootstrapError(
                f"Could not read {c.KEYCLOAK_ADMIN_CLIENT_SECRET_KEY} from secret {c.KEYCLOAK_ADMIN_SECRET}"
            )

        last_error: Exception | None = None
        for _ in range(AUTH_RETRIES):
            try:
                kc.authenticate_client_credentials(client_id, client_secret)
            except (ApiError, requests.RequestException, BootstrapError) as exc:
                last_error = exc
                self.sleep(AUTH_RETRY_DELAY)
                continue
            print("  Keycloak authenticated via bootstrap client credentials.")
            return kc
        raise BootstrapError(f"Cannot authenticate to Keycloak at {kc.base_url}: {last_error}")

    def close(self) -> None:
        if self.port_forward is not None:
            self.port_forward.terminate()
            try:
                self.port_forward.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.port_forward.kill()
                self.port_forward.wait()
            self.port_forward = None


def ensure_ssh_key(key: Path, comment: str, dry_run: bool = False) -> None:
    """Generate an ed25519 key pair at ``key`` unless one exists."""
    if key.is_file():
        print(f"  Deploy key already exists at {key}")
        return
    if dry_run:
        print(f"  Dry run: would generate SSH key at {key}")
        return
    key.parent.mkdir(parents=True, exist_ok=True)
    key.parent.chmod(0o700)
    kube.run(["ssh-keygen", "-t", "ed25519", "-f", str(key), "-N", "", "-C", comment])
    print("  Deploy key generated.")


def add_known_host(kubectl: KubectlRunner, host: str, dry_run: bool = False) -> None:
    """Append ``host``'s scanned SSH keys to ArgoCD's known hosts ConfigMap once."""
    if dry_run:
        print(f"  Dry run: would add {host} to ArgoCD known hosts")
        return
    scan = kube.run(["ssh-keyscan", "-T", "5", host], check=False)
    scanned = scan.stdout.strip() if scan.returncode == 0 else ""
    if not scanned:
        print(f"  Warning: could not reach {host} via SSH. Add its host key manually later.")
        return
    current = kubectl.kubectl(
        "-n", c.ARGOCD_NAMESPACE, "get", "configmap", c.ARGOCD_KNOWN_HOSTS_CM,
        "-o", "jsonpath={.data.ssh_known_hosts}",
    )
    existing = current.stdout if current.returncode == 0 else ""
    if host in existing:
        print(f"  {host} already in ArgoCD known hosts.")
        return
    patch = {"data": {"ssh_known_hosts": f"{existing.rstrip()}\n{scanned}\n".lstrip()}}
    if kubectl.patch_merge(c.ARGOCD_NAMESPACE, "configmap", c.ARGOCD_KNOWN_HOSTS_CM, json.dumps(patch)):
        print(f"  {host} host key added to ArgoCD known hosts.")
    else:
        print(f"  Warning: could not update {c.ARGOCD_KNOWN_HOSTS_CM} (add {host} manually)")


def argocd_repo_secret(name: str, secret_type: str, url: str, private_key: str) -> str:
    """
    ArgoCD git credentials Secret.

    ``repo-creds`` is a template matching every repo under the URL prefix;
    ``repository`` registers exactly one repo.
    """
    return yaml.safe_dump({
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": name,
            "namespace": c.ARGOCD_NAMESPACE,
            "labels": {"argocd.argoproj.io/secret-type": secret_type},
        },
        "type": "Opaque",
        "stringData": {"type": "git", "url": url, "sshPrivateKey": private_key},
    }, sort_keys=False)


def write_application_manifests(
    config: PlatformConfig,
    services: list[ServiceDescriptor],
    repo_url: Callable[[ServiceDescriptor], str],
    path: str,
) -> Path:
    """Write one ArgoCD Application per service into the infra repo's apps directory."""
    apps_dir = config.services_dir / c.ARGO_APPS_DIR
    for service in services:
        target = apps_dir / f"{service.name}.yaml"
        manifest = render_application(service, repo_url(service), path)
        if config.dry_run:
            print(f"  Dry run: would write {target.relative_to(config.repo_root)}")
            continue
        apps_dir.mkdir(parents=True, exist_ok=True)
        target.write_text(manifest)
        print(f"  Generated: {target.relative_to(config.repo_root)}")
    return apps_dir


def commit_infra_paths(config: PlatformConfig, path: Path, message: str, env: dict[str, str]) -> None:
    """Commit and push ``path`` in the infra repo. Best-effort."""
    root = config.repo_root
    try:
        kube.run(["git", "-C", str(root), "add", str(path)], env=env)
        if kube.run(["git", "-C", str(root), "diff", "--cached", "--quiet"], check=False, env=env).returncode == 0:
            print("  No new Application manifest changes to commit.")
            return
        kube.run(["git", "-C", str(root), "commit", "-m", message], env=env)
        kube.run(["git", "-C", str(root), "push", "origin", "main"], env=dict(os.environ))
    except CommandError as exc:
        print(f"  Warning: could not commit Application manifests: {exc}")
        return
    print("  Application manifests committed and pushed to the infra repo.")


def apply_app_of_apps(config: PlatformConfig, kubectl: KubectlRunner) -> None:
    app_of_apps = config.services_dir / c.APP_OF_APPS_FILE
    kubectl.apply_yaml(substitute_placeholders(app_of_apps.read_text(), config))
    print("  App-of-apps root Application applied.")


def sync_status(kubectl: KubectlRunner, name: str) -> str | None:
    """Sync status of an ArgoCD Application; None when it does not exist."""
    r = kubectl.kubectl(
        "-n", c.ARGOCD_NAMESPACE, "get", "application", name, "-o", "jsonpath={.status.sync.status}",
    )
    if r.returncode != 0:
        return None
    return r.stdout.strip() or "Unknown"


def report_sync_status(kubectl: KubectlRunner, services: list[ServiceDescriptor]) -> None:
    for service in services:
        status = sync_status(kubectl, service.name)
        if status is None:
            print(f"  Warning: Application '{service.name}' not found yet (sync may be in progress)")
        else:
            print(f"  Application '{service.name}': {status}")
