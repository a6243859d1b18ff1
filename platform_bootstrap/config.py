"""
Platform configuration.

Loads ``scripts/.env`` (plus the process environment), fills in defaults and
generated secrets, and derives the domain-based names every flow needs.
The result is a single ``PlatformConfig`` passed explicitly to each phase.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from platform_bootstrap import constants as c
from platform_bootstrap.errors import BootstrapError

logger = logging.getLogger(__name__)

_ENV_LINE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


@dataclass
class PlatformConfig:
    """Complete configuration for one invocation."""

    repo_root: Path
    domain: str
    domain_dashed: str
    domain_dot: str
    org_name: str
    realm: str
    git_repo_url: str
    git_base_url: str
    rancher_fqdn: str
    deploy_uptime_kuma: bool
    deploy_librenms: bool
    env: dict[str, str] = field(default_factory=dict)
    dry_run: bool = False

    def path(self, relative: str) -> Path:
        return self.repo_root / relative

    @property
    def cluster_dir(self) -> Path:
        return self.path(c.CLUSTER_DIR)

    @property
    def scripts_dir(self) -> Path:
        return self.path(c.SCRIPTS_DIR)

    @property
    def services_dir(self) -> Path:
        return self.path(c.SERVICES_DIR)

    @property
    def rke2_kubeconfig(self) -> Path:
        return self.cluster_dir / c.RKE2_KUBECONFIG

    @property
    def harvester_kubeconfig(self) -> Path:
        return self.cluster_dir / c.HARVESTER_KUBECONFIG

    @property
    def oidc_secrets_file(self) -> Path:
        return self.scripts_dir / c.OIDC_SECRETS_FILE

    @property
    def harbor_robot_file(self) -> Path:
        return self.scripts_dir / c.HARBOR_ROBOT_FILE

    @property
    def credentials_file(self) -> Path:
        return self.cluster_dir / c.CREDENTIALS_FILE

    @property
    def vault_init_file(self) -> Path:
        return self.cluster_dir / c.VAULT_INIT_FILE

    @property
    def root_ca_file(self) -> Path:
        return self.cluster_dir / c.ROOT_CA_FILE

    @property
    def tfvars_file(self) -> Path:
        return self.cluster_dir / c.TFVARS_FILE

    @property
    def gitlab_token_file(self) -> Path:
        return self.scripts_dir / c.GITLAB_TOKEN_FILE

    @property
    def deploy_key_dir(self) -> Path:
        return self.scripts_dir / c.DEPLOY_KEY_DIR

    def url(self, host: str) -> str:
        """External HTTPS URL for a service host under the platform domain."""
        return f"https://{host}.{self.domain}"


@dataclass
class ClusterVars:
    """Cluster identity read from terraform.tfvars."""

    cluster_name: str
    rancher_url: str | None
    rancher_token: str | None
    vm_namespace: str
    harvester_cluster_id: str | None


def gen_password(length: int = 32) -> str:
    """Random alphanumeric-ish password of exactly ``length`` characters."""
    out = ""
    while len(out) < length:
        out += re.sub(r"[/+=\-_]", "", secrets.token_urlsafe(length))
    return out[:length]


def load_env_file(path: str | Path) -> dict[str, str]:
    """Parse a shell-style .env file. A missing file yields an empty dict."""
    path = Path(path)
    if not path.is_file():
        return {}
    values: dict[str, str] = {}
    for line in path.read_text().splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = _ENV_LINE.match(line)
        if not m:
            continue
        key, raw = m.group(1), m.group(2).strip()
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
            raw = raw[1:-1]
        values[key] = raw
    return values


def _as_bool(value: str | None) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes")


def derive_org_name(domain: str) -> str:
    """'example.com' -> 'Example', 'my-lab.net' -> 'My Lab', 'myLab.io' -> 'My Lab'."""
    base = domain.split(".", 1)[0]
    base = re.sub(r"([a-z])([A-Z])", r"\1 \2", base)
    base = re.sub(r"[-_]", " ", base)
    return " ".join(word.capitalize() for word in base.split())


def _git_origin_url(repo_root: Path) -> str | None:
    try:
        r = subprocess.run(
            ["git", "-C", str(repo_root), "remote", "get-url", "origin"],
            capture_output=True,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if r.returncode != 0:
        return None
    return r.stdout.strip() or None


def load_platform_config(
    repo_root: str | Path,
    environ: Mapping[str, str] | None = None,
    dry_run: bool = False,
) -> PlatformConfig:
    """
    Build the PlatformConfig for a run.

    Values in the process environment override the .env file. Secrets that
    neither defines are generated so that manifests never carry placeholders.
    """
    repo_root = Path(repo_root).expanduser().resolve()
    environ = os.environ if environ is None else environ

    env_path = repo_root / c.SCRIPTS_DIR / c.ENV_FILE
    env = load_env_file(env_path)
    if env:
        logger.info("Loaded settings from %s", env_path)
    else:
        logger.info("No .env found at %s, using defaults and generated secrets", env_path)
    env.update({k: v for k, v in environ.items() if k.isupper()})

    env.setdefault("DEPLOY_UPTIME_KUMA", "true")
    env.setdefault("DEPLOY_LIBRENMS", "false")
    env.setdefault("MATTERMOST_MINIO_ROOT_USER", "mattermost-minio-admin")
    for key, length in c.GENERATED_SECRETS:
        if not env.get(key):
            env[key] = gen_password(length)

    domain = env.get("DOMAIN") or c.DEFAULT_DOMAIN
    if domain == c.DEFAULT_DOMAIN:
        logger.warning(
            "DOMAIN is '%s' (default). Set DOMAIN in .env if this is not your domain.",
            c.DEFAULT_DOMAIN,
        )
    env["DOMAIN"] = domain
    env["DOMAIN_DASHED"] = domain.replace(".", "-")
    env["DOMAIN_DOT"] = domain.replace(".", "-dot-")
    env.setdefault("RANCHER_FQDN", f"rancher.{domain}")
    if not env.get("ORG_NAME"):
        env["ORG_NAME"] = derive_org_name(domain)
    if not env.get("KC_REALM"):
        env["KC_REALM"] = domain.split(".", 1)[0]
    if not env.get("GIT_REPO_URL"):
        env["GIT_REPO_URL"] = _git_origin_url(repo_root) or c.PLACEHOLDER_GIT_REPO_URL
    if not env.get("GIT_BASE_URL"):
        env["GIT_BASE_URL"] = env["GIT_REPO_URL"].rsplit("/", 1)[0]
    if not env.get("TRAEFIK_LB_IP"):
        tfvars = repo_root / c.CLUSTER_DIR / c.TFVARS_FILE
        env["TRAEFIK_LB_IP"] = read_tfvar(tfvars, "traefik_lb_ip") or "198.51.100.2"

    return PlatformConfig(
        repo_root=repo_root,
        domain=domain,
        domain_dashed=env["DOMAIN_DASHED"],
        domain_dot=env["DOMAIN_DOT"],
        org_name=env["ORG_NAME"],
        realm=env["KC_REALM"],
        git_repo_url=env["GIT_REPO_URL"],
        git_base_url=env["GIT_BASE_URL"],
        rancher_fqdn=env["RANCHER_FQDN"],
        deploy_uptime_kuma=_as_bool(env["DEPLOY_UPTIME_KUMA"]),
        deploy_librenms=_as_bool(env["DEPLOY_LIBRENMS"]),
        env=env,
        dry_run=dry_run,
    )


def read_tfvar(tfvars_path: str | Path, key: str) -> str | None:
    """Return the quoted value of ``key = "value"`` in a tfvars file."""
    tfvars_path = Path(tfvars_path)
    if not tfvars_path.is_file():
        return None
    pattern = re.compile(rf'^{re.escape(key)}\s*=\s*"([^"]*)"')
    for line in tfvars_path.read_text().splitlines():
        m = pattern.match(line)
        if m:
            return m.group(1)
    return None


def load_cluster_vars(config: PlatformConfig) -> ClusterVars:
    """
    Read the cluster identity from terraform.tfvars.

    Raises:
        BootstrapError: If the tfvars file or cluster_name is missing
    """
    path = config.tfvars_file
    if not path.is_file():
        raise BootstrapError(f"terraform.tfvars not found: {path}")
    cluster_name = read_tfvar(path, "cluster_name")
    if not cluster_name:
        raise BootstrapError(f"cluster_name is not set in {path}")
    return ClusterVars(
        cluster_name=cluster_name,
        rancher_url=read_tfvar(path, "rancher_url"),
        rancher_token=read_tfvar(path, "rancher_token"),
        vm_namespace=read_tfvar(path, "vm_namespace") or "default",
        harvester_cluster_id=read_tfvar(path, "harvester_cluster_id"),
    )
