"""
Harbor setup for CI: projects, robot accounts and the cluster pull secret.

Robots are created once; Harbor only reveals a robot's secret at creation,
so later runs reuse the saved credentials file or fall back to a
``<create-manually>`` placeholder.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Callable

import requests
import yaml

from platform_bootstrap import constants as c
from platform_bootstrap.clients.harbor import HarborClient
from platform_bootstrap.config import PlatformConfig
from platform_bootstrap.credentials import harbor_admin_password, load_robot_credentials, save_robot_credentials
from platform_bootstrap.errors import ApiError
from platform_bootstrap.kube import KubectlRunner
from platform_bootstrap.phases import Phase, run_phases
from platform_bootstrap.upserts import ensure_harbor_project, ensure_harbor_robot

PUBLIC_PROJECTS = {"library", "charts"}


def _access(*pairs: tuple[str, str]) -> list[dict[str, str]]:
    return [{"resource": resource, "action": action} for resource, action in pairs]


PUSH_PULL = (("repository", "push"), ("repository", "pull"))
TAGS = (("artifact", "delete"), ("tag", "create"), ("tag", "delete"))
CHARTS = (("helm-chart", "read"), ("helm-chart-version", "create"), ("helm-chart-version", "delete"))

CI_PUSH_PERMISSIONS = [
    {"namespace": "library", "kind": "project", "access": _access(*PUSH_PULL, *TAGS, *CHARTS)},
    {"namespace": "charts", "kind": "project", "access": _access(*PUSH_PULL, *CHARTS)},
    {"namespace": "dev", "kind": "project", "access": _access(*PUSH_PULL, *TAGS)},
]

CLUSTER_PULL_PERMISSIONS = [
    {"namespace": "*", "kind": "project", "access": _access(("repository", "pull"))},
]

# (credentials key, robot name, description, permissions)
ROBOTS = [
    ("ci_push", "ci-push", "CI push access for library, charts, dev projects", CI_PUSH_PERMISSIONS),
    ("cluster_pull", "cluster-pull", "Cluster-wide pull access for all projects", CLUSTER_PULL_PERMISSIONS),
]


@dataclass
class HarborCiSetup:
    config: PlatformConfig
    kubectl: KubectlRunner
    harbor_factory: Callable[..., HarborClient] = HarborClient
    harbor: HarborClient | None = None
    robots: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def registry(self) -> str:
        return f"harbor.{self.config.domain}"

    def client(self) -> HarborClient:
        if self.harbor is None:
            self.harbor = self.harbor_factory(
                f"https://{self.registry}/api/v2.0", "admin", harbor_admin_password(self.config), verify=False,
            )
        return self.harbor


def create_projects(ctx: HarborCiSetup) -> None:
    harbor = ctx.client()
    for name in c.HARBOR_PROJECTS:
        ensure_harbor_project(harbor, name, public=name in PUBLIC_PROJECTS, dry_run=ctx.dry_run)


def _resolve_robot(ctx: HarborCiSetup, key: str, name: str, description: str,
                   permissions: list[dict[str, Any]], saved: dict[str, dict[str, str]]) -> dict[str, str]:
    try:
        created = ensure_harbor_robot(ctx.client(), name, description, permissions, dry_run=ctx.dry_run)
    except (ApiError, requests.RequestException) as exc:
        print(f"  Warning: robot '{name}' creation failed: {exc}")
        created = None
    if created and created.get("secret"):
        return created

    previous = saved.get(key) or {}
    if previous.get("secret") and previous["secret"] != c.ROBOT_PLACEHOLDER_SECRET:
        print(f"  Reusing saved credentials for {previous.get('name', name)}.")
        return previous
    if not ctx.dry_run:
        print(f"  Warning: no secret for robot '{name}'. Create or reset it manually in the Harbor UI.")
    return {"name": f"robot${name}", "secret": c.ROBOT_PLACEHOLDER_SECRET}


def create_robots(ctx: HarborCiSetup) -> None:
    saved = load_robot_credentials(ctx.config.harbor_robot_file)
    for key, name, description, permissions in ROBOTS:
        print(f"Creating Harbor robot account '{name}'...")
        ctx.robots[key] = _resolve_robot(ctx, key, name, description, permissions, saved)


def pull_secret_manifest(registry: str, username: str, password: str) -> str:
    """``kubernetes.io/dockerconfigjson`` Secret for pulling from the registry."""
    auth = base64.b64encode(f"{username}:{password}".encode()).decode()
    docker_config = {"auths": {registry: {"username": username, "password": password, "auth": auth}}}
    return yaml.safe_dump({
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": c.HARBOR_PULL_SECRET, "namespace": c.HARBOR_PULL_SECRET_NAMESPACE},
        "type": "kubernetes.io/dockerconfigjson",
        "data": {".dockerconfigjson": base64.b64encode(json.dumps(docker_config).encode()).decode()},
    }, sort_keys=False)


def create_pull_secret(ctx: HarborCiSetup) -> None:
    pull = ctx.robots.get("cluster_pull") or {}
    if pull.get("secret", c.ROBOT_PLACEHOLDER_SECRET) == c.ROBOT_PLACEHOLDER_SECRET:
        print(f"  No cluster-pull secret available, skipping imagePullSecret '{c.HARBOR_PULL_SECRET}'.")
        return
    ctx.kubectl.apply_yaml(pull_secret_manifest(ctx.registry, pull["name"], pull["secret"]))
    if not ctx.dry_run:
        print(f"  imagePullSecret '{c.HARBOR_PULL_SECRET}' created in {c.HARBOR_PULL_SECRET_NAMESPACE}.")


def save_credentials(ctx: HarborCiSetup) -> None:
    if ctx.dry_run:
        print(f"  Dry run: would save robot credentials to {ctx.config.harbor_robot_file}")
    else:
        save_robot_credentials(ctx.config.harbor_robot_file, ctx.robots)
        print(f"  Robot credentials saved to: {ctx.config.harbor_robot_file}")
    ci = ctx.robots.get("ci_push") or {}
    print("Set these as CI secrets in your app repositories:")
    print(f"  HARBOR_REGISTRY    = {ctx.registry}")
    print(f"  HARBOR_CI_USER     = {ci.get('name', 'robot$ci-push')}")
    print(f"  HARBOR_CI_PASSWORD = (see {ctx.config.harbor_robot_file})")
    print(f"  ARGOCD_SERVER      = argo.{ctx.config.domain}")


def build_phases() -> list[Phase]:
    return [
        Phase(1, "Harbor projects", create_projects),
        Phase(2, "Robot accounts", create_robots),
        Phase(3, "Cluster pull secret", create_pull_secret),
        Phase(4, "Robot credentials", save_credentials),
    ]


def run(config: PlatformConfig, args) -> int:
    ctx = HarborCiSetup(
        config=config,
        kubectl=KubectlRunner(config.rke2_kubeconfig, dry_run=config.dry_run),
    )
    run_phases(build_phases(), ctx)
    return 0
