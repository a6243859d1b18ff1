"""
Move the platform service manifests into GitLab and point ArgoCD at them.

Phases:
1. Prerequisites and GitLab authentication
2. ``platform_services`` group
3. ArgoCD connection: deploy key, SSH known hosts, repo credential template
4. One project per service, pushed as a Kustomize base/overlay tree
5. ArgoCD Application manifests and the app-of-apps root

``--from N`` resumes at phase N; later phases look up what earlier ones
created.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import requests

from platform_bootstrap import constants as c
from platform_bootstrap import kube
from platform_bootstrap.clients.gitlab import GitLabClient
from platform_bootstrap.config import PlatformConfig, load_cluster_vars
from platform_bootstrap.credentials import DRY_RUN_TOKEN, resolve_gitlab_token
from platform_bootstrap.errors import ApiError, BootstrapError, CommandError
from platform_bootstrap.flows.common import (
    add_known_host,
    apply_app_of_apps,
    argocd_repo_secret,
    commit_infra_paths,
    ensure_ssh_key,
    report_sync_status,
    write_application_manifests,
)
from platform_bootstrap.kube import KubectlRunner
from platform_bootstrap.manifests import build_service_tree
from platform_bootstrap.phases import Phase, run_phases
from platform_bootstrap.services import ServiceDescriptor, enabled_services
from platform_bootstrap.upserts import ensure_gitlab_group, ensure_gitlab_project

REQUIRED_COMMANDS = ["git", "ssh-keygen", "ssh-keyscan", "kubectl"]
GIT_AUTHOR_NAME = "rke2-cluster-bootstrap"
COMMIT_MESSAGE = "Restructure into Kustomize base/overlay layout"
APPS_COMMIT_MESSAGE = "Update ArgoCD Application manifests to point to GitLab repos"
SYNC_WAIT = 15


@dataclass
class GitLabServicesSetup:
    config: PlatformConfig
    kubectl: KubectlRunner
    cluster_name: str
    services: list[ServiceDescriptor]
    gitlab_factory: Callable[..., GitLabClient] = GitLabClient
    token_prompt: Callable[[str], str] | None = None
    sleep: Callable[[float], None] = time.sleep
    gitlab: GitLabClient | None = None
    group_id: int | None = None
    # Set once the token has been resolved; gitlab stays None on an offline dry run
    checked: bool = False
    # Repo URL per service name, filled by phase 4
    pushed: dict[str, str] = field(default_factory=dict)

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def gitlab_host(self) -> str:
        return f"gitlab.{self.config.domain}"

    @property
    def deploy_key(self) -> Path:
        return self.config.deploy_key_dir / c.ARGOCD_DEPLOY_KEY_NAME

    def repo_url(self, service: ServiceDescriptor) -> str:
        return f"git@{self.gitlab_host}:{c.GITLAB_GROUP_PATH}/{service.repo_name(self.config.realm)}.git"

    def git_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_SSH_COMMAND"] = (
            f"ssh -i {self.deploy_key} -o StrictHostKeyChecking=no -o UserKnownHostsFile=/dev/null"
        )
        env.setdefault("GIT_AUTHOR_NAME", GIT_AUTHOR_NAME)
        env.setdefault("GIT_AUTHOR_EMAIL", f"noreply@{self.config.domain}")
        env.setdefault("GIT_COMMITTER_NAME", env["GIT_AUTHOR_NAME"])
        env.setdefault("GIT_COMMITTER_EMAIL", env["GIT_AUTHOR_EMAIL"])
        return env


def check_prerequisites(ctx: GitLabServicesSetup) -> None:
    missing = [cmd for cmd in REQUIRED_COMMANDS if shutil.which(cmd) is None]
    if missing:
        raise BootstrapError(f"Required commands not found: {', '.join(missing)}")
    print("  All required commands available.")

    kwargs: dict[str, Any] = {"prompt": ctx.token_prompt} if ctx.token_prompt else {}
    token = resolve_gitlab_token(ctx.config, **kwargs)
    ctx.checked = True
    if token == DRY_RUN_TOKEN:
        print(f"  Dry run: no GitLab API token, skipping all calls to {ctx.gitlab_host}")
        return

    gitlab = ctx.gitlab_factory(f"https://{ctx.gitlab_host}/api/v4", token, verify=False)
    try:
        version = gitlab.version()
        user = gitlab.current_user()
    except ApiError as exc:
        raise BootstrapError(f"GitLab API token rejected (HTTP {exc.status}). Check your token.") from exc
    except requests.RequestException as exc:
        raise BootstrapError(f"GitLab not reachable at https://{ctx.gitlab_host}: {exc}") from exc
    print(f"  GitLab {version.get('version', '?')} reachable at https://{ctx.gitlab_host}")
    print(f"  Authenticated as: {user.get('username', 'unknown')}")
    ctx.gitlab = gitlab


def _gitlab(ctx: GitLabServicesSetup) -> GitLabClient | None:
    """GitLab client, authenticating first when resuming with --from."""
    if not ctx.checked:
        check_prerequisites(ctx)
    return ctx.gitlab


def create_group(ctx: GitLabServicesSetup) -> None:
    gitlab = _gitlab(ctx)
    if gitlab is None:
        print(f"  Dry run: would create or find group '{c.GITLAB_GROUP_PATH}'")
        return
    group = ensure_gitlab_group(gitlab, c.GITLAB_GROUP_NAME, c.GITLAB_GROUP_PATH, dry_run=ctx.dry_run)
    ctx.group_id = group["id"] if group else None


def ensure_deploy_key(ctx: GitLabServicesSetup) -> None:
    ensure_ssh_key(ctx.deploy_key, f"argocd-gitlab@{ctx.config.domain}", dry_run=ctx.dry_run)


def update_known_hosts(ctx: GitLabServicesSetup) -> None:
    add_known_host(ctx.kubectl, ctx.gitlab_host, dry_run=ctx.dry_run)


def repo_creds_secret(domain: str, private_key: str) -> str:
    """ArgoCD credential template matching every repo in the platform_services group."""
    return argocd_repo_secret(
        c.ARGOCD_REPO_CREDS_SECRET, "repo-creds", f"git@gitlab.{domain}:{c.GITLAB_GROUP_PATH}", private_key,
    )


def connect_argocd(ctx: GitLabServicesSetup) -> None:
    print("Generating SSH deploy key pair for GitLab...")
    ensure_deploy_key(ctx)
    print(f"Updating ArgoCD SSH known hosts for {ctx.gitlab_host}...")
    update_known_hosts(ctx)
    print("Creating ArgoCD credential template for GitLab repos...")
    if ctx.dry_run:
        print(f"  Dry run: would apply secret {c.ARGOCD_REPO_CREDS_SECRET} for "
              f"git@{ctx.gitlab_host}:{c.GITLAB_GROUP_PATH}")
        return
    ctx.kubectl.apply_yaml(repo_creds_secret(ctx.config.domain, ctx.deploy_key.read_text()))
    print(f"  ArgoCD credential template created (matches git@{ctx.gitlab_host}:{c.GITLAB_GROUP_PATH}/*)")


def _git(ctx: GitLabServicesSetup, work_dir: Path, *args: str, check: bool = True):
    return kube.run(["git", "-C", str(work_dir), *args], check=check, env=ctx.git_env())


def push_service_repo(ctx: GitLabServicesSetup, service: ServiceDescriptor) -> None:
    """Clone (or init) the service repo, rebuild its tree from scratch and push it."""
    repo_url = ctx.repo_url(service)
    source_dir = ctx.config.path(service.source_path)
    with tempfile.TemporaryDirectory(prefix=f"svc-{service.name}-") as tmp:
        work_dir = Path(tmp) / "repo"
        clone = kube.run(["git", "clone", repo_url, str(work_dir)], check=False, env=ctx.git_env())
        if clone.returncode != 0:
            work_dir.mkdir(parents=True, exist_ok=True)
            _git(ctx, work_dir, "init", "-b", "main")
            _git(ctx, work_dir, "remote", "add", "origin", repo_url)

        for item in work_dir.iterdir():
            if item.name == ".git":
                continue
            if item.is_dir():
                shutil.rmtree(item)
            else:
                item.unlink()

        build_service_tree(source_dir, work_dir, ctx.cluster_name, ctx.config)

        _git(ctx, work_dir, "add", "-A")
        if _git(ctx, work_dir, "diff", "--cached", "--quiet", check=False).returncode == 0:
            print(f"  No changes to commit for {service.repo_name(ctx.config.realm)}")
        else:
            _git(ctx, work_dir, "commit", "-m", COMMIT_MESSAGE)
        if _git(ctx, work_dir, "push", "-u", "origin", "main", check=False).returncode != 0:
            _git(ctx, work_dir, "branch", "-M", "main")
            _git(ctx, work_dir, "push", "-u", "origin", "main")
    print(f"  Pushed kustomize base/overlay to {c.GITLAB_GROUP_PATH}/{service.repo_name(ctx.config.realm)}")


def create_projects(ctx: GitLabServicesSetup) -> None:
    gitlab = _gitlab(ctx)
    if gitlab is not None and ctx.group_id is None:
        group = gitlab.find_group(c.GITLAB_GROUP_PATH)
        if group:
            ctx.group_id = group["id"]
        elif not ctx.dry_run:
            raise BootstrapError(f"GitLab group '{c.GITLAB_GROUP_PATH}' not found. Run phase 2 first.")

    public_key_file = ctx.deploy_key.with_name(ctx.deploy_key.name + ".pub")
    for service in ctx.services:
        name = service.repo_name(ctx.config.realm)
        print(f"--- {service.name} ---")
        if not ctx.config.path(service.source_path).is_dir():
            print(f"  Warning: source directory not found: {service.source_path}, skipping")
            continue
        if ctx.dry_run:
            if gitlab is not None:
                ensure_gitlab_project(gitlab, name, c.GITLAB_GROUP_PATH, ctx.group_id or 0, dry_run=True)
            print(f"  Dry run: would push kustomize base/overlay from {service.source_path}")
            continue

        project, created = ensure_gitlab_project(gitlab, name, c.GITLAB_GROUP_PATH, ctx.group_id)
        if created and public_key_file.is_file():
            if not gitlab.add_deploy_key(project["id"], "ArgoCD Deploy Key", public_key_file.read_text().strip()):
                print(f"  Warning: could not add deploy key to {name} (may already exist)")
            ctx.sleep(1)
        try:
            push_service_repo(ctx, service)
        except CommandError as exc:
            print(f"  Warning: push failed for {name}: {exc}")
            continue
        ctx.pushed[service.name] = ctx.repo_url(service)
    print(f"  Processed {len(ctx.services)} services, pushed {len(ctx.pushed)}.")


def write_applications(ctx: GitLabServicesSetup) -> None:
    apps_dir = write_application_manifests(
        ctx.config, ctx.services, ctx.repo_url, f"overlays/{ctx.cluster_name}",
    )
    print(f"  app-of-apps.yaml continues to point to the infra repo: {ctx.config.git_repo_url}")

    if ctx.dry_run:
        print("  Dry run: would commit the Application manifests and apply app-of-apps.yaml")
        return
    commit_infra_paths(ctx.config, apps_dir, APPS_COMMIT_MESSAGE, ctx.git_env())
    apply_app_of_apps(ctx.config, ctx.kubectl)

    print("Waiting for ArgoCD to sync applications...")
    ctx.sleep(SYNC_WAIT)
    report_sync_status(ctx.kubectl, ctx.services)


def build_phases() -> list[Phase]:
    return [
        Phase(1, "Prerequisites and GitLab authentication", check_prerequisites),
        Phase(2, "Platform Services group", create_group),
        Phase(3, "GitLab to ArgoCD connection", connect_argocd),
        Phase(4, "Projects and manifests", create_projects),
        Phase(5, "ArgoCD Application manifests", write_applications),
    ]


def run(config: PlatformConfig, args) -> int:
    ctx = GitLabServicesSetup(
        config=config,
        kubectl=KubectlRunner(config.rke2_kubeconfig, dry_run=config.dry_run),
        cluster_name=load_cluster_vars(config).cluster_name,
        services=enabled_services(config),
    )
    run_phases(build_phases(), ctx, from_phase=args.from_phase)
    return 0
