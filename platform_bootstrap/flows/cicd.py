"""
CI/CD wiring between GitHub, ArgoCD, Argo Rollouts and Harbor.

Phases:
1. GitHub to ArgoCD connection: deploy key, known hosts, repo credentials
2. App-of-apps: one private GitHub repo per service, Applications, root app
3. Harbor CI: projects, robot accounts, cluster pull secret
4. Argo Rollouts ClusterAnalysisTemplates backed by Prometheus
5. Sample Rollout, GitHub Actions and Application files
6. Validation summary

Requires an authenticated GitHub CLI (``gh auth login``). ``--from N``
resumes at phase N.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import yaml

from platform_bootstrap import constants as c
from platform_bootstrap import kube
from platform_bootstrap.clients.harbor import HarborClient
from platform_bootstrap.config import PlatformConfig
from platform_bootstrap.errors import BootstrapError, CommandError
from platform_bootstrap.flows import harbor_ci
from platform_bootstrap.flows.common import (
    add_known_host,
    apply_app_of_apps,
    argocd_repo_secret,
    commit_infra_paths,
    ensure_ssh_key,
    report_sync_status,
    sync_status,
    write_application_manifests,
)
from platform_bootstrap.kube import KubectlRunner
from platform_bootstrap.manifests import substitute_tree
from platform_bootstrap.phases import Phase, print_banner, run_phases
from platform_bootstrap.rollouts import analysis_templates, sample_files
from platform_bootstrap.services import ServiceDescriptor, SyncPolicy, enabled_services

_OWNER_RE = re.compile(r".*[:/]([^/]+)/[^/]+\.git$")

GIT_AUTHOR_NAME = "rke2-cluster-bootstrap"
SYNC_WAIT = 15


def github_owner(repo_url: str) -> str:
    """GitHub user or org owning ``repo_url`` (SSH or HTTPS form)."""
    match = _OWNER_RE.match(repo_url)
    if not match:
        raise BootstrapError(f"Cannot derive the GitHub owner from GIT_REPO_URL '{repo_url}'")
    return match.group(1)


def gh(*args: str, check: bool = True):
    return kube.run(["gh", *args], check=check)


@dataclass
class CicdSetup:
    config: PlatformConfig
    kubectl: KubectlRunner
    services: list[ServiceDescriptor]
    owner: str
    harbor_factory: Callable[..., HarborClient] = HarborClient
    sleep: Callable[[float], None] = time.sleep
    # Service names whose GitHub repo was pushed by phase 2
    pushed: list[str] = field(default_factory=list)
    harbor_configured: bool = False
    gh_checked: bool = False

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    @property
    def deploy_key(self) -> Path:
        return self.config.deploy_key_dir / c.GITHUB_DEPLOY_KEY_NAME

    @property
    def repo_prefix(self) -> str:
        return f"svc-{self.config.realm}-"

    def repo_slug(self, service: ServiceDescriptor) -> str:
        return f"{self.owner}/{service.repo_name(self.config.realm)}"

    def repo_url(self, service: ServiceDescriptor) -> str:
        return f"git@{c.GITHUB_HOST}:{self.repo_slug(service)}.git"

    def git_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.setdefault("GIT_AUTHOR_NAME", GIT_AUTHOR_NAME)
        env.setdefault("GIT_AUTHOR_EMAIL", f"noreply@{self.config.domain}")
        env.setdefault("GIT_COMMITTER_NAME", env["GIT_AUTHOR_NAME"])
        env.setdefault("GIT_COMMITTER_EMAIL", env["GIT_AUTHOR_EMAIL"])
        return env


def check_github_cli(ctx: CicdSetup) -> None:
    if shutil.which("gh") is None:
        raise BootstrapError("GitHub CLI (gh) not found. Install it from https://cli.github.com/")
    ctx.gh_checked = True
    if ctx.dry_run:
        print("  Dry run: skipping the gh authentication check")
        return
    if gh("auth", "status", check=False).returncode != 0:
        raise BootstrapError("GitHub CLI is not authenticated. Run 'gh auth login' first.")
    login = gh("api", "user", "-q", ".login", check=False).stdout.strip()
    print(f"  GitHub authenticated as: {login or 'unknown'}")


def verify_repo_connection(ctx: CicdSetup) -> None:
    """Ask the ArgoCD server which repositories it can reach. Warnings only."""
    pod = ctx.kubectl.kubectl(
        "-n", c.ARGOCD_NAMESPACE, "get", "pod", "-l", "app.kubernetes.io/name=argocd-server",
        "-o", "jsonpath={.items[0].metadata.name}",
    )
    name = pod.stdout.strip() if pod.returncode == 0 else ""
    if not name:
        print("  Warning: argocd-server pod not found, cannot verify the repository connection")
        return
    listing = ctx.kubectl.kubectl(
        "-n", c.ARGOCD_NAMESPACE, "exec", name, "--",
        "argocd", "repo", "list", "--server", "localhost:8080", "--plaintext", "--insecure",
    )
    if listing.returncode == 0 and c.GITHUB_HOST in listing.stdout:
        print("  ArgoCD can reach GitHub repositories.")
    else:
        print("  Warning: could not confirm the GitHub repository connection (check the ArgoCD UI)")


def connect_github(ctx: CicdSetup) -> None:
    check_github_cli(ctx)

    print("Generating SSH deploy key pair for GitHub...")
    ensure_ssh_key(ctx.deploy_key, f"argocd@{ctx.config.domain}", dry_run=ctx.dry_run)
    public_key = ctx.deploy_key.with_name(ctx.deploy_key.name + ".pub")
    if ctx.dry_run:
        print("  Dry run: would add the deploy key to the GitHub account")
    else:
        title = f"ArgoCD Deploy Key ({ctx.config.realm})"
        if gh("ssh-key", "add", str(public_key), "--title", title, check=False).returncode == 0:
            print(f"  Deploy key added to GitHub as '{title}'.")
        else:
            print("  Warning: could not add the deploy key to GitHub (may already exist)")

    print("Updating ArgoCD SSH known hosts for github.com...")
    add_known_host(ctx.kubectl, c.GITHUB_HOST, dry_run=ctx.dry_run)

    print("Creating ArgoCD repository credentials...")
    owner_prefix = f"git@{c.GITHUB_HOST}:{ctx.owner}"
    if ctx.dry_run:
        print(f"  Dry run: would apply secrets {c.GITHUB_REPO_CREDS_SECRET} ({owner_prefix}) "
              f"and {c.INFRA_REPO_SECRET} ({ctx.config.git_repo_url})")
        return
    key = ctx.deploy_key.read_text()
    ctx.kubectl.apply_yaml(argocd_repo_secret(c.GITHUB_REPO_CREDS_SECRET, "repo-creds", owner_prefix, key))
    ctx.kubectl.apply_yaml(argocd_repo_secret(c.INFRA_REPO_SECRET, "repository", ctx.config.git_repo_url, key))
    print(f"  ArgoCD credential template created (matches {owner_prefix}/*)")
    ctx.sleep(c.REPO_CONNECT_WAIT)
    verify_repo_connection(ctx)


def ensure_github_repo(ctx: CicdSetup, service: ServiceDescriptor) -> None:
    slug = ctx.repo_slug(service)
    if gh("repo", "view", slug, check=False).returncode == 0:
        print(f"  Repository {slug} already exists")
        return
    gh("repo", "create", slug, "--private",
       "--description", f"K8s manifests for {service.name} (managed by rke2-cluster bootstrap)")
    print(f"  Created private repository {slug}")


def push_service_repo(ctx: CicdSetup, service: ServiceDescriptor) -> None:
    """Replace the repo contents with the service directory and push to main."""
    repo_url = ctx.repo_url(service)
    env = ctx.git_env()
    with tempfile.TemporaryDirectory(prefix=f"svc-{service.name}-") as tmp:
        work_dir = Path(tmp) / "repo"

        def git(*args: str, check: bool = True):
            return kube.run(["git", "-C", str(work_dir), *args], check=check, env=env)

        if kube.run(["git", "clone", repo_url, str(work_dir)], check=False, env=env).returncode != 0:
            work_dir.mkdir(parents=True, exist_ok=True)
            git("init", "-b", "main")
            git("remote", "add", "origin", repo_url)
        for item in work_dir.iterdir():
            if item.name == ".git":
                continue
            if item.is_dir():
                shutil.rmtree(item)
            else:
                item.unlink()
        shutil.copytree(ctx.config.path(service.source_path), work_dir, dirs_exist_ok=True)
        substitute_tree(work_dir, ctx.config)

        git("add", "-A")
        if git("diff", "--cached", "--quiet", check=False).returncode == 0:
            print(f"  No changes to commit for {ctx.repo_slug(service)}")
        else:
            git("commit", "-m", f"Sync {service.name} manifests from rke2-cluster")
        git("push", "-u", "origin", "main")
    print(f"  Pushed manifests to {ctx.repo_slug(service)}")


def bootstrap_app_of_apps(ctx: CicdSetup) -> None:
    if not ctx.gh_checked:
        check_github_cli(ctx)
    for service in ctx.services:
        print(f"--- {service.name} ---")
        if not ctx.config.path(service.source_path).is_dir():
            print(f"  Warning: source directory not found: {service.source_path}, skipping")
            continue
        if ctx.dry_run:
            print(f"  Dry run: would create {ctx.repo_slug(service)} and push {service.source_path}")
            continue
        try:
            ensure_github_repo(ctx, service)
            push_service_repo(ctx, service)
        except CommandError as exc:
            print(f"  Warning: could not publish {ctx.repo_slug(service)}: {exc}")
            continue
        ctx.pushed.append(service.name)

    apps_dir = write_application_manifests(ctx.config, ctx.services, ctx.repo_url, ".")
    if ctx.dry_run:
        print("  Dry run: would commit the Application manifests and apply app-of-apps.yaml")
        return
    commit_infra_paths(ctx.config, apps_dir, "Point ArgoCD Applications at per-service GitHub repos",
                       ctx.git_env())
    apply_app_of_apps(ctx.config, ctx.kubectl)

    print("Waiting for ArgoCD to sync applications...")
    ctx.sleep(SYNC_WAIT)
    report_sync_status(ctx.kubectl, ctx.services)


def harbor_available(ctx: CicdSetup) -> bool:
    if ctx.kubectl.kubectl("get", "namespace", c.HARBOR_NAMESPACE).returncode != 0:
        return False
    pods = ctx.kubectl.kubectl(
        "-n", c.HARBOR_NAMESPACE, "get", "pods", "-l", "component=core", "-o", "jsonpath={.items[*].metadata.name}",
    )
    return pods.returncode == 0 and bool(pods.stdout.strip())


def configure_harbor(ctx: CicdSetup) -> None:
    if not harbor_available(ctx):
        print("  Warning: Harbor is not deployed (no core pod in the harbor namespace), skipping")
        return
    setup = harbor_ci.HarborCiSetup(config=ctx.config, kubectl=ctx.kubectl, harbor_factory=ctx.harbor_factory)
    for step in (harbor_ci.create_projects, harbor_ci.create_robots,
                 harbor_ci.create_pull_secret, harbor_ci.save_credentials):
        step(setup)
    ctx.harbor_configured = True


def apply_analysis_templates(ctx: CicdSetup) -> None:
    templates = analysis_templates()
    ctx.kubectl.apply_yaml(yaml.safe_dump_all(templates, sort_keys=False))
    names = ", ".join(t["metadata"]["name"] for t in templates)
    if not ctx.dry_run:
        print(f"  ClusterAnalysisTemplates applied: {names}")


def write_samples(ctx: CicdSetup) -> None:
    samples_dir = ctx.config.path(c.SAMPLES_DIR)
    files = sample_files(ctx.config.domain, ctx.config.domain_dashed, ctx.owner)
    for name, content in files.items():
        target = samples_dir / name
        if ctx.dry_run:
            print(f"  Dry run: would write {c.SAMPLES_DIR}/{name}")
            continue
        samples_dir.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        print(f"  Written: {c.SAMPLES_DIR}/{name}")


def _github_repo_count(ctx: CicdSetup) -> int | None:
    try:
        r = gh("repo", "list", ctx.owner, "--limit", "100", "--json", "name", check=False)
    except CommandError:
        return None
    if r.returncode != 0:
        return None
    return sum(1 for repo in json.loads(r.stdout or "[]") if repo["name"].startswith(ctx.repo_prefix))


def print_summary(ctx: CicdSetup) -> None:
    domain = ctx.config.domain
    print_banner("CI/CD SETUP SUMMARY")
    print(f"  GitHub owner:    {ctx.owner}")
    print(f"  Infra repo:      {ctx.config.git_repo_url}")
    print(f"  Service repos:   {ctx.owner}/{ctx.repo_prefix}*")
    print(f"  ArgoCD:          https://argo.{domain}")
    print(f"  Rollouts:        https://rollouts.{domain}")
    if ctx.harbor_configured:
        print(f"  Harbor:          https://harbor.{domain} (robot credentials in {ctx.config.harbor_robot_file})")
    print()
    print("Service repositories:")
    for service in ctx.services:
        label = "auto-sync" if service.sync_policy is SyncPolicy.AUTO else "manual sync"
        status = "" if ctx.dry_run else f" [{sync_status(ctx.kubectl, service.name) or 'missing'}]"
        print(f"  {ctx.repo_slug(service)} ({label}){status}")

    if not ctx.dry_run:
        apps = ctx.kubectl.kubectl(
            "-n", c.ARGOCD_NAMESPACE, "get", "applications",
            "-o", "custom-columns=NAME:.metadata.name,SYNC:.status.sync.status,HEALTH:.status.health.status",
        )
        if apps.returncode == 0:
            print(apps.stdout.rstrip())
        templates = ctx.kubectl.kubectl("get", "clusteranalysistemplates")
        if templates.returncode == 0:
            print(templates.stdout.rstrip())
        count = _github_repo_count(ctx)
        if count is not None:
            print(f"  {count} service repositories found on GitHub under {ctx.owner}")

    print()
    print("Pipeline: push -> GitHub Actions (lint, build, push to Harbor) -> ArgoCD sync -> Rollout analysis")
    print("Manual steps:")
    print("  1. Add HARBOR_REGISTRY, HARBOR_CI_USER, HARBOR_CI_PASSWORD, ARGOCD_SERVER and "
          "ARGOCD_AUTH_TOKEN as secrets in each app repo")
    print(f"  2. Copy {c.SAMPLES_DIR}/sample-github-actions.yml to .github/workflows/ci.yml in an app repo")
    print(f"  3. Adapt {c.SAMPLES_DIR}/sample-rollout-*.yaml and {c.SAMPLES_DIR}/sample-argocd-app.yaml")
    print("  4. Sync the manual-sync Applications (vault, harbor) from the ArgoCD UI")


def build_phases() -> list[Phase]:
    return [
        Phase(1, "GitHub to ArgoCD connection", connect_github),
        Phase(2, "App-of-apps bootstrap", bootstrap_app_of_apps),
        Phase(3, "Harbor CI integration", configure_harbor),
        Phase(4, "Argo Rollouts analysis templates", apply_analysis_templates),
        Phase(5, "Sample manifests", write_samples),
        Phase(6, "Validation summary", print_summary),
    ]


def run(config: PlatformConfig, args) -> int:
    ctx = CicdSetup(
        config=config,
        kubectl=KubectlRunner(config.rke2_kubeconfig, dry_run=config.dry_run),
        services=enabled_services(config),
        owner=github_owner(config.git_repo_url),
    )
    run_phases(build_phases(), ctx, from_phase=args.from_phase)
    return 0
