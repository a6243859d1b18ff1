"""
Tear down the RKE2 cluster and everything it leaves behind.

Phases:
0. Pre-flight: required commands, terraform.tfvars, typed confirmation
1. RKE2 workload cleanup (GitLab release, Redis, CNPG cluster, namespace)
2. Terraform destroy (after pushing secrets to Harvester)
3. Harvester orphan reconciliation and Rancher cleanup
4. Local cleanup of cluster-specific files

Phase 1 and every step of phase 3 are best-effort. A failed Terraform
destroy aborts the run.
"""

from __future__ import annotations

import base64
import binascii
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Callable

import requests

from platform_bootstrap import constants as c
from platform_bootstrap import kube
from platform_bootstrap.clients.rancher import RancherClient
from platform_bootstrap.config import ClusterVars, PlatformConfig, load_cluster_vars
from platform_bootstrap.errors import ApiError, BootstrapError
from platform_bootstrap.kube import (
    cluster_reachable,
    delete_custom_object_quiet,
    delete_namespace_quiet,
    load_api_clients,
)
from platform_bootstrap.phases import Phase, run_phases
from platform_bootstrap.reconciler import HarvesterReconciler, ReconcileReport

# (group, version, namespace, plural, name) of GitLab's backing services
GITLAB_BACKING_OBJECTS = [
    ("redis.redis.opstreelabs.in", "v1beta2", c.GITLAB_NAMESPACE, "redissentinels", "gitlab-redis"),
    ("redis.redis.opstreelabs.in", "v1beta2", c.GITLAB_NAMESPACE, "redisreplications", "gitlab-redis"),
    ("postgresql.cnpg.io", "v1", c.DATABASE_NAMESPACE, "clusters", "gitlab-postgresql"),
]


@dataclass
class DestroyOptions:
    # Skip the confirmation prompt and pass -auto-approve to terraform
    auto: bool = False
    # Only clean up orphans; leave Terraform state alone
    skip_tf: bool = False
    # Recover from a failed deploy: also purge CAPI objects and cloud credentials
    dirty: bool = False
    dry_run: bool = False


@dataclass
class DestroyContext:
    config: PlatformConfig
    options: DestroyOptions
    cluster: ClusterVars | None = None
    report: ReconcileReport | None = None
    confirm: Callable[[str], str] = input
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    # API client factories
    api_clients: Callable = load_api_clients
    rancher_factory: Callable[..., RancherClient] = RancherClient
    removed_files: list[str] = field(default_factory=list)


def preflight(ctx: DestroyContext) -> None:
    required = [cmd for cmd in c.TEARDOWN_REQUIRED_COMMANDS if not (ctx.options.skip_tf and cmd == "terraform")]
    missing = [cmd for cmd in required if shutil.which(cmd) is None]
    if missing:
        raise BootstrapError(f"Required commands not found: {', '.join(missing)}")
    if not ctx.config.harvester_kubeconfig.is_file():
        raise BootstrapError(f"Harvester kubeconfig not found: {ctx.config.harvester_kubeconfig}")

    ctx.cluster = load_cluster_vars(ctx.config)
    print(f"  Cluster name:    {ctx.cluster.cluster_name}")
    print(f"  VM namespace:    {ctx.cluster.vm_namespace}")
    print(f"  Skip Terraform:  {ctx.options.skip_tf}")
    print(f"  Auto approve:    {ctx.options.auto}")
    print(f"  Dirty mode:      {ctx.options.dirty}")

    if ctx.options.auto or ctx.options.dry_run:
        return
    print(f"\n  WARNING: This will DESTROY the entire RKE2 cluster '{ctx.cluster.cluster_name}'.")
    print("  All workloads, data, and secrets in the cluster will be PERMANENTLY LOST.\n")
    answer = ctx.confirm("  Type the cluster name to confirm: ").strip()
    if answer != ctx.cluster.cluster_name:
        raise BootstrapError("Confirmation failed. Aborting.")


def cleanup_workloads(ctx: DestroyContext) -> None:
    kubeconfig = ctx.config.rke2_kubeconfig
    if not kubeconfig.is_file():
        print("  RKE2 kubeconfig not found, skipping workload cleanup.")
        return
    core_api, custom_api = ctx.api_clients(kubeconfig)
    if not cluster_reachable(core_api):
        print("  RKE2 cluster not reachable, skipping workload cleanup.")
        return
    if ctx.options.dry_run:
        print("  Dry run: would uninstall the gitlab release and delete its Redis, PostgreSQL and namespace")
        return

    print("Uninstalling GitLab Helm release...")
    env = {**os.environ, "KUBECONFIG": str(kubeconfig)}
    r = kube.run(
        ["helm", "uninstall", "gitlab", "-n", c.GITLAB_NAMESPACE, "--timeout", "5m"],
        check=False, env=env,
    )
    if r.returncode != 0:
        print(f"  Warning: helm uninstall gitlab: {(r.stderr or r.stdout).strip()}")

    print("Deleting GitLab Redis and PostgreSQL resources...")
    for group, version, namespace, plural, name in GITLAB_BACKING_OBJECTS:
        delete_custom_object_quiet(custom_api, group, version, namespace, plural, name)

    print("Deleting gitlab namespace...")
    delete_namespace_quiet(core_api, c.GITLAB_NAMESPACE)
    print("  Workload cleanup complete.")


def terraform_destroy(ctx: DestroyContext) -> None:
    if ctx.options.skip_tf:
        print("  --skip-tf set, skipping terraform destroy.")
        return
    cluster_dir = ctx.config.cluster_dir
    destroy = ["./terraform.sh", "destroy"]
    if ctx.options.auto:
        destroy.append("-auto-approve")
    if ctx.options.dry_run:
        print(f"  Dry run: would execute './terraform.sh push-secrets' and '{' '.join(destroy)}' in {cluster_dir}")
        return
    print("Backing up secrets to Harvester...")
    kube.run(["./terraform.sh", "push-secrets"], cwd=cluster_dir, capture_output=False)
    print("Running terraform destroy...")
    kube.run(destroy, cwd=cluster_dir, capture_output=False)
    print("  Terraform destroy completed.")


def cleanup_harvester(ctx: DestroyContext) -> None:
    cluster = ctx.cluster or load_cluster_vars(ctx.config)
    core_api, custom_api = ctx.api_clients(ctx.config.harvester_kubeconfig)
    reconciler = HarvesterReconciler(
        core_api,
        custom_api,
        cluster.vm_namespace,
        cluster.cluster_name,
        dry_run=ctx.options.dry_run,
        sleep=ctx.sleep,
        clock=ctx.clock,
    )
    ctx.report = reconciler.reconcile()

    if not cluster.rancher_url or not cluster.rancher_token:
        print("  rancher_url/rancher_token not set, skipping Rancher cleanup.")
        return
    rancher = ctx.rancher_factory(cluster.rancher_url, cluster.rancher_token)
    if ctx.options.dirty:
        purge_capi_resources(ctx, rancher, cluster.cluster_name)
    purge_stale_secrets(ctx, rancher, cluster.cluster_name)
    if ctx.options.dirty:
        purge_cloud_credentials(ctx, rancher, cluster.harvester_cluster_id)


def _names_matching(rancher: RancherClient, resource_type: str, namespace: str, needle: str) -> list[str]:
    try:
        items = rancher.list(resource_type, namespace)
    except (ApiError, requests.RequestException) as exc:
        print(f"  Warning: cannot list {resource_type} in {namespace}: {exc}")
        return []
    names = [(item.get("metadata") or {}).get("name", "") for item in items]
    return [n for n in names if needle in n]


def purge_capi_resources(ctx: DestroyContext, rancher: RancherClient, cluster_name: str) -> int:
    """Strip finalizers from and delete the cluster's CAPI objects in fleet-default."""
    print("Cleaning up stuck CAPI resources in Rancher (--dirty)...")
    total = 0
    for resource_type in c.CAPI_RESOURCE_TYPES:
        for name in _names_matching(rancher, resource_type, c.RANCHER_NAMESPACE, cluster_name):
            if ctx.options.dry_run:
                print(f"  Dry run: would clean {resource_type}/{name}")
                continue
            try:
                obj = rancher.get(resource_type, c.RANCHER_NAMESPACE, name)
                obj.setdefault("metadata", {})["finalizers"] = []
                rancher.put(resource_type, c.RANCHER_NAMESPACE, name, obj)
                rancher.remove(resource_type, c.RANCHER_NAMESPACE, name)
            except (ApiError, requests.RequestException) as exc:
                print(f"  Warning: could not clean {resource_type}/{name}: {exc}")
                continue
            print(f"  Cleaned: {resource_type}/{name}")
            total += 1
    if total:
        print(f"  Cleaned up {total} stuck CAPI resource(s).")
        ctx.sleep(c.SETTLE_DELAY)
    else:
        print("  No stuck CAPI resources found.")
    return total


def purge_stale_secrets(ctx: DestroyContext, rancher: RancherClient, cluster_name: str) -> int:
    """
    Delete machine-plan/state/driver secrets left in fleet-default.

    Rancher recreates some of them while the cluster object is finalizing,
    hence several passes.
    """
    print("Cleaning up stale Rancher machine secrets...")
    total = 0
    for _ in range(c.STALE_SECRET_PASSES):
        names = _names_matching(rancher, "secrets", c.RANCHER_NAMESPACE, cluster_name)
        if not names:
            break
        for name in names:
            if ctx.options.dry_run:
                print(f"  Dry run: would delete secret {c.RANCHER_NAMESPACE}/{name}")
            elif rancher.remove("secrets", c.RANCHER_NAMESPACE, name):
                total += 1
        if ctx.options.dry_run:
            break
        ctx.sleep(2)
    print(f"  Cleaned up {total} stale Rancher machine secret(s)." if total else "  No stale Rancher machine secrets found.")
    return total


def _credential_cluster_id(secret: dict) -> str | None:
    raw = (secret.get("data") or {}).get(c.RANCHER_CLUSTER_ID_KEY)
    if not raw:
        return None
    try:
        return base64.b64decode(raw).decode().strip() or None
    except (binascii.Error, UnicodeDecodeError):
        return None


def purge_cloud_credentials(ctx: DestroyContext, rancher: RancherClient, harvester_cluster_id: str | None) -> int:
    """Delete cc-* Harvester cloud credentials that would collide on the next apply."""
    print("Cleaning up orphaned cloud credential secrets (--dirty)...")
    total = 0
    for name in _names_matching(rancher, "secrets", c.RANCHER_CREDENTIAL_NAMESPACE, "cc-"):
        if not name.startswith("cc-"):
            continue
        try:
            secret = rancher.get("secrets", c.RANCHER_CREDENTIAL_NAMESPACE, name)
        except (ApiError, requests.RequestException) as exc:
            print(f"  Warning: cannot read {name}: {exc}")
            continue
        cluster_id = _credential_cluster_id(secret)
        if not cluster_id:
            continue
        if harvester_cluster_id and cluster_id != harvester_cluster_id:
            continue
        if ctx.options.dry_run:
            print(f"  Dry run: would delete cloud credential {name} (cluster: {cluster_id})")
            continue
        if rancher.remove("secrets", c.RANCHER_CREDENTIAL_NAMESPACE, name):
            print(f"  Deleted orphaned cloud credential: {name} (cluster: {cluster_id})")
            total += 1
    if not total:
        print("  No orphaned cloud credentials found.")
    return total


def cleanup_local_files(ctx: DestroyContext) -> None:
    for path in (ctx.config.rke2_kubeconfig, ctx.config.credentials_file):
        if not path.exists():
            continue
        if ctx.options.dry_run:
            print(f"  Dry run: would remove {path}")
            continue
        path.unlink()
        ctx.removed_files.append(str(path))
        print(f"  Removed {path}")
    print("  Preserved for the next deploy: cluster/terraform.tfvars, cluster/kubeconfig-harvester.yaml")


def build_phases() -> list[Phase]:
    return [
        Phase(0, "Pre-flight checks", preflight),
        Phase(1, "K8s workload cleanup", cleanup_workloads),
        Phase(2, "Terraform destroy", terraform_destroy),
        Phase(3, "Harvester orphan cleanup", cleanup_harvester),
        Phase(4, "Local cleanup", cleanup_local_files),
    ]


def destroy_cluster(config: PlatformConfig, options: DestroyOptions, **overrides) -> DestroyContext:
    """Run the full teardown. Keyword overrides replace DestroyContext fields."""
    ctx = DestroyContext(config=config, options=options, **overrides)
    run_phases(build_phases(), ctx, from_phase=0)
    if ctx.report and not ctx.report.clean:
        print("\nSome Harvester resources are still present; re-run with --skip-tf to retry cleanup.")
    name = ctx.cluster.cluster_name if ctx.cluster else "?"
    if options.dry_run:
        print(f"\nDry run complete: nothing was destroyed for cluster '{name}'.")
    else:
        print(f"\nCluster '{name}' destroyed.")
    return ctx


def run(config: PlatformConfig, args) -> int:
    options = DestroyOptions(
        auto=args.auto,
        skip_tf=args.skip_tf,
        dirty=args.dirty,
        dry_run=config.dry_run,
    )
    destroy_cluster(config, options)
    return 0
