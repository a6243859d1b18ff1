"""
Manifest generation for ArgoCD and Kustomize.

Pure templating from the service table: ArgoCD ``Application`` manifests, base
and overlay ``kustomization.yaml`` files, and placeholder substitution of
credentials and domain names in service YAML.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

import yaml

from platform_bootstrap.constants import ARGOCD_NAMESPACE, PLACEHOLDER_ENV_KEYS
from platform_bootstrap.errors import BootstrapError
from platform_bootstrap.services import ServiceDescriptor, SyncPolicy

if TYPE_CHECKING:
    from platform_bootstrap.config import PlatformConfig

logger = logging.getLogger(__name__)

IN_CLUSTER_SERVER = "https://kubernetes.default.svc"
KUSTOMIZE_API_VERSION = "kustomize.config.k8s.io/v1beta1"
YAML_SUFFIXES = (".yaml", ".yml")


def _dump(doc: dict[str, Any]) -> str:
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False)


def application_manifest(
    service: ServiceDescriptor,
    repo_url: str,
    path: str,
    target_revision: str = "main",
) -> dict[str, Any]:
    """
    ArgoCD Application for one service.

    ``auto`` sync prunes and self-heals; ``manual`` leaves syncing to a
    human. Both create the destination namespace on first sync.
    """
    destination: dict[str, str] = {"server": IN_CLUSTER_SERVER}
    if service.namespace:
        destination["namespace"] = service.namespace

    sync_policy: dict[str, Any] = {}
    if service.sync_policy is SyncPolicy.AUTO:
        sync_policy["automated"] = {"prune": True, "selfHeal": True}
    sync_policy["syncOptions"] = ["CreateNamespace=true"]

    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {"name": service.name, "namespace": ARGOCD_NAMESPACE},
        "spec": {
            "project": "default",
            "source": {
                "repoURL": repo_url,
                "targetRevision": target_revision,
                "path": path,
            },
            "destination": destination,
            "syncPolicy": sync_policy,
        },
    }


def render_application(service: ServiceDescriptor, repo_url: str, path: str) -> str:
    return _dump(application_manifest(service, repo_url, path))


def render_kustomization(resources: Iterable[str]) -> str:
    return _dump({
        "apiVersion": KUSTOMIZE_API_VERSION,
        "kind": "Kustomization",
        "resources": list(resources),
    })


def render_overlay() -> str:
    """Overlay kustomization that pulls in the shared base unchanged."""
    return render_kustomization(["../../base"])


def is_values_file(name: str) -> bool:
    """Helm values files are consumed by charts, not applied as resources."""
    stem, _, suffix = name.rpartition(".")
    if "." + suffix not in YAML_SUFFIXES:
        return False
    return stem == "values" or stem.endswith("-values") or stem.startswith("values-")


def list_base_resources(directory: str | Path) -> list[str]:
    """Top-level YAML files of a service directory that kustomize should apply."""
    directory = Path(directory)
    names = []
    for entry in sorted(directory.iterdir()):
        if not entry.is_file() or entry.suffix not in YAML_SUFFIXES:
            continue
        if entry.name in ("kustomization.yaml", "kustomization.yml") or is_values_file(entry.name):
            continue
        names.append(entry.name)
    return names


def placeholder_values(config: PlatformConfig) -> list[tuple[str, str]]:
    """
    Ordered (token, replacement) pairs.

    Longer tokens come before their prefixes (CHANGEME_DOMAIN_DASHED before
    CHANGEME_DOMAIN) so that a replacement never splits a longer token.
    """
    env = config.env
    pairs = [(token, env.get(key, "")) for token, key in PLACEHOLDER_ENV_KEYS]
    pairs += [
        ("admin:CHANGEME_GENERATE_WITH_HTPASSWD", env.get("BASIC_AUTH_HTPASSWD", "")),
        ("CHANGEME_TRAEFIK_FQDN", f"traefik.{config.domain}"),
        ("CHANGEME_TRAEFIK_TLS_SECRET", f"traefik-{config.domain_dashed}-tls"),
        ("CHANGEME_DOMAIN_DASHED", config.domain_dashed),
        ("CHANGEME_DOMAIN", config.domain),
        ("example-dot-com", config.domain_dot),
        ("example-com", config.domain_dashed),
        ("example.ch", config.domain),
    ]
    return pairs


def substitute_placeholders(text: str, config: PlatformConfig) -> str:
    for token, value in placeholder_values(config):
        text = text.replace(token, value)
    return text


def substitute_tree(root: str | Path, config: PlatformConfig) -> int:
    """Rewrite every YAML file under ``root`` in place. Returns files changed."""
    changed = 0
    for path in Path(root).rglob("*"):
        if ".git" in path.parts or not path.is_file() or path.suffix not in YAML_SUFFIXES:
            continue
        original = path.read_text()
        updated = substitute_placeholders(original, config)
        if updated != original:
            path.write_text(updated)
            changed += 1
    return changed


def build_service_tree(
    source_dir: str | Path,
    work_dir: str | Path,
    cluster: str,
    config: PlatformConfig,
) -> None:
    """
    Lay out a service repo as Kustomize base/overlay.

    ``base/`` receives a copy of the service directory (plus a generated
    kustomization when it has none); ``overlays/<cluster>/`` references the
    base. Placeholders are substituted in every YAML file.

    Raises:
        BootstrapError: If the source directory does not exist
    """
    source_dir = Path(source_dir)
    work_dir = Path(work_dir)
    if not source_dir.is_dir():
        raise BootstrapError(f"Source directory not found: {source_dir}")

    base_dir = work_dir / "base"
    overlay_dir = work_dir / "overlays" / cluster
    base_dir.mkdir(parents=True, exist_ok=True)
    overlay_dir.mkdir(parents=True, exist_ok=True)

    for item in source_dir.iterdir():
        if item.name == ".git":
            continue
        target = base_dir / item.name
        if item.is_dir():
            shutil.copytree(item, target, dirs_exist_ok=True)
        else:
            shutil.copy2(item, target)

    if not (base_dir / "kustomization.yaml").exists():
        logger.info("Generating kustomization.yaml for %s", source_dir.name)
        (base_dir / "kustomization.yaml").write_text(render_kustomization(list_base_resources(base_dir)))

    (overlay_dir / "kustomization.yaml").write_text(render_overlay())
    substitute_tree(work_dir, config)
