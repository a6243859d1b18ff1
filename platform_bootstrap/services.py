"""Static inventory of the platform services managed through ArgoCD."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from platform_bootstrap.config import PlatformConfig


class SyncPolicy(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


@dataclass(frozen=True)
class ServiceDescriptor:
    """One service: its manifest directory, target namespace and sync mode."""

    name: str
    source_path: str
    # Empty for cluster-scoped bundles (e.g. RBAC)
    namespace: str
    sync_policy: SyncPolicy = SyncPolicy.AUTO

    def repo_name(self, realm: str) -> str:
        """GitLab project name holding this service's manifests."""
        return f"svc-{realm}-{self.name}"


CORE_SERVICES: tuple[ServiceDescriptor, ...] = (
    ServiceDescriptor("argocd", "services/argo/argocd", "argocd"),
    ServiceDescriptor("argo-rollouts", "services/argo/argo-rollouts", "argo-rollouts"),
    ServiceDescriptor("cert-manager", "services/cert-manager", "cert-manager"),
    ServiceDescriptor("monitoring-stack", "services/monitoring-stack", "monitoring"),
    # Vault and Harbor hold state that needs a human at sync time
    ServiceDescriptor("vault", "services/vault", "vault", SyncPolicy.MANUAL),
    ServiceDescriptor("harbor", "services/harbor", "harbor", SyncPolicy.MANUAL),
    ServiceDescriptor("keycloak", "services/keycloak", "keycloak"),
    ServiceDescriptor("mattermost", "services/mattermost", "mattermost"),
    ServiceDescriptor("kasm", "services/kasm", "kasm"),
    ServiceDescriptor("gitlab", "services/gitlab", "gitlab"),
    ServiceDescriptor("rbac", "services/rbac", ""),
    ServiceDescriptor("node-labeler", "services/node-labeler", "node-labeler"),
    ServiceDescriptor("storage-autoscaler", "services/storage-autoscaler", "storage-autoscaler"),
)

UPTIME_KUMA = ServiceDescriptor("uptime-kuma", "services/uptime-kuma", "uptime-kuma")
LIBRENMS = ServiceDescriptor("librenms", "services/librenms", "librenms")


def enabled_services(config: PlatformConfig) -> list[ServiceDescriptor]:
    """Core services plus the optional ones switched on in the config."""
    services = list(CORE_SERVICES)
    if config.deploy_uptime_kuma:
        services.append(UPTIME_KUMA)
    if config.deploy_librenms:
        services.append(LIBRENMS)
    return services
