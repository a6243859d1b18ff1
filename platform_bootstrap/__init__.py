"""
Bootstrap and teardown tooling for an RKE2 platform cluster on Harvester.

After the cluster is deployed, this package can:
- Create the Keycloak realm, OIDC clients and bind the platform services
- Wire KASM Workspaces to Keycloak
- Move service manifests into GitLab and point ArgoCD at them
- Create Harbor CI projects, robot accounts and the cluster pull secret
- Destroy the cluster and reconcile orphaned Harvester and Rancher resources
"""

from platform_bootstrap.config import PlatformConfig, load_platform_config
from platform_bootstrap.errors import ApiError, BootstrapError, CommandError
from platform_bootstrap.reconciler import HarvesterReconciler

__all__ = [
    "ApiError",
    "BootstrapError",
    "CommandError",
    "HarvesterReconciler",
    "PlatformConfig",
    "load_platform_config",
]
