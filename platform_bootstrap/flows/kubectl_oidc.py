"""
Kubeconfig snippet for Keycloak logins through kubelogin.

Developers merge the output into ``~/.kube/config``; ``kubectl oidc-login``
then fetches tokens for the public ``kubernetes`` client. The API server URL
and CA are taken from the admin kubeconfig and the local root CA when present.
"""

from __future__ import annotations

import base64
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from platform_bootstrap import constants as c
from platform_bootstrap.config import PlatformConfig, read_tfvar
from platform_bootstrap.flows.common import oidc_issuer

DEFAULT_CLUSTER_NAME = "rke2-prod"
PLACEHOLDER_SERVER = "https://<CLUSTER_API_SERVER>:6443"
OIDC_USER = "oidc-user"

HEADER = """\
# OIDC kubeconfig snippet, merge into ~/.kube/config
# Generated: {generated}
# To merge:
#   KUBECONFIG=~/.kube/config:/tmp/oidc.yaml kubectl config view --flatten > /tmp/merged
#   mv /tmp/merged ~/.kube/config
"""


def api_server(kubeconfig: Path) -> str | None:
    """Server URL of the current context's cluster in ``kubeconfig``, else its first cluster."""
    if not kubeconfig.is_file():
        return None
    doc = yaml.safe_load(kubeconfig.read_text()) or {}
    clusters = {entry.get("name"): entry.get("cluster") or {} for entry in doc.get("clusters") or []}
    if not clusters:
        return None
    current = doc.get("current-context")
    for entry in doc.get("contexts") or []:
        if entry.get("name") == current:
            cluster = clusters.get((entry.get("context") or {}).get("cluster"))
            if cluster and cluster.get("server"):
                return cluster["server"]
    return next(iter(clusters.values())).get("server")


def oidc_kubeconfig(
    cluster_name: str, server: str, issuer: str, ca_data: str | None = None,
) -> dict[str, Any]:
    cluster: dict[str, str] = {"server": server}
    if ca_data:
        cluster["certificate-authority-data"] = ca_data
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": cluster_name, "cluster": cluster}],
        "users": [{
            "name": OIDC_USER,
            "user": {"exec": {
                "apiVersion": "client.authentication.k8s.io/v1beta1",
                "command": "kubectl",
                "args": [
                    "oidc-login",
                    "get-token",
                    f"--oidc-issuer-url={issuer}",
                    f"--oidc-client-id={c.KUBERNETES_CLIENT_ID}",
                    "--oidc-extra-scope=groups",
                ],
                "interactiveMode": "IfAvailable",
            }},
        }],
        "contexts": [{
            "name": f"{cluster_name}-oidc",
            "context": {"cluster": cluster_name, "user": OIDC_USER, "namespace": "default"},
        }],
        "current-context": f"{cluster_name}-oidc",
    }


def render_snippet(config: PlatformConfig, now: datetime | None = None) -> str:
    cluster_name = read_tfvar(config.tfvars_file, "cluster_name") or DEFAULT_CLUSTER_NAME
    server = api_server(config.rke2_kubeconfig)
    if not server:
        print("# WARNING: could not detect the API server URL. Replace <CLUSTER_API_SERVER> in the output.",
              file=sys.stderr)
        server = PLACEHOLDER_SERVER
    ca_data = None
    if config.root_ca_file.is_file():
        ca_data = base64.b64encode(config.root_ca_file.read_bytes()).decode()
    doc = oidc_kubeconfig(cluster_name, server, oidc_issuer(config), ca_data)
    generated = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
    return HEADER.format(generated=generated) + "\n" + yaml.safe_dump(doc, sort_keys=False)


def run(config: PlatformConfig, args) -> int:
    snippet = render_snippet(config)
    if args.output:
        Path(args.output).write_text(snippet)
        print(f"OIDC kubeconfig written to {args.output}", file=sys.stderr)
    else:
        sys.stdout.write(snippet)
    return 0
