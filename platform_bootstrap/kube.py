"""
Kubernetes access.

KubectlRunner shells out to kubectl with a fixed kubeconfig for the operations
that are simplest as kubectl verbs (apply, set env, rollout, exec,
port-forward). Typed object access (secrets, custom objects, PVCs) goes through
the kubernetes Python client.
"""

from __future__ import annotations

import base64
import logging
import os
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from platform_bootstrap.errors import CommandError

logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"


def run(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = True,
    env: dict[str, str] | None = None,
    cwd: str | Path | None = None,
    stdin: str | None = None,
    timeout: int | None = None,
) -> subprocess.CompletedProcess:
    """Run an external command; failures raise CommandError with its output."""
    try:
        return subprocess.run(
            list(cmd),
            check=check,
            capture_output=capture_output,
            text=True,
            env=env,
            cwd=cwd,
            input=stdin,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as exc:
        msg = f"Command failed: {' '.join(cmd)}"
        if exc.stdout:
            msg += f"\nSTDOUT:\n{exc.stdout}"
        if exc.stderr:
            msg += f"\nSTDERR:\n{exc.stderr}"
        raise CommandError(msg) from exc
    except FileNotFoundError as exc:
        raise CommandError(f"Command not found: {cmd[0]}") from exc


class KubectlRunner:
    """Run kubectl against one cluster. Mutating helpers honour dry_run."""

    def __init__(self, kubeconfig_path: str | Path | None = None, dry_run: bool = False) -> None:
        self.kubeconfig = Path(kubeconfig_path).expanduser() if kubeconfig_path else None
        self.dry_run = dry_run

    def kubectl(
        self,
        *args: str,
        timeout: Optional[int] = None,
        stdin: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """Run kubectl with given args. Never raises on a non-zero exit."""
        env = dict(os.environ)
        if self.kubeconfig:
            env["KUBECONFIG"] = str(self.kubeconfig)
        return subprocess.run(
            ["kubectl"] + list(args),
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=stdin,
        )

    def _mutate(self, *args: str, timeout: int = 120, stdin: str | None = None) -> bool:
        if self.dry_run:
            print(f"  Dry run: would execute 'kubectl {' '.join(args)}'")
            return True
        r = self.kubectl(*args, timeout=timeout, stdin=stdin)
        if r.returncode != 0:
            logger.warning("kubectl %s failed: %s", args[0], (r.stderr or r.stdout).strip())
            return False
        return True

    def apply_yaml(self, yaml_content: str, timeout: int = 120) -> None:
        """Apply YAML (creates/updates resources). Raises CommandError on failure."""
        if self.dry_run:
            print("  Dry run: would execute 'kubectl apply -f -'")
            return
        r = self.kubectl("apply", "-f", "-", timeout=timeout, stdin=yaml_content)
        if r.returncode != 0:
            raise CommandError(f"kubectl apply failed: {r.stderr or r.stdout or 'unknown error'}")

    def set_env(self, namespace: str, target: str, env: dict[str, str]) -> bool:
        pairs = [f"{k}={v}" for k, v in env.items()]
        return self._mutate("-n", namespace, "set", "env", target, *pairs)

    def patch_merge(self, namespace: str, kind: str, name: str, patch: str) -> bool:
        return self._mutate("-n", namespace, "patch", kind, name, "--type=merge", f"--patch={patch}")

    def rollout_restart(self, namespace: str, target: str) -> bool:
        return self._mutate("-n", namespace, "rollout", "restart", target)

    def exec(self, namespace: str, pod: str, command: Sequence[str], stdin: str | None = None) -> bool:
        args = ["-n", namespace, "exec"]
        if stdin is not None:
            args.append("-i")
        return self._mutate(*args, pod, "--", *command, stdin=stdin)

    def kustomize(self, directory: str | Path) -> str:
        """Rendered ``kubectl kustomize`` output. Read-only, so it also runs on a dry run."""
        r = self.kubectl("kustomize", str(directory), timeout=120)
        if r.returncode != 0:
            raise CommandError(f"kubectl kustomize {directory} failed: {r.stderr or r.stdout or 'unknown error'}")
        return r.stdout

    def exists(self, namespace: str, kind: str, name: str) -> bool:
        return self.kubectl("-n", namespace, "get", kind, name, timeout=30).returncode == 0

    def wait_for_deployment(self, namespace: str, name: str, timeout: int = 300) -> bool:
        """Block until the deployment is Available. False on timeout or error."""
        if self.dry_run:
            print(f"  Dry run: would wait for deployment/{name} in {namespace}")
            return True
        r = self.kubectl(
            "-n", namespace, "wait", "--for=condition=available", f"deployment/{name}",
            f"--timeout={timeout}s", timeout=timeout + 30,
        )
        if r.returncode != 0:
            logger.warning("deployment/%s in %s not available: %s", name, namespace, (r.stderr or r.stdout).strip())
            return False
        return True

    def port_forward(self, namespace: str, target: str, local_port: int, remote_port: int) -> subprocess.Popen:
        """Start a background port-forward. The caller terminates the process."""
        env = dict(os.environ)
        if self.kubeconfig:
            env["KUBECONFIG"] = str(self.kubeconfig)
        return subprocess.Popen(
            ["kubectl", "-n", namespace, "port-forward", target, f"{local_port}:{remote_port}"],
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )


def load_api_clients(kubeconfig_path: str | Path) -> tuple[client.CoreV1Api, client.CustomObjectsApi]:
    """CoreV1Api and CustomObjectsApi bound to one kubeconfig file."""
    api_client = config.new_client_from_config(config_file=str(kubeconfig_path))
    return client.CoreV1Api(api_client), client.CustomObjectsApi(api_client)


def cluster_reachable(core_api: client.CoreV1Api) -> bool:
    try:
        core_api.list_namespace(limit=1, _request_timeout=10)
    except ApiException as exc:
        logger.warning("Cluster API returned an error: %s", exc.reason)
        return False
    except (TransportError, OSError) as exc:
        logger.warning("Cluster API not reachable: %s", exc)
        return False
    return True


def read_secret_value(core_api: client.CoreV1Api, namespace: str, name: str, key: str) -> str | None:
    """Decoded value of one Secret key; None if the Secret or key is missing."""
    try:
        secret = core_api.read_namespaced_secret(name, namespace)
    except ApiException as exc:
        if exc.status != 404:
            logger.warning("Error reading secret %s/%s: %s", namespace, name, exc.reason)
        return None
    raw = (secret.data or {}).get(key)
    if raw is None:
        return None
    return base64.b64decode(raw).decode()


def delete_custom_object_quiet(
    custom_api: client.CustomObjectsApi,
    group: str,
    version: str,
    namespace: str,
    plural: str,
    name: str,
) -> None:
    """Delete a namespaced custom object, ignoring 404."""
    try:
        custom_api.delete_namespaced_custom_object(group, version, namespace, plural, name)
        logger.info("Deleted %s/%s in %s", plural, name, namespace)
    except ApiException as exc:
        if exc.status == 404:
            logger.info("%s/%s not found, skipping", plural, name)
        else:
            logger.warning("Error deleting %s/%s: %s", plural, name, exc.reason)


def delete_namespace_quiet(core_api: client.CoreV1Api, name: str) -> None:
    """Delete a namespace, ignoring 404."""
    try:
        core_api.delete_namespace(name)
        logger.info("Deleted namespace %s", name)
    except ApiException as exc:
        if exc.status == 404:
            logger.info("Namespace %s not found, skipping", name)
        else:
            logger.warning("Error deleting namespace %s: %s", name, exc.reason)
