"""
Harvester orphan-resource reconciler.

After the cluster's VMs are destroyed through Terraform/CAPI, Harvester often
keeps VMs, VM instances, DataVolumes and PVCs around because a finalizer is
never released. The reconciler:

1. Waits (bounded) for the cluster's VMs to disappear on their own
2. Strips finalizers from any VM still matching the cluster name
3. Strips finalizers and deletes VM instances, then DataVolumes, then PVCs
   without waiting for the deletes to finish
4. Recounts VMs and PVCs and reports leftovers (never fails)

Every list, patch and delete is best-effort: a resource that vanished
between list and patch, or an unreachable Harvester API, is logged and
skipped.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as TransportError

from platform_bootstrap.constants import SETTLE_DELAY, VM_DELETE_POLL_INTERVAL, VM_DELETE_TIMEOUT
from platform_bootstrap.kube import MERGE_PATCH

logger = logging.getLogger(__name__)

FINALIZER_PATCH = {"metadata": {"finalizers": None}}


class ResourceKind(Enum):
    """Harvester resource kinds handled by the reconciler: (group, version, plural)."""

    VM = ("kubevirt.io", "v1", "virtualmachines")
    VMI = ("kubevirt.io", "v1", "virtualmachineinstances")
    DATA_VOLUME = ("cdi.kubevirt.io", "v1beta1", "datavolumes")
    PVC = ("", "v1", "persistentvolumeclaims")

    @property
    def group(self) -> str:
        return self.value[0]

    @property
    def version(self) -> str:
        return self.value[1]

    @property
    def plural(self) -> str:
        return self.value[2]


# Dependency order: instances depend on VMs, volumes depend on instances.
CASCADE_ORDER = (ResourceKind.VMI, ResourceKind.DATA_VOLUME, ResourceKind.PVC)


@dataclass(frozen=True)
class OrphanResource:
    kind: ResourceKind
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.kind.plural}/{self.name}"


@dataclass
class ReconcileReport:
    """Outcome of a reconcile pass."""

    waited_out: bool = False
    patched: list[OrphanResource] = field(default_factory=list)
    deleted: list[OrphanResource] = field(default_factory=list)
    remaining_vms: list[str] = field(default_factory=list)
    remaining_pvcs: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.remaining_vms and not self.remaining_pvcs


class HarvesterReconciler:
    """Force-removes a destroyed cluster's leftovers from one Harvester namespace."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        custom_api: client.CustomObjectsApi,
        namespace: str,
        prefix: str,
        *,
        timeout: int = VM_DELETE_TIMEOUT,
        interval: int = VM_DELETE_POLL_INTERVAL,
        settle: int = SETTLE_DELAY,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.namespace = namespace
        self.prefix = prefix
        self.timeout = timeout
        self.interval = interval
        self.settle = settle
        self.dry_run = dry_run
        self.sleep = sleep
        self.clock = clock

    def list_names(self, kind: ResourceKind) -> list[str]:
        """Names of every resource of ``kind`` in the namespace ([] on API error)."""
        try:
            if kind is ResourceKind.PVC:
                pvcs = self.core_api.list_namespaced_persistent_volume_claim(self.namespace)
                return [p.metadata.name for p in pvcs.items]
            objs = self.custom_api.list_namespaced_custom_object(
                kind.group, kind.version, self.namespace, kind.plural,
            )
        except ApiException as exc:
            logger.warning("Cannot list %s in %s: %s", kind.plural, self.namespace, exc.reason)
            return []
        except (TransportError, OSError) as exc:
            logger.warning("Cannot list %s in %s: %s", kind.plural, self.namespace, exc)
            return []
        return [o["metadata"]["name"] for o in (objs.get("items") or [])]

    def matching(self, kind: ResourceKind) -> list[OrphanResource]:
        """
        Resources of ``kind`` that belong to the cluster.

        PVCs carry generated names, so every PVC in the VM namespace counts.
        """
        names = self.list_names(kind)
        if kind is not ResourceKind.PVC:
            names = [n for n in names if self.prefix in n]
        return [OrphanResource(kind, n, self.namespace) for n in names]

    def _vm_count(self) -> int:
        return sum(1 for n in self.list_names(ResourceKind.VM) if n.startswith(f"{self.prefix}-"))

    def wait_for_vm_deletion(self) -> bool:
        """Step A. True when the cluster's VMs are gone before the timeout."""
        print(f"Waiting up to {self.timeout}s for VMs with prefix '{self.prefix}-' to be deleted...")
        deadline = self.clock() + self.timeout
        while True:
            count = self._vm_count()
            if count == 0:
                print("  All cluster VMs deleted.")
                return True
            if self.dry_run or self.clock() >= deadline:
                print(f"  {count} VM(s) still present after waiting.")
                return False
            elapsed = int(self.timeout - (deadline - self.clock()))
            print(f"  {count} VM(s) remaining ({elapsed}s)...")
            self.sleep(self.interval)

    def strip_finalizer(self, resource: OrphanResource) -> bool:
        """Merge-patch finalizers to null. Failures are logged, never raised."""
        if self.dry_run:
            print(f"  Dry run: would clear finalizers on {resource}")
            return True
        kind = resource.kind
        try:
            if kind is ResourceKind.PVC:
                self.core_api.patch_namespaced_persistent_volume_claim(
                    resource.name, resource.namespace, FINALIZER_PATCH,
                    _content_type=MERGE_PATCH,
                )
            else:
                self.custom_api.patch_namespaced_custom_object(
                    kind.group, kind.version, resource.namespace, kind.plural,
                    resource.name, FINALIZER_PATCH,
                    _content_type=MERGE_PATCH,
                )
        except ApiException as exc:
            if exc.status == 404:
                logger.info("%s already gone", resource)
            else:
                logger.warning("Error clearing finalizers on %s: %s", resource, exc.reason)
            return False
        except (TransportError, OSError) as exc:
            logger.warning("Error clearing finalizers on %s: %s", resource, exc)
            return False
        logger.info("Cleared finalizers on %s", resource)
        return True

    def delete(self, resource: OrphanResource) -> bool:
        """Request deletion without waiting for it to complete."""
        if self.dry_run:
            print(f"  Dry run: would delete {resource}")
            return True
        kind = resource.kind
        try:
            if kind is ResourceKind.PVC:
                self.core_api.delete_namespaced_persistent_volume_claim(
                    resource.name, resource.namespace, propagation_policy="Background",
                )
            else:
                self.custom_api.delete_namespaced_custom_object(
                    kind.group, kind.version, resource.namespace, kind.plural,
                    resource.name, propagation_policy="Background",
                )
        except ApiException as exc:
            if exc.status == 404:
                logger.info("%s already gone", resource)
            else:
                logger.warning("Error deleting %s: %s", resource, exc.reason)
            return False
        except (TransportError, OSError) as exc:
            logger.warning("Error deleting %s: %s", resource, exc)
            return False
        print(f"  Deleted: {resource}")
        return True

    def strip_finalizers(self, kind: ResourceKind, report: ReconcileReport | None = None) -> list[OrphanResource]:
        """Step B. Attempt a finalizer strip on every matching resource."""
        resources = self.matching(kind)
        for resource in resources:
            if self.strip_finalizer(resource) and report is not None:
                report.patched.append(resource)
        return resources

    def cascade_cleanup(self, report: ReconcileReport | None = None) -> None:
        """Step C. Strip then delete VMIs, DataVolumes and PVCs, in that order."""
        for kind in CASCADE_ORDER:
            resources = self.matching(kind)
            if not resources:
                continue
            print(f"Removing {len(resources)} {kind.plural} in '{self.namespace}'...")
            for resource in resources:
                if self.strip_finalizer(resource) and report is not None:
                    report.patched.append(resource)
                if self.delete(resource) and report is not None:
                    report.deleted.append(resource)
            if kind is not ResourceKind.PVC:
                self.sleep(self.settle)

    def verify(self, report: ReconcileReport | None = None) -> ReconcileReport:
        """Step D. Recount VMs and PVCs; leftovers are reported, not raised."""
        report = report or ReconcileReport()
        self.sleep(self.settle)
        report.remaining_vms = self.list_names(ResourceKind.VM)
        report.remaining_pvcs = self.list_names(ResourceKind.PVC)
        if report.clean:
            print(f"  Harvester namespace '{self.namespace}' is clean (0 VMs, 0 PVCs).")
            return report
        print(
            f"  Warning: {len(report.remaining_vms)} VM(s) and {len(report.remaining_pvcs)} "
            f"PVC(s) remain in '{self.namespace}'; they may still be terminating."
        )
        for name in report.remaining_vms:
            print(f"    virtualmachines/{name}")
        for name in report.remaining_pvcs:
            print(f"    persistentvolumeclaims/{name}")
        return report

    def reconcile(self) -> ReconcileReport:
        report = ReconcileReport()
        report.waited_out = not self.wait_for_vm_deletion()
        stuck = self.strip_finalizers(ResourceKind.VM, report)
        if stuck:
            print(f"Cleared finalizers on {len(stuck)} stuck VM(s).")
            if not self.dry_run:
                self.sleep(self.interval)
        self.cascade_cleanup(report)
        return self.verify(report)
