#!/usr/bin/env python

import unittest
from unittest.mock import MagicMock, patch

from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError

from platform_bootstrap.reconciler import (
    FINALIZER_PATCH,
    HarvesterReconciler,
    OrphanResource,
    ResourceKind,
)


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _pvc_list(names):
    items = []
    for name in names:
        pvc = MagicMock()
        pvc.metadata.name = name
        items.append(pvc)
    result = MagicMock()
    result.items = items
    return result


class TestHarvesterReconciler(unittest.TestCase):
    """Test cases for the Harvester orphan reconciler."""

    def setUp(self):
        self.core = MagicMock()
        self.custom = MagicMock()
        self.clock = FakeClock()
        self.objects = {"virtualmachines": [], "virtualmachineinstances": [], "datavolumes": []}
        self.pvcs = []
        self.custom.list_namespaced_custom_object.side_effect = (
            lambda group, version, ns, plural: {"items": [{"metadata": {"name": n}} for n in self.objects[plural]]}
        )
        self.core.list_namespaced_persistent_volume_claim.side_effect = lambda ns: _pvc_list(self.pvcs)
        print_patcher = patch("builtins.print")
        print_patcher.start()
        self.addCleanup(print_patcher.stop)

    def _reconciler(self, **kwargs):
        kwargs.setdefault("timeout", 20)
        kwargs.setdefault("interval", 10)
        kwargs.setdefault("settle", 5)
        return HarvesterReconciler(
            self.core, self.custom, "vms", "rke2-prod",
            sleep=self.clock.sleep, clock=self.clock, **kwargs,
        )

    def test_no_vms_exits_wait_immediately(self):
        """Verify the wait returns at once when no cluster VM exists."""
        self.objects["virtualmachines"] = ["other-cluster-vm"]

        self.assertTrue(self._reconciler().wait_for_vm_deletion())
        self.assertEqual(self.clock.sleeps, [])

    def test_wait_is_bounded(self):
        self.objects["virtualmachines"] = ["rke2-prod-cp-0"]

        self.assertFalse(self._reconciler().wait_for_vm_deletion())
        self.assertEqual(self.clock.sleeps, [10, 10])

    def test_wait_stops_when_vms_disappear(self):
        self.objects["virtualmachines"] = ["rke2-prod-cp-0"]

        def vanish(seconds):
            self.clock.sleep(seconds)
            self.objects["virtualmachines"] = []

        reconciler = self._reconciler()
        reconciler.sleep = vanish
        self.assertTrue(reconciler.wait_for_vm_deletion())
        self.assertEqual(self.clock.sleeps, [10])

    def test_clean_namespace_report(self):
        report = self._reconciler().reconcile()

        self.assertTrue(report.clean)
        self.assertFalse(report.waited_out)
        self.custom.patch_namespaced_custom_object.assert_not_called()

    def test_every_stuck_vm_gets_a_strip_attempt(self):
        """Verify a failing patch on one VM does not stop the next one."""
        self.objects["virtualmachines"] = ["rke2-prod-cp-0", "rke2-prod-worker-0"]
        self.custom.patch_namespaced_custom_object.side_effect = [ApiException(status=500, reason="boom"), None]

        report = self._reconciler().reconcile()

        self.assertEqual(self.custom.patch_namespaced_custom_object.call_count, 2)
        patched_names = [call.args[4] for call in self.custom.patch_namespaced_custom_object.call_args_list]
        self.assertEqual(patched_names, ["rke2-prod-cp-0", "rke2-prod-worker-0"])
        self.assertEqual([r.name for r in report.patched], ["rke2-prod-worker-0"])
        self.assertTrue(report.waited_out)
        self.assertFalse(report.clean)
        self.assertEqual(report.remaining_vms, ["rke2-prod-cp-0", "rke2-prod-worker-0"])

    def test_finalizer_patch_body(self):
        self.objects["virtualmachines"] = ["rke2-prod-cp-0"]

        self._reconciler().strip_finalizers(ResourceKind.VM)

        args, kwargs = self.custom.patch_namespaced_custom_object.call_args
        self.assertEqual(args, ("kubevirt.io", "v1", "vms", "virtualmachines", "rke2-prod-cp-0", FINALIZER_PATCH))
        self.assertEqual(kwargs["_content_type"], "application/merge-patch+json")
        self.assertEqual(FINALIZER_PATCH, {"metadata": {"finalizers": None}})

    def test_cascade_order_and_matching(self):
        """Verify VMIs, then DataVolumes, then PVCs are deleted; PVCs are not name-filtered."""
        self.objects["virtualmachineinstances"] = ["rke2-prod-cp-0", "unrelated-vmi"]
        self.objects["datavolumes"] = ["rke2-prod-cp-0-disk-0"]
        self.pvcs = ["pvc-5f1c2a"]
        order = []
        self.custom.delete_namespaced_custom_object.side_effect = (
            lambda group, version, ns, plural, name, **kw: order.append((plural, name))
        )
        self.core.delete_namespaced_persistent_volume_claim.side_effect = (
            lambda name, ns, **kw: order.append(("persistentvolumeclaims", name))
        )

        self._reconciler().cascade_cleanup()

        self.assertEqual(order, [
            ("virtualmachineinstances", "rke2-prod-cp-0"),
            ("datavolumes", "rke2-prod-cp-0-disk-0"),
            ("persistentvolumeclaims", "pvc-5f1c2a"),
        ])
        self.core.patch_namespaced_persistent_volume_claim.assert_called_once()
        _, kwargs = self.core.delete_namespaced_persistent_volume_claim.call_args
        self.assertEqual(kwargs["propagation_policy"], "Background")

    def test_delete_404_is_not_an_error(self):
        self.custom.delete_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")
        resource = OrphanResource(ResourceKind.VMI, "rke2-prod-cp-0", "vms")

        self.assertFalse(self._reconciler().delete(resource))

    def test_list_error_yields_empty(self):
        self.custom.list_namespaced_custom_object.side_effect = ApiException(status=403, reason="Forbidden")
        self.assertEqual(self._reconciler().list_names(ResourceKind.VM), [])

    def test_unreachable_api_does_not_abort_reconcile(self):
        """Verify a dead Harvester endpoint yields a report instead of an exception."""
        refused = MaxRetryError(None, "/apis", "connection refused")
        self.custom.list_namespaced_custom_object.side_effect = refused
        self.core.list_namespaced_persistent_volume_claim.side_effect = ConnectionRefusedError("refused")

        report = self._reconciler().reconcile()

        self.assertEqual(report.remaining_vms, [])
        self.assertEqual(report.remaining_pvcs, [])
        self.custom.delete_namespaced_custom_object.assert_not_called()

    def test_transport_errors_on_patch_and_delete_are_skipped(self):
        resource = OrphanResource(ResourceKind.DATA_VOLUME, "rke2-prod-cp-0-disk-0", "vms")
        self.custom.patch_namespaced_custom_object.side_effect = MaxRetryError(None, "/apis", "timed out")
        self.custom.delete_namespaced_custom_object.side_effect = OSError("network unreachable")
        reconciler = self._reconciler()

        self.assertFalse(reconciler.strip_finalizer(resource))
        self.assertFalse(reconciler.delete(resource))

    def test_dry_run_never_mutates(self):
        self.objects["virtualmachines"] = ["rke2-prod-cp-0"]
        self.objects["datavolumes"] = ["rke2-prod-cp-0-disk-0"]
        self.pvcs = ["pvc-5f1c2a"]

        report = self._reconciler(dry_run=True).reconcile()

        self.custom.patch_namespaced_custom_object.assert_not_called()
        self.custom.delete_namespaced_custom_object.assert_not_called()
        self.core.patch_namespaced_persistent_volume_claim.assert_not_called()
        self.core.delete_namespaced_persistent_volume_claim.assert_not_called()
        self.assertEqual(report.remaining_pvcs, ["pvc-5f1c2a"])


if __name__ == "__main__":
    unittest.main()
