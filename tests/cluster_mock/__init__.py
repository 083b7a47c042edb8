"""In-memory cluster and inventory for testing the controller.

Key Features:
- In-memory Secrets and Services keyed by (kind, namespace, name)
- Resource versions bumped on every write
- Error injection per operation (get/create/update/delete/list/watch)
- Watch streams fed by the test
- Call log for asserting on writes

Usage:
    from cluster_mock import FakeInventory, InMemoryCluster, make_device

    cluster = InMemoryCluster()
    inventory = FakeInventory([make_device("laptop.tail1234.ts.net")])
    reconciler = Reconciler(inventory, cluster, build_tag_filter(), "tailsync")
    await reconciler.reconcile(ReconcileRequest("laptop.tail1234.ts.net", "argocd"))

    assert cluster.secret("argocd", "laptop.tail1234.ts.net") is not None
"""

from .cluster import InMemoryCluster
from .inventory import FakeInventory, make_device

__all__ = [
    "FakeInventory",
    "InMemoryCluster",
    "make_device",
]
