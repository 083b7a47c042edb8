"""Tests for the periodic synchronization trigger."""

from __future__ import annotations

import asyncio

import pytest

from cluster_mock import FakeInventory, InMemoryCluster, make_device
from conftest import CONTROLLER_NAME, NAMESPACE
from tailsync.cluster import ClusterError, ManagedObject, ResourceKind
from tailsync.inventory import InventoryError
from tailsync.models import Device
from tailsync.reconciler import LABEL_MANAGED_BY, Reconciler, ServiceSettings
from tailsync.tag_filter import build_tag_filter
from tailsync.triggers import BatchReconcileError
from tailsync.triggers.poll import PollTrigger, RetryBudgetExhaustedError


class ScriptedInventory:
    """Inventory answering from a script; sets the shutdown event when exhausted."""

    def __init__(self, script: list[list[Device] | InventoryError], shutdown: asyncio.Event) -> None:
        self.script = list(script)
        self.shutdown = shutdown
        self.calls = 0

    async def list_devices(self) -> list[Device]:
        self.calls += 1
        step = self.script.pop(0)
        if not self.script:
            self.shutdown.set()
        if isinstance(step, InventoryError):
            raise step
        return step


def make_trigger(
    inventory: FakeInventory | ScriptedInventory,
    cluster: InMemoryCluster,
    shutdown: asyncio.Event | None = None,
    patterns: tuple[str, ...] = (),
    service: ServiceSettings | None = None,
    interval: float = 0.01,
) -> PollTrigger:
    reconciler = Reconciler(
        inventory=inventory,
        cluster=cluster,
        tag_filter=build_tag_filter(patterns),
        managed_by=CONTROLLER_NAME,
        service=service,
    )
    return PollTrigger(
        reconciler=reconciler,
        inventory=inventory,
        cluster=cluster,
        namespace=NAMESPACE,
        interval_seconds=interval,
        shutdown_event=shutdown or asyncio.Event(),
    )


def owned_secret(name: str) -> ManagedObject:
    return ManagedObject(
        kind=ResourceKind.SECRET,
        namespace=NAMESPACE,
        name=name,
        labels={LABEL_MANAGED_BY: CONTROLLER_NAME},
    )


class TestSyncAll:
    """Tests for one synchronization pass."""

    @pytest.mark.asyncio
    async def test_converges_to_filtered_inventory(
        self, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.set_devices(
            [
                make_device("a.tail1.ts.net", tags=("tag:k8s",)),
                make_device("b.tail1.ts.net", tags=("tag:laptop",)),
                make_device("c.tail1.ts.net", tags=("tag:k8s",)),
            ]
        )
        cluster.put(owned_secret("gone.tail1.ts.net"))

        summary = await make_trigger(inventory, cluster, patterns=("k8s",)).sync_all()

        assert cluster.names(ResourceKind.SECRET, NAMESPACE) == ["a.tail1.ts.net", "c.tail1.ts.net"]
        # Two creations and one orphan deletion
        assert summary.total == 3
        assert summary.failed == 0

    @pytest.mark.asyncio
    async def test_foreign_secrets_are_left_alone(
        self, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        cluster.put(
            ManagedObject(
                kind=ResourceKind.SECRET,
                namespace=NAMESPACE,
                name="prod-cluster",
                labels={"argocd.argoproj.io/secret-type": "cluster"},
            )
        )

        await make_trigger(inventory, cluster).sync_all()

        assert cluster.names(ResourceKind.SECRET, NAMESPACE) == ["prod-cluster"]

    @pytest.mark.asyncio
    async def test_inventory_listed_once_per_pass(
        self, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.set_devices([make_device(f"d{i}.tail1.ts.net") for i in range(5)])

        await make_trigger(inventory, cluster).sync_all()

        assert inventory.calls == 1

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(
        self, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.set_devices([make_device("a.tail1.ts.net"), make_device("b.tail1.ts.net")])
        trigger = make_trigger(inventory, cluster)

        await trigger.sync_all()
        writes = len(cluster.writes())
        summary = await trigger.sync_all()

        assert len(cluster.writes()) == writes
        assert all(not result.written for result in summary.results)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(
        self, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.set_devices(
            [make_device("a.tail1.ts.net"), make_device("b.tail1.ts.net"), make_device("c.tail1.ts.net")]
        )
        cluster.object_errors[("create", "b.tail1.ts.net")] = ClusterError("boom", 500)

        with pytest.raises(BatchReconcileError) as exc_info:
            await make_trigger(inventory, cluster).sync_all()

        assert exc_info.value.total == 3
        assert [str(f.request) for f in exc_info.value.failures] == [f"{NAMESPACE}/b.tail1.ts.net"]
        assert cluster.names(ResourceKind.SECRET, NAMESPACE) == ["a.tail1.ts.net", "c.tail1.ts.net"]

    @pytest.mark.asyncio
    async def test_orphaned_service_is_reconciled(
        self, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        cluster.put(
            ManagedObject(
                kind=ResourceKind.SERVICE,
                namespace=NAMESPACE,
                name="gone-tail1-ts-net",
                labels={LABEL_MANAGED_BY: CONTROLLER_NAME},
                annotations={"tailscale.com/tailnet-fqdn": "gone.tail1.ts.net"},
            )
        )

        await make_trigger(inventory, cluster, service=ServiceSettings(enabled=True)).sync_all()

        assert cluster.names(ResourceKind.SERVICE, NAMESPACE) == []

    @pytest.mark.asyncio
    async def test_inventory_failure_propagates(
        self, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.error = InventoryError("HTTP 500")

        with pytest.raises(InventoryError):
            await make_trigger(inventory, cluster).sync_all()


class TestRun:
    """Tests for the poll loop and its retry budget."""

    @pytest.mark.asyncio
    async def test_first_pass_runs_immediately_and_marks_ready(
        self, cluster: InMemoryCluster
    ) -> None:
        shutdown = asyncio.Event()
        inventory = ScriptedInventory([[make_device("a.tail1.ts.net")]], shutdown)
        trigger = make_trigger(inventory, cluster, shutdown, interval=3600)

        await asyncio.wait_for(trigger.run(), timeout=5)

        assert trigger.synced.is_set()
        assert cluster.names(ResourceKind.SECRET, NAMESPACE) == ["a.tail1.ts.net"]

    @pytest.mark.asyncio
    async def test_budget_exhausted_after_consecutive_failures(
        self, cluster: InMemoryCluster
    ) -> None:
        shutdown = asyncio.Event()
        inventory = ScriptedInventory([InventoryError("down")] * 10, shutdown)
        trigger = make_trigger(inventory, cluster, shutdown)

        with pytest.raises(RetryBudgetExhaustedError):
            await asyncio.wait_for(trigger.run(), timeout=5)

        assert inventory.calls == 5
        assert not trigger.synced.is_set()

    @pytest.mark.asyncio
    async def test_success_restores_budget(self, cluster: InMemoryCluster) -> None:
        shutdown = asyncio.Event()
        failure = InventoryError("down")
        script: list[list[Device] | InventoryError] = [
            failure,
            failure,
            failure,
            failure,
            [],
            failure,
            failure,
            failure,
            failure,
            [],
        ]
        inventory = ScriptedInventory(script, shutdown)
        trigger = make_trigger(inventory, cluster, shutdown)

        await asyncio.wait_for(trigger.run(), timeout=5)

        assert inventory.calls == 10
        assert trigger.remaining_retries == 5

    @pytest.mark.asyncio
    async def test_stops_on_shutdown(self, inventory: FakeInventory, cluster: InMemoryCluster) -> None:
        shutdown = asyncio.Event()
        trigger = make_trigger(inventory, cluster, shutdown, interval=3600)

        task = asyncio.create_task(trigger.run())
        await asyncio.wait_for(trigger.synced.wait(), timeout=5)
        shutdown.set()
        await asyncio.wait_for(task, timeout=5)

        assert inventory.calls == 1
