"""Periodic full synchronization.

Each pass reconciles the union of the filtered device names and the names of
the Secrets currently owned by the controller, so devices that disappeared
still get their deletion request.

RETRY BUDGET: a failed pass consumes one of ``MAX_POLL_RETRIES`` retries; a
successful pass restores the full budget. When the budget is exhausted the
loop raises ``RetryBudgetExhaustedError`` and the controller stops.
"""

from __future__ import annotations

import asyncio
import logging

from ..cluster import ClusterClient, ClusterError, ResourceKind
from ..inventory import DeviceInventory, InventoryError
from ..logcontext import ContextLogger
from ..reconciler import ANNOTATION_TAILNET_FQDN, Reconciler, ReconcileRequest
from . import BatchReconcileError, BatchSummary, reconcile_batch

MAX_POLL_RETRIES = 5


class RetryBudgetExhaustedError(Exception):
    """Raised when too many consecutive synchronization passes failed.

    This is fatal: the controller shuts down and the process exits non-zero.
    """

    pass


class PollTrigger:
    """Runs a full synchronization at startup and then on every interval."""

    def __init__(
        self,
        reconciler: Reconciler,
        inventory: DeviceInventory,
        cluster: ClusterClient,
        namespace: str,
        interval_seconds: float,
        shutdown_event: asyncio.Event,
        logger: ContextLogger | None = None,
        max_retries: int = MAX_POLL_RETRIES,
    ) -> None:
        self._reconciler = reconciler
        self._inventory = inventory
        self._cluster = cluster
        self._namespace = namespace
        self._interval_seconds = interval_seconds
        self._shutdown_event = shutdown_event
        self._log = (logger or ContextLogger(logging.getLogger(__name__))).bind(trigger="poll")
        self._max_retries = max_retries
        self._remaining_retries = max_retries

        # Set once the first pass succeeded (readiness)
        self.synced = asyncio.Event()

    @property
    def remaining_retries(self) -> int:
        return self._remaining_retries

    async def owned_device_names(self) -> set[str]:
        """Names of the devices that currently own a Secret (or Service)."""
        owner_labels = self._reconciler.owner_labels
        secrets = await self._cluster.list_by_labels(
            ResourceKind.SECRET, self._namespace, owner_labels
        )
        names = {secret.name for secret in secrets}

        if self._reconciler.service_enabled:
            services = await self._cluster.list_by_labels(
                ResourceKind.SERVICE, self._namespace, owner_labels
            )
            names.update(
                service.annotations[ANNOTATION_TAILNET_FQDN]
                for service in services
                if service.annotations.get(ANNOTATION_TAILNET_FQDN)
            )
        return names

    async def sync_all(self) -> BatchSummary:
        """Run one synchronization pass.

        Raises:
            InventoryError: If the device list cannot be fetched.
            ClusterError: If owned objects cannot be listed.
            BatchReconcileError: If any device failed to reconcile.
        """
        log = self._log
        log.info("Starting device synchronization")

        devices = await self._inventory.list_devices()
        tag_filter = self._reconciler.tag_filter

        desired: set[str] = set()
        for device in devices:
            if tag_filter.match(device):
                desired.add(device.name)
            else:
                log.debug(
                    "Device ignored by filter",
                    extra={"device": device.name, "device_id": device.node_id, "tags": list(device.tags)},
                )

        owned = await self.owned_device_names()
        names = sorted(desired | owned)

        log.info(
            "Starting reconciliation of all devices",
            extra={
                "devices_count": len(names),
                "desired_count": len(desired),
                "owned_count": len(owned),
                "missing_count": len(desired - owned),
                "orphaned_count": len(owned - desired),
            },
        )

        summary = await reconcile_batch(
            self._reconciler,
            (ReconcileRequest(name=name, namespace=self._namespace) for name in names),
            log,
            devices=devices,
        )
        summary.raise_for_failures()

        log.info(
            "Device synchronization successfully completed",
            extra={"devices_count": summary.total},
        )
        return summary

    async def run(self) -> None:
        """Synchronize until shutdown.

        Raises:
            RetryBudgetExhaustedError: After ``max_retries`` consecutive failed passes.
        """
        self._log.info(
            "Starting time-based reconciliation loop",
            extra={"interval_seconds": self._interval_seconds},
        )

        # First pass runs immediately at startup
        while not self._shutdown_event.is_set():
            try:
                await self.sync_all()
            except (InventoryError, ClusterError, BatchReconcileError) as e:
                self._remaining_retries -= 1
                self._log.error(
                    "Failed to reconcile devices",
                    extra={"error": str(e), "remaining_retries": self._remaining_retries},
                )
                if self._remaining_retries <= 0:
                    self._log.critical("Too many retries, stopping the controller")
                    raise RetryBudgetExhaustedError(
                        f"{self._max_retries} consecutive synchronization passes failed"
                    ) from e
            else:
                self._remaining_retries = self._max_retries
                self.synced.set()

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._interval_seconds,
                )
            except TimeoutError:
                # Normal timeout, continue to next pass
                pass

        self._log.info("Time-based reconciliation loop stopped")
