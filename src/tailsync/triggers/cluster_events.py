"""Cluster-event trigger: re-converge devices whose objects changed.

Owned Secrets (and Services, when enabled) are watched; every event becomes a
``ReconcileRequest`` in a de-duplicating work queue. A failed request is
requeued with exponential backoff until it succeeds.

Access denied on the watch is fatal; every other watch failure is retried by
the cluster client.
"""

from __future__ import annotations

import asyncio
import logging

from ..cluster import ClusterClient, ClusterEvent, ResourceKind
from ..logcontext import ContextLogger
from ..reconciler import ANNOTATION_TAILNET_FQDN, ReconcileError, Reconciler, ReconcileRequest

REQUEUE_BASE_DELAY_SECONDS = 1.0
REQUEUE_MAX_DELAY_SECONDS = 300.0


class WorkQueue:
    """FIFO of reconcile requests without duplicates.

    A request already waiting is not added twice. Failed requests come back
    after ``base_delay * 2**(failures - 1)`` seconds, capped at ``max_delay``.
    """

    def __init__(
        self,
        base_delay: float = REQUEUE_BASE_DELAY_SECONDS,
        max_delay: float = REQUEUE_MAX_DELAY_SECONDS,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._queue: asyncio.Queue[ReconcileRequest] = asyncio.Queue()
        self._pending: set[ReconcileRequest] = set()
        self._failures: dict[ReconcileRequest, int] = {}
        self._timers: dict[ReconcileRequest, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, request: ReconcileRequest) -> None:
        if request in self._pending:
            return
        self._pending.add(request)
        self._queue.put_nowait(request)

    async def get(self) -> ReconcileRequest:
        request = await self._queue.get()
        self._pending.discard(request)
        return request

    def failures(self, request: ReconcileRequest) -> int:
        return self._failures.get(request, 0)

    def forget(self, request: ReconcileRequest) -> None:
        """Reset the backoff of a request that succeeded."""
        self._failures.pop(request, None)

    def requeue(self, request: ReconcileRequest) -> float:
        """Schedule a failed request again; returns the delay in seconds."""
        failures = self._failures.get(request, 0) + 1
        self._failures[request] = failures
        delay = min(self._base_delay * 2 ** (failures - 1), self._max_delay)

        previous = self._timers.pop(request, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._timers[request] = loop.call_later(delay, self._fire, request)
        return delay

    def _fire(self, request: ReconcileRequest) -> None:
        self._timers.pop(request, None)
        self.add(request)

    def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


class ClusterEventTrigger:
    """Turns changes of owned objects into reconcile requests."""

    def __init__(
        self,
        reconciler: Reconciler,
        cluster: ClusterClient,
        namespace: str,
        shutdown_event: asyncio.Event,
        logger: ContextLogger | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._cluster = cluster
        self._namespace = namespace
        self._shutdown_event = shutdown_event
        self._log = (logger or ContextLogger(logging.getLogger(__name__))).bind(
            trigger="cluster_events"
        )
        self._queue = queue or WorkQueue()

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    def request_for(self, event: ClusterEvent) -> ReconcileRequest | None:
        """Map an event to the device it belongs to.

        Secrets are named after the device. Services carry a normalized name,
        so the device name is read from the tailnet FQDN annotation.
        """
        obj = event.obj
        if obj.kind is ResourceKind.SECRET:
            name = obj.name
        else:
            name = obj.annotations.get(ANNOTATION_TAILNET_FQDN, "")
        if not name:
            return None
        return ReconcileRequest(name=name, namespace=self._namespace)

    async def run(self) -> None:
        """Watch and reconcile until shutdown.

        Raises:
            ClusterAccessDeniedError: If the controller may not watch its objects.
        """
        kinds = [ResourceKind.SECRET]
        if self._reconciler.service_enabled:
            kinds.append(ResourceKind.SERVICE)

        self._log.info(
            "Starting cluster event watch",
            extra={"kinds": [kind.value for kind in kinds], "namespace": self._namespace},
        )
        try:
            async with asyncio.TaskGroup() as tg:
                tasks = [
                    tg.create_task(self._watch(kind), name=f"watch-{kind.value.lower()}")
                    for kind in kinds
                ]
                tasks.append(tg.create_task(self._work(), name="cluster-events-worker"))

                await self._shutdown_event.wait()
                for task in tasks:
                    task.cancel()
        finally:
            self._queue.close()

        self._log.info("Cluster event watch stopped")

    async def _watch(self, kind: ResourceKind) -> None:
        async for event in self._cluster.watch(
            kind, self._namespace, self._reconciler.owner_labels
        ):
            request = self.request_for(event)
            if request is None:
                self._log.debug(
                    "Ignoring event without device name",
                    extra={"kind": kind.value, "object": event.obj.name, "event_type": event.type},
                )
                continue
            self._log.debug(
                "Cluster event received",
                extra={"kind": kind.value, "device": request.name, "event_type": event.type},
            )
            self._queue.add(request)

    async def _work(self) -> None:
        while True:
            request = await self._queue.get()
            await self.process(request)

    async def process(self, request: ReconcileRequest) -> bool:
        """Reconcile one request, requeueing it on failure."""
        try:
            await self._reconciler.reconcile(request, self._log)
        except ReconcileError as e:
            delay = self._queue.requeue(request)
            self._log.warning(
                "Reconciliation failed, requeued",
                extra={
                    "device": request.name,
                    "phase": e.phase,
                    "error": str(e.cause),
                    "requeue_after_seconds": delay,
                    "failures": self._queue.failures(request),
                },
            )
            return False
        self._queue.forget(request)
        return True
