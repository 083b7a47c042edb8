"""Trigger sources feeding the reconciler.

- ``cluster_events``: reacts to changes of owned Secrets/Services in the cluster
- ``poll``: periodically reconciles every filtered device and every owned Secret
- ``push``: reconciles devices named by verified Tailscale webhook deliveries

Poll and push submit batches of requests through ``reconcile_batch``: every
request is attempted, and failures are collected instead of stopping the batch.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from ..logcontext import ContextLogger
from ..models import Device
from ..reconciler import ReconcileError, Reconciler, ReconcileRequest, ReconcileResult


class BatchReconcileError(Exception):
    """One or more requests of a batch failed."""

    def __init__(self, failures: Sequence[ReconcileError], total: int) -> None:
        names = ", ".join(str(f.request) for f in failures)
        super().__init__(f"{len(failures)}/{total} reconciliations failed: {names}")
        self.failures = list(failures)
        self.total = total


@dataclass
class BatchSummary:
    """Aggregated outcome of a batch of reconciliations."""

    total: int = 0
    results: list[ReconcileResult] = field(default_factory=list)
    failures: list[ReconcileError] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    def raise_for_failures(self) -> None:
        """Raise ``BatchReconcileError`` if any request failed."""
        if self.failures:
            raise BatchReconcileError(self.failures, self.total)


async def reconcile_batch(
    reconciler: Reconciler,
    requests: Iterable[ReconcileRequest],
    log: ContextLogger,
    devices: Sequence[Device] | None = None,
) -> BatchSummary:
    """Reconcile requests one after the other, collecting failures."""
    summary = BatchSummary()
    for request in requests:
        summary.total += 1
        try:
            result = await reconciler.reconcile(request, log, devices=devices)
        except ReconcileError as e:
            log.error(
                "Failed to reconcile device",
                extra={"device": request.name, "phase": e.phase, "error": str(e.cause)},
            )
            summary.failures.append(e)
        else:
            summary.results.append(result)
    return summary


__all__ = [
    "BatchReconcileError",
    "BatchSummary",
    "reconcile_batch",
]
