"""Controller runtime: wires the triggers to one reconciler.

All trigger sources run concurrently in one task group and share a shutdown
event. A fatal error in any of them (retry budget exhausted, access denied,
server failing to start) cancels the others and is re-raised by ``run``.
"""

from __future__ import annotations

import asyncio
import logging

from .cluster import ClusterClient
from .config import Config
from .health import create_health_app
from .httpserver import serve_app
from .inventory import DeviceInventory
from .logcontext import ContextLogger
from .reconciler import Reconciler, ServiceSettings
from .triggers.cluster_events import ClusterEventTrigger
from .triggers.poll import PollTrigger
from .triggers.push import create_webhook_app


class Controller:
    """Runs the cluster-event, poll and (optionally) webhook triggers."""

    def __init__(
        self,
        config: Config,
        inventory: DeviceInventory,
        cluster: ClusterClient,
        logger: ContextLogger | None = None,
    ) -> None:
        self.config = config
        self._log = logger or ContextLogger(logging.getLogger(__name__))
        self._shutdown_event = asyncio.Event()

        self.reconciler = Reconciler(
            inventory=inventory,
            cluster=cluster,
            tag_filter=config.tag_filter(),
            managed_by=config.controller_name,
            service=ServiceSettings(
                enabled=config.create_service,
                proxy_class=config.service_proxy_class,
            ),
            logger=self._log,
        )
        self.poll = PollTrigger(
            reconciler=self.reconciler,
            inventory=inventory,
            cluster=cluster,
            namespace=config.namespace,
            interval_seconds=config.reconcile_interval_seconds,
            shutdown_event=self._shutdown_event,
            logger=self._log,
        )
        self.cluster_events = ClusterEventTrigger(
            reconciler=self.reconciler,
            cluster=cluster,
            namespace=config.namespace,
            shutdown_event=self._shutdown_event,
            logger=self._log,
        )

    @property
    def ready(self) -> asyncio.Event:
        """Set after the first successful synchronization."""
        return self.poll.synced

    def shutdown(self) -> None:
        """Signal the controller to stop gracefully."""
        self._log.info("Shutdown requested")
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run every trigger until shutdown or a fatal error.

        Raises:
            RetryBudgetExhaustedError: Too many consecutive failed synchronizations.
            ClusterAccessDeniedError: The controller may not watch its objects.
            HTTPServerError: The webhook or health server failed to start.
        """
        config = self.config
        self._log.info(
            "Starting controller",
            extra={
                "namespace": config.namespace,
                "tailnet": config.tailnet,
                "controller_name": config.controller_name,
                "device_filters": list(config.device_filters),
                "service_create": config.create_service,
                "webhook_enabled": config.webhook_enabled,
            },
        )

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self.cluster_events.run(), name="cluster-events")
                tg.create_task(self.poll.run(), name="poll")

                if config.webhook_enabled and config.webhook_secret:
                    webhook_app = create_webhook_app(
                        self.reconciler, config.webhook_secret, config.namespace, self._log
                    )
                    tg.create_task(
                        serve_app(
                            webhook_app,
                            config.webhook_port,
                            self._shutdown_event,
                            "webhook",
                            self._log,
                        ),
                        name="webhook",
                    )

                if config.health_port:
                    tg.create_task(
                        serve_app(
                            create_health_app(self.ready),
                            config.health_port,
                            self._shutdown_event,
                            "health",
                            self._log,
                        ),
                        name="health",
                    )
        except BaseExceptionGroup as eg:
            # Unwrap so callers can match on the fatal error type
            first = _first_exception(eg)
            self._log.error(
                "Controller stopped on fatal error",
                extra={"error": str(first), "error_type": type(first).__name__},
            )
            raise first from None
        finally:
            self._shutdown_event.set()

        self._log.info("Controller stopped")


def _first_exception(group: BaseExceptionGroup) -> BaseException:
    exc: BaseException = group
    while isinstance(exc, BaseExceptionGroup):
        exc = exc.exceptions[0]
    return exc
