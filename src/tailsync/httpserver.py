"""Serve a FastAPI application with uvicorn until shutdown.

Process signals stay with the controller: the server is stopped through the
shared shutdown event, never by uvicorn's own signal handlers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Iterator

import uvicorn
from fastapi import FastAPI

from .logcontext import ContextLogger

LISTEN_HOST = "0.0.0.0"


class HTTPServerError(Exception):
    """Raised when a server cannot start (port in use, permission denied)."""

    pass


class _ManagedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the caller."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


async def serve_app(
    app: FastAPI,
    port: int,
    shutdown_event: asyncio.Event,
    name: str,
    logger: ContextLogger | None = None,
) -> None:
    """Run ``app`` on ``port`` until ``shutdown_event`` is set.

    Raises:
        HTTPServerError: If the server fails to start.
    """
    log = (logger or ContextLogger(logging.getLogger(__name__))).bind(server=name, port=port)
    server = _ManagedServer(
        uvicorn.Config(
            app,
            host=LISTEN_HOST,
            port=port,
            log_config=None,
            lifespan="off",
            access_log=False,
        )
    )

    async def stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True

    stopper = asyncio.create_task(stop_on_shutdown())
    log.info("Starting HTTP server")
    try:
        await server.serve()
    except SystemExit as e:
        # uvicorn exits the process when binding fails
        raise HTTPServerError(f"{name} server failed to start on port {port}") from e
    except asyncio.CancelledError:
        server.should_exit = True
        raise
    finally:
        stopper.cancel()

    if not server.started and not shutdown_event.is_set():
        raise HTTPServerError(f"{name} server failed to start on port {port}")
    log.info("HTTP server stopped")
