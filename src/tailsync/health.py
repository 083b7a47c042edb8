"""Liveness and readiness probes."""

from __future__ import annotations

import asyncio

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from . import __version__


def create_health_app(ready: asyncio.Event) -> FastAPI:
    """Build the probe application.

    ``/healthz`` answers as long as the process serves requests. ``/readyz``
    answers 200 once ``ready`` is set (first successful synchronization).
    """
    app = FastAPI(
        title="tailsync health",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/readyz")
    async def readyz() -> JSONResponse:
        if ready.is_set():
            return JSONResponse({"status": "ready"})
        return JSONResponse({"status": "not ready"}, status_code=503)

    return app
