"""Webhook trigger: reconcile devices named by Tailscale webhook deliveries.

Only ``nodeCreated`` and ``nodeDeleted`` events produce requests; every other
event kind is acknowledged and ignored. The body is decoded only after its
signature has been verified.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from .. import __version__
from ..logcontext import ContextLogger
from ..models import NodeCreatedEvent, NodeDeletedEvent
from ..reconciler import Reconciler, ReconcileRequest
from ..webhook import (
    SIGNATURE_HEADER,
    WebhookError,
    WebhookPayloadError,
    verify_webhook_signature,
)
from . import reconcile_batch

WEBHOOK_PATH = "/webhook"


def create_webhook_app(
    reconciler: Reconciler,
    secret: str,
    namespace: str,
    logger: ContextLogger | None = None,
) -> FastAPI:
    """Build the webhook application.

    Responses:
        200: Every lifecycle event was reconciled (or there was none).
        400: Signature valid but the body is not an event array.
        401: Missing, malformed, expired or mismatching signature.
        500: At least one reconciliation failed; body carries the counts.
    """
    base_log = (logger or ContextLogger(logging.getLogger(__name__))).bind(trigger="webhook")

    app = FastAPI(
        title="tailsync webhook",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.post(WEBHOOK_PATH)
    async def receive_webhook(request: Request) -> Response:
        log = base_log.bind(
            request_id=uuid.uuid4().hex,
            client_ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        raw_body = await request.body()

        try:
            events = verify_webhook_signature(
                raw_body, request.headers.get(SIGNATURE_HEADER), secret
            )
        except WebhookPayloadError as e:
            log.warning("Failed to decode webhook payload", extra={"error": str(e)})
            return PlainTextResponse("400 Invalid webhook payload", status_code=400)
        except WebhookError as e:
            log.warning(
                "Rejected webhook delivery",
                extra={"error": str(e), "reason": type(e).__name__},
            )
            return PlainTextResponse("401 Invalid request signature", status_code=401)

        lifecycle = [
            event for event in events if isinstance(event, NodeCreatedEvent | NodeDeletedEvent)
        ]
        log.info(
            "Received webhook events",
            extra={"events_count": len(events), "lifecycle_events_count": len(lifecycle)},
        )
        for event in lifecycle:
            log.debug(
                "Device lifecycle event",
                extra={
                    "event_type": event.type,
                    "device": event.data.device_name,
                    "device_id": event.data.node_id,
                },
            )

        summary = await reconcile_batch(
            reconciler,
            (
                ReconcileRequest(name=event.data.device_name, namespace=namespace)
                for event in lifecycle
            ),
            log,
        )

        body = {
            "total": len(events),
            "processed": summary.total,
            "ignored": len(events) - len(lifecycle),
            "failed": summary.failed,
        }
        if summary.failed:
            log.error(
                "Failed to process webhook events",
                extra={"failed": summary.failed, "total": len(events)},
            )
            return JSONResponse(body, status_code=500)
        return JSONResponse(body)

    return app
