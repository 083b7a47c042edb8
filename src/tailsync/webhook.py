"""Tailscale webhook signature verification.

Tailscale signs every webhook delivery with the shared webhook secret:

    Tailscale-Webhook-Signature: t=<unix seconds>,v1=<hex hmac>[,v1=<hex hmac>...]

where each ``v1`` value is ``hex(HMAC-SHA256(secret, "<t>." + body))``. Several
``v1`` values may be present while a secret is being rotated.

SECURITY INVARIANTS:
1. The body is only decoded after the signature has been verified
2. Signatures are compared in constant time
3. Deliveries older than five minutes are rejected (replay protection)
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from .models import WebhookEvent, parse_webhook_events

SIGNATURE_HEADER = "Tailscale-Webhook-Signature"

# Deliveries older than this are treated as replays
SIGNATURE_MAX_AGE = timedelta(minutes=5)

SIGNATURE_VERSION = "v1"


class WebhookError(Exception):
    """Base class for webhook verification failures."""


class WebhookNotSignedError(WebhookError):
    """The request carries no usable signature header."""


class WebhookInvalidSignatureError(WebhookError):
    """The signature header is present but malformed."""


class WebhookSignatureExpiredError(WebhookError):
    """The signature timestamp is older than five minutes."""


class WebhookSignatureMismatchError(WebhookError):
    """No provided signature matches the expected one."""


class WebhookPayloadError(WebhookError):
    """The signed body is not a valid event array."""


def parse_signature_header(header: str | None) -> tuple[int, list[str]]:
    """Split a signature header into its timestamp and ``v1`` signatures.

    Unknown keys are ignored.

    Raises:
        WebhookNotSignedError: Header empty, malformed pair, or missing ``t``/``v1``.
        WebhookInvalidSignatureError: The ``t`` value is not an integer.
    """
    if not header:
        raise WebhookNotSignedError("webhook has no signature")

    timestamp: int | None = None
    signatures: list[str] = []
    for pair in header.split(","):
        parts = pair.strip().split("=")
        if len(parts) != 2:
            raise WebhookNotSignedError("webhook signature header is malformed")

        key, value = parts
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError as e:
                raise WebhookInvalidSignatureError("webhook has invalid signature") from e
        elif key == SIGNATURE_VERSION:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookNotSignedError("webhook has no signature")
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    """Compute the hex ``v1`` signature for a body signed at ``timestamp``."""
    mac = hmac.new(secret.encode(), digestmod=hashlib.sha256)
    mac.update(str(timestamp).encode())
    mac.update(b".")
    mac.update(raw_body)
    return mac.hexdigest()


def verify_webhook_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: str,
    now: datetime | None = None,
) -> list[WebhookEvent]:
    """Verify a webhook delivery and decode its events.

    Only stale timestamps are rejected; a timestamp in the future is accepted.

    Args:
        raw_body: Request body exactly as received.
        signature_header: Value of the ``Tailscale-Webhook-Signature`` header.
        secret: Shared webhook secret.
        now: Reference time for the freshness check (defaults to the current time).

    Returns:
        The decoded events.

    Raises:
        WebhookNotSignedError: No usable signature.
        WebhookInvalidSignatureError: Unparseable timestamp.
        WebhookSignatureExpiredError: Timestamp older than five minutes.
        WebhookSignatureMismatchError: No ``v1`` signature matches.
        WebhookPayloadError: Signature valid but the body is not an event array.
    """
    timestamp, signatures = parse_signature_header(signature_header)

    now = now or datetime.now(UTC)
    if now.timestamp() - timestamp > SIGNATURE_MAX_AGE.total_seconds():
        raise WebhookSignatureExpiredError(
            "webhook signature has expired: timestamp older than 5 minutes"
        )

    expected = compute_signature(secret, timestamp, raw_body)

    # All candidates are compared, no early exit
    matched = False
    for signature in signatures:
        if hmac.compare_digest(signature.encode(), expected.encode()):
            matched = True
    if not matched:
        raise WebhookSignatureMismatchError("webhook signature does not match")

    try:
        return parse_webhook_events(raw_body)
    except ValidationError as e:
        raise WebhookPayloadError(f"webhook payload is not a valid event list: {e}") from e
