"""Device name normalization for Kubernetes object names.

Tailscale device names are fully qualified (``laptop.tail1234.ts.net``) and may
carry characters Kubernetes rejects in Service names. ``normalize`` maps them to
a valid RFC 1123 label.
"""

from __future__ import annotations

import re

# RFC 1123 label limit
MAX_NAME_LENGTH = 63

# Returned when nothing usable survives normalization
FALLBACK_NAME = "device"

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_DASH_RUNS = re.compile(r"-{2,}")


def normalize(raw_name: str) -> str:
    """Normalize a device name into a DNS-1123 label.

    The result is lowercase, only contains ``[a-z0-9-]``, never starts or ends
    with a dash, never contains consecutive dashes and is at most 63 characters
    long. ``normalize(normalize(x)) == normalize(x)`` for every input.

    Args:
        raw_name: Device name as reported by the inventory.

    Returns:
        The normalized name, or ``FALLBACK_NAME`` if the input reduces to nothing.
    """
    name = _INVALID_CHARS.sub("-", raw_name.lower())
    name = _DASH_RUNS.sub("-", name).strip("-")

    # Truncation can expose a trailing dash again
    name = name[:MAX_NAME_LENGTH].rstrip("-")

    return name or FALLBACK_NAME
