"""Credential policy for the Tailscale API.

The controller only ever reads the device list, so it authenticates with an
OAuth client restricted to the ``devices:core:read`` scope.

SECURITY INVARIANTS:
1. Only OAuth client keys (``tskey-client-...``) are accepted
2. API/auth keys (``tskey-auth-...``) are rejected at startup
3. Secrets are never logged; only the client id prefix is
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# Scope requested when exchanging the OAuth client credentials
DEVICES_READ_SCOPE = "devices:core:read"

_API_KEY_PATTERN = re.compile(r"^tskey-auth-(?P<client_id>[a-zA-Z0-9]+CNTRL)-[a-zA-Z0-9]+$")
_OAUTH_KEY_PATTERN = re.compile(r"^tskey-client-(?P<client_id>[a-zA-Z0-9]+CNTRL)-[a-zA-Z0-9]+$")


class UnsupportedCredentialError(Exception):
    """Raised when the configured Tailscale key is not an OAuth client key.

    This is a fatal error that prevents controller startup.
    """

    pass


@dataclass(frozen=True)
class OAuthClientCredentials:
    """OAuth client credentials parsed from a ``tskey-client-...`` key."""

    client_id: str
    client_secret: str
    scopes: tuple[str, ...] = (DEVICES_READ_SCOPE,)

    def __repr__(self) -> str:
        return f"OAuthClientCredentials(client_id={self.redacted_client_id!r}, scopes={self.scopes!r})"

    @property
    def redacted_client_id(self) -> str:
        return self.client_id[:8] + "..." if len(self.client_id) > 8 else self.client_id


def parse_oauth_client_key(auth_key: str) -> OAuthClientCredentials:
    """Parse a Tailscale OAuth client key.

    The full key is the client secret; the client id is embedded in it.

    Args:
        auth_key: Key as configured by the operator.

    Returns:
        The parsed credentials.

    Raises:
        UnsupportedCredentialError: If the key is an API key or has an unknown format.
    """
    auth_key = auth_key.strip()

    if _API_KEY_PATTERN.match(auth_key):
        logger.critical(
            "Tailscale API key rejected",
            extra={"security_event": "api_key_detected", "action": "startup_blocked"},
        )
        raise UnsupportedCredentialError(
            "API keys are not supported by this controller, use an OAuth client key instead"
        )

    match = _OAUTH_KEY_PATTERN.match(auth_key)
    if match is None:
        raise UnsupportedCredentialError("invalid Tailscale auth key format")

    credentials = OAuthClientCredentials(client_id=match["client_id"], client_secret=auth_key)
    logger.info(
        "Using Tailscale OAuth client",
        extra={"client_id": credentials.redacted_client_id, "scopes": list(credentials.scopes)},
    )
    return credentials


def read_secret_file(path: Path) -> str:
    """Read a secret from a mounted file, dropping the trailing newline.

    Raises:
        OSError: If the file cannot be read.
    """
    return path.read_text(encoding="utf-8").rstrip("\r\n")
