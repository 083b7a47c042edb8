"""Tailscale device inventory client.

The reconciler only needs one operation, "list every device of the tailnet",
exposed through the ``DeviceInventory`` protocol. ``TailscaleInventory``
implements it on top of the Tailscale v2 REST API with an OAuth
client-credentials token.

SECURITY: Timeouts are enforced on every API call to prevent indefinite hangs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from .models import Device, DeviceList
from .security import OAuthClientCredentials

logger = logging.getLogger(__name__)

TOKEN_PATH = "/api/v2/oauth/token"
DEVICES_PATH = "/api/v2/tailnet/{tailnet}/devices"

# Refresh the access token this long before it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class InventoryError(Exception):
    """Raised when the device inventory cannot be listed.

    Always retryable from the reconciler's point of view.
    """

    pass


class DeviceInventory(Protocol):
    """Read-only access to the device inventory."""

    async def list_devices(self) -> list[Device]: ...


class TailscaleInventory:
    """Lists the devices of one tailnet through the Tailscale API.

    The access token is fetched lazily and cached until shortly before it
    expires. Concurrent callers share a single token refresh.
    """

    def __init__(
        self,
        base_url: str,
        tailnet: str,
        credentials: OAuthClientCredentials,
        *,
        timeout_seconds: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not tailnet:
            raise ValueError("tailnet is required")

        self._tailnet = tailnet
        self._credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def tailnet(self) -> str:
        return self._tailnet

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> TailscaleInventory:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _get_devices(self, token: str) -> httpx.Response:
        return await self._client.get(
            DEVICES_PATH.format(tailnet=self._tailnet),
            params={"fields": "all"},
            headers={"Authorization": f"Bearer {token}"},
        )

    async def list_devices(self) -> list[Device]:
        """List all devices of the tailnet.

        A 401 drops the cached token; the request is retried once with a
        freshly issued one.

        Raises:
            InventoryError: On transport errors, non-2xx responses or invalid payloads.
        """
        token = await self._access_token()
        try:
            response = await self._get_devices(token)
            if response.status_code == httpx.codes.UNAUTHORIZED:
                # Token revoked or expired early
                self._token = None
                response = await self._get_devices(await self._access_token())
                if response.status_code == httpx.codes.UNAUTHORIZED:
                    self._token = None
            response.raise_for_status()
            device_list = DeviceList.model_validate_json(response.content)
        except httpx.HTTPStatusError as e:
            raise InventoryError(
                f"failed to list devices: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise InventoryError(f"failed to list devices: {e}") from e
        except ValidationError as e:
            raise InventoryError(f"failed to decode device list: {e}") from e

        logger.debug(
            "Tailscale API call completed",
            extra={"tailnet": self._tailnet, "devices_count": len(device_list.devices)},
        )
        return device_list.devices

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token

            payload = await self._request_token()
            token = payload.get("access_token")
            if not isinstance(token, str) or not token:
                raise InventoryError("OAuth token response has no access_token")

            lifetime = payload.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS)
            if not isinstance(lifetime, int | float):
                lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS

            self._token = token
            self._token_expires_at = (
                time.monotonic() + max(lifetime - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            )
            logger.debug("Tailscale access token refreshed", extra={"expires_in": lifetime})
            return token

    async def _request_token(self) -> dict[str, Any]:
        try:
            response = await self._client.post(
                TOKEN_PATH,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "grant_type": "client_credentials",
                    "scope": " ".join(self._credentials.scopes),
                },
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise InventoryError(
                f"OAuth token request failed: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise InventoryError(f"OAuth token request failed: {e}") from e
        except ValueError as e:
            raise InventoryError("OAuth token response is not JSON") from e

        if not isinstance(payload, dict):
            raise InventoryError("OAuth token response is not an object")
        return payload
