"""Pydantic models for Tailscale API and webhook payloads.

These models provide:
1. Type-safe parsing of the device list returned by the Tailscale API
2. Validation at the boundary (fail fast, fail loudly)
3. A closed set of webhook event kinds, with everything else parsed as ignored
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    field_validator,
)

# =============================================================================
# Devices
# =============================================================================


class Device(BaseModel):
    """A Tailscale device as returned by ``GET /tailnet/{tailnet}/devices``.

    ``name`` is the MagicDNS FQDN (``host.tail1234.ts.net``) and is the key used
    for every managed Kubernetes object.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    node_id: str = Field(alias="nodeId")
    name: Annotated[str, Field(min_length=1)]
    hostname: str = ""
    os: str = ""
    client_version: str = Field("", alias="clientVersion")
    tags: tuple[str, ...] = ()
    addresses: tuple[str, ...] = ()

    @field_validator("tags", "addresses", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        # The API omits or nulls these for untagged devices
        return () if v is None else v

    @property
    def primary_address(self) -> str:
        """First Tailscale address of the device, or an empty string."""
        return self.addresses[0] if self.addresses else ""


class DeviceList(BaseModel):
    """Envelope of the device list endpoint."""

    model_config = ConfigDict(extra="ignore")

    devices: list[Device] = Field(default_factory=list)


# =============================================================================
# Webhook events
# =============================================================================

NODE_CREATED = "nodeCreated"
NODE_DELETED = "nodeDeleted"

# Event kinds that change the device inventory; every other kind is ignored
DEVICE_LIFECYCLE_EVENT_TYPES = frozenset({NODE_CREATED, NODE_DELETED})

_IGNORED_TAG = "ignored"


class WebhookEventData(BaseModel):
    """Payload of a device lifecycle event."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    device_name: Annotated[str, Field(min_length=1, alias="deviceName")]
    node_id: str | None = Field(None, alias="nodeID")
    managed_by: str | None = Field(None, alias="managedBy")
    actor: str | None = None
    url: str | None = None


class _WebhookEventBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: datetime
    version: int
    type: str


class NodeCreatedEvent(_WebhookEventBase):
    """A device joined the tailnet."""

    type: Literal["nodeCreated"]
    data: WebhookEventData


class NodeDeletedEvent(_WebhookEventBase):
    """A device was removed from the tailnet."""

    type: Literal["nodeDeleted"]
    data: WebhookEventData


class IgnoredEvent(_WebhookEventBase):
    """Any event kind the controller does not act on (policy updates, key expiry...).

    Only counted, never inspected, so a malformed one does not reject the
    lifecycle events delivered with it.
    """

    timestamp: Any = None
    version: Any = None
    type: Any = None
    data: Any = None


def _event_kind(value: Any) -> str:
    event_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if event_type in DEVICE_LIFECYCLE_EVENT_TYPES:
        return str(event_type)
    return _IGNORED_TAG


WebhookEvent = Annotated[
    Annotated[NodeCreatedEvent, Tag(NODE_CREATED)]
    | Annotated[NodeDeletedEvent, Tag(NODE_DELETED)]
    | Annotated[IgnoredEvent, Tag(_IGNORED_TAG)],
    Discriminator(_event_kind),
]

DeviceLifecycleEvent = NodeCreatedEvent | NodeDeletedEvent

WEBHOOK_EVENTS_ADAPTER: TypeAdapter[list[WebhookEvent]] = TypeAdapter(list[WebhookEvent])


def parse_webhook_events(raw_body: bytes) -> list[WebhookEvent]:
    """Decode a webhook body (JSON array of events).

    Raises:
        pydantic.ValidationError: If the body is not a valid event array.
    """
    return WEBHOOK_EVENTS_ADAPTER.validate_json(raw_body)
