"""Core reconciliation of Tailscale devices into Argo CD cluster Secrets.

This module implements the Kubernetes-style reconciliation pattern for one
device name at a time:
1. Look the device up in the current inventory
2. Evaluate the tag filter
3. Read the actual Secret (and companion Service) from the cluster
4. Apply the minimal create, update or delete

Every trigger source (cluster events, periodic poll, webhook) calls
``Reconciler.reconcile`` with a ``ReconcileRequest``. The reconciler holds no
per-device state and does not serialize concurrent requests for the same name.

OWNERSHIP: objects are only modified or deleted when they carry the
``apps.kubernetes.io/managed-by=<controller name>`` label. Labels and
annotations that are not derived from the device are preserved on update.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .cluster import (
    ClusterClient,
    ClusterError,
    ManagedObject,
    ResourceAlreadyExistsError,
    ResourceKind,
    ResourceNotFoundError,
)
from .inventory import DeviceInventory, InventoryError
from .logcontext import ContextLogger
from .models import Device
from .naming import normalize
from .tag_filter import TAG_PREFIX, TagFilter

# Annotations mirrored from the device
ANNOTATION_DEVICE_ID = "device.tailscale.com/id"
ANNOTATION_DEVICE_HOSTNAME = "device.tailscale.com/hostname"
ANNOTATION_DEVICE_ADDRESS = "device.tailscale.com/address"
ANNOTATION_DEVICE_TAILNET = "device.tailscale.com/tailnet"

# Labels mirrored from the device
LABEL_DEVICE_OS = "device.tailscale.com/os"
LABEL_DEVICE_VERSION = "device.tailscale.com/version"
LABEL_DEVICE_TAGS_PREFIX = "tag.device.tailscale.com/"

# Ownership and Argo CD integration
LABEL_MANAGED_BY = "apps.kubernetes.io/managed-by"
LABEL_ARGOCD_SECRET_TYPE = "argocd.argoproj.io/secret-type"
ARGOCD_SECRET_TYPE_CLUSTER = "cluster"

# Tailscale operator egress Service annotations
ANNOTATION_TAILNET_FQDN = "tailscale.com/tailnet-fqdn"
ANNOTATION_PROXY_CLASS = "tailscale.com/proxy-class"
SERVICE_TYPE_EXTERNAL_NAME = "ExternalName"
# The Tailscale operator rewrites externalName to its egress proxy
SERVICE_EXTERNAL_NAME_PLACEHOLDER = "placeholder"

# Argo CD cluster connection config
CLUSTER_TLS_CONFIG = json.dumps({"tlsClientConfig": {"insecure": False}}, separators=(",", ":"))

_TAILNET_PATTERN = re.compile(r"\.(.+\.ts\.net)$")

_SECRET_DEVICE_ANNOTATIONS = frozenset(
    {
        ANNOTATION_DEVICE_ID,
        ANNOTATION_DEVICE_HOSTNAME,
        ANNOTATION_DEVICE_ADDRESS,
        ANNOTATION_DEVICE_TAILNET,
    }
)
_SERVICE_DEVICE_ANNOTATIONS = frozenset(
    {ANNOTATION_TAILNET_FQDN, ANNOTATION_DEVICE_HOSTNAME, ANNOTATION_PROXY_CLASS}
)


class ReconcileOutcome(str, Enum):
    """Machine-checkable result of one reconciliation."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED_ABSENT = "unchanged-absent"
    # An object with the device's name exists but is not labeled as ours
    SKIPPED_UNOWNED = "skipped-unowned"


@dataclass(frozen=True)
class ReconcileRequest:
    """A unit of work naming one device to converge."""

    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ServiceSettings:
    """Companion ExternalName Service configuration."""

    enabled: bool = False
    proxy_class: str | None = None


class ReconcileError(Exception):
    """A reconciliation failed and should be retried.

    Wraps the collaborator error with the device and the phase that failed.
    """

    def __init__(self, request: ReconcileRequest, phase: str, cause: Exception) -> None:
        super().__init__(f"reconcile {request}: {phase} failed: {cause}")
        self.request = request
        self.phase = phase
        self.cause = cause


@dataclass
class ReconcileResult:
    """Result of reconciling one request."""

    request: ReconcileRequest
    outcome: ReconcileOutcome | None = None
    service_outcome: ReconcileOutcome | None = None
    # False when an update found nothing to change
    written: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


# =============================================================================
# Desired state
# =============================================================================


def derive_tailnet(device_name: str) -> str | None:
    """Extract the tailnet domain from a MagicDNS name (``a.b.ts.net`` -> ``b.ts.net``)."""
    match = _TAILNET_PATTERN.search(device_name)
    return match.group(1) if match else None


def tag_labels(device: Device) -> dict[str, str]:
    """One empty-valued label per device tag, without the ``tag:`` prefix."""
    return {LABEL_DEVICE_TAGS_PREFIX + tag.removeprefix(TAG_PREFIX): "" for tag in device.tags}


def secret_payload(device: Device) -> dict[str, str]:
    return {
        "name": device.name,
        "server": f"https://{device.name}",
        "config": CLUSTER_TLS_CONFIG,
    }


def build_secret(device: Device, namespace: str, managed_by: str) -> ManagedObject:
    """Build the Argo CD cluster Secret mirroring a device."""
    annotations = {
        ANNOTATION_DEVICE_ID: device.node_id,
        ANNOTATION_DEVICE_HOSTNAME: device.hostname,
    }
    if device.primary_address:
        annotations[ANNOTATION_DEVICE_ADDRESS] = device.primary_address
    tailnet = derive_tailnet(device.name)
    if tailnet:
        annotations[ANNOTATION_DEVICE_TAILNET] = tailnet

    labels = {
        LABEL_ARGOCD_SECRET_TYPE: ARGOCD_SECRET_TYPE_CLUSTER,
        LABEL_MANAGED_BY: managed_by,
        LABEL_DEVICE_OS: device.os,
        LABEL_DEVICE_VERSION: device.client_version,
        **tag_labels(device),
    }

    return ManagedObject(
        kind=ResourceKind.SECRET,
        namespace=namespace,
        name=device.name,
        labels=labels,
        annotations=annotations,
        data=secret_payload(device),
    )


def build_service(
    device: Device, namespace: str, managed_by: str, proxy_class: str | None = None
) -> ManagedObject:
    """Build the ExternalName Service exposing a device through the Tailscale operator."""
    annotations = {
        ANNOTATION_TAILNET_FQDN: device.name,
        ANNOTATION_DEVICE_HOSTNAME: device.hostname,
    }
    if proxy_class:
        annotations[ANNOTATION_PROXY_CLASS] = proxy_class

    labels = {
        LABEL_MANAGED_BY: managed_by,
        LABEL_DEVICE_OS: device.os,
        LABEL_DEVICE_VERSION: device.client_version,
        **tag_labels(device),
    }

    return ManagedObject(
        kind=ResourceKind.SERVICE,
        namespace=namespace,
        name=normalize(device.name),
        labels=labels,
        annotations=annotations,
        data={
            "type": SERVICE_TYPE_EXTERNAL_NAME,
            "externalName": SERVICE_EXTERNAL_NAME_PLACEHOLDER,
        },
    )


def merge_device_metadata(
    existing: ManagedObject,
    desired: ManagedObject,
    *,
    replace_data: bool = True,
) -> ManagedObject:
    """Merge device-derived metadata of ``desired`` into ``existing``.

    Keys not derived from the device are kept untouched. Device-derived keys
    that no longer apply (removed tags, lost tailnet, dropped proxy class) are
    removed.

    Args:
        existing: Object as read from the cluster.
        desired: Object built from the current device.
        replace_data: Replace the payload wholesale; otherwise keep the existing one.

    Returns:
        A new object carrying ``existing``'s resource version.
    """
    derived_annotations = (
        _SECRET_DEVICE_ANNOTATIONS
        if existing.kind is ResourceKind.SECRET
        else _SERVICE_DEVICE_ANNOTATIONS
    )

    annotations = {
        key: value
        for key, value in existing.annotations.items()
        if key not in derived_annotations or key in desired.annotations
    }
    annotations.update(desired.annotations)

    labels = {
        key: value
        for key, value in existing.labels.items()
        if not key.startswith(LABEL_DEVICE_TAGS_PREFIX) or key in desired.labels
    }
    labels.update(desired.labels)

    return ManagedObject(
        kind=existing.kind,
        namespace=existing.namespace,
        name=existing.name,
        labels=labels,
        annotations=annotations,
        data=dict(desired.data) if replace_data else dict(existing.data),
        resource_version=existing.resource_version,
        source=existing.source,
    )


def _same_content(a: ManagedObject, b: ManagedObject) -> bool:
    return a.labels == b.labels and a.annotations == b.annotations and a.data == b.data


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Converges the managed objects of one device name.

    Collaborators are injected; the reconciler owns no client or global state.

    State machine per request:
    - device absent or filtered out: delete Secret (and Service) if present
    - Secret absent: create it (and the Service)
    - Secret present: merge-update it (and create or merge-update the Service)
    """

    def __init__(
        self,
        inventory: DeviceInventory,
        cluster: ClusterClient,
        tag_filter: TagFilter,
        managed_by: str,
        service: ServiceSettings | None = None,
        logger: ContextLogger | None = None,
    ) -> None:
        self._inventory = inventory
        self._cluster = cluster
        self._filter = tag_filter
        self._managed_by = managed_by
        self._service = service or ServiceSettings()
        self._log = logger or ContextLogger(logging.getLogger(__name__))

    @property
    def managed_by(self) -> str:
        return self._managed_by

    @property
    def owner_labels(self) -> dict[str, str]:
        """Label selector matching every object owned by this controller."""
        return {LABEL_MANAGED_BY: self._managed_by}

    @property
    def service_enabled(self) -> bool:
        return self._service.enabled

    @property
    def tag_filter(self) -> TagFilter:
        return self._filter

    def is_owned(self, obj: ManagedObject) -> bool:
        return obj.labels.get(LABEL_MANAGED_BY) == self._managed_by

    async def reconcile(
        self,
        request: ReconcileRequest,
        log: ContextLogger | None = None,
        devices: Sequence[Device] | None = None,
    ) -> ReconcileResult:
        """Reconcile the managed objects of one device.

        Args:
            request: Device name and target namespace.
            log: Context logger of the caller (trigger, request id...).
            devices: Inventory snapshot already fetched by the caller; listed
                from the inventory when omitted.

        Returns:
            The outcome of the reconciliation.

        Raises:
            ReconcileError: On inventory failure or any cluster error other than
                not-found on delete and already-exists on create. Retryable.
        """
        log = (log or self._log).bind(device=request.name, namespace=request.namespace)
        result = ReconcileResult(request=request)
        log.debug("Starting reconciliation of device Secret")

        if devices is None:
            try:
                devices = await self._inventory.list_devices()
            except InventoryError as e:
                log.error(
                    "Failed to list Tailscale devices",
                    extra={"reconciliation.outcome": "tailscale_list_error", "error": str(e)},
                )
                raise ReconcileError(request, "lookup", e) from e

        device = next((d for d in devices if d.name == request.name), None)

        if device is None or not self._filter.match(device):
            log.info(
                "Device not found or filtered, its Secret will be deleted",
                extra={
                    "reconciliation.action": "delete",
                    "reason": "not_found" if device is None else "filtered",
                },
            )
            await self._reconcile_absent(request, result, log)
        else:
            log = log.bind(
                device_id=device.node_id,
                device_os=device.os,
                device_version=device.client_version,
            )
            await self._reconcile_present(request, device, result, log)

        result.end_time = datetime.now(UTC)
        log.info(
            "Device reconciliation completed",
            extra={
                "reconciliation.outcome": result.outcome.value if result.outcome else None,
                "service_outcome": result.service_outcome.value if result.service_outcome else None,
                "written": result.written,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    # -------------------------------------------------------------------------
    # Deletion branch
    # -------------------------------------------------------------------------

    async def _reconcile_absent(
        self, request: ReconcileRequest, result: ReconcileResult, log: ContextLogger
    ) -> None:
        result.outcome = await self._delete_owned(
            ResourceKind.SECRET, request.namespace, request.name, request, log
        )
        if result.outcome is ReconcileOutcome.DELETED:
            result.written = True

        if self._service.enabled:
            result.service_outcome = await self._delete_owned(
                ResourceKind.SERVICE, request.namespace, normalize(request.name), request, log
            )

    async def _delete_owned(
        self,
        kind: ResourceKind,
        namespace: str,
        name: str,
        request: ReconcileRequest,
        log: ContextLogger,
    ) -> ReconcileOutcome:
        existing = await self._get(kind, namespace, name, request)
        if existing is None:
            log.debug(f"{kind.value} not found, nothing to delete", extra={"object": name})
            return ReconcileOutcome.UNCHANGED_ABSENT
        if not self.is_owned(existing):
            log.warning(
                f"{kind.value} is not managed by this controller, leaving it untouched",
                extra={"object": name, "managed_by": existing.labels.get(LABEL_MANAGED_BY)},
            )
            return ReconcileOutcome.SKIPPED_UNOWNED

        try:
            await self._cluster.delete(kind, namespace, name)
        except ResourceNotFoundError:
            log.debug(f"{kind.value} already deleted", extra={"object": name})
            return ReconcileOutcome.UNCHANGED_ABSENT
        except ClusterError as e:
            log.error(
                f"Failed to delete {kind.value}",
                extra={"reconciliation.outcome": f"delete_{kind.value.lower()}_error", "error": str(e)},
            )
            raise ReconcileError(request, f"delete {kind.value.lower()}", e) from e

        log.info(f"{kind.value} deleted", extra={"object": name})
        return ReconcileOutcome.DELETED

    # -------------------------------------------------------------------------
    # Presence branch
    # -------------------------------------------------------------------------

    async def _reconcile_present(
        self,
        request: ReconcileRequest,
        device: Device,
        result: ReconcileResult,
        log: ContextLogger,
    ) -> None:
        desired = build_secret(device, request.namespace, self._managed_by)
        result.outcome, result.written = await self._apply(desired, request, log)
        if result.outcome is ReconcileOutcome.SKIPPED_UNOWNED:
            return

        if self._service.enabled:
            desired_service = build_service(
                device, request.namespace, self._managed_by, self._service.proxy_class
            )
            result.service_outcome, _ = await self._apply(
                desired_service, request, log, replace_data=False
            )

    async def _apply(
        self,
        desired: ManagedObject,
        request: ReconcileRequest,
        log: ContextLogger,
        *,
        replace_data: bool = True,
    ) -> tuple[ReconcileOutcome, bool]:
        kind = desired.kind
        existing = await self._get(kind, desired.namespace, desired.name, request)

        if existing is None:
            log.info(
                f"{kind.value} not found, it will be created",
                extra={"reconciliation.action": "create", "object": desired.name},
            )
            try:
                await self._cluster.create(desired)
            except ResourceAlreadyExistsError:
                # Lost a race with another trigger; the next pass updates it
                log.info(f"{kind.value} already exists, ignoring", extra={"object": desired.name})
                return ReconcileOutcome.CREATED, False
            except ClusterError as e:
                log.error(
                    f"Failed to create {kind.value}",
                    extra={
                        "reconciliation.outcome": f"create_{kind.value.lower()}_error",
                        "error": str(e),
                    },
                )
                raise ReconcileError(request, f"create {kind.value.lower()}", e) from e
            return ReconcileOutcome.CREATED, True

        if not self.is_owned(existing):
            log.warning(
                f"{kind.value} exists but is not managed by this controller, leaving it untouched",
                extra={"object": desired.name, "managed_by": existing.labels.get(LABEL_MANAGED_BY)},
            )
            return ReconcileOutcome.SKIPPED_UNOWNED, False

        merged = merge_device_metadata(existing, desired, replace_data=replace_data)
        if _same_content(existing, merged):
            log.debug(f"{kind.value} already up to date", extra={"object": desired.name})
            return ReconcileOutcome.UPDATED, False

        log.info(
            f"{kind.value} found, it will be updated",
            extra={"reconciliation.action": "update", "object": desired.name},
        )
        try:
            await self._cluster.update(merged)
        except ClusterError as e:
            log.error(
                f"Failed to update {kind.value}",
                extra={
                    "reconciliation.outcome": f"update_{kind.value.lower()}_error",
                    "error": str(e),
                },
            )
            raise ReconcileError(request, f"update {kind.value.lower()}", e) from e
        return ReconcileOutcome.UPDATED, True

    async def _get(
        self, kind: ResourceKind, namespace: str, name: str, request: ReconcileRequest
    ) -> ManagedObject | None:
        try:
            return await self._cluster.get(kind, namespace, name)
        except ResourceNotFoundError:
            return None
        except ClusterError as e:
            raise ReconcileError(request, f"get {kind.value.lower()}", e) from e
