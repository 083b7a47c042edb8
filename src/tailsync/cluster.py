"""Kubernetes access for managed Secrets and Services.

The reconciler works on ``ManagedObject`` values and talks to the cluster
through the ``ClusterClient`` protocol, which distinguishes "not found" and
"already exists" from every other failure. ``KubernetesClusterClient``
implements it with the official ``kubernetes`` client.

The ``kubernetes`` client is synchronous: every call runs in the default
executor under ``asyncio.wait_for`` so a cancelled task returns promptly.
Watches run on a daemon thread and are bridged into an async iterator.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import logging
import random
import threading
from collections.abc import AsyncIterator, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar

from kubernetes import client as k8s
from kubernetes import config as k8s_config
from kubernetes import watch
from kubernetes.client import ApiException
from kubernetes.config import ConfigException

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Server-side timeout of one watch stream; the stream is re-opened afterwards
WATCH_TIMEOUT_SECONDS = 60
MAX_WATCH_BACKOFF_SECONDS = 30


class ResourceKind(str, Enum):
    """Kinds of objects the controller manages."""

    SECRET = "Secret"
    SERVICE = "Service"


class ClusterError(Exception):
    """Raised for cluster API failures. Retryable unless stated otherwise."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ResourceNotFoundError(ClusterError):
    """The requested object does not exist."""


class ResourceAlreadyExistsError(ClusterError):
    """An object with the same key already exists."""


class ClusterAccessDeniedError(ClusterError):
    """The API server rejected the controller's credentials or RBAC (401/403).

    Not retryable: it requires an operator to fix permissions.
    """


@dataclass
class ManagedObject:
    """Kind-neutral view of a managed Secret or Service.

    ``data`` is the payload section: the Secret's string data, or the Service
    spec fields (``type``, ``externalName``).

    ``source`` is the kubernetes model the object was read from. Writes start
    from it, so fields this controller does not manage (finalizers, owner
    references, the Secret type, other Service spec fields) are sent back
    unchanged.
    """

    kind: ResourceKind
    namespace: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    data: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None
    source: Any = field(default=None, compare=False, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.name


@dataclass(frozen=True)
class ClusterEvent:
    """One change observed on a watched object."""

    type: str  # ADDED, MODIFIED or DELETED
    obj: ManagedObject


class ClusterClient(Protocol):
    """Operations the reconciler and the triggers need from the cluster."""

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> ManagedObject: ...

    async def create(self, obj: ManagedObject) -> None: ...

    async def update(self, obj: ManagedObject) -> None: ...

    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> None: ...

    async def list_by_labels(
        self, kind: ResourceKind, namespace: str, labels: Mapping[str, str]
    ) -> list[ManagedObject]: ...

    def watch(
        self, kind: ResourceKind, namespace: str, labels: Mapping[str, str]
    ) -> AsyncIterator[ClusterEvent]: ...


def label_selector(labels: Mapping[str, str]) -> str:
    """Render an equality-based label selector."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


# =============================================================================
# Conversion between ManagedObject and kubernetes models
# =============================================================================


def _metadata(obj: ManagedObject) -> k8s.V1ObjectMeta:
    source = obj.source.metadata if obj.source is not None else None
    if source is None:
        return k8s.V1ObjectMeta(
            name=obj.name,
            namespace=obj.namespace,
            labels=dict(obj.labels),
            annotations=dict(obj.annotations),
            resource_version=obj.resource_version,
        )

    metadata = copy.copy(source)
    metadata.labels = dict(obj.labels)
    metadata.annotations = dict(obj.annotations)
    metadata.resource_version = obj.resource_version
    return metadata


def to_kubernetes(obj: ManagedObject) -> k8s.V1Secret | k8s.V1Service:
    """Build the kubernetes model written for a managed object.

    Objects read from the cluster keep every field of their source model
    except labels, annotations and the payload.
    """
    if obj.kind is ResourceKind.SECRET:
        secret_type = obj.source.type if obj.source is not None else None
        # data is cleared so the payload is replaced as a whole
        return k8s.V1Secret(
            api_version="v1",
            kind="Secret",
            metadata=_metadata(obj),
            type=secret_type or "Opaque",
            data=None,
            string_data=dict(obj.data),
        )

    if obj.source is not None and obj.source.spec is not None:
        spec = copy.copy(obj.source.spec)
    else:
        spec = k8s.V1ServiceSpec()
    spec.type = obj.data.get("type", "ExternalName")
    spec.external_name = obj.data.get("externalName")

    return k8s.V1Service(
        api_version="v1",
        kind="Service",
        metadata=_metadata(obj),
        spec=spec,
    )


def from_kubernetes(kind: ResourceKind, item: Any) -> ManagedObject:
    """Convert a kubernetes Secret or Service into a managed object."""
    metadata = item.metadata
    data: dict[str, str] = {}

    if kind is ResourceKind.SECRET:
        for key, value in (item.data or {}).items():
            data[key] = base64.b64decode(value).decode("utf-8", errors="replace")
    elif item.spec is not None:
        if item.spec.type:
            data["type"] = item.spec.type
        if item.spec.external_name:
            data["externalName"] = item.spec.external_name

    return ManagedObject(
        kind=kind,
        namespace=metadata.namespace,
        name=metadata.name,
        labels=dict(metadata.labels or {}),
        annotations=dict(metadata.annotations or {}),
        data=data,
        resource_version=metadata.resource_version,
        source=item,
    )


def _translate(e: ApiException, what: str) -> ClusterError:
    status = e.status
    message = f"{what}: {e.reason} (HTTP {status})"
    if status == 404:
        return ResourceNotFoundError(message, status)
    if status in (401, 403):
        return ClusterAccessDeniedError(message, status)
    return ClusterError(message, status)


# =============================================================================
# kubernetes client implementation
# =============================================================================


class KubernetesClusterClient:
    """``ClusterClient`` backed by the Kubernetes CoreV1 API."""

    def __init__(self, core_api: k8s.CoreV1Api, *, timeout_seconds: float = 30) -> None:
        self._core_api = core_api
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_environment(cls, *, timeout_seconds: float = 30) -> KubernetesClusterClient:
        """Build a client from the in-cluster service account, or the local kubeconfig.

        Raises:
            ClusterError: If neither configuration is available.
        """
        try:
            k8s_config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes configuration")
        except ConfigException:
            try:
                k8s_config.load_kube_config()
            except (ConfigException, OSError) as e:
                raise ClusterError(f"no Kubernetes configuration found: {e}") from e
            logger.info("Using local kubeconfig")
        return cls(k8s.CoreV1Api(), timeout_seconds=timeout_seconds)

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        kwargs["_request_timeout"] = self._timeout_seconds
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, lambda: fn(*args, **kwargs)),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            raise ClusterError(f"Kubernetes API call timed out after {self._timeout_seconds}s") from e

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> ManagedObject:
        read = (
            self._core_api.read_namespaced_secret
            if kind is ResourceKind.SECRET
            else self._core_api.read_namespaced_service
        )
        try:
            item = await self._call(read, name, namespace)
        except ApiException as e:
            raise _translate(e, f"get {kind.value} {namespace}/{name}") from e
        return from_kubernetes(kind, item)

    async def create(self, obj: ManagedObject) -> None:
        create = (
            self._core_api.create_namespaced_secret
            if obj.kind is ResourceKind.SECRET
            else self._core_api.create_namespaced_service
        )
        try:
            await self._call(create, obj.namespace, to_kubernetes(obj))
        except ApiException as e:
            what = f"create {obj.kind.value} {obj.namespace}/{obj.name}"
            if e.status == 409:
                raise ResourceAlreadyExistsError(what, e.status) from e
            raise _translate(e, what) from e

    async def update(self, obj: ManagedObject) -> None:
        replace = (
            self._core_api.replace_namespaced_secret
            if obj.kind is ResourceKind.SECRET
            else self._core_api.replace_namespaced_service
        )
        try:
            await self._call(replace, obj.name, obj.namespace, to_kubernetes(obj))
        except ApiException as e:
            # 409 here is a resourceVersion conflict, retried by the next trigger
            raise _translate(e, f"update {obj.kind.value} {obj.namespace}/{obj.name}") from e

    async def delete(self, kind: ResourceKind, namespace: str, name: str) -> None:
        delete = (
            self._core_api.delete_namespaced_secret
            if kind is ResourceKind.SECRET
            else self._core_api.delete_namespaced_service
        )
        try:
            await self._call(delete, name, namespace)
        except ApiException as e:
            raise _translate(e, f"delete {kind.value} {namespace}/{name}") from e

    async def list_by_labels(
        self, kind: ResourceKind, namespace: str, labels: Mapping[str, str]
    ) -> list[ManagedObject]:
        list_fn = self._list_fn(kind)
        try:
            result = await self._call(list_fn, namespace, label_selector=label_selector(labels))
        except ApiException as e:
            raise _translate(e, f"list {kind.value} in {namespace}") from e
        return [from_kubernetes(kind, item) for item in result.items]

    def _list_fn(self, kind: ResourceKind) -> Callable[..., Any]:
        if kind is ResourceKind.SECRET:
            return self._core_api.list_namespaced_secret
        return self._core_api.list_namespaced_service

    async def watch(
        self, kind: ResourceKind, namespace: str, labels: Mapping[str, str]
    ) -> AsyncIterator[ClusterEvent]:
        """Stream changes of owned objects until the consumer stops iterating.

        Raises:
            ClusterAccessDeniedError: If the API server denies the list or watch.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[ClusterEvent | Exception | None] = asyncio.Queue()
        stop = threading.Event()

        def pump() -> None:
            try:
                for event in self._watch_blocking(kind, namespace, label_selector(labels), stop):
                    loop.call_soon_threadsafe(queue.put_nowait, event)
            except Exception as e:
                loop.call_soon_threadsafe(queue.put_nowait, e)
            else:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        thread = threading.Thread(target=pump, name=f"watch-{kind.value.lower()}", daemon=True)
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            stop.set()

    def _watch_blocking(
        self,
        kind: ResourceKind,
        namespace: str,
        selector: str,
        stop: threading.Event,
    ) -> Iterator[ClusterEvent]:
        list_fn = self._list_fn(kind)
        resource_version: str | None = None
        backoff_seconds = 1

        while not stop.is_set():
            if resource_version is None:
                try:
                    initial = list_fn(namespace, label_selector=selector)
                except ApiException as e:
                    if e.status in (401, 403):
                        raise _translate(e, f"list {kind.value} in {namespace}") from e
                    logger.warning(
                        "Initial list failed, retrying",
                        extra={"kind": kind.value, "error": str(e), "backoff_seconds": backoff_seconds},
                    )
                    stop.wait(timeout=backoff_seconds * (0.5 + random.random()))
                    backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
                    continue

                resource_version = initial.metadata.resource_version
                # Like an informer start: every existing object is reported once
                for item in initial.items:
                    yield ClusterEvent(type="ADDED", obj=from_kubernetes(kind, item))

            watcher = watch.Watch()
            try:
                for event in watcher.stream(
                    list_fn,
                    namespace,
                    label_selector=selector,
                    resource_version=resource_version,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                ):
                    if stop.is_set():
                        break
                    item = event.get("object")
                    if item is None or isinstance(item, dict):
                        continue
                    if item.metadata and item.metadata.resource_version:
                        resource_version = item.metadata.resource_version
                    yield ClusterEvent(type=str(event.get("type", "")), obj=from_kubernetes(kind, item))
                backoff_seconds = 1
            except ApiException as e:
                if e.status == 410:
                    # etcd compacted past our resourceVersion, re-list
                    logger.info("Watch resource version expired, re-listing", extra={"kind": kind.value})
                    resource_version = None
                    continue
                if e.status in (401, 403):
                    raise _translate(e, f"watch {kind.value} in {namespace}") from e
                logger.warning(
                    "Kubernetes watch error",
                    extra={"kind": kind.value, "error": str(e), "backoff_seconds": backoff_seconds},
                )
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))
                backoff_seconds = min(backoff_seconds * 2, MAX_WATCH_BACKOFF_SECONDS)
            finally:
                watcher.stop()
