"""Tests for the webhook trigger endpoint."""

from __future__ import annotations

import json
import time

import pytest
from fastapi.testclient import TestClient

from cluster_mock import FakeInventory, InMemoryCluster, make_device
from conftest import CONTROLLER_NAME, NAMESPACE
from tailsync.cluster import ClusterError, ResourceKind
from tailsync.reconciler import Reconciler
from tailsync.tag_filter import build_tag_filter
from tailsync.triggers.push import WEBHOOK_PATH, create_webhook_app
from tailsync.webhook import SIGNATURE_HEADER, compute_signature

SECRET = "whsec-test"


def event(event_type: str, device_name: str) -> dict[str, object]:
    return {
        "timestamp": "2024-05-01T12:00:00Z",
        "version": 1,
        "type": event_type,
        "tailnet": "example.com",
        "message": f"{event_type} {device_name}",
        "data": {"nodeID": "n1CNTRL", "deviceName": device_name, "actor": "admin@example.com"},
    }


def signed_headers(body: bytes, secret: str = SECRET, timestamp: int | None = None) -> dict[str, str]:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return {SIGNATURE_HEADER: f"t={timestamp},v1={compute_signature(secret, timestamp, body)}"}


@pytest.fixture
def client(inventory: FakeInventory, cluster: InMemoryCluster) -> TestClient:
    reconciler = Reconciler(
        inventory=inventory,
        cluster=cluster,
        tag_filter=build_tag_filter(),
        managed_by=CONTROLLER_NAME,
    )
    return TestClient(create_webhook_app(reconciler, SECRET, NAMESPACE))


class TestWebhookEndpoint:
    """Tests for POST /webhook."""

    def test_node_created_creates_secret(
        self, client: TestClient, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.set_devices([make_device("a.tail1.ts.net")])
        body = json.dumps([event("nodeCreated", "a.tail1.ts.net")]).encode()

        response = client.post(WEBHOOK_PATH, content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {"total": 1, "processed": 1, "ignored": 0, "failed": 0}
        assert cluster.secret(NAMESPACE, "a.tail1.ts.net") is not None

    def test_node_deleted_deletes_secret(
        self, client: TestClient, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.set_devices([make_device("a.tail1.ts.net")])
        created = json.dumps([event("nodeCreated", "a.tail1.ts.net")]).encode()
        client.post(WEBHOOK_PATH, content=created, headers=signed_headers(created))

        inventory.remove("a.tail1.ts.net")
        deleted = json.dumps([event("nodeDeleted", "a.tail1.ts.net")]).encode()
        response = client.post(WEBHOOK_PATH, content=deleted, headers=signed_headers(deleted))

        assert response.status_code == 200
        assert cluster.secret(NAMESPACE, "a.tail1.ts.net") is None

    def test_other_events_are_ignored(self, client: TestClient, cluster: InMemoryCluster) -> None:
        policy = event("policyUpdate", "x")
        policy["data"] = {"newPolicy": "{}"}
        body = json.dumps([policy]).encode()

        response = client.post(WEBHOOK_PATH, content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json()["ignored"] == 1
        assert cluster.calls == []

    def test_malformed_ignored_event_does_not_block_batch(
        self, client: TestClient, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.set_devices([make_device("a.tail1.ts.net")])
        body = json.dumps(
            [
                {"type": "policyUpdate", "data": {"newPolicy": "{}"}},
                event("nodeCreated", "a.tail1.ts.net"),
            ]
        ).encode()

        response = client.post(WEBHOOK_PATH, content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {"total": 2, "processed": 1, "ignored": 1, "failed": 0}
        assert cluster.secret(NAMESPACE, "a.tail1.ts.net") is not None

    def test_empty_batch(self, client: TestClient) -> None:
        response = client.post(WEBHOOK_PATH, content=b"[]", headers=signed_headers(b"[]"))

        assert response.status_code == 200
        assert response.json()["total"] == 0

    def test_missing_signature(self, client: TestClient, cluster: InMemoryCluster) -> None:
        body = json.dumps([event("nodeCreated", "a.tail1.ts.net")]).encode()

        response = client.post(WEBHOOK_PATH, content=body)

        assert response.status_code == 401
        assert response.text == "401 Invalid request signature"
        assert cluster.calls == []

    def test_wrong_secret(self, client: TestClient, cluster: InMemoryCluster) -> None:
        body = json.dumps([event("nodeCreated", "a.tail1.ts.net")]).encode()

        response = client.post(WEBHOOK_PATH, content=body, headers=signed_headers(body, secret="other"))

        assert response.status_code == 401
        assert cluster.calls == []

    def test_stale_signature(self, client: TestClient) -> None:
        body = b"[]"
        headers = signed_headers(body, timestamp=int(time.time()) - 3600)

        response = client.post(WEBHOOK_PATH, content=body, headers=headers)

        assert response.status_code == 401

    def test_invalid_payload(self, client: TestClient) -> None:
        body = b'{"type": "nodeCreated"}'

        response = client.post(WEBHOOK_PATH, content=body, headers=signed_headers(body))

        assert response.status_code == 400

    def test_partial_failure_reports_counts(
        self, client: TestClient, inventory: FakeInventory, cluster: InMemoryCluster
    ) -> None:
        inventory.set_devices([make_device("a.tail1.ts.net"), make_device("b.tail1.ts.net")])
        cluster.object_errors[("create", "a.tail1.ts.net")] = ClusterError("boom", 500)
        body = json.dumps(
            [
                event("nodeCreated", "a.tail1.ts.net"),
                event("nodeCreated", "b.tail1.ts.net"),
            ]
        ).encode()

        response = client.post(WEBHOOK_PATH, content=body, headers=signed_headers(body))

        assert response.status_code == 500
        assert response.json() == {"total": 2, "processed": 2, "ignored": 0, "failed": 1}
        # The second event was still processed
        assert cluster.names(ResourceKind.SECRET, NAMESPACE) == ["b.tail1.ts.net"]

    def test_only_post_is_allowed(self, client: TestClient) -> None:
        assert client.get(WEBHOOK_PATH).status_code == 405
