"""Tests for Tailscale API and webhook payload models."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from tailsync.models import (
    Device,
    DeviceList,
    IgnoredEvent,
    NodeCreatedEvent,
    NodeDeletedEvent,
    parse_webhook_events,
)


class TestDevice:
    """Tests for the device model."""

    def test_parses_api_payload(self) -> None:
        device = Device.model_validate(
            {
                "nodeId": "nABC123CNTRL",
                "name": "laptop.tail1234.ts.net",
                "hostname": "laptop",
                "os": "linux",
                "clientVersion": "1.76.1-t1234",
                "tags": ["tag:k8s"],
                "addresses": ["100.64.0.7", "fd7a:115c:a1e0::7"],
                "unknownField": True,
            }
        )

        assert device.node_id == "nABC123CNTRL"
        assert device.client_version == "1.76.1-t1234"
        assert device.tags == ("tag:k8s",)
        assert device.primary_address == "100.64.0.7"

    def test_null_tags_and_addresses(self) -> None:
        device = Device.model_validate(
            {"nodeId": "n1", "name": "a.tail1.ts.net", "tags": None, "addresses": None}
        )

        assert device.tags == ()
        assert device.primary_address == ""

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Device.model_validate({"nodeId": "n1", "name": ""})

    def test_device_list(self) -> None:
        payload = json.dumps(
            {"devices": [{"nodeId": "n1", "name": "a.tail1.ts.net"}, {"nodeId": "n2", "name": "b.tail1.ts.net"}]}
        )
        devices = DeviceList.model_validate_json(payload).devices

        assert [d.name for d in devices] == ["a.tail1.ts.net", "b.tail1.ts.net"]


class TestWebhookEvents:
    """Tests for webhook event decoding."""

    def _event(self, event_type: str, data: object) -> dict[str, object]:
        return {
            "timestamp": "2024-05-01T12:00:00Z",
            "version": 1,
            "type": event_type,
            "tailnet": "example.com",
            "message": "event",
            "data": data,
        }

    def test_lifecycle_events_are_typed(self) -> None:
        body = json.dumps(
            [
                self._event("nodeCreated", {"nodeID": "n1", "deviceName": "a.tail1.ts.net"}),
                self._event("nodeDeleted", {"nodeID": "n2", "deviceName": "b.tail1.ts.net"}),
            ]
        ).encode()

        events = parse_webhook_events(body)

        assert isinstance(events[0], NodeCreatedEvent)
        assert isinstance(events[1], NodeDeletedEvent)
        assert events[0].data.device_name == "a.tail1.ts.net"
        assert events[1].data.node_id == "n2"

    def test_other_kinds_are_ignored_events(self) -> None:
        body = json.dumps(
            [
                self._event("policyUpdate", {"newPolicy": "{}"}),
                self._event("nodeKeyExpiringInOneDay", None),
            ]
        ).encode()

        events = parse_webhook_events(body)

        assert all(isinstance(e, IgnoredEvent) for e in events)
        assert events[0].type == "policyUpdate"

    def test_ignored_event_without_timestamp_or_version(self) -> None:
        body = json.dumps(
            [
                {"type": "policyUpdate", "data": {"newPolicy": "{}"}},
                {"timestamp": "not a time", "version": "v2", "type": "userCreated"},
                self._event("nodeCreated", {"nodeID": "n1", "deviceName": "a.tail1.ts.net"}),
            ]
        ).encode()

        events = parse_webhook_events(body)

        assert isinstance(events[0], IgnoredEvent)
        assert events[0].timestamp is None
        assert isinstance(events[1], IgnoredEvent)
        assert isinstance(events[2], NodeCreatedEvent)

    def test_lifecycle_event_still_requires_timestamp(self) -> None:
        event = self._event("nodeDeleted", {"nodeID": "n1", "deviceName": "a.tail1.ts.net"})
        del event["timestamp"]

        with pytest.raises(ValidationError):
            parse_webhook_events(json.dumps([event]).encode())

    def test_lifecycle_event_without_device_name_is_invalid(self) -> None:
        body = json.dumps([self._event("nodeCreated", {"nodeID": "n1"})]).encode()

        with pytest.raises(ValidationError):
            parse_webhook_events(body)

    def test_body_must_be_an_array(self) -> None:
        with pytest.raises(ValidationError):
            parse_webhook_events(b'{"type": "nodeCreated"}')

    def test_empty_array(self) -> None:
        assert parse_webhook_events(b"[]") == []
