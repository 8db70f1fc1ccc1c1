"""
Tests for the resource wire protocol.
"""

import json

import pytest

from pathbus import DeltaRegistry, ProtocolError
from pathbus.protocol import (
    MessageType,
    ResourceMessage,
    WireDelta,
    decode,
    encode,
    resource_key,
    resource_path,
    subscribe_resource,
    unsubscribe_resource,
)


class TestMessages:
    def test_subscribe_resource_uses_wire_names(self):
        message = subscribe_resource("idea", "1", from_version=4)
        assert json.loads(encode(message)) == {
            "type": "subscribe_resource",
            "resourceType": "idea",
            "resourceId": "1",
            "fromVersion": 4,
        }

    def test_unset_fields_are_omitted(self):
        assert subscribe_resource("idea", "1").to_dict() == {
            "type": "subscribe_resource",
            "resourceType": "idea",
            "resourceId": "1",
        }
        assert unsubscribe_resource("idea", "1").type is MessageType.UNSUBSCRIBE_RESOURCE

    def test_workspace_subscribe(self):
        message = ResourceMessage(MessageType.SUBSCRIBE, workspace_id="ws-1")
        assert message.to_dict() == {"type": "subscribe", "workspaceId": "ws-1"}
        assert decode(encode(message)) == message

    def test_decode_snapshot(self):
        message = decode(
            json.dumps(
                {
                    "type": "resource_snapshot",
                    "resourceType": "idea",
                    "resourceId": "1",
                    "data": {"title": "x"},
                    "version": 3,
                }
            )
        )
        assert message.type is MessageType.RESOURCE_SNAPSHOT
        assert message.data == {"title": "x"}
        assert message.version == 3
        assert message.key == "idea:1"

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "[1, 2]",
            '{"type": "bogus"}',
            '{"type": "resource_snapshot", "resourceId": "1"}',
            '{"type": "resource_snapshot", "resourceType": "", "resourceId": "1"}',
            '{"type": "resource_snapshot", "resourceType": "idea", "resourceId": "1", "version": "3"}',
            '{"type": "subscribe_resource", "resourceType": "idea", "resourceId": "1", "fromVersion": true}',
        ],
    )
    def test_malformed(self, text):
        with pytest.raises(ProtocolError):
            decode(text)


class TestWireDelta:
    def test_round_trip(self):
        registry = DeltaRegistry()
        old, new = {"title": "a"}, {"title": "b", "done": True}
        delta = WireDelta(3, 4, registry.compute_delta(old, new))

        data = json.loads(json.dumps(delta.to_dict()))
        assert data["baseVersion"] == 3
        restored = WireDelta.from_dict(data)
        assert restored == delta
        assert registry.apply_delta(old, restored.diff) == new

    @pytest.mark.parametrize(
        "data",
        [
            None,
            {"version": 2, "diff": {"type": "numeric", "value": 1}},
            {"baseVersion": 1, "version": 2, "diff": {"type": "array", "value": []}},
        ],
    )
    def test_malformed(self, data):
        with pytest.raises(ProtocolError):
            WireDelta.from_dict(data)


def test_resource_addressing():
    assert resource_path("idea", "1") == ("ideas", "1")
    assert resource_key("idea", "1") == "idea:1"
