"""
Resource Wire Protocol
======================

JSON messages exchanged between a resource connection and its backend. The
bus itself never looks at them; providers translate activations into
subscribe/unsubscribe messages and publish what the backend sends back.

Client -> server:
    {"type": "subscribe", "workspaceId": ...}
    {"type": "subscribe_resource", "resourceType": ..., "resourceId": ..., "fromVersion": n}
    {"type": "unsubscribe_resource", "resourceType": ..., "resourceId": ...}

Server -> client:
    {"type": "resource_snapshot", "resourceType", "resourceId", "data", "version"}
    {"type": "resource_delta", "resourceType", "resourceId", "version",
     "data": {"baseVersion": n, "version": n + 1, "diff": <wire delta>}}
    {"type": "resource_updated", "resourceType", "resourceId", "data"}

A subscribe_resource without fromVersion asks for a full snapshot.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .delta_algebra import TypedDelta, from_wire, to_wire
from .errors import ProtocolError


class MessageType(Enum):
    SUBSCRIBE = "subscribe"
    SUBSCRIBE_RESOURCE = "subscribe_resource"
    UNSUBSCRIBE_RESOURCE = "unsubscribe_resource"
    RESOURCE_UPDATED = "resource_updated"
    RESOURCE_SNAPSHOT = "resource_snapshot"
    RESOURCE_DELTA = "resource_delta"


_RESOURCE_MESSAGES = {
    MessageType.SUBSCRIBE_RESOURCE,
    MessageType.UNSUBSCRIBE_RESOURCE,
    MessageType.RESOURCE_UPDATED,
    MessageType.RESOURCE_SNAPSHOT,
    MessageType.RESOURCE_DELTA,
}

# Python attribute -> wire field
_WIRE_NAMES = {
    "resource_type": "resourceType",
    "resource_id": "resourceId",
    "data": "data",
    "version": "version",
    "from_version": "fromVersion",
    "workspace_id": "workspaceId",
}


@dataclass(frozen=True)
class ResourceMessage:
    """One protocol message; unused fields stay None and are not sent."""

    type: MessageType
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    data: Any = None
    version: Optional[int] = None
    from_version: Optional[int] = None
    workspace_id: Optional[str] = None

    @property
    def key(self) -> str:
        return resource_key(self.resource_type, self.resource_id)

    def to_dict(self) -> Dict[str, Any]:
        message = {"type": self.type.value}
        for attr, wire in _WIRE_NAMES.items():
            value = getattr(self, attr)
            if value is not None:
                message[wire] = value
        return message

    @classmethod
    def from_dict(cls, message: Dict[str, Any]) -> "ResourceMessage":
        """
        Validate and convert a decoded message.

        Raises:
            ProtocolError: Unknown type, or a resource message without
                resourceType/resourceId
        """
        if not isinstance(message, dict):
            raise ProtocolError(f"Message must be an object, got {type(message).__name__}")
        try:
            kind = MessageType(message.get("type"))
        except ValueError:
            raise ProtocolError(f"Unknown message type {message.get('type')!r}") from None

        fields = {attr: message.get(wire) for attr, wire in _WIRE_NAMES.items()}
        if kind in _RESOURCE_MESSAGES:
            for attr in ("resource_type", "resource_id"):
                if not isinstance(fields[attr], str) or not fields[attr]:
                    raise ProtocolError(f"{kind.value} needs a non-empty {_WIRE_NAMES[attr]}")
        for attr in ("version", "from_version"):
            value = fields[attr]
            if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
                raise ProtocolError(f"{_WIRE_NAMES[attr]} must be an integer, got {value!r}")
        return cls(kind, **fields)


@dataclass(frozen=True)
class WireDelta:
    """Payload of a resource_delta message."""

    base_version: int
    version: int
    diff: TypedDelta

    def to_dict(self) -> Dict[str, Any]:
        return {"baseVersion": self.base_version, "version": self.version, "diff": to_wire(self.diff)}

    @classmethod
    def from_dict(cls, data: Any) -> "WireDelta":
        try:
            return cls(int(data["baseVersion"]), int(data["version"]), from_wire(data["diff"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed resource delta: {data!r}") from e


def encode(message: ResourceMessage) -> str:
    return json.dumps(message.to_dict())


def decode(text: str) -> ResourceMessage:
    """
    Parse one wire message.

    Raises:
        ProtocolError: If the text is not valid JSON or not a valid message
    """
    try:
        raw = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Message is not valid JSON: {e}") from e
    return ResourceMessage.from_dict(raw)


def resource_key(resource_type: Optional[str], resource_id: Optional[str]) -> str:
    return f"{resource_type}:{resource_id}"


def resource_path(resource_type: str, resource_id: str) -> Tuple[str, str]:
    """Bus path of a resource: the pluralised type, then the id."""
    return (resource_type + "s", resource_id)


def subscribe_resource(
    resource_type: str, resource_id: str, from_version: Optional[int] = None
) -> ResourceMessage:
    return ResourceMessage(
        MessageType.SUBSCRIBE_RESOURCE, resource_type, resource_id, from_version=from_version
    )


def unsubscribe_resource(resource_type: str, resource_id: str) -> ResourceMessage:
    return ResourceMessage(MessageType.UNSUBSCRIBE_RESOURCE, resource_type, resource_id)


__all__ = [
    "MessageType",
    "ResourceMessage",
    "WireDelta",
    "encode",
    "decode",
    "resource_key",
    "resource_path",
    "subscribe_resource",
    "unsubscribe_resource",
]
