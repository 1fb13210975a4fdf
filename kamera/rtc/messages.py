"""
Signaling message catalogue shared by the relay and both client roles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

BROADCASTER_ALIAS = "broadcaster"


class MessageType(str, Enum):
    REGISTER_BROADCASTER = "register-broadcaster"
    BROADCASTER_REGISTERED = "broadcaster-registered"
    REQUEST_OFFER = "request-offer"
    NO_BROADCASTER = "no-broadcaster"
    PEER_JOINED = "peer-joined"
    PEER_LEFT = "peer-left"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    DEVICE_SWITCH_REQUEST = "device-switch-request"
    MODE_SWITCH_REQUEST = "mode-switch-request"
    BROADCASTER_AVAILABLE = "broadcaster-available"
    BROADCASTER_LEFT = "broadcaster-left"
    WELCOME = "welcome"
    PING = "ping"
    PONG = "pong"


# Older clients name some frames differently.
LEGACY_ALIASES = {
    "camera-flip": MessageType.DEVICE_SWITCH_REQUEST,
    "viewer-joined": MessageType.PEER_JOINED,
    "viewer-left": MessageType.PEER_LEFT,
}


def resolve_type(value: Any) -> Optional[MessageType]:
    """Map a raw ``type`` field onto :class:`MessageType`, or ``None``."""

    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    if key in LEGACY_ALIASES:
        return LEGACY_ALIASES[key]
    try:
        return MessageType(key)
    except ValueError:
        return None


@dataclass(frozen=True)
class SignalingMessage:
    """
    One frame on the signaling channel.

    ``fields`` carries the routing identifiers (``viewerId``, ``target``,
    ``from``) and the opaque negotiation payload (``sdp`` or ``candidate``)
    exactly as they appear on the wire.
    """

    type: MessageType
    fields: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: Any) -> Optional["SignalingMessage"]:
        if not isinstance(raw, dict):
            return None
        message_type = resolve_type(raw.get("type"))
        if message_type is None:
            return None
        fields = {key: value for key, value in raw.items() if key != "type"}
        return cls(type=message_type, fields=fields)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    @property
    def viewer_id(self) -> Optional[str]:
        value = self.fields.get("viewerId")
        return str(value) if value is not None else None

    @property
    def sender(self) -> Optional[str]:
        value = self.fields.get("from")
        return str(value) if value is not None else None


def build(message_type: MessageType, **fields: Any) -> Dict[str, Any]:
    """Build a wire frame, omitting fields whose value is ``None``."""

    payload: Dict[str, Any] = {"type": message_type.value}
    for key, value in fields.items():
        if value is not None:
            payload[key] = value
    return payload


def description_payload(description: Any) -> Any:
    """
    Wire form of a session description.

    Runtime description objects (anything exposing ``type`` and ``sdp``
    attributes) become a ``{"type", "sdp"}`` mapping; strings and mappings
    pass through.
    """

    if description is None or isinstance(description, (str, dict)):
        return description
    sdp = getattr(description, "sdp", None)
    if not isinstance(sdp, str):
        return description
    kind = getattr(description, "type", None)
    return {"type": str(kind) if kind is not None else None, "sdp": sdp}


def register_broadcaster() -> Dict[str, Any]:
    return build(MessageType.REGISTER_BROADCASTER)


def request_offer() -> Dict[str, Any]:
    return build(MessageType.REQUEST_OFFER)


def offer(viewer_id: str, sdp: Any) -> Dict[str, Any]:
    return build(MessageType.OFFER, viewerId=viewer_id, sdp=description_payload(sdp))


def answer(sdp: Any) -> Dict[str, Any]:
    return build(MessageType.ANSWER, sdp=description_payload(sdp))


def ice_candidate(candidate: Any, target: str) -> Dict[str, Any]:
    return build(MessageType.ICE_CANDIDATE, candidate=candidate, target=target)


def device_switch_request() -> Dict[str, Any]:
    return build(MessageType.DEVICE_SWITCH_REQUEST)


def mode_switch_request(mode: Optional[str] = None) -> Dict[str, Any]:
    return build(MessageType.MODE_SWITCH_REQUEST, mode=mode)


__all__ = [
    "BROADCASTER_ALIAS",
    "LEGACY_ALIASES",
    "MessageType",
    "SignalingMessage",
    "answer",
    "build",
    "description_payload",
    "device_switch_request",
    "ice_candidate",
    "mode_switch_request",
    "offer",
    "register_broadcaster",
    "request_offer",
    "resolve_type",
]
