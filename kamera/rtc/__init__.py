"""
Client-side signaling and peer lifecycle helpers.
"""

from __future__ import annotations

from .lifecycle import BroadcasterController, PeerSession, PeerState, Status, ViewerController
from .messages import MessageType, SignalingMessage
from .transport import ConnectivityState, NegotiationError, PeerTransport, TransportObserver

__all__ = [
    "BroadcasterController",
    "ConnectivityState",
    "MessageType",
    "NegotiationError",
    "PeerSession",
    "PeerState",
    "PeerTransport",
    "SignalingMessage",
    "Status",
    "TransportObserver",
    "ViewerController",
]
