"""
Signaling relay HTTP/WebSocket surface.
"""

from __future__ import annotations

from .server import RelayCoordinator, RelaySession, create_app
from .state import BroadcasterSlot, RelayState

__all__ = ["BroadcasterSlot", "RelayCoordinator", "RelaySession", "RelayState", "create_app"]
