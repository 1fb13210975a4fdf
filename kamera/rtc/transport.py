"""
Contract for the WebRTC runtime the controllers drive.

The runtime itself (offer/answer creation, ICE, encoding) is supplied by the
embedding application, e.g. an aiortc or browser bridge.  Controllers only
ever talk to it through :class:`PeerTransport`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol, Sequence


class ConnectivityState(str, Enum):
    """ICE connection states reported by the runtime."""

    NEW = "new"
    CHECKING = "checking"
    CONNECTED = "connected"
    COMPLETED = "completed"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @classmethod
    def parse(cls, value: Any) -> Optional["ConnectivityState"]:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None

    @property
    def is_connected(self) -> bool:
        return self in (ConnectivityState.CONNECTED, ConnectivityState.COMPLETED)


class PeerTransport(Protocol):
    """One peer connection inside the WebRTC runtime."""

    async def create_offer(self) -> Any: ...

    async def create_answer(self) -> Any: ...

    async def set_local_description(self, description: Any) -> Any: ...

    async def set_remote_description(self, description: Any) -> None: ...

    async def add_ice_candidate(self, candidate: Any) -> None: ...

    def add_track(self, track: Any) -> None: ...

    async def replace_video_track(self, track: Any) -> None: ...

    async def close(self) -> None: ...


@dataclass
class TransportObserver:
    """
    Callbacks the runtime invokes for one peer connection.

    ``on_ice_candidate`` receives locally gathered candidates;
    ``on_connectivity`` receives ICE state changes.  Both may be called from
    the runtime's own thread or loop, so controllers only enqueue from them.
    """

    on_ice_candidate: Callable[[Any], None]
    on_connectivity: Callable[[ConnectivityState], None]


TransportFactory = Callable[[Sequence[str], TransportObserver], PeerTransport]
"""Build a :class:`PeerTransport` given ICE server URLs and an observer."""


class NegotiationError(RuntimeError):
    """Raised when a description or candidate cannot be produced or applied."""


class SignalingChannel(Protocol):
    """Client end of the relay connection as seen by the controllers."""

    @property
    def connected(self) -> bool: ...

    def send(self, payload: Dict[str, Any]) -> None: ...

    async def close(self) -> None: ...
