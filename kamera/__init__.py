"""
Kamera live camera relay package.

The package is split in two halves: the relay process (:mod:`kamera.api`)
that tracks the single broadcaster and routes signaling frames, and the client
side coordination layer (:mod:`kamera.rtc`, :mod:`kamera.media`) that drives
per-peer negotiation and live camera hot-swap on top of an opaque WebRTC
runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

__all__ = [
    "ClientConfig",
    "RelayConfig",
]

DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]


@dataclass
class RelayConfig:
    """Settings for the signaling relay process."""

    profile: str = "default"
    host: str = "0.0.0.0"
    port: int = 3000
    queue_size: int = 256
    ping_interval: float = 30.0
    pong_timeout: float = 60.0

    @classmethod
    def from_mapping(cls, data: dict, *, profile: str = "default") -> "RelayConfig":
        relay = dict(data.get("relay") or {})
        return cls(
            profile=profile,
            host=str(relay.get("host", cls.host)),
            port=int(relay.get("port", cls.port)),
            queue_size=max(1, int(relay.get("queue_size", cls.queue_size))),
            ping_interval=max(0.0, float(relay.get("ping_interval", cls.ping_interval))),
            pong_timeout=max(0.0, float(relay.get("pong_timeout", cls.pong_timeout))),
        )


@dataclass
class ClientConfig:
    """Settings shared by the broadcaster and viewer controllers."""

    relay_url: str = "ws://127.0.0.1:3000/ws"
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    reconnect_delay: float = 3.0
    preferred_video_codec: Optional[str] = None
    buffer_early_candidates: bool = False

    @classmethod
    def from_mapping(cls, data: dict) -> "ClientConfig":
        client = dict(data.get("client") or {})
        servers = client.get("ice_servers")
        codec = client.get("preferred_video_codec")
        return cls(
            relay_url=str(client.get("relay_url", cls.relay_url)),
            ice_servers=[str(item) for item in servers] if servers else list(DEFAULT_ICE_SERVERS),
            reconnect_delay=max(0.0, float(client.get("reconnect_delay", cls.reconnect_delay))),
            preferred_video_codec=str(codec) if codec else None,
            buffer_early_candidates=bool(client.get("buffer_early_candidates", False)),
        )
