"""
Shared relay state container.

The relay owns exactly one :class:`RelayState`.  None of the containers here
lock on their own: every mutation happens while the coordinator holds its
lock, so reads and writes of the broadcaster slot are serialised with the
routing decisions that depend on them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, Iterator, List, Optional, TypeVar

LOG = logging.getLogger(__name__)

ROLE_BROADCASTER = "broadcaster"
ROLE_VIEWER = "viewer"
ROLE_UNKNOWN = "unknown"

T = TypeVar("T")


class BroadcasterSlot:
    """Holds the identifier of the single active broadcaster."""

    def __init__(self) -> None:
        self._conn_id: Optional[str] = None

    def get(self) -> Optional[str]:
        return self._conn_id

    def set(self, conn_id: str) -> Optional[str]:
        """Install ``conn_id`` and return the superseded identifier, if any."""

        previous = self._conn_id
        self._conn_id = conn_id
        return previous

    def compare_and_clear(self, conn_id: str) -> bool:
        if self._conn_id is None or self._conn_id != conn_id:
            return False
        self._conn_id = None
        return True

    def is_broadcaster(self, conn_id: str) -> bool:
        return self._conn_id is not None and self._conn_id == conn_id


@dataclass
class ConnectionEntry(Generic[T]):
    conn_id: str
    handle: T
    connected_at: float = field(default_factory=time.monotonic)


class ConnectionRegistry(Generic[T]):
    """
    Connected identifiers and their delivery handles.

    Routing only needs to resolve an identifier to a handle; roles are not
    stored here because the broadcaster is tracked by :class:`BroadcasterSlot`
    and viewers are implicit.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, ConnectionEntry[T]] = {}

    def add(self, conn_id: str, handle: T) -> None:
        self._entries[conn_id] = ConnectionEntry(conn_id=conn_id, handle=handle)

    def remove(self, conn_id: str) -> Optional[T]:
        entry = self._entries.pop(conn_id, None)
        return entry.handle if entry else None

    def get(self, conn_id: Optional[str]) -> Optional[T]:
        if conn_id is None:
            return None
        entry = self._entries.get(conn_id)
        return entry.handle if entry else None

    def __contains__(self, conn_id: object) -> bool:
        return conn_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._entries))

    def others(self, conn_id: Optional[str]) -> List[T]:
        return [entry.handle for key, entry in self._entries.items() if key != conn_id]

    def handles(self) -> List[T]:
        return [entry.handle for entry in self._entries.values()]


class RelayState:
    """Process-wide relay session: the broadcaster slot plus live connections."""

    def __init__(self, *, monotonic: Optional[Callable[[], float]] = None) -> None:
        self._monotonic = monotonic or time.monotonic
        self.started_at = self._monotonic()
        self.broadcaster = BroadcasterSlot()
        self.connections: ConnectionRegistry = ConnectionRegistry()

    def uptime(self) -> float:
        return max(0.0, self._monotonic() - self.started_at)

    def role_of(self, conn_id: str) -> str:
        if conn_id not in self.connections:
            return ROLE_UNKNOWN
        if self.broadcaster.is_broadcaster(conn_id):
            return ROLE_BROADCASTER
        return ROLE_VIEWER

    def snapshot(self) -> dict:
        broadcaster_id = self.broadcaster.get()
        return {
            "broadcasterPresent": broadcaster_id is not None,
            "broadcasterId": broadcaster_id,
            "connections": len(self.connections),
            "viewers": sum(1 for conn_id in self.connections if self.role_of(conn_id) == ROLE_VIEWER),
            "uptime": round(self.uptime(), 3),
        }
