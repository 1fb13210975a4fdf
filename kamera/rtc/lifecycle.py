"""
Per-peer connection lifecycle for the viewer and broadcaster roles.

Each controller consumes a single queue of typed events (signaling frames,
connectivity changes, locally gathered candidates, channel open/close) and
advances one :class:`PeerSession` per remote peer through::

    IDLE -> AWAITING_REMOTE -> NEGOTIATING -> LIVE <-> DEGRADED -> CLOSED

A closed session is never reused; every negotiation attempt builds a new one.
Events that refer to a session which is no longer current are ignored.

The broadcaster builds offers and applies answers in background tasks that
post a :class:`NegotiationStep` back onto the queue, so one slow peer never
holds up the others.  Work for a single session is serialised by its lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .. import ClientConfig
from ..media.capture import QualityMode
from ..media.manager import MediaSourceManager, SwitchResult
from . import messages
from .messages import BROADCASTER_ALIAS, MessageType, SignalingMessage
from .sdp import prefer_video_codec
from .transport import (
    ConnectivityState,
    NegotiationError,
    PeerTransport,
    SignalingChannel,
    TransportFactory,
    TransportObserver,
)

LOG = logging.getLogger(__name__)


class PeerState(str, Enum):
    IDLE = "idle"
    AWAITING_REMOTE = "awaiting-remote"
    NEGOTIATING = "negotiating"
    LIVE = "live"
    DEGRADED = "degraded"
    CLOSED = "closed"


class Status(str, Enum):
    """Coarse state published to the presentation layer."""

    OFFLINE = "offline"
    WAITING = "waiting"
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"


# ---------------------------------------------------------------------- events


@dataclass(frozen=True)
class ChannelOpened:
    pass


@dataclass(frozen=True)
class ChannelClosed:
    pass


@dataclass(frozen=True, eq=False)
class ConnectivityChanged:
    session: "PeerSession"
    state: ConnectivityState


@dataclass(frozen=True, eq=False)
class LocalCandidate:
    session: "PeerSession"
    candidate: Any


@dataclass(frozen=True, eq=False)
class NegotiationStep:
    """Completion of an offer build or an answer application run off the loop."""

    session: "PeerSession"
    kind: str
    description: Any = None
    error: Optional[BaseException] = None


_STOP = object()


# --------------------------------------------------------------------- session


class PeerSession:
    """One negotiated (or negotiating) media connection to a remote peer."""

    def __init__(
        self,
        peer_id: str,
        transport: PeerTransport,
        *,
        buffer_early_candidates: bool = False,
    ) -> None:
        self.peer_id = peer_id
        self.transport = transport
        self.state = PeerState.AWAITING_REMOTE
        self.outgoing_track: Any = None
        self.buffer_early_candidates = buffer_early_candidates
        self.remote_description_set = False
        self._pending_candidates: List[Any] = []
        self.lock = asyncio.Lock()
        self.logger = LOG.getChild(f"peer.{str(peer_id)[:8]}")

    @property
    def closed(self) -> bool:
        return self.state is PeerState.CLOSED

    def transition(self, new_state: PeerState) -> bool:
        if self.state is PeerState.CLOSED or self.state is new_state:
            return False
        self.logger.debug("%s -> %s", self.state.value, new_state.value)
        self.state = new_state
        return True

    async def apply_remote_description(self, description: Any) -> None:
        if description is None:
            raise NegotiationError("missing remote description")
        try:
            await self.transport.set_remote_description(description)
        except Exception as exc:
            raise NegotiationError(f"remote description rejected: {exc}") from exc
        self.remote_description_set = True
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(candidate)

    async def add_remote_candidate(self, candidate: Any) -> bool:
        """
        Apply a remote candidate on a best-effort basis.

        Without buffering, a candidate that arrives before the remote
        description is applied immediately and a rejection is only logged.
        """

        if candidate is None or self.closed:
            return False
        if self.buffer_early_candidates and not self.remote_description_set:
            self._pending_candidates.append(candidate)
            return True
        return await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: Any) -> bool:
        try:
            await self.transport.add_ice_candidate(candidate)
        except Exception as exc:
            self.logger.debug("Ignoring rejected ICE candidate: %s", exc)
            return False
        return True

    async def replace_video_track(self, track: Any) -> None:
        await self.transport.replace_video_track(track)
        self.outgoing_track = track

    async def close(self) -> None:
        if self.closed:
            return
        self.state = PeerState.CLOSED
        self._pending_candidates = []
        try:
            await self.transport.close()
        except Exception:
            self.logger.warning("Transport close failed", exc_info=True)


# ------------------------------------------------------------------ controllers


class LifecycleController:
    """Event loop shared by both roles."""

    role = "peer"

    def __init__(
        self,
        channel: SignalingChannel,
        transport_factory: TransportFactory,
        *,
        config: Optional[ClientConfig] = None,
        on_status: Optional[Callable[[Status], None]] = None,
    ) -> None:
        self.channel = channel
        self.transport_factory = transport_factory
        self.config = config or ClientConfig()
        self.on_status = on_status
        self.status = Status.OFFLINE
        self.conn_id: Optional[str] = None
        self.finished = False
        self._events: asyncio.Queue = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # event intake

    def post(self, event: Any) -> None:
        """Enqueue an event; safe to call from the WebRTC runtime's threads."""

        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._events.put_nowait, event)
                return
        self._events.put_nowait(event)

    def shutdown(self) -> None:
        self.post(_STOP)

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        while True:
            event = await self._events.get()
            if event is _STOP:
                break
            try:
                await self.dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - guard rails
                LOG.exception("Unhandled error while processing %r", event)

    async def drain(self) -> int:
        """Process every queued event without waiting for new ones."""

        processed = 0
        while not self._events.empty():
            event = self._events.get_nowait()
            if event is _STOP:
                continue
            await self.dispatch(event)
            processed += 1
        return processed

    async def dispatch(self, event: Any) -> None:
        if isinstance(event, SignalingMessage):
            if event.type is MessageType.WELCOME:
                self.conn_id = event.get("id")
                return
            await self.handle_message(event)
        elif isinstance(event, dict):
            parsed = SignalingMessage.parse(event)
            if parsed is not None:
                await self.dispatch(parsed)
        elif isinstance(event, ConnectivityChanged):
            await self.handle_connectivity(event.session, event.state)
        elif isinstance(event, LocalCandidate):
            self.handle_local_candidate(event.session, event.candidate)
        elif isinstance(event, NegotiationStep):
            await self.handle_negotiation_step(event)
        elif isinstance(event, ChannelOpened):
            await self.on_channel_open()
        elif isinstance(event, ChannelClosed):
            await self.on_channel_closed()

    # hooks

    async def handle_message(self, message: SignalingMessage) -> None:
        raise NotImplementedError

    async def handle_connectivity(self, session: PeerSession, state: ConnectivityState) -> None:
        raise NotImplementedError

    def handle_local_candidate(self, session: PeerSession, candidate: Any) -> None:
        raise NotImplementedError

    async def handle_negotiation_step(self, step: NegotiationStep) -> None:
        LOG.debug("%s ignoring %s step", self.role, step.kind)

    async def on_channel_open(self) -> None:
        LOG.info("%s connected to relay", self.role)

    async def on_channel_closed(self) -> None:
        LOG.info("%s lost relay connection", self.role)

    # helpers

    def _set_status(self, status: Status) -> None:
        if self.status is status:
            return
        self.status = status
        if self.on_status is None:
            return
        try:
            self.on_status(status)
        except Exception:  # pragma: no cover - UI callback
            LOG.exception("Status callback failed")

    def _send(self, payload: Dict[str, Any]) -> None:
        if not self.channel.connected:
            LOG.debug("Relay not connected; dropping %s", payload.get("type"))
            return
        self.channel.send(payload)

    def _new_session(self, peer_id: str) -> PeerSession:
        holder: Dict[str, PeerSession] = {}

        def on_candidate(candidate: Any) -> None:
            self.post(LocalCandidate(holder["session"], candidate))

        def on_connectivity(state: ConnectivityState) -> None:
            parsed = ConnectivityState.parse(state)
            if parsed is not None:
                self.post(ConnectivityChanged(holder["session"], parsed))

        observer = TransportObserver(on_ice_candidate=on_candidate, on_connectivity=on_connectivity)
        transport = self.transport_factory(list(self.config.ice_servers), observer)
        session = PeerSession(
            peer_id,
            transport,
            buffer_early_candidates=self.config.buffer_early_candidates,
        )
        holder["session"] = session
        return session


class ViewerController(LifecycleController):
    """
    Viewer side: one peer session pointing at the broadcaster.

    The viewer always initiates: it requests an offer when the channel opens,
    when a broadcaster becomes available, and after a fatal failure (through a
    single pending reconnect timer).
    """

    role = "viewer"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.state = PeerState.IDLE
        self.session: Optional[PeerSession] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    async def on_channel_open(self) -> None:
        await super().on_channel_open()
        if not self.finished:
            self._cancel_reconnect()
            self._request_offer()

    async def on_channel_closed(self) -> None:
        await super().on_channel_closed()
        self._cancel_reconnect()

    async def handle_message(self, message: SignalingMessage) -> None:
        if self.finished:
            return
        message_type = message.type

        if message_type is MessageType.BROADCASTER_AVAILABLE:
            self._cancel_reconnect()
            await self._teardown()
            self._request_offer()
            return

        if message_type is MessageType.NO_BROADCASTER:
            if self.session is None:
                self.state = PeerState.IDLE
            self._set_status(Status.WAITING)
            return

        if message_type is MessageType.OFFER:
            await self._accept_offer(message.get("sdp"))
            return

        if message_type is MessageType.ICE_CANDIDATE:
            if self.session is not None:
                await self.session.add_remote_candidate(message.get("candidate"))
            return

        if message_type is MessageType.BROADCASTER_LEFT:
            self._cancel_reconnect()
            await self._teardown()
            self.state = PeerState.CLOSED
            self._set_status(Status.WAITING)
            return

        LOG.debug("Viewer ignoring %s", message_type.value)

    async def handle_connectivity(self, session: PeerSession, state: ConnectivityState) -> None:
        if session is not self.session or session.closed:
            return
        if state.is_connected:
            self._cancel_reconnect()
            session.transition(PeerState.LIVE)
            self.state = PeerState.LIVE
            self._set_status(Status.LIVE)
        elif state is ConnectivityState.DISCONNECTED:
            if session.state is PeerState.LIVE:
                session.transition(PeerState.DEGRADED)
                self.state = PeerState.DEGRADED
                self._set_status(Status.RECONNECTING)
        elif state is ConnectivityState.FAILED:
            LOG.warning("Connection to broadcaster failed")
            await self._fail()

    def handle_local_candidate(self, session: PeerSession, candidate: Any) -> None:
        if session is not self.session or session.closed or candidate is None:
            return
        self._send(messages.ice_candidate(candidate, BROADCASTER_ALIAS))

    # intents

    def request_device_switch(self) -> None:
        self._send(messages.device_switch_request())

    def request_mode_switch(self, mode: Optional[QualityMode] = None) -> None:
        self._send(messages.mode_switch_request(mode.value if mode else None))

    async def leave(self) -> None:
        self.finished = True
        self._cancel_reconnect()
        await self._teardown()
        self.state = PeerState.CLOSED
        self._set_status(Status.OFFLINE)
        await self.channel.close()

    # internals

    def _request_offer(self) -> None:
        if not self.channel.connected:
            return
        self.channel.send(messages.request_offer())
        self.state = PeerState.AWAITING_REMOTE
        if self.session is None:
            self._set_status(Status.WAITING)

    async def _accept_offer(self, sdp: Any) -> None:
        self._cancel_reconnect()
        await self._teardown()
        session = self._new_session(BROADCASTER_ALIAS)
        self.session = session
        session.transition(PeerState.NEGOTIATING)
        self.state = PeerState.NEGOTIATING
        self._set_status(Status.CONNECTING)
        try:
            await session.apply_remote_description(sdp)
            try:
                local = await session.transport.create_answer()
                applied = await session.transport.set_local_description(local)
            except Exception as exc:
                raise NegotiationError(f"answer failed: {exc}") from exc
        except NegotiationError:
            LOG.warning("Negotiation with broadcaster failed", exc_info=True)
            if session is self.session:
                await self._fail()
            return
        if session is self.session and not session.closed:
            self._send(messages.answer(applied if applied is not None else local))

    async def _fail(self) -> None:
        await self._teardown()
        self.state = PeerState.CLOSED
        self._set_status(Status.WAITING)
        self.schedule_reconnect()

    async def _teardown(self) -> None:
        session, self.session = self.session, None
        if session is not None:
            await session.close()

    def schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        delay = self.config.reconnect_delay
        LOG.info("Reconnecting in %.1fs", delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self.finished or self.session is not None:
            return
        self._request_offer()


class BroadcasterController(LifecycleController):
    """
    Broadcaster side: one peer session per viewer plus the media manager.

    The broadcaster never reconnects to viewers; a failed or departed viewer
    is simply torn down and is expected to request a fresh offer.
    """

    role = "broadcaster"

    def __init__(
        self,
        channel: SignalingChannel,
        transport_factory: TransportFactory,
        media: MediaSourceManager,
        **kwargs: Any,
    ) -> None:
        super().__init__(channel, transport_factory, **kwargs)
        self.media = media
        self.sessions: Dict[str, PeerSession] = {}
        self.registered = False
        self._background: Set[asyncio.Task] = set()
        media.bind_peers(self.live_sessions)

    @property
    def viewer_count(self) -> int:
        return len(self.sessions)

    def live_sessions(self) -> List[PeerSession]:
        return [
            session
            for session in self.sessions.values()
            if not session.closed and session.outgoing_track is not None
        ]

    async def start(self) -> None:
        """
        Open the capture and register with the relay.

        Raises :class:`CaptureError` when the camera cannot be opened.
        """

        self.finished = False
        if self.media.active is None:
            await self.media.start()
        self._register()

    async def stop(self) -> None:
        self.finished = True
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for viewer_id in list(self.sessions):
            await self._teardown(viewer_id)
        self.media.stop()
        self.registered = False
        self._set_status(Status.OFFLINE)
        await self.channel.close()

    async def on_channel_open(self) -> None:
        await super().on_channel_open()
        if self.media.active is not None and not self.finished:
            self._register()

    async def on_channel_closed(self) -> None:
        await super().on_channel_closed()
        self.registered = False

    async def handle_message(self, message: SignalingMessage) -> None:
        if self.finished:
            return
        message_type = message.type

        if message_type is MessageType.BROADCASTER_REGISTERED:
            self.registered = True
            LOG.info("Registered as broadcaster")
            return

        if message_type is MessageType.PEER_JOINED:
            viewer_id = message.viewer_id
            if viewer_id:
                await self._open_session(viewer_id)
            return

        if message_type is MessageType.ANSWER:
            self._accept_answer(message.viewer_id, message.get("sdp"))
            return

        if message_type is MessageType.ICE_CANDIDATE:
            session = self.sessions.get(message.sender or "")
            if session is not None:
                self._spawn(self._add_candidate(session, message.get("candidate")))
            return

        if message_type is MessageType.PEER_LEFT:
            viewer_id = message.viewer_id
            if viewer_id:
                LOG.info("Viewer left: %s", viewer_id)
                await self._teardown(viewer_id)
            return

        if message_type is MessageType.DEVICE_SWITCH_REQUEST:
            self._spawn(self.switch_camera())
            return

        if message_type is MessageType.MODE_SWITCH_REQUEST:
            self._spawn(self.switch_mode(QualityMode.parse(message.get("mode"))))
            return

        if message_type is MessageType.BROADCASTER_AVAILABLE:
            # Another device registered and superseded this one.
            self.registered = False
            LOG.warning("Another broadcaster registered with the relay")
            return

        LOG.debug("Broadcaster ignoring %s", message_type.value)

    async def handle_connectivity(self, session: PeerSession, state: ConnectivityState) -> None:
        if self.sessions.get(session.peer_id) is not session or session.closed:
            return
        if state.is_connected:
            session.transition(PeerState.LIVE)
        elif state is ConnectivityState.DISCONNECTED:
            if session.state is PeerState.LIVE:
                session.transition(PeerState.DEGRADED)
        elif state in (ConnectivityState.FAILED, ConnectivityState.CLOSED):
            LOG.info("Connection to viewer %s ended (%s)", session.peer_id, state.value)
            await self._teardown(session.peer_id)
        self._refresh_status()

    def handle_local_candidate(self, session: PeerSession, candidate: Any) -> None:
        if self.sessions.get(session.peer_id) is not session or session.closed or candidate is None:
            return
        self._send(messages.ice_candidate(candidate, session.peer_id))

    async def handle_negotiation_step(self, step: NegotiationStep) -> None:
        session = step.session
        if self.sessions.get(session.peer_id) is not session or session.closed:
            return
        if step.error is not None:
            LOG.warning("%s negotiation with %s failed: %s", step.kind, session.peer_id, step.error)
            await self._teardown(session.peer_id, expected=session)
            return
        if step.kind == "offer":
            self._send(messages.offer(session.peer_id, step.description))

    # intents

    async def switch_camera(self) -> SwitchResult:
        return await self.media.switch_to_next()

    async def switch_mode(self, mode: Optional[QualityMode] = None) -> SwitchResult:
        return await self.media.switch_mode(mode)

    async def wait_idle(self) -> None:
        """Wait for background negotiation and switch tasks to settle."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # internals

    def _register(self) -> None:
        if not self.channel.connected:
            return
        self.channel.send(messages.register_broadcaster())
        self._refresh_status()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _refresh_status(self) -> None:
        if self.finished:
            return
        self._set_status(Status.LIVE if self.sessions else Status.WAITING)

    async def _open_session(self, viewer_id: str) -> None:
        LOG.info("Viewer joined: %s", viewer_id)
        if self.media.active is None:
            LOG.warning("No active capture; ignoring join from %s", viewer_id)
            return
        await self._teardown(viewer_id)

        session = self._new_session(viewer_id)
        self.sessions[viewer_id] = session
        session.transition(PeerState.NEGOTIATING)
        self._refresh_status()
        self._spawn(self._build_offer(session))

    async def _build_offer(self, session: PeerSession) -> None:
        async with session.lock:
            # Attach only after any in-flight switch has adopted its source.
            await self.media.wait_idle()
            if session.closed:
                return
            source = self.media.active
            if source is None:
                self.post(NegotiationStep(session, "offer", error=NegotiationError("capture stopped")))
                return
            for track in source.tracks:
                session.transport.add_track(track)
            session.outgoing_track = source.video_track
            try:
                local = await session.transport.create_offer()
                local = prefer_video_codec(local, self.config.preferred_video_codec)
                applied = await session.transport.set_local_description(local)
            except Exception as exc:
                self.post(NegotiationStep(session, "offer", error=NegotiationError(f"offer failed: {exc}")))
                return
        self.post(NegotiationStep(session, "offer", description=applied if applied is not None else local))

    def _accept_answer(self, viewer_id: Optional[str], sdp: Any) -> None:
        session = self.sessions.get(viewer_id or "")
        if session is None:
            LOG.debug("Answer for unknown viewer %s dropped", viewer_id)
            return
        self._spawn(self._apply_answer(session, sdp))

    async def _apply_answer(self, session: PeerSession, sdp: Any) -> None:
        async with session.lock:
            if session.closed:
                return
            try:
                await session.apply_remote_description(sdp)
            except NegotiationError as exc:
                self.post(NegotiationStep(session, "answer", error=exc))
                return
        self.post(NegotiationStep(session, "answer"))

    async def _add_candidate(self, session: PeerSession, candidate: Any) -> None:
        async with session.lock:
            await session.add_remote_candidate(candidate)

    async def _teardown(self, viewer_id: str, *, expected: Optional[PeerSession] = None) -> None:
        session = self.sessions.get(viewer_id)
        if session is None or (expected is not None and session is not expected):
            return
        del self.sessions[viewer_id]
        await session.close()
        self._refresh_status()


__all__ = [
    "BroadcasterController",
    "ChannelClosed",
    "ChannelOpened",
    "ConnectivityChanged",
    "LifecycleController",
    "LocalCandidate",
    "NegotiationStep",
    "PeerSession",
    "PeerState",
    "Status",
    "ViewerController",
]
