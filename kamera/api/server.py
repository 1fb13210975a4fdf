"""
FastAPI signaling relay for the Kamera broadcaster/viewer pair.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .. import RelayConfig
from ..rtc.messages import BROADCASTER_ALIAS, MessageType, build, resolve_type
from . import schemas
from .state import RelayState

LOG = logging.getLogger(__name__)


class RelaySession:
    """Track one signaling connection and run its send/receive loops."""

    def __init__(self, coordinator: "RelayCoordinator", websocket: WebSocket, *, queue_size: int) -> None:
        self.coordinator = coordinator
        self.websocket = websocket
        self.conn_id = uuid.uuid4().hex
        self.send_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.conn_id[:8]}")

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover - unexpected
            self.logger.exception("Failed to accept WebSocket connection")
            return

        await self.coordinator.connect(self)
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except WebSocketDisconnect:
            self.logger.debug("WebSocket client disconnected (%s)", self.conn_id)
        except Exception:  # pragma: no cover - unexpected
            self.logger.exception("Relay session crashed")
        finally:
            await self.coordinator.disconnect(self)
            await self.close(code=1000)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    def deliver(self, payload: Dict[str, Any]) -> bool:
        """Queue ``payload`` without waiting; drop it when the queue is full."""

        if self.is_stopped:
            return False
        try:
            self.send_queue.put_nowait(dict(payload))
        except asyncio.QueueFull:
            self.logger.warning("Dropping %s message due to backpressure", payload.get("type"))
            return False
        return True

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    message = await self.websocket.receive_json()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except ValueError:
                    self.logger.warning("Ignoring non-JSON frame")
                    continue
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    break

                if not isinstance(message, dict):
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == MessageType.PONG.value:
                    self.last_pong = time.monotonic()
                    continue
                if msg_type == MessageType.PING.value:
                    self.deliver(build(MessageType.PONG, ts=time.time()))
                    continue

                try:
                    await self.coordinator.handle_message(self, message)
                except asyncio.CancelledError:
                    raise
                except Exception:  # pragma: no cover - guard rails
                    self.logger.exception("Unhandled error while processing message")
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    payload = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(payload)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    break
                except RuntimeError as exc:
                    message = str(exc)
                    if "close message has been sent" in message:
                        self.logger.debug("Send after close ignored: %s", message)
                    else:
                        self.logger.exception("Failed to send message", exc_info=exc)
                    break
                except Exception:  # pragma: no cover - unexpected
                    self.logger.exception("Failed to send message")
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        interval = self.coordinator.ping_interval
        if interval <= 0:
            return
        while not self.is_stopped:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            if self.is_stopped:
                break
            self.deliver(build(MessageType.PING, ts=time.time()))
            if (time.monotonic() - self.last_pong) > self.coordinator.pong_timeout:
                self.logger.warning("Ping timeout; closing relay session")
                await self.close(code=1011, reason="ping timeout")
                break


class RelayCoordinator:
    """
    Single owner of the broadcaster slot and router of signaling frames.

    Every operation takes ``_lock`` for its whole duration so a disconnect and
    a registration can never interleave.  Delivery is a non-blocking enqueue
    on the target session; nothing here waits for the peer to read it.
    """

    def __init__(
        self,
        state: RelayState,
        *,
        queue_size: int = 256,
        ping_interval: float = 30.0,
        pong_timeout: float = 60.0,
    ) -> None:
        self.state = state
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(ping_interval))
        self.pong_timeout = max(self.ping_interval, float(pong_timeout))
        self._lock = asyncio.Lock()
        self._running = False

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        sessions = self.state.connections.handles()
        for session in sessions:
            close = getattr(session, "close", None)
            if close is None:
                continue
            with contextlib.suppress(Exception):
                await close(code=1001, reason="relay shutting down")

    async def run(self, websocket: WebSocket) -> None:
        session = RelaySession(self, websocket, queue_size=self.queue_size)
        await session.run()

    async def connect(self, session: Any) -> None:
        async with self._lock:
            self.state.connections.add(session.conn_id, session)
            session.deliver(build(MessageType.WELCOME, id=session.conn_id))
        LOG.info("[connect] %s (connections=%d)", session.conn_id, len(self.state.connections))

    async def disconnect(self, session: Any) -> None:
        await self.on_disconnect(session.conn_id)

    # ------------------------------------------------------------------ routing

    def _deliver(self, conn_id: Optional[str], payload: Dict[str, Any]) -> bool:
        target = self.state.connections.get(conn_id)
        if target is None:
            LOG.debug("Routing miss: %s for %s dropped", payload.get("type"), conn_id)
            return False
        return bool(target.deliver(payload))

    def _deliver_all(self, payload: Dict[str, Any], *, exclude: Optional[str] = None) -> int:
        delivered = 0
        for target in self.state.connections.others(exclude):
            if target.deliver(payload):
                delivered += 1
        return delivered

    async def register_broadcaster(self, conn_id: str) -> None:
        async with self._lock:
            if conn_id not in self.state.connections:
                LOG.debug("Ignoring registration from departed connection %s", conn_id)
                return
            previous = self.state.broadcaster.set(conn_id)
            if previous is not None and previous != conn_id:
                LOG.info("[broadcaster] %s supersedes %s", conn_id, previous)
            else:
                LOG.info("[broadcaster] %s", conn_id)
            self._deliver(conn_id, build(MessageType.BROADCASTER_REGISTERED))
            self._deliver_all(build(MessageType.BROADCASTER_AVAILABLE), exclude=conn_id)

    async def request_offer(self, conn_id: str) -> None:
        async with self._lock:
            broadcaster_id = self.state.broadcaster.get()
            if broadcaster_id is None:
                self._deliver(conn_id, build(MessageType.NO_BROADCASTER))
                return
            LOG.info("[viewer] %s requesting offer from broadcaster", conn_id)
            self._deliver(broadcaster_id, build(MessageType.PEER_JOINED, viewerId=conn_id))

    async def route_offer(self, conn_id: str, message: schemas.OfferMessage) -> None:
        async with self._lock:
            LOG.debug("[offer] %s -> %s", conn_id, message.viewer_id)
            self._deliver(message.viewer_id, build(MessageType.OFFER, sdp=message.sdp))

    async def route_answer(self, conn_id: str, message: schemas.AnswerMessage) -> None:
        async with self._lock:
            broadcaster_id = self.state.broadcaster.get()
            if broadcaster_id is None:
                LOG.debug("Routing miss: answer from %s with no broadcaster", conn_id)
                return
            if broadcaster_id == conn_id:
                LOG.warning("Dropping answer sent by the broadcaster itself (%s)", conn_id)
                return
            LOG.debug("[answer] %s -> %s", conn_id, broadcaster_id)
            self._deliver(
                broadcaster_id,
                build(MessageType.ANSWER, viewerId=conn_id, sdp=message.sdp),
            )

    async def route_ice_candidate(self, conn_id: str, message: schemas.IceCandidateMessage) -> None:
        async with self._lock:
            target = message.target
            if target == BROADCASTER_ALIAS:
                target = self.state.broadcaster.get()
            if target is None:
                LOG.debug("Routing miss: ice-candidate from %s has no target", conn_id)
                return
            self._deliver(
                target,
                build(MessageType.ICE_CANDIDATE, candidate=message.candidate, **{"from": conn_id}),
            )

    async def route_switch_request(self, conn_id: str, message: Dict[str, Any]) -> None:
        async with self._lock:
            broadcaster_id = self.state.broadcaster.get()
            if broadcaster_id is None:
                LOG.debug("Routing miss: %s from %s with no broadcaster", message.get("type"), conn_id)
                return
            if broadcaster_id == conn_id:
                LOG.debug("Ignoring %s sent by the broadcaster itself", message.get("type"))
                return
            self._deliver(broadcaster_id, dict(message))

    async def on_disconnect(self, conn_id: str) -> None:
        async with self._lock:
            if self.state.connections.remove(conn_id) is None:
                return
            LOG.info("[disconnect] %s", conn_id)
            if self.state.broadcaster.compare_and_clear(conn_id):
                LOG.info("[broadcaster] left")
                self._deliver_all(build(MessageType.BROADCASTER_LEFT))
                return
            broadcaster_id = self.state.broadcaster.get()
            if broadcaster_id is not None:
                self._deliver(broadcaster_id, build(MessageType.PEER_LEFT, viewerId=conn_id))

    # ---------------------------------------------------------------- dispatch

    async def handle_message(self, session: Any, message: Dict[str, Any]) -> None:
        message_type = resolve_type(message.get("type"))
        if message_type is None:
            LOG.debug("Ignoring unknown message type %r from %s", message.get("type"), session.conn_id)
            return

        conn_id = session.conn_id
        try:
            if message_type is MessageType.REGISTER_BROADCASTER:
                await self.register_broadcaster(conn_id)
                return

            if message_type is MessageType.REQUEST_OFFER:
                await self.request_offer(conn_id)
                return

            if message_type is MessageType.OFFER:
                await self.route_offer(conn_id, schemas.OfferMessage.model_validate(message))
                return

            if message_type is MessageType.ANSWER:
                await self.route_answer(conn_id, schemas.AnswerMessage.model_validate(message))
                return

            if message_type is MessageType.ICE_CANDIDATE:
                await self.route_ice_candidate(conn_id, schemas.IceCandidateMessage.model_validate(message))
                return

            if message_type is MessageType.DEVICE_SWITCH_REQUEST:
                await self.route_switch_request(conn_id, build(message_type))
                return

            if message_type is MessageType.MODE_SWITCH_REQUEST:
                parsed = schemas.ModeSwitchMessage.model_validate(message)
                await self.route_switch_request(conn_id, build(message_type, mode=parsed.mode))
                return
        except ValidationError as exc:
            LOG.warning(
                "Dropping malformed %s from %s: %s",
                message_type.value,
                conn_id,
                exc.errors(include_url=False),
            )
            return

        LOG.debug("Ignoring relay-originated message type %s from %s", message_type.value, conn_id)


def create_app(
    *,
    state: Optional[RelayState] = None,
    config: Optional[RelayConfig] = None,
    lifespan: Optional[Callable[[FastAPI], Any]] = None,
) -> FastAPI:
    relay_state = state or RelayState()
    relay_config = config or RelayConfig()

    coordinator = RelayCoordinator(
        relay_state,
        queue_size=relay_config.queue_size,
        ping_interval=relay_config.ping_interval,
        pong_timeout=relay_config.pong_timeout,
    )

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        await coordinator.start()
        try:
            if lifespan is None:
                yield
            else:
                async with lifespan(app):
                    yield
        finally:
            await coordinator.stop()

    app = FastAPI(title="Kamera Relay", lifespan=app_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.coordinator = coordinator

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await coordinator.run(websocket)

    @app.get("/health", response_model=schemas.HealthModel)
    async def health() -> schemas.HealthModel:
        return schemas.HealthModel(status="ok", uptime=relay_state.uptime())

    @app.get("/api/state", response_model=schemas.RelayStateModel)
    async def get_state() -> schemas.RelayStateModel:
        return schemas.RelayStateModel(**relay_state.snapshot())

    return app
