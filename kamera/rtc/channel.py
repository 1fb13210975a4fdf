"""
WebSocket client end of the signaling channel and the controller pump.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .lifecycle import ChannelClosed, ChannelOpened, LifecycleController
from .messages import MessageType, SignalingMessage, build

LOG = logging.getLogger(__name__)


class WebSocketSignalingChannel:
    """
    Ordered JSON frame transport to the relay.

    :meth:`send` never blocks: frames are queued and written by a background
    task, mirroring the fire-and-forget routing on the relay side.
    """

    def __init__(self, url: str, *, queue_size: int = 256) -> None:
        self.url = url
        self.queue_size = max(1, int(queue_size))
        self._ws: Any = None
        self._open = False
        self._outbox: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._open

    async def connect(self) -> None:
        self._ws = await websockets.connect(self.url)
        self._outbox = asyncio.Queue(maxsize=self.queue_size)
        self._open = True
        self._writer = asyncio.create_task(self._write_loop(self._ws, self._outbox))
        LOG.info("Connected to relay %s", self.url)

    def send(self, payload: Dict[str, Any]) -> None:
        if not self._open or self._outbox is None:
            LOG.debug("Channel closed; dropping %s", payload.get("type"))
            return
        try:
            self._outbox.put_nowait(dict(payload))
        except asyncio.QueueFull:
            LOG.warning("Dropping %s message due to backpressure", payload.get("type"))

    async def messages(self) -> AsyncIterator[SignalingMessage]:
        """Yield parsed frames until the relay connection ends."""

        ws = self._ws
        if ws is None:
            return
        try:
            async for raw in ws:
                try:
                    data = json.loads(raw)
                except (TypeError, ValueError):
                    LOG.warning("Ignoring non-JSON frame from relay")
                    continue
                message = SignalingMessage.parse(data)
                if message is None:
                    LOG.debug("Ignoring unknown frame %r", data.get("type") if isinstance(data, dict) else data)
                    continue
                if message.type is MessageType.PING:
                    self.send(build(MessageType.PONG, ts=message.get("ts")))
                    continue
                if message.type is MessageType.PONG:
                    continue
                yield message
        except ConnectionClosed as exc:
            LOG.info("Relay connection closed: %s", exc)
        finally:
            await self._finish()

    async def close(self) -> None:
        await self._finish()

    async def _finish(self) -> None:
        self._open = False
        writer, self._writer = self._writer, None
        if writer is not None:
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await ws.close()

    async def _write_loop(self, ws: Any, outbox: asyncio.Queue) -> None:
        try:
            while True:
                payload = await outbox.get()
                try:
                    text = json.dumps(payload)
                except (TypeError, ValueError) as exc:
                    LOG.warning("Dropping unencodable %s frame: %s", payload.get("type"), exc)
                    continue
                try:
                    await ws.send(text)
                except ConnectionClosed:
                    LOG.debug("Relay closed while sending %s", payload.get("type"))
                    return
        finally:
            self._open = False


async def run_controller(
    controller: LifecycleController,
    channel: WebSocketSignalingChannel,
    *,
    retry_delay: float = 3.0,
) -> None:
    """
    Keep ``channel`` connected and feed its frames to ``controller``.

    Returns once the controller has finished (viewer left, broadcaster
    stopped) and its queue has been drained.
    """

    consumer = asyncio.create_task(controller.run())
    try:
        while not controller.finished:
            try:
                await channel.connect()
            except (OSError, WebSocketException) as exc:
                LOG.warning("Relay unreachable (%s); retrying in %.1fs", exc, retry_delay)
                await asyncio.sleep(retry_delay)
                continue
            controller.post(ChannelOpened())
            try:
                async for message in channel.messages():
                    controller.post(message)
            finally:
                controller.post(ChannelClosed())
            if not controller.finished:
                await asyncio.sleep(retry_delay)
    finally:
        controller.shutdown()
        with contextlib.suppress(asyncio.CancelledError):
            await consumer
