"""Tests covering the viewer and broadcaster peer lifecycles."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from kamera import ClientConfig
from kamera.api.server import RelayCoordinator
from kamera.api.state import RelayState
from kamera.media.capture import CaptureConstraints, MediaDeviceInfo, MediaSource, QualityMode
from kamera.media.manager import MediaSourceManager
from kamera.rtc.channel import run_controller
from kamera.rtc.lifecycle import (
    BroadcasterController,
    ChannelClosed,
    ChannelOpened,
    PeerSession,
    PeerState,
    Status,
    ViewerController,
)
from kamera.rtc.messages import SignalingMessage
from kamera.rtc.transport import ConnectivityState, TransportObserver

VIDEO_SDP = (
    "v=0\r\n"
    "m=audio 9 UDP/TLS/RTP/SAVPF 111\r\n"
    "a=rtpmap:111 opus/48000/2\r\n"
    "m=video 9 UDP/TLS/RTP/SAVPF 96 102\r\n"
    "a=rtpmap:96 VP8/90000\r\n"
    "a=rtpmap:102 H264/90000\r\n"
)


class FakeChannel:
    def __init__(self) -> None:
        self.connected = True
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    def send(self, payload: Dict[str, Any]) -> None:
        self.sent.append(dict(payload))

    async def close(self) -> None:
        self.connected = False
        self.closed = True

    def types(self) -> List[str]:
        return [item["type"] for item in self.sent]

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [item for item in self.sent if item["type"] == message_type]


class FakeTransport:
    def __init__(
        self,
        servers: List[str],
        observer: TransportObserver,
        *,
        reject_early: bool = False,
        offer_gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.servers = servers
        self.observer = observer
        self.reject_early = reject_early
        self.offer_gate = offer_gate
        self.remote: List[Any] = []
        self.candidates: List[Any] = []
        self.tracks: List[Any] = []
        self.replaced: List[Any] = []
        self.closed = False

    async def create_offer(self) -> Any:
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        return {"type": "offer", "sdp": VIDEO_SDP}

    async def create_answer(self) -> Any:
        return {"type": "answer", "sdp": "v=0 answer"}

    async def set_local_description(self, description: Any) -> Any:
        return description

    async def set_remote_description(self, description: Any) -> None:
        if not isinstance(description, dict):
            raise ValueError("unparseable description")
        self.remote.append(description)

    async def add_ice_candidate(self, candidate: Any) -> None:
        if self.reject_early and not self.remote:
            raise ValueError("no remote description")
        self.candidates.append(candidate)

    def add_track(self, track: Any) -> None:
        self.tracks.append(track)

    async def replace_video_track(self, track: Any) -> None:
        self.replaced.append(track)

    async def close(self) -> None:
        self.closed = True

    def report(self, state: str) -> None:
        self.observer.on_connectivity(ConnectivityState(state))


class TransportRecorder:
    def __init__(self, *, gate: Optional[asyncio.Event] = None) -> None:
        self.transports: List[FakeTransport] = []
        self.gate = gate

    def __call__(self, servers, observer: TransportObserver) -> FakeTransport:
        # Only the first transport waits on the gate.
        gate = self.gate if not self.transports else None
        transport = FakeTransport(list(servers), observer, offer_gate=gate)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


class FakeTrack:
    def __init__(self, kind: str, device_id: Optional[str] = None) -> None:
        self.kind = kind
        self.device_id = device_id
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True


class FakeCapture:
    def __init__(self, *, gate: Optional[asyncio.Event] = None) -> None:
        self.gate = gate
        self.devices = [
            MediaDeviceInfo(device_id="front", label="Front Camera"),
            MediaDeviceInfo(device_id="main", label="Back Camera"),
        ]

    async def enumerate_devices(self):
        return list(self.devices)

    async def acquire(self, constraints: CaptureConstraints) -> MediaSource:
        if self.gate is not None and constraints.device_id:
            await self.gate.wait()
        tracks = [FakeTrack("video", constraints.device_id or "main")]
        if constraints.audio:
            tracks.append(FakeTrack("audio"))
        return MediaSource(tracks=tracks, constraints=constraints)


OFFER = {"type": "offer", "sdp": "v=0 offer"}


def _viewer(**config: Any):
    channel = FakeChannel()
    recorder = TransportRecorder()
    statuses: List[Status] = []
    viewer = ViewerController(
        channel,
        recorder,
        config=ClientConfig(reconnect_delay=0.05, **config),
        on_status=statuses.append,
    )
    return viewer, channel, recorder, statuses


def _broadcaster(
    *,
    recorder: Optional[TransportRecorder] = None,
    capture: Optional[FakeCapture] = None,
    **config: Any,
):
    channel = FakeChannel()
    recorder = recorder or TransportRecorder()
    media = MediaSourceManager(capture or FakeCapture())
    broadcaster = BroadcasterController(
        channel,
        recorder,
        media,
        config=ClientConfig(**config),
    )
    return broadcaster, channel, recorder, media


async def _settle_broadcaster(broadcaster: BroadcasterController) -> None:
    while True:
        await broadcaster.wait_idle()
        if not await broadcaster.drain():
            return


# ---------------------------------------------------------------------- viewer


def test_viewer_negotiates_and_goes_live() -> None:
    async def scenario() -> None:
        viewer, channel, recorder, statuses = _viewer()

        await viewer.dispatch(ChannelOpened())
        await viewer.dispatch({"type": "welcome", "id": "v1"})
        await viewer.dispatch({"type": "offer", "sdp": OFFER})

        assert viewer.conn_id == "v1"
        assert channel.types() == ["request-offer", "answer"]
        assert channel.of_type("answer")[0]["sdp"] == {"type": "answer", "sdp": "v=0 answer"}
        assert recorder.last.remote == [OFFER]
        assert recorder.last.servers == ClientConfig().ice_servers
        assert viewer.state is PeerState.NEGOTIATING

        recorder.last.report("connected")
        await viewer.drain()

        assert viewer.state is PeerState.LIVE
        assert statuses == [Status.WAITING, Status.CONNECTING, Status.LIVE]

    asyncio.run(scenario())


def test_viewer_local_candidates_target_broadcaster() -> None:
    async def scenario() -> None:
        viewer, channel, recorder, _ = _viewer()
        await viewer.dispatch(ChannelOpened())
        await viewer.dispatch({"type": "offer", "sdp": OFFER})

        recorder.last.observer.on_ice_candidate({"candidate": "c1"})
        await viewer.drain()
        await viewer.dispatch({"type": "ice-candidate", "candidate": {"candidate": "r1"}, "from": "camera"})

        assert channel.of_type("ice-candidate") == [
            {"type": "ice-candidate", "candidate": {"candidate": "c1"}, "target": "broadcaster"}
        ]
        assert recorder.last.candidates == [{"candidate": "r1"}]

    asyncio.run(scenario())


def test_viewer_degrades_then_recovers() -> None:
    async def scenario() -> None:
        viewer, _, recorder, statuses = _viewer()
        await viewer.dispatch(ChannelOpened())
        await viewer.dispatch({"type": "offer", "sdp": OFFER})
        recorder.last.report("connected")
        await viewer.drain()

        recorder.last.report("disconnected")
        await viewer.drain()
        assert viewer.state is PeerState.DEGRADED
        assert statuses[-1] is Status.RECONNECTING
        assert not viewer.reconnect_pending

        recorder.last.report("connected")
        await viewer.drain()
        assert viewer.state is PeerState.LIVE
        assert statuses[-1] is Status.LIVE

    asyncio.run(scenario())


def test_viewer_failure_schedules_a_single_reconnect() -> None:
    async def scenario() -> None:
        viewer, channel, recorder, statuses = _viewer()
        await viewer.dispatch(ChannelOpened())
        await viewer.dispatch({"type": "offer", "sdp": OFFER})
        failed = recorder.last
        failed.report("connected")
        await viewer.drain()

        failed.report("failed")
        await viewer.drain()

        assert viewer.state is PeerState.CLOSED
        assert viewer.session is None
        assert failed.closed
        assert statuses[-1] is Status.WAITING
        assert viewer.reconnect_pending

        # A late event from the closed session and a second schedule must not
        # add another pending timer.
        failed.report("failed")
        await viewer.drain()
        viewer.schedule_reconnect()

        await asyncio.sleep(0.2)

        assert channel.types().count("request-offer") == 2
        assert not viewer.reconnect_pending
        assert viewer.state is PeerState.AWAITING_REMOTE

    asyncio.run(scenario())


def test_channel_reopen_replaces_pending_reconnect() -> None:
    async def scenario() -> None:
        viewer, channel, recorder, _ = _viewer()
        await viewer.dispatch(ChannelOpened())
        await viewer.dispatch({"type": "offer", "sdp": OFFER})
        recorder.last.report("failed")
        await viewer.drain()
        assert viewer.reconnect_pending

        await viewer.dispatch(ChannelClosed())
        assert not viewer.reconnect_pending

        await viewer.dispatch(ChannelOpened())
        await asyncio.sleep(0.2)

        assert channel.types().count("request-offer") == 2
        assert not viewer.reconnect_pending

    asyncio.run(scenario())


def test_channel_open_cancels_pending_reconnect() -> None:
    async def scenario() -> None:
        viewer, channel, _, _ = _viewer()
        await viewer.dispatch(ChannelOpened())
        await viewer.dispatch({"type": "offer", "sdp": "garbage"})
        assert viewer.reconnect_pending

        await viewer.dispatch(ChannelOpened())
        await asyncio.sleep(0.2)

        assert channel.types().count("request-offer") == 2
        assert not viewer.reconnect_pending

    asyncio.run(scenario())


def test_viewer_rejected_offer_fails_without_answer() -> None:
    async def scenario() -> None:
        viewer, channel, recorder, _ = _viewer()
        await viewer.dispatch(ChannelOpened())

        await viewer.dispatch({"type": "offer", "sdp": "garbage"})

        assert channel.of_type("answer") == []
        assert recorder.last.closed
        assert viewer.state is PeerState.CLOSED
        assert viewer.reconnect_pending

        await viewer.leave()

        assert not viewer.reconnect_pending
        assert channel.closed

    asyncio.run(scenario())


def test_viewer_broadcaster_left_and_returns() -> None:
    async def scenario() -> None:
        viewer, channel, recorder, statuses = _viewer()
        await viewer.dispatch(ChannelOpened())
        await viewer.dispatch({"type": "offer", "sdp": OFFER})
        first = recorder.last
        first.report("connected")
        await viewer.drain()

        await viewer.dispatch({"type": "broadcaster-left"})

        assert first.closed
        assert viewer.state is PeerState.CLOSED
        assert statuses[-1] is Status.WAITING
        assert not viewer.reconnect_pending

        await viewer.dispatch({"type": "broadcaster-available"})
        await viewer.dispatch({"type": "offer", "sdp": OFFER})

        # Events for the old session are ignored.
        first.report("connected")
        await viewer.drain()

        assert channel.types().count("request-offer") == 2
        assert viewer.state is PeerState.NEGOTIATING
        assert recorder.last is not first

    asyncio.run(scenario())


def test_viewer_without_broadcaster_waits() -> None:
    async def scenario() -> None:
        viewer, channel, _, statuses = _viewer()
        await viewer.dispatch(ChannelOpened())

        await viewer.dispatch({"type": "no-broadcaster"})

        assert viewer.state is PeerState.IDLE
        assert statuses == [Status.WAITING]

        viewer.request_device_switch()
        viewer.request_mode_switch(QualityMode.LOW_LIGHT)
        viewer.request_mode_switch()

        assert channel.sent[1:] == [
            {"type": "device-switch-request"},
            {"type": "mode-switch-request", "mode": "low-light"},
            {"type": "mode-switch-request"},
        ]

    asyncio.run(scenario())


# ----------------------------------------------------------------- broadcaster


def test_broadcaster_offers_to_joining_viewer() -> None:
    async def scenario() -> None:
        broadcaster, channel, recorder, media = _broadcaster()
        await broadcaster.start()
        await broadcaster.dispatch({"type": "broadcaster-registered"})

        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v1"})
        await _settle_broadcaster(broadcaster)

        assert broadcaster.registered
        assert channel.types() == ["register-broadcaster", "offer"]
        sent = channel.of_type("offer")[0]
        assert sent["viewerId"] == "v1"
        assert sent["sdp"] == {"type": "offer", "sdp": VIDEO_SDP}
        assert recorder.last.tracks == media.active.tracks
        assert broadcaster.sessions["v1"].state is PeerState.NEGOTIATING

        await broadcaster.dispatch({"type": "answer", "viewerId": "v1", "sdp": {"type": "answer", "sdp": "a"}})
        await broadcaster.dispatch({"type": "ice-candidate", "candidate": {"candidate": "r1"}, "from": "v1"})
        await broadcaster.dispatch({"type": "ice-candidate", "candidate": {"candidate": "r2"}, "from": "nobody"})
        recorder.last.observer.on_ice_candidate({"candidate": "l1"})
        recorder.last.report("connected")
        await _settle_broadcaster(broadcaster)

        assert recorder.last.remote == [{"type": "answer", "sdp": "a"}]
        assert recorder.last.candidates == [{"candidate": "r1"}]
        assert channel.of_type("ice-candidate") == [
            {"type": "ice-candidate", "candidate": {"candidate": "l1"}, "target": "v1"}
        ]
        assert broadcaster.sessions["v1"].state is PeerState.LIVE
        assert broadcaster.status is Status.LIVE
        assert broadcaster.viewer_count == 1

    asyncio.run(scenario())


def test_broadcaster_applies_codec_preference() -> None:
    async def scenario() -> None:
        broadcaster, channel, _, _ = _broadcaster(preferred_video_codec="H264")
        await broadcaster.start()

        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v1"})
        await _settle_broadcaster(broadcaster)

        sdp = channel.of_type("offer")[0]["sdp"]["sdp"]
        assert "m=video 9 UDP/TLS/RTP/SAVPF 102 96" in sdp
        assert "m=audio 9 UDP/TLS/RTP/SAVPF 111" in sdp

    asyncio.run(scenario())


def test_slow_offer_does_not_hold_up_other_viewers() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        broadcaster, channel, recorder, _ = _broadcaster(recorder=TransportRecorder(gate=gate))
        await broadcaster.start()
        runner = asyncio.create_task(broadcaster.run())

        broadcaster.post({"type": "peer-joined", "viewerId": "slow"})
        broadcaster.post({"type": "peer-joined", "viewerId": "fast"})
        await asyncio.sleep(0.1)

        assert [item["viewerId"] for item in channel.of_type("offer")] == ["fast"]

        broadcaster.post({"type": "peer-left", "viewerId": "fast"})
        await asyncio.sleep(0.05)

        assert list(broadcaster.sessions) == ["slow"]
        assert recorder.transports[1].closed

        gate.set()
        await asyncio.sleep(0.1)

        assert [item["viewerId"] for item in channel.of_type("offer")] == ["fast", "slow"]

        broadcaster.shutdown()
        await asyncio.wait_for(runner, timeout=1)
        await broadcaster.wait_idle()

    asyncio.run(scenario())


def test_broadcaster_tears_down_departed_and_failed_viewers() -> None:
    async def scenario() -> None:
        broadcaster, _, recorder, _ = _broadcaster()
        await broadcaster.start()
        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v1"})
        first = recorder.last
        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v2"})
        second = recorder.last
        await _settle_broadcaster(broadcaster)

        await broadcaster.dispatch({"type": "peer-left", "viewerId": "v1"})
        assert first.closed
        assert list(broadcaster.sessions) == ["v2"]

        second.report("failed")
        await _settle_broadcaster(broadcaster)
        assert second.closed
        assert broadcaster.sessions == {}
        assert broadcaster.status is Status.WAITING

    asyncio.run(scenario())


def test_broadcaster_drops_viewer_with_malformed_answer() -> None:
    async def scenario() -> None:
        broadcaster, _, recorder, _ = _broadcaster()
        await broadcaster.start()
        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v1"})
        await _settle_broadcaster(broadcaster)

        await broadcaster.dispatch({"type": "answer", "viewerId": "v1"})
        await broadcaster.dispatch({"type": "answer", "viewerId": "ghost", "sdp": {"type": "answer"}})
        await _settle_broadcaster(broadcaster)

        assert recorder.last.closed
        assert broadcaster.viewer_count == 0

    asyncio.run(scenario())


def test_rejoin_replaces_existing_session() -> None:
    async def scenario() -> None:
        broadcaster, channel, recorder, _ = _broadcaster()
        await broadcaster.start()
        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v1"})
        stale = recorder.last

        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v1"})
        stale.report("failed")
        await _settle_broadcaster(broadcaster)

        assert stale.closed
        assert stale.tracks == []
        assert broadcaster.sessions["v1"].transport is recorder.last
        assert len(channel.of_type("offer")) == 1

    asyncio.run(scenario())


def test_remote_switch_requests_replace_outgoing_video() -> None:
    async def scenario() -> None:
        broadcaster, _, recorder, media = _broadcaster()
        await broadcaster.start()
        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v1"})
        await _settle_broadcaster(broadcaster)
        original = media.active.video_track

        await broadcaster.dispatch({"type": "device-switch-request"})
        await broadcaster.wait_idle()

        assert original.stopped
        assert media.active.device_id == "front"
        assert recorder.last.replaced == [media.active.video_track]
        assert broadcaster.sessions["v1"].outgoing_track is media.active.video_track

        await broadcaster.dispatch({"type": "mode-switch-request", "mode": "night"})
        await broadcaster.wait_idle()

        assert media.mode is QualityMode.LOW_LIGHT
        assert media.active.device_id == "front"
        assert len(recorder.last.replaced) == 2

    asyncio.run(scenario())


def test_viewer_joining_mid_switch_gets_the_new_track() -> None:
    async def scenario() -> None:
        gate = asyncio.Event()
        broadcaster, channel, recorder, media = _broadcaster(capture=FakeCapture(gate=gate))
        await broadcaster.start()
        original = media.active.video_track

        await broadcaster.dispatch({"type": "device-switch-request"})
        for _ in range(3):
            await asyncio.sleep(0)
        assert media.is_switching

        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "late"})
        for _ in range(3):
            await asyncio.sleep(0)
        await broadcaster.drain()

        assert channel.of_type("offer") == []
        assert recorder.last.tracks == []

        gate.set()
        await _settle_broadcaster(broadcaster)

        video = [track for track in recorder.last.tracks if track.kind == "video"]
        assert original.stopped
        assert video == [media.active.video_track]
        assert not video[0].stopped
        assert broadcaster.sessions["late"].outgoing_track is media.active.video_track
        assert len(channel.of_type("offer")) == 1

    asyncio.run(scenario())


def test_broadcaster_stop_releases_everything() -> None:
    async def scenario() -> None:
        broadcaster, channel, recorder, media = _broadcaster()
        await broadcaster.start()
        tracks = list(media.active.tracks)
        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v1"})

        await broadcaster.stop()

        assert recorder.last.closed
        assert media.active is None
        assert all(track.stopped for track in tracks)
        assert broadcaster.status is Status.OFFLINE
        assert channel.closed

        await broadcaster.dispatch({"type": "peer-joined", "viewerId": "v2"})
        assert broadcaster.sessions == {}

    asyncio.run(scenario())


# ----------------------------------------------------------------- candidates


def test_early_candidates_are_best_effort_by_default() -> None:
    async def scenario() -> None:
        transport = FakeTransport([], TransportObserver(lambda c: None, lambda s: None), reject_early=True)
        session = PeerSession("v1", transport)

        applied = await session.add_remote_candidate({"candidate": "early"})
        await session.apply_remote_description({"type": "answer"})

        assert applied is False
        assert transport.candidates == []

    asyncio.run(scenario())


def test_early_candidates_can_be_buffered() -> None:
    async def scenario() -> None:
        transport = FakeTransport([], TransportObserver(lambda c: None, lambda s: None), reject_early=True)
        session = PeerSession("v1", transport, buffer_early_candidates=True)

        applied = await session.add_remote_candidate({"candidate": "early"})
        assert applied is True
        assert transport.candidates == []

        await session.apply_remote_description({"type": "answer"})
        await session.add_remote_candidate({"candidate": "late"})

        assert transport.candidates == [{"candidate": "early"}, {"candidate": "late"}]

        await session.close()
        assert await session.add_remote_candidate({"candidate": "after"}) is False
        assert session.transition(PeerState.LIVE) is False

    asyncio.run(scenario())


# ------------------------------------------------------------------- loopback


class LoopbackLink:
    """Stands in for both the relay session and the client channel."""

    def __init__(self, conn_id: str) -> None:
        self.conn_id = conn_id
        self.connected = True
        self.controller: Any = None
        self.outbox: List[Dict[str, Any]] = []
        self.received: List[Dict[str, Any]] = []

    def deliver(self, payload: Dict[str, Any]) -> bool:
        self.received.append(dict(payload))
        self.controller.post(dict(payload))
        return True

    def send(self, payload: Dict[str, Any]) -> None:
        self.outbox.append(dict(payload))

    async def close(self) -> None:
        self.connected = False


async def _settle(coordinator: RelayCoordinator, links: List[LoopbackLink]) -> None:
    while True:
        progress = 0
        for link in links:
            while link.outbox:
                await coordinator.handle_message(link, link.outbox.pop(0))
                progress += 1
        for link in links:
            if isinstance(link.controller, BroadcasterController):
                await link.controller.wait_idle()
            progress += await link.controller.drain()
        if progress == 0:
            return


def test_broadcaster_departure_reaches_every_live_viewer_once() -> None:
    async def scenario() -> None:
        coordinator = RelayCoordinator(RelayState())
        camera_link = LoopbackLink("camera")
        viewer_links = [LoopbackLink("v1"), LoopbackLink("v2")]
        camera_transports = TransportRecorder()
        broadcaster = BroadcasterController(camera_link, camera_transports, MediaSourceManager(FakeCapture()))
        camera_link.controller = broadcaster
        viewers = []
        viewer_transports = []
        for link in viewer_links:
            recorder = TransportRecorder()
            link.controller = ViewerController(link, recorder, config=ClientConfig(reconnect_delay=0.05))
            viewers.append(link.controller)
            viewer_transports.append(recorder)
        links = [camera_link, *viewer_links]
        for link in links:
            await coordinator.connect(link)

        for viewer in viewers:
            viewer.post(ChannelOpened())
        await _settle(coordinator, links)
        assert all(viewer.state is PeerState.IDLE for viewer in viewers)
        await broadcaster.start()
        await _settle(coordinator, links)

        for recorder in [camera_transports, *viewer_transports]:
            for transport in recorder.transports:
                if not transport.closed:
                    transport.report("connected")
        await _settle(coordinator, links)

        assert [viewer.conn_id for viewer in viewers] == ["v1", "v2"]
        assert all(viewer.state is PeerState.LIVE for viewer in viewers)
        assert sorted(broadcaster.sessions) == ["v1", "v2"]
        assert broadcaster.status is Status.LIVE

        await coordinator.on_disconnect("camera")
        await _settle(coordinator, links)

        for viewer, link, recorder in zip(viewers, viewer_links, viewer_transports):
            assert viewer.state is PeerState.CLOSED
            assert viewer.status is Status.WAITING
            assert recorder.last.closed
            assert [item for item in link.received if item["type"] == "broadcaster-left"] == [
                {"type": "broadcaster-left"}
            ]
        assert coordinator.state.broadcaster.get() is None

    asyncio.run(scenario())


# -------------------------------------------------------------------- channel


class ScriptedChannel:
    def __init__(self, controller_ref: Dict[str, Any], frames: List[Dict[str, Any]]) -> None:
        self.controller_ref = controller_ref
        self.frames = frames
        self.connected = False
        self.attempts = 0
        self.sent: List[Dict[str, Any]] = []

    async def connect(self) -> None:
        self.attempts += 1
        if self.attempts == 1:
            raise OSError("connection refused")
        self.connected = True

    def send(self, payload: Dict[str, Any]) -> None:
        self.sent.append(dict(payload))

    async def messages(self):
        for frame in self.frames:
            yield SignalingMessage.parse(frame)
        await asyncio.sleep(0.05)
        self.connected = False
        self.controller_ref["controller"].finished = True

    async def close(self) -> None:
        self.connected = False


def test_run_controller_retries_and_feeds_frames() -> None:
    async def scenario() -> None:
        ref: Dict[str, Any] = {}
        channel = ScriptedChannel(ref, [{"type": "welcome", "id": "v9"}, {"type": "no-broadcaster"}])
        viewer = ViewerController(channel, TransportRecorder())
        ref["controller"] = viewer

        await asyncio.wait_for(run_controller(viewer, channel, retry_delay=0), timeout=2)

        assert channel.attempts == 2
        assert viewer.conn_id == "v9"
        assert channel.sent == [{"type": "request-offer"}]
        assert viewer.status is Status.WAITING

    asyncio.run(scenario())
