"""
Active capture source ownership and live hot-swap across peer sessions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from .capture import (
    VIDEO_INPUT,
    CaptureCapability,
    CaptureConstraints,
    CaptureError,
    MediaSource,
    QualityMode,
)
from .sources import MediaSourceDescriptor, order_sources

LOG = logging.getLogger(__name__)

INITIAL_FACING_MODE = "environment"


class SwitchOutcome(str, Enum):
    SWITCHED = "switched"
    UNCHANGED = "unchanged"
    BUSY = "busy"
    FAILED = "failed"
    INACTIVE = "inactive"


@dataclass
class SwitchResult:
    outcome: SwitchOutcome
    descriptor: Optional[MediaSourceDescriptor] = None
    mode: Optional[QualityMode] = None
    failed_peers: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is SwitchOutcome.SWITCHED


class MediaSourceManager:
    """
    Own the outgoing capture source and swap it under live peer sessions.

    Peer sessions are supplied by a provider callable bound with
    :meth:`bind_peers`; each must expose ``peer_id`` and an awaitable
    ``replace_video_track(track)``.  Only one switch runs at a time; a request
    arriving while another is in flight is rejected with ``BUSY``.
    """

    def __init__(
        self,
        capture: CaptureCapability,
        *,
        mode: QualityMode = QualityMode.STANDARD,
        on_notice: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.capture = capture
        self.on_notice = on_notice
        self._mode = mode
        self._sources: List[MediaSourceDescriptor] = []
        self._active: Optional[MediaSource] = None
        self._switch_lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._peers: Callable[[], Iterable[Any]] = lambda: ()

    @property
    def sources(self) -> List[MediaSourceDescriptor]:
        return list(self._sources)

    @property
    def active(self) -> Optional[MediaSource]:
        return self._active

    @property
    def mode(self) -> QualityMode:
        return self._mode

    @property
    def is_switching(self) -> bool:
        return self._switch_lock.locked()

    def bind_peers(self, provider: Callable[[], Iterable[Any]]) -> None:
        self._peers = provider

    def _notify(self, text: str) -> None:
        if self.on_notice is None:
            return
        try:
            self.on_notice(text)
        except Exception:  # pragma: no cover - UI callback
            LOG.exception("Notice callback failed")

    async def refresh(self) -> List[MediaSourceDescriptor]:
        """Re-enumerate video inputs and rebuild the ordered source list."""

        try:
            devices = await self.capture.enumerate_devices()
        except Exception as exc:
            LOG.warning("Device enumeration failed: %s", exc)
            return self.sources
        descriptors = [
            MediaSourceDescriptor.from_label(device.device_id, device.label)
            for device in devices
            if device.kind == VIDEO_INPUT
        ]
        self._sources = order_sources(descriptors)
        LOG.debug("Capture sources: %s", [item.label for item in self._sources])
        return self.sources

    async def start(self, constraints: Optional[CaptureConstraints] = None) -> MediaSource:
        """
        Enumerate sources and open the initial capture.

        Raises :class:`CaptureError` when the capability refuses the request.
        """

        await self.refresh()
        request = constraints or CaptureConstraints.for_mode(
            self._mode, facing_mode=INITIAL_FACING_MODE
        )
        try:
            source = await self.capture.acquire(request)
        except CaptureError:
            raise
        except Exception as exc:
            raise CaptureError(str(exc)) from exc
        self._active = source
        LOG.info("Capture started on device %s", source.device_id)
        return source

    def stop(self) -> None:
        if self._active is not None:
            self._active.stop()
            self._active = None

    def current_index(self) -> int:
        """
        Position of the live video track in the ordered list, or ``-1``.

        Resolved from the track's reported device on every call: the initial
        capture is opened by facing mode, not by identifier.
        """

        if self._active is None:
            return -1
        device_id = self._active.device_id
        for index, descriptor in enumerate(self._sources):
            if descriptor.id == device_id:
                return index
        return -1

    async def switch_to_next(self) -> SwitchResult:
        if self._switch_lock.locked():
            LOG.info("Source switch already in progress; request rejected")
            return SwitchResult(outcome=SwitchOutcome.BUSY)
        async with self._switch_lock:
            self._idle.clear()
            try:
                return await self._advance()
            finally:
                self._idle.set()

    async def switch_mode(self, mode: Optional[QualityMode] = None) -> SwitchResult:
        """
        Re-open the current device with the constraints of ``mode``.

        ``None`` toggles between standard and low-light.
        """

        if self._switch_lock.locked():
            LOG.info("Source switch already in progress; mode request rejected")
            return SwitchResult(outcome=SwitchOutcome.BUSY)
        async with self._switch_lock:
            self._idle.clear()
            try:
                return await self._reopen(mode)
            finally:
                self._idle.set()

    async def wait_idle(self) -> None:
        """Return once no switch is in flight and the active source is final."""

        while self.is_switching:
            await self._idle.wait()

    async def _advance(self) -> SwitchResult:
        if self._active is None:
            return SwitchResult(outcome=SwitchOutcome.INACTIVE)
        count = len(self._sources)
        if count < 2:
            LOG.info("Only %d capture source(s); nothing to switch to", count)
            return SwitchResult(outcome=SwitchOutcome.UNCHANGED)
        target = self._sources[(self.current_index() + 1) % count]
        constraints = CaptureConstraints.for_mode(self._mode, device_id=target.id, audio=False)
        result = await self._hot_swap(constraints)
        result.descriptor = target if result.ok else None
        result.mode = self._mode
        if result.ok:
            LOG.info("Switched capture to %s", target.label or target.id)
        return result

    async def _reopen(self, mode: Optional[QualityMode]) -> SwitchResult:
        if self._active is None:
            return SwitchResult(outcome=SwitchOutcome.INACTIVE)
        target_mode = mode or self._mode.toggled()
        device_id = self._active.device_id
        constraints = CaptureConstraints.for_mode(
            target_mode,
            device_id=device_id,
            facing_mode=None if device_id else INITIAL_FACING_MODE,
            audio=False,
        )
        result = await self._hot_swap(constraints)
        if result.ok:
            self._mode = target_mode
            LOG.info("Capture mode set to %s", target_mode.value)
        result.mode = self._mode
        index = self.current_index()
        result.descriptor = self._sources[index] if index >= 0 else None
        return result

    async def _hot_swap(self, constraints: CaptureConstraints) -> SwitchResult:
        previous = self._active
        try:
            replacement = await self.capture.acquire(constraints)
        except Exception as exc:
            LOG.warning("Capture acquisition failed for %s: %s", constraints.device_id, exc)
            await self.refresh()
            self._notify("Unable to switch camera")
            return SwitchResult(outcome=SwitchOutcome.FAILED, error=str(exc))

        track = replacement.video_track
        if track is None:
            replacement.stop()
            self._notify("Unable to switch camera")
            return SwitchResult(outcome=SwitchOutcome.FAILED, error="capture returned no video track")

        peers = list(self._peers())
        outcomes = await asyncio.gather(
            *[peer.replace_video_track(track) for peer in peers],
            return_exceptions=True,
        )
        failed: List[str] = []
        for peer, outcome in zip(peers, outcomes):
            if isinstance(outcome, BaseException):
                LOG.warning("Track replacement failed for %s: %s", peer.peer_id, outcome)
                failed.append(str(peer.peer_id))

        # Audio keeps flowing from the previous capture; only video is swapped.
        carried_audio = previous.audio_tracks if previous is not None else []
        if previous is not None and previous.video_track is not None:
            previous.video_track.stop()
        for extra in replacement.audio_tracks:
            extra.stop()
        self._active = MediaSource(tracks=[track, *carried_audio], constraints=constraints)
        return SwitchResult(outcome=SwitchOutcome.SWITCHED, failed_peers=failed)
