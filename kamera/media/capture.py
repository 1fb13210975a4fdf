"""
Contract for the device capture capability and the constraints it accepts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

VIDEO_INPUT = "videoinput"


class CaptureError(RuntimeError):
    """The capture capability rejected a request (permissions, constraints)."""


class QualityMode(str, Enum):
    STANDARD = "standard"
    LOW_LIGHT = "low-light"

    @classmethod
    def parse(cls, value: Any) -> Optional["QualityMode"]:
        if value is None:
            return None
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("_", "-")
        if key in ("night", "night-vision", "lowlight"):
            return cls.LOW_LIGHT
        try:
            return cls(key)
        except ValueError:
            return None

    def toggled(self) -> "QualityMode":
        return QualityMode.STANDARD if self is QualityMode.LOW_LIGHT else QualityMode.LOW_LIGHT


# width, height, frame rate
MODE_PROFILES: Dict[QualityMode, tuple] = {
    QualityMode.STANDARD: (1280, 720, 30),
    QualityMode.LOW_LIGHT: (640, 480, 15),
}


@dataclass(frozen=True)
class MediaDeviceInfo:
    device_id: str
    label: str = ""
    kind: str = VIDEO_INPUT


@dataclass(frozen=True)
class CaptureConstraints:
    device_id: Optional[str] = None
    facing_mode: Optional[str] = None
    width: int = 1280
    height: int = 720
    frame_rate: int = 30
    audio: bool = True

    @classmethod
    def for_mode(
        cls,
        mode: QualityMode,
        *,
        device_id: Optional[str] = None,
        facing_mode: Optional[str] = None,
        audio: bool = True,
    ) -> "CaptureConstraints":
        width, height, frame_rate = MODE_PROFILES[mode]
        return cls(
            device_id=device_id,
            facing_mode=None if device_id else facing_mode,
            width=width,
            height=height,
            frame_rate=frame_rate,
            audio=audio,
        )


class MediaTrack(Protocol):
    kind: str

    @property
    def device_id(self) -> Optional[str]: ...

    def stop(self) -> None: ...


@dataclass
class MediaSource:
    """A set of live tracks obtained from one capture request."""

    tracks: List[Any] = field(default_factory=list)
    constraints: Optional[CaptureConstraints] = None

    @property
    def video_track(self) -> Optional[Any]:
        for track in self.tracks:
            if getattr(track, "kind", None) == "video":
                return track
        return None

    @property
    def audio_tracks(self) -> List[Any]:
        return [track for track in self.tracks if getattr(track, "kind", None) == "audio"]

    @property
    def device_id(self) -> Optional[str]:
        track = self.video_track
        return getattr(track, "device_id", None) if track is not None else None

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


class CaptureCapability(Protocol):
    async def enumerate_devices(self) -> Sequence[MediaDeviceInfo]: ...

    async def acquire(self, constraints: CaptureConstraints) -> MediaSource: ...
