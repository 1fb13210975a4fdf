"""
Broadcaster-side capture source handling.
"""

from __future__ import annotations

from .capture import CaptureConstraints, CaptureError, MediaDeviceInfo, MediaSource, QualityMode
from .manager import MediaSourceManager, SwitchOutcome, SwitchResult
from .sources import FacingClass, MediaSourceDescriptor, classify_facing, order_sources

__all__ = [
    "CaptureConstraints",
    "CaptureError",
    "FacingClass",
    "MediaDeviceInfo",
    "MediaSource",
    "MediaSourceDescriptor",
    "MediaSourceManager",
    "QualityMode",
    "SwitchOutcome",
    "SwitchResult",
    "classify_facing",
    "order_sources",
]
